"""Unit tests for auth/roles.py -- role resolution and the roles configuration source.

Covers:
- Inactive mappings are skipped even at higher priority
- Priority order, stable for ties
- Legacy static roles apply only when no mapping matches, highest privilege first
- No match at all -> None
- Stored record mapping: camelCase fields, condition variants, unknown
  condition type rejects the record and the previous snapshot keeps serving
- Role id masking
- live_page_permissions(): current mapping wins, embedded table as fallback
"""

import pytest

from auth.models import IpWhitelist, MaxPerDay, OwnItemsOnly, SubdivisionOnly
from auth.roles import (
    LEGACY_ROLE_PERMISSIONS,
    ROLES_CONFIG_KEY,
    ROLES_CONFIG_NAMESPACE,
    CachedRolesConfig,
    DocumentRolesConfigSource,
    RoleMappingResolver,
    condition_from_dict,
    condition_to_dict,
    mask_role_id,
    roles_config_from_dict,
    roles_config_to_dict,
)
from conftest import ALLOTHERS_ROLE_ID, SUBDIV_ROLE_ID, SUPERADMIN_ROLE_ID, make_principal
from core.config import get_settings

ROLE_A = "111111111111111111"
ROLE_B = "222222222222222222"
ROLE_C = "333333333333333333"


def _mapping(mapping_id: str, role_id: str, internal_role: str, priority: int, active: bool = True, **extra) -> dict:
    d = {
        "id": mapping_id,
        "discordRoleId": role_id,
        "roleName": mapping_id,
        "internalRole": internal_role,
        "permissions": ["events"],
        "priority": priority,
        "isActive": active,
    }
    d.update(extra)
    return d


def _resolver(docstore, record: dict | None) -> RoleMappingResolver:
    if record is not None:
        docstore.set_json(ROLES_CONFIG_NAMESPACE, ROLES_CONFIG_KEY, record)
    return RoleMappingResolver(CachedRolesConfig(DocumentRolesConfigSource(docstore), ttl=60), get_settings())


class TestResolve:
    def test_inactive_mapping_skipped_despite_priority(self, docstore) -> None:
        record = {
            "discordRoleMappings": [
                _mapping("a", ROLE_A, "custom", 5),
                _mapping("b", ROLE_B, "super_admin", 10, active=False),
                _mapping("c", ROLE_C, "subdivision_overseer", 1),
            ]
        }
        resolution = _resolver(docstore, record).resolve([ROLE_A, ROLE_B])
        assert resolution.mapping_id == "a"
        assert resolution.role == "custom"
        assert resolution.source == "mapping"

    def test_highest_priority_wins(self, docstore) -> None:
        record = {
            "discordRoleMappings": [
                _mapping("low", ROLE_A, "custom", 1),
                _mapping("high", ROLE_B, "subdivision_overseer", 50),
            ]
        }
        assert _resolver(docstore, record).resolve([ROLE_A, ROLE_B]).mapping_id == "high"

    def test_equal_priority_keeps_stored_order(self, docstore) -> None:
        record = {
            "discordRoleMappings": [
                _mapping("first", ROLE_A, "custom", 7),
                _mapping("second", ROLE_B, "custom", 7),
            ]
        }
        assert _resolver(docstore, record).resolve([ROLE_B, ROLE_A]).mapping_id == "first"

    def test_missing_is_active_means_active(self, docstore) -> None:
        m = _mapping("a", ROLE_A, "custom", 1)
        del m["isActive"]
        assert _resolver(docstore, {"discordRoleMappings": [m]}).resolve([ROLE_A]).mapping_id == "a"

    def test_mapping_carries_page_permissions(self, docstore) -> None:
        m = _mapping("a", ROLE_A, "custom", 1, pagePermissions=[{"pageId": "events", "actions": ["view"]}])
        resolution = _resolver(docstore, {"discordRoleMappings": [m]}).resolve([ROLE_A])
        assert resolution.page_permissions[0].page_id == "events"
        assert resolution.page_permissions[0].actions == ("view",)

    def test_legacy_fallback_when_no_mapping_matches(self, docstore) -> None:
        record = {"discordRoleMappings": [_mapping("a", ROLE_A, "custom", 1)]}
        resolution = _resolver(docstore, record).resolve([SUBDIV_ROLE_ID])
        assert resolution.role == "subdivision_overseer"
        assert resolution.source == "legacy"
        assert resolution.mapping_id is None
        assert resolution.permissions == LEGACY_ROLE_PERMISSIONS["subdivision_overseer"]

    def test_legacy_highest_privilege_first(self, docstore) -> None:
        resolution = _resolver(docstore, None).resolve([ALLOTHERS_ROLE_ID, SUPERADMIN_ROLE_ID, SUBDIV_ROLE_ID])
        assert resolution.role == "super_admin"

    def test_no_role(self, docstore) -> None:
        assert _resolver(docstore, None).resolve(["999"]) is None
        assert _resolver(docstore, None).resolve([]) is None

    def test_mapping_beats_legacy(self, docstore) -> None:
        record = {"discordRoleMappings": [_mapping("m", SUPERADMIN_ROLE_ID, "custom", 1)]}
        assert _resolver(docstore, record).resolve([SUPERADMIN_ROLE_ID]).role == "custom"


class TestConfigSource:
    def test_missing_record_is_empty_config(self, docstore) -> None:
        config = DocumentRolesConfigSource(docstore).load()
        assert config.mappings == ()
        assert any(p.id == "roles-management" for p in config.available_permissions)

    def test_unknown_condition_rejects_record(self, docstore) -> None:
        m = _mapping(
            "a",
            ROLE_A,
            "custom",
            1,
            pagePermissions=[
                {"pageId": "events", "actions": ["view"], "restrictions": {"conditions": [{"type": "moon_phase"}]}}
            ],
        )
        docstore.set_json(ROLES_CONFIG_NAMESPACE, ROLES_CONFIG_KEY, {"discordRoleMappings": [m]})
        assert DocumentRolesConfigSource(docstore).load() is None

    def test_bad_record_keeps_previous_snapshot(self, docstore) -> None:
        resolver = _resolver(docstore, {"discordRoleMappings": [_mapping("a", ROLE_A, "custom", 1)]})
        assert resolver.resolve([ROLE_A]).mapping_id == "a"

        docstore.set_json(
            ROLES_CONFIG_NAMESPACE,
            ROLES_CONFIG_KEY,
            {"discordRoleMappings": [_mapping("x", ROLE_A, "not_a_role", 1)]},
        )
        resolver.config.invalidate()
        assert resolver.resolve([ROLE_A]).mapping_id == "a"

    def test_invalidate_picks_up_new_record(self, docstore) -> None:
        resolver = _resolver(docstore, {"discordRoleMappings": [_mapping("a", ROLE_A, "custom", 1)]})
        resolver.resolve([ROLE_A])
        docstore.set_json(
            ROLES_CONFIG_NAMESPACE,
            ROLES_CONFIG_KEY,
            {"discordRoleMappings": [_mapping("a2", ROLE_A, "subdivision_overseer", 1)]},
        )
        assert resolver.resolve([ROLE_A]).mapping_id == "a"  # still cached
        resolver.config.invalidate()
        assert resolver.resolve([ROLE_A]).mapping_id == "a2"

    def test_save_then_load(self, docstore) -> None:
        source = DocumentRolesConfigSource(docstore)
        config = roles_config_from_dict({"version": 4, "discordRoleMappings": [_mapping("a", ROLE_A, "custom", 3)]})
        source.save(config)
        loaded = source.load()
        assert loaded.version == 4
        assert loaded.mappings[0].provider_role_id == ROLE_A
        assert docstore.get_json(ROLES_CONFIG_NAMESPACE, ROLES_CONFIG_KEY)["discordRoleMappings"][0]["priority"] == 3


class TestConditionMapping:
    def test_variants(self) -> None:
        assert condition_from_dict({"type": "own_items_only"}) == OwnItemsOnly()
        assert condition_from_dict({"type": "max_per_day", "value": 5}) == MaxPerDay(limit=5)
        assert condition_from_dict({"type": "max_per_day", "limit": 3}) == MaxPerDay(limit=3)
        assert condition_from_dict({"type": "ip_whitelist", "allowedIps": ["10.0.0.0/8"]}) == IpWhitelist(
            allowed_ips=("10.0.0.0/8",)
        )
        assert condition_from_dict({"type": "subdivision_only", "subdivisionIds": ["swat"]}) == SubdivisionOnly(
            group_ids=("swat",)
        )

    def test_unknown_type(self) -> None:
        with pytest.raises(ValueError):
            condition_from_dict({"type": "moon_phase"})

    def test_stored_form(self) -> None:
        d = condition_to_dict(MaxPerDay(limit=5, description="Five a day"))
        assert d == {"type": "max_per_day", "description": "Five a day", "value": 5}


class TestMasking:
    def test_mask_keeps_last_eight(self) -> None:
        assert mask_role_id("123456789012345678") == "***12345678"
        assert mask_role_id("") == ""

    def test_masked_config(self) -> None:
        config = roles_config_from_dict({"discordRoleMappings": [_mapping("a", ROLE_A, "custom", 1)]})
        masked = roles_config_to_dict(config, mask=True)
        assert masked["discordRoleMappings"][0]["discordRoleId"] == "***11111111"
        assert roles_config_to_dict(config)["discordRoleMappings"][0]["discordRoleId"] == ROLE_A


class TestLivePagePermissions:
    def test_current_mapping_wins_over_embedded(self, docstore) -> None:
        m = _mapping("a", ROLE_A, "custom", 1, pagePermissions=[{"pageId": "events", "actions": ["view", "edit"]}])
        resolver = _resolver(docstore, {"discordRoleMappings": [m]})
        principal = make_principal(mapping_id="a", page_permissions=())
        assert resolver.live_page_permissions(principal)[0].actions == ("view", "edit")

    def test_removed_mapping_falls_back_to_embedded(self, docstore) -> None:
        resolver = _resolver(docstore, None)
        principal = make_principal(mapping_id="gone", page_permissions=None)
        assert resolver.live_page_permissions(principal) is None
        assert resolver.find_mapping("gone") is None
