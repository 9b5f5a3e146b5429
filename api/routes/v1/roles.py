"""
api/routes/v1/roles.py -- Read-only view of the roles configuration.

Routes:
  GET  /api/v1/roles-config         -- masked configuration (super admin)
  POST /api/v1/roles-config/reload  -- drop the cached snapshot (roles-management edit)

Provider role ids are masked to their last 8 characters before they leave the
server. Editing the configuration belongs to the management surface; after it
writes roles-config/config it calls /reload so the next request re-reads.
"""

import logging

from fastapi import APIRouter, Depends, Request

from api.models import MessageResponse, RolesConfigResponse
from auth.dependencies import require_page_permission, require_super_admin
from auth.models import Principal
from auth.roles import RoleMappingResolver, roles_config_to_dict

logger = logging.getLogger("precinct.api.roles")

# Auth policy:
# - GET  /api/v1/roles-config:        requires super_admin (require_super_admin)
# - POST /api/v1/roles-config/reload: requires edit on the roles-management page
#   (require_page_permission); the management surface calls it after each write
router = APIRouter()


@router.get("/roles-config", response_model=RolesConfigResponse)
def get_roles_config(
    request: Request,
    principal: Principal = Depends(require_super_admin),
) -> RolesConfigResponse:
    resolver: RoleMappingResolver = request.app.state.resolver
    data = roles_config_to_dict(resolver.config.get(), mask=True)
    return RolesConfigResponse(
        version=data["version"],
        discord_role_mappings=data["discordRoleMappings"],
        page_definitions=data["pageDefinitions"],
        available_permissions=data["availablePermissions"],
    )


@router.post("/roles-config/reload", response_model=MessageResponse)
def reload_roles_config(
    request: Request,
    principal: Principal = Depends(require_page_permission("roles-management", "edit")),
) -> MessageResponse:
    request.app.state.resolver.config.invalidate()
    logger.info("Roles configuration reload requested by %s", principal.identity_id)
    return MessageResponse(message="Roles configuration will be reloaded on next access.")
