"""
docstore/store.py -- SQLAlchemy Core key-value JSON document store.

Pattern: Repository. Every collaborator that needs persisted JSON (roles
configuration, local admin accounts, Google account registry, session
revocations) goes through DocumentStore. Records are addressed by
(namespace, key) and always read and written whole -- there is no partial
update, so a reader never observes a half-written document.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, auth/, or cache/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column, MetaData, PrimaryKeyConstraint, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_documents = Table(
    "documents",
    _metadata,
    Column("namespace", String(64), nullable=False),
    Column("key", String(255), nullable=False),
    Column("data", Text, nullable=False),  # JSON-encoded document
    Column("updated_at", String(32), nullable=False),
    PrimaryKeyConstraint("namespace", "key"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers proceed while a write is in flight."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class DocumentStore:
    """Strongly consistent JSON blob store.

    Usage:
        store = DocumentStore()
        store.set_json("roles-config", "config", {"discordRoleMappings": []})
        config = store.get_json("roles-config", "config")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().docstore_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def get_json(self, namespace: str, key: str) -> Any | None:
        """Return the decoded document, or None if it does not exist."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _documents.select().where((_documents.c.namespace == namespace) & (_documents.c.key == key))
            ).fetchone()
        if row is None:
            return None
        return json.loads(row.data)

    def set_json(self, namespace: str, key: str, value: Any) -> None:
        """Store a document, replacing any existing value for the same key."""
        payload = json.dumps(value)
        with self.engine.begin() as conn:
            result = conn.execute(
                _documents.update()
                .where((_documents.c.namespace == namespace) & (_documents.c.key == key))
                .values(data=payload, updated_at=_now_iso())
            )
            if result.rowcount == 0:
                conn.execute(
                    _documents.insert().values(namespace=namespace, key=key, data=payload, updated_at=_now_iso())
                )

    def delete(self, namespace: str, key: str) -> bool:
        """Delete a document. Returns True if something was removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _documents.delete().where((_documents.c.namespace == namespace) & (_documents.c.key == key))
            )
        return result.rowcount > 0

    def list_keys(self, namespace: str) -> list[str]:
        """Return every key in a namespace, sorted."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _documents.select().where(_documents.c.namespace == namespace).order_by(_documents.c.key)
            ).fetchall()
        return [r.key for r in rows]

    def ping(self) -> bool:
        """Cheap connectivity check used by the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(_documents.select().limit(1)).fetchall()
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()
