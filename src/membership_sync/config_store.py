"""membership_sync.config_store

PostgreSQL-backed configuration store and audit sink.

  - sheet_config: one row per saved version; the newest row per kind
    ('form' | 'roster') is the active configuration.
  - audit_log:    append-only (actor, action, outcome, created_at).

Both classes take an open psycopg connection. Caller manages the
transaction; the CLI opens connections with autocommit=True so every
audit entry is durable as soon as it is appended.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

import psycopg

from membership_sync.column_mapping import ColumnMapping
from membership_sync.shared import ConfigurationError
from membership_sync.tabular_store import DEFAULT_RANGE

KIND_FORM = "form"
KIND_ROSTER = "roster"
VALID_KINDS = (KIND_FORM, KIND_ROSTER)

ACTOR_SYSTEM = "system"
ACTOR_ADMIN = "admin"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_MISSING_CONFIG = "failed_missing_config"


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class SheetConfig:
    resource_id: str
    column_mapping: ColumnMapping
    range_spec: str = DEFAULT_RANGE


@dataclass(frozen=True)
class AuditEntry:
    actor: str
    action: str
    outcome: str
    created_at: datetime


class ConfigStore(Protocol):
    def get_form_sheet_config(self) -> SheetConfig | None:
        ...

    def get_roster_config(self) -> SheetConfig | None:
        ...


class AuditSink(Protocol):
    def append(self, actor: str, action: str, outcome: str) -> None:
        ...


# ---------------------------------------------------------------------------
# PostgreSQL implementations
# ---------------------------------------------------------------------------

class PgConfigStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _latest(self, kind: str) -> SheetConfig | None:
        row = self._conn.execute(
            """
            SELECT resource_id, range_spec, column_mapping
            FROM sheet_config
            WHERE kind = %s
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (kind,),
        ).fetchone()
        if not row:
            return None
        resource_id, range_spec, raw_mapping = row
        if not resource_id:
            raise ConfigurationError(f"{kind} sheet configuration has no resource id")
        mapping = ColumnMapping.from_dict(raw_mapping)
        mapping.validate()
        return SheetConfig(
            resource_id=resource_id,
            column_mapping=mapping,
            range_spec=range_spec or DEFAULT_RANGE,
        )

    def get_form_sheet_config(self) -> SheetConfig | None:
        return self._latest(KIND_FORM)

    def get_roster_config(self) -> SheetConfig | None:
        return self._latest(KIND_ROSTER)

    def save_sheet_config(
        self,
        kind: str,
        resource_id: str,
        mapping: ColumnMapping,
        range_spec: str = DEFAULT_RANGE,
    ) -> SheetConfig:
        if kind not in VALID_KINDS:
            raise ConfigurationError(f"unknown sheet config kind {kind!r}")
        if not resource_id:
            raise ConfigurationError("resource id is required")
        mapping.validate()
        self._conn.execute(
            """
            INSERT INTO sheet_config (kind, resource_id, range_spec, column_mapping)
            VALUES (%s, %s, %s, %s::jsonb)
            """,
            (kind, resource_id, range_spec, json.dumps(mapping.to_dict())),
        )
        return SheetConfig(resource_id=resource_id, column_mapping=mapping, range_spec=range_spec)


class PgAuditSink:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def append(self, actor: str, action: str, outcome: str) -> None:
        self._conn.execute(
            "INSERT INTO audit_log (actor, action, outcome) VALUES (%s, %s, %s)",
            (actor, action, outcome),
        )

    def recent(self, limit: int = 100, offset: int = 0) -> list[AuditEntry]:
        rows = self._conn.execute(
            """
            SELECT actor, action, outcome, created_at
            FROM audit_log
            ORDER BY created_at DESC, id DESC
            LIMIT %s OFFSET %s
            """,
            (limit, offset),
        ).fetchall()
        return [AuditEntry(*r) for r in rows]


# ---------------------------------------------------------------------------
# In-memory sink (tests / dry runs)
# ---------------------------------------------------------------------------

@dataclass
class ListAuditSink:
    entries: list[AuditEntry] = field(default_factory=list)

    def append(self, actor: str, action: str, outcome: str) -> None:
        self.entries.append(
            AuditEntry(actor, action, outcome, datetime.now(timezone.utc))
        )

    def outcomes(self, action: str) -> list[str]:
        return [e.outcome for e in self.entries if e.action == action]
