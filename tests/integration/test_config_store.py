"""Integration tests for membership_sync.config_store against PostgreSQL."""

from __future__ import annotations

import pytest

from membership_sync.column_mapping import ColumnMapping
from membership_sync.config_store import (
    ACTOR_SYSTEM,
    KIND_FORM,
    KIND_ROSTER,
    PgAuditSink,
    PgConfigStore,
)
from membership_sync.shared import ConfigurationError

ROSTER_MAPPING = ColumnMapping.from_dict({"Name": "latin_name", "Email": "email", "ID": "membership_number"})


# ---------------------------------------------------------------------------
# PgConfigStore
# ---------------------------------------------------------------------------

class TestPgConfigStore:
    def test_absent_config(self, db_conn):
        conn, _ = db_conn
        store = PgConfigStore(conn)
        assert store.get_form_sheet_config() is None
        assert store.get_roster_config() is None

    def test_save_and_load(self, db_conn):
        conn, _ = db_conn
        store = PgConfigStore(conn)
        store.save_sheet_config(KIND_ROSTER, "roster-1", ROSTER_MAPPING, "Members!A:Z")
        cfg = store.get_roster_config()
        assert cfg.resource_id == "roster-1"
        assert cfg.range_spec == "Members!A:Z"
        assert cfg.column_mapping == ROSTER_MAPPING
        assert store.get_form_sheet_config() is None

    def test_newest_version_wins(self, db_conn):
        conn, _ = db_conn
        store = PgConfigStore(conn)
        store.save_sheet_config(KIND_FORM, "form-old", ColumnMapping.from_dict({"Email": "email"}))
        store.save_sheet_config(KIND_FORM, "form-new", ColumnMapping.from_dict({"E-mail": "email"}))
        cfg = store.get_form_sheet_config()
        assert cfg.resource_id == "form-new"
        assert cfg.column_mapping.headers == ["E-mail"]

    def test_legacy_alias_resolved_on_load(self, db_conn):
        conn, _ = db_conn
        conn.execute(
            "INSERT INTO sheet_config (kind, resource_id, column_mapping) VALUES ('form', 'f', %s::jsonb)",
            ('{"Arabic Name": "ar_name", "Email": "email"}',),
        )
        cfg = PgConfigStore(conn).get_form_sheet_config()
        assert cfg.column_mapping.header_to_field["Arabic Name"] == "native_name"

    def test_stored_duplicate_field_is_configuration_error(self, db_conn):
        conn, _ = db_conn
        conn.execute(
            "INSERT INTO sheet_config (kind, resource_id, column_mapping) VALUES ('roster', 'r', %s::jsonb)",
            ('{"Email": "email", "Mail": "email"}',),
        )
        with pytest.raises(ConfigurationError):
            PgConfigStore(conn).get_roster_config()

    def test_rejects_unknown_kind(self, db_conn):
        conn, _ = db_conn
        with pytest.raises(ConfigurationError):
            PgConfigStore(conn).save_sheet_config("ledger", "x", ROSTER_MAPPING)

    def test_rejects_blank_resource_id(self, db_conn):
        conn, _ = db_conn
        with pytest.raises(ConfigurationError):
            PgConfigStore(conn).save_sheet_config(KIND_ROSTER, "", ROSTER_MAPPING)


# ---------------------------------------------------------------------------
# PgAuditSink
# ---------------------------------------------------------------------------

class TestPgAuditSink:
    def test_append_and_recent(self, db_conn):
        conn, _ = db_conn
        sink = PgAuditSink(conn)
        sink.append(ACTOR_SYSTEM, "process_registrations", "success")
        sink.append("2501002", "new_registration_processed", "success")
        entries = sink.recent()
        assert [(e.actor, e.action) for e in entries] == [
            ("2501002", "new_registration_processed"),
            (ACTOR_SYSTEM, "process_registrations"),
        ]
        assert entries[0].created_at is not None

    def test_limit_offset(self, db_conn):
        conn, _ = db_conn
        sink = PgAuditSink(conn)
        for i in range(5):
            sink.append(ACTOR_SYSTEM, f"a{i}", "success")
        assert [e.action for e in sink.recent(limit=2, offset=1)] == ["a3", "a2"]
