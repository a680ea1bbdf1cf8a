"""Unit tests for membership_sync.roster (InMemoryStore; no network)."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from membership_sync.column_mapping import ColumnMapping
from membership_sync.config_store import ACTOR_ADMIN, OUTCOME_SUCCESS, ListAuditSink, SheetConfig
from membership_sync.member_record import MemberRecord
from membership_sync.provisioning import Account
from membership_sync.roster import (
    append_member,
    find_member,
    list_members,
    lookup_sheet_columns,
    remove_member,
    set_member_password,
    update_member,
)
from membership_sync.shared import ConfigurationError, ExtractionRejected, MemberNotFound
from membership_sync.tabular_store import InMemoryStore

MAPPING = ColumnMapping.from_dict({
    "ID": "membership_number",
    "Name": "latin_name",
    "Email": "email",
    "Phone": "phone",
    "WhatsApp": "whatsapp",
    "Password": "password",
})
HEADERS = ["ID", "Name", "Email", "Phone", "WhatsApp", "Password"]


def _store() -> InMemoryStore:
    return InMemoryStore(sheets={"roster": [
        list(HEADERS),
        ["2501001", "Alice", "Alice@x.com", "555-0101", "@alice", "old1"],
        ["2501002", "Bob", "bob@x.com", "555-0102", "", "old2"],
        ["2501003", "Carol", "carol@x.com"],
    ]})


CONFIG = SheetConfig("roster", MAPPING)


# ---------------------------------------------------------------------------
# append_member
# ---------------------------------------------------------------------------

class TestAppendMember:
    def test_returns_sheet_row_number(self):
        store = _store()
        row = append_member(store, CONFIG, MemberRecord(membership_number="2501004", latin_name="Dan", email="d@x.com"))
        assert row == 5
        assert store.sheets["roster"][4] == ["2501004", "Dan", "d@x.com", "", "", ""]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestListMembers:
    def test_projects_every_row(self):
        members = list_members(_store(), CONFIG)
        assert [m.membership_number for m in members] == ["2501001", "2501002", "2501003"]
        assert members[2].phone is None

    def test_empty_roster(self):
        assert list_members(InMemoryStore(), CONFIG) == []


class TestFindMember:
    @pytest.mark.parametrize("identifier", ["alice@X.com", "555-0101", "@alice", "2501001", " 2501001 "])
    def test_finds_by_any_login_field(self, identifier):
        assert find_member(_store(), CONFIG, identifier).latin_name == "Alice"

    def test_not_found(self):
        assert find_member(_store(), CONFIG, "nobody@x.com") is None

    def test_blank(self):
        assert find_member(_store(), CONFIG, "  ") is None


class TestLookupSheetColumns:
    def test_letters(self):
        cols = lookup_sheet_columns(_store(), "roster")
        assert [(c.letter, c.name) for c in cols][:3] == [("A", "ID"), ("B", "Name"), ("C", "Email")]

    def test_skips_blank_headers(self):
        store = InMemoryStore(sheets={"s": [["Name", "", "Email"]]})
        assert [(c.letter, c.name) for c in lookup_sheet_columns(store, "s")] == [("A", "Name"), ("C", "Email")]

    def test_past_z(self):
        store = InMemoryStore(sheets={"s": [[f"h{i}" for i in range(28)]]})
        assert lookup_sheet_columns(store, "s")[-1].letter == "AB"


# ---------------------------------------------------------------------------
# set_member_password
# ---------------------------------------------------------------------------

class TestSetMemberPassword:
    def test_writes_single_cell(self):
        store = _store()
        audit = ListAuditSink()
        address = set_member_password(store, CONFIG, "2501002", "N3w!pass", audit)
        assert address == "F3"
        assert store.sheets["roster"][2][5] == "N3w!pass"
        assert store.writes == [("write_cell", "roster", "F3")]
        assert [(e.actor, e.action, e.outcome) for e in audit.entries] == [
            (ACTOR_ADMIN, "change_password_2501002", OUTCOME_SUCCESS)
        ]

    def test_short_row_is_extended(self):
        store = _store()
        set_member_password(store, CONFIG, "2501003", "pw", ListAuditSink())
        assert store.sheets["roster"][3][5] == "pw"

    def test_sheet_qualified_range(self):
        store = _store()
        config = SheetConfig("roster", MAPPING, range_spec="Members!A:Z")
        assert set_member_password(store, config, "2501001", "pw", ListAuditSink()) == "Members!F2"

    def test_updates_platform_account(self):
        provisioner = MagicMock()
        provisioner.find_by_username.return_value = Account(id=7)
        set_member_password(_store(), CONFIG, "2501001", "pw", ListAuditSink(), provisioner=provisioner)
        provisioner.find_by_username.assert_called_once_with("2501001")
        provisioner.update_credential.assert_called_once_with(7, "pw")

    def test_no_platform_account(self):
        provisioner = MagicMock()
        provisioner.find_by_username.return_value = None
        set_member_password(_store(), CONFIG, "2501001", "pw", ListAuditSink(), provisioner=provisioner)
        provisioner.update_credential.assert_not_called()

    def test_unknown_member(self):
        with pytest.raises(MemberNotFound):
            set_member_password(_store(), CONFIG, "2509999", "pw", ListAuditSink())

    def test_no_password_column(self):
        mapping = ColumnMapping.from_dict({"ID": "membership_number", "Email": "email"})
        with pytest.raises(ConfigurationError):
            set_member_password(_store(), SheetConfig("roster", mapping), "2501001", "pw", ListAuditSink())


# ---------------------------------------------------------------------------
# update_member
# ---------------------------------------------------------------------------

class TestUpdateMember:
    def test_rewrites_row(self):
        store = _store()
        audit = ListAuditSink()
        updated = update_member(store, CONFIG, "2501002", {"phone": "555-9999", "latin_name": "Robert"}, audit)
        assert updated.latin_name == "Robert"
        assert store.sheets["roster"][2][:4] == ["2501002", "Robert", "bob@x.com", "555-9999"]
        assert store.sheets["roster"][1][1] == "Alice"
        assert audit.entries[0].action == "update_member_2501002"

    def test_mirrors_to_platform(self):
        provisioner = MagicMock()
        provisioner.default_country = None
        provisioner.find_by_username.return_value = Account(id=7)
        update_member(_store(), CONFIG, "2501002", {"email": "rob@x.com", "password": "pw2"},
                      ListAuditSink(), provisioner=provisioner)
        account_id, changes = provisioner.update_account.call_args.args
        assert account_id == 7
        assert changes == {"email": "rob@x.com", "password": "pw2"}

    def test_unknown_field(self):
        with pytest.raises(ConfigurationError):
            update_member(_store(), CONFIG, "2501002", {"shoe_size": "42"}, ListAuditSink())

    def test_identifier_is_immutable(self):
        with pytest.raises(ConfigurationError):
            update_member(_store(), CONFIG, "2501002", {"membership_number": "2501999"}, ListAuditSink())

    def test_blank_email_rejected(self):
        store = _store()
        with pytest.raises(ExtractionRejected) as exc_info:
            update_member(store, CONFIG, "2501002", {"email": "  "}, ListAuditSink())
        assert exc_info.value.reason == "missing_email"
        assert store.writes == []

    def test_unknown_member(self):
        with pytest.raises(MemberNotFound):
            update_member(_store(), CONFIG, "2509999", {"phone": "1"}, ListAuditSink())


# ---------------------------------------------------------------------------
# remove_member
# ---------------------------------------------------------------------------

class TestRemoveMember:
    def test_drops_row(self):
        store = _store()
        audit = ListAuditSink()
        remove_member(store, CONFIG, "2501002", audit)
        assert [r[0] for r in store.sheets["roster"]] == ["ID", "2501001", "2501003"]
        assert audit.entries[0].action == "delete_member_2501002"

    def test_deletes_platform_account(self):
        provisioner = MagicMock()
        provisioner.find_by_username.return_value = Account(id=7)
        remove_member(_store(), CONFIG, "2501002", ListAuditSink(), provisioner=provisioner)
        provisioner.delete_account.assert_called_once_with(7)

    def test_unknown_member_leaves_roster(self):
        store = _store()
        with pytest.raises(MemberNotFound):
            remove_member(store, CONFIG, "2509999", ListAuditSink())
        assert store.writes == []
