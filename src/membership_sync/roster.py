"""membership_sync.roster

Roster operations built on the tabular store contract.

Every multi-field mutation here is read-full-range → modify in memory →
overwrite-full-range. The store has no row-level update and no
concurrency token, so a write made by anyone else between our read and
our overwrite is lost (last writer wins). Callers must keep a single
writer; nothing here can detect the race.

set_member_password() is the exception: it rewrites exactly one cell so
concurrent edits to other columns survive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from membership_sync.column_mapping import (
    EMAIL_FIELD,
    IDENTIFIER_FIELD,
    MEMBER_FIELDS,
    field_column_index,
    required_column_index,
)
from membership_sync.config_store import (
    ACTOR_ADMIN,
    OUTCOME_SUCCESS,
    AuditSink,
    SheetConfig,
)
from membership_sync.member_record import (
    REJECT_MISSING_EMAIL,
    MemberRecord,
    record_from_row,
    record_to_row,
)
from membership_sync.normalize import normalize_email, trim
from membership_sync.provisioning import MoodleClient, account_fields
from membership_sync.shared import ConfigurationError, ExtractionRejected, MemberNotFound
from membership_sync.tabular_store import (
    HEADER_RANGE,
    SheetSnapshot,
    TabularStore,
    cell_address,
    cell_value,
    column_letter,
    parse_range,
)

log = logging.getLogger(__name__)

# Fields find_member() accepts as a login identifier
LOOKUP_FIELDS = ("email", "phone", "whatsapp", "membership_number")


@dataclass(frozen=True)
class SheetColumn:
    letter: str
    name: str
    index: int


# ---------------------------------------------------------------------------
# Append (used by the registration job)
# ---------------------------------------------------------------------------

def append_member(
    store: TabularStore,
    config: SheetConfig,
    record: MemberRecord,
) -> int:
    """Append record as a new roster row; return its 1-based sheet row number.

    An empty roster gets a header row built from the mapping first.
    """
    mapping = config.column_mapping
    data = store.read_range(config.resource_id, config.range_spec)
    if data.is_empty:
        headers = mapping.headers
        rows: list[list[str]] = []
    else:
        headers = data.headers
        rows = data.rows
    new_row = record_to_row(record, headers, mapping)
    store.overwrite_range(
        config.resource_id, config.range_spec, [headers, *rows, new_row]
    )
    return len(rows) + 2


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def list_members(store: TabularStore, config: SheetConfig) -> list[MemberRecord]:
    data = store.read_range(config.resource_id, config.range_spec)
    return [
        record_from_row(row, data.headers, config.column_mapping)
        for row in data.rows
    ]


def find_member(
    store: TabularStore,
    config: SheetConfig,
    identifier: str,
) -> MemberRecord | None:
    """First member whose email, phone, handle or membership number equals identifier."""
    wanted = trim(identifier)
    if wanted is None:
        return None
    wanted_email = normalize_email(wanted)
    for record in list_members(store, config):
        if record.email and normalize_email(record.email) == wanted_email:
            return record
        for fname in LOOKUP_FIELDS:
            if fname != EMAIL_FIELD and record.get(fname) == wanted:
                return record
    return None


def lookup_sheet_columns(store: TabularStore, resource_id: str) -> list[SheetColumn]:
    """Non-blank header cells of row 1 with their column letters."""
    data = store.read_range(resource_id, HEADER_RANGE)
    return [
        SheetColumn(letter=column_letter(idx), name=name, index=idx)
        for idx, name in enumerate(data.headers)
        if trim(name)
    ]


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def _locate(
    data: SheetSnapshot,
    config: SheetConfig,
    membership_number: str,
) -> tuple[int, int]:
    """Return (row offset in data.rows, identifier column index)."""
    id_idx = required_column_index(data.headers, config.column_mapping, IDENTIFIER_FIELD)
    for offset, row in enumerate(data.rows):
        if cell_value(row, id_idx) == membership_number:
            return offset, id_idx
    raise MemberNotFound(f"membership number {membership_number!r} not in roster")


def _first_row_number(config: SheetConfig) -> int:
    parts = parse_range(config.range_spec)
    return (parts["first_row"] if parts and parts["first_row"] else 1)


def set_member_password(
    store: TabularStore,
    config: SheetConfig,
    membership_number: str,
    new_password: str,
    audit: AuditSink,
    provisioner: MoodleClient | None = None,
) -> str:
    """Overwrite only the password cell; return the A1 address written."""
    data = store.read_range(config.resource_id, config.range_spec)
    offset, _ = _locate(data, config, membership_number)
    pw_idx = required_column_index(data.headers, config.column_mapping, "password")
    parts = parse_range(config.range_spec)
    sheet = parts["sheet"] if parts else None
    # header occupies the first row of the range; data starts one below
    row_number = _first_row_number(config) + 1 + offset
    address = cell_address(pw_idx, row_number, sheet)
    store.write_cell(config.resource_id, address, new_password)

    if provisioner is not None:
        account = provisioner.find_by_username(membership_number)
        if account is not None:
            provisioner.update_credential(account.id, new_password)
        else:
            log.info("No platform account for %s; roster password updated only", membership_number)

    audit.append(ACTOR_ADMIN, f"change_password_{membership_number}", OUTCOME_SUCCESS)
    return address


def update_member(
    store: TabularStore,
    config: SheetConfig,
    membership_number: str,
    updates: dict[str, Any],
    audit: AuditSink,
    provisioner: MoodleClient | None = None,
) -> MemberRecord:
    """Apply field updates to one roster row via whole-range rewrite."""
    unknown = [f for f in updates if f not in MEMBER_FIELDS]
    if unknown:
        raise ConfigurationError(f"unknown member fields: {sorted(unknown)}")
    if IDENTIFIER_FIELD in updates and updates[IDENTIFIER_FIELD] != membership_number:
        raise ConfigurationError("membership numbers cannot be changed")
    if EMAIL_FIELD in updates and not trim(updates[EMAIL_FIELD]):
        raise ExtractionRejected(REJECT_MISSING_EMAIL)

    mapping = config.column_mapping
    data = store.read_range(config.resource_id, config.range_spec)
    offset, _ = _locate(data, config, membership_number)
    row = list(data.rows[offset])
    for fname, value in updates.items():
        idx = field_column_index(data.headers, mapping, fname)
        if idx is None:
            log.warning("Field %s has no roster column; update skipped", fname)
            continue
        while len(row) <= idx:
            row.append("")
        row[idx] = "" if value is None else str(value)
    data.rows[offset] = row
    store.overwrite_range(config.resource_id, config.range_spec, data.to_values())
    updated = record_from_row(row, data.headers, mapping)

    if provisioner is not None:
        account = provisioner.find_by_username(membership_number)
        if account is not None:
            changed = MemberRecord()
            for fname in updates:
                if fname != "password":
                    changed.set(fname, updated.get(fname))
            changes = account_fields(changed, provisioner.default_country)
            if updates.get("password"):
                changes["password"] = str(updates["password"])
            provisioner.update_account(account.id, changes)

    audit.append(ACTOR_ADMIN, f"update_member_{membership_number}", OUTCOME_SUCCESS)
    return updated


def remove_member(
    store: TabularStore,
    config: SheetConfig,
    membership_number: str,
    audit: AuditSink,
    provisioner: MoodleClient | None = None,
) -> None:
    """Drop one roster row via whole-range rewrite; delete the platform account too."""
    data = store.read_range(config.resource_id, config.range_spec)
    offset, _ = _locate(data, config, membership_number)
    del data.rows[offset]
    store.overwrite_range(config.resource_id, config.range_spec, data.to_values())

    if provisioner is not None:
        account = provisioner.find_by_username(membership_number)
        if account is not None:
            provisioner.delete_account(account.id)

    audit.append(ACTOR_ADMIN, f"delete_member_{membership_number}", OUTCOME_SUCCESS)
