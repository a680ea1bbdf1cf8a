"""membership_sync.member_record

Canonical member record and the row → record extractor.

Extraction walks the header row by position: a header mapped to a
canonical field contributes the cell at the same index when that cell is
non-blank. Extra cells beyond the header list are ignored; missing
trailing cells read as absent. A record without email or latin_name is
rejected (missing_email is checked first).
"""

from __future__ import annotations

from dataclasses import dataclass, fields

from membership_sync.column_mapping import ColumnMapping, field_for_header
from membership_sync.normalize import trim

REJECT_MISSING_EMAIL = "missing_email"
REJECT_MISSING_NAME = "missing_name"


# ---------------------------------------------------------------------------
# MemberRecord
# ---------------------------------------------------------------------------

@dataclass
class MemberRecord:
    membership_number: str | None = None
    latin_name: str | None = None
    native_name: str | None = None
    email: str | None = None
    phone: str | None = None
    whatsapp: str | None = None
    sex: str | None = None
    birth_date: str | None = None
    country: str | None = None
    city: str | None = None
    district: str | None = None
    university: str | None = None
    major: str | None = None
    graduation_year: str | None = None
    blood_type: str | None = None
    password: str | None = None

    def get(self, fname: str) -> str | None:
        return getattr(self, fname, None)

    def set(self, fname: str, value: str | None) -> None:
        if fname not in _FIELD_NAMES:
            raise KeyError(fname)
        setattr(self, fname, value)

    def to_dict(self, include_password: bool = False) -> dict[str, str]:
        """Populated fields only; the password is left out unless asked for."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
            and (include_password or f.name != "password")
        }


_FIELD_NAMES = frozenset(f.name for f in fields(MemberRecord))


@dataclass(frozen=True)
class Rejected:
    reason: str


# ---------------------------------------------------------------------------
# Row → record
# ---------------------------------------------------------------------------

def record_from_row(
    row: list[str],
    headers: list[str],
    mapping: ColumnMapping,
) -> MemberRecord:
    """Project a row onto a MemberRecord without validating required fields."""
    record = MemberRecord()
    for idx, header in enumerate(headers):
        fname = field_for_header(mapping, header)
        if fname is None or fname not in _FIELD_NAMES:
            continue
        if idx >= len(row):
            continue
        value = trim(row[idx])
        if value is not None:
            record.set(fname, value)
    return record


def extract(
    row: list[str],
    headers: list[str],
    mapping: ColumnMapping,
) -> MemberRecord | Rejected:
    """Build a candidate MemberRecord from a form row, or Rejected(reason).

    The identifier is always left unset: allocation happens later.
    """
    record = record_from_row(row, headers, mapping)
    record.membership_number = None
    if not record.email:
        return Rejected(REJECT_MISSING_EMAIL)
    if not record.latin_name:
        return Rejected(REJECT_MISSING_NAME)
    return record


# ---------------------------------------------------------------------------
# Record → row
# ---------------------------------------------------------------------------

def record_to_row(
    record: MemberRecord,
    headers: list[str],
    mapping: ColumnMapping,
) -> list[str]:
    """Lay a record out under the given header row; unmapped columns stay blank."""
    out: list[str] = []
    for header in headers:
        fname = field_for_header(mapping, header)
        value = record.get(fname) if fname else None
        out.append(value or "")
    return out
