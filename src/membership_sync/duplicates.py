"""membership_sync.duplicates

Duplicate detection against the roster.

The index is built once per run from a single roster read and grows in
memory as candidates are accepted, so two submissions in the same run
cannot both be admitted. It is never persisted.

Classification order: email (case-insensitive) first, then phone. The
first hit wins; a conflict on the other key is not reported.

Phone keys default to the trimmed cell text (exact_phone): "555-0101"
and "5550101" do NOT match. Pass phone_key=normalize_phone_digits to
compare digits only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from membership_sync.column_mapping import ColumnMapping
from membership_sync.member_record import MemberRecord, record_from_row
from membership_sync.normalize import exact_phone, normalize_email
from membership_sync.tabular_store import SheetSnapshot

MATCH_EMAIL = "email"
MATCH_PHONE = "phone"


@dataclass(frozen=True)
class New:
    pass


@dataclass(frozen=True)
class Duplicate:
    existing: MemberRecord
    matched_by: str  # MATCH_EMAIL | MATCH_PHONE


@dataclass
class DuplicateIndex:
    phone_key: Callable[[str | None], str | None] = exact_phone
    by_email: dict[str, MemberRecord] = field(default_factory=dict)
    by_phone: dict[str, MemberRecord] = field(default_factory=dict)

    def add(self, record: MemberRecord) -> None:
        """Index a record under its email and phone; earlier entries win."""
        email = normalize_email(record.email)
        if email:
            self.by_email.setdefault(email, record)
        phone = self.phone_key(record.phone)
        if phone:
            self.by_phone.setdefault(phone, record)

    def __len__(self) -> int:
        return len(self.by_email) + len(self.by_phone)


def build_index(
    roster: SheetSnapshot,
    mapping: ColumnMapping,
    phone_key: Callable[[str | None], str | None] = exact_phone,
) -> DuplicateIndex:
    index = DuplicateIndex(phone_key=phone_key)
    for row in roster.rows:
        record = record_from_row(row, roster.headers, mapping)
        if record.email or record.phone:
            index.add(record)
    return index


def classify(candidate: MemberRecord, index: DuplicateIndex) -> New | Duplicate:
    email = normalize_email(candidate.email)
    if email and email in index.by_email:
        return Duplicate(existing=index.by_email[email], matched_by=MATCH_EMAIL)
    phone = index.phone_key(candidate.phone)
    if phone and phone in index.by_phone:
        return Duplicate(existing=index.by_phone[phone], matched_by=MATCH_PHONE)
    return New()
