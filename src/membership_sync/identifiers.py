"""membership_sync.identifiers

Membership identifier allocation: prefix + zero-padded sequence number.

next_identifier() is pure: it scans the identifier column of a roster
snapshot for cells starting with the prefix, takes the highest numeric
suffix (also counting identifiers already handed out this run) and
returns max + 1, padded to at least 3 digits. Padding widens past 999
rather than truncating.

IdentifierAllocator wraps it for one run: it re-reads the roster on
every call and remembers what it has allocated. When the roster read
fails it falls back to a timestamp-derived suffix instead of failing the
row. That fallback is not guaranteed unique across concurrent runs; use
fallback="fail" to fail the row instead.

A timestamp identifier is remembered like any other allocation, so the
next successful scan in the same run continues from its six-digit
suffix. Once it is written to the roster, later runs continue from it
too: one fallback permanently moves the sequence past that suffix.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from membership_sync.column_mapping import IDENTIFIER_FIELD, ColumnMapping, field_column_index
from membership_sync.normalize import trim
from membership_sync.shared import StoreUnavailable
from membership_sync.tabular_store import SheetSnapshot, TabularStore, cell_value

log = logging.getLogger(__name__)

IDENTIFIER_WIDTH = 3
FALLBACK_TIMESTAMP = "timestamp"
FALLBACK_FAIL = "fail"


def format_identifier(prefix: str, number: int) -> str:
    return f"{prefix}{number:0{IDENTIFIER_WIDTH}d}"


def identifier_suffix(value: str | None, prefix: str) -> int | None:
    """Numeric suffix of value after prefix, or None when it does not parse."""
    v = trim(value)
    if v is None or not v.startswith(prefix):
        return None
    suffix = v[len(prefix):]
    if not suffix.isdigit():
        return None
    return int(suffix)


def next_identifier(
    roster: SheetSnapshot,
    mapping: ColumnMapping,
    prefix: str,
    allocated: Iterable[str] = (),
) -> str:
    highest = 0
    idx = field_column_index(roster.headers, mapping, IDENTIFIER_FIELD)
    if idx is not None:
        for row in roster.rows:
            n = identifier_suffix(cell_value(row, idx), prefix)
            if n is not None and n > highest:
                highest = n
    for ident in allocated:
        n = identifier_suffix(ident, prefix)
        if n is not None and n > highest:
            highest = n
    return format_identifier(prefix, highest + 1)


def timestamp_identifier(prefix: str, now: float) -> str:
    """prefix + last 6 digits of the epoch-millisecond clock."""
    millis = str(int(now * 1000))
    return f"{prefix}{millis[-6:]}"


class IdentifierAllocator:
    """Run-scoped allocator; one instance per reconciliation run."""

    def __init__(
        self,
        store: TabularStore,
        resource_id: str,
        range_spec: str,
        mapping: ColumnMapping,
        prefix: str,
        fallback: str = FALLBACK_TIMESTAMP,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if fallback not in (FALLBACK_TIMESTAMP, FALLBACK_FAIL):
            raise ValueError(f"unknown identifier fallback {fallback!r}")
        self._store = store
        self._resource_id = resource_id
        self._range_spec = range_spec
        self._mapping = mapping
        self.prefix = prefix
        self.fallback = fallback
        self._clock = clock
        self.allocated: list[str] = []
        self.fallbacks = 0

    def allocate(self) -> str:
        try:
            roster = self._store.read_range(self._resource_id, self._range_spec)
        except StoreUnavailable as exc:
            if self.fallback == FALLBACK_FAIL:
                raise
            ident = timestamp_identifier(self.prefix, self._clock())
            while ident in self.allocated:
                ident = format_identifier(
                    self.prefix, (identifier_suffix(ident, self.prefix) or 0) + 1
                )
            self.fallbacks += 1
            log.warning(
                "Roster scan failed (%s); using timestamp identifier %s", exc, ident
            )
        else:
            ident = next_identifier(roster, self._mapping, self.prefix, self.allocated)
        self.allocated.append(ident)
        return ident
