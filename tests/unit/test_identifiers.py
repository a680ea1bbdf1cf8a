"""Unit tests for membership_sync.identifiers."""

from __future__ import annotations

import pytest

from membership_sync.column_mapping import ColumnMapping
from membership_sync.identifiers import (
    FALLBACK_FAIL,
    IdentifierAllocator,
    format_identifier,
    identifier_suffix,
    next_identifier,
    timestamp_identifier,
)
from membership_sync.shared import StoreUnavailable
from membership_sync.tabular_store import InMemoryStore, SheetSnapshot

MAPPING = ColumnMapping.from_dict({"Name": "latin_name", "Email": "email", "ID": "membership_number"})
HEADERS = ["Name", "Email", "ID"]


def _snapshot(*ids: str) -> SheetSnapshot:
    return SheetSnapshot(headers=HEADERS, rows=[["x", f"{i}@x.com", ident] for i, ident in enumerate(ids)])


class _UnreadableStore(InMemoryStore):
    def read_range(self, resource_id, range_spec):
        raise StoreUnavailable("sheets down")


# ---------------------------------------------------------------------------
# format / suffix
# ---------------------------------------------------------------------------

class TestFormatIdentifier:
    def test_pads_to_three(self):
        assert format_identifier("2501", 7) == "2501007"

    def test_widens_past_999(self):
        assert format_identifier("2501", 1000) == "25011000"


class TestIdentifierSuffix:
    def test_parses(self):
        assert identifier_suffix("2501042", "2501") == 42

    def test_other_prefix(self):
        assert identifier_suffix("2401042", "2501") is None

    def test_non_numeric(self):
        assert identifier_suffix("2501abc", "2501") is None

    def test_blank(self):
        assert identifier_suffix("", "2501") is None


# ---------------------------------------------------------------------------
# next_identifier
# ---------------------------------------------------------------------------

class TestNextIdentifier:
    def test_max_plus_one_not_count_plus_one(self):
        roster = _snapshot("2501001", "2501002", "2501005")
        assert next_identifier(roster, MAPPING, "2501") == "2501006"

    def test_empty_roster(self):
        assert next_identifier(SheetSnapshot(), MAPPING, "2501") == "2501001"

    def test_ignores_other_prefixes(self):
        roster = _snapshot("2401900", "2501003")
        assert next_identifier(roster, MAPPING, "2501") == "2501004"

    def test_counts_already_allocated(self):
        roster = _snapshot("2501001")
        assert next_identifier(roster, MAPPING, "2501", allocated=["2501004"]) == "2501005"

    def test_rollover_past_999(self):
        roster = _snapshot("2501999")
        assert next_identifier(roster, MAPPING, "2501") == "25011000"

    def test_identifier_column_absent(self):
        roster = SheetSnapshot(headers=["Name"], rows=[["x"]])
        assert next_identifier(roster, MAPPING, "2501") == "2501001"


class TestTimestampIdentifier:
    def test_last_six_millis_digits(self):
        assert timestamp_identifier("2501", 1700000123.5) == "2501123500"


# ---------------------------------------------------------------------------
# IdentifierAllocator
# ---------------------------------------------------------------------------

class TestIdentifierAllocator:
    def test_sequential_allocations_are_distinct_without_roster_change(self):
        store = InMemoryStore(sheets={"roster": [HEADERS, ["Alice", "a@x.com", "2501001"]]})
        alloc = IdentifierAllocator(store, "roster", "A:Z", MAPPING, "2501")
        got = [alloc.allocate() for _ in range(5)]
        assert got == ["2501002", "2501003", "2501004", "2501005", "2501006"]
        assert len(set(got)) == 5

    def test_rereads_roster(self):
        store = InMemoryStore(sheets={"roster": [HEADERS]})
        alloc = IdentifierAllocator(store, "roster", "A:Z", MAPPING, "2501")
        assert alloc.allocate() == "2501001"
        store.sheets["roster"].append(["Zed", "z@x.com", "2501010"])
        assert alloc.allocate() == "2501011"

    def test_timestamp_fallback_on_store_failure(self):
        alloc = IdentifierAllocator(
            _UnreadableStore(), "roster", "A:Z", MAPPING, "2501", clock=lambda: 1700000123.5
        )
        assert alloc.allocate() == "2501123500"
        assert alloc.fallbacks == 1

    def test_timestamp_fallback_stays_unique_within_run(self):
        alloc = IdentifierAllocator(
            _UnreadableStore(), "roster", "A:Z", MAPPING, "2501", clock=lambda: 1700000123.5
        )
        first, second = alloc.allocate(), alloc.allocate()
        assert first != second

    def test_fail_policy_raises(self):
        alloc = IdentifierAllocator(_UnreadableStore(), "roster", "A:Z", MAPPING, "2501", fallback=FALLBACK_FAIL)
        with pytest.raises(StoreUnavailable):
            alloc.allocate()
        assert alloc.allocated == []

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            IdentifierAllocator(InMemoryStore(), "roster", "A:Z", MAPPING, "2501", fallback="guess")

    def test_sequence_continues_past_timestamp_identifier(self):
        class FailsOnceStore(InMemoryStore):
            reads = 0

            def read_range(self, resource_id, range_spec):
                self.reads += 1
                if self.reads == 1:
                    raise StoreUnavailable("sheets down")
                return super().read_range(resource_id, range_spec)

        store = FailsOnceStore(sheets={"roster": [HEADERS, ["Alice", "a@x.com", "2501001"]]})
        alloc = IdentifierAllocator(store, "roster", "A:Z", MAPPING, "2501", clock=lambda: 1700000123.5)
        assert alloc.allocate() == "2501123500"
        assert alloc.allocate() == "2501123501"

    def test_roster_with_timestamp_identifier_shifts_next_run(self):
        store = InMemoryStore(sheets={"roster": [HEADERS, ["Alice", "a@x.com", "2501001"], ["Bob", "b@x.com", "2501123500"]]})
        alloc = IdentifierAllocator(store, "roster", "A:Z", MAPPING, "2501")
        assert alloc.allocate() == "2501123501"
