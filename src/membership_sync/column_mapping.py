"""membership_sync.column_mapping

Translation between spreadsheet header strings and canonical member
field names.

A ColumnMapping is keyed by header: each header maps to at most one
field. Reverse lookups (field → header) return the first header in
mapping order; ColumnMapping.validate() rejects mappings where two
headers claim the same field so that first-match never silently decides.

Header positions are resolved with column_index(): exact, case-sensitive
string match against the sheet's header row, no trimming.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from membership_sync.shared import ConfigurationError

# ---------------------------------------------------------------------------
# Canonical fields
# ---------------------------------------------------------------------------

MEMBER_FIELDS = (
    "membership_number",
    "latin_name",
    "native_name",
    "email",
    "phone",
    "whatsapp",
    "sex",
    "birth_date",
    "country",
    "city",
    "district",
    "university",
    "major",
    "graduation_year",
    "blood_type",
    "password",
)

# Older stored mappings name the native-script name column "ar_name".
FIELD_ALIASES = {"ar_name": "native_name"}

IDENTIFIER_FIELD = "membership_number"
EMAIL_FIELD = "email"


def canonical_field(name: str) -> str:
    return FIELD_ALIASES.get(name, name)


# ---------------------------------------------------------------------------
# ColumnMapping
# ---------------------------------------------------------------------------

@dataclass
class ColumnMapping:
    """header → canonical field name."""

    header_to_field: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "ColumnMapping":
        if not raw:
            return cls()
        return cls(
            header_to_field={
                str(header): canonical_field(str(fname))
                for header, fname in raw.items()
                if fname
            }
        )

    def to_dict(self) -> dict[str, str]:
        return dict(self.header_to_field)

    @property
    def headers(self) -> list[str]:
        return list(self.header_to_field.keys())

    def validate(self) -> None:
        """Raise ConfigurationError on unknown fields or a field mapped twice."""
        seen: dict[str, str] = {}
        for header, fname in self.header_to_field.items():
            if fname not in MEMBER_FIELDS:
                raise ConfigurationError(
                    f"column {header!r} maps to unknown field {fname!r}"
                )
            if fname in seen:
                raise ConfigurationError(
                    f"field {fname!r} is mapped by both {seen[fname]!r} and {header!r}"
                )
            seen[fname] = header


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def field_for_header(mapping: ColumnMapping, header: str) -> str | None:
    return mapping.header_to_field.get(header)


def header_for_field(mapping: ColumnMapping, fname: str) -> str | None:
    for header, mapped in mapping.header_to_field.items():
        if mapped == fname:
            return header
    return None


def column_index(headers: list[str], header: str | None) -> int | None:
    if header is None:
        return None
    try:
        return headers.index(header)
    except ValueError:
        return None


def field_column_index(
    headers: list[str], mapping: ColumnMapping, fname: str
) -> int | None:
    """Position of the column holding fname, or None when unmapped or absent."""
    return column_index(headers, header_for_field(mapping, fname))


def required_column_index(
    headers: list[str], mapping: ColumnMapping, fname: str
) -> int:
    """Like field_column_index, but a missing structural column is a ConfigurationError."""
    header = header_for_field(mapping, fname)
    if header is None:
        raise ConfigurationError(f"no column is mapped to field {fname!r}")
    idx = column_index(headers, header)
    if idx is None:
        raise ConfigurationError(
            f"column {header!r} (field {fname!r}) not found in sheet headers"
        )
    return idx


# ---------------------------------------------------------------------------
# YAML mapping files
# ---------------------------------------------------------------------------

def load_mapping_file(yaml_path: Path) -> ColumnMapping:
    """Load and validate a header → field mapping from a YAML file.

    Raises:
        ConfigurationError: If the file is not a flat mapping or fails validation.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"{yaml_path}: expected a mapping of column header to field name"
        )
    for header, fname in data.items():
        if not isinstance(fname, str):
            raise ConfigurationError(
                f"{yaml_path}: value for {header!r} must be a field name string"
            )
    mapping = ColumnMapping.from_dict(data)
    mapping.validate()
    return mapping
