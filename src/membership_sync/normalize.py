"""Normalization functions for spreadsheet cell values.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: phone keys
# ---------------------------------------------------------------------------

def exact_phone(value: str | None) -> str | None:
    """Phone key used for exact matching: the cell text, trimmed.

    Formatting is significant: "555-0101" and "5550101" are different keys.
    """
    return trim(value)


def normalize_phone_digits(value: str | None) -> str | None:
    """Digits-only phone key, or None when fewer than 7 digits remain.

    A leading "00" international prefix is dropped so "00905551234567"
    and "+905551234567" share a key.
    """
    v = trim(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    if digits.startswith("00"):
        digits = digits[2:]
    if len(digits) < 7:
        return None
    return digits


# ---------------------------------------------------------------------------
# Helper: parse_name_parts
# ---------------------------------------------------------------------------

def parse_name_parts(full_name: str | None) -> tuple[str | None, str | None]:
    """Split a full name into (first_name, last_name).

    Supports:
    - "Last, First Middle" → ("First Middle", "Last")
    - "First Last"         → ("First", "Last")
    - Single token         → (token, None)
    """
    v = normalize_space(full_name)
    if not v:
        return (None, None)
    if "," in v:
        parts = v.split(",", 1)
        last = trim(parts[0])
        first = trim(parts[1])
        return (first, last)
    tokens = v.split()
    if len(tokens) == 1:
        return (tokens[0], None)
    return (" ".join(tokens[:-1]), tokens[-1])


# ---------------------------------------------------------------------------
# Helper: country_code
# ---------------------------------------------------------------------------

_COUNTRY_CODES = {
    "turkey": "TR",
    "türkiye": "TR",
    "turkiye": "TR",
    "syria": "SY",
    "saudi arabia": "SA",
    "united arab emirates": "AE",
    "uae": "AE",
    "qatar": "QA",
    "kuwait": "KW",
    "bahrain": "BH",
    "oman": "OM",
    "yemen": "YE",
    "palestine": "PS",
    "jordan": "JO",
    "lebanon": "LB",
    "iraq": "IQ",
    "egypt": "EG",
    "united states": "US",
    "usa": "US",
    "united kingdom": "GB",
    "uk": "GB",
    "germany": "DE",
    "france": "FR",
    "spain": "ES",
    "italy": "IT",
    "canada": "CA",
    "australia": "AU",
    "japan": "JP",
    "china": "CN",
    "india": "IN",
    "brazil": "BR",
    "russia": "RU",
    "netherlands": "NL",
    "sweden": "SE",
    "norway": "NO",
    "denmark": "DK",
    "finland": "FI",
    "poland": "PL",
    "greece": "GR",
    "portugal": "PT",
    "belgium": "BE",
    "austria": "AT",
    "switzerland": "CH",
    "ireland": "IE",
    "czech republic": "CZ",
    "hungary": "HU",
    "romania": "RO",
    "bulgaria": "BG",
    "ukraine": "UA",
}


def country_code(value: str | None, default: str | None = None) -> str | None:
    """Map a country name to an ISO-3166 alpha-2 code.

    Two-letter inputs are treated as codes already and upper-cased.
    Unknown or blank names return ``default``.
    """
    v = normalize_space(value)
    if v is None:
        return default
    if len(v) == 2 and v.isalpha():
        return v.upper()
    return _COUNTRY_CODES.get(v.lower(), default)
