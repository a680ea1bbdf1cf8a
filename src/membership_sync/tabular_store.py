"""membership_sync.tabular_store

Read/write access to rectangular cell ranges in a spreadsheet resource.

Contract (every implementation):
  - read_range(resource_id, range_spec)       → SheetSnapshot (empty when no data)
  - overwrite_range(resource_id, range_spec, rows)
        replaces the whole addressed range; rows[0] is the header row by
        caller convention; rows below the written block are cleared.
        Last writer wins: there is no concurrency token.
  - write_cell(resource_id, cell_address, value)
        narrow single-cell update that leaves other columns untouched.

Transport/auth failures raise StoreUnavailable. "No data" never raises.

Implementations:
  - GoogleSheetsStore : Sheets v4 REST API over requests, service-account
    bearer token held as an explicit Session value.
  - InMemoryStore     : dict-backed store for tests and local runs.
"""

from __future__ import annotations

import logging
import re
import time
import urllib.parse
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, Callable, Protocol

import requests

from membership_sync.shared import ConfigurationError, StoreUnavailable

log = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
SHEETS_SCOPES = ("https://www.googleapis.com/auth/spreadsheets",)
DEFAULT_RANGE = "A:Z"
HEADER_RANGE = "1:1"

_RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})


# ---------------------------------------------------------------------------
# SheetSnapshot
# ---------------------------------------------------------------------------

@dataclass
class SheetSnapshot:
    """Header row plus data rows, aligned by position.

    Row cell i belongs to header i. Rows may be shorter than the header
    list; missing trailing cells read as empty.
    """

    headers: list[str] = field(default_factory=list)
    rows: list[list[str]] = field(default_factory=list)

    @classmethod
    def from_values(cls, values: list[list[Any]] | None) -> "SheetSnapshot":
        if not values:
            return cls()
        headers = ["" if v is None else str(v) for v in values[0]]
        rows = [["" if v is None else str(v) for v in row] for row in values[1:]]
        return cls(headers=headers, rows=rows)

    @property
    def is_empty(self) -> bool:
        return not self.headers and not self.rows

    def to_values(self) -> list[list[str]]:
        if self.is_empty:
            return []
        return [list(self.headers)] + [list(r) for r in self.rows]


def cell_value(row: list[str], index: int) -> str:
    """Cell at index, or "" when the row is shorter."""
    return row[index] if 0 <= index < len(row) else ""


# ---------------------------------------------------------------------------
# A1 notation helpers
# ---------------------------------------------------------------------------

_RANGE_RE = re.compile(
    r"^(?:(?P<sheet>[^!]+)!)?"
    r"(?P<c1>[A-Z]*)(?P<r1>\d*):(?P<c2>[A-Z]*)(?P<r2>\d*)$"
)
_CELL_RE = re.compile(r"^(?:(?P<sheet>[^!]+)!)?(?P<col>[A-Z]+)(?P<row>\d+)$")


def column_letter(index: int) -> str:
    """0 → "A", 25 → "Z", 26 → "AA"."""
    if index < 0:
        raise ValueError(f"column index must be >= 0, got {index}")
    letters = ""
    n = index + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def column_number(letters: str) -> int:
    """Inverse of column_letter: "A" → 0, "AA" → 26."""
    n = 0
    for ch in letters.upper():
        n = n * 26 + (ord(ch) - 64)
    return n - 1


def cell_address(column: int, row_number: int, sheet: str | None = None) -> str:
    """A1 address for a 0-based column index and a 1-based row number."""
    addr = f"{column_letter(column)}{row_number}"
    return f"{sheet}!{addr}" if sheet else addr


def parse_range(range_spec: str) -> dict[str, Any] | None:
    """Split an A1 range into its parts, or None when it is not a two-ended range.

    Returns {"sheet", "first_col", "last_col", "first_row", "last_row"};
    absent parts are None.
    """
    m = _RANGE_RE.match(range_spec.strip())
    if not m:
        return None
    return {
        "sheet": m.group("sheet"),
        "first_col": m.group("c1") or None,
        "last_col": m.group("c2") or None,
        "first_row": int(m.group("r1")) if m.group("r1") else None,
        "last_row": int(m.group("r2")) if m.group("r2") else None,
    }


def tail_range(range_spec: str, rows_written: int) -> str | None:
    """Range covering everything below a block of rows_written rows.

    Only defined for column-bounded ranges ("A:Z", "Roster!A1:Z").
    """
    parts = parse_range(range_spec)
    if not parts or not parts["first_col"] or not parts["last_col"]:
        return None
    if parts["last_row"] is not None:
        return None
    start_row = (parts["first_row"] or 1) + rows_written
    tail = f"{parts['first_col']}{start_row}:{parts['last_col']}"
    return f"{parts['sheet']}!{tail}" if parts["sheet"] else tail


# ---------------------------------------------------------------------------
# Session (bearer token with expiry)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Session:
    access_token: str
    expires_at: float  # epoch seconds


def ensure_valid(
    session: Session | None,
    mint: Callable[[], Session],
    now: float | None = None,
    skew_seconds: float = 60.0,
) -> Session:
    """Return session unchanged while it is valid, otherwise a freshly minted one."""
    now = time.time() if now is None else now
    if session is not None and session.expires_at - skew_seconds > now:
        return session
    return mint()


def service_account_minter(
    info: dict[str, Any],
    scopes: tuple[str, ...] = SHEETS_SCOPES,
) -> Callable[[], Session]:
    """Build a mint() callable from service-account JSON (already parsed)."""
    import google.auth.exceptions
    import google.auth.transport.requests
    from google.oauth2 import service_account

    try:
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=list(scopes)
        )
    except (ValueError, KeyError) as exc:
        raise ConfigurationError(f"invalid service account credentials: {exc}") from exc

    def mint() -> Session:
        try:
            credentials.refresh(google.auth.transport.requests.Request())
        except google.auth.exceptions.GoogleAuthError as exc:
            log.error("Service account token refresh failed: %s", exc)
            raise StoreUnavailable(f"token refresh failed: {exc}") from exc
        expiry = credentials.expiry
        if expiry is None:
            expires_at = time.time() + 3600
        else:
            expires_at = expiry.replace(tzinfo=timezone.utc).timestamp()
        return Session(access_token=credentials.token, expires_at=expires_at)

    return mint


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------

class TabularStore(Protocol):
    def read_range(self, resource_id: str, range_spec: str) -> SheetSnapshot:
        ...

    def overwrite_range(
        self, resource_id: str, range_spec: str, rows: list[list[str]]
    ) -> None:
        ...

    def write_cell(self, resource_id: str, cell_address: str, value: str) -> None:
        ...


# ---------------------------------------------------------------------------
# Google Sheets implementation
# ---------------------------------------------------------------------------

class GoogleSheetsStore:
    """Tabular store over the Sheets v4 values API.

    ``session`` is public and replaced (never mutated) by ensure_valid
    before every call.
    """

    def __init__(
        self,
        mint: Callable[[], Session],
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        http: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        base_url: str = SHEETS_API_BASE,
    ) -> None:
        self._mint = mint
        self.session: Session | None = None
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._http = http or requests.Session()
        self._sleep = sleep
        self._base_url = base_url.rstrip("/")

    def _url(self, resource_id: str, range_spec: str, suffix: str = "") -> str:
        quoted = urllib.parse.quote(range_spec, safe="!:'")
        return f"{self._base_url}/{resource_id}/values/{quoted}{suffix}"

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        attempt = 0
        while True:
            self.session = ensure_valid(self.session, self._mint)
            headers = {"Authorization": f"Bearer {self.session.access_token}"}
            try:
                resp = self._http.request(
                    method, url, headers=headers, timeout=self.timeout, **kwargs
                )
            except requests.RequestException as exc:
                log.error("Sheets %s %s failed: %s", method, url, exc)
                raise StoreUnavailable(f"{method} {url}: {exc}") from exc

            if resp.status_code in _RETRY_STATUSES and attempt < self.max_retries:
                delay = self.backoff_base * (2 ** attempt)
                log.warning(
                    "Sheets %s returned %s; retrying in %.1fs (attempt %d/%d)",
                    method, resp.status_code, delay, attempt + 1, self.max_retries,
                )
                self._sleep(delay)
                attempt += 1
                continue
            if resp.status_code == 401 and attempt < self.max_retries:
                # token revoked/expired early: force a re-mint
                self.session = None
                attempt += 1
                continue
            if resp.status_code >= 400:
                body = resp.text or ""
                log.error(
                    "Sheets %s %s failed: %s %s", method, url, resp.status_code, body[:500]
                )
                raise StoreUnavailable(
                    f"{method} {url}: HTTP {resp.status_code}"
                )
            return resp.json() if resp.content else {}

    def read_range(self, resource_id: str, range_spec: str) -> SheetSnapshot:
        data = self._request("GET", self._url(resource_id, range_spec))
        return SheetSnapshot.from_values(data.get("values"))

    def overwrite_range(
        self, resource_id: str, range_spec: str, rows: list[list[str]]
    ) -> None:
        self._request(
            "PUT",
            self._url(resource_id, range_spec),
            params={"valueInputOption": "USER_ENTERED"},
            json={"range": range_spec, "majorDimension": "ROWS", "values": rows},
        )
        # The values API leaves rows below the written block untouched.
        # Clearing after the write means a failed clear leaves stale rows
        # instead of an empty roster.
        tail = tail_range(range_spec, len(rows))
        if tail:
            self._request("POST", self._url(resource_id, tail, ":clear"), json={})

    def write_cell(self, resource_id: str, cell_address: str, value: str) -> None:
        self._request(
            "PUT",
            self._url(resource_id, cell_address),
            params={"valueInputOption": "USER_ENTERED"},
            json={"range": cell_address, "majorDimension": "ROWS", "values": [[value]]},
        )


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

@dataclass
class InMemoryStore:
    """Dict-backed store. Ranges are interpreted by row bounds only.

    ``writes`` records every mutating call as (operation, resource_id, range).
    """

    sheets: dict[str, list[list[str]]] = field(default_factory=dict)
    writes: list[tuple[str, str, str]] = field(default_factory=list)

    def _row_bounds(self, range_spec: str) -> tuple[int, int | None]:
        parts = parse_range(range_spec)
        if not parts:
            return 0, None
        first = (parts["first_row"] or 1) - 1
        last = parts["last_row"]
        return first, last

    def read_range(self, resource_id: str, range_spec: str) -> SheetSnapshot:
        values = self.sheets.get(resource_id, [])
        first, last = self._row_bounds(range_spec)
        block = values[first:last] if last is not None else values[first:]
        # The Sheets API drops trailing blank rows; mirror that.
        while block and not any(c for c in block[-1]):
            block = block[:-1]
        return SheetSnapshot.from_values([list(r) for r in block])

    def overwrite_range(
        self, resource_id: str, range_spec: str, rows: list[list[str]]
    ) -> None:
        values = self.sheets.setdefault(resource_id, [])
        first, _ = self._row_bounds(range_spec)
        del values[first:]
        while len(values) < first:
            values.append([])
        values.extend([list(r) for r in rows])
        self.writes.append(("overwrite_range", resource_id, range_spec))

    def write_cell(self, resource_id: str, cell_address: str, value: str) -> None:
        m = _CELL_RE.match(cell_address)
        if not m:
            raise ValueError(f"not a single-cell address: {cell_address!r}")
        col = column_number(m.group("col"))
        row_idx = int(m.group("row")) - 1
        values = self.sheets.setdefault(resource_id, [])
        while len(values) <= row_idx:
            values.append([])
        row = values[row_idx]
        while len(row) <= col:
            row.append("")
        row[col] = value
        self.writes.append(("write_cell", resource_id, cell_address))
