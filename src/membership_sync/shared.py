"""membership_sync.shared

Shared utilities used by the reconciliation job and the roster admin
operations. Includes the exception taxonomy, RejectWriter, RunCounters,
and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MembershipSyncError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(MembershipSyncError):
    """A required mapping, column, resource ID or credential is missing or ambiguous."""


class StoreUnavailable(MembershipSyncError):
    """Transport or auth failure talking to the tabular store."""


class ExtractionRejected(MembershipSyncError):
    """A form row lacks a required member field."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ProvisioningError(MembershipSyncError):
    """The learning platform rejected a request (domain error, not transport)."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class ProvisioningUnavailable(MembershipSyncError):
    """Transport failure talking to the learning platform."""


class NotificationError(MembershipSyncError):
    """An outbound message could not be sent."""


class MemberNotFound(MembershipSyncError):
    """No roster row matches the requested membership number or identifier."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


def row_as_dict(row: list[str], headers: list[str]) -> dict[str, str]:
    """Zip a positional row onto its headers for reject output.

    Missing trailing cells become "", extra cells are dropped.
    """
    return {
        header or f"column_{idx + 1}": (row[idx] if idx < len(row) else "")
        for idx, header in enumerate(headers)
    }


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_rejected: int = 0
    rows_failed: int = 0
    new_members: int = 0
    duplicates: int = 0
    duplicates_by_email: int = 0
    duplicates_by_phone: int = 0
    accounts_created: int = 0
    accounts_updated: int = 0
    roster_rows_appended: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    identifier_fallbacks: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    status: str,
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        "status": status,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
