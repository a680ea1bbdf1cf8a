"""membership_sync.reconcile

Registration reconciliation: turn new form submissions into roster
members with learning-platform accounts.

One run:
  1. Load form and roster sheet configuration. Either missing → audit
     'failed_missing_config' and return (not an error).
  2. Read the form responses. No data rows → return.
  3. Read the roster once and build the duplicate index. This read is
     the baseline for the whole run; later roster edits are not seen.
  4. For each form row, in document order:
       extract → rejected? count + reject file, no audit
       classify → duplicate? notify applicant, audit 'duplicate'
                  new?       allocate id, provision account, append to
                             roster, index, send welcome, audit 'success'
     Any exception inside a row fails that row only.

Structural failures (config load, form read, roster read, unresolvable
roster columns) fail the run: audited once at run level and returned in
the RunSummary, never raised.

The roster append is read → append → overwrite of the whole range and is
not atomic. Runs must not overlap.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from membership_sync.column_mapping import (
    EMAIL_FIELD,
    IDENTIFIER_FIELD,
    header_for_field,
    required_column_index,
)
from membership_sync.config_store import (
    ACTOR_SYSTEM,
    OUTCOME_DUPLICATE,
    OUTCOME_FAILED,
    OUTCOME_MISSING_CONFIG,
    OUTCOME_SUCCESS,
    AuditSink,
    ConfigStore,
    SheetConfig,
)
from membership_sync.duplicates import (
    MATCH_EMAIL,
    Duplicate,
    DuplicateIndex,
    build_index,
    classify,
)
from membership_sync.identifiers import FALLBACK_TIMESTAMP, IdentifierAllocator
from membership_sync.member_record import MemberRecord, Rejected, extract
from membership_sync.normalize import exact_phone
from membership_sync.notifications import (
    Notifier,
    deliver,
    duplicate_message,
    welcome_message,
)
from membership_sync.provisioning import AccountProvisioner, generate_temporary_password
from membership_sync.roster import append_member
from membership_sync.shared import (
    ConfigurationError,
    RejectWriter,
    RunCounters,
    row_as_dict,
)
from membership_sync.tabular_store import TabularStore

log = logging.getLogger(__name__)

ACTION_RUN = "process_registrations"
ACTION_NEW = "new_registration_processed"
ACTION_DUPLICATE = "registration_duplicate"
ACTION_ROW_ERROR = "process_registration_error"
ACTION_WELCOME = "welcome_notification"
ACTION_DUPLICATE_NOTICE = "duplicate_notification"
ACTION_IDENTIFIER_FALLBACK = "identifier_timestamp_fallback"

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_MISSING_CONFIG = "missing_config"


@dataclass
class RunSummary:
    run_id: str
    status: str
    counters: RunCounters
    error: str | None = None
    new_identifiers: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Structural checks
# ---------------------------------------------------------------------------

def _require_mapped(config: SheetConfig, label: str, *fnames: str) -> None:
    for fname in fnames:
        if header_for_field(config.column_mapping, fname) is None:
            raise ConfigurationError(f"{label} mapping has no column for {fname!r}")


def _audit_failure(audit: AuditSink, actor: str, action: str, outcome: str = OUTCOME_FAILED) -> None:
    """Record a failure without letting a broken audit sink escape the run."""
    try:
        audit.append(actor, action, outcome)
    except Exception:
        log.exception("Audit append failed for %s/%s", action, outcome)


# ---------------------------------------------------------------------------
# Row paths
# ---------------------------------------------------------------------------

def _handle_duplicate(
    candidate: MemberRecord,
    verdict: Duplicate,
    notifier: Notifier,
    audit: AuditSink,
    counters: RunCounters,
    dry_run: bool,
) -> None:
    existing = verdict.existing
    counters.duplicates += 1
    if verdict.matched_by == MATCH_EMAIL:
        counters.duplicates_by_email += 1
    else:
        counters.duplicates_by_phone += 1
    log.info(
        "Duplicate registration for %s (matched by %s, existing %s)",
        candidate.email, verdict.matched_by, existing.membership_number,
    )
    if dry_run:
        return

    try:
        deliver(notifier, duplicate_message(candidate, existing, verdict.matched_by))
        counters.notifications_sent += 1
    except Exception as exc:
        log.warning("Duplicate notice to %s failed: %s", candidate.email, exc)
        counters.notifications_failed += 1
        counters.warnings.append(f"duplicate notice to {candidate.email} failed: {exc}")
        _audit_failure(audit, ACTOR_SYSTEM, ACTION_DUPLICATE_NOTICE)

    audit.append(
        existing.membership_number or ACTOR_SYSTEM, ACTION_DUPLICATE, OUTCOME_DUPLICATE
    )


def _admit_new(
    candidate: MemberRecord,
    store: TabularStore,
    roster_config: SheetConfig,
    index: DuplicateIndex,
    allocator: IdentifierAllocator,
    provisioner: AccountProvisioner,
    notifier: Notifier,
    audit: AuditSink,
    counters: RunCounters,
    dry_run: bool,
    password_factory: Callable[[], str],
) -> str:
    fallbacks_before = allocator.fallbacks
    ident = allocator.allocate()
    if allocator.fallbacks > fallbacks_before:
        counters.identifier_fallbacks += 1
        counters.warnings.append(f"timestamp identifier {ident} issued for {candidate.email}")
        audit.append(ident, ACTION_IDENTIFIER_FALLBACK, OUTCOME_SUCCESS)

    candidate.membership_number = ident
    candidate.password = password_factory()

    if dry_run:
        index.add(candidate)
        counters.new_members += 1
        log.info("[dry-run] Would register %s as %s", candidate.email, ident)
        return ident

    account = provisioner.find_by_email(candidate.email)
    if account is not None:
        provisioner.update_credential(account.id, candidate.password)
        counters.accounts_updated += 1
        log.info("Platform account %s already exists for %s; credential reset", account.id, ident)
    else:
        account_id = provisioner.create(candidate)
        counters.accounts_created += 1
        log.info("Created platform account %s for %s", account_id, ident)

    row_number = append_member(store, roster_config, candidate)
    counters.roster_rows_appended += 1
    index.add(candidate)
    counters.new_members += 1
    log.info("Appended %s to roster at row %d", ident, row_number)

    try:
        deliver(notifier, welcome_message(candidate, candidate.password))
        counters.notifications_sent += 1
    except Exception as exc:
        # member stays registered; surfaced for manual follow-up
        log.warning("Welcome email for %s failed: %s", ident, exc)
        counters.notifications_failed += 1
        counters.warnings.append(f"welcome email for {ident} failed: {exc}")
        _audit_failure(audit, ident, ACTION_WELCOME)

    audit.append(ident, ACTION_NEW, OUTCOME_SUCCESS)
    return ident


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

def run_reconciliation(
    store: TabularStore,
    config_store: ConfigStore,
    provisioner: AccountProvisioner,
    notifier: Notifier,
    audit: AuditSink,
    prefix: str,
    counters: RunCounters | None = None,
    rejects: RejectWriter | None = None,
    dry_run: bool = False,
    phone_key: Callable[[str | None], str | None] = exact_phone,
    identifier_fallback: str = FALLBACK_TIMESTAMP,
    run_id: str | None = None,
    password_factory: Callable[[], str] = generate_temporary_password,
) -> RunSummary:
    """Process every form submission once. Never raises for per-row or structural failures."""
    run_id = run_id or uuid.uuid4().hex[:12]
    counters = counters if counters is not None else RunCounters()
    summary = RunSummary(run_id=run_id, status=STATUS_SUCCESS, counters=counters)

    # -- LOAD_CONFIG / LOAD_FORM_ROWS / BUILD_DUP_INDEX ----------------------
    try:
        form_config = config_store.get_form_sheet_config()
        roster_config = config_store.get_roster_config()
        if form_config is None or roster_config is None:
            missing = "form" if form_config is None else "roster"
            log.warning("[%s] No %s sheet configured; nothing to do", run_id, missing)
            _audit_failure(audit, ACTOR_SYSTEM, ACTION_RUN, OUTCOME_MISSING_CONFIG)
            summary.status = STATUS_MISSING_CONFIG
            return summary

        _require_mapped(form_config, "form", EMAIL_FIELD, "latin_name")
        _require_mapped(roster_config, "roster", IDENTIFIER_FIELD, EMAIL_FIELD)

        form = store.read_range(form_config.resource_id, form_config.range_spec)
        counters.rows_read = len(form.rows)
        if not form.rows:
            log.info("[%s] Form sheet has no responses", run_id)
            audit.append(ACTOR_SYSTEM, ACTION_RUN, OUTCOME_SUCCESS)
            return summary

        roster = store.read_range(roster_config.resource_id, roster_config.range_spec)
        if not roster.is_empty:
            required_column_index(roster.headers, roster_config.column_mapping, IDENTIFIER_FIELD)
            required_column_index(roster.headers, roster_config.column_mapping, EMAIL_FIELD)
        index = build_index(roster, roster_config.column_mapping, phone_key)
        log.info(
            "[%s] %d form rows, %d roster rows", run_id, len(form.rows), len(roster.rows)
        )
    except Exception as exc:
        log.exception("[%s] Registration run aborted: %s", run_id, exc)
        _audit_failure(audit, ACTOR_SYSTEM, ACTION_RUN)
        summary.status = STATUS_FAILED
        summary.error = str(exc)
        return summary

    allocator = IdentifierAllocator(
        store,
        roster_config.resource_id,
        roster_config.range_spec,
        roster_config.column_mapping,
        prefix,
        fallback=identifier_fallback,
    )

    # -- PER_ROW -------------------------------------------------------------
    for row_number, row in enumerate(form.rows, start=2):
        try:
            candidate = extract(row, form.headers, form_config.column_mapping)
            if isinstance(candidate, Rejected):
                counters.rows_rejected += 1
                if rejects:
                    rejects.write(row_as_dict(row, form.headers), candidate.reason)
                log.debug("Form row %d rejected: %s", row_number, candidate.reason)
                continue

            verdict = classify(candidate, index)
            if isinstance(verdict, Duplicate):
                _handle_duplicate(candidate, verdict, notifier, audit, counters, dry_run)
                continue

            ident = _admit_new(
                candidate,
                store,
                roster_config,
                index,
                allocator,
                provisioner,
                notifier,
                audit,
                counters,
                dry_run,
                password_factory,
            )
            summary.new_identifiers.append(ident)
        except Exception as exc:
            counters.rows_failed += 1
            log.error("Form row %d failed: %s", row_number, exc)
            if rejects:
                rejects.write(row_as_dict(row, form.headers), f"row_error: {exc}")
            _audit_failure(audit, ACTOR_SYSTEM, ACTION_ROW_ERROR)

    audit.append(ACTOR_SYSTEM, ACTION_RUN, OUTCOME_SUCCESS)
    log.info(
        "[%s] Run complete: %d new, %d duplicate, %d rejected, %d failed",
        run_id, counters.new_members, counters.duplicates,
        counters.rows_rejected, counters.rows_failed,
    )
    return summary
