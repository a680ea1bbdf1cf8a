"""membership_sync.cli

Unified CLI entrypoint for the membership registration system.

Modes (--mode):
  reconcile_registrations: process new form submissions (default; run on a schedule)
  configure_form_sheet: save the form-response sheet id + column mapping
  configure_roster_sheet: save the roster sheet id + column mapping
  lookup_sheet_columns: print the header row of a sheet with column letters
  list_members: print the roster
  set_member_password: overwrite one member's password cell (+ platform account)
  remove_member: drop one member from the roster (+ platform account)
  show_audit_log: print recent audit entries

Credentials are read from the environment, never from CLI args:
  GOOGLE_SERVICE_ACCOUNT_FILE, LMS_URL, LMS_TOKEN, LMS_DEFAULT_COUNTRY,
  SMTP_HOST, SMTP_PORT, SMTP_USERNAME, SMTP_PASSWORD, SMTP_FROM_EMAIL,
  SMTP_FROM_NAME, SMTP_USE_TLS

Usage (scheduled run):
    python -m membership_sync.cli \\
        --mode reconcile_registrations \\
        --db-dsn "$DB_DSN" \\
        --membership-prefix 2501

Usage (configure the roster):
    python -m membership_sync.cli \\
        --mode configure_roster_sheet \\
        --db-dsn "$DB_DSN" \\
        --resource-id "1AbC...xyz" \\
        --mapping-file config/roster_mapping.yaml
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from membership_sync.column_mapping import load_mapping_file
from membership_sync.config_store import (
    ACTOR_ADMIN,
    KIND_FORM,
    KIND_ROSTER,
    OUTCOME_SUCCESS,
    PgAuditSink,
    PgConfigStore,
    SheetConfig,
)
from membership_sync.identifiers import FALLBACK_FAIL, FALLBACK_TIMESTAMP
from membership_sync.normalize import exact_phone, normalize_phone_digits
from membership_sync.notifications import SmtpConfig, SmtpMailer
from membership_sync.provisioning import MoodleClient
from membership_sync.reconcile import STATUS_FAILED, run_reconciliation
from membership_sync.roster import (
    list_members,
    lookup_sheet_columns,
    remove_member,
    set_member_password,
)
from membership_sync.shared import (
    ConfigurationError,
    MembershipSyncError,
    RejectWriter,
    RunCounters,
    write_run_report,
)
from membership_sync.tabular_store import (
    DEFAULT_RANGE,
    GoogleSheetsStore,
    service_account_minter,
)

log = logging.getLogger(__name__)

MODES = [
    "reconcile_registrations",
    "configure_form_sheet",
    "configure_roster_sheet",
    "lookup_sheet_columns",
    "list_members",
    "set_member_password",
    "remove_member",
    "show_audit_log",
]


# ---------------------------------------------------------------------------
# Collaborator construction (environment-driven)
# ---------------------------------------------------------------------------

def build_sheets_store(environ=os.environ) -> GoogleSheetsStore:
    path = environ.get("GOOGLE_SERVICE_ACCOUNT_FILE")
    if not path:
        raise ConfigurationError("GOOGLE_SERVICE_ACCOUNT_FILE must be set")
    try:
        info = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"cannot read service account file {path}: {exc}") from exc
    return GoogleSheetsStore(service_account_minter(info))


def build_provisioner(environ=os.environ) -> MoodleClient:
    url = environ.get("LMS_URL")
    token = environ.get("LMS_TOKEN")
    if not url or not token:
        raise ConfigurationError("LMS_URL and LMS_TOKEN must be set")
    return MoodleClient(url, token, default_country=environ.get("LMS_DEFAULT_COUNTRY"))


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _roster_config(conn: psycopg.Connection, run_id: str) -> SheetConfig:
    config = PgConfigStore(conn).get_roster_config()
    if config is None:
        _fatal(run_id, "no roster sheet configured; run --mode configure_roster_sheet first")
    return config


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="reconcile_registrations",
    type=click.Choice(MODES),
    show_default=True,
    help="Operation to run",
)
@click.option("--db-dsn", required=True, help="PostgreSQL DSN (configuration + audit log)")
# reconcile_registrations flags
@click.option(
    "--membership-prefix",
    envvar="MEMBERSHIP_PREFIX",
    default=None,
    help="[reconcile_registrations] Identifier prefix, e.g. 2501",
)
@click.option(
    "--phone-match",
    default="exact",
    type=click.Choice(["exact", "digits"]),
    show_default=True,
    help="[reconcile_registrations] Compare phone cells as typed or digits only",
)
@click.option(
    "--identifier-fallback",
    default=FALLBACK_TIMESTAMP,
    type=click.Choice([FALLBACK_TIMESTAMP, FALLBACK_FAIL]),
    show_default=True,
    help="[reconcile_registrations] What to do when the roster scan for the next identifier fails",
)
# configure / lookup flags
@click.option("--resource-id", default=None, help="[configure_*|lookup_sheet_columns] Spreadsheet id")
@click.option("--mapping-file", default=None, type=click.Path(), help="[configure_*] YAML header → field mapping")
@click.option("--range-spec", default=DEFAULT_RANGE, show_default=True, help="[configure_*] A1 range holding the table")
# member admin flags
@click.option("--membership-number", default=None, help="[set_member_password|remove_member] Target member")
@click.option("--new-password", default=None, help="[set_member_password] Prompted for when omitted")
@click.option(
    "--sync-platform/--no-sync-platform",
    default=True,
    show_default=True,
    help="[set_member_password|remove_member] Mirror the change to the learning platform",
)
@click.option("--yes", is_flag=True, default=False, help="[remove_member] Skip confirmation")
@click.option("--limit", default=50, type=int, show_default=True, help="[list_members|show_audit_log]")
@click.option("--offset", default=0, type=int, show_default=True, help="[list_members|show_audit_log]")
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/registration_rejects.csv",
    show_default=True,
)
@click.option("--report-dir", default="./artifacts/reports", type=click.Path(), show_default=True)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    # reconcile_registrations
    membership_prefix: str | None,
    phone_match: str,
    identifier_fallback: str,
    # configure / lookup
    resource_id: str | None,
    mapping_file: str | None,
    range_spec: str,
    # member admin
    membership_number: str | None,
    new_password: str | None,
    sync_platform: bool,
    yes: bool,
    limit: int,
    offset: int,
    # shared
    dry_run: bool,
    rejects_path: str,
    report_dir: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Membership registration and roster administration CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())

    try:
        if mode == "reconcile_registrations":
            _run_reconcile(
                run_id, db_dsn, membership_prefix, phone_match, identifier_fallback,
                dry_run, Path(rejects_path), Path(report_dir),
            )
        elif mode in ("configure_form_sheet", "configure_roster_sheet"):
            kind = KIND_FORM if mode == "configure_form_sheet" else KIND_ROSTER
            _run_configure(run_id, db_dsn, kind, resource_id, mapping_file, range_spec)
        elif mode == "lookup_sheet_columns":
            if not resource_id:
                _fatal(run_id, "--resource-id is required for lookup_sheet_columns")
            for col in lookup_sheet_columns(build_sheets_store(), resource_id):
                click.echo(f"{col.letter}\t{col.name}")
        elif mode == "list_members":
            _run_list_members(run_id, db_dsn, limit, offset)
        elif mode == "set_member_password":
            _run_set_password(run_id, db_dsn, membership_number, new_password, sync_platform)
        elif mode == "remove_member":
            _run_remove_member(run_id, db_dsn, membership_number, sync_platform, yes)
        elif mode == "show_audit_log":
            _run_show_audit(db_dsn, limit, offset)
    except MembershipSyncError as exc:
        _fatal(run_id, str(exc))


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_reconcile(
    run_id: str,
    db_dsn: str,
    prefix: str | None,
    phone_match: str,
    identifier_fallback: str,
    dry_run: bool,
    rejects_path: Path,
    report_dir: Path,
) -> None:
    if not prefix:
        _fatal(run_id, "--membership-prefix (or MEMBERSHIP_PREFIX) is required")
    started_at = datetime.now(timezone.utc).isoformat()
    counters = RunCounters()
    rejects = RejectWriter(rejects_path)
    click.echo(f"[{run_id}] Starting reconcile_registrations run (dry_run={dry_run})")

    store = build_sheets_store()
    provisioner = build_provisioner()
    notifier = SmtpMailer(SmtpConfig.from_env())

    # Dry runs write audit rows inside a transaction that is rolled back.
    conn = psycopg.connect(db_dsn, autocommit=not dry_run)
    try:
        summary = run_reconciliation(
            store,
            PgConfigStore(conn),
            provisioner,
            notifier,
            PgAuditSink(conn),
            prefix,
            counters=counters,
            rejects=rejects,
            dry_run=dry_run,
            phone_key=normalize_phone_digits if phone_match == "digits" else exact_phone,
            identifier_fallback=identifier_fallback,
            run_id=run_id,
        )
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] [dry-run] No roster, platform or email changes made.")
    finally:
        conn.close()
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, "reconcile_registrations", dry_run,
        summary.status, summary.counters, report_dir=report_dir,
    )
    click.echo(f"[{run_id}] Status: {summary.status}")
    click.echo(f"[{run_id}] Counters: {json.dumps(summary.counters.to_dict())}")
    click.echo(f"[{run_id}] Run report: {report_path}")
    if summary.counters.rows_rejected or summary.counters.rows_failed:
        click.echo(f"[{run_id}] Rejects: {rejects_path}")
    if summary.status == STATUS_FAILED:
        _fatal(run_id, f"run aborted: {summary.error}")


def _run_configure(
    run_id: str,
    db_dsn: str,
    kind: str,
    resource_id: str | None,
    mapping_file: str | None,
    range_spec: str,
) -> None:
    if not resource_id or not mapping_file:
        _fatal(run_id, "--resource-id and --mapping-file are required")
    mapping = load_mapping_file(Path(mapping_file))
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        PgConfigStore(conn).save_sheet_config(kind, resource_id, mapping, range_spec)
        PgAuditSink(conn).append(ACTOR_ADMIN, f"configure_{kind}_sheet", OUTCOME_SUCCESS)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    click.echo(
        f"[{run_id}] Saved {kind} sheet {resource_id} ({len(mapping.headers)} mapped columns)"
    )


def _run_list_members(run_id: str, db_dsn: str, limit: int, offset: int) -> None:
    conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        config = _roster_config(conn, run_id)
    finally:
        conn.close()
    members = list_members(build_sheets_store(), config)
    for record in members[offset:offset + limit]:
        click.echo(
            f"{record.membership_number or '-'}\t{record.latin_name or ''}\t{record.email or ''}"
        )
    click.echo(f"[{run_id}] {len(members)} members in roster")


def _run_set_password(
    run_id: str,
    db_dsn: str,
    membership_number: str | None,
    new_password: str | None,
    sync_platform: bool,
) -> None:
    if not membership_number:
        _fatal(run_id, "--membership-number is required")
    if not new_password:
        new_password = click.prompt(
            "New password", hide_input=True, confirmation_prompt=True
        )
    conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        config = _roster_config(conn, run_id)
        address = set_member_password(
            build_sheets_store(),
            config,
            membership_number,
            new_password,
            PgAuditSink(conn),
            provisioner=build_provisioner() if sync_platform else None,
        )
    finally:
        conn.close()
    click.echo(f"[{run_id}] Password updated for {membership_number} (cell {address})")


def _run_remove_member(
    run_id: str,
    db_dsn: str,
    membership_number: str | None,
    sync_platform: bool,
    yes: bool,
) -> None:
    if not membership_number:
        _fatal(run_id, "--membership-number is required")
    if not yes:
        click.confirm(f"Remove member {membership_number} from the roster?", abort=True)
    conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        config = _roster_config(conn, run_id)
        remove_member(
            build_sheets_store(),
            config,
            membership_number,
            PgAuditSink(conn),
            provisioner=build_provisioner() if sync_platform else None,
        )
    finally:
        conn.close()
    click.echo(f"[{run_id}] Removed {membership_number}")


def _run_show_audit(db_dsn: str, limit: int, offset: int) -> None:
    conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        entries = PgAuditSink(conn).recent(limit=limit, offset=offset)
    finally:
        conn.close()
    for entry in entries:
        click.echo(
            f"{entry.created_at.isoformat()}\t{entry.actor}\t{entry.action}\t{entry.outcome}"
        )


if __name__ == "__main__":
    main()
