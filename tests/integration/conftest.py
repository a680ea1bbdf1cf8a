"""Integration test fixtures.

Applies migrations/*.sql against an ephemeral PostgreSQL database
provided by pytest-postgresql. Tests are skipped when no PostgreSQL
server binaries are installed.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories
from pytest_postgresql.exceptions import ExecutableMissingException

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = sorted((PROJECT_ROOT / "migrations").glob("*.sql"))

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture (fresh schema per test)
# ---------------------------------------------------------------------------

def postgresql_or_skip(request):
    """Resolve the postgresql fixture, skipping when pg_ctl cannot be found."""
    try:
        return request.getfixturevalue("postgresql")
    except ExecutableMissingException as exc:
        pytest.skip(f"PostgreSQL server binaries not available: {exc}")


@pytest.fixture(scope="function")
def db_conn(request):
    """Return (autocommit psycopg connection with schema applied, dsn)."""
    pg = postgresql_or_skip(request)
    dsn = (
        f"host={pg.info.host} "
        f"port={pg.info.port} "
        f"dbname={pg.info.dbname} "
        f"user={pg.info.user} "
        f"password={pg.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()
