"""Integration test fixtures.

Applies migrations 0001-0003 against an ephemeral PostgreSQL database
provided by pytest-postgresql before each integration test.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from gtfs_etl.gateway import PostgresGateway

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_networks.sql",
    PROJECT_ROOT / "migrations" / "0002_gtfs_tables.sql",
    PROJECT_ROOT / "migrations" / "0003_favorites.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (autocommit connection, dsn) with the schema applied.

    Function scope gives every test a fresh schema.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def pg_gateway(db_conn):
    _, dsn = db_conn
    gateway = PostgresGateway(dsn, statement_timeout_ms=30_000, max_rows_per_call=1000)
    try:
        yield gateway
    finally:
        gateway.close()


@pytest.fixture
def demo_tenant(db_conn):
    conn, _ = db_conn
    conn.execute(
        "INSERT INTO networks (network_id, network_name) VALUES ('demo', 'Demo Transit')"
    )
    return "demo"
