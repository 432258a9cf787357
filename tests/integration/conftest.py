from __future__ import annotations

import pytest
from testcontainers.postgres import PostgresContainer


@pytest.fixture(scope="session")
def postgres_url() -> str:
    pg = PostgresContainer("postgres:16", driver="psycopg")
    try:
        pg.start()
    except Exception as exc:  # docker missing or not running
        pytest.skip(f"PostgreSQL container unavailable: {exc}")
    try:
        yield pg.get_connection_url()
    finally:
        pg.stop()
