"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

import os
from typing import Any

import psycopg
import pytest

from settlement.psycopg_db import PsycopgSettlementDB
from tests.utils.settlement_fakes import FakeDB, FixedClock


@pytest.fixture(scope="session")
def pg_conn() -> Any:
    """Session-scoped psycopg connection for integration tests."""
    host = os.getenv("TEST_DB_HOST")
    port = os.getenv("TEST_DB_PORT")
    dbname = os.getenv("TEST_DB_NAME")
    user = os.getenv("TEST_DB_USER")
    password = os.getenv("TEST_DB_PASSWORD")

    if not all([host, port, dbname, user, password]):
        pytest.skip("Integration DB env vars are missing; set TEST_DB_* to run against PostgreSQL")

    conn = psycopg.connect(
        host=host,
        port=port,
        dbname=dbname,
        user=user,
        password=password,
        autocommit=True,
    )
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def settlement_db(pg_conn: Any) -> PsycopgSettlementDB:
    """Settlement DB adapter fixture."""
    return PsycopgSettlementDB(pg_conn)


@pytest.fixture
def fake_db() -> FakeDB:
    return FakeDB()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()
