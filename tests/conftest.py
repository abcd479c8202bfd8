"""Test configuration and fixtures."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from decimal import Decimal

import pytest
from sqlalchemy import Engine

from recon.store import LedgerStore
from tests.utils.db_helper import create_test_engine

# Register Decimal adapter for SQLite tests (exact decimal text, no float rounding)
sqlite3.register_adapter(Decimal, str)


@pytest.fixture
def engine() -> Iterator[Engine]:
    """In-memory SQLite engine with the ledger schema applied."""
    engine = create_test_engine()
    LedgerStore(engine).create_schema()
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine: Engine) -> LedgerStore:
    return LedgerStore(engine)


@pytest.fixture
def db_url(tmp_path) -> str:  # noqa: ANN001
    """File-backed SQLite database with the schema, for CLI tests."""
    url = f"sqlite:///{tmp_path / 'recon.db'}"
    file_engine = create_test_engine(url)
    LedgerStore(file_engine).create_schema()
    file_engine.dispose()
    return url


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch, db_url: str) -> str:
    """Hermetic CLI environment pointing DATABASE_URL at a fresh database."""
    monkeypatch.setenv("RECON_SKIP_DOTENV", "1")
    monkeypatch.setenv("RECON_PLAIN", "1")
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.delenv("SOURCE_DATABASE_URL", raising=False)
    monkeypatch.delenv("RECON_SAMPLE_SIZE", raising=False)
    monkeypatch.delenv("RECON_MAX_WORKERS", raising=False)
    return db_url
