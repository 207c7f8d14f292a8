"""
tests/test_database.py — Engine helpers and schema bootstrap
=============================================================
"""

from __future__ import annotations

import asyncio
import logging

import pytest
from sqlalchemy import create_engine, func, inspect, select
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from scorebank.database.engine import create_db_engine, init_db, run_db
from scorebank.database.models import Base, Setting
from scorebank.database.seed import DEFAULT_SETTINGS


@pytest.fixture
def bare_engine():
    return create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool,
    )


def test_init_db_creates_missing_tables_and_seeds(bare_engine, caplog):
    with caplog.at_level(logging.WARNING, logger="scorebank.database.engine"):
        init_db(bare_engine)
    assert set(inspect(bare_engine).get_table_names()) == set(Base.metadata.tables)
    assert "score_accounts" in caplog.text
    with Session(bare_engine) as session:
        assert session.scalar(select(func.count()).select_from(Setting)) == len(DEFAULT_SETTINGS)


def test_init_db_leaves_existing_schema_alone(db_engine, caplog):
    with caplog.at_level(logging.WARNING, logger="scorebank.database.engine"):
        init_db(db_engine)
    assert "creating from models" not in caplog.text


def test_engine_needs_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        create_db_engine()


def test_run_db_returns_result():
    assert asyncio.run(run_db(sum, [1, 2, 3])) == 6
