"""
scorebank.database.engine — Engine, schema bootstrap and the thread bridge
===========================================================================

Ledger code is synchronous SQLAlchemy; the API and the periodic tasks are
async.  :func:`run_db` hands a ledger call to a worker thread so a version
race being retried with backoff never stalls the event loop.

Usage::

    engine = create_db_engine()          # DATABASE_URL from .env
    init_db(engine)
    snapshot = await run_db(score_service.get_account_snapshot, ctx, uid, "reputation")
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, inspect
from sqlalchemy.orm import Session

from scorebank.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def create_db_engine(url: str | None = None) -> Engine:
    """Pooled engine for *url*, defaulting to ``DATABASE_URL``.

    Sized for many brief checkouts: every ledger unit, and every retry of
    one, is a short transaction on its own connection.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )
    engine = create_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


def init_db(engine: Engine) -> None:
    """Ensure the ledger schema exists, then seed the economy defaults.

    Deployments run ``alembic upgrade head``; a database that is missing
    ledger tables (a fresh dev box) gets them from the models instead.
    """
    existing = set(inspect(engine).get_table_names())
    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        logger.warning("Tables missing %s; creating from models", missing)
        Base.metadata.create_all(engine)

    from scorebank.database.seed import seed_default_settings

    seed_default_settings(engine)


@contextmanager
def get_session(engine: Engine):
    """Session that commits on success and rolls back on error."""
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    return await asyncio.to_thread(func, *args, **kwargs)
