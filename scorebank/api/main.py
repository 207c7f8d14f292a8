"""
scorebank.api.main — FastAPI application entry point
=====================================================

Run with::

    uvicorn scorebank.api.main:app --port 8000

or ``python -m scorebank.api.main`` to use the port from ``config.yaml``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from scorebank.api.deps import get_config, get_context  # noqa: E402
from scorebank.api.routes.admin import router as admin_router  # noqa: E402
from scorebank.api.routes.feed import router as feed_router  # noqa: E402
from scorebank.api.routes.ledger import router as ledger_router  # noqa: E402
from scorebank.api.routes.presence import router as presence_router  # noqa: E402
from scorebank.api.routes.scores import router as scores_router  # noqa: E402
from scorebank.database.engine import init_db, run_db  # noqa: E402
from scorebank.engine.cache import send_score_notify  # noqa: E402
from scorebank.engine.errors import LedgerContention, ScorebankError  # noqa: E402
from scorebank.services.presence_service import rebuild_presence  # noqa: E402
from scorebank.services.scheduler import PeriodicTasks  # noqa: E402

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s"


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle.

    Creates tables and default settings, warms the settings cache, rebuilds
    presence from the journal, wires cross-process push on PostgreSQL and
    starts the periodic sweeps.
    """
    cfg = get_config()
    ctx = get_context()
    await run_db(init_db, ctx.engine)
    await run_db(ctx.cache.load_all)
    await run_db(rebuild_presence, ctx)

    if ctx.engine.dialect.name == "postgresql":
        ctx.cache.attach_feed(ctx.feed)
        ctx.feed.add_listener(lambda update: send_score_notify(ctx.engine, update))
        ctx.cache.start_listener()

    tasks = PeriodicTasks(ctx, cfg)
    tasks.start()
    logger.info("%s API started — engine ready (%s)", cfg.service_name, ctx.engine.url.database)
    yield
    await tasks.stop()
    ctx.cache.stop_listener()
    logger.info("%s API shutting down", cfg.service_name)


app = FastAPI(
    title="Scorebank API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ScorebankError)
async def scorebank_error_handler(request: Request, exc: ScorebankError):
    headers = None
    if isinstance(exc, LedgerContention):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message},
        headers=headers,
    )


# Mount routers
app.include_router(scores_router, prefix="/api")
app.include_router(ledger_router, prefix="/api")
app.include_router(presence_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(feed_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt="%H:%M:%S")
    uvicorn.run(app, host="0.0.0.0", port=get_config().api_port)
