"""
Scorebank — Decaying Score Economy Service
===========================================
Keeps a per-user reputation / time-currency that drains while its owner is
offline, settles paid score "steals" between users atomically, and keeps
every connected client's displayed balance consistent via push + poll.

Package layout::

    scorebank/
    ├── config.py          # YAML → typed infrastructure config
    ├── constants.py       # Currency names, time-bank formatting, UTC helpers
    ├── client.py          # httpx polling client + push merge (reconciliation)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # ORM models (accounts, transfers, journal, settings)
    │   └── seed.py        # Default economy settings
    ├── engine/
    │   ├── decay.py       # Decay Projector (pure)
    │   ├── presence.py    # Presence Tracker (in-memory, thread-safe)
    │   ├── feed.py        # score.updated fan-out hub
    │   ├── reconcile.py   # Version-keyed idempotent client merge
    │   ├── events.py      # LedgerEvent envelope + sign rules
    │   ├── errors.py      # Error taxonomy
    │   └── cache.py       # Settings cache + PG LISTEN/NOTIFY
    ├── services/
    │   ├── context.py               # ScoreContext (engine, cache, presence, feed, clock)
    │   ├── cursors.py               # Opaque keyset pagination cursors
    │   ├── ledger_service.py        # apply_event + wrappers
    │   ├── transfer_service.py      # settle_transfer, refund_pair, history
    │   ├── score_service.py         # effective score, snapshot, leaderboard
    │   ├── presence_service.py      # connect / disconnect orchestration
    │   ├── sweep_service.py         # periodic decay + presence sweeps
    │   ├── reconciliation_service.py # aggregate drift correction
    │   └── scheduler.py             # asyncio periodic task runner
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT + context dependencies
        └── routes/        # Read, ledger, admin, presence, WebSocket feed
"""

__version__ = "0.1.0"
