"""
scorebank.engine.cache — Settings Cache with PG LISTEN/NOTIFY
==============================================================

Economy settings (per-currency decay policy, score points, retry budget)
are cached in memory and turned into :class:`CurrencyPolicy` objects.
Cache invalidation uses PostgreSQL LISTEN/NOTIFY so operator changes
propagate near-instantly.

The same listener thread carries cross-process ``score.updated`` delivery:
every process NOTIFYs its committed updates on ``score_events`` and hands
the ones it receives from *other* processes to its local feed.
"""

from __future__ import annotations

import json
import logging
import random
import select as _select
import threading
import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from scorebank.database.models import Setting
from scorebank.engine.decay import PER_MINUTE, CurrencyPolicy
from scorebank.engine.errors import UnknownCurrency
from scorebank.engine.feed import ScoreFeed, ScoreUpdate

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# The PG channel name used for config invalidation
NOTIFY_CHANNEL = "config_changed"

# PG channel for cross-process score.updated delivery
SCORE_NOTIFY_CHANNEL = "score_events"

# Allowlist of table names accepted by notify_before_commit()
ALLOWED_NOTIFY_TABLES: frozenset[str] = frozenset({"settings"})

# Identifies this process's own NOTIFYs so they are not delivered twice.
PROCESS_ORIGIN = uuid.uuid4().hex

_CURRENCY_PREFIX = "currency."


class ConfigCache:
    """Thread-safe in-memory cache for economy settings.

    Usage:
        cache = ConfigCache(engine)
        cache.load_all()
        cache.start_listener()

        policy = cache.policy("reputation")
        attempts = cache.get_int("ledger.retry_attempts", default=3)
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()

        # key → parsed JSON value
        self._settings: dict[str, Any] = {}
        # currency → policy, rebuilt with the settings
        self._policies: dict[str, CurrencyPolicy] = {}

        self._listener_healthy: bool = False
        self._listener_failed: bool = False
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

        self._feed: ScoreFeed | None = None

    # -------------------------------------------------------------------
    # Cache loading (synchronous — called via run_db or directly)
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Load all settings from DB. Call on startup."""
        self._load_settings()
        logger.info(
            "ConfigCache loaded: %d settings, currencies=%s",
            len(self._settings), ", ".join(self.currencies()),
        )

    def _load_settings(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(select(Setting)).all()
            parsed: dict[str, Any] = {}
            for row in rows:
                try:
                    parsed[row.key] = json.loads(row.value_json)
                except (json.JSONDecodeError, TypeError):
                    parsed[row.key] = row.value_json

        policies = _build_policies(parsed)
        with self._lock:
            self._settings = parsed
            self._policies = policies

    # -------------------------------------------------------------------
    # Typed setting accessors (thread-safe)
    # -------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return the parsed JSON value for *key*, or *default*."""
        with self._lock:
            return self._settings.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return int(val)
        except (TypeError, ValueError):
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return float(val)
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        val = self.get_setting(key)
        if val is None:
            return default
        return bool(val)

    # -------------------------------------------------------------------
    # Currency policies
    # -------------------------------------------------------------------
    def currencies(self) -> list[str]:
        with self._lock:
            return sorted(self._policies)

    def policy(self, currency: str) -> CurrencyPolicy:
        """Return the policy for *currency* or raise :class:`UnknownCurrency`."""
        with self._lock:
            policy = self._policies.get(currency)
        if policy is None:
            raise UnknownCurrency(f"Currency {currency!r} is not configured")
        return policy

    # -------------------------------------------------------------------
    # Cache invalidation via NOTIFY
    # -------------------------------------------------------------------
    def handle_notify(self, table_name: str) -> None:
        """Reload the relevant cache partition when a NOTIFY arrives."""
        table_name = table_name.strip().lower()
        logger.info("Config cache invalidation for table: %s", table_name)

        if table_name == "settings":
            self._load_settings()
        else:
            logger.warning("Unknown table in NOTIFY: %s — ignoring", table_name)

    def attach_feed(self, feed: ScoreFeed) -> None:
        """Route ``score_events`` NOTIFYs from other processes into *feed*."""
        self._feed = feed

    def _dispatch_score_event(self, raw_payload: str) -> None:
        try:
            data = json.loads(raw_payload)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Invalid score event payload (not JSON): %s", raw_payload)
            return
        if data.get("origin") == PROCESS_ORIGIN or self._feed is None:
            return
        try:
            update = ScoreUpdate.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed score event payload: %s", raw_payload)
            return
        self._feed.deliver(update)

    @property
    def listener_healthy(self) -> bool:
        """Return True if the LISTEN thread is alive and connected."""
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        """Return True if the listener exhausted reconnect attempts."""
        return self._listener_failed

    def stop_listener(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("PG NOTIFY listener thread stopped")

    def start_listener(self) -> None:
        """Start a background thread that LISTENs on both PG channels.

        The thread uses a raw psycopg2 connection + select() to avoid
        blocking the asyncio event loop, and reconnects with exponential
        backoff + jitter until a circuit breaker trips.
        """
        import psycopg2

        max_backoff = 60.0
        base_backoff = 1.0
        max_reconnect_attempts = 10

        def _listen_thread() -> None:
            # str(engine.url) hides the password; psycopg2 needs the real one.
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {NOTIFY_CHANNEL};")
                    cur.execute(f"LISTEN {SCORE_NOTIFY_CHANNEL};")
                    logger.info(
                        "PG LISTEN started on channels '%s', '%s'",
                        NOTIFY_CHANNEL, SCORE_NOTIFY_CHANNEL,
                    )

                    attempt = 0
                    self._listener_healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            channel = notify.channel
                            payload = notify.payload or ""
                            logger.debug(
                                "NOTIFY received on '%s': %s", channel, payload,
                            )
                            try:
                                if channel == SCORE_NOTIFY_CHANNEL:
                                    self._dispatch_score_event(payload)
                                else:
                                    self.handle_notify(payload)
                            except Exception:
                                logger.exception(
                                    "Error handling NOTIFY on '%s': %s",
                                    channel, payload,
                                )

                except Exception:
                    self._listener_healthy = False
                    attempt += 1

                    if attempt >= max_reconnect_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. "
                            "Cache invalidation and cross-process push disabled.",
                            max_reconnect_attempts,
                        )
                        self._listener_failed = True
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). "
                        "Reconnecting in %.1fs…",
                        attempt, max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        try:
                            conn.close()
                        except Exception:
                            logger.debug("Error closing listener connection", exc_info=True)

        thread = threading.Thread(target=_listen_thread, daemon=True, name="pg-notify-listener")
        self._listener_thread = thread
        thread.start()
        logger.info("PG NOTIFY listener thread started")


def _build_policies(settings: dict[str, Any]) -> dict[str, CurrencyPolicy]:
    """Group ``currency.<name>.<field>`` settings into policies.

    A currency exists once its ``decay_mode`` key is present.  Invalid
    entries are logged and skipped rather than taking the cache down.
    """
    fields: dict[str, dict[str, Any]] = {}
    for key, value in settings.items():
        if not key.startswith(_CURRENCY_PREFIX):
            continue
        parts = key[len(_CURRENCY_PREFIX):].split(".", 1)
        if len(parts) != 2:
            continue
        fields.setdefault(parts[0], {})[parts[1]] = value

    policies: dict[str, CurrencyPolicy] = {}
    for currency, raw in fields.items():
        if "decay_mode" not in raw:
            continue
        try:
            policies[currency] = CurrencyPolicy(
                currency=currency,
                decay_mode=str(raw.get("decay_mode") or PER_MINUTE),
                decay_rate=float(raw.get("decay_rate", 1.0)),
                grace_seconds=float(raw.get("grace_seconds", 0) or 0),
                decay_floor=_optional_float(raw.get("decay_floor")),
                balance_floor=_optional_float(raw.get("balance_floor")),
                minutes_per_point=float(raw.get("minutes_per_point", 1.0)),
                initial_grant=float(raw.get("initial_grant", 0.0) or 0.0),
                display_decimals=int(raw.get("display_decimals", 0) or 0),
            )
        except (TypeError, ValueError):
            logger.exception("Invalid policy settings for currency %s", currency)
    return policies


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


# ---------------------------------------------------------------------------
# NOTIFY senders
# ---------------------------------------------------------------------------
def notify_before_commit(session: Session, table_name: str) -> None:
    """Execute NOTIFY within the current transaction (fires atomically on commit)."""
    if table_name not in ALLOWED_NOTIFY_TABLES:
        raise ValueError(
            f"Invalid table name for NOTIFY: '{table_name}'. "
            f"Allowed: {sorted(ALLOWED_NOTIFY_TABLES)}"
        )
    session.execute(text(f"NOTIFY {NOTIFY_CHANNEL}, '{table_name}'"))


def send_score_notify(engine: Engine, update: ScoreUpdate) -> None:
    """NOTIFY a committed score update to other processes."""
    payload = dict(update.to_dict(), origin=PROCESS_ORIGIN)
    with engine.connect() as conn:
        conn.execute(
            text("SELECT pg_notify(:channel, :payload)"),
            {"channel": SCORE_NOTIFY_CHANNEL, "payload": json.dumps(payload)},
        )
        conn.commit()
