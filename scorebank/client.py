"""
scorebank.client — Polling client with push merge
==================================================

What a viewer process runs to keep displayed balances correct:

- pushed ``score.updated`` frames go through :meth:`ScoreClient.consume_push`;
- every ``poll_interval`` seconds (60–120, default 90) the snapshot endpoint
  is polled for each watched balance.

Both paths feed one :class:`BalanceReplica`, which keeps only strictly newer
versions, so a missed or reordered push is healed by the next poll.  A
displayed balance is therefore never staler than
``poll_interval + request timeout``.

Usage::

    with ScoreClient("http://localhost:8000") as client:
        client.fetch_snapshot("u1", "reputation")
        client.replica.effective("u1", "reputation", utcnow())
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable

import httpx

from scorebank.config import REQUEST_TIMEOUT_SECONDS
from scorebank.constants import SCORE_UPDATED
from scorebank.engine.decay import CurrencyPolicy
from scorebank.engine.reconcile import BalanceReplica

logger = logging.getLogger(__name__)

MIN_POLL_SECONDS = 60
MAX_POLL_SECONDS = 120
DEFAULT_POLL_SECONDS = 90


class ScoreClient:
    def __init__(
        self,
        base_url: str = "",
        *,
        token: str | None = None,
        poll_interval: float = DEFAULT_POLL_SECONDS,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        replica: BalanceReplica | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        if not MIN_POLL_SECONDS <= poll_interval <= MAX_POLL_SECONDS:
            raise ValueError(
                f"poll_interval must be between {MIN_POLL_SECONDS} and "
                f"{MAX_POLL_SECONDS} seconds (got {poll_interval})"
            )
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.replica = replica or BalanceReplica()
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._http = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            transport=httpx.HTTPTransport(retries=1),
        )
        self._watched: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    @property
    def max_staleness_seconds(self) -> float:
        """Worst-case age of a displayed balance."""
        return self.poll_interval + self.timeout

    def watch(self, user_id: str, currency: str) -> None:
        with self._lock:
            self._watched.add((user_id, currency))

    def unwatch(self, user_id: str, currency: str) -> None:
        with self._lock:
            self._watched.discard((user_id, currency))

    # -------------------------------------------------------------------
    # Poll path
    # -------------------------------------------------------------------
    def fetch_snapshot(self, user_id: str, currency: str) -> dict:
        """GET the authoritative snapshot and merge it into the replica."""
        resp = self._http.get(f"/api/scores/{user_id}/{currency}/snapshot")
        resp.raise_for_status()
        data = resp.json()
        policy = data.get("policy")
        if policy:
            self.replica.set_policy(CurrencyPolicy(currency=currency, **policy))
        data["applied"] = self.replica.apply(data)
        return data

    def poll_once(self) -> int:
        """Refresh every watched balance once.  Returns how many changed.

        A failed request is logged and skipped; the next poll retries it.
        """
        with self._lock:
            watched = sorted(self._watched)
        changed = 0
        for user_id, currency in watched:
            try:
                if self.fetch_snapshot(user_id, currency)["applied"]:
                    changed += 1
            except httpx.HTTPError as exc:
                logger.warning("Snapshot poll failed for %s/%s: %s", user_id, currency, exc)
        return changed

    def run_polling(self, stop: threading.Event, interval: float | None = None) -> None:
        """Poll until *stop* is set.  Run it on its own thread."""
        interval = interval or self.poll_interval
        logger.info("Polling %d balances every %ss", len(self._watched), interval)
        while not stop.is_set():
            self.poll_once()
            if stop.wait(timeout=interval):
                break

    # -------------------------------------------------------------------
    # Push path
    # -------------------------------------------------------------------
    def consume_push(self, messages: Iterable[dict | str]) -> int:
        """Merge pushed frames.  Non-update frames are ignored."""
        applied = 0
        for message in messages:
            if isinstance(message, str):
                try:
                    message = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON push frame: %r", message)
                    continue
            if message.get("type") != SCORE_UPDATED:
                continue
            if self.replica.apply(message):
                applied += 1
        return applied

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> ScoreClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
