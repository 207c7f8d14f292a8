"""
scorebank.config — YAML Configuration Loader
=============================================

Reads ``config.yaml`` for **infrastructure-only** settings (service identity,
presence timeouts, background job cadence, feed sizing).  Economy tuning
(decay rates, initial grants, score points, balance floors) lives in the
``settings`` database table and is read through
:class:`~scorebank.engine.cache.ConfigCache`.

Usage::

    from scorebank.config import load_config

    cfg = load_config()                  # reads ./config.yaml by default
    print(cfg.heartbeat_timeout_seconds) # 90
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object — infrastructure only.
# Economy tuning lives in the DB ``settings`` table.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ScorebankConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    service_name: str

    # API
    api_port: int

    # Presence
    heartbeat_timeout_seconds: int = 90

    # Background jobs
    presence_sweep_seconds: int = 15
    decay_sweep_seconds: int = 3600
    reconcile_interval_hours: int = 168
    presence_retention_hours: int = 24

    # Reconciliation feed
    poll_interval_seconds: int = 90
    feed_queue_size: int = 256

    @property
    def max_staleness_seconds(self) -> int:
        """Upper bound on how stale a polling client's balance can be."""
        return self.poll_interval_seconds + REQUEST_TIMEOUT_SECONDS


# Client request timeout — part of the documented staleness bound.
REQUEST_TIMEOUT_SECONDS = 10


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> ScorebankConfig:
    """Read *path* and return a :class:`ScorebankConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If the poll interval falls outside the supported 60–120 s window.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    cfg = ScorebankConfig(
        service_name=raw["service_name"],
        api_port=int(raw["api_port"]),
        heartbeat_timeout_seconds=int(raw.get("heartbeat_timeout_seconds", 90)),
        presence_sweep_seconds=int(raw.get("presence_sweep_seconds", 15)),
        decay_sweep_seconds=int(raw.get("decay_sweep_seconds", 3600)),
        reconcile_interval_hours=int(raw.get("reconcile_interval_hours", 168)),
        presence_retention_hours=int(raw.get("presence_retention_hours", 24)),
        poll_interval_seconds=int(raw.get("poll_interval_seconds", 90)),
        feed_queue_size=int(raw.get("feed_queue_size", 256)),
    )
    if not 60 <= cfg.poll_interval_seconds <= 120:
        raise ValueError(
            f"poll_interval_seconds must be between 60 and 120 "
            f"(got {cfg.poll_interval_seconds})"
        )
    return cfg
