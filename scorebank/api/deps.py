"""
scorebank.api.deps — FastAPI dependency injection
==================================================

Three kinds of caller hold bearer tokens (HS256 JWTs):

- **session owners** — ``sub`` is the user id the session belongs to;
- **collaborator services** — ``is_service: true`` (payment verifier,
  matching service, …) may write to any account;
- **admins** — ``is_admin: true`` may do everything.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from scorebank.config import ScorebankConfig, load_config
from scorebank.database.engine import create_db_engine
from scorebank.engine.cache import ConfigCache
from scorebank.engine.feed import ScoreFeed
from scorebank.engine.presence import PresenceTracker
from scorebank.services.context import ScoreContext

_WEAK_SECRETS = frozenset({
    "scorebank-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> ScorebankConfig:
    return load_config(os.getenv("SCOREBANK_CONFIG", "config.yaml"))


@lru_cache(maxsize=1)
def get_context() -> ScoreContext:
    """Process-wide context: engine, settings cache, presence, feed."""
    cfg = get_config()
    engine = get_engine()
    cache = ConfigCache(engine)
    cache.load_all()
    return ScoreContext(
        engine=engine,
        cache=cache,
        presence=PresenceTracker(heartbeat_timeout_seconds=cfg.heartbeat_timeout_seconds),
        feed=ScoreFeed(queue_size=cfg.feed_queue_size),
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def _decode(authorization: str | None) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return its payload.  ``sub`` must be present."""
    payload = _decode(authorization)
    if not payload.get("sub"):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token has no subject")
    return payload


def get_current_service(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Collaborator services and admins may write to any account."""
    payload = _decode(authorization)
    if not (payload.get("is_service") or payload.get("is_admin")):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not a service")
    return payload


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return admin payload. Raises 401/403 if invalid."""
    payload = _decode(authorization)
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return payload


ContextDep = Annotated[ScoreContext, Depends(get_context)]
UserDep = Annotated[dict, Depends(get_current_user)]
ServiceDep = Annotated[dict, Depends(get_current_service)]
AdminDep = Annotated[dict, Depends(get_current_admin)]
