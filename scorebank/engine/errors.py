"""
scorebank.engine.errors — Ledger Error Taxonomy
================================================

Every business-rule failure is a :class:`ScorebankError` carrying a stable
``code`` and an HTTP ``status_code``.  The API registers a single handler for
the base class, so routes never translate errors by hand.
"""

from __future__ import annotations


class ScorebankError(Exception):
    """Base class for all domain errors."""

    code = "scorebank_error"
    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class InsufficientBalance(ScorebankError):
    code = "insufficient_balance"
    status_code = 409

    def __init__(self, user_id: str, available: float, requested: float) -> None:
        super().__init__(
            f"User {user_id} has {available:.2f} available, {requested:.2f} requested"
        )
        self.user_id = user_id
        self.available = available
        self.requested = requested


class InvalidTransferTarget(ScorebankError):
    code = "invalid_transfer_target"
    status_code = 400


class InvalidAmount(ScorebankError):
    code = "invalid_amount"
    status_code = 422


class UnknownEventKind(ScorebankError):
    code = "unknown_event_kind"
    status_code = 422


class UnknownCurrency(ScorebankError):
    code = "unknown_currency"
    status_code = 404


class AccountClosed(ScorebankError):
    code = "account_closed"
    status_code = 409


class LedgerContention(ScorebankError):
    """Optimistic-concurrency retries exhausted.  Safe to retry later."""

    code = "ledger_contention"
    status_code = 503
    retry_after_seconds = 1


class StalePresence(ScorebankError):
    """A session stopped heartbeating.

    Never raised: the tracker logs it and treats the user as offline.  It
    exists so the condition has a name in logs and metrics.
    """

    code = "stale_presence"
    status_code = 200


class InvalidCursor(ScorebankError):
    code = "invalid_cursor"
    status_code = 400
