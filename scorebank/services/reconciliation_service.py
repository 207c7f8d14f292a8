"""
scorebank.services.reconciliation_service — Transfer Aggregate Reconciliation
==============================================================================

Weekly job that validates the ``transferred_in`` / ``transferred_out``
aggregates on ``score_accounts`` against the append-only ``score_transfers``
records and corrects drift if found.

How it works:
    1. Sum ``score_transferred`` from ``score_transfers`` grouped by
       (payer, currency) and by (recipient, currency).
    2. Compare against the stored aggregates of every active account.
    3. Hand each drifted account to
       :func:`ledger_service.correct_transfer_aggregates`, one unit per
       account.  It re-checks the sums, rewrites the aggregates, journals a
       ``correction`` and publishes ``score.updated``.
    4. Log all corrections for audit.

A correction that keeps losing version races is skipped and picked up by
the next run; it never rolls back the others.  Closed accounts are skipped:
closing zeroes every component on purpose.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from scorebank.database.models import AccountStatus, ScoreAccount, TransferRecord
from scorebank.engine.errors import LedgerContention
from scorebank.services import ledger_service

if TYPE_CHECKING:
    from scorebank.services.context import ScoreContext

logger = logging.getLogger(__name__)

# Drift below this is float noise, not a real discrepancy.
TOLERANCE = 1e-6


def _sums_by(session: Session, party) -> dict[tuple[str, str], float]:
    rows = session.execute(
        select(
            party.label("user_id"),
            TransferRecord.currency,
            func.sum(TransferRecord.score_transferred).label("total"),
        ).group_by(party, TransferRecord.currency)
    )
    return {(row.user_id, row.currency): float(row.total or 0.0) for row in rows}


def find_drift(ctx: ScoreContext) -> tuple[int, list[tuple[str, str]]]:
    """Scan active accounts.  Returns ``(checked, [(user_id, currency), ...])``."""
    with Session(ctx.engine) as session:
        paid = _sums_by(session, TransferRecord.payer_id)
        received = _sums_by(session, TransferRecord.recipient_id)
        accounts = session.execute(
            select(
                ScoreAccount.user_id,
                ScoreAccount.currency,
                ScoreAccount.transferred_out,
                ScoreAccount.transferred_in,
            ).where(ScoreAccount.status == AccountStatus.ACTIVE.value)
        ).all()

    drifted = []
    for row in accounts:
        key = (row.user_id, row.currency)
        if (
            abs(row.transferred_out - paid.get(key, 0.0)) > TOLERANCE
            or abs(row.transferred_in - received.get(key, 0.0)) > TOLERANCE
        ):
            drifted.append(key)
    return len(accounts), drifted


def reconcile_accounts(ctx: ScoreContext) -> dict:
    """Validate transfer aggregates against settlement records and fix drift.

    Returns ``{"checked": N, "corrected": M, "corrections": [...],
    "skipped": [...], "timestamp": ...}``.
    """
    checked, drifted = find_drift(ctx)
    corrections: list[dict] = []
    skipped: list[dict] = []

    for user_id, currency in drifted:
        try:
            outcome = ledger_service.correct_transfer_aggregates(
                ctx, user_id, currency, tolerance=TOLERANCE,
            )
        except LedgerContention:
            skipped.append({"user_id": user_id, "currency": currency})
            continue
        if outcome is None:
            # fixed or closed since the scan
            continue
        result, fixes = outcome
        corrections.append({
            "user_id": user_id,
            "currency": currency,
            "fixes": fixes,
            "diff": result.delta,
        })

    if corrections:
        logger.warning(
            "Ledger reconciliation: corrected %d/%d accounts: %s",
            len(corrections), checked, corrections,
        )
    else:
        logger.info("Ledger reconciliation: all %d accounts match", checked)
    if skipped:
        logger.warning(
            "Ledger reconciliation skipped %d contended accounts: %s", len(skipped), skipped,
        )

    return {
        "checked": checked,
        "corrected": len(corrections),
        "corrections": corrections,
        "skipped": skipped,
        "timestamp": ctx.now().isoformat(),
    }
