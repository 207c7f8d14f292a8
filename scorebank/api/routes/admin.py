"""
scorebank.api.routes.admin — Admin-only ledger operations
==========================================================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter
from pydantic import BaseModel

from scorebank.api.deps import AdminDep, ContextDep
from scorebank.constants import REPUTATION
from scorebank.services import (
    ledger_service,
    reconciliation_service,
    sweep_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class ManualBonus(BaseModel):
    user_id: str
    amount: float
    currency: str = REPUTATION
    reason: str = ""


class CloseAccount(BaseModel):
    reason: str = ""


@router.post("/manual-bonus")
def manual_bonus(body: ManualBonus, ctx: ContextDep, admin: AdminDep):
    result = ledger_service.apply_manual_bonus(
        ctx, body.user_id, body.currency, body.amount,
        admin_id=str(admin.get("sub", "")), reason=body.reason,
    )
    logger.info(
        "Admin %s applied %.4f %s bonus to %s",
        admin.get("sub"), body.amount, body.currency, body.user_id,
    )
    return result.to_dict()


@router.post("/accounts/{user_id}/{currency}/close")
def close_account(
    user_id: str, currency: str, ctx: ContextDep, admin: AdminDep,
    body: CloseAccount | None = None,
):
    result = ledger_service.close_account(
        ctx, user_id, currency,
        admin_id=str(admin.get("sub", "")), reason=body.reason if body else None,
    )
    return {**result.to_dict(), "status": "closed"}


@router.post("/sweep")
def run_sweep(ctx: ContextDep, _admin: AdminDep, currency: str | None = None):
    expired = sweep_service.expire_stale_presence(ctx)
    result = sweep_service.sweep_decay(ctx, currency)
    return {**result, "expired_sessions": expired}


@router.post("/reconcile")
def run_reconcile(ctx: ContextDep, _admin: AdminDep):
    return reconciliation_service.reconcile_accounts(ctx)
