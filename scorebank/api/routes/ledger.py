"""
scorebank.api.routes.ledger — Collaborator write endpoints
===========================================================

Called by trusted services (matching, payment verification), never by
clients directly.  Business errors propagate as :class:`ScorebankError`
and are rendered by the app-level handler.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from scorebank.api.deps import ContextDep, ServiceDep
from scorebank.constants import REPUTATION
from scorebank.services import ledger_service, transfer_service

router = APIRouter(tags=["ledger"])


class InitialGrant(BaseModel):
    user_id: str
    currency: str = REPUTATION
    amount: float | None = None


class EarnedEvent(BaseModel):
    user_id: str
    currency: str = REPUTATION
    source_kind: str = "action"
    amount: float | None = None
    source_event_id: str | None = None


class Purchase(BaseModel):
    user_id: str
    currency: str = REPUTATION
    paid_amount: float
    tx_hash: str = Field(min_length=1)


class TransferRequest(BaseModel):
    payer_id: str
    recipient_id: str
    score_amount: float
    paid_amount: float = 0.0
    currency: str = REPUTATION
    payment_ref: str | None = None


class RefundRequest(BaseModel):
    user_a: str
    user_b: str
    amount_each: float
    currency: str = REPUTATION
    reference: str | None = None


@router.post("/ledger/initial", status_code=status.HTTP_201_CREATED)
def grant_initial(body: InitialGrant, ctx: ContextDep, _svc: ServiceDep):
    return ledger_service.grant_initial(ctx, body.user_id, body.currency, body.amount).to_dict()


@router.post("/ledger/earned")
def record_earned(body: EarnedEvent, ctx: ContextDep, _svc: ServiceDep):
    return ledger_service.record_earned(
        ctx, body.user_id, body.currency, body.amount, body.source_kind,
        source_event_id=body.source_event_id,
    ).to_dict()


@router.post("/ledger/purchases")
def purchase(body: Purchase, ctx: ContextDep, _svc: ServiceDep):
    return ledger_service.purchase_score(
        ctx, body.user_id, body.currency, body.paid_amount, body.tx_hash,
    ).to_dict()


@router.post("/transfers", status_code=status.HTTP_201_CREATED)
def settle_transfer(body: TransferRequest, ctx: ContextDep, _svc: ServiceDep):
    record = transfer_service.settle_transfer(
        ctx,
        body.payer_id,
        body.recipient_id,
        body.score_amount,
        body.paid_amount,
        currency=body.currency,
        payment_ref=body.payment_ref,
    )
    return record.to_dict()


@router.post("/refunds")
def refund_pair(body: RefundRequest, ctx: ContextDep, _svc: ServiceDep):
    first, second = transfer_service.refund_pair(
        ctx, body.user_a, body.user_b, body.amount_each,
        currency=body.currency, reference=body.reference,
    )
    return {"results": [first.to_dict(), second.to_dict()]}
