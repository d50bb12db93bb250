import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends, Query, status
from sqlmodel import Session

from .auth import CurrentUser, require_admin, require_provider
from .db import get_session
from .earnings import clear_pending_earnings, freeze_earning, get_earnings_summary
from .ledger import get_available_balance
from .lifecycle import cancel_payout
from .models import EarningRead, PayoutRead, PayoutReadWithEarnings, PayoutStatus
from .orchestrator import approve_payout, create_payout_request, get_provider_payout, list_provider_payouts
from .schemas import (
    BalanceRead,
    BalanceResponse,
    ClearanceRead,
    ClearanceResponse,
    EarningFreeze,
    EarningResponse,
    EarningsSummaryRead,
    EarningsSummaryResponse,
    PageMeta,
    PayoutCancel,
    PayoutCreate,
    PayoutDetailResponse,
    PayoutListResponse,
    PayoutResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/payouts", tags=["payouts"])
earnings_router = APIRouter(prefix="/earnings", tags=["earnings"])
admin_router = APIRouter(prefix="/admin", tags=["payouts-admin"])


@router.post("", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED)
def request_payout(
    payload: PayoutCreate,
    user: CurrentUser = Depends(require_provider),
    session: Session = Depends(get_session),
):
    outcome = create_payout_request(session, user.id, payload)
    return PayoutResponse(data=PayoutRead.model_validate(outcome.payout), message=outcome.message)


@router.get("", response_model=PayoutListResponse)
def list_payouts(
    payout_status: Optional[PayoutStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(require_provider),
    session: Session = Depends(get_session),
):
    page = list_provider_payouts(session, user.id, status=payout_status, limit=limit, offset=offset)
    return PayoutListResponse(
        data=[PayoutReadWithEarnings.model_validate(payout) for payout in page.items],
        meta=PageMeta(total=page.total, limit=page.limit, offset=page.offset, has_more=page.has_more),
    )


# Declared before /{payout_id} so "balance" is not parsed as an id.
@router.get("/balance/available", response_model=BalanceResponse)
def available_balance(
    user: CurrentUser = Depends(require_provider),
    session: Session = Depends(get_session),
):
    balance = get_available_balance(session, user.id)
    return BalanceResponse(
        data=BalanceRead(
            available_balance=balance.available_balance,
            pending_payouts=balance.pending_payouts,
            currency=balance.currency,
        )
    )


@router.get("/{payout_id}", response_model=PayoutDetailResponse)
def get_payout(
    payout_id: uuid.UUID,
    user: CurrentUser = Depends(require_provider),
    session: Session = Depends(get_session),
):
    payout = get_provider_payout(session, user.id, payout_id)
    return PayoutDetailResponse(data=PayoutReadWithEarnings.model_validate(payout))


@earnings_router.get("/summary", response_model=EarningsSummaryResponse)
def earnings_summary(
    user: CurrentUser = Depends(require_provider),
    session: Session = Depends(get_session),
):
    return EarningsSummaryResponse(data=EarningsSummaryRead(**get_earnings_summary(session, user.id)))


# --- Admin ---

@admin_router.post("/payouts/{payout_id}/approve", response_model=PayoutResponse)
def approve(
    payout_id: uuid.UUID,
    admin: CurrentUser = Depends(require_admin),
    session: Session = Depends(get_session),
):
    logger.info("admin_payout_approval", payout_id=str(payout_id), admin_id=str(admin.id))
    outcome = approve_payout(session, payout_id)
    return PayoutResponse(data=PayoutRead.model_validate(outcome.payout), message=outcome.message)


@admin_router.post("/payouts/{payout_id}/cancel", response_model=PayoutResponse)
def cancel(
    payout_id: uuid.UUID,
    payload: Optional[PayoutCancel] = Body(default=None),
    admin: CurrentUser = Depends(require_admin),
    session: Session = Depends(get_session),
):
    reason = payload.reason if payload else None
    logger.info("admin_payout_cancellation", payout_id=str(payout_id), admin_id=str(admin.id), reason=reason)
    payout = cancel_payout(session, payout_id, reason=reason or "Cancelled by admin")
    return PayoutResponse(data=PayoutRead.model_validate(payout))


@admin_router.post("/earnings/clearance", response_model=ClearanceResponse)
def run_clearance(
    provider_id: Optional[uuid.UUID] = Query(default=None),
    delay_hours: Optional[int] = Query(default=None, ge=0),
    admin: CurrentUser = Depends(require_admin),
    session: Session = Depends(get_session),
):
    result = clear_pending_earnings(session, provider_id=provider_id, delay_hours=delay_hours)
    return ClearanceResponse(data=ClearanceRead(processed=result.processed, errors=result.errors))


@admin_router.post("/earnings/{earning_id}/freeze", response_model=EarningResponse)
def freeze(
    earning_id: uuid.UUID,
    payload: Optional[EarningFreeze] = Body(default=None),
    admin: CurrentUser = Depends(require_admin),
    session: Session = Depends(get_session),
):
    earning = freeze_earning(session, earning_id, reason=payload.reason if payload else None)
    return EarningResponse(data=EarningRead.model_validate(earning))
