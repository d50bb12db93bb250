"""Payout request workflow: balance check, risk decision, reservation, hand-off to the worker."""
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional

import structlog
from sqlmodel import Session

from libs.py_common.logging import mask_account_number

from .errors import InsufficientBalance, InsufficientEarnings, InvalidTransition, NotFound, QueueError, ValidationError
from .ledger import get_available_balance, reserve_earnings_for_payout
from .lifecycle import transition_payout
from .metrics import PAYOUT_REQUESTS_TOTAL
from .models import Payout, PayoutStatus
from .queue import PayoutJob, enqueue_payout_job
from .repository import LedgerRepository, PayoutFilter
from .risk import RiskAssessment, assess_provider_payout_risk
from .schemas import PayoutCreate

logger = structlog.get_logger(__name__)

PROCESSING_MESSAGE = "Payout approved and processing"
UNDER_REVIEW_MESSAGE = "Payout request received and under review"

Enqueue = Callable[[PayoutJob], object]


@dataclass
class PayoutOutcome:
    payout: Payout
    message: str
    risk: Optional[RiskAssessment] = None


@dataclass
class PayoutPage:
    items: List[Payout]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.total > self.offset + self.limit


def create_payout_request(
    session: Session,
    provider_id: uuid.UUID,
    request: PayoutCreate,
    enqueue: Optional[Enqueue] = None,
) -> PayoutOutcome:
    """Creates a payout for a provider and either starts processing it or parks it for review.

    The balance check is advisory: it is read without locks, so a concurrent
    request can still take the earnings. That race surfaces as
    :class:`InsufficientEarnings` from the reservation and leaves the payout FAILED.
    """
    amount = Decimal(request.amount)
    if amount <= 0:
        raise ValidationError("Amount must be positive", field="amount")

    balance = get_available_balance(session, provider_id)
    if balance.available_balance < amount:
        PAYOUT_REQUESTS_TOTAL.labels(outcome="insufficient_balance").inc()
        logger.info(
            "payout_rejected_insufficient_balance",
            provider_id=str(provider_id),
            available_balance=str(balance.available_balance),
            requested_amount=str(amount),
        )
        raise InsufficientBalance(
            "Insufficient available balance",
            available_balance=str(balance.available_balance),
            requested_amount=str(amount),
        )

    payout = Payout(
        provider_id=provider_id,
        amount=amount,
        currency=request.currency,
        status=PayoutStatus.REQUESTED,
        account_number=request.account_number,
        account_name=request.account_name,
        bank_code=request.bank_code,
        bank_name=request.bank_name,
        payment_provider=request.payment_provider,
    )
    LedgerRepository(session).add(payout)
    session.commit()
    logger.info(
        "payout_requested",
        payout_id=str(payout.id),
        provider_id=str(provider_id),
        amount=str(amount),
        account_number=mask_account_number(request.account_number),
    )

    risk = assess_provider_payout_risk(session, provider_id, amount)
    payout.risk_factors = ",".join(risk.risk_factors) or None
    session.add(payout)
    session.commit()

    if not risk.auto_approve:
        PAYOUT_REQUESTS_TOTAL.labels(outcome="manual_review").inc()
        logger.info(
            "payout_flagged_for_review",
            payout_id=str(payout.id),
            provider_id=str(provider_id),
            amount=str(amount),
            risk_factors=risk.risk_factors,
        )
        return PayoutOutcome(payout=payout, message=UNDER_REVIEW_MESSAGE, risk=risk)

    _start_processing(session, payout, enqueue or enqueue_payout_job)
    PAYOUT_REQUESTS_TOTAL.labels(outcome="auto_approved").inc()
    logger.info(
        "payout_auto_approved",
        payout_id=str(payout.id),
        provider_id=str(provider_id),
        amount=str(amount),
    )
    return PayoutOutcome(payout=payout, message=PROCESSING_MESSAGE, risk=risk)


def approve_payout(
    session: Session,
    payout_id: uuid.UUID,
    enqueue: Optional[Enqueue] = None,
) -> PayoutOutcome:
    """Manual approval of a payout waiting in review (REQUESTED -> PROCESSING)."""
    payout = LedgerRepository(session).get_payout(payout_id, for_update=True)
    if payout is None:
        raise NotFound("Payout not found", payout_id=str(payout_id))
    if payout.status != PayoutStatus.REQUESTED:
        raise InvalidTransition("payout", PayoutStatus(payout.status).value, PayoutStatus.PROCESSING.value)

    _start_processing(session, payout, enqueue or enqueue_payout_job)
    PAYOUT_REQUESTS_TOTAL.labels(outcome="manually_approved").inc()
    logger.info("payout_manually_approved", payout_id=str(payout.id), provider_id=str(payout.provider_id))
    return PayoutOutcome(payout=payout, message=PROCESSING_MESSAGE)


def _start_processing(session: Session, payout: Payout, enqueue: Enqueue) -> None:
    """REQUESTED -> PROCESSING with earnings reserved and a job queued, or FAILED."""
    transition_payout(session, payout, PayoutStatus.PROCESSING)
    try:
        reserve_earnings_for_payout(session, payout.provider_id, payout.id, payout.amount)
    except InsufficientEarnings:
        PAYOUT_REQUESTS_TOTAL.labels(outcome="insufficient_earnings").inc()
        transition_payout(session, payout, PayoutStatus.FAILED, reason="Insufficient earnings to reserve")
        session.commit()
        raise
    session.commit()

    try:
        enqueue(PayoutJob.from_payout(payout))
    except Exception as e:
        PAYOUT_REQUESTS_TOTAL.labels(outcome="queue_error").inc()
        transition_payout(session, payout, PayoutStatus.FAILED, reason=f"Failed to enqueue payout job: {e}")
        session.commit()
        if isinstance(e, QueueError):
            raise
        raise QueueError("Failed to enqueue payout job", payout_id=str(payout.id)) from e


def get_provider_payout(session: Session, provider_id: uuid.UUID, payout_id: uuid.UUID) -> Payout:
    payout = LedgerRepository(session).get_payout(payout_id)
    if payout is None or payout.provider_id != provider_id:
        raise NotFound("Payout not found", payout_id=str(payout_id))
    return payout


def list_provider_payouts(
    session: Session,
    provider_id: uuid.UUID,
    status: Optional[PayoutStatus] = None,
    limit: int = 20,
    offset: int = 0,
) -> PayoutPage:
    repo = LedgerRepository(session)
    payout_filter = PayoutFilter(provider_id=provider_id, statuses=(status,) if status else ())
    return PayoutPage(
        items=repo.list_payouts(payout_filter, limit=limit, offset=offset),
        total=repo.count_payouts(payout_filter),
        limit=limit,
        offset=offset,
    )
