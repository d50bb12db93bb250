"""Earnings accrual, clearance, moderation freeze and per-provider summaries."""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from libs.py_common.config import settings

from .errors import InvalidTransition, NotFound, ValidationError
from .metrics import EARNINGS_CLEARED_TOTAL, EARNINGS_RECORDED_TOTAL
from .models import Earning, EarningStatus, utcnow
from .repository import EarningFilter, LedgerRepository

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")

FREEZABLE_STATUSES = {EarningStatus.PENDING_CLEARANCE, EarningStatus.AVAILABLE}


@dataclass(frozen=True)
class EarningsBreakdown:
    gross_amount: Decimal
    platform_fee: Decimal
    provider_amount: Decimal
    currency: str
    fee_percentage: Decimal


@dataclass(frozen=True)
class ClearanceResult:
    processed: int
    errors: int


def calculate_platform_fee(gross_amount: Decimal) -> Decimal:
    percentage_fee = Decimal(gross_amount) * settings.platform_fee_percentage / 100
    fee = max(percentage_fee, settings.minimum_platform_fee)
    return fee.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_earnings(gross_amount: Decimal, currency: Optional[str] = None) -> EarningsBreakdown:
    gross = Decimal(gross_amount).quantize(CENT, rounding=ROUND_HALF_UP)
    fee = calculate_platform_fee(gross)
    return EarningsBreakdown(
        gross_amount=gross,
        platform_fee=fee,
        provider_amount=gross - fee,
        currency=currency or settings.default_currency,
        fee_percentage=settings.platform_fee_percentage,
    )


def record_booking_earning(
    session: Session,
    provider_id: uuid.UUID,
    booking_id: uuid.UUID,
    gross_amount: Decimal,
    currency: Optional[str] = None,
) -> Earning:
    """Records the provider's share of a paid booking as a PENDING_CLEARANCE earning.

    Recording the same booking twice returns the existing earning.
    """
    repo = LedgerRepository(session)
    existing = repo.find_earning_for_booking(provider_id, booking_id)
    if existing is not None:
        EARNINGS_RECORDED_TOTAL.labels(outcome="duplicate").inc()
        logger.warning(
            "earning_already_recorded",
            earning_id=str(existing.id),
            booking_id=str(booking_id),
            provider_id=str(provider_id),
        )
        return existing

    breakdown = calculate_earnings(gross_amount, currency)
    if breakdown.provider_amount <= 0:
        raise ValidationError(
            "Booking amount does not cover the platform fee",
            gross_amount=str(breakdown.gross_amount),
            platform_fee=str(breakdown.platform_fee),
        )

    earning = Earning(
        provider_id=provider_id,
        booking_id=booking_id,
        gross_amount=breakdown.gross_amount,
        platform_fee=breakdown.platform_fee,
        amount=breakdown.provider_amount,
        currency=breakdown.currency,
        status=EarningStatus.PENDING_CLEARANCE,
    )
    try:
        repo.add(earning)
        session.commit()
    except IntegrityError:
        # Lost a race with another recorder for the same booking.
        session.rollback()
        existing = repo.find_earning_for_booking(provider_id, booking_id)
        if existing is None:
            raise
        EARNINGS_RECORDED_TOTAL.labels(outcome="duplicate").inc()
        return existing

    EARNINGS_RECORDED_TOTAL.labels(outcome="created").inc()
    logger.info(
        "earning_recorded",
        earning_id=str(earning.id),
        booking_id=str(booking_id),
        provider_id=str(provider_id),
        gross_amount=str(breakdown.gross_amount),
        platform_fee=str(breakdown.platform_fee),
        net_amount=str(breakdown.provider_amount),
    )
    return earning


def clear_pending_earnings(
    session: Session,
    now: Optional[datetime] = None,
    provider_id: Optional[uuid.UUID] = None,
    delay_hours: Optional[int] = None,
) -> ClearanceResult:
    """Moves PENDING_CLEARANCE earnings older than the clearance delay to AVAILABLE."""
    now = now or utcnow()
    delay = settings.clearance_delay_hours if delay_hours is None else delay_hours
    repo = LedgerRepository(session)

    pending = repo.list_earnings(
        EarningFilter(
            provider_id=provider_id,
            statuses=(EarningStatus.PENDING_CLEARANCE,),
            created_before=now - timedelta(hours=delay),
        ),
        order_by=(Earning.created_at.asc(),),
    )
    logger.info("earnings_clearance_started", candidates=len(pending), provider_id=str(provider_id) if provider_id else None)

    processed = errors = 0
    for earning in pending:
        earning_id = earning.id
        try:
            earning.status = EarningStatus.AVAILABLE
            earning.cleared_at = now
            earning.updated_at = now
            session.add(earning)
            session.commit()
            processed += 1
            EARNINGS_CLEARED_TOTAL.labels(outcome="cleared").inc()
        except Exception as e:
            session.rollback()
            errors += 1
            EARNINGS_CLEARED_TOTAL.labels(outcome="error").inc()
            logger.error("earning_clearance_failed", earning_id=str(earning_id), error=str(e), exc_info=True)

    logger.info("earnings_clearance_completed", processed=processed, errors=errors)
    return ClearanceResult(processed=processed, errors=errors)


def freeze_earning(session: Session, earning_id: uuid.UUID, reason: Optional[str] = None) -> Earning:
    """Moderation freeze. A frozen earning never counts toward balance or reservations."""
    repo = LedgerRepository(session)
    earning = repo.get_earning(earning_id, for_update=True)
    if earning is None:
        raise NotFound("Earning not found", earning_id=str(earning_id))
    current = EarningStatus(earning.status)
    if current not in FREEZABLE_STATUSES:
        raise InvalidTransition("earning", current.value, EarningStatus.FROZEN.value)

    earning.status = EarningStatus.FROZEN
    earning.updated_at = utcnow()
    session.add(earning)
    session.commit()
    logger.info("earning_frozen", earning_id=str(earning_id), from_status=current.value, reason=reason)
    return earning


def get_earnings_summary(session: Session, provider_id: uuid.UUID) -> Dict[str, object]:
    repo = LedgerRepository(session)

    def total(*statuses: EarningStatus) -> Decimal:
        return repo.sum_earnings(EarningFilter(provider_id=provider_id, statuses=statuses))

    return {
        "total_lifetime": total(),
        "available_balance": total(EarningStatus.AVAILABLE),
        "pending_clearance": total(EarningStatus.PENDING_CLEARANCE),
        "paid_out": total(EarningStatus.PAID_OUT),
        "frozen": total(EarningStatus.FROZEN),
        "currency": settings.default_currency,
    }
