import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlmodel import Session

from libs.py_common.config import Settings, settings as default_settings

from .models import PayoutStatus, utcnow
from .repository import LedgerRepository, PayoutFilter

logger = structlog.get_logger(__name__)

AMOUNT_THRESHOLD_EXCEEDED = "AMOUNT_THRESHOLD_EXCEEDED"
PROVIDER_NOT_VERIFIED = "PROVIDER_NOT_VERIFIED"
INSUFFICIENT_PAYOUT_HISTORY = "INSUFFICIENT_PAYOUT_HISTORY"
RECENT_FAILED_PAYOUTS = "RECENT_FAILED_PAYOUTS"


@dataclass(frozen=True)
class ProviderRiskProfile:
    is_verified: bool
    completed_payouts: int
    recent_failed_payouts: int


@dataclass(frozen=True)
class RiskAssessment:
    auto_approve: bool
    risk_factors: List[str] = field(default_factory=list)


def assess_payout_risk(
    amount: Decimal,
    profile: ProviderRiskProfile,
    settings: Optional[Settings] = None,
) -> RiskAssessment:
    """Decides between auto-approval and manual review for a payout request.

    Each rule adds one factor. The payout is auto-approved when there are no
    factors, or a single factor other than the amount threshold; the amount
    threshold always sends it to review.
    """
    settings = settings or default_settings
    risk_factors: List[str] = []

    if Decimal(amount) > settings.auto_approve_amount_threshold:
        risk_factors.append(AMOUNT_THRESHOLD_EXCEEDED)
    if not profile.is_verified:
        risk_factors.append(PROVIDER_NOT_VERIFIED)
    if profile.completed_payouts < settings.min_completed_payouts:
        risk_factors.append(INSUFFICIENT_PAYOUT_HISTORY)
    if profile.recent_failed_payouts > 0:
        risk_factors.append(RECENT_FAILED_PAYOUTS)

    auto_approve = not risk_factors or (
        len(risk_factors) == 1 and AMOUNT_THRESHOLD_EXCEEDED not in risk_factors
    )
    return RiskAssessment(auto_approve=auto_approve, risk_factors=risk_factors)


def load_risk_profile(
    session: Session,
    provider_id: uuid.UUID,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> ProviderRiskProfile:
    settings = settings or default_settings
    now = now or utcnow()
    repo = LedgerRepository(session)

    provider = repo.get_provider(provider_id)
    completed = repo.count_payouts(
        PayoutFilter(provider_id=provider_id, statuses=(PayoutStatus.COMPLETED,))
    )
    recent_failures = repo.count_payouts(
        PayoutFilter(
            provider_id=provider_id,
            statuses=(PayoutStatus.FAILED,),
            created_since=now - timedelta(days=settings.failed_payout_lookback_days),
        )
    )
    return ProviderRiskProfile(
        is_verified=bool(provider and provider.is_verified),
        completed_payouts=completed,
        recent_failed_payouts=recent_failures,
    )


def assess_provider_payout_risk(
    session: Session,
    provider_id: uuid.UUID,
    amount: Decimal,
    now: Optional[datetime] = None,
) -> RiskAssessment:
    profile = load_risk_profile(session, provider_id, now=now)
    assessment = assess_payout_risk(amount, profile)
    logger.debug(
        "payout_risk_assessed",
        provider_id=str(provider_id),
        amount=str(amount),
        auto_approve=assessment.auto_approve,
        risk_factors=assessment.risk_factors,
    )
    return assessment
