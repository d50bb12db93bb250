"""Payout state machine.

Every payout status change goes through :func:`transition_payout`. Leaving
``PROCESSING`` for anything but ``COMPLETED`` releases the payout's reserved
earnings in the same transaction.
"""
import uuid
from typing import Optional

import structlog
from sqlmodel import Session

from .errors import InvalidTransition, NotFound
from .ledger import release_payout_earnings
from .metrics import PAYOUT_TRANSITIONS_TOTAL
from .models import Payout, PayoutStatus, utcnow
from .repository import LedgerRepository

logger = structlog.get_logger(__name__)

PAYOUT_TRANSITIONS = {
    PayoutStatus.REQUESTED: {PayoutStatus.PROCESSING, PayoutStatus.CANCELLED},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED, PayoutStatus.CANCELLED},
    PayoutStatus.COMPLETED: set(),
    PayoutStatus.FAILED: set(),
    PayoutStatus.CANCELLED: set(),
}

RELEASING_STATUSES = {PayoutStatus.FAILED, PayoutStatus.CANCELLED}


def can_transition(current: str, target: PayoutStatus) -> bool:
    return target in PAYOUT_TRANSITIONS.get(PayoutStatus(current), set())


def transition_payout(
    session: Session,
    payout: Payout,
    target: PayoutStatus,
    reason: Optional[str] = None,
    transaction_ref: Optional[str] = None,
) -> Payout:
    """Moves a payout to ``target``, releasing earnings on FAILED/CANCELLED. Flushes, does not commit."""
    current = PayoutStatus(payout.status)
    if not can_transition(current, target):
        raise InvalidTransition("payout", current.value, target.value)

    if target in RELEASING_STATUSES:
        release_payout_earnings(session, payout.id)
    payout.status = target
    if reason is not None:
        payout.failure_reason = reason
    if transaction_ref is not None:
        payout.transaction_ref = transaction_ref
    payout.updated_at = utcnow()
    session.add(payout)
    session.flush()

    PAYOUT_TRANSITIONS_TOTAL.labels(from_status=current.value, to_status=target.value).inc()
    logger.info(
        "payout_status_changed",
        payout_id=str(payout.id),
        from_status=current.value,
        to_status=target.value,
        reason=reason,
    )
    return payout


def _load_for_update(session: Session, payout_id: uuid.UUID) -> Payout:
    payout = LedgerRepository(session).get_payout(payout_id, for_update=True)
    if payout is None:
        raise NotFound("Payout not found", payout_id=str(payout_id))
    return payout


def complete_payout(session: Session, payout_id: uuid.UUID, transaction_ref: Optional[str]) -> Payout:
    """Worker success: PROCESSING -> COMPLETED."""
    payout = _load_for_update(session, payout_id)
    transition_payout(session, payout, PayoutStatus.COMPLETED, transaction_ref=transaction_ref)
    session.commit()
    return payout


def fail_payout(session: Session, payout_id: uuid.UUID, reason: str) -> Payout:
    """Worker failure: PROCESSING -> FAILED, releasing reserved earnings."""
    payout = _load_for_update(session, payout_id)
    transition_payout(session, payout, PayoutStatus.FAILED, reason=reason)
    session.commit()
    return payout


def cancel_payout(session: Session, payout_id: uuid.UUID, reason: Optional[str] = None) -> Payout:
    """External cancel: REQUESTED|PROCESSING -> CANCELLED, releasing reserved earnings."""
    payout = _load_for_update(session, payout_id)
    transition_payout(session, payout, PayoutStatus.CANCELLED, reason=reason)
    session.commit()
    return payout
