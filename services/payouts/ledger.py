"""Balance aggregation and earnings reservation.

Reservation is the only path that moves an earning to ``PAID_OUT`` and
:func:`release_payout_earnings` is the only path that moves it back to
``AVAILABLE``. Both flush but never commit; the caller owns the transaction.
"""
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

import structlog
from sqlmodel import Session

from libs.py_common.config import settings
from libs.py_common.flags import is_enabled

from .errors import InsufficientEarnings
from .metrics import EARNINGS_RELEASED_TOTAL, RESERVATIONS_TOTAL
from .models import IN_FLIGHT_PAYOUT_STATUSES, Earning, EarningStatus
from .repository import EarningFilter, LedgerRepository, PayoutFilter

logger = structlog.get_logger(__name__)

EXACT_RESERVATION_FLAG = "ledger-exact-reservation"
GREEDY = "greedy"
EXACT = "exact"


@dataclass(frozen=True)
class BalanceSnapshot:
    available_balance: Decimal
    pending_payouts: Decimal
    currency: str


def available_earnings_filter(provider_id: uuid.UUID) -> EarningFilter:
    return EarningFilter(
        provider_id=provider_id,
        statuses=(EarningStatus.AVAILABLE,),
        unreserved_only=True,
    )


def get_available_balance(session: Session, provider_id: uuid.UUID) -> BalanceSnapshot:
    """Available (cleared, unreserved) earnings and in-flight payout totals for a provider."""
    # One statement for both aggregates, so they come from the same snapshot.
    available, pending = LedgerRepository(session).balance_totals(
        available_earnings_filter(provider_id),
        PayoutFilter(provider_id=provider_id, statuses=IN_FLIGHT_PAYOUT_STATUSES),
    )
    return BalanceSnapshot(
        available_balance=available,
        pending_payouts=pending,
        currency=settings.default_currency,
    )


# --- Reservation strategies ---
# A strategy picks, from the oldest-cleared-first candidates, the earnings whose
# amounts sum exactly to the target. It returns None when it cannot.

def select_greedy(candidates: Sequence[Earning], amount: Decimal) -> Optional[List[Earning]]:
    """Walks candidates oldest first, taking each one that still fits.

    An earning that would overshoot the remaining amount is skipped, never split,
    so this can miss an exact subset that exists (e.g. 700+700+700 against 1500).
    """
    remaining = amount
    selected: List[Earning] = []
    for earning in candidates:
        if remaining <= 0:
            break
        if earning.amount <= remaining:
            selected.append(earning)
            remaining -= earning.amount
    if remaining > 0:
        return None
    return selected


def select_exact(candidates: Sequence[Earning], amount: Decimal) -> Optional[List[Earning]]:
    """Oldest-first exact subset-sum search over the candidates (in minor units)."""
    target = _to_minor_units(amount)
    # reachable sum -> indices of the earnings that make it up
    reachable: Dict[int, List[int]] = {0: []}
    for index, earning in enumerate(candidates):
        value = _to_minor_units(earning.amount)
        if value <= 0:
            continue
        for subtotal, picked in list(reachable.items()):
            new_total = subtotal + value
            if new_total > target or new_total in reachable:
                continue
            reachable[new_total] = picked + [index]
        if target in reachable:
            break
    if target not in reachable:
        return None
    return [candidates[i] for i in reachable[target]]


STRATEGIES: Dict[str, Callable[[Sequence[Earning], Decimal], Optional[List[Earning]]]] = {
    GREEDY: select_greedy,
    EXACT: select_exact,
}


def _to_minor_units(value: Decimal) -> int:
    return int((Decimal(value) * 100).to_integral_value())


def resolve_strategy(provider_id: uuid.UUID) -> str:
    if settings.reservation_strategy == EXACT:
        return EXACT
    if is_enabled(EXACT_RESERVATION_FLAG, str(provider_id)):
        return EXACT
    return GREEDY


def reserve_earnings_for_payout(
    session: Session,
    provider_id: uuid.UUID,
    payout_id: uuid.UUID,
    amount: Decimal,
    strategy: Optional[str] = None,
) -> List[Earning]:
    """Reserves available earnings summing exactly to ``amount`` for a payout.

    Candidates are locked (``SELECT ... FOR UPDATE``) so two concurrent
    reservations for the same provider cannot claim the same rows. On failure
    :class:`InsufficientEarnings` is raised and no earning is touched.
    """
    strategy = strategy or resolve_strategy(provider_id)
    select_fn = STRATEGIES[strategy]
    repo = LedgerRepository(session)

    candidates = repo.list_earnings(
        available_earnings_filter(provider_id),
        order_by=(Earning.cleared_at.asc().nulls_last(), Earning.created_at.asc(), Earning.id.asc()),
        limit=settings.reservation_candidate_limit,
        for_update=True,
    )
    selected = select_fn(candidates, Decimal(amount))
    if selected is None:
        RESERVATIONS_TOTAL.labels(strategy=strategy, outcome="insufficient").inc()
        logger.warning(
            "earnings_reservation_failed",
            provider_id=str(provider_id),
            payout_id=str(payout_id),
            amount=str(amount),
            candidates=len(candidates),
            candidate_total=str(sum((e.amount for e in candidates), Decimal("0"))),
            strategy=strategy,
        )
        raise InsufficientEarnings(
            "Insufficient earnings to reserve",
            requested_amount=str(amount),
        )

    reserved = repo.reserve_earnings([e.id for e in selected], payout_id)
    session.flush()
    RESERVATIONS_TOTAL.labels(strategy=strategy, outcome="reserved").inc()
    logger.info(
        "earnings_reserved",
        provider_id=str(provider_id),
        payout_id=str(payout_id),
        amount=str(amount),
        earnings=reserved,
        strategy=strategy,
    )
    return selected


def release_payout_earnings(session: Session, payout_id: uuid.UUID) -> int:
    """Compensating action: returns a payout's reserved earnings to AVAILABLE."""
    released = LedgerRepository(session).release_earnings(payout_id)
    session.flush()
    if released:
        EARNINGS_RELEASED_TOTAL.inc(released)
    logger.info("payout_earnings_released", payout_id=str(payout_id), earnings=released)
    return released
