import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from services.payouts import ledger
from services.payouts.errors import InsufficientEarnings
from services.payouts.ledger import (
    EXACT,
    GREEDY,
    get_available_balance,
    release_payout_earnings,
    reserve_earnings_for_payout,
    resolve_strategy,
    select_exact,
    select_greedy,
)
from services.payouts.models import Earning, EarningStatus, Payout, PayoutStatus
from sqlmodel import select


def _payout(session, provider, amount, status=PayoutStatus.PROCESSING):
    payout = Payout(provider_id=provider.id, amount=Decimal(str(amount)), status=status,
                    account_number="0123456789", account_name="Ada Okafor", bank_code="044", bank_name="Access Bank")
    session.add(payout)
    session.commit()
    return payout


def _snapshot(session, provider):
    session.expire_all()
    earnings = session.exec(select(Earning).where(Earning.provider_id == provider.id)).all()
    return {e.id: (EarningStatus(e.status), e.payout_id) for e in earnings}


# --- Balance ---

def test_balance_counts_only_available_unreserved_earnings(session, provider_factory, earning_factory):
    provider = provider_factory()
    other = provider_factory()
    earning_factory(provider, 1000)
    earning_factory(provider, "250.50")
    earning_factory(provider, 400, status=EarningStatus.PENDING_CLEARANCE)
    earning_factory(provider, 300, status=EarningStatus.FROZEN)
    payout = _payout(session, provider, 200)
    earning_factory(provider, 200, status=EarningStatus.PAID_OUT, payout_id=payout.id)
    earning_factory(other, 9999)

    balance = get_available_balance(session, provider.id)

    assert balance.available_balance == Decimal("1250.50")
    assert balance.pending_payouts == Decimal("200.00")
    assert balance.currency == "NGN"


def test_balance_is_idempotent(session, funded_provider):
    first = get_available_balance(session, funded_provider.id)
    second = get_available_balance(session, funded_provider.id)
    assert first == second
    assert first.available_balance == Decimal("5000.00")


def test_balance_for_provider_without_earnings_is_zero(session):
    balance = get_available_balance(session, uuid.uuid4())
    assert balance.available_balance == Decimal("0.00")
    assert balance.pending_payouts == Decimal("0.00")


def test_pending_payouts_only_count_in_flight_statuses(session, provider_factory):
    provider = provider_factory(completed_payouts=2, failed_payouts=1)
    _payout(session, provider, 300, status=PayoutStatus.REQUESTED)
    _payout(session, provider, 200, status=PayoutStatus.PROCESSING)
    _payout(session, provider, 50, status=PayoutStatus.CANCELLED)

    assert get_available_balance(session, provider.id).pending_payouts == Decimal("500.00")


# --- Strategies ---

class _Candidate:
    def __init__(self, amount):
        self.amount = Decimal(str(amount))


def test_greedy_skips_earnings_that_overshoot():
    candidates = [_Candidate(1000), _Candidate(700), _Candidate(500)]
    assert select_greedy(candidates, Decimal("1500")) == [candidates[0], candidates[2]]


def test_greedy_misses_subset_that_exact_finds():
    candidates = [_Candidate(1000), _Candidate(700), _Candidate(800)]
    assert select_greedy(candidates, Decimal("1500")) is None
    assert select_exact(candidates, Decimal("1500")) == [candidates[1], candidates[2]]


def test_exact_prefers_oldest_candidates():
    candidates = [_Candidate(500), _Candidate(500), _Candidate(500)]
    assert select_exact(candidates, Decimal("1000")) == candidates[:2]


def test_exact_handles_cents():
    candidates = [_Candidate("0.10"), _Candidate("0.20"), _Candidate("0.05")]
    assert select_exact(candidates, Decimal("0.30")) == candidates[:2]


def test_no_subset_returns_none():
    candidates = [_Candidate(700)] * 3
    assert select_greedy(candidates, Decimal("1500")) is None
    assert select_exact(candidates, Decimal("1500")) is None


def test_strategy_defaults_to_greedy():
    assert resolve_strategy(uuid.uuid4()) == GREEDY


def test_strategy_from_settings(monkeypatch):
    monkeypatch.setattr(ledger.settings, "reservation_strategy", EXACT)
    assert resolve_strategy(uuid.uuid4()) == EXACT


@patch("services.payouts.ledger.is_enabled", return_value=True)
def test_strategy_from_feature_flag(mock_is_enabled):
    provider_id = uuid.uuid4()
    assert resolve_strategy(provider_id) == EXACT
    mock_is_enabled.assert_called_once_with(ledger.EXACT_RESERVATION_FLAG, str(provider_id))


# --- Reservation ---

def test_reserves_oldest_cleared_first(session, provider_factory, earning_factory):
    """700 + 700 + 700 against 1400: the two oldest are reserved, the third stays available."""
    provider = provider_factory()
    first, second, third = (earning_factory(provider, 700) for _ in range(3))
    payout = _payout(session, provider, 1400)

    reserved = reserve_earnings_for_payout(session, provider.id, payout.id, Decimal("1400"))
    session.commit()

    assert {e.id for e in reserved} == {first.id, second.id}
    after = _snapshot(session, provider)
    assert after[first.id] == (EarningStatus.PAID_OUT, payout.id)
    assert after[second.id] == (EarningStatus.PAID_OUT, payout.id)
    assert after[third.id] == (EarningStatus.AVAILABLE, None)
    assert sum(e.amount for e in reserved) == Decimal("1400.00")


def test_earnings_cleared_together_reserve_oldest_created_first(session, provider_factory, earning_factory):
    provider = provider_factory()
    swept_at = datetime(2026, 3, 1, 12, 0, 0)
    created = [
        earning_factory(provider, 100, cleared_at=swept_at, created_at=swept_at - timedelta(days=days))
        for days in range(1, 6)
    ]
    payout = _payout(session, provider, 200)

    reserved = reserve_earnings_for_payout(session, provider.id, payout.id, Decimal("200"))

    assert [e.id for e in reserved] == [created[4].id, created[3].id]


def test_greedy_shortfall_fails_without_touching_earnings(session, provider_factory, earning_factory):
    """700 + 700 + 700 against 1500: enough raw balance but no exact subset."""
    provider = provider_factory()
    for _ in range(3):
        earning_factory(provider, 700)
    payout = _payout(session, provider, 1500)
    before = _snapshot(session, provider)

    with pytest.raises(InsufficientEarnings) as exc_info:
        reserve_earnings_for_payout(session, provider.id, payout.id, Decimal("1500"))
    session.rollback()

    assert exc_info.value.details["requested_amount"] == "1500"
    assert _snapshot(session, provider) == before
    assert get_available_balance(session, provider.id).available_balance == Decimal("2100.00")


def test_exact_strategy_finds_subset_greedy_misses(session, provider_factory, earning_factory):
    provider = provider_factory()
    big = earning_factory(provider, 1000)
    seven = earning_factory(provider, 700)
    eight = earning_factory(provider, 800)
    payout = _payout(session, provider, 1500)

    reserved = reserve_earnings_for_payout(session, provider.id, payout.id, Decimal("1500"), strategy=EXACT)
    session.commit()

    assert {e.id for e in reserved} == {seven.id, eight.id}
    assert _snapshot(session, provider)[big.id] == (EarningStatus.AVAILABLE, None)


def test_reservation_ignores_frozen_pending_and_reserved(session, provider_factory, earning_factory):
    provider = provider_factory()
    other_payout = _payout(session, provider, 500)
    earning_factory(provider, 500, status=EarningStatus.FROZEN)
    earning_factory(provider, 500, status=EarningStatus.PENDING_CLEARANCE)
    earning_factory(provider, 500, status=EarningStatus.PAID_OUT, payout_id=other_payout.id)
    payout = _payout(session, provider, 500)

    with pytest.raises(InsufficientEarnings):
        reserve_earnings_for_payout(session, provider.id, payout.id, Decimal("500"))


def test_reservation_does_not_cross_providers(session, provider_factory, earning_factory):
    provider = provider_factory()
    other = provider_factory()
    earning_factory(other, 500)
    payout = _payout(session, provider, 500)

    with pytest.raises(InsufficientEarnings):
        reserve_earnings_for_payout(session, provider.id, payout.id, Decimal("500"))


def test_release_returns_earnings_to_available(session, provider_factory, earning_factory):
    provider = provider_factory()
    earnings = [earning_factory(provider, 700) for _ in range(2)]
    payout = _payout(session, provider, 1400)
    reserve_earnings_for_payout(session, provider.id, payout.id, Decimal("1400"))
    session.commit()

    released = release_payout_earnings(session, payout.id)
    session.commit()

    assert released == 2
    after = _snapshot(session, provider)
    assert all(after[e.id] == (EarningStatus.AVAILABLE, None) for e in earnings)
    assert release_payout_earnings(session, payout.id) == 0
