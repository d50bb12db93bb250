import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlmodel import Session, select, func

from .models import Earning, EarningStatus, Payout, PayoutStatus, Provider, utcnow

CENT = Decimal("0.01")


def _as_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT)


@dataclass(frozen=True)
class EarningFilter:
    provider_id: Optional[uuid.UUID] = None
    statuses: Sequence[EarningStatus] = ()
    payout_id: Optional[uuid.UUID] = None
    unreserved_only: bool = False
    created_before: Optional[datetime] = None

    def conditions(self) -> list:
        clauses = []
        if self.provider_id is not None:
            clauses.append(Earning.provider_id == self.provider_id)
        if self.statuses:
            clauses.append(Earning.status.in_([s.value for s in self.statuses]))
        if self.payout_id is not None:
            clauses.append(Earning.payout_id == self.payout_id)
        if self.unreserved_only:
            clauses.append(Earning.payout_id.is_(None))
        if self.created_before is not None:
            clauses.append(Earning.created_at <= self.created_before)
        return clauses


@dataclass(frozen=True)
class PayoutFilter:
    provider_id: Optional[uuid.UUID] = None
    statuses: Sequence[PayoutStatus] = ()
    created_since: Optional[datetime] = None

    def conditions(self) -> list:
        clauses = []
        if self.provider_id is not None:
            clauses.append(Payout.provider_id == self.provider_id)
        if self.statuses:
            clauses.append(Payout.status.in_([s.value for s in self.statuses]))
        if self.created_since is not None:
            clauses.append(Payout.created_at >= self.created_since)
        return clauses


class LedgerRepository:
    """Persistence collaborator for earnings, payouts and providers.

    All methods run on the caller's session; nothing here commits, so a caller
    can compose several reads and writes into one transaction.
    """

    def __init__(self, session: Session):
        self.session = session

    # --- providers ---
    def get_provider(self, provider_id: uuid.UUID) -> Optional[Provider]:
        return self.session.get(Provider, provider_id)

    # --- earnings ---
    def get_earning(self, earning_id: uuid.UUID, for_update: bool = False) -> Optional[Earning]:
        statement = select(Earning).where(Earning.id == earning_id)
        if for_update:
            statement = statement.with_for_update()
        return self.session.exec(statement).first()

    def find_earning_for_booking(self, provider_id: uuid.UUID, booking_id: uuid.UUID) -> Optional[Earning]:
        statement = select(Earning).where(
            Earning.provider_id == provider_id, Earning.booking_id == booking_id
        )
        return self.session.exec(statement).first()

    def list_earnings(
        self,
        earning_filter: EarningFilter,
        order_by=None,
        limit: Optional[int] = None,
        for_update: bool = False,
    ) -> List[Earning]:
        statement = select(Earning).where(*earning_filter.conditions())
        if order_by is not None:
            statement = statement.order_by(*order_by)
        if limit is not None:
            statement = statement.limit(limit)
        if for_update:
            statement = statement.with_for_update()
        return list(self.session.exec(statement).all())

    def sum_earnings(self, earning_filter: EarningFilter) -> Decimal:
        statement = select(func.coalesce(func.sum(Earning.amount), 0)).where(*earning_filter.conditions())
        return _as_money(self.session.exec(statement).one())

    def reserve_earnings(self, earning_ids: Sequence[uuid.UUID], payout_id: uuid.UUID) -> int:
        if not earning_ids:
            return 0
        statement = (
            sa.update(Earning)
            .where(Earning.id.in_(list(earning_ids)))
            .values(payout_id=payout_id, status=EarningStatus.PAID_OUT.value, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return self.session.exec(statement).rowcount

    def release_earnings(self, payout_id: uuid.UUID) -> int:
        statement = (
            sa.update(Earning)
            .where(Earning.payout_id == payout_id)
            .values(payout_id=None, status=EarningStatus.AVAILABLE.value, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return self.session.exec(statement).rowcount

    # --- payouts ---
    def get_payout(self, payout_id: uuid.UUID, for_update: bool = False) -> Optional[Payout]:
        statement = select(Payout).where(Payout.id == payout_id)
        if for_update:
            statement = statement.with_for_update()
        return self.session.exec(statement).first()

    def list_payouts(self, payout_filter: PayoutFilter, limit: int, offset: int) -> List[Payout]:
        statement = (
            select(Payout)
            .where(*payout_filter.conditions())
            .order_by(Payout.created_at.desc(), Payout.id)
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.exec(statement).all())

    def count_payouts(self, payout_filter: PayoutFilter) -> int:
        statement = select(func.count()).select_from(Payout).where(*payout_filter.conditions())
        return int(self.session.exec(statement).one())

    def sum_payouts(self, payout_filter: PayoutFilter) -> Decimal:
        statement = select(func.coalesce(func.sum(Payout.amount), 0)).where(*payout_filter.conditions())
        return _as_money(self.session.exec(statement).one())

    def balance_totals(self, earning_filter: EarningFilter, payout_filter: PayoutFilter) -> Tuple[Decimal, Decimal]:
        earnings_total = (
            select(func.coalesce(func.sum(Earning.amount), 0)).where(*earning_filter.conditions()).scalar_subquery()
        )
        payouts_total = (
            select(func.coalesce(func.sum(Payout.amount), 0)).where(*payout_filter.conditions()).scalar_subquery()
        )
        available, pending = self.session.exec(select(earnings_total, payouts_total)).one()
        return _as_money(available), _as_money(pending)

    def add(self, instance):
        self.session.add(instance)
        self.session.flush()
        return instance
