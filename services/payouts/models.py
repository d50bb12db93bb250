import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlmodel import Field, SQLModel, Column, Relationship
import sqlalchemy as sa


class EarningStatus(str, Enum):
    PENDING_CLEARANCE = "PENDING_CLEARANCE"
    AVAILABLE = "AVAILABLE"
    PAID_OUT = "PAID_OUT"
    FROZEN = "FROZEN"


class PayoutStatus(str, Enum):
    REQUESTED = "REQUESTED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentProvider(str, Enum):
    FLUTTERWAVE = "FLUTTERWAVE"
    PAYSTACK = "PAYSTACK"


# Payouts counted against the provider's balance while in flight
IN_FLIGHT_PAYOUT_STATUSES = (PayoutStatus.REQUESTED, PayoutStatus.PROCESSING)


def utcnow() -> datetime:
    """Naive UTC timestamp; the datetime columns hold UTC without an offset."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _money_column(**kwargs) -> Column:
    return Column(sa.Numeric(12, 2), nullable=False, **kwargs)


class ProviderBase(SQLModel):
    name: str = Field(nullable=False)
    email: str = Field(index=True, nullable=False)
    is_verified: bool = Field(default=False, nullable=False)


class Provider(ProviderBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True, index=True, nullable=False)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)

    earnings: List["Earning"] = Relationship(back_populates="provider")
    payouts: List["Payout"] = Relationship(back_populates="provider")


class PayoutBase(SQLModel):
    provider_id: uuid.UUID = Field(foreign_key="provider.id", index=True, nullable=False)
    amount: Decimal = Field(sa_column=_money_column())
    currency: str = Field(default="NGN", nullable=False)
    status: PayoutStatus = Field(
        default=PayoutStatus.REQUESTED,
        sa_column=Column(sa.String(20), nullable=False, index=True),
    )
    account_number: str = Field(nullable=False)
    account_name: str = Field(nullable=False)
    bank_code: str = Field(nullable=False)
    bank_name: str = Field(nullable=False)
    payment_provider: PaymentProvider = Field(
        default=PaymentProvider.FLUTTERWAVE,
        sa_column=Column(sa.String(20), nullable=False),
    )
    transaction_ref: Optional[str] = Field(default=None, index=True) # provider transfer reference
    failure_reason: Optional[str] = Field(default=None)
    risk_factors: Optional[str] = Field(default=None) # comma separated, recorded at request time


class Payout(PayoutBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True, index=True, nullable=False)
    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False, sa_column_kwargs={"onupdate": utcnow})

    provider: Provider = Relationship(back_populates="payouts")
    earnings: List["Earning"] = Relationship(back_populates="payout")


class EarningBase(SQLModel):
    provider_id: uuid.UUID = Field(foreign_key="provider.id", index=True, nullable=False)
    booking_id: uuid.UUID = Field(sa_column=Column(sa.Uuid, nullable=False, index=True))
    gross_amount: Decimal = Field(sa_column=_money_column())
    platform_fee: Decimal = Field(sa_column=_money_column())
    amount: Decimal = Field(sa_column=_money_column()) # net: gross_amount - platform_fee
    currency: str = Field(default="NGN", nullable=False)
    status: EarningStatus = Field(
        default=EarningStatus.PENDING_CLEARANCE,
        sa_column=Column(sa.String(20), nullable=False, index=True),
    )
    cleared_at: Optional[datetime] = Field(default=None, index=True)
    payout_id: Optional[uuid.UUID] = Field(default=None, foreign_key="payout.id", index=True)


class Earning(EarningBase, table=True):
    __table_args__ = (
        sa.UniqueConstraint("provider_id", "booking_id", name="uq_earning_provider_booking"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True, index=True, nullable=False)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False, sa_column_kwargs={"onupdate": utcnow})

    provider: Provider = Relationship(back_populates="earnings")
    payout: Optional[Payout] = Relationship(back_populates="earnings")


class ProviderRead(ProviderBase):
    id: uuid.UUID
    created_at: datetime


class EarningRead(EarningBase):
    id: uuid.UUID
    created_at: datetime


class ReservedEarningRead(SQLModel):
    id: uuid.UUID
    amount: Decimal
    booking_id: uuid.UUID


class PayoutRead(PayoutBase):
    id: uuid.UUID
    created_at: datetime
    updated_at: datetime


class PayoutReadWithEarnings(PayoutRead):
    earnings: List[ReservedEarningRead] = []
