from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from libs.py_common.config import settings

from .models import EarningRead, PaymentProvider, PayoutRead, PayoutReadWithEarnings

CENT = Decimal("0.01")


class PayoutCreate(BaseModel):
    amount: Decimal = Field(gt=0, description="Net amount to withdraw, in currency units")
    currency: str = Field(default_factory=lambda: settings.default_currency, pattern=r"^[A-Z]{3}$")
    account_number: str = Field(pattern=r"^\d{10,20}$", description="Digits only")
    account_name: str = Field(min_length=3, max_length=120)
    bank_code: str = Field(min_length=3, max_length=20)
    bank_name: str = Field(min_length=3, max_length=120)
    payment_provider: PaymentProvider = PaymentProvider.FLUTTERWAVE

    @field_validator("amount")
    @classmethod
    def amount_within_limit(cls, value: Decimal) -> Decimal:
        if value > settings.max_payout_amount:
            raise ValueError(f"Amount too large (max {settings.max_payout_amount})")
        if value.quantize(CENT) != value:
            raise ValueError("Amount supports at most two decimal places")
        return value.quantize(CENT)

    @field_validator("account_name", "bank_code", "bank_name")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Field cannot be blank")
        return value


class PayoutCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class EarningFreeze(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class PayoutResponse(BaseModel):
    data: PayoutRead
    message: Optional[str] = None


class PageMeta(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class PayoutListResponse(BaseModel):
    data: List[PayoutReadWithEarnings]
    meta: PageMeta


class PayoutDetailResponse(BaseModel):
    data: PayoutReadWithEarnings


class BalanceRead(BaseModel):
    available_balance: Decimal
    pending_payouts: Decimal
    currency: str


class BalanceResponse(BaseModel):
    data: BalanceRead


class EarningsSummaryRead(BaseModel):
    total_lifetime: Decimal
    available_balance: Decimal
    pending_clearance: Decimal
    paid_out: Decimal
    frozen: Decimal
    currency: str


class EarningsSummaryResponse(BaseModel):
    data: EarningsSummaryRead


class ClearanceRead(BaseModel):
    processed: int
    errors: int


class ClearanceResponse(BaseModel):
    data: ClearanceRead


class EarningResponse(BaseModel):
    data: EarningRead
