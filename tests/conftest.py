import os

# Settings and the module-level engine are built at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("LAUNCHDARKLY_SDK_KEY", None)
os.environ.pop("FLUTTERWAVE_SECRET_KEY", None)
os.environ.pop("PAYSTACK_SECRET_KEY", None)

import itertools
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from services.payouts.db import get_session
from services.payouts.main import app
from services.payouts.models import Earning, EarningStatus, Payout, PayoutStatus, Provider

BANK_DETAILS = {
    "account_number": "0123456789",
    "account_name": "Ada Okafor",
    "bank_code": "044",
    "bank_name": "Access Bank",
}

BASE_CLEARED_AT = datetime(2026, 1, 1, 9, 0, 0)


@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def provider_factory(session):
    def create(is_verified=True, completed_payouts=0, failed_payouts=0, name="Ada Okafor"):
        provider = Provider(name=name, email=f"{uuid.uuid4().hex[:10]}@example.com", is_verified=is_verified)
        session.add(provider)
        session.commit()
        history = [PayoutStatus.COMPLETED] * completed_payouts + [PayoutStatus.FAILED] * failed_payouts
        for payout_status in history:
            session.add(Payout(provider_id=provider.id, amount=Decimal("100.00"), status=payout_status, **BANK_DETAILS))
        session.commit()
        return provider

    return create


@pytest.fixture
def earning_factory(session):
    """Creates earnings; AVAILABLE ones are cleared one second apart in creation order."""
    tick = itertools.count()

    def create(provider, amount, status=EarningStatus.AVAILABLE, cleared_at=None, created_at=None, payout_id=None):
        amount = Decimal(str(amount)).quantize(Decimal("0.01"))
        if cleared_at is None and status == EarningStatus.AVAILABLE:
            cleared_at = BASE_CLEARED_AT + timedelta(seconds=next(tick))
        earning = Earning(
            provider_id=provider.id,
            booking_id=uuid.uuid4(),
            gross_amount=amount,
            platform_fee=Decimal("0.00"),
            amount=amount,
            status=status,
            cleared_at=cleared_at,
            payout_id=payout_id,
        )
        if created_at is not None:
            earning.created_at = created_at
        session.add(earning)
        session.commit()
        return earning

    return create


@pytest.fixture
def funded_provider(provider_factory, earning_factory):
    """Verified provider with payout history and 5000 available (2000 + 1000 + 2000)."""
    provider = provider_factory(is_verified=True, completed_payouts=3)
    for amount in (2000, 1000, 2000):
        earning_factory(provider, amount)
    return provider


@pytest.fixture(name="client")
def client_fixture(session):
    app.dependency_overrides[get_session] = lambda: session
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def provider_headers():
    def build(provider):
        return {"X-User-Id": str(provider.id), "X-User-Role": "PROVIDER"}

    return build


@pytest.fixture
def admin_headers():
    return {"X-User-Id": str(uuid.uuid4()), "X-User-Role": "ADMIN"}
