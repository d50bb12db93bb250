import uuid
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from services.payouts.errors import QueueError
from services.payouts.models import PaymentProvider, Payout, PayoutStatus
from services.payouts.queue import PayoutJob, enqueue_payout_job


@pytest.fixture
def payout():
    return Payout(
        id=uuid.uuid4(),
        provider_id=uuid.uuid4(),
        amount=Decimal("3000.00"),
        currency="NGN",
        status=PayoutStatus.PROCESSING,
        account_number="0123456789",
        account_name="Ada Okafor",
        bank_code="044",
        bank_name="Access Bank",
        payment_provider=PaymentProvider.PAYSTACK,
    )


def test_job_payload_is_json_friendly(payout):
    payload = PayoutJob.from_payout(payout).to_payload()

    assert payload == {
        "payout_id": str(payout.id),
        "provider_id": str(payout.provider_id),
        "amount": "3000.00",
        "currency": "NGN",
        "payment_provider": "PAYSTACK",
        "bank_details": {
            "account_number": "0123456789",
            "bank_code": "044",
            "account_name": "Ada Okafor",
            "bank_name": "Access Bank",
        },
    }


@patch("services.payouts.queue.process_payout.apply_async")
def test_enqueue_sends_task_to_payouts_queue(mock_apply_async, payout):
    mock_apply_async.return_value = MagicMock(id="test_task_id")
    job = PayoutJob.from_payout(payout)

    assert enqueue_payout_job(job) == "test_task_id"
    mock_apply_async.assert_called_once_with(args=[job.to_payload()], queue="payouts")


@patch("services.payouts.queue.process_payout.apply_async", side_effect=Exception("Celery Broker Down"))
def test_broker_failure_is_queue_error(mock_apply_async, payout):
    with pytest.raises(QueueError) as exc_info:
        enqueue_payout_job(PayoutJob.from_payout(payout))

    assert exc_info.value.details == {"payout_id": str(payout.id)}
    assert exc_info.value.retryable is True
