"""Job-queue collaborator: hands approved payouts to the Celery payout worker."""
import uuid
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict

import structlog

from libs.py_common.logging import mask_account_number

from .errors import QueueError
from .metrics import APP_ERRORS_TOTAL
from .models import Payout
from .worker import PAYOUTS_QUEUE, process_payout

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BankDetails:
    account_number: str
    bank_code: str
    account_name: str
    bank_name: str


@dataclass(frozen=True)
class PayoutJob:
    payout_id: uuid.UUID
    provider_id: uuid.UUID
    amount: Decimal
    currency: str
    payment_provider: str
    bank_details: BankDetails

    @classmethod
    def from_payout(cls, payout: Payout) -> "PayoutJob":
        return cls(
            payout_id=payout.id,
            provider_id=payout.provider_id,
            amount=payout.amount,
            currency=payout.currency,
            payment_provider=str(getattr(payout.payment_provider, "value", payout.payment_provider)),
            bank_details=BankDetails(
                account_number=payout.account_number,
                bank_code=payout.bank_code,
                account_name=payout.account_name,
                bank_name=payout.bank_name,
            ),
        )

    def to_payload(self) -> Dict[str, Any]:
        """JSON-serialisable task payload."""
        return {
            "payout_id": str(self.payout_id),
            "provider_id": str(self.provider_id),
            "amount": str(self.amount),
            "currency": self.currency,
            "payment_provider": self.payment_provider,
            "bank_details": asdict(self.bank_details),
        }


def enqueue_payout_job(job: PayoutJob) -> str:
    """Submits a payout-processing job and returns the Celery task id.

    Broker failures are raised as :class:`QueueError` so the caller can run
    the compensating release.
    """
    try:
        result = process_payout.apply_async(args=[job.to_payload()], queue=PAYOUTS_QUEUE)
    except Exception as e:
        logger.error(
            "payout_job_enqueue_failed",
            payout_id=str(job.payout_id),
            error=str(e),
        )
        APP_ERRORS_TOTAL.labels(component="queue", error_type="enqueue_failed").inc()
        raise QueueError("Failed to enqueue payout job", payout_id=str(job.payout_id)) from e

    logger.info(
        "payout_job_enqueued",
        payout_id=str(job.payout_id),
        task_id=result.id,
        amount=str(job.amount),
        currency=job.currency,
        account_number=mask_account_number(job.bank_details.account_number),
    )
    return result.id
