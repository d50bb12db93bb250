import time
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, Tuple

import httpx
import pybreaker # type: ignore
import structlog
from celery.signals import worker_init
from sqlmodel import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from libs.py_common.celery_config import create_celery_app
from libs.py_common.config import settings
from libs.py_common.logging import mask_account_number, setup_logging

from .db import engine
from .earnings import clear_pending_earnings
from .errors import InvalidTransition
from .lifecycle import complete_payout, fail_payout
from .metrics import (
    APP_ERRORS_TOTAL,
    CELERY_TASK_DURATION_SECONDS,
    CELERY_TASKS_PROCESSED_TOTAL,
    PROVIDER_API_LATENCY_SECONDS,
    PROVIDER_CIRCUIT_BREAKER_STATE,
    PROVIDER_TRANSFERS_TOTAL,
    start_worker_metrics_server,
)
from .models import PaymentProvider, Payout, PayoutStatus

logger = structlog.get_logger(__name__)

PAYOUTS_QUEUE = "payouts"

# Celery App
celery_app = create_celery_app("payouts_worker")
celery_app.conf.task_routes = {"services.payouts.worker.*": {"queue": PAYOUTS_QUEUE}}
celery_app.conf.beat_schedule = {
    "clear-pending-earnings": {
        "task": "services.payouts.worker.clear_earnings",
        "schedule": 3600.0,
    },
}


@worker_init.connect
def _on_worker_init(**kwargs):
    setup_logging(settings.log_level)
    start_worker_metrics_server()


class TransferRejected(Exception):
    """The payment provider answered and declined the transfer."""


class ProviderNotConfigured(Exception):
    pass


# Rejections and missing config are answers, not outages, so they do not trip the breaker.
PROVIDER_BREAKERS = {
    PaymentProvider.FLUTTERWAVE: pybreaker.CircuitBreaker(
        fail_max=3, reset_timeout=180, exclude=[TransferRejected, ProviderNotConfigured], name="flutterwave"
    ),
    PaymentProvider.PAYSTACK: pybreaker.CircuitBreaker(
        fail_max=3, reset_timeout=180, exclude=[TransferRejected, ProviderNotConfigured], name="paystack"
    ),
}


def _breaker_state(breaker: pybreaker.CircuitBreaker) -> float:
    return 0 if breaker.current_state == "closed" else (1 if breaker.current_state == "open" else 0.5)


def _record_breaker_states():
    for provider, breaker in PROVIDER_BREAKERS.items():
        PROVIDER_CIRCUIT_BREAKER_STATE.labels(provider=provider.value.lower()).set(_breaker_state(breaker))


def _http_client() -> httpx.Client:
    return httpx.Client(timeout=settings.provider_timeout_seconds)


def _to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _body_data(body: Dict[str, Any]) -> Dict[str, Any]:
    data = body.get("data")
    return data if isinstance(data, dict) else {}


# --- Payment provider calls ---

def _flutterwave_transfer(client: httpx.Client, job: Dict[str, Any]) -> str:
    if not settings.flutterwave_secret_key:
        PROVIDER_TRANSFERS_TOTAL.labels(provider="flutterwave", outcome="config_error").inc()
        raise ProviderNotConfigured("Flutterwave secret key not configured")

    bank = job["bank_details"]
    payload = {
        "account_bank": bank["bank_code"],
        "account_number": bank["account_number"],
        "amount": float(Decimal(job["amount"])),
        "currency": job["currency"],
        "reference": job["payout_id"],
        "narration": f"Payout to {bank['account_name']}",
        "beneficiary_name": bank["account_name"],
    }
    if settings.payout_callback_url:
        payload["callback_url"] = settings.payout_callback_url

    logger.info(
        "flutterwave_transfer_started",
        payout_id=job["payout_id"],
        amount=job["amount"],
        currency=job["currency"],
        bank_code=bank["bank_code"],
        account_number=mask_account_number(bank["account_number"]),
    )
    start_time = time.monotonic()
    try:
        response = client.post(
            f"{settings.flutterwave_base_url}/transfers",
            json=payload,
            headers={"Authorization": f"Bearer {settings.flutterwave_secret_key}"},
        )
    finally:
        PROVIDER_API_LATENCY_SECONDS.labels(provider="flutterwave", api_call="transfer_create").observe(time.monotonic() - start_time)

    if response.status_code >= 500:
        PROVIDER_TRANSFERS_TOTAL.labels(provider="flutterwave", outcome="transport_error").inc()
        response.raise_for_status()
    body = _json_body(response)
    if response.is_error or body.get("status") != "success":
        PROVIDER_TRANSFERS_TOTAL.labels(provider="flutterwave", outcome="rejected").inc()
        logger.error("flutterwave_transfer_rejected", payout_id=job["payout_id"], http_status=response.status_code, message=body.get("message"))
        raise TransferRejected(f"Flutterwave transfer unsuccessful: {body.get('message') or response.status_code}")

    data = _body_data(body)
    reference = data.get("reference") or job["payout_id"]
    PROVIDER_TRANSFERS_TOTAL.labels(provider="flutterwave", outcome="success").inc()
    logger.info("flutterwave_transfer_successful", payout_id=job["payout_id"], reference=reference, flutterwave_id=data.get("id"))
    return reference


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
def _paystack_recipient(client: httpx.Client, job: Dict[str, Any]) -> str:
    """Creates (or, for a known account, returns) the Paystack transfer recipient code."""
    bank = job["bank_details"]
    response = client.post(
        f"{settings.paystack_base_url}/transferrecipient",
        json={
            "type": "nuban",
            "name": bank["account_name"],
            "account_number": bank["account_number"],
            "bank_code": bank["bank_code"],
            "currency": job["currency"],
        },
        headers={"Authorization": f"Bearer {settings.paystack_secret_key}"},
    )
    if response.status_code >= 500:
        response.raise_for_status()
    body = _json_body(response)
    if response.is_error or not body.get("status"):
        raise TransferRejected(f"Paystack recipient rejected: {body.get('message') or response.status_code}")
    recipient_code = _body_data(body).get("recipient_code")
    if not recipient_code:
        raise TransferRejected("Paystack recipient response has no recipient_code")
    return recipient_code


def _paystack_transfer(client: httpx.Client, job: Dict[str, Any]) -> str:
    if not settings.paystack_secret_key:
        PROVIDER_TRANSFERS_TOTAL.labels(provider="paystack", outcome="config_error").inc()
        raise ProviderNotConfigured("Paystack secret key not configured")

    logger.info(
        "paystack_transfer_started",
        payout_id=job["payout_id"],
        amount=job["amount"],
        currency=job["currency"],
        account_number=mask_account_number(job["bank_details"]["account_number"]),
    )
    start_time = time.monotonic()
    try:
        recipient_code = _paystack_recipient(client, job)
        response = client.post(
            f"{settings.paystack_base_url}/transfer",
            json={
                "source": "balance",
                "amount": _to_minor_units(Decimal(job["amount"])), # kobo
                "recipient": recipient_code,
                "reference": job["payout_id"],
                "reason": f"Payout {job['payout_id']}",
            },
            headers={"Authorization": f"Bearer {settings.paystack_secret_key}"},
        )
    except TransferRejected:
        PROVIDER_TRANSFERS_TOTAL.labels(provider="paystack", outcome="rejected").inc()
        raise
    finally:
        PROVIDER_API_LATENCY_SECONDS.labels(provider="paystack", api_call="transfer_create").observe(time.monotonic() - start_time)

    if response.status_code >= 500:
        PROVIDER_TRANSFERS_TOTAL.labels(provider="paystack", outcome="transport_error").inc()
        response.raise_for_status()
    body = _json_body(response)
    if response.is_error or not body.get("status"):
        PROVIDER_TRANSFERS_TOTAL.labels(provider="paystack", outcome="rejected").inc()
        logger.error("paystack_transfer_rejected", payout_id=job["payout_id"], http_status=response.status_code, message=body.get("message"))
        raise TransferRejected(f"Paystack transfer unsuccessful: {body.get('message') or response.status_code}")

    data = _body_data(body)
    reference = data.get("transfer_code") or data.get("reference") or job["payout_id"]
    PROVIDER_TRANSFERS_TOTAL.labels(provider="paystack", outcome="success").inc()
    logger.info("paystack_transfer_successful", payout_id=job["payout_id"], reference=reference)
    return reference


TRANSFER_FUNCTIONS: Dict[PaymentProvider, Callable[[httpx.Client, Dict[str, Any]], str]] = {
    PaymentProvider.FLUTTERWAVE: _flutterwave_transfer,
    PaymentProvider.PAYSTACK: _paystack_transfer,
}


def _call_provider(provider: PaymentProvider, client: httpx.Client, job: Dict[str, Any]) -> str:
    attempted = []

    def transfer(*args):
        attempted.append(provider)
        return TRANSFER_FUNCTIONS[provider](*args)

    try:
        return PROVIDER_BREAKERS[provider].call(transfer, client, job)
    except pybreaker.CircuitBreakerError as cbe:
        if attempted:
            # This call's own failure tripped the breaker; the request did go out.
            original = cbe.__cause__ or cbe.__context__
            raise original if original is not None else httpx.TransportError(str(cbe))
        PROVIDER_TRANSFERS_TOTAL.labels(provider=provider.value.lower(), outcome="circuit_open").inc()
        APP_ERRORS_TOTAL.labels(component=f"{provider.value.lower()}_call", error_type="circuit_breaker_open").inc()
        logger.warning("provider_circuit_open", payout_id=job["payout_id"], provider=provider.value, error=str(cbe))
        raise
    finally:
        _record_breaker_states()


def send_transfer(job: Dict[str, Any]) -> Tuple[PaymentProvider, str]:
    """Sends the bank transfer through the payout's provider.

    Falls back to the other provider only when the chosen provider's circuit
    breaker is open, i.e. when no request was attempted.
    """
    primary = PaymentProvider(job["payment_provider"])
    fallback = PaymentProvider.PAYSTACK if primary == PaymentProvider.FLUTTERWAVE else PaymentProvider.FLUTTERWAVE

    with _http_client() as client:
        try:
            return primary, _call_provider(primary, client, job)
        except pybreaker.CircuitBreakerError:
            logger.info("provider_fallback", payout_id=job["payout_id"], from_provider=primary.value, to_provider=fallback.value)
        return fallback, _call_provider(fallback, client, job)


# --- Celery Tasks ---
@celery_app.task(name="services.payouts.worker.process_payout", bind=True, max_retries=3, default_retry_delay=60)
def process_payout(self, job: Dict[str, Any]):
    task_start_time = time.monotonic()
    task_name = self.name
    payout_id = uuid.UUID(job["payout_id"])
    metric_status = "failure"
    logger.info("payout_processing_started", payout_id=str(payout_id), task_name=task_name, attempt=self.request.retries)

    try:
        with Session(engine, expire_on_commit=False) as session:
            payout = session.get(Payout, payout_id)
            if payout is None:
                logger.error("payout_not_found", payout_id=str(payout_id))
                APP_ERRORS_TOTAL.labels(component="process_payout", error_type="payout_not_found").inc()
                metric_status = "failure_payout_not_found"
                return {"status": "error", "message": "Payout not found"}

            if payout.status != PayoutStatus.PROCESSING:
                logger.info("payout_processing_skipped", payout_id=str(payout_id), status=str(payout.status))
                metric_status = "skipped"
                return {"status": "skipped", "message": f"Payout is not processing: {PayoutStatus(payout.status).value}"}

            try:
                provider, reference = send_transfer(job)
            except (TransferRejected, ProviderNotConfigured, pybreaker.CircuitBreakerError) as e:
                logger.error("payout_transfer_failed", payout_id=str(payout_id), error=str(e))
                APP_ERRORS_TOTAL.labels(component="process_payout", error_type=type(e).__name__).inc()
                fail_payout(session, payout_id, reason=str(e))
                return {"status": "error", "message": str(e)}
            except httpx.HTTPError as e:
                if self.request.retries < self.max_retries:
                    logger.warning("payout_transfer_retrying", payout_id=str(payout_id), error=str(e), attempt=self.request.retries)
                    metric_status = "retry"
                    raise self.retry(exc=e)
                logger.error("payout_transfer_retries_exhausted", payout_id=str(payout_id), error=str(e))
                APP_ERRORS_TOTAL.labels(component="process_payout", error_type="max_retries_exceeded").inc()
                reason = f"Transfer failed after retries: {e}"
                fail_payout(session, payout_id, reason=reason)
                return {"status": "error", "message": reason}
            except Exception as e:
                logger.exception("payout_transfer_unexpected_error", payout_id=str(payout_id), error=str(e))
                APP_ERRORS_TOTAL.labels(component="process_payout", error_type=type(e).__name__).inc()
                reason = f"Unexpected transfer error: {e}"
                fail_payout(session, payout_id, reason=reason)
                return {"status": "error", "message": reason}

            try:
                complete_payout(session, payout_id, transaction_ref=reference)
            except InvalidTransition as e:
                # Money left, but the payout moved on (e.g. cancelled) while the transfer was in flight.
                logger.critical("payout_completed_after_transition", payout_id=str(payout_id), reference=reference, error=e.message)
                APP_ERRORS_TOTAL.labels(component="process_payout", error_type="completed_after_transition").inc()
                return {"status": "error", "message": e.message, "reference": reference}

            metric_status = "success"
            return {"status": "success", "payout_id": str(payout_id), "provider": provider.value, "reference": reference}
    finally:
        CELERY_TASK_DURATION_SECONDS.labels(task_name=task_name).observe(time.monotonic() - task_start_time)
        CELERY_TASKS_PROCESSED_TOTAL.labels(task_name=task_name, status=metric_status).inc()


@celery_app.task(name="services.payouts.worker.clear_earnings")
def clear_earnings(delay_hours: int = None):
    with Session(engine, expire_on_commit=False) as session:
        result = clear_pending_earnings(session, delay_hours=delay_hours)
    CELERY_TASKS_PROCESSED_TOTAL.labels(task_name="services.payouts.worker.clear_earnings", status="success").inc()
    return {"processed": result.processed, "errors": result.errors}
