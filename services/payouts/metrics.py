from prometheus_client import Counter, Histogram, Gauge, start_http_server
import structlog

from libs.py_common.config import settings

logger = structlog.get_logger(__name__)

# --- Ledger Metrics ---
PAYOUT_REQUESTS_TOTAL = Counter(
    "payouts_requests_total",
    "Payout requests by outcome.",
    ["outcome"] # e.g., auto_approved, manual_review, insufficient_balance, insufficient_earnings, queue_error
)

PAYOUT_TRANSITIONS_TOTAL = Counter(
    "payouts_status_transitions_total",
    "Payout status transitions.",
    ["from_status", "to_status"]
)

RESERVATIONS_TOTAL = Counter(
    "payouts_earnings_reservations_total",
    "Earnings reservation attempts.",
    ["strategy", "outcome"] # outcome: reserved, insufficient
)

EARNINGS_RELEASED_TOTAL = Counter(
    "payouts_earnings_released_total",
    "Earnings returned to AVAILABLE by a compensating release."
)

EARNINGS_RECORDED_TOTAL = Counter(
    "payouts_earnings_recorded_total",
    "Earnings recorded from paid bookings.",
    ["outcome"] # created, duplicate
)

EARNINGS_CLEARED_TOTAL = Counter(
    "payouts_earnings_cleared_total",
    "Earnings moved from PENDING_CLEARANCE to AVAILABLE.",
    ["outcome"] # cleared, error
)

# --- Celery Task Metrics (for Payouts Worker component) ---
CELERY_TASKS_PROCESSED_TOTAL = Counter(
    "payouts_celery_tasks_processed_total",
    "Total Celery tasks processed by Payouts worker.",
    ["task_name", "status"]
)

CELERY_TASK_DURATION_SECONDS = Histogram(
    "payouts_celery_task_duration_seconds",
    "Celery task duration for Payouts worker.",
    ["task_name"]
)

# --- Payment Provider Metrics ---
PROVIDER_TRANSFERS_TOTAL = Counter(
    "payouts_provider_transfers_total",
    "Bank transfer attempts per payment provider.",
    ["provider", "outcome"] # outcome: success, rejected, transport_error, config_error, circuit_open
)

PROVIDER_API_LATENCY_SECONDS = Histogram(
    "payouts_provider_api_latency_seconds",
    "Payment provider API call latency.",
    ["provider", "api_call"]
)

PROVIDER_CIRCUIT_BREAKER_STATE = Gauge(
    "payouts_provider_circuit_breaker_state",
    "State of a provider circuit breaker (0=closed, 1=open, 0.5=half-open).",
    ["provider"]
)

# --- General Application Metrics ---
APP_ERRORS_TOTAL = Counter(
    "payouts_app_errors_total",
    "Total application errors in Payouts service (API or worker).",
    ["component", "error_type"]
)


def start_worker_metrics_server(port: int = None, addr: str = '0.0.0.0'):
    metrics_port = port or settings.worker_metrics_port
    try:
        start_http_server(metrics_port, addr=addr)
        logger.info("worker_metrics_server_started", port=metrics_port)
    except OSError as e:
        logger.error("worker_metrics_server_failed", port=metrics_port, error=str(e))
