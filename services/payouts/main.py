import time

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette_prometheus import PrometheusMiddleware, metrics as starlette_metrics

from libs.py_common.config import settings
from libs.py_common.flags import LaunchDarklyClient, close_ld_client
from libs.py_common.logging import setup_logging

from .errors import LedgerError
from .metrics import APP_ERRORS_TOTAL
from .routes import admin_router, earnings_router, router as payouts_router

logger = structlog.get_logger(__name__)

SERVICE_NAME = "payouts-api"

app = FastAPI(
    title="Earnings & Payout Ledger API",
    description="Provider balances, payout requests and admin payout review.",
    version="0.2.0",
)

app.add_middleware(PrometheusMiddleware)
app.add_route("/metrics", starlette_metrics)


class StructlogRequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(path=request.url.path, method=request.method)

        start_time = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            logger.error("unhandled_exception_during_request", exc_info=True)
            raise
        finally:
            client = request.client
            logger.info(
                "http_request_completed",
                http={
                    "request": {
                        "method": request.method,
                        "url": str(request.url),
                        "headers": {k: v for k, v in request.headers.items() if k.lower() not in ["authorization", "cookie", "x-api-key"]},
                    },
                    "response": {"status_code": status_code},
                },
                network={"client": {"ip": client.host if client else None, "port": client.port if client else None}},
                duration_ms=round((time.time() - start_time) * 1000, 2),
                service=SERVICE_NAME,
            )
        return response


app.add_middleware(StructlogRequestLoggingMiddleware)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    log = logger.error if exc.status_code >= 500 else logger.info
    log("ledger_error", kind=exc.kind, message=exc.message, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in error["loc"] if part != "body"), "message": error["msg"]}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": {"kind": "validation_error", "message": "Invalid request", "errors": errors}},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", error=str(exc), exc_info=True)
    APP_ERRORS_TOTAL.labels(component="api", error_type=type(exc).__name__).inc()
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"kind": "internal_error", "message": "Internal server error"}},
    )


@app.on_event("startup")
async def on_startup():
    setup_logging(settings.log_level)
    logger.info("payouts_service_api_startup", service=SERVICE_NAME, lifecycle="service_starting")
    LaunchDarklyClient.get_client()
    logger.info("payouts_service_api_startup_complete", service=SERVICE_NAME, lifecycle="service_started")


@app.on_event("shutdown")
async def on_shutdown():
    close_ld_client()


app.include_router(payouts_router)
app.include_router(earnings_router)
app.include_router(admin_router)


@app.get("/payouts-health", tags=["health"])
def health_check():
    return {"status": "ok", "service": SERVICE_NAME}

# uvicorn services.payouts.main:app --reload --port 8002
