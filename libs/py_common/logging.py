# libs/py_common/logging.py

import logging
import sys
import structlog

def setup_logging(log_level: str = "INFO"):
    """Configures structlog for JSON logging on top of the stdlib root logger."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level.upper(),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars, # request-scoped context bound by the HTTP middleware
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.get_logger(__name__).debug("structlog_configured", log_level=log_level.upper())


def mask_account_number(account_number: str) -> str:
    """Keeps only the last four digits of a bank account number for log output."""
    if not account_number:
        return ""
    return "*" * max(len(account_number) - 4, 0) + account_number[-4:]
