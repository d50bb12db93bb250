"""Domain errors raised by the ledger and surfaced by the API as ``{"error": {...}}``."""
from typing import Any, Dict, Optional

from fastapi import status


class LedgerError(Exception):
    kind = "ledger_error"
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        body = {"kind": self.kind, "message": self.message, **self.details}
        if self.retryable:
            body["retryable"] = True
        return body


class Unauthorized(LedgerError):
    kind = "unauthorized"
    status_code = status.HTTP_403_FORBIDDEN


class Unauthenticated(Unauthorized):
    status_code = status.HTTP_401_UNAUTHORIZED


class ValidationError(LedgerError):
    kind = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InsufficientBalance(LedgerError):
    kind = "insufficient_balance"
    status_code = status.HTTP_400_BAD_REQUEST


class InsufficientEarnings(LedgerError):
    """Available earnings cannot exactly cover a reservation."""
    kind = "insufficient_earnings"
    status_code = status.HTTP_409_CONFLICT


class NotFound(LedgerError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class QueueError(LedgerError):
    kind = "queue_error"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class InvalidTransition(LedgerError):
    kind = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, entity: str, current: Optional[str], target: str):
        super().__init__(
            f"Illegal {entity} transition: {current} -> {target}",
            current_status=current,
            target_status=target,
        )
