"""Caller identity for the payouts API.

Authentication happens upstream at the gateway, which forwards the caller as
``X-User-Id`` and ``X-User-Role`` headers.
"""
import uuid
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends, Header

from .errors import Unauthenticated, Unauthorized

logger = structlog.get_logger(__name__)

PROVIDER_ROLE = "PROVIDER"
ADMIN_ROLE = "ADMIN"


@dataclass(frozen=True)
class CurrentUser:
    id: uuid.UUID
    role: str


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> CurrentUser:
    if not x_user_id or not x_user_role:
        raise Unauthenticated("Authentication required")
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError:
        raise Unauthenticated("Invalid user identity")
    user = CurrentUser(id=user_id, role=x_user_role.strip().upper())
    structlog.contextvars.bind_contextvars(user_id=str(user.id), user_role=user.role)
    return user


def require_provider(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if user.role != PROVIDER_ROLE:
        logger.warning("provider_access_denied", user_id=str(user.id), role=user.role)
        raise Unauthorized("Only providers can perform this action")
    return user


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if user.role != ADMIN_ROLE:
        logger.warning("admin_access_denied", user_id=str(user.id), role=user.role)
        raise Unauthorized("Admin access required")
    return user
