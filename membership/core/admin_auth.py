"""
Admin authentication for back-office operations.

Admins present the shared secret in X-Admin-Key. An optional X-Admin-Id
header names the operator; it is recorded as the actor on every admin
action ("admin:<id>"). Without it the actor is derived from the key hash.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional
from fastapi import Request

from membership.core.config import settings
from membership.core.errors import AppError, PermissionError
from membership.models.subscription import admin_actor

logger = logging.getLogger(__name__)


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    admin_id: str

    @property
    def actor(self) -> str:
        return admin_actor(self.admin_id)


def get_admin_api_key() -> Optional[str]:
    return settings.ADMIN_KEY


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """
    Verify X-Admin-Key header.
    Returns AdminActor if valid, None if not present/invalid.
    """
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    admin_id = request.headers.get("X-Admin-Id", "").strip()
    if not admin_id:
        admin_id = "key-" + hashlib.sha256(header_key.encode()).hexdigest()[:12]
    return AdminActor(admin_id=admin_id)


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.post("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    if not get_admin_api_key():
        raise AppError(
            "Admin authentication not configured (set ADMIN_KEY)",
            code="admin_auth_unconfigured",
            status_code=503,
        )

    actor = verify_admin_key(request)
    if not actor:
        logger.warning(
            "[admin] rejected credentials",
            extra={"path": request.url.path},
        )
        raise PermissionError("Invalid or missing X-Admin-Key header", code="admin_unauthorized")
    return actor
