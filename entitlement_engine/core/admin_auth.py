"""
Admin authentication for the internal provisioning endpoints.

Write endpoints require the shared X-Admin-Key header. The key is never
logged; audit rows record a short fingerprint of it as the source.
"""
import hashlib
import hmac
import logging
import os
from typing import Optional

from fastapi import Request

from entitlement_engine.core.config import settings
from entitlement_engine.core.errors import AdminAuthError


logger = logging.getLogger(__name__)


def get_admin_key() -> Optional[str]:
    """ADMIN_KEY from the environment, falling back to settings."""
    return os.getenv("ADMIN_KEY") or settings.ADMIN_KEY


def admin_fingerprint(key: str) -> str:
    return "admin:" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:8]


def require_admin(request: Request) -> str:
    """
    FastAPI dependency guarding write endpoints.

    Returns:
        Source label for audit rows (e.g. "admin:1a2b3c4d")

    Raises:
        AdminAuthError: key missing, not configured or wrong
    """
    expected = get_admin_key()
    if not expected:
        logger.warning("[admin] ADMIN_KEY not configured, rejecting write")
        raise AdminAuthError("Admin access is not configured")

    provided = request.headers.get("X-Admin-Key", "").strip()
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning("[admin] invalid admin key", extra={"error_code": "forbidden"})
        raise AdminAuthError("Invalid or missing X-Admin-Key")

    return admin_fingerprint(provided)
