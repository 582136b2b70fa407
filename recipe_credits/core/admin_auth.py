"""
Admin authentication for operator endpoints.

Operators authenticate with the shared X-Admin-Key secret. When no key is
configured the admin surface is closed (503), never open.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from recipe_credits.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin_key:<hash prefix>"
    auth_mechanism: str = "x_admin_key"


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Return an AdminActor if X-Admin-Key matches, None otherwise."""
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin_key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """FastAPI dependency guarding admin routes."""
    if not settings.ADMIN_KEY:
        raise HTTPException(status_code=503, detail="Admin authentication not configured")

    actor = verify_admin_key(request)
    if actor is None:
        raise HTTPException(status_code=401, detail="Invalid or missing admin credentials")
    return actor
