"""
Auth utilities for the credits API.

Validates HS256 JWTs minted by the app's auth provider and extracts user_id.
Falls back to the X-User-Id header when ALLOW_USER_ID_HEADER is enabled (dev, tests).
"""
from fastapi import Header, HTTPException, Request
from typing import Optional
from recipe_credits.core.config import settings
import jwt
import logging

logger = logging.getLogger("recipe_credits")


def verify_jwt(token: str) -> Optional[str]:
    """
    Verify a bearer JWT and extract user_id.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        user_id from the 'sub' claim, or None when no secret is configured

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.debug("No AUTH_JWT_SECRET configured, skipping JWT validation")
        return None

    options = {"verify_signature": True, "verify_exp": True}
    if not settings.AUTH_JWT_AUDIENCE:
        options["verify_aud"] = False

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.AUTH_JWT_AUDIENCE,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(user_id)


def _ensure_account(user_id: str) -> None:
    # Accounts open on first authenticated request (trial grant included)
    from recipe_credits.features.balance.store import open_account

    open_account(user_id)


def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (only when ALLOW_USER_ID_HEADER)
    3. Raise 401 Unauthorized

    After successful auth, the user's account is opened if missing.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_jwt(auth_header[7:].strip())
        if user_id:
            _ensure_account(user_id)
            return user_id

    if x_user_id and settings.ALLOW_USER_ID_HEADER:
        user_id = x_user_id.strip()
        if user_id:
            _ensure_account(user_id)
            return user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )
