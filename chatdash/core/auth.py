"""
Auth utilities.

Validates Supabase access tokens (HS256 JWT signed with the project secret)
and yields an explicit CurrentUser for every authenticated entry point.
Falls back to the X-User-Id header outside production (tests, local dev).
"""
from dataclasses import dataclass
from fastapi import Header, Request
from typing import Optional
import jwt
import logging

from chatdash.core.config import Settings, settings
from chatdash.core.errors import AuthenticationRequiredError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    email: Optional[str] = None


def verify_supabase_jwt(token: str, cfg: Settings) -> CurrentUser:
    """
    Verify a Supabase access token.

    Returns:
        CurrentUser from the 'sub' and 'email' claims

    Raises:
        AuthenticationRequiredError: Missing secret, invalid or expired token
    """
    if not cfg.SUPABASE_JWT_SECRET:
        raise AuthenticationRequiredError("Token verification is not configured")

    try:
        payload = jwt.decode(
            token,
            cfg.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience=cfg.SUPABASE_JWT_AUDIENCE,
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationRequiredError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationRequiredError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationRequiredError("Invalid token")
    return CurrentUser(user_id=user_id, email=payload.get("email"))


def _settings_for(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or settings


async def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Non-production: user ID"),
    x_user_email: Optional[str] = Header(None, description="Non-production: user email"),
) -> CurrentUser:
    """
    Resolve the current user.

    Priority:
    1. Supabase JWT from Authorization header
    2. X-User-Id header (non-production only)
    3. AuthenticationRequiredError (401)
    """
    cfg = _settings_for(request)

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        # An invalid token never falls through to the header
        user = verify_supabase_jwt(auth_header[7:], cfg)
        request.state.user_id = user.user_id
        return user

    if x_user_id and cfg.AUTH_HEADER_FALLBACK and cfg.ENV != "production":
        request.state.user_id = x_user_id
        return CurrentUser(user_id=x_user_id, email=x_user_email)

    raise AuthenticationRequiredError("Missing Authorization (Bearer JWT)")
