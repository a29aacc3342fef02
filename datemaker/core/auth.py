"""
Caller identity for authenticated routes.

Validates HS256 bearer JWTs issued by the app's auth provider and extracts
the user id from the ``sub`` claim. Outside production the X-User-Id header
is accepted as a fallback for local development and tests.
"""
import logging
from typing import Optional

import jwt
from fastapi import Request

from datemaker.core.config import settings as default_settings
from datemaker.core.errors import UnauthorizedError

logger = logging.getLogger("datemaker")


def _settings_for(request: Request):
    return getattr(request.app.state, "settings", None) or default_settings


def verify_bearer_token(token: str, cfg) -> str:
    """Verify a bearer JWT and return its subject.

    Raises:
        UnauthorizedError: token invalid, expired, or auth not configured
    """
    if not cfg.AUTH_JWT_SECRET:
        raise UnauthorizedError("Token authentication is not configured")

    options = {"require": ["sub", "exp"]}
    try:
        payload = jwt.decode(
            token,
            cfg.AUTH_JWT_SECRET,
            algorithms=[cfg.AUTH_JWT_ALGORITHM],
            audience=cfg.AUTH_JWT_AUDIENCE,
            options={**options, "verify_aud": bool(cfg.AUTH_JWT_AUDIENCE)},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("auth.invalid_token", extra={"reason": e.__class__.__name__})
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Token has no subject")
    return str(user_id)


def _bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization") or ""
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user_id(request: Request) -> str:
    """FastAPI dependency resolving the authenticated caller."""
    cfg = _settings_for(request)
    token = _bearer_token(request)
    if token:
        user_id = verify_bearer_token(token, cfg)
        request.state.user_id = user_id
        return user_id

    if not cfg.is_production:
        header_user = request.headers.get("X-User-Id")
        if header_user:
            request.state.user_id = header_user
            return header_user

    raise UnauthorizedError("Missing bearer token")
