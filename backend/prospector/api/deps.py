import logging

import jwt
from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.security.api_key import APIKeyHeader

from ..core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)


def verify_api_key(api_key: str | None = Security(api_key_header)) -> None:
    """
    Simple header-based API key authentication.

    - In dev, if API_AUTH_KEY is not set, auth is skipped.
    - Otherwise, require X-API-Key == API_AUTH_KEY.
    """
    expected = settings.API_AUTH_KEY

    if settings.ENV == "dev" and not expected:
        return

    if not expected:
        # In non-dev environments, missing config is treated as misconfiguration
        raise HTTPException(status_code=401, detail="API key not configured")

    if api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")


def decode_user_id(token: str) -> str | None:
    """
    Return the ``sub`` claim of a valid HS256 token, or None.

    Expired, malformed or wrongly-signed tokens are logged and yield None.
    """
    if not settings.JWT_SECRET:
        logger.warning("Bearer token received but JWT_SECRET is not configured")
        return None

    options = {} if settings.JWT_AUDIENCE else {"verify_aud": False}
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired bearer token")
        return None
    except jwt.InvalidTokenError as e:
        logger.info("Rejected invalid bearer token: %s", e)
        return None

    sub = payload.get("sub")
    return str(sub) if sub else None


def get_optional_user_id(
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> str | None:
    """
    Caller identity from an optional ``Authorization: Bearer`` header.

    Anonymous callers (no header or an unusable token) get None; routes
    decide whether that is acceptable.
    """
    if credentials is None or not credentials.credentials:
        return None
    return decode_user_id(credentials.credentials)
