"""Account-layer JWT verification.

Sessions are issued by the site's auth provider; this service only verifies
the bearer token against the provider's JWKS and reads ``sub`` as the owner
id. Anonymous donors never send a token.
"""

from dataclasses import dataclass
from functools import lru_cache

import jwt as pyjwt
import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from donation_engine.core.config import get_settings

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


@lru_cache
def get_jwks_client() -> PyJWKClient:
    """Create a cached JWKS client for the configured auth provider."""
    settings = get_settings()
    if not settings.auth_jwks_url:
        raise RuntimeError("AUTH_JWKS_URL is not configured")
    return PyJWKClient(settings.auth_jwks_url, cache_keys=True, lifespan=300)


@dataclass(frozen=True)
class AccountUser:
    """Authenticated account holder extracted from a session JWT."""

    user_id: str
    claims: dict


def decode_session_jwt(token: str) -> AccountUser:
    """Verify and decode a session JWT.

    Raises ``HTTPException(401)`` on any validation failure.
    """
    settings = get_settings()
    try:
        signing_key = get_jwks_client().get_signing_key_from_jwt(token)
        payload = pyjwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            issuer=settings.auth_issuer or None,
            options={
                "verify_exp": True,
                "verify_aud": False,
                "require": ["sub", "exp"],
            },
        )
    except RuntimeError as exc:
        logger.error("auth_misconfigured", error=str(exc))
        raise HTTPException(status_code=500, detail="Authentication is misconfigured")
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError as exc:
        logger.info("auth_token_rejected", error=str(exc))
        raise HTTPException(status_code=401, detail="Invalid token")
    except pyjwt.PyJWKClientError as exc:
        logger.warning("auth_jwks_lookup_failed", error=str(exc))
        raise HTTPException(status_code=401, detail="Invalid token")

    return AccountUser(user_id=payload["sub"], claims=payload)


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AccountUser:
    """FastAPI dependency for account-management routes."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")
    user = decode_session_jwt(credentials.credentials)
    request.state.user_id = user.user_id
    return user


async def optional_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AccountUser | None:
    """Like require_auth, but anonymous requests get None instead of a 401."""
    if credentials is None:
        return None
    user = decode_session_jwt(credentials.credentials)
    request.state.user_id = user.user_id
    return user
