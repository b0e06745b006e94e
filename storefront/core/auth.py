"""Bearer JWT authentication for FastAPI.

Session tokens are issued by the hosted auth provider and signed with a
shared HS256 secret. Only the claims this core needs are extracted.
"""

from dataclasses import dataclass

import jwt as pyjwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from storefront.core.config import get_settings

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Authenticated shopper extracted from a session JWT."""

    user_id: str
    email: str
    claims: dict


def decode_session_jwt(token: str) -> AuthenticatedUser:
    """Verify and decode a session JWT.

    Raises ``HTTPException(401)`` on any validation failure.
    """
    settings = get_settings()
    if not settings.auth_jwt_secret:
        raise HTTPException(status_code=500, detail="Authentication is misconfigured")

    options = {
        "verify_exp": True,
        "require": ["sub", "exp"],
    }
    kwargs = {}
    if settings.auth_jwt_audience:
        kwargs["audience"] = settings.auth_jwt_audience
    else:
        options["verify_aud"] = False
    if settings.auth_jwt_issuer:
        kwargs["issuer"] = settings.auth_jwt_issuer

    try:
        payload = pyjwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            options=options,
            **kwargs,
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.MissingRequiredClaimError as exc:
        raise HTTPException(status_code=401, detail=f"Missing required claim: {exc}")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Token missing sub claim")

    email = payload.get("email")
    if not email:
        raise HTTPException(status_code=401, detail="Token missing email claim")

    return AuthenticatedUser(user_id=sub, email=email, claims=payload)


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """FastAPI dependency that extracts and validates the bearer JWT.

    Usage::

        @router.post("/payments/verify")
        async def verify(user: AuthenticatedUser = Depends(require_auth)):
            ...
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    user = decode_session_jwt(credentials.credentials)

    # Set user_id on request state for downstream use (error handlers, audit logging)
    request.state.user_id = user.user_id

    return user
