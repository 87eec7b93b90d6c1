from __future__ import annotations

import hmac
import time
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from policydiff.config import settings


_bearer_scheme = HTTPBearer(auto_error=False)


def _auth_unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _auth_misconfigured(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


def verify_credentials(username: str, password: str) -> bool:
    expected = settings.auth_users_map.get((username or "").strip())
    if expected is None:
        # Compare anyway so unknown users take as long as wrong passwords.
        hmac.compare_digest(password.encode("utf-8"), password.encode("utf-8"))
        return False
    return hmac.compare_digest(password.encode("utf-8"), expected.encode("utf-8"))


def _session_secret() -> str:
    return str(settings.session_secret or "").strip()


def issue_session_token(username: str, *, now: float | None = None) -> str | None:
    """Return a signed session token, or ``None`` when sessions are not configured."""
    secret = _session_secret()
    if not secret:
        return None
    issued_at = int(now if now is not None else time.time())
    claims = {
        "sub": username,
        "iat": issued_at,
        "exp": issued_at + max(1, settings.session_ttl_seconds),
    }
    return jwt.encode(claims, secret, algorithm=settings.session_algorithm)


def decode_session_token(token: str) -> dict[str, Any]:
    secret = _session_secret()
    if not secret:
        raise _auth_misconfigured("Authentication is enabled but SESSION_SECRET is not configured.")

    try:
        claims = jwt.decode(token, secret, algorithms=[settings.session_algorithm])
    except JWTError as exc:
        raise _auth_unauthorized(f"Invalid or expired session token: {exc}") from exc

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise _auth_unauthorized("Session token does not carry a username.")
    if subject not in settings.auth_users_map:
        raise _auth_unauthorized("Session token user is not recognized.")
    return claims


def require_authenticated_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> dict[str, Any] | None:
    if not settings.auth_enabled:
        return None

    if credentials is None:
        raise _auth_unauthorized("Missing bearer token.")
    if credentials.scheme.lower() != "bearer":
        raise _auth_unauthorized("Unsupported authorization scheme.")

    token = credentials.credentials.strip()
    if not token:
        raise _auth_unauthorized("Missing bearer token.")

    return decode_session_token(token)


def resolve_acting_username(claims: dict[str, Any] | None, supplied: str | None) -> str:
    """Pick the username a request acts as.

    With authentication on, the token subject wins over anything the client
    sent; otherwise the client-supplied username is required.
    """
    if claims is not None:
        return str(claims["sub"])
    username = (supplied or "").strip()
    if not username:
        raise HTTPException(status_code=400, detail="Missing username.")
    return username
