from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from policydiff.api.contracts import CozeConfigRequest, LoginRequest
from policydiff.api.services.records import coze_token_override
from policydiff.auth import issue_session_token, verify_credentials
from policydiff.cities import CityListUnavailable, load_cities
from policydiff.config import settings

logger = logging.getLogger("policydiff.api")

_TOKEN_PREVIEW_CHARS = 10


def token_preview(token: str) -> str:
    if not token:
        return ""
    if len(token) <= _TOKEN_PREVIEW_CHARS * 2:
        return f"{token[:4]}..."
    return f"{token[:_TOKEN_PREVIEW_CHARS]}...{token[-_TOKEN_PREVIEW_CHARS:]}"


def build_accounts_router() -> APIRouter:
    router = APIRouter()

    @router.post("/login")
    def login(payload: LoginRequest) -> dict[str, object]:
        if not verify_credentials(payload.username, payload.password):
            logger.warning("login_rejected", extra={"event": "login_rejected"})
            raise HTTPException(status_code=401, detail="Invalid username or password.")

        username = payload.username.strip()
        response: dict[str, object] = {"success": True, "username": username}
        session_token = issue_session_token(username)
        if session_token is not None:
            response["access_token"] = session_token
            response["token_type"] = "bearer"
            response["expires_in"] = settings.session_ttl_seconds
        logger.info("login_succeeded", extra={"event": "login_succeeded", "username": username})
        return response

    @router.get("/cities")
    def cities() -> dict[str, object]:
        try:
            return {"cities": load_cities(settings.cities_file)}
        except CityListUnavailable as exc:
            logger.error("cities_unavailable", extra={"event": "cities_unavailable", "error": str(exc)})
            raise HTTPException(status_code=500, detail="Failed to read cities file.") from exc

    @router.get("/coze-config")
    def coze_config(request: Request) -> dict[str, object]:
        override = coze_token_override(request)
        token = override or str(settings.coze_api_token or "").strip()
        return {
            "success": True,
            "configured": bool(token),
            "source": "header" if override else ("settings" if token else None),
            "token_preview": token_preview(token),
        }

    @router.post("/coze-config")
    def validate_coze_config(payload: CozeConfigRequest) -> dict[str, object]:
        token = payload.token.strip()
        if not token:
            raise HTTPException(status_code=400, detail="Token must not be empty.")
        # Tokens are kept client side and sent per request in the token header.
        return {
            "success": True,
            "token_preview": token_preview(token),
            "header": settings.coze_token_header,
        }

    return router
