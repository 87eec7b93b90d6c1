from __future__ import annotations

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from policydiff.config import settings
from policydiff.db import get_conn
from policydiff.storage import probe_storage


router = APIRouter()

_READY_CACHE_TTL_SECONDS = 30.0
_ready_cache: dict[str, object] = {
    "ts": 0.0,
    "ok": None,
    "payload": None,
}


def _cache_set(ok: bool, payload: dict[str, object]) -> None:
    _ready_cache["ts"] = time.time()
    _ready_cache["ok"] = ok
    _ready_cache["payload"] = payload


def _cache_get() -> dict[str, object] | None:
    ts = float(_ready_cache.get("ts") or 0.0)
    if time.time() - ts > _READY_CACHE_TTL_SECONDS:
        return None
    payload = _ready_cache.get("payload")
    return payload if isinstance(payload, dict) else None


def reset_ready_cache() -> None:
    _ready_cache.update({"ts": 0.0, "ok": None, "payload": None})


@router.get("/")
def root() -> dict[str, str]:
    return {"service": "policydiff-backend", "status": "running"}


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "environment": settings.app_env}


@router.get("/ready", response_model=None)
def ready() -> JSONResponse:
    cached = _cache_get()
    if cached is not None:
        ok = bool(_ready_cache.get("ok"))
        return JSONResponse(status_code=200 if ok else 503, content=cached)

    checks: dict[str, object] = {}
    payload: dict[str, object] = {
        "status": "ready",
        "environment": settings.app_env,
        "checks": checks,
    }

    try:
        with get_conn() as conn:
            conn.execute("SELECT 1").fetchone()
        checks["db"] = {"ok": True, "backend": "sqlite"}
    except Exception as exc:
        payload["status"] = "not_ready"
        checks["db"] = {"ok": False, "backend": "sqlite", "error": str(exc)}
        _cache_set(False, payload)
        return JSONResponse(status_code=503, content=payload)

    try:
        checks["storage"] = probe_storage(settings)
    except Exception as exc:
        payload["status"] = "not_ready"
        checks["storage"] = {"ok": False, "backend": settings.storage_backend, "error": str(exc)}
        _cache_set(False, payload)
        return JSONResponse(status_code=503, content=payload)

    _cache_set(True, payload)
    return JSONResponse(status_code=200, content=payload)
