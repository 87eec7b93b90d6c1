from contextlib import asynccontextmanager
from functools import lru_cache
import logging
from pathlib import Path
import time

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from policydiff.api.routers.accounts import build_accounts_router
from policydiff.api.routers.files import build_files_router
from policydiff.api.routers.policy import build_policy_router
from policydiff.api.routers.standard import build_standard_router
from policydiff.api.routers.system import router as system_router
from policydiff.config import settings
from policydiff.db import init_db
from policydiff.export.pdf import MarkdownPdfConverter
from policydiff.observability import (
    bind_log_context,
    configure_logging,
    normalize_request_id,
    reset_log_context,
    sanitize_for_logging,
)
from policydiff.workflow import CozeWorkflowClient

logger = logging.getLogger("policydiff.api")


@lru_cache(maxsize=1)
def _cached_workflow_client() -> CozeWorkflowClient:
    return CozeWorkflowClient(settings)


def get_workflow_client() -> CozeWorkflowClient:
    return _cached_workflow_client()


@lru_cache(maxsize=1)
def _cached_pdf_converter() -> MarkdownPdfConverter:
    return MarkdownPdfConverter(settings)


def get_pdf_converter() -> MarkdownPdfConverter:
    return _cached_pdf_converter()


@lru_cache(maxsize=1)
def _cached_http_client() -> httpx.Client:
    return httpx.Client(timeout=settings.remote_fetch_timeout_seconds, follow_redirects=True)


def get_http_client() -> httpx.Client:
    return _cached_http_client()


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level)
    logger.info("application_startup", extra={"event": "application_startup", "environment": settings.app_env})
    init_db()
    Path(settings.storage_root).mkdir(parents=True, exist_ok=True)
    yield
    logger.info("application_shutdown", extra={"event": "application_shutdown"})


def create_app() -> FastAPI:
    cors_origins = settings.cors_origins_list
    if settings.cors_allow_credentials and any(origin == "*" for origin in cors_origins):
        raise RuntimeError("Invalid CORS_ORIGINS: wildcard '*' is not allowed when credentials are enabled.")

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Authorization", "Content-Type", settings.request_id_header, settings.coze_token_header],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = normalize_request_id(request.headers.get(settings.request_id_header))
        request.state.request_id = request_id
        token = bind_log_context(request_id=request_id)
        started = time.perf_counter()

        logger.info(
            "request_started",
            extra={
                "event": "request_started",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "query": sanitize_for_logging(dict(request.query_params)),
                "client_ip": request.client.host if request.client else None,
            },
        )

        try:
            response = await call_next(request)
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            response.headers[settings.request_id_header] = request_id
            logger.info(
                "request_completed",
                extra={
                    "event": "request_completed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                },
            )
            return response
        except Exception:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.exception(
                "request_failed",
                extra={
                    "event": "request_failed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": elapsed_ms,
                },
            )
            raise
        finally:
            reset_log_context(token)

    # Router getters are late-bound so tests can monkeypatch the module-level functions.
    app.include_router(system_router)
    app.include_router(build_accounts_router())
    app.include_router(
        build_files_router(
            get_workflow_client=lambda: get_workflow_client(),
            get_pdf_converter=lambda: get_pdf_converter(),
            get_http_client=lambda: get_http_client(),
        )
    )
    app.include_router(build_policy_router(get_workflow_client=lambda: get_workflow_client()))
    app.include_router(build_standard_router(get_workflow_client=lambda: get_workflow_client()))

    if settings.storage_backend.strip().lower() in {"", "local", "filesystem", "fs"}:
        app.mount("/files", StaticFiles(directory=settings.storage_root, check_dir=False), name="files")

    return app


app = create_app()
