from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable

import httpx
from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile

from policydiff.api.contracts import FileCompareRequest, MarkdownToPdfRequest, PdfToStorageRequest
from policydiff.api.services.records import WorkflowClientGetter, coze_token_override, invoke_workflow
from policydiff.auth import require_authenticated_user
from policydiff.cities import CityListUnavailable, format_file_size, load_cities, match_city_from_file_name
from policydiff.comparisons import invocation_payload, require_http_url, run_file_comparison
from policydiff.concurrency import run_bounded
from policydiff.config import settings
from policydiff.export.pdf import MarkdownPdfConverter, PdfConversionError, PdfServiceNotConfigured
from policydiff.storage import StorageError, StorageMisconfigured, fetch_to_storage, save_upload

logger = logging.getLogger("policydiff.api")

PdfConverterGetter = Callable[[], MarkdownPdfConverter]
HttpClientGetter = Callable[[], httpx.Client]


def _known_cities() -> list[str]:
    try:
        return load_cities(settings.cities_file)
    except CityListUnavailable:
        logger.warning("cities_unavailable", extra={"event": "cities_unavailable", "path": settings.cities_file})
        return []


def build_files_router(
    *,
    get_workflow_client: WorkflowClientGetter,
    get_pdf_converter: PdfConverterGetter,
    get_http_client: HttpClientGetter,
) -> APIRouter:
    router = APIRouter()

    @router.post("/upload")
    async def upload_files(
        files: list[UploadFile] = File(...),
        _claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        if len(files) > settings.max_upload_files:
            raise HTTPException(
                status_code=413,
                detail=f"Too many files in one upload batch (max {settings.max_upload_files}).",
            )

        buffered: list[tuple[str, str, bytes]] = []
        total_bytes = 0
        for upload in files:
            safe_name = Path(upload.filename or "upload.bin").name or "upload.bin"
            content = await upload.read(settings.max_upload_file_bytes + 1)
            if len(content) > settings.max_upload_file_bytes:
                raise HTTPException(
                    status_code=413,
                    detail=f"File '{safe_name}' exceeds max size of {settings.max_upload_file_bytes} bytes.",
                )
            if not content:
                raise HTTPException(status_code=400, detail=f"File '{safe_name}' is empty.")
            total_bytes += len(content)
            if total_bytes > settings.max_upload_batch_bytes:
                raise HTTPException(
                    status_code=413,
                    detail=f"Upload batch exceeds max size of {settings.max_upload_batch_bytes} bytes.",
                )
            buffered.append((safe_name, upload.content_type or "application/octet-stream", content))

        def _store(name: str, content_type: str, content: bytes):
            return lambda: asyncio.to_thread(
                save_upload,
                settings=settings,
                file_name=name,
                content_type=content_type,
                content=content,
            )

        outcomes = await run_bounded(
            [_store(name, content_type, content) for name, content_type, content in buffered],
            max(1, settings.upload_concurrency),
        )

        cities = _known_cities()
        results: list[dict[str, object]] = []
        for (name, _, content), outcome in zip(buffered, outcomes):
            if isinstance(outcome, StorageMisconfigured):
                raise HTTPException(status_code=503, detail=str(outcome)) from outcome
            if isinstance(outcome, Exception):
                logger.error(
                    "upload_failed",
                    extra={"event": "upload_failed", "file_name": name, "error": str(outcome)},
                )
                results.append({"success": False, "file_name": name, "error": str(outcome)})
                continue
            results.append(
                {
                    "success": True,
                    **outcome,
                    "file_size_formatted": format_file_size(len(content)),
                    "city": match_city_from_file_name(name, cities),
                }
            )

        uploaded = sum(1 for item in results if item["success"])
        if results and uploaded == 0:
            raise HTTPException(status_code=502, detail={"message": "All uploads failed.", "files": results})
        return {"success": True, "uploaded": uploaded, "failed": len(results) - uploaded, "files": results}

    @router.post("/pdf-to-storage")
    def pdf_to_storage(
        payload: PdfToStorageRequest,
        _claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        try:
            source_url = require_http_url(payload.pdf_url, field_name="pdf_url")
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        try:
            stored = fetch_to_storage(
                settings=settings,
                source_url=source_url,
                file_name=payload.file_name,
                http_client=get_http_client(),
            )
        except StorageMisconfigured as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except StorageError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"success": True, **stored}

    @router.post("/markdown-to-pdf")
    def markdown_to_pdf(
        payload: MarkdownToPdfRequest,
        _claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        if not payload.markdown.strip():
            raise HTTPException(status_code=400, detail="Markdown content is required.")
        try:
            pdf_url = get_pdf_converter().convert(payload.markdown)
        except PdfServiceNotConfigured as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except PdfConversionError as exc:
            raise HTTPException(status_code=502, detail={"message": str(exc), "code": exc.code}) from exc
        return {"success": True, "pdf_url": pdf_url}

    @router.post("/compare")
    def compare_files(
        payload: FileCompareRequest,
        request: Request,
        _claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        client = get_workflow_client()
        invocation = invoke_workflow(
            lambda: run_file_comparison(
                client,
                file1_id=payload.file1_id,
                file2_id=payload.file2_id,
                prompt=payload.prompt,
                token=coze_token_override(request),
            )
        )
        response = invocation_payload(invocation)
        response["markdown"] = invocation.content.as_text() or None
        return response

    return router
