from __future__ import annotations

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from policydiff.api.contracts import (
    StandardCompareRequest,
    StandardRecordCreateRequest,
    StandardRecordUpdateRequest,
)
from policydiff.api.services.records import (
    WorkflowClientGetter,
    coze_token_override,
    invoke_workflow,
    list_page,
    provided_fields,
    require_owned_record,
)
from policydiff.auth import require_authenticated_user, resolve_acting_username
from policydiff.comparisons import invocation_payload, require_http_url, run_standard_comparison, standard_projection
from policydiff.config import settings
from policydiff.db import (
    STANDARD_COLLECTION,
    beijing_now_iso,
    create_record,
    delete_record,
    get_record,
    list_records,
    update_record,
)
from policydiff.export.workbook import XLSX_MEDIA_TYPE, build_standard_workbook

logger = logging.getLogger("policydiff.api")


def _save_standard_result(
    *,
    username: str,
    city: str,
    file_name: str,
    file_url: str,
    raw_body: Any,
    mode: str,
    record_id: str | None,
) -> tuple[str, bool]:
    fields: dict[str, Any] = {
        "city": city,
        "file_name": file_name,
        "file_url": file_url,
        "raw_coze_response": raw_body,
        "add_time": beijing_now_iso(),
        "is_verified": False,
        **standard_projection(raw_body),
    }

    if mode == "overwrite" and record_id:
        existing = get_record(STANDARD_COLLECTION, record_id)
        if existing is not None and existing.get("username") == username:
            update_record(STANDARD_COLLECTION, record_id, fields)
            return record_id, True
        # Missing or foreign records fall back to creating a new one.
        logger.warning(
            "standard_overwrite_skipped",
            extra={
                "event": "standard_overwrite_skipped",
                "record_id": record_id,
                "reason": "missing" if existing is None else "foreign_owner",
            },
        )

    record = create_record(STANDARD_COLLECTION, {**fields, "username": username, "status": "done"})
    return str(record["id"]), False


def build_standard_router(*, get_workflow_client: WorkflowClientGetter) -> APIRouter:
    router = APIRouter()

    @router.post("/standard-compare")
    def standard_compare(
        payload: StandardCompareRequest,
        request: Request,
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        username = resolve_acting_username(claims, payload.username)
        try:
            file_url = require_http_url(payload.file_url)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        client = get_workflow_client()
        invocation = invoke_workflow(
            lambda: run_standard_comparison(client, file_url=file_url, token=coze_token_override(request))
        )
        response = invocation_payload(invocation)
        response["record_id"] = None
        response["overwritten"] = False

        city = (payload.city or "").strip()
        file_name = (payload.file_name or "").strip()
        if not city or not file_name:
            logger.info(
                "standard_result_not_saved",
                extra={"event": "standard_result_not_saved", "has_city": bool(city), "has_file_name": bool(file_name)},
            )
            return response

        try:
            record_id, overwritten = _save_standard_result(
                username=username,
                city=city,
                file_name=file_name,
                file_url=file_url,
                raw_body=invocation.raw_body,
                mode=payload.mode,
                record_id=payload.record_id,
            )
        except sqlite3.Error as exc:
            logger.error(
                "standard_record_save_failed",
                extra={"event": "standard_record_save_failed", "error": str(exc)},
            )
            return response

        response["record_id"] = record_id
        response["overwritten"] = overwritten
        return response

    @router.get("/standard-compare-records")
    def list_standard_records(
        username: str | None = Query(default=None),
        page: int = Query(default=1, ge=1),
        page_size: int | None = Query(default=None, ge=1, le=1000),
        all_records: bool = Query(default=False, alias="all"),
        is_verified: bool | None = Query(default=None),
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        return list_page(
            STANDARD_COLLECTION,
            username=resolve_acting_username(claims, username),
            page=page,
            page_size=page_size,
            all_records=all_records,
            is_verified=is_verified,
        )

    @router.get("/standard-compare-records/export")
    def export_standard_records(
        username: str | None = Query(default=None),
        is_verified: bool | None = Query(default=None),
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> Response:
        records = list_records(
            STANDARD_COLLECTION,
            username=resolve_acting_username(claims, username),
            limit=max(1, settings.records_export_limit),
            is_verified=is_verified,
        )
        return Response(
            content=build_standard_workbook(records),
            media_type=XLSX_MEDIA_TYPE,
            headers={"Content-Disposition": 'attachment; filename="standard-compare-records.xlsx"'},
        )

    @router.get("/standard-compare-records/{record_id}")
    def get_standard_record(
        record_id: str,
        username: str | None = Query(default=None),
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        record = require_owned_record(STANDARD_COLLECTION, record_id, resolve_acting_username(claims, username))
        return {"success": True, "data": record}

    @router.post("/standard-compare-records")
    def create_standard_record(
        payload: StandardRecordCreateRequest,
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        username = resolve_acting_username(claims, payload.username)
        try:
            file_url = require_http_url(payload.file_url)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        fields = {**provided_fields(payload.model_dump()), "file_url": file_url}
        if fields.get("standard_items") is None and payload.raw_coze_response is not None:
            fields.update(standard_projection(payload.raw_coze_response))
        record = create_record(STANDARD_COLLECTION, {**fields, "username": username, "status": "done"})
        return {"success": True, "data": record}

    @router.patch("/standard-compare-records/{record_id}")
    def update_standard_record(
        record_id: str,
        payload: StandardRecordUpdateRequest,
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        username = resolve_acting_username(claims, payload.username)
        require_owned_record(STANDARD_COLLECTION, record_id, username)

        changes = provided_fields(payload.model_dump(exclude_unset=True))
        if changes.get("file_url") is not None:
            try:
                changes["file_url"] = require_http_url(str(changes["file_url"]))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        if "raw_coze_response" in changes and "standard_items" not in changes:
            changes.update(standard_projection(changes["raw_coze_response"]))

        update_record(STANDARD_COLLECTION, record_id, changes)
        return {"success": True, "data": require_owned_record(STANDARD_COLLECTION, record_id, username)}

    @router.delete("/standard-compare-records/{record_id}")
    def delete_standard_record(
        record_id: str,
        username: str | None = Query(default=None),
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        require_owned_record(STANDARD_COLLECTION, record_id, resolve_acting_username(claims, username))
        deleted = delete_record(STANDARD_COLLECTION, record_id)
        return {"success": True, "deleted": deleted}

    return router
