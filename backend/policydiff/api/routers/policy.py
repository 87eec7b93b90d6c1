from __future__ import annotations

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import PlainTextResponse

from policydiff.api.contracts import PolicyCompareRequest, PolicyRecordCreateRequest, PolicyRecordUpdateRequest
from policydiff.api.services.records import (
    WorkflowClientGetter,
    coze_token_override,
    invoke_workflow,
    list_page,
    provided_fields,
    require_owned_record,
    text_value,
)
from policydiff.auth import require_authenticated_user, resolve_acting_username
from policydiff.comparisons import invocation_payload, policy_projection, require_http_url, run_policy_comparison
from policydiff.config import settings
from policydiff.db import POLICY_COLLECTION, create_record, delete_record, list_records, update_record
from policydiff.export.markdown import render_policy_markdown
from policydiff.export.workbook import XLSX_MEDIA_TYPE, build_policy_workbook
from policydiff.tasks import process_pending_tasks

logger = logging.getLogger("policydiff.api")


def build_policy_router(*, get_workflow_client: WorkflowClientGetter) -> APIRouter:
    router = APIRouter()

    @router.post("/policy-compare")
    def policy_compare(
        payload: PolicyCompareRequest,
        request: Request,
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        username = resolve_acting_username(claims, payload.username)
        try:
            old_file_url = require_http_url(payload.old_file_url, field_name="old_file_url")
            new_file_url = require_http_url(payload.new_file_url, field_name="new_file_url")
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        base_fields = {
            "username": username,
            "company": payload.company,
            "old_file_name": payload.old_file_name,
            "new_file_name": payload.new_file_name,
            "old_file_url": old_file_url,
            "new_file_url": new_file_url,
        }

        if payload.queue:
            record = create_record(
                POLICY_COLLECTION,
                {**base_fields, "status": "pending", "max_retries": settings.task_max_retries},
            )
            logger.info("compare_task_queued", extra={"event": "compare_task_queued", "record_id": record["id"]})
            return {"success": True, "queued": True, "record_id": record["id"], "status": "pending"}

        client = get_workflow_client()
        invocation = invoke_workflow(
            lambda: run_policy_comparison(
                client,
                old_file_url=old_file_url,
                new_file_url=new_file_url,
                old_file_name=payload.old_file_name,
                new_file_name=payload.new_file_name,
                token=coze_token_override(request),
            )
        )

        response = invocation_payload(invocation)
        response["queued"] = False
        try:
            record = create_record(
                POLICY_COLLECTION,
                {
                    **base_fields,
                    "status": "done",
                    "raw_coze_response": invocation.raw_body,
                    **policy_projection(invocation.raw_body),
                },
            )
            response["record_id"] = record["id"]
        except sqlite3.Error as exc:
            logger.error(
                "policy_record_save_failed",
                extra={"event": "policy_record_save_failed", "error": str(exc)},
            )
            response["record_id"] = None
        return response

    @router.get("/policy-compare-records")
    def list_policy_records(
        username: str | None = Query(default=None),
        page: int = Query(default=1, ge=1),
        page_size: int | None = Query(default=None, ge=1, le=1000),
        all_records: bool = Query(default=False, alias="all"),
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        return list_page(
            POLICY_COLLECTION,
            username=resolve_acting_username(claims, username),
            page=page,
            page_size=page_size,
            all_records=all_records,
        )

    @router.get("/policy-compare-records/export")
    def export_policy_records(
        username: str | None = Query(default=None),
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> Response:
        acting = resolve_acting_username(claims, username)
        records = list_records(POLICY_COLLECTION, username=acting, limit=max(1, settings.records_export_limit))
        return Response(
            content=build_policy_workbook(records),
            media_type=XLSX_MEDIA_TYPE,
            headers={"Content-Disposition": 'attachment; filename="policy-compare-records.xlsx"'},
        )

    @router.post("/policy-compare-records/process")
    async def process_policy_tasks(
        request: Request,
        _claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        summary = await process_pending_tasks(get_workflow_client(), token=coze_token_override(request))
        return {"success": True, **summary}

    @router.get("/policy-compare-records/{record_id}")
    def get_policy_record(
        record_id: str,
        username: str | None = Query(default=None),
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        record = require_owned_record(POLICY_COLLECTION, record_id, resolve_acting_username(claims, username))
        return {"success": True, "data": record}

    @router.get("/policy-compare-records/{record_id}/markdown", response_class=PlainTextResponse)
    def policy_record_markdown(
        record_id: str,
        username: str | None = Query(default=None),
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> PlainTextResponse:
        record = require_owned_record(POLICY_COLLECTION, record_id, resolve_acting_username(claims, username))
        return PlainTextResponse(render_policy_markdown(record), media_type="text/markdown; charset=utf-8")

    @router.post("/policy-compare-records")
    def create_policy_record(
        payload: PolicyRecordCreateRequest,
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        username = resolve_acting_username(claims, payload.username)
        record = create_record(
            POLICY_COLLECTION,
            {
                **provided_fields(payload.model_dump()),
                "username": username,
                "status": "done",
                **policy_projection(payload.raw_coze_response),
            },
        )
        return {"success": True, "data": record}

    @router.patch("/policy-compare-records/{record_id}")
    def update_policy_record(
        record_id: str,
        payload: PolicyRecordUpdateRequest,
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        username = resolve_acting_username(claims, payload.username)
        require_owned_record(POLICY_COLLECTION, record_id, username)

        supplied = provided_fields(payload.model_dump(exclude_unset=True))
        changes: dict[str, Any] = {}
        if "raw_coze_response" in supplied:
            changes["raw_coze_response"] = supplied["raw_coze_response"]
            changes.update(policy_projection(supplied["raw_coze_response"]))
        for key, value in supplied.items():
            if key == "raw_coze_response":
                continue
            changes[key] = text_value(value) if key == "comparison_result" else value

        update_record(POLICY_COLLECTION, record_id, changes)
        return {"success": True, "data": require_owned_record(POLICY_COLLECTION, record_id, username)}

    @router.delete("/policy-compare-records/{record_id}")
    def delete_policy_record(
        record_id: str,
        username: str | None = Query(default=None),
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        require_owned_record(POLICY_COLLECTION, record_id, resolve_acting_username(claims, username))
        deleted = delete_record(POLICY_COLLECTION, record_id)
        return {"success": True, "deleted": deleted}

    return router
