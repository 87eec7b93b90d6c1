from __future__ import annotations

import json
import logging
import math
from typing import Any, Callable, Mapping

from fastapi import HTTPException, Request

from policydiff.config import settings
from policydiff.db import count_records, get_record, list_records
from policydiff.workflow import ConfigurationError, CozeWorkflowClient, WorkflowCallFailed, WorkflowInvocation

logger = logging.getLogger("policydiff.api")

WorkflowClientGetter = Callable[[], CozeWorkflowClient]


def coze_token_override(request: Request) -> str | None:
    value = request.headers.get(settings.coze_token_header)
    return value.strip() if value and value.strip() else None


def invoke_workflow(call: Callable[[], WorkflowInvocation]) -> WorkflowInvocation:
    try:
        return call()
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except WorkflowCallFailed as exc:
        raise HTTPException(
            status_code=502,
            detail={
                "message": str(exc),
                "status_code": exc.status_code,
                "attempts": exc.attempts,
            },
        ) from exc


def require_owned_record(collection: str, record_id: str, username: str) -> dict[str, object]:
    record = get_record(collection, record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found.")
    if record.get("username") != username:
        logger.warning(
            "record_access_denied",
            extra={"event": "record_access_denied", "collection": collection, "record_id": record_id},
        )
        raise HTTPException(status_code=403, detail="Record belongs to another user.")
    return record


def list_page(
    collection: str,
    *,
    username: str,
    page: int,
    page_size: int | None,
    all_records: bool,
    is_verified: bool | None = None,
) -> dict[str, object]:
    total = count_records(collection, username=username, is_verified=is_verified)

    if all_records:
        limit = max(1, settings.records_export_limit)
        records = list_records(collection, username=username, offset=0, limit=limit, is_verified=is_verified)
        return {
            "success": True,
            "data": records,
            "total": total,
            "has_more": total > len(records),
        }

    size = page_size or settings.records_page_size_default
    offset = (page - 1) * size
    records = list_records(collection, username=username, offset=offset, limit=size, is_verified=is_verified)
    total_pages = math.ceil(total / size) if total else 0
    return {
        "success": True,
        "data": records,
        "total": total,
        "page": page,
        "page_size": size,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def provided_fields(payload: Mapping[str, Any], *, exclude: set[str] | None = None) -> dict[str, Any]:
    skipped = {"username"} | (exclude or set())
    return {key: value for key, value in payload.items() if key not in skipped}


def text_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value
