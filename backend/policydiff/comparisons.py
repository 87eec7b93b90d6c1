from __future__ import annotations

import json
import logging
from typing import Any, Protocol
from urllib.parse import urlparse

from policydiff.config import settings
from policydiff.normalizer import NormalizedContent, normalize_response
from policydiff.workflow import WorkflowInvocation

logger = logging.getLogger("policydiff.comparisons")


class WorkflowRunner(Protocol):
    def run(
        self,
        workflow_id: str,
        parameters: dict[str, str],
        *,
        token: str | None = None,
        endpoint: str | None = None,
    ) -> WorkflowInvocation: ...


def require_http_url(value: str, *, field_name: str = "file_url") -> str:
    url = (value or "").strip()
    if not url:
        raise ValueError(f"{field_name} is required.")
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(f"{field_name} must be an absolute http or https URL.")
    return url


def policy_projection(raw_coze_response: Any) -> dict[str, object]:
    """Derive the stored comparison fields from a raw workflow reply."""
    if raw_coze_response is None:
        return {"comparison_result": None, "comparison_structured": None, "is_json_format": False}

    content = normalize_response(raw_coze_response)
    if content.is_structured:
        detailed = content.value.get("detailed") if isinstance(content.value, dict) else None
        return {
            "comparison_result": detailed if isinstance(detailed, str) and detailed else content.as_text(),
            "comparison_structured": content.value,
            "is_json_format": True,
        }
    return {
        "comparison_result": _free_text(content, raw_coze_response),
        "comparison_structured": None,
        "is_json_format": False,
    }


def standard_projection(raw_coze_response: Any) -> dict[str, object]:
    content = normalize_response(raw_coze_response)
    return {"standard_items": content.value if content.is_structured else None}


def _free_text(content: NormalizedContent, raw: Any) -> str:
    text = content.as_text()
    if text:
        return text
    if isinstance(raw, dict) and raw.get("data") is not None:
        data = raw["data"]
        return data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    return ""


def invocation_payload(invocation: WorkflowInvocation) -> dict[str, object]:
    content = invocation.content
    return {
        "success": True,
        "data": content.value,
        "structured": content.value if content.is_structured else None,
        "is_json_format": invocation.is_structured,
        "schema": content.schema,
        "outcome": invocation.outcome.value,
        "attempts": len(invocation.attempts),
        "execute_id": invocation.execute_id,
        "debug_url": invocation.debug_url,
        "raw_coze_response": invocation.raw_body,
    }


def run_policy_comparison(
    runner: WorkflowRunner,
    *,
    old_file_url: str,
    new_file_url: str,
    old_file_name: str,
    new_file_name: str,
    token: str | None = None,
) -> WorkflowInvocation:
    parameters = {
        "oldFile": old_file_url,
        "newFile": new_file_url,
        "oldFileName": old_file_name,
        "newFileName": new_file_name,
    }
    logger.info(
        "policy_comparison_started",
        extra={
            "event": "policy_comparison_started",
            "old_file_name": old_file_name,
            "new_file_name": new_file_name,
        },
    )
    return runner.run(settings.coze_policy_workflow_id, parameters, token=token)


def run_standard_comparison(runner: WorkflowRunner, *, file_url: str, token: str | None = None) -> WorkflowInvocation:
    logger.info("standard_comparison_started", extra={"event": "standard_comparison_started", "file_url": file_url})
    return runner.run(settings.coze_standard_workflow_id, {"file_name": file_url}, token=token)


def run_file_comparison(
    runner: WorkflowRunner,
    *,
    file1_id: str,
    file2_id: str,
    prompt: str | None = None,
    token: str | None = None,
) -> WorkflowInvocation:
    parameters = {
        "file1": json.dumps({"file_id": file1_id}),
        "file2": json.dumps({"file_id": file2_id}),
        "prompt": (prompt or "").strip() or settings.default_compare_prompt,
    }
    return runner.run(settings.coze_file_compare_workflow_id, parameters, token=token)
