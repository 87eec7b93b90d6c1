"""Background processing of queued policy comparisons.

Queued records sit in ``pending`` until a processor run picks them up. A
failed run puts the record into ``retrying`` with a ``next_retry_time``; once
``max_retries`` is reached it ends in ``error``.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from policydiff.comparisons import WorkflowRunner, policy_projection, run_policy_comparison
from policydiff.concurrency import run_bounded
from policydiff.config import settings
from policydiff.db import POLICY_COLLECTION, claim_policy_task, list_due_policy_tasks, update_record
from policydiff.observability import bind_log_context, reset_log_context

logger = logging.getLogger("policydiff.tasks")


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def process_task(
    runner: WorkflowRunner,
    task: dict[str, Any],
    *,
    token: str | None = None,
    now: datetime | None = None,
) -> dict[str, object]:
    task_id = str(task["id"])
    started = now or datetime.now(timezone.utc)
    if not claim_policy_task(task_id, started_at=_iso(started)):
        logger.info("compare_task_skipped", extra={"event": "compare_task_skipped", "task_id": task_id})
        return {"success": False, "task_id": task_id, "skipped": True}

    token_ctx = bind_log_context(task_id=task_id)
    try:
        return _run_claimed_task(runner, task, task_id, started, token)
    finally:
        reset_log_context(token_ctx)


def _run_claimed_task(
    runner: WorkflowRunner,
    task: dict[str, Any],
    task_id: str,
    started: datetime,
    token: str | None,
) -> dict[str, object]:
    try:
        invocation = run_policy_comparison(
            runner,
            old_file_url=str(task.get("old_file_url") or ""),
            new_file_url=str(task.get("new_file_url") or ""),
            old_file_name=str(task.get("old_file_name") or ""),
            new_file_name=str(task.get("new_file_name") or ""),
            token=token,
        )
    except Exception as exc:
        retry_count = int(task.get("retry_count") or 0) + 1
        max_retries = int(task.get("max_retries") or settings.task_max_retries)
        should_retry = retry_count < max_retries
        next_retry = started + timedelta(seconds=settings.task_retry_delay_seconds) if should_retry else None
        update_record(
            POLICY_COLLECTION,
            task_id,
            {
                "status": "retrying" if should_retry else "error",
                "retry_count": retry_count,
                "error_message": str(exc) or type(exc).__name__,
                "next_retry_time": _iso(next_retry) if next_retry else None,
            },
        )
        logger.warning(
            "compare_task_failed",
            extra={
                "event": "compare_task_failed",
                "task_id": task_id,
                "retry_count": retry_count,
                "max_retries": max_retries,
                "will_retry": should_retry,
                "error": str(exc),
            },
        )
        return {"success": False, "task_id": task_id, "error": str(exc), "should_retry": should_retry}

    fields: dict[str, object] = {
        "status": "done",
        "raw_coze_response": invocation.raw_body,
        "completed_at": _iso(datetime.now(timezone.utc)),
        "error_message": None,
        "next_retry_time": None,
    }
    fields.update(policy_projection(invocation.raw_body))
    update_record(POLICY_COLLECTION, task_id, fields)
    logger.info(
        "compare_task_completed",
        extra={
            "event": "compare_task_completed",
            "task_id": task_id,
            "is_json_format": fields["is_json_format"],
            "attempts": len(invocation.attempts),
        },
    )
    return {"success": True, "task_id": task_id}


async def process_pending_tasks(
    runner: WorkflowRunner,
    *,
    token: str | None = None,
    now: datetime | None = None,
) -> dict[str, object]:
    """Run one batch of due tasks and summarise the outcome."""
    moment = now or datetime.now(timezone.utc)
    tasks = list_due_policy_tasks(now_iso=_iso(moment), limit=max(1, settings.task_batch_size))
    if not tasks:
        return {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0, "results": []}

    logger.info("compare_tasks_picked", extra={"event": "compare_tasks_picked", "count": len(tasks)})

    def _job(task: dict[str, Any]):
        return lambda: asyncio.to_thread(process_task, runner, task, token=token, now=moment)

    outcomes = await run_bounded([_job(task) for task in tasks], max(1, settings.task_batch_size))

    results: list[dict[str, object]] = []
    for task, outcome in zip(tasks, outcomes):
        if isinstance(outcome, Exception):
            results.append({"success": False, "task_id": str(task["id"]), "error": str(outcome)})
        else:
            results.append(outcome)

    skipped = sum(1 for item in results if item.get("skipped"))
    succeeded = sum(1 for item in results if item.get("success"))
    processed = len(results) - skipped
    return {
        "processed": processed,
        "succeeded": succeeded,
        "failed": processed - succeeded,
        "skipped": skipped,
        "results": results,
    }
