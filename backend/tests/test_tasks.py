from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path

import pytest

from policydiff.config import settings
from policydiff.db import (
    POLICY_COLLECTION,
    claim_policy_task,
    create_record,
    get_record,
    init_db,
    list_due_policy_tasks,
    update_record,
)
from policydiff.observability import LOG_CONTEXT
from policydiff.normalizer import normalize_response
from policydiff.tasks import process_pending_tasks, process_task
from policydiff.workflow import (
    AttemptOutcome,
    InvocationOutcome,
    WorkflowAttemptResult,
    WorkflowCallFailed,
    WorkflowInvocation,
    WorkflowRequest,
)

NOW = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)
REPORT = {"summary": "新增一项补贴", "added": ["餐补"], "modified": [], "deleted": [], "detailed": "新增餐补条款"}


class StubRunner:
    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.fail_with = fail_with
        self.calls: list[tuple[str, dict[str, str], str | None]] = []

    def run(self, workflow_id, parameters, *, token=None, endpoint=None):
        self.calls.append((workflow_id, dict(parameters), token))
        if self.fail_with is not None:
            raise self.fail_with
        body = {"data": json.dumps(REPORT, ensure_ascii=False)}
        attempt = WorkflowAttemptResult(
            attempt=1,
            outcome=AttemptOutcome.VALID,
            status_code=200,
            body=body,
            content=normalize_response(body),
        )
        return WorkflowInvocation(
            request=WorkflowRequest(workflow_id=workflow_id, parameters=parameters),
            outcome=InvocationOutcome.VALID,
            attempts=[attempt],
        )


@pytest.fixture(autouse=True)
def task_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path}/tasks.db")
    monkeypatch.setattr(settings, "task_max_retries", 3)
    monkeypatch.setattr(settings, "task_retry_delay_seconds", 30)
    init_db()


def _queue(company: str = "杭州", **fields: object) -> dict[str, object]:
    return create_record(
        POLICY_COLLECTION,
        {
            "username": "admin",
            "company": company,
            "old_file_name": "old.pdf",
            "new_file_name": "new.pdf",
            "old_file_url": "https://cdn.example.com/old.pdf",
            "new_file_url": "https://cdn.example.com/new.pdf",
            "status": "pending",
            "max_retries": 3,
            **fields,
        },
    )


def test_successful_task_is_marked_done_with_projection() -> None:
    task = _queue()
    runner = StubRunner()

    result = process_task(runner, task, token="pat_header", now=NOW)

    assert result == {"success": True, "task_id": task["id"]}
    assert runner.calls[0][1]["oldFile"] == "https://cdn.example.com/old.pdf"
    assert runner.calls[0][2] == "pat_header"

    record = get_record(POLICY_COLLECTION, str(task["id"]))
    assert record is not None
    assert record["status"] == "done"
    assert record["comparison_structured"] == REPORT
    assert record["comparison_result"] == "新增餐补条款"
    assert record["is_json_format"] is True
    assert record["started_at"] == NOW.isoformat(timespec="microseconds")
    assert record["error_message"] is None


def test_failed_task_is_scheduled_for_retry() -> None:
    task = _queue()
    runner = StubRunner(fail_with=WorkflowCallFailed("Coze workflow HTTP 500", status_code=500, attempts=5))

    result = process_task(runner, task, now=NOW)

    assert result["success"] is False
    assert result["should_retry"] is True
    record = get_record(POLICY_COLLECTION, str(task["id"]))
    assert record is not None
    assert record["status"] == "retrying"
    assert record["retry_count"] == 1
    assert record["error_message"] == "Coze workflow HTTP 500"
    assert record["next_retry_time"] == (NOW + timedelta(seconds=30)).isoformat(timespec="microseconds")


def test_task_ends_in_error_after_max_retries() -> None:
    task = _queue(retry_count=2)

    result = process_task(StubRunner(fail_with=RuntimeError("boom")), task, now=NOW)

    assert result["should_retry"] is False
    record = get_record(POLICY_COLLECTION, str(task["id"]))
    assert record is not None
    assert record["status"] == "error"
    assert record["retry_count"] == 3
    assert record["next_retry_time"] is None


def test_retrying_tasks_become_due_after_delay() -> None:
    task = _queue()
    process_task(StubRunner(fail_with=RuntimeError("boom")), task, now=NOW)

    def due_at(moment: datetime) -> list[str]:
        iso = moment.isoformat(timespec="microseconds")
        return [str(item["id"]) for item in list_due_policy_tasks(now_iso=iso, limit=10)]

    assert due_at(NOW + timedelta(seconds=10)) == []
    assert due_at(NOW + timedelta(seconds=30)) == [task["id"]]


def test_process_pending_tasks_runs_a_batch(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "task_batch_size", 2)
    queued = [_queue(company=f"城市{index}") for index in range(3)]
    runner = StubRunner()

    summary = asyncio.run(process_pending_tasks(runner, now=NOW))

    assert summary["processed"] == 2
    assert summary["succeeded"] == 2
    assert summary["failed"] == 0
    assert [item["task_id"] for item in summary["results"]] == [queued[0]["id"], queued[1]["id"]]

    leftover = get_record(POLICY_COLLECTION, str(queued[2]["id"]))
    assert leftover is not None
    assert leftover["status"] == "pending"


def test_process_pending_tasks_with_empty_queue() -> None:
    summary = asyncio.run(process_pending_tasks(StubRunner(), now=NOW))
    assert summary == {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0, "results": []}


def test_claim_succeeds_only_once() -> None:
    task = _queue()
    started = NOW.isoformat(timespec="microseconds")

    assert claim_policy_task(str(task["id"]), started_at=started) is True
    assert claim_policy_task(str(task["id"]), started_at=started) is False

    record = get_record(POLICY_COLLECTION, str(task["id"]))
    assert record is not None
    assert record["status"] == "processing"
    assert record["started_at"] == started


def test_task_claimed_by_another_run_is_skipped() -> None:
    task = _queue()
    update_record(POLICY_COLLECTION, str(task["id"]), {"status": "processing"})
    runner = StubRunner()

    result = process_task(runner, task, now=NOW)

    assert result == {"success": False, "task_id": task["id"], "skipped": True}
    assert runner.calls == []
    record = get_record(POLICY_COLLECTION, str(task["id"]))
    assert record is not None
    assert record["status"] == "processing"
    assert record["retry_count"] == 0


def test_overlapping_batches_run_each_task_once(monkeypatch: pytest.MonkeyPatch) -> None:
    first, second = _queue(company="上海"), _queue(company="广州")
    stale_snapshot = [dict(first), dict(second)]
    assert claim_policy_task(str(first["id"]), started_at=NOW.isoformat(timespec="microseconds"))
    monkeypatch.setattr("policydiff.tasks.list_due_policy_tasks", lambda **_kwargs: stale_snapshot)
    runner = StubRunner()

    summary = asyncio.run(process_pending_tasks(runner, now=NOW))

    assert len(runner.calls) == 1
    assert summary["processed"] == 1
    assert summary["succeeded"] == 1
    assert summary["failed"] == 0
    assert summary["skipped"] == 1


def test_task_id_is_bound_to_log_context_while_running() -> None:
    task = _queue()
    seen: list[dict[str, str]] = []

    class ContextRunner(StubRunner):
        def run(self, workflow_id, parameters, *, token=None, endpoint=None):
            seen.append(dict(LOG_CONTEXT.get()))
            return super().run(workflow_id, parameters, token=token, endpoint=endpoint)

    process_task(ContextRunner(), task, now=NOW)

    assert seen == [{"task_id": task["id"]}]
    assert "task_id" not in LOG_CONTEXT.get()


def test_create_record_fails_loudly_when_row_is_unreadable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("policydiff.db.get_record", lambda _collection, _record_id: None)

    with pytest.raises(RuntimeError, match="not readable after insert"):
        _queue()
