from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
import logging
import time
from typing import Any, Callable, Mapping

import httpx

from policydiff.config import Settings
from policydiff.normalizer import NormalizedContent, normalize_response

logger = logging.getLogger("policydiff.workflow")


class WorkflowCallFailed(RuntimeError):
    """Raised when every workflow attempt failed at the transport or HTTP level."""

    def __init__(self, message: str, *, status_code: int | None = None, attempts: int = 0) -> None:
        self.status_code = status_code
        self.attempts = attempts
        super().__init__(message)


class ConfigurationError(RuntimeError):
    """Raised when the workflow client is missing required settings."""


class AttemptOutcome(str, Enum):
    TRANSPORT_ERROR = "transport_error"
    HTTP_ERROR = "http_error"
    MALFORMED_JSON = "malformed_json"
    UNRECOGNIZED_SHAPE = "unrecognized_shape"
    VALID = "valid"


class InvocationOutcome(str, Enum):
    VALID = "valid"
    BEST_EFFORT_INVALID = "best_effort_invalid"


@dataclass(frozen=True)
class WorkflowRequest:
    workflow_id: str
    parameters: Mapping[str, str]

    def to_payload(self) -> dict[str, object]:
        return {"workflow_id": self.workflow_id, "parameters": dict(self.parameters)}


@dataclass(frozen=True)
class WorkflowAttemptResult:
    attempt: int
    outcome: AttemptOutcome
    status_code: int | None = None
    body: Any = None
    error: str | None = None
    content: NormalizedContent | None = None

    @property
    def failed(self) -> bool:
        return self.outcome in {
            AttemptOutcome.TRANSPORT_ERROR,
            AttemptOutcome.HTTP_ERROR,
            AttemptOutcome.MALFORMED_JSON,
        }


@dataclass
class WorkflowInvocation:
    request: WorkflowRequest
    outcome: InvocationOutcome
    attempts: list[WorkflowAttemptResult] = field(default_factory=list)

    @property
    def final_attempt(self) -> WorkflowAttemptResult:
        return self.attempts[-1]

    @property
    def http_status(self) -> int | None:
        return self.final_attempt.status_code

    @property
    def raw_body(self) -> Any:
        return self.final_attempt.body

    @property
    def content(self) -> NormalizedContent:
        content = self.final_attempt.content
        if content is None:
            return normalize_response(self.raw_body)
        return content

    @property
    def is_structured(self) -> bool:
        return self.outcome is InvocationOutcome.VALID

    @property
    def execute_id(self) -> str | None:
        body = self.raw_body
        return body.get("execute_id") if isinstance(body, dict) else None

    @property
    def debug_url(self) -> str | None:
        body = self.raw_body
        return body.get("debug_url") if isinstance(body, dict) else None


def _error_detail(body: Any, reason_phrase: str) -> str:
    if isinstance(body, dict):
        for key in ("message", "msg", "error"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return reason_phrase or "unknown error"


class CozeWorkflowClient:
    """Runs Coze workflows with a fixed-count, fixed-delay retry loop.

    The workflow platform sometimes answers before the real result is ready,
    so a reply that parses but is not a recognised report is retried as well.
    When every attempt is exhausted that way the last reply is handed back
    (``InvocationOutcome.BEST_EFFORT_INVALID``) rather than raised; callers
    decide whether to trust it.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._http = http_client or httpx.Client(timeout=settings.coze_request_timeout_seconds)
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return max(1, self._settings.workflow_max_attempts)

    @property
    def retry_delay_seconds(self) -> float:
        return max(0, self._settings.workflow_retry_delay_ms) / 1000.0

    def resolve_token(self, override: str | None = None) -> str:
        token = (override or "").strip() or str(self._settings.coze_api_token or "").strip()
        if not token:
            raise ConfigurationError("Coze API token is not configured. Set COZE_API_TOKEN.")
        return token

    def run(
        self,
        workflow_id: str,
        parameters: Mapping[str, str],
        *,
        token: str | None = None,
        endpoint: str | None = None,
    ) -> WorkflowInvocation:
        if not workflow_id:
            raise ConfigurationError("Workflow ID is not configured.")

        bearer = self.resolve_token(token)
        url = endpoint or self._settings.coze_workflow_run_url
        request = WorkflowRequest(workflow_id=workflow_id, parameters=dict(parameters))
        attempts: list[WorkflowAttemptResult] = []

        for attempt in range(1, self.max_attempts + 1):
            result = self._attempt(url, bearer, request, attempt)
            attempts.append(result)
            is_last = attempt == self.max_attempts

            if result.outcome is AttemptOutcome.VALID:
                logger.info(
                    "workflow_attempt_valid",
                    extra={
                        "event": "workflow_attempt_valid",
                        "workflow_id": workflow_id,
                        "attempt": attempt,
                        "schema": result.content.schema if result.content else None,
                    },
                )
                return WorkflowInvocation(request=request, outcome=InvocationOutcome.VALID, attempts=attempts)

            if is_last:
                if result.failed:
                    raise self._exhausted(attempts)
                logger.warning(
                    "workflow_best_effort_result",
                    extra={
                        "event": "workflow_best_effort_result",
                        "workflow_id": workflow_id,
                        "attempts": attempt,
                        "raw_body": result.body,
                    },
                )
                return WorkflowInvocation(
                    request=request,
                    outcome=InvocationOutcome.BEST_EFFORT_INVALID,
                    attempts=attempts,
                )

            logger.warning(
                "workflow_attempt_retry",
                extra={
                    "event": "workflow_attempt_retry",
                    "workflow_id": workflow_id,
                    "attempt": attempt,
                    "max_attempts": self.max_attempts,
                    "outcome": result.outcome.value,
                    "status_code": result.status_code,
                    "error": result.error,
                    "delay_ms": self._settings.workflow_retry_delay_ms,
                },
            )
            self._sleep(self.retry_delay_seconds)

        # max_attempts is at least one, so the loop always returns or raises.
        raise self._exhausted(attempts)

    def _attempt(
        self,
        url: str,
        bearer: str,
        request: WorkflowRequest,
        attempt: int,
    ) -> WorkflowAttemptResult:
        started = time.perf_counter()
        try:
            response = self._http.post(
                url,
                headers={
                    "Authorization": f"Bearer {bearer}",
                    "Content-Type": "application/json",
                },
                content=json.dumps(request.to_payload(), ensure_ascii=False).encode("utf-8"),
            )
        except httpx.HTTPError as exc:
            return WorkflowAttemptResult(
                attempt=attempt,
                outcome=AttemptOutcome.TRANSPORT_ERROR,
                error=f"{type(exc).__name__}: {exc}",
            )

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "workflow_attempt_completed",
            extra={
                "event": "workflow_attempt_completed",
                "workflow_id": request.workflow_id,
                "attempt": attempt,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "response_chars": len(response.content),
            },
        )

        try:
            body = response.json()
        except ValueError:
            return WorkflowAttemptResult(
                attempt=attempt,
                outcome=AttemptOutcome.MALFORMED_JSON,
                status_code=response.status_code,
                error=(
                    f"Workflow API returned a non-JSON response "
                    f"(HTTP {response.status_code}): {response.reason_phrase or 'unknown error'}"
                ),
            )

        if not response.is_success:
            return WorkflowAttemptResult(
                attempt=attempt,
                outcome=AttemptOutcome.HTTP_ERROR,
                status_code=response.status_code,
                body=body,
                error=(
                    f"Workflow API returned HTTP {response.status_code}: "
                    f"{_error_detail(body, response.reason_phrase)}"
                ),
            )

        content = normalize_response(body)
        return WorkflowAttemptResult(
            attempt=attempt,
            outcome=AttemptOutcome.VALID if content.is_structured else AttemptOutcome.UNRECOGNIZED_SHAPE,
            status_code=response.status_code,
            body=body,
            content=content,
        )

    @staticmethod
    def _exhausted(attempts: list[WorkflowAttemptResult]) -> WorkflowCallFailed:
        last = attempts[-1] if attempts else None
        last_status = next(
            (item.status_code for item in reversed(attempts) if item.status_code is not None),
            None,
        )
        if last is not None and last.status_code is not None:
            message = last.error or f"Workflow API returned HTTP {last.status_code}"
        elif last_status is not None:
            message = (
                f"Workflow API failed after {len(attempts)} attempts "
                f"(last HTTP {last_status}): {last.error if last else 'unknown error'}"
            )
        else:
            message = (
                f"Workflow API unreachable after {len(attempts)} attempts: "
                f"{last.error if last else 'no attempt was made'}"
            )
        logger.error(
            "workflow_call_failed",
            extra={
                "event": "workflow_call_failed",
                "attempts": len(attempts),
                "status_code": last_status,
                "error": message,
            },
        )
        return WorkflowCallFailed(message, status_code=last_status, attempts=len(attempts))
