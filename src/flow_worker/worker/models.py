"""Wire-level domain models for leased tasks and their reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from flow_worker.worker.errors import TransportError


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class TaskResultStatus(str, Enum):
    """Task states a worker may report back to the server."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    FAILED_WITH_TERMINAL_ERROR = "FAILED_WITH_TERMINAL_ERROR"


@dataclass(slots=True)
class Task:
    """One unit of work leased from the remote queue."""

    task_id: str
    task_def_name: str
    workflow_instance_id: str
    input_data: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    poll_count: int = 0
    polled_at: datetime = field(default_factory=utc_now)
    task_type: str = ""
    reference_task_name: str = ""
    correlation_id: str | None = None
    workflow_type: str | None = None
    status: str | None = None
    response_timeout_seconds: int | None = None
    callback_after_seconds: int | None = None

    @classmethod
    def from_payload(cls, raw: dict[str, Any], *, polled_at: datetime | None = None) -> Task:
        """Deserialize a task object returned by the poll endpoint."""

        if not isinstance(raw, dict):
            raise TransportError(f"Expected task object, got {type(raw).__name__}")
        task_id = raw.get("taskId")
        if not isinstance(task_id, str) or not task_id:
            raise TransportError("Polled task is missing taskId")
        task_type = _optional_str(raw.get("taskType")) or ""
        input_data = raw.get("inputData")
        if input_data is None:
            input_data = {}
        if not isinstance(input_data, dict):
            raise TransportError(f"Task {task_id} has non-object inputData")
        return cls(
            task_id=task_id,
            task_def_name=_optional_str(raw.get("taskDefName")) or task_type,
            workflow_instance_id=_optional_str(raw.get("workflowInstanceId")) or "",
            input_data=input_data,
            retry_count=_optional_int(raw.get("retryCount")) or 0,
            poll_count=_optional_int(raw.get("pollCount")) or 0,
            polled_at=polled_at or utc_now(),
            task_type=task_type,
            reference_task_name=_optional_str(raw.get("referenceTaskName")) or "",
            correlation_id=_optional_str(raw.get("correlationId")),
            workflow_type=_optional_str(raw.get("workflowType")),
            status=_optional_str(raw.get("status")),
            response_timeout_seconds=_optional_int(raw.get("responseTimeoutSeconds")),
            callback_after_seconds=_optional_int(raw.get("callbackAfterSeconds")),
        )


@dataclass(slots=True)
class TaskExecLog:
    """Log line attached to a task report."""

    log: str
    task_id: str
    created_time_ms: int

    def to_payload(self) -> dict[str, Any]:
        return {"log": self.log, "taskId": self.task_id, "createdTime": self.created_time_ms}


@dataclass(slots=True)
class TaskResult:
    """Completion or failure report for one task."""

    task_id: str
    workflow_instance_id: str
    status: TaskResultStatus
    worker_id: str = ""
    output_data: dict[str, Any] = field(default_factory=dict)
    reason_for_incompletion: str | None = None
    callback_after_seconds: int | None = None
    logs: list[TaskExecLog] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """Serialize into the JSON body accepted by the task update endpoint."""

        payload: dict[str, Any] = {
            "taskId": self.task_id,
            "workflowInstanceId": self.workflow_instance_id,
            "workerId": self.worker_id,
            "status": self.status.value,
            "outputData": self.output_data,
        }
        if self.reason_for_incompletion is not None:
            payload["reasonForIncompletion"] = self.reason_for_incompletion
        if self.callback_after_seconds is not None:
            payload["callbackAfterSeconds"] = self.callback_after_seconds
        if self.logs:
            payload["logs"] = [entry.to_payload() for entry in self.logs]
        return payload


def _optional_str(value: object) -> str | None:
    if isinstance(value, str):
        return value
    return None


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None
