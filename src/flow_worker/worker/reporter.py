"""Translate handler outcomes into task reports and send them."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from pydantic_core import to_jsonable_python

from flow_worker.worker.errors import HandlerError, TransportError
from flow_worker.worker.models import Task, TaskExecLog, TaskResult, TaskResultStatus

if TYPE_CHECKING:
    from flow_worker.http.client import TaskApi

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_RETRY_COUNT = 3
DEFAULT_UPDATE_RETRY_BACKOFF_SECONDS = 1.0


@dataclass(slots=True)
class ExecutionOutcome:
    """Result of one handler invocation; ``error is None`` means success."""

    output: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, output: Any) -> ExecutionOutcome:
        return cls(output=output)

    @classmethod
    def failure(cls, error: BaseException) -> ExecutionOutcome:
        return cls(error=error)


class ResultReporter:
    """Builds TaskResult reports and posts them with bounded retries.

    A report that still fails after the retries is logged and dropped; the
    server's lease timeout then decides the task's fate.
    """

    def __init__(
        self,
        client: TaskApi,
        *,
        worker_id: str,
        retry_count: int = DEFAULT_UPDATE_RETRY_COUNT,
        retry_backoff_seconds: float = DEFAULT_UPDATE_RETRY_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.worker_id = worker_id
        self.retry_count = max(0, retry_count)
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self._sleep = sleep

    def build_result(
        self,
        task: Task,
        outcome: ExecutionOutcome,
        logs: Sequence[TaskExecLog] = (),
    ) -> TaskResult:
        if outcome.ok and isinstance(outcome.output, TaskResult):
            return self._complete_explicit_result(task, outcome.output, logs)
        if outcome.error is not None:
            return self._failure_result(task, outcome.error, logs)
        try:
            output_data = to_output_data(outcome.output)
        except (TypeError, ValueError) as error:
            return self._failure_result(
                task,
                ValueError(f"output serialization error: {error}"),
                logs,
            )
        return TaskResult(
            task_id=task.task_id,
            workflow_instance_id=task.workflow_instance_id,
            status=TaskResultStatus.COMPLETED,
            worker_id=self.worker_id,
            output_data=output_data,
            logs=list(logs),
        )

    def report(
        self,
        task: Task,
        outcome: ExecutionOutcome,
        logs: Sequence[TaskExecLog] = (),
    ) -> bool:
        """Send the report for ``task``; returns False when every attempt failed."""

        result = self.build_result(task, outcome, logs)
        attempts = self.retry_count + 1
        for attempt in range(1, attempts + 1):
            try:
                self.client.update_task(result)
            except TransportError as error:
                if attempt == attempts:
                    logger.error(
                        "Giving up reporting task %s (%s) after %d attempts: %s",
                        task.task_id,
                        result.status.value,
                        attempts,
                        error,
                    )
                    return False
                logger.warning(
                    "Report attempt %d/%d for task %s failed: %s",
                    attempt,
                    attempts,
                    task.task_id,
                    error,
                )
                self._sleep(self.retry_backoff_seconds * attempt)
                continue
            logger.debug("Reported task %s as %s", task.task_id, result.status.value)
            return True
        return False

    def _failure_result(
        self,
        task: Task,
        error: BaseException,
        logs: Sequence[TaskExecLog],
    ) -> TaskResult:
        terminal = isinstance(error, HandlerError) and error.terminal
        return TaskResult(
            task_id=task.task_id,
            workflow_instance_id=task.workflow_instance_id,
            status=(
                TaskResultStatus.FAILED_WITH_TERMINAL_ERROR
                if terminal
                else TaskResultStatus.FAILED
            ),
            worker_id=self.worker_id,
            reason_for_incompletion=failure_reason(error),
            logs=list(logs),
        )

    def _complete_explicit_result(
        self,
        task: Task,
        result: TaskResult,
        logs: Sequence[TaskExecLog],
    ) -> TaskResult:
        return replace(
            result,
            task_id=result.task_id or task.task_id,
            workflow_instance_id=result.workflow_instance_id or task.workflow_instance_id,
            worker_id=result.worker_id or self.worker_id,
            output_data=dict(result.output_data),
            logs=[*result.logs, *logs],
        )


def to_output_data(value: Any) -> dict[str, Any]:
    """JSON-compatible output mapping for a handler return value."""

    if value is None:
        return {}
    jsonable = to_jsonable_python(value, by_alias=True)
    if isinstance(jsonable, dict):
        return jsonable
    return {"result": jsonable}


def failure_reason(error: BaseException) -> str:
    message = str(error)
    return message or type(error).__name__
