"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import pytest

from flow_worker.worker.errors import TransportError
from flow_worker.worker.models import Task, TaskResult
from flow_worker.worker.runner import TaskRunner


@dataclass(slots=True)
class PollCall:
    task_name: str
    count: int
    worker_id: str
    domain: str
    timeout: float


class FakeTaskApi:
    """In-memory task queue standing in for the orchestration server."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queues: dict[str, deque[Task]] = {}
        self._poll_errors: deque[Exception] = deque()
        self._update_errors: deque[Exception] = deque()
        self.polls: list[PollCall] = []
        self.updates: list[TaskResult] = []

    def enqueue(self, *tasks: Task) -> None:
        with self._lock:
            for task in tasks:
                self._queues.setdefault(task.task_def_name, deque()).append(task)

    def fail_next_polls(self, *errors: Exception) -> None:
        with self._lock:
            self._poll_errors.extend(errors)

    def fail_next_updates(self, *errors: Exception) -> None:
        with self._lock:
            self._update_errors.extend(errors)

    def poll_tasks(
        self,
        task_name: str,
        *,
        count: int,
        worker_id: str,
        domain: str = "",
        timeout: float = -1.0,
    ) -> list[Task]:
        with self._lock:
            self.polls.append(PollCall(task_name, count, worker_id, domain, timeout))
            if self._poll_errors:
                raise self._poll_errors.popleft()
            queue = self._queues.get(task_name, deque())
            leased: list[Task] = []
            while queue and len(leased) < count:
                leased.append(queue.popleft())
            return leased

    def update_task(self, result: TaskResult) -> None:
        with self._lock:
            if self._update_errors:
                raise self._update_errors.popleft()
            self.updates.append(result)

    def results_for(self, task_id: str) -> list[TaskResult]:
        with self._lock:
            return [result for result in self.updates if result.task_id == task_id]

    def poll_calls(self, task_name: str) -> list[PollCall]:
        with self._lock:
            return [call for call in self.polls if call.task_name == task_name]

    def update_count(self) -> int:
        with self._lock:
            return len(self.updates)


def make_task(
    task_id: str,
    task_def_name: str = "greet",
    input_data: dict[str, Any] | None = None,
    **kwargs: Any,
) -> Task:
    return Task(
        task_id=task_id,
        task_def_name=task_def_name,
        workflow_instance_id=f"wf-{task_id}",
        input_data=input_data if input_data is not None else {},
        **kwargs,
    )


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def transport_errors(count: int) -> Iterable[TransportError]:
    return [TransportError(f"boom {index}", status_code=503) for index in range(count)]


@pytest.fixture()
def fake_api() -> FakeTaskApi:
    return FakeTaskApi()


@pytest.fixture()
def runner_factory(fake_api: FakeTaskApi):
    """Build task runners against ``fake_api`` and stop them after the test."""

    runners: list[TaskRunner] = []

    def _factory(**kwargs: Any) -> TaskRunner:
        kwargs.setdefault("worker_id", "test-worker")
        kwargs.setdefault("update_retry_backoff_seconds", 0.0)
        runner = TaskRunner(fake_api, **kwargs)
        runners.append(runner)
        return runner

    yield _factory
    for runner in runners:
        runner.stop(timeout=5.0)
