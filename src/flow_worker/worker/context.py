"""Cancellation contexts and the per-invocation task context."""

from __future__ import annotations

import threading
import time
import weakref
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from flow_worker.worker.errors import Cancelled, ContextError, DeadlineExceeded
from flow_worker.worker.models import Task, TaskExecLog


class Context:
    """Cancellation handle shared between the runner and handler code.

    A context is done once it, or any of its ancestors, is cancelled or its
    deadline passes. Children never affect their parent.
    """

    def __init__(
        self,
        parent: Context | None = None,
        *,
        deadline: float | None = None,
        values: dict[str, Any] | None = None,
    ) -> None:
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: weakref.WeakSet[Context] = weakref.WeakSet()
        self._err: ContextError | None = None
        self._values = dict(values or {})
        parent_deadline = parent.deadline() if parent is not None else None
        if deadline is None or (parent_deadline is not None and parent_deadline < deadline):
            deadline = parent_deadline
        self._deadline = deadline
        if parent is not None:
            parent._attach(self)

    @classmethod
    def background(cls) -> Context:
        """Root context that is only done when cancelled explicitly."""

        return cls()

    def with_cancel(self) -> Context:
        return Context(self)

    def with_timeout(self, seconds: float) -> Context:
        return Context(self, deadline=time.monotonic() + seconds)

    def with_deadline(self, deadline: float) -> Context:
        """Child context done at ``deadline`` (a ``time.monotonic()`` value)."""

        return Context(self, deadline=deadline)

    def with_value(self, key: str, value: Any) -> Context:
        return Context(self, values={key: value})

    def value(self, key: str, default: Any = None) -> Any:
        context: Context | None = self
        while context is not None:
            if key in context._values:
                return context._values[key]
            context = context._parent
        return default

    def deadline(self) -> float | None:
        return self._deadline

    def cancel(self, error: ContextError | None = None) -> None:
        with self._lock:
            if self._err is not None:
                return
            self._err = error or Cancelled()
            children = list(self._children)
            self._children.clear()
        self._event.set()
        for child in children:
            child.cancel(self._err)

    def err(self) -> ContextError | None:
        self._check_deadline()
        return self._err

    def cancelled(self) -> bool:
        return self.err() is not None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the context is done or ``timeout`` elapses.

        Returns True when the context is done.
        """

        end = None if timeout is None else time.monotonic() + timeout
        while not self.cancelled():
            now = time.monotonic()
            if end is not None and now >= end:
                return False
            limit = None if end is None else end - now
            if self._deadline is not None:
                until_deadline = max(0.0, self._deadline - now)
                limit = until_deadline if limit is None else min(limit, until_deadline)
            self._event.wait(limit)
        return True

    def _attach(self, child: Context) -> None:
        with self._lock:
            error = self._err
            if error is None:
                self._children.add(child)
        if error is not None:
            child.cancel(error)

    def _check_deadline(self) -> None:
        if self._err is None and self._deadline is not None:
            if time.monotonic() >= self._deadline:
                self.cancel(DeadlineExceeded())


class TaskContext(Context):
    """Context handed to typed handlers; exposes the leased task's identity."""

    def __init__(self, task: Task, parent: Context | None = None) -> None:
        super().__init__(parent)
        self._task = task
        self._logs: list[TaskExecLog] = []
        self._logs_lock = threading.Lock()

    @property
    def task(self) -> Task:
        return self._task

    @property
    def task_id(self) -> str:
        return self._task.task_id

    @property
    def task_def_name(self) -> str:
        return self._task.task_def_name

    @property
    def workflow_instance_id(self) -> str:
        return self._task.workflow_instance_id

    @property
    def input_data(self) -> dict[str, Any]:
        return self._task.input_data

    @property
    def retry_count(self) -> int:
        return self._task.retry_count

    @property
    def poll_count(self) -> int:
        return self._task.poll_count

    def add_log(self, message: str) -> None:
        """Attach an execution log line sent along with the task report."""

        entry = TaskExecLog(
            log=message,
            task_id=self._task.task_id,
            created_time_ms=int(time.time() * 1000),
        )
        with self._logs_lock:
            self._logs.append(entry)

    def logs(self) -> list[TaskExecLog]:
        with self._logs_lock:
            return list(self._logs)


_CURRENT_TASK_CONTEXT: ContextVar[TaskContext | None] = ContextVar(
    "flow_worker_task_context",
    default=None,
)


def current_task_context() -> TaskContext | None:
    """Task context of the invocation running on this thread, if any."""

    return _CURRENT_TASK_CONTEXT.get()


@contextmanager
def bind_task_context(context: TaskContext) -> Iterator[TaskContext]:
    token = _CURRENT_TASK_CONTEXT.set(context)
    try:
        yield context
    finally:
        _CURRENT_TASK_CONTEXT.reset(token)
