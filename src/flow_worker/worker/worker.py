"""Worker descriptors registered with the task runner."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from flow_worker.worker.binder import InputBinder, JsonBinder
from flow_worker.worker.models import Task
from flow_worker.worker.options import Option, WorkerOptions, apply_options, default_options

TaskHandler = Callable[[Task], Any]


class Provider(Protocol):
    """Anything that can hand a base Worker to the runner."""

    def worker(self) -> Worker:
        """Return the descriptor to register."""


class Worker:
    """Immutable worker configuration bound to one task definition name."""

    __slots__ = ("_binder", "_handler", "_options", "_task_name")

    def __init__(
        self,
        task_name: str,
        handler: TaskHandler | None,
        *options: Option | None,
        binder: InputBinder | None = None,
    ) -> None:
        self._task_name = task_name
        self._handler = handler
        self._options = apply_options(default_options(), *options)
        self._binder: InputBinder = binder or JsonBinder()

    @property
    def task_name(self) -> str:
        return self._task_name

    @property
    def handler(self) -> TaskHandler | None:
        return self._handler

    @property
    def options(self) -> WorkerOptions:
        return self._options

    @property
    def binder(self) -> InputBinder:
        return self._binder

    def with_options(self, *options: Option | None) -> Worker:
        """Copy of this worker with ``options`` applied on top of its configuration."""

        return self._copy(options=apply_options(self._options, *options))

    def with_handler(self, handler: TaskHandler | None) -> Worker:
        """Copy of this worker running ``handler``; ``None`` clears the handler."""

        clone = self._copy()
        clone._handler = handler
        return clone

    def worker(self) -> Worker:
        return self

    def _copy(self, *, options: WorkerOptions | None = None) -> Worker:
        clone = Worker.__new__(Worker)
        clone._task_name = self._task_name
        clone._handler = self._handler
        clone._options = options if options is not None else self._options
        clone._binder = self._binder
        return clone

    def __repr__(self) -> str:
        return f"Worker(task_name={self._task_name!r}, options={self._options!r})"
