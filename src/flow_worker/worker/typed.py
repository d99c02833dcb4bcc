"""Typed workers: handlers receiving a bound input value instead of a raw task."""

from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import Any, Generic, TypeVar, get_type_hints

from flow_worker.worker.binder import InputBinder
from flow_worker.worker.context import Context, TaskContext, current_task_context
from flow_worker.worker.errors import BindingError, ConfigurationError
from flow_worker.worker.models import Task
from flow_worker.worker.options import Option, WorkerOptions
from flow_worker.worker.worker import Worker

InT = TypeVar("InT")
OutT = TypeVar("OutT")

DEFAULT_INPUT_TYPE = dict[str, Any]


class TypedWorker(Generic[InT, OutT]):
    """Worker whose handler takes ``(TaskContext, InT)`` and returns ``OutT``.

    The input type comes from ``input_type`` or from the annotation of the
    handler's second parameter, falling back to a plain ``dict``. A payload
    that does not fit the input type fails the task with ``BindingError``
    before the handler runs.
    """

    def __init__(
        self,
        task_name: str,
        handler: Callable[[TaskContext, InT], OutT],
        *options: Option | None,
        input_type: Any = None,
        binder: InputBinder | None = None,
    ) -> None:
        self._base = Worker(task_name, None, *options, binder=binder)
        self._handler = handler
        self._input_type = input_type if input_type is not None else infer_input_type(handler)

    @property
    def task_name(self) -> str:
        return self._base.task_name

    @property
    def options(self) -> WorkerOptions:
        return self._base.options

    @property
    def input_type(self) -> Any:
        return self._input_type

    def with_options(self, *options: Option | None) -> TypedWorker[InT, OutT]:
        clone = type(self).__new__(type(self))
        clone._base = self._base.with_options(*options)
        clone._handler = self._handler
        clone._input_type = self._input_type
        return clone

    def execute(self, task: Task) -> OutT:
        """Bind the task payload and run the typed handler."""

        try:
            value = self._base.binder.bind(self._input_type, task.input_data)
        except Exception as error:  # noqa: BLE001
            raise BindingError(task.task_def_name, error) from error
        return self._handler(self._task_context(task), value)

    def worker(self) -> Worker:
        return self._base.with_handler(self.execute)

    def _task_context(self, task: Task) -> TaskContext:
        running = current_task_context()
        if running is not None and running.task is task:
            return running
        return TaskContext(task, self._base.options.base_context)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(task_name={self.task_name!r}, "
            f"input_type={self._input_type!r}, options={self.options!r})"
        )


class SimpleTypedWorker(TypedWorker[InT, OutT]):
    """Typed worker for handlers that only need a cancellation context.

    The handler is called as ``handler(context, value)``; the context is
    still the invocation's TaskContext but handlers may treat it as a plain
    ``Context``.
    """

    def __init__(
        self,
        task_name: str,
        handler: Callable[[Context, InT], OutT],
        *options: Option | None,
        input_type: Any = None,
        binder: InputBinder | None = None,
    ) -> None:
        super().__init__(task_name, handler, *options, input_type=input_type, binder=binder)


def infer_input_type(handler: Callable[..., Any]) -> Any:
    """Annotation of the handler's second parameter, or ``dict[str, Any]``."""

    try:
        signature = inspect.signature(handler)
    except (TypeError, ValueError):
        return DEFAULT_INPUT_TYPE
    parameters = list(signature.parameters.values())
    if len(parameters) < 2:  # noqa: PLR2004
        raise ConfigurationError(
            f"Typed handler {handler!r} must accept (context, input) parameters.",
        )
    parameter = parameters[1]
    if parameter.annotation is inspect.Parameter.empty:
        return DEFAULT_INPUT_TYPE
    if not isinstance(parameter.annotation, str):
        return parameter.annotation
    target = handler if inspect.isfunction(handler) or inspect.ismethod(handler) else handler.__call__
    try:
        hints = get_type_hints(target)
    except (NameError, TypeError) as error:
        raise ConfigurationError(
            f"Cannot resolve input annotation of {handler!r}; pass input_type explicitly.",
        ) from error
    return hints.get(parameter.name, DEFAULT_INPUT_TYPE)
