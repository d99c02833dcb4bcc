"""Error taxonomy shared by the worker runtime."""

from __future__ import annotations


class WorkerError(Exception):
    """Base class for errors raised by the worker runtime."""


class ConfigurationError(WorkerError, ValueError):
    """Invalid worker registration or runner configuration."""


class BindingError(WorkerError):
    """Task input payload could not be bound to the handler input type."""

    def __init__(self, task_def_name: str, cause: BaseException) -> None:
        super().__init__(f"input binding error for task {task_def_name}: {cause}")
        self.task_def_name = task_def_name
        self.cause = cause


class HandlerError(WorkerError):
    """Optional base for handler failures.

    Any exception raised by a handler is reported as a task failure. Raising
    this class with ``terminal=True`` asks the server not to retry the task.
    """

    def __init__(self, message: str, *, terminal: bool = False) -> None:
        super().__init__(message)
        self.terminal = terminal


class TransportError(WorkerError):
    """Network or protocol failure while talking to the orchestration server."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ContextError(WorkerError):
    """Reason a cancellation context is done."""


class Cancelled(ContextError):
    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class DeadlineExceeded(ContextError):
    def __init__(self, message: str = "context deadline exceeded") -> None:
        super().__init__(message)
