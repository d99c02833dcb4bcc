"""Worker descriptors, typed adapters and the polling task runner.

A worker binds a handler to a task definition name. The ``TaskRunner``
owns one polling loop per registered task name; each loop leases up to
``batch_size`` tasks at a time from the server, runs them on a shared
bounded thread pool and reports every outcome back.
"""

from flow_worker.worker.binder import InputBinder, JsonBinder
from flow_worker.worker.context import Context, TaskContext, current_task_context
from flow_worker.worker.errors import (
    BindingError,
    Cancelled,
    ConfigurationError,
    DeadlineExceeded,
    HandlerError,
    TransportError,
    WorkerError,
)
from flow_worker.worker.models import Task, TaskExecLog, TaskResult, TaskResultStatus
from flow_worker.worker.options import (
    WorkerOptions,
    with_base_context,
    with_batch_size,
    with_domain,
    with_poll_interval,
    with_poll_timeout,
)
from flow_worker.worker.reporter import ExecutionOutcome, ResultReporter
from flow_worker.worker.runner import LoopState, TaskRunner, WorkerStats
from flow_worker.worker.typed import SimpleTypedWorker, TypedWorker
from flow_worker.worker.worker import Provider, Worker

__all__ = [
    "BindingError",
    "Cancelled",
    "ConfigurationError",
    "Context",
    "DeadlineExceeded",
    "ExecutionOutcome",
    "HandlerError",
    "InputBinder",
    "JsonBinder",
    "LoopState",
    "Provider",
    "ResultReporter",
    "SimpleTypedWorker",
    "Task",
    "TaskContext",
    "TaskExecLog",
    "TaskResult",
    "TaskResultStatus",
    "TaskRunner",
    "TransportError",
    "TypedWorker",
    "Worker",
    "WorkerError",
    "WorkerOptions",
    "WorkerStats",
    "current_task_context",
    "with_base_context",
    "with_batch_size",
    "with_domain",
    "with_poll_interval",
    "with_poll_timeout",
]
