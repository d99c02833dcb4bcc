"""Task runner: one polling loop per task name feeding a bounded thread pool."""

from __future__ import annotations

import logging
import signal
import socket
import threading
import time
import weakref
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

from flow_worker.worker.context import Context, TaskContext, bind_task_context
from flow_worker.worker.errors import ConfigurationError, TransportError
from flow_worker.worker.models import Task, TaskExecLog
from flow_worker.worker.options import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    Option,
    WorkerOptions,
    with_batch_size,
    with_poll_interval,
)
from flow_worker.worker.reporter import (
    DEFAULT_UPDATE_RETRY_BACKOFF_SECONDS,
    DEFAULT_UPDATE_RETRY_COUNT,
    ExecutionOutcome,
    ResultReporter,
)
from flow_worker.worker.worker import Provider, TaskHandler, Worker

if TYPE_CHECKING:
    from flow_worker.config import Settings
    from flow_worker.http.client import TaskApi

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 32
_STOP_CHECK_SECONDS = 0.05


class LoopState(str, Enum):
    """Lifecycle of one worker's polling loop."""

    IDLE = "idle"
    POLLING = "polling"
    DISPATCHING = "dispatching"
    AWAITING_COMPLETION = "awaiting_completion"
    STOPPED = "stopped"


@dataclass(slots=True)
class WorkerStats:
    """Per task name counters since registration."""

    polls: int = 0
    idle_polls: int = 0
    poll_errors: int = 0
    received: int = 0
    completed: int = 0
    failed: int = 0
    report_errors: int = 0
    in_flight: int = 0


class _PollLoop:
    """Mutable loop state for one task name, guarded by ``condition``."""

    def __init__(self, worker: Worker) -> None:
        self.worker = worker
        self.state = LoopState.IDLE
        self.stats = WorkerStats()
        self.paused = False
        self.condition = threading.Condition()
        self.thread: threading.Thread | None = None

    def set_state(self, state: LoopState) -> None:
        with self.condition:
            self.state = state


class TaskRunner:
    """Polls the server for every registered worker and executes leased tasks.

    Registration is keyed by task name: registering a second worker for the
    same name replaces the configuration used by the existing loop, so a task
    type is never polled by two loops of the same runner.
    """

    def __init__(  # noqa: PLR0913
        self,
        client: TaskApi,
        *,
        worker_id: str | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        update_retry_count: int = DEFAULT_UPDATE_RETRY_COUNT,
        update_retry_backoff_seconds: float = DEFAULT_UPDATE_RETRY_BACKOFF_SECONDS,
        reporter: ResultReporter | None = None,
    ) -> None:
        if max_concurrency <= 0:
            raise ConfigurationError("max_concurrency must be a positive integer.")
        self.client = client
        self.worker_id = worker_id or socket.gethostname()
        self.reporter = reporter or ResultReporter(
            client,
            worker_id=self.worker_id,
            retry_count=update_retry_count,
            retry_backoff_seconds=update_retry_backoff_seconds,
        )
        self.max_concurrency = max_concurrency
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrency,
            thread_name_prefix="flow-worker-task",
        )
        self._context = Context.background()
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._loops: dict[str, _PollLoop] = {}
        self._active_contexts: weakref.WeakSet[TaskContext] = weakref.WeakSet()
        self._futures: set[Future[None]] = set()

    @classmethod
    def from_settings(cls, settings: Settings, client: TaskApi) -> TaskRunner:
        return cls(
            client,
            worker_id=settings.runner.worker_id,
            max_concurrency=settings.runner.max_concurrency,
            update_retry_count=settings.runner.update_retry_count,
            update_retry_backoff_seconds=settings.runner.update_retry_backoff_seconds,
        )

    @property
    def context(self) -> Context:
        """Root context cancelled when the runner stops."""

        return self._context

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    # -- registration ----------------------------------------------------------

    def register_worker(self, provider: Provider) -> None:
        """Register a worker and start (or reconfigure) its polling loop."""

        worker = provider.worker()
        _validate_worker(worker)
        name = worker.task_name
        with self._lock:
            if self._stop_event.is_set():
                raise ConfigurationError(f"Cannot register {name!r}: task runner is stopped.")
            loop = self._loops.get(name)
            if loop is None:
                loop = _PollLoop(worker)
                self._loops[name] = loop
                self._start_loop(loop)
                logger.info(
                    "Registered worker %s batch_size=%d poll_interval=%.3fs domain=%r",
                    name,
                    worker.options.batch_size,
                    worker.options.poll_interval,
                    worker.options.domain,
                )
                return
            with loop.condition:
                loop.worker = worker
                loop.condition.notify_all()
            if loop.thread is None or not loop.thread.is_alive():
                self._start_loop(loop)
        logger.info("Replaced configuration of worker %s", name)

    def start_worker(
        self,
        task_name: str,
        handler: TaskHandler,
        batch_size: int = 1,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Register a plain handler with the given batch size and poll interval."""

        self.register_worker(
            Worker(
                task_name,
                handler,
                with_batch_size(batch_size),
                with_poll_interval(poll_interval),
            ),
        )

    def task_names(self) -> list[str]:
        with self._lock:
            return sorted(self._loops)

    # -- runtime control -------------------------------------------------------

    def pause(self, task_name: str) -> None:
        loop = self._loop(task_name)
        with loop.condition:
            loop.paused = True
        logger.info("Paused worker %s", task_name)

    def resume(self, task_name: str) -> None:
        loop = self._loop(task_name)
        with loop.condition:
            loop.paused = False
            loop.condition.notify_all()
        logger.info("Resumed worker %s", task_name)

    def is_paused(self, task_name: str) -> bool:
        loop = self._loop(task_name)
        with loop.condition:
            return loop.paused

    def set_batch_size(self, task_name: str, batch_size: int) -> None:
        self._reconfigure(task_name, with_batch_size(batch_size))

    def batch_size_for(self, task_name: str) -> int:
        return self.options_for(task_name).batch_size

    def set_poll_interval(self, task_name: str, seconds: float) -> None:
        self._reconfigure(task_name, with_poll_interval(seconds))

    def poll_interval_for(self, task_name: str) -> float:
        return self.options_for(task_name).poll_interval

    def options_for(self, task_name: str) -> WorkerOptions:
        loop = self._loop(task_name)
        with loop.condition:
            return loop.worker.options

    def stats(self, task_name: str) -> WorkerStats:
        loop = self._loop(task_name)
        with loop.condition:
            return replace(loop.stats)

    def state_of(self, task_name: str) -> LoopState:
        loop = self._loop(task_name)
        with loop.condition:
            return loop.state

    # -- shutdown --------------------------------------------------------------

    def stop(self, *, wait: bool = True, timeout: float | None = None) -> bool:
        """Stop polling; in-flight tasks still finish and report.

        Returns False when ``timeout`` elapses before the loops exit and the
        in-flight tasks finish; always True for ``wait=False``.
        """

        if not self._stop_event.is_set():
            logger.info("Stopping task runner")
        self._stop_event.set()
        self._context.cancel()
        for context in list(self._active_contexts):
            context.cancel()
        for loop in self._snapshot_loops():
            with loop.condition:
                loop.condition.notify_all()
        if not wait:
            return True
        return self.wait(timeout=timeout)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until polling loops exit and, once stopped, in-flight tasks finish.

        Returns False when ``timeout`` elapses first.
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        for loop in self._snapshot_loops():
            if loop.thread is None:
                continue
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            loop.thread.join(remaining)
            if loop.thread.is_alive():
                return False
        if self._stop_event.is_set():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            return self._drain_executor(remaining)
        return True

    def run_forever(self) -> None:
        """Block until SIGINT/SIGTERM (or ``stop()``), then drain in-flight tasks."""

        with self._signal_handlers():
            while not self._stop_event.wait(0.5):
                pass
        self.wait()

    def run_for(self, seconds: float) -> None:
        """Run for at most ``seconds`` (or until a signal), then stop and drain."""

        with self._signal_handlers():
            self._stop_event.wait(max(0.0, seconds))
        self.stop()

    def __enter__(self) -> TaskRunner:
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()

    # -- polling loop ----------------------------------------------------------

    def _start_loop(self, loop: _PollLoop) -> None:
        loop.set_state(LoopState.IDLE)
        loop.thread = threading.Thread(
            target=self._poll_loop,
            args=(loop,),
            daemon=True,
            name=f"flow-worker-poll-{loop.worker.task_name}",
        )
        loop.thread.start()

    def _poll_loop(self, loop: _PollLoop) -> None:
        name = loop.worker.task_name
        logger.debug("Poll loop started for %s", name)
        try:
            while True:
                with loop.condition:
                    worker = loop.worker
                    paused = loop.paused
                    free_slots = worker.options.batch_size - loop.stats.in_flight
                options = worker.options
                if self._should_stop(options):
                    return
                if paused:
                    self._sleep_with_stop(options.poll_interval, options)
                    continue
                if free_slots <= 0:
                    with loop.condition:
                        loop.state = LoopState.AWAITING_COMPLETION
                        loop.condition.wait(timeout=options.poll_interval)
                    continue

                tasks = self._poll(loop, worker, free_slots)
                if tasks:
                    self._dispatch(loop, worker, tasks)
                with loop.condition:
                    loop.state = (
                        LoopState.AWAITING_COMPLETION
                        if loop.stats.in_flight >= options.batch_size
                        else LoopState.IDLE
                    )
                self._sleep_with_stop(options.poll_interval, options)
        except Exception:
            logger.exception("Poll loop for %s crashed", name)
        finally:
            loop.set_state(LoopState.STOPPED)
            logger.debug("Poll loop stopped for %s", name)

    def _poll(self, loop: _PollLoop, worker: Worker, count: int) -> list[Task]:
        options = worker.options
        loop.set_state(LoopState.POLLING)
        try:
            tasks = self.client.poll_tasks(
                worker.task_name,
                count=count,
                worker_id=self.worker_id,
                domain=options.domain,
                timeout=options.poll_timeout,
            )
        except TransportError as error:
            logger.warning("Poll for %s failed: %s", worker.task_name, error)
            with loop.condition:
                loop.stats.poll_errors += 1
            return []
        except Exception:
            logger.exception("Unexpected error polling %s", worker.task_name)
            with loop.condition:
                loop.stats.poll_errors += 1
            return []
        with loop.condition:
            loop.stats.polls += 1
            if tasks:
                loop.stats.received += len(tasks)
            else:
                loop.stats.idle_polls += 1
        if tasks:
            logger.debug("Leased %d task(s) for %s", len(tasks), worker.task_name)
        return tasks

    def _dispatch(self, loop: _PollLoop, worker: Worker, tasks: list[Task]) -> None:
        loop.set_state(LoopState.DISPATCHING)
        for task in tasks:
            with loop.condition:
                loop.stats.in_flight += 1
            try:
                future = self._executor.submit(self._run_task, loop, worker, task)
            except RuntimeError:
                # Executor already shut down; the task is leased.
                self._run_task(loop, worker, task)
                continue
            with self._lock:
                self._futures.add(future)
            future.add_done_callback(self._forget_future)

    def _run_task(self, loop: _PollLoop, worker: Worker, task: Task) -> None:
        outcome: ExecutionOutcome | None = None
        reported = False
        try:
            outcome, logs = self._execute(worker, task)
            reported = self.reporter.report(task, outcome, logs)
        except Exception:
            logger.exception("Unexpected error while processing task %s", task.task_id)
        finally:
            with loop.condition:
                loop.stats.in_flight -= 1
                if outcome is not None and outcome.ok:
                    loop.stats.completed += 1
                else:
                    loop.stats.failed += 1
                if not reported:
                    loop.stats.report_errors += 1
                loop.condition.notify_all()

    def _execute(self, worker: Worker, task: Task) -> tuple[ExecutionOutcome, list[TaskExecLog]]:
        handler = worker.handler
        if handler is None:
            raise ConfigurationError(f"Worker {worker.task_name!r} has no handler.")
        parent = worker.options.base_context or self._context
        context = TaskContext(task, parent)
        self._active_contexts.add(context)
        if self._stop_event.is_set():
            context.cancel()
        try:
            with bind_task_context(context):
                output = handler(task)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Task %s (%s) failed: %s",
                task.task_id,
                task.task_def_name,
                error,
            )
            return ExecutionOutcome.failure(error), context.logs()
        finally:
            self._active_contexts.discard(context)
        return ExecutionOutcome.success(output), context.logs()

    # -- helpers ---------------------------------------------------------------

    def _should_stop(self, options: WorkerOptions) -> bool:
        if self._stop_event.is_set():
            return True
        return options.base_context is not None and options.base_context.cancelled()

    def _sleep_with_stop(self, seconds: float, options: WorkerOptions) -> None:
        deadline = time.monotonic() + seconds
        while not self._should_stop(options):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._stop_event.wait(min(_STOP_CHECK_SECONDS, remaining))

    def _reconfigure(self, task_name: str, *options: Option) -> None:
        loop = self._loop(task_name)
        with loop.condition:
            loop.worker = loop.worker.with_options(*options)
            loop.condition.notify_all()

    def _loop(self, task_name: str) -> _PollLoop:
        with self._lock:
            loop = self._loops.get(task_name)
        if loop is None:
            raise KeyError(f"No worker registered for task {task_name!r}")
        return loop

    def _snapshot_loops(self) -> list[_PollLoop]:
        with self._lock:
            return list(self._loops.values())

    def _forget_future(self, future: Future[None]) -> None:
        with self._lock:
            self._futures.discard(future)

    def _drain_executor(self, timeout: float | None) -> bool:
        with self._lock:
            pending = list(self._futures)
        _, not_done = wait_futures(pending, timeout=timeout)
        if not_done:
            logger.warning("%d task(s) still running after stop timeout", len(not_done))
            self._executor.shutdown(wait=False)
            return False
        self._executor.shutdown(wait=True)
        return True

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, shutting down workers", name)
            self.stop(wait=False)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _validate_worker(worker: Worker) -> None:
    if not isinstance(worker.task_name, str) or not worker.task_name.strip():
        raise ConfigurationError("Worker task name must be a non-empty string.")
    if worker.handler is None or not callable(worker.handler):
        raise ConfigurationError(f"Worker {worker.task_name!r} needs a callable handler.")
