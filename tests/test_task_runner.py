from __future__ import annotations

import threading
import time
from typing import Any

import allure
import pytest
from pydantic import BaseModel

from flow_worker.worker.context import Context, TaskContext, current_task_context
from flow_worker.worker.errors import ConfigurationError
from flow_worker.worker.models import Task, TaskResultStatus
from flow_worker.worker.options import (
    with_base_context,
    with_batch_size,
    with_domain,
    with_poll_interval,
    with_poll_timeout,
)
from flow_worker.worker.runner import LoopState, TaskRunner
from flow_worker.worker.typed import SimpleTypedWorker, TypedWorker
from flow_worker.worker.worker import Worker

from conftest import FakeTaskApi, make_task, transport_errors, wait_for

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("Task Runner"),
]

FAST = with_poll_interval(0.01)


class GreetInput(BaseModel):
    name: str


class GreetOutput(BaseModel):
    greeting: str


def greet(context: TaskContext, value: GreetInput) -> GreetOutput:
    return GreetOutput(greeting=f"Hello, {value.name}!")


def add_one(context: Context, value: int) -> int:
    return value + 1


class ConcurrencyProbe:
    """Handler recording how many invocations overlap."""

    def __init__(self, duration: float = 0.2) -> None:
        self.duration = duration
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.intervals: list[tuple[float, float]] = []

    def __call__(self, task: Task) -> dict[str, Any]:
        with self.lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        started = time.monotonic()
        time.sleep(self.duration)
        finished = time.monotonic()
        with self.lock:
            self.active -= 1
            self.intervals.append((started, finished))
        return {"task": task.task_id}


def test_typed_worker_completes_task_end_to_end(fake_api: FakeTaskApi, runner_factory) -> None:
    runner = runner_factory()
    runner.register_worker(TypedWorker("greet", greet, FAST))
    fake_api.enqueue(make_task("t-1", "greet", {"name": "Ada"}))

    assert wait_for(lambda: fake_api.results_for("t-1"))
    result = fake_api.results_for("t-1")[0]
    assert result.status is TaskResultStatus.COMPLETED
    assert result.output_data == {"greeting": "Hello, Ada!"}
    assert result.worker_id == "test-worker"
    assert result.workflow_instance_id == "wf-t-1"
    assert wait_for(lambda: runner.stats("greet").completed == 1)


def test_poll_sends_worker_identity_domain_and_timeout(
    fake_api: FakeTaskApi,
    runner_factory,
) -> None:
    runner = runner_factory()
    runner.register_worker(
        Worker("greet", lambda task: None, FAST, with_domain("blue"), with_poll_timeout(0.25)),
    )

    assert wait_for(lambda: fake_api.poll_calls("greet"))
    call = fake_api.poll_calls("greet")[0]
    assert call.worker_id == "test-worker"
    assert call.count == 1
    assert call.domain == "blue"
    assert call.timeout == 0.25


def test_batch_of_two_runs_concurrently(fake_api: FakeTaskApi, runner_factory) -> None:
    probe = ConcurrencyProbe()
    runner = runner_factory()
    fake_api.enqueue(make_task("t-1", "slow"), make_task("t-2", "slow"))
    runner.register_worker(Worker("slow", probe, FAST, with_batch_size(2)))

    assert wait_for(lambda: fake_api.update_count() == 2)
    (first_start, first_end), (second_start, second_end) = sorted(probe.intervals)
    assert second_start < first_end
    assert probe.max_active == 2


def test_in_flight_tasks_never_exceed_batch_size(fake_api: FakeTaskApi, runner_factory) -> None:
    probe = ConcurrencyProbe(duration=0.05)
    runner = runner_factory()
    fake_api.enqueue(*(make_task(f"t-{index}", "slow") for index in range(6)))
    runner.register_worker(Worker("slow", probe, FAST, with_batch_size(2)))

    assert wait_for(lambda: fake_api.update_count() == 6)
    assert probe.max_active <= 2
    assert all(1 <= call.count <= 2 for call in fake_api.poll_calls("slow"))
    assert wait_for(lambda: runner.stats("slow").in_flight == 0)


def test_max_concurrency_bounds_all_workers(fake_api: FakeTaskApi, runner_factory) -> None:
    probe = ConcurrencyProbe(duration=0.05)
    runner = runner_factory(max_concurrency=1)
    fake_api.enqueue(make_task("a-1", "alpha"), make_task("a-2", "alpha"))
    fake_api.enqueue(make_task("b-1", "beta"), make_task("b-2", "beta"))
    runner.register_worker(Worker("alpha", probe, FAST, with_batch_size(2)))
    runner.register_worker(Worker("beta", probe, FAST, with_batch_size(2)))

    assert wait_for(lambda: fake_api.update_count() == 4)
    assert probe.max_active == 1


def test_handler_exception_reports_failure(fake_api: FakeTaskApi, runner_factory) -> None:
    def explode(task: Task) -> None:
        raise RuntimeError("handler exploded")

    runner = runner_factory()
    runner.start_worker("boom", explode, 1, 0.01)
    fake_api.enqueue(make_task("t-1", "boom"))

    assert wait_for(lambda: fake_api.results_for("t-1"))
    result = fake_api.results_for("t-1")[0]
    assert result.status is TaskResultStatus.FAILED
    assert result.reason_for_incompletion == "handler exploded"
    assert wait_for(lambda: runner.stats("boom").failed == 1)
    assert runner.state_of("boom") is not LoopState.STOPPED


def test_binding_failure_reports_failure_without_calling_handler(
    fake_api: FakeTaskApi,
    runner_factory,
) -> None:
    calls: list[int] = []

    def handler(context: Context, value: int) -> int:
        calls.append(value)
        return value

    runner = runner_factory()
    runner.register_worker(SimpleTypedWorker("inc", handler, FAST, input_type=int))
    fake_api.enqueue(make_task("t-1", "inc", {"a": 5}))

    assert wait_for(lambda: fake_api.results_for("t-1"))
    result = fake_api.results_for("t-1")[0]
    assert result.status is TaskResultStatus.FAILED
    assert result.reason_for_incompletion.startswith("input binding error for task inc")
    assert calls == []


def test_empty_input_uses_zero_value(fake_api: FakeTaskApi, runner_factory) -> None:
    runner = runner_factory()
    runner.register_worker(SimpleTypedWorker("inc", add_one, FAST))
    fake_api.enqueue(make_task("t-1", "inc", {}))

    assert wait_for(lambda: fake_api.results_for("t-1"))
    assert fake_api.results_for("t-1")[0].output_data == {"result": 1}


def test_handler_logs_are_attached_to_report(fake_api: FakeTaskApi, runner_factory) -> None:
    def handler(task: Task) -> None:
        context = current_task_context()
        assert context is not None
        context.add_log(f"working on {task.task_id}")

    runner = runner_factory()
    runner.start_worker("logged", handler, poll_interval=0.01)
    fake_api.enqueue(make_task("t-1", "logged"))

    assert wait_for(lambda: fake_api.results_for("t-1"))
    result = fake_api.results_for("t-1")[0]
    assert result.output_data == {}
    assert [entry.log for entry in result.logs] == ["working on t-1"]


def test_duplicate_registration_keeps_single_loop(fake_api: FakeTaskApi, runner_factory) -> None:
    runner = runner_factory()
    runner.register_worker(Worker("greet", lambda task: "first", FAST))
    runner.register_worker(Worker("greet", lambda task: "second", FAST, with_batch_size(3)))
    polls_after_replace = len(fake_api.poll_calls("greet"))

    assert wait_for(lambda: len(fake_api.poll_calls("greet")) >= polls_after_replace + 2)
    fake_api.enqueue(make_task("t-1", "greet"))

    assert wait_for(lambda: fake_api.results_for("t-1"))
    assert fake_api.results_for("t-1")[0].output_data == {"result": "second"}
    assert runner.task_names() == ["greet"]
    assert runner.batch_size_for("greet") == 3
    loop_threads = [
        thread for thread in threading.enumerate() if thread.name == "flow-worker-poll-greet"
    ]
    assert len(loop_threads) == 1


def test_poll_transport_errors_are_counted_and_survived(
    fake_api: FakeTaskApi,
    runner_factory,
) -> None:
    fake_api.fail_next_polls(*transport_errors(2))
    fake_api.enqueue(make_task("t-1", "greet", {"name": "Ada"}))
    runner = runner_factory()
    runner.register_worker(TypedWorker("greet", greet, FAST))

    assert wait_for(lambda: fake_api.results_for("t-1"))
    assert runner.stats("greet").poll_errors == 2


def test_report_failures_are_counted(fake_api: FakeTaskApi, runner_factory) -> None:
    fake_api.fail_next_updates(*transport_errors(2))
    runner = runner_factory(update_retry_count=1)
    runner.start_worker("greet", lambda task: None, poll_interval=0.01)
    fake_api.enqueue(make_task("t-1", "greet"))

    assert wait_for(lambda: runner.stats("greet").report_errors == 1)
    assert fake_api.results_for("t-1") == []


def test_pause_and_resume(fake_api: FakeTaskApi, runner_factory) -> None:
    runner = runner_factory()
    runner.start_worker("greet", lambda task: None, poll_interval=0.01)
    assert wait_for(lambda: fake_api.poll_calls("greet"))

    runner.pause("greet")
    assert runner.is_paused("greet")
    time.sleep(0.1)
    polls_while_paused = len(fake_api.poll_calls("greet"))
    fake_api.enqueue(make_task("t-1", "greet"))
    time.sleep(0.1)
    assert len(fake_api.poll_calls("greet")) == polls_while_paused
    assert fake_api.results_for("t-1") == []

    runner.resume("greet")
    assert not runner.is_paused("greet")
    assert wait_for(lambda: fake_api.results_for("t-1"))


def test_runtime_batch_size_and_interval_changes(fake_api: FakeTaskApi, runner_factory) -> None:
    runner = runner_factory()
    runner.start_worker("greet", lambda task: None, poll_interval=0.01)

    runner.set_batch_size("greet", 3)
    runner.set_poll_interval("greet", 0.02)

    assert runner.batch_size_for("greet") == 3
    assert runner.poll_interval_for("greet") == 0.02
    assert wait_for(lambda: any(call.count == 3 for call in fake_api.poll_calls("greet")))

    runner.set_batch_size("greet", 0)
    assert runner.batch_size_for("greet") == 3


def test_unknown_task_name_raises_key_error(runner_factory) -> None:
    runner = runner_factory()

    with pytest.raises(KeyError):
        runner.pause("missing")
    with pytest.raises(KeyError):
        runner.stats("missing")


@pytest.mark.parametrize(
    "worker",
    [
        Worker("", lambda task: None),
        Worker("   ", lambda task: None),
        Worker("greet", None),
    ],
)
def test_invalid_registration_is_rejected(runner_factory, worker: Worker) -> None:
    runner = runner_factory()

    with pytest.raises(ConfigurationError):
        runner.register_worker(worker)
    assert runner.task_names() == []


def test_non_positive_max_concurrency_is_rejected(fake_api: FakeTaskApi) -> None:
    with pytest.raises(ConfigurationError):
        TaskRunner(fake_api, max_concurrency=0)


def test_stop_lets_in_flight_task_report(fake_api: FakeTaskApi, runner_factory) -> None:
    started = threading.Event()

    def handler(context: TaskContext, value: dict[str, Any]) -> dict[str, bool]:
        started.set()
        return {"cancelled": context.wait(5.0)}

    runner = runner_factory()
    runner.register_worker(TypedWorker("wait", handler, FAST))
    fake_api.enqueue(make_task("t-1", "wait"))
    assert started.wait(5.0)

    assert runner.stop(timeout=5.0) is True
    assert runner.stopped
    assert runner.context.cancelled()
    assert wait_for(lambda: fake_api.results_for("t-1"))
    assert fake_api.results_for("t-1")[0].output_data == {"cancelled": True}
    assert runner.state_of("wait") is LoopState.STOPPED

    polls_after_stop = len(fake_api.poll_calls("wait"))
    time.sleep(0.05)
    assert len(fake_api.poll_calls("wait")) == polls_after_stop


def test_register_after_stop_is_rejected(runner_factory) -> None:
    runner = runner_factory()
    runner.stop()

    with pytest.raises(ConfigurationError, match="stopped"):
        runner.start_worker("greet", lambda task: None)


def test_base_context_cancel_stops_loop(fake_api: FakeTaskApi, runner_factory) -> None:
    base = Context.background()
    runner = runner_factory()
    runner.register_worker(Worker("greet", lambda task: None, FAST, with_base_context(base)))
    assert wait_for(lambda: fake_api.poll_calls("greet"))

    base.cancel()

    assert wait_for(lambda: runner.state_of("greet") is LoopState.STOPPED)
    assert not runner.stopped


def test_run_for_stops_runner(fake_api: FakeTaskApi, runner_factory) -> None:
    runner = runner_factory()
    runner.start_worker("greet", lambda task: None, poll_interval=0.01)

    started = time.monotonic()
    runner.run_for(0.1)

    assert runner.stopped
    assert time.monotonic() - started < 5.0
    assert runner.state_of("greet") is LoopState.STOPPED


def test_plain_handler_reports_single_completion(fake_api: FakeTaskApi, runner_factory) -> None:
    def say_hello(task: Task) -> dict[str, str]:
        return {"greetings": f"Hello, {task.input_data['name']}"}

    runner = runner_factory()
    runner.start_worker("hello", say_hello, 1, 0.01)
    fake_api.enqueue(make_task("t-1", "hello", {"name": "X"}))

    assert wait_for(lambda: runner.stats("hello").completed == 1)
    time.sleep(0.05)
    assert len(fake_api.updates) == 1
    result = fake_api.updates[0]
    assert result.task_id == "t-1"
    assert result.status is TaskResultStatus.COMPLETED
    assert result.output_data == {"greetings": "Hello, X"}
    assert not [
        update
        for update in fake_api.updates
        if update.status
        in (TaskResultStatus.FAILED, TaskResultStatus.FAILED_WITH_TERMINAL_ERROR)
    ]


def test_stop_timeout_bounds_in_flight_drain(fake_api: FakeTaskApi, runner_factory) -> None:
    started = threading.Event()

    def slow(task: Task) -> None:
        started.set()
        time.sleep(1.5)

    runner = runner_factory()
    runner.start_worker("slow", slow, 1, 0.01)
    fake_api.enqueue(make_task("t-1", "slow"))
    assert started.wait(5.0)

    began = time.monotonic()
    assert runner.stop(timeout=0.2) is False
    assert time.monotonic() - began < 1.0

    assert runner.wait(timeout=5.0) is True
    assert fake_api.results_for("t-1")[0].status is TaskResultStatus.COMPLETED
