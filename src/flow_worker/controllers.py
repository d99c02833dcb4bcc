"""Controllers for worker CLI commands."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from flow_worker.config import Settings
from flow_worker.http.client import ApiClient, TaskApi
from flow_worker.worker.runner import TaskRunner
from flow_worker.worker.worker import Provider

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Settings], TaskApi]


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for running workers."""

    targets: tuple[str, ...]
    server_url: str | None = None
    worker_id: str | None = None
    max_concurrency: int | None = None
    duration: float | None = None


class WorkerCliController:
    """Application service for CLI worker commands."""

    def __init__(self, client_factory: ClientFactory | None = None) -> None:
        self._client_factory = client_factory or _default_client

    def run(self, command: WorkerRunCommand) -> list[str]:
        """Register every target's workers and run them until stopped."""

        providers = [provider for target in command.targets for provider in load_target(target)]
        if not providers:
            raise ValueError("No workers found in the given targets.")

        settings = Settings.from_env()
        if command.server_url:
            settings.server.url = command.server_url
        if command.worker_id:
            settings.runner.worker_id = command.worker_id
        if command.max_concurrency is not None:
            settings.runner.max_concurrency = command.max_concurrency
        settings.validate()

        client = self._client_factory(settings)
        runner = TaskRunner.from_settings(settings, client)
        try:
            for provider in providers:
                runner.register_worker(provider)
            logger.info(
                "Running %d worker(s) against %s as %s",
                len(runner.task_names()),
                settings.server.url,
                settings.runner.worker_id,
            )
            if command.duration is None:
                runner.run_forever()
            else:
                runner.run_for(command.duration)
        finally:
            runner.stop()
            close = getattr(client, "close", None)
            if callable(close):
                close()

        lines = [f"Worker id: {settings.runner.worker_id}"]
        for name in runner.task_names():
            stats = runner.stats(name)
            lines.append(
                f"- {name}: polls={stats.polls} idle_polls={stats.idle_polls} "
                f"received={stats.received} completed={stats.completed} "
                f"failed={stats.failed} poll_errors={stats.poll_errors} "
                f"report_errors={stats.report_errors}",
            )
        return lines


def load_target(target: str) -> list[Provider]:
    """Resolve ``module:attribute`` into worker providers.

    The attribute may be a single provider or an iterable of providers.
    """

    module_name, separator, attribute = target.partition(":")
    if not separator or not module_name or not attribute:
        raise ValueError(f"Invalid worker target {target!r}. Expected 'module:attribute'.")
    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise ValueError(f"Cannot import worker module {module_name!r}: {error}") from error

    value: Any = module
    for part in attribute.split("."):
        try:
            value = getattr(value, part)
        except AttributeError as error:
            raise ValueError(f"Worker target {target!r} has no attribute {part!r}.") from error

    if _is_provider(value):
        return [value]
    if isinstance(value, Iterable) and not isinstance(value, str | bytes):
        providers = list(value)
        for item in providers:
            if not _is_provider(item):
                raise ValueError(f"Worker target {target!r} contains non-worker item {item!r}.")
        return providers
    raise ValueError(f"Worker target {target!r} is not a worker or a list of workers.")


def _is_provider(value: Any) -> bool:
    return callable(getattr(value, "worker", None))


def _default_client(settings: Settings) -> TaskApi:
    return ApiClient(
        settings.server.url,
        auth_token=settings.server.auth_token,
        timeout_seconds=settings.server.request_timeout_seconds,
        transport_retries=settings.server.transport_retries,
    )
