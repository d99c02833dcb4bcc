"""Functional configuration options for worker descriptors."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace

from flow_worker.worker.context import Context

DEFAULT_BATCH_SIZE = 1
DEFAULT_POLL_INTERVAL_SECONDS = 0.1
# Any negative timeout defers the long-poll timeout to the server.
SERVER_DEFAULT_POLL_TIMEOUT = -0.001


@dataclass(slots=True, frozen=True)
class WorkerOptions:
    """Read-only snapshot of a worker's polling configuration."""

    batch_size: int = DEFAULT_BATCH_SIZE
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    poll_timeout: float = SERVER_DEFAULT_POLL_TIMEOUT
    domain: str = ""
    base_context: Context | None = None


Option = Callable[[WorkerOptions], WorkerOptions]


def default_options() -> WorkerOptions:
    return WorkerOptions()


def apply_options(base: WorkerOptions, *options: Option | None) -> WorkerOptions:
    """Apply options in order on top of ``base``; ``None`` entries are skipped."""

    current = base
    for option in options:
        if option is not None:
            current = option(current)
    return current


def with_batch_size(size: int) -> Option:
    """Number of tasks leased per poll; non-positive values are ignored."""

    def _apply(options: WorkerOptions) -> WorkerOptions:
        if size > 0:
            return replace(options, batch_size=size)
        return options

    return _apply


def with_poll_interval(seconds: float) -> Option:
    """Pause between poll cycles; non-positive values are ignored."""

    def _apply(options: WorkerOptions) -> WorkerOptions:
        if seconds > 0:
            return replace(options, poll_interval=seconds)
        return options

    return _apply


def with_poll_timeout(seconds: float) -> Option:
    """Long-poll timeout. Zero disables long polling, negative means server default."""

    def _apply(options: WorkerOptions) -> WorkerOptions:
        return replace(options, poll_timeout=seconds)

    return _apply


def with_domain(domain: str) -> Option:
    def _apply(options: WorkerOptions) -> WorkerOptions:
        return replace(options, domain=domain)

    return _apply


def with_base_context(context: Context | None) -> Option:
    """Context whose cancellation stops the worker's loop and reaches its handlers."""

    def _apply(options: WorkerOptions) -> WorkerOptions:
        return replace(options, base_context=context)

    return _apply
