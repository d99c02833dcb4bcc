"""Runtime configuration for the worker process."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from urllib.parse import urlparse


@dataclass(slots=True)
class ServerSettings:
    """Orchestration server connection settings."""

    url: str = "http://localhost:8080/api"
    auth_token: str | None = None
    request_timeout_seconds: float = 30.0
    transport_retries: int = 3


@dataclass(slots=True)
class RunnerSettings:
    """Task runner settings shared by every registered worker."""

    worker_id: str = field(default_factory=socket.gethostname)
    max_concurrency: int = 32
    update_retry_count: int = 3
    update_retry_backoff_seconds: float = 1.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    server: ServerSettings = field(default_factory=ServerSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            server=ServerSettings(
                url=os.getenv("FLOW_WORKER_SERVER_URL", "http://localhost:8080/api").strip(),
                auth_token=os.getenv("FLOW_WORKER_AUTH_TOKEN", "").strip() or None,
                request_timeout_seconds=float(
                    os.getenv("FLOW_WORKER_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                transport_retries=int(os.getenv("FLOW_WORKER_TRANSPORT_RETRIES", "3")),
            ),
            runner=RunnerSettings(
                worker_id=os.getenv("FLOW_WORKER_ID", "").strip() or socket.gethostname(),
                max_concurrency=int(os.getenv("FLOW_WORKER_MAX_CONCURRENCY", "32")),
                update_retry_count=int(os.getenv("FLOW_WORKER_UPDATE_RETRY_COUNT", "3")),
                update_retry_backoff_seconds=float(
                    os.getenv("FLOW_WORKER_UPDATE_RETRY_BACKOFF_SECONDS", "1.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runner cannot work with."""

        _validate_server_url(self.server.url)
        if self.server.request_timeout_seconds <= 0:
            raise ValueError("FLOW_WORKER_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.server.transport_retries < 0:
            raise ValueError("FLOW_WORKER_TRANSPORT_RETRIES must be >= 0.")
        if not self.runner.worker_id.strip():
            raise ValueError("FLOW_WORKER_ID must not be empty.")
        if self.runner.max_concurrency <= 0:
            raise ValueError("FLOW_WORKER_MAX_CONCURRENCY must be a positive integer.")
        if self.runner.update_retry_count < 0:
            raise ValueError("FLOW_WORKER_UPDATE_RETRY_COUNT must be >= 0.")
        if self.runner.update_retry_backoff_seconds < 0:
            raise ValueError("FLOW_WORKER_UPDATE_RETRY_BACKOFF_SECONDS must be >= 0.")


def _validate_server_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid server URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
