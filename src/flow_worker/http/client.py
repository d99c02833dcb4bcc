"""HTTP client for the orchestration server's task queue endpoints."""

from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from flow_worker.worker.errors import TransportError
from flow_worker.worker.models import Task, TaskResult, TaskResultStatus, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_TRANSPORT_RETRIES = 3
DEFAULT_USER_AGENT = "flow-worker/0.1"
AUTH_HEADER = "X-Authorization"


class TaskApi(Protocol):
    """Task queue calls the runner depends on."""

    def poll_tasks(
        self,
        task_name: str,
        *,
        count: int,
        worker_id: str,
        domain: str = "",
        timeout: float = -1.0,
    ) -> list[Task]:
        """Lease up to ``count`` tasks of ``task_name``."""

    def update_task(self, result: TaskResult) -> None:
        """Send a task report."""


class ApiClient:
    """httpx-backed client shared by every poll loop and handler thread."""

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport_retries: int = DEFAULT_TRANSPORT_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        base_headers = {"User-Agent": user_agent, "Accept": "application/json"}
        if auth_token:
            base_headers[AUTH_HEADER] = auth_token
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=base_headers,
            transport=transport or httpx.HTTPTransport(retries=transport_retries),
        )

    def poll_tasks(
        self,
        task_name: str,
        *,
        count: int,
        worker_id: str,
        domain: str = "",
        timeout: float = -1.0,
    ) -> list[Task]:
        params: dict[str, Any] = {"workerid": worker_id, "count": count}
        if domain:
            params["domain"] = domain
        if timeout >= 0:
            params["timeout"] = int(timeout * 1000)
        response = self._request(
            "GET",
            f"/tasks/poll/batch/{quote(task_name, safe='')}",
            params=params,
        )
        if response.status_code == httpx.codes.NO_CONTENT or not response.content:
            return []
        try:
            payload = response.json()
        except ValueError as error:
            raise TransportError(f"Invalid poll response for {task_name}: {error}") from error
        if not isinstance(payload, list):
            raise TransportError(f"Expected task array from poll of {task_name}")
        polled_at = utc_now()
        tasks: list[Task] = []
        for raw in payload:
            try:
                tasks.append(Task.from_payload(raw, polled_at=polled_at))
            except TransportError as error:
                logger.warning("Skipping malformed task from poll of %s: %s", task_name, error)
                self._reject_malformed(raw, str(error), worker_id=worker_id)
        return tasks

    def update_task(self, result: TaskResult) -> None:
        self._request("POST", "/tasks", json=result.to_payload())

    def update_task_completion(
        self,
        task: Task,
        output: dict[str, Any],
        *,
        worker_id: str,
    ) -> None:
        self.update_task(
            TaskResult(
                task_id=task.task_id,
                workflow_instance_id=task.workflow_instance_id,
                status=TaskResultStatus.COMPLETED,
                worker_id=worker_id,
                output_data=output,
            ),
        )

    def update_task_failure(self, task: Task, reason: str, *, worker_id: str) -> None:
        self.update_task(
            TaskResult(
                task_id=task.task_id,
                workflow_instance_id=task.workflow_instance_id,
                status=TaskResultStatus.FAILED,
                worker_id=worker_id,
                reason_for_incompletion=reason,
            ),
        )

    def _reject_malformed(self, raw: object, reason: str, *, worker_id: str) -> None:
        if not isinstance(raw, dict):
            return
        task_id = raw.get("taskId")
        if not isinstance(task_id, str) or not task_id:
            return
        workflow_instance_id = raw.get("workflowInstanceId")
        if not isinstance(workflow_instance_id, str):
            workflow_instance_id = ""
        result = TaskResult(
            task_id=task_id,
            workflow_instance_id=workflow_instance_id,
            status=TaskResultStatus.FAILED,
            worker_id=worker_id,
            reason_for_incompletion=reason,
        )
        try:
            self.update_task(result)
        except TransportError as error:
            logger.error("Could not report malformed task %s: %s", task_id, error)

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as error:
            logger.debug("Timeout calling %s %s", method, url)
            raise TransportError(f"Timeout calling {method} {url}") from error
        except httpx.HTTPError as error:
            raise TransportError(f"HTTP error calling {method} {url}: {error}") from error
        if not response.is_success:
            raise TransportError(
                f"{method} {url} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
