"""HTTP access to the orchestration server."""

from flow_worker.http.client import ApiClient, TaskApi

__all__ = ["ApiClient", "TaskApi"]
