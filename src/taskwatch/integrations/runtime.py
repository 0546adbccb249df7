"""Client for the agent runtime's task-check endpoint.

The runtime can report on a background command it launched: whether it
is still running, its output so far and its exit code. Any transport or
protocol failure is transient and reported as ``None``; the caller keeps
the task pending and tries again later.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional, Protocol

import httpx

logger = logging.getLogger("taskwatch.runtime")

RUNTIME_STATUSES = ("running", "completed", "failed", "stopped")


@dataclass(frozen=True)
class RuntimeCheck:
    status: str
    output: str = ""
    exit_code: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != "running"

    @classmethod
    def from_payload(cls, payload: dict) -> "RuntimeCheck":
        raw_status = str(payload.get("status") or "").strip().lower()
        # The runtime forgets a shell once it is reaped: treat as finished.
        if raw_status in ("not found", "not_found"):
            raw_status = "completed"
        if raw_status not in RUNTIME_STATUSES:
            raise ValueError(f"Unexpected runtime status: {payload.get('status')!r}")
        exit_code = payload.get("exit_code", payload.get("exitCode"))
        return cls(
            status=raw_status,
            output=str(payload.get("output") or ""),
            exit_code=int(exit_code) if exit_code is not None else None,
        )


class RuntimeClient(Protocol):
    def is_ready(self) -> bool: ...

    def check_task(self, external_task_id: str) -> Optional[RuntimeCheck]: ...


class RuntimeUnavailable:
    """Stand-in used when no runtime endpoint is configured."""

    def is_ready(self) -> bool:
        return False

    def check_task(self, external_task_id: str) -> Optional[RuntimeCheck]:
        return None


class HttpRuntimeClient:
    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def is_ready(self) -> bool:
        return bool(self.base_url)

    def check_task(self, external_task_id: str) -> Optional[RuntimeCheck]:
        url = f"{self.base_url}/tasks/{external_task_id}/check"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(url, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("Runtime check for %s failed: %s", external_task_id, exc)
            return None

        if resp.status_code == 404:
            logger.info("Runtime no longer knows task %s, treating as completed", external_task_id)
            return RuntimeCheck(status="completed")
        if resp.status_code != 200:
            logger.warning(
                "Runtime check for %s returned %s: %s",
                external_task_id, resp.status_code, resp.text[:300],
            )
            return None
        try:
            return RuntimeCheck.from_payload(resp.json())
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Malformed runtime check result for %s: %s", external_task_id, exc)
            return None
