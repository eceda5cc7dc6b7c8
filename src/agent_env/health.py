from __future__ import annotations

import asyncio
import http.client
import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable

from agent_env.errors import HealthCheckFailure


LOGGER = logging.getLogger("agent_env.health")
HEALTHY_STATUS_VALUES = {"healthy", "ok", "up"}
REASON_UNHEALTHY = "unhealthy"
REASON_CRASHED = "crashed"
DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_TIMEOUT_SECONDS = 2.0


def is_healthy_payload(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    if str(payload.get("status") or "").lower() in HEALTHY_STATUS_VALUES:
        return True
    data = payload.get("data")
    if isinstance(data, dict) and str(data.get("status") or "").lower() in HEALTHY_STATUS_VALUES:
        return True
    return payload.get("success") is True


def probe_health(url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS, require_marker: bool = True) -> str:
    """GET ``url`` and return a short description, raising HealthCheckFailure when unhealthy."""
    request = urllib.request.Request(url, headers={"Accept": "application/json"}, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            status = int(response.getcode() or 0)
            body = response.read().decode("utf-8", errors="ignore")
    except urllib.error.HTTPError as exc:
        raise HealthCheckFailure(f"HTTP {exc.code} from {url}") from exc
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        reason = getattr(exc, "reason", exc)
        raise HealthCheckFailure(f"{url} unreachable: {reason}") from exc
    except (http.client.HTTPException, ValueError) as exc:
        raise HealthCheckFailure(f"Malformed health response from {url}: {exc!r}") from exc

    if not 200 <= status < 300:
        raise HealthCheckFailure(f"HTTP {status} from {url}")
    if not require_marker:
        return f"HTTP {status}"
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise HealthCheckFailure(f"Non-JSON health response from {url}") from exc
    if not is_healthy_payload(payload):
        raise HealthCheckFailure(f"Health response from {url} has no healthy marker")
    return f"HTTP {status} healthy"


def check_health(url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS, require_marker: bool = True) -> tuple[bool, str]:
    try:
        return True, probe_health(url, timeout, require_marker)
    except HealthCheckFailure as exc:
        return False, exc.message


@dataclass
class HealthStatus:
    target: str
    endpoint: str
    last_checked: float | None = None
    consecutive_failures: int = 0
    last_ok: bool | None = None
    last_message: str = ""

    def snapshot(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "endpoint": self.endpoint,
            "last_checked": self.last_checked,
            "consecutive_failures": self.consecutive_failures,
            "healthy": self.last_ok,
            "message": self.last_message,
        }


@dataclass(frozen=True)
class RestartRecommendation:
    target: str
    endpoint: str
    consecutive_failures: int
    reason: str


class HealthMonitor:
    """Polls health endpoints and recommends restarting a single target.

    A recommendation is emitted once when a target's consecutive failures
    reach ``failure_threshold``; it is re-armed by a healthy result or by
    :meth:`acknowledge`.
    """

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        require_marker: bool = True,
        restart_on_crash: bool = False,
        on_recommendation: Callable[[RestartRecommendation], None] | None = None,
        checker: Callable[[str, float, bool], tuple[bool, str]] = check_health,
    ) -> None:
        self.interval = interval
        self.failure_threshold = max(1, int(failure_threshold))
        self.timeout = timeout
        self.require_marker = require_marker
        self.restart_on_crash = restart_on_crash
        self.on_recommendation = on_recommendation
        self.checker = checker
        self.recommendations: list[RestartRecommendation] = []
        self._statuses: dict[str, HealthStatus] = {}
        self._armed: dict[str, bool] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def status(self, target: str) -> HealthStatus | None:
        return self._statuses.get(target)

    def statuses(self) -> dict[str, HealthStatus]:
        return dict(self._statuses)

    def _status_for(self, target: str, endpoint: str | None = None) -> HealthStatus:
        status = self._statuses.get(target)
        if status is None:
            status = HealthStatus(target=target, endpoint=endpoint or "")
            self._statuses[target] = status
            self._armed[target] = True
        elif endpoint:
            status.endpoint = endpoint
        return status

    def _emit(self, recommendation: RestartRecommendation) -> RestartRecommendation:
        self._armed[recommendation.target] = False
        self.recommendations.append(recommendation)
        LOGGER.warning(
            "Recommending restart of %s (%s, %d consecutive failures)",
            recommendation.target,
            recommendation.reason,
            recommendation.consecutive_failures,
        )
        if self.on_recommendation is not None:
            self.on_recommendation(recommendation)
        return recommendation

    def record_result(
        self, target: str, ok: bool, message: str = "", endpoint: str | None = None
    ) -> RestartRecommendation | None:
        status = self._status_for(target, endpoint)
        status.last_checked = time.time()
        status.last_ok = ok
        status.last_message = message
        if ok:
            if status.consecutive_failures:
                LOGGER.info("%s healthy again after %d failures", target, status.consecutive_failures)
            status.consecutive_failures = 0
            self._armed[target] = True
            return None

        status.consecutive_failures += 1
        LOGGER.warning(
            "Health check failed for %s (%d/%d): %s",
            target,
            status.consecutive_failures,
            self.failure_threshold,
            message,
        )
        if status.consecutive_failures >= self.failure_threshold and self._armed.get(target, True):
            return self._emit(
                RestartRecommendation(target, status.endpoint, status.consecutive_failures, REASON_UNHEALTHY)
            )
        return None

    def report_crash(self, target: str) -> RestartRecommendation | None:
        if not self.restart_on_crash:
            return None
        status = self._status_for(target)
        if not self._armed.get(target, True):
            return None
        return self._emit(RestartRecommendation(target, status.endpoint, status.consecutive_failures, REASON_CRASHED))

    def acknowledge(self, target: str) -> None:
        status = self._statuses.get(target)
        if status is not None:
            status.consecutive_failures = 0
        self._armed[target] = True

    async def check_once(self, target: str, endpoint: str) -> RestartRecommendation | None:
        try:
            ok, message = await asyncio.to_thread(self.checker, endpoint, self.timeout, self.require_marker)
        except Exception as exc:
            LOGGER.exception("Health check for %s raised unexpectedly", target)
            ok, message = False, f"health check error: {exc!r}"
        return self.record_result(target, ok, message, endpoint)

    async def poll(self, target: str, endpoint: str, interval: float | None = None) -> None:
        self._status_for(target, endpoint)
        delay = self.interval if interval is None else interval
        while True:
            await self.check_once(target, endpoint)
            await asyncio.sleep(delay)

    def watch(self, target: str, endpoint: str) -> asyncio.Task[None]:
        existing = self._tasks.get(target)
        if existing is not None and not existing.done():
            return existing
        LOGGER.info("Watching %s at %s every %gs", target, endpoint, self.interval)
        task = asyncio.create_task(self.poll(target, endpoint))
        self._tasks[target] = task
        return task

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
