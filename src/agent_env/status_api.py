from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

import uvicorn
from fastapi import FastAPI, HTTPException

from agent_env.errors import AgentEnvError

if TYPE_CHECKING:
    from agent_env.runner import EnvironmentRunner


LOGGER = logging.getLogger("agent_env.status_api")
SERVER_STOP_TIMEOUT_SECONDS = 5.0


def create_status_app(runner: EnvironmentRunner) -> FastAPI:
    app = FastAPI(title="agent-env")

    @app.get("/health")
    def api_health() -> dict[str, Any]:
        return {"success": True, "data": {"status": "healthy", "phase": runner.phase}}

    @app.get("/api/status")
    def api_status() -> dict[str, Any]:
        return runner.status_payload()

    @app.post("/api/processes/{name}/restart")
    async def api_restart_process(name: str) -> dict[str, Any]:
        if runner.supervisor.get(name) is None:
            raise HTTPException(status_code=404, detail=f"Unknown process: {name}")
        try:
            record = await runner.restart_process(name)
        except AgentEnvError as exc:
            raise HTTPException(status_code=409, detail=exc.message) from exc
        return {"process": record.snapshot()}

    return app


class StatusServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the runner."""

    def install_signal_handlers(self) -> None:
        pass

    def capture_signals(self):  # type: ignore[override]
        return contextlib.nullcontext()


class StatusService:
    def __init__(self, runner: EnvironmentRunner, host: str, port: int, log_level: str = "warning") -> None:
        self.host = host
        self.port = port
        config = uvicorn.Config(create_status_app(runner), host=host, port=port, log_level=log_level)
        self.server = StatusServer(config)
        self._task: asyncio.Task[None] | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            LOGGER.info("Status API listening on %s", self.url)
            self._task = asyncio.create_task(self._serve())
        return self._task

    async def _serve(self) -> None:
        # uvicorn exits the interpreter when it cannot bind
        try:
            await self.server.serve()
        except SystemExit:
            LOGGER.error("[failed] status api: could not serve on %s", self.url)

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self.server.should_exit = True
        try:
            await asyncio.wait_for(task, timeout=SERVER_STOP_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            LOGGER.warning("Status API did not stop in time; cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._task = None
