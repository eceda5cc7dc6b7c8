from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from agent_env.commands import run_command, run_streaming
from agent_env.config import TIER_RANKS, ServiceDescriptor
from agent_env.errors import ConfigError, ServiceStartFailure
from agent_env.runtime import EngineReady


LOGGER = logging.getLogger("agent_env.services")
HEALTH_HEALTHY = "healthy"
HEALTH_UNHEALTHY = "unhealthy"
HEALTH_STARTING = "starting"
HEALTH_MISSING = "missing"
INSPECT_FORMAT = "{{.State.Status}}|{{if .State.Health}}{{.State.Health.Status}}{{else}}none{{end}}"
TERMINAL_STATES = {"exited", "dead"}
WAIT_POLL_INTERVAL_SECONDS = 1.0
LOG_TAIL_LINES = "50"


@dataclass(frozen=True)
class ServiceStatus:
    name: str
    running: bool
    state: str
    health: str


def parse_inspect_status(name: str, output: str) -> ServiceStatus:
    state, _, health = output.strip().partition("|")
    state = state.strip().lower() or "unknown"
    health = health.strip().lower()
    running = state == "running"
    if not running:
        return ServiceStatus(name, False, state, HEALTH_UNHEALTHY)
    if health in ("", "none", HEALTH_HEALTHY):
        return ServiceStatus(name, True, state, HEALTH_HEALTHY)
    if health == HEALTH_STARTING:
        return ServiceStatus(name, True, state, HEALTH_STARTING)
    return ServiceStatus(name, True, state, HEALTH_UNHEALTHY)


def order_services(descriptors: Iterable[ServiceDescriptor]) -> list[ServiceDescriptor]:
    """Order services by tier (data, model, app) while honouring ``depends_on``."""
    pending = list(descriptors)
    position = {descriptor.name: index for index, descriptor in enumerate(pending)}
    known = set(position)
    ordered: list[ServiceDescriptor] = []
    done: set[str] = set()
    while pending:
        ready = [
            descriptor
            for descriptor in pending
            if all(dep in done or dep not in known for dep in descriptor.depends_on)
        ]
        if not ready:
            names = ", ".join(sorted(descriptor.name for descriptor in pending))
            raise ConfigError(f"Dependency cycle between services: {names}")
        nxt = min(ready, key=lambda item: (TIER_RANKS.get(item.tier, len(TIER_RANKS)), position[item.name]))
        ordered.append(nxt)
        done.add(nxt.name)
        pending.remove(nxt)
    return ordered


class ServiceOrchestrator:
    def __init__(self, engine: EngineReady, compose_file: Path | None = None, project_root: Path | None = None) -> None:
        self.engine = engine
        self.compose_file = compose_file
        self.project_root = project_root
        self._started: list[str] = []
        self._compose_command: list[str] | None = None

    @property
    def started(self) -> list[str]:
        return list(self._started)

    @property
    def using_compose(self) -> bool:
        return self._compose_command is not None

    async def ensure_network(self, name: str) -> None:
        inspect = await run_command(self.engine.command("network", "inspect", name))
        if inspect.ok:
            return
        result = await run_command(self.engine.command("network", "create", name))
        if result.ok or "already exists" in result.output.lower():
            LOGGER.info("Network %s ready", name)
            return
        raise ServiceStartFailure(
            f"Failed to create network {name}", returncode=result.returncode, output_tail=result.output
        )

    def run_argv(self, descriptor: ServiceDescriptor) -> list[str]:
        cmd = self.engine.command("run", "-d", "--name", descriptor.name, "--network", descriptor.network)
        for binding in descriptor.ports:
            cmd.extend(["-p", f"{binding.host}:{binding.container}"])
        for volume in descriptor.volumes:
            cmd.extend(["-v", volume])
        for key, value in descriptor.env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(descriptor.image)
        cmd.extend(descriptor.command)
        return cmd

    async def _rm_force(self, name: str) -> None:
        await run_command(self.engine.command("rm", "-f", name))

    async def start(self, descriptor: ServiceDescriptor) -> None:
        await self._rm_force(descriptor.name)
        LOGGER.info("Starting container %s (%s)", descriptor.name, descriptor.image)
        result = await run_command(self.run_argv(descriptor))
        if not result.ok:
            raise ServiceStartFailure(
                f"Failed to start container {descriptor.name}",
                returncode=result.returncode,
                output_tail=result.stderr or result.output,
            )
        if descriptor.name not in self._started:
            self._started.append(descriptor.name)

    async def _detect_compose(self) -> list[str] | None:
        if self.engine.name == "podman":
            tool = shutil.which("podman-compose")
            return [tool] if tool else None
        plugin = await run_command(self.engine.command("compose", "version"))
        if plugin.ok:
            return self.engine.command("compose")
        tool = shutil.which("docker-compose")
        return [tool] if tool else None

    async def start_all(self, descriptors: Iterable[ServiceDescriptor]) -> list[str]:
        descriptors = list(descriptors)
        if self.compose_file is not None and Path(self.compose_file).is_file():
            compose = await self._detect_compose()
            if compose is not None:
                cmd = [*compose, "-f", str(self.compose_file), "up", "-d"]
                result = await run_streaming(cmd, cwd=self.project_root)
                if not result.ok:
                    raise ServiceStartFailure(
                        "Compose failed to start services", returncode=result.returncode, output_tail=result.output
                    )
                self._compose_command = compose
                LOGGER.info("[ok] compose up %s", self.compose_file)
                return [descriptor.name for descriptor in descriptors]
            LOGGER.info("No compose tool available; starting services individually")

        ordered = order_services(descriptors)
        for network in dict.fromkeys(descriptor.network for descriptor in ordered):
            await self.ensure_network(network)
        for descriptor in ordered:
            await self.start(descriptor)
        return [descriptor.name for descriptor in ordered]

    async def status(self, name: str) -> ServiceStatus:
        result = await run_command(self.engine.command("inspect", "--format", INSPECT_FORMAT, name))
        if not result.ok:
            return ServiceStatus(name, False, "missing", HEALTH_MISSING)
        return parse_inspect_status(name, result.stdout)

    async def _logs_tail(self, name: str) -> str:
        result = await run_command(self.engine.command("logs", "--tail", LOG_TAIL_LINES, name))
        return result.output

    async def wait_started(
        self,
        name: str,
        timeout: float,
        require_healthy: bool = True,
        interval: float = WAIT_POLL_INTERVAL_SECONDS,
    ) -> ServiceStatus:
        deadline = time.monotonic() + timeout
        while True:
            status = await self.status(name)
            if status.running and (status.health == HEALTH_HEALTHY or not require_healthy):
                LOGGER.info("[ok] container %s %s", name, status.health)
                return status
            if status.state in TERMINAL_STATES:
                raise ServiceStartFailure(
                    f"Container {name} exited during startup (state {status.state})",
                    output_tail=await self._logs_tail(name),
                )
            if time.monotonic() >= deadline:
                raise ServiceStartFailure(
                    f"Container {name} not ready after {timeout:g}s (state {status.state}, health {status.health})",
                    output_tail=await self._logs_tail(name) if status.health != HEALTH_MISSING else "",
                )
            await asyncio.sleep(interval)

    async def wait_all(self, descriptors: Iterable[ServiceDescriptor]) -> None:
        if self.using_compose:
            LOGGER.debug("Services started by compose; skipping per-container readiness waits")
            return
        for descriptor in descriptors:
            await self.wait_started(descriptor.name, descriptor.start_timeout, require_healthy=descriptor.wait_healthy)

    async def stop(self, name: str) -> None:
        for action in ("stop", "rm"):
            result = await run_command(self.engine.command(action, name))
            if not result.ok and "no such container" not in result.output.lower():
                LOGGER.warning("%s %s failed: %s", action, name, result.output)
        if name in self._started:
            self._started.remove(name)
        LOGGER.info("Stopped container %s", name)

    async def _compose_down(self, compose: list[str]) -> None:
        result = await run_streaming([*compose, "-f", str(self.compose_file), "down"], cwd=self.project_root)
        if not result.ok:
            LOGGER.warning("compose down failed (exit code %d)", result.returncode)
        self._compose_command = None
        self._started.clear()

    async def compose_down(self) -> bool:
        """Run ``compose down`` for the configured compose file; False when compose is not in use."""
        if self.compose_file is None or not Path(self.compose_file).is_file():
            return False
        compose = self._compose_command or await self._detect_compose()
        if compose is None:
            return False
        await self._compose_down(compose)
        return True

    async def stop_all(self) -> None:
        if self._compose_command is not None and self.compose_file is not None:
            await self._compose_down(self._compose_command)
            return
        for name in reversed(list(self._started)):
            await self.stop(name)

    async def ps(self, name: str) -> str:
        result = await run_command(self.engine.command("ps", "-a", "--filter", f"name={name}"))
        return result.stdout
