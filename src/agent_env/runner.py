from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import asdict
from pathlib import Path
from typing import Any, Awaitable, Callable

from agent_env.config import EnvironmentConfig
from agent_env.errors import AgentEnvError, ShutdownRequested
from agent_env.health import HealthMonitor, RestartRecommendation
from agent_env.images import ImageBuilder
from agent_env.ports import PortArbiter
from agent_env.processes import ManagedProcess, ProcessSupervisor
from agent_env.runtime import EngineReady, RuntimeDetector
from agent_env.services import ServiceOrchestrator
from agent_env.status_api import StatusService


LOGGER = logging.getLogger("agent_env.runner")
CACHE_DIR_NAME = ".agent-env"
STATUS_PORT_KEY = "status"
SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")

UnwindAction = Callable[[], Awaitable[None]]


class EnvironmentRunner:
    """Bring the environment up stage by stage and tear it down in reverse.

    Every stage pushes its unwind action before allocating anything, so a
    failure (or a termination signal) at any point releases exactly what was
    started. :meth:`shutdown` runs the unwind once no matter how often it is
    called.
    """

    def __init__(
        self,
        config: EnvironmentConfig,
        *,
        detector: RuntimeDetector | None = None,
        arbiter: PortArbiter | None = None,
        supervisor: ProcessSupervisor | None = None,
        monitor: HealthMonitor | None = None,
        builder_factory: Callable[[EngineReady, Path], ImageBuilder] | None = None,
        orchestrator_factory: Callable[[EngineReady], ServiceOrchestrator] | None = None,
        status_port: int | None = None,
    ) -> None:
        self.config = config
        self.detector = detector or RuntimeDetector(config.bundled_engine, allow_install=config.allow_install)
        self.arbiter = arbiter or PortArbiter(config.port_search_window, allow_reclaim=config.reclaim_ports)
        self.supervisor = supervisor or ProcessSupervisor(grace_seconds=config.grace_seconds)
        self.supervisor.on_crash = self._on_crash
        health = config.health
        self.monitor = monitor or HealthMonitor(
            interval=health.interval_seconds,
            failure_threshold=health.failure_threshold,
            timeout=health.timeout_seconds,
            require_marker=health.require_marker,
            restart_on_crash=health.restart_on_crash,
        )
        self.monitor.on_recommendation = self._on_recommendation
        self.builder_factory = builder_factory or ImageBuilder
        self.orchestrator_factory = orchestrator_factory or self._default_orchestrator
        self.status_port = status_port if status_port is not None else config.status_port

        self.phase = "idle"
        self.engine: EngineReady | None = None
        self.orchestrator: ServiceOrchestrator | None = None
        self.status_service: StatusService | None = None
        self.ports: dict[str, int] = {}
        self._unwind: list[tuple[str, UnwindAction]] = []
        self._stop_event = asyncio.Event()
        self._shutdown_requested = False
        self._shutdown_task: asyncio.Task[None] | None = None
        self._restart_counts: dict[str, int] = {}
        self._restart_tasks: set[asyncio.Task[None]] = set()

    def _default_orchestrator(self, engine: EngineReady) -> ServiceOrchestrator:
        return ServiceOrchestrator(engine, self.config.compose_file, self.config.project_root)

    @property
    def cache_dir(self) -> Path:
        return self.config.project_root / CACHE_DIR_NAME

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def _push_unwind(self, label: str, action: UnwindAction) -> None:
        self._unwind.append((label, action))

    def _checkpoint(self) -> None:
        if self._shutdown_requested:
            raise ShutdownRequested(f"Shutdown requested before {self.phase}")

    async def _interruptible(self, awaitable: Awaitable[Any]) -> Any:
        task = asyncio.ensure_future(awaitable)
        stop_wait = asyncio.create_task(self._stop_event.wait())
        try:
            done, _pending = await asyncio.wait({task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise ShutdownRequested(f"Shutdown requested during {self.phase}")

    def _enter(self, phase: str) -> None:
        self._checkpoint()
        self.phase = phase
        LOGGER.info("== %s", phase)

    async def start(self) -> None:
        self._enter("ports")
        await self._resolve_ports()

        needs_engine = bool(self.config.services) or any(
            spec.applies_to(self.config.build_variant) for spec in self.config.images
        )
        if needs_engine:
            self._enter("runtime")
            self.engine = await self.detector.ensure()
            LOGGER.info("[ok] runtime %s %s (%s)", self.engine.name, self.engine.version, self.engine.source)

            self._enter("images")
            builder = self.builder_factory(self.engine, self.cache_dir)
            await builder.build_stale(self.config.images, self.config.build_variant)

            if self.config.services:
                self._enter("services")
                await self._start_services()

        if self.config.processes:
            self._checkpoint()
            self._push_unwind("processes", self.supervisor.stop_all)
        for spec in self.config.processes:
            self._enter(f"process {spec.name}")
            await self._interruptible(self.supervisor.start(spec.rendered(self.ports)))

        self._enter("health")
        self._start_health()

        if self.status_port:
            self._enter("status api")
            self._start_status_api()

        self.phase = "running"

    async def _resolve_ports(self) -> None:
        self._push_unwind("ports", self._release_ports)
        wanted = dict(self.config.ports)
        if self.status_port:
            wanted[STATUS_PORT_KEY] = self.status_port
        for key, port in wanted.items():
            assignment = await asyncio.to_thread(self.arbiter.resolve, key, port)
            self.ports[key] = assignment.resolved
        if self.status_port:
            self.status_port = self.ports[STATUS_PORT_KEY]

    async def _release_ports(self) -> None:
        self.arbiter.release_all()

    async def _start_services(self) -> None:
        assert self.engine is not None
        self.orchestrator = self.orchestrator_factory(self.engine)
        self._push_unwind("services", self.orchestrator.stop_all)
        descriptors = [descriptor.rendered(self.ports) for descriptor in self.config.services]
        await self.orchestrator.start_all(descriptors)
        await self._interruptible(self.orchestrator.wait_all(descriptors))

    def health_endpoint(self) -> str | None:
        health = self.config.health
        if health.process is None:
            return None
        spec = self.config.process(health.process)
        if spec is None or spec.port_key is None or spec.port_key not in self.ports:
            return None
        path = spec.health_path or health.path
        return f"http://{health.host}:{self.ports[spec.port_key]}{path}"

    def _start_health(self) -> None:
        endpoint = self.health_endpoint()
        if endpoint is None or self.config.health.process is None:
            LOGGER.info("No health endpoint configured; skipping health polling")
            return
        self._push_unwind("health", self.monitor.stop)
        self.monitor.watch(self.config.health.process, endpoint)

    def _start_status_api(self) -> None:
        assert self.status_port is not None
        self.status_service = StatusService(self, "127.0.0.1", self.status_port)
        self._push_unwind("status api", self.status_service.stop)
        self.status_service.start()

    def _on_crash(self, record: ManagedProcess) -> None:
        if self._shutdown_requested:
            return
        self.monitor.report_crash(record.name)

    def _on_recommendation(self, recommendation: RestartRecommendation) -> None:
        if self._shutdown_requested:
            return
        name = recommendation.target
        if self.supervisor.get(name) is None:
            LOGGER.warning("Restart recommended for unmanaged target %s; ignoring", name)
            return
        limit = self.config.health.max_restarts
        if self._restart_counts.get(name, 0) >= limit:
            LOGGER.error("%s reached the restart limit (%d); leaving it stopped", name, limit)
            return
        task = asyncio.create_task(self._restart_recommended(name))
        self._restart_tasks.add(task)
        task.add_done_callback(self._restart_tasks.discard)

    async def _restart_recommended(self, name: str) -> None:
        try:
            await self.restart_process(name)
        except AgentEnvError as exc:
            LOGGER.error("[failed] restart %s: %s", name, exc.format_message())

    async def restart_process(self, name: str) -> ManagedProcess:
        if self._shutdown_requested:
            raise ShutdownRequested(f"Not restarting {name}: shutdown in progress")
        self._restart_counts[name] = self._restart_counts.get(name, 0) + 1
        try:
            record = await self.supervisor.restart(name)
        finally:
            self.monitor.acknowledge(name)
        LOGGER.info("[ok] restarted %s (restart %d)", name, self._restart_counts[name])
        return record

    def request_shutdown(self, reason: str = "shutdown request") -> None:
        if self._shutdown_requested:
            LOGGER.debug("Ignoring %s: shutdown already in progress", reason)
            return
        self._shutdown_requested = True
        LOGGER.info("Received %s; shutting down", reason)
        self._stop_event.set()

    async def _unwind_all(self) -> None:
        self.phase = "stopping"
        for task in list(self._restart_tasks):
            task.cancel()
        if self._restart_tasks:
            await asyncio.gather(*self._restart_tasks, return_exceptions=True)
        while self._unwind:
            label, action = self._unwind.pop()
            LOGGER.info("Stopping %s", label)
            try:
                await action()
            except Exception as exc:
                LOGGER.error("[failed] stopping %s: %s", label, exc)
        self.phase = "stopped"
        LOGGER.info("Shutdown complete")

    async def shutdown(self) -> None:
        self._shutdown_requested = True
        self._stop_event.set()
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._unwind_all())
        await asyncio.shield(self._shutdown_task)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[tuple[int, Any]]:
        installed: list[tuple[int, Any]] = []
        for name in SHUTDOWN_SIGNALS:
            sig = getattr(signal, name, None)
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, self.request_shutdown, name)
                installed.append((sig, None))
            except (NotImplementedError, RuntimeError, ValueError):
                previous = signal.signal(
                    sig, lambda _signum, _frame, label=name: loop.call_soon_threadsafe(self.request_shutdown, label)
                )
                installed.append((sig, previous))
        return installed

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop, installed: list[tuple[int, Any]]) -> None:
        for sig, previous in installed:
            if previous is None:
                loop.remove_signal_handler(sig)
            else:
                signal.signal(sig, previous)

    async def run(self) -> int:
        """Start everything, wait for a termination signal, then unwind.

        Returns the process exit code: 0 after a clean shutdown, 1 when a
        startup stage failed.
        """
        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop)
        try:
            try:
                await self.start()
            except ShutdownRequested:
                LOGGER.info("Startup interrupted during %s", self.phase)
                await self.shutdown()
                return 0
            except AgentEnvError as exc:
                LOGGER.error("[failed] %s: %s", self.phase, exc.format_message())
                await self.shutdown()
                return 1
            except Exception:
                LOGGER.exception("[failed] %s: unexpected error", self.phase)
                await self.shutdown()
                return 1

            LOGGER.info("[ok] environment ready: %s", ", ".join(f"{k}={v}" for k, v in sorted(self.ports.items())))
            await self._stop_event.wait()
            await self.shutdown()
            return 0
        finally:
            self._remove_signal_handlers(loop, installed)

    def status_payload(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "engine": asdict(self.engine) if self.engine is not None else None,
            "ports": {name: asdict(assignment) for name, assignment in self.arbiter.assignments().items()},
            "services": self.orchestrator.started if self.orchestrator is not None else [],
            "processes": [record.snapshot() for record in self.supervisor.processes()],
            "health": {target: status.snapshot() for target, status in self.monitor.statuses().items()},
            "restarts": dict(self._restart_counts),
        }
