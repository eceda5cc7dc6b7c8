from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

import click
import psutil

from agent_env.config import ProcessSpec
from agent_env.errors import AgentEnvError, ProcessCrash, ProcessStartupTimeout, ShutdownRequested


LOGGER = logging.getLogger("agent_env.processes")
STATE_SPAWNING = "spawning"
STATE_RUNNING = "running"
STATE_STOPPING = "stopping"
STATE_STOPPED = "stopped"
STATE_CRASHED = "crashed"
LIVE_STATES = {STATE_SPAWNING, STATE_RUNNING, STATE_STOPPING}
READY_PATTERN = "pattern"
READY_TIMEOUT = "timeout"
DEFAULT_GRACE_SECONDS = 5.0
DEFAULT_KILL_TIMEOUT_SECONDS = 5.0
DEFAULT_TAIL_LINES = 200
GROUP_DRAIN_SECONDS = 1.0
READER_DRAIN_SECONDS = 1.0
STREAM_LIMIT_BYTES = 1024 * 1024
HAS_PROCESS_GROUPS = hasattr(os, "killpg")


@dataclass
class ManagedProcess:
    name: str
    spec: ProcessSpec
    env: dict[str, str] = field(default_factory=dict)
    process: asyncio.subprocess.Process | None = None
    state: str = STATE_SPAWNING
    exit_code: int | None = None
    ready_source: str | None = None
    started_at: float = 0.0
    stdout_tail: deque[str] = field(default_factory=lambda: deque(maxlen=DEFAULT_TAIL_LINES))
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=DEFAULT_TAIL_LINES))
    ready: asyncio.Future[str] | None = None
    readers: list[asyncio.Task[None]] = field(default_factory=list)
    exit_watcher: asyncio.Task[None] | None = None
    ready_timer: asyncio.Task[None] | None = None
    stop_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def stderr_text(self) -> str:
        return "\n".join(self.stderr_tail)

    def stdout_text(self) -> str:
        return "\n".join(self.stdout_tail)

    def snapshot(self) -> dict[str, object]:
        return {
            "name": self.name,
            "pid": self.pid,
            "state": self.state,
            "exit_code": self.exit_code,
            "ready_source": self.ready_source,
            "uptime_seconds": round(time.monotonic() - self.started_at, 1) if self.state == STATE_RUNNING else None,
        }


def _consume_result(future: asyncio.Future[str]) -> None:
    if not future.cancelled():
        future.exception()


def _settle(record: ManagedProcess, result: str | None = None, error: BaseException | None = None) -> bool:
    ready = record.ready
    if ready is None or ready.done():
        return False
    if error is not None:
        ready.set_exception(error)
    else:
        ready.set_result(result or READY_PATTERN)
    return True


class ProcessSupervisor:
    """Spawns and supervises named long-lived child processes.

    Every child runs in its own process group on POSIX so that shutdown can
    signal the whole tree. Unexpected exits are reported to ``on_crash`` and
    never restarted here.
    """

    def __init__(
        self,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT_SECONDS,
        tail_lines: int = DEFAULT_TAIL_LINES,
        on_crash: Callable[[ManagedProcess], None] | None = None,
    ) -> None:
        self.grace_seconds = grace_seconds
        self.kill_timeout = kill_timeout
        self.tail_lines = tail_lines
        self.on_crash = on_crash
        self._records: dict[str, ManagedProcess] = {}

    def get(self, name: str) -> ManagedProcess | None:
        return self._records.get(name)

    def processes(self) -> list[ManagedProcess]:
        return list(self._records.values())

    async def spawn(self, spec: ProcessSpec, env: dict[str, str] | None = None) -> ManagedProcess:
        existing = self._records.get(spec.name)
        if existing is not None and existing.is_live:
            raise AgentEnvError(f"Process {spec.name} is already running (pid {existing.pid})")

        record = ManagedProcess(
            name=spec.name,
            spec=spec,
            env=dict(env or {}),
            stdout_tail=deque(maxlen=self.tail_lines),
            stderr_tail=deque(maxlen=self.tail_lines),
        )
        loop = asyncio.get_running_loop()
        record.ready = loop.create_future()
        record.ready.add_done_callback(_consume_result)
        self._records[spec.name] = record

        child_env = dict(os.environ)
        child_env.update(spec.env)
        child_env.update(record.env)
        kwargs: dict[str, object] = {}
        if HAS_PROCESS_GROUPS:
            kwargs["start_new_session"] = True
        else:
            kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)

        LOGGER.info("Starting %s: %s", spec.name, " ".join(spec.command))
        try:
            record.process = await asyncio.create_subprocess_exec(
                *spec.command,
                cwd=str(spec.cwd),
                env=child_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
                **kwargs,
            )
        except OSError as exc:
            record.state = STATE_CRASHED
            raise ProcessCrash(f"Failed to start {spec.name}: {exc}") from exc

        record.started_at = time.monotonic()
        record.readers = [
            asyncio.create_task(self._read_stream(record, record.process.stdout, is_stderr=False)),
            asyncio.create_task(self._read_stream(record, record.process.stderr, is_stderr=True)),
        ]
        record.exit_watcher = asyncio.create_task(self._watch_exit(record))
        record.ready_timer = asyncio.create_task(self._readiness_timer(record))
        return record

    async def _read_stream(
        self, record: ManagedProcess, stream: asyncio.StreamReader | None, *, is_stderr: bool
    ) -> None:
        if stream is None:
            return
        prefix = f"[{record.name.upper()}]"
        tail = record.stderr_tail if is_stderr else record.stdout_tail
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                raw = await stream.read(STREAM_LIMIT_BYTES)
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            tail.append(line)
            click.echo(f"{prefix} {line}", err=is_stderr)

            if is_stderr:
                for pattern in record.spec.failure_patterns:
                    if pattern in line and record.state == STATE_SPAWNING:
                        _settle(
                            record,
                            error=ProcessCrash(
                                f"{record.name} reported {pattern} during startup",
                                output_tail=record.stderr_text(),
                            ),
                        )
            elif record.spec.ready_pattern and record.spec.ready_pattern in line:
                _settle(record, READY_PATTERN)

    async def _readiness_timer(self, record: ManagedProcess) -> None:
        await asyncio.sleep(record.spec.ready_timeout)
        if record.spec.ready_pattern:
            _settle(
                record,
                error=ProcessStartupTimeout(
                    f"{record.name} did not print {record.spec.ready_pattern!r} "
                    f"within {record.spec.ready_timeout:g}s",
                    output_tail=record.stderr_text() or record.stdout_text(),
                ),
            )
        else:
            _settle(record, READY_TIMEOUT)

    async def _watch_exit(self, record: ManagedProcess) -> None:
        process = record.process
        if process is None:
            return
        returncode = await process.wait()
        if record.readers:
            await asyncio.wait(record.readers, timeout=READER_DRAIN_SECONDS)
        record.exit_code = returncode
        if record.state in (STATE_STOPPING, STATE_STOPPED):
            return

        was_starting = record.state == STATE_SPAWNING
        record.state = STATE_CRASHED
        if record.ready_timer is not None:
            record.ready_timer.cancel()
        if was_starting:
            _settle(
                record,
                error=ProcessCrash(
                    f"{record.name} exited before becoming ready",
                    returncode=returncode,
                    output_tail=record.stderr_text() or record.stdout_text(),
                ),
            )
            return

        LOGGER.error(
            "%s exited unexpectedly with code %s\n%s",
            record.name,
            returncode,
            record.stderr_text()[-2000:],
        )
        if self.on_crash is not None:
            self.on_crash(record)

    async def wait_ready(self, name: str) -> str:
        record = self._records[name]
        if record.ready is None:
            raise AgentEnvError(f"Process {name} was never spawned")
        return await record.ready

    async def start(self, spec: ProcessSpec, env: dict[str, str] | None = None) -> ManagedProcess:
        record = await self.spawn(spec, env)
        try:
            source = await self.wait_ready(spec.name)
        except AgentEnvError:
            await self.stop(spec.name)
            raise
        if record.ready_timer is not None:
            record.ready_timer.cancel()
        record.state = STATE_RUNNING
        record.ready_source = source
        LOGGER.info("[ok] %s ready (%s, pid %s)", spec.name, source, record.pid)
        return record

    def _signal_group(self, record: ManagedProcess, sig: int) -> None:
        process = record.process
        if process is None:
            return
        if HAS_PROCESS_GROUPS:
            try:
                os.killpg(process.pid, sig)
            except (ProcessLookupError, PermissionError):
                pass
        if sig == signal.SIGTERM:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        else:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    def _group_alive(self, pgid: int) -> bool:
        try:
            os.killpg(pgid, 0)
        except (ProcessLookupError, PermissionError):
            return False
        return True

    async def _reap_group(self, record: ManagedProcess, descendants: list[psutil.Process]) -> None:
        process = record.process
        if process is None:
            return
        if HAS_PROCESS_GROUPS:
            deadline = time.monotonic() + GROUP_DRAIN_SECONDS
            while self._group_alive(process.pid) and time.monotonic() < deadline:
                await asyncio.sleep(0.05)
            if self._group_alive(process.pid):
                LOGGER.warning("Killing leftover processes in %s's group", record.name)
                try:
                    os.killpg(process.pid, signal.SIGKILL)
                except (ProcessLookupError, PermissionError):
                    pass
            return

        _gone, alive = await asyncio.to_thread(psutil.wait_procs, descendants, GROUP_DRAIN_SECONDS)
        for child in alive:
            LOGGER.warning("Killing leftover child %d of %s", child.pid, record.name)
            try:
                child.kill()
            except psutil.NoSuchProcess:
                continue

    def _snapshot_descendants(self, record: ManagedProcess) -> list[psutil.Process]:
        if HAS_PROCESS_GROUPS or record.pid is None:
            return []
        try:
            return psutil.Process(record.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            return []

    async def _stop_record(self, record: ManagedProcess) -> None:
        process = record.process
        if process is None:
            record.state = STATE_STOPPED
            return
        record.state = STATE_STOPPING
        _settle(record, error=ShutdownRequested(f"{record.name} was stopped before becoming ready"))
        descendants = self._snapshot_descendants(record)

        if process.returncode is None:
            LOGGER.info("Stopping %s (pid %s)", record.name, process.pid)
            self._signal_group(record, signal.SIGTERM)
            for child in descendants:
                try:
                    child.terminate()
                except psutil.NoSuchProcess:
                    continue
            try:
                await asyncio.wait_for(process.wait(), timeout=self.grace_seconds)
            except asyncio.TimeoutError:
                LOGGER.warning(
                    "%s did not exit within %gs of SIGTERM; sending SIGKILL", record.name, self.grace_seconds
                )
                self._signal_group(record, signal.SIGKILL)
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                except asyncio.TimeoutError:
                    LOGGER.error("%s (pid %s) survived SIGKILL", record.name, process.pid)

        await self._reap_group(record, descendants)

        pending = [task for task in record.readers if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=READER_DRAIN_SECONDS)
        for task in [*record.readers, record.exit_watcher, record.ready_timer]:
            if task is not None and not task.done():
                task.cancel()

        record.exit_code = process.returncode
        record.state = STATE_STOPPED
        LOGGER.info("Stopped %s (exit code %s)", record.name, process.returncode)

    async def stop(self, name: str) -> None:
        record = self._records.get(name)
        if record is None or record.state == STATE_STOPPED:
            return
        if record.stop_task is None or record.stop_task.done():
            record.stop_task = asyncio.create_task(self._stop_record(record))
        await asyncio.shield(record.stop_task)

    async def stop_all(self) -> None:
        names = [record.name for record in self._records.values() if record.state != STATE_STOPPED]
        if not names:
            return
        results = await asyncio.gather(*(self.stop(name) for name in names), return_exceptions=True)
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                LOGGER.error("Failed to stop %s: %s", name, result)

    async def restart(self, name: str) -> ManagedProcess:
        record = self._records.get(name)
        if record is None:
            raise AgentEnvError(f"Unknown process: {name}")
        LOGGER.warning("Restarting %s", name)
        await self.stop(name)
        return await self.start(record.spec, record.env)
