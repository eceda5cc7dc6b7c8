from __future__ import annotations

import asyncio
import os
import tempfile
import textwrap
import time
import unittest
from pathlib import Path
from unittest.mock import patch

import psutil

import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import agent_env.processes as env_processes
from agent_env.config import ProcessSpec
from agent_env.errors import AgentEnvError, ProcessCrash, ProcessStartupTimeout


def _python_spec(name: str, script: str, **kwargs) -> ProcessSpec:
    return ProcessSpec(
        name=name,
        command=(sys.executable, "-u", "-c", textwrap.dedent(script)),
        cwd=Path(tempfile.gettempdir()),
        **kwargs,
    )


READY_SERVER = """
    import time
    print("booting")
    time.sleep(0.2)
    print("Game backend server is ready")
    while True:
        time.sleep(1)
"""

TERM_IGNORING_SERVER = """
    import signal, time
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("Game backend server is ready")
    while True:
        time.sleep(1)
"""


def _pid_alive(pid: int) -> bool:
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return False
    return proc.status() != psutil.STATUS_ZOMBIE


class ProcessSupervisorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.crashes: list[str] = []
        self.supervisor = env_processes.ProcessSupervisor(
            grace_seconds=1.0,
            kill_timeout=2.0,
            on_crash=lambda record: self.crashes.append(record.name),
        )

    async def asyncTearDown(self) -> None:
        await self.supervisor.stop_all()

    async def test_pattern_readiness(self) -> None:
        spec = _python_spec("backend", READY_SERVER, ready_pattern="Game backend server is ready", ready_timeout=10)
        record = await self.supervisor.start(spec)

        self.assertEqual(record.state, env_processes.STATE_RUNNING)
        self.assertEqual(record.ready_source, env_processes.READY_PATTERN)
        self.assertIn("booting", list(record.stdout_tail))

        await self.supervisor.stop("backend")
        self.assertEqual(record.state, env_processes.STATE_STOPPED)
        self.assertFalse(_pid_alive(record.pid))
        self.assertEqual(self.crashes, [])

    async def test_timeout_readiness_without_pattern(self) -> None:
        spec = _python_spec("frontend", "import time\nwhile True:\n    time.sleep(1)\n", ready_timeout=0.3)
        started = time.monotonic()
        record = await self.supervisor.start(spec)

        self.assertGreaterEqual(time.monotonic() - started, 0.3)
        self.assertEqual(record.ready_source, env_processes.READY_TIMEOUT)
        self.assertEqual(record.state, env_processes.STATE_RUNNING)

    async def test_pattern_never_printed_is_startup_timeout(self) -> None:
        spec = _python_spec(
            "backend",
            "import time\nprint('still loading')\nwhile True:\n    time.sleep(1)\n",
            ready_pattern="Game backend server is ready",
            ready_timeout=0.5,
        )
        with self.assertRaises(ProcessStartupTimeout):
            await self.supervisor.start(spec)
        record = self.supervisor.get("backend")
        self.assertEqual(record.state, env_processes.STATE_STOPPED)
        self.assertFalse(_pid_alive(record.pid))

    async def test_exit_before_ready_is_crash(self) -> None:
        spec = _python_spec(
            "backend",
            "import sys\nprint('fatal: config missing', file=sys.stderr)\nsys.exit(3)\n",
            ready_pattern="Game backend server is ready",
            ready_timeout=10,
        )
        with self.assertRaises(ProcessCrash) as ctx:
            await self.supervisor.start(spec)
        self.assertEqual(ctx.exception.returncode, 3)
        self.assertIn("config missing", ctx.exception.output_tail)
        self.assertEqual(self.crashes, [])

    async def test_stderr_failure_pattern_fails_startup(self) -> None:
        spec = _python_spec(
            "backend",
            """
            import sys, time
            print("Error: listen EADDRINUSE: address already in use :::7777", file=sys.stderr, flush=True)
            while True:
                time.sleep(1)
            """,
            ready_pattern="Game backend server is ready",
            ready_timeout=10,
            failure_patterns=("EADDRINUSE",),
        )
        with self.assertRaises(ProcessCrash) as ctx:
            await self.supervisor.start(spec)
        self.assertIn("EADDRINUSE", ctx.exception.message)
        record = self.supervisor.get("backend")
        self.assertFalse(_pid_alive(record.pid))

    async def test_sigterm_ignoring_child_is_killed_after_grace(self) -> None:
        spec = _python_spec(
            "backend", TERM_IGNORING_SERVER, ready_pattern="Game backend server is ready", ready_timeout=10
        )
        record = await self.supervisor.start(spec)

        started = time.monotonic()
        with self.assertLogs("agent_env.processes", level="WARNING"):
            await self.supervisor.stop("backend")
        elapsed = time.monotonic() - started

        self.assertGreaterEqual(elapsed, 1.0)
        self.assertLess(elapsed, 1.0 + 2.0 + 2.0)
        self.assertEqual(record.state, env_processes.STATE_STOPPED)
        self.assertFalse(_pid_alive(record.pid))

    @unittest.skipUnless(hasattr(os, "killpg"), "process groups are POSIX-only")
    async def test_stop_leaves_no_orphaned_grandchild(self) -> None:
        spec = _python_spec(
            "backend",
            f"""
            import subprocess, sys, time
            child = subprocess.Popen([{sys.executable!r}, "-c", "import time\\nwhile True:\\n    time.sleep(1)"])
            print("grandchild", child.pid, flush=True)
            print("Game backend server is ready", flush=True)
            while True:
                time.sleep(1)
            """,
            ready_pattern="Game backend server is ready",
            ready_timeout=10,
        )
        record = await self.supervisor.start(spec)
        grandchild_line = next(line for line in record.stdout_tail if line.startswith("grandchild"))
        grandchild_pid = int(grandchild_line.split()[1])
        self.assertTrue(_pid_alive(grandchild_pid))

        await self.supervisor.stop("backend")

        deadline = time.monotonic() + 3
        while _pid_alive(grandchild_pid) and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        self.assertFalse(_pid_alive(grandchild_pid))

    async def test_stop_without_process_groups_reaps_descendants(self) -> None:
        spec = _python_spec(
            "backend",
            f"""
            import subprocess, sys, time
            child = subprocess.Popen([{sys.executable!r}, "-c", "import time\\nwhile True:\\n    time.sleep(1)"])
            print("grandchild", child.pid, flush=True)
            print("Game backend server is ready", flush=True)
            while True:
                time.sleep(1)
            """,
            ready_pattern="Game backend server is ready",
            ready_timeout=10,
        )
        with patch.object(env_processes, "HAS_PROCESS_GROUPS", False):
            record = await self.supervisor.start(spec)
            grandchild_line = next(line for line in record.stdout_tail if line.startswith("grandchild"))
            grandchild_pid = int(grandchild_line.split()[1])
            self.assertTrue(_pid_alive(grandchild_pid))

            await self.supervisor.stop("backend")

        deadline = time.monotonic() + 3
        while _pid_alive(grandchild_pid) and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        self.assertFalse(_pid_alive(grandchild_pid))
        self.assertFalse(_pid_alive(record.pid))
        self.assertEqual(record.state, env_processes.STATE_STOPPED)

    async def test_unexpected_exit_after_ready_is_reported(self) -> None:
        spec = _python_spec(
            "backend",
            """
            import sys, time
            print("Game backend server is ready", flush=True)
            time.sleep(0.3)
            print("segfault-ish", file=sys.stderr, flush=True)
            sys.exit(9)
            """,
            ready_pattern="Game backend server is ready",
            ready_timeout=10,
        )
        record = await self.supervisor.start(spec)
        deadline = time.monotonic() + 5
        while record.state != env_processes.STATE_CRASHED and time.monotonic() < deadline:
            await asyncio.sleep(0.05)

        self.assertEqual(record.state, env_processes.STATE_CRASHED)
        self.assertEqual(record.exit_code, 9)
        self.assertEqual(self.crashes, ["backend"])

    async def test_duplicate_live_name_rejected(self) -> None:
        spec = _python_spec("backend", READY_SERVER, ready_pattern="Game backend server is ready", ready_timeout=10)
        await self.supervisor.start(spec)
        with self.assertRaises(AgentEnvError):
            await self.supervisor.spawn(spec)

    async def test_missing_executable_is_crash(self) -> None:
        spec = ProcessSpec(name="ghost", command=("/nonexistent/bin/bun", "run"), cwd=Path(tempfile.gettempdir()))
        with self.assertRaises(ProcessCrash):
            await self.supervisor.start(spec)

    async def test_stop_all_is_concurrent_and_idempotent(self) -> None:
        specs = [
            _python_spec(name, TERM_IGNORING_SERVER, ready_pattern="Game backend server is ready", ready_timeout=10)
            for name in ("backend", "worker")
        ]
        records = [await self.supervisor.start(spec) for spec in specs]

        started = time.monotonic()
        await asyncio.gather(self.supervisor.stop_all(), self.supervisor.stop_all())
        elapsed = time.monotonic() - started

        self.assertLess(elapsed, 2 * 1.0 + 2.0)
        for record in records:
            self.assertEqual(record.state, env_processes.STATE_STOPPED)
            self.assertFalse(_pid_alive(record.pid))

    async def test_restart_spawns_new_process(self) -> None:
        spec = _python_spec("backend", READY_SERVER, ready_pattern="Game backend server is ready", ready_timeout=10)
        first = await self.supervisor.start(spec)
        first_pid = first.pid

        second = await self.supervisor.restart("backend")

        self.assertNotEqual(second.pid, first_pid)
        self.assertEqual(second.state, env_processes.STATE_RUNNING)
        self.assertEqual(first.state, env_processes.STATE_STOPPED)
        self.assertIs(self.supervisor.get("backend"), second)

    async def test_child_env_overlay(self) -> None:
        spec = _python_spec(
            "backend",
            """
            import os, time
            print("port", os.environ["PORT"], os.environ["EXTRA"], flush=True)
            print("Game backend server is ready", flush=True)
            while True:
                time.sleep(1)
            """,
            env={"PORT": "7778"},
            ready_pattern="Game backend server is ready",
            ready_timeout=10,
        )
        record = await self.supervisor.start(spec, env={"EXTRA": "yes"})
        self.assertIn("port 7778 yes", list(record.stdout_tail))


if __name__ == "__main__":
    unittest.main()
