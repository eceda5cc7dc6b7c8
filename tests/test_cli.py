from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import agent_env.cli as env_cli
from agent_env.errors import DetectionFailure
from agent_env.runtime import EngineReady
from agent_env.services import ServiceStatus


ENGINE = EngineReady(
    name="podman",
    binary="/usr/bin/podman",
    rootless=True,
    source="system",
    platform="linux",
    version="4.9.3",
)

CONFIG = """
[environment]
network = "eliza-network"

[ports]
backend = 7777

[[services]]
name = "eliza-postgres"
image = "pgvector/pgvector:pg15"

[[processes]]
name = "backend"
command = ["bun", "run", "server.ts"]
port = "backend"
ready_pattern = "Game backend server is ready"
"""


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.config_file = Path(self.tmp.name) / "agent-env.toml"
        self.config_file.write_text(CONFIG, encoding="utf-8")
        self.runner = CliRunner()

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _invoke(self, *args: str):
        return self.runner.invoke(env_cli.main, ["--config-file", str(self.config_file), *args])

    def test_missing_config_file(self) -> None:
        result = self.runner.invoke(env_cli.main, ["--config-file", "/nonexistent/agent-env.toml", "detect"])
        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("Missing config file", result.output)

    def test_detect_prints_engine(self) -> None:
        with patch("agent_env.cli.RuntimeDetector.detect", new_callable=AsyncMock, return_value=ENGINE):
            result = self._invoke("detect")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("podman 4.9.3", result.output)
        self.assertIn("rootless: yes", result.output)

    def test_detect_failure_exits_nonzero(self) -> None:
        with patch(
            "agent_env.cli.RuntimeDetector.detect",
            new_callable=AsyncMock,
            side_effect=DetectionFailure("No container engine found"),
        ):
            result = self._invoke("detect")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("No container engine found", result.output)

    def test_up_passes_overrides_and_exit_code(self) -> None:
        captured = {}

        async def fake_run(runner_self) -> int:
            captured["config"] = runner_self.config
            return 1

        with patch("agent_env.cli.EnvironmentRunner.run", new=fake_run):
            result = self._invoke("up", "--no-install", "--no-reclaim", "--build-variant", "lightweight")

        self.assertEqual(result.exit_code, 1)
        config = captured["config"]
        self.assertFalse(config.allow_install)
        self.assertFalse(config.reclaim_ports)
        self.assertEqual(config.build_variant, "lightweight")

    def test_up_clean_shutdown_exits_zero(self) -> None:
        async def fake_run(runner_self) -> int:
            return 0

        with patch("agent_env.cli.EnvironmentRunner.run", new=fake_run):
            result = self._invoke("up", "--status-port", "0")
        self.assertEqual(result.exit_code, 0, result.output)

    def test_status_lists_services_and_ports(self) -> None:
        with patch("agent_env.cli.RuntimeDetector.detect", new_callable=AsyncMock, return_value=ENGINE), patch(
            "agent_env.cli.ServiceOrchestrator.status",
            new_callable=AsyncMock,
            return_value=ServiceStatus("eliza-postgres", True, "running", "healthy"),
        ), patch("agent_env.cli.port_in_use", return_value=True):
            result = self._invoke("status")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("service eliza-postgres: running (healthy)", result.output)
        self.assertIn("port backend 7777: in use", result.output)

    def test_status_without_engine(self) -> None:
        with patch(
            "agent_env.cli.RuntimeDetector.detect", new_callable=AsyncMock, side_effect=DetectionFailure("none")
        ), patch("agent_env.cli.port_in_use", return_value=False):
            result = self._invoke("status")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("engine:   none", result.output)
        self.assertIn("port backend 7777: free", result.output)

    def test_down_stops_services_and_clears_ports(self) -> None:
        with patch("agent_env.cli.RuntimeDetector.detect", new_callable=AsyncMock, return_value=ENGINE), patch(
            "agent_env.cli.ServiceOrchestrator.stop", new_callable=AsyncMock
        ) as stop_mock, patch("agent_env.cli.terminate_listeners", return_value=[4242]) as clear_mock:
            result = self._invoke("down", "--clear-ports")
        self.assertEqual(result.exit_code, 0, result.output)
        stop_mock.assert_awaited_once_with("eliza-postgres")
        clear_mock.assert_called_once_with(7777)
        self.assertIn("cleared port 7777", result.output)

    def test_down_uses_compose_when_configured(self) -> None:
        with patch("agent_env.cli.RuntimeDetector.detect", new_callable=AsyncMock, return_value=ENGINE), patch(
            "agent_env.cli.ServiceOrchestrator.compose_down", new_callable=AsyncMock, return_value=True
        ), patch("agent_env.cli.ServiceOrchestrator.stop", new_callable=AsyncMock) as stop_mock:
            result = self._invoke("down")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("compose down", result.output)
        stop_mock.assert_not_awaited()

    def test_restart_stops_then_starts_services(self) -> None:
        calls: list[str] = []

        async def fake_stop(orchestrator, name: str) -> None:
            calls.append(f"stop {name}")

        async def fake_start_all(orchestrator, descriptors) -> list[str]:
            calls.append("start " + ",".join(descriptor.name for descriptor in descriptors))
            return [descriptor.name for descriptor in descriptors]

        async def fake_wait_all(orchestrator, descriptors) -> None:
            calls.append("wait")

        with patch("agent_env.cli.RuntimeDetector.ensure", new_callable=AsyncMock, return_value=ENGINE), patch(
            "agent_env.cli.ServiceOrchestrator.stop", new=fake_stop
        ), patch("agent_env.cli.ServiceOrchestrator.start_all", new=fake_start_all), patch(
            "agent_env.cli.ServiceOrchestrator.wait_all", new=fake_wait_all
        ):
            result = self._invoke("restart")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(calls, ["stop eliza-postgres", "start eliza-postgres", "wait"])
        self.assertIn("restarted eliza-postgres", result.output)

    def test_build_reports_built_images(self) -> None:
        with patch("agent_env.cli.RuntimeDetector.ensure", new_callable=AsyncMock, return_value=ENGINE), patch(
            "agent_env.cli.ImageBuilder.build_stale", new_callable=AsyncMock, return_value=["eliza-game:latest"]
        ) as build_mock:
            result = self._invoke("build", "--force")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("built eliza-game:latest", result.output)
        self.assertTrue(build_mock.await_args.kwargs["force"])

    def test_install_runs_strategies(self) -> None:
        with patch(
            "agent_env.cli.RuntimeInstaller.install", new_callable=AsyncMock, return_value="package-manager-podman"
        ), patch("agent_env.cli.RuntimeDetector.detect", new_callable=AsyncMock, return_value=ENGINE):
            result = self._invoke("install")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("installed via package-manager-podman", result.output)

    def test_ports_check(self) -> None:
        with patch("agent_env.cli.port_in_use", return_value=True), patch(
            "agent_env.cli.listening_pids", return_value={101, 100}
        ):
            result = self._invoke("ports", "check", "7777")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("port 7777: in use (pids: 100, 101)", result.output)

    def test_ports_clear(self) -> None:
        with patch("agent_env.cli.terminate_listeners", side_effect=[[100], []]), patch(
            "agent_env.cli.port_in_use", return_value=False
        ):
            result = self._invoke("ports", "clear", "7777", "5173")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("port 7777: terminated 100", result.output)
        self.assertIn("port 5173: already free", result.output)

    def test_ports_clear_rejects_invalid_port(self) -> None:
        result = self._invoke("ports", "clear", "70000")
        self.assertNotEqual(result.exit_code, 0)


if __name__ == "__main__":
    unittest.main()
