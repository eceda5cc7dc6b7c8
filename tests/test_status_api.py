from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import agent_env.status_api as status_api
from agent_env.config import EnvironmentConfig, ProcessSpec
from agent_env.errors import ProcessCrash
from agent_env.runner import EnvironmentRunner

from test_runner import FakeArbiter, FakeSupervisor


class StatusApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.events: list[str] = []
        self.supervisor = FakeSupervisor(self.events)
        self.supervisor.started["backend"] = ProcessSpec(name="backend", command=("bun",), cwd=root)
        config = EnvironmentConfig(project_root=root, ports={"backend": 7777})
        self.runner = EnvironmentRunner(config, arbiter=FakeArbiter(self.events), supervisor=self.supervisor)
        self.client = TestClient(status_api.create_status_app(self.runner))

    def tearDown(self) -> None:
        self.client.close()
        self.tmp.cleanup()

    def test_health_uses_healthy_envelope(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["status"], "healthy")
        self.assertTrue(response.json()["success"])

    def test_status_reports_runner_state(self) -> None:
        self.runner.arbiter.resolve("backend", 7777)
        payload = self.client.get("/api/status").json()
        self.assertEqual(payload["phase"], "idle")
        self.assertIsNone(payload["engine"])
        self.assertEqual(payload["ports"]["backend"]["resolved"], 7777)
        self.assertEqual(payload["processes"], [])

    def test_restart_known_process(self) -> None:
        response = self.client.post("/api/processes/backend/restart")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["process"]["name"], "backend")
        self.assertIn("restart backend", self.events)

    def test_restart_unknown_process_is_404(self) -> None:
        response = self.client.post("/api/processes/ghost/restart")
        self.assertEqual(response.status_code, 404)

    def test_restart_failure_is_409(self) -> None:
        async def failing_restart(name: str):
            raise ProcessCrash(f"{name} exited before becoming ready", returncode=1)

        self.supervisor.restart = failing_restart
        response = self.client.post("/api/processes/backend/restart")
        self.assertEqual(response.status_code, 409)
        self.assertIn("exited before becoming ready", response.json()["detail"])


if __name__ == "__main__":
    unittest.main()
