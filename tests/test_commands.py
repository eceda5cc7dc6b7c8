from __future__ import annotations

import unittest
from pathlib import Path

import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import agent_env.commands as env_commands
from agent_env.errors import AgentEnvError, ImageBuildFailed


class RunCommandTests(unittest.IsolatedAsyncioTestCase):
    async def test_captures_output_and_exit_code(self) -> None:
        result = await env_commands.run_command(
            [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr); sys.exit(4)"]
        )
        self.assertEqual(result.returncode, 4)
        self.assertFalse(result.ok)
        self.assertEqual(result.stdout.strip(), "out")
        self.assertEqual(result.stderr.strip(), "err")

    async def test_missing_executable_is_127(self) -> None:
        result = await env_commands.run_command(["/nonexistent/bin/podman", "--version"])
        self.assertEqual(result.returncode, env_commands.COMMAND_NOT_FOUND_RETURNCODE)

    async def test_spawn_errors_are_reported_not_raised(self) -> None:
        not_a_dir = Path(__file__).resolve()
        result = await env_commands.run_command([sys.executable, "-c", "pass"], cwd=not_a_dir)
        self.assertEqual(result.returncode, env_commands.COMMAND_CANNOT_EXECUTE_RETURNCODE)
        self.assertFalse(result.ok)

        streamed = await env_commands.run_streaming([sys.executable, "-c", "pass"], cwd=not_a_dir)
        self.assertEqual(streamed.returncode, env_commands.COMMAND_CANNOT_EXECUTE_RETURNCODE)

    async def test_timeout_kills_command(self) -> None:
        result = await env_commands.run_command([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.2)
        self.assertEqual(result.returncode, env_commands.COMMAND_TIMEOUT_RETURNCODE)
        self.assertIn("timed out", result.stderr)

    async def test_env_overlays_environment(self) -> None:
        result = await env_commands.run_command(
            [sys.executable, "-c", "import os; print(os.environ['AGENT_ENV_TEST'], 'PATH' in os.environ)"],
            env={"AGENT_ENV_TEST": "yes"},
        )
        self.assertEqual(result.stdout.strip(), "yes True")

    async def test_streaming_merges_and_forwards_lines(self) -> None:
        lines: list[str] = []
        result = await env_commands.run_streaming(
            [sys.executable, "-u", "-c", "import sys; print('one'); print('two', file=sys.stderr)"],
            on_output=lines.append,
        )
        self.assertTrue(result.ok)
        self.assertEqual(sorted(line.strip() for line in lines), ["one", "two"])
        self.assertIn("one", result.output)


class ErrorFormattingTests(unittest.TestCase):
    def test_message_includes_exit_code_and_tail(self) -> None:
        error = ImageBuildFailed("Image build failed for app", returncode=2, output_tail="step 3 failed")
        self.assertEqual(error.format_message(), "Image build failed for app (exit code 2)\nstep 3 failed")

    def test_tail_is_bounded(self) -> None:
        error = AgentEnvError("boom", output_tail="x" * 5000 + "END")
        self.assertTrue(error.output_tail.endswith("END"))
        self.assertLessEqual(len(error.output_tail), 2000)


if __name__ == "__main__":
    unittest.main()
