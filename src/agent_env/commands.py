from __future__ import annotations

import asyncio
import logging
import os
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

import click


LOGGER = logging.getLogger("agent_env.commands")
COMMAND_NOT_FOUND_RETURNCODE = 127
COMMAND_CANNOT_EXECUTE_RETURNCODE = 126
COMMAND_TIMEOUT_RETURNCODE = 124


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return ((self.stdout or "") + (self.stderr or "")).strip()

    def describe(self) -> str:
        return shlex.join(self.argv)


def _merged_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if env is None:
        return None
    merged = dict(os.environ)
    merged.update({str(key): str(value) for key, value in env.items()})
    return merged


def _spawn_failure(argv: tuple[str, ...], exc: OSError) -> CommandResult:
    if isinstance(exc, FileNotFoundError):
        return CommandResult(argv, COMMAND_NOT_FOUND_RETURNCODE, "", str(exc))
    return CommandResult(argv, COMMAND_CANNOT_EXECUTE_RETURNCODE, "", str(exc))


async def run_command(
    cmd: Iterable[str],
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command to completion and capture its output.

    A missing executable is reported as exit code 127, and any other spawn
    error (bad cwd, no permission) as 126, instead of raising, so probing
    callers can fall through without special cases.
    """
    argv = tuple(str(part) for part in cmd)
    LOGGER.debug("$ %s", shlex.join(argv))
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            env=_merged_env(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return _spawn_failure(argv, exc)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        stdout, stderr = await process.communicate()
        return CommandResult(
            argv,
            COMMAND_TIMEOUT_RETURNCODE,
            stdout.decode("utf-8", errors="ignore"),
            stderr.decode("utf-8", errors="ignore") + f"\nCommand timed out after {timeout}s",
        )
    return CommandResult(
        argv,
        int(process.returncode or 0),
        stdout.decode("utf-8", errors="ignore"),
        stderr.decode("utf-8", errors="ignore"),
    )


async def run_streaming(
    cmd: Iterable[str],
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    on_output: Callable[[str], None] | None = None,
) -> CommandResult:
    """Run a long command, echoing its combined output while capturing it."""
    argv = tuple(str(part) for part in cmd)
    start_line = f"$ {shlex.join(argv)}"
    LOGGER.info(start_line)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            env=_merged_env(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        return _spawn_failure(argv, exc)

    captured: list[str] = []
    stdout = process.stdout
    if stdout is not None:
        while True:
            raw = await stdout.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="ignore")
            captured.append(line)
            if on_output is not None:
                on_output(line)
            else:
                click.echo(line, nl=False, file=sys.stdout)
    returncode = await process.wait()
    return CommandResult(argv, int(returncode or 0), "".join(captured), "")


def sudo_prefix() -> list[str]:
    geteuid = getattr(os, "geteuid", None)
    if geteuid is not None and geteuid() == 0:
        return []
    return ["sudo"]
