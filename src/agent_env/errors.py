from __future__ import annotations

import click


OUTPUT_TAIL_MAX_CHARS = 2000


def _tail(text: str, max_chars: int = OUTPUT_TAIL_MAX_CHARS) -> str:
    stripped = str(text or "").strip()
    if len(stripped) <= max_chars:
        return stripped
    return stripped[-max_chars:]


class AgentEnvError(click.ClickException):
    """Base class for every failure surfaced by agent-env.

    ``returncode`` is the exit code of the child command or process that
    failed (if any) and ``output_tail`` the last captured output, so a
    failure can be diagnosed from the log alone.
    """

    fatal = True

    def __init__(self, message: str, *, returncode: int | None = None, output_tail: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output_tail = _tail(output_tail)

    def format_message(self) -> str:
        parts = [self.message]
        if self.returncode is not None:
            parts.append(f"(exit code {self.returncode})")
        text = " ".join(parts)
        if self.output_tail:
            text = f"{text}\n{self.output_tail}"
        return text


class ConfigError(AgentEnvError):
    pass


class DetectionFailure(AgentEnvError):
    fatal = False


class InstallFailure(AgentEnvError):
    pass


class UnsupportedPlatform(InstallFailure):
    pass


class BuildFailure(AgentEnvError):
    pass


class BuildPrereqMissing(BuildFailure):
    pass


class ImageBuildFailed(BuildFailure):
    pass


class ServiceStartFailure(AgentEnvError):
    pass


class PortConflictUnresolved(AgentEnvError):
    fatal = False


class ProcessStartupTimeout(AgentEnvError):
    pass


class ProcessCrash(AgentEnvError):
    fatal = False


class HealthCheckFailure(AgentEnvError):
    fatal = False


class ShutdownRequested(AgentEnvError):
    """Raised between startup stages once a termination signal arrived."""
