from __future__ import annotations

import abc
import asyncio
import getpass
import json
import logging
import os
import re
import shutil
import sys
import tempfile
import urllib.request
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable, Sequence

from agent_env.commands import CommandResult, run_command, run_streaming, sudo_prefix
from agent_env.errors import DetectionFailure, InstallFailure, UnsupportedPlatform


LOGGER = logging.getLogger("agent_env.runtime")
PLATFORM_DARWIN = "darwin"
PLATFORM_LINUX = "linux"
PLATFORM_WSL = "wsl"
PLATFORM_WINDOWS = "windows"
SOURCE_BUNDLED = "bundled"
SOURCE_SYSTEM = "system"
SOURCE_INSTALLED = "installed"
ENGINE_NAMES = ("podman", "docker")
VERSION_RE = re.compile(r"version\s+v?(\d+\.\d+(?:\.\d+)?)", re.IGNORECASE)
PROBE_TIMEOUT_SECONDS = 15.0
DOCKER_INSTALL_SCRIPT_URL = "https://get.docker.com"
HOMEBREW_INSTALL_SCRIPT_URL = "https://raw.githubusercontent.com/Homebrew/install/HEAD/install.sh"
HOMEBREW_PATHS = ("/opt/homebrew/bin/brew", "/usr/local/bin/brew")
USER_NAMESPACES_VALUE = "28633"
USER_NAMESPACES_SYSCTL_FILE = "/etc/sysctl.d/99-rootless-containers.conf"


def detect_platform() -> str:
    if sys.platform == "darwin":
        return PLATFORM_DARWIN
    if sys.platform.startswith("win"):
        return PLATFORM_WINDOWS
    try:
        proc_version = Path("/proc/version").read_text(encoding="utf-8", errors="ignore")
    except OSError:
        proc_version = ""
    if "microsoft" in proc_version.lower():
        return PLATFORM_WSL
    return PLATFORM_LINUX


def parse_version(output: str) -> str | None:
    match = VERSION_RE.search(output or "")
    if match is None:
        return None
    return match.group(1)


def engine_name_for_binary(binary: str) -> str:
    return "docker" if "docker" in Path(binary).name.lower() else "podman"


@dataclass(frozen=True)
class EngineReady:
    name: str
    binary: str
    rootless: bool
    source: str
    platform: str
    version: str

    def command(self, *args: str) -> list[str]:
        return [self.binary, *args]


async def _probe_version(binary: str) -> str | None:
    result = await run_command([binary, "--version"], timeout=PROBE_TIMEOUT_SECONDS)
    if not result.ok:
        LOGGER.debug("%s --version failed: %s", binary, result.output)
        return None
    version = parse_version(result.output)
    if version is None:
        LOGGER.debug("Unparseable version output from %s: %r", binary, result.output)
    return version


async def _probe_rootless(name: str, binary: str) -> bool:
    if name == "podman":
        result = await run_command([binary, "info", "--format", "json"], timeout=PROBE_TIMEOUT_SECONDS)
        if not result.ok:
            return False
        try:
            info = json.loads(result.stdout)
        except json.JSONDecodeError:
            return False
        security = (info.get("host") or {}).get("security") or {}
        return bool(security.get("rootless"))

    result = await run_command(
        [binary, "info", "--format", "{{json .SecurityOptions}}"], timeout=PROBE_TIMEOUT_SECONDS
    )
    return result.ok and "rootless" in result.stdout


class RuntimeDetector:
    """Resolve the container engine once per session.

    Probe order is the bundled binary, then system Podman, then system
    Docker. The first tier whose ``--version`` output parses wins.
    """

    def __init__(
        self,
        bundled_binary: Path | None = None,
        platform: str | None = None,
        installer: RuntimeInstaller | None = None,
        allow_install: bool = True,
    ) -> None:
        self.bundled_binary = bundled_binary
        self.platform = platform or detect_platform()
        self.installer = installer or RuntimeInstaller(platform=self.platform)
        self.allow_install = allow_install
        self._engine: EngineReady | None = None
        self._lock = asyncio.Lock()

    @property
    def engine(self) -> EngineReady | None:
        return self._engine

    def _candidates(self) -> list[tuple[str, str, str]]:
        candidates: list[tuple[str, str, str]] = []
        if self.bundled_binary is not None:
            bundled = Path(self.bundled_binary)
            if bundled.is_file() and os.access(bundled, os.X_OK):
                candidates.append((engine_name_for_binary(str(bundled)), str(bundled), SOURCE_BUNDLED))
            else:
                LOGGER.debug("Bundled engine not found at %s", bundled)
        for name in ENGINE_NAMES:
            binary = shutil.which(name)
            if binary:
                candidates.append((name, binary, SOURCE_SYSTEM))
        return candidates

    async def _probe(self) -> EngineReady | None:
        for name, binary, source in self._candidates():
            version = await _probe_version(binary)
            if version is None:
                continue
            rootless = await _probe_rootless(name, binary)
            engine = EngineReady(
                name=name,
                binary=binary,
                rootless=rootless,
                source=source,
                platform=self.platform,
                version=version,
            )
            LOGGER.info(
                "Container engine: %s %s (%s, %s)",
                name,
                version,
                source,
                "rootless" if rootless else "rootful",
            )
            return engine
        return None

    async def detect(self) -> EngineReady:
        async with self._lock:
            if self._engine is not None:
                return self._engine
            engine = await self._probe()
            if engine is None:
                raise DetectionFailure("No container engine found (checked bundled binary, podman, docker)")
            self._engine = engine
            return engine

    async def ensure(self) -> EngineReady:
        try:
            return await self.detect()
        except DetectionFailure:
            if not self.allow_install:
                raise DetectionFailure(
                    "No container engine found and installation is disabled; run `agent-env install`"
                ) from None

        async with self._lock:
            if self._engine is not None:
                return self._engine
            strategy = await self.installer.install()
            engine = await self._probe()
            if engine is None:
                raise InstallFailure(f"{strategy} finished but no container engine could be detected")
            self._engine = replace(engine, source=SOURCE_INSTALLED)
            return self._engine


async def _run_step(cmd: Sequence[str], description: str, *, env: dict[str, str] | None = None) -> CommandResult:
    result = await run_streaming(cmd, env=env)
    if not result.ok:
        raise InstallFailure(f"{description} failed", returncode=result.returncode, output_tail=result.output)
    return result


def _download(url: str, destination: Path) -> None:
    with urllib.request.urlopen(url, timeout=60) as response:
        destination.write_bytes(response.read())


async def _fetch_script(url: str, destination: Path) -> None:
    try:
        await asyncio.to_thread(_download, url, destination)
    except OSError as exc:
        raise InstallFailure(f"Unable to download {url}: {exc}") from exc


class InstallStrategy(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short identifier used in logs."""
        pass

    @abc.abstractmethod
    def supports(self, platform: str) -> bool:
        pass

    @abc.abstractmethod
    async def install(self) -> None:
        """Install a container engine, raising InstallFailure on error."""
        pass


class MacOSPodmanStrategy(InstallStrategy):
    @property
    def name(self) -> str:
        return "homebrew-podman"

    def supports(self, platform: str) -> bool:
        return platform == PLATFORM_DARWIN

    def _brew(self) -> str | None:
        found = shutil.which("brew")
        if found:
            return found
        for candidate in HOMEBREW_PATHS:
            if Path(candidate).exists():
                return candidate
        return None

    async def install(self) -> None:
        brew = self._brew()
        if brew is None:
            LOGGER.info("Homebrew not found; installing it")
            with tempfile.TemporaryDirectory(prefix="agent-env-brew-") as tmp:
                script = Path(tmp) / "install.sh"
                await _fetch_script(HOMEBREW_INSTALL_SCRIPT_URL, script)
                await _run_step(["/bin/bash", str(script)], "Homebrew installation", env={"NONINTERACTIVE": "1"})
            brew = self._brew()
            if brew is None:
                raise InstallFailure("Homebrew installation finished but brew is not on PATH")

        await _run_step([brew, "install", "podman"], "brew install podman")
        podman = shutil.which("podman") or str(Path(brew).parent / "podman")

        init = await run_streaming([podman, "machine", "init"])
        if not init.ok and "already exists" not in init.output.lower():
            raise InstallFailure("podman machine init failed", returncode=init.returncode, output_tail=init.output)

        start = await run_streaming([podman, "machine", "start"])
        if not start.ok and "already running" not in start.output.lower():
            raise InstallFailure("podman machine start failed", returncode=start.returncode, output_tail=start.output)


PACKAGE_MANAGERS: tuple[tuple[str, tuple[str, ...], tuple[str, ...]], ...] = (
    ("apt-get", ("apt-get", "update"), ("apt-get", "install", "-y", "podman", "uidmap", "slirp4netns")),
    ("dnf", ("dnf", "makecache"), ("dnf", "install", "-y", "podman")),
    ("yum", ("yum", "makecache"), ("yum", "install", "-y", "podman")),
    ("zypper", ("zypper", "--non-interactive", "refresh"), ("zypper", "--non-interactive", "install", "podman")),
    ("pacman", ("pacman", "-Sy", "--noconfirm"), ("pacman", "-S", "--noconfirm", "podman")),
)


class LinuxPodmanStrategy(InstallStrategy):
    @property
    def name(self) -> str:
        return "package-manager-podman"

    def supports(self, platform: str) -> bool:
        return platform in (PLATFORM_LINUX, PLATFORM_WSL)

    async def install(self) -> None:
        manager = next((entry for entry in PACKAGE_MANAGERS if shutil.which(entry[0])), None)
        if manager is None:
            raise InstallFailure("No supported package manager found (apt-get, dnf, yum, zypper, pacman)")
        tool, refresh, install = manager
        sudo = sudo_prefix()
        LOGGER.info("Installing podman with %s", tool)
        await _run_step([*sudo, *refresh], f"{tool} metadata refresh")
        await _run_step([*sudo, *install], f"{tool} install podman")
        await self._configure_user_namespaces(sudo)

    async def _configure_user_namespaces(self, sudo: list[str]) -> None:
        setting = f"user.max_user_namespaces={USER_NAMESPACES_VALUE}"
        result = await run_command([*sudo, "sysctl", "-w", setting])
        if not result.ok:
            LOGGER.warning("Could not enable rootless user namespaces: %s", result.output)
            return
        persist = await run_command([*sudo, "sh", "-c", f"echo '{setting}' > {USER_NAMESPACES_SYSCTL_FILE}"])
        if not persist.ok:
            LOGGER.warning("Could not persist %s: %s", USER_NAMESPACES_SYSCTL_FILE, persist.output)


class LinuxDockerScriptStrategy(InstallStrategy):
    @property
    def name(self) -> str:
        return "docker-install-script"

    def supports(self, platform: str) -> bool:
        return platform in (PLATFORM_LINUX, PLATFORM_WSL)

    async def install(self) -> None:
        sudo = sudo_prefix()
        with tempfile.TemporaryDirectory(prefix="agent-env-docker-") as tmp:
            script = Path(tmp) / "get-docker.sh"
            await _fetch_script(DOCKER_INSTALL_SCRIPT_URL, script)
            await _run_step([*sudo, "sh", str(script)], "Docker install script")

        if sudo:
            user = getpass.getuser()
            result = await run_command([*sudo, "usermod", "-aG", "docker", user])
            if result.ok:
                LOGGER.warning("Added %s to the docker group; log out and back in for it to take effect", user)
            else:
                LOGGER.warning("Could not add %s to the docker group: %s", user, result.output)

        if shutil.which("systemctl"):
            result = await run_command([*sudo, "systemctl", "enable", "--now", "docker"])
            if not result.ok:
                LOGGER.warning("Could not enable the docker service: %s", result.output)


class WindowsManualStrategy(InstallStrategy):
    @property
    def name(self) -> str:
        return "windows-manual"

    def supports(self, platform: str) -> bool:
        return platform == PLATFORM_WINDOWS

    async def install(self) -> None:
        raise UnsupportedPlatform(
            "Automatic container engine installation is not supported on Windows. "
            "Install Podman Desktop (https://podman-desktop.io) or Docker Desktop "
            "(https://www.docker.com/products/docker-desktop), or run agent-env inside WSL."
        )


def default_strategies() -> list[InstallStrategy]:
    return [
        MacOSPodmanStrategy(),
        LinuxPodmanStrategy(),
        LinuxDockerScriptStrategy(),
        WindowsManualStrategy(),
    ]


class RuntimeInstaller:
    def __init__(self, strategies: Iterable[InstallStrategy] | None = None, platform: str | None = None) -> None:
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.platform = platform or detect_platform()

    def applicable(self) -> list[InstallStrategy]:
        return [strategy for strategy in self.strategies if strategy.supports(self.platform)]

    async def install(self) -> str:
        """Try each applicable strategy in order; return the name of the one that succeeded."""
        strategies = self.applicable()
        if not strategies:
            raise UnsupportedPlatform(f"No container engine install strategy for platform {self.platform}")

        failures: list[InstallFailure] = []
        for strategy in strategies:
            LOGGER.info("Installing container engine via %s", strategy.name)
            try:
                await strategy.install()
            except InstallFailure as exc:
                LOGGER.warning("[failed] %s: %s", strategy.name, exc.message)
                failures.append(exc)
                continue
            LOGGER.info("[ok] %s", strategy.name)
            return strategy.name

        if len(failures) == 1:
            raise failures[0]
        summary = "; ".join(f"{strategy.name}: {exc.message}" for strategy, exc in zip(strategies, failures))
        raise InstallFailure(f"All container engine install strategies failed ({summary})")
