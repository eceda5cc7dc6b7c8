from __future__ import annotations

import logging
import os
import shutil
import socket
import subprocess
import time
from dataclasses import dataclass

import psutil

from agent_env.errors import PortConflictUnresolved


LOGGER = logging.getLogger("agent_env.ports")
DEFAULT_SEARCH_WINDOW = 20
RECLAIM_TERM_TIMEOUT_SECONDS = 3.0
RECLAIM_RELEASE_TIMEOUT_SECONDS = 2.0
MAX_PORT = 65535


@dataclass(frozen=True)
class PortAssignment:
    service: str
    requested: int
    resolved: int
    reclaimed: bool = False


def _lsof_listening_pids(port: int) -> set[int] | None:
    if shutil.which("lsof") is None:
        return None
    result = subprocess.run(
        ["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"],
        capture_output=True,
        text=True,
        check=False,
    )
    pids: set[int] = set()
    for line in result.stdout.splitlines():
        line = line.strip()
        if line.isdigit():
            pids.add(int(line))
    return pids


def listening_pids(port: int) -> set[int]:
    """Return the pids listening on ``port``.

    Enumerates sockets with psutil. Where that is denied (macOS without root)
    lsof is consulted instead; when lsof is missing too the owner is unknown
    and an empty set is returned, leaving occupancy to the bind probe.
    """
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        pids = _lsof_listening_pids(port)
        if pids is None:
            LOGGER.debug("Cannot enumerate listeners on port %d; owner unknown", port)
            return set()
        return pids
    return {
        conn.pid
        for conn in connections
        if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN and conn.pid
    }


def _has_listener(port: int) -> bool:
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        return bool(_lsof_listening_pids(port))
    return any(
        conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN for conn in connections
    )


def _can_bind(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return False
    return True


def port_in_use(port: int) -> bool:
    return _has_listener(port) or not _can_bind(port)


def _describe_process(proc: psutil.Process) -> str:
    try:
        name = proc.name()
        cmdline = " ".join(proc.cmdline())
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return f"pid={proc.pid}"
    return f"pid={proc.pid} name={name} cmdline={cmdline!r}"


def terminate_listeners(port: int, timeout: float = RECLAIM_TERM_TIMEOUT_SECONDS) -> list[int]:
    """SIGTERM, then SIGKILL, every process listening on ``port``."""
    own_pid = os.getpid()
    targets: list[psutil.Process] = []
    for pid in sorted(listening_pids(port)):
        if pid == own_pid:
            LOGGER.warning("Refusing to terminate own process holding port %d", port)
            continue
        try:
            proc = psutil.Process(pid)
        except psutil.NoSuchProcess:
            continue
        LOGGER.warning("Reclaiming port %d: terminating %s", port, _describe_process(proc))
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            LOGGER.error("Permission denied terminating pid %d on port %d", pid, port)
            continue
        targets.append(proc)

    if not targets:
        return []

    _gone, alive = psutil.wait_procs(targets, timeout=timeout)
    for proc in alive:
        LOGGER.warning("pid %d ignored SIGTERM; sending SIGKILL", proc.pid)
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    if alive:
        psutil.wait_procs(alive, timeout=timeout)
    return [proc.pid for proc in targets]


class PortArbiter:
    """Session-scoped port claims for the environment's services."""

    def __init__(self, search_window: int = DEFAULT_SEARCH_WINDOW, allow_reclaim: bool = True) -> None:
        self.search_window = max(0, int(search_window))
        self.allow_reclaim = allow_reclaim
        self._assignments: dict[str, PortAssignment] = {}

    def _claimed_by_other(self, port: int, service: str | None) -> bool:
        return any(
            assignment.resolved == port and name != service for name, assignment in self._assignments.items()
        )

    def is_port_free(self, port: int, service: str | None = None) -> bool:
        if self._claimed_by_other(port, service):
            return False
        return not port_in_use(port)

    def _claim(self, service: str, requested: int, resolved: int, reclaimed: bool = False) -> PortAssignment:
        assignment = PortAssignment(service=service, requested=requested, resolved=resolved, reclaimed=reclaimed)
        self._assignments[service] = assignment
        if resolved != requested:
            LOGGER.info("Port %d busy for %s; using %d", requested, service, resolved)
        else:
            LOGGER.debug("Claimed port %d for %s", resolved, service)
        return assignment

    def resolve(self, service: str, port: int) -> PortAssignment:
        existing = self._assignments.get(service)
        if existing is not None:
            return existing

        if self.is_port_free(port, service):
            return self._claim(service, port, port)

        last = min(MAX_PORT, port + self.search_window)
        for candidate in range(port + 1, last + 1):
            if self.is_port_free(candidate, service):
                return self._claim(service, port, candidate)

        if self._claimed_by_other(port, service):
            raise PortConflictUnresolved(
                f"Port {port} for {service} is claimed by another service and ports {port + 1}-{last} are busy"
            )
        if not self.allow_reclaim:
            raise PortConflictUnresolved(f"Port {port} for {service} is busy and ports {port + 1}-{last} are busy")

        self.reclaim(port)
        if not self.is_port_free(port, service):
            raise PortConflictUnresolved(f"Port {port} for {service} is still occupied after reclaim")
        return self._claim(service, port, port, reclaimed=True)

    def reclaim(self, port: int) -> list[int]:
        terminated = terminate_listeners(port)
        if not terminated:
            return []
        deadline = time.monotonic() + RECLAIM_RELEASE_TIMEOUT_SECONDS
        while port_in_use(port) and time.monotonic() < deadline:
            time.sleep(0.1)
        return terminated

    def release(self, service: str) -> None:
        self._assignments.pop(service, None)

    def release_all(self) -> None:
        self._assignments.clear()

    def assignments(self) -> dict[str, PortAssignment]:
        return dict(self._assignments)

    def resolved_ports(self) -> dict[str, int]:
        return {name: assignment.resolved for name, assignment in self._assignments.items()}
