from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from agent_env.errors import ConfigError


CONFIG_FILE_NAME = "agent-env.toml"
CONFIG_ENV = "AGENT_ENV_CONFIG"
BUILD_VARIANT_ENV = "AGENT_ENV_BUILD_VARIANT"
ENGINE_ENV = "AGENT_ENV_ENGINE"
DEFAULT_NETWORK = "agent-env"
DEFAULT_BUILD_VARIANT = "full"
BUILD_VARIANTS = ("lightweight", "full")
DEFAULT_GRACE_SECONDS = 5.0
DEFAULT_PORT_SEARCH_WINDOW = 20
DEFAULT_READY_TIMEOUT_SECONDS = 60.0
DEFAULT_SERVICE_START_TIMEOUT_SECONDS = 120.0
TIER_DATA = "data"
TIER_MODEL = "model"
TIER_APP = "app"
TIER_RANKS = {TIER_DATA: 0, TIER_MODEL: 1, TIER_APP: 2}
PORT_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_\-]*)\}")
NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,62}$")


@dataclass(frozen=True)
class PortBinding:
    host: int | str
    container: int

    def resolved_host(self, ports: dict[str, int]) -> int:
        if isinstance(self.host, int):
            return self.host
        if self.host not in ports:
            raise ConfigError(f"Unknown port key in binding: {self.host!r}")
        return int(ports[self.host])


@dataclass(frozen=True)
class ServiceDescriptor:
    name: str
    image: str
    network: str
    ports: tuple[PortBinding, ...] = ()
    volumes: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    tier: str = TIER_DATA
    depends_on: tuple[str, ...] = ()
    command: tuple[str, ...] = ()
    wait_healthy: bool = True
    start_timeout: float = DEFAULT_SERVICE_START_TIMEOUT_SECONDS

    def rendered(self, ports: dict[str, int]) -> ServiceDescriptor:
        """Return a copy with port keys and env placeholders resolved."""
        return replace(
            self,
            ports=tuple(PortBinding(binding.resolved_host(ports), binding.container) for binding in self.ports),
            env={key: render_placeholders(value, ports) for key, value in self.env.items()},
            command=tuple(render_placeholders(part, ports) for part in self.command),
        )


@dataclass(frozen=True)
class ImageSpec:
    tag: str
    dockerfile: Path
    context: Path
    prerequisites: tuple[Path, ...] = ()
    build_args: dict[str, str] = field(default_factory=dict)
    variant: str | None = None

    def applies_to(self, variant: str) -> bool:
        return self.variant is None or self.variant == variant


@dataclass(frozen=True)
class ProcessSpec:
    name: str
    command: tuple[str, ...]
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)
    ready_pattern: str | None = None
    ready_timeout: float = DEFAULT_READY_TIMEOUT_SECONDS
    failure_patterns: tuple[str, ...] = ()
    port_key: str | None = None
    health_path: str | None = None

    def rendered(self, ports: dict[str, int]) -> ProcessSpec:
        return replace(
            self,
            command=tuple(render_placeholders(part, ports) for part in self.command),
            env={key: render_placeholders(value, ports) for key, value in self.env.items()},
        )


@dataclass(frozen=True)
class HealthSettings:
    process: str | None = None
    path: str = "/health"
    host: str = "127.0.0.1"
    interval_seconds: float = 5.0
    failure_threshold: int = 3
    timeout_seconds: float = 2.0
    require_marker: bool = True
    restart_on_crash: bool = False
    max_restarts: int = 3


@dataclass(frozen=True)
class EnvironmentConfig:
    project_root: Path
    network: str = DEFAULT_NETWORK
    build_variant: str = DEFAULT_BUILD_VARIANT
    bundled_engine: Path | None = None
    compose_file: Path | None = None
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    port_search_window: int = DEFAULT_PORT_SEARCH_WINDOW
    allow_install: bool = True
    reclaim_ports: bool = True
    status_port: int | None = None
    ports: dict[str, int] = field(default_factory=dict)
    images: tuple[ImageSpec, ...] = ()
    services: tuple[ServiceDescriptor, ...] = ()
    processes: tuple[ProcessSpec, ...] = ()
    health: HealthSettings = field(default_factory=HealthSettings)

    def process(self, name: str) -> ProcessSpec | None:
        return next((spec for spec in self.processes if spec.name == name), None)


def render_placeholders(value: str, ports: dict[str, int]) -> str:
    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in ports:
            return str(ports[key])
        return match.group(0)

    return PORT_PLACEHOLDER_RE.sub(_replace, str(value))


def _repo_root() -> Path:
    for parent in Path(__file__).resolve().parents:
        if (parent / "pyproject.toml").exists():
            return parent
    return Path(__file__).resolve().parents[2]


def default_config_file() -> Path:
    override = str(os.environ.get(CONFIG_ENV) or "").strip()
    if override:
        return Path(override).expanduser()

    local = Path.cwd() / CONFIG_FILE_NAME
    if local.exists():
        return local

    return _repo_root() / "config" / CONFIG_FILE_NAME


def _require_table(raw: Any, label: str) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"[{label}] must be a table")
    return raw


def _require_list(raw: Any, label: str) -> list[Any]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"{label} must be an array")
    return raw


def _normalize_name(raw_value: Any, label: str) -> str:
    value = str(raw_value or "").strip()
    if not NAME_RE.match(value):
        raise ConfigError(f"Invalid {label} name: {raw_value!r}")
    return value


def _normalize_string_list(raw_value: Any, label: str) -> tuple[str, ...]:
    values = _require_list(raw_value, label)
    return tuple(str(item) for item in values if str(item).strip())


def _normalize_env(raw_value: Any, label: str) -> dict[str, str]:
    table = _require_table(raw_value, label)
    env: dict[str, str] = {}
    for key, value in table.items():
        name = str(key).strip()
        if not name or "=" in name:
            raise ConfigError(f"Invalid environment variable name in {label}: {key!r}")
        env[name] = str(value)
    return env


def _normalize_port(raw_value: Any, label: str) -> int:
    try:
        port = int(raw_value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid port for {label}: {raw_value!r}") from exc
    if not 1 <= port <= 65535:
        raise ConfigError(f"Port out of range for {label}: {port}")
    return port


def _normalize_int(raw_value: Any, default: int, label: str, minimum: int = 0) -> int:
    if raw_value is None:
        return default
    try:
        value = int(raw_value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid integer for {label}: {raw_value!r}") from exc
    if value < minimum:
        raise ConfigError(f"{label} must be at least {minimum}")
    return value


def _normalize_positive_float(raw_value: Any, default: float, label: str) -> float:
    if raw_value is None:
        return default
    try:
        value = float(raw_value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid number for {label}: {raw_value!r}") from exc
    if value <= 0:
        raise ConfigError(f"{label} must be positive")
    return value


def _parse_port_binding(spec: str, label: str) -> PortBinding:
    if ":" not in spec:
        raise ConfigError(f"Invalid {label}: {spec} (expected host:container)")
    host, container = spec.rsplit(":", 1)
    host = host.strip()
    if not host:
        raise ConfigError(f"Invalid {label}: {spec} (expected host:container)")
    container_port = _normalize_port(container, label)
    if host.isdigit():
        return PortBinding(_normalize_port(host, label), container_port)
    return PortBinding(host, container_port)


def _resolve_path(raw_value: Any, base_dir: Path) -> Path:
    path = Path(str(raw_value)).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path


def _parse_images(raw: Any, base_dir: Path) -> tuple[ImageSpec, ...]:
    images: list[ImageSpec] = []
    for index, entry in enumerate(_require_list(raw, "images")):
        table = _require_table(entry, f"images.{index}")
        tag = str(table.get("tag") or "").strip()
        if not tag:
            raise ConfigError(f"images.{index}: tag is required")
        variant = table.get("variant")
        if variant is not None and variant not in BUILD_VARIANTS:
            raise ConfigError(f"images.{index}: unknown variant {variant!r}")
        context = _resolve_path(table.get("context") or ".", base_dir)
        images.append(
            ImageSpec(
                tag=tag,
                dockerfile=_resolve_path(table.get("dockerfile") or "Dockerfile", base_dir),
                context=context,
                prerequisites=tuple(
                    _resolve_path(item, base_dir)
                    for item in _normalize_string_list(table.get("prerequisites"), f"images.{index}.prerequisites")
                ),
                build_args=_normalize_env(table.get("build_args"), f"images.{index}.build_args"),
                variant=variant,
            )
        )
    return tuple(images)


def _parse_services(raw: Any, network: str, ports: dict[str, int]) -> tuple[ServiceDescriptor, ...]:
    services: list[ServiceDescriptor] = []
    seen: set[str] = set()
    for index, entry in enumerate(_require_list(raw, "services")):
        table = _require_table(entry, f"services.{index}")
        name = _normalize_name(table.get("name"), "service")
        if name in seen:
            raise ConfigError(f"Duplicate service name: {name}")
        seen.add(name)
        image = str(table.get("image") or "").strip()
        if not image:
            raise ConfigError(f"Service {name}: image is required")
        tier = str(table.get("tier") or TIER_DATA)
        if tier not in TIER_RANKS:
            raise ConfigError(f"Service {name}: unknown tier {tier!r}")
        bindings = tuple(
            _parse_port_binding(spec, f"service {name} port")
            for spec in _normalize_string_list(table.get("ports"), f"services.{index}.ports")
        )
        for binding in bindings:
            if isinstance(binding.host, str) and binding.host not in ports:
                raise ConfigError(f"Service {name}: unknown port key {binding.host!r}")
        services.append(
            ServiceDescriptor(
                name=name,
                image=image,
                network=str(table.get("network") or network),
                ports=bindings,
                volumes=_normalize_string_list(table.get("volumes"), f"services.{index}.volumes"),
                env=_normalize_env(table.get("env"), f"services.{index}.env"),
                tier=tier,
                depends_on=_normalize_string_list(table.get("depends_on"), f"services.{index}.depends_on"),
                command=_normalize_string_list(table.get("command"), f"services.{index}.command"),
                wait_healthy=bool(table.get("wait_healthy", True)),
                start_timeout=_normalize_positive_float(
                    table.get("start_timeout"),
                    DEFAULT_SERVICE_START_TIMEOUT_SECONDS,
                    f"service {name} start_timeout",
                ),
            )
        )
    for service in services:
        for dependency in service.depends_on:
            if dependency not in seen:
                raise ConfigError(f"Service {service.name} depends on unknown service {dependency!r}")
    return tuple(services)


def _parse_processes(raw: Any, base_dir: Path, ports: dict[str, int]) -> tuple[ProcessSpec, ...]:
    processes: list[ProcessSpec] = []
    seen: set[str] = set()
    for index, entry in enumerate(_require_list(raw, "processes")):
        table = _require_table(entry, f"processes.{index}")
        name = _normalize_name(table.get("name"), "process")
        if name in seen:
            raise ConfigError(f"Duplicate process name: {name}")
        seen.add(name)
        command = _normalize_string_list(table.get("command"), f"processes.{index}.command")
        if not command:
            raise ConfigError(f"Process {name}: command is required")
        port_key = table.get("port")
        if port_key is not None and str(port_key) not in ports:
            raise ConfigError(f"Process {name}: unknown port key {port_key!r}")
        ready_pattern = str(table.get("ready_pattern") or "").strip() or None
        health_path = str(table.get("health_path") or "").strip() or None
        if health_path is not None and not health_path.startswith("/"):
            raise ConfigError(f"Process {name}: health_path must start with '/'")
        processes.append(
            ProcessSpec(
                name=name,
                command=command,
                cwd=_resolve_path(table.get("cwd") or ".", base_dir),
                env=_normalize_env(table.get("env"), f"processes.{index}.env"),
                ready_pattern=ready_pattern,
                ready_timeout=_normalize_positive_float(
                    table.get("ready_timeout"),
                    DEFAULT_READY_TIMEOUT_SECONDS,
                    f"process {name} ready_timeout",
                ),
                failure_patterns=_normalize_string_list(
                    table.get("failure_patterns"), f"processes.{index}.failure_patterns"
                ),
                port_key=str(port_key) if port_key is not None else None,
                health_path=health_path,
            )
        )
    return tuple(processes)


def _parse_health(raw: Any, process_names: set[str]) -> HealthSettings:
    table = _require_table(raw, "health")
    process = table.get("process")
    if process is not None and str(process) not in process_names:
        raise ConfigError(f"[health] refers to unknown process {process!r}")
    path = str(table.get("path") or "/health")
    if not path.startswith("/"):
        raise ConfigError("[health] path must start with '/'")
    threshold = _normalize_int(table.get("failure_threshold"), 3, "[health] failure_threshold", minimum=1)
    return HealthSettings(
        process=str(process) if process is not None else None,
        path=path,
        host=str(table.get("host") or "127.0.0.1"),
        interval_seconds=_normalize_positive_float(table.get("interval_seconds"), 5.0, "[health] interval_seconds"),
        failure_threshold=threshold,
        timeout_seconds=_normalize_positive_float(table.get("timeout_seconds"), 2.0, "[health] timeout_seconds"),
        require_marker=bool(table.get("require_marker", True)),
        restart_on_crash=bool(table.get("restart_on_crash", False)),
        max_restarts=_normalize_int(table.get("max_restarts"), 3, "[health] max_restarts"),
    )


def parse_config(parsed: dict[str, Any], base_dir: Path) -> EnvironmentConfig:
    environment = _require_table(parsed.get("environment"), "environment")
    network = str(environment.get("network") or DEFAULT_NETWORK)

    ports = {
        str(key): _normalize_port(value, f"ports.{key}")
        for key, value in _require_table(parsed.get("ports"), "ports").items()
    }

    build_variant = str(
        os.environ.get(BUILD_VARIANT_ENV) or environment.get("build_variant") or DEFAULT_BUILD_VARIANT
    ).strip()
    if build_variant not in BUILD_VARIANTS:
        raise ConfigError(f"Unknown build variant {build_variant!r} (expected one of {', '.join(BUILD_VARIANTS)})")

    bundled_raw = str(os.environ.get(ENGINE_ENV) or environment.get("bundled_engine") or "").strip()
    compose_raw = str(environment.get("compose_file") or "").strip()
    status_port_raw = environment.get("status_port")
    status_port = _normalize_port(status_port_raw, "status_port") if status_port_raw else None

    processes = _parse_processes(parsed.get("processes"), base_dir, ports)
    return EnvironmentConfig(
        project_root=base_dir,
        network=network,
        build_variant=build_variant,
        bundled_engine=_resolve_path(bundled_raw, base_dir) if bundled_raw else None,
        compose_file=_resolve_path(compose_raw, base_dir) if compose_raw else None,
        grace_seconds=_normalize_positive_float(
            environment.get("grace_seconds"), DEFAULT_GRACE_SECONDS, "grace_seconds"
        ),
        port_search_window=_normalize_int(
            environment.get("port_search_window"), DEFAULT_PORT_SEARCH_WINDOW, "port_search_window"
        ),
        allow_install=bool(environment.get("allow_install", True)),
        reclaim_ports=bool(environment.get("reclaim_ports", True)),
        status_port=status_port,
        ports=ports,
        images=_parse_images(parsed.get("images"), base_dir),
        services=_parse_services(parsed.get("services"), network, ports),
        processes=processes,
        health=_parse_health(parsed.get("health"), {spec.name for spec in processes}),
    )


def load_config(path: Path) -> EnvironmentConfig:
    config_path = Path(path).expanduser()
    try:
        raw = config_path.read_text(encoding="utf-8")
    except (OSError, UnicodeError) as exc:
        raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
    try:
        parsed = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Unable to parse config file {config_path}: {exc}") from exc
    return parse_config(parsed, config_path.resolve().parent)
