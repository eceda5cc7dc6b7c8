from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import urllib.error
import urllib.request
from dataclasses import replace
from pathlib import Path
from typing import Any

import click

from agent_env.config import BUILD_VARIANTS, EnvironmentConfig, default_config_file, load_config
from agent_env.errors import DetectionFailure
from agent_env.images import ImageBuilder
from agent_env.ports import listening_pids, port_in_use, terminate_listeners
from agent_env.runner import CACHE_DIR_NAME, EnvironmentRunner
from agent_env.runtime import EngineReady, RuntimeDetector, RuntimeInstaller
from agent_env.services import ServiceOrchestrator, order_services


LOGGER = logging.getLogger("agent_env")
LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
STATUS_FETCH_TIMEOUT_SECONDS = 2.0


def _normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return "info"


def _configure_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


def _load(ctx: click.Context) -> EnvironmentConfig:
    config_file = Path(ctx.obj["config_file"])
    if not config_file.exists():
        raise click.ClickException(f"Missing config file: {config_file}")
    return load_config(config_file)


def _detector(config: EnvironmentConfig, allow_install: bool | None = None) -> RuntimeDetector:
    return RuntimeDetector(
        config.bundled_engine,
        allow_install=config.allow_install if allow_install is None else allow_install,
    )


def _echo_engine(engine: EngineReady) -> None:
    click.echo(f"engine:   {engine.name} {engine.version}")
    click.echo(f"binary:   {engine.binary}")
    click.echo(f"source:   {engine.source}")
    click.echo(f"platform: {engine.platform}")
    click.echo(f"rootless: {'yes' if engine.rootless else 'no'}")


def _fetch_json(url: str) -> dict[str, Any] | None:
    try:
        with urllib.request.urlopen(url, timeout=STATUS_FETCH_TIMEOUT_SECONDS) as response:
            body = response.read().decode("utf-8", errors="ignore")
    except (urllib.error.URLError, TimeoutError, OSError):
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


@click.group(help="Bring up and tear down the local agent development environment")
@click.option(
    "--config-file",
    default=str(default_config_file()),
    show_default=True,
    help="Environment config file (TOML)",
)
@click.option(
    "--log-level",
    default=os.environ.get("AGENT_ENV_LOG_LEVEL", "info"),
    show_default=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Logging verbosity.",
)
@click.pass_context
def main(ctx: click.Context, config_file: str, log_level: str) -> None:
    _configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file


@main.command(help="Start the environment and supervise it until interrupted")
@click.option("--status-port", default=None, type=int, help="Serve the status API on this port (0 disables it)")
@click.option("--build-variant", default=None, type=click.Choice(BUILD_VARIANTS), help="Override the build variant")
@click.option("--no-install", is_flag=True, default=False, help="Never install a container engine")
@click.option("--no-reclaim", is_flag=True, default=False, help="Never terminate processes holding a busy port")
@click.pass_context
def up(
    ctx: click.Context,
    status_port: int | None,
    build_variant: str | None,
    no_install: bool,
    no_reclaim: bool,
) -> None:
    config = _load(ctx)
    overrides: dict[str, Any] = {}
    if build_variant:
        overrides["build_variant"] = build_variant
    if no_install:
        overrides["allow_install"] = False
    if no_reclaim:
        overrides["reclaim_ports"] = False
    if status_port is not None:
        overrides["status_port"] = status_port or None
    if overrides:
        config = replace(config, **overrides)

    LOGGER.info("Starting environment from %s (variant %s)", ctx.obj["config_file"], config.build_variant)
    runner = EnvironmentRunner(config)
    exit_code = asyncio.run(runner.run())
    ctx.exit(exit_code)


async def _stop_services(config: EnvironmentConfig, orchestrator: ServiceOrchestrator) -> None:
    if await orchestrator.compose_down():
        click.echo(f"[ok] compose down {config.compose_file}")
        return
    for descriptor in reversed(order_services(config.services)):
        await orchestrator.stop(descriptor.name)
        click.echo(f"[ok] stopped {descriptor.name}")


@main.command(help="Stop the configured service containers")
@click.option("--clear-ports", is_flag=True, default=False, help="Also terminate processes holding configured ports")
@click.pass_context
def down(ctx: click.Context, clear_ports: bool) -> None:
    config = _load(ctx)

    async def _down() -> None:
        if config.services:
            engine = await _detector(config, allow_install=False).detect()
            await _stop_services(config, ServiceOrchestrator(engine, config.compose_file, config.project_root))

    asyncio.run(_down())

    if clear_ports:
        for key, port in config.ports.items():
            terminated = terminate_listeners(port)
            if terminated:
                click.echo(f"[ok] cleared port {port} ({key}): pids {', '.join(map(str, terminated))}")


@main.command(help="Restart the configured service containers")
@click.pass_context
def restart(ctx: click.Context) -> None:
    config = _load(ctx)
    if not config.services:
        click.echo("No services configured")
        return

    async def _restart() -> list[str]:
        engine = await _detector(config).ensure()
        orchestrator = ServiceOrchestrator(engine, config.compose_file, config.project_root)
        await _stop_services(config, orchestrator)
        descriptors = [descriptor.rendered(config.ports) for descriptor in config.services]
        started = await orchestrator.start_all(descriptors)
        await orchestrator.wait_all(descriptors)
        return started

    started = asyncio.run(_restart())
    click.echo(f"[ok] restarted {', '.join(started)}")


@main.command(help="Show engine, container and live environment status")
@click.pass_context
def status(ctx: click.Context) -> None:
    config = _load(ctx)

    async def _status() -> None:
        try:
            engine = await _detector(config, allow_install=False).detect()
        except DetectionFailure:
            click.echo("engine:   none")
            return
        _echo_engine(engine)
        orchestrator = ServiceOrchestrator(engine, config.compose_file, config.project_root)
        for descriptor in order_services(config.services):
            service_status = await orchestrator.status(descriptor.name)
            click.echo(f"service {service_status.name}: {service_status.state} ({service_status.health})")

    asyncio.run(_status())

    for key, port in sorted(config.ports.items()):
        click.echo(f"port {key} {port}: {'in use' if port_in_use(port) else 'free'}")

    if config.status_port:
        payload = _fetch_json(f"http://127.0.0.1:{config.status_port}/api/status")
        if payload is None:
            click.echo("runner:   not reachable")
        else:
            click.echo(json.dumps(payload, indent=2, sort_keys=True))


@main.command(help="Detect the container engine without installing anything")
@click.pass_context
def detect(ctx: click.Context) -> None:
    config = _load(ctx)
    engine = asyncio.run(_detector(config, allow_install=False).detect())
    _echo_engine(engine)


@main.command(help="Install a container engine for this platform")
@click.pass_context
def install(ctx: click.Context) -> None:
    config = _load(ctx)

    async def _install() -> EngineReady:
        detector = _detector(config, allow_install=True)
        strategy = await RuntimeInstaller(platform=detector.platform).install()
        click.echo(f"[ok] installed via {strategy}")
        return await detector.detect()

    _echo_engine(asyncio.run(_install()))


@main.command(help="Build stale container images for the configured variant")
@click.option("--force", is_flag=True, default=False, help="Rebuild even when images are up to date")
@click.option("--build-variant", default=None, type=click.Choice(BUILD_VARIANTS), help="Override the build variant")
@click.pass_context
def build(ctx: click.Context, force: bool, build_variant: str | None) -> None:
    config = _load(ctx)
    variant = build_variant or config.build_variant

    async def _build() -> list[str]:
        engine = await _detector(config).ensure()
        builder = ImageBuilder(engine, config.project_root / CACHE_DIR_NAME)
        return await builder.build_stale(config.images, variant, force=force)

    built = asyncio.run(_build())
    if built:
        click.echo(f"[ok] built {', '.join(built)}")
    else:
        click.echo("[ok] all images up to date")


@main.group(help="Inspect and clear local TCP ports")
def ports() -> None:
    pass


@ports.command("check", help="Show whether a port is free and who holds it")
@click.argument("port", type=click.IntRange(1, 65535))
def ports_check(port: int) -> None:
    if not port_in_use(port):
        click.echo(f"port {port}: free")
        return
    pids = sorted(listening_pids(port))
    owners = ", ".join(map(str, pids)) if pids else "unknown"
    click.echo(f"port {port}: in use (pids: {owners})")


@ports.command("clear", help="Terminate the processes listening on the given ports")
@click.argument("port_numbers", nargs=-1, required=True, type=click.IntRange(1, 65535))
def ports_clear(port_numbers: tuple[int, ...]) -> None:
    for port in port_numbers:
        terminated = terminate_listeners(port)
        if terminated:
            click.echo(f"[ok] port {port}: terminated {', '.join(map(str, terminated))}")
        elif port_in_use(port):
            click.echo(f"[failed] port {port}: owner unknown or not permitted", err=True)
        else:
            click.echo(f"[ok] port {port}: already free")


if __name__ == "__main__":
    main()
