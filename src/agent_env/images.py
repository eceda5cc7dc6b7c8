from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable

from agent_env.commands import run_command, run_streaming
from agent_env.config import ImageSpec
from agent_env.errors import BuildPrereqMissing, ImageBuildFailed
from agent_env.runtime import EngineReady


LOGGER = logging.getLogger("agent_env.images")
STAMP_SUFFIX = ".stamp"


def _latest_mtime(path: Path) -> float:
    if not path.exists():
        return 0.0
    if path.is_file():
        return path.stat().st_mtime
    newest = 0.0
    for file_path in path.rglob("*"):
        if file_path.is_file():
            newest = max(newest, file_path.stat().st_mtime)
    return newest


def _stamp_name(tag: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.\-]+", "_", tag) + STAMP_SUFFIX


class ImageBuilder:
    def __init__(self, engine: EngineReady, cache_dir: Path) -> None:
        self.engine = engine
        self.cache_dir = Path(cache_dir)

    def stamp_path(self, tag: str) -> Path:
        return self.cache_dir / _stamp_name(tag)

    def check_prerequisites(
        self, dockerfile: Path, prerequisites: Iterable[Path] = (), context: Path | None = None
    ) -> None:
        if context is not None and not Path(context).is_dir():
            raise BuildPrereqMissing(f"Build context is not a directory: {context}")
        if not Path(dockerfile).is_file():
            raise BuildPrereqMissing(f"Dockerfile not found: {dockerfile}")
        missing = [str(path) for path in prerequisites if not Path(path).exists()]
        if missing:
            raise BuildPrereqMissing(
                "Missing build artifacts: " + ", ".join(missing) + " (run the project build first)"
            )

    async def image_exists(self, tag: str) -> bool:
        result = await run_command(self.engine.command("image", "inspect", tag))
        return result.ok

    async def needs_build(self, spec: ImageSpec) -> bool:
        stamp = self.stamp_path(spec.tag)
        if not stamp.is_file():
            return True
        if not await self.image_exists(spec.tag):
            return True
        stamp_mtime = stamp.stat().st_mtime
        tracked = [spec.dockerfile, *spec.prerequisites]
        return any(_latest_mtime(Path(path)) > stamp_mtime for path in tracked)

    async def build(
        self,
        context: Path,
        image_tag: str,
        dockerfile_path: Path,
        prerequisites: Iterable[Path] = (),
        build_args: dict[str, str] | None = None,
    ) -> None:
        self.check_prerequisites(dockerfile_path, prerequisites, context)

        cmd = self.engine.command("build", "-t", image_tag, "-f", str(dockerfile_path))
        for key, value in (build_args or {}).items():
            cmd.extend(["--build-arg", f"{key}={value}"])
        cmd.append(str(context))

        LOGGER.info("Building image %s", image_tag)
        result = await run_streaming(cmd, cwd=Path(context))
        if not result.ok:
            LOGGER.error("[failed] build %s", image_tag)
            raise ImageBuildFailed(
                f"Image build failed for {image_tag}",
                returncode=result.returncode,
                output_tail=result.output,
            )

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.stamp_path(image_tag).touch()
        LOGGER.info("[ok] build %s", image_tag)

    async def build_spec(self, spec: ImageSpec) -> None:
        await self.build(spec.context, spec.tag, spec.dockerfile, spec.prerequisites, spec.build_args)

    async def build_stale(self, specs: Iterable[ImageSpec], variant: str, force: bool = False) -> list[str]:
        """Build the images for ``variant`` that are missing or out of date; return the built tags."""
        built: list[str] = []
        for spec in specs:
            if not spec.applies_to(variant):
                LOGGER.debug("Skipping %s (variant %s, building %s)", spec.tag, spec.variant, variant)
                continue
            if not force and not await self.needs_build(spec):
                LOGGER.info("Image %s is up to date", spec.tag)
                continue
            await self.build_spec(spec)
            built.append(spec.tag)
        return built
