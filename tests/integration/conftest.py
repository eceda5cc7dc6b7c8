from __future__ import annotations

import asyncio
import shutil
import subprocess
import uuid
from typing import Iterator

import pytest

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from agent_env.runtime import EngineReady, RuntimeDetector


def _engine_available() -> bool:
    for name in ("podman", "docker"):
        if shutil.which(name) is None:
            continue
        result = subprocess.run(
            [name, "info", "--format", "{{json .}}"],
            check=False,
            text=True,
            capture_output=True,
        )
        if result.returncode == 0:
            return True
    return False


@pytest.fixture(scope="session")
def container_engine() -> EngineReady:
    if not _engine_available():
        pytest.skip("no running container engine")
    return asyncio.run(RuntimeDetector(allow_install=False).detect())


@pytest.fixture()
def unique_name() -> Iterator[str]:
    yield f"agent-env-it-{uuid.uuid4().hex[:8]}"
