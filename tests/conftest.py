from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path

import pytest


class FakeProcessMapGenerator:
    """Deterministic stand-in for the external attach action."""

    def __init__(self, map_dir: Path, mode: str = "write", content: bytes = b"7f00 10 jitted::frame\n") -> None:
        self.map_dir = map_dir
        self.mode = mode
        self.content = content
        self.calls: list[tuple[str, str]] = []

    def generate(self, process_id: str, options: str) -> bool:
        self.calls.append((process_id, options))
        if self.mode == "raise":
            raise RuntimeError(f"attach to {process_id} refused")
        if self.mode == "fail":
            return False
        if self.mode == "write":
            (self.map_dir / f"perf-{process_id}.map").write_bytes(self.content)
        return True


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
    root.setLevel(level)


@pytest.fixture
def write_artifact(tmp_path):
    def _write(name: str, payload: bytes = b"\x7fELF fake shared object", mtime: datetime | None = None) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
        if mtime is not None:
            stamp = mtime.timestamp()
            os.utime(path, (stamp, stamp))
        return path

    return _write


@pytest.fixture
def fake_generator(tmp_path):
    return FakeProcessMapGenerator(tmp_path)
