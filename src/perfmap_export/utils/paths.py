"""Path and filesystem helper functions."""

from __future__ import annotations

from pathlib import Path
from uuid import uuid4


def atomic_temp_path(target_path: Path) -> Path:
    """Create a unique temp path next to the target for atomic replacement."""

    return target_path.parent / f".{target_path.name}.{uuid4().hex}.tmp"
