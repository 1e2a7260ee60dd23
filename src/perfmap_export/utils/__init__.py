"""Shared utility helpers."""

from perfmap_export.utils.paths import atomic_temp_path

__all__ = ["atomic_temp_path"]
