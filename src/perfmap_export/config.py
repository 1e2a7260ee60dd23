"""Configuration models and loading logic."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

DEFAULT_SETTINGS_FILE = Path("configs/settings.yaml")
SETTINGS_FILE_ENV = "PERFMAP_EXPORT_SETTINGS_FILE"

DEFAULT_BUILD_ID_PATTERN = r"[a-fA-F0-9]+"
DEFAULT_PROCESS_MAP_PATTERN = r"perf-(\d+)\.map"
DEFAULT_ATTACH_OPTIONS = ""
DEFAULT_ATTACH_COMMAND: tuple[str, ...] = (
    "java",
    "-cp",
    "attach-main.jar",
    "net.virtualvoid.perf.AttachOnce",
    "{pid}",
    "{options}",
)
DEFAULT_BUFFER_SIZE = 4096

CompressionName = Literal["deflated", "stored", "bzip2", "lzma"]


class ManifestConfig(BaseModel):
    """Token patterns used when reading a manifest."""

    build_id_pattern: str = DEFAULT_BUILD_ID_PATTERN
    process_map_pattern: str = DEFAULT_PROCESS_MAP_PATTERN

    @field_validator("build_id_pattern", "process_map_pattern")
    @classmethod
    def _must_compile(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression {value!r}: {exc}") from exc
        return value


class AttachConfig(BaseModel):
    """External attach command used to generate per-process symbol maps."""

    command: list[str] = Field(default_factory=lambda: list(DEFAULT_ATTACH_COMMAND), min_length=1)
    options: str = DEFAULT_ATTACH_OPTIONS
    timeout_seconds: float | None = Field(default=None, gt=0.0)


class ArchiveConfig(BaseModel):
    """Zip container settings."""

    buffer_size: int = Field(default=DEFAULT_BUFFER_SIZE, ge=1)
    compression: CompressionName = "deflated"
    compression_level: int | None = None


class LoggingConfig(BaseModel):
    """Logging level and optional log file."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: Path | None = None


class AppSettings(BaseSettings):
    """Top-level application settings."""

    _yaml_file_override: ClassVar[Path | None] = None

    manifest: ManifestConfig = Field(default_factory=ManifestConfig)
    attach: AttachConfig = Field(default_factory=AttachConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="PERFMAP_EXPORT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Use YAML defaults while allowing env vars to override values."""

        yaml_file = resolve_settings_file(cls._yaml_file_override)
        yaml_settings = YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            yaml_settings,
            file_secret_settings,
        )

    def as_dict(self) -> dict[str, object]:
        """Return settings as a standard nested dictionary."""

        return self.model_dump(mode="json")


@dataclass(frozen=True, slots=True)
class ExportConfig:
    """Immutable run configuration handed to the export pipeline."""

    build_id_pattern: re.Pattern[str] = re.compile(DEFAULT_BUILD_ID_PATTERN)
    process_map_pattern: re.Pattern[str] = re.compile(DEFAULT_PROCESS_MAP_PATTERN)
    attach_options: str = DEFAULT_ATTACH_OPTIONS
    buffer_size: int = DEFAULT_BUFFER_SIZE
    compression: CompressionName = "deflated"
    compression_level: int | None = None

    @classmethod
    def from_settings(cls, settings: AppSettings, *, attach_options: str | None = None) -> "ExportConfig":
        """Freeze the pipeline-relevant parts of loaded settings."""

        return cls(
            build_id_pattern=re.compile(settings.manifest.build_id_pattern),
            process_map_pattern=re.compile(settings.manifest.process_map_pattern),
            attach_options=settings.attach.options if attach_options is None else attach_options,
            buffer_size=settings.archive.buffer_size,
            compression=settings.archive.compression,
            compression_level=settings.archive.compression_level,
        )


def find_project_root(start: Path | None = None) -> Path:
    """Locate the project root by traversing upward for config markers."""

    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / DEFAULT_SETTINGS_FILE).exists():
            return candidate
    return current


def resolve_settings_file(override: Path | None = None) -> Path:
    """Resolve settings file from explicit override, env var, or default."""

    chosen = override
    if chosen is None:
        env_value = os.getenv(SETTINGS_FILE_ENV)
        if env_value:
            chosen = Path(env_value)
    if chosen is None:
        chosen = DEFAULT_SETTINGS_FILE

    if not chosen.is_absolute():
        chosen = (find_project_root() / chosen).resolve()
    return chosen


def load_settings(config_file: Path | None = None) -> AppSettings:
    """Load settings with YAML defaults and environment variable overrides."""

    settings_file = resolve_settings_file(config_file)
    AppSettings._yaml_file_override = settings_file
    try:
        return AppSettings()
    finally:
        AppSettings._yaml_file_override = None
