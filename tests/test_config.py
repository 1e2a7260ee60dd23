from __future__ import annotations

import pytest
from pydantic import ValidationError

from perfmap_export.config import AppSettings, ExportConfig, load_settings


def test_yaml_values_are_loaded(tmp_path):
    settings_file = tmp_path / "settings.yaml"
    settings_file.write_text(
        "attach:\n  options: unfoldall\n  command: [attach, '{pid}']\narchive:\n  buffer_size: 1024\n",
        encoding="utf-8",
    )

    settings = load_settings(settings_file)

    assert settings.attach.options == "unfoldall"
    assert settings.attach.command == ["attach", "{pid}"]
    assert settings.archive.buffer_size == 1024
    assert settings.archive.compression == "deflated"


def test_env_overrides_yaml(tmp_path, monkeypatch):
    settings_file = tmp_path / "settings.yaml"
    settings_file.write_text("archive:\n  buffer_size: 1024\n", encoding="utf-8")
    monkeypatch.setenv("PERFMAP_EXPORT_ARCHIVE__BUFFER_SIZE", "8192")

    settings = load_settings(settings_file)

    assert settings.archive.buffer_size == 8192


def test_missing_settings_file_falls_back_to_defaults(tmp_path):
    settings = load_settings(tmp_path / "absent.yaml")

    assert settings.manifest.process_map_pattern == r"perf-(\d+)\.map"
    assert settings.attach.timeout_seconds is None
    assert settings.archive.buffer_size == 4096


def test_invalid_pattern_is_rejected():
    with pytest.raises(ValidationError):
        AppSettings(manifest={"build_id_pattern": "[unclosed"})


def test_export_config_is_frozen_snapshot(tmp_path):
    settings = load_settings(tmp_path / "absent.yaml")

    config = ExportConfig.from_settings(settings, attach_options="override")

    assert config.attach_options == "override"
    assert config.process_map_pattern.fullmatch("perf-12.map").group(1) == "12"
    with pytest.raises(AttributeError):
        config.buffer_size = 1  # type: ignore[misc]
