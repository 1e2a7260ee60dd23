"""Run report writers with atomic file replacement."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import polars as pl

from perfmap_export.pipeline import ExportResult
from perfmap_export.utils.paths import atomic_temp_path

SUMMARY_FILE = "export_summary.json"
RESULTS_FILE = "artifact_results.parquet"


@dataclass(frozen=True, slots=True)
class ExportReportPaths:
    """Locations of the written run report."""

    summary_path: Path
    results_path: Path


def _results_schema() -> dict[str, pl.DataType]:
    """Stable schema for per-artifact results."""

    return {
        "path": pl.String,
        "kind": pl.String,
        "outcome": pl.String,
        "process_id": pl.String,
        "entry_name": pl.String,
        "bytes_written": pl.Int64,
        "message": pl.String,
    }


def results_frame(result: ExportResult) -> pl.DataFrame:
    """One row per manifest artifact, in manifest order."""

    rows = [
        {
            "path": str(item.path),
            "kind": item.kind,
            "outcome": item.outcome,
            "process_id": item.process_id,
            "entry_name": item.entry_name,
            "bytes_written": item.bytes_written,
            "message": item.message,
        }
        for item in result.results
    ]
    if not rows:
        return pl.DataFrame(schema=_results_schema())
    return pl.DataFrame(rows, schema=_results_schema())


def _write_json_atomically(payload: dict[str, Any], output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = atomic_temp_path(output_path)
    try:
        temp_path.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n", encoding="utf-8")
        os.replace(temp_path, output_path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return output_path


def _write_parquet_atomically(df: pl.DataFrame, output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = atomic_temp_path(output_path)
    try:
        df.write_parquet(temp_path)
        os.replace(temp_path, output_path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return output_path


def write_export_report(result: ExportResult, report_dir: Path, archive_path: Path | None = None) -> ExportReportPaths:
    """Write the run summary JSON and the per-artifact results parquet."""

    summary = dict(result.summary)
    summary["archive_path"] = str(archive_path) if archive_path is not None else None
    summary_path = _write_json_atomically(summary, report_dir / SUMMARY_FILE)
    results_path = _write_parquet_atomically(results_frame(result), report_dir / RESULTS_FILE)
    return ExportReportPaths(summary_path=summary_path, results_path=results_path)
