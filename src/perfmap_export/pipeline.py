"""Export pipeline orchestration: manifest in, one zip archive out."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, AnyStr, BinaryIO, Iterable
from uuid import uuid4

from perfmap_export.archive import (
    RESOLUTION_OUTCOME_VALUES,
    ArchiveContainerError,
    ArchiveWriter,
    ArtifactResult,
)
from perfmap_export.attach import CommandProcessMapGenerator, ProcessMapGenerator, trigger_process_map
from perfmap_export.config import ExportConfig
from perfmap_export.manifest import ArtifactReference, iter_manifest
from perfmap_export.utils.paths import atomic_temp_path

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExportResult:
    """Return object for one export run."""

    run_id: str
    started_ts: datetime
    duration_seconds: float
    entries_written: int
    bytes_written: int
    results: tuple[ArtifactResult, ...] = field(default_factory=tuple)

    def outcome_counts(self) -> dict[str, int]:
        counts = {outcome: 0 for outcome in RESOLUTION_OUTCOME_VALUES}
        for result in self.results:
            counts[result.outcome] += 1
        return counts

    @property
    def fully_resolved(self) -> bool:
        return all(result.archived for result in self.results)

    @property
    def summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_ts": self.started_ts.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "artifacts_total": len(self.results),
            "entries_written": self.entries_written,
            "bytes_written": self.bytes_written,
            "outcomes": self.outcome_counts(),
        }


def export_artifacts(
    references: Iterable[ArtifactReference],
    sink: BinaryIO,
    *,
    config: ExportConfig | None = None,
    generator: ProcessMapGenerator | None = None,
    logger: logging.Logger | None = None,
) -> ExportResult:
    """Archive every referenced artifact into ``sink``.

    Artifacts are handled one at a time in manifest order. A missing,
    unreadable, or ungeneratable artifact is logged and skipped; only
    ``ArchiveContainerError`` aborts the run.
    """

    effective_logger = logger or LOGGER
    effective_config = config or ExportConfig()
    effective_generator = generator or CommandProcessMapGenerator(logger=effective_logger)

    run_id = f"export-{uuid4().hex[:12]}"
    started_ts = datetime.now(timezone.utc)
    started_mono = time.monotonic()
    results: list[ArtifactResult] = []

    with ArchiveWriter.from_config(sink, effective_config, logger=effective_logger) as writer:
        for reference in references:
            if reference.is_process_map:
                result = trigger_process_map(
                    reference,
                    effective_generator,
                    writer,
                    options=effective_config.attach_options,
                    logger=effective_logger,
                )
            else:
                result = writer.add_artifact(reference)
            results.append(result)

    export_result = ExportResult(
        run_id=run_id,
        started_ts=started_ts,
        duration_seconds=time.monotonic() - started_mono,
        entries_written=writer.entries_written,
        bytes_written=writer.bytes_written,
        results=tuple(results),
    )
    counts = export_result.outcome_counts()
    effective_logger.info(
        "export.completed run_id=%s artifacts=%s entries=%s bytes=%s missing=%s access_denied=%s generation_failed=%s",
        run_id,
        len(results),
        export_result.entries_written,
        export_result.bytes_written,
        counts["MISSING"],
        counts["ACCESS_DENIED"],
        counts["GENERATION_FAILED"],
    )
    return export_result


def export_manifest(
    manifest: IO[AnyStr],
    sink: BinaryIO,
    *,
    working_dir: Path,
    config: ExportConfig | None = None,
    generator: ProcessMapGenerator | None = None,
    logger: logging.Logger | None = None,
) -> ExportResult:
    """Parse ``manifest`` and export the artifacts it names into ``sink``."""

    effective_config = config or ExportConfig()
    references = iter_manifest(manifest, working_dir, config=effective_config, logger=logger)
    return export_artifacts(references, sink, config=effective_config, generator=generator, logger=logger)


def export_to_path(
    references: Iterable[ArtifactReference],
    output_path: Path,
    *,
    config: ExportConfig | None = None,
    generator: ProcessMapGenerator | None = None,
    logger: logging.Logger | None = None,
) -> ExportResult:
    """Export into a file, replacing ``output_path`` only once the archive is complete."""

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ArchiveContainerError(f"Unable to create output directory {output_path.parent}: {exc}") from exc

    temp_path = atomic_temp_path(output_path)
    try:
        try:
            handle = temp_path.open("wb")
        except OSError as exc:
            raise ArchiveContainerError(f"Unable to open archive output {output_path}: {exc}") from exc
        try:
            with handle:
                result = export_artifacts(
                    references,
                    handle,
                    config=config,
                    generator=generator,
                    logger=logger,
                )
            os.replace(temp_path, output_path)
        except OSError as exc:
            raise ArchiveContainerError(f"Unable to write archive output {output_path}: {exc}") from exc
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return result
