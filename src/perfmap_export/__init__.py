"""Export the symbol artifacts referenced by a perf dump into one zip archive."""

from perfmap_export.archive import (
    RESOLUTION_OUTCOME_VALUES,
    ArchiveContainerError,
    ArchiveEntry,
    ArchiveWriter,
    ArtifactResult,
    ResolutionOutcome,
    list_archive_entries,
)
from perfmap_export.attach import (
    CommandProcessMapGenerator,
    ProcessMapGenerationError,
    ProcessMapGenerator,
    trigger_process_map,
)
from perfmap_export.config import AppSettings, ExportConfig, load_settings
from perfmap_export.manifest import ArtifactKind, ArtifactReference, iter_manifest, parse_manifest
from perfmap_export.pipeline import ExportResult, export_artifacts, export_manifest, export_to_path

__all__ = [
    "AppSettings",
    "ExportConfig",
    "load_settings",
    "ArtifactKind",
    "ArtifactReference",
    "iter_manifest",
    "parse_manifest",
    "ProcessMapGenerator",
    "ProcessMapGenerationError",
    "CommandProcessMapGenerator",
    "trigger_process_map",
    "RESOLUTION_OUTCOME_VALUES",
    "ResolutionOutcome",
    "ArtifactResult",
    "ArchiveContainerError",
    "ArchiveEntry",
    "ArchiveWriter",
    "list_archive_entries",
    "ExportResult",
    "export_artifacts",
    "export_manifest",
    "export_to_path",
]
