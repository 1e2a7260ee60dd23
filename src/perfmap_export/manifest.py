"""Read symbol-artifact manifests produced alongside a profiling dump.

A manifest is a stream of whitespace-separated ``<build-id> <path>`` pairs, for
example the output of ``perf buildid-list``. Line breaks carry no meaning.
Reading stops at the first token in build-id position that is not a hex
build id; whatever follows is ignored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import IO, AnyStr, Iterator, Literal

from perfmap_export.config import ExportConfig

LOGGER = logging.getLogger(__name__)

ArtifactKind = Literal["PROCESS_MAP", "PLAIN_FILE"]
ARTIFACT_KIND_VALUES: tuple[ArtifactKind, ...] = ("PROCESS_MAP", "PLAIN_FILE")


@dataclass(frozen=True, slots=True)
class ArtifactReference:
    """One artifact named by the manifest, classified at parse time."""

    path: Path
    kind: ArtifactKind
    process_id: str | None = None

    @property
    def is_process_map(self) -> bool:
        return self.kind == "PROCESS_MAP"


def resolve_artifact_path(token: str, working_dir: Path) -> Path:
    """Anchor a relative manifest path at the working directory."""

    path = Path(token)
    return path if path.is_absolute() else working_dir / path


def classify_artifact(path: Path, process_map_pattern: re.Pattern[str]) -> ArtifactReference:
    """Tag ``perf-<pid>.map`` files as pending process maps."""

    match = process_map_pattern.fullmatch(path.name)
    if match is None:
        return ArtifactReference(path=path, kind="PLAIN_FILE")
    return ArtifactReference(path=path, kind="PROCESS_MAP", process_id=match.group(1))


def iter_tokens(stream: IO[AnyStr]) -> Iterator[str]:
    """Yield whitespace-separated tokens from a text or binary stream."""

    for line in stream:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="surrogateescape")
        yield from line.split()


def iter_manifest(
    stream: IO[AnyStr],
    working_dir: Path,
    config: ExportConfig | None = None,
    logger: logging.Logger | None = None,
) -> Iterator[ArtifactReference]:
    """Lazily parse ``(build_id, path)`` pairs into artifact references."""

    effective_logger = logger or LOGGER
    effective_config = config or ExportConfig()
    tokens = iter_tokens(stream)
    for token in tokens:
        if effective_config.build_id_pattern.fullmatch(token) is None:
            effective_logger.debug("manifest.stop_on_token token=%r", token)
            return
        path_token = next(tokens, None)
        if path_token is None:
            effective_logger.debug("manifest.dangling_build_id build_id=%s", token)
            return
        path = resolve_artifact_path(path_token, working_dir)
        yield classify_artifact(path, effective_config.process_map_pattern)


def parse_manifest(
    stream: IO[AnyStr],
    working_dir: Path,
    config: ExportConfig | None = None,
    logger: logging.Logger | None = None,
) -> list[ArtifactReference]:
    """Parse a whole manifest into an ordered list of artifact references."""

    effective_logger = logger or LOGGER
    references = list(iter_manifest(stream, working_dir, config=config, logger=effective_logger))
    process_maps = sum(1 for reference in references if reference.is_process_map)
    effective_logger.info(
        "manifest.parsed artifacts=%s process_maps=%s working_dir=%s",
        len(references),
        process_maps,
        working_dir,
    )
    return references
