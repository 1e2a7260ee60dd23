"""Zip archive writer for resolved symbol artifacts.

Every artifact becomes one entry named by the canonical absolute path of its
source file. Entries are opened, streamed and closed strictly one after the
other, so the writer also works on non-seekable sinks such as a pipe.

Per-artifact problems (missing file, unreadable file) are reported as
``ArtifactResult`` values. A source that fails part-way through its payload
leaves a truncated entry and is reported as ``ACCESS_DENIED``. Only failures
of the zip container itself raise ``ArchiveContainerError``.
"""

from __future__ import annotations

import logging
import os
import struct
import time
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Literal

from perfmap_export.config import DEFAULT_BUFFER_SIZE, CompressionName, ExportConfig
from perfmap_export.manifest import ArtifactKind, ArtifactReference

LOGGER = logging.getLogger(__name__)

ResolutionOutcome = Literal["ARCHIVED", "MISSING", "ACCESS_DENIED", "GENERATION_FAILED"]
RESOLUTION_OUTCOME_VALUES: tuple[ResolutionOutcome, ...] = (
    "ARCHIVED",
    "MISSING",
    "ACCESS_DENIED",
    "GENERATION_FAILED",
)

COMPRESSION_METHODS: dict[str, int] = {
    "deflated": zipfile.ZIP_DEFLATED,
    "stored": zipfile.ZIP_STORED,
    "bzip2": zipfile.ZIP_BZIP2,
    "lzma": zipfile.ZIP_LZMA,
}

# Info-ZIP extended timestamp extra field, flags=0x01 (mtime only).
EXTENDED_TIMESTAMP_TAG = 0x5455
_EXTENDED_TIMESTAMP_FLAG_MTIME = 0x01
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1

_DOS_EPOCH = (1980, 1, 1, 0, 0, 0)
_DOS_MAX = (2107, 12, 31, 23, 59, 59)


class ArchiveContainerError(RuntimeError):
    """The output archive could not be opened, written, or finalised."""


@dataclass(frozen=True, slots=True)
class ArtifactResult:
    """Resolution outcome for one manifest artifact."""

    path: Path
    kind: ArtifactKind
    outcome: ResolutionOutcome
    process_id: str | None = None
    entry_name: str | None = None
    bytes_written: int = 0
    message: str | None = None

    @property
    def archived(self) -> bool:
        return self.outcome == "ARCHIVED"


def canonical_entry_name(path: Path) -> str:
    """Return the canonical absolute path used as the archive entry name."""

    try:
        return str(path.resolve())
    except (OSError, RuntimeError):
        return str(path.absolute())


def dos_date_time(mtime: float) -> tuple[int, int, int, int, int, int]:
    """Local DOS timestamp for ``mtime``, clamped to the range zip can store."""

    date_time = tuple(time.localtime(mtime)[:6])
    if date_time < _DOS_EPOCH:
        return _DOS_EPOCH
    if date_time > _DOS_MAX:
        return _DOS_MAX
    return date_time  # type: ignore[return-value]


def extended_timestamp_extra(mtime: float) -> bytes:
    """Encode an extended timestamp extra field, or ``b""`` when out of range."""

    seconds = int(mtime)
    if not _INT32_MIN <= seconds <= _INT32_MAX:
        return b""
    return struct.pack("<HHBi", EXTENDED_TIMESTAMP_TAG, 5, _EXTENDED_TIMESTAMP_FLAG_MTIME, seconds)


def read_extended_mtime(extra: bytes) -> int | None:
    """Extract the UTC mtime from an entry's extra field, if present."""

    offset = 0
    while offset + 4 <= len(extra):
        tag, size = struct.unpack_from("<HH", extra, offset)
        body = extra[offset + 4 : offset + 4 + size]
        if tag == EXTENDED_TIMESTAMP_TAG and len(body) >= 5 and body[0] & _EXTENDED_TIMESTAMP_FLAG_MTIME:
            return struct.unpack_from("<i", body, 1)[0]
        offset += 4 + size
    return None


class ArchiveWriter:
    """Append artifacts to a zip stream one entry at a time."""

    def __init__(
        self,
        sink: BinaryIO,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        compression: CompressionName = "deflated",
        compression_level: int | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self.buffer_size = buffer_size
        self.compression_level = compression_level
        self.entries_written = 0
        self.bytes_written = 0
        self._compress_type = COMPRESSION_METHODS[compression]
        self._logger = logger or LOGGER
        self._entry_names: set[str] = set()
        self._closed = False
        try:
            self._zip = zipfile.ZipFile(
                sink,
                mode="w",
                compression=self._compress_type,
                compresslevel=compression_level,
            )
        except (OSError, ValueError) as exc:
            raise ArchiveContainerError(f"Unable to open archive output: {exc}") from exc

    @classmethod
    def from_config(
        cls,
        sink: BinaryIO,
        config: ExportConfig,
        logger: logging.Logger | None = None,
    ) -> "ArchiveWriter":
        return cls(
            sink,
            buffer_size=config.buffer_size,
            compression=config.compression,
            compression_level=config.compression_level,
            logger=logger,
        )

    def __enter__(self) -> "ArchiveWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
            return
        # Best-effort close; the in-flight error propagates.
        self._closed = True
        try:
            self._zip.close()
        except (OSError, ValueError) as close_exc:
            self._logger.debug("archive.close_after_failure error=%s", close_exc)

    def add_artifact(self, reference: ArtifactReference) -> ArtifactResult:
        """Archive one resolved artifact, or report why it was skipped."""

        path = reference.path
        entry_name = canonical_entry_name(path)

        def result(outcome: ResolutionOutcome, **fields: object) -> ArtifactResult:
            return ArtifactResult(
                path=path,
                kind=reference.kind,
                outcome=outcome,
                process_id=reference.process_id,
                **fields,  # type: ignore[arg-type]
            )

        if not path.exists():
            self._logger.warning("archive.missing path=%s outcome=MISSING", entry_name)
            return result("MISSING", message="file does not exist")
        if not os.access(path, os.R_OK):
            self._logger.warning("archive.access_denied path=%s outcome=ACCESS_DENIED", entry_name)
            return result("ACCESS_DENIED", message="file is not readable")
        if entry_name in self._entry_names:
            self._logger.warning("archive.duplicate_entry path=%s outcome=ACCESS_DENIED", entry_name)
            return result("ACCESS_DENIED", message="duplicate entry")

        try:
            source = path.open("rb")
        except OSError as exc:
            self._logger.warning("archive.read_failed path=%s outcome=ACCESS_DENIED error=%s", path.absolute(), exc)
            return result("ACCESS_DENIED", message=str(exc))

        with source:
            try:
                stats = os.fstat(source.fileno())
                first_chunk = source.read(self.buffer_size)
            except OSError as exc:
                self._logger.warning(
                    "archive.read_failed path=%s outcome=ACCESS_DENIED error=%s", path.absolute(), exc
                )
                return result("ACCESS_DENIED", message=str(exc))
            written, read_error = self._write_entry(source, first_chunk, entry_name, stats)

        self._entry_names.add(entry_name)
        self.entries_written += 1
        self.bytes_written += written
        if read_error is not None:
            self._logger.warning(
                "archive.read_failed path=%s outcome=ACCESS_DENIED bytes=%s error=%s; entry is truncated",
                entry_name,
                written,
                read_error,
            )
            return result(
                "ACCESS_DENIED",
                entry_name=entry_name,
                bytes_written=written,
                message=f"truncated after {written} bytes: {read_error}",
            )
        self._logger.debug("archive.entry_written name=%s bytes=%s", entry_name, written)
        return result("ARCHIVED", entry_name=entry_name, bytes_written=written)

    def _entry_info(self, entry_name: str, stats: os.stat_result) -> zipfile.ZipInfo:
        info = zipfile.ZipInfo(entry_name, date_time=dos_date_time(stats.st_mtime))
        info.compress_type = self._compress_type
        if self.compression_level is not None:
            # ZipFile.open() reads the level from the ZipInfo, not the archive.
            if hasattr(info, "compress_level"):
                info.compress_level = self.compression_level
            else:
                info._compresslevel = self.compression_level
        info.external_attr = (stats.st_mode & 0xFFFF) << 16
        info.file_size = stats.st_size
        info.extra = extended_timestamp_extra(stats.st_mtime)
        return info

    def _write_entry(
        self,
        source: BinaryIO,
        first_chunk: bytes,
        entry_name: str,
        stats: os.stat_result,
    ) -> tuple[int, OSError | None]:
        """Stream one entry; a source read error ends the entry early instead of raising."""

        if self._closed:
            raise ArchiveContainerError("Archive is already closed")
        info = self._entry_info(entry_name, stats)
        written = 0
        read_error: OSError | None = None
        try:
            with self._zip.open(info, mode="w") as entry:
                chunk = first_chunk
                while chunk:
                    entry.write(chunk)
                    written += len(chunk)
                    try:
                        chunk = source.read(self.buffer_size)
                    except OSError as exc:
                        read_error = exc
                        break
        except (OSError, RuntimeError, zipfile.LargeZipFile) as exc:
            raise ArchiveContainerError(f"Failed writing archive entry {entry_name}: {exc}") from exc
        return written, read_error

    def close(self) -> None:
        """Write the central directory and flush the sink."""

        if self._closed:
            return
        self._closed = True
        try:
            self._zip.close()
        except OSError as exc:
            raise ArchiveContainerError(f"Failed to finalise archive: {exc}") from exc


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    """Listing row for an entry of a produced archive."""

    name: str
    size: int
    compressed_size: int
    modified: datetime


def list_archive_entries(archive_path: Path) -> list[ArchiveEntry]:
    """List entries in archive order, preferring the exact extended timestamp."""

    entries: list[ArchiveEntry] = []
    with zipfile.ZipFile(archive_path) as archive:
        for info in archive.infolist():
            mtime = read_extended_mtime(info.extra)
            if mtime is not None:
                modified = datetime.fromtimestamp(mtime, tz=timezone.utc)
            else:
                modified = datetime(*info.date_time).astimezone(timezone.utc)
            entries.append(
                ArchiveEntry(
                    name=info.filename,
                    size=info.file_size,
                    compressed_size=info.compress_size,
                    modified=modified,
                )
            )
    return entries
