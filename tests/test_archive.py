from __future__ import annotations

import io
import logging
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

import perfmap_export.archive as archive_module
from perfmap_export.archive import (
    ArchiveContainerError,
    ArchiveWriter,
    extended_timestamp_extra,
    list_archive_entries,
    read_extended_mtime,
)
from perfmap_export.config import ExportConfig
from perfmap_export.manifest import ArtifactReference


def _plain(path):
    return ArtifactReference(path=path, kind="PLAIN_FILE")


def test_archived_entry_round_trips_bytes_and_timestamp(write_artifact):
    mtime = datetime(2021, 5, 4, 12, 30, 10)
    payload = bytes(range(256)) * 50
    source = write_artifact("lib/libfoo.so", payload, mtime=mtime)
    sink = io.BytesIO()

    with ArchiveWriter(sink, buffer_size=7) as writer:
        result = writer.add_artifact(_plain(source))

    assert result.outcome == "ARCHIVED"
    assert result.entry_name == str(source.resolve())
    assert result.bytes_written == len(payload)
    with zipfile.ZipFile(io.BytesIO(sink.getvalue())) as archive:
        info = archive.getinfo(str(source.resolve()))
        assert archive.read(info) == payload
        assert info.date_time == (2021, 5, 4, 12, 30, 10)
        assert read_extended_mtime(info.extra) == int(mtime.timestamp())


def test_entry_name_is_canonical(write_artifact, tmp_path):
    source = write_artifact("real/libbar.so")
    indirect = tmp_path / "real" / ".." / "real" / "libbar.so"
    sink = io.BytesIO()

    with ArchiveWriter(sink) as writer:
        writer.add_artifact(_plain(indirect))

    with zipfile.ZipFile(io.BytesIO(sink.getvalue())) as archive:
        assert archive.namelist() == [str(source.resolve())]


def test_missing_file_is_reported_without_entry(tmp_path, caplog):
    sink = io.BytesIO()

    with caplog.at_level(logging.WARNING):
        with ArchiveWriter(sink) as writer:
            result = writer.add_artifact(_plain(tmp_path / "gone.so"))

    assert result.outcome == "MISSING"
    assert writer.entries_written == 0
    assert "gone.so" in caplog.text
    with zipfile.ZipFile(io.BytesIO(sink.getvalue())) as archive:
        assert archive.namelist() == []


def test_unreadable_file_is_access_denied(write_artifact, monkeypatch, caplog):
    source = write_artifact("secret.so")
    real_access = archive_module.os.access
    monkeypatch.setattr(
        archive_module.os,
        "access",
        lambda path, mode: False if Path(path) == source else real_access(path, mode),
    )
    sink = io.BytesIO()

    with caplog.at_level(logging.WARNING):
        with ArchiveWriter(sink) as writer:
            result = writer.add_artifact(_plain(source))

    assert result.outcome == "ACCESS_DENIED"
    assert writer.entries_written == 0
    assert "ACCESS_DENIED" in caplog.text


def test_open_failure_is_access_denied(tmp_path):
    directory = tmp_path / "not-a-file.so"
    directory.mkdir()
    sink = io.BytesIO()

    with ArchiveWriter(sink) as writer:
        result = writer.add_artifact(_plain(directory))

    assert result.outcome == "ACCESS_DENIED"
    assert writer.entries_written == 0


def test_duplicate_artifact_is_reported_and_not_rewritten(write_artifact):
    source = write_artifact("libdup.so")
    sink = io.BytesIO()

    with ArchiveWriter(sink) as writer:
        first = writer.add_artifact(_plain(source))
        second = writer.add_artifact(_plain(source))

    assert first.outcome == "ARCHIVED"
    assert second.outcome == "ACCESS_DENIED"
    assert second.message == "duplicate entry"
    assert second.bytes_written == 0
    assert writer.entries_written == 1


class _Unseekable(io.RawIOBase):
    def __init__(self) -> None:
        self.data = bytearray()

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        self.data.extend(b)
        return len(b)


def test_unseekable_sink_produces_valid_archive(write_artifact):
    first = write_artifact("a.so", b"first payload")
    second = write_artifact("b.so", b"second payload" * 1000)
    sink = _Unseekable()

    with ArchiveWriter.from_config(sink, ExportConfig(buffer_size=64, compression="stored")) as writer:
        writer.add_artifact(_plain(first))
        writer.add_artifact(_plain(second))

    with zipfile.ZipFile(io.BytesIO(bytes(sink.data))) as archive:
        assert archive.namelist() == [str(first.resolve()), str(second.resolve())]
        assert archive.read(str(second.resolve())) == b"second payload" * 1000


class _BrokenSink(_Unseekable):
    def write(self, b) -> int:
        raise OSError("No space left on device")


def test_sink_write_failure_is_container_error(write_artifact):
    source = write_artifact("c.so")

    with pytest.raises(ArchiveContainerError):
        with ArchiveWriter(_BrokenSink()) as writer:
            writer.add_artifact(_plain(source))


def test_extended_timestamp_out_of_range_is_omitted():
    assert extended_timestamp_extra(2**40) == b""
    assert read_extended_mtime(b"") is None
    assert read_extended_mtime(extended_timestamp_extra(1_600_000_000)) == 1_600_000_000


def test_list_archive_entries_uses_exact_timestamp(write_artifact, tmp_path):
    mtime = datetime(2022, 1, 2, 3, 4, 5)
    source = write_artifact("libts.so", b"abc", mtime=mtime)
    archive_path = tmp_path / "out.zip"
    with archive_path.open("wb") as sink, ArchiveWriter(sink) as writer:
        writer.add_artifact(_plain(source))

    entries = list_archive_entries(archive_path)

    assert len(entries) == 1
    assert entries[0].name == str(source.resolve())
    assert entries[0].size == 3
    assert entries[0].modified == datetime.fromtimestamp(int(mtime.timestamp()), tz=timezone.utc)


@pytest.mark.skipif(not Path("/proc/self/mem").exists(), reason="needs procfs")
def test_source_failing_on_first_read_writes_no_entry(write_artifact):
    after = write_artifact("after.so", b"after")
    sink = io.BytesIO()

    with ArchiveWriter(sink) as writer:
        failed = writer.add_artifact(_plain(Path("/proc/self/mem")))
        archived = writer.add_artifact(_plain(after))

    assert failed.outcome == "ACCESS_DENIED"
    assert failed.entry_name is None
    assert archived.outcome == "ARCHIVED"
    with zipfile.ZipFile(io.BytesIO(sink.getvalue())) as archive:
        assert archive.namelist() == [str(after.resolve())]


class _FailingAfterFirstRead:
    def __init__(self, wrapped) -> None:
        self._wrapped = wrapped
        self._reads = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self._wrapped.close()

    def fileno(self) -> int:
        return self._wrapped.fileno()

    def read(self, size: int = -1) -> bytes:
        self._reads += 1
        if self._reads > 1:
            raise OSError(5, "Input/output error")
        return self._wrapped.read(size)


def test_source_failing_mid_payload_leaves_truncated_entry(write_artifact, monkeypatch, caplog):
    flaky = write_artifact("flaky.so", b"0123456789" * 10)
    after = write_artifact("after.so", b"after")
    real_open = Path.open

    def fake_open(self, *args, **kwargs):
        handle = real_open(self, *args, **kwargs)
        return _FailingAfterFirstRead(handle) if self == flaky else handle

    monkeypatch.setattr(Path, "open", fake_open)
    sink = io.BytesIO()

    with caplog.at_level(logging.WARNING):
        with ArchiveWriter(sink, buffer_size=10) as writer:
            truncated = writer.add_artifact(_plain(flaky))
            archived = writer.add_artifact(_plain(after))

    assert truncated.outcome == "ACCESS_DENIED"
    assert truncated.bytes_written == 10
    assert archived.outcome == "ARCHIVED"
    assert "truncated" in caplog.text
    with zipfile.ZipFile(io.BytesIO(sink.getvalue())) as archive:
        assert archive.read(str(flaky.resolve())) == b"0123456789"
        assert archive.read(str(after.resolve())) == b"after"


def test_compression_level_reaches_each_entry(write_artifact):
    source = write_artifact("big.so", b"a" * 10000)
    sizes = {}
    for level in (0, 9):
        sink = io.BytesIO()
        with ArchiveWriter(sink, compression_level=level) as writer:
            writer.add_artifact(_plain(source))
        with zipfile.ZipFile(io.BytesIO(sink.getvalue())) as archive:
            sizes[level] = archive.getinfo(str(source.resolve())).compress_size

    assert sizes[0] > 10000
    assert sizes[9] < 1000
