"""Unit tests for redactstream/services/storage.py.

Coverage:
* LocalObjectStore.list() matches files only, sorted, with sizes
* LocalObjectStore.list() supports recursive ``**`` patterns
* LocalObjectStore.open() maps a missing file to a non-retryable StorageError
* LocalObjectStore.write_text() creates parent directories, replaces existing
  objects and leaves no temporary files behind
* filename_of() / detect_compression() / to_file_handle()
* open_stream() decompresses gzip and bzip2 and always closes the raw stream
* open_store() picks the backend from the location scheme
"""

from __future__ import annotations

import bz2
import gzip
import os
from pathlib import Path

import pytest

from redactstream.config import Settings
from redactstream.core.models import FileHandle
from redactstream.services.s3_storage import S3ObjectStore
from redactstream.services.storage import (
    LocalObjectStore,
    ObjectInfo,
    StorageError,
    detect_compression,
    filename_of,
    open_store,
    open_stream,
    to_file_handle,
)


class TestLocalList:
    def test_matches_files_sorted(self, tmp_path: Path) -> None:
        (tmp_path / "b.txt").write_text("bb")
        (tmp_path / "a.txt").write_text("a")
        (tmp_path / "c.csv").write_text("c")
        (tmp_path / "dir.txt").mkdir()

        infos = LocalObjectStore().list(str(tmp_path / "*.txt"))

        assert [os.path.basename(i.resource_id) for i in infos] == ["a.txt", "b.txt"]
        assert [i.size_bytes for i in infos] == [1, 2]
        assert all(os.path.isabs(i.resource_id) for i in infos)

    def test_recursive_pattern(self, tmp_path: Path) -> None:
        (tmp_path / "x" / "y").mkdir(parents=True)
        (tmp_path / "x" / "y" / "deep.txt").write_text("d")

        infos = LocalObjectStore().list(str(tmp_path / "**" / "*.txt"))

        assert [filename_of(i.resource_id) for i in infos] == ["deep.txt"]

    def test_no_matches(self, tmp_path: Path) -> None:
        assert LocalObjectStore().list(str(tmp_path / "*.txt")) == []


class TestLocalOpen:
    def test_reads_bytes(self, tmp_path: Path) -> None:
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello")
        with LocalObjectStore().open(str(path)) as fh:
            assert fh.read() == b"hello"

    def test_missing_file_is_not_retryable(self, tmp_path: Path) -> None:
        with pytest.raises(StorageError) as exc_info:
            LocalObjectStore().open(str(tmp_path / "missing.txt"))
        assert exc_info.value.retryable is False


class TestLocalWriteText:
    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        target = tmp_path / "out" / "nested" / "a.txt.txt"
        LocalObjectStore().write_text(str(target), "SSN [REDACTED] ok")
        assert target.read_text(encoding="utf-8") == "SSN [REDACTED] ok"

    def test_replaces_existing_object(self, tmp_path: Path) -> None:
        target = tmp_path / "a.txt.txt"
        target.write_text("old")
        LocalObjectStore().write_text(str(target), "new")
        assert target.read_text() == "new"

    def test_leaves_no_temporary_files(self, tmp_path: Path) -> None:
        LocalObjectStore().write_text(str(tmp_path / "a.txt"), "x")
        assert os.listdir(tmp_path) == ["a.txt"]

    def test_utf8_content(self, tmp_path: Path) -> None:
        target = tmp_path / "u.txt"
        LocalObjectStore().write_text(str(target), "café �")
        assert target.read_bytes() == "café �".encode("utf-8")

    def test_join_uses_os_path(self, tmp_path: Path) -> None:
        assert LocalObjectStore().join(str(tmp_path), "a.txt") == str(tmp_path / "a.txt")


class TestHelpers:
    @pytest.mark.parametrize(
        ("resource_id", "expected"),
        [
            ("s3://bucket/drop/a.txt", "a.txt"),
            ("/data/in/b.txt", "b.txt"),
            ("c.txt", "c.txt"),
        ],
    )
    def test_filename_of(self, resource_id: str, expected: str) -> None:
        assert filename_of(resource_id) == expected

    @pytest.mark.parametrize(
        ("resource_id", "expected"),
        [
            ("a.txt", "uncompressed"),
            ("a.txt.gz", "gzip"),
            ("A.TXT.GZIP", "gzip"),
            ("a.txt.bz2", "bzip2"),
        ],
    )
    def test_detect_compression(self, resource_id: str, expected: str) -> None:
        assert detect_compression(resource_id) == expected

    def test_to_file_handle(self) -> None:
        handle = to_file_handle(ObjectInfo("s3://in/drop/a.txt.gz", size_bytes=12))
        assert handle == FileHandle(
            filename="a.txt.gz",
            resource_id="s3://in/drop/a.txt.gz",
            size_bytes=12,
            compression="gzip",
        )

    def test_default_join(self, store) -> None:
        assert store.join("s3://out/prefix/", "a.txt.txt") == "s3://out/prefix/a.txt.txt"


class TestOpenStream:
    def test_plain(self, store) -> None:
        store.add("mem://a.txt", b"plain")
        handle = FileHandle(filename="a.txt", resource_id="mem://a.txt")
        with open_stream(store, handle) as fh:
            assert fh.read() == b"plain"
        assert store.streams[0].closed_by_reader

    def test_gzip(self, store) -> None:
        store.add("mem://a.txt.gz", gzip.compress(b"zipped text"))
        handle = FileHandle(
            filename="a.txt.gz", resource_id="mem://a.txt.gz", compression="gzip"
        )
        with open_stream(store, handle) as fh:
            assert fh.read() == b"zipped text"
        assert store.streams[0].closed_by_reader

    def test_bzip2(self, store) -> None:
        store.add("mem://a.txt.bz2", bz2.compress(b"bzipped text"))
        handle = FileHandle(
            filename="a.txt.bz2", resource_id="mem://a.txt.bz2", compression="bzip2"
        )
        with open_stream(store, handle) as fh:
            assert fh.read() == b"bzipped text"

    def test_closes_raw_stream_on_error(self, store) -> None:
        store.add("mem://a.txt", b"x")
        handle = FileHandle(filename="a.txt", resource_id="mem://a.txt")
        with pytest.raises(RuntimeError):
            with open_stream(store, handle):
                raise RuntimeError("consumer failed")
        assert store.streams[0].closed_by_reader

    def test_open_failure_propagates(self, store) -> None:
        handle = FileHandle(filename="missing.txt", resource_id="mem://missing.txt")
        with pytest.raises(StorageError):
            with open_stream(store, handle):
                pass


class TestOpenStore:
    def test_local_path(self) -> None:
        assert isinstance(open_store("/data/in/*.txt"), LocalObjectStore)

    def test_s3_url_uses_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        captured: dict = {}

        def fake_client(service_name: str, **kwargs):
            captured["service"] = service_name
            captured.update(kwargs)
            return object()

        monkeypatch.setattr("redactstream.services.s3_storage.boto3.client", fake_client)
        settings = Settings(
            aws_region="eu-west-2",
            s3_endpoint_url="http://localhost:9000",
        )

        store = open_store("s3://in/*.txt", settings)

        assert isinstance(store, S3ObjectStore)
        assert captured["service"] == "s3"
        assert captured["region_name"] == "eu-west-2"
        assert captured["endpoint_url"] == "http://localhost:9000"
