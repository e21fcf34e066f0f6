# =============================================================================
# PKGFORGE ARCHIVE TESTS
# =============================================================================
# Tests for payload collection and deterministic tar/gzip output.
# =============================================================================

import gzip
import io
import tarfile

import pytest

from pkgforge.core.packager.archive import (
    build_timestamp,
    collect_entries,
    tarball_name,
    write_tar,
    write_tar_gz,
)


@pytest.fixture(autouse=True)
def no_source_date_epoch(monkeypatch):
    monkeypatch.delenv("SOURCE_DATE_EPOCH", raising=False)


class TestCollectEntries:
    """Test walking the output directory."""

    def test_sorted_relative_paths(self, payload_tree):
        paths = [e.path for e in collect_entries(payload_tree)]
        assert paths == sorted(paths)
        assert "usr/bin/tool" in paths
        assert "usr" in paths

    def test_kinds(self, payload_tree):
        entries = {e.path: e for e in collect_entries(payload_tree)}
        assert entries["usr/bin/tool"].is_file
        assert entries["usr/bin/tool"].mode == 0o755
        assert entries["usr/bin"].is_dir
        assert entries["usr/bin/tool-alias"].is_symlink
        assert entries["usr/bin/tool-alias"].linkname == "tool"

    def test_exclude_directory_prunes_subtree(self, payload_tree):
        paths = [e.path for e in collect_entries(payload_tree, ["usr/share/doc"])]
        assert not any(p.startswith("usr/share/doc") for p in paths)
        assert "usr/share" in paths

    def test_exclude_glob(self, payload_tree):
        paths = [e.path for e in collect_entries(payload_tree, ["usr/bin/*-alias"])]
        assert "usr/bin/tool-alias" not in paths
        assert "usr/bin/tool" in paths

    def test_absolute_exclude_ignored(self, payload_tree):
        paths = [e.path for e in collect_entries(payload_tree, ["/usr/bin"])]
        assert "usr/bin/tool" in paths

    def test_empty_directory(self, tmp_path):
        assert collect_entries(tmp_path) == []


class TestTimestamps:
    """Test build timestamp selection."""

    def test_newest_mtime(self, payload_tree):
        assert build_timestamp(collect_entries(payload_tree)) == 1_700_000_000

    def test_source_date_epoch_clamps(self, payload_tree, monkeypatch):
        monkeypatch.setenv("SOURCE_DATE_EPOCH", "1600000000")
        entries = collect_entries(payload_tree)
        assert build_timestamp(entries) == 1_600_000_000
        assert all(e.mtime <= 1_600_000_000 for e in entries)

    def test_empty_payload(self):
        assert build_timestamp([]) == 0


class TestTarOutput:
    """Test tar and tar.gz streams."""

    def test_root_owned_members(self, payload_tree):
        buffer = io.BytesIO()
        write_tar(buffer, collect_entries(payload_tree))
        buffer.seek(0)
        with tarfile.open(fileobj=buffer) as tar:
            members = tar.getmembers()
            assert all(m.uid == 0 and m.gid == 0 and m.uname == "root" for m in members)
            assert tar.extractfile("usr/bin/tool").read() == b"#!/bin/sh\necho tool\n"
            assert tar.getmember("usr/bin/tool-alias").issym()

    def test_dot_prefix(self, payload_tree):
        buffer = io.BytesIO()
        write_tar(buffer, collect_entries(payload_tree), prefix="./")
        buffer.seek(0)
        with tarfile.open(fileobj=buffer) as tar:
            names = tar.getnames()
        assert names[0] in ("./", ".")
        assert "./usr/bin/tool" in names

    def test_gzip_is_byte_identical(self, payload_tree):
        first, second = io.BytesIO(), io.BytesIO()
        write_tar_gz(first, collect_entries(payload_tree))
        write_tar_gz(second, collect_entries(payload_tree))
        assert first.getvalue() == second.getvalue()

    def test_gzip_header_has_no_mtime(self, payload_tree):
        buffer = io.BytesIO()
        write_tar_gz(buffer, collect_entries(payload_tree))
        data = buffer.getvalue()
        assert data[:2] == b"\x1f\x8b"
        assert data[4:8] == b"\x00\x00\x00\x00"
        assert tarfile.open(fileobj=io.BytesIO(gzip.decompress(data))).getnames()

    def test_tarball_name(self):
        assert tarball_name("tool", "1.0", "2", "x86_64") == "tool-1.0-2.x86_64.tar.gz"
