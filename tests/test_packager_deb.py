# =============================================================================
# PKGFORGE DEB ENCODER TESTS
# =============================================================================
# Tests for the ar container, control file and reproducibility.
# =============================================================================

import io
import tarfile

import pytest

from pkgforge.core.conditions import Dependency
from pkgforge.core.packager import PackageInfo
from pkgforge.core.packager.archive import collect_entries
from pkgforge.core.packager.deb import control_file, deb_name, md5sums, render_dependency, write_deb


@pytest.fixture(autouse=True)
def no_source_date_epoch(monkeypatch):
    monkeypatch.delenv("SOURCE_DATE_EPOCH", raising=False)


@pytest.fixture
def info():
    return PackageInfo(
        name="tool",
        version="1.0",
        revision="2",
        arch="x86_64",
        description="A tool\nLonger text.\n\nSecond paragraph.",
        maintainer="Jane <jane@example.com>",
        depends=[Dependency("libc6", ">=", "2.28"), Dependency("zlib1g")],
        provides=["tool-bin"],
        conflicts=["old-tool < 1.0"],
        url="https://example.com/tool",
    )


def _ar_members(data: bytes) -> dict[str, bytes]:
    assert data[:8] == b"!<arch>\n"
    members = {}
    offset = 8
    while offset < len(data):
        header = data[offset : offset + 60]
        assert header[58:60] == b"`\n"
        name = header[:16].decode().strip()
        size = int(header[48:58].decode().strip())
        members[name] = data[offset + 60 : offset + 60 + size]
        offset += 60 + size + (size % 2)
    return members


def _deb(info, payload_tree) -> bytes:
    buffer = io.BytesIO()
    write_deb(buffer, info, collect_entries(payload_tree))
    return buffer.getvalue()


class TestDebLayout:
    """Test the ar container."""

    def test_members_in_order(self, info, payload_tree):
        members = _ar_members(_deb(info, payload_tree))
        assert list(members) == ["debian-binary", "control.tar.gz", "data.tar.gz"]
        assert members["debian-binary"] == b"2.0\n"

    def test_control_archive(self, info, payload_tree):
        members = _ar_members(_deb(info, payload_tree))
        with tarfile.open(fileobj=io.BytesIO(members["control.tar.gz"]), mode="r:gz") as tar:
            control = tar.extractfile("./control").read().decode()
            sums = tar.extractfile("./md5sums").read().decode()
        assert "Package: tool\n" in control
        assert sums.endswith("  usr/share/doc/tool/README\n")

    def test_data_archive(self, info, payload_tree):
        members = _ar_members(_deb(info, payload_tree))
        with tarfile.open(fileobj=io.BytesIO(members["data.tar.gz"]), mode="r:gz") as tar:
            assert tar.extractfile("./usr/bin/tool").read() == b"#!/bin/sh\necho tool\n"
            assert all(m.uname == "root" for m in tar.getmembers())

    def test_byte_identical(self, info, payload_tree):
        assert _deb(info, payload_tree) == _deb(info, payload_tree)


class TestControlFile:
    """Test DEBIAN/control rendering."""

    def test_fields(self, info, payload_tree):
        control = control_file(info, collect_entries(payload_tree))
        assert "Version: 1.0-2\n" in control
        assert "Architecture: amd64\n" in control
        assert "Maintainer: Jane <jane@example.com>\n" in control
        assert "Depends: libc6 (>= 2.28), zlib1g\n" in control
        assert "Provides: tool-bin\n" in control
        assert "Conflicts: old-tool (<< 1.0)\n" in control
        assert "Homepage: https://example.com/tool\n" in control
        assert "Installed-Size: 1\n" in control

    def test_multiline_description(self, info, payload_tree):
        control = control_file(info, collect_entries(payload_tree))
        assert control.endswith("Description: A tool\n Longer text.\n .\n Second paragraph.\n")

    def test_empty_fields_omitted(self, payload_tree):
        control = control_file(PackageInfo(name="tool", version="1.0"), collect_entries(payload_tree))
        assert "Depends" not in control
        assert "Homepage" not in control
        assert "Description: tool\n" in control

    def test_md5sums_only_files(self, payload_tree):
        lines = md5sums(collect_entries(payload_tree)).splitlines()
        assert [line.split("  ")[1] for line in lines] == ["usr/bin/tool", "usr/share/doc/tool/README"]


class TestDebNaming:
    """Test names and dependency rendering."""

    def test_deb_name(self):
        assert deb_name("tool", "1.0", "2", "x86_64") == "tool_1.0-2_amd64.deb"
        assert deb_name("tool", "1.0", "1", "noarch") == "tool_1.0-1_all.deb"

    @pytest.mark.parametrize(
        "dependency,expected",
        [
            (Dependency("a"), "a"),
            (Dependency("a", ">", "1"), "a (>> 1)"),
            (Dependency("a", "<", "1"), "a (<< 1)"),
            (Dependency("a", "=", "1"), "a (= 1)"),
        ],
    )
    def test_render_dependency(self, dependency, expected):
        assert render_dependency(dependency) == expected
