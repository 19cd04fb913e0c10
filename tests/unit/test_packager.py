"""
Unit tests for fleet_build.packager.

Tests the build context archive produced from a project directory.
"""

import io
import json
import os
import tarfile
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from fleet_build.packager import (
    convert_eol,
    is_binary,
    read_tar_entries,
    registry_secrets_entry,
    replace_tar_entry,
    tar_directory,
)


class TestTarDirectory:
    """Test suite for tar_directory."""

    @pytest.fixture
    def temp_project(self):
        """Create a project with nested files and an ignored directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            (root / "Dockerfile").write_text("FROM alpine\nCOPY . /app\n")
            (root / ".dockerignore").write_text("node_modules\n")
            src = root / "src" / "lib"
            src.mkdir(parents=True)
            (src / "util.py").write_text("X = 1\r\n")
            (root / "run.sh").write_text("#!/bin/sh\necho hi\n")
            os.chmod(root / "run.sh", 0o755)
            (root / "node_modules").mkdir()
            (root / "node_modules" / "dep.js").write_text("module.exports = 1")
            yield root

    def _members(self, archive: bytes) -> dict[str, tarfile.TarInfo]:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r") as tar:
            return {info.name: info for info in tar.getmembers()}

    def test_posix_entry_names(self, temp_project):
        """Test that nested files are archived with forward-slash relative names."""
        members = self._members(tar_directory(str(temp_project)))
        assert "src/lib/util.py" in members
        assert "Dockerfile" in members
        assert all("\\" not in name and not name.startswith("/") for name in members)

    def test_ignored_files_excluded(self, temp_project):
        members = self._members(tar_directory(str(temp_project)))
        assert "node_modules/dep.js" not in members

    def test_mode_and_size_preserved(self, temp_project):
        """Test that the executable bit and size of each file survive."""
        members = self._members(tar_directory(str(temp_project)))
        assert members["run.sh"].mode & 0o111
        assert members["run.sh"].size == len("#!/bin/sh\necho hi\n")

    def test_eol_untouched_off_windows(self, temp_project):
        """Test that CRLF files are kept byte-for-byte on non-Windows hosts."""
        with patch("fleet_build.packager.is_windows", return_value=False):
            archive = tar_directory(str(temp_project), convert_eol=True)
        files = {info.name: data for info, data in read_tar_entries(archive)}
        assert files["src/lib/util.py"] == b"X = 1\r\n"

    def test_eol_converted_on_windows(self, temp_project):
        with patch("fleet_build.packager.is_windows", return_value=True):
            archive = tar_directory(str(temp_project), convert_eol=True)
        files = {info.name: data for info, data in read_tar_entries(archive)}
        assert files["src/lib/util.py"] == b"X = 1\n"

    def test_registry_secrets_appended(self, temp_project):
        """Test that the pre-finalize hook adds .balena/registry-secrets.json."""
        secrets = {"registry.example.com": {"username": "u", "password": "p"}}
        archive = tar_directory(str(temp_project), pre_finalize=registry_secrets_entry(secrets))
        files = {info.name: data for info, data in read_tar_entries(archive)}
        assert json.loads(files[".balena/registry-secrets.json"]) == secrets


class TestArchiveHelpers:
    """Test suite for archive and line-ending helpers."""

    def test_convert_eol_skips_binary(self):
        data = b"\x00\x01\r\n"
        assert is_binary(data)
        assert convert_eol(data) is data

    def test_replace_tar_entry_adds_and_replaces(self):
        archive = replace_tar_entry(b"", "Dockerfile", b"FROM alpine\n")
        archive = replace_tar_entry(archive, "Dockerfile", b"FROM debian\n")
        archive = replace_tar_entry(archive, "extra.txt", b"x")
        entries = [(info.name, data) for info, data in read_tar_entries(archive)]
        assert entries == [("Dockerfile", b"FROM debian\n"), ("extra.txt", b"x")]
