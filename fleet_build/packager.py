"""
Build context packaging.

Creates the in-memory tar archive sent to the container engine: every
project file that survives the ignore rules, with POSIX entry names and
the original mtime, mode and size.
"""

import copy
import io
import json
import logging
import sys
import tarfile
import time
from collections.abc import Callable
from typing import Any

from .ignore import FileStats, filter_files, unused_dockerignore_files
from .project import service_dirs_from_composition

logger = logging.getLogger(__name__)

BINARY_SNIFF_LENGTH = 8000


def is_windows() -> bool:
    return sys.platform == "win32"


def is_binary(data: bytes) -> bool:
    """Treat content with a NUL byte near the start as binary."""
    return b"\x00" in data[:BINARY_SNIFF_LENGTH]


def convert_eol(data: bytes) -> bytes:
    """Convert CRLF line endings to LF, leaving binary content untouched."""
    if is_binary(data) or b"\r\n" not in data:
        return data
    return data.replace(b"\r\n", b"\n")


def read_file(file_path: str, eol_conversion: bool) -> bytes:
    """
    Read a file for the build context.

    Line endings are only converted on Windows hosts.
    Errors reading the file propagate unchanged.
    """
    with open(file_path, "rb") as f:
        data = f.read()
    if eol_conversion and is_windows():
        converted = convert_eol(data)
        if converted is not data:
            logger.debug(f"Converted line endings CRLF -> LF for file: {file_path}")
        return converted
    return data


def add_bytes_entry(
    tar: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644, mtime: float | None = None
) -> None:
    """Append an in-memory file to an open tar archive."""
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mode = mode
    info.mtime = int(time.time() if mtime is None else mtime)
    tar.addfile(info, io.BytesIO(data))


def registry_secrets_entry(secrets: dict[str, Any]) -> Callable[[tarfile.TarFile], None]:
    """Return a pre-finalize hook adding ``.balena/registry-secrets.json``."""

    def add_secrets(tar: tarfile.TarFile) -> None:
        add_bytes_entry(tar, ".balena/registry-secrets.json", json.dumps(secrets).encode())

    return add_secrets


def _warn_unused_dockerignore(
    files: list[FileStats], multi_dockerignore: bool, service_dirs: dict[str, str]
) -> None:
    unused = unused_dockerignore_files(files, multi_dockerignore, service_dirs)
    if unused:
        lines = ["The following .dockerignore file(s) will not be used:"]
        lines.extend(f"* {path}" for path in unused)
        if multi_dockerignore:
            lines.append(
                "When --multi-dockerignore (-m) is used, only .dockerignore files at the "
                "root of each service's build context, plus a .dockerignore file at the "
                "overall project root, are used."
            )
        else:
            lines.append(
                "By default, only one .dockerignore file at the source folder (project "
                "root) is used. Multicontainer fleets may use a separate .dockerignore "
                "file for each service with the --multi-dockerignore (-m) option."
            )
        logger.warning("\n".join(lines))
    elif multi_dockerignore and not service_dirs:
        logger.info(
            "The --multi-dockerignore (-m) option was specified, but it has no effect "
            "for single-container fleets."
        )


def tar_directory(
    directory: str,
    *,
    composition: dict[str, Any] | None = None,
    convert_eol: bool = False,
    multi_dockerignore: bool = False,
    use_gitignore: bool = True,
    pre_finalize: Callable[[tarfile.TarFile], None] | None = None,
) -> bytes:
    """
    Package a project directory into a tar archive.

    Args:
        directory: Project source directory
        composition: Normalized composition, used to locate service directories
        convert_eol: Convert CRLF to LF in text files (Windows hosts only)
        multi_dockerignore: Use per-service .dockerignore files
        use_gitignore: Also apply .gitignore files
        pre_finalize: Called with the open archive before it is closed, so it
            can append extra entries

    Returns:
        The archive bytes

    Raises:
        OSError: If a file cannot be read
    """
    service_dirs = service_dirs_from_composition(directory, composition)
    filtered = filter_files(directory, multi_dockerignore, service_dirs, use_gitignore)
    _warn_unused_dockerignore(filtered.dockerignore_files, multi_dockerignore, service_dirs)

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for file_stats in filtered.files:
            data = read_file(file_stats.file_path, convert_eol)
            info = tarfile.TarInfo(name=file_stats.rel_path)
            info.size = len(data)
            info.mode = file_stats.stat.st_mode & 0o7777
            info.mtime = int(file_stats.stat.st_mtime)
            tar.addfile(info, io.BytesIO(data))
        if pre_finalize is not None:
            pre_finalize(tar)
    logger.debug(f"Packaged {len(filtered.files)} files from {directory}")
    return buffer.getvalue()


def read_tar_entries(archive: bytes) -> list[tuple[tarfile.TarInfo, bytes]]:
    """Read every regular file of an archive into memory, preserving order."""
    entries = []
    if not archive:
        return entries
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r") as tar:
        for info in tar:
            if not info.isfile():
                continue
            f = tar.extractfile(info)
            entries.append((info, f.read() if f is not None else b""))
    return entries


def write_tar_entries(entries: list[tuple[tarfile.TarInfo, bytes]]) -> bytes:
    """Write entries to a new archive. Entry sizes are taken from the data."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for info, data in entries:
            info = copy.copy(info)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def replace_tar_entry(archive: bytes, name: str, data: bytes, mode: int = 0o644) -> bytes:
    """Return a copy of ``archive`` with ``name`` set to ``data`` (added if missing)."""
    entries = read_tar_entries(archive)
    for index, (info, _) in enumerate(entries):
        if info.name == name:
            entries[index] = (info, data)
            break
    else:
        info = tarfile.TarInfo(name=name)
        info.mode = mode
        info.mtime = int(time.time())
        entries.append((info, data))
    return write_tar_entries(entries)
