"""Tarball and checksum helpers shared by backup and restore."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from pathlib import Path

from .backups import BackupError

ARCHIVE_SUFFIX = ".tar.gz"
CHECKSUM_SUFFIX = ".sha256"


def _tar_binary() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise BackupError("The 'tar' command is required to create and extract archives.")
    return tar_bin


def create_archive(source_dir: Path, archive_path: Path) -> None:
    """Create a gzip tarball of *source_dir* (as its top-level entry)."""
    cmd = [
        _tar_binary(),
        "-czf",
        str(archive_path),
        "-C",
        str(source_dir.parent),
        source_dir.name,
    ]
    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise BackupError(message.strip())

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def extract_archive(archive_path: Path, destination: Path) -> Path:
    """Extract *archive_path* into *destination* and return its content directory.

    Archives hold exactly one top-level directory; when several entries are
    found the destination itself is returned.
    """
    destination.mkdir(parents=True, exist_ok=True)
    result = subprocess.run(  # noqa: S603, S607
        [_tar_binary(), "-xzf", str(archive_path), "-C", str(destination)],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise BackupError(f"Failed to extract {archive_path.name}: {message.strip()}")
    entries = [entry for entry in destination.iterdir() if not entry.name.startswith(".")]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return destination


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path_for(archive_path: Path) -> Path:
    """Return the ``<archive>.sha256`` sidecar path."""
    return archive_path.with_name(f"{archive_path.name}{CHECKSUM_SUFFIX}")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = checksum_path_for(archive_path)
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def read_checksum_file(archive_path: Path) -> str | None:
    """Return the recorded checksum, or None when no sidecar exists."""
    checksum_path = checksum_path_for(archive_path)
    if not checksum_path.exists():
        return None
    text = checksum_path.read_text(encoding="utf-8").strip()
    if not text:
        return None
    return text.split()[0]


__all__ = [
    "ARCHIVE_SUFFIX",
    "CHECKSUM_SUFFIX",
    "checksum_path_for",
    "compute_checksum",
    "create_archive",
    "extract_archive",
    "read_checksum_file",
    "write_checksum_file",
]
