"""Backup archive naming, the JSON backup index and retention.

Archive names encode the capture time in UTC so they sort in capture order
across daylight-saving changes.
"""
from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

ARCHIVE_PREFIX = "worklenz_backup_"
STAGING_PREFIX = "backup_"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
MAX_SEQUENCE = 99
_ARCHIVE_NAME = re.compile(
    r"^worklenz_backup_(?P<stamp>\d{8}_\d{6})(?:_(?P<seq>\d{2}))?\.tar\.gz$"
)


class BackupError(RuntimeError):
    """Raised when backup operations fail."""

    hint: str = ""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


class DatabaseDumpFailedError(BackupError):
    """Raised when the mandatory database dump step fails."""

    def __init__(self, message: str) -> None:
        """Attach the remediation hint."""
        super().__init__(f"Database dump failed: {message}")
        self.hint = "Make sure the database container is running (`wlzctl status`)."


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime, the form archive names encode."""
    return datetime.now(tz=UTC).replace(tzinfo=None)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(UTC).replace(tzinfo=None)


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


# ----------------------------------------------------------------------
# Archive naming


@dataclass(frozen=True, slots=True)
class ArchiveRef:
    """A backup archive identified by its capture timestamp."""

    path: Path
    captured_at: datetime
    sequence: int = 0

    @property
    def name(self) -> str:
        """Return the archive file name."""
        return self.path.name

    @property
    def archive_id(self) -> str:
        """Return the name without the ``.tar.gz`` suffix."""
        return self.path.name.removesuffix(".tar.gz")

    @property
    def stamp(self) -> str:
        """Return the ``YYYYMMDD_HHMMSS[_NN]`` uniqueness key."""
        return self.archive_id.removeprefix(ARCHIVE_PREFIX)

    @property
    def staging_name(self) -> str:
        """Return the directory name stored inside the archive."""
        return f"{STAGING_PREFIX}{self.stamp}"

    @property
    def size_bytes(self) -> int:
        """Return the archive size, or 0 when it no longer exists."""
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0


def parse_archive_name(path: Path) -> ArchiveRef | None:
    """Return an :class:`ArchiveRef` for *path*, or None if the name does not match."""
    match = _ARCHIVE_NAME.match(path.name)
    if match is None:
        return None
    captured_at = datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT)
    sequence = int(match.group("seq")) if match.group("seq") else 0
    return ArchiveRef(path=path, captured_at=captured_at, sequence=sequence)


def archive_name(captured_at: datetime, sequence: int = 0) -> str:
    """Return the archive file name for *captured_at*.

    The bare name sorts before every ``_NN`` variant of the same second and
    all of them sort before the following second.
    """
    stamp = captured_at.strftime(TIMESTAMP_FORMAT)
    if sequence:
        return f"{ARCHIVE_PREFIX}{stamp}_{sequence:02d}.tar.gz"
    return f"{ARCHIVE_PREFIX}{stamp}.tar.gz"


def allocate_archive(root: Path, captured_at: datetime) -> ArchiveRef:
    """Return the first unused archive name for *captured_at* under *root*.

    Aware datetimes are converted to UTC; naive ones are taken as UTC already.
    """
    captured_at = _as_utc(captured_at).replace(microsecond=0)
    for sequence in range(MAX_SEQUENCE + 1):
        ref = ArchiveRef(
            path=root / archive_name(captured_at, sequence),
            captured_at=captured_at,
            sequence=sequence,
        )
        if not ref.path.exists() and not (root / ref.staging_name).exists():
            return ref
    raise BackupError(
        f"More than {MAX_SEQUENCE + 1} backups were started at {captured_at:%Y-%m-%d %H:%M:%S}."
    )


def list_archives(root: Path) -> list[ArchiveRef]:
    """Return archives under *root*, oldest first."""
    if not root.exists():
        return []
    refs = [ref for ref in (parse_archive_name(path) for path in root.iterdir()) if ref]
    return sorted(refs, key=lambda ref: ref.name)


def expired_archives(
    archives: list[ArchiveRef], retention_days: int, now: datetime
) -> list[ArchiveRef]:
    """Return archives captured more than *retention_days* before *now*.

    A retention of zero disables the sweep.
    """
    if retention_days <= 0:
        return []
    horizon = _as_utc(now) - timedelta(days=retention_days)
    return [ref for ref in archives if ref.captured_at < horizon]


def apply_retention(
    root: Path,
    retention_days: int,
    *,
    now: datetime | None = None,
    registry: BackupsRegistry | None = None,
) -> list[ArchiveRef]:
    """Delete expired archives (and their checksum sidecars); return them."""
    current = now or utc_now()
    removed: list[ArchiveRef] = []
    for ref in expired_archives(list_archives(root), retention_days, current):
        try:
            ref.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise BackupError(f"Failed to delete expired archive {ref.name}: {exc}") from exc
        ref.path.with_name(f"{ref.name}.sha256").unlink(missing_ok=True)
        removed.append(ref)
    if registry is not None and removed:
        registry.mark_removed([ref.archive_id for ref in removed])
    return removed


# ----------------------------------------------------------------------
# Index


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            text = self.index.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        updated: list[object] = list(self.list_entries())
        updated.append(dict(entry))
        self.write({"backups": updated})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries."""
        data = self.read()
        backups = data.get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def update_entry(
        self,
        backup_id: str,
        mutator: Callable[[dict[str, object]], None],
    ) -> dict[str, object]:
        """Apply *mutator* to the entry for *backup_id* and persist changes."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        entries = self.list_entries()
        updated_entry: dict[str, object] | None = None
        for index, entry in enumerate(entries):
            if str(entry.get("id", "")).strip() == normalized:
                mutable = dict(entry)
                mutator(mutable)
                entries[index] = mutable
                updated_entry = mutable
                break
        if updated_entry is None:
            raise BackupRegistryError(f"Backup '{normalized}' not found in index.")
        self.write({"backups": entries})
        return updated_entry

    def record_restore(
        self, backup_id: str, outcomes: Mapping[str, str]
    ) -> dict[str, object] | None:
        """Stamp the entry for *backup_id* with the time and result of a restore.

        Archives that are not in the index are left alone and ``None`` is returned.
        """
        if self.find_by_id(backup_id) is None:
            return None

        def _stamp(entry: dict[str, object]) -> None:
            entry["last_restored_at"] = _now_iso()
            entry["last_restore"] = dict(outcomes)

        return self.update_entry(backup_id, _stamp)

    def mark_removed(self, backup_ids: list[str]) -> int:
        """Flag entries for *backup_ids* as removed; return how many changed."""
        wanted = {identifier.strip() for identifier in backup_ids}
        entries = self.list_entries()
        changed = 0
        for entry in entries:
            if str(entry.get("id", "")).strip() in wanted and entry.get("status") != "removed":
                entry["status"] = "removed"
                entry["removed_at"] = _now_iso()
                changed += 1
        if changed:
            self.write({"backups": entries})
        return changed


@dataclass(slots=True)
class BackupEntryBuilder:
    """Helper for constructing backup index entries."""

    archive: ArchiveRef
    checksum: str
    components: Mapping[str, str]
    partial: bool = False
    deployment_mode: str | None = None
    actor: Mapping[str, object] | None = None

    def build(self) -> dict[str, object]:
        """Return the JSON-serialisable entry for the backup index."""
        entry: dict[str, object] = {
            "id": self.archive.archive_id,
            "created_at": _now_iso(),
            "captured_at": f"{self.archive.captured_at.isoformat()}Z",
            "path": str(self.archive.path),
            "size_bytes": self.archive.size_bytes,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "status": "partial" if self.partial else "available",
            "components": dict(self.components),
        }
        if self.deployment_mode:
            entry["deployment_mode"] = self.deployment_mode
        if self.actor:
            entry["created_by"] = dict(self.actor)
        return entry


def copy_into(source: Path, destination: Path) -> bool:
    """Copy or mirror *source* into *destination*; return False if it is missing."""
    if not source.exists():
        return False
    if source.is_dir():
        shutil.copytree(source, destination, dirs_exist_ok=True)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
    return True


__all__ = [
    "ArchiveRef",
    "BackupEntryBuilder",
    "BackupError",
    "BackupRegistryError",
    "BackupsRegistry",
    "DatabaseDumpFailedError",
    "allocate_archive",
    "apply_retention",
    "archive_name",
    "copy_into",
    "expired_archives",
    "list_archives",
    "parse_archive_name",
    "utc_now",
]
