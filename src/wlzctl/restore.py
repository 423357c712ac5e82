"""Restore engine: replay a backup archive onto the running deployment.

Nothing is mutated until the operator has confirmed both the archive choice
and the loss of current data. After that every data class (database, cache,
object store, configuration) is attempted independently; services are always
restarted, and the result reports what was restored.
"""
from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .archive import compute_checksum, extract_archive, read_checksum_file
from .backups import ArchiveRef, BackupError
from .cancellation import CancelToken, OperationCancelledError, check_cancelled
from .config import BackupConfig, ReadinessConfig, ServicesConfig
from .envstore import EnvironmentStore, EnvironmentStoreError
from .logging import OperationScope
from .providers.compose import ComposeError, Mount, Orchestrator, start_profiles
from .readiness import ServiceNotReadyError, wait_until
from .snapshot import (
    CACHE_ARCHIVE,
    CACHE_VOLUME,
    DATABASE_DUMP,
    ENV_BACKUP,
    OBJECT_STORE_ARCHIVE,
    OBJECT_STORE_VOLUME,
    database_identity,
)

RESTORED = "restored"
FAILED = "failed"
SKIPPED = "skipped"
DATA_CLASSES = ("database", "cache", "object_store", "env")


class RestoreError(RuntimeError):
    """Base class for restore failures."""

    hint: str = ""


class RestoreNotConfirmedError(RestoreError):
    """Raised when the double confirmation is missing or does not match."""

    def __init__(self, reason: str) -> None:
        """Explain which confirmation is missing."""
        super().__init__(f"Restore not confirmed: {reason}")
        self.hint = "Confirm the archive name and acknowledge that current data will be lost."


class RestoreFailedError(RestoreError):
    """Raised when the archive is unusable or the database replay fails."""

    def __init__(self, message: str, result: RestoreResult | None = None) -> None:
        """Attach the per-class result when one exists."""
        super().__init__(message)
        self.result = result
        self.hint = "Inspect the database with `wlzctl logs postgres` and retry the restore."


class InvalidSelectionError(RestoreError):
    """Raised when an archive selection does not match any archive."""

    def __init__(self, selection: str, available: int) -> None:
        """Describe the valid range."""
        super().__init__(
            f"Invalid selection '{selection}'; choose 1-{available} or an archive name."
        )
        self.selection = selection
        self.hint = "List archives with `wlzctl backup list`."


@dataclass(frozen=True, slots=True)
class RestoreConfirmation:
    """The two separate confirmations a restore requires."""

    archive_name: str
    acknowledge_data_loss: bool

    def verify(self, archive: ArchiveRef) -> None:
        """Raise :class:`RestoreNotConfirmedError` unless both confirmations hold."""
        if self.archive_name not in {archive.name, archive.archive_id}:
            raise RestoreNotConfirmedError(
                f"confirmed archive '{self.archive_name}' is not '{archive.name}'."
            )
        if not self.acknowledge_data_loss:
            raise RestoreNotConfirmedError("data loss was not acknowledged.")


@dataclass(slots=True)
class RestoreResult:
    """Per data-class outcome of a restore."""

    archive: ArchiveRef
    outcomes: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    services_restarted: bool = False

    @property
    def succeeded(self) -> list[str]:
        """Return the data classes that were restored."""
        return [name for name, status in self.outcomes.items() if status == RESTORED]

    @property
    def failed(self) -> list[str]:
        """Return the data classes that failed."""
        return [name for name, status in self.outcomes.items() if status == FAILED]

    @property
    def ok(self) -> bool:
        """Return True when nothing failed and services came back."""
        return not self.failed and self.services_restarted

    def record(self, data_class: str, status: str, error: str | None = None) -> None:
        """Store *status* (and *error*) for *data_class*."""
        self.outcomes[data_class] = status
        if error:
            self.errors[data_class] = error


def select_archive(archives: Sequence[ArchiveRef], selection: str) -> ArchiveRef:
    """Resolve a 1-based index (newest first) or an archive name."""
    choice = selection.strip()
    newest_first = sorted(archives, key=lambda ref: ref.name, reverse=True)
    if choice.isdigit():
        index = int(choice)
        if 1 <= index <= len(newest_first):
            return newest_first[index - 1]
        raise InvalidSelectionError(choice, len(newest_first))
    for ref in newest_first:
        if choice in {ref.name, ref.archive_id, ref.stamp}:
            return ref
    raise InvalidSelectionError(choice, len(newest_first))


class RestoreEngine:
    """Restore database, volumes and configuration from an archive."""

    def __init__(
        self,
        *,
        backups: BackupConfig,
        services: ServicesConfig,
        readiness: ReadinessConfig,
        env: EnvironmentStore,
        compose: Orchestrator,
        helper_image: str = "alpine",
        scratch_dir: Path | None = None,
    ) -> None:
        """Wire the engine to its collaborators."""
        self._backups = backups
        self._services = services
        self._readiness = readiness
        self._env = env
        self._compose = compose
        self._helper_image = helper_image
        self._scratch_dir = scratch_dir

    def restore(
        self,
        archive: ArchiveRef,
        confirmation: RestoreConfirmation,
        *,
        restore_env: bool = False,
        op: OperationScope | None = None,
        cancel: CancelToken | None = None,
    ) -> RestoreResult:
        """Restore *archive*; raise :class:`RestoreFailedError` if the database fails."""
        confirmation.verify(archive)
        self._verify_archive(archive, op)

        if self._scratch_dir is not None:
            self._scratch_dir.mkdir(parents=True, exist_ok=True)
        scratch = Path(
            tempfile.mkdtemp(
                prefix="wlzctl-restore-",
                dir=str(self._scratch_dir) if self._scratch_dir else None,
            )
        )
        result = RestoreResult(archive=archive)
        cancelled: OperationCancelledError | None = None
        try:
            check_cancelled(cancel, "restore", "restore.extract")
            try:
                content = extract_archive(archive.path, scratch)
            except BackupError as exc:
                raise RestoreFailedError(str(exc)) from exc
            dump = content / DATABASE_DUMP
            if not dump.is_file():
                raise RestoreFailedError(f"{archive.name} does not contain {DATABASE_DUMP}.")
            if op:
                op.add_step("restore.extract", detail=archive.name)

            check_cancelled(cancel, "restore", "restore.stop_services")
            try:
                self._compose.stop()
            except ComposeError as exc:
                self._restart_services(result, op)
                raise RestoreFailedError(f"Stopping services failed: {exc}", result) from exc
            if op:
                op.add_step("restore.stop_services")

            try:
                check_cancelled(cancel, "restore", "restore.database")
                self._restore_database(dump, result, op)
                check_cancelled(cancel, "restore", "restore.cache")
                self._restore_volume(
                    "cache", CACHE_VOLUME, content / CACHE_ARCHIVE, result, op
                )
                check_cancelled(cancel, "restore", "restore.object_store")
                self._restore_volume(
                    "object_store", OBJECT_STORE_VOLUME, content / OBJECT_STORE_ARCHIVE, result, op
                )
                check_cancelled(cancel, "restore", "restore.env")
                self._restore_env(content / ENV_BACKUP, restore_env, result, op)
            except OperationCancelledError as exc:
                cancelled = exc
            self._restart_services(result, op)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        if cancelled is not None:
            raise cancelled
        if result.outcomes.get("database") == FAILED:
            raise RestoreFailedError(
                f"Database restore failed: {result.errors.get('database', 'unknown error')}",
                result,
            )
        return result

    # Steps -----------------------------------------------------------
    def _verify_archive(self, archive: ArchiveRef, op: OperationScope | None) -> None:
        if not archive.path.is_file():
            raise RestoreFailedError(f"Archive {archive.path} does not exist.")
        expected = read_checksum_file(archive.path)
        if expected is None:
            if op:
                op.add_step("restore.verify", status="skipped", detail="no checksum sidecar")
            return
        actual = compute_checksum(archive.path)
        if actual != expected:
            raise RestoreFailedError(
                f"Checksum mismatch for {archive.name}: expected {expected}, got {actual}."
            )
        if op:
            op.add_step("restore.verify", detail="sha256 ok")

    def _restore_database(
        self, dump: Path, result: RestoreResult, op: OperationScope | None
    ) -> None:
        database = self._services.database
        user, name = database_identity(self._env)
        try:
            self._compose.start([database])
            wait_until(
                database,
                lambda: self._compose.exec(
                    database, ["pg_isready", "-U", user, "-d", name], check=False
                ).returncode
                == 0,
                self._readiness,
            )
            command = ["psql", "-v", "ON_ERROR_STOP=1", "-U", user, "-d", name]
            if self._backups.single_transaction:
                command.insert(1, "--single-transaction")
            self._compose.exec(database, command, stdin=dump)
        except (ComposeError, ServiceNotReadyError) as exc:
            result.record("database", FAILED, str(exc))
            if op:
                op.add_step("restore.database", status="error", detail=str(exc))
            return
        result.record("database", RESTORED)
        if op:
            op.add_step("restore.database", detail=name)

    def _restore_volume(
        self,
        data_class: str,
        volume: str,
        tarball: Path,
        result: RestoreResult,
        op: OperationScope | None,
    ) -> None:
        if not tarball.is_file():
            result.record(data_class, SKIPPED)
            if op:
                op.add_step(f"restore.{data_class}", status="skipped", detail="not in archive")
            return
        mounts = [
            Mount(self._compose.volume_name(volume), "/data"),
            Mount(str(tarball.parent), "/backup", read_only=True),
        ]
        script = f"find /data -mindepth 1 -delete && tar xzf /backup/{tarball.name} -C /data"
        try:
            self._compose.run_ephemeral(self._helper_image, mounts, ["sh", "-c", script])
        except ComposeError as exc:
            result.record(data_class, FAILED, str(exc))
            if op:
                op.add_step(f"restore.{data_class}", status="error", detail=str(exc))
            return
        result.record(data_class, RESTORED)
        if op:
            op.add_step(f"restore.{data_class}", detail=tarball.name)

    def _restore_env(
        self,
        source: Path,
        requested: bool,
        result: RestoreResult,
        op: OperationScope | None,
    ) -> None:
        if not requested or not source.is_file():
            result.record("env", SKIPPED)
            if op:
                detail = "not requested" if not requested else "not in archive"
                op.add_step("restore.env", status="skipped", detail=detail)
            return
        target = self._env.env_file
        try:
            mode = target.stat().st_mode & 0o777 if target.exists() else 0o600
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(tmp_fd, "wb") as handle:
                    handle.write(source.read_bytes())
                os.chmod(tmp_path, mode)
                os.replace(tmp_path, target)
            finally:
                tmp_path.unlink(missing_ok=True)
            self._env.load()
        except (OSError, EnvironmentStoreError) as exc:
            result.record("env", FAILED, str(exc))
            if op:
                op.add_step("restore.env", status="error", detail=str(exc))
            return
        result.record("env", RESTORED)
        if op:
            op.add_step("restore.env", detail=str(target))

    def _restart_services(self, result: RestoreResult, op: OperationScope | None) -> None:
        try:
            profiles = start_profiles(self._env.deployment_mode(), self._env.ssl_enabled())
            self._compose.start(profiles=profiles)
        except (ComposeError, EnvironmentStoreError) as exc:
            result.errors["services"] = str(exc)
            if op:
                op.add_step("restore.start_services", status="error", detail=str(exc))
            return
        result.services_restarted = True
        if op:
            op.add_step("restore.start_services", detail=",".join(profiles))


__all__ = [
    "DATA_CLASSES",
    "InvalidSelectionError",
    "RestoreConfirmation",
    "RestoreEngine",
    "RestoreError",
    "RestoreFailedError",
    "RestoreNotConfirmedError",
    "RestoreResult",
    "select_archive",
]
