"""Backup engine: capture database, cache, object store and configuration.

Archive layout (one top-level directory per archive)::

    backup_YYYYMMDD_HHMMSS[_NN]/
        database.sql
        redis_data.tar.gz      (self-contained deployments only)
        minio_data.tar.gz      (self-contained deployments only)
        env_backup
        nginx_backup/
        manifest.json

Only the database dump is mandatory. Cache and object-store snapshots that
fail are recorded and the archive is marked ``partial``.
"""
from __future__ import annotations

import json
import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from . import __version__
from .archive import compute_checksum, create_archive, write_checksum_file
from .backups import (
    ArchiveRef,
    BackupEntryBuilder,
    BackupError,
    BackupsRegistry,
    DatabaseDumpFailedError,
    allocate_archive,
    apply_retention,
    copy_into,
    utc_now,
)
from .cancellation import CancelToken, check_cancelled
from .config import BackupConfig, ServicesConfig
from .envstore import EnvironmentStore
from .logging import OperationScope
from .providers.compose import ComposeError, Mount, Orchestrator

LOGGER = logging.getLogger(__name__)

DATABASE_DUMP = "database.sql"
CACHE_ARCHIVE = "redis_data.tar.gz"
OBJECT_STORE_ARCHIVE = "minio_data.tar.gz"
ENV_BACKUP = "env_backup"
PROXY_BACKUP = "nginx_backup"
MANIFEST = "manifest.json"
CACHE_VOLUME = "redis_data"
OBJECT_STORE_VOLUME = "minio_data"
SELF_CONTAINED_MODE = "express"
MANIFEST_VERSION = 1

OK = "ok"
FAILED = "failed"
SKIPPED = "skipped"
MISSING = "missing"


def database_identity(env: EnvironmentStore) -> tuple[str, str]:
    """Return the ``(DB_USER, DB_NAME)`` pair with the stack defaults."""
    user = (env.get("DB_USER") or "").strip() or "postgres"
    name = (env.get("DB_NAME") or "").strip() or "worklenz_db"
    return user, name


@dataclass(slots=True)
class BackupOutcome:
    """Result of :meth:`BackupEngine.create_backup`."""

    archive: ArchiveRef
    checksum: str
    components: dict[str, str]
    warnings: list[str] = field(default_factory=list)
    removed: list[ArchiveRef] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        """Return True when a snapshot that should exist is missing."""
        return any(status == FAILED for status in self.components.values())


class BackupEngine:
    """Create timestamped backup archives of a Worklenz deployment."""

    def __init__(
        self,
        *,
        backups: BackupConfig,
        services: ServicesConfig,
        env: EnvironmentStore,
        compose: Orchestrator,
        proxy_dir: Path,
        helper_image: str = "alpine",
        registry: BackupsRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Wire the engine to its collaborators."""
        self._backups = backups
        self._services = services
        self._env = env
        self._compose = compose
        self._proxy_dir = proxy_dir
        self._helper_image = helper_image
        self._registry = registry
        self._clock = clock

    @property
    def root(self) -> Path:
        """Directory holding archives."""
        return self._backups.root

    def retention_days(self) -> int:
        """Return the effective retention (``.env`` first, then tool config)."""
        return self._env.retention_days(self._backups.retention_days)

    def create_backup(
        self,
        *,
        op: OperationScope | None = None,
        cancel: CancelToken | None = None,
    ) -> BackupOutcome:
        """Capture a new archive and apply retention."""
        mode = self._env.deployment_mode()
        self.root.mkdir(parents=True, exist_ok=True)
        archive = allocate_archive(self.root, self._clock())
        staging = self.root / archive.staging_name
        staging.mkdir(parents=True)
        components: dict[str, str] = {}
        warnings: list[str] = []

        try:
            check_cancelled(cancel, "backup", "backup.database")
            self._dump_database(staging / DATABASE_DUMP)
            components["database"] = OK
            if op:
                op.add_step("backup.database", detail=DATABASE_DUMP)

            if mode == SELF_CONTAINED_MODE:
                check_cancelled(cancel, "backup", "backup.cache")
                components["cache"] = self._snapshot_cache(staging, warnings, op)
                check_cancelled(cancel, "backup", "backup.object_store")
                components["object_store"] = self._snapshot_volume(
                    "object_store", OBJECT_STORE_VOLUME, OBJECT_STORE_ARCHIVE, staging, warnings, op
                )
            else:
                components["cache"] = SKIPPED
                components["object_store"] = SKIPPED
                if op:
                    op.add_step("backup.cache", status="skipped", detail=f"{mode} mode")
                    op.add_step("backup.object_store", status="skipped", detail=f"{mode} mode")

            check_cancelled(cancel, "backup", "backup.configuration")
            components["env"] = self._copy_config(
                self._env.env_file, staging / ENV_BACKUP, "env", warnings, op
            )
            components["proxy"] = self._copy_config(
                self._proxy_dir, staging / PROXY_BACKUP, "proxy", warnings, op
            )

            self._write_manifest(staging, archive, mode, components)

            check_cancelled(cancel, "backup", "backup.archive")
            try:
                create_archive(staging, archive.path)
            except BackupError:
                archive.path.unlink(missing_ok=True)
                raise
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        checksum = compute_checksum(archive.path)
        write_checksum_file(archive.path, checksum)
        if op:
            op.add_step("backup.archive", detail=archive.name)

        outcome = BackupOutcome(
            archive=archive, checksum=checksum, components=components, warnings=warnings
        )
        if self._registry is not None:
            self._registry.append(
                BackupEntryBuilder(
                    archive=archive,
                    checksum=checksum,
                    components=components,
                    partial=outcome.partial,
                    deployment_mode=mode,
                    actor=op.actor if op else None,
                ).build()
            )

        outcome.removed = self.prune(op=op, warnings=warnings)
        return outcome

    def prune(
        self,
        retention_days: int | None = None,
        *,
        op: OperationScope | None = None,
        warnings: list[str] | None = None,
    ) -> list[ArchiveRef]:
        """Delete archives older than the retention horizon."""
        days = self.retention_days() if retention_days is None else retention_days
        try:
            removed = apply_retention(
                self.root, days, now=self._clock(), registry=self._registry
            )
        except BackupError as exc:
            if warnings is None:
                raise
            warnings.append(str(exc))
            if op:
                op.add_step("backup.retention", status="warning", detail=str(exc))
            return []
        if op:
            op.add_step(
                "backup.retention",
                detail=f"{len(removed)} archive(s) older than {days} day(s) removed",
            )
        return removed

    # Steps -----------------------------------------------------------
    def _dump_database(self, destination: Path) -> None:
        user, name = database_identity(self._env)
        try:
            self._compose.exec(
                self._services.database,
                ["pg_dump", "-U", user, "--clean", "--if-exists", name],
                stdout=destination,
            )
        except ComposeError as exc:
            raise DatabaseDumpFailedError(str(exc)) from exc
        if not destination.exists() or destination.stat().st_size == 0:
            raise DatabaseDumpFailedError("pg_dump produced no output.")

    def _snapshot_cache(
        self, staging: Path, warnings: list[str], op: OperationScope | None
    ) -> str:
        command = ["redis-cli"]
        password = (self._env.get("REDIS_PASSWORD") or "").strip()
        if password:
            command.extend(["-a", password, "--no-auth-warning"])
        command.extend(["--raw", "SAVE"])
        result = self._compose.exec(self._services.cache, command, check=False)
        if result.returncode != 0:
            # The volume snapshot below still captures the last persisted state.
            LOGGER.debug("redis SAVE exited %s", result.returncode)
            if op:
                op.add_step("backup.cache.flush", status="warning", detail="SAVE failed")
        return self._snapshot_volume("cache", CACHE_VOLUME, CACHE_ARCHIVE, staging, warnings, op)

    def _snapshot_volume(
        self,
        component: str,
        volume: str,
        filename: str,
        staging: Path,
        warnings: list[str],
        op: OperationScope | None,
    ) -> str:
        mounts = [
            Mount(self._compose.volume_name(volume), "/data", read_only=True),
            Mount(str(staging), "/backup"),
        ]
        try:
            self._compose.run_ephemeral(
                self._helper_image, mounts, ["tar", "czf", f"/backup/{filename}", "-C", "/data", "."]
            )
        except ComposeError as exc:
            warnings.append(f"{component} snapshot failed: {exc}")
            (staging / filename).unlink(missing_ok=True)
            if op:
                op.add_step(f"backup.{component}", status="warning", detail=str(exc))
            return FAILED
        if op:
            op.add_step(f"backup.{component}", detail=filename)
        return OK

    def _copy_config(
        self,
        source: Path,
        destination: Path,
        component: str,
        warnings: list[str],
        op: OperationScope | None,
    ) -> str:
        try:
            copied = copy_into(source, destination)
        except OSError as exc:
            warnings.append(f"Copying {source} failed: {exc}")
            if op:
                op.add_step(f"backup.{component}", status="warning", detail=str(exc))
            return FAILED
        if not copied:
            if op:
                op.add_step(f"backup.{component}", status="skipped", detail=f"{source} missing")
            return MISSING
        if op:
            op.add_step(f"backup.{component}", detail=destination.name)
        return OK

    def _write_manifest(
        self, staging: Path, archive: ArchiveRef, mode: str, components: dict[str, str]
    ) -> None:
        user, name = database_identity(self._env)
        manifest = {
            "format_version": MANIFEST_VERSION,
            "archive": archive.name,
            "captured_at": f"{archive.captured_at.isoformat()}Z",
            "written_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            "deployment_mode": mode,
            "database": {"user": user, "name": name},
            "components": components,
            "tool_version": __version__,
        }
        (staging / MANIFEST).write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")


__all__ = [
    "BackupEngine",
    "BackupOutcome",
    "CACHE_ARCHIVE",
    "DATABASE_DUMP",
    "ENV_BACKUP",
    "MANIFEST",
    "OBJECT_STORE_ARCHIVE",
    "PROXY_BACKUP",
    "database_identity",
]
