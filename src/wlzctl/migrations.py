"""Schema initialisation and migration tracking for the Worklenz database."""
from __future__ import annotations

import gzip
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .logging import OperationScope
from .providers.compose import ComposeError, Orchestrator

MIGRATIONS_TABLE = "schema_migrations"
BASE_STEPS: tuple[tuple[str, str], ...] = (
    ("extensions", "0_extensions.sql"),
    ("tables", "1_tables.sql"),
    ("indexes", "indexes.sql"),
    ("functions", "4_functions.sql"),
    ("triggers", "triggers.sql"),
    ("views", "3_views.sql"),
    ("seed data", "2_dml.sql"),
    ("database user", "5_database_user.sql"),
)
CREATE_MIGRATIONS_TABLE = f"""
CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
    id SERIAL PRIMARY KEY,
    migration_name VARCHAR(255) NOT NULL UNIQUE,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""
_MIGRATION_NAME = re.compile(r"^[A-Za-z0-9._-]+\.sql$")

APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
FAILED = "failed"
MISSING = "missing"
RESTORED = "restored"
DUMP_PATTERN = "worklenz_backup_*.sql.gz"


class MigrationError(RuntimeError):
    """Raised when SQL cannot be executed against the database."""


class SqlExecutor(Protocol):
    """Execute SQL against the target database."""

    def run_file(self, path: Path, *, prelude: str | None = None) -> None:
        """Execute the statements in *path*; raise :class:`MigrationError` on failure.

        When *prelude* is given it runs first, in the same transaction.
        """

    def query(self, sql: str) -> list[str]:
        """Run *sql* and return result rows as unaligned text lines."""


class PsqlExecutor:
    """Run ``psql`` inside the database container through compose."""

    def __init__(self, compose: Orchestrator, service: str, user: str, database: str) -> None:
        """Bind the executor to a compose service and database."""
        self._compose = compose
        self._service = service
        self._user = user
        self._database = database

    def _base(self) -> list[str]:
        return ["psql", "-v", "ON_ERROR_STOP=1", "-U", self._user, "-d", self._database]

    def run_file(self, path: Path, *, prelude: str | None = None) -> None:
        """Stream *path* into ``psql``.

        With a *prelude* the combined script runs under ``--single-transaction``
        so the prelude commits together with the file, or not at all.
        """
        command = [*self._base(), "-q"]
        try:
            if prelude is None:
                self._compose.exec(self._service, command, stdin=path)
                return
            with tempfile.TemporaryDirectory(prefix="wlzctl-sql-") as scratch:
                script = Path(scratch) / path.name
                script.write_text(
                    prelude.rstrip() + "\n" + path.read_text(encoding="utf-8"), encoding="utf-8"
                )
                self._compose.exec(self._service, [*command, "--single-transaction"], stdin=script)
        except ComposeError as exc:
            raise MigrationError(f"{path.name}: {exc}") from exc

    def query(self, sql: str) -> list[str]:
        """Run *sql* with tuples-only, unaligned output."""
        try:
            result = self._compose.exec(self._service, [*self._base(), "-t", "-A", "-c", sql])
        except ComposeError as exc:
            raise MigrationError(str(exc)) from exc
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]


@dataclass(slots=True)
class StepOutcome:
    """Outcome of one initialisation step or migration."""

    name: str
    file: str
    status: str
    detail: str | None = None


class DatabaseInitializer:
    """Apply the base schema files in dependency order."""

    def __init__(self, sql_dir: Path, executor: SqlExecutor) -> None:
        """Bind to the directory holding the base schema files."""
        self.sql_dir = sql_dir
        self._executor = executor

    def is_initialized(self) -> bool:
        """Return True when the public schema already holds tables."""
        rows = self._executor.query(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = 'public';"
        )
        return bool(rows) and rows[0].isdigit() and int(rows[0]) > 0

    def latest_dump(self, dumps_dir: Path) -> Path | None:
        """Return the newest ``worklenz_backup_*.sql.gz`` in *dumps_dir*."""
        if not dumps_dir.is_dir():
            return None
        dumps = sorted(path for path in dumps_dir.glob(DUMP_PATTERN) if path.is_file())
        return dumps[-1] if dumps else None

    def restore_dump(self, dump: Path, *, op: OperationScope | None = None) -> StepOutcome:
        """Replay the gzip-compressed SQL dump *dump* into the database."""
        try:
            with tempfile.TemporaryDirectory(prefix="wlzctl-dump-") as scratch:
                plain = Path(scratch) / dump.name.removesuffix(".gz")
                with gzip.open(dump, "rb") as source, plain.open("wb") as target:
                    shutil.copyfileobj(source, target)
                self._executor.run_file(plain)
            outcome = StepOutcome("backup restore", dump.name, RESTORED)
        except (OSError, EOFError) as exc:
            outcome = StepOutcome("backup restore", dump.name, FAILED, f"{dump.name}: {exc}")
        except MigrationError as exc:
            outcome = StepOutcome("backup restore", dump.name, FAILED, str(exc))
        if op:
            status = "success" if outcome.status == RESTORED else "warning"
            op.add_step("db.init.restore_dump", status=status, detail=outcome.detail or dump.name)
        return outcome

    def initialize(self, *, op: OperationScope | None = None) -> list[StepOutcome]:
        """Run every base step; a failing step does not stop the next one."""
        outcomes: list[StepOutcome] = []
        for name, filename in BASE_STEPS:
            path = self.sql_dir / filename
            if not path.is_file():
                outcome = StepOutcome(name, filename, MISSING, f"{path} not found")
            else:
                try:
                    self._executor.run_file(path)
                    outcome = StepOutcome(name, filename, APPLIED)
                except MigrationError as exc:
                    outcome = StepOutcome(name, filename, FAILED, str(exc))
            outcomes.append(outcome)
            if op:
                status = "success" if outcome.status == APPLIED else "warning"
                op.add_step(f"db.init.{filename}", status=status, detail=outcome.detail)
        return outcomes


def _record_statement(name: str) -> str:
    # Runs ahead of the body so a COMMIT inside the file also covers the record.
    return f"INSERT INTO {MIGRATIONS_TABLE} (migration_name) VALUES ('{name}');"


class MigrationRunner:
    """Apply pending migrations in filename order, recording each one."""

    def __init__(self, migrations_dir: Path, executor: SqlExecutor) -> None:
        """Bind to the migrations directory."""
        self.migrations_dir = migrations_dir
        self._executor = executor

    def discover(self) -> list[Path]:
        """Return migration files sorted by name."""
        if not self.migrations_dir.is_dir():
            return []
        files = [path for path in self.migrations_dir.glob("*.sql") if path.is_file()]
        for path in files:
            if not _MIGRATION_NAME.match(path.name):
                raise MigrationError(f"Unsupported migration file name: {path.name}")
        return sorted(files, key=lambda path: path.name)

    def ensure_table(self) -> None:
        """Create the migration record table when absent."""
        self._executor.query(CREATE_MIGRATIONS_TABLE)

    def applied(self) -> set[str]:
        """Return the names already present in the migration record."""
        return set(self._executor.query(f"SELECT migration_name FROM {MIGRATIONS_TABLE};"))

    def run(self, *, op: OperationScope | None = None) -> list[StepOutcome]:
        """Apply pending migrations.

        Already recorded migrations are reported as ``already_applied``. The
        first failure stops the run so later migrations never build on a
        missing one.
        """
        migrations = self.discover()
        if not migrations:
            return []
        self.ensure_table()
        done = self.applied()
        outcomes: list[StepOutcome] = []
        for path in migrations:
            name = path.name
            if name in done:
                outcomes.append(StepOutcome(name, name, ALREADY_APPLIED))
                if op:
                    op.add_step(f"db.migrate.{name}", status="skipped", detail="already applied")
                continue
            try:
                self._executor.run_file(path, prelude=_record_statement(name))
            except MigrationError as exc:
                outcomes.append(StepOutcome(name, name, FAILED, str(exc)))
                if op:
                    op.add_step(f"db.migrate.{name}", status="error", detail=str(exc))
                break
            done.add(name)
            outcomes.append(StepOutcome(name, name, APPLIED))
            if op:
                op.add_step(f"db.migrate.{name}")
        return outcomes


__all__ = [
    "ALREADY_APPLIED",
    "APPLIED",
    "BASE_STEPS",
    "DatabaseInitializer",
    "FAILED",
    "MISSING",
    "MigrationError",
    "MigrationRunner",
    "PsqlExecutor",
    "RESTORED",
    "SqlExecutor",
    "StepOutcome",
]
