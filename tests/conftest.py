"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import os
import re
import shutil
import subprocess
import tarfile
from collections.abc import Sequence
from pathlib import Path

import pytest

from wlzctl.config import AppConfig, load_config
from wlzctl.envstore import EnvironmentStore
from wlzctl.providers.compose import ComposeError, Mount

DUMP_HEADER = "-- fake pg_dump\n"

ENV_TEMPLATE = """\
# Worklenz deployment settings
DOMAIN=localhost
DEPLOYMENT_MODE=express
ENABLE_SSL=false

# Secrets
SESSION_SECRET=CHANGE_THIS_SESSION_SECRET
COOKIE_SECRET=CHANGE_THIS_COOKIE_SECRET
JWT_SECRET=CHANGE_THIS_JWT_SECRET
DB_USER=postgres
DB_NAME=worklenz_db
DB_PASSWORD=CHANGE_THIS_DB_PASSWORD
AWS_SECRET_ACCESS_KEY=CHANGE_THIS_MINIO_PASSWORD
REDIS_PASSWORD=worklenz_redis_pass

# URLs
VITE_API_URL=http://localhost:3000
VITE_SOCKET_URL=ws://localhost:3000
FRONTEND_URL=http://localhost:5000
SERVER_CORS=*
SOCKET_IO_CORS=*
GOOGLE_CALLBACK_URL=http://localhost:3000/secure/google/verify
# LETSENCRYPT_EMAIL=
BACKUP_RETENTION_DAYS=30
"""


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def _completed(args: Sequence[str], returncode: int = 0, stdout: str = "", stderr: str = ""):
    return subprocess.CompletedProcess(list(args), returncode, stdout, stderr)


class FakeCompose:
    """In-memory stand-in for the compose facade.

    The database is a mapping of table name to rows; ``pg_dump`` serialises it
    and ``psql`` fed with such a dump replaces it. Named volumes are plain
    directories under ``root``.
    """

    def __init__(self, root: Path, project: str = "test") -> None:
        """Create an empty deployment rooted at *root*."""
        self.root = root
        self.project = project
        self.database: dict[str, list[str]] = {}
        self.migrations: list[str] = []
        self.executed_files: list[str] = []
        self.calls: list[tuple[str, tuple[object, ...]]] = []
        self.db_ready = True
        self.dump_rc = 0
        self.replay_rc = 0
        self.stop_error: str | None = None
        self.failing_volumes: set[str] = set()
        self.certbot_rc = 0
        self.certbot_output = "Successfully received certificate."
        self.proxy_valid = True
        self.record_failures = 0
        self.docker_available = True
        (root / "volumes").mkdir(parents=True, exist_ok=True)

    # Helpers ---------------------------------------------------------
    def volume_dir(self, name: str) -> Path:
        """Return the directory backing the volume *name* (unscoped)."""
        path = self.root / "volumes" / self.volume_name(name)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def is_available(self) -> bool:
        """Report whether ``docker compose`` can be used."""
        return self.docker_available

    def called(self, name: str) -> list[tuple[object, ...]]:
        """Return the arguments of every call to *name*."""
        return [args for call, args in self.calls if call == name]

    def _resolve(self, mounts: Sequence[Mount]) -> dict[str, Path]:
        resolved: dict[str, Path] = {}
        for mount in mounts:
            source = Path(mount.source)
            if not source.is_absolute():
                source = self.root / "volumes" / mount.source
                source.mkdir(parents=True, exist_ok=True)
            resolved[mount.target] = source
        return resolved

    # Orchestrator surface --------------------------------------------
    def volume_name(self, name: str) -> str:
        return f"{self.project}_{name}"

    def start(self, services: Sequence[str] = (), profiles: Sequence[str] = ()):
        self.calls.append(("start", (tuple(services), tuple(profiles))))
        return _completed(["up"])

    def stop(self, profiles: Sequence[str] | None = None):
        self.calls.append(("stop", (profiles,)))
        if self.stop_error:
            raise ComposeError(self.stop_error, returncode=1, stderr=self.stop_error)
        return _completed(["down"])

    def restart(self, services: Sequence[str] = ()):
        self.calls.append(("restart", (tuple(services),)))
        return _completed(["restart"])

    def pull(self, profiles: Sequence[str] = ()):
        self.calls.append(("pull", (tuple(profiles),)))
        return _completed(["pull"])

    def build(self, profiles: Sequence[str] = (), *, no_cache: bool = False):
        self.calls.append(("build", (tuple(profiles), no_cache)))
        return _completed(["build"])

    def status(self):
        self.calls.append(("status", ()))
        return []

    def logs(self, service: str | None = None, *, tail: int = 100, follow: bool = False):
        self.calls.append(("logs", (service, tail, follow)))
        return _completed(["logs"], stdout="backend  | listening on 3000\n")

    def exec(
        self,
        service: str,
        command: Sequence[str],
        *,
        stdin: Path | None = None,
        stdout: Path | None = None,
        check: bool = True,
    ):
        self.calls.append(("exec", (service, tuple(command))))
        program = command[0]
        if program == "pg_isready":
            return _completed(command, 0 if self.db_ready else 2)
        if program == "redis-cli":
            return _completed(command, 0, "OK\n")
        if program == "nginx":
            return _completed(command, 0 if self.proxy_valid else 1)
        if program == "pg_dump":
            return self._pg_dump(command, stdout, check)
        if program == "psql":
            return self._psql(command, stdin, check)
        return _completed(command)

    def run_ephemeral(self, image: str, mounts: Sequence[Mount], command: Sequence[str]):
        self.calls.append(("run_ephemeral", (image, tuple(command))))
        paths = self._resolve(mounts)
        data = paths["/data"]
        if data.name in self.failing_volumes:
            raise ComposeError(f"volume {data.name} unavailable", returncode=1, stderr="")
        backup = paths["/backup"]
        if command[0] == "tar":
            with tarfile.open(backup / Path(command[2]).name, "w:gz") as archive:
                for entry in sorted(data.iterdir()):
                    archive.add(entry, arcname=entry.name)
        else:
            script = command[-1]
            name = re.search(r"/backup/(\S+)", script).group(1)  # type: ignore[union-attr]
            shutil.rmtree(data)
            data.mkdir()
            with tarfile.open(backup / name, "r:gz") as archive:
                archive.extractall(data, filter="data")
        return _completed(command)

    def run_service(self, service: str, command: Sequence[str], *, check: bool = True):
        self.calls.append(("run_service", (service, tuple(command))))
        return _completed(command, self.certbot_rc, self.certbot_output, "")

    # Database simulation ---------------------------------------------
    def _pg_dump(self, command: Sequence[str], stdout: Path | None, check: bool):
        if self.dump_rc != 0:
            if check:
                raise ComposeError("pg_dump: connection refused", returncode=self.dump_rc)
            return _completed(command, self.dump_rc)
        payload = DUMP_HEADER + json.dumps(
            {"tables": self.database, "migrations": self.migrations}, sort_keys=True
        )
        assert stdout is not None
        stdout.write_text(payload + "\n", encoding="utf-8")
        return _completed(command)

    def _psql(self, command: Sequence[str], stdin: Path | None, check: bool):
        if "-c" in command:
            return _completed(command, 0, self._query(command[command.index("-c") + 1]))
        assert stdin is not None
        text = stdin.read_text(encoding="utf-8")
        if text.startswith(DUMP_HEADER):
            if self.replay_rc != 0:
                if check:
                    raise ComposeError("psql: ERROR: syntax error", returncode=self.replay_rc)
                return _completed(command, self.replay_rc)
            loaded = json.loads(text[len(DUMP_HEADER):])
            self.database = {key: list(value) for key, value in loaded["tables"].items()}
            self.migrations = list(loaded["migrations"])
            return _completed(command)
        record = re.search(r"INSERT INTO schema_migrations \(migration_name\) VALUES \('([^']+)'\)", text)
        failed = "ERROR" in text
        if record and (self.record_failures or record.group(1) in self.migrations):
            self.record_failures = max(self.record_failures - 1, 0)
            failed = True
        if failed:
            # Nothing from the script survives a failed run.
            if check:
                raise ComposeError(f"psql: {stdin.name} failed", returncode=3)
            return _completed(command, 3)
        self.executed_files.append(stdin.name)
        for table in re.findall(r"CREATE TABLE (\w+)", text):
            self.database.setdefault(table, [])
        if record:
            self.migrations.append(record.group(1))
        return _completed(command)

    def _query(self, sql: str) -> str:
        if "information_schema.tables" in sql:
            return f"{len(self.database)}\n"
        if sql.startswith("SELECT migration_name"):
            return "".join(f"{name}\n" for name in self.migrations)
        match = re.search(r"VALUES \('([^']+)'\)", sql)
        if match and match.group(1) not in self.migrations:
            self.migrations.append(match.group(1))
        return ""


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Return a deployment checkout holding a ``.env.example`` template."""
    project = tmp_path / "project"
    project.mkdir()
    (project / ".env.example").write_text(ENV_TEMPLATE, encoding="utf-8")
    return project


@pytest.fixture
def app_config(tmp_path: Path, project_dir: Path) -> AppConfig:
    """Return a configuration rooted at the temporary project."""
    return load_config(
        config_file=tmp_path / "missing-config.yml",
        env={},
        overrides={
            "project_dir": str(project_dir),
            "compose": {"project_name": "test"},
            "readiness": {"timeout": 0.2, "initial_delay": 0.01, "max_delay": 0.02},
        },
    )


@pytest.fixture
def env_store(app_config: AppConfig) -> EnvironmentStore:
    """Return a loaded environment store seeded from the template."""
    store = EnvironmentStore(app_config.env_file, app_config.env_template)
    store.load()
    return store


@pytest.fixture
def fake_compose(tmp_path: Path) -> FakeCompose:
    """Return an empty fake compose deployment."""
    return FakeCompose(tmp_path / "docker")
