"""Tests for the wlzctl command line."""
from __future__ import annotations

import gzip
import json
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest
from conftest import DUMP_HEADER, FakeCompose
from rich.console import Console
from typer.testing import CliRunner, Result

from wlzctl import __version__, cli
from wlzctl.backups import list_archives
from wlzctl.envstore import EnvironmentStore
from wlzctl.locking import LockManager
from wlzctl.providers.compose import ComposeProvider

runner = CliRunner()

Invoke = Callable[..., Result]


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture(autouse=True)
def wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep long paths from wrapping assertions across lines."""
    monkeypatch.setattr(cli, "console", Console(width=400))


@pytest.fixture
def config_file(tmp_path: Path, project_dir: Path) -> Path:
    """Write a tool config pointing at the temporary project."""
    path = tmp_path / "wlzctl.yml"
    path.write_text(
        f"project_dir: {project_dir}\n"
        "lock_timeout: 2\n"
        "compose:\n"
        "  project_name: test\n"
        "readiness:\n"
        "  timeout: 0.2\n"
        "  initial_delay: 0.01\n"
        "  max_delay: 0.02\n"
    )
    return path


@pytest.fixture
def invoke(
    monkeypatch: pytest.MonkeyPatch, config_file: Path, fake_compose: FakeCompose
) -> Invoke:
    """Return a runner bound to the fake deployment, never prompting."""
    monkeypatch.setattr(ComposeProvider, "from_config", lambda config: fake_compose)
    monkeypatch.setattr(cli, "_interactive", lambda: False)

    def _invoke(*args: str) -> Result:
        return runner.invoke(cli.app, ["--config-file", str(config_file), *args])

    return _invoke


def _env(project_dir: Path) -> EnvironmentStore:
    store = EnvironmentStore(project_dir / ".env")
    store.load()
    return store


def _last_operation(project_dir: Path) -> dict[str, object]:
    log = project_dir / "logs" / "wlzctl" / "operations.jsonl"
    return json.loads(log.read_text().splitlines()[-1])


def _seed(fake: FakeCompose) -> None:
    fake.database = {"users": ["alice"]}
    (fake.volume_dir("redis_data") / "dump.rdb").write_bytes(b"REDIS")
    (fake.volume_dir("minio_data") / "file.bin").write_bytes(b"data")


def test_version_flag() -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(cli.app, ["--version"])

    assert result.exit_code == 0
    assert f"wlzctl {__version__}" in result.stdout


def test_no_subcommand_prints_help_when_not_interactive(invoke: Invoke) -> None:
    """Without a terminal the menu is replaced by help."""
    result = invoke()

    assert result.exit_code == 0
    assert "Worklenz stack control" in result.stdout


def test_no_subcommand_opens_menu_on_terminal(
    invoke: Invoke, monkeypatch: pytest.MonkeyPatch
) -> None:
    """On a terminal the interactive menu runs."""
    calls: list[object] = []
    monkeypatch.setattr(cli, "_interactive", lambda: True)
    monkeypatch.setattr(cli, "run_menu", lambda invoker, console: calls.append(invoker))

    result = invoke()

    assert result.exit_code == 0
    assert calls == [cli._invoke_subcommand]


def test_invalid_config_exits_with_validation(tmp_path: Path) -> None:
    """Unknown config keys are reported with exit code 2."""
    bad = tmp_path / "bad.yml"
    bad.write_text("bogus: 1\n")

    result = runner.invoke(cli.app, ["--config-file", str(bad), "status"])

    assert result.exit_code == 2
    assert "bogus" in result.stdout


def test_auto_configure_creates_env(invoke: Invoke, project_dir: Path) -> None:
    """The env file is seeded and secrets generated."""
    result = invoke("auto-configure", "--domain", "tasks.example.com")

    assert result.exit_code == 0, result.stdout
    assert "Generated JWT_SECRET" in result.stdout
    env = _env(project_dir)
    assert env.unconfigured_secrets() == []
    assert env.get("FRONTEND_URL") == "https://tasks.example.com"
    record = _last_operation(project_dir)
    assert record["command"] == "auto-configure"
    assert record["result"]["status"] == "success"  # type: ignore[index]

    again = invoke("auto-configure")
    assert again.exit_code == 0
    assert "Nothing to change" in again.stdout


def test_configure_updates_mode_and_email(invoke: Invoke, project_dir: Path) -> None:
    """Flags are written to .env without prompting."""
    result = invoke(
        "configure", "--domain", "tasks.example.com", "--email", "ops@example.com", "--mode", "advanced"
    )

    assert result.exit_code == 0, result.stdout
    env = _env(project_dir)
    assert env.get("DEPLOYMENT_MODE") == "advanced"
    assert env.get("LETSENCRYPT_EMAIL") == "ops@example.com"
    assert env.get("DOMAIN") == "tasks.example.com"


def test_configure_rejects_unknown_mode(invoke: Invoke) -> None:
    """Only express and advanced are accepted."""
    result = invoke("configure", "--mode", "cluster")

    assert result.exit_code == 2
    assert "Unsupported mode" in result.stdout


def test_configure_regenerates_secrets(invoke: Invoke, project_dir: Path) -> None:
    """``--regenerate-secrets`` replaces existing secrets."""
    invoke("auto-configure")
    before = _env(project_dir).get("JWT_SECRET")

    result = invoke("configure", "--regenerate-secrets")

    assert result.exit_code == 0, result.stdout
    assert _env(project_dir).get("JWT_SECRET") != before


def test_install_localhost_without_start(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """A local install gets a self-signed certificate and no containers."""
    result = invoke("install", "--domain", "localhost", "--no-start")

    assert result.exit_code == 0, result.stdout
    assert (project_dir / "nginx" / "ssl" / "cert.pem").exists()
    assert (project_dir / "nginx" / "conf.d" / "worklenz.conf").exists()
    env = _env(project_dir)
    assert env.unconfigured_secrets() == []
    assert env.get("ENABLE_SSL") == "false"
    assert fake_compose.called("start") == []


def test_install_starts_stack(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """A full install pulls, starts and waits for the database."""
    result = invoke("install", "--domain", "localhost", "--mode", "advanced")

    assert result.exit_code == 0, result.stdout
    assert "https://localhost" in result.stdout
    assert fake_compose.called("pull") == [(("advanced",),)]
    assert fake_compose.called("start") == [((), ("advanced",))]
    record = _last_operation(project_dir)
    assert "database.ready" in [step["name"] for step in record["steps"]]  # type: ignore[union-attr]


def test_install_public_domain_needs_email(invoke: Invoke) -> None:
    """ACME issuance without a contact fails validation."""
    result = invoke("install", "--domain", "tasks.example.com", "--no-start")

    assert result.exit_code == 2
    assert "LETSENCRYPT_EMAIL" in result.stdout


def test_install_without_docker_compose(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """A host without ``docker compose`` is an environment failure before anything changes."""
    fake_compose.docker_available = False

    result = invoke("install", "--domain", "localhost")

    assert result.exit_code == 3
    assert "Docker Compose is not available" in result.stdout
    assert "docker compose version" in result.stdout
    assert not (project_dir / "nginx" / "ssl" / "cert.pem").exists()
    assert fake_compose.called("start") == []


def test_start_warns_about_placeholder_secrets(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """Starting with template secrets still works but points at auto-configure."""
    result = invoke("start")

    assert result.exit_code == 0, result.stdout
    assert "Placeholder values in" in result.stdout
    assert "JWT_SECRET" in result.stdout
    assert "wlzctl auto-configure" in result.stdout
    assert fake_compose.called("start") == [((), ("express",))]

    invoke("auto-configure")
    again = invoke("start")

    assert "Placeholder values" not in again.stdout


def test_install_database_not_ready(invoke: Invoke, fake_compose: FakeCompose) -> None:
    """A database that never answers is an environment failure."""
    fake_compose.db_ready = False

    result = invoke("install", "--domain", "localhost")

    assert result.exit_code == 3


def test_lifecycle_commands(invoke: Invoke, fake_compose: FakeCompose) -> None:
    """start, stop, restart, status and logs delegate to compose."""
    assert invoke("start").exit_code == 0
    assert invoke("stop").exit_code == 0
    assert invoke("restart", "backend", "frontend").exit_code == 0
    status = invoke("status")
    logs = invoke("logs", "backend", "--tail", "5")

    assert fake_compose.called("start") == [((), ("express",))]
    assert fake_compose.called("stop") == [(None,)]
    assert fake_compose.called("restart") == [(("backend", "frontend"),)]
    assert "No containers found" in status.stdout
    assert "listening on 3000" in logs.stdout
    assert fake_compose.called("logs") == [("backend", 5, False)]


def test_stop_failure_maps_to_provider_exit(invoke: Invoke, fake_compose: FakeCompose) -> None:
    """Compose failures exit with code 4 and a hint."""
    fake_compose.stop_error = "Cannot connect to the Docker daemon"

    result = invoke("stop")

    assert result.exit_code == 4
    assert "docker compose version" in result.stdout


def test_lock_timeout_maps_to_environment_exit(
    invoke: Invoke, config_file: Path, project_dir: Path
) -> None:
    """A held deployment lock exits with code 3."""
    locks = LockManager(project_dir / ".wlzctl")

    with locks.lock("wlzctl"):
        result = runner.invoke(
            cli.app, ["--config-file", str(config_file), "--lock-timeout", "0.1", "start"]
        )

    assert result.exit_code == 3
    assert "another wlzctl command" in result.stdout


def test_backup_create_list_and_restore(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """Backups round-trip through the CLI."""
    _seed(fake_compose)

    created = invoke("backup", "create", "--json")
    assert created.exit_code == 0, created.stdout
    payload = json.loads(created.stdout)
    assert payload["partial"] is False
    assert payload["components"]["database"] == "ok"

    listing = invoke("backup", "list", "--json")
    rows = json.loads(listing.stdout)["backups"]
    assert [row["name"] for row in rows] == [Path(payload["archive"]).name]
    assert rows[0]["status"] == "available"

    fake_compose.database = {}
    restored = invoke("restore", "1", "--yes-i-understand", "--keep-env")

    assert restored.exit_code == 0, restored.stdout
    assert fake_compose.database == {"users": ["alice"]}
    assert "Restored" in restored.stdout


def test_backup_partial_is_reported(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """A partial backup exits 0 and logs a warning."""
    _seed(fake_compose)
    fake_compose.failing_volumes.add("test_minio_data")

    result = invoke("backup", "create")

    assert result.exit_code == 0
    assert "partial" in result.stdout
    assert _last_operation(project_dir)["result"]["status"] == "warning"  # type: ignore[index]


def test_backup_dump_failure(invoke: Invoke, project_dir: Path, fake_compose: FakeCompose) -> None:
    """A failed database dump exits with code 4."""
    fake_compose.dump_rc = 1

    result = invoke("backup", "create")

    assert result.exit_code == 4
    assert "Database dump failed" in result.stdout
    record = _last_operation(project_dir)
    assert record["result"]["rc"] == 4  # type: ignore[index]


def test_backup_prune(invoke: Invoke, project_dir: Path) -> None:
    """Old archives are removed by ``backup prune``."""
    root = project_dir / "backups"
    root.mkdir()
    (root / "worklenz_backup_20000101_000000.tar.gz").write_bytes(b"old")

    result = invoke("backup", "prune", "--retention-days", "30")

    assert result.exit_code == 0
    assert "Removed worklenz_backup_20000101_000000.tar.gz" in result.stdout
    assert list_archives(root) == []


def test_restore_warns_about_partial_backup_and_updates_index(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """Partial archives are flagged before restoring and the index records the restore."""
    _seed(fake_compose)
    fake_compose.failing_volumes.add("test_minio_data")
    created = invoke("backup", "create", "--json")
    archive_id = Path(json.loads(created.stdout)["archive"]).name.removesuffix(".tar.gz")
    fake_compose.failing_volumes.clear()

    result = invoke("restore", "1", "--yes-i-understand", "--keep-env")

    assert result.exit_code == 0, result.stdout
    assert "is a partial backup; not captured: object_store." in result.stdout
    index = json.loads((project_dir / "backups" / "backups.json").read_text())
    (entry,) = [item for item in index["backups"] if item["id"] == archive_id]
    assert entry["status"] == "partial"
    assert entry["last_restore"]["database"] == "restored"
    assert "last_restored_at" in entry


def test_restore_without_archives(invoke: Invoke) -> None:
    """Nothing to restore is a validation error."""
    result = invoke("restore", "--yes-i-understand")

    assert result.exit_code == 2
    assert "No backups found" in result.stdout


def test_restore_requires_confirmation(invoke: Invoke, fake_compose: FakeCompose) -> None:
    """Without the acknowledgement flag nothing is touched."""
    _seed(fake_compose)
    assert invoke("backup", "create").exit_code == 0

    result = invoke("restore", "1")

    assert result.exit_code == 2
    assert "not confirmed" in result.stdout
    assert fake_compose.called("stop") == []


def test_restore_invalid_selection(invoke: Invoke, fake_compose: FakeCompose) -> None:
    """Out-of-range indexes are rejected."""
    _seed(fake_compose)
    invoke("backup", "create")

    result = invoke("restore", "7", "--yes-i-understand")

    assert result.exit_code == 2
    assert "Invalid selection" in result.stdout


def test_restore_without_selection_non_interactive(invoke: Invoke, fake_compose: FakeCompose) -> None:
    """The archive must be named when no terminal is attached."""
    _seed(fake_compose)
    invoke("backup", "create")

    result = invoke("restore", "--yes-i-understand")

    assert result.exit_code == 2
    assert "Specify the archive" in result.stdout


def test_upgrade_requires_yes(invoke: Invoke, fake_compose: FakeCompose) -> None:
    """Unattended upgrades must be confirmed with --yes."""
    result = invoke("upgrade")

    assert result.exit_code == 2
    assert fake_compose.called("pull") == []


def test_upgrade_backs_up_then_rebuilds(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """An upgrade takes a backup before pulling and rebuilding."""
    _seed(fake_compose)

    result = invoke("upgrade", "--yes")

    assert result.exit_code == 0, result.stdout
    assert len(list_archives(project_dir / "backups")) == 1
    assert fake_compose.called("build") == [(("express",), True)]
    names = [name for name, _ in fake_compose.calls]
    assert names.index("exec") < names.index("pull") < names.index("build") < names.index("start")


def test_upgrade_skip_backup(invoke: Invoke, project_dir: Path, fake_compose: FakeCompose) -> None:
    """``--skip-backup`` goes straight to pulling images."""
    result = invoke("upgrade", "--yes", "--skip-backup")

    assert result.exit_code == 0
    assert list_archives(project_dir / "backups") == []


def test_ssl_self_signed_and_info(invoke: Invoke, project_dir: Path) -> None:
    """Self-signed provisioning is reported by ``ssl info``."""
    created = invoke("ssl", "self-signed")
    info = invoke("ssl", "info", "--json")

    assert created.exit_code == 0, created.stdout
    payload = json.loads(info.stdout)
    assert payload["configured_certificate"] == "/etc/nginx/ssl/cert.pem"
    assert payload["local_certificate"]["self_signed"] is True
    assert payload["ssl_enabled"] is False


def test_ssl_without_subcommand_prints_help(invoke: Invoke) -> None:
    """The certificate submenu needs a terminal."""
    result = invoke("ssl")

    assert result.exit_code == 0
    assert "self-signed" in result.stdout


def test_ssl_letsencrypt_rejects_loopback(invoke: Invoke, fake_compose: FakeCompose) -> None:
    """Let's Encrypt is refused for localhost deployments."""
    result = invoke("ssl", "letsencrypt", "--email", "ops@example.com", "--yes")

    assert result.exit_code == 2
    assert "public domain" in result.stdout
    assert fake_compose.called("run_service") == []


def test_ssl_letsencrypt_failure(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """A failed order exits 4 and keeps ENABLE_SSL off."""
    invoke("auto-configure", "--domain", "tasks.example.com")
    fake_compose.certbot_rc = 1

    result = invoke("ssl", "letsencrypt", "--email", "ops@example.com", "--yes")

    assert result.exit_code == 4
    assert _env(project_dir).get("ENABLE_SSL") == "false"


def test_ssl_letsencrypt_success(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """A successful order switches the proxy to the issued certificate."""
    invoke("auto-configure", "--domain", "tasks.example.com")

    result = invoke("ssl", "letsencrypt", "--email", "ops@example.com", "--yes")

    assert result.exit_code == 0, result.stdout
    assert _env(project_dir).get("ENABLE_SSL") == "true"
    conf = (project_dir / "nginx" / "conf.d" / "worklenz.conf").read_text()
    assert "/etc/letsencrypt/live/tasks.example.com/fullchain.pem" in conf


def test_ssl_letsencrypt_lists_preconditions(
    invoke: Invoke, fake_compose: FakeCompose
) -> None:
    """DNS and port requirements are shown before the order is placed."""
    invoke("auto-configure", "--domain", "tasks.example.com")

    result = invoke("ssl", "letsencrypt", "--email", "ops@example.com", "--yes")

    assert result.exit_code == 0, result.stdout
    assert "Before requesting a certificate for tasks.example.com" in result.stdout
    assert "DNS A record for the domain points to this server" in result.stdout
    assert "Ports 80 and 443 are reachable from the internet" in result.stdout


def test_install_lists_preconditions_for_public_domain(invoke: Invoke) -> None:
    """Install shows the ACME requirements for public domains only."""
    public = invoke(
        "install", "--domain", "tasks.example.com", "--email", "ops@example.com", "--no-start"
    )
    local = invoke("install", "--domain", "localhost", "--no-start")

    assert "Ports 80 and 443 are reachable from the internet" in public.stdout
    assert "Ports 80 and 443" not in local.stdout


def test_build_requires_username(invoke: Invoke) -> None:
    """Image commands need a Docker Hub username."""
    result = invoke("build")

    assert result.exit_code == 2
    assert "username is required" in result.stdout


def test_build_persists_username(
    invoke: Invoke, project_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A successful build remembers the username in .env."""
    for name in ("worklenz-backend", "worklenz-frontend"):
        (project_dir / name).mkdir()
        (project_dir / name / "Dockerfile").write_text("FROM scratch\n")
    (project_dir / "docker-compose.yaml").write_text(
        "services:\n  backend:\n    image: old/backend\n  frontend:\n    image: old/frontend\n"
    )
    invoke("auto-configure")
    commands: list[list[str]] = []

    def fake_run(args, **kwargs):  # type: ignore[no-untyped-def]
        commands.append(list(args))
        return DummyResult()

    monkeypatch.setattr(subprocess, "run", fake_run)

    result = invoke("build", "--username", "acme", "--tag", "v2")

    assert result.exit_code == 0, result.stdout
    assert _env(project_dir).get("DOCKER_USERNAME") == "acme"
    assert "acme/worklenz-backend:v2" in (project_dir / "docker-compose.yaml").read_text()
    assert [command[1] for command in commands] == ["build", "build"]


def test_db_migrate(invoke: Invoke, project_dir: Path, fake_compose: FakeCompose) -> None:
    """Pending migrations are applied once."""
    migrations = project_dir / "worklenz-backend" / "database" / "sql" / "migrations"
    migrations.mkdir(parents=True)
    (migrations / "001-init.sql").write_text("CREATE TABLE tasks (id int);\n")

    first = invoke("db", "migrate")
    second = invoke("db", "migrate")

    assert first.exit_code == 0, first.stdout
    assert "1 migration(s) applied" in first.stdout
    assert "0 migration(s) applied" in second.stdout
    assert fake_compose.migrations == ["001-init.sql"]


def test_db_migrate_failure(invoke: Invoke, project_dir: Path) -> None:
    """A failing migration exits with code 4."""
    migrations = project_dir / "worklenz-backend" / "database" / "sql" / "migrations"
    migrations.mkdir(parents=True)
    (migrations / "001-broken.sql").write_text("ERROR\n")

    result = invoke("db", "migrate")

    assert result.exit_code == 4
    assert "001-broken.sql failed" in result.stdout


def test_db_init_refuses_populated_database(invoke: Invoke, fake_compose: FakeCompose) -> None:
    """Existing tables block a second initialisation without --force."""
    fake_compose.database = {"users": []}

    result = invoke("db", "init")

    assert result.exit_code == 2
    assert "already contains tables" in result.stdout


def test_db_init_reports_missing_files(invoke: Invoke) -> None:
    """Missing schema files are a provider failure."""
    result = invoke("db", "init")

    assert result.exit_code == 4
    assert "did not apply" in result.stdout


def test_db_init_restores_newest_dump(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """A dump in pg_backups is preferred over the schema files."""
    dumps = project_dir / "pg_backups"
    dumps.mkdir()
    for stamp, rows in (("20260101_010000", ["old"]), ("20260102_010000", ["1", "2", "3"])):
        payload = DUMP_HEADER + json.dumps({"tables": {"tasks": rows}, "migrations": []})
        with gzip.open(dumps / f"worklenz_backup_{stamp}.sql.gz", "wt", encoding="utf-8") as handle:
            handle.write(payload)

    result = invoke("db", "init")

    assert result.exit_code == 0, result.stdout
    assert "restored from worklenz_backup_20260102_010000.sql.gz" in result.stdout
    assert fake_compose.database == {"tasks": ["1", "2", "3"]}
    assert fake_compose.executed_files == []


def test_db_init_falls_back_to_schema_when_dump_is_unreadable(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """A corrupt dump is reported and the schema files run instead."""
    dumps = project_dir / "pg_backups"
    dumps.mkdir()
    (dumps / "worklenz_backup_20260102_010000.sql.gz").write_bytes(b"not gzip")

    result = invoke("db", "init")

    assert "initialised from schema instead" in result.stdout
    assert "did not apply" in result.stdout
    assert fake_compose.database == {}


def test_db_init_schema_only_ignores_dumps(
    invoke: Invoke, project_dir: Path, fake_compose: FakeCompose
) -> None:
    """--schema-only never looks at pg_backups."""
    dumps = project_dir / "pg_backups"
    dumps.mkdir()
    with gzip.open(dumps / "worklenz_backup_20260102_010000.sql.gz", "wt") as handle:
        handle.write(DUMP_HEADER + json.dumps({"tables": {"tasks": ["1"]}, "migrations": []}))

    result = invoke("db", "init", "--schema-only")

    assert result.exit_code == 4
    assert "tasks" not in fake_compose.database
