"""Typer-powered command line for ``wlzctl``.

Every subcommand wraps one core operation (backup, restore, certificate
provisioning, environment bootstrap) or a thin call into the compose facade.
Each command runs inside a logged operation scope and, when it mutates the
deployment, under the global advisory lock. Running ``wlzctl`` without a
subcommand on a terminal opens the interactive menu.
"""
from __future__ import annotations

import signal
import sys
import textwrap
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table

from . import __version__
from .backups import BackupError, BackupRegistryError, BackupsRegistry, list_archives
from .cancellation import CancelToken, OperationCancelledError
from .config import AppConfig, ConfigError, load_config
from .envstore import (
    DEPLOYMENT_MODES,
    SECRET_KEYS,
    ConfigMissingError,
    EnvironmentStore,
    EnvironmentStoreError,
    Loopback,
    resolve_target,
)
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .menu import run_menu
from .migrations import (
    ALREADY_APPLIED,
    APPLIED,
    RESTORED,
    DatabaseInitializer,
    MigrationError,
    MigrationRunner,
    PsqlExecutor,
    StepOutcome,
)
from .providers.compose import ComposeError, ComposeProvider, start_profiles
from .providers.images import ImageBuilder, ImageError
from .providers.nginx import NginxError, NginxProvider
from .readiness import ServiceNotReadyError, wait_until
from .restore import (
    InvalidSelectionError,
    RestoreConfirmation,
    RestoreEngine,
    RestoreFailedError,
    RestoreNotConfirmedError,
    RestoreResult,
    select_archive,
)
from .secretgen import generate_secret
from .snapshot import BackupEngine, BackupOutcome, database_identity
from .templates import TemplateEngine, TemplateRenderError
from .tls import (
    ACME_PRECONDITIONS,
    CertificateBundle,
    CertificateProvisioner,
    MissingContactError,
    Provenance,
    TLSError,
    describe_certificate,
)

console = Console()

OK_MARK = "[green]✓[/green]"
ERROR_MARK = "[red]✗[/red]"
WARN_MARK = "[yellow]⚠[/yellow]"
INFO_MARK = "[cyan]ℹ[/cyan]"

# Operator-supplied values for these keys are accepted by ``configure``.
PASSWORD_KEYS = ("DB_PASSWORD", "REDIS_PASSWORD", "AWS_SECRET_ACCESS_KEY")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to wlzctl's YAML config file.",
)

JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")

USERNAME_OPTION = typer.Option(
    None,
    "--username",
    "-u",
    help="Docker Hub username (defaults to DOCKER_USERNAME from .env).",
)

TAG_OPTION = typer.Option(None, "--tag", "-t", help="Image tag (defaults to config images.tag).")

# Order matters: subclasses are listed before their bases.
_EXIT_CODES: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
    ((OperationCancelledError,), ExitCode.CANCELLED),
    ((InvalidSelectionError, RestoreNotConfirmedError, MissingContactError), ExitCode.VALIDATION),
    ((ConfigMissingError, LockTimeoutError, ServiceNotReadyError), ExitCode.ENVIRONMENT),
    ((ConfigError, EnvironmentStoreError), ExitCode.VALIDATION),
    (
        (
            ComposeError,
            TLSError,
            BackupError,
            RestoreFailedError,
            ImageError,
            MigrationError,
            NginxError,
            TemplateRenderError,
        ),
        ExitCode.PROVIDER,
    ),
)
_HANDLED: tuple[type[BaseException], ...] = tuple(
    error for errors, _ in _EXIT_CODES for error in errors
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Worklenz stack control.

        Install, configure and operate a Docker Compose deployment of Worklenz:
        environment bootstrap, TLS certificates, backups, restores, schema
        migrations and application images.
        """
    ).strip(),
)
backup_app = typer.Typer(help="Create, list and prune backup archives.")
ssl_app = typer.Typer(help="Provision and inspect TLS certificates.")
db_app = typer.Typer(help="Initialise the database schema and apply migrations.")

app.add_typer(backup_app, name="backup")
app.add_typer(ssl_app, name="ssl")
app.add_typer(db_app, name="db")


@dataclass
class RuntimeContext:
    """Runtime wiring shared by every command of one invocation."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    templates: TemplateEngine
    env: EnvironmentStore
    compose: ComposeProvider
    nginx: NginxProvider
    images: ImageBuilder
    backups: BackupsRegistry

    def backup_engine(self) -> BackupEngine:
        """Return a backup engine bound to this deployment."""
        return BackupEngine(
            backups=self.config.backups,
            services=self.config.services,
            env=self.env,
            compose=self.compose,
            proxy_dir=self.config.project_dir / "nginx",
            helper_image=self.config.compose.helper_image,
            registry=self.backups,
        )

    def restore_engine(self) -> RestoreEngine:
        """Return a restore engine bound to this deployment."""
        return RestoreEngine(
            backups=self.config.backups,
            services=self.config.services,
            readiness=self.config.readiness,
            env=self.env,
            compose=self.compose,
            helper_image=self.config.compose.helper_image,
        )

    def provisioner(self) -> CertificateProvisioner:
        """Return the certificate provisioner."""
        return CertificateProvisioner(
            tls=self.config.tls,
            services=self.config.services,
            readiness=self.config.readiness,
            env=self.env,
            compose=self.compose,
            nginx=self.nginx,
            transcript_dir=self.config.logs_dir,
        )

    def sql_executor(self) -> PsqlExecutor:
        """Return a ``psql`` executor for the deployment database."""
        user, name = database_identity(self.env)
        return PsqlExecutor(self.compose, self.config.services.database, user, name)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"{ERROR_MARK} {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    templates = TemplateEngine.with_overrides(config.templates_dir)
    compose_file = config.compose.file or config.project_dir / "docker-compose.yaml"
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        templates=templates,
        env=EnvironmentStore(config.env_file, config.env_template),
        compose=ComposeProvider.from_config(config),
        nginx=NginxProvider(
            templates=templates,
            config_path=config.tls.proxy_config,
            acme_webroot=config.tls.webroot,
        ),
        images=ImageBuilder(
            backend_context=config.images.backend_context,
            frontend_context=config.images.frontend_context,
            compose_file=compose_file,
            docker_bin=config.compose.bin,
        ),
        backups=BackupsRegistry(config.backups.root, config.backups.index),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _interactive() -> bool:
    """Return True when prompts can be shown."""
    return sys.stdin.isatty()


def _invoke_subcommand(args: Sequence[str]) -> int | None:
    return app(list(args), prog_name="wlzctl", standalone_mode=False)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the wlzctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"wlzctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        if _interactive():
            run_menu(_invoke_subcommand, console)
        else:
            console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers


def _exit_code_for(exc: BaseException) -> ExitCode:
    for types, code in _EXIT_CODES:
        if isinstance(exc, types):
            return code
    return ExitCode.PROVIDER


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    hint: str | None = None,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"{ERROR_MARK} [red]{message}[/red]")
    if hint:
        console.print(f"  [dim]→ {hint}[/dim]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


@contextmanager
def _guard(op: OperationScope) -> Iterator[None]:
    """Translate component errors into a status line and an exit code."""
    try:
        yield
    except _HANDLED as exc:
        _command_error(op, str(exc), rc=_exit_code_for(exc), hint=getattr(exc, "hint", None))


@contextmanager
def _cancellation() -> Iterator[CancelToken]:
    """Map SIGINT/SIGTERM onto a cancel token for the duration of a command."""
    token = CancelToken()
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def _handler(signum: int, frame: object) -> None:
        console.print(f"{WARN_MARK} Cancellation requested; finishing the current step.")
        token.cancel()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)


def _profiles(runtime: RuntimeContext) -> list[str]:
    return start_profiles(runtime.env.deployment_mode(), runtime.env.ssl_enabled())


def _wait_for_database(runtime: RuntimeContext, op: OperationScope) -> None:
    database = runtime.config.services.database
    user, name = database_identity(runtime.env)

    def _probe() -> bool:
        result = runtime.compose.exec(
            database, ["pg_isready", "-U", user, "-d", name], check=False
        )
        return result.returncode == 0

    with console.status(f"Waiting for {database} to accept connections..."):
        ready = wait_until(database, _probe, runtime.config.readiness)
    op.add_step("database.ready", detail=f"{ready.attempts} probe(s), {ready.elapsed:.1f}s")


def _resolve_username(runtime: RuntimeContext, username: str | None) -> str:
    value = (username or "").strip()
    if not value and runtime.env.exists():
        value = (runtime.env.get("DOCKER_USERNAME") or "").strip()
    if not value and _interactive():
        value = Prompt.ask("Docker Hub username", console=console).strip()
    return value


def _persist_username(runtime: RuntimeContext, username: str, op: OperationScope) -> None:
    if runtime.env.exists() and runtime.env.set("DOCKER_USERNAME", username):
        op.add_step("env.docker_username", detail=username)


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _print_acme_preconditions(domain: str) -> None:
    console.print(f"{INFO_MARK} Before requesting a certificate for [bold]{domain}[/bold] make sure:")
    for item in ACME_PRECONDITIONS:
        console.print(f"  - {item}")


def _print_certificate(bundle: CertificateBundle) -> None:
    kind = "Self-signed" if bundle.provenance is Provenance.SELF_SIGNED else "Let's Encrypt"
    console.print(f"{OK_MARK} {kind} certificate ready for {bundle.domain}.")
    console.print(f"  certificate: {bundle.paths.certificate}")
    console.print(f"  key: {bundle.paths.certificate_key}")


# ----------------------------------------------------------------------
# Lifecycle


@app.command()
def install(
    ctx: typer.Context,
    domain: str | None = typer.Option(
        None, "--domain", "-d", help="Public domain, or localhost for a local deployment."
    ),
    email: str | None = typer.Option(
        None, "--email", "-e", help="Contact email for Let's Encrypt (public domains)."
    ),
    mode: str | None = typer.Option(
        None, "--mode", help="Deployment mode: express (bundled services) or advanced."
    ),
    build: bool = typer.Option(
        False, "--build/--no-build", help="Build application images before starting."
    ),
    username: str | None = USERNAME_OPTION,
    no_start: bool = typer.Option(
        False, "--no-start", help="Prepare configuration and certificates without starting."
    ),
) -> None:
    """Bootstrap ``.env``, certificates and the container stack."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install",
        args={"domain": domain, "email": email, "mode": mode, "build": build, "start": not no_start},
        target={"kind": "deployment", "project_dir": str(runtime.config.project_dir)},
    ) as op:
        if mode is not None and mode not in DEPLOYMENT_MODES:
            _command_error(
                op, f"Unsupported mode '{mode}'. Choose one of: {', '.join(DEPLOYMENT_MODES)}."
            )
        if not runtime.compose.is_available():
            _command_error(
                op,
                "Docker Compose is not available.",
                rc=ExitCode.ENVIRONMENT,
                hint="Install Docker with the compose plugin and check `docker compose version`.",
            )
        with _guard(op), _cancellation() as token:
            with runtime.locks.mutate_deployment(["env", "proxy"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                env = runtime.env
                seeded = not env.exists()
                env.load()
                op.add_step("env.load", detail="seeded from template" if seeded else None)
                if seeded:
                    console.print(f"{OK_MARK} Created {env.env_file} from {env.template}.")

                if domain is None and _interactive():
                    domain = Prompt.ask(
                        "Domain", console=console, default=env.get("DOMAIN") or "localhost"
                    )
                target = resolve_target(domain if domain is not None else env.get("DOMAIN"))
                if not isinstance(target, Loopback):
                    _print_acme_preconditions(target.name)
                if not isinstance(target, Loopback) and not (
                    email or env.get("LETSENCRYPT_EMAIL")
                ) and _interactive():
                    email = Prompt.ask("Email for Let's Encrypt", console=console)

                updates: dict[str, str] = {}
                if mode is not None:
                    updates["DEPLOYMENT_MODE"] = mode
                if email and not isinstance(target, Loopback):
                    updates["LETSENCRYPT_EMAIL"] = email.strip()
                env.update(updates)

                configured = env.auto_configure(target.name)
                op.add_step(
                    "env.auto_configure",
                    detail=f"{len(configured.generated)} secret(s), {len(configured.updated)} value(s)",
                )
                for key in configured.generated:
                    console.print(f"{OK_MARK} Generated {key}.")
                if configured.updated:
                    console.print(f"{OK_MARK} Configured URLs for {target.host}.")

                if build:
                    user = _resolve_username(runtime, username)
                    if not user:
                        _command_error(op, "A Docker Hub username is required to build images.")
                    built = runtime.images.build(user, runtime.config.images.tag)
                    _persist_username(runtime, user, op)
                    op.add_step("images.build", detail=", ".join(image.reference for image in built))

                certificate = runtime.provisioner().provision(
                    target, email=email, op=op, cancel=token
                )
                _print_certificate(certificate)

                if not no_start:
                    token.check("install", "compose.start")
                    profiles = _profiles(runtime)
                    runtime.compose.pull(profiles)
                    op.add_step("compose.pull", detail=",".join(profiles))
                    runtime.compose.start(profiles=profiles)
                    op.add_step("compose.start", detail=",".join(profiles))
                    _wait_for_database(runtime, op)

        url = f"https://{target.host}"
        if no_start:
            console.print(f"{INFO_MARK} Services not started; run `wlzctl start` when ready.")
        else:
            console.print(f"{OK_MARK} Worklenz is running at [bold]{url}[/bold]")
        op.success(
            "Installation complete.",
            changed=len(configured.generated) + len(configured.updated),
            context={"url": url, "provenance": certificate.provenance.value},
        )


@app.command()
def start(ctx: typer.Context) -> None:
    """Start the stack with the profiles the environment selects."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("start", target={"kind": "deployment"}) as op:
        with _guard(op):
            with runtime.locks.mutate_deployment() as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                profiles = _profiles(runtime)
                pending = runtime.env.unconfigured_secrets()
                if pending:
                    console.print(f"{WARN_MARK} Placeholder values in {', '.join(pending)}.")
                    console.print("  [dim]→ Run `wlzctl auto-configure` to generate them.[/dim]")
                    op.add_step("env.secrets", status="warning", detail=", ".join(pending))
                runtime.compose.start(profiles=profiles)
        console.print(f"{OK_MARK} Services started ({', '.join(profiles)}).")
        op.success("Services started.", changed=1, context={"profiles": profiles})


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop every container of the stack."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("stop", target={"kind": "deployment"}) as op:
        with _guard(op):
            with runtime.locks.mutate_deployment() as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.compose.stop()
        console.print(f"{OK_MARK} Services stopped.")
        op.success("Services stopped.", changed=1)


@app.command()
def restart(
    ctx: typer.Context,
    services: list[str] | None = typer.Argument(
        None, help="Services to restart (all when omitted)."
    ),
) -> None:
    """Restart some or all services."""
    runtime = _get_runtime(ctx)
    names = list(services or [])
    with runtime.logger.operation(
        "restart", args={"services": names}, target={"kind": "deployment"}
    ) as op:
        with _guard(op):
            with runtime.locks.mutate_deployment() as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.compose.restart(names)
        label = ", ".join(names) if names else "all services"
        console.print(f"{OK_MARK} Restarted {label}.")
        op.success("Services restarted.", changed=1, context={"services": names})


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the state of every container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("status", args={"json": json_output}) as op:
        with _guard(op):
            states = runtime.compose.status()
        if json_output:
            console.print_json(
                data=[
                    {
                        "service": state.service,
                        "name": state.name,
                        "state": state.state,
                        "status": state.status,
                        "health": state.health,
                        "ports": state.ports,
                    }
                    for state in states
                ]
            )
        elif not states:
            console.print(f"{INFO_MARK} No containers found; run `wlzctl start`.")
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Service", style="cyan")
            table.add_column("Container")
            table.add_column("State")
            table.add_column("Health")
            table.add_column("Ports")
            for state in states:
                colour = "green" if state.running else "red"
                table.add_row(
                    state.service,
                    state.name,
                    f"[{colour}]{state.state}[/{colour}]",
                    state.health or "-",
                    ", ".join(state.ports) or "-",
                )
            console.print(table)
        running = sum(1 for state in states if state.running)
        op.success(
            "Reported service status.",
            changed=0,
            context={"containers": len(states), "running": running},
        )


@app.command()
def logs(
    ctx: typer.Context,
    service: str | None = typer.Argument(None, help="Service to show (all when omitted)."),
    tail: int = typer.Option(100, "--tail", "-n", min=0, help="Number of lines to show."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream new log lines."),
) -> None:
    """Show container logs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs", args={"service": service, "tail": tail, "follow": follow}
    ) as op:
        with _guard(op):
            result = runtime.compose.logs(service, tail=tail, follow=follow)
        if not follow and result.stdout:
            console.out(result.stdout, end="")
        op.success("Displayed logs.", changed=0)


# ----------------------------------------------------------------------
# Backups


def _print_backup_outcome(outcome: BackupOutcome) -> None:
    marker = WARN_MARK if outcome.partial else OK_MARK
    suffix = " (partial)" if outcome.partial else ""
    console.print(f"{marker} Created {outcome.archive.name}{suffix}.")
    console.print(f"  size: {_format_size(outcome.archive.size_bytes)}")
    console.print(f"  sha256: {outcome.checksum}")
    for component, state in outcome.components.items():
        console.print(f"  {component}: {state}")
    for warning in outcome.warnings:
        console.print(f"{WARN_MARK} {warning}")
    for ref in outcome.removed:
        console.print(f"{INFO_MARK} Removed expired archive {ref.name}.")


def _run_backup(runtime: RuntimeContext, op: OperationScope, token: CancelToken) -> BackupOutcome:
    with console.status("Creating backup..."):
        return runtime.backup_engine().create_backup(op=op, cancel=token)


@backup_app.command("create")
def backup_create(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Capture the database, volumes and configuration into an archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"json": json_output},
        target={"kind": "backup", "root": str(runtime.config.backups.root)},
    ) as op:
        with _guard(op), _cancellation() as token:
            with runtime.locks.mutate_deployment(["backups"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcome = _run_backup(runtime, op, token)

        payload = {
            "archive": str(outcome.archive.path),
            "id": outcome.archive.archive_id,
            "checksum": outcome.checksum,
            "size_bytes": outcome.archive.size_bytes,
            "partial": outcome.partial,
            "components": outcome.components,
            "warnings": outcome.warnings,
            "removed": [ref.name for ref in outcome.removed],
        }
        if json_output:
            console.print_json(data=payload)
        else:
            _print_backup_outcome(outcome)

        if outcome.partial:
            op.warning(
                "Backup created without every component.",
                warnings=outcome.warnings,
                changed=1,
                backups=[outcome.archive.archive_id],
                context=payload,
            )
        else:
            op.success(
                "Backup created.",
                changed=1 + len(outcome.removed),
                warnings=outcome.warnings,
                backups=[outcome.archive.archive_id],
                context=payload,
            )


@backup_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List archives, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("backup list", args={"json": json_output}) as op:
        with _guard(op):
            archives = sorted(
                list_archives(runtime.config.backups.root), key=lambda ref: ref.name, reverse=True
            )
            entries = {str(entry.get("id")): entry for entry in runtime.backups.list_entries()}

        rows: list[dict[str, object]] = []
        for index, ref in enumerate(archives, start=1):
            entry = entries.get(ref.archive_id, {})
            rows.append(
                {
                    "index": index,
                    "name": ref.name,
                    "captured_at": ref.captured_at.isoformat(sep=" "),
                    "size_bytes": ref.size_bytes,
                    "status": entry.get("status", "unindexed"),
                }
            )

        if json_output:
            console.print_json(data={"backups": rows})
        elif not rows:
            console.print(f"{INFO_MARK} No backups found in {runtime.config.backups.root}.")
        else:
            _render_archive_table(rows)
        op.success("Listed backups.", changed=0, context={"count": len(rows)})


def _render_archive_table(rows: Sequence[dict[str, object]]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Archive", style="cyan")
    table.add_column("Captured (UTC)")
    table.add_column("Size", justify="right")
    table.add_column("Status")
    for row in rows:
        status_value = str(row["status"])
        if status_value == "partial":
            status_value = f"[yellow]{status_value}[/yellow]"
        table.add_row(
            str(row["index"]),
            str(row["name"]),
            str(row["captured_at"]),
            _format_size(int(str(row["size_bytes"]))),
            status_value,
        )
    console.print(table)


@backup_app.command("prune")
def backup_prune(
    ctx: typer.Context,
    retention_days: int | None = typer.Option(
        None,
        "--retention-days",
        min=0,
        help="Override the retention horizon (0 keeps everything).",
    ),
) -> None:
    """Delete archives older than the retention horizon."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup prune",
        args={"retention_days": retention_days},
        target={"kind": "backup", "root": str(runtime.config.backups.root)},
    ) as op:
        with _guard(op):
            with runtime.locks.mutate_deployment(["backups"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                engine = runtime.backup_engine()
                days = engine.retention_days() if retention_days is None else retention_days
                removed = engine.prune(days, op=op)

        if removed:
            for ref in removed:
                console.print(f"{OK_MARK} Removed {ref.name}.")
        else:
            console.print(f"{INFO_MARK} No archives older than {days} day(s).")
        op.success(
            "Retention applied.",
            changed=len(removed),
            backups=[ref.archive_id for ref in removed],
            context={"retention_days": days},
        )


# ----------------------------------------------------------------------
# Restore


def _print_restore_result(result: RestoreResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Data")
    table.add_column("Result")
    table.add_column("Detail")
    for name, state in result.outcomes.items():
        colour = {"restored": "green", "failed": "red"}.get(state, "yellow")
        table.add_row(name, f"[{colour}]{state}[/{colour}]", result.errors.get(name, ""))
    console.print(table)
    if not result.services_restarted:
        console.print(
            f"{WARN_MARK} Services did not restart: {result.errors.get('services', 'unknown')}"
        )


def _indexed_backup(
    runtime: RuntimeContext, archive_id: str, op: OperationScope
) -> dict[str, object] | None:
    """Return the index entry for *archive_id*; an unreadable index only warns."""
    try:
        return runtime.backups.find_by_id(archive_id)
    except BackupRegistryError as exc:
        console.print(f"{WARN_MARK} {exc}")
        op.add_step("restore.index", status="warning", detail=str(exc))
        return None


@app.command()
def restore(
    ctx: typer.Context,
    archive: str | None = typer.Argument(
        None, help="Archive name, id, timestamp or list index (newest is 1)."
    ),
    yes_i_understand: bool = typer.Option(
        False,
        "--yes-i-understand",
        help="Acknowledge that current data will be replaced (non-interactive).",
    ),
    restore_env: bool | None = typer.Option(
        None,
        "--restore-env/--keep-env",
        help="Also replace .env with the copy stored in the archive.",
    ),
) -> None:
    """Replace current data with the contents of a backup archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore",
        args={"archive": archive, "restore_env": restore_env},
        target={"kind": "restore", "root": str(runtime.config.backups.root)},
    ) as op:
        with _guard(op), _cancellation() as token:
            with runtime.locks.mutate_deployment(["env", "backups"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                archives = list_archives(runtime.config.backups.root)
                if not archives:
                    _command_error(
                        op,
                        f"No backups found in {runtime.config.backups.root}.",
                        rc=ExitCode.VALIDATION,
                        hint="Create one with `wlzctl backup create`.",
                    )

                selection = archive
                if selection is None:
                    if not _interactive():
                        _command_error(
                            op,
                            "Specify the archive to restore.",
                            hint="List archives with `wlzctl backup list`.",
                        )
                    newest_first = sorted(archives, key=lambda ref: ref.name, reverse=True)
                    _render_archive_table(
                        [
                            {
                                "index": index,
                                "name": ref.name,
                                "captured_at": ref.captured_at.isoformat(sep=" "),
                                "size_bytes": ref.size_bytes,
                                "status": "",
                            }
                            for index, ref in enumerate(newest_first, start=1)
                        ]
                    )
                    selection = Prompt.ask("Archive to restore", console=console)
                chosen = select_archive(archives, selection)
                op.add_step("restore.select", detail=chosen.name)
                entry = _indexed_backup(runtime, chosen.archive_id, op)
                if entry is not None and entry.get("status") == "partial":
                    components = entry.get("components")
                    missing: list[str] = []
                    if isinstance(components, dict):
                        missing = sorted(
                            name for name, state in components.items() if state == "failed"
                        )
                    console.print(
                        f"{WARN_MARK} {chosen.name} is a partial backup"
                        + (f"; not captured: {', '.join(missing)}." if missing else ".")
                    )
                    op.add_step("restore.index", status="warning", detail="partial backup")

                if yes_i_understand:
                    confirmation = RestoreConfirmation(chosen.name, True)
                elif _interactive():
                    console.print(
                        f"{WARN_MARK} Restoring [bold]{chosen.name}[/bold] replaces the current "
                        "database and volumes."
                    )
                    typed = Prompt.ask("Type the archive name to confirm", console=console)
                    acknowledged = (
                        Prompt.ask("Type 'yes' to accept that current data will be lost",
                                   console=console).strip().lower()
                        == "yes"
                    )
                    confirmation = RestoreConfirmation(typed.strip(), acknowledged)
                else:
                    confirmation = RestoreConfirmation(chosen.name, False)

                include_env = restore_env
                if include_env is None:
                    include_env = _interactive() and Confirm.ask(
                        "Also restore .env from the archive?", console=console, default=False
                    )

                try:
                    with console.status(f"Restoring {chosen.name}..."):
                        result = runtime.restore_engine().restore(
                            chosen,
                            confirmation,
                            restore_env=bool(include_env),
                            op=op,
                            cancel=token,
                        )
                except RestoreFailedError as exc:
                    if exc.result is not None:
                        _print_restore_result(exc.result)
                    raise
                if entry is not None:
                    try:
                        runtime.backups.record_restore(chosen.archive_id, result.outcomes)
                    except BackupRegistryError as exc:
                        console.print(f"{WARN_MARK} Could not update the backup index: {exc}")
                        op.add_step("restore.index", status="warning", detail=str(exc))

        _print_restore_result(result)
        context = {
            "archive": chosen.name,
            "outcomes": result.outcomes,
            "errors": result.errors,
            "services_restarted": result.services_restarted,
        }
        if result.ok:
            console.print(f"{OK_MARK} Restored {chosen.name}.")
            op.success("Restore complete.", changed=len(result.succeeded), context=context)
        else:
            console.print(f"{WARN_MARK} Restore of {chosen.name} finished with problems.")
            op.warning(
                "Restore completed with failures.",
                warnings=[f"{key}: {value}" for key, value in result.errors.items()],
                changed=len(result.succeeded),
                context=context,
            )


# ----------------------------------------------------------------------
# Upgrade and configuration


@app.command()
def upgrade(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    skip_backup: bool = typer.Option(
        False, "--skip-backup", help="Do not take a backup before upgrading."
    ),
) -> None:
    """Back up, pull and rebuild images, then restart the stack."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "upgrade", args={"yes": yes, "skip_backup": skip_backup}, target={"kind": "deployment"}
    ) as op:
        if not yes:
            if not _interactive():
                _command_error(op, "Upgrade needs confirmation; pass --yes.")
            if not Confirm.ask("Upgrade Worklenz now?", console=console, default=False):
                console.print(f"{INFO_MARK} Upgrade cancelled.")
                op.warning("Upgrade declined by operator.", changed=0)
                return

        backups: list[str] = []
        with _guard(op), _cancellation() as token:
            with runtime.locks.mutate_deployment(["backups"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                if skip_backup:
                    op.add_step("upgrade.backup", status="skipped", detail="--skip-backup")
                else:
                    outcome = _run_backup(runtime, op, token)
                    backups.append(outcome.archive.archive_id)
                    console.print(f"{OK_MARK} Pre-upgrade backup {outcome.archive.name}.")

                token.check("upgrade", "compose.pull")
                profiles = _profiles(runtime)
                runtime.compose.pull(profiles)
                op.add_step("compose.pull", detail=",".join(profiles))
                token.check("upgrade", "compose.build")
                runtime.compose.build(profiles, no_cache=True)
                op.add_step("compose.build", detail="--no-cache")
                token.check("upgrade", "compose.start")
                runtime.compose.start(profiles=profiles)
                op.add_step("compose.start", detail=",".join(profiles))

        console.print(f"{OK_MARK} Upgrade complete.")
        op.success("Upgrade complete.", changed=1, backups=backups)


@app.command()
def configure(
    ctx: typer.Context,
    domain: str | None = typer.Option(None, "--domain", "-d", help="Domain to serve."),
    email: str | None = typer.Option(None, "--email", "-e", help="Let's Encrypt contact."),
    mode: str | None = typer.Option(None, "--mode", help="Deployment mode (express/advanced)."),
    regenerate_secrets: bool = typer.Option(
        False, "--regenerate-secrets", help="Replace every secret, not only placeholders."
    ),
) -> None:
    """Reconfigure the domain, contact, mode and secrets in ``.env``."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "configure",
        args={"domain": domain, "email": email, "mode": mode, "regenerate_secrets": regenerate_secrets},
        target={"kind": "env", "path": str(runtime.config.env_file)},
    ) as op:
        if mode is not None and mode not in DEPLOYMENT_MODES:
            _command_error(
                op, f"Unsupported mode '{mode}'. Choose one of: {', '.join(DEPLOYMENT_MODES)}."
            )
        with _guard(op):
            with runtime.locks.mutate_deployment(["env"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                env = runtime.env
                env.load()
                interactive = _interactive()

                if domain is None and interactive:
                    domain = Prompt.ask(
                        "Domain", console=console, default=env.get("DOMAIN") or "localhost"
                    )
                target = resolve_target(domain if domain is not None else env.get("DOMAIN"))
                if email is None and interactive and not isinstance(target, Loopback):
                    email = Prompt.ask(
                        "Email for Let's Encrypt",
                        console=console,
                        default=env.get("LETSENCRYPT_EMAIL") or "",
                    )
                if mode is None and interactive:
                    mode = Prompt.ask(
                        "Deployment mode",
                        console=console,
                        choices=list(DEPLOYMENT_MODES),
                        default=env.deployment_mode(),
                    )

                updates: dict[str, str] = {}
                if mode:
                    updates["DEPLOYMENT_MODE"] = mode
                if email:
                    updates["LETSENCRYPT_EMAIL"] = email.strip()
                if regenerate_secrets:
                    updates.update({key: generate_secret() for key in SECRET_KEYS})
                if interactive:
                    for key in PASSWORD_KEYS:
                        supplied = Prompt.ask(
                            f"{key} (leave empty to keep or generate)",
                            console=console,
                            password=True,
                            default="",
                            show_default=False,
                        )
                        if supplied:
                            updates[key] = supplied
                changed = env.update(updates)
                configured = env.auto_configure(target.name)

        changed_keys = sorted(set(changed) | set(configured.generated) | set(configured.updated))
        secret_changes = [key for key in changed_keys if key in SECRET_KEYS]
        for key in changed_keys:
            label = "Updated secret" if key in secret_changes else "Updated"
            console.print(f"{OK_MARK} {label} {key}.")
        if not changed_keys:
            console.print(f"{INFO_MARK} Configuration already up to date.")
        if changed_keys:
            console.print(f"{INFO_MARK} Restart services to apply: `wlzctl restart`.")
        op.success(
            "Environment configured.",
            changed=len(changed_keys),
            context={"keys": changed_keys, "domain": configured.target.name},
        )


@app.command("auto-configure")
def auto_configure(
    ctx: typer.Context,
    domain: str | None = typer.Option(
        None, "--domain", "-d", help="Domain to configure (defaults to DOMAIN in .env)."
    ),
) -> None:
    """Generate placeholder secrets and derive every URL from the domain."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "auto-configure",
        args={"domain": domain},
        target={"kind": "env", "path": str(runtime.config.env_file)},
    ) as op:
        with _guard(op):
            with runtime.locks.mutate_deployment(["env"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.env.auto_configure(domain)

        for key in result.generated:
            console.print(f"{OK_MARK} Generated {key}.")
        for key in result.updated:
            console.print(f"{OK_MARK} Set {key}.")
        if not result.changed:
            console.print(f"{INFO_MARK} Nothing to change for {result.target.name}.")
        kind = "loopback" if isinstance(result.target, Loopback) else "public domain"
        console.print(f"{INFO_MARK} Deployment target: {result.target.name} ({kind}).")
        op.success(
            "Environment auto-configured.",
            changed=len(result.generated) + len(result.updated),
            context={
                "domain": result.target.name,
                "generated": result.generated,
                "updated": result.updated,
            },
        )


# ----------------------------------------------------------------------
# TLS


def _ssl_self_signed(runtime: RuntimeContext) -> None:
    with runtime.logger.operation(
        "ssl self-signed", target={"kind": "tls", "ssl_dir": str(runtime.config.tls.ssl_dir)}
    ) as op:
        with _guard(op), _cancellation() as token:
            with runtime.locks.mutate_deployment(["env", "proxy"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                certificate = runtime.provisioner().provision_self_signed(op=op, cancel=token)
        _print_certificate(certificate)
        op.success("Self-signed certificate provisioned.", changed=1)


def _ssl_letsencrypt(runtime: RuntimeContext, email: str | None, yes: bool) -> None:
    with runtime.logger.operation(
        "ssl letsencrypt", args={"email": email}, target={"kind": "tls"}
    ) as op:
        with _guard(op), _cancellation() as token:
            with runtime.locks.mutate_deployment(["env", "proxy"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                target = runtime.env.target()
                if isinstance(target, Loopback):
                    _command_error(
                        op,
                        f"DOMAIN is {target.name}; Let's Encrypt needs a public domain.",
                        hint="Set one with `wlzctl configure --domain example.com`.",
                    )
                _print_acme_preconditions(target.name)
                if email is None and not runtime.env.get("LETSENCRYPT_EMAIL") and _interactive():
                    email = Prompt.ask("Email for Let's Encrypt", console=console)
                if not yes and _interactive() and not Confirm.ask(
                    f"Request a certificate for {target.name}?", console=console, default=True
                ):
                    console.print(f"{INFO_MARK} Cancelled.")
                    op.warning("Certificate request declined by operator.", changed=0)
                    return
                with console.status(f"Requesting a certificate for {target.name}..."):
                    certificate = runtime.provisioner().provision_acme(
                        target.name, email, op=op, cancel=token
                    )
        _print_certificate(certificate)
        op.success("Let's Encrypt certificate provisioned.", changed=1)


def _ssl_renew(runtime: RuntimeContext) -> None:
    with runtime.logger.operation("ssl renew", target={"kind": "tls"}) as op:
        with _guard(op):
            with runtime.locks.mutate_deployment(["proxy"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                certificate = runtime.provisioner().renew(op=op)
        console.print(f"{OK_MARK} Renewal run for {certificate.domain}; proxy restarted.")
        op.success("Certificates renewed.", changed=1)


def _ssl_info(runtime: RuntimeContext, json_output: bool) -> None:
    with runtime.logger.operation("ssl info", args={"json": json_output}) as op:
        provisioner = runtime.provisioner()
        diagnostics = runtime.nginx.diagnostics()
        payload: dict[str, object] = {
            "proxy_config": str(diagnostics["config_path"]),
            "configured_certificate": diagnostics["certificate"],
            "configured_key": diagnostics["certificate_key"],
            "ssl_enabled": runtime.env.ssl_enabled() if runtime.env.exists() else False,
            "local_certificate": None,
        }
        with _guard(op):
            if provisioner.cert_path.exists():
                info = describe_certificate(provisioner.cert_path)
                payload["local_certificate"] = {
                    "path": str(info.path),
                    "subject": info.subject,
                    "issuer": info.issuer,
                    "not_valid_before": info.not_valid_before.isoformat(),
                    "not_valid_after": info.not_valid_after.isoformat(),
                    "days_remaining": info.days_remaining,
                    "self_signed": info.self_signed,
                }

        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Field")
            table.add_column("Value")
            table.add_row("Proxy config", str(payload["proxy_config"]))
            table.add_row("Certificate in use", str(payload["configured_certificate"] or "-"))
            table.add_row("Key in use", str(payload["configured_key"] or "-"))
            table.add_row("ENABLE_SSL", "true" if payload["ssl_enabled"] else "false")
            local = payload["local_certificate"]
            if isinstance(local, dict):
                table.add_row("Local certificate", str(local["path"]))
                table.add_row("Subject", str(local["subject"]))
                table.add_row("Issuer", str(local["issuer"]))
                table.add_row("Valid from", str(local["not_valid_before"]))
                table.add_row("Valid until", str(local["not_valid_after"]))
                table.add_row("Days remaining", str(local["days_remaining"]))
            else:
                table.add_row("Local certificate", f"not found ({provisioner.cert_path})")
            console.print(table)
        op.success("Reported certificate information.", changed=0)


@ssl_app.callback(invoke_without_command=True)
def _ssl_root(ctx: typer.Context) -> None:
    """Provision and inspect TLS certificates."""
    if ctx.invoked_subcommand is not None:
        return
    if not _interactive():
        console.print(ctx.get_help())
        raise typer.Exit(code=0)
    runtime = _get_runtime(ctx)
    actions: dict[str, tuple[str, Callable[[], None]]] = {
        "1": ("Generate a self-signed certificate", lambda: _ssl_self_signed(runtime)),
        "2": ("Request a Let's Encrypt certificate", lambda: _ssl_letsencrypt(runtime, None, False)),
        "3": ("Renew Let's Encrypt certificates", lambda: _ssl_renew(runtime)),
        "4": ("Show certificate information", lambda: _ssl_info(runtime, False)),
    }
    for key, (label, _) in actions.items():
        console.print(f"  [bold cyan]{key}[/bold cyan]) {label}")
    console.print("  [bold cyan]0[/bold cyan]) Back")
    choice = Prompt.ask("Select an option", console=console, choices=[*actions, "0"], default="0")
    if choice != "0":
        actions[choice][1]()
    raise typer.Exit(code=0)


@ssl_app.command("self-signed")
def ssl_self_signed(ctx: typer.Context) -> None:
    """Generate a self-signed certificate for a loopback deployment."""
    _ssl_self_signed(_get_runtime(ctx))


@ssl_app.command("letsencrypt")
def ssl_letsencrypt(
    ctx: typer.Context,
    email: str | None = typer.Option(None, "--email", "-e", help="Contact email."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Obtain a Let's Encrypt certificate for the configured domain."""
    _ssl_letsencrypt(_get_runtime(ctx), email, yes)


@ssl_app.command("renew")
def ssl_renew(ctx: typer.Context) -> None:
    """Renew Let's Encrypt certificates and reload the proxy."""
    _ssl_renew(_get_runtime(ctx))


@ssl_app.command("info")
def ssl_info(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the certificate the proxy uses and the local certificate's validity."""
    _ssl_info(_get_runtime(ctx), json_output)


# ----------------------------------------------------------------------
# Images


def _build_images(runtime: RuntimeContext, op: OperationScope, username: str, tag: str) -> None:
    with console.status("Building images..."):
        built = runtime.images.build(username, tag)
    for image in built:
        console.print(f"{OK_MARK} Built {image.reference}.")
    op.add_step("images.build", detail=", ".join(image.reference for image in built))


def _push_images(runtime: RuntimeContext, op: OperationScope, username: str, tag: str) -> None:
    pushed = runtime.images.push(username, tag)
    for reference in pushed:
        console.print(f"{OK_MARK} Pushed {reference}.")
    op.add_step("images.push", detail=", ".join(pushed))


def _image_command(
    ctx: typer.Context,
    command: str,
    username: str | None,
    tag: str | None,
    *,
    build: bool,
    push: bool,
) -> None:
    runtime = _get_runtime(ctx)
    image_tag = tag or runtime.config.images.tag
    with runtime.logger.operation(
        command, args={"username": username, "tag": image_tag}, target={"kind": "images"}
    ) as op:
        with _guard(op):
            user = _resolve_username(runtime, username)
            if not user:
                _command_error(
                    op,
                    "A Docker Hub username is required.",
                    hint="Pass --username or set DOCKER_USERNAME in .env.",
                )
            with runtime.locks.mutate_deployment(["compose"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                if build:
                    _build_images(runtime, op, user, image_tag)
                if push:
                    _push_images(runtime, op, user, image_tag)
                _persist_username(runtime, user, op)
        op.success(f"{command} complete.", changed=1, context={"username": user, "tag": image_tag})


@app.command()
def build(
    ctx: typer.Context,
    username: str | None = USERNAME_OPTION,
    tag: str | None = TAG_OPTION,
) -> None:
    """Build the backend and frontend images and point compose at them."""
    _image_command(ctx, "build", username, tag, build=True, push=False)


@app.command()
def push(
    ctx: typer.Context,
    username: str | None = USERNAME_OPTION,
    tag: str | None = TAG_OPTION,
) -> None:
    """Push previously built images to Docker Hub."""
    _image_command(ctx, "push", username, tag, build=False, push=True)


@app.command("build-push")
def build_push(
    ctx: typer.Context,
    username: str | None = USERNAME_OPTION,
    tag: str | None = TAG_OPTION,
) -> None:
    """Build, then push, both application images."""
    _image_command(ctx, "build-push", username, tag, build=True, push=True)


# ----------------------------------------------------------------------
# Database


def _print_steps(outcomes: Sequence[StepOutcome]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Step")
    table.add_column("File")
    table.add_column("Result")
    for outcome in outcomes:
        colour = {APPLIED: "green", RESTORED: "green", ALREADY_APPLIED: "dim"}.get(outcome.status, "red")
        result = f"[{colour}]{outcome.status}[/{colour}]"
        if outcome.detail and outcome.status not in (APPLIED, RESTORED, ALREADY_APPLIED):
            result = f"{result} {outcome.detail}"
        table.add_row(outcome.name, outcome.file, result)
    console.print(table)


@db_app.command("init")
def db_init(
    ctx: typer.Context,
    force: bool = typer.Option(
        False, "--force", help="Run the base schema even if tables already exist."
    ),
    from_backup: bool = typer.Option(
        True,
        "--from-backup/--schema-only",
        help="Restore the newest worklenz_backup_*.sql.gz dump when one exists.",
    ),
) -> None:
    """Restore the newest SQL dump, or apply the base schema in dependency order."""
    runtime = _get_runtime(ctx)
    dumps_dir = runtime.config.database.dumps_dir
    with runtime.logger.operation(
        "db init",
        args={"force": force, "from_backup": from_backup},
        target={"kind": "database", "dumps_dir": str(dumps_dir)},
    ) as op:
        restored: StepOutcome | None = None
        with _guard(op):
            with runtime.locks.mutate_deployment(["database"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.compose.start([runtime.config.services.database])
                _wait_for_database(runtime, op)
                initializer = DatabaseInitializer(runtime.config.database.sql_dir, runtime.sql_executor())
                if initializer.is_initialized() and not force:
                    _command_error(
                        op,
                        "The database already contains tables.",
                        hint="Use `wlzctl db migrate` for updates, or --force to re-run the schema.",
                    )
                dump = initializer.latest_dump(dumps_dir) if from_backup else None
                if dump is not None:
                    restored = initializer.restore_dump(dump, op=op)
                if restored is not None and restored.status == RESTORED:
                    outcomes = [restored]
                else:
                    outcomes = initializer.initialize(op=op)

        if restored is not None and restored.status == RESTORED:
            _print_steps(outcomes)
            console.print(f"{OK_MARK} Database restored from {restored.file}.")
            op.success("Database restored from dump.", changed=1, context={"dump": restored.file})
            return
        if restored is not None:
            console.print(f"{WARN_MARK} {restored.detail}; initialised from schema instead.")

        _print_steps(outcomes)
        problems = [outcome for outcome in outcomes if outcome.status != APPLIED]
        if problems:
            _command_error(
                op,
                f"{len(problems)} schema step(s) did not apply.",
                rc=ExitCode.PROVIDER,
                errors=[f"{item.file}: {item.detail}" for item in problems],
            )
        console.print(f"{OK_MARK} Database schema initialised.")
        op.success("Database initialised.", changed=len(outcomes))


@db_app.command("migrate")
def db_migrate(ctx: typer.Context) -> None:
    """Apply pending migrations in file-name order."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("db migrate", target={"kind": "database"}) as op:
        with _guard(op):
            with runtime.locks.mutate_deployment(["database"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.compose.start([runtime.config.services.database])
                _wait_for_database(runtime, op)
                runner = MigrationRunner(runtime.config.database.migrations_dir, runtime.sql_executor())
                outcomes = runner.run(op=op)

        if not outcomes:
            console.print(f"{INFO_MARK} No migrations found in {runtime.config.database.migrations_dir}.")
            op.success("No migrations to apply.", changed=0)
            return
        _print_steps(outcomes)
        failed = [outcome for outcome in outcomes if outcome.status not in (APPLIED, ALREADY_APPLIED)]
        if failed:
            _command_error(
                op,
                f"Migration {failed[0].file} failed; later migrations were not applied.",
                rc=ExitCode.PROVIDER,
                errors=[str(failed[0].detail)],
            )
        applied = [outcome.file for outcome in outcomes if outcome.status == APPLIED]
        console.print(f"{OK_MARK} {len(applied)} migration(s) applied.")
        op.success("Migrations applied.", changed=len(applied), context={"applied": applied})


@app.command("help")
def help_command(ctx: typer.Context) -> None:
    """Show this help and exit."""
    console.print(ctx.find_root().get_help())


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
