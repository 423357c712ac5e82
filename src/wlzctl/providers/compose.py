"""Docker Compose provider: the orchestration facade used by every engine."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Protocol

from ..config import AppConfig


class ComposeError(RuntimeError):
    """Raised when a docker or docker compose invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        """Keep the exit status and stderr for callers that report them."""
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
        self.hint = "Check that Docker is running and `docker compose version` works."


@dataclass(slots=True)
class Mount:
    """A bind or named-volume mount for an ephemeral container."""

    source: str
    target: str
    read_only: bool = False

    def to_arg(self) -> str:
        """Return the ``-v`` argument value."""
        suffix = ":ro" if self.read_only else ""
        return f"{self.source}:{self.target}{suffix}"


@dataclass(slots=True)
class ServiceState:
    """One row of ``docker compose ps``."""

    service: str
    name: str
    state: str
    status: str = ""
    health: str = ""
    ports: list[str] = field(default_factory=list)

    @property
    def running(self) -> bool:
        """Return True when the container is running."""
        return self.state.lower() == "running"


class Orchestrator(Protocol):
    """The narrow surface the backup, restore and TLS engines depend on."""

    def start(
        self, services: Sequence[str] = (), profiles: Sequence[str] = ()
    ) -> subprocess.CompletedProcess[str]: ...

    def stop(self, profiles: Sequence[str] | None = None) -> subprocess.CompletedProcess[str]: ...

    def restart(self, services: Sequence[str] = ()) -> subprocess.CompletedProcess[str]: ...

    def exec(
        self,
        service: str,
        command: Sequence[str],
        *,
        stdin: Path | None = None,
        stdout: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]: ...

    def run_ephemeral(
        self, image: str, mounts: Sequence[Mount], command: Sequence[str]
    ) -> subprocess.CompletedProcess[str]: ...

    def run_service(
        self, service: str, command: Sequence[str], *, check: bool = True
    ) -> subprocess.CompletedProcess[str]: ...

    def volume_name(self, name: str) -> str: ...


def start_profiles(deployment_mode: str, ssl_enabled: bool) -> list[str]:
    """Return the compose profiles used when starting the stack."""
    profiles = [deployment_mode]
    if ssl_enabled:
        profiles.append("ssl")
    return profiles


@dataclass(slots=True)
class ComposeProvider:
    """Invoke ``docker compose`` for the Worklenz deployment."""

    project_dir: Path
    docker_bin: str = "docker"
    project_name: str = "worklenz"
    compose_file: Path | None = None
    profiles_all: tuple[str, ...] = ("express", "advanced", "ssl", "backup")

    @classmethod
    def from_config(cls, config: AppConfig) -> ComposeProvider:
        """Build a provider from the resolved tool configuration."""
        return cls(
            project_dir=config.project_dir,
            docker_bin=config.compose.bin,
            project_name=config.compose.project_name,
            compose_file=config.compose.file,
            profiles_all=config.compose.profiles_all,
        )

    def base_command(self, profiles: Sequence[str] = ()) -> list[str]:
        """Return ``docker compose`` with project, file and profile flags."""
        command = [self.docker_bin, "compose", "--project-name", self.project_name]
        if self.compose_file is not None:
            command.extend(["--file", str(self.compose_file)])
        for profile in profiles:
            command.extend(["--profile", profile])
        return command

    def volume_name(self, name: str) -> str:
        """Return the project-scoped name of the named volume *name*."""
        return f"{self.project_name}_{name}"

    # Lifecycle -----------------------------------------------------
    def is_available(self) -> bool:
        """Return True when ``docker compose version`` succeeds."""
        try:
            result = subprocess.run(  # noqa: S603, S607
                [self.docker_bin, "compose", "version"],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            return False
        return result.returncode == 0

    def start(
        self, services: Sequence[str] = (), profiles: Sequence[str] = ()
    ) -> subprocess.CompletedProcess[str]:
        """Run ``up -d`` for *services* (all when empty) under *profiles*."""
        return self._compose(["up", "-d", *services], profiles=profiles)

    def stop(self, profiles: Sequence[str] | None = None) -> subprocess.CompletedProcess[str]:
        """Run ``down`` with every known profile so no container is left behind."""
        active = self.profiles_all if profiles is None else profiles
        return self._compose(["down"], profiles=active)

    def restart(self, services: Sequence[str] = ()) -> subprocess.CompletedProcess[str]:
        """Restart *services* (all when empty)."""
        return self._compose(["restart", *services])

    def pull(self, profiles: Sequence[str] = ()) -> subprocess.CompletedProcess[str]:
        """Pull images for *profiles*."""
        return self._compose(["pull"], profiles=profiles, capture_output=False)

    def build(
        self, profiles: Sequence[str] = (), *, no_cache: bool = False
    ) -> subprocess.CompletedProcess[str]:
        """Build images declared in the compose file."""
        args = ["build"]
        if no_cache:
            args.append("--no-cache")
        return self._compose(args, profiles=profiles, capture_output=False)

    def status(self) -> list[ServiceState]:
        """Return the state of every container of the project."""
        result = self._compose(["ps", "--all", "--format", "json"], profiles=self.profiles_all)
        return parse_ps_output(result.stdout or "")

    def logs(
        self,
        service: str | None = None,
        *,
        tail: int = 100,
        follow: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Return (or stream, when *follow*) container logs."""
        args = ["logs", f"--tail={tail}"]
        if follow:
            args.append("--follow")
        if service:
            args.append(service)
        return self._compose(args, profiles=self.profiles_all, capture_output=not follow)

    # Commands inside containers --------------------------------------
    def exec(
        self,
        service: str,
        command: Sequence[str],
        *,
        stdin: Path | None = None,
        stdout: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* in the running *service* container.

        ``stdin`` and ``stdout`` stream from and into host files so large SQL
        dumps never pass through memory.
        """
        args = [*self.base_command(), "exec", "-T", service, *command]
        return self._run(args, stdin=stdin, stdout=stdout, check=check)

    def run_service(
        self, service: str, command: Sequence[str], *, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        """Run a one-off container of *service* (``compose run --rm``)."""
        args = [*self.base_command(), "run", "--rm", service, *command]
        return self._run(args, check=check)

    def run_ephemeral(
        self, image: str, mounts: Sequence[Mount], command: Sequence[str]
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* in a throwaway *image* container with *mounts*."""
        args = [self.docker_bin, "run", "--rm"]
        for mount in mounts:
            args.extend(["-v", mount.to_arg()])
        args.extend([image, *command])
        return self._run(args)

    # ------------------------------------------------------------------
    def _compose(
        self,
        args: Sequence[str],
        *,
        profiles: Sequence[str] = (),
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [*self.base_command(profiles), *args]
        return self._run(command, capture_output=capture_output)

    def _run(
        self,
        args: Sequence[str],
        *,
        stdin: Path | None = None,
        stdout: Path | None = None,
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        with ExitStack() as stack:
            stdin_handle: IO[bytes] | None = None
            stdout_target: IO[bytes] | int | None = subprocess.PIPE if capture_output else None
            if stdin is not None:
                stdin_handle = stack.enter_context(stdin.open("rb"))
            if stdout is not None:
                stdout_target = stack.enter_context(stdout.open("wb"))
            try:
                result = subprocess.run(  # noqa: S603, S607
                    list(args),
                    cwd=str(self.project_dir),
                    stdin=stdin_handle,
                    stdout=stdout_target,
                    stderr=subprocess.PIPE if capture_output else None,
                    text=True,
                    check=False,
                )
            except FileNotFoundError as exc:
                raise ComposeError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            out = result.stdout.strip() if isinstance(result.stdout, str) else ""
            message = stderr or out or "no output"
            raise ComposeError(
                f"{' '.join(args)} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
                stderr=stderr,
            )
        return result


def parse_ps_output(output: str) -> list[ServiceState]:
    """Parse ``docker compose ps --format json`` output.

    Older Compose releases print one JSON array; newer ones print one JSON
    object per line. Both are accepted.
    """
    text = output.strip()
    if not text:
        return []
    rows: list[object]
    if text.startswith("["):
        try:
            loaded = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ComposeError(f"Unparseable compose ps output: {exc}") from exc
        rows = list(loaded) if isinstance(loaded, list) else []
    else:
        rows = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise ComposeError(f"Unparseable compose ps output: {exc}") from exc

    states: list[ServiceState] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        ports = row.get("Publishers") or []
        published: list[str] = []
        if isinstance(ports, list):
            for port in ports:
                if isinstance(port, dict) and port.get("PublishedPort"):
                    published.append(f"{port.get('PublishedPort')}->{port.get('TargetPort')}")
        states.append(
            ServiceState(
                service=str(row.get("Service", "")),
                name=str(row.get("Name", "")),
                state=str(row.get("State", "")),
                status=str(row.get("Status", "")),
                health=str(row.get("Health", "") or ""),
                ports=published,
            )
        )
    return states


__all__ = [
    "ComposeError",
    "ComposeProvider",
    "Mount",
    "Orchestrator",
    "ServiceState",
    "parse_ps_output",
    "start_profiles",
]
