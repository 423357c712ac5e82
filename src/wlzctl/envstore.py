"""Line-preserving store for the deployment's ``.env`` document.

The document is a flat ``KEY=value`` file. Comments, blank lines and the order
of keys wlzctl does not know about are kept byte-for-byte on every rewrite;
only the line of the key being set is replaced. A commented-out assignment
(``# LETSENCRYPT_EMAIL=``) is uncommented in place when that key is set.
"""
from __future__ import annotations

import os
import re
import shutil
import tempfile
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .secretgen import generate_secret, is_placeholder

SECRET_KEYS: tuple[str, ...] = (
    "SESSION_SECRET",
    "COOKIE_SECRET",
    "JWT_SECRET",
    "DB_PASSWORD",
    "AWS_SECRET_ACCESS_KEY",
    "REDIS_PASSWORD",
)
URL_KEYS: tuple[str, ...] = (
    "VITE_API_URL",
    "VITE_SOCKET_URL",
    "FRONTEND_URL",
    "SERVER_CORS",
    "SOCKET_IO_CORS",
    "GOOGLE_CALLBACK_URL",
)
LOOPBACK_DOMAINS = frozenset({"localhost", "127.0.0.1", "0.0.0.0"})
DEFAULT_DOMAIN = "localhost"
DEFAULT_DEPLOYMENT_MODE = "express"
DEPLOYMENT_MODES = ("express", "advanced")

_ASSIGNMENT = re.compile(r"^\s*(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=(?P<value>.*)$")
_COMMENTED = re.compile(r"^\s*#\s*(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=")


class EnvironmentStoreError(RuntimeError):
    """Raised when the deployment environment document cannot be used."""


class ConfigMissingError(EnvironmentStoreError):
    """Raised when neither ``.env`` nor its template exists."""

    def __init__(self, env_file: Path, template: Path | None) -> None:
        """Describe which files were looked for."""
        searched = f"{env_file}" if template is None else f"{env_file} or {template}"
        super().__init__(f"No environment configuration found ({searched}).")
        self.env_file = env_file
        self.template = template
        self.hint = "Create .env from .env.example, or run `wlzctl install`."


# ----------------------------------------------------------------------
# Deployment target


@dataclass(frozen=True, slots=True)
class Loopback:
    """Deployment reachable only through a localhost-equivalent address."""

    name: str = DEFAULT_DOMAIN
    is_loopback: bool = field(default=True, init=False)

    @property
    def host(self) -> str:
        """Host used in generated URLs."""
        return self.name


@dataclass(frozen=True, slots=True)
class PublicDomain:
    """Deployment reachable through a real DNS name."""

    name: str
    is_loopback: bool = field(default=False, init=False)

    @property
    def host(self) -> str:
        """Host used in generated URLs."""
        return self.name


DeploymentTarget = Loopback | PublicDomain


def resolve_target(domain: str | None) -> DeploymentTarget:
    """Classify *domain*; an unset domain is treated as ``localhost``."""
    value = (domain or "").strip() or DEFAULT_DOMAIN
    if value in LOOPBACK_DOMAINS:
        return Loopback(name=value)
    return PublicDomain(name=value)


def service_urls(target: DeploymentTarget) -> dict[str, str]:
    """Return every URL-shaped key for *target*, always as one consistent set."""
    host = target.host
    return {
        "VITE_API_URL": f"https://{host}",
        "VITE_SOCKET_URL": f"wss://{host}",
        "FRONTEND_URL": f"https://{host}",
        "SERVER_CORS": f"https://{host}",
        "SOCKET_IO_CORS": f"https://{host}",
        "GOOGLE_CALLBACK_URL": f"https://{host}/auth/google/callback",
    }


# ----------------------------------------------------------------------
# Document model


def _unquote(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


class EnvDocument:
    """Ordered ``KEY=value`` lines with comments kept verbatim."""

    def __init__(self, lines: list[str] | None = None) -> None:
        """Wrap *lines* (without trailing newlines)."""
        self.lines: list[str] = list(lines or [])

    @classmethod
    def parse(cls, text: str) -> EnvDocument:
        """Split *text* into a document."""
        return cls(text.splitlines())

    def render(self) -> str:
        """Return the document text with a trailing newline."""
        if not self.lines:
            return ""
        return "\n".join(self.lines) + "\n"

    def _active_indexes(self, key: str) -> list[int]:
        indexes = []
        for index, line in enumerate(self.lines):
            match = _ASSIGNMENT.match(line)
            if match and match.group("key") == key:
                indexes.append(index)
        return indexes

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the effective value of *key* (the last assignment wins)."""
        indexes = self._active_indexes(key)
        if not indexes:
            return default
        match = _ASSIGNMENT.match(self.lines[indexes[-1]])
        assert match is not None
        return _unquote(match.group("value"))

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and bool(self._active_indexes(key))

    def keys(self) -> Iterator[str]:
        """Yield assigned keys in document order without duplicates."""
        seen: set[str] = set()
        for line in self.lines:
            match = _ASSIGNMENT.match(line)
            if match and match.group("key") not in seen:
                seen.add(match.group("key"))
                yield match.group("key")

    def as_dict(self) -> dict[str, str]:
        """Return the effective key/value mapping."""
        return {key: self.get(key) or "" for key in self.keys()}

    def set(self, key: str, value: str) -> bool:
        """Assign *key*; return True when the document changed.

        Existing assignments are rewritten in place. Otherwise the first
        commented-out assignment of *key* is replaced, and failing that the
        key is appended.
        """
        if "\n" in value or "\r" in value:
            raise EnvironmentStoreError(f"Value for {key} must be a single line.")
        new_line = f"{key}={value}"
        indexes = self._active_indexes(key)
        if indexes:
            changed = False
            for index in indexes:
                if self.lines[index] != new_line:
                    self.lines[index] = new_line
                    changed = True
            return changed
        for index, line in enumerate(self.lines):
            match = _COMMENTED.match(line)
            if match and match.group("key") == key:
                self.lines[index] = new_line
                return True
        self.lines.append(new_line)
        return True


# ----------------------------------------------------------------------
# Store


@dataclass(slots=True)
class AutoConfigureResult:
    """What :meth:`EnvironmentStore.auto_configure` changed."""

    target: DeploymentTarget
    generated: list[str]
    updated: list[str]

    @property
    def changed(self) -> bool:
        """Return True when anything was written."""
        return bool(self.generated or self.updated)


class EnvironmentStore:
    """Read and update the deployment ``.env`` document."""

    def __init__(self, env_file: Path, template: Path | None = None) -> None:
        """Bind the store to *env_file*, seeded from *template* when missing."""
        self.env_file = env_file
        self.template = template
        self._document: EnvDocument | None = None

    def exists(self) -> bool:
        """Return True when the ``.env`` document exists."""
        return self.env_file.exists()

    def load(self) -> EnvDocument:
        """Load the document, seeding it from the template when absent."""
        if not self.env_file.exists():
            if self.template is None or not self.template.exists():
                raise ConfigMissingError(self.env_file, self.template)
            self.env_file.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self.template, self.env_file)
            os.chmod(self.env_file, 0o600)
        try:
            text = self.env_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise EnvironmentStoreError(f"Failed to read {self.env_file}: {exc}") from exc
        self._document = EnvDocument.parse(text)
        return self._document

    @property
    def document(self) -> EnvDocument:
        """Return the loaded document, loading it on first access."""
        if self._document is None:
            return self.load()
        return self._document

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the value of *key*."""
        return self.document.get(key, default)

    def set(self, key: str, value: str) -> bool:
        """Set *key* and persist; return True when the file changed."""
        return bool(self.update({key: value}))

    def update(self, values: Mapping[str, str]) -> list[str]:
        """Set several keys with a single write; return the changed keys."""
        document = self.document
        changed = [key for key, value in values.items() if document.set(key, value)]
        if changed:
            self.save()
        return changed

    def save(self) -> None:
        """Atomically write the document, preserving the file mode."""
        document = self.document
        mode = 0o600
        if self.env_file.exists():
            mode = self.env_file.stat().st_mode & 0o777
        self.env_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.env_file.parent), prefix=f".{self.env_file.name}."
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(document.render())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, self.env_file)
        except OSError as exc:
            raise EnvironmentStoreError(f"Failed to write {self.env_file}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def as_dict(self) -> dict[str, str]:
        """Return the effective key/value mapping."""
        return self.document.as_dict()

    # Derived values ------------------------------------------------
    def target(self) -> DeploymentTarget:
        """Return the deployment target for the configured ``DOMAIN``."""
        return resolve_target(self.get("DOMAIN"))

    def deployment_mode(self) -> str:
        """Return ``express`` or ``advanced``."""
        mode = (self.get("DEPLOYMENT_MODE") or DEFAULT_DEPLOYMENT_MODE).strip()
        if mode not in DEPLOYMENT_MODES:
            raise EnvironmentStoreError(
                f"DEPLOYMENT_MODE must be one of {', '.join(DEPLOYMENT_MODES)}; got '{mode}'."
            )
        return mode

    def ssl_enabled(self) -> bool:
        """Return True when the proxy runs with externally managed certificates."""
        return (self.get("ENABLE_SSL") or "false").strip().lower() == "true"

    def retention_days(self, default: int) -> int:
        """Return ``BACKUP_RETENTION_DAYS`` or *default*."""
        raw = (self.get("BACKUP_RETENTION_DAYS") or "").strip()
        if not raw:
            return default
        try:
            days = int(raw)
        except ValueError as exc:
            raise EnvironmentStoreError(
                f"BACKUP_RETENTION_DAYS must be an integer; got '{raw}'."
            ) from exc
        if days < 0:
            raise EnvironmentStoreError("BACKUP_RETENTION_DAYS must be non-negative.")
        return days

    def unconfigured_secrets(self) -> list[str]:
        """Return secret keys still holding a placeholder."""
        return [key for key in SECRET_KEYS if is_placeholder(self.get(key))]

    # Auto-configuration --------------------------------------------
    def auto_configure(self, domain: str | None = None) -> AutoConfigureResult:
        """Regenerate placeholder secrets and rewrite every URL for *domain*.

        When *domain* is omitted the configured ``DOMAIN`` is used. Running
        this twice without intervening edits changes nothing the second time.
        """
        document = self.document
        if domain is None:
            domain = document.get("DOMAIN")
        target = resolve_target(domain)

        generated: list[str] = []
        for key in SECRET_KEYS:
            if is_placeholder(document.get(key)):
                document.set(key, generate_secret())
                generated.append(key)

        updated: list[str] = []
        if document.set("DOMAIN", target.name):
            updated.append("DOMAIN")
        for key, value in service_urls(target).items():
            if document.set(key, value):
                updated.append(key)

        if generated or updated:
            self.save()
        return AutoConfigureResult(target=target, generated=generated, updated=updated)


__all__ = [
    "AutoConfigureResult",
    "ConfigMissingError",
    "DeploymentTarget",
    "EnvDocument",
    "EnvironmentStore",
    "EnvironmentStoreError",
    "Loopback",
    "PublicDomain",
    "SECRET_KEYS",
    "URL_KEYS",
    "resolve_target",
    "service_urls",
]
