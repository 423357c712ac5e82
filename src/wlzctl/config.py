"""Configuration loader for wlzctl.

This module centralises the logic for reading the tool's own settings from
multiple sources:

1. Built-in defaults.
2. ``/etc/wlzctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``WLZCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export WLZCTL_BACKUPS__RETENTION_DAYS=14
    export WLZCTL_COMPOSE__PROJECT_NAME=worklenz-staging

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

The deployment's own ``.env`` document is *not* handled here; see
:mod:`wlzctl.envstore`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load wlzctl configuration. Install with "
        "`pip install wlzctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "WLZCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ComposeConfig:
    """How the orchestration facade invokes Docker Compose."""

    bin: str = "docker"
    project_name: str = "worklenz"
    file: Path | None = None
    profiles_all: tuple[str, ...] = ("express", "advanced", "ssl", "backup")
    helper_image: str = "alpine"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "project_name": self.project_name,
            "file": str(self.file) if self.file is not None else None,
            "profiles_all": list(self.profiles_all),
            "helper_image": self.helper_image,
        }


@dataclass(frozen=True)
class ServicesConfig:
    """Compose service names for each tier of the deployment."""

    database: str = "postgres"
    cache: str = "redis"
    object_store: str = "minio"
    proxy: str = "nginx"
    certbot: str = "certbot"
    backend: str = "backend"
    frontend: str = "frontend"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "database": self.database,
            "cache": self.cache,
            "object_store": self.object_store,
            "proxy": self.proxy,
            "certbot": self.certbot,
            "backend": self.backend,
            "frontend": self.frontend,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and retention defaults."""

    root: Path
    index: Path
    retention_days: int = 30
    single_transaction: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "retention_days": self.retention_days,
            "single_transaction": self.single_transaction,
        }


@dataclass(frozen=True)
class ReadinessConfig:
    """Bounded polling parameters used while waiting for services."""

    timeout: float = 60.0
    initial_delay: float = 0.5
    max_delay: float = 5.0
    backoff: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "backoff": self.backoff,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate locations on the host and inside the proxy container."""

    ssl_dir: Path
    proxy_config: Path
    lets_encrypt_live: str = "/etc/letsencrypt/live"
    container_ssl_dir: str = "/etc/nginx/ssl"
    webroot: str = "/var/www/certbot"
    self_signed_days: int = 365
    key_size: int = 2048

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ssl_dir": str(self.ssl_dir),
            "proxy_config": str(self.proxy_config),
            "lets_encrypt_live": self.lets_encrypt_live,
            "container_ssl_dir": self.container_ssl_dir,
            "webroot": self.webroot,
            "self_signed_days": self.self_signed_days,
            "key_size": self.key_size,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """Schema and migration file locations."""

    sql_dir: Path
    migrations_dir: Path
    dumps_dir: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sql_dir": str(self.sql_dir),
            "migrations_dir": str(self.migrations_dir),
            "dumps_dir": str(self.dumps_dir),
        }


@dataclass(frozen=True)
class ImagesConfig:
    """Build contexts for the application images."""

    backend_context: Path
    frontend_context: Path
    tag: str = "latest"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "backend_context": str(self.backend_context),
            "frontend_context": str(self.frontend_context),
            "tag": self.tag,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for wlzctl."""

    config_file: Path
    project_dir: Path
    env_file: Path
    env_template: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path | None
    lock_timeout: float
    compose: ComposeConfig
    services: ServicesConfig
    backups: BackupConfig
    readiness: ReadinessConfig
    tls: TLSConfig
    database: DatabaseConfig
    images: ImagesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "project_dir": str(self.project_dir),
            "env_file": str(self.env_file),
            "env_template": str(self.env_template),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "lock_timeout": self.lock_timeout,
            "compose": self.compose.to_dict(),
            "services": self.services.to_dict(),
            "backups": self.backups.to_dict(),
            "readiness": self.readiness.to_dict(),
            "tls": self.tls.to_dict(),
            "database": self.database.to_dict(),
            "images": self.images.to_dict(),
        }


# ``None`` path values are derived from ``project_dir`` when the config is built.
DEFAULTS: dict[str, object] = {
    "config_file": "/etc/wlzctl/config.yml",
    "project_dir": ".",
    "env_file": None,
    "env_template": None,
    "logs_dir": None,
    "runtime_dir": None,
    "templates_dir": None,
    "lock_timeout": 30.0,
    "compose": {
        "bin": "docker",
        "project_name": "worklenz",
        "file": None,
        "profiles_all": ["express", "advanced", "ssl", "backup"],
        "helper_image": "alpine",
    },
    "services": {
        "database": "postgres",
        "cache": "redis",
        "object_store": "minio",
        "proxy": "nginx",
        "certbot": "certbot",
        "backend": "backend",
        "frontend": "frontend",
    },
    "backups": {
        "root": None,
        "index": None,
        "retention_days": 30,
        "single_transaction": True,
    },
    "readiness": {
        "timeout": 60.0,
        "initial_delay": 0.5,
        "max_delay": 5.0,
        "backoff": 2.0,
    },
    "tls": {
        "ssl_dir": None,
        "proxy_config": None,
        "lets_encrypt_live": "/etc/letsencrypt/live",
        "container_ssl_dir": "/etc/nginx/ssl",
        "webroot": "/var/www/certbot",
        "self_signed_days": 365,
        "key_size": 2048,
    },
    "database": {
        "sql_dir": None,
        "migrations_dir": None,
        "dumps_dir": None,
    },
    "images": {
        "backend_context": None,
        "frontend_context": None,
        "tag": "latest",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    key: set(cast(Mapping[str, object], value).keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    retention = backups_map.get("retention_days")
    if retention is not None:
        days = _expect_int(retention, "backups.retention_days", default=30)
        if days < 0:
            raise ConfigError("backups.retention_days must be non-negative.")

    readiness_map = _as_dict(raw.get("readiness"), "readiness")
    for key in ("timeout", "initial_delay", "max_delay"):
        if readiness_map.get(key) is not None:
            _expect_positive_float(readiness_map[key], f"readiness.{key}", default=1.0)
    backoff = readiness_map.get("backoff")
    if backoff is not None and _expect_positive_float(backoff, "readiness.backoff", default=2.0) < 1:
        raise ConfigError("readiness.backoff must be at least 1.0.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    project_dir = _to_path(raw.get("project_dir")).resolve()

    env_file = _optional_path(raw.get("env_file")) or project_dir / ".env"
    env_template = _optional_path(raw.get("env_template")) or env_file.with_name(
        f"{env_file.name}.example"
    )
    logs_dir = _optional_path(raw.get("logs_dir")) or project_dir / "logs" / "wlzctl"
    runtime_dir = _optional_path(raw.get("runtime_dir")) or project_dir / ".wlzctl"
    templates_dir = _optional_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    compose_map = _as_dict(raw.get("compose"), "compose")
    profiles_raw = compose_map.get("profiles_all", ["express", "advanced", "ssl", "backup"])
    compose = ComposeConfig(
        bin=str(compose_map.get("bin", "docker")),
        project_name=str(compose_map.get("project_name", "worklenz")),
        file=_optional_path(compose_map.get("file")),
        profiles_all=tuple(
            str(item) for item in _as_sequence(profiles_raw, "compose.profiles_all")
        ),
        helper_image=str(compose_map.get("helper_image", "alpine")),
    )

    services_map = _as_dict(raw.get("services"), "services")
    defaults = ServicesConfig()
    services = ServicesConfig(
        **{
            field: str(services_map.get(field, getattr(defaults, field)))
            for field in defaults.to_dict()
        }
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups_root = _optional_path(backups_map.get("root")) or project_dir / "backups"
    backups = BackupConfig(
        root=backups_root,
        index=_optional_path(backups_map.get("index")) or backups_root / "backups.json",
        retention_days=_expect_int(
            backups_map.get("retention_days"), "backups.retention_days", default=30
        ),
        single_transaction=bool(backups_map.get("single_transaction", True)),
    )

    readiness_map = _as_dict(raw.get("readiness"), "readiness")
    readiness = ReadinessConfig(
        timeout=_expect_positive_float(
            readiness_map.get("timeout"), "readiness.timeout", default=60.0
        ),
        initial_delay=_expect_positive_float(
            readiness_map.get("initial_delay"), "readiness.initial_delay", default=0.5
        ),
        max_delay=_expect_positive_float(
            readiness_map.get("max_delay"), "readiness.max_delay", default=5.0
        ),
        backoff=_expect_positive_float(
            readiness_map.get("backoff"), "readiness.backoff", default=2.0
        ),
    )

    tls_map = _as_dict(raw.get("tls"), "tls")
    tls = TLSConfig(
        ssl_dir=_optional_path(tls_map.get("ssl_dir")) or project_dir / "nginx" / "ssl",
        proxy_config=_optional_path(tls_map.get("proxy_config"))
        or project_dir / "nginx" / "conf.d" / "worklenz.conf",
        lets_encrypt_live=str(tls_map.get("lets_encrypt_live", "/etc/letsencrypt/live")),
        container_ssl_dir=str(tls_map.get("container_ssl_dir", "/etc/nginx/ssl")),
        webroot=str(tls_map.get("webroot", "/var/www/certbot")),
        self_signed_days=_expect_int(
            tls_map.get("self_signed_days"), "tls.self_signed_days", default=365
        ),
        key_size=_expect_int(tls_map.get("key_size"), "tls.key_size", default=2048),
    )

    database_map = _as_dict(raw.get("database"), "database")
    sql_dir = (
        _optional_path(database_map.get("sql_dir"))
        or project_dir / "worklenz-backend" / "database" / "sql"
    )
    database = DatabaseConfig(
        sql_dir=sql_dir,
        migrations_dir=_optional_path(database_map.get("migrations_dir")) or sql_dir / "migrations",
        dumps_dir=_optional_path(database_map.get("dumps_dir")) or project_dir / "pg_backups",
    )

    images_map = _as_dict(raw.get("images"), "images")
    images = ImagesConfig(
        backend_context=_optional_path(images_map.get("backend_context"))
        or project_dir / "worklenz-backend",
        frontend_context=_optional_path(images_map.get("frontend_context"))
        or project_dir / "worklenz-frontend",
        tag=str(images_map.get("tag", "latest")),
    )

    return AppConfig(
        config_file=config_file,
        project_dir=project_dir,
        env_file=env_file,
        env_template=env_template,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        compose=compose,
        services=services,
        backups=backups,
        readiness=readiness,
        tls=tls,
        database=database,
        images=images,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object) -> Path | None:
    if value is None or value == "":
        return None
    return _to_path(value)


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ComposeConfig",
    "ConfigError",
    "DatabaseConfig",
    "ImagesConfig",
    "ReadinessConfig",
    "ServicesConfig",
    "TLSConfig",
    "load_config",
]
