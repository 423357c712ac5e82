"""Secret generation and placeholder detection for the deployment ``.env``."""
from __future__ import annotations

import secrets
from pathlib import Path

DEFAULT_SECRET_BYTES = 32
MIN_SECRET_BYTES = 32
PLACEHOLDER_PREFIX = "CHANGE_THIS"
# Values shipped in templates and compose defaults that must never survive
# auto-configuration.
INSECURE_DEFAULTS = frozenset({"dummy", "worklenz_redis_pass"})
_URANDOM = Path("/dev/urandom")


class SecretGenerationError(RuntimeError):
    """Raised when no cryptographically secure source is available."""


def generate_secret(length_bytes: int = DEFAULT_SECRET_BYTES) -> str:
    """Return ``length_bytes`` random bytes encoded as lowercase hex.

    The operating system CSPRNG (via :mod:`secrets`) is the primary source;
    reading ``/dev/urandom`` directly is the only fallback.
    """
    if length_bytes < MIN_SECRET_BYTES:
        raise ValueError(
            f"Secrets need at least {MIN_SECRET_BYTES} bytes (256 bits); got {length_bytes}."
        )
    try:
        return secrets.token_hex(length_bytes)
    except (NotImplementedError, OSError):
        pass
    try:
        with _URANDOM.open("rb") as handle:
            data = handle.read(length_bytes)
    except OSError as exc:
        raise SecretGenerationError(f"No secure random source available: {exc}") from exc
    if len(data) != length_bytes:
        raise SecretGenerationError("Short read from /dev/urandom.")
    return data.hex()


def is_placeholder(value: str | None) -> bool:
    """Return True when *value* must be regenerated by auto-configuration."""
    if value is None:
        return True
    stripped = value.strip()
    if not stripped:
        return True
    if stripped.startswith(PLACEHOLDER_PREFIX):
        return True
    return stripped in INSECURE_DEFAULTS


__all__ = [
    "INSECURE_DEFAULTS",
    "PLACEHOLDER_PREFIX",
    "SecretGenerationError",
    "generate_secret",
    "is_placeholder",
]
