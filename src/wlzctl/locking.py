"""Advisory file locks serialising mutating wlzctl commands.

The deployment's ``.env`` document, the proxy configuration, the data volumes
and the backup directory are all mutated in place. Only one mutating command
may run at a time, so every such command holds the global ``wlzctl.lock``.
Locks are ``fcntl.flock`` based and acquired by bounded polling.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

GLOBAL_LOCK_NAME = "wlzctl"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock."""

    path: Path
    wait_ms: int
    _handle: IO[str] | None = field(default=None, repr=False)


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired in order."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the cumulative wait across all handles."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire named advisory locks under a runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Bind the manager to *runtime_dir*."""
        self.runtime_dir = runtime_dir
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock *name* for the duration of the context."""
        path = self.lock_path(name)
        handle = self._acquire(path, self.default_timeout if timeout is None else timeout)
        try:
            yield handle
        finally:
            self._release(handle)

    @contextmanager
    def mutate_deployment(
        self,
        resources: Sequence[str] = (),
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by any per-resource locks."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.lock(GLOBAL_LOCK_NAME, timeout=timeout))]
            for resource in resources:
                handles.append(stack.enter_context(self.lock(resource, timeout=timeout)))
            yield LockBundle(handles=handles)

    # ------------------------------------------------------------------
    def _acquire(self, path: Path, timeout: float) -> LockHandle:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = path.open("a+", encoding="utf-8")
        started = time.monotonic()
        deadline = started + timeout
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    handle.close()
                    raise LockTimeoutError(
                        f"Timed out after {timeout:.1f}s waiting for lock {path}; "
                        "another wlzctl command is running."
                    ) from None
                time.sleep(_POLL_INTERVAL)
        wait_ms = int((time.monotonic() - started) * 1000)
        handle.seek(0)
        handle.truncate()
        handle.write(
            json.dumps(
                {
                    "pid": os.getpid(),
                    "path": str(path),
                    "acquired_at": datetime.now(tz=UTC).isoformat(),
                }
            )
        )
        handle.flush()
        return LockHandle(path=path, wait_ms=wait_ms, _handle=handle)

    def _release(self, lock: LockHandle) -> None:
        handle = lock._handle
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
            lock._handle = None


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
