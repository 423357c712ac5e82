"""Bounded polling used instead of fixed sleeps while services start."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .config import ReadinessConfig

LOGGER = logging.getLogger(__name__)


class ServiceNotReadyError(RuntimeError):
    """Raised when a service does not become ready before the timeout."""

    def __init__(self, service: str, attempts: int, elapsed: float) -> None:
        """Capture how long the service was polled."""
        super().__init__(
            f"Service '{service}' was not ready after {attempts} attempt(s) "
            f"in {elapsed:.1f}s."
        )
        self.service = service
        self.attempts = attempts
        self.elapsed = elapsed
        self.hint = f"Inspect the service with `wlzctl logs {service}`."


@dataclass(slots=True)
class ReadinessResult:
    """Outcome of a successful wait."""

    service: str
    attempts: int
    elapsed: float


def wait_until(
    service: str,
    probe: Callable[[], bool],
    policy: ReadinessConfig,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ReadinessResult:
    """Poll *probe* with exponential backoff until it returns True.

    The total wait is bounded by ``policy.timeout``; the last sleep is
    shortened so the deadline is never overshot by more than one probe.
    """
    started = clock()
    deadline = started + policy.timeout
    delay = policy.initial_delay
    attempts = 0
    while True:
        attempts += 1
        try:
            ready = probe()
        except Exception as exc:  # noqa: BLE001 - a failing probe means "not yet"
            LOGGER.debug("Readiness probe for %s raised: %s", service, exc)
            ready = False
        now = clock()
        if ready:
            return ReadinessResult(service=service, attempts=attempts, elapsed=now - started)
        remaining = deadline - now
        if remaining <= 0:
            raise ServiceNotReadyError(service, attempts, now - started)
        sleep(min(delay, remaining))
        delay = min(delay * policy.backoff, policy.max_delay)


__all__ = ["ReadinessResult", "ServiceNotReadyError", "wait_until"]
