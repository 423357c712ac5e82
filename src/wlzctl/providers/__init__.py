"""Provider interfaces for wlzctl."""
from __future__ import annotations

from .compose import ComposeError, ComposeProvider, Mount, Orchestrator, ServiceState
from .images import BuildFailedError, ImageBuilder, ImageError, PushFailedError
from .nginx import CertificatePaths, NginxError, NginxProvider, NginxRenderResult

__all__ = [
    "BuildFailedError",
    "CertificatePaths",
    "ComposeError",
    "ComposeProvider",
    "ImageBuilder",
    "ImageError",
    "Mount",
    "NginxError",
    "NginxProvider",
    "NginxRenderResult",
    "Orchestrator",
    "PushFailedError",
    "ServiceState",
]
