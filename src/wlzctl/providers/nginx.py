"""Nginx provider rendering the deployment's reverse-proxy configuration."""
from __future__ import annotations

import re
import shutil
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..templates import TemplateEngine, TemplateRenderError

TEMPLATE_NAME = "nginx/site.conf.j2"
_CERT_LINE = re.compile(r"^\s*ssl_certificate\s+(?P<path>[^;\s]+)\s*;", re.MULTILINE)
_KEY_LINE = re.compile(r"^\s*ssl_certificate_key\s+(?P<path>[^;\s]+)\s*;", re.MULTILINE)


class NginxError(RuntimeError):
    """Raised when the proxy configuration cannot be rendered or validated."""


@dataclass(frozen=True, slots=True)
class CertificatePaths:
    """Certificate and key paths as seen from inside the proxy container."""

    certificate: str
    certificate_key: str


@dataclass(slots=True)
class NginxRenderResult:
    """Outcome of rendering the proxy configuration."""

    changed: bool
    backup: Path | None = None
    validation_error: str | None = None


@dataclass(slots=True)
class NginxProvider:
    """Render and inspect ``nginx/conf.d/worklenz.conf``."""

    templates: TemplateEngine
    config_path: Path
    backend_upstream: str = "backend:3000"
    frontend_upstream: str = "frontend:5000"
    acme_webroot: str = "/var/www/certbot"
    client_max_body_size: str = "50M"
    backend_locations: Sequence[str] = field(default_factory=lambda: ("/secure/", "/auth/"))

    @property
    def backup_path(self) -> Path:
        """Return the path of the copy kept before each rewrite."""
        return self.config_path.with_name(f"{self.config_path.name}.bak")

    def site_context(self, server_name: str, paths: CertificatePaths) -> dict[str, object]:
        """Return the template context for *server_name* and *paths*."""
        return {
            "server_name": server_name,
            "certificate": paths.certificate,
            "certificate_key": paths.certificate_key,
            "backend_upstream": self.backend_upstream,
            "frontend_upstream": self.frontend_upstream,
            "acme_webroot": self.acme_webroot,
            "client_max_body_size": self.client_max_body_size,
            "backend_locations": list(self.backend_locations),
        }

    def render_site(
        self,
        context: Mapping[str, object],
        *,
        validate: Callable[[], object] | None = None,
    ) -> NginxRenderResult:
        """Render the site configuration from *context*.

        The previous file is copied to ``<file>.bak`` before it is replaced.
        When rendering fails, or *validate* raises, the previous content is
        restored so the proxy keeps a working configuration.
        """
        destination = self.config_path
        previous: tuple[bytes, int] | None = None
        if destination.exists():
            previous = (destination.read_bytes(), destination.stat().st_mode)

        try:
            rendered = self.templates.render_to_string(TEMPLATE_NAME, context)
        except TemplateRenderError as exc:
            raise NginxError(str(exc)) from exc
        if previous is not None and previous[0] == rendered.encode("utf-8"):
            return NginxRenderResult(changed=False)

        backup: Path | None = None
        if previous is not None:
            shutil.copy2(destination, self.backup_path)
            backup = self.backup_path

        self.templates.render_to_path(TEMPLATE_NAME, destination, context, mode=0o644)

        if validate is not None:
            try:
                validate()
            except RuntimeError as exc:
                self._restore(previous)
                return NginxRenderResult(changed=False, backup=backup, validation_error=str(exc))
        return NginxRenderResult(changed=True, backup=backup)

    def apply_certificate(
        self,
        server_name: str,
        paths: CertificatePaths,
        *,
        validate: Callable[[], object] | None = None,
    ) -> NginxRenderResult:
        """Point the proxy at *paths* for *server_name*."""
        return self.render_site(self.site_context(server_name, paths), validate=validate)

    def read_certificate_paths(self) -> CertificatePaths | None:
        """Return the certificate paths the current configuration references."""
        if not self.config_path.exists():
            return None
        text = self.config_path.read_text(encoding="utf-8")
        cert = _CERT_LINE.search(text)
        key = _KEY_LINE.search(text)
        if cert is None or key is None:
            return None
        return CertificatePaths(certificate=cert.group("path"), certificate_key=key.group("path"))

    def diagnostics(self) -> dict[str, object]:
        """Return diagnostic metadata about the configuration file."""
        paths = self.read_certificate_paths()
        return {
            "config_path": self.config_path,
            "exists": self.config_path.exists(),
            "backup_exists": self.backup_path.exists(),
            "certificate": paths.certificate if paths else None,
            "certificate_key": paths.certificate_key if paths else None,
        }

    # ------------------------------------------------------------------
    def _restore(self, previous: tuple[bytes, int] | None) -> None:
        if previous is None:
            self.config_path.unlink(missing_ok=True)
            return
        content, mode = previous
        self.config_path.write_bytes(content)
        self.config_path.chmod(mode)


__all__ = ["CertificatePaths", "NginxError", "NginxProvider", "NginxRenderResult"]
