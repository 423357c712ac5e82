"""Certificate provisioning for the Worklenz reverse proxy.

Loopback deployments get a locally generated self-signed certificate; public
domains get a Let's Encrypt certificate issued through the ``certbot``
compose service using the ``http-01`` webroot challenge. Certificate files are
always replaced as a pair, and the proxy configuration is only rewritten once
issuance has succeeded.
"""
from __future__ import annotations

import ipaddress
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .cancellation import CancelToken, check_cancelled
from .config import ReadinessConfig, ServicesConfig, TLSConfig
from .envstore import DeploymentTarget, EnvironmentStore, Loopback
from .logging import OperationScope
from .providers.compose import Orchestrator
from .providers.nginx import CertificatePaths, NginxError, NginxProvider
from .readiness import wait_until

CERT_FILENAME = "cert.pem"
KEY_FILENAME = "key.pem"
ACME_PRECONDITIONS = (
    "DNS A record for the domain points to this server",
    "Ports 80 and 443 are reachable from the internet",
    "No firewall blocks HTTP/HTTPS traffic",
)


class TLSError(RuntimeError):
    """Base class for certificate provisioning failures."""

    hint: str = ""


class MissingContactError(TLSError):
    """Raised when no contact email is available for ACME issuance."""

    def __init__(self) -> None:
        """Explain how to supply the address."""
        super().__init__("A contact email is required for Let's Encrypt.")
        self.hint = "Set LETSENCRYPT_EMAIL in .env or pass --email."


class AcmeOrderFailedError(TLSError):
    """Raised when certbot does not obtain a certificate."""

    def __init__(self, domain: str, transcript: str, transcript_path: Path | None) -> None:
        """Keep the certbot transcript for the operator."""
        super().__init__(f"Failed to obtain a Let's Encrypt certificate for {domain}.")
        self.domain = domain
        self.transcript = transcript
        self.transcript_path = transcript_path
        where = f" (transcript: {transcript_path})" if transcript_path else ""
        self.hint = (
            f"Check DNS with `dig {domain}` and that port 80/443 reach this server{where}."
        )


class Provenance(Enum):
    """Where a certificate bundle came from."""

    SELF_SIGNED = "self-signed"
    ACME = "acme"


@dataclass(frozen=True, slots=True)
class CertificateBundle:
    """A provisioned key/certificate pair."""

    provenance: Provenance
    paths: CertificatePaths
    domain: str
    issued_at: datetime


@dataclass(frozen=True, slots=True)
class CertificateInfo:
    """Human-relevant fields of an X.509 certificate."""

    path: Path
    subject: str
    issuer: str
    not_valid_before: datetime
    not_valid_after: datetime
    self_signed: bool

    @property
    def days_remaining(self) -> int:
        """Return whole days until expiry (negative once expired)."""
        return (self.not_valid_after - datetime.now(tz=UTC)).days


def _stage(path: Path, data: bytes, mode: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        os.fchmod(tmp_fd, mode)
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(data)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    return tmp_path


def _replace_pair(key_path: Path, key_data: bytes, cert_path: Path, cert_data: bytes) -> None:
    """Swap in a new key and certificate together.

    Both files are staged first. If the certificate cannot be moved into place
    the previous key is put back, so the pair on disk always matches.
    """
    staged: list[Path] = []
    previous_key = key_path.with_name(f".{key_path.name}.previous")
    try:
        staged.append(_stage(key_path, key_data, 0o600))
        staged.append(_stage(cert_path, cert_data, 0o644))
        had_key = key_path.exists()
        if had_key:
            shutil.copy2(key_path, previous_key)
        os.replace(staged[0], key_path)
        try:
            os.replace(staged[1], cert_path)
        except OSError:
            if had_key:
                os.replace(previous_key, key_path)
            else:
                key_path.unlink(missing_ok=True)
            raise
    except OSError as exc:
        raise TLSError(f"Cannot write certificate pair to {cert_path.parent}: {exc}") from exc
    finally:
        for path in staged:
            path.unlink(missing_ok=True)
        previous_key.unlink(missing_ok=True)


def generate_self_signed(
    key_path: Path,
    cert_path: Path,
    *,
    common_name: str = "localhost",
    days: int = 365,
    key_size: int = 2048,
    now: datetime | None = None,
) -> datetime:
    """Write a self-signed key pair; return the issue timestamp.

    The key is written with mode 0600 and the certificate with 0644.
    """
    issued = now or datetime.now(tz=UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
            x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, "State"),
            x509.NameAttribute(NameOID.LOCALITY_NAME, "City"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Worklenz"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )
    alt_names: list[x509.GeneralName] = [x509.DNSName(common_name)]
    if common_name == "localhost":
        alt_names.append(x509.IPAddress(ipaddress.ip_address("127.0.0.1")))
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(issued - timedelta(minutes=1))
        .not_valid_after(issued + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    _replace_pair(
        key_path,
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
        cert_path,
        certificate.public_bytes(serialization.Encoding.PEM),
    )
    return issued


def describe_certificate(path: Path) -> CertificateInfo:
    """Load the PEM certificate at *path* and summarise it."""
    try:
        certificate = x509.load_pem_x509_certificate(path.read_bytes())
    except (OSError, ValueError) as exc:
        raise TLSError(f"Cannot read certificate {path}: {exc}") from exc
    return CertificateInfo(
        path=path,
        subject=certificate.subject.rfc4514_string(),
        issuer=certificate.issuer.rfc4514_string(),
        not_valid_before=certificate.not_valid_before_utc,
        not_valid_after=certificate.not_valid_after_utc,
        self_signed=certificate.issuer == certificate.subject,
    )


class CertificateProvisioner:
    """Choose and run the certificate strategy for the deployment target."""

    def __init__(
        self,
        *,
        tls: TLSConfig,
        services: ServicesConfig,
        readiness: ReadinessConfig,
        env: EnvironmentStore,
        compose: Orchestrator,
        nginx: NginxProvider,
        transcript_dir: Path,
    ) -> None:
        """Wire the provisioner to its collaborators."""
        self._tls = tls
        self._services = services
        self._readiness = readiness
        self._env = env
        self._compose = compose
        self._nginx = nginx
        self._transcript_dir = transcript_dir

    @property
    def key_path(self) -> Path:
        """Host path of the self-signed key."""
        return self._tls.ssl_dir / KEY_FILENAME

    @property
    def cert_path(self) -> Path:
        """Host path of the self-signed certificate."""
        return self._tls.ssl_dir / CERT_FILENAME

    def self_signed_paths(self) -> CertificatePaths:
        """Return the self-signed pair as mounted in the proxy container."""
        base = self._tls.container_ssl_dir.rstrip("/")
        return CertificatePaths(
            certificate=f"{base}/{CERT_FILENAME}",
            certificate_key=f"{base}/{KEY_FILENAME}",
        )

    def acme_paths(self, domain: str) -> CertificatePaths:
        """Return the Let's Encrypt pair for *domain* inside the proxy container."""
        base = f"{self._tls.lets_encrypt_live.rstrip('/')}/{domain}"
        return CertificatePaths(
            certificate=f"{base}/fullchain.pem",
            certificate_key=f"{base}/privkey.pem",
        )

    # State machine ---------------------------------------------------
    def provision(
        self,
        target: DeploymentTarget | None = None,
        *,
        email: str | None = None,
        op: OperationScope | None = None,
        cancel: CancelToken | None = None,
    ) -> CertificateBundle:
        """Provision the certificate appropriate for *target*."""
        resolved = target or self._env.target()
        if isinstance(resolved, Loopback):
            return self.provision_self_signed(op=op, cancel=cancel)
        return self.provision_acme(resolved.name, email, op=op, cancel=cancel)

    def provision_self_signed(
        self,
        *,
        op: OperationScope | None = None,
        cancel: CancelToken | None = None,
    ) -> CertificateBundle:
        """Generate a self-signed pair and point the proxy at it."""
        check_cancelled(cancel, "ssl self-signed", "tls.self_signed.generate")
        issued = generate_self_signed(
            self.key_path,
            self.cert_path,
            common_name="localhost",
            days=self._tls.self_signed_days,
            key_size=self._tls.key_size,
        )
        if op:
            op.add_step("tls.self_signed.generate", detail=str(self.cert_path))

        check_cancelled(cancel, "ssl self-signed", "tls.proxy_config.render")
        paths = self.self_signed_paths()
        result = self._nginx.apply_certificate(self._env.target().name, paths)
        if op:
            op.add_step(
                "tls.proxy_config.render",
                status="success" if result.changed else "skipped",
                detail=str(self._nginx.config_path),
            )

        self._env.set("ENABLE_SSL", "false")
        if op:
            op.add_step("tls.env.enable_ssl", detail="false")
        return CertificateBundle(
            provenance=Provenance.SELF_SIGNED,
            paths=paths,
            domain="localhost",
            issued_at=issued,
        )

    def provision_acme(
        self,
        domain: str,
        email: str | None = None,
        *,
        op: OperationScope | None = None,
        cancel: CancelToken | None = None,
    ) -> CertificateBundle:
        """Obtain a Let's Encrypt certificate for *domain*.

        The proxy configuration is rewritten only after certbot succeeds;
        on failure it is left exactly as it was.
        """
        contact = (email or self._env.get("LETSENCRYPT_EMAIL") or "").strip()
        if not contact:
            raise MissingContactError()
        if email and email.strip() != (self._env.get("LETSENCRYPT_EMAIL") or ""):
            self._env.set("LETSENCRYPT_EMAIL", contact)

        check_cancelled(cancel, "ssl letsencrypt", "tls.acme.bootstrap")
        self._ensure_bootstrap(op)

        check_cancelled(cancel, "ssl letsencrypt", "tls.acme.proxy_start")
        proxy = self._services.proxy
        self._compose.start([proxy])
        wait_until(proxy, self._proxy_probe, self._readiness)
        if op:
            op.add_step("tls.acme.proxy_start", detail=proxy)

        check_cancelled(cancel, "ssl letsencrypt", "tls.acme.order")
        result = self._compose.run_service(
            self._services.certbot,
            [
                "certonly",
                "--webroot",
                f"--webroot-path={self._tls.webroot}",
                "--email",
                contact,
                "--agree-tos",
                "--no-eff-email",
                "-d",
                domain,
            ],
            check=False,
        )
        transcript = "\n".join(part for part in (result.stdout, result.stderr) if part)
        transcript_path = self._save_transcript("certonly", transcript)
        if result.returncode != 0:
            if op:
                op.add_step("tls.acme.order", status="error", detail=f"exit {result.returncode}")
            raise AcmeOrderFailedError(domain, transcript, transcript_path)
        issued = datetime.now(tz=UTC)
        if op:
            op.add_step("tls.acme.order", detail=domain)

        paths = self.acme_paths(domain)
        render = self._nginx.apply_certificate(domain, paths, validate=self._validate_proxy)
        if render.validation_error:
            if op:
                op.add_step(
                    "tls.proxy_config.render", status="error", detail=render.validation_error
                )
            raise TLSError(
                f"nginx rejected the configuration for {domain}: {render.validation_error}. "
                "The previous configuration was kept."
            )
        if op:
            op.add_step(
                "tls.proxy_config.render",
                detail=f"backup={render.backup}" if render.backup else None,
            )
        self._env.set("ENABLE_SSL", "true")
        self._compose.restart([proxy])
        if op:
            op.add_step("tls.acme.proxy_restart", detail=proxy)
        return CertificateBundle(
            provenance=Provenance.ACME,
            paths=paths,
            domain=domain,
            issued_at=issued,
        )

    def renew(self, *, op: OperationScope | None = None) -> CertificateBundle:
        """Renew the Let's Encrypt certificate and restart only the proxy."""
        target = self._env.target()
        if isinstance(target, Loopback):
            raise TLSError(
                "Loopback deployments use a self-signed certificate; "
                "run `wlzctl ssl self-signed` to regenerate it."
            )
        result = self._compose.run_service(self._services.certbot, ["renew"], check=False)
        transcript = "\n".join(part for part in (result.stdout, result.stderr) if part)
        transcript_path = self._save_transcript("renew", transcript)
        if result.returncode != 0:
            if op:
                op.add_step("tls.renew.order", status="error", detail=f"exit {result.returncode}")
            raise AcmeOrderFailedError(target.name, transcript, transcript_path)
        if op:
            op.add_step("tls.renew.order", detail=target.name)
        self._compose.restart([self._services.proxy])
        if op:
            op.add_step("tls.renew.proxy_restart", detail=self._services.proxy)
        return CertificateBundle(
            provenance=Provenance.ACME,
            paths=self.acme_paths(target.name),
            domain=target.name,
            issued_at=datetime.now(tz=UTC),
        )

    # ------------------------------------------------------------------
    def _ensure_bootstrap(self, op: OperationScope | None) -> None:
        """Give the proxy something to start with before the first order."""
        if not (self.key_path.exists() and self.cert_path.exists()):
            generate_self_signed(
                self.key_path,
                self.cert_path,
                days=self._tls.self_signed_days,
                key_size=self._tls.key_size,
            )
            if op:
                op.add_step("tls.acme.bootstrap_certificate", detail=str(self.cert_path))
        if not self._nginx.config_path.exists():
            self._nginx.apply_certificate(self._env.target().name, self.self_signed_paths())
            if op:
                op.add_step("tls.acme.bootstrap_config", detail=str(self._nginx.config_path))

    def _proxy_probe(self) -> bool:
        result = self._compose.exec(self._services.proxy, ["nginx", "-t"], check=False)
        return result.returncode == 0

    def _validate_proxy(self) -> None:
        result = self._compose.exec(self._services.proxy, ["nginx", "-t"], check=False)
        if result.returncode != 0:
            raise NginxError((result.stderr or result.stdout or "nginx -t failed").strip())

    def _save_transcript(self, label: str, transcript: str) -> Path | None:
        stamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        path = self._transcript_dir / f"certbot-{label}-{stamp}.log"
        try:
            self._transcript_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(transcript + "\n", encoding="utf-8")
        except OSError:
            return None
        return path


__all__ = [
    "ACME_PRECONDITIONS",
    "AcmeOrderFailedError",
    "CertificateBundle",
    "CertificateInfo",
    "CertificateProvisioner",
    "MissingContactError",
    "Provenance",
    "TLSError",
    "describe_certificate",
    "generate_self_signed",
]
