"""Tests for certificate provisioning."""
from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path

import pytest

from wlzctl.cancellation import CancelToken, OperationCancelledError
from wlzctl.config import AppConfig
from wlzctl.envstore import EnvironmentStore, resolve_target
from wlzctl.providers.nginx import NginxProvider
from wlzctl.templates import TemplateEngine
from wlzctl.tls import (
    AcmeOrderFailedError,
    CertificateProvisioner,
    MissingContactError,
    Provenance,
    TLSError,
    describe_certificate,
    generate_self_signed,
)

from conftest import FakeCompose


@pytest.fixture
def nginx(app_config: AppConfig) -> NginxProvider:
    """Return the proxy configuration provider."""
    return NginxProvider(
        templates=TemplateEngine.with_overrides(None),
        config_path=app_config.tls.proxy_config,
        acme_webroot=app_config.tls.webroot,
    )


@pytest.fixture
def provisioner(
    app_config: AppConfig,
    env_store: EnvironmentStore,
    fake_compose: FakeCompose,
    nginx: NginxProvider,
) -> CertificateProvisioner:
    """Return a provisioner wired to the fake deployment."""
    return CertificateProvisioner(
        tls=app_config.tls,
        services=app_config.services,
        readiness=app_config.readiness,
        env=env_store,
        compose=fake_compose,
        nginx=nginx,
        transcript_dir=app_config.logs_dir,
    )


def test_generate_self_signed_modes(tmp_path: Path) -> None:
    """Keys are private, certificates world-readable, and valid for localhost."""
    key = tmp_path / "ssl" / "key.pem"
    cert = tmp_path / "ssl" / "cert.pem"
    now = datetime(2026, 1, 1, tzinfo=UTC)

    generate_self_signed(key, cert, days=30, now=now)

    assert oct(key.stat().st_mode & 0o777) == "0o600"
    assert oct(cert.stat().st_mode & 0o777) == "0o644"
    info = describe_certificate(cert)
    assert info.self_signed
    assert "CN=localhost" in info.subject
    assert info.not_valid_after == datetime(2026, 1, 31, tzinfo=UTC)


def test_describe_certificate_rejects_garbage(tmp_path: Path) -> None:
    """Unreadable certificates raise TLSError."""
    bogus = tmp_path / "cert.pem"
    bogus.write_text("not a certificate")

    with pytest.raises(TLSError):
        describe_certificate(bogus)


def test_loopback_provisions_self_signed(
    provisioner: CertificateProvisioner,
    env_store: EnvironmentStore,
    nginx: NginxProvider,
) -> None:
    """Loopback targets never contact an ACME authority."""
    bundle = provisioner.provision(resolve_target("127.0.0.1"))

    assert bundle.provenance is Provenance.SELF_SIGNED
    assert provisioner.key_path.exists()
    assert provisioner.cert_path.exists()
    assert nginx.read_certificate_paths() == provisioner.self_signed_paths()
    assert env_store.get("ENABLE_SSL") == "false"


def test_acme_requires_contact(provisioner: CertificateProvisioner) -> None:
    """No email on the command line or in .env is an error."""
    with pytest.raises(MissingContactError) as excinfo:
        provisioner.provision(resolve_target("tasks.example.com"))

    assert "LETSENCRYPT_EMAIL" in excinfo.value.hint


def test_acme_failure_leaves_proxy_config_untouched(
    provisioner: CertificateProvisioner,
    fake_compose: FakeCompose,
    nginx: NginxProvider,
    env_store: EnvironmentStore,
) -> None:
    """A failed order keeps the previous configuration byte for byte."""
    provisioner.provision_self_signed()
    before = nginx.config_path.read_bytes()
    fake_compose.certbot_rc = 1
    fake_compose.certbot_output = "Challenge failed for domain tasks.example.com"

    with pytest.raises(AcmeOrderFailedError) as excinfo:
        provisioner.provision_acme("tasks.example.com", "ops@example.com")

    assert nginx.config_path.read_bytes() == before
    assert env_store.get("ENABLE_SSL") == "false"
    assert "Challenge failed" in excinfo.value.transcript
    assert excinfo.value.transcript_path is not None
    assert excinfo.value.transcript_path.exists()
    assert fake_compose.called("restart") == []


def test_acme_success_switches_proxy(
    provisioner: CertificateProvisioner,
    fake_compose: FakeCompose,
    nginx: NginxProvider,
    env_store: EnvironmentStore,
) -> None:
    """A successful order rewrites the proxy config and restarts only nginx."""
    env_store.set("DOMAIN", "tasks.example.com")

    bundle = provisioner.provision(email="ops@example.com")

    assert bundle.provenance is Provenance.ACME
    assert nginx.read_certificate_paths() == provisioner.acme_paths("tasks.example.com")
    assert env_store.get("ENABLE_SSL") == "true"
    assert env_store.get("LETSENCRYPT_EMAIL") == "ops@example.com"
    assert fake_compose.called("start") == [(("nginx",), ())]
    assert fake_compose.called("restart") == [(("nginx",),)]
    certbot_args = fake_compose.called("run_service")[0][1]
    assert "--webroot-path=/var/www/certbot" in certbot_args
    assert certbot_args[-2:] == ("-d", "tasks.example.com")


def test_acme_rejected_proxy_config_is_rolled_back(
    provisioner: CertificateProvisioner,
    fake_compose: FakeCompose,
    nginx: NginxProvider,
    env_store: EnvironmentStore,
) -> None:
    """A configuration failing ``nginx -t`` is reverted and the proxy is not restarted."""
    provisioner.provision_self_signed()
    before = nginx.config_path.read_bytes()
    fake_compose.proxy_valid = False

    with pytest.raises(TLSError, match="previous configuration was kept"):
        provisioner.provision_acme("tasks.example.com", "ops@example.com")

    assert nginx.config_path.read_bytes() == before
    assert env_store.get("ENABLE_SSL") == "false"
    assert fake_compose.called("restart") == []
    assert ("nginx", ("nginx", "-t")) in fake_compose.called("exec")


def test_acme_bootstraps_missing_pair(
    provisioner: CertificateProvisioner, fake_compose: FakeCompose
) -> None:
    """The proxy gets a temporary self-signed pair before the first order."""
    fake_compose.certbot_rc = 1

    with pytest.raises(AcmeOrderFailedError):
        provisioner.provision_acme("tasks.example.com", "ops@example.com")

    assert provisioner.cert_path.exists()


def test_acme_cancelled_before_order(
    provisioner: CertificateProvisioner, fake_compose: FakeCompose
) -> None:
    """Cancellation stops before certbot runs."""
    token = CancelToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        provisioner.provision_acme("tasks.example.com", "ops@example.com", cancel=token)

    assert fake_compose.called("run_service") == []


def test_renew_on_loopback_is_an_error(provisioner: CertificateProvisioner) -> None:
    """Self-signed deployments have nothing to renew."""
    with pytest.raises(TLSError, match="self-signed"):
        provisioner.renew()


def test_renew_restarts_proxy(
    provisioner: CertificateProvisioner,
    fake_compose: FakeCompose,
    env_store: EnvironmentStore,
) -> None:
    """Renewal runs certbot renew and restarts the proxy."""
    env_store.set("DOMAIN", "tasks.example.com")

    bundle = provisioner.renew()

    assert bundle.domain == "tasks.example.com"
    assert fake_compose.called("run_service")[0][1] == ("renew",)
    assert fake_compose.called("restart") == [(("nginx",),)]


def _fail_replace_into(monkeypatch: pytest.MonkeyPatch, target: Path) -> None:
    real_replace = os.replace

    def replace(src: object, dst: object) -> None:
        if Path(str(dst)) == target:
            raise OSError("no space left on device")
        real_replace(src, dst)

    monkeypatch.setattr(os, "replace", replace)


def test_failed_certificate_write_keeps_previous_pair(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The key is put back when the certificate cannot be replaced."""
    ssl_dir = tmp_path / "ssl"
    key = ssl_dir / "key.pem"
    cert = ssl_dir / "cert.pem"
    generate_self_signed(key, cert, key_size=2048)
    old_key, old_cert = key.read_bytes(), cert.read_bytes()
    _fail_replace_into(monkeypatch, cert)

    with pytest.raises(TLSError, match="Cannot write certificate pair"):
        generate_self_signed(key, cert, key_size=2048)

    assert key.read_bytes() == old_key
    assert cert.read_bytes() == old_cert
    assert oct(key.stat().st_mode & 0o777) == "0o600"
    assert sorted(path.name for path in ssl_dir.iterdir()) == ["cert.pem", "key.pem"]


def test_failed_first_certificate_write_leaves_no_key(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Without a previous pair nothing is left behind."""
    ssl_dir = tmp_path / "ssl"
    _fail_replace_into(monkeypatch, ssl_dir / "cert.pem")

    with pytest.raises(TLSError):
        generate_self_signed(ssl_dir / "key.pem", ssl_dir / "cert.pem", key_size=2048)

    assert list(ssl_dir.iterdir()) == []
