import os
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from certmgr.catalog import CertificateCatalog
from certmgr.config import CertManagerConfig, CryptoConfig, RenewalConfig
from deploy.orchestrator import DeployOrchestrator
from lib.data.vault import PassphraseVault
from modules.pyca.pyca import PycaProvider


class IssuedFiles:
    """Paths and objects of a certificate written by the make_cert fixture."""

    def __init__(self, cert, key, cert_path, key_path):
        self.cert = cert
        self.key = key
        self.cert_path = cert_path
        self.key_path = key_path

    @property
    def fingerprint(self) -> str:
        return self.cert.fingerprint(hashes.SHA256()).hex().upper()


def build_certificate(common_name, key, *, is_ca=False, path_len=None, issuer=None, domains=(), days=365):
    now = datetime.now(timezone.utc)
    subject = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example Org"),
    ])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=400))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
    )
    if is_ca:
        builder = builder.add_extension(x509.BasicConstraints(ca=True, path_length=path_len), critical=True)
    if domains:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains]), critical=False
        )

    if issuer is None:
        builder = builder.issuer_name(subject).add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(key.public_key()), critical=False
        )
        signing_key = key
    else:
        builder = builder.issuer_name(issuer.cert.subject).add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer.key.public_key()), critical=False
        )
        signing_key = issuer.key
    return builder.sign(signing_key, hashes.SHA256())


@pytest.fixture
def make_cert(tmp_path):
    """Factory writing <certs>/<name>/<name>.crt and .key."""
    default_root = tmp_path / "certs"

    def factory(name, *, is_ca=False, path_len=None, issuer=None, domains=(), days=365,
                passphrase=None, root=None, der=False):
        directory = os.path.join(str(root or default_root), name)
        os.makedirs(directory, exist_ok=True)
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        cert = build_certificate(name, key, is_ca=is_ca, path_len=path_len, issuer=issuer,
                                 domains=domains, days=days)

        cert_path = os.path.join(directory, f"{name}.crt")
        key_path = os.path.join(directory, f"{name}.key")
        encoding = serialization.Encoding.DER if der else serialization.Encoding.PEM
        with open(cert_path, "wb") as cert_file:
            cert_file.write(cert.public_bytes(encoding))
        encryption = (
            serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
            if passphrase else serialization.NoEncryption()
        )
        with open(key_path, "wb") as key_file:
            key_file.write(key.private_bytes(
                serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption
            ))
        os.chmod(key_path, 0o600)
        return IssuedFiles(cert, key, cert_path, key_path)

    return factory


@pytest.fixture
def config(tmp_path):
    return CertManagerConfig(
        certs_dir=str(tmp_path / "certs"),
        config_dir=str(tmp_path / "config"),
        crypto=CryptoConfig(ca_key_size=2048),
        renewal=RenewalConfig(startup_delay=0, watcher_stability_ms=50, ignore_window_ms=1000),
    )


@pytest.fixture
def crypto():
    return PycaProvider()


@pytest.fixture
def vault(config):
    return PassphraseVault(config.config_dir)


@pytest.fixture
def catalog(config, crypto, vault):
    return CertificateCatalog(config, crypto, vault, deployer=DeployOrchestrator(config.deploy))
