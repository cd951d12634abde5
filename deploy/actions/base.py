"""Deploy action base class and the per-deployment context."""
import os
import shutil
import tempfile
from abc import ABCMeta, abstractmethod
from datetime import datetime
from typing import ClassVar

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from certmgr.config import DeployConfig
from deploy.placeholders import placeholder_values, substitute, substitute_all
from lib.errors import Malformed, NotFound
from lib.util import utc_now

DEFAULT_TRANSPORT_TIMEOUT = 60
SOURCE_ALIASES = {"cert": "crt", "certificate": "crt", "crt": "crt", "key": "key", "privkey": "key",
                  "chain": "chain", "fullchain": "fullchain", "p12": "p12", "pfx": "pfx", "pem": "pem"}


def pem_bytes(path: str) -> bytes:
    """Certificate file content as PEM, converting DER."""
    with open(path, "rb") as cert_file:
        data = cert_file.read()
    if b"-----BEGIN" in data:
        return data
    return x509.load_der_x509_certificate(data).public_bytes(serialization.Encoding.PEM)


class DeployContext:
    """
    Everything an action needs to know about the certificate being deployed.

    Chain and fullchain files that do not exist next to the certificate are
    assembled from the catalog on first use into a temporary directory that
    lives until ``cleanup``.
    """

    def __init__(self, certificate, catalog=None, now: datetime = None):
        self.certificate = certificate
        self.catalog = catalog
        self.now = now or utc_now()
        self._temp_dir = None
        self.paths = dict(certificate.existing_paths())
        self.values = placeholder_values(certificate, self.paths, self.now)

    def substitute(self, template: str) -> str:
        return substitute(template, self.values)

    def substitute_all(self, value):
        return substitute_all(value, self.values)

    def _temp_path(self, name: str) -> str:
        if self._temp_dir is None:
            self._temp_dir = tempfile.mkdtemp(prefix="certmgr-deploy-")
        return os.path.join(self._temp_dir, name)

    def _chain_pem(self) -> bytes:
        if self.catalog is None:
            return b""
        return b"".join(
            pem_bytes(ca.cert_path)
            for ca in self.catalog.chain_certificates(self.certificate)
            if ca.cert_path and os.path.exists(ca.cert_path)
        )

    def _generated(self, key: str) -> str:
        if not self.paths.get("crt"):
            raise NotFound(f"Certificate {self.certificate.name} has no certificate file")

        if key == "pem":
            content = pem_bytes(self.paths["crt"])
        elif key == "chain":
            content = self._chain_pem()
            if not content:
                raise NotFound(f"No issuer chain known for {self.certificate.name}")
        else:
            content = pem_bytes(self.paths["crt"]) + self._chain_pem()

        path = self._temp_path(f"{self.certificate.base_name}-{key}.pem")
        with open(path, "wb") as generated:
            generated.write(content)
        self.paths[key] = path
        self.values = placeholder_values(self.certificate, self.paths, self.now)
        return path

    def resolve_source(self, source: str) -> str:
        """Path of a logical component (cert, key, chain, fullchain, p12, pem) or a literal path."""
        if not source:
            raise Malformed("Deploy action has no source")
        key = SOURCE_ALIASES.get(str(source).lower())
        if key is None:
            path = self.substitute(source)
            if not os.path.isfile(path):
                raise NotFound(f"Source file does not exist: {path}", path=path)
            return path

        if self.paths.get(key):
            return self.paths[key]
        if key in ("pem", "chain", "fullchain"):
            return self._generated(key)
        if key == "p12" and self.paths.get("pfx"):
            return self.paths["pfx"]
        raise NotFound(f"Certificate {self.certificate.name} has no {key} file")

    def read_source(self, source: str) -> bytes:
        with open(self.resolve_source(source), "rb") as source_file:
            return source_file.read()

    def certificate_summary(self) -> dict:
        certificate = self.certificate
        return {
            "name": certificate.name,
            "fingerprint": certificate.fingerprint,
            "subject": certificate.subject,
            "issuer": certificate.issuer,
            "validFrom": self.values["valid_from"],
            "validTo": self.values["valid_to"],
            "domains": list(certificate.domains),
            "ips": list(certificate.ips),
            "isExpired": certificate.is_expired,
            "daysUntilExpiry": certificate.days_until_expiry,
            "certType": certificate.cert_type,
        }

    def cleanup(self):
        if self._temp_dir:
            shutil.rmtree(self._temp_dir, ignore_errors=True)
            self._temp_dir = None


class DeployAction(metaclass=ABCMeta):
    """One step of a certificate's deploy action list."""

    type: ClassVar[str] = ""
    timeout_key: ClassVar[str] = None
    uses_network: ClassVar[bool] = True

    def __init__(self, spec: dict, config: DeployConfig):
        self.spec = spec
        self.config = config

    @property
    def name(self) -> str:
        return self.spec.get("name") or self.type

    @property
    def timeout(self) -> float | None:
        if self.spec.get("timeout") not in (None, ""):
            return float(self.spec["timeout"])
        if self.timeout_key is None:
            return None
        return getattr(self.config.timeouts, self.timeout_key)

    @property
    def transport_timeout(self) -> float:
        """Socket level timeout for blocking clients run in a worker thread."""
        return self.timeout or DEFAULT_TRANSPORT_TIMEOUT

    @property
    def verify(self) -> bool:
        if "verify" in self.spec:
            return bool(self.spec["verify"])
        return self.config.verify

    def require(self, *fields: str) -> None:
        missing = [field for field in fields if not self.spec.get(field)]
        if missing:
            raise Malformed(f"{self.type} action is missing {', '.join(missing)}")

    @abstractmethod
    async def execute(self, context: DeployContext) -> str:
        """Run the action. Returns a short message, raises on failure."""
