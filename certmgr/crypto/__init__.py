"""Crypto provider interface shared by the crypto modules."""

import logging
import os
from abc import ABCMeta, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

from certmgr.crypto.dn import normalize_dn, common_name

crypto_logger = logging.getLogger("certmgr_module")

CERT_TYPES = ("standard", "rootCA", "intermediateCA", "acme")
CONVERTIBLE_FORMATS = ("pem", "der", "p12", "pfx", "p7b", "cer")
MAX_CHAIN_DEPTH = 10


def derive_cert_type(is_ca: bool, self_signed: bool, path_len_constraint: int | None) -> str:
    """rootCA is a self-signed CA without pathlen, any other CA is intermediateCA."""
    if not is_ca:
        return "standard"
    if self_signed and path_len_constraint is None:
        return "rootCA"
    return "intermediateCA"


@dataclass
class CertificateInfo:  # pylint: disable=too-many-instance-attributes
    """Everything the catalog needs from a parsed certificate file."""

    fingerprint: str
    subject: str
    issuer: str
    valid_from: datetime
    valid_to: datetime
    serial_number: str
    common_name: str = None
    issuer_cn: str = None
    subject_key_identifier: str = None
    authority_key_identifier: str = None
    signature_algorithm: str = None
    key_type: str = None
    key_size: int = None
    is_ca: bool = False
    path_len_constraint: int = None
    self_signed: bool = False
    is_root_ca: bool = False
    domains: list[str] = field(default_factory=list)
    ips: list[str] = field(default_factory=list)
    encoding: str = "PEM"

    @property
    def cert_type(self) -> str:
        return derive_cert_type(self.is_ca, self.self_signed, self.path_len_constraint)


@dataclass
class SigningCA:
    """Certificate and key of the CA that signs a new certificate."""

    cert_path: str
    key_path: str
    passphrase: str = None

    @property
    def serial_path(self) -> str:
        return f"{os.path.splitext(self.cert_path)[0]}.srl"


@dataclass
class CertificateRequest:  # pylint: disable=too-many-instance-attributes
    """Input of CryptoProvider.create_certificate."""

    cert_path: str
    key_path: str
    subject: str | dict = None
    name: str = None
    domains: list[str] = field(default_factory=list)
    ips: list[str] = field(default_factory=list)
    idle_domains: list[str] = field(default_factory=list)
    idle_ips: list[str] = field(default_factory=list)
    include_idle: bool = False
    days: int = 365
    key_type: str = "RSA"
    key_size: int = 2048
    is_ca: bool = False
    path_length_constraint: int = None
    passphrase: str = None
    signing_ca: SigningCA = None

    @property
    def san_domains(self) -> list[str]:
        domains = list(self.domains)
        if self.include_idle:
            domains += [domain for domain in self.idle_domains if domain not in domains]
        return domains

    @property
    def san_ips(self) -> list[str]:
        ips = list(self.ips)
        if self.include_idle:
            ips += [ip for ip in self.idle_ips if ip not in ips]
        return ips


@dataclass
class IssuedCertificate:
    """Temporary artifacts produced by create_certificate."""

    temp_dir: str
    temp_cert_path: str
    temp_key_path: str
    temp_csr_path: str = None
    temp_ext_path: str = None
    info: CertificateInfo = None


class CryptoProvider(metaclass=ABCMeta):
    """Base class for crypto modules."""

    configClass = None

    def __init__(self, config=None):
        self.config = config if config is not None else (self.configClass() if self.configClass else None)

    @abstractmethod
    def parse_certificate(self, path: str) -> CertificateInfo:
        """Parse a PEM or DER certificate file."""

    @abstractmethod
    def generate_private_key(self, path: str, bits: int = 2048, key_type: str = "RSA",
                             encrypt: bool = False, passphrase: str = None) -> None:
        """Generate a private key at path with owner-only permissions."""

    @abstractmethod
    def is_key_encrypted(self, path: str) -> bool:
        """Check whether a key file needs a passphrase. Inconclusive results count as encrypted."""

    @abstractmethod
    def create_certificate(self, request: CertificateRequest) -> IssuedCertificate:
        """Issue a certificate into a fresh temporary directory."""

    @abstractmethod
    def convert(self, cert_path: str, fmt: str, output_path: str = None, key_path: str = None,
                passphrase: str = None, chain_paths: list[str] = None) -> str:
        """Write cert_path re-encoded as fmt and return the output path."""

    @abstractmethod
    def verify_certificate_key_pair(self, cert_path: str, key_path: str, passphrase: str = None) -> bool:
        """Check that a key belongs to a certificate."""

    def find_parent(self, cert, candidates):
        """Resolve the issuing CA of cert among candidates.

        Order: AKI equals candidate SKI, then DN-normalized subject equals issuer,
        then CN of the issuer equals CN of the candidate subject. Self-signed
        certificates resolve to themselves.
        """
        if cert.self_signed:
            return cert

        cas = [
            candidate for candidate in candidates
            if candidate.is_ca and candidate.fingerprint != cert.fingerprint
        ]

        if cert.authority_key_identifier:
            for candidate in cas:
                if candidate.subject_key_identifier == cert.authority_key_identifier:
                    return candidate

        issuer = normalize_dn(cert.issuer)
        if issuer:
            for candidate in cas:
                if normalize_dn(candidate.subject) == issuer:
                    return candidate

        issuer_cn = common_name(cert.issuer)
        if issuer_cn:
            for candidate in cas:
                if common_name(candidate.subject) == issuer_cn:
                    return candidate

        return None

    def build_chain(self, cert, candidates) -> list:
        """Walk parents from cert up to a root."""
        chain = [cert]
        seen = {cert.fingerprint}
        current = cert
        while len(chain) <= MAX_CHAIN_DEPTH:
            if current.self_signed:
                break
            parent = self.find_parent(current, candidates)
            if parent is None or parent.fingerprint in seen:
                break
            chain.append(parent)
            seen.add(parent.fingerprint)
            current = parent
        return chain
