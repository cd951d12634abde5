"""Certificate catalog entry."""
import copy
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Self

from certmgr.crypto import CertificateInfo, CERT_TYPES, derive_cert_type
from lib.errors import Conflict, Malformed, NotFound
from lib.util import (
    days_until,
    is_valid_ip,
    iso_timestamp,
    normalize_fingerprint,
    parse_datetime,
    sanitize_name,
    utc_now,
)

PATH_KEYS = ("crt", "key", "csr", "pem", "p12", "pfx", "der", "cer", "p7b", "chain", "fullchain", "ext")
PATH_SUFFIXES = {
    "crt": ".crt",
    "cer": ".cer",
    "pem": ".pem",
    "p12": ".p12",
    "pfx": ".pfx",
    "key": ".key",
    "csr": ".csr",
    "ext": ".ext",
    "chain": "-chain.pem",
    "fullchain": "-fullchain.pem",
    "p7b": ".p7b",
    "der": ".der",
}
LEGACY_PATH_KEYS = {
    "cert": "crt",
    "certPath": "crt",
    "crtPath": "crt",
    "keyPath": "key",
    "csrPath": "csr",
    "pemPath": "pem",
    "p12Path": "p12",
    "pfxPath": "pfx",
    "derPath": "der",
    "cerPath": "cer",
    "p7bPath": "p7b",
    "chainPath": "chain",
    "fullchainPath": "fullchain",
    "extPath": "ext",
}
POLICY_KEYS = ("autoRenew", "renewDaysBeforeExpiry", "signWithCA", "caFingerprint", "caName", "deployActions")
DEFAULT_RENEW_DAYS = 30
DOMAIN_PATTERN = re.compile(r'^(\*\.)?[a-z0-9_]([a-z0-9_\-]*[a-z0-9])?(\.[a-z0-9_]([a-z0-9_\-]*[a-z0-9])?)*$')

KNOWN_KEYS = {
    "name", "fingerprint", "description", "subject", "issuer", "validFrom", "validTo", "serialNumber",
    "sigAlg", "signatureAlgorithm", "keyType", "keySize", "subjectKeyIdentifier", "authorityKeyIdentifier",
    "certType", "isCA", "pathLenConstraint", "selfSigned", "domains", "ips", "idleDomains", "idleIps",
    "sans", "san", "metadata", "paths", "config", "previousVersions", "modificationTime", "acme-settings",
    "acmeSettings", "needsPassphrase", "hasPassphrase", "passphraseChecked",
} | set(POLICY_KEYS)


def normalize_domain(domain: str) -> str:
    return str(domain).strip().lower()


def _unique(values) -> list[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


@dataclass
class CertificatePolicy:
    """Renewal and deployment settings stored under ``config``."""

    auto_renew: bool = False
    renew_days_before_expiry: int = DEFAULT_RENEW_DAYS
    sign_with_ca: bool = False
    ca_fingerprint: str = None
    ca_name: str = None
    deploy_actions: list[dict] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    def to_json(self) -> dict:
        return {
            **self.extra,
            "autoRenew": self.auto_renew,
            "renewDaysBeforeExpiry": self.renew_days_before_expiry,
            "signWithCA": self.sign_with_ca,
            "caFingerprint": self.ca_fingerprint,
            "caName": self.ca_name,
            "deployActions": copy.deepcopy(self.deploy_actions),
        }

    @classmethod
    def from_json(cls, data: dict) -> Self:
        data = dict(data or {})
        renew_days = data.pop("renewDaysBeforeExpiry", None)
        policy = cls(
            auto_renew=bool(data.pop("autoRenew", False)),
            renew_days_before_expiry=int(renew_days) if renew_days not in (None, "") else DEFAULT_RENEW_DAYS,
            sign_with_ca=bool(data.pop("signWithCA", False)),
            ca_fingerprint=normalize_fingerprint(data.pop("caFingerprint", None)) or None,
            ca_name=data.pop("caName", None),
            deploy_actions=list(data.pop("deployActions", None) or []),
        )
        policy.extra = data
        return policy

    def update(self, patch: dict) -> None:
        """Merge a camelCase patch into the policy."""
        merged = self.to_json()
        merged.update(patch or {})
        updated = CertificatePolicy.from_json(merged)
        self.__dict__.update(updated.__dict__)


@dataclass
class Certificate:  # pylint: disable=too-many-instance-attributes,too-many-public-methods
    """A certificate known to the catalog, keyed by fingerprint."""

    fingerprint: str
    name: str = None
    description: str = None

    subject: str = None
    issuer: str = None
    valid_from: datetime = None
    valid_to: datetime = None
    serial_number: str = None
    signature_algorithm: str = None
    key_type: str = None
    key_size: int = None
    subject_key_identifier: str = None
    authority_key_identifier: str = None

    cert_type: str = "standard"
    is_ca: bool = False
    path_len_constraint: int = None
    self_signed: bool = False

    domains: list[str] = field(default_factory=list)
    ips: list[str] = field(default_factory=list)
    idle_domains: list[str] = field(default_factory=list)
    idle_ips: list[str] = field(default_factory=list)

    paths: dict[str, str] = field(default_factory=dict)

    has_passphrase: bool = False
    needs_passphrase: bool = False
    passphrase_checked: bool = False

    config: CertificatePolicy = field(default_factory=CertificatePolicy)
    previous_versions: dict[str, dict] = field(default_factory=dict)
    modification_time: int = None
    acme_settings: Any = None
    extra: dict = field(default_factory=dict)

    def __post_init__(self):
        self.fingerprint = normalize_fingerprint(self.fingerprint)
        self._normalize_sans()

    def _normalize_sans(self):
        self.domains = _unique(normalize_domain(domain) for domain in self.domains)
        self.ips = _unique(str(ip).strip() for ip in self.ips)
        self.idle_domains = [
            domain for domain in _unique(normalize_domain(domain) for domain in self.idle_domains)
            if domain not in self.domains
        ]
        self.idle_ips = [
            ip for ip in _unique(str(ip).strip() for ip in self.idle_ips)
            if ip not in self.ips
        ]

    def copy(self) -> Self:
        return copy.deepcopy(self)

    @property
    def is_root_ca(self) -> bool:
        return self.is_ca and self.self_signed and self.path_len_constraint is None

    @property
    def days_until_expiry(self) -> int:
        return days_until(self.valid_to)

    @property
    def is_expired(self) -> bool:
        return self.valid_to is not None and self.valid_to <= utc_now()

    def is_expiring_soon(self, days: int = 30) -> bool:
        return (
            self.valid_to is not None
            and not self.is_expired
            and self.valid_to <= utc_now() + timedelta(days=days)
        )

    @property
    def needs_renewal(self) -> bool:
        return bool(self.idle_domains or self.idle_ips)

    @property
    def cert_path(self) -> str:
        return self.paths.get("crt")

    @property
    def key_path(self) -> str:
        return self.paths.get("key")

    @property
    def base_name(self) -> str:
        if self.cert_path:
            return os.path.splitext(os.path.basename(self.cert_path))[0]
        return sanitize_name(self.name)

    @property
    def cert_dir(self) -> str | None:
        return os.path.dirname(self.cert_path) if self.cert_path else None

    def apply_info(self, info: CertificateInfo) -> None:
        """Overwrite X.509 derived fields with what was parsed from disk."""
        self.fingerprint = info.fingerprint
        self.subject = info.subject
        self.issuer = info.issuer
        self.valid_from = info.valid_from
        self.valid_to = info.valid_to
        self.serial_number = info.serial_number
        self.signature_algorithm = info.signature_algorithm
        self.key_type = info.key_type
        self.key_size = info.key_size
        self.subject_key_identifier = info.subject_key_identifier
        self.authority_key_identifier = info.authority_key_identifier
        self.is_ca = info.is_ca
        self.path_len_constraint = info.path_len_constraint
        self.self_signed = info.self_signed
        if not (self.cert_type == "acme" and not info.is_ca):
            self.cert_type = info.cert_type
        self.domains = list(info.domains)
        self.ips = list(info.ips)
        if not self.name:
            self.name = info.common_name or self.base_name
        self._normalize_sans()

    def refresh_cert_type(self):
        if self.cert_type == "acme" and not self.is_ca:
            return
        self.cert_type = derive_cert_type(self.is_ca, self.self_signed, self.path_len_constraint)

    def touch(self):
        self.modification_time = int(utc_now().timestamp() * 1000)

    def add_domain(self, domain: str, idle: bool = True) -> None:
        domain = normalize_domain(domain)
        if not domain or not DOMAIN_PATTERN.match(domain):
            raise Malformed(f"Invalid domain name: '{domain}'")
        if domain in self.domains or domain in self.idle_domains:
            raise Conflict(f"Domain {domain} already exists on {self.name}")
        (self.idle_domains if idle else self.domains).append(domain)

    def remove_domain(self, domain: str, idle: bool = False) -> None:
        domain = normalize_domain(domain)
        target = self.idle_domains if idle else self.domains
        if domain not in target:
            raise NotFound(f"Domain {domain} not found on {self.name}")
        target.remove(domain)

    def add_ip(self, ip: str, idle: bool = True) -> None:
        ip = str(ip).strip()
        if not is_valid_ip(ip):
            raise Malformed(f"Invalid IP address: '{ip}'")
        if ip in self.ips or ip in self.idle_ips:
            raise Conflict(f"IP {ip} already exists on {self.name}")
        (self.idle_ips if idle else self.ips).append(ip)

    def remove_ip(self, ip: str, idle: bool = False) -> None:
        ip = str(ip).strip()
        target = self.idle_ips if idle else self.ips
        if ip not in target:
            raise NotFound(f"IP {ip} not found on {self.name}")
        target.remove(ip)

    def apply_idle(self) -> None:
        """Promote idle SANs to active."""
        self.domains = _unique(self.domains + self.idle_domains)
        self.ips = _unique(self.ips + self.idle_ips)
        self.idle_domains = []
        self.idle_ips = []

    def carry_policy(self, current: 'Certificate') -> None:
        """Take the user managed fields of current. Idle SANs this certificate already carries are dropped."""
        self.name = current.name
        self.description = current.description
        self.acme_settings = copy.deepcopy(current.acme_settings)
        self.config = copy.deepcopy(current.config)
        self.extra = copy.deepcopy(current.extra)
        self.has_passphrase = current.has_passphrase
        self.idle_domains = [domain for domain in current.idle_domains if domain not in self.domains]
        self.idle_ips = [ip for ip in current.idle_ips if ip not in self.ips]

    def version_record(self, version: int) -> dict:
        return {
            "archivedAt": iso_timestamp(),
            "version": version,
            "name": self.name,
            "fingerprint": self.fingerprint,
            "paths": dict(self.paths),
            "validFrom": iso_timestamp(self.valid_from) if self.valid_from else None,
            "validTo": iso_timestamp(self.valid_to) if self.valid_to else None,
            "certType": self.cert_type,
            "domains": list(self.domains),
            "ips": list(self.ips),
        }

    def archive(self, previous: 'Certificate') -> dict:
        """Record previous as an older version of this entry with the next version number."""
        self.previous_versions = {**previous.previous_versions, **self.previous_versions}
        next_version = max(
            (int(record.get("version", 0)) for record in self.previous_versions.values()),
            default=0
        ) + 1
        record = previous.version_record(next_version)
        self.previous_versions[previous.fingerprint] = record
        return record

    def existing_paths(self) -> dict[str, str]:
        return {key: path for key, path in self.paths.items() if path and os.path.exists(path)}

    def prune_paths(self) -> bool:
        """Drop path keys whose files are gone. Returns True if anything changed."""
        existing = self.existing_paths()
        changed = existing != self.paths
        self.paths = existing
        return changed

    @staticmethod
    def potential_paths(directory: str, base_name: str) -> dict[str, str]:
        return {key: os.path.join(directory, f"{base_name}{suffix}") for key, suffix in PATH_SUFFIXES.items()}

    @classmethod
    def new(cls, certs_dir: str, name: str, **kwargs) -> Self:
        """Entry for a certificate that does not exist on disk yet."""
        sanitized = sanitize_name(name)
        directory = os.path.join(certs_dir, sanitized)
        potential = cls.potential_paths(directory, sanitized)
        cert = cls(fingerprint="", name=name, **kwargs)
        cert.paths = {key: potential[key] for key in ("crt", "key", "csr", "ext")}
        return cert

    def to_json(self) -> dict:
        data = {
            **copy.deepcopy(self.extra),
            "name": self.name,
            "fingerprint": self.fingerprint,
            "description": self.description,
            "subject": self.subject,
            "issuer": self.issuer,
            "validFrom": iso_timestamp(self.valid_from) if self.valid_from else None,
            "validTo": iso_timestamp(self.valid_to) if self.valid_to else None,
            "serialNumber": self.serial_number,
            "certType": self.cert_type,
            "keyType": self.key_type,
            "keySize": self.key_size,
            "sigAlg": self.signature_algorithm,
            "subjectKeyIdentifier": self.subject_key_identifier,
            "authorityKeyIdentifier": self.authority_key_identifier,
            "pathLenConstraint": self.path_len_constraint,
            "paths": dict(self.paths),
            "domains": list(self.domains),
            "ips": list(self.ips),
            "idleDomains": list(self.idle_domains),
            "idleIps": list(self.idle_ips),
            "needsPassphrase": self.needs_passphrase,
            "config": self.config.to_json(),
            "previousVersions": copy.deepcopy(self.previous_versions),
            "modificationTime": self.modification_time,
        }
        if self.acme_settings is not None:
            data["acme-settings"] = copy.deepcopy(self.acme_settings)
        return data

    @classmethod
    def from_json(cls, data: dict, fingerprint: str = None) -> Self:
        """Build an entry from its persisted form, migrating legacy keys."""
        paths = {}
        for key, path in (data.get("paths") or {}).items():
            canonical = LEGACY_PATH_KEYS.get(key, key)
            if canonical not in PATH_KEYS or not path:
                continue
            # canonical keys win over their legacy aliases
            if key == canonical or canonical not in paths:
                paths[canonical] = path

        policy_data = dict(data.get("config") or {})
        for key in POLICY_KEYS:
            if key in data and key not in policy_data:
                policy_data[key] = data[key]

        domains = list(data.get("domains") or [])
        for container in ("sans", "san", "metadata"):
            nested = data.get(container)
            if isinstance(nested, dict):
                domains += nested.get("domains") or []
        name = data.get("name")
        if not domains and name and "." in name and " " not in name:
            domains.append(name)

        ips = list(data.get("ips") or [])
        sans = data.get("sans")
        if isinstance(sans, dict):
            ips += sans.get("ips") or []

        cert_type = data.get("certType") or "standard"
        if cert_type not in CERT_TYPES:
            cert_type = "standard"

        cert = cls(
            fingerprint=fingerprint or data.get("fingerprint") or "",
            name=name,
            description=data.get("description"),
            subject=data.get("subject"),
            issuer=data.get("issuer"),
            valid_from=parse_datetime(data.get("validFrom")),
            valid_to=parse_datetime(data.get("validTo")),
            serial_number=data.get("serialNumber"),
            signature_algorithm=data.get("sigAlg") or data.get("signatureAlgorithm"),
            key_type=data.get("keyType"),
            key_size=data.get("keySize"),
            subject_key_identifier=data.get("subjectKeyIdentifier"),
            authority_key_identifier=data.get("authorityKeyIdentifier"),
            cert_type=cert_type,
            is_ca=cert_type in ("rootCA", "intermediateCA"),
            path_len_constraint=data.get("pathLenConstraint"),
            domains=domains,
            ips=ips,
            idle_domains=list(data.get("idleDomains") or []),
            idle_ips=list(data.get("idleIps") or []),
            paths=paths,
            needs_passphrase=bool(data.get("needsPassphrase", False)),
            config=CertificatePolicy.from_json(policy_data),
            previous_versions=copy.deepcopy(data.get("previousVersions") or {}),
            modification_time=data.get("modificationTime"),
            acme_settings=copy.deepcopy(data.get("acme-settings", data.get("acmeSettings"))),
            extra={key: copy.deepcopy(value) for key, value in data.items() if key not in KNOWN_KEYS},
        )
        return cert

    def to_api_response(self, ca_name: str = None, ca_passphrase: dict = None) -> dict:
        response = self.to_json()
        response.update({
            "isCA": self.is_ca,
            "isRootCA": self.is_root_ca,
            "selfSigned": self.self_signed,
            "hasPassphrase": self.has_passphrase,
            "isExpired": self.is_expired,
            "isExpiringSoon": self.is_expiring_soon(),
            "daysUntilExpiry": self.days_until_expiry,
            "needsRenewal": self.needs_renewal,
            "caName": ca_name or self.config.ca_name,
            "sans": {
                "domains": list(self.domains),
                "ips": list(self.ips),
                "idleDomains": list(self.idle_domains),
                "idleIps": list(self.idle_ips),
            },
        })
        if ca_passphrase is not None:
            response["signingCA"] = ca_passphrase
        return response
