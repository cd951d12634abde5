"""
Configuration module for the certificate manager.

Settings are read from the ``cert_manager`` section of
``$CONFIG_DIR/cert_manager.yaml``. Every section has defaults, so an empty
file yields a working service that keeps certificates in ``$CERTS_DIR``.
"""
import logging
import os
from dataclasses import field
from typing import ClassVar, Any

from croniter import croniter
from pydantic import field_validator
from pydantic.dataclasses import dataclass

from lib.config import BaseServiceConfig, CONFIG_DIR, SmtpConfig

certmgr_logger = logging.getLogger("certmgr")


@dataclass
class CryptoConfig:
    """Selects the crypto module and the issuing defaults."""
    module: str = "pyca"
    options: dict[str, Any] = field(default_factory=dict)
    default_days: int = 365
    ca_days: int = 3650
    default_key_size: int = 2048
    ca_key_size: int = 4096

    @field_validator("default_days", "ca_days")
    @classmethod
    def days_must_be_positive(cls, v: int):
        if v < 1:
            raise ValueError(f"Validity must be at least one day, got {v}")
        return v

    @field_validator("default_key_size", "ca_key_size")
    @classmethod
    def validate_rsa_bits(cls, v: int):
        """Validate RSA key size."""
        if not 2048 <= v <= 8192:
            raise ValueError(f"RSA key size must be between 2048 and 8192 bits, got {v}")
        return v


@dataclass
class RenewalConfig:
    """Scheduled renewal and directory watching."""
    enabled: bool = True
    schedule: str = "0 0 * * *"
    check_on_start: bool = True
    startup_delay: float = 5
    enable_watcher: bool = True
    watcher_stability_ms: int = 2000
    ignore_window_ms: int = 5000
    deploy_after_renewal: bool = True

    @field_validator("schedule")
    @classmethod
    def schedule_must_be_cron(cls, v: str):
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: '{v}'")
        return v


@dataclass
class DeployTimeouts:
    """Per action type timeouts in seconds. None means no limit."""
    command: float | None = None
    http: float = 30
    ssh: float = 60
    smb: float = 60
    ftp: float = 60
    docker: float = 60
    email: float = 60


@dataclass
class DeployConfig:
    max_parallel: int = 4
    timeouts: DeployTimeouts = field(default_factory=DeployTimeouts)
    verify: bool = False
    smtp: SmtpConfig | None = None

    @field_validator("max_parallel")
    @classmethod
    def max_parallel_must_be_positive(cls, v: int):
        if v < 1:
            raise ValueError("max_parallel must be at least 1")
        return v


@dataclass
class CertManagerConfig(BaseServiceConfig):
    """Main configuration class for the certificate manager."""

    __path__: ClassVar[str] = "cert_manager"
    __config_dir__: ClassVar[str] = CONFIG_DIR
    __config_file__: ClassVar[str] = f"{__config_dir__}/cert_manager.yaml"

    certs_dir: str | None = None
    config_dir: str | None = None
    backup_retention: int = 10
    activity_max_items: int = 1000
    cache_expiry: int = 300

    crypto: CryptoConfig = field(default_factory=CryptoConfig)
    renewal: RenewalConfig = field(default_factory=RenewalConfig)
    deploy: DeployConfig = field(default_factory=DeployConfig)

    def __post_init__(self):
        if not self.certs_dir:
            self.certs_dir = os.getenv("CERTS_DIR", os.path.join(CONFIG_DIR, "certs"))
        if not self.config_dir:
            self.config_dir = CONFIG_DIR

    @property
    def certificates_file(self) -> str:
        return os.path.join(self.config_dir, "certificates.json")

    @property
    def backup_dir(self) -> str:
        return os.path.join(self.config_dir, "backups")

    @property
    def activity_file(self) -> str:
        return os.path.join(self.config_dir, "activities.json")

    @classmethod
    def load(cls) -> 'CertManagerConfig':
        if not os.path.exists(cls.__config_file__):
            return cls()
        return super().load()
