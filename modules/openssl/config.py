"""OpenSSL module configuration classes."""
import re

from pydantic import field_validator
from pydantic.dataclasses import dataclass

from modules.pyca.config import PycaConfig


@dataclass
class OpenSSLConfig(PycaConfig):
    """OpenSSL module configuration."""

    bin: str | None = None
    config_template: str = "req.conf.j2"
    timeout: int = 120

    @field_validator("timeout")
    @classmethod
    def timeout_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("OpenSSL timeout must be positive")
        return v


LOGGING_SENSITIVE_PATTERNS = {
    'openssl_pass': {
        'pattern': re.compile(r'(-pass(?:in|out)?\s(?:pass|env):)\S+'),
        'replace': r'\1[REDACTED]'
    },
}
