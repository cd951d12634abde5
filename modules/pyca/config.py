"""Configuration for the cryptography backed crypto module."""
import re

from pydantic import field_validator
from pydantic.dataclasses import dataclass

SUPPORTED_HASHES = ("sha256", "sha384", "sha512")


@dataclass
class PycaConfig:
    """Options of the cryptography backed crypto module."""

    signature_hash: str = "sha256"
    ec_curve: str = "secp256r1"
    p12_friendly_name: bool = True

    @field_validator("signature_hash")
    @classmethod
    def validate_signature_hash(cls, v: str):
        if v.lower() not in SUPPORTED_HASHES:
            raise ValueError(f"Unsupported signature hash: {v}")
        return v.lower()


LOGGING_SENSITIVE_PATTERNS = {
    'pem_private_key': {
        'pattern': re.compile(r'-----BEGIN (?:ENCRYPTED |RSA |EC )?PRIVATE KEY-----[\s\S]*?-----END (?:ENCRYPTED |RSA |EC )?PRIVATE KEY-----'),
        'replace': r'[PRIVATE KEY REDACTED]'
    },
}
