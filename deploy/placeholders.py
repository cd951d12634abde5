"""Placeholder substitution for deploy action fields."""
import re
from datetime import datetime

from lib.util import iso_timestamp

PLACEHOLDERS = (
    "name", "fingerprint", "cert_path", "key_path", "pem_path", "p12_path", "chain_path",
    "fullchain_path", "domains", "domain", "valid_from", "valid_to", "days_until_expiry",
    "cert_type", "timestamp",
)
PLACEHOLDER_PATTERN = re.compile(r'\{(' + '|'.join(PLACEHOLDERS) + r')\}')


def placeholder_values(certificate, paths: dict[str, str] = None, now: datetime = None) -> dict[str, str]:
    """Values of every placeholder for one certificate at one point in time."""
    paths = paths if paths is not None else certificate.paths
    domains = list(certificate.domains)
    return {
        "name": certificate.name or "",
        "fingerprint": certificate.fingerprint or "",
        "cert_path": paths.get("crt") or "",
        "key_path": paths.get("key") or "",
        "pem_path": paths.get("pem") or "",
        "p12_path": paths.get("p12") or "",
        "chain_path": paths.get("chain") or "",
        "fullchain_path": paths.get("fullchain") or "",
        "domains": ",".join(domains),
        "domain": domains[0] if domains else (certificate.name or ""),
        "valid_from": iso_timestamp(certificate.valid_from) if certificate.valid_from else "",
        "valid_to": iso_timestamp(certificate.valid_to) if certificate.valid_to else "",
        "days_until_expiry": str(certificate.days_until_expiry),
        "cert_type": certificate.cert_type or "",
        "timestamp": iso_timestamp(now),
    }


def substitute(template: str, values: dict[str, str]) -> str:
    """Replace known {placeholders}. Anything else in braces is left alone."""
    if not isinstance(template, str):
        return template
    return PLACEHOLDER_PATTERN.sub(lambda match: values[match.group(1)], template)


def substitute_all(value, values: dict[str, str]):
    """Apply substitute to every string inside nested dicts and lists."""
    if isinstance(value, str):
        return substitute(value, values)
    if isinstance(value, dict):
        return {key: substitute_all(item, values) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_all(item, values) for item in value]
    return value
