"""Utility functions for certificate manager components."""
import ipaddress
import math
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone

FINGERPRINT_PREFIX = re.compile(r'^\s*(?:sha-?256\s+)?fingerprint\s*=\s*', re.IGNORECASE)
UNSAFE_NAME_CHARS = re.compile(r'[^A-Za-z0-9_.\-]')


def is_valid_ip(ip_str):
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def normalize_fingerprint(fingerprint: str) -> str:
    """Strip any 'SHA256 Fingerprint=' prefix and separators, uppercase the rest."""
    if fingerprint is None:
        return None
    value = FINGERPRINT_PREFIX.sub("", str(fingerprint))
    return re.sub(r'[\s:]', '', value).upper()


def sanitize_name(name: str) -> str:
    """Replace every character outside [A-Za-z0-9_.-] with an underscore."""
    return UNSAFE_NAME_CHARS.sub("_", name or "")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(when: datetime = None) -> str:
    """ISO-8601 with millisecond precision and a Z suffix."""
    when = when or utc_now()
    return when.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def file_timestamp(when: datetime = None) -> str:
    """Timestamp usable in file names."""
    return re.sub(r'[:.]', '-', iso_timestamp(when))


def parse_datetime(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def days_until(when: datetime, now: datetime = None) -> int:
    """Whole days until a timestamp, rounded up. -1 when unknown."""
    if when is None:
        return -1
    now = now or utc_now()
    return math.ceil((when - now).total_seconds() / 86400)


def parse_mode(value) -> int | None:
    """Accept 0o644, 420, '644' or '0644' as a file mode."""
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    return int(str(value), 8)


def atomic_write(path: str, data: bytes | str, mode: int = None) -> None:
    """Write to a sibling temp file, fsync it and rename it over the target."""
    if isinstance(data, str):
        data = data.encode("utf-8")

    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "wb") as tmp_file:
            tmp_file.write(data)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def atomic_copy(source: str, destination: str, mode: int = None) -> None:
    """Copy a file so readers of destination never see a partial write."""
    with open(source, "rb") as src:
        data = src.read()
    if mode is None and os.path.exists(destination):
        mode = os.stat(destination).st_mode & 0o777
    atomic_write(destination, data, mode)


def copy_tree_files(paths: list[str], target_dir: str) -> list[str]:
    """Copy existing files into target_dir, return the copies."""
    os.makedirs(target_dir, exist_ok=True)
    copied = []
    for path in paths:
        if path and os.path.isfile(path):
            destination = os.path.join(target_dir, os.path.basename(path))
            shutil.copy2(path, destination)
            copied.append(destination)
    return copied


def mask_secrets(data, keys=("password", "passphrase", "privateKey", "apiKey", "token")):
    """Return a copy of an action record with secret values replaced."""
    if isinstance(data, dict):
        return {
            key: "********" if key in keys and value else mask_secrets(value, keys)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [mask_secrets(item, keys) for item in data]
    return data
