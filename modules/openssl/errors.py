"""OpenSSL module exception classes."""

import subprocess

from lib.errors import (
    CertManagerException,
    IOFailure,
    NotFound,
    PassphraseIncorrect,
    PassphraseRequired,
    SigningCAUnusable,
)

PASSPHRASE_MARKERS = ("bad decrypt", "wrong password", "bad password read", "maybe wrong password")


class OpensslCommandFailed(IOFailure):
    """Raised when an openssl invocation exits with an unexpected return code."""


def classify_failure(
        action: str,
        output: subprocess.CompletedProcess,
        path: str = None,
        passphrase_supplied: bool = False,
        ca_path: str = None
) -> CertManagerException:
    """Map openssl stderr onto the error kinds used by the catalog."""
    stderr = (output.stderr or "").lower()

    if any(marker in stderr for marker in PASSPHRASE_MARKERS):
        if passphrase_supplied:
            return PassphraseIncorrect(f"{action}: passphrase was rejected", path=path)
        return PassphraseRequired(f"{action}: a passphrase is required", path=path)
    if "unable to load ca certificate" in stderr or "unable to load ca private key" in stderr:
        return SigningCAUnusable(f"{action}: {output.stderr.strip()}", path=ca_path)
    if "no such file" in stderr:
        return NotFound(f"{action}: {output.stderr.strip()}", path=path)
    if "permission denied" in stderr:
        return IOFailure(f"{action}: {output.stderr.strip()}", path=path)

    return OpensslCommandFailed(
        f"{action} failed:"
        f"\nrc: {output.returncode}"
        f"\nstderr:{output.stderr}"
        f"\nstdout:{output.stdout}",
        path=path
    )
