# Licensed under GPL 3: https://www.gnu.org/licenses/gpl-3.0.html
"""Shared exception classes for certificate manager components."""

import logging

shared_logger = logging.getLogger("certmgr_shared")


class CertManagerBreakingException(SystemExit):
    """Critical exception that causes system exit."""

    log_level = logging.CRITICAL
    include_traceback = True

    def __init__(self, message: str, *args):
        super().__init__(message, *args)
        self._log_error(message, *args)

    def _log_error(self, message: str, *args):
        shared_logger.log(
            self.log_level,
            "%s: %s",
            self.__class__.__name__,
            message,
            exc_info=self.include_traceback,
            *args
        )


class CertManagerException(RuntimeError):
    """Base exception class for certificate manager errors."""

    kind = "Internal"
    log_level = logging.ERROR
    include_traceback = False

    def __init__(self, message: str, *args, path: str = None):
        super().__init__(message, *args)
        self.message = message
        self.path = path
        self._log_error(message, *args)

    def _log_error(self, message: str, *args):
        if self.path:
            message = f"{message} ({self.path})"
        shared_logger.log(
            self.log_level,
            "%s: %s",
            self.__class__.__name__,
            message,
            exc_info=self.include_traceback,
            *args
        )

    def to_dict(self) -> dict:
        result = {"error": self.message, "errorKind": self.kind}
        if self.path:
            result["path"] = self.path
        return result


class NotFound(CertManagerException):
    """Raised when an artifact or catalog entry is absent."""
    kind = "NotFound"
    log_level = logging.WARNING


class Malformed(CertManagerException):
    """Raised when a certificate, key or config file cannot be parsed."""
    kind = "Malformed"


class PassphraseRequired(CertManagerException):
    """Raised when a private key operation needs a passphrase that is not available."""
    kind = "PassphraseRequired"
    log_level = logging.WARNING


class PassphraseIncorrect(PassphraseRequired):
    """Raised when the supplied passphrase failed to decrypt a key."""
    kind = "PassphraseIncorrect"


class SigningCANotFound(CertManagerException):
    """Raised when the configured signing CA is not in the catalog."""
    kind = "SigningCANotFound"


class SigningCAUnusable(CertManagerException):
    """Raised when the signing CA exists but its certificate or key cannot be used."""
    kind = "SigningCAUnusable"


class IOFailure(CertManagerException):
    """Raised on filesystem or network failures."""
    kind = "IOError"


class FeatureUnavailable(CertManagerException):
    """Raised when an optional transport is not installed."""
    kind = "FeatureUnavailable"


class Conflict(CertManagerException):
    """Raised when a SAN is already present or an operation is already running."""
    kind = "Conflict"
    log_level = logging.WARNING


class Cancelled(CertManagerException):
    """Raised when an action or renewal is aborted or timed out."""
    kind = "Cancelled"
    log_level = logging.WARNING


class InternalError(CertManagerException):
    """Raised on invariant violations."""
    kind = "Internal"
    include_traceback = True
