# Licensed under GPL 3: https://www.gnu.org/licenses/gpl-3.0.html
# pylint: disable=missing-module-docstring

from .openssl import OpenSSL as Module
from .config import OpenSSLConfig as ModuleConfig, LOGGING_SENSITIVE_PATTERNS
