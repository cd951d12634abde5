# Licensed under GPL 3: https://www.gnu.org/licenses/gpl-3.0.html
# pylint: disable=missing-module-docstring

from .pyca import PycaProvider as Module
from .config import PycaConfig as ModuleConfig, LOGGING_SENSITIVE_PATTERNS
