"""Logging configuration and utilities for certificate manager components."""

import os
import logging
import re
import sys
import logging.config
from dataclasses import dataclass
from typing import ClassVar

from lib.util import mask_secrets

COMPONENT_LOGGERS = ("certmgr_shared", "certmgr_module", "certmgr_deploy")
THIRD_PARTY_LOGGERS = ("asyncssh", "docker", "watchdog", "aiohttp")


@dataclass
class LoggingConfig:
    """Configuration for the logging system."""

    __path__: ClassVar[str] = "logging"

    log_root: str = "certmgr"
    log_dir: str = "logs"
    verbose: bool = False
    log_file: str = "app.log"
    error_file: str = "error.log"
    log_level: str = "DEBUG"
    third_party_level: str = "WARNING"


class SensitiveDataFilter(logging.Filter): # pylint: disable=too-few-public-methods
    """
    Mask secrets before a record reaches any handler.

    Patterns apply to the message and to string arguments. Dict and list
    arguments, such as deploy action records, have their secret keys blanked.
    Crypto modules register extra patterns through LOGGING_SENSITIVE_PATTERNS.
    """

    SENSITIVE_PATTERNS = {
        'secret_fields': {
            'pattern': re.compile(
                r"""(['"]?(?:password|passphrase|privateKey|apiKey|token)['"]?\s*[:=]\s*)(['"])(?:(?!\2).)+\2""",
                re.IGNORECASE
            ),
            'replace': r'\1\2[REDACTED]\2'
        },
        'authorization_header': {
            'pattern': re.compile(r'(Authorization:?\s*[\'"]?\s*(?:Bearer|Basic)?\s*)[^\s\'",}]+', re.IGNORECASE),
            'replace': r'\1[REDACTED]'
        },
    }

    @classmethod
    def mask(cls, text: str) -> str:
        for pattern in cls.SENSITIVE_PATTERNS.values():
            text = pattern['pattern'].sub(pattern['replace'], text)
        return text

    def _mask_arg(self, arg):
        if isinstance(arg, str):
            return self.mask(arg)
        if isinstance(arg, (dict, list)):
            return mask_secrets(arg)
        return arg

    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)
        if isinstance(record.args, dict):
            record.args = mask_secrets(record.args)
        elif record.args:
            record.args = tuple(self._mask_arg(arg) for arg in record.args)
        return True


class LevelCeilingFilter(logging.Filter):  # pylint: disable=too-few-public-methods
    """Let through only records at or below a level; errors go to the error handlers."""

    def __init__(self, ceiling: int = logging.WARNING):
        super().__init__()
        self.ceiling = ceiling

    def filter(self, record):
        return record.levelno <= self.ceiling


class ColoredFormatter(logging.Formatter):  # pylint: disable=too-few-public-methods
    """Formatter that colours warnings and errors."""

    RESET = '\033[0m'
    LEVEL_COLORS = {
        logging.CRITICAL: '\033[91m',
        logging.ERROR: '\033[91m',
        logging.WARNING: '\033[93m',
    }

    def format(self, record):
        formatted = super().format(record)
        color = self.LEVEL_COLORS.get(record.levelno)
        return f"{color}{formatted}{self.RESET}" if color else formatted


def _handler(level: str, formatter: str, filters: list[str], filename: str = None, stream=None) -> dict:
    handler = {'level': level, 'formatter': formatter, 'filters': filters}
    if filename:
        handler.update({'class': 'logging.FileHandler', 'filename': filename, 'encoding': 'utf8'})
    else:
        handler.update({'class': 'logging.StreamHandler', 'stream': stream})
    return handler


def setup_logger(config: LoggingConfig):
    """
    Configure the certmgr loggers.

    Records up to WARNING go to the log file and stdout, ERROR and above go to
    the error file and stderr. Every handler masks secrets.

    Args:
        config: Logging configuration
    """
    os.makedirs(config.log_dir, exist_ok=True)
    log_dir = config.log_dir.rstrip("/")
    formatter = 'verbose' if config.verbose else 'simple'
    component_handlers = ['file', 'error_file', 'stdout', 'stderr']

    logging_config = {
        'version': 1,
        'disable_existing_loggers': False,
        'filters': {
            'sensitive_data': {'()': SensitiveDataFilter},
            'below_error': {'()': LevelCeilingFilter, 'ceiling': logging.WARNING},
        },
        'formatters': {
            'verbose': {
                '()': ColoredFormatter,
                'format': '%(asctime)s [%(name)-16s] [%(levelname)-8s] %(message)s',
                'datefmt': '%Y-%m-%d %H:%M:%S',
            },
            'simple': {
                '()': ColoredFormatter,
                'format': '%(asctime)s [%(levelname)-8s] %(message)s',
                'datefmt': '%Y-%m-%d %H:%M:%S',
            },
        },
        'handlers': {
            'file': _handler(config.log_level, formatter, ['sensitive_data', 'below_error'],
                             filename=f'{log_dir}/{config.log_file}'),
            'error_file': _handler("ERROR", formatter, ['sensitive_data'],
                                   filename=f'{log_dir}/{config.error_file}'),
            'stdout': _handler(config.log_level, formatter, ['sensitive_data', 'below_error'], stream=sys.stdout),
            'stderr': _handler("ERROR", formatter, ['sensitive_data'], stream=sys.stderr),
        },
        'loggers': {
            name: {'level': config.log_level, 'handlers': component_handlers, 'propagate': False}
            for name in (config.log_root, *COMPONENT_LOGGERS)
        },
    }
    logging_config['loggers'].update({
        name: {'level': config.third_party_level, 'handlers': ['stderr'], 'propagate': False}
        for name in THIRD_PARTY_LOGGERS
    })

    logging.config.dictConfig(logging_config)
    logging.getLogger("certmgr_shared").debug("Logging is set up in %s", log_dir)
