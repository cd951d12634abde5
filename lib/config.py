"""Shared configuration classes for certificate manager components."""

import logging
import os
from abc import ABCMeta
from dataclasses import field
from typing import ClassVar, Any, Self

import yaml
from cachetools import TTLCache
from pydantic import field_validator
from pydantic.dataclasses import dataclass

from lib.logs import LoggingConfig

shared_logger = logging.getLogger("certmgr_shared")

CONFIG_DIR = os.getenv("CONFIG_DIR", os.getcwd()).rstrip("/")
DEFAULT_FROM_ADDRESS = "Certificate Manager <cert-manager@localhost>"


@dataclass
class SmtpConfig:
    """Default SMTP settings for email deploy actions."""

    host: str
    port: int = 587
    secure: bool = False
    user: str | None = None
    password: str | None = None
    from_address: str = DEFAULT_FROM_ADDRESS

    @field_validator("port")
    @classmethod
    def port_must_be_valid(cls, v):
        """Validate that port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v


@dataclass
class Config(metaclass=ABCMeta):
    """Abstract certificate manager configuration."""

    __path__: ClassVar[str] = ""
    __config_dir__: ClassVar[str] = ""
    __config_file__: ClassVar[str] = ""
    __ttl_cache__: ClassVar[TTLCache] = TTLCache(maxsize=5, ttl=10)

    @classmethod
    def load(cls) -> 'Self':
        return cls(**(cls.read_config().get(cls.__path__) or {}))

    @classmethod
    def read_config(cls) -> dict[str, Any]:
        if not cls.__ttl_cache__.get(cls.__config_file__):
            shared_logger.debug("Reading configuration file %s", cls.__config_file__)
            with open(cls.__config_file__, 'r', encoding='utf-8') as config_file:
                cls.__ttl_cache__[cls.__config_file__] = yaml.safe_load(config_file) or {}

        return cls.__ttl_cache__[cls.__config_file__]


@dataclass
class BaseServiceConfig(Config):
    """Base configuration class for certificate manager services."""

    logging: LoggingConfig = field(default_factory=LoggingConfig)
