"""Base controller class for certificate manager services."""

import asyncio

from lib.config import Config, shared_logger
from lib.errors import CertManagerBreakingException
from lib.logs import setup_logger, SensitiveDataFilter


class Controller:
    """Base controller class for managing modules and configuration."""

    configClass = Config

    def __init__(self, config: Config = None):
        self.config = config if config is not None else self.configClass.load()
        self.setup_logging()
        self._shutdown_event = asyncio.Event()

    def setup_logging(self):
        """Set up logging configuration."""
        shared_logger.info("Setting up logging")
        setup_logger(self.config.logging)

    def shutdown(self):
        """Initiates shutdown of the service."""
        shared_logger.info("Received shutdown signal, shutting down")
        self._shutdown_event.set()

    def load_module(self, name: str, options: dict = None):
        """Import modules.<name>, register its log patterns and build its Module with its ModuleConfig."""
        try:
            module_imports = __import__(f'modules.{name}', fromlist=['Module', 'ModuleConfig'])
        except ImportError as exc:
            raise CertManagerBreakingException(f"Module '{name}' cannot be imported: {exc}") from exc

        SensitiveDataFilter.SENSITIVE_PATTERNS.update(module_imports.LOGGING_SENSITIVE_PATTERNS)

        module_config = module_imports.ModuleConfig(**(options or {}))
        return module_imports.Module(module_config)
