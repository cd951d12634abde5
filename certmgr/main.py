"""Main certificate manager class and entrypoint."""

import asyncio
import json
import signal
import sys

from certmgr.activity import ActivityLog
from certmgr.catalog import CertificateCatalog
from certmgr.certificate import Certificate
from certmgr.config import CertManagerConfig, certmgr_logger
from certmgr.scheduler import RenewalScheduler
from certmgr.watch import ScanWatchAdapter
from deploy.orchestrator import DeployOrchestrator
from lib.controller import Controller
from lib.data.vault import PassphraseVault


class CertManager(Controller):
    """
    Long running certificate manager service.

    Wires the crypto module selected in configuration, the passphrase vault,
    the catalog, the deploy orchestrator, the directory watcher and the
    renewal scheduler together. Catalog changes are kept in the activity log.

    :ivar configClass: The configuration class for the service.
    :type configClass: Type[CertManagerConfig]
    """

    configClass = CertManagerConfig
    config: CertManagerConfig

    def __init__(self, config: CertManagerConfig = None):
        super().__init__(config)
        self.crypto = self.load_module(self.config.crypto.module, self.config.crypto.options)
        self.vault = PassphraseVault(self.config.config_dir)
        self.watcher = ScanWatchAdapter(self.config.certs_dir, self.config.renewal.watcher_stability_ms)
        self.deployer = DeployOrchestrator(self.config.deploy)
        self.catalog = CertificateCatalog(self.config, self.crypto, self.vault, self.watcher, self.deployer)
        self.scheduler = RenewalScheduler(self.catalog, self.config.renewal)
        self.activity = ActivityLog(self.config.activity_file, self.config.activity_max_items)

        self.watcher.on_change(self.catalog.on_file_event)
        self.catalog.subscribe(self.log_change)
        self.catalog.subscribe(self.activity.record)

    @staticmethod
    def log_change(fingerprint: str, kind: str, certificate: Certificate = None):
        name = certificate.name if certificate else fingerprint
        certmgr_logger.debug("Catalog %s: %s (%s)", kind, name, fingerprint)

    def install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.shutdown)

    async def run(self):
        """Entrypoint for the service. Runs until a shutdown signal arrives."""
        certmgr_logger.info("Starting certificate manager for %s", self.config.certs_dir)
        self.install_signal_handlers()
        try:
            await self.catalog.load_all(force_reload=True)
            if self.config.renewal.enable_watcher:
                self.watcher.start()
            self.scheduler.start()
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            certmgr_logger.info("Certificate manager shutting down.")
        except Exception as e:
            certmgr_logger.critical(f"Certificate manager encountered a fatal error: {e}")
            raise e
        finally:
            self.watcher.stop()
            await asyncio.shield(self.scheduler.stop())
            await asyncio.shield(self.catalog.close())

    async def check(self) -> dict:
        """Run a single renewal check."""
        await self.catalog.load_all(force_reload=True)
        return await self.scheduler.check_for_renewals()

    async def scan(self) -> list[dict]:
        """Load the catalog and summarize it."""
        certificates = await self.catalog.load_all(force_reload=True)
        return [
            {
                "name": certificate.name,
                "fingerprint": certificate.fingerprint,
                "certType": certificate.cert_type,
                "validTo": certificate.to_json()["validTo"],
                "daysUntilExpiry": certificate.days_until_expiry,
                "domains": certificate.domains,
                "path": certificate.cert_path,
            }
            for certificate in certificates
        ]


def main(function: str = None):
    """Entrypoint for the certificate manager."""
    if function is None and len(sys.argv) > 1:
        function = sys.argv[1]

    manager = CertManager()
    try:
        if function is None:
            asyncio.run(manager.run())
        if function == "check":
            print(json.dumps(asyncio.run(manager.check()), indent=2))
        if function == "scan":
            print(json.dumps(asyncio.run(manager.scan()), indent=2))
    except KeyboardInterrupt:
        manager.shutdown()


if __name__ == '__main__':
    main()
