"""Periodic renewal of certificates that are about to expire."""
import asyncio
from datetime import datetime

from croniter import croniter

from certmgr.config import RenewalConfig, certmgr_logger
from lib.errors import CertManagerException
from lib.util import iso_timestamp, utc_now


class RenewalScheduler:
    """
    Runs ``check_for_renewals`` on the configured cron schedule.

    A certificate is due when it has autoRenew set (or the check is forced)
    and it expires within its renewDaysBeforeExpiry window. Already expired
    certificates are left alone.
    """

    def __init__(self, catalog, config: RenewalConfig = None):
        self.catalog = catalog
        self.config = config or RenewalConfig()
        self.running = False
        self.last_check: datetime | None = None
        self.next_check: datetime | None = None
        self.last_result: dict | None = None
        self._task: asyncio.Task | None = None

    def next_run(self, after: datetime = None) -> datetime:
        return croniter(self.config.schedule, after or utc_now()).get_next(datetime)

    def status(self) -> dict:
        return {
            "running": self.running,
            "schedule": self.config.schedule,
            "lastCheck": iso_timestamp(self.last_check) if self.last_check else None,
            "nextCheck": iso_timestamp(self.next_check) if self.next_check else None,
            "renewed": self.last_result.get("renewedCount", 0) if self.last_result else 0,
        }

    @staticmethod
    def needs_renewal(certificate, force_all: bool = False) -> bool:
        if not (certificate.config.auto_renew or force_all):
            return False
        days = certificate.days_until_expiry
        return 0 <= days <= certificate.config.renew_days_before_expiry

    async def check_for_renewals(self, force_all: bool = False) -> dict:
        if self.running:
            certmgr_logger.warning("Renewal check already running, skipping")
            return {"success": False, "skipped": True, "reason": "A renewal check is already running"}

        self.running = True
        check_time = utc_now()
        result = {
            "success": True,
            "checkTime": iso_timestamp(check_time),
            "total": 0,
            "checked": 0,
            "renewalNeeded": 0,
            "renewedCount": 0,
            "renewalErrors": 0,
            "renewed": [],
            "failed": [],
        }
        try:
            certificates = await self.catalog.force_refresh()
            result["total"] = len(certificates)
            certmgr_logger.info("Checking %s certificates for renewal", len(certificates))

            for certificate in certificates:
                result["checked"] += 1
                if not self.needs_renewal(certificate, force_all):
                    continue

                result["renewalNeeded"] += 1
                certmgr_logger.info("%s expires in %s days, renewing", certificate.name,
                                    certificate.days_until_expiry)
                renewal = await self.catalog.renew_and_deploy(certificate.fingerprint)
                if renewal.get("success"):
                    result["renewedCount"] += 1
                    deploy_result = renewal.get("deployResult")
                    result["renewed"].append({
                        "fingerprint": renewal["renewalResult"]["fingerprint"],
                        "name": certificate.name,
                        "daysUntilExpiry": certificate.days_until_expiry,
                        "deploySuccess": deploy_result["success"] if deploy_result else None,
                    })
                else:
                    result["renewalErrors"] += 1
                    result["failed"].append({
                        "fingerprint": certificate.fingerprint,
                        "name": certificate.name,
                        "error": renewal.get("error"),
                    })
        finally:
            self.running = False
            self.last_check = check_time

        result["success"] = result["renewalErrors"] == 0
        self.last_result = result
        certmgr_logger.info(
            "Renewal check done: %s needed, %s renewed, %s failed",
            result["renewalNeeded"], result["renewedCount"], result["renewalErrors"]
        )
        return result

    async def _scheduled_check(self):
        try:
            await self.check_for_renewals()
        except CertManagerException as exc:
            certmgr_logger.error("Scheduled renewal check failed: %s", exc)
        except Exception:  # pylint: disable=broad-exception-caught
            certmgr_logger.exception("Scheduled renewal check crashed, the scheduler keeps running")

    async def _loop(self):
        if self.config.check_on_start:
            await asyncio.sleep(self.config.startup_delay)
            await self._scheduled_check()

        while True:
            self.next_check = self.next_run()
            delay = max((self.next_check - utc_now()).total_seconds(), 0)
            certmgr_logger.debug("Next renewal check at %s", iso_timestamp(self.next_check))
            await asyncio.sleep(delay)
            await self._scheduled_check()

    def start(self) -> None:
        if not self.config.enabled:
            certmgr_logger.info("Scheduled renewal is disabled")
            return
        if self._task is None or self._task.done():
            self.next_check = self.next_run()
            self._task = asyncio.create_task(self._loop())
            certmgr_logger.info("Renewal scheduler started with schedule '%s'", self.config.schedule)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        certmgr_logger.info("Renewal scheduler stopped")
