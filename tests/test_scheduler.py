from datetime import datetime, timedelta, timezone

import pytest

from certmgr.certificate import Certificate, CertificatePolicy
from certmgr.config import RenewalConfig
from certmgr.scheduler import RenewalScheduler
from lib.util import utc_now


def expiring(days: float, auto_renew: bool = True, window: int = 30) -> Certificate:
    return Certificate(
        fingerprint="AA",
        name="web",
        valid_to=utc_now() + timedelta(days=days),
        config=CertificatePolicy(auto_renew=auto_renew, renew_days_before_expiry=window),
    )


def test_selection_window():
    assert RenewalScheduler.needs_renewal(expiring(10))
    assert RenewalScheduler.needs_renewal(expiring(29.5))
    assert not RenewalScheduler.needs_renewal(expiring(45))
    assert not RenewalScheduler.needs_renewal(expiring(-2))
    assert not RenewalScheduler.needs_renewal(expiring(10, auto_renew=False))
    assert RenewalScheduler.needs_renewal(expiring(10, auto_renew=False), force_all=True)
    assert RenewalScheduler.needs_renewal(expiring(50, window=60))


def test_next_run_follows_cron():
    scheduler = RenewalScheduler(catalog=None, config=RenewalConfig(schedule="30 2 * * *"))
    after = datetime(2030, 5, 1, 3, 0, tzinfo=timezone.utc)
    assert scheduler.next_run(after) == datetime(2030, 5, 2, 2, 30, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_check_renews_only_due_certificates(catalog, config, make_cert):
    due = make_cert("due", days=10)
    fresh = make_cert("fresh", days=365)
    manual = make_cert("manual", days=5)
    await catalog.load_all(force_reload=True)
    await catalog.update_config(due.fingerprint, {"autoRenew": True})
    await catalog.update_config(fresh.fingerprint, {"autoRenew": True})

    scheduler = RenewalScheduler(catalog, config.renewal)
    result = await scheduler.check_for_renewals()

    assert result["success"], result
    assert result["total"] == result["checked"] == 3
    assert result["renewalNeeded"] == 1 and result["renewedCount"] == 1
    assert result["renewed"][0]["name"] == "due"
    assert catalog.get(due.fingerprint) is None
    assert catalog.get(fresh.fingerprint) is not None
    assert catalog.get(manual.fingerprint) is not None
    assert scheduler.status()["lastCheck"] is not None


@pytest.mark.asyncio
async def test_failures_are_counted(catalog, config, make_cert):
    root = make_cert("root-ca", is_ca=True, passphrase="capw")
    leaf = make_cert("web", issuer=root, days=3)
    await catalog.load_all(force_reload=True)
    await catalog.update_config(leaf.fingerprint, {"autoRenew": True})

    result = await RenewalScheduler(catalog, config.renewal).check_for_renewals()

    assert result["success"] is False
    assert result["renewalErrors"] == 1
    assert result["failed"][0]["fingerprint"] == leaf.fingerprint


@pytest.mark.asyncio
async def test_overlapping_check_is_skipped(catalog, config):
    scheduler = RenewalScheduler(catalog, config.renewal)
    scheduler.running = True
    result = await scheduler.check_for_renewals()
    assert result["skipped"] is True


@pytest.mark.asyncio
async def test_start_and_stop(catalog):
    disabled = RenewalScheduler(catalog, RenewalConfig(enabled=False))
    disabled.start()
    assert disabled.status()["nextCheck"] is None

    scheduler = RenewalScheduler(catalog, RenewalConfig(check_on_start=False))
    scheduler.start()
    assert scheduler.status()["nextCheck"] is not None
    await scheduler.stop()
    assert scheduler._task is None


@pytest.mark.asyncio
async def test_scheduled_check_survives_unexpected_errors(catalog, config, monkeypatch):
    scheduler = RenewalScheduler(catalog, config.renewal)

    async def broken_refresh():
        raise RuntimeError("catalog exploded")

    monkeypatch.setattr(catalog, "force_refresh", broken_refresh)
    await scheduler._scheduled_check()

    assert scheduler.running is False
    monkeypatch.undo()
    result = await scheduler.check_for_renewals()
    assert result["success"] is True
