import asyncio
import os

import pytest

from certmgr.main import CertManager
from lib.errors import CertManagerBreakingException
from lib.logs import LoggingConfig
from modules.pyca import Module as PycaProvider


@pytest.fixture
def manager(config, tmp_path):
    config.logging = LoggingConfig(log_dir=str(tmp_path / "logs"))
    return CertManager(config)


def test_manager_wires_components(manager, tmp_path):
    assert isinstance(manager.crypto, PycaProvider)
    assert manager.catalog.deployer is manager.deployer
    assert manager.catalog.watcher is manager.watcher
    assert os.path.isdir(tmp_path / "logs")


def test_unknown_crypto_module_is_fatal(manager):
    with pytest.raises(CertManagerBreakingException):
        manager.load_module("does_not_exist")


@pytest.mark.asyncio
async def test_scan_and_check(manager, make_cert):
    make_cert("web", domains=["web.example.com"], days=5)

    summary = await manager.scan()
    assert [(item["name"], item["certType"], item["domains"]) for item in summary] == [
        ("web", "standard", ["web.example.com"])
    ]
    assert summary[0]["daysUntilExpiry"] <= 5

    result = await manager.check()
    assert result["success"]
    assert result["checked"] == 1 and result["renewedCount"] == 0


@pytest.mark.asyncio
async def test_run_until_shutdown(manager, config, make_cert):
    leaf = make_cert("web")
    config.renewal.check_on_start = False

    task = asyncio.create_task(manager.run())
    await asyncio.sleep(0.2)
    assert manager.catalog.get(leaf.fingerprint) is not None

    manager.shutdown()
    await asyncio.wait_for(task, timeout=5)
    assert manager.scheduler._task is None
