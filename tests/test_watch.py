import asyncio
import os

import pytest

from certmgr.watch import ScanWatchAdapter, discover_certificates, is_certificate_file


def touch(path):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as file:
        file.write("x")


def test_discovery_skips_backups_hidden_and_key_files(tmp_path):
    root = str(tmp_path)
    for relative in ("web/web.crt", "web/web.pem", "web/web-key.pem", "web/web-fullchain.pem",
                     "web/backups/2024/web.crt", "archive/old.crt", ".hidden/x.crt", "api/.tmp.crt",
                     "api/api.cer", "api/api.key", "api/notes.txt"):
        touch(os.path.join(root, relative))

    found = [os.path.relpath(path, root) for path in discover_certificates(root)]

    assert found == [os.path.join("api", "api.cer"), os.path.join("web", "web.crt"), os.path.join("web", "web.pem")]


def test_missing_root_yields_nothing(tmp_path):
    assert discover_certificates(str(tmp_path / "missing")) == []


def test_certificate_file_names():
    assert is_certificate_file("/x/site.cert")
    assert not is_certificate_file("/x/privkey.pem")
    assert not is_certificate_file("/x/site.key")


@pytest.mark.asyncio
async def test_events_are_debounced(tmp_path):
    adapter = ScanWatchAdapter(str(tmp_path), stability_ms=20)
    seen = []
    adapter.on_change(lambda path, kind: seen.append((os.path.basename(path), kind)))
    path = str(tmp_path / "web" / "web.crt")

    adapter.handle_event(path, "create")
    adapter.handle_event(path, "update")
    adapter.handle_event(path, "update")
    adapter.handle_event(str(tmp_path / "web" / "web.key"), "update")
    await asyncio.sleep(0.1)

    assert seen == [("web.crt", "create")]


@pytest.mark.asyncio
async def test_self_generated_events_are_ignored(tmp_path):
    adapter = ScanWatchAdapter(str(tmp_path), stability_ms=10)
    seen = []
    adapter.on_change(lambda path, kind: seen.append(kind))
    path = str(tmp_path / "web.crt")

    adapter.ignore_file_paths([path], duration_ms=200)
    adapter.handle_event(path, "update")
    await asyncio.sleep(0.05)
    assert seen == []

    await asyncio.sleep(0.2)
    assert not adapter.is_ignored(path)
    adapter.handle_event(path, "update")
    await asyncio.sleep(0.05)
    assert seen == ["update"]


@pytest.mark.asyncio
async def test_observer_reports_new_files(tmp_path):
    adapter = ScanWatchAdapter(str(tmp_path), stability_ms=50)
    seen = asyncio.Event()
    adapter.on_change(lambda path, kind: seen.set())
    adapter.start()
    try:
        touch(str(tmp_path / "web.crt"))
        await asyncio.wait_for(seen.wait(), timeout=5)
    finally:
        adapter.stop()
