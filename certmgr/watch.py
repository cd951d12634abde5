"""Certificate directory discovery and change notification."""
import asyncio
import os
import time
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from certmgr.config import certmgr_logger

CERT_EXTENSIONS = (".crt", ".pem", ".cer", ".cert")
IGNORED_DIRECTORIES = ("backups", "archive")
# pem files that never hold a catalog entry of their own
NON_ENTRY_SUFFIXES = ("-key.pem", "-chain.pem", "-fullchain.pem", "privkey.pem")


def is_ignored_path(path: str, root: str = None) -> bool:
    """Hidden entries and anything under a backups or archive directory is ignored."""
    relative = os.path.relpath(path, root) if root else path
    for part in relative.split(os.sep):
        if part in ("", ".", ".."):
            continue
        if part.startswith(".") or part in IGNORED_DIRECTORIES:
            return True
    return False


def is_certificate_file(path: str) -> bool:
    name = os.path.basename(path).lower()
    if not name.endswith(CERT_EXTENSIONS):
        return False
    return not name.endswith(NON_ENTRY_SUFFIXES)


def discover_certificates(root: str) -> list[str]:
    """Recursively collect certificate files below root."""
    found = []
    if not os.path.isdir(root):
        certmgr_logger.warning("Certificates directory %s does not exist", root)
        return found

    for directory, subdirectories, files in os.walk(root):
        subdirectories[:] = sorted(
            name for name in subdirectories
            if not name.startswith(".") and name not in IGNORED_DIRECTORIES
        )
        for name in sorted(files):
            if name.startswith("."):
                continue
            path = os.path.join(directory, name)
            if is_certificate_file(path):
                found.append(path)

    certmgr_logger.debug("Discovered %s certificate files under %s", len(found), root)
    return found


class _EventHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread onto the event loop."""

    def __init__(self, adapter: 'ScanWatchAdapter'):
        self.adapter = adapter

    def _forward(self, path: str, kind: str):
        self.adapter.loop.call_soon_threadsafe(self.adapter.handle_event, os.fsdecode(path), kind)

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path, "create")

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path, "update")

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path, "delete")

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path, "delete")
            self._forward(event.dest_path, "create")


class ScanWatchAdapter:
    """
    Scans the certificates directory and reports external changes to it.

    Events are debounced per path for ``stability_ms`` so a burst of writes
    produces a single callback carrying the last observed kind. Paths
    registered through ``ignore_file_paths`` are dropped until their window
    runs out.
    """

    def __init__(self, root: str, stability_ms: int = 2000):
        self.root = root
        self.stability_ms = stability_ms
        self.loop: asyncio.AbstractEventLoop | None = None

        self._callbacks: list[Callable[[str, str], None]] = []
        self._ignored: dict[str, float] = {}
        self._pending: dict[str, tuple[str, asyncio.TimerHandle]] = {}
        self._observer = None

    def scan(self, root: str = None) -> list[str]:
        return discover_certificates(root or self.root)

    def on_change(self, callback: Callable[[str, str], None]) -> None:
        self._callbacks.append(callback)

    def ignore_file_paths(self, paths: list[str], duration_ms: int = 5000) -> None:
        """Suppress events for paths until duration_ms from now."""
        until = time.monotonic() + duration_ms / 1000
        for path in paths:
            if path:
                self._ignored[os.path.abspath(path)] = until

    def is_ignored(self, path: str) -> bool:
        now = time.monotonic()
        for ignored_path in [p for p, until in self._ignored.items() if until <= now]:
            del self._ignored[ignored_path]
        return os.path.abspath(path) in self._ignored

    def handle_event(self, path: str, kind: str) -> None:
        if is_ignored_path(path, self.root) or not is_certificate_file(path):
            return
        if self.is_ignored(path):
            certmgr_logger.debug("Ignoring self-generated %s event for %s", kind, path)
            return

        previous = self._pending.pop(path, None)
        if previous:
            previous[1].cancel()
            # a create followed by updates is still a create
            if previous[0] == "create" and kind == "update":
                kind = "create"

        loop = self.loop or asyncio.get_running_loop()
        handle = loop.call_later(self.stability_ms / 1000, self._dispatch, path)
        self._pending[path] = (kind, handle)

    def _dispatch(self, path: str) -> None:
        pending = self._pending.pop(path, None)
        if pending is None:
            return
        kind = pending[0]
        if self.is_ignored(path):
            return
        certmgr_logger.info("Detected %s of %s", kind, path)
        for callback in self._callbacks:
            try:
                callback(path, kind)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                certmgr_logger.error("Change callback failed for %s: %s", path, exc)

    def start(self) -> None:
        if self._observer is not None:
            return
        if not os.path.isdir(self.root):
            os.makedirs(self.root, exist_ok=True)

        self.loop = asyncio.get_running_loop()
        self._observer = Observer()
        self._observer.schedule(_EventHandler(self), self.root, recursive=True)
        self._observer.start()
        certmgr_logger.info("Watching %s for certificate changes", self.root)

    def stop(self) -> None:
        for _, handle in self._pending.values():
            handle.cancel()
        self._pending.clear()

        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
        certmgr_logger.info("Stopped watching %s", self.root)
