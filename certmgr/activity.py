"""Persisted record of what happened to the catalog."""
import json
import os
import threading
import uuid

from certmgr.certificate import Certificate
from certmgr.config import certmgr_logger
from lib.util import atomic_write, iso_timestamp

MESSAGES = {
    "create": "Certificate created",
    "renew": "Certificate renewed",
    "update": "Certificate updated",
    "delete": "Certificate deleted",
}


class ActivityLog:
    """
    Newest first list of catalog changes kept in activities.json.

    Register ``record`` with ``CertificateCatalog.subscribe``. The list is
    trimmed to ``max_items`` and rewritten atomically on every change.
    """

    def __init__(self, path: str, max_items: int = 1000):
        self.path = path
        self.max_items = max_items
        self._lock = threading.Lock()
        self._activities = self._load()

    def _load(self) -> list[dict]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, encoding="utf-8") as activity_file:
                activities = json.load(activity_file)
        except (OSError, ValueError) as exc:
            certmgr_logger.warning("Starting a new activity log, %s is unreadable: %s", self.path, exc)
            return []
        if not isinstance(activities, list):
            certmgr_logger.warning("Starting a new activity log, %s does not hold a list", self.path)
            return []
        return activities

    def _save(self) -> None:
        try:
            atomic_write(self.path, json.dumps(self._activities, indent=2))
        except OSError as exc:
            certmgr_logger.error("Failed to save activity log %s: %s", self.path, exc)

    def record(self, fingerprint: str, kind: str, certificate: Certificate = None) -> dict:
        name = certificate.name if certificate and certificate.name else fingerprint
        activity = {
            "id": f"act_{uuid.uuid4().hex[:12]}",
            "timestamp": iso_timestamp(),
            "type": kind,
            "message": f"{MESSAGES.get(kind, 'Certificate changed')}: {name}",
            "data": {"fingerprint": fingerprint, "name": name},
        }
        with self._lock:
            self._activities.insert(0, activity)
            del self._activities[self.max_items:]
            self._save()
        return activity

    def recent(self, limit: int = 50, kind: str = None, search: str = None) -> list[dict]:
        with self._lock:
            activities = list(self._activities)
        if kind:
            activities = [activity for activity in activities if activity.get("type") == kind]
        if search:
            needle = search.lower()
            activities = [
                activity for activity in activities
                if needle in activity.get("message", "").lower()
                or needle in json.dumps(activity.get("data") or {}).lower()
            ]
        return activities[:limit]

    def clear(self) -> None:
        with self._lock:
            self._activities = []
            self._save()
        certmgr_logger.info("Activity log cleared")
