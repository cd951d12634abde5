# Licensed under GPL 3: https://www.gnu.org/licenses/gpl-3.0.html
"""In-memory certificate catalog backed by certificates.json and the certificates directory."""

import asyncio
import glob
import json
import os
import shutil
import time
from contextlib import asynccontextmanager
from typing import Callable

from certmgr.certificate import Certificate
from certmgr.config import CertManagerConfig, certmgr_logger
from certmgr.crypto import CryptoProvider
from certmgr.crypto.dn import normalize_dn
from certmgr.renewal import RenewalEngine
from certmgr.watch import ScanWatchAdapter
from lib.data.vault import PassphraseVault
from lib.errors import CertManagerException, Conflict, InternalError, IOFailure, NotFound
from lib.util import (
    atomic_write,
    copy_tree_files,
    file_timestamp,
    iso_timestamp,
    normalize_fingerprint,
)

CONFIG_VERSION = 1
KEY_CANDIDATES = ("{base}.key", "{base}-key.pem", "privkey.pem", "private.key")
DISCOVERED_PATH_KEYS = {".crt": "crt", ".cert": "crt", ".pem": "pem", ".cer": "cer"}
DIRTY_FIELDS = ("name", "subject", "validFrom", "validTo", "certType", "needsPassphrase")


def find_key_file(cert_path: str) -> str | None:
    directory = os.path.dirname(cert_path)
    base = os.path.splitext(os.path.basename(cert_path))[0]
    for candidate in KEY_CANDIDATES:
        path = os.path.join(directory, candidate.format(base=base))
        if os.path.isfile(path):
            return path
    return None


def error_result(exc: CertManagerException) -> dict:
    return {"success": False, **exc.to_dict()}


class CertificateCatalog:  # pylint: disable=too-many-instance-attributes,too-many-public-methods
    """
    Registry of certificates keyed by fingerprint.

    The filesystem is authoritative for artifacts and X.509 data, the config
    document for policy and history. Published Certificate objects are never
    mutated in place: writers copy an entry, change the copy and swap it in,
    so readers always hold a consistent snapshot.
    """

    def __init__(self, config: CertManagerConfig, crypto: CryptoProvider, vault: PassphraseVault,
                 watcher: ScanWatchAdapter = None, deployer=None):
        self.config = config
        self.certs_dir = config.certs_dir
        self.config_file = config.certificates_file
        self.backup_dir = config.backup_dir
        self.cache_expiry = config.cache_expiry

        self.crypto = crypto
        self.vault = vault
        self.watcher = watcher or ScanWatchAdapter(config.certs_dir, config.renewal.watcher_stability_ms)
        self.deployer = deployer
        self.renewal = RenewalEngine(self)

        self._certificates: dict[str, Certificate] = {}
        self._config_doc: dict = {}
        self.pending_changes: set[str] = set()
        self.last_refresh_time: float | None = None

        self._locks: dict[str, asyncio.Lock] = {}
        self._global_lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._state = asyncio.Condition()
        self._writers = 0
        self._structural = False
        self._renewing: set[str] = set()

        self._tasks: set[asyncio.Task] = set()
        self._refresh_task: asyncio.Task | None = None
        self._listeners: list[Callable[[str, str, Certificate | None], None]] = []

    @asynccontextmanager
    async def _entry_lock(self, fingerprint: str):
        """Serialize writers of one fingerprint, held off while a structural operation runs."""
        async with self._state:
            await self._state.wait_for(lambda: not self._structural)
            self._writers += 1
        try:
            async with self._locks.setdefault(fingerprint, asyncio.Lock()):
                yield
        finally:
            async with self._state:
                self._writers -= 1
                self._state.notify_all()

    @asynccontextmanager
    async def _structural_lock(self):
        async with self._global_lock:
            async with self._state:
                self._structural = True
                await self._state.wait_for(lambda: self._writers == 0)
            try:
                yield
            finally:
                async with self._state:
                    self._structural = False
                    self._state.notify_all()

    def subscribe(self, callback: Callable[[str, str, Certificate | None], None]) -> None:
        """Register an observer called with (fingerprint, kind, entry) after each published change."""
        self._listeners.append(callback)

    def _emit(self, fingerprint: str, kind: str, certificate: Certificate = None) -> None:
        for callback in self._listeners:
            try:
                callback(fingerprint, kind, certificate)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                certmgr_logger.error("Catalog listener failed for %s: %s", fingerprint, exc)

    def _read_config_doc(self) -> tuple[dict, bool]:
        """Returns the document and whether the file on disk was corrupt."""
        if not os.path.exists(self.config_file):
            return {"version": CONFIG_VERSION, "certificates": {}}, False

        try:
            with open(self.config_file, "r", encoding="utf-8") as config_file:
                doc = json.load(config_file)
            if not isinstance(doc, dict):
                raise ValueError("top level value is not an object")
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as exc:
            corrupt_path = f"{self.config_file}.corrupt-{file_timestamp()}"
            shutil.copy2(self.config_file, corrupt_path)
            certmgr_logger.error("Certificate config is corrupt (%s), preserved at %s", exc, corrupt_path)
            return {"version": CONFIG_VERSION, "certificates": {}}, True

        certificates = {}
        for fingerprint, data in (doc.get("certificates") or {}).items():
            if isinstance(data, dict):
                certificates[normalize_fingerprint(fingerprint)] = data
        doc["certificates"] = certificates
        return doc, False

    def create_config_backup(self) -> str | None:
        """Copy certificates.json into the rolling backup directory."""
        if not os.path.exists(self.config_file):
            return None

        os.makedirs(self.backup_dir, exist_ok=True)
        backup_path = os.path.join(self.backup_dir, f"certificates-{file_timestamp()}.json")
        shutil.copyfile(self.config_file, backup_path)

        backups = sorted(
            glob.glob(os.path.join(self.backup_dir, "certificates-*.json")),
            key=os.path.getmtime,
            reverse=True
        )
        for old_backup in backups[self.config.backup_retention:]:
            os.unlink(old_backup)

        certmgr_logger.debug("Created config backup %s", backup_path)
        return backup_path

    def backup_artifacts(self, certificate: Certificate, reason: str = "backup") -> str | None:
        """Copy every existing artifact of certificate to <certDir>/backups/<timestamp>/."""
        paths = list(certificate.existing_paths().values())
        if not paths or not certificate.cert_dir:
            return None
        target_dir = os.path.join(certificate.cert_dir, "backups", file_timestamp())
        copied = copy_tree_files(paths, target_dir)
        certmgr_logger.info("Backed up %s files of %s before %s to %s", len(copied), certificate.name, reason,
                            target_dir)
        return target_dir

    def _is_dirty(self, certificates: dict[str, Certificate]) -> bool:
        stored = self._config_doc.get("certificates") or {}
        if set(stored) != set(certificates):
            return True
        for fingerprint, certificate in certificates.items():
            current = certificate.to_json()
            if any(stored[fingerprint].get(key) != current.get(key) for key in DIRTY_FIELDS):
                return True
        return False

    def _write_config_doc(self, certificates: dict[str, Certificate]) -> None:
        doc = {
            "version": CONFIG_VERSION,
            "lastUpdate": iso_timestamp(),
            "certificates": {fingerprint: cert.to_json() for fingerprint, cert in certificates.items()},
        }
        if set(doc["certificates"]) != set(self._config_doc.get("certificates") or {}):
            self.create_config_backup()
        try:
            atomic_write(self.config_file, json.dumps(doc, indent=2))
        except OSError as exc:
            raise IOFailure(f"Failed to write certificate config: {exc}", path=self.config_file) from exc
        self._config_doc = doc
        certmgr_logger.debug("Saved configuration for %s certificates", len(certificates))

    async def persist(self, force: bool = True) -> bool:
        """Write the catalog to certificates.json. Without force, only when it differs from the file."""
        async with self._persist_lock:
            certificates = dict(self._certificates)
            if not force and not self._is_dirty(certificates):
                return False
            await asyncio.to_thread(self._write_config_doc, certificates)
            return True

    def _check_passphrase_state(self, certificate: Certificate) -> None:
        certificate.has_passphrase = self.vault.has(certificate.fingerprint)
        if certificate.key_path and os.path.exists(certificate.key_path):
            try:
                certificate.needs_passphrase = self.crypto.is_key_encrypted(certificate.key_path)
            except CertManagerException:
                certificate.needs_passphrase = True
        else:
            certificate.needs_passphrase = False
        certificate.passphrase_checked = True

    def _discover(self, stored: dict[str, dict]) -> dict[str, Certificate]:
        """Parse every certificate file and merge it with stored policy."""
        groups: dict[str, dict] = {}
        for path in self.watcher.scan(self.certs_dir):
            try:
                info = self.crypto.parse_certificate(path)
            except CertManagerException as exc:
                certmgr_logger.warning("Skipping %s: %s", path, exc)
                continue
            group = groups.setdefault(info.fingerprint, {"info": info, "files": {}})
            extension = os.path.splitext(path)[1].lower()
            group["files"].setdefault(DISCOVERED_PATH_KEYS[extension], path)

        certificates = {}
        for fingerprint, group in groups.items():
            files = group["files"]
            primary = files.get("crt") or files.get("pem") or files.get("cer")
            base = os.path.splitext(os.path.basename(primary))[0]
            directory = os.path.dirname(primary)

            if fingerprint in stored:
                certificate = Certificate.from_json(stored[fingerprint], fingerprint)
            else:
                certificate = Certificate(fingerprint=fingerprint)

            paths = certificate.existing_paths()
            for key, path in Certificate.potential_paths(directory, base).items():
                if key not in paths and os.path.isfile(path):
                    paths[key] = path
            paths.update(files)
            paths["crt"] = files.get("crt") or primary
            key_path = paths.get("key") if paths.get("key") and os.path.isfile(paths["key"]) else None
            key_path = key_path or find_key_file(primary)
            if key_path:
                paths["key"] = key_path
            certificate.paths = paths
            certificate.apply_info(group["info"])
            if not certificate.name:
                certificate.name = base
            self._check_passphrase_state(certificate)
            certificates[fingerprint] = certificate

        for fingerprint, data in stored.items():
            if fingerprint not in certificates:
                certmgr_logger.info("Dropping %s (%s) from the catalog, its certificate file is gone",
                                    data.get("name"), fingerprint)
        return certificates

    async def load_all(self, force_reload: bool = False) -> list[Certificate]:
        """Rebuild the catalog from disk. Served from memory while the cache is fresh."""
        if not force_reload and self.is_cache_valid() and not self._refresh_due():
            return self.get_all()

        async with self._structural_lock():
            doc, corrupt = await asyncio.to_thread(self._read_config_doc)
            self._config_doc = doc
            certificates = await asyncio.to_thread(self._discover, doc["certificates"])

            self._certificates = certificates
            changed = self.update_ca_relationships()
            self.pending_changes.clear()
            self.last_refresh_time = time.monotonic()

            if corrupt and not self._certificates:
                certmgr_logger.warning("Not overwriting corrupt certificate config with an empty catalog")
            else:
                await self.persist(force=bool(changed) or corrupt)

        certmgr_logger.info("Loaded %s certificates from %s", len(self._certificates), self.certs_dir)
        return self.get_all()

    async def force_refresh(self) -> list[Certificate]:
        self.invalidate()
        return await self.load_all(force_reload=True)

    def invalidate(self, fingerprints: list[str] = None) -> None:
        if fingerprints is None:
            self.pending_changes.clear()
            self.last_refresh_time = None
            return
        self.pending_changes.update(normalize_fingerprint(fp) for fp in fingerprints if fp)

    def notify_changed(self, fingerprint: str | None, kind: str = "update") -> None:
        """Mark a fingerprint stale. Creations and deletions also expire the cache."""
        if fingerprint:
            self.pending_changes.add(normalize_fingerprint(fingerprint))
        if kind in ("create", "delete"):
            self.last_refresh_time = None

    def is_cache_valid(self) -> bool:
        return bool(self._certificates)

    def _refresh_due(self) -> bool:
        return self.last_refresh_time is None or time.monotonic() - self.last_refresh_time > self.cache_expiry

    def _track(self, coroutine) -> asyncio.Task:
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            certmgr_logger.error("Background catalog refresh failed: %s", task.exception())

    def schedule_refresh(self, force: bool = False) -> asyncio.Task:
        """Start a background refresh unless one is already queued."""
        if self._refresh_task is not None and not self._refresh_task.done():
            return self._refresh_task
        if force:
            self._refresh_task = self._track(self.force_refresh())
        else:
            self._refresh_task = self._track(self.refresh_cached(list(self.pending_changes)))
        return self._refresh_task

    async def drain(self) -> None:
        """Wait for all background refreshes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()

    def _reparse(self, certificate: Certificate) -> Certificate | None:
        if not certificate.cert_path or not os.path.exists(certificate.cert_path):
            return None
        info = self.crypto.parse_certificate(certificate.cert_path)
        updated = certificate.copy()
        updated.apply_info(info)
        updated.prune_paths()
        self._check_passphrase_state(updated)
        return updated

    async def refresh_cached(self, fingerprints: list[str]) -> int:
        """Re-parse the given entries in place. Entries whose certificate vanished are removed."""
        refreshed = 0
        for fingerprint in [normalize_fingerprint(fp) for fp in fingerprints if fp]:
            self.pending_changes.discard(fingerprint)
            async with self._entry_lock(fingerprint):
                current = self._certificates.get(fingerprint)
                if current is None:
                    continue
                try:
                    updated = await asyncio.to_thread(self._reparse, current)
                except CertManagerException as exc:
                    certmgr_logger.warning("Could not refresh %s: %s", current.name, exc)
                    continue

                if updated is None:
                    del self._certificates[fingerprint]
                    self._emit(fingerprint, "delete")
                elif updated.fingerprint != fingerprint:
                    updated.archive(current)
                    del self._certificates[fingerprint]
                    self._certificates[updated.fingerprint] = updated
                    self._emit(updated.fingerprint, "update", updated)
                else:
                    self._certificates[fingerprint] = updated
                refreshed += 1

        if refreshed:
            await self.persist(force=False)
        return refreshed

    async def get_changes_since_last_refresh(self) -> dict | None:
        if not self.is_cache_valid():
            return None

        before = set(self._certificates)
        pending = set(self.pending_changes)
        if self.last_refresh_time is None:
            await self.force_refresh()
        else:
            await self.refresh_cached(list(pending))
        after = set(self._certificates)
        self.pending_changes.clear()
        return {
            "added": sorted(after - before),
            "updated": sorted(pending & before & after),
            "deleted": sorted(before - after),
        }

    def on_file_event(self, path: str, kind: str) -> None:
        """Scan/Watch adapter callback."""
        fingerprint = self.find_by_path(path)
        self.notify_changed(fingerprint, kind)
        if kind in ("create", "delete") or fingerprint is None:
            self.schedule_refresh(force=True)
        else:
            self.schedule_refresh()

    def find_by_path(self, path: str) -> str | None:
        path = os.path.abspath(path)
        for fingerprint, certificate in self._certificates.items():
            if path in (os.path.abspath(p) for p in certificate.paths.values() if p):
                return fingerprint
        return None

    def get(self, fingerprint: str) -> Certificate | None:
        if not fingerprint:
            return None
        return self._certificates.get(normalize_fingerprint(fingerprint))

    def require(self, fingerprint: str) -> Certificate:
        certificate = self.get(fingerprint)
        if certificate is None:
            raise NotFound(f"Certificate {fingerprint} not found")
        return certificate

    def get_all(self) -> list[Certificate]:
        return list(self._certificates.values())

    def ca_passphrase_state(self, certificate: Certificate) -> dict | None:
        if not certificate.config.ca_fingerprint:
            return None
        ca = self.get(certificate.config.ca_fingerprint)
        if ca is None:
            return {"fingerprint": certificate.config.ca_fingerprint, "found": False}
        return {
            "fingerprint": ca.fingerprint,
            "name": ca.name,
            "found": True,
            "hasPassphrase": ca.has_passphrase,
            "needsPassphrase": ca.needs_passphrase,
        }

    async def get_all_with_metadata(self) -> list[dict]:
        if not self.is_cache_valid():
            await self.load_all(force_reload=True)
        elif self.pending_changes or self.last_refresh_time is None:
            self.schedule_refresh(force=self.last_refresh_time is None)

        response = []
        for certificate in self.get_all():
            ca = self.get(certificate.config.ca_fingerprint) if certificate.config.ca_fingerprint else None
            response.append(certificate.to_api_response(
                ca_name=ca.name if ca else None,
                ca_passphrase=self.ca_passphrase_state(certificate)
            ))
        return response

    def find_ca_by_subject(self, subject: str) -> Certificate | None:
        normalized = normalize_dn(subject)
        for certificate in self._certificates.values():
            if certificate.is_ca and normalize_dn(certificate.subject) == normalized:
                return certificate
        return None

    def update_ca_relationships(self) -> int:
        """Point every CA-issued entry at its issuer. Returns the number of entries changed."""
        candidates = [cert for cert in self._certificates.values() if cert.is_ca]
        changed = 0
        for fingerprint, certificate in list(self._certificates.items()):
            if certificate.self_signed:
                continue

            parent = self.crypto.find_parent(certificate, candidates)
            policy = certificate.config
            if parent is not None:
                wanted = (True, parent.fingerprint, parent.name)
            elif policy.ca_fingerprint and policy.ca_fingerprint not in self._certificates:
                certmgr_logger.warning("CA %s of %s is not in the catalog", policy.ca_fingerprint, certificate.name)
                continue
            elif policy.ca_fingerprint:
                # explicitly chosen CA for the next issuance
                continue
            else:
                wanted = (False, None, None)

            if (policy.sign_with_ca, policy.ca_fingerprint, policy.ca_name) == wanted:
                continue
            updated = certificate.copy()
            updated.config.sign_with_ca, updated.config.ca_fingerprint, updated.config.ca_name = wanted
            self._certificates[fingerprint] = updated
            changed += 1

        if changed:
            certmgr_logger.info("Updated CA relationships of %s certificates", changed)
        return changed

    async def _mutate(self, fingerprint: str, mutation: Callable[[Certificate], None], kind: str = "update") -> dict:
        """Apply mutation to a copy of an entry, publish it and persist."""
        fingerprint = normalize_fingerprint(fingerprint)
        async with self._entry_lock(fingerprint):
            try:
                updated = self.require(fingerprint).copy()
                mutation(updated)
            except CertManagerException as exc:
                return error_result(exc)
            updated.touch()
            self._certificates[fingerprint] = updated
            await self.persist()
        self._emit(fingerprint, kind, updated)
        return {"success": True, "certificate": updated.to_api_response()}

    async def add_domain(self, fingerprint: str, domain: str, idle: bool = True) -> dict:
        return await self._mutate(fingerprint, lambda cert: cert.add_domain(domain, idle))

    async def remove_domain(self, fingerprint: str, domain: str, idle: bool = False) -> dict:
        return await self._mutate(fingerprint, lambda cert: cert.remove_domain(domain, idle))

    async def add_ip(self, fingerprint: str, ip: str, idle: bool = True) -> dict:
        return await self._mutate(fingerprint, lambda cert: cert.add_ip(ip, idle))

    async def remove_ip(self, fingerprint: str, ip: str, idle: bool = False) -> dict:
        return await self._mutate(fingerprint, lambda cert: cert.remove_ip(ip, idle))

    async def update_config(self, fingerprint: str, patch: dict) -> dict:
        """Merge-update policy fields, plus name and description."""
        patch = dict(patch or {})

        def apply(certificate: Certificate):
            if "name" in patch:
                certificate.name = patch.pop("name")
            if "description" in patch:
                certificate.description = patch.pop("description")
            if "acme-settings" in patch:
                certificate.acme_settings = patch.pop("acme-settings")
            certificate.config.update(patch)

        return await self._mutate(fingerprint, apply)

    async def set_passphrase(self, fingerprint: str, passphrase: str) -> dict:
        if not passphrase:
            return await self.delete_passphrase(fingerprint)

        def apply(certificate: Certificate):
            self.vault.put(certificate.fingerprint, passphrase)
            certificate.has_passphrase = True

        return await self._mutate(fingerprint, apply)

    async def delete_passphrase(self, fingerprint: str) -> dict:
        def apply(certificate: Certificate):
            self.vault.delete(certificate.fingerprint)
            certificate.has_passphrase = False

        return await self._mutate(fingerprint, apply)

    async def delete(self, fingerprint: str) -> dict:
        """Back up and remove a certificate's files and drop it from the catalog."""
        fingerprint = normalize_fingerprint(fingerprint)
        async with self._entry_lock(fingerprint):
            certificate = self.get(fingerprint)
            if certificate is None:
                return error_result(NotFound(f"Certificate {fingerprint} not found"))

            try:
                await asyncio.to_thread(self._delete_files, certificate)
            except OSError as exc:
                return error_result(IOFailure(f"Failed to delete {certificate.name}: {exc}"))

            del self._certificates[fingerprint]
            self.vault.delete(fingerprint)
            await self.persist()

        certmgr_logger.info("Deleted certificate %s (%s)", certificate.name, fingerprint)
        self._emit(fingerprint, "delete")
        return {"success": True}

    def _delete_files(self, certificate: Certificate) -> None:
        self.backup_artifacts(certificate, "deletion")
        self.create_config_backup()
        existing = list(certificate.existing_paths().values())
        self.watcher.ignore_file_paths(existing, self.config.renewal.ignore_window_ms)
        for path in existing:
            os.unlink(path)

    async def create_or_renew(self, fingerprint: str | None, options: dict = None) -> dict:
        """Issue a new certificate when fingerprint is None, otherwise renew the existing one."""
        options = options or {}
        if fingerprint is None:
            try:
                return await self.renewal.create(options)
            except CertManagerException as exc:
                return error_result(exc)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                return error_result(InternalError(f"Creating a certificate failed: {exc}"))
        return await self.renew(fingerprint, options)

    async def renew(self, fingerprint: str, options: dict = None) -> dict:
        fingerprint = normalize_fingerprint(fingerprint)
        certificate = self.get(fingerprint)
        if certificate is None:
            return error_result(NotFound(f"Certificate {fingerprint} not found"))
        try:
            return await self.renewal.renew(certificate, options or {})
        except CertManagerException as exc:
            return error_result(exc)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            return error_result(InternalError(f"Renewal of {certificate.name} failed: {exc}"))

    async def apply_idle_subjects_and_renew(self, fingerprint: str, options: dict = None) -> dict:
        """Issue a certificate carrying the idle SANs. They become active only once it is published."""
        return await self.renew_and_deploy(fingerprint, {**(options or {}), "includeIdle": True})

    async def publish_renewal(self, previous: Certificate, renewed: Certificate) -> None:
        """
        Swap the renewed entry in for the previous one, archive and persist as one step.

        Policy changes that landed while the certificate was being issued are
        taken from the current entry. When the catalog cannot be written the
        previous entry is put back and the error is raised.
        """
        async with self._entry_lock(previous.fingerprint):
            current = self._certificates.get(previous.fingerprint) or previous
            renewed.carry_policy(current)
            if renewed.fingerprint != previous.fingerprint:
                renewed.archive(current)
                self._certificates.pop(previous.fingerprint, None)
            renewed.touch()
            self._certificates[renewed.fingerprint] = renewed
            self.update_ca_relationships()
            try:
                await self.persist()
            except CertManagerException:
                self._certificates.pop(renewed.fingerprint, None)
                self._certificates[previous.fingerprint] = current
                self.update_ca_relationships()
                raise
            published = self._certificates[renewed.fingerprint]
        self._emit(renewed.fingerprint, "renew", published)

    async def publish_new(self, certificate: Certificate) -> None:
        async with self._entry_lock(certificate.fingerprint):
            certificate.touch()
            self._certificates[certificate.fingerprint] = certificate
            self.update_ca_relationships()
            await self.persist()
            published = self._certificates[certificate.fingerprint]
        self._emit(certificate.fingerprint, "create", published)

    @asynccontextmanager
    async def renewal_guard(self, fingerprint: str):
        """Only one renewal per fingerprint may be in flight."""
        if fingerprint in self._renewing:
            raise Conflict(f"A renewal of {fingerprint} is already running")
        self._renewing.add(fingerprint)
        try:
            yield
        finally:
            self._renewing.discard(fingerprint)

    async def deploy(self, fingerprint: str) -> dict:
        """Run the deploy actions of an entry."""
        certificate = self.get(fingerprint)
        if certificate is None:
            return error_result(NotFound(f"Certificate {fingerprint} not found"))
        if self.deployer is None:
            return {"success": True, "actionsExecuted": 0, "failures": [], "details": []}
        return await self.deployer.deploy(certificate, self)

    async def renew_and_deploy(self, fingerprint: str, options: dict = None) -> dict:
        result = await self.renew(fingerprint, options)
        if not result.get("success") or not self.config.renewal.deploy_after_renewal:
            return result

        new_fingerprint = result["renewalResult"]["fingerprint"]
        if self.get(new_fingerprint).config.deploy_actions:
            result["deployResult"] = await self.deploy(new_fingerprint)
        return result

    def chain_certificates(self, certificate: Certificate) -> list[Certificate]:
        """Issuers of certificate from the catalog, nearest first."""
        return self.crypto.build_chain(certificate, self.get_all())[1:]
