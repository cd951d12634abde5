"""Issuing and renewing certificates without exposing partial writes."""
import asyncio
import os
import shutil
from typing import TYPE_CHECKING

from certmgr.certificate import Certificate, CertificatePolicy
from certmgr.config import certmgr_logger
from certmgr.crypto import CertificateRequest, IssuedCertificate, SigningCA, CERT_TYPES
from lib.errors import (
    CertManagerException,
    Conflict,
    IOFailure,
    Malformed,
    PassphraseRequired,
    SigningCANotFound,
    SigningCAUnusable,
)
from lib.util import atomic_copy, atomic_write, normalize_fingerprint, iso_timestamp

if TYPE_CHECKING:
    from certmgr.catalog import CertificateCatalog

FORMAT_EXTENSIONS = (".crt", ".pem", ".der", ".p12", ".pfx")
PUBLISHED_KEYS = ("crt", "key", "csr")


class RenewalEngine:
    """
    Issues certificates into a temporary directory and publishes them.

    Renewal keeps every encoding that existed next to the certificate before
    (PEM, DER, PKCS#12). Nothing at a destination path is touched until the
    provider produced a complete temporary certificate, and a failed publish
    puts the previous bytes back.
    """

    def __init__(self, catalog: 'CertificateCatalog'):
        self.catalog = catalog

    @property
    def crypto(self):
        return self.catalog.crypto

    @property
    def vault(self):
        return self.catalog.vault

    @property
    def config(self):
        return self.catalog.config

    @staticmethod
    def snapshot_formats(cert_path: str) -> dict[str, str]:
        """Map each extension present next to the certificate to its path."""
        base = os.path.splitext(cert_path)[0]
        return {
            extension: f"{base}{extension}"
            for extension in FORMAT_EXTENSIONS
            if os.path.exists(f"{base}{extension}")
        }

    def _key_passphrase(self, certificate: Certificate) -> str | None:
        passphrase = self.vault.get(certificate.fingerprint) if certificate.fingerprint else None
        if passphrase is None and certificate.needs_passphrase:
            raise PassphraseRequired(
                f"Private key of {certificate.name} is encrypted and no passphrase is stored",
                path=certificate.key_path
            )
        return passphrase

    def resolve_signing_ca(self, certificate: Certificate, cert_type: str) -> SigningCA | None:
        """Find the CA that signs certificate, or None when it is self-signed."""
        if cert_type == "rootCA":
            return None

        policy = certificate.config
        if not policy.sign_with_ca or not policy.ca_fingerprint:
            if cert_type == "intermediateCA" and not certificate.self_signed:
                raise SigningCANotFound(f"Intermediate CA {certificate.name} needs a signing CA")
            return None

        ca = self.catalog.get(policy.ca_fingerprint)
        if ca is None:
            raise SigningCANotFound(f"Signing CA {policy.ca_fingerprint} is not in the catalog")
        if not ca.is_ca:
            raise SigningCAUnusable(f"{ca.name} is not a CA", path=ca.cert_path)
        if not ca.key_path or not os.path.exists(ca.key_path):
            raise SigningCAUnusable(f"Private key of signing CA {ca.name} is missing", path=ca.key_path)

        if not ca.passphrase_checked:
            ca = ca.copy()
            ca.needs_passphrase = self.crypto.is_key_encrypted(ca.key_path)
        passphrase = self.vault.get(ca.fingerprint)
        if ca.needs_passphrase and passphrase is None:
            raise PassphraseRequired(
                f"Private key of signing CA {ca.name} is encrypted and no passphrase is stored",
                path=ca.key_path
            )
        return SigningCA(cert_path=ca.cert_path, key_path=ca.key_path, passphrase=passphrase)

    def _defaults(self, cert_type: str) -> tuple[int, int]:
        crypto = self.config.crypto
        if cert_type in ("rootCA", "intermediateCA"):
            return crypto.ca_days, crypto.ca_key_size
        return crypto.default_days, crypto.default_key_size

    def build_request(self, certificate: Certificate, options: dict, passphrase: str = None,
                      signing_ca: SigningCA = None) -> CertificateRequest:
        cert_type = certificate.cert_type
        default_days, default_key_size = self._defaults(cert_type)
        is_ca = cert_type in ("rootCA", "intermediateCA")
        path_len = options.get("pathLengthConstraint", certificate.path_len_constraint)
        if cert_type == "rootCA":
            path_len = None

        return CertificateRequest(
            cert_path=certificate.cert_path,
            key_path=certificate.key_path,
            subject=options.get("subject") or certificate.subject,
            name=certificate.name,
            domains=list(certificate.domains),
            ips=list(certificate.ips),
            idle_domains=list(certificate.idle_domains),
            idle_ips=list(certificate.idle_ips),
            include_idle=bool(options.get("includeIdle", False)),
            days=int(options.get("days") or default_days),
            key_type=options.get("keyType") or certificate.key_type or "RSA",
            key_size=int(options.get("keySize") or certificate.key_size or default_key_size),
            is_ca=is_ca,
            path_length_constraint=path_len,
            passphrase=passphrase,
            signing_ca=signing_ca,
        )

    def _ignore_paths(self, issued: IssuedCertificate, paths: list[str]) -> None:
        temp_paths = [issued.temp_cert_path, issued.temp_key_path, issued.temp_csr_path, issued.temp_ext_path]
        self.catalog.watcher.ignore_file_paths(
            [path for path in temp_paths + paths if path],
            self.config.renewal.ignore_window_ms
        )

    @staticmethod
    def _read_originals(paths: list[str]) -> dict[str, bytes | None]:
        originals = {}
        for path in paths:
            if os.path.exists(path):
                with open(path, "rb") as original:
                    originals[path] = original.read()
            else:
                originals[path] = None
        return originals

    @staticmethod
    def _restore_originals(originals: dict[str, bytes | None]) -> None:
        for path, data in originals.items():
            try:
                if data is None:
                    if os.path.exists(path):
                        os.unlink(path)
                else:
                    atomic_write(path, data, mode=os.stat(path).st_mode & 0o777 if os.path.exists(path) else None)
            except OSError as exc:
                certmgr_logger.error("Could not restore %s after a failed renewal: %s", path, exc)

    def publish(self, issued: IssuedCertificate, certificate: Certificate) -> list[str]:
        """Copy the issued artifacts over their final paths. Returns the published paths."""
        targets = []
        for key, temp_path in (("crt", issued.temp_cert_path), ("key", issued.temp_key_path),
                               ("csr", issued.temp_csr_path)):
            if not temp_path or not os.path.exists(temp_path):
                continue
            final_path = certificate.paths.get(key) or Certificate.potential_paths(
                certificate.cert_dir, certificate.base_name)[key]
            targets.append((key, temp_path, final_path))

        for _, _, final_path in targets:
            os.makedirs(os.path.dirname(final_path), exist_ok=True)
        for key, temp_path, final_path in targets:
            atomic_copy(temp_path, final_path, mode=0o600 if key == "key" else None)
            certificate.paths[key] = final_path
        return [final_path for _, _, final_path in targets]

    def restore_formats(self, certificate: Certificate, snapshot: dict[str, str], passphrase: str = None,
                        chain_paths: list[str] = None) -> dict:
        """Re-encode the new certificate into every format seen before renewal."""
        restored, failed = [], []
        for extension, path in snapshot.items():
            if extension == ".crt" or path == certificate.cert_path:
                continue
            fmt = extension.lstrip(".")
            try:
                self.crypto.convert(
                    certificate.cert_path, fmt, output_path=path, key_path=certificate.key_path,
                    passphrase=passphrase, chain_paths=chain_paths
                )
                certificate.paths[fmt] = path
                restored.append({"format": fmt, "path": path})
            except CertManagerException as exc:
                certmgr_logger.error("Could not restore %s format of %s: %s", fmt, certificate.name, exc)
                failed.append({"format": fmt, "path": path, "error": exc.message})
        return {"restored": restored, "failed": failed}

    def _issue_and_publish(self, certificate: Certificate, request: CertificateRequest,
                           passphrase: str = None) -> tuple[Certificate, dict, dict[str, bytes | None]]:
        snapshot = self.snapshot_formats(certificate.cert_path)
        protected = [certificate.potential_paths(certificate.cert_dir, certificate.base_name)[key]
                     for key in PUBLISHED_KEYS]
        protected += [path for path in snapshot.values() if path not in protected]

        issued = self.crypto.create_certificate(request)
        try:
            self._ignore_paths(issued, protected + [certificate.paths.get(key) for key in PUBLISHED_KEYS])
            originals = self._read_originals(
                list(dict.fromkeys(protected + [certificate.paths[key] for key in PUBLISHED_KEYS
                                                if certificate.paths.get(key)]))
            )
            if any(data is not None for data in originals.values()):
                self.catalog.backup_artifacts(certificate, "renewal")

            renewed = certificate.copy()
            try:
                self.publish(issued, renewed)
                info = self.crypto.parse_certificate(renewed.cert_path)
                if info.fingerprint != issued.info.fingerprint:
                    raise IOFailure("Published certificate does not match the issued one", path=renewed.cert_path)
                renewed.apply_info(info)
                chain_paths = [ca.cert_path for ca in self.catalog.chain_certificates(renewed) if ca.cert_path]
                format_restoration = self.restore_formats(renewed, snapshot, passphrase, chain_paths)
            except Exception as exc:
                self._restore_originals(originals)
                if isinstance(exc, OSError):
                    raise IOFailure(f"Failed to publish certificate {certificate.name}: {exc}") from exc
                raise
            return renewed, format_restoration, originals
        finally:
            shutil.rmtree(issued.temp_dir, ignore_errors=True)

    def _inspect_key(self, certificate: Certificate) -> None:
        if certificate.key_path and os.path.exists(certificate.key_path):
            certificate.needs_passphrase = self.crypto.is_key_encrypted(certificate.key_path)
        certificate.passphrase_checked = True

    def _move_passphrase(self, previous: str, current: str) -> None:
        """Store the key passphrase under the new fingerprint once the entry is persisted."""
        if not previous or previous == current:
            return
        try:
            stored = self.vault.get(previous)
            if stored is None:
                return
            self.vault.put(current, stored)
            self.vault.delete(previous)
        except CertManagerException as exc:
            certmgr_logger.error("Passphrase of %s stays stored under %s: %s", current, previous, exc.message)

    async def renew(self, certificate: Certificate, options: dict) -> dict:
        """Replace certificate with a newly issued one, keeping its formats and policy."""
        if not certificate.cert_path:
            raise Malformed(f"Certificate {certificate.name} has no certificate path")

        async with self.catalog.renewal_guard(certificate.fingerprint):
            certmgr_logger.info("Renewing certificate %s (%s)", certificate.name, certificate.fingerprint)
            signing_ca = self.resolve_signing_ca(certificate, certificate.cert_type)
            passphrase = self._key_passphrase(certificate)
            request = self.build_request(certificate, options, passphrase, signing_ca)

            renewed, format_restoration, originals = await asyncio.to_thread(
                self._issue_and_publish, certificate, request, passphrase
            )
            try:
                await asyncio.to_thread(self._inspect_key, renewed)
                await self.catalog.publish_renewal(certificate, renewed)
            except Exception as exc:
                await asyncio.to_thread(self._restore_originals, originals)
                if isinstance(exc, OSError):
                    raise IOFailure(f"Failed to record renewal of {certificate.name}: {exc}") from exc
                raise
            self._move_passphrase(certificate.fingerprint, renewed.fingerprint)

        certmgr_logger.info("Renewed %s: %s -> %s", renewed.name, certificate.fingerprint, renewed.fingerprint)
        return {
            "success": True,
            "renewalResult": {
                "fingerprint": renewed.fingerprint,
                "oldFingerprint": certificate.fingerprint,
                "name": renewed.name,
                "validFrom": iso_timestamp(renewed.valid_from),
                "validTo": iso_timestamp(renewed.valid_to),
                "paths": dict(renewed.paths),
            },
            "formatRestoration": format_restoration,
        }

    def new_entry(self, options: dict) -> Certificate:
        """Build a catalog entry for a certificate that does not exist yet."""
        name = (options.get("name") or options.get("commonName") or options.get("cn") or "").strip()
        if not name:
            raise Malformed("A new certificate needs a name")

        cert_type = options.get("certType") or "standard"
        if cert_type not in CERT_TYPES or cert_type == "acme":
            raise Malformed(f"Cannot issue certificates of type '{cert_type}'")

        certificate = Certificate.new(self.config.certs_dir, name, description=options.get("description"))
        certificate.cert_type = cert_type
        certificate.is_ca = cert_type in ("rootCA", "intermediateCA")
        certificate.subject = options.get("subject") or f"CN={options.get('commonName') or name}"
        certificate.key_type = options.get("keyType") or "RSA"
        certificate.key_size = options.get("keySize")
        certificate.path_len_constraint = options.get("pathLengthConstraint")

        sans = options.get("sans") or {}
        for domain in (options.get("domains") or sans.get("domains") or []):
            certificate.add_domain(domain, idle=False)
        for ip in (options.get("ips") or sans.get("ips") or []):
            certificate.add_ip(ip, idle=False)

        policy = dict(options.get("config") or {})
        for key in ("autoRenew", "renewDaysBeforeExpiry", "signWithCA", "caFingerprint", "deployActions"):
            if key in options and key not in policy:
                policy[key] = options[key]
        certificate.config = CertificatePolicy.from_json(policy)
        if certificate.config.ca_fingerprint:
            certificate.config.ca_fingerprint = normalize_fingerprint(certificate.config.ca_fingerprint)
            certificate.config.sign_with_ca = True
        return certificate

    async def create(self, options: dict) -> dict:
        certificate = self.new_entry(options)
        if os.path.exists(certificate.cert_path):
            raise Conflict(f"A certificate already exists at {certificate.cert_path}", path=certificate.cert_path)

        certmgr_logger.info("Creating %s certificate %s", certificate.cert_type, certificate.name)
        passphrase = options.get("passphrase") or None
        signing_ca = self.resolve_signing_ca(certificate, certificate.cert_type)
        request = self.build_request(certificate, options, passphrase, signing_ca)

        originals = self._read_originals([path for path in certificate.paths.values() if path])
        issued = await asyncio.to_thread(self.crypto.create_certificate, request)
        try:
            self._ignore_paths(issued, [certificate.paths.get(key) for key in PUBLISHED_KEYS])
            try:
                published = await asyncio.to_thread(self.publish, issued, certificate)
            except OSError as exc:
                self._restore_originals(originals)
                raise IOFailure(f"Failed to publish certificate {certificate.name}: {exc}") from exc
        finally:
            shutil.rmtree(issued.temp_dir, ignore_errors=True)

        certificate.apply_info(issued.info)
        certificate.paths = {key: path for key, path in certificate.paths.items() if path in published}
        if passphrase:
            self.vault.put(certificate.fingerprint, passphrase)
        certificate.has_passphrase = passphrase is not None
        await asyncio.to_thread(self._inspect_key, certificate)
        await self.catalog.publish_new(certificate)

        certmgr_logger.info("Created certificate %s (%s)", certificate.name, certificate.fingerprint)
        return {
            "success": True,
            "renewalResult": {
                "fingerprint": certificate.fingerprint,
                "oldFingerprint": None,
                "name": certificate.name,
                "validFrom": iso_timestamp(certificate.valid_from),
                "validTo": iso_timestamp(certificate.valid_to),
                "paths": dict(certificate.paths),
            },
            "formatRestoration": {"restored": [], "failed": []},
            "certificate": certificate.to_api_response(),
        }
