"""Encrypted passphrase vault."""
import json
import logging
import os
import shutil
import threading
from abc import abstractmethod, ABCMeta

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from lib.errors import IOFailure, Malformed
from lib.util import atomic_write, file_timestamp, normalize_fingerprint

vault_logger = logging.getLogger("certmgr_shared")

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class Vault(metaclass=ABCMeta):
    """Base class for secret stores keyed by certificate fingerprint."""

    @abstractmethod
    def has(self, fingerprint: str) -> bool:
        """Check whether a secret is stored without decrypting it."""

    @abstractmethod
    def get(self, fingerprint: str) -> str | None:
        """Get a secret from the vault."""

    @abstractmethod
    def put(self, fingerprint: str, secret: str) -> None:
        """Put a secret into the vault."""

    @abstractmethod
    def delete(self, fingerprint: str) -> bool:
        """Remove a secret from the vault."""


class PassphraseVault(Vault):
    """AES-256-GCM encrypted store of private key passphrases.

    The store file holds ``nonceHex:tagHex:ciphertextHex`` of a JSON object
    mapping fingerprints to passphrases. The 32 byte key lives in a separate
    owner-only file. Only the set of fingerprints is kept in memory after
    loading; plaintext is materialized per fingerprint on first ``get``.
    """

    KEY_FILE = ".encryption-key"
    STORE_FILE = ".passphrases.enc"

    def __init__(self, config_dir: str):
        self.config_dir = config_dir
        self.key_path = os.path.join(config_dir, self.KEY_FILE)
        self.backup_key_path = f"{self.key_path}.bak"
        self.store_path = os.path.join(config_dir, self.STORE_FILE)

        self._lock = threading.RLock()
        self._fingerprints: set[str] = set()
        self._plaintext: dict[str, str] = {}

        os.makedirs(config_dir, exist_ok=True)
        self._key = self._load_or_create_key()
        self._load_metadata()

    @property
    def fingerprints(self) -> set[str]:
        with self._lock:
            return set(self._fingerprints)

    def _load_or_create_key(self) -> bytes:
        if os.path.exists(self.key_path):
            return self._read_key(self.key_path)

        vault_logger.info("Creating new passphrase encryption key at %s", self.key_path)
        key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
        atomic_write(self.key_path, key, mode=0o600)
        return key

    @staticmethod
    def _read_key(path: str) -> bytes:
        with open(path, "rb") as key_file:
            key = key_file.read()
        if len(key) == KEY_SIZE:
            return key
        # hex encoded keys written by older versions
        try:
            decoded = bytes.fromhex(key.decode("ascii").strip())
        except ValueError as exc:
            raise Malformed("Encryption key file is not 32 bytes", path=path) from exc
        if len(decoded) != KEY_SIZE:
            raise Malformed("Encryption key file is not 32 bytes", path=path)
        return decoded

    @staticmethod
    def _encrypt(key: bytes, store: dict[str, str]) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(key).encrypt(nonce, json.dumps(store).encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    @staticmethod
    def _decrypt(key: bytes, content: str) -> dict[str, str]:
        try:
            nonce_hex, tag_hex, ciphertext_hex = content.strip().split(":")
            nonce, tag = bytes.fromhex(nonce_hex), bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError as exc:
            raise Malformed(f"Passphrase store is not in nonce:tag:ciphertext form: {exc}") from exc

        plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
        store = json.loads(plaintext.decode("utf-8"))
        if not isinstance(store, dict):
            raise Malformed("Passphrase store does not contain an object")
        return store

    def _read_store(self) -> dict[str, str]:
        """Decrypt the whole store, falling back to the backup key after an interrupted rotation."""
        if not os.path.exists(self.store_path):
            return {}

        with open(self.store_path, "r", encoding="utf-8") as store_file:
            content = store_file.read()
        if not content.strip():
            return {}

        try:
            return self._decrypt(self._key, content)
        except InvalidTag:
            if not os.path.exists(self.backup_key_path):
                raise

        vault_logger.warning("Passphrase store does not match the current key, trying the backup key")
        store = self._decrypt(self._read_key(self.backup_key_path), content)
        self._write_store(store)
        return store

    def _write_store(self, store: dict[str, str], key: bytes = None) -> None:
        try:
            atomic_write(self.store_path, self._encrypt(key or self._key, store), mode=0o600)
        except OSError as exc:
            raise IOFailure(f"Failed to write passphrase store: {exc}", path=self.store_path) from exc

    def _quarantine_store(self) -> None:
        if os.path.exists(self.store_path):
            corrupt_path = f"{self.store_path}.corrupt-{file_timestamp()}"
            shutil.copy2(self.store_path, corrupt_path)
            vault_logger.error("Unreadable passphrase store preserved at %s", corrupt_path)

    def _read_store_for_write(self) -> dict[str, str]:
        try:
            return self._read_store()
        except (InvalidTag, Malformed, ValueError) as exc:
            vault_logger.error("Passphrase store cannot be decrypted, starting a new one: %s", exc)
            self._quarantine_store()
            return {}

    def _load_metadata(self):
        with self._lock:
            try:
                store = self._read_store()
            except (InvalidTag, Malformed, ValueError, OSError) as exc:
                vault_logger.error("Error loading passphrases: %s", exc)
                self._fingerprints = set()
                return
            self._fingerprints = set(store)
            vault_logger.info("Loaded passphrase metadata for %s certificates", len(self._fingerprints))

    def has(self, fingerprint: str) -> bool:
        if not fingerprint:
            return False
        with self._lock:
            return normalize_fingerprint(fingerprint) in self._fingerprints

    def get(self, fingerprint: str) -> str | None:
        if not fingerprint:
            return None
        fingerprint = normalize_fingerprint(fingerprint)
        with self._lock:
            if fingerprint not in self._fingerprints:
                return None
            if fingerprint not in self._plaintext:
                try:
                    store = self._read_store()
                except (InvalidTag, Malformed, ValueError, OSError) as exc:
                    vault_logger.error("Error reading passphrase for %s: %s", fingerprint, exc)
                    return None
                if fingerprint not in store:
                    return None
                self._plaintext[fingerprint] = store[fingerprint]
            return self._plaintext[fingerprint]

    def put(self, fingerprint: str, secret: str) -> None:
        fingerprint = normalize_fingerprint(fingerprint)
        if not fingerprint:
            raise Malformed("Cannot store a passphrase without a fingerprint")
        with self._lock:
            store = self._read_store_for_write()
            store[fingerprint] = secret
            self._write_store(store)
            self._fingerprints = set(store)
            self._plaintext[fingerprint] = secret
            vault_logger.info("Stored passphrase for %s", fingerprint)

    def delete(self, fingerprint: str) -> bool:
        fingerprint = normalize_fingerprint(fingerprint)
        with self._lock:
            if fingerprint not in self._fingerprints:
                return False
            store = self._read_store_for_write()
            removed = store.pop(fingerprint, None) is not None
            self._write_store(store)
            self._fingerprints = set(store)
            self._plaintext.pop(fingerprint, None)
            if removed:
                vault_logger.info("Deleted passphrase for %s", fingerprint)
            return removed

    def import_legacy(self, passphrases: dict[str, str]) -> int:
        """Import a plain fingerprint -> passphrase mapping, skipping empty values."""
        entries = {
            normalize_fingerprint(fingerprint): passphrase
            for fingerprint, passphrase in (passphrases or {}).items()
            if fingerprint and passphrase
        }
        if not entries:
            return 0
        with self._lock:
            store = self._read_store_for_write()
            store.update(entries)
            self._write_store(store)
            self._fingerprints = set(store)
        vault_logger.info("Imported %s legacy passphrases", len(entries))
        return len(entries)

    def rotate_key(self) -> bool:
        """Re-encrypt the store under a fresh key, keeping the old key as .bak."""
        with self._lock:
            try:
                store = self._read_store()
            except (InvalidTag, Malformed, ValueError, OSError) as exc:
                vault_logger.error("Cannot rotate key, passphrase store is unreadable: %s", exc)
                return False

            new_key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
            try:
                shutil.copy2(self.key_path, self.backup_key_path)
                os.chmod(self.backup_key_path, 0o600)
                # the old store stays readable through the .bak key until both renames are done
                atomic_write(self.key_path, new_key, mode=0o600)
                self._key = new_key
                self._write_store(store, new_key)
            except (OSError, IOFailure) as exc:
                vault_logger.error("Key rotation failed: %s", exc)
                return False

            self._fingerprints = set(store)
            vault_logger.info("Rotated passphrase encryption key")
            return True
