# Licensed under GPL 3: https://www.gnu.org/licenses/gpl-3.0.html
"""Crypto module backed by the cryptography library."""
import ipaddress
import os
import re
import secrets
import shutil
import tempfile
from datetime import timedelta

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed25519, rsa
from cryptography.hazmat.primitives.serialization import pkcs7, pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID

from certmgr.crypto import (
    CertificateInfo,
    CertificateRequest,
    CONVERTIBLE_FORMATS,
    CryptoProvider,
    IssuedCertificate,
)
from certmgr.crypto.dn import build_name, common_name, format_name, normalize_dn
from lib.errors import (
    Malformed,
    NotFound,
    PassphraseIncorrect,
    PassphraseRequired,
    SigningCAUnusable,
    IOFailure,
)
from lib.util import atomic_write, is_valid_ip, sanitize_name, utc_now
from modules import module_logger
from modules.pyca.config import PycaConfig

PEM_CERT_BLOCK = re.compile(rb'-----BEGIN CERTIFICATE-----[\s\S]+?-----END CERTIFICATE-----')
HOSTNAME = re.compile(r'^(\*\.)?([a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?\.)+[a-z0-9\-]{2,63}$')
EC_CURVES = {256: ec.SECP256R1, 384: ec.SECP384R1, 521: ec.SECP521R1}
HASHES = {"sha256": hashes.SHA256, "sha384": hashes.SHA384, "sha512": hashes.SHA512}


def _read(path: str) -> bytes:
    try:
        with open(path, "rb") as file:
            return file.read()
    except FileNotFoundError as exc:
        raise NotFound(f"File does not exist: {path}", path=path) from exc
    except OSError as exc:
        raise IOFailure(f"Failed to read {path}: {exc}", path=path) from exc


class PycaProvider(CryptoProvider):
    """Crypto provider implemented on top of the cryptography library."""

    configClass = PycaConfig
    config: PycaConfig

    @property
    def signature_hash(self) -> hashes.HashAlgorithm:
        return HASHES[self.config.signature_hash]()

    def load_certificate(self, path: str) -> tuple[x509.Certificate, str]:
        """Load the first certificate of a PEM or DER file and report its encoding."""
        data = _read(path)
        try:
            match = PEM_CERT_BLOCK.search(data)
            if match:
                return x509.load_pem_x509_certificate(match.group(0)), "PEM"
            if b"-----BEGIN" in data:
                raise ValueError("no CERTIFICATE block")
            return x509.load_der_x509_certificate(data), "DER"
        except ValueError as exc:
            raise Malformed(f"Unable to parse certificate {path}: {exc}", path=path) from exc

    def load_chain(self, paths: list[str]) -> list[x509.Certificate]:
        chain = []
        for path in paths or []:
            data = _read(path)
            blocks = PEM_CERT_BLOCK.findall(data)
            if blocks:
                chain.extend(x509.load_pem_x509_certificate(block) for block in blocks)
            else:
                chain.append(self.load_certificate(path)[0])
        return chain

    def load_private_key(self, path: str, passphrase: str = None):
        """Load a PEM or DER key, mapping decryption failures to passphrase errors."""
        data = _read(path)
        password = passphrase.encode("utf-8") if passphrase else None
        loader = (
            serialization.load_pem_private_key
            if b"-----BEGIN" in data else serialization.load_der_private_key
        )
        try:
            return loader(data, password=password)
        except TypeError as exc:
            if password is None:
                raise PassphraseRequired(f"Private key is encrypted: {path}", path=path) from exc
            # a passphrase was supplied for a key that is not encrypted
            return loader(data, password=None)
        except (ValueError, UnsupportedAlgorithm) as exc:
            if password is not None:
                raise PassphraseIncorrect(f"Bad decrypt for private key {path}", path=path) from exc
            raise Malformed(f"Unable to parse private key {path}: {exc}", path=path) from exc

    def parse_certificate(self, path: str) -> CertificateInfo:
        cert, encoding = self.load_certificate(path)
        subject = format_name(cert.subject)
        issuer = format_name(cert.issuer)

        ski = None
        aki = None
        is_ca = False
        path_len = None
        domains = set()
        ips = set()
        for extension in cert.extensions:
            value = extension.value
            if isinstance(value, x509.SubjectKeyIdentifier):
                ski = value.digest.hex().upper()
            elif isinstance(value, x509.AuthorityKeyIdentifier) and value.key_identifier:
                aki = value.key_identifier.hex().upper()
            elif isinstance(value, x509.BasicConstraints):
                is_ca = value.ca
                path_len = value.path_length if value.ca else None
            elif isinstance(value, x509.SubjectAlternativeName):
                domains.update(name.strip().lower() for name in value.get_values_for_type(x509.DNSName))
                ips.update(str(ip) for ip in value.get_values_for_type(x509.IPAddress))

        cn = common_name(subject)
        if cn and HOSTNAME.match(cn.strip().lower()):
            domains.add(cn.strip().lower())
        elif cn and is_valid_ip(cn.strip()):
            ips.add(cn.strip())

        key_type, key_size = self._public_key_details(cert.public_key())
        self_signed = normalize_dn(subject) == normalize_dn(issuer)

        info = CertificateInfo(
            fingerprint=cert.fingerprint(hashes.SHA256()).hex().upper(),
            subject=subject,
            issuer=issuer,
            valid_from=cert.not_valid_before_utc,
            valid_to=cert.not_valid_after_utc,
            serial_number=format(cert.serial_number, "X"),
            common_name=cn,
            issuer_cn=common_name(issuer),
            subject_key_identifier=ski,
            authority_key_identifier=aki,
            signature_algorithm=getattr(cert.signature_algorithm_oid, "_name", cert.signature_algorithm_oid.dotted_string),
            key_type=key_type,
            key_size=key_size,
            is_ca=is_ca,
            path_len_constraint=path_len,
            self_signed=self_signed,
            is_root_ca=is_ca and self_signed and path_len is None,
            domains=sorted(domains),
            ips=sorted(ips),
            encoding=encoding,
        )
        module_logger.debug("Parsed certificate %s (%s)", path, info.fingerprint)
        return info

    @staticmethod
    def _public_key_details(public_key) -> tuple[str, int]:
        if isinstance(public_key, rsa.RSAPublicKey):
            return "RSA", public_key.key_size
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            return "EC", public_key.curve.key_size
        if isinstance(public_key, dsa.DSAPublicKey):
            return "DSA", public_key.key_size
        if isinstance(public_key, ed25519.Ed25519PublicKey):
            return "Ed25519", 256
        return None, None

    def _new_key(self, bits: int, key_type: str):
        if (key_type or "RSA").upper() == "EC":
            curve = EC_CURVES.get(bits) or getattr(ec, self.config.ec_curve.upper(), ec.SECP256R1)
            return ec.generate_private_key(curve())
        return rsa.generate_private_key(public_exponent=65537, key_size=bits or 2048)

    def generate_private_key(self, path: str, bits: int = 2048, key_type: str = "RSA",
                             encrypt: bool = False, passphrase: str = None) -> None:
        module_logger.info("Generating %s private key (%s bits) at %s", key_type, bits, path)
        if encrypt and not passphrase:
            raise PassphraseRequired("Cannot encrypt a private key without a passphrase", path=path)

        key = self._new_key(bits, key_type)
        encryption = (
            serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
            if encrypt else serialization.NoEncryption()
        )
        pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )
        try:
            atomic_write(path, pem, mode=0o600)
        except OSError as exc:
            raise IOFailure(f"Failed to write private key: {exc}", path=path) from exc

    def is_key_encrypted(self, path: str) -> bool:
        data = _read(path)
        if b"-----BEGIN" in data and b"ENCRYPTED" in data:
            return True

        loader = (
            serialization.load_pem_private_key
            if b"-----BEGIN" in data else serialization.load_der_private_key
        )
        try:
            loader(data, password=None)
            return False
        except TypeError:
            return True
        except (ValueError, UnsupportedAlgorithm) as exc:
            module_logger.warning("Could not determine whether %s is encrypted, assuming it is: %s", path, exc)
            return True

    def _san_extension(self, domains: list[str], ips: list[str]) -> x509.SubjectAlternativeName | None:
        names = [x509.DNSName(domain) for domain in domains]
        names += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ips]
        return x509.SubjectAlternativeName(names) if names else None

    def _next_serial(self, serial_path: str) -> int:
        """Advance the CA serial file, creating it with a random value if absent."""
        try:
            with open(serial_path, "r", encoding="utf-8") as serial_file:
                serial = int(serial_file.read().strip(), 16) + 1
        except FileNotFoundError:
            serial = int.from_bytes(secrets.token_bytes(16), "big") >> 1
        except ValueError as exc:
            raise SigningCAUnusable(f"Serial file is corrupt: {exc}", path=serial_path) from exc

        atomic_write(serial_path, f"{serial:X}\n")
        return serial

    def _load_signing_ca(self, request: CertificateRequest):
        signing_ca = request.signing_ca
        try:
            ca_cert, _encoding = self.load_certificate(signing_ca.cert_path)
            ca_key = self.load_private_key(signing_ca.key_path, signing_ca.passphrase)
        except PassphraseRequired:
            raise
        except (NotFound, Malformed, IOFailure) as exc:
            raise SigningCAUnusable(f"Signing CA cannot be loaded: {exc}", path=exc.path) from exc

        try:
            constraints = ca_cert.extensions.get_extension_for_class(x509.BasicConstraints).value
        except x509.ExtensionNotFound:
            constraints = None
        if constraints is None or not constraints.ca:
            raise SigningCAUnusable("Signing certificate is not a CA", path=signing_ca.cert_path)

        if ca_key.public_key().public_bytes(
                serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        ) != ca_cert.public_key().public_bytes(
                serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        ):
            raise SigningCAUnusable("Signing CA key does not match its certificate", path=signing_ca.key_path)

        return ca_cert, ca_key

    @staticmethod
    def subject_name(request: CertificateRequest, name: str) -> x509.Name:
        try:
            return build_name(request.subject, fallback_cn=name)
        except ValueError as exc:
            raise Malformed(f"Invalid subject for '{name}': {exc}", path=request.cert_path) from exc

    def create_certificate(self, request: CertificateRequest) -> IssuedCertificate:
        name = request.name or os.path.splitext(os.path.basename(request.cert_path))[0]
        module_logger.info("Creating certificate '%s'", name)
        base = sanitize_name(os.path.splitext(os.path.basename(request.cert_path))[0] or name)
        temp_dir = tempfile.mkdtemp(prefix="certmgr-")
        temp_key_path = os.path.join(temp_dir, f"{base}.key")
        temp_csr_path = os.path.join(temp_dir, f"{base}.csr")
        temp_cert_path = os.path.join(temp_dir, f"{base}.crt")

        try:
            if request.key_path and os.path.exists(request.key_path):
                key = self.load_private_key(request.key_path, request.passphrase)
                shutil.copy2(request.key_path, temp_key_path)
            else:
                self.generate_private_key(
                    temp_key_path,
                    bits=request.key_size,
                    key_type=request.key_type,
                    encrypt=bool(request.passphrase),
                    passphrase=request.passphrase,
                )
                key = self.load_private_key(temp_key_path, request.passphrase)

            subject = self.subject_name(request, name)
            san = self._san_extension(request.san_domains, request.san_ips)

            csr_builder = x509.CertificateSigningRequestBuilder().subject_name(subject)
            if san:
                csr_builder = csr_builder.add_extension(san, critical=False)
            csr = csr_builder.sign(key, self.signature_hash)
            atomic_write(temp_csr_path, csr.public_bytes(serialization.Encoding.PEM))

            now = utc_now()
            builder = (
                x509.CertificateBuilder()
                .subject_name(csr.subject)
                .public_key(csr.public_key())
                .not_valid_before(now - timedelta(minutes=1))
                .not_valid_after(now + timedelta(days=request.days))
                .add_extension(x509.SubjectKeyIdentifier.from_public_key(csr.public_key()), critical=False)
            )
            builder = self._add_usage_extensions(builder, request)
            if san:
                builder = builder.add_extension(san, critical=False)

            if request.signing_ca:
                ca_cert, ca_key = self._load_signing_ca(request)
                try:
                    ca_ski = ca_cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value
                    aki = x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski)
                except x509.ExtensionNotFound:
                    aki = x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_cert.public_key())
                builder = (
                    builder.issuer_name(ca_cert.subject)
                    .serial_number(self._next_serial(request.signing_ca.serial_path))
                    .add_extension(aki, critical=False)
                )
                signing_key = ca_key
            else:
                builder = (
                    builder.issuer_name(csr.subject)
                    .serial_number(x509.random_serial_number())
                    .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(key.public_key()), critical=False)
                )
                signing_key = key

            cert = builder.sign(signing_key, self.signature_hash)
            atomic_write(temp_cert_path, cert.public_bytes(serialization.Encoding.PEM))
            info = self.parse_certificate(temp_cert_path)
        except BaseException:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise

        module_logger.info("Issued certificate '%s' with fingerprint %s", name, info.fingerprint)
        return IssuedCertificate(
            temp_dir=temp_dir,
            temp_cert_path=temp_cert_path,
            temp_key_path=temp_key_path,
            temp_csr_path=temp_csr_path,
            info=info,
        )

    @staticmethod
    def _add_usage_extensions(builder, request: CertificateRequest):
        if request.is_ca:
            return (
                builder.add_extension(
                    x509.BasicConstraints(ca=True, path_length=request.path_length_constraint), critical=True
                )
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True, content_commitment=False, key_encipherment=False,
                        data_encipherment=False, key_agreement=False, key_cert_sign=True,
                        crl_sign=True, encipher_only=False, decipher_only=False,
                    ),
                    critical=True,
                )
            )
        return (
            builder.add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=False)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True, content_commitment=False, key_encipherment=True,
                    data_encipherment=False, key_agreement=False, key_cert_sign=False,
                    crl_sign=False, encipher_only=False, decipher_only=False,
                ),
                critical=False,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
        )

    def convert(self, cert_path: str, fmt: str, output_path: str = None, key_path: str = None,
                passphrase: str = None, chain_paths: list[str] = None) -> str:
        fmt = fmt.lower().lstrip(".")
        if fmt not in CONVERTIBLE_FORMATS:
            raise Malformed(f"Unsupported output format: {fmt}", path=cert_path)

        output_path = output_path or f"{os.path.splitext(cert_path)[0]}.{fmt}"
        cert, _encoding = self.load_certificate(cert_path)
        module_logger.debug("Converting %s to %s at %s", cert_path, fmt, output_path)
        mode = None

        if fmt == "pem":
            data = cert.public_bytes(serialization.Encoding.PEM)
        elif fmt in ("der", "cer"):
            data = cert.public_bytes(serialization.Encoding.DER)
        elif fmt == "p7b":
            certs = [cert] + self.load_chain(chain_paths)
            data = pkcs7.serialize_certificates(certs, serialization.Encoding.PEM)
        else:
            if not key_path or not os.path.exists(key_path):
                raise NotFound(f"{fmt.upper()} output requires a private key", path=key_path or cert_path)
            key = self.load_private_key(key_path, passphrase)
            encryption = (
                serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
                if passphrase else serialization.NoEncryption()
            )
            friendly_name = None
            if self.config.p12_friendly_name:
                cn = common_name(format_name(cert.subject))
                friendly_name = cn.encode("utf-8") if cn else None
            data = pkcs12.serialize_key_and_certificates(
                friendly_name, key, cert, self.load_chain(chain_paths) or None, encryption
            )
            mode = 0o600

        try:
            atomic_write(output_path, data, mode=mode)
        except OSError as exc:
            raise IOFailure(f"Failed to write {fmt} output: {exc}", path=output_path) from exc
        return output_path

    def verify_certificate_key_pair(self, cert_path: str, key_path: str, passphrase: str = None) -> bool:
        cert, _encoding = self.load_certificate(cert_path)
        key = self.load_private_key(key_path, passphrase)
        cert_public = cert.public_key()
        key_public = key.public_key()

        if isinstance(cert_public, rsa.RSAPublicKey) and isinstance(key_public, rsa.RSAPublicKey):
            return cert_public.public_numbers().n == key_public.public_numbers().n
        if isinstance(cert_public, ec.EllipticCurvePublicKey) and isinstance(key_public, ec.EllipticCurvePublicKey):
            return (
                cert_public.curve.name == key_public.curve.name
                and cert_public.public_numbers() == key_public.public_numbers()
            )
        return cert_public.public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        ) == key_public.public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
