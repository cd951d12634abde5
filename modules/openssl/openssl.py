# Licensed under GPL 3: https://www.gnu.org/licenses/gpl-3.0.html
"""OpenSSL cryptographic module implementation."""
import os
import secrets
import shlex
import shutil
import subprocess
import tempfile
import textwrap

from cryptography.x509.oid import NameOID
from jinja2 import Template, StrictUndefined

from certmgr.crypto import CertificateRequest, CONVERTIBLE_FORMATS, IssuedCertificate
from certmgr.crypto.dn import SHORT_NAMES
from lib.errors import FeatureUnavailable, Malformed, NotFound, PassphraseRequired, SigningCAUnusable
from lib.util import sanitize_name
from modules import module_logger
from modules.openssl.config import OpenSSLConfig
from modules.openssl.errors import classify_failure
from modules.pyca.pyca import PycaProvider

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates")
EC_CURVE_NAMES = {256: "P-256", 384: "P-384", 521: "P-521"}
OPENSSL_FIELD_NAMES = {**SHORT_NAMES, NameOID.STREET_ADDRESS: "street"}


class OpenSSL(PycaProvider):
    """Crypto provider that shells out to the openssl binary.

    Parsing stays on the cryptography library; key generation, signing,
    format conversion and key pair checks run through openssl.
    """

    configClass = OpenSSLConfig
    config: OpenSSLConfig

    def __init__(self, config: OpenSSLConfig = None):
        module_logger.debug("Initializing OpenSSL module")
        super().__init__(config)

    @property
    def openssl_path(self):
        """Get path to openssl binary."""
        return self.config.bin or shutil.which("openssl")

    def run_command(self, args: list[str]) -> subprocess.CompletedProcess:
        if not self.openssl_path:
            raise FeatureUnavailable("openssl binary not found on PATH")

        command = [self.openssl_path] + args
        module_logger.debug("Running: %s", shlex.join(command))
        return subprocess.run(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=self.config.timeout,
            check=False
        )

    @staticmethod
    def _passin(passphrase: str) -> list[str]:
        return ["-passin", f"pass:{passphrase}"] if passphrase else []

    def _write_openssl_config(self, request: CertificateRequest, path: str, name: str):
        """Render the request configuration for a certificate."""
        with open(os.path.join(TEMPLATE_DIR, self.config.config_template), 'r', encoding='utf-8') as f:
            config_template = f.read()

        subject = [
            (OPENSSL_FIELD_NAMES.get(attribute.oid, attribute.oid.dotted_string), str(attribute.value))
            for attribute in self.subject_name(request, name)
        ]

        rendered = Template(
            textwrap.dedent(config_template),
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined
        ).render({
            'name': name,
            'subject': subject,
            'digest': self.config.signature_hash,
            'is_ca': request.is_ca,
            'path_len': request.path_length_constraint if request.is_ca else None,
            'domains': request.san_domains,
            'ips': request.san_ips,
        })

        with open(path, 'w', encoding='utf-8') as f:
            f.write(rendered)

    def generate_private_key(self, path: str, bits: int = 2048, key_type: str = "RSA",
                             encrypt: bool = False, passphrase: str = None) -> None:
        module_logger.info("Generating %s private key (%s bits) at %s", key_type, bits, path)
        if encrypt and not passphrase:
            raise PassphraseRequired("Cannot encrypt a private key without a passphrase", path=path)

        if (key_type or "RSA").upper() == "EC":
            command = ["genpkey", "-algorithm", "EC", "-pkeyopt",
                       f"ec_paramgen_curve:{EC_CURVE_NAMES.get(bits, 'P-256')}"]
        else:
            command = ["genpkey", "-algorithm", "RSA", "-pkeyopt", f"rsa_keygen_bits:{bits or 2048}"]
        if encrypt:
            command += ["-aes256", "-pass", f"pass:{passphrase}"]

        tmp_path = f"{path}.{secrets.token_hex(4)}.tmp"
        command += ["-out", tmp_path]
        output = self.run_command(command)
        if output.returncode != 0:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise classify_failure("Generate private key", output, path=path)

        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)

    def is_key_encrypted(self, path: str) -> bool:
        if not os.path.exists(path):
            raise NotFound(f"File does not exist: {path}", path=path)
        with open(path, "rb") as key_file:
            data = key_file.read()
        if b"-----BEGIN" in data and b"ENCRYPTED" in data:
            return True

        output = self.run_command(["pkey", "-in", path, "-noout", "-passin", "pass:"])
        return output.returncode != 0

    def _ensure_serial_file(self, serial_path: str):
        """Create the CA serial file with a random 16 byte value if absent."""
        if not os.path.exists(serial_path):
            with open(serial_path, "w", encoding="utf-8") as serial_file:
                serial_file.write(secrets.token_hex(16).upper() + "\n")

    def create_certificate(self, request: CertificateRequest) -> IssuedCertificate:
        name = request.name or os.path.splitext(os.path.basename(request.cert_path))[0]
        module_logger.info("Creating certificate '%s' with openssl", name)
        base = sanitize_name(os.path.splitext(os.path.basename(request.cert_path))[0] or name)
        temp_dir = tempfile.mkdtemp(prefix="certmgr-")
        temp_key_path = os.path.join(temp_dir, f"{base}.key")
        temp_csr_path = os.path.join(temp_dir, f"{base}.csr")
        temp_cert_path = os.path.join(temp_dir, f"{base}.crt")
        temp_ext_path = os.path.join(temp_dir, f"{base}.ext")

        try:
            if request.key_path and os.path.exists(request.key_path):
                if request.passphrase is None and self.is_key_encrypted(request.key_path):
                    raise PassphraseRequired(f"Private key is encrypted: {request.key_path}", path=request.key_path)
                shutil.copy2(request.key_path, temp_key_path)
            else:
                self.generate_private_key(
                    temp_key_path,
                    bits=request.key_size,
                    key_type=request.key_type,
                    encrypt=bool(request.passphrase),
                    passphrase=request.passphrase
                )

            self._write_openssl_config(request, temp_ext_path, name)

            output = self.run_command(
                ["req", "-new", "-key", temp_key_path, "-out", temp_csr_path, "-config", temp_ext_path]
                + self._passin(request.passphrase)
            )
            if output.returncode != 0:
                raise classify_failure(
                    "Generate CSR", output, path=request.key_path or temp_key_path,
                    passphrase_supplied=bool(request.passphrase)
                )

            if request.signing_ca:
                output = self._sign_with_ca(request, temp_csr_path, temp_cert_path, temp_ext_path)
                action = "Sign certificate"
            else:
                output = self.run_command(
                    ["req", "-x509", "-new", "-key", temp_key_path, f"-{self.config.signature_hash}",
                     "-days", str(request.days), "-config", temp_ext_path, "-extensions", "v3_issue",
                     "-out", temp_cert_path]
                    + self._passin(request.passphrase)
                )
                action = "Self-sign certificate"

            if output.returncode != 0:
                raise classify_failure(
                    action, output,
                    path=request.signing_ca.key_path if request.signing_ca else temp_key_path,
                    passphrase_supplied=bool(
                        request.signing_ca.passphrase if request.signing_ca else request.passphrase
                    ),
                    ca_path=request.signing_ca.cert_path if request.signing_ca else None
                )

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
            temp_ext_path=temp_ext_path,
            info=info
        )

    def _sign_with_ca(self, request: CertificateRequest, csr_path: str, cert_path: str, ext_path: str):
        signing_ca = request.signing_ca
        try:
            ca_info = self.parse_certificate(signing_ca.cert_path)
        except (NotFound, Malformed) as exc:
            raise SigningCAUnusable(f"Signing CA cannot be loaded: {exc}", path=signing_ca.cert_path) from exc
        if not ca_info.is_ca:
            raise SigningCAUnusable("Signing certificate is not a CA", path=signing_ca.cert_path)
        if not os.path.exists(signing_ca.key_path):
            raise SigningCAUnusable("Signing CA key is missing", path=signing_ca.key_path)

        self._ensure_serial_file(signing_ca.serial_path)
        return self.run_command(
            ["x509", "-req", "-in", csr_path, "-CA", signing_ca.cert_path, "-CAkey", signing_ca.key_path,
             "-CAserial", signing_ca.serial_path, "-out", cert_path, "-days", str(request.days),
             f"-{self.config.signature_hash}", "-extensions", "v3_issue", "-extfile", ext_path]
            + self._passin(signing_ca.passphrase)
        )

    def convert(self, cert_path: str, fmt: str, output_path: str = None, key_path: str = None,
                passphrase: str = None, chain_paths: list[str] = None) -> str:
        fmt = fmt.lower().lstrip(".")
        if fmt not in CONVERTIBLE_FORMATS:
            raise Malformed(f"Unsupported output format: {fmt}", path=cert_path)
        if not os.path.exists(cert_path):
            raise NotFound(f"File does not exist: {cert_path}", path=cert_path)

        output_path = output_path or f"{os.path.splitext(cert_path)[0]}.{fmt}"
        tmp_path = os.path.join(os.path.dirname(os.path.abspath(output_path)),
                                f".{os.path.basename(output_path)}.{secrets.token_hex(4)}.tmp")
        module_logger.debug("Converting %s to %s at %s", cert_path, fmt, output_path)

        if fmt == "pem":
            command = ["x509", "-in", cert_path, "-outform", "PEM", "-out", tmp_path]
        elif fmt in ("der", "cer"):
            command = ["x509", "-in", cert_path, "-outform", "DER", "-out", tmp_path]
        elif fmt == "p7b":
            command = ["crl2pkcs7", "-nocrl", "-certfile", cert_path, "-out", tmp_path]
            for chain_path in chain_paths or []:
                command += ["-certfile", chain_path]
        else:
            if not key_path or not os.path.exists(key_path):
                raise NotFound(f"{fmt.upper()} output requires a private key", path=key_path or cert_path)
            command = ["pkcs12", "-export", "-in", cert_path, "-inkey", key_path, "-out", tmp_path,
                       "-passout", f"pass:{passphrase or ''}"] + self._passin(passphrase)
            for chain_path in chain_paths or []:
                command += ["-certfile", chain_path]

        output = self.run_command(command)
        if output.returncode != 0:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise classify_failure(f"Convert to {fmt}", output, path=key_path or cert_path,
                                   passphrase_supplied=bool(passphrase))

        if fmt in ("p12", "pfx"):
            os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, output_path)
        return output_path

    def verify_certificate_key_pair(self, cert_path: str, key_path: str, passphrase: str = None) -> bool:
        cert_output = self.run_command(["x509", "-in", cert_path, "-noout", "-pubkey"])
        if cert_output.returncode != 0:
            raise classify_failure("Read certificate public key", cert_output, path=cert_path)

        key_output = self.run_command(
            ["pkey", "-in", key_path, "-pubout"] + (self._passin(passphrase) or ["-passin", "pass:"])
        )
        if key_output.returncode != 0:
            raise classify_failure("Read private key", key_output, path=key_path,
                                   passphrase_supplied=bool(passphrase))

        return cert_output.stdout.strip() == key_output.stdout.strip()
