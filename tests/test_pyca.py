import os
import shutil
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.serialization import pkcs12

from certmgr.crypto import CertificateRequest, SigningCA
from lib.errors import Malformed, PassphraseIncorrect, PassphraseRequired, SigningCAUnusable


def test_self_signed_ca_without_path_length_is_root(crypto, make_cert):
    root = make_cert("root-ca", is_ca=True)
    info = crypto.parse_certificate(root.cert_path)
    assert info.cert_type == "rootCA"
    assert info.self_signed and info.is_root_ca
    assert info.fingerprint == root.fingerprint
    assert info.subject == "CN=root-ca, O=Example Org"


def test_path_length_makes_an_intermediate(crypto, make_cert):
    root = make_cert("root-ca", is_ca=True)
    sub = make_cert("sub-ca", is_ca=True, path_len=0, issuer=root)
    self_signed_sub = make_cert("lonely-ca", is_ca=True, path_len=1)

    assert crypto.parse_certificate(sub.cert_path).cert_type == "intermediateCA"
    assert crypto.parse_certificate(self_signed_sub.cert_path).cert_type == "intermediateCA"


def test_leaf_details(crypto, make_cert):
    leaf = make_cert("web.example.com", domains=["web.example.com", "www.example.com"])
    info = crypto.parse_certificate(leaf.cert_path)
    assert info.cert_type == "standard"
    assert info.domains == ["web.example.com", "www.example.com"]
    assert info.key_type == "RSA" and info.key_size == 2048


def test_der_certificates_parse(crypto, make_cert):
    info = crypto.parse_certificate(make_cert("der", der=True).cert_path)
    assert info.encoding == "DER"


def test_garbage_is_malformed(crypto, tmp_path):
    path = tmp_path / "broken.crt"
    path.write_text("-----BEGIN CERTIFICATE-----\nnope\n-----END CERTIFICATE-----\n")
    with pytest.raises(Malformed):
        crypto.parse_certificate(str(path))


def test_key_passphrase_handling(crypto, make_cert):
    files = make_cert("secret", passphrase="pw")
    assert crypto.is_key_encrypted(files.key_path)
    with pytest.raises(PassphraseRequired):
        crypto.load_private_key(files.key_path)
    with pytest.raises(PassphraseIncorrect):
        crypto.load_private_key(files.key_path, "wrong")
    assert crypto.verify_certificate_key_pair(files.cert_path, files.key_path, "pw")

    plain = make_cert("plain")
    assert not crypto.is_key_encrypted(plain.key_path)


def test_ca_signed_certificate(crypto, make_cert, tmp_path):
    root = make_cert("root-ca", is_ca=True)
    request = CertificateRequest(
        cert_path=str(tmp_path / "out" / "api.crt"),
        key_path=str(tmp_path / "out" / "api.key"),
        subject="CN=api.example.com",
        domains=["api.example.com"],
        ips=["10.0.0.5"],
        days=30,
        signing_ca=SigningCA(cert_path=root.cert_path, key_path=root.key_path),
    )
    issued = crypto.create_certificate(request)
    try:
        cert = x509.load_pem_x509_certificate(Path(issued.temp_cert_path).read_bytes())
        root_ski = root.cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value.digest
        aki = cert.extensions.get_extension_for_class(x509.AuthorityKeyIdentifier).value.key_identifier

        assert cert.issuer == root.cert.subject
        assert aki == root_ski
        assert issued.info.cert_type == "standard"
        assert issued.info.ips == ["10.0.0.5"]
        assert os.path.exists(f"{os.path.splitext(root.cert_path)[0]}.srl")
    finally:
        shutil.rmtree(issued.temp_dir)


def test_non_ca_cannot_sign(crypto, make_cert, tmp_path):
    leaf = make_cert("leaf")
    request = CertificateRequest(
        cert_path=str(tmp_path / "x.crt"),
        key_path=str(tmp_path / "x.key"),
        subject="CN=x",
        signing_ca=SigningCA(cert_path=leaf.cert_path, key_path=leaf.key_path),
    )
    with pytest.raises(SigningCAUnusable):
        crypto.create_certificate(request)


def test_convert_formats(crypto, make_cert, tmp_path):
    root = make_cert("root-ca", is_ca=True)
    leaf = make_cert("leaf", issuer=root, passphrase="pw")

    der_path = crypto.convert(leaf.cert_path, "der")
    assert der_path.endswith("leaf.der")
    assert x509.load_der_x509_certificate(Path(der_path).read_bytes()).subject == leaf.cert.subject

    p12_path = crypto.convert(leaf.cert_path, "p12", key_path=leaf.key_path, passphrase="pw",
                              chain_paths=[root.cert_path])
    _key, cert, extra = pkcs12.load_key_and_certificates(Path(p12_path).read_bytes(), b"pw")
    assert cert.subject == leaf.cert.subject
    assert [ca.subject for ca in extra] == [root.cert.subject]

    p7b_path = crypto.convert(leaf.cert_path, "p7b", output_path=str(tmp_path / "bundle.p7b"),
                              chain_paths=[root.cert_path])
    assert b"PKCS7" in Path(p7b_path).read_bytes()

    with pytest.raises(Malformed):
        crypto.convert(leaf.cert_path, "jks")
