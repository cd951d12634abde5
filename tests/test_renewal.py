import asyncio
import os
import stat
import time
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import pkcs12

from certmgr.catalog import CertificateCatalog
from certmgr.renewal import RenewalEngine
from lib.errors import IOFailure


@pytest.mark.asyncio
async def test_renewal_keeps_every_format(catalog, crypto, vault, make_cert):
    leaf = make_cert("web", domains=["web.example.com"], passphrase="pw", days=10)
    crypto.convert(leaf.cert_path, "pem")
    crypto.convert(leaf.cert_path, "p12", key_path=leaf.key_path, passphrase="pw")
    key_before = Path(leaf.key_path).read_bytes()
    vault.put(leaf.fingerprint, "pw")
    await catalog.load_all(force_reload=True)

    result = await catalog.renew(leaf.fingerprint)

    assert result["success"], result
    new_fingerprint = result["renewalResult"]["fingerprint"]
    assert new_fingerprint != leaf.fingerprint
    assert result["renewalResult"]["oldFingerprint"] == leaf.fingerprint
    assert {item["format"] for item in result["formatRestoration"]["restored"]} == {"pem", "p12"}
    assert result["formatRestoration"]["failed"] == []

    base = os.path.splitext(leaf.cert_path)[0]
    assert crypto.parse_certificate(leaf.cert_path).fingerprint == new_fingerprint
    assert crypto.parse_certificate(f"{base}.pem").fingerprint == new_fingerprint
    _key, p12_cert, _extra = pkcs12.load_key_and_certificates(Path(f"{base}.p12").read_bytes(), b"pw")
    assert p12_cert.fingerprint(hashes.SHA256()).hex().upper() == new_fingerprint

    assert Path(leaf.key_path).read_bytes() == key_before
    assert stat.S_IMODE(os.stat(leaf.key_path).st_mode) == 0o600

    entry = catalog.get(new_fingerprint)
    assert catalog.get(leaf.fingerprint) is None
    assert entry.previous_versions[leaf.fingerprint]["version"] == 1
    assert entry.domains == ["web.example.com"]
    assert vault.get(new_fingerprint) == "pw"
    assert not vault.has(leaf.fingerprint)
    assert os.path.isdir(os.path.join(os.path.dirname(leaf.cert_path), "backups"))


@pytest.mark.asyncio
async def test_create_ca_signed_certificate(catalog, config, make_cert):
    root = make_cert("root-ca", is_ca=True)
    await catalog.load_all(force_reload=True)

    result = await catalog.create_or_renew(None, {
        "name": "api",
        "domains": ["api.example.com"],
        "ips": ["10.0.0.7"],
        "caFingerprint": root.fingerprint,
    })

    assert result["success"], result
    entry = catalog.get(result["renewalResult"]["fingerprint"])
    ca = catalog.get(root.fingerprint)
    assert entry.cert_path == os.path.join(config.certs_dir, "api", "api.crt")
    assert entry.issuer == ca.subject
    assert entry.authority_key_identifier == ca.subject_key_identifier
    assert entry.config.ca_fingerprint == root.fingerprint
    assert entry.config.ca_name == "root-ca"
    assert entry.domains == ["api.example.com"]
    assert entry.ips == ["10.0.0.7"]

    again = await catalog.create_or_renew(None, {"name": "api"})
    assert again["errorKind"] == "Conflict"


@pytest.mark.asyncio
async def test_intermediate_needs_a_signing_ca(catalog):
    result = await catalog.create_or_renew(None, {"name": "sub-ca", "certType": "intermediateCA"})
    assert result["success"] is False
    assert result["errorKind"] == "SigningCANotFound"


@pytest.mark.asyncio
async def test_create_root_ca(catalog):
    result = await catalog.create_or_renew(None, {"name": "Lab Root", "certType": "rootCA",
                                                  "subject": "CN=Lab Root, O=Lab"})
    entry = catalog.get(result["renewalResult"]["fingerprint"])
    assert entry.cert_type == "rootCA"
    assert entry.is_root_ca
    assert os.path.basename(entry.cert_path) == "Lab_Root.crt"


@pytest.mark.asyncio
async def test_idle_domains_are_applied_on_renewal(catalog, make_cert):
    leaf = make_cert("web", domains=["web.example.com"])
    await catalog.load_all(force_reload=True)
    await catalog.add_domain(leaf.fingerprint, "api.example.com")

    result = await catalog.apply_idle_subjects_and_renew(leaf.fingerprint)

    assert result["success"], result
    entry = catalog.get(result["renewalResult"]["fingerprint"])
    assert entry.domains == ["api.example.com", "web.example.com"]
    assert entry.idle_domains == []
    assert not entry.needs_renewal
    assert "deployResult" not in result


@pytest.mark.asyncio
async def test_locked_ca_key_fails_before_touching_files(catalog, make_cert):
    root = make_cert("root-ca", is_ca=True, passphrase="capw")
    leaf = make_cert("web", issuer=root)
    await catalog.load_all(force_reload=True)
    before = Path(leaf.cert_path).read_bytes()

    result = await catalog.renew(leaf.fingerprint)

    assert result["errorKind"] == "PassphraseRequired"
    assert Path(leaf.cert_path).read_bytes() == before
    assert not os.path.exists(os.path.join(os.path.dirname(leaf.cert_path), "backups"))


@pytest.mark.asyncio
async def test_stored_ca_passphrase_unlocks_signing(catalog, vault, make_cert):
    root = make_cert("root-ca", is_ca=True, passphrase="capw")
    leaf = make_cert("web", issuer=root)
    vault.put(root.fingerprint, "capw")
    await catalog.load_all(force_reload=True)

    result = await catalog.renew(leaf.fingerprint)

    assert result["success"], result
    assert catalog.get(result["renewalResult"]["fingerprint"]).config.ca_fingerprint == root.fingerprint


@pytest.mark.asyncio
async def test_concurrent_renewal_is_rejected(catalog, make_cert):
    leaf = make_cert("web")
    await catalog.load_all(force_reload=True)

    async with catalog.renewal_guard(leaf.fingerprint):
        result = await catalog.renew(leaf.fingerprint)

    assert result["errorKind"] == "Conflict"


@pytest.mark.asyncio
async def test_failed_publish_restores_originals(catalog, make_cert, monkeypatch):
    leaf = make_cert("web")
    await catalog.load_all(force_reload=True)
    cert_before = Path(leaf.cert_path).read_bytes()
    original_publish = RenewalEngine.publish

    def failing_publish(self, issued, certificate):
        original_publish(self, issued, certificate)
        raise OSError("disk full")

    monkeypatch.setattr(RenewalEngine, "publish", failing_publish)
    result = await catalog.renew(leaf.fingerprint)

    assert result["errorKind"] == "IOError"
    assert Path(leaf.cert_path).read_bytes() == cert_before
    assert not os.path.exists(f"{os.path.splitext(leaf.cert_path)[0]}.csr")
    assert catalog.get(leaf.fingerprint) is not None


@pytest.mark.asyncio
async def test_root_renewal_relinks_children(catalog, make_cert):
    root = make_cert("root-ca", is_ca=True)
    leaf = make_cert("web", issuer=root)
    await catalog.load_all(force_reload=True)

    result = await catalog.renew(root.fingerprint)

    new_root = catalog.get(result["renewalResult"]["fingerprint"])
    assert new_root.cert_type == "rootCA"
    assert catalog.get(leaf.fingerprint).config.ca_fingerprint == new_root.fingerprint


@pytest.mark.asyncio
async def test_failed_persist_rolls_back_renewal(catalog, vault, make_cert, monkeypatch):
    leaf = make_cert("web", passphrase="pw")
    vault.put(leaf.fingerprint, "pw")
    await catalog.load_all(force_reload=True)
    cert_before = Path(leaf.cert_path).read_bytes()
    key_before = Path(leaf.key_path).read_bytes()

    def failing_write(self, certificates):
        raise IOFailure("config disk full", path=self.config_file)

    monkeypatch.setattr(CertificateCatalog, "_write_config_doc", failing_write)
    result = await catalog.renew(leaf.fingerprint)

    assert result["errorKind"] == "IOError"
    assert Path(leaf.cert_path).read_bytes() == cert_before
    assert Path(leaf.key_path).read_bytes() == key_before
    assert [entry.fingerprint for entry in catalog.get_all()] == [leaf.fingerprint]
    assert vault.get(leaf.fingerprint) == "pw"
    assert len(vault.fingerprints) == 1


@pytest.mark.asyncio
async def test_policy_changes_during_renewal_are_kept(catalog, crypto, make_cert, monkeypatch):
    leaf = make_cert("web", domains=["web.example.com"])
    await catalog.load_all(force_reload=True)
    create_certificate = crypto.create_certificate

    def slow_create(request):
        time.sleep(0.3)
        return create_certificate(request)

    monkeypatch.setattr(crypto, "create_certificate", slow_create)
    renewal = asyncio.create_task(catalog.renew(leaf.fingerprint))
    await asyncio.sleep(0.1)
    assert (await catalog.update_config(leaf.fingerprint, {"autoRenew": True, "renewDaysBeforeExpiry": 7}))["success"]
    assert (await catalog.add_domain(leaf.fingerprint, "api.example.com"))["success"]
    result = await renewal

    assert result["success"], result
    entry = catalog.get(result["renewalResult"]["fingerprint"])
    assert entry.config.auto_renew is True
    assert entry.config.renew_days_before_expiry == 7
    assert entry.idle_domains == ["api.example.com"]
    assert entry.domains == ["web.example.com"]


@pytest.mark.asyncio
async def test_failed_apply_idle_keeps_idle_domains(catalog, make_cert):
    root = make_cert("root-ca", is_ca=True, passphrase="capw")
    leaf = make_cert("web", issuer=root, domains=["web.example.com"])
    await catalog.load_all(force_reload=True)
    await catalog.add_domain(leaf.fingerprint, "api.example.com")

    result = await catalog.apply_idle_subjects_and_renew(leaf.fingerprint)

    assert result["errorKind"] == "PassphraseRequired"
    await catalog.refresh_cached([leaf.fingerprint])
    entry = catalog.get(leaf.fingerprint)
    assert entry.domains == ["web.example.com"]
    assert entry.idle_domains == ["api.example.com"]


@pytest.mark.asyncio
async def test_renewal_keeps_street_address_subject(catalog):
    created = await catalog.create_or_renew(None, {"name": "svc", "subject": "CN=svc, STREET=1 Main St, O=Lab"})
    assert created["success"], created

    result = await catalog.renew(created["renewalResult"]["fingerprint"])

    assert result["success"], result
    assert "STREET=1 Main St" in catalog.get(result["renewalResult"]["fingerprint"]).subject


@pytest.mark.asyncio
async def test_unexpected_error_becomes_result(catalog, make_cert, monkeypatch):
    leaf = make_cert("web")
    await catalog.load_all(force_reload=True)

    def broken_request(*_args, **_kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(RenewalEngine, "build_request", broken_request)
    result = await catalog.renew(leaf.fingerprint)

    assert result["success"] is False
    assert result["errorKind"] == "Internal"
    assert catalog.get(leaf.fingerprint) is not None
