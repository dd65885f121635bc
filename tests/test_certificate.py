"""Tests for certificate issuance and validation."""

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from asphaleia import (
    Certificate,
    CertificateAuthority,
    ConfigError,
    IdentityKeyPair,
    MalformedMessage,
    RandomSource,
    SignatureScheme,
    TrustAnchor,
    TrustStore,
    ValidationResult,
    Validity,
    issue_certificate,
    validate_certificate,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)
ONE_YEAR = Validity.for_period(NOW, timedelta(days=365))


def create_test_pki(scheme=SignatureScheme.ED25519):
    """Root CA, a trust store holding it, and a certificate for alice."""
    ca = CertificateAuthority("root", IdentityKeyPair.generate(scheme=scheme))
    store = TrustStore.from_certificates([ca.root_certificate(ONE_YEAR)])
    alice_id = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    alice_cert = ca.issue_for("alice", alice_id, ONE_YEAR)
    return ca, store, alice_cert


def test_valid_within_window():
    _ca, store, alice_cert = create_test_pki()

    assert validate_certificate(alice_cert, store, NOW + timedelta(days=182)) is ValidationResult.VALID


def test_window_is_inclusive():
    _ca, store, alice_cert = create_test_pki()

    assert validate_certificate(alice_cert, store, ONE_YEAR.not_before) is ValidationResult.VALID
    assert validate_certificate(alice_cert, store, ONE_YEAR.not_after) is ValidationResult.VALID


def test_expired():
    _ca, store, alice_cert = create_test_pki()

    assert validate_certificate(alice_cert, store, NOW + timedelta(days=2 * 365)) is ValidationResult.EXPIRED


def test_not_yet_valid():
    _ca, store, alice_cert = create_test_pki()

    assert validate_certificate(alice_cert, store, NOW - timedelta(days=1)) is ValidationResult.NOT_YET_VALID


def test_signature_invalid():
    _ca, store, alice_cert = create_test_pki()
    sig = alice_cert.issuer_signature
    forged = replace(alice_cert, issuer_signature=bytes([sig[0] ^ 0x01]) + sig[1:])

    assert validate_certificate(forged, store, NOW) is ValidationResult.SIGNATURE_INVALID


def test_altered_subject():
    _ca, store, alice_cert = create_test_pki()

    assert validate_certificate(replace(alice_cert, subject="mallory"), store, NOW) is ValidationResult.SIGNATURE_INVALID


def test_expired_and_forged_reports_signature():
    """Signature failures are reported ahead of the validity window."""
    _ca, store, alice_cert = create_test_pki()
    sig = alice_cert.issuer_signature
    forged = replace(alice_cert, issuer_signature=bytes([sig[0] ^ 0x01]) + sig[1:])

    later = NOW + timedelta(days=2 * 365)
    assert validate_certificate(forged, store, later) is ValidationResult.SIGNATURE_INVALID


def test_untrusted_issuer():
    _ca, _store, alice_cert = create_test_pki()
    _other_ca, other_store, _ = create_test_pki()
    other_store.remove("root")

    assert validate_certificate(alice_cert, other_store, NOW) is ValidationResult.UNTRUSTED_ISSUER
    assert validate_certificate(alice_cert, TrustStore(), NOW) is ValidationResult.UNTRUSTED_ISSUER


def test_same_name_different_key():
    """A root with the right name but the wrong key does not vouch for the certificate."""
    _ca, _store, alice_cert = create_test_pki()
    _other_ca, other_store, _ = create_test_pki()

    assert validate_certificate(alice_cert, other_store, NOW) is ValidationResult.SIGNATURE_INVALID


@pytest.mark.parametrize("data", [b"", b"garbage", b"\x01\x00\x00\x00\x05ali"])
def test_malformed_bytes(data):
    _ca, store, _alice_cert = create_test_pki()

    assert validate_certificate(data, store, NOW) is ValidationResult.MALFORMED


def test_malformed_fields():
    _ca, store, alice_cert = create_test_pki()

    assert validate_certificate(replace(alice_cert, subject_public_key=b"short"), store, NOW) is ValidationResult.MALFORMED
    assert validate_certificate(replace(alice_cert, subject=""), store, NOW) is ValidationResult.MALFORMED
    assert validate_certificate(replace(alice_cert, issuer_signature=b""), store, NOW) is ValidationResult.MALFORMED
    reversed_window = Validity(ONE_YEAR.not_after, ONE_YEAR.not_before)
    assert validate_certificate(replace(alice_cert, validity=reversed_window), store, NOW) is ValidationResult.MALFORMED


def test_encoding():
    _ca, store, alice_cert = create_test_pki()
    encoded = alice_cert.to_bytes()

    decoded = Certificate.from_bytes(encoded)

    assert decoded == alice_cert
    assert decoded.fingerprint == alice_cert.fingerprint
    assert validate_certificate(encoded, store, NOW) is ValidationResult.VALID
    with pytest.raises(MalformedMessage):
        Certificate.from_bytes(encoded + b"\x00")
    with pytest.raises(MalformedMessage):
        Certificate.from_bytes(encoded[:-1])


def test_root_certificate_self_signed():
    ca, store, _alice_cert = create_test_pki()

    root = ca.certificate
    assert root.is_self_signed
    assert root.is_ca
    assert validate_certificate(root, store, NOW) is ValidationResult.VALID


def test_intermediate_chain():
    root_ca, store, _ = create_test_pki()
    inter_id = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    inter_cert = root_ca.issue_for("intermediate", inter_id, ONE_YEAR, is_ca=True)
    inter_ca = CertificateAuthority("intermediate", inter_id, certificate=inter_cert)
    leaf_id = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    leaf = inter_ca.issue_for("service", leaf_id, ONE_YEAR)

    assert validate_certificate(leaf, store, NOW, intermediates=[inter_cert]) is ValidationResult.VALID
    assert validate_certificate(leaf, store, NOW) is ValidationResult.UNTRUSTED_ISSUER


def test_intermediate_must_be_ca():
    root_ca, store, _ = create_test_pki()
    inter_id = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    inter_cert = root_ca.issue_for("intermediate", inter_id, ONE_YEAR)
    leaf = issue_certificate(
        inter_id, "intermediate", "service", IdentityKeyPair.generate(scheme=SignatureScheme.ED25519).public_key,
        ONE_YEAR, serial=1, scheme=SignatureScheme.ED25519,
    )

    assert validate_certificate(leaf, store, NOW, intermediates=[inter_cert]) is ValidationResult.UNTRUSTED_ISSUER


def test_expired_intermediate():
    root_ca, store, _ = create_test_pki()
    inter_id = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    short = Validity.for_period(NOW, timedelta(days=30))
    inter_cert = root_ca.issue_for("intermediate", inter_id, short, is_ca=True)
    leaf = CertificateAuthority("intermediate", inter_id).issue_for(
        "service", IdentityKeyPair.generate(scheme=SignatureScheme.ED25519), ONE_YEAR
    )

    later = NOW + timedelta(days=60)
    assert validate_certificate(leaf, store, later, intermediates=[inter_cert]) is ValidationResult.EXPIRED


def test_dilithium_ca():
    _ca, store, alice_cert = create_test_pki(scheme=SignatureScheme.DILITHIUM3)

    assert len(alice_cert.issuer_signature) == SignatureScheme.DILITHIUM3.signature_size
    assert validate_certificate(alice_cert, store, NOW) is ValidationResult.VALID

    sig = alice_cert.issuer_signature
    forged = replace(alice_cert, issuer_signature=bytes([sig[0] ^ 0x01]) + sig[1:])
    assert validate_certificate(forged, store, NOW) is ValidationResult.SIGNATURE_INVALID


def test_serials_unique():
    ca = CertificateAuthority("root", IdentityKeyPair.generate(scheme=SignatureScheme.ED25519))
    subject = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    serials = []
    lock = threading.Lock()

    def issue():
        for _ in range(10):
            cert = ca.issue_for("alice", subject, ONE_YEAR)
            with lock:
                serials.append(cert.serial)

    threads = [threading.Thread(target=issue) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(serials) == 50
    assert len(set(serials)) == 50


def test_serials_unique_across_authorities():
    """Two authorities sharing one key never hand out the same serial."""
    keypair = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    subject = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    first = CertificateAuthority("root", keypair)
    second = CertificateAuthority("root", keypair)

    a = {first.issue_for("alice", subject, ONE_YEAR).serial for _ in range(20)}
    b = {second.issue_for("alice", subject, ONE_YEAR).serial for _ in range(20)}

    assert len(a) == 20
    assert len(b) == 20
    assert not a & b
    assert all(0 < serial < 2**63 for serial in a | b)


def test_serial_redrawn_on_collision():
    draws = iter([b"\x00" * 7 + b"\x02", b"\x00" * 7 + b"\x02", b"\x00" * 8, b"\x00" * 7 + b"\x04"])
    ca = CertificateAuthority(
        "root",
        IdentityKeyPair.generate(scheme=SignatureScheme.ED25519),
        rng=RandomSource(lambda n: next(draws)),
    )
    subject = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)

    assert ca.issue_for("alice", subject, ONE_YEAR).serial == 1
    assert ca.issue_for("alice", subject, ONE_YEAR).serial == 2


def test_validity_whole_seconds():
    """Sub-second times are dropped so decoding never changes a verdict."""
    start = datetime(2025, 1, 1, 0, 0, 0, 900000, tzinfo=timezone.utc)
    validity = Validity(start, start + timedelta(days=1))
    assert validity.not_before.microsecond == 0
    assert validity.not_after.microsecond == 0

    ca = CertificateAuthority("root", IdentityKeyPair.generate(scheme=SignatureScheme.ED25519))
    store = TrustStore.from_certificates([ca.root_certificate(Validity.for_period(start, timedelta(days=30)))])
    cert = ca.issue_for("alice", IdentityKeyPair.generate(scheme=SignatureScheme.ED25519), validity)
    decoded = Certificate.from_bytes(cert.to_bytes())
    assert decoded == cert

    for now in (
        datetime(2025, 1, 1, 0, 0, 0, 500000, tzinfo=timezone.utc),
        datetime(2025, 1, 2, 0, 0, 0, 500000, tzinfo=timezone.utc),
    ):
        assert validate_certificate(cert, store, now) is validate_certificate(decoded, store, now)
    assert validate_certificate(cert, store, start) is ValidationResult.VALID


def test_naive_times_rejected():
    _ca, store, alice_cert = create_test_pki()

    with pytest.raises(ValueError):
        Validity(datetime(2026, 1, 1), datetime(2027, 1, 1))
    with pytest.raises(ValueError):
        validate_certificate(alice_cert, store, datetime(2026, 6, 1))
    with pytest.raises(ValueError):
        validate_certificate(alice_cert.to_bytes(), store, datetime(2026, 6, 1))


def test_issue_rejects_malformed():
    ca = CertificateAuthority("root", IdentityKeyPair.generate(scheme=SignatureScheme.ED25519))

    with pytest.raises(MalformedMessage):
        ca.issue("alice", b"not a key", ONE_YEAR, scheme=SignatureScheme.ED25519)


def test_authority_config_errors():
    keypair = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    other = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    leaf = CertificateAuthority("root", other).issue_for("root", other, ONE_YEAR)

    with pytest.raises(ConfigError):
        CertificateAuthority("", keypair)
    with pytest.raises(ConfigError):
        CertificateAuthority("root", keypair, certificate=leaf)


def test_trust_store_mutation():
    ca, store, alice_cert = create_test_pki()

    assert "root" in store
    assert len(store) == 1

    assert store.remove("root") == 1
    assert "root" not in store
    assert validate_certificate(alice_cert, store, NOW) is ValidationResult.UNTRUSTED_ISSUER

    store.add(ca.anchor)
    assert store.find("root") == (TrustAnchor("root", ca.keypair.public_key, ca.keypair.scheme),)
    assert validate_certificate(alice_cert, store, NOW) is ValidationResult.VALID


def test_trust_store_shared_across_threads():
    _ca, store, alice_cert = create_test_pki()
    results = []

    def validate():
        for _ in range(20):
            results.append(validate_certificate(alice_cert, store, NOW))

    threads = [threading.Thread(target=validate) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == [ValidationResult.VALID] * 80


def test_roots_as_iterable():
    ca, _store, alice_cert = create_test_pki()

    assert validate_certificate(alice_cert, [ca.certificate], NOW) is ValidationResult.VALID
    assert validate_certificate(alice_cert, [ca.anchor], NOW) is ValidationResult.VALID


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
