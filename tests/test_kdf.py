"""Tests for the key schedule."""

import pytest

from asphaleia import (
    CHANNEL_ID_LEN,
    Role,
    SecretMaterial,
    TranscriptHash,
    derive_hybrid_shared_secret,
    derive_session_keys,
)
from asphaleia.kdf import derive_exported_secret, hkdf_expand, hkdf_expand_with_salt
from asphaleia.types import HYBRID_SS_INFO


def test_hkdf_rfc5869_vector():
    """RFC 5869 test case 1."""
    ikm = bytes([0x0B] * 22)
    salt = bytes(range(0x0D))
    info = bytes(range(0xF0, 0xFA))

    okm = hkdf_expand_with_salt(ikm, salt, info, 42)

    assert okm.hex() == (
        "3cb25f25faacd57a90434f64d0362f2a2d2d0a90cf1a5a4c5db0"
        "2d56ecc4c5bf34007208d5b887185865"
    )


def test_session_keys_deterministic():
    transcript_hash = bytes(32)
    with SecretMaterial(b"\x11" * 32) as shared:
        alice = derive_session_keys(shared, transcript_hash, Role.INITIATOR)
        bob = derive_session_keys(shared, transcript_hash, Role.RESPONDER)
        again = derive_session_keys(shared, transcript_hash, Role.INITIATOR)

    assert alice.send_key.ct_equals(bob.recv_key)
    assert alice.recv_key.ct_equals(bob.send_key)
    assert alice.send_key.ct_equals(again.send_key)
    assert not alice.send_key.ct_equals(alice.recv_key)
    assert alice.channel_id == bob.channel_id
    assert len(alice.channel_id) == CHANNEL_ID_LEN
    assert alice.exporter_secret.ct_equals(bob.exporter_secret)
    assert alice.send_nonce_counter == 0
    assert alice.recv_nonce_counter == 0


def test_session_keys_bound_to_transcript():
    with SecretMaterial(b"\x11" * 32) as shared:
        first = derive_session_keys(shared, b"\x00" * 32, Role.INITIATOR)
        second = derive_session_keys(shared, b"\x01" * 32, Role.INITIATOR)

    assert not first.send_key.ct_equals(second.send_key)
    assert first.channel_id != second.channel_id


def test_session_keys_zeroize():
    with SecretMaterial(b"\x11" * 32) as shared:
        keys = derive_session_keys(shared, bytes(32), Role.RESPONDER)

    keys.zeroize()

    assert keys.is_zeroized
    assert keys.exporter_secret.is_zeroized


def test_hybrid_combiner():
    ecdh = SecretMaterial(b"\x01" * 32)
    pq = SecretMaterial(b"\x02" * 32)
    other_pq = SecretMaterial(b"\x03" * 32)

    hybrid = derive_hybrid_shared_secret(ecdh, pq)

    assert hybrid.ct_equals(derive_hybrid_shared_secret(ecdh, pq))
    assert not hybrid.ct_equals(derive_hybrid_shared_secret(ecdh, other_pq))
    assert not hybrid.ct_equals(derive_hybrid_shared_secret(ecdh))
    # Swapping the inputs is a different secret
    assert not hybrid.ct_equals(derive_hybrid_shared_secret(pq, ecdh))
    assert len(hybrid) == 32


def test_hybrid_combiner_input_order():
    """KEM secret first, ECDH second, and the inputs stay usable."""
    ecdh = SecretMaterial(b"\x01" * 32)
    pq = SecretMaterial(b"\x02" * 32)

    with derive_hybrid_shared_secret(ecdh, pq) as hybrid:
        assert bytes(hybrid.expose()) == hkdf_expand(b"\x02" * 32 + b"\x01" * 32, HYBRID_SS_INFO)
    assert not ecdh.is_zeroized
    assert not pq.is_zeroized


def test_transcript_hash():
    first = TranscriptHash()
    first.update(b"msg", b"hello")
    second = TranscriptHash()
    second.update(b"msg", b"hello")

    assert first.digest() == second.digest()
    assert first.digest() == first.digest()
    assert len(first.digest()) == 32

    first.update(b"msg", b"more")
    assert first.digest() != second.digest()


def test_transcript_hash_framing():
    """Moving bytes between label and data changes the digest."""
    first = TranscriptHash()
    first.update(b"a", b"bc")
    second = TranscriptHash()
    second.update(b"ab", b"c")

    assert first.digest() != second.digest()


def test_exported_secret():
    exporter = SecretMaterial(b"\x09" * 32)

    with derive_exported_secret(exporter, b"label", 48) as secret:
        assert len(secret) == 48
    with pytest.raises(ValueError):
        derive_exported_secret(exporter, b"")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
