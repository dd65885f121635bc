"""Shared fixtures for Asphaleia tests."""

import hashlib
from datetime import datetime, timedelta, timezone

import pytest

from asphaleia import (
    CertificateAuthority,
    IdentityKeyPair,
    Role,
    SecretMaterial,
    SecureChannel,
    SignatureScheme,
    TrustStore,
    Validity,
    derive_session_keys,
)
from asphaleia.types import DEFAULT_REPLAY_WINDOW


def create_test_channels(replay_window=DEFAULT_REPLAY_WINDOW):
    """Create a connected initiator/responder channel pair without a handshake."""
    transcript_hash = hashlib.sha256(b"test transcript").digest()
    with SecretMaterial.generate(32) as shared:
        alice_keys = derive_session_keys(shared, transcript_hash, Role.INITIATOR)
        bob_keys = derive_session_keys(shared, transcript_hash, Role.RESPONDER)

    alice = SecureChannel(replay_window=replay_window)
    alice.establish(alice_keys, transcript_hash=transcript_hash)
    bob = SecureChannel(replay_window=replay_window)
    bob.establish(bob_keys, transcript_hash=transcript_hash)
    return alice, bob


@pytest.fixture
def channel_factory():
    return create_test_channels


@pytest.fixture
def validity():
    """One-year window around the real clock, for handshakes."""
    return Validity.for_period(datetime.now(timezone.utc) - timedelta(days=1), timedelta(days=365))


@pytest.fixture
def ca():
    return CertificateAuthority("test-root", IdentityKeyPair.generate(scheme=SignatureScheme.ED25519))


@pytest.fixture
def trust_store(ca, validity):
    return TrustStore.from_certificates([ca.root_certificate(validity)])


@pytest.fixture
def bob(ca, validity):
    """Responder identity and certificate."""
    identity = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    return identity, ca.issue_for("bob", identity, validity)


@pytest.fixture
def alice(ca, validity):
    """Initiator identity and certificate, for client authentication."""
    identity = IdentityKeyPair.generate(scheme=SignatureScheme.ED25519)
    return identity, ca.issue_for("alice", identity, validity)
