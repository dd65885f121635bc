"""
Asphaleia: Hybrid Post-Quantum Secure Channel Core

Authenticated, forward-secret channels combining X25519 key agreement with
Kyber768 key encapsulation, and an identity layer of signing keypairs and
certificates.

Features:
- Hybrid key agreement: X25519 (classical) + Kyber768 (post-quantum), or ECDH only
- Identity signatures with Dilithium3 (post-quantum) or Ed25519
- Certificate issuance and chain validation against a shared trust store
- Transcript-bound HKDF-SHA256 session key schedule
- ChaCha20-Poly1305 record layer with replay window
- Zeroizing containers for all secret material

The hybrid shared secret remains secure provided at least one of the
component key agreements remains secure.
"""

from .types import (
    VERSION,
    KEY_LEN,
    CHANNEL_ID_LEN,
    COUNTER_LIMIT,
    DEFAULT_REPLAY_WINDOW,
    MAX_REPLAY_WINDOW,
    X25519_PUBLIC_KEY_SIZE,
    KYBER768_PUBLIC_KEY_SIZE,
    KYBER768_CIPHERTEXT_SIZE,
    ChannelState,
    HandshakeConfig,
    InitiatorHello,
    KemMode,
    Record,
    ResponderHello,
    Role,
    SignatureScheme,
    ValidationResult,
)
from .crypto import RandomSource, rand_bytes, zero_bytes
from .secret import SecretMaterial
from .kdf import (
    SessionKeys,
    TranscriptHash,
    derive_hybrid_shared_secret,
    derive_session_keys,
)
from .identity import IdentityKeyPair, verify_signature
from .certificate import (
    Certificate,
    CertificateAuthority,
    TrustAnchor,
    TrustStore,
    Validity,
    issue_certificate,
    validate_certificate,
)
from .channel import ReplayWindow, SecureChannel
from .handshake import (
    EcdhOnly,
    EcdhPlusKem,
    HandshakeInitiator,
    HandshakeResponder,
    HandshakeResult,
    KeyAgreement,
    generate_kem_keypair,
    generate_x25519_keypair,
    key_agreement_for,
    x25519_shared_secret,
)
from .keyring import KeyRing
from .proof import ProofProvider, create_binding_proof, verify_binding_proof
from .error import (
    AsphaleiaError,
    AuthenticationFailed,
    CertificateInvalid,
    ChannelClosed,
    ChannelNotEstablished,
    ConfigError,
    CounterExhausted,
    HandshakeStateError,
    KeyNotFound,
    MalformedMessage,
    ProtocolMismatch,
    RandomnessUnavailable,
    ReplayDetected,
    SecretDestroyed,
)

__version__ = "0.1.0"
__all__ = [
    # Constants
    "VERSION",
    "KEY_LEN",
    "CHANNEL_ID_LEN",
    "COUNTER_LIMIT",
    "DEFAULT_REPLAY_WINDOW",
    "MAX_REPLAY_WINDOW",
    "X25519_PUBLIC_KEY_SIZE",
    "KYBER768_PUBLIC_KEY_SIZE",
    "KYBER768_CIPHERTEXT_SIZE",
    # Types
    "ChannelState",
    "HandshakeConfig",
    "InitiatorHello",
    "KemMode",
    "Record",
    "ResponderHello",
    "Role",
    "SignatureScheme",
    "ValidationResult",
    # Crypto
    "RandomSource",
    "rand_bytes",
    "zero_bytes",
    "SecretMaterial",
    # KDF
    "SessionKeys",
    "TranscriptHash",
    "derive_hybrid_shared_secret",
    "derive_session_keys",
    # Identity
    "IdentityKeyPair",
    "verify_signature",
    # Certificates
    "Certificate",
    "CertificateAuthority",
    "TrustAnchor",
    "TrustStore",
    "Validity",
    "issue_certificate",
    "validate_certificate",
    # Channel
    "ReplayWindow",
    "SecureChannel",
    # Handshake
    "EcdhOnly",
    "EcdhPlusKem",
    "HandshakeInitiator",
    "HandshakeResponder",
    "HandshakeResult",
    "KeyAgreement",
    "generate_kem_keypair",
    "generate_x25519_keypair",
    "key_agreement_for",
    "x25519_shared_secret",
    # Keyring
    "KeyRing",
    # Proof boundary
    "ProofProvider",
    "create_binding_proof",
    "verify_binding_proof",
    # Error
    "AsphaleiaError",
    "AuthenticationFailed",
    "CertificateInvalid",
    "ChannelClosed",
    "ChannelNotEstablished",
    "ConfigError",
    "CounterExhausted",
    "HandshakeStateError",
    "KeyNotFound",
    "MalformedMessage",
    "ProtocolMismatch",
    "RandomnessUnavailable",
    "ReplayDetected",
    "SecretDestroyed",
]
