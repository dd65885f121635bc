"""Constants and types for the Asphaleia protocol."""

import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Callable, Optional

from .error import ConfigError, MalformedMessage, ProtocolMismatch

if TYPE_CHECKING:
    from .certificate import TrustStore


# Protocol version
VERSION: int = 1

# Key length in bytes
KEY_LEN: int = 32

# AEAD parameters (ChaCha20-Poly1305)
NONCE_LEN: int = 12
TAG_LEN: int = 16

# Wire field widths (big-endian)
LENGTH_PREFIX_LEN: int = 4
COUNTER_LEN: int = 8
MAX_FIELD_LEN: int = 1 << 16

# Counters are 64-bit; reaching the limit forces renegotiation
COUNTER_LIMIT: int = 1 << (8 * COUNTER_LEN)

CHANNEL_ID_LEN: int = 16

# Replay window bounds
DEFAULT_REPLAY_WINDOW: int = 64
MAX_REPLAY_WINDOW: int = 4096

# Certificate chain depth, leaf excluded
MAX_CHAIN_DEPTH: int = 8

# X25519 key sizes
X25519_PUBLIC_KEY_SIZE: int = 32
X25519_PRIVATE_KEY_SIZE: int = 32

# Kyber768 sizes
KYBER768_PUBLIC_KEY_SIZE: int = 1184
KYBER768_CIPHERTEXT_SIZE: int = 1088

# Derivation labels
HYBRID_SS_INFO: bytes = b"Asphaleia-Hybrid-SS"
ECDH_SS_INFO: bytes = b"Asphaleia-ECDH-SS"
I2R_KEY_INFO: bytes = b"Asphaleia-I2R-Key"
R2I_KEY_INFO: bytes = b"Asphaleia-R2I-Key"
CHANNEL_ID_INFO: bytes = b"Asphaleia-ChannelID"
EXPORTER_INFO: bytes = b"Asphaleia-Exporter"
TRANSCRIPT_LABEL: bytes = b"Asphaleia-Transcript-v1"

# Signature contexts
INITIATOR_SIG_CONTEXT: bytes = b"Asphaleia-Initiator-Signature"
RESPONDER_SIG_CONTEXT: bytes = b"Asphaleia-Responder-Signature"
CERT_SIG_CONTEXT: bytes = b"Asphaleia-Certificate"

# Record associated data
RECORD_AD_PREFIX: bytes = b"Asphaleia-Record"
I2R_DIRECTION: bytes = b"i2r"
R2I_DIRECTION: bytes = b"r2i"


class Role(Enum):
    """Which end of the handshake a party plays."""

    INITIATOR = "initiator"
    RESPONDER = "responder"


class KemMode(IntEnum):
    """Key agreement variant, fixed at configuration time."""

    ECDH_ONLY = 0
    ECDH_PLUS_KEM = 1


class SignatureScheme(IntEnum):
    """Identity signature algorithms."""

    ED25519 = 1
    DILITHIUM3 = 2

    @property
    def public_key_size(self) -> int:
        return _PUBLIC_KEY_SIZES[self]

    @property
    def signature_size(self) -> int:
        return _SIGNATURE_SIZES[self]


_PUBLIC_KEY_SIZES = {
    SignatureScheme.ED25519: 32,
    SignatureScheme.DILITHIUM3: 1952,
}

_SIGNATURE_SIZES = {
    SignatureScheme.ED25519: 64,
    SignatureScheme.DILITHIUM3: 3293,
}


class ChannelState(Enum):
    """SecureChannel lifecycle."""

    HANDSHAKING = "handshaking"
    ESTABLISHED = "established"
    CLOSED = "closed"


class ValidationResult(Enum):
    """Outcome of certificate validation."""

    VALID = "valid"
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    SIGNATURE_INVALID = "signature_invalid"
    UNTRUSTED_ISSUER = "untrusted_issuer"
    MALFORMED = "malformed"

    @property
    def is_valid(self) -> bool:
        return self is ValidationResult.VALID


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HandshakeConfig:
    """Handshake and channel configuration."""

    hybrid_kem: bool = True
    trust_store: Optional["TrustStore"] = None
    require_client_auth: bool = False
    expected_peer: Optional[str] = None
    replay_window: int = DEFAULT_REPLAY_WINDOW
    clock: Callable[[], datetime] = field(default=utc_now, repr=False)

    @classmethod
    def default(cls, trust_store: Optional["TrustStore"] = None) -> "HandshakeConfig":
        """Return the recommended hybrid configuration."""
        return cls(hybrid_kem=True, trust_store=trust_store)

    @property
    def mode(self) -> KemMode:
        return KemMode.ECDH_PLUS_KEM if self.hybrid_kem else KemMode.ECDH_ONLY

    def validate(self) -> None:
        """Validate the configuration, raises ConfigError if invalid."""
        if not 1 <= self.replay_window <= MAX_REPLAY_WINDOW:
            raise ConfigError(f"replay_window must be between 1 and {MAX_REPLAY_WINDOW}")
        if self.expected_peer is not None and not self.expected_peer:
            raise ConfigError("expected_peer must not be empty")
        if not callable(self.clock):
            raise ConfigError("clock must be callable")


# ============================================================================
# Wire encoding helpers
# ============================================================================

def pack_field(data: bytes) -> bytes:
    """Length-prefix a field (4-byte big-endian)."""
    if len(data) > MAX_FIELD_LEN:
        raise ValueError(f"Field too long: {len(data)} bytes")
    return struct.pack(">I", len(data)) + bytes(data)


class FieldReader:
    """Sequential reader over a fixed-layout big-endian structure."""

    def __init__(self, data: bytes):
        self._data = bytes(data)
        self._pos = 0

    def _take(self, n: int) -> bytes:
        if n < 0 or self._pos + n > len(self._data):
            raise MalformedMessage("Truncated message")
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def u8(self) -> int:
        return self._take(1)[0]

    def u64(self) -> int:
        return struct.unpack(">Q", self._take(8))[0]

    def i64(self) -> int:
        return struct.unpack(">q", self._take(8))[0]

    def field(self) -> bytes:
        (length,) = struct.unpack(">I", self._take(LENGTH_PREFIX_LEN))
        if length > MAX_FIELD_LEN:
            raise MalformedMessage(f"Field length {length} exceeds limit")
        return self._take(length)

    def finish(self) -> None:
        if self._pos != len(self._data):
            raise MalformedMessage("Trailing bytes after message")


def _read_header(reader: FieldReader) -> KemMode:
    version = reader.u8()
    if version != VERSION:
        raise ProtocolMismatch(f"Unsupported protocol version {version}")
    try:
        return KemMode(reader.u8())
    except ValueError:
        raise MalformedMessage("Unknown key agreement mode")


@dataclass
class InitiatorHello:
    """First handshake message (initiator -> responder)."""

    mode: KemMode
    ecdh_pub: bytes  # X25519 ephemeral public key (32 bytes)
    kem_pub: bytes = b""  # Kyber768 ephemeral public key, empty in ECDH-only mode
    certificate: bytes = b""  # Encoded initiator certificate, empty when anonymous
    sig: bytes = b""  # Signature over the signed body, empty when anonymous

    def signed_body(self) -> bytes:
        return (
            bytes([VERSION, int(self.mode)])
            + pack_field(self.ecdh_pub)
            + pack_field(self.kem_pub)
            + pack_field(self.certificate)
        )

    def to_bytes(self) -> bytes:
        return self.signed_body() + pack_field(self.sig)

    @classmethod
    def from_bytes(cls, data: bytes) -> "InitiatorHello":
        reader = FieldReader(data)
        mode = _read_header(reader)
        msg = cls(
            mode=mode,
            ecdh_pub=reader.field(),
            kem_pub=reader.field(),
            certificate=reader.field(),
            sig=reader.field(),
        )
        reader.finish()
        return msg


@dataclass
class ResponderHello:
    """Second handshake message (responder -> initiator)."""

    mode: KemMode
    ecdh_pub: bytes  # X25519 ephemeral public key (32 bytes)
    kem_ct: bytes  # Kyber768 ciphertext, empty in ECDH-only mode
    certificate: bytes  # Encoded responder certificate
    sig: bytes = b""  # Signature over the transcript

    def signed_body(self) -> bytes:
        return (
            bytes([VERSION, int(self.mode)])
            + pack_field(self.ecdh_pub)
            + pack_field(self.kem_ct)
            + pack_field(self.certificate)
        )

    def to_bytes(self) -> bytes:
        return self.signed_body() + pack_field(self.sig)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ResponderHello":
        reader = FieldReader(data)
        mode = _read_header(reader)
        msg = cls(
            mode=mode,
            ecdh_pub=reader.field(),
            kem_ct=reader.field(),
            certificate=reader.field(),
            sig=reader.field(),
        )
        reader.finish()
        return msg


@dataclass
class Record:
    """Encrypted channel record: counter (8 bytes) || ciphertext || tag."""

    counter: int
    body: bytes

    def header(self) -> bytes:
        return struct.pack(">Q", self.counter)

    def to_bytes(self) -> bytes:
        return self.header() + self.body

    @classmethod
    def from_bytes(cls, data: bytes) -> "Record":
        if len(data) < COUNTER_LEN + TAG_LEN:
            raise MalformedMessage("Record too short")
        (counter,) = struct.unpack(">Q", data[:COUNTER_LEN])
        return cls(counter=counter, body=bytes(data[COUNTER_LEN:]))
