"""Key derivation functions using HKDF-SHA256."""

import struct
from dataclasses import dataclass
from typing import Optional

from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import HKDF

from .secret import SecretMaterial
from .types import (
    KEY_LEN,
    CHANNEL_ID_LEN,
    HYBRID_SS_INFO,
    ECDH_SS_INFO,
    I2R_KEY_INFO,
    R2I_KEY_INFO,
    CHANNEL_ID_INFO,
    EXPORTER_INFO,
    TRANSCRIPT_LABEL,
    Role,
)


def hkdf_expand(secret: bytes, info: bytes, length: int = KEY_LEN) -> bytes:
    """Derive a key using HKDF-SHA256 with an empty salt."""
    return HKDF(bytes(secret), length, salt=b"", num_keys=1, hashmod=SHA256, context=info)


def hkdf_expand_with_salt(secret: bytes, salt: bytes, info: bytes, length: int) -> bytes:
    """HKDF expand with salt."""
    return HKDF(bytes(secret), length, salt=bytes(salt), num_keys=1, hashmod=SHA256, context=info)


class TranscriptHash:
    """
    Running SHA-256 digest over all handshake messages.

    Every update is framed as ``len(label) || label || len(data) || data``
    so that message boundaries cannot be shifted between fields.
    """

    def __init__(self, label: bytes = TRANSCRIPT_LABEL):
        self._h = SHA256.new()
        self._h.update(label)

    def update(self, label: bytes, data: bytes) -> None:
        self._h.update(struct.pack(">I", len(label)) + label)
        self._h.update(struct.pack(">I", len(data)) + bytes(data))

    def digest(self) -> bytes:
        return self._h.copy().digest()


def derive_hybrid_shared_secret(
    ss_ecdh: SecretMaterial,
    ss_pq: Optional[SecretMaterial] = None,
) -> SecretMaterial:
    """
    Combine the ECDH and KEM shared values into the handshake SharedSecret.

    SS_hybrid = HKDF(SS_pq || SS_ecdh, "Asphaleia-Hybrid-SS")
    SS_ecdh_only = HKDF(SS_ecdh, "Asphaleia-ECDH-SS")

    The concatenation order is fixed; changing it is a protocol version change.

    Args:
        ss_ecdh: Classical (X25519) shared value
        ss_pq: Post-quantum (Kyber) shared value, None in ECDH-only mode

    Returns:
        Combined shared secret
    """
    if ss_pq is None:
        return SecretMaterial(bytearray(hkdf_expand(ss_ecdh.expose(), ECDH_SS_INFO)))

    combined = bytearray()
    combined.extend(ss_pq.expose())
    combined.extend(ss_ecdh.expose())
    with SecretMaterial(combined) as ikm:
        return SecretMaterial(bytearray(hkdf_expand(ikm.expose(), HYBRID_SS_INFO)))


@dataclass(eq=False)
class SessionKeys:
    """Directional record keys bound to one handshake."""

    send_key: SecretMaterial
    recv_key: SecretMaterial
    channel_id: bytes
    role: Role
    exporter_secret: SecretMaterial
    send_nonce_counter: int = 0
    recv_nonce_counter: int = 0

    def zeroize(self) -> None:
        """Securely clear all key material."""
        self.send_key.zeroize()
        self.recv_key.zeroize()
        self.exporter_secret.zeroize()

    @property
    def is_zeroized(self) -> bool:
        return self.send_key.is_zeroized and self.recv_key.is_zeroized


def derive_session_keys(shared_secret: SecretMaterial, transcript_hash: bytes, role: Role) -> SessionKeys:
    """
    Derive SessionKeys from the handshake shared secret.

    The transcript hash is used as HKDF salt so the keys are bound to the
    exact handshake that produced them. Fixed labels separate the
    initiator-to-responder and responder-to-initiator keys.

    Args:
        shared_secret: SharedSecret from the hybrid handshake
        transcript_hash: Digest of every handshake message
        role: Which side is deriving

    Returns:
        SessionKeys with send/recv assigned for this role
    """
    secret = shared_secret.expose()

    i2r = SecretMaterial(bytearray(hkdf_expand_with_salt(secret, transcript_hash, I2R_KEY_INFO, KEY_LEN)))
    r2i = SecretMaterial(bytearray(hkdf_expand_with_salt(secret, transcript_hash, R2I_KEY_INFO, KEY_LEN)))
    channel_id = hkdf_expand_with_salt(secret, transcript_hash, CHANNEL_ID_INFO, CHANNEL_ID_LEN)
    exporter = SecretMaterial(bytearray(hkdf_expand_with_salt(secret, transcript_hash, EXPORTER_INFO, KEY_LEN)))

    if role is Role.INITIATOR:
        send_key, recv_key = i2r, r2i
    else:
        send_key, recv_key = r2i, i2r

    return SessionKeys(
        send_key=send_key,
        recv_key=recv_key,
        channel_id=channel_id,
        role=role,
        exporter_secret=exporter,
    )


def derive_exported_secret(exporter_secret: SecretMaterial, label: bytes, length: int = KEY_LEN) -> SecretMaterial:
    """Derive a labelled channel-bound secret for use outside the record layer."""
    if not label:
        raise ValueError("Exporter label must not be empty")
    return exporter_secret.derive(EXPORTER_INFO + b"/" + label, length)
