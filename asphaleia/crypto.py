"""Cryptographic operations using ChaCha20-Poly1305."""

import hmac
import logging
import os
import struct
from typing import Callable, Optional

from Crypto.Cipher import ChaCha20_Poly1305

from .error import AuthenticationFailed, MalformedMessage, RandomnessUnavailable
from .types import COUNTER_LIMIT, KEY_LEN, NONCE_LEN, TAG_LEN

logger = logging.getLogger(__name__)


class RandomSource:
    """
    Injectable cryptographically secure random byte generator.

    The core never seeds its own generator; callers pass a RandomSource
    (or rely on the OS-backed default). Any failure of the underlying
    source, including a short read, surfaces as RandomnessUnavailable.
    """

    def __init__(self, fill: Optional[Callable[[int], bytes]] = None):
        self._fill = fill or os.urandom

    def __call__(self, n: int) -> bytes:
        return self.random_bytes(n)

    def random_bytes(self, n: int) -> bytes:
        try:
            out = self._fill(n)
        except (OSError, NotImplementedError) as e:
            logger.error(f"Random source failed: {e}")
            raise RandomnessUnavailable(f"Random source failed: {e}")
        if out is None or len(out) != n:
            raise RandomnessUnavailable(f"Random source returned {0 if out is None else len(out)} of {n} bytes")
        return bytes(out)


_default_rng = RandomSource()


def default_rng() -> RandomSource:
    return _default_rng


def rand_bytes(n: int, rng: Optional[RandomSource] = None) -> bytes:
    """Generate n random bytes using the given source (OS-provided by default)."""
    return (rng or _default_rng).random_bytes(n)


def zero_bytes(data: bytearray) -> None:
    """
    Securely zero a bytearray to prevent sensitive data from lingering in memory.
    Note: Python doesn't guarantee memory clearing, but we overwrite anyway.
    """
    for i in range(len(data)):
        data[i] = 0


def constant_time_eq(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(a, b)


def make_nonce(prefix: bytes, ctr: int) -> bytes:
    """
    Create a nonce from the channel prefix and record counter.

    Nonce is 96 bits (12 bytes):
    - 4 bytes: channel id prefix
    - 8 bytes: counter (big-endian)
    """
    if len(prefix) != NONCE_LEN - 8:
        raise ValueError("Nonce prefix must be 4 bytes")
    if not 0 <= ctr < COUNTER_LIMIT:
        raise ValueError("Counter out of range")
    return bytes(prefix) + struct.pack(">Q", ctr)


def encrypt(key: bytes, nonce: bytes, ad: bytes, pt: bytes) -> bytes:
    """
    Encrypt plaintext using ChaCha20-Poly1305.

    Args:
        key: Directional record key (32 bytes)
        nonce: 12-byte nonce, unique per key
        ad: Associated data
        pt: Plaintext

    Returns:
        Ciphertext with authentication tag
    """
    if len(key) != KEY_LEN:
        raise ValueError("Key must be 32 bytes")
    cipher = ChaCha20_Poly1305.new(key=key, nonce=nonce)
    cipher.update(ad)
    ciphertext, tag = cipher.encrypt_and_digest(pt)
    return ciphertext + tag


def decrypt(key: bytes, nonce: bytes, ad: bytes, ct: bytes) -> bytes:
    """
    Decrypt ciphertext using ChaCha20-Poly1305.

    Args:
        key: Directional record key (32 bytes)
        nonce: 12-byte nonce
        ad: Associated data
        ct: Ciphertext with authentication tag

    Returns:
        Decrypted plaintext

    Raises:
        MalformedMessage: If the ciphertext is shorter than a tag
        AuthenticationFailed: If the tag does not verify
    """
    if len(ct) < TAG_LEN:
        raise MalformedMessage("Ciphertext too short")

    ciphertext = ct[:-TAG_LEN]
    tag = ct[-TAG_LEN:]

    cipher = ChaCha20_Poly1305.new(key=key, nonce=nonce)
    cipher.update(ad)

    try:
        return cipher.decrypt_and_verify(ciphertext, tag)
    except ValueError as e:
        raise AuthenticationFailed(f"Decryption failed: {e}")
