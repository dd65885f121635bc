"""Long-term identity signing keypairs (Ed25519 or Dilithium3)."""

import hashlib
import logging
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from dilithium_py.dilithium import Dilithium3

from .crypto import RandomSource, rand_bytes
from .error import RandomnessUnavailable
from .secret import SecretMaterial
from .types import SignatureScheme

logger = logging.getLogger(__name__)

DEFAULT_SCHEME = SignatureScheme.DILITHIUM3


class IdentityKeyPair:
    """
    Long-term signing keypair.

    Only generate() creates a keypair, so the public key is always the
    counterpart of the held secret. The secret half is SecretMaterial and
    is wiped by zeroize() or on leaving a ``with`` block.
    """

    def __init__(self, scheme: SignatureScheme, public_key: bytes, secret: SecretMaterial):
        self._scheme = scheme
        self._public_key = bytes(public_key)
        self._secret = secret

    @classmethod
    def generate(
        cls,
        rng: Optional[RandomSource] = None,
        scheme: SignatureScheme = DEFAULT_SCHEME,
    ) -> "IdentityKeyPair":
        """
        Generate a new identity keypair.

        Ed25519 keys are drawn from the injected random source. Dilithium3
        keys are produced by dilithium-py from the OS generator.

        Raises:
            RandomnessUnavailable: If the random source cannot produce bytes
        """
        if scheme is SignatureScheme.ED25519:
            seed = bytearray(rand_bytes(32, rng))
            with SecretMaterial(seed) as seed_secret:
                private_key = Ed25519PrivateKey.from_private_bytes(bytes(seed_secret.expose()))
            public_key = private_key.public_key().public_bytes_raw()
            secret = SecretMaterial(bytearray(private_key.private_bytes_raw()))
        elif scheme is SignatureScheme.DILITHIUM3:
            try:
                public_key, private_key = Dilithium3.keygen()
            except (OSError, NotImplementedError) as e:
                raise RandomnessUnavailable(f"Dilithium3 key generation failed: {e}")
            secret = SecretMaterial(bytearray(private_key))
        else:
            raise ValueError(f"Unsupported signature scheme: {scheme!r}")
        return cls(scheme, public_key, secret)

    @property
    def scheme(self) -> SignatureScheme:
        return self._scheme

    @property
    def public_key(self) -> bytes:
        return self._public_key

    @property
    def secret(self) -> SecretMaterial:
        return self._secret

    @property
    def fingerprint(self) -> str:
        """Hex SHA-256 of the public key."""
        return hashlib.sha256(self._public_key).hexdigest()

    def sign(self, message: bytes) -> bytes:
        """Sign a message (Ed25519 is deterministic, Dilithium3 per library default)."""
        sk = bytes(self._secret.expose())
        if self._scheme is SignatureScheme.ED25519:
            return Ed25519PrivateKey.from_private_bytes(sk).sign(message)
        return Dilithium3.sign(sk, message)

    @staticmethod
    def verify(
        public_key: bytes,
        message: bytes,
        signature: bytes,
        scheme: SignatureScheme = DEFAULT_SCHEME,
    ) -> bool:
        """
        Verify a signature. Never raises; any malformed input returns False.
        """
        return verify_signature(scheme, public_key, message, signature)

    def zeroize(self) -> None:
        self._secret.zeroize()

    def __enter__(self) -> "IdentityKeyPair":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.zeroize()

    def __repr__(self) -> str:
        return f"IdentityKeyPair(scheme={self._scheme.name}, fingerprint={self.fingerprint[:16]})"


def verify_signature(scheme: SignatureScheme, public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Scheme-dispatching signature check returning False on any failure."""
    try:
        scheme = SignatureScheme(scheme)
        public_key = bytes(public_key)
        signature = bytes(signature)
        message = bytes(message)
    except (TypeError, ValueError):
        return False

    if len(public_key) != scheme.public_key_size or len(signature) != scheme.signature_size:
        return False

    if scheme is SignatureScheme.ED25519:
        try:
            Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
            return True
        except (InvalidSignature, ValueError):
            return False

    # dilithium-py does not validate encodings; treat decoder errors as mismatch
    try:
        return bool(Dilithium3.verify(public_key, message, signature))
    except (ValueError, IndexError, AssertionError, TypeError) as e:
        logger.debug(f"Dilithium3 verify rejected malformed input: {e}")
        return False
