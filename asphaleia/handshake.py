"""Hybrid handshake using X25519 + Kyber768 and signed transcripts."""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from kyber_py.kyber import Kyber768

from .certificate import Certificate, validate_certificate
from .channel import SecureChannel
from .crypto import RandomSource, default_rng
from .error import (
    AsphaleiaError,
    AuthenticationFailed,
    CertificateInvalid,
    ConfigError,
    HandshakeStateError,
    MalformedMessage,
    ProtocolMismatch,
    RandomnessUnavailable,
)
from .identity import IdentityKeyPair, verify_signature
from .kdf import SessionKeys, TranscriptHash, derive_hybrid_shared_secret, derive_session_keys
from .secret import SecretMaterial
from .types import (
    INITIATOR_SIG_CONTEXT,
    KYBER768_CIPHERTEXT_SIZE,
    KYBER768_PUBLIC_KEY_SIZE,
    RESPONDER_SIG_CONTEXT,
    X25519_PRIVATE_KEY_SIZE,
    X25519_PUBLIC_KEY_SIZE,
    HandshakeConfig,
    InitiatorHello,
    KemMode,
    ResponderHello,
    Role,
    ValidationResult,
)

logger = logging.getLogger(__name__)

# Transcript labels
_INITIATOR_HELLO = b"initiator-hello"
_RESPONDER_HELLO = b"responder-hello"
_RESPONDER_SIGNATURE = b"responder-signature"


# ============================================================================
# Primitive helpers
# ============================================================================

def generate_x25519_keypair(rng: Optional[RandomSource] = None) -> Tuple[bytes, SecretMaterial]:
    """
    Generate a new X25519 key pair from the given random source.

    Returns:
        Tuple of (public_key, private_key)
    """
    seed = SecretMaterial(bytearray((rng or default_rng()).random_bytes(X25519_PRIVATE_KEY_SIZE)))
    private_key = X25519PrivateKey.from_private_bytes(bytes(seed.expose()))
    public_key = private_key.public_key().public_bytes_raw()
    return public_key, seed


def x25519_shared_secret(our_priv: SecretMaterial, peer_pub: bytes) -> SecretMaterial:
    """
    Compute X25519 shared secret.

    Raises:
        MalformedMessage: If the peer share has the wrong length or is a low-order point
    """
    if len(peer_pub) != X25519_PUBLIC_KEY_SIZE:
        raise MalformedMessage(f"X25519 public share must be {X25519_PUBLIC_KEY_SIZE} bytes")
    private_key = X25519PrivateKey.from_private_bytes(bytes(our_priv.expose()))
    public_key = X25519PublicKey.from_public_bytes(bytes(peer_pub))
    try:
        return SecretMaterial(bytearray(private_key.exchange(public_key)))
    except ValueError as e:
        raise MalformedMessage(f"Invalid X25519 public share: {e}")


def generate_kem_keypair() -> Tuple[bytes, SecretMaterial]:
    """
    Generate a new Kyber768 key pair.

    Returns:
        Tuple of (public_key, private_key)
    """
    try:
        public_key, private_key = Kyber768.keygen()
    except (OSError, NotImplementedError) as e:
        raise RandomnessUnavailable(f"Kyber768 key generation failed: {e}")
    return public_key, SecretMaterial(bytearray(private_key))


def kem_encapsulate(peer_pub: bytes) -> Tuple[SecretMaterial, bytes]:
    """
    Encapsulate a fresh shared value to the peer's Kyber public key.

    Returns:
        Tuple of (shared_secret, ciphertext)
    """
    if len(peer_pub) != KYBER768_PUBLIC_KEY_SIZE:
        raise MalformedMessage(f"Kyber768 public key must be {KYBER768_PUBLIC_KEY_SIZE} bytes")
    try:
        shared_secret, ciphertext = Kyber768.encaps(bytes(peer_pub))
    except ValueError as e:
        raise MalformedMessage(f"Kyber768 encapsulation rejected public key: {e}")
    return SecretMaterial(bytearray(shared_secret)), ciphertext


def kem_decapsulate(our_priv: SecretMaterial, ct: bytes) -> SecretMaterial:
    """
    Recover the shared value from a Kyber ciphertext.
    """
    if len(ct) != KYBER768_CIPHERTEXT_SIZE:
        raise MalformedMessage(f"Kyber768 ciphertext must be {KYBER768_CIPHERTEXT_SIZE} bytes")
    try:
        shared_secret = Kyber768.decaps(bytes(our_priv.expose()), bytes(ct))
    except ValueError as e:
        raise MalformedMessage(f"Kyber768 decapsulation failed: {e}")
    return SecretMaterial(bytearray(shared_secret))


# ============================================================================
# Key agreement variants
# ============================================================================

@dataclass(eq=False)
class EphemeralKeys:
    """One side's per-handshake key material."""

    ecdh_pub: bytes
    ecdh_secret: SecretMaterial
    kem_pub: bytes = b""
    kem_secret: Optional[SecretMaterial] = None

    def zeroize(self) -> None:
        self.ecdh_secret.zeroize()
        if self.kem_secret is not None:
            self.kem_secret.zeroize()


class KeyAgreement:
    """Capability interface over the ECDH-only and ECDH+KEM variants."""

    mode: KemMode

    def generate(self, rng: RandomSource) -> EphemeralKeys:
        """Initiator: fresh ephemeral shares to offer."""
        raise NotImplementedError

    def encapsulate(self, rng: RandomSource, peer: InitiatorHello) -> Tuple[EphemeralKeys, bytes, SecretMaterial]:
        """Responder: (own ephemeral keys, KEM ciphertext, SharedSecret)."""
        raise NotImplementedError

    def decapsulate(self, own: EphemeralKeys, peer: ResponderHello) -> SecretMaterial:
        """Initiator: SharedSecret from the responder's reply."""
        raise NotImplementedError


class EcdhOnly(KeyAgreement):
    """Classical X25519 agreement; SharedSecret derives from ECDH alone."""

    mode = KemMode.ECDH_ONLY

    def generate(self, rng: RandomSource) -> EphemeralKeys:
        ecdh_pub, ecdh_secret = generate_x25519_keypair(rng)
        return EphemeralKeys(ecdh_pub=ecdh_pub, ecdh_secret=ecdh_secret)

    def encapsulate(self, rng: RandomSource, peer: InitiatorHello) -> Tuple[EphemeralKeys, bytes, SecretMaterial]:
        if peer.kem_pub:
            raise MalformedMessage("Unexpected KEM public key in ECDH-only handshake")
        own = self.generate(rng)
        try:
            with x25519_shared_secret(own.ecdh_secret, peer.ecdh_pub) as ss_ecdh:
                return own, b"", derive_hybrid_shared_secret(ss_ecdh)
        except AsphaleiaError:
            own.zeroize()
            raise

    def decapsulate(self, own: EphemeralKeys, peer: ResponderHello) -> SecretMaterial:
        if peer.kem_ct:
            raise MalformedMessage("Unexpected KEM ciphertext in ECDH-only handshake")
        with x25519_shared_secret(own.ecdh_secret, peer.ecdh_pub) as ss_ecdh:
            return derive_hybrid_shared_secret(ss_ecdh)


class EcdhPlusKem(KeyAgreement):
    """Hybrid X25519 + Kyber768 agreement; both values feed the SharedSecret."""

    mode = KemMode.ECDH_PLUS_KEM

    def generate(self, rng: RandomSource) -> EphemeralKeys:
        ecdh_pub, ecdh_secret = generate_x25519_keypair(rng)
        try:
            kem_pub, kem_secret = generate_kem_keypair()
        except AsphaleiaError:
            ecdh_secret.zeroize()
            raise
        return EphemeralKeys(ecdh_pub=ecdh_pub, ecdh_secret=ecdh_secret, kem_pub=kem_pub, kem_secret=kem_secret)

    def encapsulate(self, rng: RandomSource, peer: InitiatorHello) -> Tuple[EphemeralKeys, bytes, SecretMaterial]:
        ecdh_pub, ecdh_secret = generate_x25519_keypair(rng)
        own = EphemeralKeys(ecdh_pub=ecdh_pub, ecdh_secret=ecdh_secret)
        try:
            with x25519_shared_secret(own.ecdh_secret, peer.ecdh_pub) as ss_ecdh:
                ss_pq, ct = kem_encapsulate(peer.kem_pub)
                with ss_pq:
                    return own, ct, derive_hybrid_shared_secret(ss_ecdh, ss_pq)
        except AsphaleiaError:
            own.zeroize()
            raise

    def decapsulate(self, own: EphemeralKeys, peer: ResponderHello) -> SecretMaterial:
        if own.kem_secret is None:
            raise HandshakeStateError("No KEM secret for hybrid decapsulation")
        with kem_decapsulate(own.kem_secret, peer.kem_ct) as ss_pq:
            with x25519_shared_secret(own.ecdh_secret, peer.ecdh_pub) as ss_ecdh:
                return derive_hybrid_shared_secret(ss_ecdh, ss_pq)


def key_agreement_for(mode: KemMode) -> KeyAgreement:
    if mode is KemMode.ECDH_PLUS_KEM:
        return EcdhPlusKem()
    return EcdhOnly()


# ============================================================================
# Handshake state machines
# ============================================================================

@dataclass(eq=False)
class HandshakeState:
    """Transient per-attempt state; destroyed on completion or abort."""

    role: Role
    agreement: KeyAgreement
    ephemeral: EphemeralKeys
    transcript: TranscriptHash

    def destroy(self) -> None:
        self.ephemeral.zeroize()


class HandshakeResult:
    """
    Output of a completed handshake.

    Owns the SessionKeys until open_channel() hands them to a SecureChannel.
    """

    def __init__(
        self,
        session_keys: SessionKeys,
        transcript_hash: bytes,
        mode: KemMode,
        peer_certificate: Optional[Certificate],
        replay_window: int,
    ):
        self._keys: Optional[SessionKeys] = session_keys
        self.transcript_hash = transcript_hash
        self.mode = mode
        self.peer_certificate = peer_certificate
        self.channel_id = session_keys.channel_id
        self._replay_window = replay_window

    @property
    def session_keys(self) -> SessionKeys:
        if self._keys is None:
            raise HandshakeStateError("Session keys already handed to a channel")
        return self._keys

    def open_channel(self) -> SecureChannel:
        """Transfer the session keys into a new, established SecureChannel."""
        keys = self.session_keys
        self._keys = None
        channel = SecureChannel(replay_window=self._replay_window)
        channel.establish(keys, peer_certificate=self.peer_certificate, transcript_hash=self.transcript_hash)
        return channel

    def discard(self) -> None:
        if self._keys is not None:
            self._keys.zeroize()
            self._keys = None


class _Handshake:
    """Single-use lifecycle shared by both roles."""

    role: Role

    def __init__(self, config: Optional[HandshakeConfig], rng: Optional[RandomSource]):
        self._config = config or HandshakeConfig.default()
        self._config.validate()
        self._rng = rng or default_rng()
        self._state: Optional[HandshakeState] = None
        self._stage = "new"

    @property
    def config(self) -> HandshakeConfig:
        return self._config

    @property
    def stage(self) -> str:
        return self._stage

    def _require_stage(self, expected: str) -> None:
        if self._stage != expected:
            raise HandshakeStateError(
                f"{self.role.value} handshake is {self._stage!r}, expected {expected!r}"
            )

    def abort(self) -> None:
        """Discard the handshake, zeroizing all ephemeral secrets immediately."""
        if self._state is not None:
            self._state.destroy()
            self._state = None
        if self._stage != "complete":
            self._stage = "aborted"

    def _complete(self) -> None:
        if self._state is not None:
            self._state.destroy()
            self._state = None
        self._stage = "complete"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.abort()

    def _check_peer_certificate(self, encoded: bytes) -> Certificate:
        """Decode and validate a peer certificate against the trust store."""
        try:
            cert = Certificate.from_bytes(encoded)
        except MalformedMessage:
            raise CertificateInvalid(ValidationResult.MALFORMED)
        if self._config.trust_store is None:
            raise ConfigError("A trust store is required to authenticate the peer")
        result = validate_certificate(cert, self._config.trust_store, now=self._config.clock())
        if result is not ValidationResult.VALID:
            raise CertificateInvalid(result, subject=cert.subject)
        expected = self._config.expected_peer
        if expected is not None and cert.subject != expected:
            raise AuthenticationFailed(f"Peer certificate subject {cert.subject!r} does not match {expected!r}")
        return cert

    def _check_mode(self, mode: KemMode) -> None:
        if mode is not self._config.mode:
            raise ProtocolMismatch(f"Peer uses {mode.name}, configured for {self._config.mode.name}")


def _check_own_identity(identity: Optional[IdentityKeyPair], certificate: Optional[Certificate]) -> None:
    if (identity is None) != (certificate is None):
        raise ConfigError("Identity keypair and certificate must be supplied together")
    if certificate is not None:
        if certificate.subject_public_key != identity.public_key or certificate.scheme is not identity.scheme:
            raise ConfigError("Certificate does not certify the supplied identity keypair")


class HandshakeInitiator(_Handshake):
    """
    Initiator side of the two-message handshake.

    Usage:
        initiator = HandshakeInitiator(config)
        hello = initiator.start()
        # ... send hello, receive reply ...
        channel = initiator.finish(reply).open_channel()
    """

    role = Role.INITIATOR

    def __init__(
        self,
        config: Optional[HandshakeConfig] = None,
        identity: Optional[IdentityKeyPair] = None,
        certificate: Optional[Certificate] = None,
        rng: Optional[RandomSource] = None,
    ):
        super().__init__(config, rng)
        _check_own_identity(identity, certificate)
        if self._config.trust_store is None:
            raise ConfigError("Initiator requires a trust store to authenticate the responder")
        self._identity = identity
        self._certificate = certificate

    def start(self) -> bytes:
        """
        Generate ephemeral shares and build the initiator hello.

        Returns:
            Encoded InitiatorHello
        """
        self._require_stage("new")
        agreement = key_agreement_for(self._config.mode)
        ephemeral = agreement.generate(self._rng)
        try:
            hello = InitiatorHello(
                mode=agreement.mode,
                ecdh_pub=ephemeral.ecdh_pub,
                kem_pub=ephemeral.kem_pub,
                certificate=self._certificate.to_bytes() if self._certificate else b"",
            )
            if self._identity is not None:
                hello.sig = self._identity.sign(INITIATOR_SIG_CONTEXT + hello.signed_body())
            data = hello.to_bytes()
        except Exception:
            ephemeral.zeroize()
            self._stage = "aborted"
            raise

        transcript = TranscriptHash()
        transcript.update(_INITIATOR_HELLO, data)
        self._state = HandshakeState(Role.INITIATOR, agreement, ephemeral, transcript)
        self._stage = "started"
        return data

    def finish(self, data: bytes) -> HandshakeResult:
        """
        Verify the responder hello and derive the session keys.

        Raises:
            MalformedMessage: If the reply cannot be parsed
            CertificateInvalid: If the responder certificate does not validate
            AuthenticationFailed: If the transcript signature does not verify
        """
        self._require_stage("started")
        state = self._state
        try:
            reply = ResponderHello.from_bytes(data)
            self._check_mode(reply.mode)
            peer_cert = self._check_peer_certificate(reply.certificate)

            state.transcript.update(_RESPONDER_HELLO, reply.signed_body())
            signed = RESPONDER_SIG_CONTEXT + state.transcript.digest()
            if not verify_signature(peer_cert.scheme, peer_cert.subject_public_key, signed, reply.sig):
                raise AuthenticationFailed("Responder transcript signature verification failed")
            state.transcript.update(_RESPONDER_SIGNATURE, reply.sig)
            transcript_hash = state.transcript.digest()

            with state.agreement.decapsulate(state.ephemeral, reply) as shared_secret:
                keys = derive_session_keys(shared_secret, transcript_hash, Role.INITIATOR)
        except Exception as e:
            logger.warning(f"Initiator handshake aborted: {type(e).__name__}: {e}")
            self.abort()
            raise

        self._complete()
        logger.info(
            f"Handshake complete ({reply.mode.name}) as initiator with {peer_cert.subject!r}, "
            f"channel {keys.channel_id.hex()[:8]}"
        )
        return HandshakeResult(keys, transcript_hash, reply.mode, peer_cert, self._config.replay_window)


class HandshakeResponder(_Handshake):
    """
    Responder side of the two-message handshake.

    The responder always authenticates with its identity key and certificate;
    initiator authentication is verified when present and enforced when
    ``require_client_auth`` is set.
    """

    role = Role.RESPONDER

    def __init__(
        self,
        identity: IdentityKeyPair,
        certificate: Certificate,
        config: Optional[HandshakeConfig] = None,
        rng: Optional[RandomSource] = None,
    ):
        super().__init__(config, rng)
        if identity is None or certificate is None:
            raise ConfigError("Responder requires an identity keypair and certificate")
        _check_own_identity(identity, certificate)
        if self._config.require_client_auth and self._config.trust_store is None:
            raise ConfigError("Client authentication requires a trust store")
        self._identity = identity
        self._certificate = certificate

    def _authenticate_initiator(self, hello: InitiatorHello) -> Optional[Certificate]:
        if not hello.certificate:
            if hello.sig:
                raise MalformedMessage("Initiator signature without certificate")
            if self._config.require_client_auth:
                raise AuthenticationFailed("Client certificate required")
            return None
        if self._config.trust_store is None:
            if self._config.require_client_auth:
                raise ConfigError("Client authentication requires a trust store")
            logger.debug("Ignoring initiator certificate: no trust store configured")
            return None
        cert = self._check_peer_certificate(hello.certificate)
        signed = INITIATOR_SIG_CONTEXT + hello.signed_body()
        if not verify_signature(cert.scheme, cert.subject_public_key, signed, hello.sig):
            raise AuthenticationFailed("Initiator hello signature verification failed")
        return cert

    def respond(self, data: bytes) -> Tuple[bytes, HandshakeResult]:
        """
        Process the initiator hello and produce the signed reply.

        Returns:
            Tuple of (encoded ResponderHello, HandshakeResult)
        """
        self._require_stage("new")
        self._stage = "started"
        try:
            hello = InitiatorHello.from_bytes(data)
            self._check_mode(hello.mode)
            peer_cert = self._authenticate_initiator(hello)

            agreement = key_agreement_for(hello.mode)
            transcript = TranscriptHash()
            transcript.update(_INITIATOR_HELLO, data)
            ephemeral, kem_ct, shared_secret = agreement.encapsulate(self._rng, hello)
            self._state = HandshakeState(Role.RESPONDER, agreement, ephemeral, transcript)

            with shared_secret:
                reply = ResponderHello(
                    mode=hello.mode,
                    ecdh_pub=ephemeral.ecdh_pub,
                    kem_ct=kem_ct,
                    certificate=self._certificate.to_bytes(),
                )
                transcript.update(_RESPONDER_HELLO, reply.signed_body())
                reply.sig = self._identity.sign(RESPONDER_SIG_CONTEXT + transcript.digest())
                transcript.update(_RESPONDER_SIGNATURE, reply.sig)
                transcript_hash = transcript.digest()
                keys = derive_session_keys(shared_secret, transcript_hash, Role.RESPONDER)
        except Exception as e:
            logger.warning(f"Responder handshake aborted: {type(e).__name__}: {e}")
            self.abort()
            raise

        self._complete()
        peer_name = peer_cert.subject if peer_cert else "anonymous initiator"
        logger.info(
            f"Handshake complete ({hello.mode.name}) as responder with {peer_name!r}, "
            f"channel {keys.channel_id.hex()[:8]}"
        )
        return reply.to_bytes(), HandshakeResult(keys, transcript_hash, hello.mode, peer_cert, self._config.replay_window)
