"""Secure channel record layer for established Asphaleia sessions."""

import logging
import struct
import threading
from typing import TYPE_CHECKING, Optional

from .crypto import decrypt, encrypt, make_nonce
from .error import (
    AuthenticationFailed,
    ChannelClosed,
    ChannelNotEstablished,
    CounterExhausted,
    HandshakeStateError,
    ReplayDetected,
)
from .kdf import SessionKeys, derive_exported_secret
from .secret import SecretMaterial
from .types import (
    COUNTER_LIMIT,
    DEFAULT_REPLAY_WINDOW,
    I2R_DIRECTION,
    KEY_LEN,
    MAX_REPLAY_WINDOW,
    R2I_DIRECTION,
    RECORD_AD_PREFIX,
    VERSION,
    ChannelState,
    Record,
    Role,
)

if TYPE_CHECKING:
    from .certificate import Certificate

logger = logging.getLogger(__name__)


class ReplayWindow:
    """
    Sliding replay window over received record counters.

    Tracks the highest accepted counter and a bitmap of the ``size`` most
    recent counters (bit 0 is the highest). Not thread-safe on its own;
    SecureChannel serializes access.
    """

    def __init__(self, size: int = DEFAULT_REPLAY_WINDOW):
        if not 1 <= size <= MAX_REPLAY_WINDOW:
            raise ValueError(f"Replay window size must be between 1 and {MAX_REPLAY_WINDOW}")
        self.size = size
        self.highest = -1
        self._bitmap = 0
        self._mask = (1 << size) - 1

    def check(self, counter: int) -> None:
        """
        Raises:
            ReplayDetected: If counter was already accepted or is behind the window
        """
        if counter > self.highest:
            return
        offset = self.highest - counter
        if offset >= self.size:
            raise ReplayDetected(counter, f"Record counter {counter} is behind the replay window")
        if (self._bitmap >> offset) & 1:
            raise ReplayDetected(counter)

    def accept(self, counter: int) -> None:
        self.check(counter)
        if counter > self.highest:
            shift = counter - self.highest
            self._bitmap = 1 if shift >= self.size else ((self._bitmap << shift) | 1) & self._mask
            self.highest = counter
        else:
            self._bitmap |= 1 << (self.highest - counter)

    def __contains__(self, counter: int) -> bool:
        try:
            self.check(counter)
        except ReplayDetected:
            return True
        return False


class SecureChannel:
    """
    Stateful bidirectional record layer: HANDSHAKING -> ESTABLISHED -> CLOSED.

    The send path and receive path use distinct keys and counters and may
    run on separate threads. Only the replay window update on the receive
    path is serialized against other receivers; AEAD work happens outside
    that lock.
    """

    def __init__(self, replay_window: int = DEFAULT_REPLAY_WINDOW):
        self._state = ChannelState.HANDSHAKING
        self._keys: Optional[SessionKeys] = None
        self._window = ReplayWindow(replay_window)

        self._send_lock = threading.Lock()
        self._recv_lock = threading.Lock()

        self.peer_certificate: Optional["Certificate"] = None
        self.transcript_hash: bytes = b""

    def establish(
        self,
        keys: SessionKeys,
        peer_certificate: Optional["Certificate"] = None,
        transcript_hash: bytes = b"",
    ) -> None:
        """Install session keys; the channel takes ownership of them."""
        with self._send_lock, self._recv_lock:
            if self._state is ChannelState.CLOSED:
                raise ChannelClosed("Channel is closed")
            if self._state is not ChannelState.HANDSHAKING:
                raise HandshakeStateError("Channel is already established")
            self._keys = keys
            self.peer_certificate = peer_certificate
            self.transcript_hash = transcript_hash
            self._state = ChannelState.ESTABLISHED

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_established(self) -> bool:
        return self._state is ChannelState.ESTABLISHED

    @property
    def channel_id(self) -> bytes:
        return self._require_keys().channel_id

    @property
    def role(self) -> Role:
        return self._require_keys().role

    def _require_keys(self) -> SessionKeys:
        if self._state is ChannelState.CLOSED:
            raise ChannelClosed("Channel is closed")
        if self._state is not ChannelState.ESTABLISHED or self._keys is None:
            raise ChannelNotEstablished("Channel handshake has not completed")
        return self._keys

    def _directions(self, keys: SessionKeys):
        """(send label, receive label) for this side."""
        if keys.role is Role.INITIATOR:
            return I2R_DIRECTION, R2I_DIRECTION
        return R2I_DIRECTION, I2R_DIRECTION

    @staticmethod
    def _ad(keys: SessionKeys, direction: bytes, counter: int) -> bytes:
        # AD must include version, channel id, direction and counter
        return RECORD_AD_PREFIX + bytes([VERSION]) + keys.channel_id + direction + struct.pack(">Q", counter)

    def encrypt(self, plaintext: bytes) -> bytes:
        """
        Encrypt a message into a record.

        Args:
            plaintext: Message bytes (may be empty)

        Returns:
            Encoded record

        Raises:
            ChannelClosed: If the channel was closed
            ChannelNotEstablished: If the handshake has not completed
            CounterExhausted: If the send counter would overflow; the channel is closed
        """
        with self._send_lock:
            keys = self._require_keys()
            counter = keys.send_nonce_counter
            if counter >= COUNTER_LIMIT:
                logger.warning(f"Send counter exhausted on channel {keys.channel_id.hex()[:8]}, closing")
                self._shutdown()
                raise CounterExhausted("Send counter exhausted: renegotiation required")

            direction, _ = self._directions(keys)
            nonce = make_nonce(keys.channel_id[:4], counter)
            body = encrypt(keys.send_key.expose(), nonce, self._ad(keys, direction, counter), plaintext)
            keys.send_nonce_counter = counter + 1

            return Record(counter=counter, body=body).to_bytes()

    def decrypt(self, data: bytes) -> bytes:
        """
        Decrypt a received record.

        Returns:
            Decrypted plaintext

        Raises:
            MalformedMessage: If the record is structurally invalid
            ReplayDetected: If the counter was seen or is behind the replay window
            AuthenticationFailed: If the tag does not verify (no state is updated)
            ChannelClosed: If the channel was closed
        """
        self._require_keys()
        record = Record.from_bytes(data)

        with self._recv_lock:
            keys = self._require_keys()
            try:
                self._window.check(record.counter)
            except ReplayDetected:
                logger.warning(f"Replay rejected on channel {keys.channel_id.hex()[:8]}: counter {record.counter}")
                raise
            # Snapshot survives a concurrent close(); wiped below
            recv_key = SecretMaterial(keys.recv_key.expose())

        _, direction = self._directions(keys)
        nonce = make_nonce(keys.channel_id[:4], record.counter)
        try:
            plaintext = decrypt(recv_key.expose(), nonce, self._ad(keys, direction, record.counter), record.body)
        except AuthenticationFailed:
            logger.warning(f"Record authentication failed on channel {keys.channel_id.hex()[:8]}: counter {record.counter}")
            raise
        finally:
            recv_key.zeroize()

        with self._recv_lock:
            # Re-checked: the channel may have closed or a duplicate may have won the race
            keys = self._require_keys()
            self._window.accept(record.counter)
            keys.recv_nonce_counter = self._window.highest + 1
        return plaintext

    def export_secret(self, label: bytes, length: int = KEY_LEN) -> SecretMaterial:
        """Derive a labelled secret bound to this channel's handshake."""
        return derive_exported_secret(self._require_keys().exporter_secret, label, length)

    def _shutdown(self) -> None:
        # Caller holds the send lock
        with self._recv_lock:
            if self._keys is not None:
                self._keys.zeroize()
                self._keys = None
            self._state = ChannelState.CLOSED

    def close(self) -> None:
        """Transition to CLOSED and zeroize the session keys immediately."""
        with self._send_lock:
            if self._state is ChannelState.CLOSED:
                return
            channel_id = self._keys.channel_id.hex()[:8] if self._keys else "-"
            self._shutdown()
        logger.debug(f"Channel {channel_id} closed")

    def __enter__(self) -> "SecureChannel":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"SecureChannel(state={self._state.value})"
