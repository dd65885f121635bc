"""Asphaleia error types."""

from typing import Optional


class AsphaleiaError(Exception):
    """Base exception for Asphaleia protocol errors."""
    pass


class RandomnessUnavailable(AsphaleiaError):
    """The secure random source failed; keys cannot be produced."""
    pass


class MalformedMessage(AsphaleiaError):
    """Handshake message, record or certificate failed structural parsing."""
    pass


class ProtocolMismatch(MalformedMessage):
    """Peer speaks a different protocol version or key-agreement mode."""
    pass


class AuthenticationFailed(AsphaleiaError):
    """Signature or AEAD tag did not verify."""
    pass


class ReplayDetected(AsphaleiaError):
    """Record counter was already accepted or fell behind the replay window."""

    def __init__(self, counter: int, message: Optional[str] = None):
        self.counter = counter
        super().__init__(message or f"Replay detected for record counter {counter}")


class CertificateInvalid(AsphaleiaError):
    """Certificate validation returned something other than VALID."""

    def __init__(self, reason, subject: Optional[str] = None):
        self.reason = reason
        self.subject = subject
        name = getattr(reason, "name", str(reason))
        if subject:
            super().__init__(f"Certificate for {subject!r} rejected: {name}")
        else:
            super().__init__(f"Certificate rejected: {name}")


class CounterExhausted(AsphaleiaError):
    """Send counter reached its limit; the channel must be renegotiated."""
    pass


class ChannelClosed(AsphaleiaError):
    """Operation attempted on a closed channel."""
    pass


class ChannelNotEstablished(AsphaleiaError):
    """Operation attempted before the channel finished its handshake."""
    pass


class HandshakeStateError(AsphaleiaError):
    """Handshake object used out of order or after completion/abort."""
    pass


class SecretDestroyed(AsphaleiaError):
    """Secret material was accessed after zeroization."""
    pass


class KeyNotFound(AsphaleiaError):
    """Keyring lookup failed."""

    def __init__(self, name: str, version: Optional[str] = None):
        self.name = name
        self.version = version
        if version is None:
            super().__init__(f"Key not found: {name}")
        else:
            super().__init__(f"Key not found: {name}@{version}")


class ConfigError(AsphaleiaError):
    """Configuration error."""
    pass
