"""
Certificates binding a signing public key to a subject name.

Provides:
- Certificate: immutable signed binding with a validity window and serial
- CertificateAuthority: issues certificates with unique serials
- TrustStore: read-mostly set of trust anchors shared across validations
- validate_certificate: chain and window validation returning a ValidationResult

The signed body uses a canonical big-endian binary encoding; the issuer
signature covers every field except itself.
"""

import hashlib
import logging
import struct
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, Iterable, Optional, Sequence, Set, Tuple

from .crypto import RandomSource, default_rng
from .error import ConfigError, MalformedMessage
from .identity import IdentityKeyPair, verify_signature
from .types import (
    CERT_SIG_CONTEXT,
    COUNTER_LIMIT,
    MAX_CHAIN_DEPTH,
    VERSION,
    FieldReader,
    SignatureScheme,
    ValidationResult,
    pack_field,
)

logger = logging.getLogger(__name__)

# Serials are drawn as 8 random bytes and kept to 63 bits
SERIAL_LEN = 8


def _to_timestamp(value: datetime) -> int:
    return int(value.timestamp())


def _from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass(frozen=True)
class Validity:
    """Certificate validity window (inclusive on both ends)."""

    not_before: datetime
    not_after: datetime

    def __post_init__(self):
        # The signed encoding carries whole seconds only
        for name in ("not_before", "not_after"):
            value = getattr(self, name)
            if value.tzinfo is None:
                raise ValueError("Certificate times must be timezone-aware")
            object.__setattr__(self, name, value.replace(microsecond=0))

    @classmethod
    def for_period(cls, start: datetime, duration: timedelta) -> "Validity":
        return cls(not_before=start, not_after=start + duration)

    def contains(self, now: datetime) -> bool:
        return self.not_before <= now <= self.not_after


@dataclass(frozen=True)
class Certificate:
    """Signed binding of subject_public_key to subject."""

    subject: str
    issuer: str
    scheme: SignatureScheme  # Scheme of subject_public_key
    subject_public_key: bytes
    serial: int
    validity: Validity
    is_ca: bool = False
    issuer_signature: bytes = b""

    def tbs_bytes(self) -> bytes:
        """Canonical to-be-signed encoding."""
        return (
            bytes([VERSION])
            + pack_field(self.subject.encode("utf-8"))
            + pack_field(self.issuer.encode("utf-8"))
            + bytes([int(self.scheme)])
            + pack_field(self.subject_public_key)
            + struct.pack(">Q", self.serial)
            + struct.pack(">q", _to_timestamp(self.validity.not_before))
            + struct.pack(">q", _to_timestamp(self.validity.not_after))
            + bytes([1 if self.is_ca else 0])
        )

    def to_bytes(self) -> bytes:
        return self.tbs_bytes() + pack_field(self.issuer_signature)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Certificate":
        """
        Decode a certificate.

        Raises:
            MalformedMessage: If the encoding is structurally invalid
        """
        reader = FieldReader(data)
        version = reader.u8()
        if version != VERSION:
            raise MalformedMessage(f"Unsupported certificate version {version}")
        try:
            subject = reader.field().decode("utf-8")
            issuer = reader.field().decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedMessage("Certificate names must be UTF-8")
        try:
            scheme = SignatureScheme(reader.u8())
        except ValueError:
            raise MalformedMessage("Unknown certificate key scheme")
        public_key = reader.field()
        serial = reader.u64()
        not_before = reader.i64()
        not_after = reader.i64()
        is_ca = reader.u8()
        if is_ca not in (0, 1):
            raise MalformedMessage("Invalid CA flag")
        signature = reader.field()
        reader.finish()
        try:
            validity = Validity(_from_timestamp(not_before), _from_timestamp(not_after))
        except (OverflowError, OSError, ValueError):
            raise MalformedMessage("Certificate timestamps out of range")
        return cls(
            subject=subject,
            issuer=issuer,
            scheme=scheme,
            subject_public_key=public_key,
            serial=serial,
            validity=validity,
            is_ca=bool(is_ca),
            issuer_signature=signature,
        )

    @property
    def is_self_signed(self) -> bool:
        return self.subject == self.issuer

    @property
    def fingerprint(self) -> str:
        """Hex SHA-256 over the full encoding."""
        return hashlib.sha256(self.to_bytes()).hexdigest()

    def malformed_reason(self) -> Optional[str]:
        """Return why the fields are malformed, or None when well-formed."""
        if not self.subject or not self.issuer:
            return "empty subject or issuer"
        if not isinstance(self.scheme, SignatureScheme):
            return "unknown key scheme"
        if len(self.subject_public_key) != self.scheme.public_key_size:
            return "public key length does not match scheme"
        if not 0 <= self.serial < COUNTER_LIMIT:
            return "serial out of range"
        if not self.issuer_signature:
            return "missing issuer signature"
        if self.validity.not_before > self.validity.not_after:
            return "not_before is after not_after"
        return None


def _signed_message(cert: Certificate) -> bytes:
    return CERT_SIG_CONTEXT + cert.tbs_bytes()


@dataclass(frozen=True)
class TrustAnchor:
    """A trusted issuer: name plus signing public key."""

    name: str
    public_key: bytes
    scheme: SignatureScheme

    @classmethod
    def from_certificate(cls, cert: Certificate) -> "TrustAnchor":
        return cls(name=cert.subject, public_key=cert.subject_public_key, scheme=cert.scheme)


class TrustStore:
    """
    Trusted-root set for certificate validation.

    Readers take an immutable snapshot (anchors()) without locking;
    add/remove replace the snapshot under an exclusive lock.
    """

    def __init__(self, anchors: Iterable[TrustAnchor] = ()):
        self._lock = threading.Lock()
        self._anchors: FrozenSet[TrustAnchor] = frozenset(anchors)

    @classmethod
    def from_certificates(cls, certs: Iterable[Certificate]) -> "TrustStore":
        return cls(TrustAnchor.from_certificate(c) for c in certs)

    def anchors(self) -> FrozenSet[TrustAnchor]:
        return self._anchors

    def add(self, anchor) -> None:
        if isinstance(anchor, Certificate):
            anchor = TrustAnchor.from_certificate(anchor)
        with self._lock:
            self._anchors = self._anchors | {anchor}
        logger.debug(f"Added trust anchor: {anchor.name}")

    def remove(self, name: str) -> int:
        """Remove every anchor with the given name; returns how many were removed."""
        with self._lock:
            kept = frozenset(a for a in self._anchors if a.name != name)
            removed = len(self._anchors) - len(kept)
            self._anchors = kept
        if removed:
            logger.debug(f"Removed {removed} trust anchor(s): {name}")
        return removed

    def find(self, name: str) -> Tuple[TrustAnchor, ...]:
        return tuple(a for a in self._anchors if a.name == name)

    def __contains__(self, name: str) -> bool:
        return bool(self.find(name))

    def __len__(self) -> int:
        return len(self._anchors)


def _as_anchors(trusted_roots) -> FrozenSet[TrustAnchor]:
    if isinstance(trusted_roots, TrustStore):
        return trusted_roots.anchors()
    anchors = set()
    for root in trusted_roots:
        if isinstance(root, Certificate):
            root = TrustAnchor.from_certificate(root)
        anchors.add(root)
    return frozenset(anchors)


def _check_window(cert: Certificate, now: datetime) -> ValidationResult:
    if now < cert.validity.not_before:
        return ValidationResult.NOT_YET_VALID
    if now > cert.validity.not_after:
        return ValidationResult.EXPIRED
    return ValidationResult.VALID


def _validate(
    cert: Certificate,
    anchors: FrozenSet[TrustAnchor],
    intermediates: Dict[str, Tuple[Certificate, ...]],
    now: datetime,
    depth: int,
) -> ValidationResult:
    if cert.malformed_reason() is not None:
        return ValidationResult.MALFORMED

    message = _signed_message(cert)

    # Issuer is a trust anchor
    roots = [a for a in anchors if a.name == cert.issuer]
    if roots:
        if not any(verify_signature(a.scheme, a.public_key, message, cert.issuer_signature) for a in roots):
            return ValidationResult.SIGNATURE_INVALID
        return _check_window(cert, now)

    # Issuer is an intermediate that must itself chain to an anchor
    candidates = [c for c in intermediates.get(cert.issuer, ()) if c.is_ca and c is not cert]
    if not candidates or depth >= MAX_CHAIN_DEPTH:
        return ValidationResult.UNTRUSTED_ISSUER

    result = ValidationResult.SIGNATURE_INVALID
    for issuer_cert in candidates:
        if not verify_signature(issuer_cert.scheme, issuer_cert.subject_public_key, message, cert.issuer_signature):
            continue
        issuer_result = _validate(issuer_cert, anchors, intermediates, now, depth + 1)
        if issuer_result is not ValidationResult.VALID:
            result = issuer_result
            continue
        return _check_window(cert, now)
    return result


def validate_certificate(
    certificate,
    trusted_roots,
    now: Optional[datetime] = None,
    intermediates: Sequence[Certificate] = (),
) -> ValidationResult:
    """
    Validate a certificate against trusted roots.

    Checks, in order: structural well-formedness, that the issuer signature
    verifies under a trust anchor or an intermediate CA chaining to one,
    and that ``now`` lies within every validity window on the path.

    Args:
        certificate: Certificate or its encoded bytes
        trusted_roots: TrustStore, or an iterable of TrustAnchor/Certificate
        now: Validation time (timezone-aware, defaults to current UTC)
        intermediates: Candidate intermediate CA certificates

    Returns:
        ValidationResult describing the specific outcome

    Raises:
        ValueError: If ``now`` is not timezone-aware
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        raise ValueError("Validation time must be timezone-aware")

    if not isinstance(certificate, Certificate):
        try:
            certificate = Certificate.from_bytes(certificate)
        except (MalformedMessage, TypeError):
            return ValidationResult.MALFORMED

    by_subject: Dict[str, Tuple[Certificate, ...]] = {}
    for inter in intermediates:
        by_subject[inter.subject] = by_subject.get(inter.subject, ()) + (inter,)

    try:
        result = _validate(certificate, _as_anchors(trusted_roots), by_subject, now, 0)
    except (ValueError, TypeError) as e:
        logger.warning(f"Certificate {certificate.subject!r} could not be validated: {e}")
        return ValidationResult.MALFORMED

    if result is not ValidationResult.VALID:
        logger.warning(f"Certificate validation failed for {certificate.subject!r}: {result.value}")
    return result


class CertificateAuthority:
    """
    Issues certificates signed with the authority's identity key.

    Serial numbers are random 63-bit values drawn from the random source,
    so independent instances for the same key do not repeat each other;
    an instance also never repeats a serial it has issued itself.
    """

    def __init__(
        self,
        name: str,
        keypair: IdentityKeyPair,
        certificate: Optional[Certificate] = None,
        rng: Optional[RandomSource] = None,
    ):
        if not name:
            raise ConfigError("Certificate authority name must not be empty")
        if certificate is not None:
            if certificate.subject != name or certificate.subject_public_key != keypair.public_key:
                raise ConfigError("CA certificate does not match the authority keypair")
            if not certificate.is_ca:
                raise ConfigError("Certificate is not marked as a CA certificate")
        self._name = name
        self._keypair = keypair
        self._certificate = certificate
        self._rng = rng or default_rng()
        self._issued: Set[int] = set()
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def keypair(self) -> IdentityKeyPair:
        return self._keypair

    @property
    def certificate(self) -> Optional[Certificate]:
        return self._certificate

    @property
    def anchor(self) -> TrustAnchor:
        return TrustAnchor(self._name, self._keypair.public_key, self._keypair.scheme)

    def _next_serial(self) -> int:
        with self._lock:
            while True:
                serial = int.from_bytes(self._rng.random_bytes(SERIAL_LEN), "big") >> 1
                if serial and serial not in self._issued:
                    self._issued.add(serial)
                    return serial

    def issue(
        self,
        subject: str,
        subject_public_key: bytes,
        validity: Validity,
        scheme: Optional[SignatureScheme] = None,
        is_ca: bool = False,
    ) -> Certificate:
        """Issue a certificate with a fresh serial."""
        cert = issue_certificate(
            self._keypair,
            self._name,
            subject,
            subject_public_key,
            validity,
            serial=self._next_serial(),
            scheme=scheme,
            is_ca=is_ca,
        )
        logger.info(f"Issued certificate for: {subject} (serial {cert.serial}, issuer {self._name})")
        return cert

    def issue_for(self, subject: str, keypair: IdentityKeyPair, validity: Validity, is_ca: bool = False) -> Certificate:
        return self.issue(subject, keypair.public_key, validity, scheme=keypair.scheme, is_ca=is_ca)

    def root_certificate(self, validity: Validity) -> Certificate:
        """Self-signed CA certificate for distributing this authority as a root."""
        cert = self.issue(self._name, self._keypair.public_key, validity, scheme=self._keypair.scheme, is_ca=True)
        if self._certificate is None:
            self._certificate = cert
        return cert


def issue_certificate(
    ca_keypair: IdentityKeyPair,
    issuer: str,
    subject: str,
    subject_public_key: bytes,
    validity: Validity,
    serial: int,
    scheme: Optional[SignatureScheme] = None,
    is_ca: bool = False,
) -> Certificate:
    """
    Build the canonical encoding and sign it with ca_keypair.

    Raises:
        MalformedMessage: If the resulting certificate would be malformed
    """
    unsigned = Certificate(
        subject=subject,
        issuer=issuer,
        scheme=SignatureScheme(scheme if scheme is not None else ca_keypair.scheme),
        subject_public_key=bytes(subject_public_key),
        serial=serial,
        validity=validity,
        is_ca=is_ca,
    )
    signature = ca_keypair.sign(_signed_message(unsigned))
    cert = replace(unsigned, issuer_signature=signature)
    reason = cert.malformed_reason()
    if reason is not None:
        raise MalformedMessage(f"Refusing to issue malformed certificate: {reason}")
    return cert
