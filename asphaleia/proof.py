"""
Capability boundary for external proof subsystems.

A zero-knowledge or credential module plugs in as a ProofProvider. The
core only hands it channel-bound bytes and passes its proof blobs
through unchanged; proof contents are never inspected here.
"""

from typing import Protocol, runtime_checkable

from .channel import SecureChannel

PROOF_BINDING_LABEL: bytes = b"proof-binding"


@runtime_checkable
class ProofProvider(Protocol):
    def prove(self, binding: bytes) -> bytes: ...
    def verify(self, binding: bytes, proof: bytes) -> bool: ...


def create_binding_proof(provider: ProofProvider, channel: SecureChannel) -> bytes:
    """Ask the provider for an opaque proof over this channel's binding value."""
    with channel.export_secret(PROOF_BINDING_LABEL) as binding:
        proof = provider.prove(bytes(binding.expose()))
    if not isinstance(proof, (bytes, bytearray)):
        raise TypeError("Proof provider must return bytes")
    return bytes(proof)


def verify_binding_proof(provider: ProofProvider, channel: SecureChannel, proof: bytes) -> bool:
    """Check a peer's opaque proof against this channel's binding value."""
    if not isinstance(proof, (bytes, bytearray)) or not proof:
        return False
    with channel.export_secret(PROOF_BINDING_LABEL) as binding:
        return bool(provider.verify(bytes(binding.expose()), bytes(proof)))
