"""Asphaleia Demo - hybrid handshake and secure channel over a loopback."""

from datetime import datetime, timedelta, timezone

from .certificate import CertificateAuthority, TrustStore, Validity, validate_certificate
from .handshake import HandshakeInitiator, HandshakeResponder
from .identity import IdentityKeyPair
from .types import HandshakeConfig, SignatureScheme


def main():
    """Run the Asphaleia demo with a hybrid X25519 + Kyber768 handshake."""
    print("=== Asphaleia Hybrid Channel Demo (Python) ===\n")

    now = datetime.now(timezone.utc)
    one_year = Validity.for_period(now - timedelta(minutes=5), timedelta(days=365))

    # Certificate authority and its self-signed root
    print("Generating Dilithium3 CA key pair...")
    ca = CertificateAuthority("demo-root", IdentityKeyPair.generate(scheme=SignatureScheme.DILITHIUM3))
    root = ca.root_certificate(one_year)
    trust = TrustStore.from_certificates([root])

    # Responder identity
    print("Generating Dilithium3 identity for bob...")
    bob_id = IdentityKeyPair.generate(scheme=SignatureScheme.DILITHIUM3)
    bob_cert = ca.issue_for("bob", bob_id, one_year)
    print(f"  Issued certificate serial {bob_cert.serial} to {bob_cert.subject!r}")
    print(f"  Validation: {validate_certificate(bob_cert, trust, now).value}")

    # Handshake
    config = HandshakeConfig.default(trust_store=trust)
    config.expected_peer = "bob"

    print("\nAlice starting hybrid handshake...")
    alice = HandshakeInitiator(config)
    hello = alice.start()
    print(f"  Initiator hello: {len(hello)} bytes")

    print("Bob responding...")
    bob = HandshakeResponder(bob_id, bob_cert, HandshakeConfig.default(trust_store=trust))
    reply, bob_result = bob.respond(hello)
    print(f"  Responder hello: {len(reply)} bytes")

    print("Alice verifying and finishing...")
    alice_result = alice.finish(reply)

    alice_channel = alice_result.open_channel()
    bob_channel = bob_result.open_channel()
    assert alice_channel.channel_id == bob_channel.channel_id, "Channel ids should match!"
    print(f"✓ Channel established: {alice_channel.channel_id.hex()}")

    # Exchange messages
    print("\n--- Message Exchange ---")

    messages = [
        "ping",
        "Hybrid keys survive if either primitive holds.",
        "Harvest now, decrypt never!",
    ]

    for i, plaintext in enumerate(messages):
        print(f"\nAlice sends: \"{plaintext}\"")
        record = alice_channel.encrypt(plaintext.encode())
        print(f"  Record: {record[:20].hex()}... ({len(record)} bytes)")

        decrypted = bob_channel.decrypt(record)
        print(f"Bob receives: \"{decrypted.decode('utf-8')}\"")

        assert plaintext.encode() == decrypted, f"Message {i} mismatch!"

    reply_record = bob_channel.encrypt(b"pong")
    print(f"\nBob replies: \"{alice_channel.decrypt(reply_record).decode('utf-8')}\"")

    print("\n✓ All messages exchanged successfully!")

    alice_channel.close()
    bob_channel.close()
    print(f"Channels closed: {alice_channel.state.value}, {bob_channel.state.value}")

    print("\n=== Demo Complete ===")


if __name__ == "__main__":
    main()
