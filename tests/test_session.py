# Tests for the session manager: send and receive pipelines, rotation, drops

from dataclasses import replace

import pytest

from qchat import keygen
from qchat.authenticator import Authenticator, content_digest, generate_proof
from qchat.channel import DeliveryChannel
from qchat.config import Settings
from qchat.encryption import HybridCipher
from qchat.errors import EntropyError, UnknownPeerError
from qchat.session import RotationPolicy, SessionManager, ensure_identity
from qchat.store import MemoryStore, MessageStatus
from tests.conftest import FakeTransport, make_store


@pytest.fixture
def alice_session(alice, bob):
    store = make_store(alice, bob)
    return SessionManager(store, store)


@pytest.fixture
def bob_session(alice, bob):
    store = make_store(bob, alice)
    return SessionManager(store, store)


def forged_by(sender, recipient, claimed_sender_id, plaintext=b"pay mallory"):
    """An envelope sealed with `sender`'s signing key but claiming another sender."""
    envelope = HybridCipher().encrypt(plaintext, recipient.kem_public_key)
    envelope = replace(envelope, sender=claimed_sender_id, recipient=recipient.id)
    return Authenticator().seal_envelope(envelope, plaintext, sender.sig_private_key)


class TestSendReceive:
    def test_hello_delivered_unread(self, alice_session, bob_session, alice, bob):
        envelope = alice_session.on_send_requested(bob.id, "hello")
        message = bob_session.on_envelope_received(envelope)

        assert message.content == "hello"
        assert message.sender == alice.id
        assert message.status == MessageStatus.UNREAD
        assert [m.content for m in bob_session.conversation(alice.id)] == ["hello"]

        sent = alice_session.conversation(bob.id)
        assert len(sent) == 1
        assert sent[0].status == MessageStatus.READ
        assert sent[0].id == envelope.fingerprint() == message.id

    def test_mark_read_and_ordering(self, alice_session, bob_session, alice, bob):
        for text in ("one", "two", "three", "four"):
            bob_session.on_envelope_received(alice_session.on_send_requested(bob.id, text))
        messages = bob_session.conversation(alice.id)
        assert [m.content for m in messages] == ["one", "two", "three", "four"]
        assert [m.timestamp for m in messages] == sorted(m.timestamp for m in messages)

        assert bob_session.mark_read(alice.id) == 4
        assert bob_session.mark_read(alice.id) == 0
        assert all(m.status == MessageStatus.READ for m in bob_session.conversation(alice.id))

    def test_duplicate_envelope_stored_once(self, alice_session, bob_session, alice, bob):
        envelope = alice_session.on_send_requested(bob.id, "once")
        bob_session.on_envelope_received(envelope)
        bob_session.on_envelope_received(envelope)
        assert len(bob_session.conversation(alice.id)) == 1

    def test_unknown_peer(self, alice_session):
        with pytest.raises(UnknownPeerError):
            alice_session.on_send_requested("did:tetracrypt:nobody", "hi")

    def test_bytes_plaintext(self, alice_session, bob_session, bob):
        envelope = alice_session.on_send_requested(bob.id, "snowman ☃".encode("utf-8"))
        assert bob_session.on_envelope_received(envelope).content == "snowman ☃"

    def test_chacha_sessions(self, alice, bob):
        settings = Settings(aead="ChaCha20-Poly1305")
        alice_store, bob_store = make_store(alice, bob), make_store(bob, alice)
        sender = SessionManager(alice_store, alice_store, settings=settings)
        receiver = SessionManager(bob_store, bob_store)
        assert receiver.on_envelope_received(sender.on_send_requested(bob.id, "hi")).content == "hi"


class TestRotation:
    def test_rotates_after_max_messages(self, alice, bob):
        store = make_store(alice, bob)
        session = SessionManager(store, store, rotation_policy=RotationPolicy(max_messages=2, max_age_seconds=0))
        envelopes = [session.on_send_requested(bob.id, f"m{n}") for n in range(5)]

        keys = [e.encapsulated_key for e in envelopes]
        assert keys[0] == keys[1]
        assert keys[2] == keys[3]
        assert len(set(keys)) == 3
        assert session.peer_state(bob.id)["rotations"] == 3
        assert session.peer_state(bob.id)["sent"] == 5

    def test_rotates_after_max_age(self, alice, bob, monkeypatch):
        store = make_store(alice, bob)
        session = SessionManager(store, store, rotation_policy=RotationPolicy(max_messages=0, max_age_seconds=60))
        first = session.on_send_requested(bob.id, "early")
        key = session._peer(bob.id).outbound_key
        monkeypatch.setattr(type(key), "age", property(lambda self: 61.0))
        second = session.on_send_requested(bob.id, "late")
        assert first.encapsulated_key != second.encapsulated_key

    def test_policy_without_key(self):
        assert RotationPolicy().needs_rotation(None)

    def test_forced_rotation(self, alice_session, bob):
        first = alice_session.on_send_requested(bob.id, "a")
        alice_session.rotate_session(bob.id)
        second = alice_session.on_send_requested(bob.id, "b")
        assert first.encapsulated_key != second.encapsulated_key

    def test_receiver_handles_rotated_keys(self, alice, bob, bob_session):
        store = make_store(alice, bob)
        sender = SessionManager(store, store, rotation_policy=RotationPolicy(max_messages=1, max_age_seconds=0))
        envelopes = [sender.on_send_requested(bob.id, f"m{n}") for n in range(6)]
        for envelope in reversed(envelopes):
            assert bob_session.on_envelope_received(envelope) is not None
        assert bob_session.peer_state(alice.id)["received"] == 6


class TestDrops:
    def test_spoofed_sender(self, bob_session, alice, bob, mallory):
        envelope = forged_by(mallory, bob, alice.id)
        assert bob_session.on_envelope_received(envelope) is None
        assert bob_session.conversation(alice.id) == []
        assert bob_session.peer_state(alice.id)["rejected"] == 1

    def test_tampered_ciphertext(self, alice_session, bob_session, alice, bob):
        envelope = alice_session.on_send_requested(bob.id, "hello")
        mutated = bytearray(envelope.ciphertext)
        mutated[0] ^= 0x01
        assert bob_session.on_envelope_received(replace(envelope, ciphertext=bytes(mutated))) is None
        assert bob_session.conversation(alice.id) == []

    def test_wrong_recipient(self, alice, bob, mallory):
        store = make_store(mallory, alice)
        mallory_session = SessionManager(store, store)
        envelope = forged_by(alice, bob, alice.id, b"for bob only")
        assert mallory_session.on_envelope_received(envelope) is None

    def test_unknown_sender(self, bob_session, bob, mallory):
        envelope = forged_by(mallory, bob, mallory.id)
        assert bob_session.on_envelope_received(envelope) is None
        assert bob_session.conversation(mallory.id) == []

    def test_contact_with_mismatched_did(self, alice, bob, mallory):
        store = make_store(bob)
        store.save_contact(replace(alice.public(), sig_public_key=mallory.sig_public_key))
        session = SessionManager(store, store)
        envelope = forged_by(mallory, bob, alice.id)
        assert session.on_envelope_received(envelope) is None
        assert session.peer_state(alice.id)["rejected"] == 1

    def test_bad_proof(self, alice_session, bob_session, alice, bob):
        envelope = alice_session.on_send_requested(bob.id, "hello")
        forged = replace(envelope, proof=generate_proof(content_digest(b"goodbye", envelope.iv)))
        assert bob_session.on_envelope_received(forged) is None
        assert bob_session.peer_state(alice.id)["rejected"] == 1

    def test_wrong_kem_key_for_recipient(self, bob_session, alice, bob, mallory):
        plaintext = b"sealed to the wrong key"
        envelope = HybridCipher().encrypt(plaintext, mallory.kem_public_key)
        envelope = replace(envelope, sender=alice.id, recipient=bob.id)
        envelope = Authenticator().seal_envelope(envelope, plaintext, alice.sig_private_key)
        assert bob_session.on_envelope_received(envelope) is None
        assert bob_session.peer_state(alice.id)["rejected"] == 1

    def test_non_utf8_content(self, bob_session, alice, bob):
        plaintext = b"\xff\xfe\xfd"
        envelope = HybridCipher().encrypt(plaintext, bob.kem_public_key)
        envelope = replace(envelope, sender=alice.id, recipient=bob.id)
        envelope = Authenticator().seal_envelope(envelope, plaintext, alice.sig_private_key)
        assert bob_session.on_envelope_received(envelope) is None


class TestIdentity:
    def test_ensure_identity_creates_once(self):
        store = MemoryStore()
        first = ensure_identity(store, Settings(kem_algorithm="ML-KEM-512", sig_algorithm="ML-DSA-44"))
        assert store.get_current_identity() is first
        assert first.kem_algorithm == "ML-KEM-512"
        assert ensure_identity(store) is first

    def test_ensure_identity_without_entropy(self, monkeypatch):
        def broken(n):
            raise OSError("getrandom failed")

        monkeypatch.setattr(keygen.os, "urandom", broken)
        store = MemoryStore()
        with pytest.raises(EntropyError):
            ensure_identity(store)
        assert store.get_current_identity() is None

    def test_session_requires_identity(self):
        store = MemoryStore()
        with pytest.raises(ValueError):
            SessionManager(store, store)


class TestOverChannel:
    def test_end_to_end(self, alice, bob):
        alice_transport, bob_transport = FakeTransport(), FakeTransport()
        alice_transport.peer, bob_transport.peer = bob_transport, alice_transport

        alice_store, bob_store = make_store(alice, bob), make_store(bob, alice)
        alice_session = SessionManager(alice_store, alice_store)
        bob_session = SessionManager(bob_store, bob_store)

        alice_channel = DeliveryChannel(alice_transport, lambda e: None, announce_did=alice.id,
                                        backoff_base_ms=1, jitter=False)
        bob_channel = DeliveryChannel(bob_transport, lambda e: None, announce_did=bob.id,
                                      backoff_base_ms=1, jitter=False)
        alice_session.attach_channel(alice_channel)
        bob_session.attach_channel(bob_channel)

        try:
            # queued before the connection exists
            alice_session.on_send_requested(bob.id, "hello")
            bob_channel.open()
            assert bob_channel.wait_until_connected(timeout=2)
            alice_channel.open()
            assert alice_channel.wait_until_connected(timeout=2)

            alice_session.on_send_requested(bob.id, "how are you?")
            bob_session.on_send_requested(alice.id, "fine")

            bob_transport.inject(alice_transport.sent[-1])

            assert [m.content for m in bob_session.conversation(alice.id)] == ["hello", "how are you?", "fine"]
            received = [m for m in alice_session.conversation(bob.id) if m.sender == bob.id]
            assert [m.content for m in received] == ["fine"]
            assert bob_session.peer_state(alice.id)["received"] == 2
        finally:
            alice_channel.close()
            bob_channel.close()
