"""
Session manager: per-conversation orchestration of encrypt, sign and
transmit on send, and verify, decrypt and deliver on receive.
"""
import hashlib
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from qchat.authenticator import Authenticator
from qchat.channel import DeliveryChannel
from qchat.config import Settings
from qchat.encryption import HybridCipher, SessionKey
from qchat.envelope import AlgTag, Envelope
from qchat.errors import CryptoError, UnknownPeerError
from qchat.keygen import Identity, create_identity
from qchat.store import Message, MessageStatus

logger = logging.getLogger(__name__)

# Inbound session keys remembered per peer; older ones are decapsulated again if needed
INBOUND_KEY_CACHE = 4


@dataclass
class RotationPolicy:
    """When to replace an outbound session key."""
    max_messages: int = 100
    max_age_seconds: float = 3600

    def needs_rotation(self, session_key: Optional[SessionKey]) -> bool:
        if session_key is None:
            return True
        if self.max_messages and session_key.messages_sent >= self.max_messages:
            return True
        return bool(self.max_age_seconds) and session_key.age >= self.max_age_seconds


@dataclass
class PeerState:
    peer_id: str
    outbound_key: Optional[SessionKey] = None
    inbound_keys: "OrderedDict[str, bytes]" = field(default_factory=OrderedDict, repr=False)
    sent: int = 0
    received: int = 0
    rejected: int = 0
    rotations: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def summary(self) -> Dict[str, object]:
        return {
            'peer_id': self.peer_id,
            'sent': self.sent,
            'received': self.received,
            'rejected': self.rejected,
            'rotations': self.rotations,
            'key_messages_sent': self.outbound_key.messages_sent if self.outbound_key else 0,
            'key_age_seconds': self.outbound_key.age if self.outbound_key else None,
        }


def ensure_identity(profile_store, settings: Optional[Settings] = None) -> Identity:
    """Return the stored identity, creating and saving one on first use.

    EntropyError from key generation propagates: no session without keys.
    """
    identity = profile_store.get_current_identity()
    if identity is None:
        settings = settings or Settings()
        identity = create_identity(settings.kem_algorithm, settings.sig_algorithm, settings.did_namespace)
        profile_store.save_identity(identity)
    return identity


class SessionManager:
    """Ties the local identity, the stores and an optional delivery channel together."""

    def __init__(self, profile_store, message_store, contact_store=None,
                 settings: Optional[Settings] = None, rotation_policy: Optional[RotationPolicy] = None):
        self.settings = settings or Settings()
        self.identity: Identity = profile_store.get_current_identity()
        if self.identity is None:
            raise ValueError("No identity in the profile store; call ensure_identity first")
        self.message_store = message_store
        self.contact_store = contact_store if contact_store is not None else profile_store
        self.rotation_policy = rotation_policy or RotationPolicy(
            self.settings.rotate_after_messages, self.settings.rotate_after_seconds
        )
        self.alg_tag = AlgTag.from_name(self.settings.aead)
        self.channel: Optional[DeliveryChannel] = None
        self._peers: Dict[str, PeerState] = {}
        self._peers_lock = threading.Lock()
        self._ciphers: Dict[str, HybridCipher] = {}
        self._authenticators: Dict[str, Authenticator] = {}

    @property
    def self_id(self) -> str:
        return self.identity.id

    def attach_channel(self, channel: DeliveryChannel) -> None:
        """Route the channel's inbound envelopes here and send through it.

        The channel announces itself with a signature from this session's identity.
        """
        channel.sink = self.on_envelope_received
        channel.identity = self.identity
        channel.announce_did = self.self_id
        self.channel = channel

    def _cipher(self, kem_algorithm: str) -> HybridCipher:
        if kem_algorithm not in self._ciphers:
            self._ciphers[kem_algorithm] = HybridCipher(kem_algorithm, self.alg_tag)
        return self._ciphers[kem_algorithm]

    def _authenticator(self, sig_algorithm: str) -> Authenticator:
        if sig_algorithm not in self._authenticators:
            self._authenticators[sig_algorithm] = Authenticator(sig_algorithm, self.settings.proof_rounds)
        return self._authenticators[sig_algorithm]

    def _peer(self, peer_id: str) -> PeerState:
        with self._peers_lock:
            if peer_id not in self._peers:
                self._peers[peer_id] = PeerState(peer_id)
            return self._peers[peer_id]

    def peer_state(self, peer_id: str) -> Dict[str, object]:
        return self._peer(peer_id).summary()

    def _rotate_locked(self, state: PeerState, contact) -> SessionKey:
        state.outbound_key = self._cipher(contact.kem_algorithm).seal_session_key(
            contact.kem_public_key, self.alg_tag
        )
        state.rotations += 1
        logger.info(f"New session key for {state.peer_id} (rotation {state.rotations})")
        return state.outbound_key

    def rotate_session(self, peer_id: str) -> SessionKey:
        """Force a fresh outbound session key for `peer_id`."""
        contact = self._contact(peer_id)
        state = self._peer(peer_id)
        with state.lock:
            return self._rotate_locked(state, contact)

    def _contact(self, peer_id: str):
        contact = self.contact_store.get_contact_by_id(peer_id)
        if contact is None:
            raise UnknownPeerError(f"No contact for {peer_id}")
        return contact

    def on_send_requested(self, peer_id: str, plaintext) -> Envelope:
        """Encrypt, sign and transmit `plaintext` to `peer_id`; record the outgoing message."""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')
        contact = self._contact(peer_id)
        state = self._peer(peer_id)

        with state.lock:
            session_key = state.outbound_key
            if self.rotation_policy.needs_rotation(session_key):
                session_key = self._rotate_locked(state, contact)
            envelope = self._cipher(contact.kem_algorithm).encrypt(
                plaintext, contact.kem_public_key, session_key=session_key
            )
            envelope = replace(envelope, sender=self.self_id, recipient=peer_id)
            envelope = self._authenticator(self.identity.sig_algorithm).seal_envelope(
                envelope, plaintext, self.identity.sig_private_key
            )
            state.sent += 1

        self.message_store.append(Message(
            id=envelope.fingerprint(),
            sender=self.self_id,
            receiver=peer_id,
            content=plaintext.decode('utf-8', errors='replace'),
            timestamp=envelope.timestamp,
            status=MessageStatus.READ,
        ))
        if self.channel is not None:
            self.channel.send(envelope)
        logger.info(f"Envelope {envelope.fingerprint()[:16]} queued for {peer_id}")
        return envelope

    def _drop(self, state: Optional[PeerState], envelope: Envelope, reason: str) -> None:
        if state is not None:
            state.rejected += 1
        logger.warning(f"Dropping envelope from {envelope.sender or '<unknown>'}: {reason}")

    def on_envelope_received(self, envelope: Envelope) -> Optional[Message]:
        """Verify, decrypt and deliver one inbound envelope.

        Every failure is logged and the envelope dropped; nothing is raised.
        """
        if envelope.recipient != self.self_id:
            self._drop(None, envelope, f"addressed to {envelope.recipient}")
            return None
        contact = self.contact_store.get_contact_by_id(envelope.sender)
        if contact is None:
            self._drop(None, envelope, "unknown sender")
            return None
        state = self._peer(contact.id)
        if not contact.did_verified:
            self._drop(state, envelope, "contact DID does not match its signing key")
            return None

        authenticator = self._authenticator(contact.sig_algorithm)
        if not authenticator.check_signature(envelope, contact.sig_public_key):
            state.rejected += 1
            return None

        cipher = self._cipher(self.identity.kem_algorithm)
        key_id = hashlib.sha256(envelope.encapsulated_key).hexdigest()
        with state.lock:
            try:
                key = state.inbound_keys.get(key_id)
                if key is None:
                    key = cipher.open_session_key(envelope.encapsulated_key, self.identity.kem_private_key)
                plaintext = cipher.decrypt_with_key(envelope, key)
            except CryptoError as e:
                self._drop(state, envelope, f"{type(e).__name__}: {e}")
                return None
            state.inbound_keys[key_id] = key
            state.inbound_keys.move_to_end(key_id)
            while len(state.inbound_keys) > INBOUND_KEY_CACHE:
                state.inbound_keys.popitem(last=False)

        if not authenticator.check_proof(envelope, plaintext):
            state.rejected += 1
            return None
        try:
            content = plaintext.decode('utf-8')
        except UnicodeDecodeError:
            self._drop(state, envelope, "content is not UTF-8 text")
            return None

        state.received += 1
        message = Message(
            id=envelope.fingerprint(),
            sender=contact.id,
            receiver=self.self_id,
            content=content,
            timestamp=envelope.timestamp,
        )
        self.on_message_decrypted(message)
        return message

    def on_message_decrypted(self, message: Message) -> None:
        """Hand a verified, decrypted message to the message store."""
        if self.message_store.append(message):
            logger.info(f"Message {message.id[:16]} from {message.sender} stored")

    def conversation(self, peer_id: str) -> List[Message]:
        return self.message_store.query_by_peer(self.self_id, peer_id)

    def mark_read(self, peer_id: str) -> int:
        return self.message_store.mark_read(self.self_id, peer_id)
