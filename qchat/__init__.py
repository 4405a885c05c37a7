"""
Post-quantum secure messaging core.
Hybrid KEM + AEAD envelopes, post-quantum signatures, content proofs and a
reconnecting delivery channel, built on quantcrypt and cryptography.
"""

from qchat.keygen import (
    generate_keypair, generate_kem_keypair, generate_signature_keypair,
    derive_did, verify_did, create_identity, Identity, Contact, SUPPORTED_ALGORITHMS
)
from qchat.kem import KemProvider, encapsulate_key, decapsulate_key, SUPPORTED_KEM_ALGORITHMS
from qchat.sign import SignatureProvider, sign_message, verify_signature, SUPPORTED_SIG_ALGORITHMS
from qchat.envelope import Envelope, AlgTag, encode_envelope, decode_envelope
from qchat.encryption import HybridCipher, SessionKey
from qchat.authenticator import Authenticator, content_digest, generate_proof, verify_proof
from qchat.channel import DeliveryChannel, ConnectionState, ChannelState
from qchat.transport import Transport, SocketIOTransport
from qchat.session import SessionManager, RotationPolicy, ensure_identity
from qchat.store import MemoryStore, SqliteStore, Message, MessageStatus
from qchat.config import Settings
from qchat.errors import (
    QChatError, EntropyError, EncryptionError, KeyMismatchError, IntegrityError,
    ProtocolError, TransportError, UnknownPeerError
)

__version__ = "0.2.0"

__all__ = [
    'generate_keypair',
    'generate_kem_keypair',
    'generate_signature_keypair',
    'derive_did',
    'verify_did',
    'create_identity',
    'Identity',
    'Contact',
    'KemProvider',
    'SignatureProvider',
    'encapsulate_key',
    'decapsulate_key',
    'sign_message',
    'verify_signature',
    'Envelope',
    'AlgTag',
    'encode_envelope',
    'decode_envelope',
    'HybridCipher',
    'SessionKey',
    'Authenticator',
    'content_digest',
    'generate_proof',
    'verify_proof',
    'DeliveryChannel',
    'ConnectionState',
    'ChannelState',
    'Transport',
    'SocketIOTransport',
    'SessionManager',
    'RotationPolicy',
    'ensure_identity',
    'MemoryStore',
    'SqliteStore',
    'Message',
    'MessageStatus',
    'Settings',
    'QChatError',
    'EntropyError',
    'EncryptionError',
    'KeyMismatchError',
    'IntegrityError',
    'ProtocolError',
    'TransportError',
    'UnknownPeerError',
    'SUPPORTED_ALGORITHMS',
    'SUPPORTED_KEM_ALGORITHMS',
    'SUPPORTED_SIG_ALGORITHMS'
]
