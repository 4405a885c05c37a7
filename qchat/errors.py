"""
Exception taxonomy for the messaging core.

Cryptographic failures always fail closed. Protocol and transport errors are
handled inside the delivery channel and never reach the caller of send.
"""


class QChatError(Exception):
    """Base class for all errors raised by qchat."""


class EntropyError(QChatError):
    """The OS random source is unavailable. Key generation must abort."""


class CryptoError(QChatError):
    """Base class for encryption/decryption failures."""


class EncryptionError(CryptoError):
    """Key import or AEAD sealing failed."""


class KeyMismatchError(CryptoError):
    """Decapsulation or key unwrap failed (wrong private key or corrupted encapsulation)."""


class IntegrityError(CryptoError):
    """AEAD tag verification failed."""


class ProtocolError(QChatError):
    """A frame could not be parsed."""


class TransportError(QChatError):
    """Connection-level failure. Triggers the reconnect loop."""


class UnknownPeerError(QChatError):
    """No contact is known for the requested peer."""
