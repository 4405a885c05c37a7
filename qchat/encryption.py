"""
Hybrid encryption: KEM-wrapped symmetric keys plus AEAD payloads.

The symmetric key is random. It is wrapped (RFC 3394) under a key derived
from the KEM shared secret, and the envelope carries
``kem_ciphertext || wrapped_key`` as its encapsulated key.
"""
import time
import logging
from dataclasses import dataclass, field
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.keywrap import aes_key_wrap, aes_key_unwrap, InvalidUnwrap

from qchat.errors import EncryptionError, KeyMismatchError, IntegrityError
from qchat.envelope import AlgTag, Envelope, associated_data
from qchat.kem import KemProvider
from qchat.keygen import random_bytes

logger = logging.getLogger(__name__)

KEY_SIZE = 32
WRAPPED_KEY_SIZE = KEY_SIZE + 8
TAG_SIZE = 16
KEY_WRAP_INFO = b"qchat/v1 session key wrap"

AEAD_CIPHERS = {
    AlgTag.AES_256_GCM: AESGCM,
    AlgTag.CHACHA20_POLY1305: ChaCha20Poly1305,
}


@dataclass
class SessionKey:
    """A symmetric key together with the encapsulation that delivers it to one peer."""
    key: bytes = field(repr=False)
    encapsulated_key: bytes = field(repr=False)
    alg_tag: AlgTag = AlgTag.AES_256_GCM
    created_at: float = field(default_factory=time.monotonic)
    messages_sent: int = 0

    @property
    def age(self) -> float:
        return time.monotonic() - self.created_at


def _aead(key: bytes, alg_tag: AlgTag):
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes")
    return AEAD_CIPHERS[AlgTag(alg_tag)](key)


def _key_encryption_key(shared_secret: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=KEY_WRAP_INFO,
    ).derive(shared_secret)


def seal(key: bytes, iv: bytes, plaintext: bytes, alg_tag: AlgTag = AlgTag.AES_256_GCM) -> bytes:
    """
    Encrypt with the AEAD named by `alg_tag`.

    Args:
        key: 32-byte symmetric key
        iv: nonce of the scheme's length; never reuse one with the same key
        plaintext: Message bytes to encrypt
        alg_tag: AEAD scheme

    Returns:
        bytes: ciphertext || tag

    Raises:
        EncryptionError: If the key or IV is malformed
    """
    try:
        if len(iv) != AlgTag(alg_tag).iv_size:
            raise ValueError(f"IV must be {AlgTag(alg_tag).iv_size} bytes")
        return _aead(key, alg_tag).encrypt(iv, plaintext, associated_data(alg_tag))
    except (ValueError, TypeError, OverflowError) as e:
        raise EncryptionError(f"AEAD seal failed: {e}") from e


def open_sealed(key: bytes, iv: bytes, ciphertext: bytes, alg_tag: AlgTag = AlgTag.AES_256_GCM) -> bytes:
    """
    Decrypt and authenticate.

    Raises:
        IntegrityError: If the tag does not verify, or the input cannot be authentic
    """
    if len(ciphertext) < TAG_SIZE:
        raise IntegrityError("Ciphertext shorter than the authentication tag")
    try:
        return _aead(key, alg_tag).decrypt(iv, ciphertext, associated_data(alg_tag))
    except InvalidTag as e:
        raise IntegrityError("AEAD tag verification failed") from e
    except ValueError as e:
        raise IntegrityError(f"AEAD open failed: {e}") from e


class HybridCipher:
    """KEM + AEAD encryption of payloads for a recipient's KEM public key."""

    def __init__(self, kem_algorithm: str = "ML-KEM-768", alg_tag: AlgTag = AlgTag.AES_256_GCM):
        self.kem = KemProvider(kem_algorithm)
        self.alg_tag = AlgTag(alg_tag)

    def seal_session_key(self, recipient_kem_public_key: bytes,
                         alg_tag: Optional[AlgTag] = None) -> SessionKey:
        """Generate a fresh symmetric key and encapsulate it for the recipient."""
        key = random_bytes(KEY_SIZE)
        try:
            kem_ciphertext, shared_secret = self.kem.encaps(recipient_kem_public_key)
            wrapped = aes_key_wrap(_key_encryption_key(shared_secret), key)
        except Exception as e:
            logger.error(f"{self.kem.algorithm} encapsulation failed: {e}")
            raise EncryptionError(f"Key encapsulation failed: {e}") from e
        return SessionKey(key=key, encapsulated_key=kem_ciphertext + wrapped,
                          alg_tag=AlgTag(alg_tag or self.alg_tag))

    def open_session_key(self, encapsulated_key: bytes, local_kem_private_key: bytes) -> bytes:
        """Recover the symmetric key from an encapsulated key.

        Raises:
            KeyMismatchError: If decapsulation or unwrapping fails
        """
        if len(encapsulated_key) <= WRAPPED_KEY_SIZE:
            raise KeyMismatchError("Encapsulated key too short")
        kem_ciphertext = encapsulated_key[:-WRAPPED_KEY_SIZE]
        wrapped = encapsulated_key[-WRAPPED_KEY_SIZE:]
        try:
            shared_secret = self.kem.decaps(local_kem_private_key, kem_ciphertext)
        except Exception as e:
            raise KeyMismatchError(f"{self.kem.algorithm} decapsulation failed: {e}") from e
        try:
            # ML-KEM rejects implicitly, so a wrong key shows up here
            return aes_key_unwrap(_key_encryption_key(shared_secret), wrapped)
        except InvalidUnwrap as e:
            raise KeyMismatchError("Session key unwrap failed") from e

    def encrypt(self, plaintext: bytes, recipient_kem_public_key: bytes,
                session_key: Optional[SessionKey] = None) -> Envelope:
        """Encrypt `plaintext` for the holder of the matching KEM private key.

        A fresh IV is drawn on every call. When `session_key` is given its key
        and encapsulation are reused; otherwise a one-off key is sealed.
        Signature and proof are left empty.
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        if session_key is None:
            session_key = self.seal_session_key(recipient_kem_public_key)
        alg_tag = session_key.alg_tag
        iv = random_bytes(alg_tag.iv_size)
        ciphertext = seal(session_key.key, iv, plaintext, alg_tag)
        session_key.messages_sent += 1
        return Envelope(
            iv=iv,
            ciphertext=ciphertext,
            encapsulated_key=session_key.encapsulated_key,
            alg_tag=alg_tag,
            timestamp=int(time.time() * 1000),
        )

    def decrypt(self, envelope: Envelope, local_kem_private_key: bytes) -> bytes:
        """Recover the plaintext of `envelope`.

        Raises:
            KeyMismatchError: If the session key cannot be recovered
            IntegrityError: If the ciphertext or IV was altered
        """
        key = self.open_session_key(envelope.encapsulated_key, local_kem_private_key)
        return self.decrypt_with_key(envelope, key)

    def decrypt_with_key(self, envelope: Envelope, key: bytes) -> bytes:
        return open_sealed(key, envelope.iv, envelope.ciphertext, envelope.alg_tag)


def encrypt(plaintext: bytes, recipient_kem_public_key: bytes, kem_algorithm: str = "ML-KEM-768",
            alg_tag: AlgTag = AlgTag.AES_256_GCM) -> Envelope:
    """One-shot hybrid encryption with a one-off key."""
    return HybridCipher(kem_algorithm, alg_tag).encrypt(plaintext, recipient_kem_public_key)


def decrypt(envelope: Envelope, local_kem_private_key: bytes, kem_algorithm: str = "ML-KEM-768") -> bytes:
    """One-shot hybrid decryption."""
    return HybridCipher(kem_algorithm).decrypt(envelope, local_kem_private_key)
