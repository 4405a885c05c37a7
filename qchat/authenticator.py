"""
Envelope and announce signatures, and content integrity proofs.

The proof is an iterated SHA3-256 chain over a domain tag and a content
digest. It commits to the message without exposing anything beyond the
digest, and anyone holding the digest can check it.
"""
import time
import hmac
import hashlib
import logging
from dataclasses import replace
from typing import Optional

from qchat.envelope import Announce, Envelope
from qchat.keygen import Identity, verify_did
from qchat.sign import SignatureProvider

logger = logging.getLogger(__name__)

PROOF_DOMAIN = b"qchat/v1 content proof"
DEFAULT_PROOF_ROUNDS = 16

# Accepted clock difference between an announce and the relay
ANNOUNCE_MAX_SKEW_MS = 300000


def content_digest(plaintext: bytes, salt: bytes = b"") -> bytes:
    """SHA-256 over a length-prefixed salt and the content."""
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    h = hashlib.sha256()
    h.update(len(salt).to_bytes(4, "big"))
    h.update(salt)
    h.update(plaintext)
    return h.digest()


def generate_proof(digest: bytes, rounds: int = DEFAULT_PROOF_ROUNDS) -> bytes:
    """Compute the hash-chain commitment for `digest`."""
    if rounds < 1:
        raise ValueError("Proof needs at least one round")
    link = hashlib.sha3_256(PROOF_DOMAIN + digest).digest()
    for i in range(1, rounds):
        link = hashlib.sha3_256(link + i.to_bytes(4, "big") + digest).digest()
    return link


def verify_proof(digest: bytes, proof: bytes, rounds: int = DEFAULT_PROOF_ROUNDS) -> bool:
    """Recompute the commitment and compare in constant time."""
    if not isinstance(proof, (bytes, bytearray)):
        return False
    return hmac.compare_digest(generate_proof(digest, rounds), bytes(proof))


class Authenticator:
    """Signs envelopes and enforces the acceptance policy for incoming ones."""

    def __init__(self, sig_algorithm: str = "ML-DSA-65", proof_rounds: int = DEFAULT_PROOF_ROUNDS):
        self.signer = SignatureProvider(sig_algorithm)
        self.proof_rounds = proof_rounds

    def sign(self, core: bytes, signing_private_key: bytes) -> bytes:
        return self.signer.sign(signing_private_key, core)

    def verify(self, core: bytes, signature: bytes, signer_public_key: bytes) -> bool:
        if not signature:
            return False
        return self.signer.verify(signer_public_key, core, signature)

    def generate_proof(self, digest: bytes) -> bytes:
        return generate_proof(digest, self.proof_rounds)

    def verify_proof(self, digest: bytes, proof: bytes) -> bool:
        return verify_proof(digest, proof, self.proof_rounds)

    def seal_envelope(self, envelope: Envelope, plaintext: bytes, signing_private_key: bytes) -> Envelope:
        """Return a copy of `envelope` carrying its proof and signature."""
        proof = self.generate_proof(content_digest(plaintext, envelope.iv))
        signature = self.sign(envelope.core(), signing_private_key)
        return replace(envelope, proof=proof, signature=signature)

    def check_signature(self, envelope: Envelope, signer_public_key: bytes) -> bool:
        if self.verify(envelope.core(), envelope.signature, signer_public_key):
            return True
        logger.warning(f"Dropping envelope from {envelope.sender}: signature verification failed")
        return False

    def check_proof(self, envelope: Envelope, plaintext: bytes) -> bool:
        if self.verify_proof(content_digest(plaintext, envelope.iv), envelope.proof):
            return True
        logger.warning(f"Dropping envelope from {envelope.sender}: content proof mismatch")
        return False

    def check_envelope(self, envelope: Envelope, signer_public_key: bytes, plaintext: bytes) -> bool:
        """Accept only if both the signature and the proof verify."""
        return self.check_signature(envelope, signer_public_key) and self.check_proof(envelope, plaintext)


def sign_announce(identity: Identity, timestamp: Optional[int] = None) -> Announce:
    """Build an announce for `identity`, signed with its signing key."""
    announce = Announce(
        did=identity.id,
        timestamp=int(time.time() * 1000) if timestamp is None else timestamp,
        sig_algorithm=identity.sig_algorithm,
        public_key=identity.sig_public_key,
    )
    signature = SignatureProvider(identity.sig_algorithm).sign(identity.sig_private_key, announce.core())
    return replace(announce, signature=signature)


def check_announce(announce: Announce, now_ms: Optional[int] = None,
                   max_skew_ms: int = ANNOUNCE_MAX_SKEW_MS) -> bool:
    """Accept an announce only if its DID, freshness and signature all check out."""
    if not announce.signature or not announce.public_key:
        logger.warning(f"Refusing unsigned announce for {announce.did}")
        return False
    if not verify_did(announce.did, announce.public_key):
        logger.warning(f"Refusing announce for {announce.did}: DID does not match the signing key")
        return False
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    if abs(now_ms - announce.timestamp) > max_skew_ms:
        logger.warning(f"Refusing stale announce for {announce.did}")
        return False
    try:
        signer = SignatureProvider(announce.sig_algorithm)
    except ValueError:
        logger.warning(f"Refusing announce for {announce.did}: unsupported algorithm {announce.sig_algorithm!r}")
        return False
    if not signer.verify(announce.public_key, announce.core(), announce.signature):
        logger.warning(f"Refusing announce for {announce.did}: signature verification failed")
        return False
    return True
