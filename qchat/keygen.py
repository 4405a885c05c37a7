"""
Key generation and identity derivation for Post-Quantum Cryptography.
"""
import os
import hmac
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

from qchat.errors import EntropyError
from qchat.kem import KemProvider, SUPPORTED_KEM_ALGORITHMS, KEM_ALIASES
from qchat.sign import SignatureProvider, SUPPORTED_SIG_ALGORITHMS, SIG_ALIASES

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = SUPPORTED_KEM_ALGORITHMS | SUPPORTED_SIG_ALGORITHMS

DEFAULT_KEM_ALGORITHM = "ML-KEM-768"
DEFAULT_SIG_ALGORITHM = "ML-DSA-65"
DEFAULT_DID_NAMESPACE = "tetracrypt"

# 16 bytes of SHA3-256, hex encoded
DID_HASH_BYTES = 16


def random_bytes(length: int) -> bytes:
    """Read `length` bytes from the OS random source.

    Raises:
        EntropyError: If the random source is unavailable. There is no fallback.
    """
    try:
        return os.urandom(length)
    except (NotImplementedError, OSError) as e:
        logger.critical(f"OS random source unavailable: {e}")
        raise EntropyError("Random source unavailable") from e


def _ensure_entropy() -> None:
    # quantcrypt draws from the same OS source; check it so we fail before keygen
    random_bytes(32)


def generate_keypair(algorithm: str) -> Tuple[bytes, bytes]:
    """Generate a keypair for the specified algorithm.

    Args:
        algorithm (str): The algorithm to use for key generation.
            Any supported KEM or signature algorithm name.

    Returns:
        Tuple[bytes, bytes]: A tuple containing (public_key, private_key)

    Raises:
        ValueError: If the algorithm is not supported
        EntropyError: If the random source is unavailable
    """
    kem_name = KEM_ALIASES.get(algorithm, algorithm)
    sig_name = SIG_ALIASES.get(algorithm, algorithm)
    if kem_name in SUPPORTED_KEM_ALGORITHMS:
        return generate_kem_keypair(kem_name)
    elif sig_name in SUPPORTED_SIG_ALGORITHMS:
        return generate_signature_keypair(sig_name)
    else:
        raise ValueError(
            f"Unsupported algorithm: {algorithm}. "
            f"Must be one of: {', '.join(sorted(SUPPORTED_ALGORITHMS))}"
        )


def generate_kem_keypair(algorithm: Optional[str] = None) -> Tuple[bytes, bytes]:
    """Generate a fresh KEM keypair. Returns (public_key, private_key)."""
    _ensure_entropy()
    provider = KemProvider(algorithm or DEFAULT_KEM_ALGORITHM)
    logger.info(f"Generating {provider.algorithm} keypair")
    return provider.keygen()


def generate_signature_keypair(algorithm: Optional[str] = None) -> Tuple[bytes, bytes]:
    """Generate a fresh signature keypair. Returns (public_key, private_key)."""
    _ensure_entropy()
    provider = SignatureProvider(algorithm or DEFAULT_SIG_ALGORITHM)
    logger.info(f"Generating {provider.algorithm} keypair")
    return provider.keygen()


def derive_did(public_key: bytes, namespace: Optional[str] = None) -> str:
    """Derive a DID from a public key.

    The identifier is ``did:<namespace>:<hex>`` where the hex part is a
    truncated SHA3-256 of the key. Same key, same DID.
    """
    if not public_key:
        raise ValueError("Cannot derive a DID from an empty public key")
    digest = hashlib.sha3_256(public_key).digest()[:DID_HASH_BYTES]
    return f"did:{namespace or DEFAULT_DID_NAMESPACE}:{digest.hex()}"


def verify_did(did: str, public_key: bytes) -> bool:
    """Check that `did` was derived from `public_key`."""
    parts = did.split(":")
    if len(parts) != 3 or parts[0] != "did" or not public_key:
        return False
    expected = derive_did(public_key, parts[1])
    return hmac.compare_digest(expected.encode("utf-8"), did.encode("utf-8"))


@dataclass(frozen=True)
class Contact:
    """Public half of a peer's identity."""
    id: str
    kem_public_key: bytes = field(repr=False)
    sig_public_key: bytes = field(repr=False)
    kem_algorithm: str = DEFAULT_KEM_ALGORITHM
    sig_algorithm: str = DEFAULT_SIG_ALGORITHM
    name: str = ""

    @property
    def did_verified(self) -> bool:
        return verify_did(self.id, self.sig_public_key)


@dataclass(frozen=True)
class Identity:
    """The local user's long-term key material. Private fields never appear in repr."""
    id: str
    kem_public_key: bytes = field(repr=False)
    kem_private_key: bytes = field(repr=False)
    sig_public_key: bytes = field(repr=False)
    sig_private_key: bytes = field(repr=False)
    kem_algorithm: str = DEFAULT_KEM_ALGORITHM
    sig_algorithm: str = DEFAULT_SIG_ALGORITHM

    def public(self, name: str = "") -> Contact:
        return Contact(
            id=self.id,
            kem_public_key=self.kem_public_key,
            sig_public_key=self.sig_public_key,
            kem_algorithm=self.kem_algorithm,
            sig_algorithm=self.sig_algorithm,
            name=name,
        )


def create_identity(kem_algorithm: Optional[str] = None, sig_algorithm: Optional[str] = None,
                    namespace: Optional[str] = None) -> Identity:
    """Generate both keypairs and bind them to a DID derived from the signature key."""
    kem = KemProvider(kem_algorithm or DEFAULT_KEM_ALGORITHM)
    dss = SignatureProvider(sig_algorithm or DEFAULT_SIG_ALGORITHM)
    kem_public_key, kem_private_key = generate_kem_keypair(kem.algorithm)
    sig_public_key, sig_private_key = generate_signature_keypair(dss.algorithm)
    did = derive_did(sig_public_key, namespace)
    logger.info(f"Created identity {did}")
    return Identity(
        id=did,
        kem_public_key=kem_public_key,
        kem_private_key=kem_private_key,
        sig_public_key=sig_public_key,
        sig_private_key=sig_private_key,
        kem_algorithm=kem.algorithm,
        sig_algorithm=dss.algorithm,
    )
