"""
Digital signature provider for Post-Quantum Cryptography.
"""
import logging
from typing import Tuple
from quantcrypt.dss import (
    MLDSA_44, MLDSA_65, MLDSA_87, FALCON_512, FALCON_1024, FAST_SPHINCS, SMALL_SPHINCS
)

logger = logging.getLogger(__name__)

SIG_ALGORITHMS = {
    "ML-DSA-44": MLDSA_44,
    "ML-DSA-65": MLDSA_65,
    "ML-DSA-87": MLDSA_87,
    "Falcon-512": FALCON_512,
    "Falcon-1024": FALCON_1024,
    "SLH-DSA-fast": FAST_SPHINCS,
    "SLH-DSA-small": SMALL_SPHINCS
}

SIG_ALIASES = {
    "Dilithium2": "ML-DSA-44",
    "Dilithium3": "ML-DSA-65",
    "Dilithium5": "ML-DSA-87"
}

SUPPORTED_SIG_ALGORITHMS = set(SIG_ALGORITHMS.keys())


def resolve_sig_algorithm(algorithm: str) -> str:
    """Map an algorithm name or alias to its canonical name.

    Raises:
        ValueError: If the algorithm is not supported
    """
    name = SIG_ALIASES.get(algorithm, algorithm)
    if name not in SUPPORTED_SIG_ALGORITHMS:
        raise ValueError(
            f"Unsupported algorithm: {algorithm}. "
            f"Must be one of: {', '.join(sorted(SUPPORTED_SIG_ALGORITHMS))}"
        )
    return name


class SignatureProvider:
    """A single signature scheme selected by name."""

    def __init__(self, algorithm: str = "ML-DSA-65"):
        self.algorithm = resolve_sig_algorithm(algorithm)
        self._dss = SIG_ALGORITHMS[self.algorithm]()

    def __repr__(self):
        return f"SignatureProvider({self.algorithm!r})"

    def keygen(self) -> Tuple[bytes, bytes]:
        """Generate a keypair. Returns (public_key, private_key)."""
        return self._dss.keygen()

    def sign(self, private_key: bytes, message: bytes) -> bytes:
        """Sign a message using the given private key.

        Args:
            private_key (bytes): The private key to use for signing.
            message (bytes): The message to sign.

        Returns:
            bytes: The signature.
        """
        return self._dss.sign(private_key, message)

    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> bool:
        """Verify a signature using the given public key.

        Never raises for a bad signature or malformed key; returns False instead.
        """
        try:
            return bool(self._dss.verify(public_key, message, signature))
        except Exception as e:
            logger.debug(f"{self.algorithm} verification rejected input: {e}")
            return False


def sign_message(algorithm: str, private_key: bytes, message: bytes) -> bytes:
    """Sign a message with the named algorithm."""
    return SignatureProvider(algorithm).sign(private_key, message)


def verify_signature(algorithm: str, public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Verify a signature with the named algorithm. True if the signature is valid."""
    return SignatureProvider(algorithm).verify(public_key, message, signature)
