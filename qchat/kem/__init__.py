"""
Key Encapsulation Mechanism (KEM) provider for Post-Quantum Cryptography.
"""
from typing import Tuple
from quantcrypt.kem import MLKEM_512, MLKEM_768, MLKEM_1024

KEM_ALGORITHMS = {
    "ML-KEM-512": MLKEM_512,
    "ML-KEM-768": MLKEM_768,
    "ML-KEM-1024": MLKEM_1024
}

# Pre-standard names still found in stored profiles
KEM_ALIASES = {
    "Kyber512": "ML-KEM-512",
    "Kyber768": "ML-KEM-768",
    "Kyber1024": "ML-KEM-1024"
}

SUPPORTED_KEM_ALGORITHMS = set(KEM_ALGORITHMS.keys())


def resolve_kem_algorithm(algorithm: str) -> str:
    """Map an algorithm name or alias to its canonical name.

    Raises:
        ValueError: If the algorithm is not supported
    """
    name = KEM_ALIASES.get(algorithm, algorithm)
    if name not in SUPPORTED_KEM_ALGORITHMS:
        raise ValueError(
            f"Unsupported algorithm: {algorithm}. "
            f"Must be one of: {', '.join(sorted(SUPPORTED_KEM_ALGORITHMS))}"
        )
    return name


class KemProvider:
    """A single KEM selected by name.

    Args:
        algorithm (str): The KEM algorithm to use.
            Must be one of: ML-KEM-512, ML-KEM-768, ML-KEM-1024
    """

    def __init__(self, algorithm: str = "ML-KEM-768"):
        self.algorithm = resolve_kem_algorithm(algorithm)
        self._kem = KEM_ALGORITHMS[self.algorithm]()

    def __repr__(self):
        return f"KemProvider({self.algorithm!r})"

    def keygen(self) -> Tuple[bytes, bytes]:
        """Generate a keypair. Returns (public_key, private_key)."""
        return self._kem.keygen()

    def encaps(self, public_key: bytes) -> Tuple[bytes, bytes]:
        """Encapsulate a shared secret using the given public key.

        Args:
            public_key (bytes): The public key to use for encapsulation.

        Returns:
            Tuple[bytes, bytes]: A tuple containing (ciphertext, shared_secret)
        """
        return self._kem.encaps(public_key)

    def decaps(self, private_key: bytes, ciphertext: bytes) -> bytes:
        """Decapsulate a shared secret using the given private key.

        Args:
            private_key (bytes): The private key to use for decapsulation.
            ciphertext (bytes): The ciphertext to decapsulate.

        Returns:
            bytes: The shared secret.
        """
        return self._kem.decaps(private_key, ciphertext)


def encapsulate_key(algorithm: str, public_key: bytes) -> Tuple[bytes, bytes]:
    """Encapsulate a shared secret. Returns (ciphertext, shared_secret)."""
    return KemProvider(algorithm).encaps(public_key)


def decapsulate_key(algorithm: str, ciphertext: bytes, private_key: bytes) -> bytes:
    """Decapsulate a shared secret."""
    return KemProvider(algorithm).decaps(private_key, ciphertext)
