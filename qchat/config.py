"""
Runtime configuration, read from the environment.

A ``.env`` file in the working directory is loaded first when present, so
deployments can keep their settings next to the service the same way the
relay does.
"""
import os
import sys
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class Settings:
    kem_algorithm: str = 'ML-KEM-768'
    sig_algorithm: str = 'ML-DSA-65'
    aead: str = 'AES-256-GCM'
    did_namespace: str = 'tetracrypt'
    rotate_after_messages: int = 100
    rotate_after_seconds: int = 3600
    backoff_base_ms: int = 500
    backoff_max_ms: int = 30000
    backoff_jitter: bool = True
    proof_rounds: int = 16
    outbox_limit: int = 256
    relay_url: Optional[str] = None
    database_path: Optional[str] = None
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> 'Settings':
        """Build settings from environment variables (and an optional .env file)."""
        load_dotenv(dotenv_path)
        return cls(
            kem_algorithm=os.environ.get('QCHAT_KEM_ALGORITHM', cls.kem_algorithm),
            sig_algorithm=os.environ.get('QCHAT_SIG_ALGORITHM', cls.sig_algorithm),
            aead=os.environ.get('QCHAT_AEAD', cls.aead),
            did_namespace=os.environ.get('QCHAT_DID_NAMESPACE', cls.did_namespace),
            rotate_after_messages=_env_int('QCHAT_ROTATE_AFTER_MESSAGES', cls.rotate_after_messages),
            rotate_after_seconds=_env_int('QCHAT_ROTATE_AFTER_SECONDS', cls.rotate_after_seconds),
            backoff_base_ms=_env_int('QCHAT_BACKOFF_BASE_MS', cls.backoff_base_ms),
            backoff_max_ms=_env_int('QCHAT_BACKOFF_MAX_MS', cls.backoff_max_ms),
            backoff_jitter=_env_bool('QCHAT_BACKOFF_JITTER', cls.backoff_jitter),
            proof_rounds=_env_int('QCHAT_PROOF_ROUNDS', cls.proof_rounds),
            outbox_limit=_env_int('QCHAT_OUTBOX_LIMIT', cls.outbox_limit),
            relay_url=os.environ.get('QCHAT_RELAY_URL') or None,
            database_path=os.environ.get('DATABASE_PATH') or None,
            log_level=os.environ.get('LOG_LEVEL', cls.log_level).upper(),
        )


def configure_logging(level: str = 'INFO') -> None:
    """Send log records to stdout in the service's standard format."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
