"""
Profile, contact and message stores.

The session manager receives a store object explicitly; nothing here is a
module-level singleton. ``MemoryStore`` keeps everything in the instance,
``SqliteStore`` persists to a database file and seals private keys with a
passphrase.
"""
import enum
import sqlite3
import hashlib
import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

import bcrypt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from qchat.keygen import Contact, Identity, random_bytes

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100000


class MessageStatus(enum.Enum):
    UNREAD = 'unread'
    READ = 'read'


@dataclass
class Message:
    """A decrypted message. Content is fixed once created; only status moves."""
    id: str
    sender: str
    receiver: str
    content: str
    timestamp: int
    status: MessageStatus = MessageStatus.UNREAD

    def mark_read(self) -> bool:
        if self.status == MessageStatus.READ:
            return False
        self.status = MessageStatus.READ
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sender': self.sender,
            'receiver': self.receiver,
            'content': self.content,
            'timestamp': self.timestamp,
            'status': self.status.value,
        }


def _conversation_summaries(self_id: str, messages: List[Message], limit: int) -> List[Dict[str, Any]]:
    latest: Dict[str, Message] = {}
    unread: Dict[str, int] = {}
    for message in messages:
        partner = message.receiver if message.sender == self_id else message.sender
        if partner not in latest or message.timestamp >= latest[partner].timestamp:
            latest[partner] = message
        if message.receiver == self_id and message.status == MessageStatus.UNREAD:
            unread[partner] = unread.get(partner, 0) + 1
    rows = [
        {
            'partner': partner,
            'last_message': message.to_dict(),
            'unread_count': unread.get(partner, 0),
            'timestamp': message.timestamp,
        }
        for partner, message in latest.items()
    ]
    rows.sort(key=lambda row: row['timestamp'], reverse=True)
    return rows[:limit]


class MemoryStore:
    """In-process store for identity, contacts and messages."""

    def __init__(self):
        self._lock = threading.Lock()
        self._identity: Optional[Identity] = None
        self._contacts: Dict[str, Contact] = {}
        self._messages: List[Message] = []
        self._message_ids = set()

    # Profile store

    def get_current_identity(self) -> Optional[Identity]:
        return self._identity

    def save_identity(self, identity: Identity) -> None:
        self._identity = identity
        logger.info(f"Identity saved: {identity.id}")

    def clear(self) -> None:
        """Forget identity, contacts and messages (logout)."""
        with self._lock:
            self._identity = None
            self._contacts.clear()
            self._messages.clear()
            self._message_ids.clear()
        logger.info("Storage cleared")

    # Contact store

    def save_contact(self, contact: Contact) -> None:
        with self._lock:
            self._contacts[contact.id] = contact
        logger.info(f"Contact saved: {contact.id}")

    def get_contacts(self) -> List[Contact]:
        with self._lock:
            return list(self._contacts.values())

    def get_contact_by_id(self, contact_id: str) -> Optional[Contact]:
        return self._contacts.get(contact_id)

    # Message store

    def append(self, message: Message) -> bool:
        """Store a message. Returns False if a message with that id already exists."""
        with self._lock:
            if message.id in self._message_ids:
                logger.info(f"Message {message.id} already exists, skipping")
                return False
            self._message_ids.add(message.id)
            self._messages.append(replace(message))
        return True

    def query_by_peer(self, self_id: str, peer_id: str, limit: Optional[int] = None) -> List[Message]:
        with self._lock:
            rows = [
                replace(m) for m in self._messages
                if (m.sender == self_id and m.receiver == peer_id)
                or (m.sender == peer_id and m.receiver == self_id)
            ]
        rows.sort(key=lambda m: m.timestamp)
        return rows[-limit:] if limit else rows

    def mark_read(self, self_id: str, peer_id: str) -> int:
        """Mark every message from `peer_id` to `self_id` as read. Returns the count."""
        count = 0
        with self._lock:
            for message in self._messages:
                if message.sender == peer_id and message.receiver == self_id and message.mark_read():
                    count += 1
        return count

    def recent_conversations(self, self_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            messages = list(self._messages)
        return _conversation_summaries(self_id, messages, limit)


def hash_passphrase(passphrase: str) -> str:
    return bcrypt.hashpw(passphrase.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def check_passphrase(stored_hash: str, passphrase: str) -> bool:
    return bcrypt.checkpw(passphrase.encode('utf-8'), stored_hash.encode('utf-8'))


def _seal_hex(key: bytes, data: bytes) -> str:
    iv = random_bytes(12)
    return iv.hex() + ':' + AESGCM(key).encrypt(iv, data, None).hex()


def _open_hex(key: bytes, sealed: str) -> bytes:
    iv_hex, ciphertext_hex = sealed.split(':', 1)
    return AESGCM(key).decrypt(bytes.fromhex(iv_hex), bytes.fromhex(ciphertext_hex), None)


def _key_encryption_key(passphrase: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac('sha256', passphrase.encode('utf-8'), salt, PBKDF2_ITERATIONS)


class SqliteStore:
    """SQLite-backed store.

    Private keys are encrypted with a random data key; the data key is
    encrypted under a PBKDF2 key derived from the passphrase, which is itself
    checked against a bcrypt hash before anything is decrypted.
    """

    def __init__(self, db_path: str, passphrase: Optional[str] = None):
        self.db_path = db_path
        self.passphrase = passphrase
        self.init_db()

    def get_db_connection(self):
        """Create a connection to the SQLite database"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row  # This enables column access by name
        return conn

    def init_db(self):
        """Initialize the database with required tables if they don't exist"""
        conn = self.get_db_connection()
        cursor = conn.cursor()

        cursor.execute('''
        CREATE TABLE IF NOT EXISTS identity (
            slot INTEGER PRIMARY KEY CHECK (slot = 1),
            did TEXT NOT NULL,
            kem_algorithm TEXT NOT NULL,
            sig_algorithm TEXT NOT NULL,
            kem_public_key TEXT NOT NULL,
            kem_private_key TEXT NOT NULL,
            sig_public_key TEXT NOT NULL,
            sig_private_key TEXT NOT NULL,
            passphrase_hash TEXT NOT NULL,
            key_salt TEXT NOT NULL,
            key_encryption_data TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        ''')

        cursor.execute('''
        CREATE TABLE IF NOT EXISTS contacts (
            did TEXT PRIMARY KEY,
            name TEXT,
            kem_algorithm TEXT NOT NULL,
            sig_algorithm TEXT NOT NULL,
            kem_public_key TEXT NOT NULL,
            sig_public_key TEXT NOT NULL
        )
        ''')

        cursor.execute('''
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            sender TEXT NOT NULL,
            receiver TEXT NOT NULL,
            content TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            is_read INTEGER DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        ''')

        # Create index on sender and receiver for faster queries
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_sender_receiver ON messages (sender, receiver)')

        conn.commit()
        conn.close()
        logger.info(f"Database initialized at {self.db_path}")

    # Profile store

    def _require_passphrase(self) -> str:
        if not self.passphrase:
            raise ValueError("A passphrase is required to store or load private keys")
        return self.passphrase

    def save_identity(self, identity: Identity) -> None:
        passphrase = self._require_passphrase()
        data_key = random_bytes(32)
        salt = random_bytes(16)
        kek = _key_encryption_key(passphrase, salt)

        conn = self.get_db_connection()
        cursor = conn.cursor()
        try:
            cursor.execute('''
            INSERT OR REPLACE INTO identity (slot, did, kem_algorithm, sig_algorithm, kem_public_key,
                kem_private_key, sig_public_key, sig_private_key, passphrase_hash, key_salt, key_encryption_data)
            VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                identity.id, identity.kem_algorithm, identity.sig_algorithm,
                identity.kem_public_key.hex(), _seal_hex(data_key, identity.kem_private_key),
                identity.sig_public_key.hex(), _seal_hex(data_key, identity.sig_private_key),
                hash_passphrase(passphrase), salt.hex(), _seal_hex(kek, data_key),
            ))
            conn.commit()
            logger.info(f"Identity saved: {identity.id}")
        except sqlite3.Error as e:
            logger.error(f"Database error saving identity: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_current_identity(self) -> Optional[Identity]:
        """Load and unseal the stored identity.

        Raises:
            ValueError: If no passphrase is set or it does not match
        """
        conn = self.get_db_connection()
        try:
            row = conn.execute('SELECT * FROM identity WHERE slot = 1').fetchone()
        finally:
            conn.close()
        if row is None:
            return None

        passphrase = self._require_passphrase()
        if not check_passphrase(row['passphrase_hash'], passphrase):
            logger.warning(f"Wrong passphrase for identity {row['did']}")
            raise ValueError("Invalid passphrase")
        try:
            kek = _key_encryption_key(passphrase, bytes.fromhex(row['key_salt']))
            data_key = _open_hex(kek, row['key_encryption_data'])
            kem_private_key = _open_hex(data_key, row['kem_private_key'])
            sig_private_key = _open_hex(data_key, row['sig_private_key'])
        except (InvalidTag, ValueError) as e:
            logger.error(f"Stored private keys for {row['did']} could not be decrypted")
            raise ValueError("Stored private keys are corrupted") from e

        return Identity(
            id=row['did'],
            kem_public_key=bytes.fromhex(row['kem_public_key']),
            kem_private_key=kem_private_key,
            sig_public_key=bytes.fromhex(row['sig_public_key']),
            sig_private_key=sig_private_key,
            kem_algorithm=row['kem_algorithm'],
            sig_algorithm=row['sig_algorithm'],
        )

    def clear(self) -> None:
        conn = self.get_db_connection()
        try:
            for table in ('identity', 'contacts', 'messages'):
                conn.execute(f'DELETE FROM {table}')
            conn.commit()
        finally:
            conn.close()
        logger.info("Storage cleared")

    # Contact store

    def save_contact(self, contact: Contact) -> None:
        conn = self.get_db_connection()
        try:
            conn.execute('''
            INSERT OR REPLACE INTO contacts (did, name, kem_algorithm, sig_algorithm, kem_public_key, sig_public_key)
            VALUES (?, ?, ?, ?, ?, ?)
            ''', (contact.id, contact.name, contact.kem_algorithm, contact.sig_algorithm,
                  contact.kem_public_key.hex(), contact.sig_public_key.hex()))
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Contact saved: {contact.id}")

    @staticmethod
    def _contact_from_row(row) -> Contact:
        return Contact(
            id=row['did'],
            kem_public_key=bytes.fromhex(row['kem_public_key']),
            sig_public_key=bytes.fromhex(row['sig_public_key']),
            kem_algorithm=row['kem_algorithm'],
            sig_algorithm=row['sig_algorithm'],
            name=row['name'] or '',
        )

    def get_contacts(self) -> List[Contact]:
        conn = self.get_db_connection()
        try:
            rows = conn.execute('SELECT * FROM contacts ORDER BY name, did').fetchall()
        finally:
            conn.close()
        return [self._contact_from_row(row) for row in rows]

    def get_contact_by_id(self, contact_id: str) -> Optional[Contact]:
        conn = self.get_db_connection()
        try:
            row = conn.execute('SELECT * FROM contacts WHERE did = ?', (contact_id,)).fetchone()
        finally:
            conn.close()
        return self._contact_from_row(row) if row else None

    # Message store

    @staticmethod
    def _message_from_row(row) -> Message:
        return Message(
            id=row['id'],
            sender=row['sender'],
            receiver=row['receiver'],
            content=row['content'],
            timestamp=row['timestamp'],
            status=MessageStatus.READ if row['is_read'] else MessageStatus.UNREAD,
        )

    def append(self, message: Message) -> bool:
        """
        Save a message to the database

        Returns:
            False if a message with the same id was already stored
        """
        conn = self.get_db_connection()
        cursor = conn.cursor()
        try:
            cursor.execute('SELECT id FROM messages WHERE id = ?', (message.id,))
            if cursor.fetchone():
                logger.info(f"Message {message.id} already exists, skipping")
                return False

            cursor.execute('''
            INSERT INTO messages (id, sender, receiver, content, timestamp, is_read)
            VALUES (?, ?, ?, ?, ?, ?)
            ''', (message.id, message.sender, message.receiver, message.content, message.timestamp,
                  1 if message.status == MessageStatus.READ else 0))
            conn.commit()
            return True
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def query_by_peer(self, self_id: str, peer_id: str, limit: Optional[int] = None) -> List[Message]:
        """
        Get the conversation between two parties, oldest first

        Args:
            self_id: The local DID
            peer_id: The conversation partner's DID
            limit: If set, only the newest `limit` messages are returned
        """
        conn = self.get_db_connection()
        try:
            # SQLite treats a negative LIMIT as no limit
            rows = conn.execute('''
            SELECT * FROM (
                SELECT rowid AS seq, * FROM messages
                WHERE (sender = ? AND receiver = ?)
                   OR (sender = ? AND receiver = ?)
                ORDER BY timestamp DESC, seq DESC
                LIMIT ?
            )
            ORDER BY timestamp ASC, seq ASC
            ''', (self_id, peer_id, peer_id, self_id, limit if limit else -1)).fetchall()
        finally:
            conn.close()
        return [self._message_from_row(row) for row in rows]

    def mark_read(self, self_id: str, peer_id: str) -> int:
        """
        Mark all messages from peer_id to self_id as read

        Returns:
            Number of messages marked as read
        """
        conn = self.get_db_connection()
        cursor = conn.cursor()
        try:
            cursor.execute('''
            UPDATE messages
            SET is_read = 1
            WHERE sender = ? AND receiver = ? AND is_read = 0
            ''', (peer_id, self_id))
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def recent_conversations(self, self_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        conn = self.get_db_connection()
        try:
            rows = conn.execute(
                'SELECT * FROM messages WHERE sender = ? OR receiver = ?', (self_id, self_id)
            ).fetchall()
        finally:
            conn.close()
        return _conversation_summaries(self_id, [self._message_from_row(r) for r in rows], limit)
