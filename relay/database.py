import os
import sqlite3
import logging
import datetime
from typing import List, Optional

logger = logging.getLogger(__name__)

# Database file path - configurable for different environments
DATABASE_PATH = os.environ.get('DATABASE_PATH')


def default_db_file() -> str:
    if DATABASE_PATH:
        # Ensure the directory exists
        directory = os.path.dirname(DATABASE_PATH)
        if directory:
            os.makedirs(directory, exist_ok=True)
        return DATABASE_PATH
    # For local development
    return os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'relay_database.sqlite')


class PendingFrameStore:
    """Frames held for recipients that are not subscribed right now."""

    def __init__(self, db_file: Optional[str] = None, max_per_recipient: int = 1000):
        self.db_file = db_file or default_db_file()
        self.max_per_recipient = max_per_recipient
        self.init_db()

    def get_db_connection(self):
        """Create a connection to the SQLite database"""
        conn = sqlite3.connect(self.db_file)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        """Initialize the database with required tables if they don't exist"""
        conn = self.get_db_connection()
        cursor = conn.cursor()

        cursor.execute('''
        CREATE TABLE IF NOT EXISTS pending_frames (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            fingerprint TEXT NOT NULL UNIQUE,
            recipient TEXT NOT NULL,
            sender TEXT NOT NULL,
            frame_hex TEXT NOT NULL,
            queued_at TEXT NOT NULL
        )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_pending_recipient ON pending_frames (recipient, seq)')

        conn.commit()
        conn.close()
        logger.info(f"Relay database initialized at {self.db_file}")

    def queue_frame(self, recipient: str, sender: str, fingerprint: str, frame_hex: str) -> bool:
        """
        Hold a frame until `recipient` subscribes

        Returns:
            False if the frame was already queued or the recipient's queue is full
        """
        conn = self.get_db_connection()
        cursor = conn.cursor()
        try:
            cursor.execute('SELECT COUNT(*) AS n FROM pending_frames WHERE recipient = ?', (recipient,))
            if cursor.fetchone()['n'] >= self.max_per_recipient:
                logger.warning(f"Pending queue for {recipient} is full, refusing frame {fingerprint[:16]}")
                return False

            cursor.execute('''
            INSERT OR IGNORE INTO pending_frames (fingerprint, recipient, sender, frame_hex, queued_at)
            VALUES (?, ?, ?, ?, ?)
            ''', (fingerprint, recipient, sender, frame_hex,
                  datetime.datetime.now(datetime.timezone.utc).isoformat()))
            conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def take_frames(self, recipient: str) -> List[str]:
        """Remove and return every queued frame for `recipient`, oldest first."""
        conn = self.get_db_connection()
        cursor = conn.cursor()
        try:
            cursor.execute(
                'SELECT seq, frame_hex FROM pending_frames WHERE recipient = ? ORDER BY seq ASC', (recipient,)
            )
            rows = cursor.fetchall()
            if rows:
                cursor.execute('DELETE FROM pending_frames WHERE recipient = ? AND seq <= ?',
                               (recipient, rows[-1]['seq']))
            conn.commit()
            return [row['frame_hex'] for row in rows]
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def pending_count(self, recipient: Optional[str] = None) -> int:
        conn = self.get_db_connection()
        try:
            if recipient:
                row = conn.execute('SELECT COUNT(*) AS n FROM pending_frames WHERE recipient = ?',
                                   (recipient,)).fetchone()
            else:
                row = conn.execute('SELECT COUNT(*) AS n FROM pending_frames').fetchone()
            return row['n']
        finally:
            conn.close()
