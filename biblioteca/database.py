import json
import logging
import os
import sqlite3
from typing import Any, Optional

from config import settings

logger = logging.getLogger(__name__)

# Well-known keys of the durable local store
CURRENT_USER_KEY = "currentUser"
APP_USERS_KEY = "appUsers"
PENDING_REPAIRS_KEY = "pendingRepairs"


def get_db_connection(db_file: str) -> sqlite3.Connection:
    """Open a connection to the local store database."""
    conn = sqlite3.connect(db_file)
    conn.row_factory = sqlite3.Row
    return conn


def create_tables(db_file: str) -> None:
    """Create the key/value table if it does not exist yet."""
    directory = os.path.dirname(db_file)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = get_db_connection(db_file)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS local_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()
    finally:
        conn.close()


class LocalStore:
    """Durable JSON key/value storage that survives restarts.

    Plays the role browser local storage plays for the web front end: it
    keeps the active session identity, the accounts registered while the
    API was unreachable and the queue of loan repairs.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or settings.local_store_file
        create_tables(self.db_file)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value for key; corrupt values count as absent."""
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT value FROM local_store WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning(f"Discarding corrupt local value for key '{key}'")
            self.remove(key)
            return default

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        conn = get_db_connection(self.db_file)
        try:
            conn.execute("""
                INSERT INTO local_store (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
            """, (key, encoded))
            conn.commit()
        finally:
            conn.close()

    def remove(self, key: str) -> bool:
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute("DELETE FROM local_store WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def get_list(self, key: str) -> list:
        """Like get, but anything that is not a list reads as an empty list."""
        value = self.get(key, [])
        return value if isinstance(value, list) else []
