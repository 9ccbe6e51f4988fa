"""
Local Store - SQLite-backed string key/value storage for UI preferences.

Plays the role of the browser's localStorage: the UI keeps the user's
trader token list here between sessions. The copy-trading controller never
reads it.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from config import TRADER_TOKENS_KEY, mask_token
from errors import ConfigError

logger = logging.getLogger("token_store")


class LocalStore:
    """getItem / setItem / removeItem over a single SQLite table"""

    def __init__(self, db_path: str = "copy_trading.db"):
        self.db_path = db_path
        self._init_database()

    def _init_database(self):
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS local_storage (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup"""
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def get_item(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM local_storage WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO local_storage (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """, (key, value, now))
            conn.commit()

    def remove_item(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM local_storage WHERE key = ?", (key,))
            conn.commit()


class TraderTokenList:
    """The user's saved trader tokens, stored as a JSON list."""

    def __init__(self, store: LocalStore, key: str = TRADER_TOKENS_KEY):
        self.store = store
        self.key = key

    def load(self) -> list[str]:
        saved = self.store.get_item(self.key)
        if not saved:
            return []
        try:
            tokens = json.loads(saved)
        except json.JSONDecodeError:
            logger.error("Failed to load saved tokens")
            return []
        if not isinstance(tokens, list):
            logger.error("Failed to load saved tokens: not a list")
            return []
        return [t for t in tokens if isinstance(t, str)]

    def _save(self, tokens: list[str]) -> None:
        self.store.set_item(self.key, json.dumps(tokens))

    def add(self, token: str) -> list[str]:
        """Append a token. Raises ConfigError for blank or duplicate tokens."""
        token = (token or "").strip()
        if not token:
            raise ConfigError("Please enter a valid API token")

        tokens = self.load()
        if token in tokens:
            raise ConfigError("This token is already added")

        tokens.append(token)
        self._save(tokens)
        logger.info(f"Trader token added: {mask_token(token)}")
        return tokens

    def remove(self, token: str) -> list[str]:
        tokens = [t for t in self.load() if t != token]
        self._save(tokens)
        logger.info(f"Trader token removed: {mask_token(token)}")
        return tokens
