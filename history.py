"""
Home Bridge - History Store
SQLite persistence for observed messages and small key/value settings.

All SQL runs synchronously behind a lock; the async methods push the work to
a worker thread with asyncio.to_thread so the event loop never blocks on
disk I/O.
"""

import asyncio
import os
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Any, List, Optional

from errors import InvalidArgument

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

PLATFORM_TABLES = {
    "discord": "discord_messages",
    "matrix": "matrix_messages",
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS discord_messages (
    id INTEGER PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    user_label TEXT NOT NULL,
    body TEXT NOT NULL,
    is_from_self INTEGER NOT NULL,
    channel_id INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_discord_channel_ts ON discord_messages (channel_id, timestamp);

CREATE TABLE IF NOT EXISTS matrix_messages (
    id TEXT PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    user_label TEXT NOT NULL,
    body TEXT NOT NULL,
    is_from_self INTEGER NOT NULL,
    channel_id TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_matrix_room_ts ON matrix_messages (channel_id, timestamp);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


@dataclass
class StoredMessage:
    id: Any
    timestamp: datetime
    user_id: Any
    user_label: str
    body: str
    is_from_self: bool
    channel_id: Any


def to_micros(ts: datetime) -> int:
    """UTC microseconds since the epoch; naive datetimes are taken as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    delta = ts - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_micros(value: int) -> datetime:
    return _EPOCH + timedelta(microseconds=value)


def _require(value, what: str):
    if value is None:
        raise InvalidArgument(f"{what} must not be None")
    if isinstance(value, str) and not value.strip():
        raise InvalidArgument(f"{what} must not be blank")


def _row_to_message(row) -> StoredMessage:
    return StoredMessage(
        id=row[0],
        timestamp=from_micros(row[1]),
        user_id=row[2],
        user_label=row[3],
        body=row[4],
        is_from_self=bool(row[5]),
        channel_id=row[6],
    )


class HistoryStore:
    """Message history for both platforms plus a settings table."""

    def __init__(self, db_path: str = ":memory:"):
        if db_path != ":memory:":
            directory = os.path.dirname(db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()

    def close(self):
        with self._lock:
            self._conn.close()

    # --- Messages (sync) ---

    def _table(self, platform: str) -> str:
        table = PLATFORM_TABLES.get(platform)
        if table is None:
            raise InvalidArgument(f"unknown platform {platform!r}")
        return table

    def append_message_sync(self, platform: str, message: StoredMessage) -> bool:
        """Insert a message; re-inserting an existing id is a no-op.

        Returns:
            True if a new row was written
        """
        table = self._table(platform)
        if message is None:
            raise InvalidArgument("message must not be None")
        _require(message.id, "id")
        _require(message.timestamp, "timestamp")
        _require(message.user_id, "user_id")
        _require(message.user_label, "user_label")
        _require(message.body, "body")
        _require(message.channel_id, "channel_id")

        with self._lock:
            cursor = self._conn.execute(
                f"INSERT OR IGNORE INTO {table} "
                "(id, timestamp, user_id, user_label, body, is_from_self, channel_id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (message.id, to_micros(message.timestamp), message.user_id, message.user_label,
                 message.body, int(bool(message.is_from_self)), message.channel_id),
            )
            self._conn.commit()
            return cursor.rowcount > 0

    def get_recent_messages_sync(self, platform: str, channel_id, count: int) -> List[StoredMessage]:
        """Last `count` messages of a channel, oldest first."""
        table = self._table(platform)
        _require(channel_id, "channel_id")
        if count < 0:
            raise InvalidArgument("count must not be negative")
        if count == 0:
            return []

        with self._lock:
            rows = self._conn.execute(
                f"SELECT id, timestamp, user_id, user_label, body, is_from_self, channel_id FROM {table} "
                "WHERE channel_id = ? ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (channel_id, count),
            ).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]

    def get_message_sync(self, platform: str, message_id) -> Optional[StoredMessage]:
        table = self._table(platform)
        _require(message_id, "message_id")
        with self._lock:
            row = self._conn.execute(
                f"SELECT id, timestamp, user_id, user_label, body, is_from_self, channel_id FROM {table} WHERE id = ?",
                (message_id,),
            ).fetchone()
        return _row_to_message(row) if row else None

    def get_self_messages_today_plus_last_sync(self, platform: str, channel_id,
                                               now: Optional[datetime] = None) -> List[StoredMessage]:
        """Own messages since UTC midnight, plus the latest own message even if older."""
        table = self._table(platform)
        _require(channel_id, "channel_id")
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

        columns = "id, timestamp, user_id, user_label, body, is_from_self, channel_id"
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {columns}, rowid FROM {table} WHERE channel_id = ? AND is_from_self = 1 AND timestamp >= ? "
                f"UNION SELECT * FROM (SELECT {columns}, rowid FROM {table} "
                "WHERE channel_id = ? AND is_from_self = 1 ORDER BY timestamp DESC, rowid DESC LIMIT 1) "
                "ORDER BY 2 ASC, 8 ASC",
                (channel_id, to_micros(midnight), channel_id),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    # --- Settings (sync) ---

    def set_setting_sync(self, key: str, value: str):
        _require(key, "key")
        if value is None:
            raise InvalidArgument("value must not be None")
        with self._lock:
            self._conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            self._conn.commit()

    def get_setting_sync(self, key: str) -> Optional[str]:
        _require(key, "key")
        with self._lock:
            row = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def remove_setting_sync(self, key: str) -> bool:
        _require(key, "key")
        with self._lock:
            cursor = self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            self._conn.commit()
            return cursor.rowcount > 0

    # --- Async API ---

    async def append_message(self, platform: str, message: StoredMessage) -> bool:
        return await asyncio.to_thread(self.append_message_sync, platform, message)

    async def get_recent_messages(self, platform: str, channel_id, count: int) -> List[StoredMessage]:
        return await asyncio.to_thread(self.get_recent_messages_sync, platform, channel_id, count)

    async def get_message(self, platform: str, message_id) -> Optional[StoredMessage]:
        return await asyncio.to_thread(self.get_message_sync, platform, message_id)

    async def get_self_messages_today_plus_last(self, platform: str, channel_id) -> List[StoredMessage]:
        return await asyncio.to_thread(self.get_self_messages_today_plus_last_sync, platform, channel_id)

    async def add_discord_message(self, message: StoredMessage) -> bool:
        return await self.append_message("discord", message)

    async def add_matrix_message(self, message: StoredMessage) -> bool:
        return await self.append_message("matrix", message)

    async def get_last_discord_messages_for_channel(self, channel_id: int, count: int) -> List[StoredMessage]:
        return await self.get_recent_messages("discord", channel_id, count)

    async def get_last_matrix_messages_for_room(self, room: str, count: int) -> List[StoredMessage]:
        return await self.get_recent_messages("matrix", room, count)

    async def get_self_matrix_messages_today_plus_last(self, room: str) -> List[StoredMessage]:
        return await self.get_self_messages_today_plus_last("matrix", room)

    async def set_setting(self, key: str, value: str):
        await asyncio.to_thread(self.set_setting_sync, key, value)

    async def get_setting(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self.get_setting_sync, key)

    async def remove_setting(self, key: str) -> bool:
        return await asyncio.to_thread(self.remove_setting_sync, key)
