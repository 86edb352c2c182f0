"""SQLite persistence layer for HireChat.

Durable state of the realtime core: chat threads between two users, their
messages with delivery status, notifications, and a read-only copy of the
public profile fields shown in chat summaries.

Design goals:
  - Zero extra dependencies (uses stdlib sqlite3)
  - Safe for multi-request use (single process): guarded by a lock
  - Delivery status only moves forward, enforced in the UPDATE predicates

The DB file location is controlled by Config.SQLITE_DB_FILE.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from HireChat.core.message.protocol import UNREAD_STATUSES, MessageStatus, MessageType


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

-- Public profile fields; rows are owned by the user service.
CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY,
  email TEXT UNIQUE,
  first_name TEXT,
  first_surname TEXT,
  profile_photo TEXT,
  type_user TEXT
);

CREATE TABLE IF NOT EXISTS chats (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  issuer_id INTEGER NOT NULL,
  receiver_id INTEGER NOT NULL,
  user_a INTEGER NOT NULL,
  user_b INTEGER NOT NULL,
  chat_type TEXT NOT NULL DEFAULT 'private',
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL,
  UNIQUE(user_a, user_b)
);

CREATE TABLE IF NOT EXISTS messages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  chat_id INTEGER NOT NULL,
  issuer_id INTEGER NOT NULL,
  receiver_id INTEGER NOT NULL,
  message TEXT NOT NULL,
  type_message TEXT NOT NULL DEFAULT 'normal',
  message_status TEXT NOT NULL DEFAULT 'sent', -- sent / delivered / read / failed
  last_message_sender TEXT NOT NULL DEFAULT '',
  client_message_id TEXT,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL,
  UNIQUE(issuer_id, client_message_id),
  FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS notifications (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL,
  from_user_id INTEGER,
  type TEXT NOT NULL,
  title TEXT NOT NULL,
  message TEXT NOT NULL,
  is_read INTEGER NOT NULL DEFAULT 0,
  metadata TEXT NOT NULL DEFAULT '{}',
  created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_chat_time ON messages(chat_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_receiver_status ON messages(receiver_id, message_status);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read);
"""


def _pair(a: int, b: int) -> Tuple[int, int]:
    """Canonical ordered pair for symmetric relationships."""
    return (a, b) if a <= b else (b, a)


def _placeholders(values) -> str:
    return ",".join("?" for _ in values)


_UNREAD = tuple(s.value for s in sorted(UNREAD_STATUSES, key=lambda s: s.value))


@dataclass(frozen=True)
class UserRow:
    id: int
    email: Optional[str]
    first_name: Optional[str]
    first_surname: Optional[str]
    profile_photo: Optional[str]
    type_user: Optional[str]


@dataclass(frozen=True)
class ChatRow:
    id: int
    issuer_id: int
    receiver_id: int
    user_a: int
    user_b: int
    chat_type: str
    created_at: float
    updated_at: float

    def involves(self, user_id: int) -> bool:
        return user_id in (self.user_a, self.user_b)

    def other(self, user_id: int) -> int:
        return self.user_b if user_id == self.user_a else self.user_a


@dataclass(frozen=True)
class MessageRow:
    id: int
    chat_id: int
    issuer_id: int
    receiver_id: int
    message: str
    type_message: str
    message_status: str
    last_message_sender: str
    client_message_id: Optional[str]
    created_at: float
    updated_at: float

    @property
    def status(self) -> MessageStatus:
        return MessageStatus(self.message_status)


@dataclass(frozen=True)
class ChatThreadRow:
    """A chat with everything the chat list needs, read in one locked pass."""
    chat: ChatRow
    last_message: Optional[MessageRow]
    unread_count: int
    issuer: Optional[UserRow]
    receiver: Optional[UserRow]


class SQLiteStore:
    """A tiny SQLite-backed store."""

    def __init__(self, db_path: str):
        self.db_path = str(Path(db_path))
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --------------------------- users ---------------------------
    def upsert_user(
        self,
        user_id: int,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        first_surname: Optional[str] = None,
        profile_photo: Optional[str] = None,
        type_user: Optional[str] = None,
    ) -> UserRow:
        """Insert or refresh a profile row (seeding and local runs)."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO users(id, email, first_name, first_surname, profile_photo, type_user)
                VALUES(?,?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                  email=excluded.email,
                  first_name=excluded.first_name,
                  first_surname=excluded.first_surname,
                  profile_photo=excluded.profile_photo,
                  type_user=excluded.type_user
                """,
                (int(user_id), email, first_name, first_surname, profile_photo, type_user),
            )
            self._conn.commit()
            return self._get_user_locked(int(user_id))

    def _get_user_locked(self, user_id: int) -> Optional[UserRow]:
        row = self._conn.execute("SELECT * FROM users WHERE id=?", (int(user_id),)).fetchone()
        return None if row is None else UserRow(**dict(row))

    def get_user(self, user_id: int) -> Optional[UserRow]:
        with self._lock:
            return self._get_user_locked(user_id)

    def find_user_id_by_email(self, email: str) -> Optional[int]:
        with self._lock:
            row = self._conn.execute(
                "SELECT id FROM users WHERE lower(email)=lower(?)",
                (email,),
            ).fetchone()
            return None if row is None else int(row["id"])

    # --------------------------- chats ---------------------------
    def get_chat(self, chat_id: int) -> Optional[ChatRow]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM chats WHERE id=?", (int(chat_id),)).fetchone()
            return None if row is None else ChatRow(**dict(row))

    def get_or_create_chat(self, issuer_id: int, receiver_id: int) -> ChatRow:
        """Find the chat between two users in either direction, creating it if needed."""
        a, b = _pair(int(issuer_id), int(receiver_id))
        now = time.time()
        with self._lock:
            self._conn.execute(
                """
                INSERT OR IGNORE INTO chats(issuer_id, receiver_id, user_a, user_b, chat_type, created_at, updated_at)
                VALUES(?,?,?,?,'private',?,?)
                """,
                (int(issuer_id), int(receiver_id), a, b, now, now),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT * FROM chats WHERE user_a=? AND user_b=?",
                (a, b),
            ).fetchone()
            return ChatRow(**dict(row))

    def chat_partner_ids(self, user_id: int) -> List[int]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT CASE WHEN user_a=? THEN user_b ELSE user_a END AS partner
                FROM chats
                WHERE user_a=? OR user_b=?
                ORDER BY partner
                """,
                (int(user_id), int(user_id), int(user_id)),
            )
            return [int(r["partner"]) for r in cur.fetchall()]

    def list_chat_threads(self, user_id: int) -> List[ChatThreadRow]:
        """Every chat involving the user, most recently updated first."""
        uid = int(user_id)
        with self._lock:
            chats = [
                ChatRow(**dict(r))
                for r in self._conn.execute(
                    """
                    SELECT * FROM chats
                    WHERE user_a=? OR user_b=?
                    ORDER BY updated_at DESC, id DESC
                    """,
                    (uid, uid),
                ).fetchall()
            ]
            if not chats:
                return []

            chat_ids = [c.id for c in chats]
            last_messages: Dict[int, MessageRow] = {}
            for r in self._conn.execute(
                f"""
                SELECT m.* FROM messages m
                WHERE m.chat_id IN ({_placeholders(chat_ids)})
                  AND m.id = (
                    SELECT id FROM messages
                    WHERE chat_id = m.chat_id
                    ORDER BY created_at DESC, id DESC
                    LIMIT 1
                  )
                """,
                chat_ids,
            ).fetchall():
                last_messages[int(r["chat_id"])] = MessageRow(**dict(r))

            unread: Dict[int, int] = {}
            for r in self._conn.execute(
                f"""
                SELECT chat_id, COUNT(*) AS n FROM messages
                WHERE receiver_id=? AND message_status IN ({_placeholders(_UNREAD)})
                  AND chat_id IN ({_placeholders(chat_ids)})
                GROUP BY chat_id
                """,
                (uid, *_UNREAD, *chat_ids),
            ).fetchall():
                unread[int(r["chat_id"])] = int(r["n"])

            user_ids = sorted({c.issuer_id for c in chats} | {c.receiver_id for c in chats})
            profiles = {
                int(r["id"]): UserRow(**dict(r))
                for r in self._conn.execute(
                    f"SELECT * FROM users WHERE id IN ({_placeholders(user_ids)})",
                    user_ids,
                ).fetchall()
            }

            return [
                ChatThreadRow(
                    chat=c,
                    last_message=last_messages.get(c.id),
                    unread_count=unread.get(c.id, 0),
                    issuer=profiles.get(c.issuer_id),
                    receiver=profiles.get(c.receiver_id),
                )
                for c in chats
            ]

    # -------------------------- messages --------------------------
    def _get_message_locked(self, message_id: int) -> Optional[MessageRow]:
        row = self._conn.execute("SELECT * FROM messages WHERE id=?", (int(message_id),)).fetchone()
        return None if row is None else MessageRow(**dict(row))

    def get_message(self, message_id: int) -> Optional[MessageRow]:
        with self._lock:
            return self._get_message_locked(message_id)

    def create_message(
        self,
        chat_id: int,
        issuer_id: int,
        receiver_id: int,
        body: str,
        message_type: MessageType = MessageType.NORMAL,
        client_message_id: Optional[str] = None,
    ) -> Tuple[MessageRow, bool]:
        """
        Store a message with status ``sent`` and touch its chat.

        Returns:
            (row, created); created is False when ``client_message_id`` was
            already used by this issuer and the stored row is returned.
        """
        now = time.time()
        with self._lock:
            if client_message_id:
                row = self._conn.execute(
                    "SELECT * FROM messages WHERE issuer_id=? AND client_message_id=?",
                    (int(issuer_id), client_message_id),
                ).fetchone()
                if row is not None:
                    return MessageRow(**dict(row)), False

            with self._conn:
                cur = self._conn.execute(
                    """
                    INSERT INTO messages(chat_id, issuer_id, receiver_id, message, type_message,
                                         message_status, last_message_sender, client_message_id,
                                         created_at, updated_at)
                    VALUES(?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        int(chat_id), int(issuer_id), int(receiver_id), body,
                        MessageType(message_type).value, MessageStatus.SENT.value,
                        str(issuer_id), client_message_id or None, now, now,
                    ),
                )
                self._conn.execute(
                    "UPDATE chats SET updated_at=? WHERE id=?",
                    (now, int(chat_id)),
                )
            return self._get_message_locked(int(cur.lastrowid)), True

    def advance_status(self, message_id: int, status: MessageStatus) -> bool:
        """Move a message to ``status`` only from one of its allowed predecessors."""
        allowed = tuple(s.value for s in status.predecessors)
        if not allowed:
            return False
        with self._lock:
            cur = self._conn.execute(
                f"""
                UPDATE messages SET message_status=?, updated_at=?
                WHERE id=? AND message_status IN ({_placeholders(allowed)})
                """,
                (status.value, time.time(), int(message_id), *allowed),
            )
            self._conn.commit()
            return cur.rowcount > 0

    def mark_chat_read(self, chat_id: int, receiver_id: int) -> int:
        """Mark every unread message addressed to ``receiver_id`` in a chat as read."""
        with self._lock:
            cur = self._conn.execute(
                f"""
                UPDATE messages SET message_status=?, updated_at=?
                WHERE chat_id=? AND receiver_id=? AND message_status IN ({_placeholders(_UNREAD)})
                """,
                (MessageStatus.READ.value, time.time(), int(chat_id), int(receiver_id), *_UNREAD),
            )
            self._conn.commit()
            return cur.rowcount

    def count_unread_messages(self, user_id: int) -> int:
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT COUNT(*) AS n FROM messages
                WHERE receiver_id=? AND message_status IN ({_placeholders(_UNREAD)})
                """,
                (int(user_id), *_UNREAD),
            ).fetchone()
            return int(row["n"])

    def list_messages(self, chat_id: int, limit: int = 50) -> List[MessageRow]:
        """Latest messages of a chat in chronological order."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM messages
                WHERE chat_id=?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (int(chat_id), int(limit)),
            ).fetchall()
            rows.reverse()
            return [MessageRow(**dict(r)) for r in rows]

    # ------------------------ notifications ------------------------
    def create_notification(
        self,
        user_id: int,
        from_user_id: Optional[int],
        type: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO notifications(user_id, from_user_id, type, title, message, is_read, metadata, created_at)
                VALUES(?,?,?,?,?,0,?,?)
                """,
                (
                    int(user_id),
                    None if from_user_id is None else int(from_user_id),
                    type, title, message,
                    json.dumps(metadata or {}, default=str),
                    time.time(),
                ),
            )
            self._conn.commit()
            return int(cur.lastrowid)

    def count_unread_notifications(self, user_id: int) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM notifications WHERE user_id=? AND is_read=0",
                (int(user_id),),
            ).fetchone()
            return int(row["n"])
