"""SQLite implementation of the database repository interfaces.

This module provides concrete SQLite implementations of all repository protocols
defined in database.py. It owns the schema and applies migrations on connect.
Repository methods raise sqlite3.Error on failure; callers that treat storage
as best-effort wrap them with database.best_effort.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Dict, Optional, List, Set, Tuple

from models import Conversation, Message, MessageStatus, Reaction, datetime_from_ms

logger = logging.getLogger(__name__)

# Each entry upgrades the schema by one version
MIGRATIONS = [
    """
    CREATE TABLE conversations (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        is_group INTEGER NOT NULL DEFAULT 0,
        muted INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
    CREATE TABLE messages (
        rowid INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id TEXT NOT NULL REFERENCES conversations(id),
        sender TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        body TEXT NOT NULL,
        is_system INTEGER NOT NULL DEFAULT 0,
        status INTEGER,
        timestamp_ms INTEGER NOT NULL DEFAULT 0
    );
    CREATE INDEX idx_messages_conv_ts ON messages(conversation_id, timestamp_ms);
    CREATE TABLE read_markers (
        conversation_id TEXT PRIMARY KEY,
        last_read_rowid INTEGER NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE reactions (
        conversation_id TEXT NOT NULL,
        target_timestamp_ms INTEGER NOT NULL,
        target_author TEXT NOT NULL,
        sender TEXT NOT NULL,
        emoji TEXT NOT NULL,
        PRIMARY KEY (conversation_id, target_timestamp_ms, target_author, sender)
    );
    """,
    """
    ALTER TABLE messages ADD COLUMN sender_id TEXT;
    """,
]


class SQLiteConnection:
    """Manages SQLite database connections with proper lifecycle handling."""

    def __init__(self, db_path: str):
        """Initialize connection manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._cursor: Optional[sqlite3.Cursor] = None

    def connect(self) -> None:
        """Establish a connection to the database."""
        # The event pump thread writes while the server thread may have opened it
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)

    def cursor(self) -> sqlite3.Cursor:
        """Create and return a database cursor."""
        if self._conn is None:
            self.connect()
        if self._cursor is None:
            self._cursor = self._conn.cursor()
        return self._cursor

    def execute(self, query: str, params: Optional[Tuple] = None) -> sqlite3.Cursor:
        """Execute a SQL query with optional parameters."""
        cursor = self.cursor()
        if params:
            return cursor.execute(query, params)
        return cursor.execute(query)

    def executescript(self, script: str) -> None:
        self.cursor().executescript(script)

    def fetchone(self) -> Optional[Tuple]:
        """Fetch the next row from the last executed query."""
        if self._cursor is None:
            return None
        return self._cursor.fetchone()

    def fetchall(self) -> List[Tuple]:
        """Fetch all remaining rows from the last executed query."""
        if self._cursor is None:
            return []
        return self._cursor.fetchall()

    @property
    def lastrowid(self) -> Optional[int]:
        return self._cursor.lastrowid if self._cursor is not None else None

    def commit(self) -> None:
        """Commit the current transaction."""
        if self._conn:
            self._conn.commit()

    def rollback(self) -> None:
        """Roll back the current transaction."""
        if self._conn:
            self._conn.rollback()

    def close(self) -> None:
        """Close the database connection and release resources."""
        if self._cursor:
            self._cursor.close()
            self._cursor = None
        if self._conn:
            self._conn.close()
            self._conn = None


def migrate(conn: SQLiteConnection) -> int:
    """Bring the schema up to the latest version.

    Returns:
        The schema version after migrating
    """
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
    conn.execute("SELECT version FROM schema_version")
    row = conn.fetchone()
    version = row[0] if row else 0

    for target, script in enumerate(MIGRATIONS[version:], start=version + 1):
        logger.info(f"Migrating database schema to version {target}")
        conn.executescript(script)
        conn.execute("DELETE FROM schema_version")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (target,))
        conn.commit()
        version = target
    return version


def _reaction_target(candidates: List[Message], target_author: str) -> Optional[Message]:
    """Pick the message a stored reaction belongs to among same-timestamp messages.

    Messages stored without an author id only match when they are the sole
    message at that timestamp.
    """
    for message in reversed(candidates):
        if message.sender_id == target_author:
            return message
    if len(candidates) == 1 and candidates[0].sender_id is None:
        return candidates[0]
    return None


class SQLiteConversationRepository:
    """SQLite implementation of ConversationRepository protocol."""

    def __init__(self, conn: SQLiteConnection):
        self.conn = conn

    def upsert_conversation(self, conversation_id: str, name: str, is_group: bool) -> None:
        """Create a conversation or update its name. An empty name never replaces a stored one."""
        self.conn.execute("""
            INSERT INTO conversations (id, name, is_group, muted, created_at)
            VALUES (?, ?, ?, 0, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = CASE WHEN excluded.name != '' THEN excluded.name ELSE conversations.name END,
                is_group = excluded.is_group
        """, (conversation_id, name, int(is_group), datetime.now(timezone.utc).isoformat()))
        self.conn.commit()

    def load_conversations(self, history_limit: int = 500) -> List[Conversation]:
        """Load conversations, most recently active first."""
        # A row that reached storage means the send call returned
        self.conn.execute(
            "UPDATE messages SET status = ? WHERE status = ?",
            (int(MessageStatus.SENT), int(MessageStatus.SENDING)),
        )
        self.conn.commit()

        self.conn.execute("""
            SELECT c.id, c.name, c.is_group, COALESCE(r.last_read_rowid, 0)
            FROM conversations c
            LEFT JOIN read_markers r ON r.conversation_id = c.id
            ORDER BY COALESCE(
                (SELECT MAX(m.rowid) FROM messages m WHERE m.conversation_id = c.id), 0
            ) DESC, c.created_at DESC
        """)
        rows = self.conn.fetchall()

        result = []
        for conv_id, name, is_group, last_read in rows:
            conversation = Conversation(id=conv_id, display_name=name or conv_id, is_group=bool(is_group))
            conversation.messages, conversation.unread_count = self._load_messages(
                conv_id, history_limit, last_read
            )
            self._attach_reactions(conversation)
            result.append(conversation)
        return result

    def _load_messages(self, conversation_id: str, limit: int, last_read: int) -> Tuple[List[Message], int]:
        self.conn.execute("""
            SELECT row_id, sender, body, is_system, status, timestamp_ms, sender_id
            FROM (
                SELECT rowid AS row_id, sender, body, is_system, status, timestamp_ms, sender_id
                FROM messages
                WHERE conversation_id = ?
                ORDER BY rowid DESC
                LIMIT ?
            )
            ORDER BY row_id ASC
        """, (conversation_id, limit))

        messages = []
        unread = 0
        for rowid, sender, body, is_system, status, timestamp_ms, sender_id in self.conn.fetchall():
            status = MessageStatus.from_db(status)
            is_outgoing = status is not None
            if rowid > last_read and not is_outgoing and not is_system:
                unread += 1
            messages.append(Message(
                sender_display=sender,
                timestamp=datetime_from_ms(timestamp_ms),
                timestamp_ms=timestamp_ms,
                body=body,
                is_outgoing=is_outgoing,
                status=status,
                is_system=bool(is_system),
                sender_id=sender_id,
            ))
        return messages, unread

    def _attach_reactions(self, conversation: Conversation) -> None:
        if not conversation.messages:
            return
        self.conn.execute("""
            SELECT target_timestamp_ms, target_author, sender, emoji
            FROM reactions
            WHERE conversation_id = ?
            ORDER BY rowid
        """, (conversation.id,))
        by_timestamp: Dict[int, List[Message]] = {}
        for message in conversation.messages:
            if not message.is_system:
                by_timestamp.setdefault(message.timestamp_ms, []).append(message)
        for target_ts, target_author, sender, emoji in self.conn.fetchall():
            message = _reaction_target(by_timestamp.get(target_ts, []), target_author)
            if message is not None:
                message.reactions.append(Reaction(emoji=emoji, sender=sender))

    def load_muted(self) -> Set[str]:
        self.conn.execute("SELECT id FROM conversations WHERE muted = 1")
        return {row[0] for row in self.conn.fetchall()}

    def set_muted(self, conversation_id: str, muted: bool) -> None:
        self.conn.execute("UPDATE conversations SET muted = ? WHERE id = ?", (int(muted), conversation_id))
        self.conn.commit()

    def save_read_marker(self, conversation_id: str) -> None:
        self.conn.execute("""
            INSERT OR REPLACE INTO read_markers (conversation_id, last_read_rowid)
            SELECT ?, COALESCE(MAX(rowid), 0) FROM messages WHERE conversation_id = ?
        """, (conversation_id, conversation_id))
        self.conn.commit()


class SQLiteMessageRepository:
    """SQLite implementation of MessageRepository protocol."""

    def __init__(self, conn: SQLiteConnection):
        """Initialize repository with database connection.

        Args:
            conn: SQLite connection to the signal-mcp database
        """
        self.conn = conn

    def insert_message(
        self,
        conversation_id: str,
        sender: str,
        timestamp: str,
        body: str,
        status: Optional[MessageStatus],
        timestamp_ms: int,
        is_system: bool = False,
        sender_id: Optional[str] = None
    ) -> Optional[int]:
        """Store a timeline message and return its row id."""
        self.conn.execute("""
            INSERT INTO messages (conversation_id, sender, timestamp, body, is_system, status, timestamp_ms, sender_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            conversation_id,
            sender,
            timestamp,
            body,
            int(is_system),
            int(status) if status is not None else None,
            timestamp_ms,
            sender_id,
        ))
        rowid = self.conn.lastrowid
        self.conn.commit()
        return rowid

    def update_message_status(self, conversation_id: str, timestamp_ms: int, status: MessageStatus) -> None:
        """Raise the stored status; FAILED may only replace SENDING."""
        self.conn.execute("""
            UPDATE messages
            SET status = ?
            WHERE conversation_id = ?
              AND timestamp_ms = ?
              AND status IS NOT NULL
              AND (status < ? OR (? = ? AND status = ?))
        """, (
            int(status),
            conversation_id,
            timestamp_ms,
            int(status),
            int(status), int(MessageStatus.FAILED), int(MessageStatus.SENDING),
        ))
        self.conn.commit()

    def update_message_timestamp(
        self,
        conversation_id: str,
        old_timestamp_ms: int,
        new_timestamp_ms: int,
        status: MessageStatus
    ) -> None:
        """Rewrite an outgoing message's timestamp, raising its status if lower."""
        self.conn.execute("""
            UPDATE messages
            SET timestamp_ms = ?, timestamp = ?, status = MAX(status, ?)
            WHERE conversation_id = ?
              AND timestamp_ms = ?
              AND status IS NOT NULL
        """, (
            new_timestamp_ms,
            datetime_from_ms(new_timestamp_ms).isoformat(),
            int(status),
            conversation_id,
            old_timestamp_ms,
        ))
        self.conn.commit()


class SQLiteReactionRepository:
    """SQLite implementation of ReactionRepository protocol."""

    def __init__(self, conn: SQLiteConnection):
        self.conn = conn

    def upsert_reaction(
        self,
        conversation_id: str,
        target_timestamp_ms: int,
        target_author: str,
        sender: str,
        emoji: str
    ) -> None:
        self.conn.execute("""
            INSERT INTO reactions (conversation_id, target_timestamp_ms, target_author, sender, emoji)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(conversation_id, target_timestamp_ms, target_author, sender)
            DO UPDATE SET emoji = excluded.emoji
        """, (conversation_id, target_timestamp_ms, target_author, sender, emoji))
        self.conn.commit()

    def remove_reaction(
        self,
        conversation_id: str,
        target_timestamp_ms: int,
        target_author: str,
        sender: str
    ) -> None:
        self.conn.execute("""
            DELETE FROM reactions
            WHERE conversation_id = ? AND target_timestamp_ms = ? AND target_author = ? AND sender = ?
        """, (conversation_id, target_timestamp_ms, target_author, sender))
        self.conn.commit()


class SQLiteDatabaseAdapter:
    """SQLite implementation of DatabaseAdapter protocol.

    Provides access to all repository interfaces over a single connection.
    """

    def __init__(self, db_path: str):
        """Initialize the SQLite database adapter.

        Args:
            db_path: Path to the database file, or ':memory:' for an in-memory database
        """
        self.db_path = db_path
        self._conn = SQLiteConnection(db_path)
        self._conn.connect()
        self.schema_version = migrate(self._conn)

        self._conversations = SQLiteConversationRepository(self._conn)
        self._messages = SQLiteMessageRepository(self._conn)
        self._reactions = SQLiteReactionRepository(self._conn)

    @property
    def conversations(self) -> SQLiteConversationRepository:
        """Access the conversation repository."""
        return self._conversations

    @property
    def messages(self) -> SQLiteMessageRepository:
        """Access the message repository."""
        return self._messages

    @property
    def reactions(self) -> SQLiteReactionRepository:
        """Access the reaction repository."""
        return self._reactions

    def close(self) -> None:
        """Close all connections and release resources."""
        self._conn.close()
