"""Database abstraction layer using Protocol-based repository interfaces.

This module defines Protocol interfaces for the persistence operations the
reconciliation session needs. Persistence is best-effort durability: the
in-memory model is the source of truth while the process runs, and storage
only has to bring it back on the next start.
"""

import logging
from typing import Protocol, Optional, List, Set, Tuple, Any, Callable, TypeVar

from models import Conversation, MessageStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConversationRepository(Protocol):
    """Protocol for conversation data access operations."""

    def upsert_conversation(self, conversation_id: str, name: str, is_group: bool) -> None:
        """Create a conversation or update its name.

        Args:
            conversation_id: Group id or phone number
            name: Display name
            is_group: Whether the conversation is a group
        """
        ...

    def load_conversations(self, history_limit: int = 500) -> List[Conversation]:
        """Load all conversations with their recent messages and reactions.

        Messages still stored as SENDING are returned as SENT: if the row
        reached storage the send call returned, even if its reply was lost.

        Args:
            history_limit: Maximum number of messages per conversation

        Returns:
            Conversations ordered by most recent activity, each with its
            messages oldest first and unread_count populated
        """
        ...

    def load_muted(self) -> Set[str]:
        """Return the ids of muted conversations."""
        ...

    def set_muted(self, conversation_id: str, muted: bool) -> None:
        ...

    def save_read_marker(self, conversation_id: str) -> None:
        """Mark every stored message of the conversation as read."""
        ...


class MessageRepository(Protocol):
    """Protocol for message data access operations."""

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
        """Store a timeline message.

        Args:
            conversation_id: Conversation the message belongs to
            sender: Sender display name ("you" for outgoing)
            timestamp: ISO-8601 wall-clock time
            body: Message text
            status: Delivery status, None for incoming messages
            timestamp_ms: Millisecond epoch correlation key
            is_system: Whether this is a locally generated notice
            sender_id: Backend identifier of the author, the account for outgoing

        Returns:
            Row id of the stored message
        """
        ...

    def update_message_status(
        self,
        conversation_id: str,
        timestamp_ms: int,
        status: MessageStatus
    ) -> None:
        """Raise the status of outgoing messages with the given timestamp.

        Implementations must never store a lower status than the current
        one. The only exception is FAILED replacing SENDING.
        """
        ...

    def update_message_timestamp(
        self,
        conversation_id: str,
        old_timestamp_ms: int,
        new_timestamp_ms: int,
        status: MessageStatus
    ) -> None:
        """Rewrite an outgoing message's local timestamp to the server one.

        Args:
            conversation_id: Conversation the message belongs to
            old_timestamp_ms: Local timestamp assigned when the send was issued
            new_timestamp_ms: Timestamp confirmed by the backend
            status: Status to store alongside (never lowered)
        """
        ...


class ReactionRepository(Protocol):
    """Protocol for reaction data access operations.

    Reactions are keyed by the target message (conversation, timestamp,
    author id) and the reacting sender's backend identifier, so one sender
    holds one reaction whatever name they are shown under.
    """

    def upsert_reaction(
        self,
        conversation_id: str,
        target_timestamp_ms: int,
        target_author: str,
        sender: str,
        emoji: str
    ) -> None:
        ...

    def remove_reaction(
        self,
        conversation_id: str,
        target_timestamp_ms: int,
        target_author: str,
        sender: str
    ) -> None:
        ...


class DatabaseConnection(Protocol):
    """Protocol for low-level database connection management."""

    def connect(self) -> None:
        """Establish a connection to the database.

        Raises:
            ConnectionError: If the connection cannot be established
        """
        ...

    def execute(self, query: str, params: Optional[Tuple] = None) -> Any:
        """Execute a SQL query with optional parameters.

        Args:
            query: SQL query string to execute
            params: Optional tuple of parameters for parameterized queries

        Returns:
            Result of the query execution (backend-specific)
        """
        ...

    def fetchone(self) -> Optional[Tuple]:
        ...

    def fetchall(self) -> List[Tuple]:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...

    def close(self) -> None:
        ...


class DatabaseAdapter(Protocol):
    """Composite protocol providing access to all repository interfaces.

    This is the main entry point for data access operations. Implementations
    must provide access to all repository interfaces and lifecycle management.
    """

    @property
    def conversations(self) -> ConversationRepository:
        """Access the conversation repository."""
        ...

    @property
    def messages(self) -> MessageRepository:
        """Access the message repository."""
        ...

    @property
    def reactions(self) -> ReactionRepository:
        """Access the reaction repository."""
        ...

    def close(self) -> None:
        """Close all connections and release resources."""
        ...


def best_effort(operation: Callable[..., T], *args: Any, **kwargs: Any) -> Optional[T]:
    """Run a persistence call, logging instead of raising on failure.

    Args:
        operation: Bound repository method to call
        *args: Positional arguments for the call
        **kwargs: Keyword arguments for the call

    Returns:
        The call's result, or None if it raised
    """
    try:
        return operation(*args, **kwargs)
    except Exception:
        name = getattr(operation, "__name__", repr(operation))
        logger.warning(f"Persistence call {name} failed", exc_info=True)
        return None
