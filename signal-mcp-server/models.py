"""Domain models for the Signal MCP server.

This module contains the core dataclasses used throughout the application.
These models represent the reconciled conversation state and are shared by
the reconciliation logic, the persistence layer and the MCP surface.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Optional, List

# Sender label used for messages written by the local account
SELF_SENDER = "you"
# Sender label of locally generated notices
SYSTEM_SENDER = "signal-mcp"


class MessageStatus(IntEnum):
    """Delivery status of an outgoing message.

    The integer values give the natural upgrade order and are also the
    values stored in the database. A status may only ever be replaced by a
    greater one, except for FAILED which overrides SENDING.
    """
    FAILED = 1
    SENDING = 2
    SENT = 3
    DELIVERED = 4
    READ = 5
    VIEWED = 6

    @classmethod
    def from_db(cls, value: Optional[int]) -> Optional["MessageStatus"]:
        """Convert a stored integer back to a status.

        Args:
            value: Stored integer, or None/0 for incoming messages

        Returns:
            The matching MessageStatus, or None if the value carries no status
        """
        try:
            return cls(value) if value else None
        except ValueError:
            return None


def upgrade_status(current: Optional[MessageStatus], target: MessageStatus) -> MessageStatus:
    """Return the status a message should hold after observing ``target``."""
    if current is None:
        return target
    return max(current, target)


def datetime_from_ms(timestamp_ms: int) -> datetime:
    """Convert a millisecond epoch value to an aware UTC datetime."""
    try:
        return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return datetime.fromtimestamp(0, tz=timezone.utc)


@dataclass
class Reaction:
    """A single emoji reaction on a message.

    Attributes:
        emoji: The reaction emoji
        sender: Backend identifier of whoever reacted (the account for our own)
        sender_display: Resolved name, filled in when the message is read out
    """
    emoji: str
    sender: str
    sender_display: Optional[str] = None


@dataclass
class Message:
    """Represents one entry in a conversation timeline.

    Attributes:
        sender_display: Display name of the sender ("you" for outgoing)
        timestamp: Wall-clock time derived from timestamp_ms
        timestamp_ms: Millisecond epoch, the correlation key for receipts and reactions
        body: Text content (attachments are rendered into a text label)
        is_outgoing: Whether the local account wrote the message
        status: Delivery status, only present for outgoing messages
        reactions: Reactions, at most one per sender
        is_system: Whether this is a locally generated notice
        sender_id: Backend identifier of the author (the account for outgoing),
            None when unknown
    """
    sender_display: str
    timestamp: datetime
    timestamp_ms: int
    body: str
    is_outgoing: bool = False
    status: Optional[MessageStatus] = None
    reactions: List[Reaction] = field(default_factory=list)
    is_system: bool = False
    sender_id: Optional[str] = None


@dataclass
class Conversation:
    """Represents a Signal conversation (1:1 or group).

    Attributes:
        id: Group id for groups, phone number for 1:1 conversations
        display_name: Best known display name
        is_group: Whether the conversation is a group
        messages: Timeline in arrival order
        unread_count: Incoming messages not yet seen
    """
    id: str
    display_name: str
    is_group: bool = False
    messages: List[Message] = field(default_factory=list)
    unread_count: int = 0


@dataclass
class Attachment:
    """An attachment carried by an incoming or synced message.

    Attributes:
        id: Backend attachment identifier
        content_type: MIME type reported by the backend
        filename: Original file name (optional)
        local_path: Where signal-cli stored the file (optional)
    """
    id: str
    content_type: str
    filename: Optional[str] = None
    local_path: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return self.content_type in ("image/jpeg", "image/png", "image/gif", "image/webp")


@dataclass
class Contact:
    """Contact entry from a listContacts reply.

    Attributes:
        number: Phone number of the contact
        name: Display name, None when the backend had none
    """
    number: str
    name: Optional[str] = None


@dataclass
class Group:
    """Group entry from a listGroups reply.

    Attributes:
        id: Group identifier
        name: Group name (may be empty)
        members: Member phone numbers
    """
    id: str
    name: str = ""
    members: List[str] = field(default_factory=list)


@dataclass
class PendingSend:
    """An issued send whose confirmation has not arrived yet."""
    conversation_id: str
    local_timestamp_ms: int


@dataclass
class PendingReceipt:
    """A receipt that referenced no known message when it arrived."""
    sender: str
    receipt_kind: str
    timestamps: List[int]


@dataclass
class BackendStatus:
    """Represents the status of the signal-cli backend.

    Attributes:
        is_running: Whether the signal-cli process is alive
        account: Account the backend was started for
        conversation_count: Conversations currently held in memory
        pending_sends: Sends still waiting for a reply
        pending_receipts: Receipts buffered for later replay
        error_message: Last error reported by the backend (optional)
    """
    is_running: bool
    account: str
    conversation_count: int = 0
    pending_sends: int = 0
    pending_receipts: int = 0
    error_message: Optional[str] = None
