"""Domain events produced by the normalizer.

This is the closed set of things the reconciliation session reacts to.
Every backend line becomes at most one of these.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union

from models import Attachment, Contact, Group


@dataclass(frozen=True)
class MessageReceived:
    source: str
    timestamp_ms: int
    source_name: Optional[str] = None
    body: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    is_outgoing: bool = False
    # For synced 1:1 messages, the recipient number
    destination: Optional[str] = None


@dataclass(frozen=True)
class ReceiptReceived:
    sender: str
    receipt_kind: str
    timestamps: List[int]


@dataclass(frozen=True)
class SendConfirmed:
    rpc_id: str
    # None when the reply carried no timestamp
    server_timestamp_ms: Optional[int] = None


@dataclass(frozen=True)
class SendFailed:
    rpc_id: str
    reason: str = ""


@dataclass(frozen=True)
class TypingIndicator:
    sender: str
    is_typing: bool
    sender_name: Optional[str] = None


@dataclass(frozen=True)
class ReactionReceived:
    conversation_id: str
    emoji: str
    sender: str
    target_author: str
    target_timestamp_ms: int
    sender_name: Optional[str] = None
    is_remove: bool = False


@dataclass(frozen=True)
class ContactList:
    contacts: List[Contact]


@dataclass(frozen=True)
class GroupList:
    groups: List[Group]


@dataclass(frozen=True)
class Error:
    message: str


DomainEvent = Union[
    MessageReceived,
    ReceiptReceived,
    SendConfirmed,
    SendFailed,
    TypingIndicator,
    ReactionReceived,
    ContactList,
    GroupList,
    Error,
]
