"""Conversation identity resolution.

Works out which conversation an event belongs to and what that
conversation should be called, from partial and sometimes stale
information. Owns the conversation table and the contact name cache.
"""

import logging
from typing import Callable, Dict, List, Optional

from events import MessageReceived
from models import Contact, Conversation, Group

logger = logging.getLogger(__name__)


def short_name(number: str) -> str:
    """Shorten a phone number for display: +15551234567 -> +1***4567."""
    if len(number) > 6:
        return f"{number[:2]}***{number[-4:]}"
    return number


class ConversationDirectory:
    """Conversation table keyed by conversation id.

    Attributes:
        conversations: Conversations by id
        order: Conversation ids in the order they became known
        contact_names: Cache of backend identifier to display name
    """

    def __init__(self, on_change: Optional[Callable[[Conversation], None]] = None):
        """Initialize an empty directory.

        Args:
            on_change: Called with a conversation whenever it is created or
                renamed, so the caller can persist it
        """
        self.conversations: Dict[str, Conversation] = {}
        self.order: List[str] = []
        self.contact_names: Dict[str, str] = {}
        self._on_change = on_change

    def __len__(self) -> int:
        return len(self.conversations)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations.get(conversation_id)

    def add_loaded(self, conversation: Conversation) -> None:
        """Insert a conversation restored from storage without persisting it again.

        A stored name other than the raw id seeds the name cache, so events
        that carry no name fall back to it instead of the id.
        """
        if conversation.id not in self.conversations:
            self.order.append(conversation.id)
        self.conversations[conversation.id] = conversation
        if conversation.display_name and conversation.display_name != conversation.id:
            self.contact_names.setdefault(conversation.id, conversation.display_name)

    def resolve_conversation_key(self, event: MessageReceived) -> Optional[str]:
        """Derive the conversation key for a message event.

        Group id wins; outgoing 1:1 messages are keyed by their destination;
        everything else by the sender. Returns None when an outgoing message
        has neither group nor destination.
        """
        if event.group_id:
            return event.group_id
        if event.is_outgoing:
            if not event.destination:
                logger.debug(f"Dropping outgoing message {event.timestamp_ms} without destination")
            return event.destination or None
        return event.source or None

    def conversation_name_for(self, event: MessageReceived, key: str) -> str:
        """Best display name for the conversation ``key`` given this event.

        Returns an empty string when neither the event nor the name cache
        knows a name, so an existing name is kept; a new conversation is
        then named after its key by get_or_create.
        """
        is_group = event.group_id is not None
        if is_group and event.group_name:
            return event.group_name
        if not is_group and not event.is_outgoing and event.source_name:
            return event.source_name
        return self.contact_names.get(key, "")

    def display_name_for(self, number: str, name: Optional[str] = None) -> str:
        """Display name for a message sender."""
        return name or self.contact_names.get(number) or short_name(number)

    def learn_name(self, number: str, name: Optional[str]) -> None:
        """Remember a name seen on an event unless one is already cached."""
        if number and name and number not in self.contact_names:
            self.contact_names[number] = name

    def get_or_create(self, key: str, name: str, is_group: bool) -> Conversation:
        """Return the conversation for ``key``, creating it on first sight.

        An existing conversation is renamed only when ``name`` is non-empty
        and differs from the current name.
        """
        conversation = self.conversations.get(key)
        if conversation is None:
            conversation = Conversation(id=key, display_name=name or key, is_group=is_group)
            self.conversations[key] = conversation
            self.order.append(key)
            logger.debug(f"Created conversation {key}")
            self._changed(conversation)
        elif name and conversation.display_name != name:
            conversation.display_name = name
            self._changed(conversation)
        return conversation

    def apply_contact_list(self, contacts: List[Contact]) -> None:
        """Fill the name cache and rename existing 1:1 conversations.

        Contacts never create conversations. The most recent non-empty name
        for a number wins.
        """
        for contact in contacts:
            if not contact.name:
                continue
            self.contact_names[contact.number] = contact.name
            conversation = self.conversations.get(contact.number)
            if conversation is not None and conversation.display_name != contact.name:
                conversation.display_name = contact.name
                self._changed(conversation)

    def apply_group_list(self, groups: List[Group]) -> None:
        """Create a conversation for every listed group and refresh its name."""
        for group in groups:
            if group.name:
                self.contact_names[group.id] = group.name
            self.get_or_create(group.id, group.name or self.contact_names.get(group.id, ""), True)

    def _changed(self, conversation: Conversation) -> None:
        if self._on_change is not None:
            self._on_change(conversation)
