"""Reaction merging: one reaction per sender per message."""

import logging
from typing import Optional

from database import DatabaseAdapter, best_effort
from identity import ConversationDirectory
from models import Conversation, Message, Reaction

logger = logging.getLogger(__name__)


class ReactionMerger:
    def __init__(self, directory: ConversationDirectory, account: str, db: Optional[DatabaseAdapter] = None):
        self.directory = directory
        self.account = account
        self.db = db

    def find_target(self, conversation: Conversation, target_author: str, target_timestamp_ms: int) -> Optional[Message]:
        """Find the reacted-to message, scanning newest first.

        A message that knows its author's identifier matches on it. Older
        messages without one fall back to the display name: our own match
        when ``target_author`` is the local account, others on the literal
        sender or the author's resolved display name.
        """
        author_name = self.directory.display_name_for(target_author)
        for message in reversed(conversation.messages):
            if message.timestamp_ms != target_timestamp_ms or message.is_system:
                continue
            if message.sender_id:
                if message.sender_id == target_author:
                    return message
            elif message.is_outgoing:
                if self.account and target_author == self.account:
                    return message
            elif message.sender_display in (target_author, author_name):
                return message
        return None

    def apply(
        self,
        conversation_id: str,
        emoji: str,
        sender: str,
        target_author: str,
        target_timestamp_ms: int,
        is_remove: bool = False,
    ) -> Optional[Message]:
        """Add, replace or remove ``sender``'s reaction on a message.

        Reactions are keyed on the sender's backend identifier, which stays
        the same when their display name changes. The change is persisted
        even when the message is not in memory, so it shows up once the
        message is loaded.

        Args:
            conversation_id: Conversation holding the target message
            emoji: Reaction emoji
            sender: Identifier of whoever reacted
            target_author: Author of the reacted-to message
            target_timestamp_ms: Timestamp of the reacted-to message
            is_remove: Whether the reaction is being withdrawn

        Returns:
            The message the reaction attached to, if it was found
        """
        message = None
        conversation = self.directory.get(conversation_id)
        if conversation is not None:
            message = self.find_target(conversation, target_author, target_timestamp_ms)

        if message is not None:
            message.reactions = [r for r in message.reactions if r.sender != sender]
            if not is_remove:
                message.reactions.append(Reaction(emoji=emoji, sender=sender))
        else:
            logger.debug(f"Reaction target {conversation_id}/{target_timestamp_ms} not in memory")

        if self.db is not None:
            if is_remove:
                best_effort(
                    self.db.reactions.remove_reaction,
                    conversation_id, target_timestamp_ms, target_author, sender,
                )
            else:
                best_effort(
                    self.db.reactions.upsert_reaction,
                    conversation_id, target_timestamp_ms, target_author, sender, emoji,
                )
        return message
