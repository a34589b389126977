"""Reconciliation session.

A Session owns every piece of mutable conversation state: the
conversation table, pending sends, buffered receipts, the contact name
cache, typing indicators and unread/mute bookkeeping. It must only be
touched from one thread, the event pump; other threads submit commands
to the pump instead.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from database import DatabaseAdapter, best_effort
from events import (
    ContactList,
    DomainEvent,
    Error,
    GroupList,
    MessageReceived,
    ReactionReceived,
    ReceiptReceived,
    SendConfirmed,
    SendFailed,
    TypingIndicator,
)
from identity import ConversationDirectory
from models import (
    SELF_SENDER,
    SYSTEM_SENDER,
    Attachment,
    BackendStatus,
    Conversation,
    Message,
    MessageStatus,
    datetime_from_ms,
)
from reactions import ReactionMerger
from receipts import SendReceiptReconciler

logger = logging.getLogger(__name__)

# issue(method, params) -> request id
IssueFn = Callable[[str, Dict[str, Any]], str]

TYPING_TIMEOUT_SECONDS = 5.0
# How many trailing messages are checked for duplicates
DUPLICATE_WINDOW = 50


def path_to_file_uri(path: str) -> str:
    normalized = path.replace("\\", "/")
    if normalized.startswith("/"):
        return f"file://{normalized}"
    return f"file:///{normalized}"


def render_attachment(attachment: Attachment) -> str:
    """Render an attachment as a text timeline entry.

    Images become ``[image: label](file:///path)``, everything else
    ``[attachment: label](file:///path)``. The link is omitted when
    signal-cli did not store the file.
    """
    label = attachment.filename or attachment.content_type
    kind = "image" if attachment.is_image else "attachment"
    link = f"({path_to_file_uri(attachment.local_path)})" if attachment.local_path else ""
    return f"[{kind}: {label}]{link}"


class Session:
    """Single owner of reconciled conversation state.

    Attributes:
        account: Local account number
        directory: Conversation table and contact name cache
        receipts: Pending sends and buffered receipts
        reactions: Reaction merger
        muted: Ids of muted conversations
        bell_pending: Whether a notification should be raised
        typing: Sender id to the time their typing indicator started
        last_error: Most recent backend error
    """

    def __init__(
        self,
        account: str = "",
        db: Optional[DatabaseAdapter] = None,
        history_limit: int = 500,
        notify_direct: bool = True,
        notify_group: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.account = account
        self.db = db
        self.history_limit = history_limit
        self.notify_direct = notify_direct
        self.notify_group = notify_group
        self._clock = clock

        self.directory = ConversationDirectory(on_change=self._persist_conversation)
        self.receipts = SendReceiptReconciler(self.directory, db)
        self.reactions = ReactionMerger(self.directory, account, db)

        self.muted: Set[str] = set()
        self.bell_pending = False
        self.typing: Dict[str, float] = {}
        self.last_error: Optional[str] = None

    @property
    def conversations(self) -> Dict[str, Conversation]:
        return self.directory.conversations

    # --- Event handling ---

    def handle_event(self, event: DomainEvent) -> None:
        """Apply one domain event to the session state."""
        if isinstance(event, MessageReceived):
            self.handle_message(event)
        elif isinstance(event, ReceiptReceived):
            self.handle_receipt(event)
        elif isinstance(event, SendConfirmed):
            self.handle_send_confirmed(event)
        elif isinstance(event, SendFailed):
            self.handle_send_failed(event)
        elif isinstance(event, TypingIndicator):
            self.handle_typing(event)
        elif isinstance(event, ReactionReceived):
            self.handle_reaction(event)
        elif isinstance(event, ContactList):
            self.handle_contact_list(event)
        elif isinstance(event, GroupList):
            self.handle_group_list(event)
        elif isinstance(event, Error):
            self.handle_error(event)
        else:
            logger.warning(f"Ignoring unknown event {event!r}")

    def handle_message(self, event: MessageReceived) -> None:
        directory = self.directory
        key = directory.resolve_conversation_key(event)
        if key is None:
            return

        if not event.is_outgoing:
            directory.learn_name(event.source, event.source_name)

        is_group = event.group_id is not None
        conversation = directory.get_or_create(key, directory.conversation_name_for(event, key), is_group)

        if event.is_outgoing:
            sender_display = SELF_SENDER
            sender_id = self.account or None
            status = MessageStatus.SENT
        else:
            sender_display = directory.display_name_for(event.source, event.source_name)
            sender_id = event.source
            status = None

        bodies = []
        if event.body:
            bodies.append(event.body)
        bodies.extend(render_attachment(a) for a in event.attachments)

        appended = 0
        for body in bodies:
            if self._is_duplicate(conversation, sender_display, event.timestamp_ms, body):
                logger.debug(f"Skipping duplicate message {event.timestamp_ms} in {key}")
                continue
            self._append(conversation, Message(
                sender_display=sender_display,
                timestamp=datetime_from_ms(event.timestamp_ms),
                timestamp_ms=event.timestamp_ms,
                body=body,
                is_outgoing=event.is_outgoing,
                status=status,
                sender_id=sender_id,
            ))
            appended += 1

        if appended and not event.is_outgoing:
            conversation.unread_count += 1
            notify = self.notify_group if is_group else self.notify_direct
            if notify and key not in self.muted:
                self.bell_pending = True

    def handle_receipt(self, event: ReceiptReceived) -> None:
        self.receipts.apply_receipt(event.sender, event.receipt_kind, event.timestamps)

    def handle_send_confirmed(self, event: SendConfirmed) -> None:
        self.receipts.confirm(event.rpc_id, event.server_timestamp_ms)

    def handle_send_failed(self, event: SendFailed) -> None:
        pending = self.receipts.pending_sends.get(event.rpc_id)
        if self.receipts.fail(event.rpc_id, event.reason) is not None:
            self.add_notice(pending.conversation_id, f"Message could not be sent: {event.reason or 'unknown reason'}")

    def handle_typing(self, event: TypingIndicator) -> None:
        self.directory.learn_name(event.sender, event.sender_name)
        if event.is_typing:
            self.typing[event.sender] = self._clock()
        else:
            self.typing.pop(event.sender, None)

    def handle_reaction(self, event: ReactionReceived) -> None:
        is_self = bool(self.account) and event.sender == self.account
        if not is_self:
            self.directory.learn_name(event.sender, event.sender_name)
        self.reactions.apply(
            event.conversation_id,
            event.emoji,
            event.sender,
            event.target_author,
            event.target_timestamp_ms,
            is_remove=event.is_remove,
        )

    def handle_contact_list(self, event: ContactList) -> None:
        self.directory.apply_contact_list(event.contacts)

    def handle_group_list(self, event: GroupList) -> None:
        self.directory.apply_group_list(event.groups)

    def handle_error(self, event: Error) -> None:
        logger.warning(f"Backend error: {event.message}")
        self.last_error = event.message

    # --- Outgoing ---

    def send_text(self, conversation_id: str, body: str, issue: IssueFn) -> Message:
        """Append an outgoing message and issue the send request.

        Args:
            conversation_id: Target conversation
            body: Message text
            issue: Transport call writing a request and returning its id

        Returns:
            The new message, SENDING on success or FAILED if the request
            could not be written

        Raises:
            KeyError: If the conversation is unknown
        """
        conversation = self.directory.conversations[conversation_id]
        timestamp_ms = self._unique_local_timestamp(conversation)
        message = Message(
            sender_display=SELF_SENDER,
            timestamp=datetime_from_ms(timestamp_ms),
            timestamp_ms=timestamp_ms,
            body=body,
            is_outgoing=True,
            status=MessageStatus.SENDING,
            sender_id=self.account or None,
        )
        self._append(conversation, message)

        params = self._recipient_params(conversation)
        params["message"] = body
        try:
            rpc_id = issue("send", params)
        except (OSError, RuntimeError) as e:
            logger.error(f"Failed to issue send to {conversation_id}: {e}")
            message.status = MessageStatus.FAILED
            if self.db is not None:
                best_effort(self.db.messages.update_message_status, conversation_id, timestamp_ms, MessageStatus.FAILED)
            self.add_notice(conversation_id, f"Message could not be sent: {e}")
            return message

        self.receipts.issue(rpc_id, conversation_id, timestamp_ms)
        return message

    def send_reaction(
        self,
        conversation_id: str,
        emoji: str,
        target_author: str,
        target_timestamp_ms: int,
        issue: IssueFn,
        is_remove: bool = False,
    ) -> None:
        """Issue a reaction and apply it locally.

        Raises:
            KeyError: If the conversation is unknown
        """
        conversation = self.directory.conversations[conversation_id]
        params = self._recipient_params(conversation)
        params.update({
            "emoji": emoji,
            "targetAuthor": target_author,
            "targetTimestamp": target_timestamp_ms,
            "remove": is_remove,
        })
        issue("sendReaction", params)
        self.reactions.apply(
            conversation_id,
            emoji,
            self.account or SELF_SENDER,
            target_author,
            target_timestamp_ms,
            is_remove=is_remove,
        )

    def request_sync(self, issue: IssueFn) -> None:
        """Ask the backend for a sync and for its contact and group lists."""
        params = {"account": self.account} if self.account else {}
        for method in ("sendSyncRequest", "listContacts", "listGroups"):
            try:
                issue(method, dict(params))
            except (OSError, RuntimeError) as e:
                logger.warning(f"Could not issue {method}: {e}")

    # --- Local state ---

    def load_from_db(self) -> None:
        """Restore conversations and muted flags from storage."""
        if self.db is None:
            return
        loaded = best_effort(self.db.conversations.load_conversations, self.history_limit)
        if loaded is None:
            return
        for conversation in loaded:
            self.directory.add_loaded(conversation)
        self.muted = best_effort(self.db.conversations.load_muted) or set()
        logger.info(f"Loaded {len(loaded)} conversations from storage")

    def mark_read(self, conversation_id: str) -> None:
        conversation = self.directory.get(conversation_id)
        if conversation is None:
            return
        conversation.unread_count = 0
        if self.db is not None:
            best_effort(self.db.conversations.save_read_marker, conversation_id)

    def set_muted(self, conversation_id: str, muted: bool) -> None:
        if muted:
            self.muted.add(conversation_id)
        else:
            self.muted.discard(conversation_id)
        if self.db is not None:
            best_effort(self.db.conversations.set_muted, conversation_id, muted)

    def add_notice(self, conversation_id: str, text: str) -> Optional[Message]:
        """Append a locally generated notice to a conversation's timeline.

        Notices are not counted as unread and never ring the bell.
        """
        conversation = self.directory.get(conversation_id)
        if conversation is None:
            return None
        timestamp_ms = int(self._clock() * 1000)
        notice = Message(
            sender_display=SYSTEM_SENDER,
            timestamp=datetime_from_ms(timestamp_ms),
            timestamp_ms=timestamp_ms,
            body=text,
            is_system=True,
        )
        self._append(conversation, notice)
        return notice

    def sender_name(self, sender: str) -> str:
        """Display name for a backend identifier, "you" for the local account."""
        if sender == SELF_SENDER or (self.account and sender == self.account):
            return SELF_SENDER
        return self.directory.display_name_for(sender)

    def cleanup_typing(self) -> None:
        """Drop typing indicators older than the timeout."""
        now = self._clock()
        self.typing = {s: t for s, t in self.typing.items() if now - t < TYPING_TIMEOUT_SECONDS}

    def take_bell(self) -> bool:
        """Return and clear the pending notification flag."""
        pending, self.bell_pending = self.bell_pending, False
        return pending

    def status(self, is_running: bool) -> BackendStatus:
        return BackendStatus(
            is_running=is_running,
            account=self.account,
            conversation_count=len(self.directory),
            pending_sends=len(self.receipts.pending_sends),
            pending_receipts=len(self.receipts.pending_receipts),
            error_message=self.last_error,
        )

    # --- Helpers ---

    def _recipient_params(self, conversation: Conversation) -> Dict[str, Any]:
        if conversation.is_group:
            params: Dict[str, Any] = {"groupId": conversation.id}
        else:
            params = {"recipient": [conversation.id]}
        if self.account:
            params["account"] = self.account
        return params

    def _unique_local_timestamp(self, conversation: Conversation) -> int:
        timestamp_ms = int(self._clock() * 1000)
        taken = {m.timestamp_ms for m in conversation.messages if m.is_outgoing}
        taken.update(
            p.local_timestamp_ms for p in self.receipts.pending_sends.values()
            if p.conversation_id == conversation.id
        )
        while timestamp_ms in taken:
            timestamp_ms += 1
        return timestamp_ms

    @staticmethod
    def _is_duplicate(conversation: Conversation, sender: str, timestamp_ms: int, body: str) -> bool:
        for message in conversation.messages[-DUPLICATE_WINDOW:]:
            if message.timestamp_ms == timestamp_ms and message.sender_display == sender and message.body == body:
                return True
        return False

    def _append(self, conversation: Conversation, message: Message) -> None:
        conversation.messages.append(message)
        if self.db is not None:
            best_effort(
                self.db.messages.insert_message,
                conversation.id,
                message.sender_display,
                message.timestamp.isoformat(),
                message.body,
                message.status,
                message.timestamp_ms,
                message.is_system,
                message.sender_id,
            )

    def _persist_conversation(self, conversation: Conversation) -> None:
        if self.db is not None:
            best_effort(
                self.db.conversations.upsert_conversation,
                conversation.id,
                conversation.display_name,
                conversation.is_group,
            )
