"""Send confirmation and delivery receipt reconciliation.

Outgoing messages start as SENDING under a locally assigned timestamp.
The send reply tells us the server timestamp, and receipts refer to that
server timestamp. A receipt can arrive before the reply that tells us which
message it belongs to, so unmatched receipts are buffered and replayed
after every confirmation.
"""

import logging
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional

from database import DatabaseAdapter, best_effort
from identity import ConversationDirectory
from models import (
    Conversation,
    Message,
    MessageStatus,
    PendingReceipt,
    PendingSend,
    datetime_from_ms,
    upgrade_status,
)

logger = logging.getLogger(__name__)

RECEIPT_STATUS = {
    "delivery": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "viewed": MessageStatus.VIEWED,
}

MAX_PENDING_RECEIPTS = 1000


def find_outgoing(conversation: Conversation, timestamp_ms: int) -> List[Message]:
    """Outgoing messages in ``conversation`` carrying ``timestamp_ms``, newest first."""
    return [
        m for m in reversed(conversation.messages)
        if m.is_outgoing and m.timestamp_ms == timestamp_ms
    ]


class SendReceiptReconciler:
    """Owns the pending-send table and the buffered receipts.

    Attributes:
        pending_sends: Issued sends by request id
        pending_receipts: Receipts waiting for their message, oldest first
    """

    def __init__(self, directory: ConversationDirectory, db: Optional[DatabaseAdapter] = None):
        self.directory = directory
        self.db = db
        self.pending_sends: Dict[str, PendingSend] = {}
        self.pending_receipts: Deque[PendingReceipt] = deque()

    def issue(self, rpc_id: str, conversation_id: str, local_timestamp_ms: int) -> None:
        """Track a send request until its reply arrives."""
        self.pending_sends[rpc_id] = PendingSend(conversation_id, local_timestamp_ms)

    def confirm(self, rpc_id: str, server_timestamp_ms: Optional[int]) -> Optional[Message]:
        """Apply a successful send reply and replay buffered receipts.

        Args:
            rpc_id: Request id of the send
            server_timestamp_ms: Timestamp assigned by the backend; None or 0
                keeps the local timestamp

        Returns:
            The confirmed message, or None if it could not be found
        """
        pending = self.pending_sends.pop(rpc_id, None)
        if pending is None:
            logger.debug(f"Send confirmation for unknown request {rpc_id}")
            return None

        new_ts = server_timestamp_ms or pending.local_timestamp_ms
        message = self._pending_message(pending)
        if message is not None:
            message.timestamp_ms = new_ts
            message.timestamp = datetime_from_ms(new_ts)
            message.status = upgrade_status(message.status, MessageStatus.SENT)
            if self.db is not None:
                best_effort(
                    self.db.messages.update_message_timestamp,
                    pending.conversation_id,
                    pending.local_timestamp_ms,
                    new_ts,
                    message.status,
                )

        self.replay()
        return message

    def fail(self, rpc_id: str, reason: str = "") -> Optional[Message]:
        """Mark the message behind a rejected send as FAILED."""
        pending = self.pending_sends.pop(rpc_id, None)
        if pending is None:
            logger.debug(f"Send failure for unknown request {rpc_id}")
            return None

        logger.info(f"Send to {pending.conversation_id} failed: {reason or 'unknown reason'}")
        message = self._pending_message(pending)
        if message is not None:
            message.status = MessageStatus.FAILED
        if self.db is not None:
            best_effort(
                self.db.messages.update_message_status,
                pending.conversation_id,
                pending.local_timestamp_ms,
                MessageStatus.FAILED,
            )
        return message

    def apply_receipt(self, sender: str, receipt_kind: str, timestamps: Iterable[int]) -> int:
        """Raise the status of the messages a receipt refers to.

        Each timestamp is looked up in the sender's conversation first and
        then in every conversation, which covers group receipts where the
        sender is a member. The full scan is linear in the number of
        conversations. Timestamps that match nothing are buffered.

        Returns:
            Number of timestamps that matched no message
        """
        target = RECEIPT_STATUS.get(receipt_kind)
        if target is None:
            logger.debug(f"Ignoring receipt of kind {receipt_kind}")
            return 0

        unmatched = 0
        for ts in timestamps:
            if not self._apply_one(sender, ts, target):
                unmatched += 1
                self._buffer(PendingReceipt(sender, receipt_kind, [ts]))
        return unmatched

    def replay(self) -> None:
        """Re-run matching for every buffered receipt."""
        if not self.pending_receipts:
            return
        buffered = list(self.pending_receipts)
        self.pending_receipts.clear()
        logger.debug(f"Replaying {len(buffered)} buffered receipts")
        for receipt in buffered:
            self.apply_receipt(receipt.sender, receipt.receipt_kind, receipt.timestamps)

    def _apply_one(self, sender: str, timestamp_ms: int, target: MessageStatus) -> bool:
        matches = []
        conversation = self.directory.get(sender)
        if conversation is not None:
            matches = [(conversation.id, m) for m in find_outgoing(conversation, timestamp_ms)]
        if not matches:
            for candidate in self.directory.conversations.values():
                matches.extend((candidate.id, m) for m in find_outgoing(candidate, timestamp_ms))

        for conversation_id, message in matches:
            new_status = upgrade_status(message.status, target)
            if new_status == message.status:
                continue
            message.status = new_status
            if self.db is not None:
                best_effort(
                    self.db.messages.update_message_status,
                    conversation_id,
                    timestamp_ms,
                    new_status,
                )
        return bool(matches)

    def _buffer(self, receipt: PendingReceipt) -> None:
        if len(self.pending_receipts) >= MAX_PENDING_RECEIPTS:
            dropped = self.pending_receipts.popleft()
            logger.debug(f"Receipt buffer full, dropping receipt for {dropped.timestamps}")
        self.pending_receipts.append(receipt)
        logger.debug(f"Buffered {receipt.receipt_kind} receipt from {receipt.sender} for {receipt.timestamps}")

    def _pending_message(self, pending: PendingSend) -> Optional[Message]:
        conversation = self.directory.get(pending.conversation_id)
        if conversation is None:
            return None
        found = find_outgoing(conversation, pending.local_timestamp_ms)
        return found[0] if found else None
