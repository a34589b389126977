from unittest.mock import MagicMock

import pytest

from identity import ConversationDirectory
from models import SELF_SENDER, Message, MessageStatus, datetime_from_ms
from receipts import MAX_PENDING_RECEIPTS, SendReceiptReconciler


def outgoing(timestamp_ms, status=MessageStatus.SENDING):
    return Message(
        sender_display=SELF_SENDER,
        timestamp=datetime_from_ms(timestamp_ms),
        timestamp_ms=timestamp_ms,
        body="hi",
        is_outgoing=True,
        status=status,
    )


@pytest.fixture
def directory():
    directory = ConversationDirectory()
    directory.get_or_create("C", "Carol", False)
    return directory


def test_receipt_replay_after_confirmation(directory):
    reconciler = SendReceiptReconciler(directory)
    message = outgoing(1000)
    directory.get("C").messages.append(message)
    reconciler.issue("rpc-1", "C", 1000)

    # The receipt arrives before the send reply tells us the server timestamp
    assert reconciler.apply_receipt("C", "delivery", [2000]) == 1
    assert len(reconciler.pending_receipts) == 1

    confirmed = reconciler.confirm("rpc-1", 2000)

    assert confirmed is message
    assert message.timestamp_ms == 2000
    assert message.status == MessageStatus.DELIVERED
    assert len(reconciler.pending_receipts) == 0
    assert reconciler.pending_sends == {}


def test_confirm_without_server_timestamp_keeps_local(directory):
    reconciler = SendReceiptReconciler(directory)
    message = outgoing(1000)
    directory.get("C").messages.append(message)
    reconciler.issue("rpc-1", "C", 1000)

    reconciler.confirm("rpc-1", None)

    assert message.timestamp_ms == 1000
    assert message.status == MessageStatus.SENT


def test_confirm_unknown_request(directory):
    reconciler = SendReceiptReconciler(directory)
    assert reconciler.confirm("nope", 1) is None


def test_no_downgrade(directory):
    reconciler = SendReceiptReconciler(directory)
    message = outgoing(500, MessageStatus.SENT)
    directory.get("C").messages.append(message)

    reconciler.apply_receipt("C", "read", [500])
    reconciler.apply_receipt("C", "delivery", [500])

    assert message.status == MessageStatus.READ


def test_failure_overrides_sending(directory):
    db = MagicMock()
    reconciler = SendReceiptReconciler(directory, db)
    message = outgoing(1000)
    directory.get("C").messages.append(message)
    reconciler.issue("rpc-1", "C", 1000)

    reconciler.fail("rpc-1", "rate limited")

    assert message.status == MessageStatus.FAILED
    assert "rpc-1" not in reconciler.pending_sends
    db.messages.update_message_status.assert_called_once_with("C", 1000, MessageStatus.FAILED)


def test_group_receipt_found_by_scanning_all_conversations(directory):
    reconciler = SendReceiptReconciler(directory)
    group = directory.get_or_create("g1", "Friends", True)
    message = outgoing(700, MessageStatus.SENT)
    group.messages.append(message)

    # The receipt comes from a member, not from the group id
    assert reconciler.apply_receipt("+member", "read", [700]) == 0
    assert message.status == MessageStatus.READ


def test_incoming_messages_never_get_status(directory):
    reconciler = SendReceiptReconciler(directory)
    incoming = Message(sender_display="Carol", timestamp=datetime_from_ms(900), timestamp_ms=900, body="yo")
    directory.get("C").messages.append(incoming)

    reconciler.apply_receipt("C", "read", [900])

    assert incoming.status is None
    assert len(reconciler.pending_receipts) == 1


def test_unknown_receipt_kind_is_ignored(directory):
    reconciler = SendReceiptReconciler(directory)
    assert reconciler.apply_receipt("C", "bogus", [1]) == 0
    assert len(reconciler.pending_receipts) == 0


def test_receipt_persists_upgrade(directory):
    db = MagicMock()
    reconciler = SendReceiptReconciler(directory, db)
    directory.get("C").messages.append(outgoing(300, MessageStatus.SENT))

    reconciler.apply_receipt("C", "viewed", [300])

    db.messages.update_message_status.assert_called_once_with("C", 300, MessageStatus.VIEWED)


def test_confirm_persists_timestamp_rewrite(directory):
    db = MagicMock()
    reconciler = SendReceiptReconciler(directory, db)
    directory.get("C").messages.append(outgoing(1000))
    reconciler.issue("rpc-1", "C", 1000)

    reconciler.confirm("rpc-1", 2000)

    db.messages.update_message_timestamp.assert_called_once_with("C", 1000, 2000, MessageStatus.SENT)


def test_persistence_failure_keeps_memory_state(directory):
    db = MagicMock()
    db.messages.update_message_timestamp.side_effect = RuntimeError("disk full")
    reconciler = SendReceiptReconciler(directory, db)
    message = outgoing(1000)
    directory.get("C").messages.append(message)
    reconciler.issue("rpc-1", "C", 1000)

    reconciler.confirm("rpc-1", 2000)

    assert message.status == MessageStatus.SENT
    assert message.timestamp_ms == 2000


def test_pending_receipt_buffer_is_bounded(directory):
    reconciler = SendReceiptReconciler(directory)
    reconciler.apply_receipt("C", "delivery", range(MAX_PENDING_RECEIPTS + 5))

    assert len(reconciler.pending_receipts) == MAX_PENDING_RECEIPTS
    assert reconciler.pending_receipts[0].timestamps == [5]
