from unittest.mock import MagicMock

import pytest

from database_sqlite import SQLiteDatabaseAdapter
from events import (
    ContactList,
    Error,
    GroupList,
    MessageReceived,
    ReactionReceived,
    ReceiptReceived,
    SendConfirmed,
    SendFailed,
    TypingIndicator,
)
from models import Attachment, Contact, Group, MessageStatus, SELF_SENDER
from session import Session, render_attachment

ACCOUNT = "+15550000000"


class FakeClock:
    def __init__(self, now=1.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeIssuer:
    def __init__(self):
        self.calls = []

    def __call__(self, method, params):
        self.calls.append((method, params))
        return f"rpc-{len(self.calls)}"


def incoming(source="+1", body="hello", ts=100, **kwargs):
    return MessageReceived(source=source, timestamp_ms=ts, body=body, **kwargs)


@pytest.fixture
def session():
    return Session(account=ACCOUNT, clock=FakeClock())


def test_message_creates_conversation_once(session):
    session.handle_event(incoming(source_name="Alice", ts=1))
    session.handle_event(incoming(source_name="Alice", ts=2, body="again"))
    session.handle_event(ContactList([Contact("+1", "Alice")]))

    assert len(session.conversations) == 1
    conversation = session.conversations["+1"]
    assert conversation.display_name == "Alice"
    assert [m.body for m in conversation.messages] == ["hello", "again"]
    assert conversation.unread_count == 2
    assert session.bell_pending


def test_group_and_contact_list_creation(session):
    session.handle_event(GroupList([Group("g1", "Friends")]))
    session.handle_event(ContactList([Contact("+2", "Bob")]))

    assert list(session.conversations) == ["g1"]
    assert session.conversations["g1"].is_group


def test_duplicate_messages_are_suppressed(session):
    session.handle_event(incoming(ts=5))
    session.handle_event(incoming(ts=5))

    assert len(session.conversations["+1"].messages) == 1
    assert session.conversations["+1"].unread_count == 1


def test_synced_outgoing_message(session):
    session.handle_event(MessageReceived(
        source=ACCOUNT, timestamp_ms=10, body="sent elsewhere", is_outgoing=True, destination="+2",
    ))
    session.handle_event(MessageReceived(source=ACCOUNT, timestamp_ms=11, body="lost", is_outgoing=True))

    conversation = session.conversations["+2"]
    assert len(session.conversations) == 1
    message = conversation.messages[0]
    assert message.sender_display == SELF_SENDER
    assert message.is_outgoing
    assert message.status == MessageStatus.SENT
    assert conversation.unread_count == 0


def test_attachments_render_as_messages(session):
    session.handle_event(incoming(body=None, attachments=[
        Attachment("a1", "image/jpeg", "cat.jpg", "/tmp/cat.jpg"),
        Attachment("a2", "application/pdf"),
    ]))

    assert [m.body for m in session.conversations["+1"].messages] == [
        "[image: cat.jpg](file:///tmp/cat.jpg)",
        "[attachment: application/pdf]",
    ]


def test_render_attachment_windows_path():
    assert render_attachment(Attachment("a", "image/png", None, "C:\\pics\\x.png")) == \
        "[image: image/png](file:///C:/pics/x.png)"


def test_send_text_and_receipt_replay(session):
    issuer = FakeIssuer()
    session.handle_event(incoming())
    session.mark_read("+1")

    message = session.send_text("+1", "reply", issuer)

    assert message.status == MessageStatus.SENDING
    assert message.timestamp_ms == 1000
    method, params = issuer.calls[0]
    assert method == "send"
    assert params == {"recipient": ["+1"], "account": ACCOUNT, "message": "reply"}

    session.handle_event(ReceiptReceived("+1", "delivery", [2000]))
    assert len(session.receipts.pending_receipts) == 1

    session.handle_event(SendConfirmed("rpc-1", 2000))

    assert message.timestamp_ms == 2000
    assert message.status == MessageStatus.DELIVERED
    assert len(session.receipts.pending_receipts) == 0


def test_send_to_group_uses_group_id(session):
    issuer = FakeIssuer()
    session.handle_event(GroupList([Group("g1", "Friends")]))

    session.send_text("g1", "hi all", issuer)

    assert issuer.calls[0][1]["groupId"] == "g1"
    assert "recipient" not in issuer.calls[0][1]


def test_local_timestamps_stay_unique(session):
    issuer = FakeIssuer()
    session.handle_event(incoming())

    first = session.send_text("+1", "one", issuer)
    second = session.send_text("+1", "two", issuer)

    assert second.timestamp_ms == first.timestamp_ms + 1


def test_send_failed(session):
    issuer = FakeIssuer()
    session.handle_event(incoming())
    message = session.send_text("+1", "reply", issuer)

    session.handle_event(SendFailed("rpc-1", "Unregistered user"))

    assert message.status == MessageStatus.FAILED
    assert session.receipts.pending_sends == {}
    notice = session.conversations["+1"].messages[-1]
    assert notice.is_system
    assert notice.body == "Message could not be sent: Unregistered user"
    assert session.conversations["+1"].unread_count == 1


def test_send_write_failure_marks_failed(session):
    def broken(method, params):
        raise RuntimeError("signal-cli is not running")

    session.handle_event(incoming())
    message = session.send_text("+1", "reply", broken)

    assert message.status == MessageStatus.FAILED
    assert session.receipts.pending_sends == {}
    assert session.conversations["+1"].messages[-1].body == "Message could not be sent: signal-cli is not running"


def test_send_to_unknown_conversation(session):
    with pytest.raises(KeyError):
        session.send_text("+404", "hi", FakeIssuer())


def test_typing_expires():
    clock = FakeClock(100.0)
    session = Session(account=ACCOUNT, clock=clock)

    session.handle_event(TypingIndicator("+1", True, "Alice"))
    assert "+1" in session.typing
    assert session.directory.contact_names["+1"] == "Alice"

    clock.now = 106.0
    session.cleanup_typing()
    assert session.typing == {}

    session.handle_event(TypingIndicator("+1", True))
    session.handle_event(TypingIndicator("+1", False))
    assert session.typing == {}


def test_reaction_event(session):
    session.handle_event(incoming())
    message = session.send_text("+1", "reply", FakeIssuer())

    session.handle_event(ReactionReceived("+1", "👍", "+1", ACCOUNT, message.timestamp_ms, sender_name="Alice"))
    session.handle_event(ReactionReceived("+1", "🔥", "+1", ACCOUNT, message.timestamp_ms, sender_name="Alice"))

    assert [(r.sender, r.emoji) for r in message.reactions] == [("+1", "🔥")]
    assert session.sender_name("+1") == "Alice"


def test_reaction_replaced_after_sender_name_learned(session):
    session.handle_event(GroupList([Group("g1", "Friends")]))
    session.handle_event(incoming(source="+15557654321", ts=100, group_id="g1"))

    session.handle_event(ReactionReceived("g1", "A", "+15551234567", "+15557654321", 100))
    session.handle_event(ContactList([Contact("+15551234567", "Bob")]))
    session.handle_event(ReactionReceived("g1", "B", "+15551234567", "+15557654321", 100))

    reactions = session.conversations["g1"].messages[0].reactions
    assert [(r.sender, r.emoji) for r in reactions] == [("+15551234567", "B")]
    assert session.sender_name("+15551234567") == "Bob"


def test_send_reaction(session):
    issuer = FakeIssuer()
    session.handle_event(incoming(ts=100, source_name="Alice"))

    session.send_reaction("+1", "👍", "+1", 100, issuer)

    method, params = issuer.calls[0]
    assert method == "sendReaction"
    assert params["targetTimestamp"] == 100
    assert params["remove"] is False
    assert session.conversations["+1"].messages[0].reactions[0].sender == ACCOUNT
    assert session.sender_name(ACCOUNT) == SELF_SENDER


def test_muted_conversation_does_not_ring(session):
    session.set_muted("+1", True)
    session.handle_event(incoming())

    assert session.conversations["+1"].unread_count == 1
    assert not session.take_bell()

    session.set_muted("+1", False)
    session.handle_event(incoming(ts=200))
    assert session.take_bell()
    assert not session.bell_pending


def test_group_notifications_can_be_disabled():
    session = Session(account=ACCOUNT, notify_group=False)
    session.handle_event(incoming(group_id="g1", group_name="Friends"))

    assert not session.bell_pending
    assert session.conversations["g1"].unread_count == 1


def test_mark_read_clears_unread(session):
    session.handle_event(incoming())
    session.mark_read("+1")
    assert session.conversations["+1"].unread_count == 0

    session.handle_event(incoming(ts=200))
    assert session.conversations["+1"].unread_count == 1


def test_error_event_is_recorded(session):
    session.handle_event(Error("JSON parse error: boom"))
    assert session.status(is_running=True).error_message == "JSON parse error: boom"


def test_request_sync(session):
    issuer = FakeIssuer()
    session.request_sync(issuer)
    assert [c[0] for c in issuer.calls] == ["sendSyncRequest", "listContacts", "listGroups"]


def test_persistence_failure_does_not_break_state():
    db = MagicMock()
    db.messages.insert_message.side_effect = RuntimeError("database is locked")
    db.conversations.upsert_conversation.side_effect = RuntimeError("database is locked")
    session = Session(account=ACCOUNT, db=db)

    session.handle_event(incoming())

    assert session.conversations["+1"].messages[0].body == "hello"


def test_state_survives_restart():
    db = SQLiteDatabaseAdapter(":memory:")
    clock = FakeClock(1.0)
    session = Session(account=ACCOUNT, db=db, clock=clock)
    session.handle_event(incoming(source_name="Alice"))
    session.handle_event(GroupList([Group("g1", "Friends")]))
    sending = session.send_text("+1", "never confirmed", FakeIssuer())
    session.handle_event(ReactionReceived("+1", "👍", "+1", "+1", 100, sender_name="Alice"))
    session.set_muted("g1", True)

    restored = Session(account=ACCOUNT, db=db)
    restored.load_from_db()

    conversation = restored.conversations["+1"]
    assert conversation.display_name == "Alice"
    assert [m.body for m in conversation.messages] == ["hello", "never confirmed"]
    assert conversation.unread_count == 1
    assert conversation.messages[1].status == MessageStatus.SENT
    assert conversation.messages[1].timestamp_ms == sending.timestamp_ms
    assert conversation.messages[0].reactions[0].emoji == "👍"
    assert restored.muted == {"g1"}
    assert restored.conversations["g1"].is_group
    db.close()


def test_names_survive_restart_without_named_events():
    db = SQLiteDatabaseAdapter(":memory:")
    session = Session(account=ACCOUNT, db=db, clock=FakeClock())
    session.handle_event(incoming(source="+15551234567", source_name="Alice"))
    session.handle_event(GroupList([Group("g1", "Family")]))

    restored = Session(account=ACCOUNT, db=db, clock=FakeClock())
    restored.load_from_db()
    restored.handle_event(MessageReceived(
        source=ACCOUNT, timestamp_ms=5, body="from my phone", is_outgoing=True, destination="+15551234567",
    ))
    restored.handle_event(incoming(source="+2", ts=6, group_id="g1"))
    restored.handle_event(incoming(source="+15551234567", ts=7))

    assert restored.conversations["+15551234567"].display_name == "Alice"
    assert restored.conversations["+15551234567"].messages[-1].sender_display == "Alice"
    assert restored.conversations["g1"].display_name == "Family"

    reloaded = Session(account=ACCOUNT, db=db)
    reloaded.load_from_db()
    assert reloaded.conversations["+15551234567"].display_name == "Alice"
    assert reloaded.conversations["g1"].display_name == "Family"
    db.close()


def test_reactions_reload_onto_the_right_author():
    db = SQLiteDatabaseAdapter(":memory:")
    session = Session(account=ACCOUNT, db=db, clock=FakeClock())
    session.handle_event(GroupList([Group("g1", "Friends")]))
    session.handle_event(incoming(source="+2", body="from two", ts=100, group_id="g1"))
    session.handle_event(incoming(source="+3", body="from three", ts=100, group_id="g1"))
    session.handle_event(ReactionReceived("g1", "👍", "+4", "+3", 100))

    restored = Session(account=ACCOUNT, db=db)
    restored.load_from_db()

    first, second = restored.conversations["g1"].messages
    assert first.reactions == []
    assert [(r.sender, r.emoji) for r in second.reactions] == [("+4", "👍")]
    db.close()


def test_independent_sessions_do_not_share_state():
    first = Session(account=ACCOUNT)
    second = Session(account=ACCOUNT)
    first.handle_event(incoming())
    first.handle_event(ReceiptReceived("+1", "read", [1]))

    assert second.conversations == {}
    assert len(second.receipts.pending_receipts) == 0
