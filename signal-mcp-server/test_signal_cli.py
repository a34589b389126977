import json
from unittest.mock import MagicMock, patch

import pytest

import signal_cli
from config import AppConfig
from events import Error, MessageReceived, SendConfirmed
from models import MessageStatus
from session import Session
from signal_cli import (
    EventPump,
    SignalBackend,
    SignalCliProcess,
    SignalClient,
    check_new_messages,
    get_backend_status,
    list_conversations,
    list_messages,
    mark_conversation_read,
    mute_conversation,
    send_message,
    send_reaction,
)

ACCOUNT = "+15550000000"


class FakeProcess:
    """Stands in for SignalCliProcess; records written lines."""

    def __init__(self):
        self.lines = []
        self.on_line = None
        self.running = False

    def start(self, on_line):
        self.on_line = on_line
        self.running = True
        return True, "started"

    def write_line(self, line):
        if not self.running:
            raise RuntimeError("signal-cli is not running")
        self.lines.append(json.loads(line))

    def is_running(self):
        return self.running

    def stop(self):
        self.running = False

    def feed(self, frame):
        self.on_line(json.dumps(frame))


def receive_frame(source, body, ts, name=None):
    envelope = {"source": source, "sourceNumber": source, "timestamp": ts,
                "dataMessage": {"timestamp": ts, "message": body}}
    if name:
        envelope["sourceName"] = name
    return {"jsonrpc": "2.0", "method": "receive", "params": {"envelope": envelope}}


@pytest.fixture
def backend():
    process = FakeProcess()
    backend = SignalBackend(AppConfig(account=ACCOUNT, database_path=":memory:"), process=process)
    ok, _ = backend.start()
    assert ok
    with patch("signal_cli._backend", backend):
        yield backend
    backend.stop()


def test_client_issue_registers_and_writes():
    written = []
    client = SignalClient(written.append, MagicMock())

    request_id = client.issue("listGroups", {"account": ACCOUNT})

    frame = json.loads(written[0])
    assert frame == {"jsonrpc": "2.0", "method": "listGroups", "id": request_id, "params": {"account": ACCOUNT}}
    assert len(client.correlator) == 1


def test_client_issue_write_failure_discards_id():
    def broken(line):
        raise OSError("broken pipe")

    client = SignalClient(broken, MagicMock())
    with pytest.raises(OSError):
        client.issue("send", {})
    assert len(client.correlator) == 0


def test_client_routes_replies_and_pushes():
    events = []
    written = []
    client = SignalClient(written.append, events.append)
    request_id = client.issue("send", {"recipient": ["+1"], "message": "hi"})

    reply = json.dumps({"jsonrpc": "2.0", "id": request_id, "result": {"timestamp": 42}})
    client.on_line(reply)
    # The same reply again is unmatched and carries nothing
    client.on_line(reply)
    client.on_line(json.dumps(receive_frame("+1", "hello", 7)))
    client.on_line("{not json")

    assert events[0] == SendConfirmed(rpc_id=request_id, server_timestamp_ms=42)
    assert isinstance(events[1], MessageReceived)
    assert isinstance(events[2], Error)
    assert events[2].message.startswith("JSON parse error")
    assert len(events) == 3


def test_pump_runs_commands_and_events_in_order():
    session = Session(account=ACCOUNT)
    pump = EventPump(session)
    pump.post(MessageReceived(source="+1", timestamp_ms=1, body="first"))
    future = pump.submit(lambda s: [m.body for m in s.conversations["+1"].messages])

    pump.process_item(pump.queue.get_nowait())
    pump.process_item(pump.queue.get_nowait())

    assert future.result(timeout=1) == ["first"]


def test_pump_command_errors_reach_caller():
    pump = EventPump(Session())
    pump.start()
    try:
        with pytest.raises(KeyError):
            pump.call(lambda s: s.conversations["missing"])
        # The pump keeps running after a failed command
        assert pump.call(lambda s: len(s.conversations)) == 0
    finally:
        pump.stop()


def test_backend_requests_sync_on_start(backend):
    backend.pump.call(lambda s: None)
    assert [line["method"] for line in backend.process.lines] == ["sendSyncRequest", "listContacts", "listGroups"]


def test_backend_end_to_end(backend):
    process = backend.process
    process.feed(receive_frame("+1", "hello", 100, name="Alice"))

    conversations = list_conversations()
    assert [(c.id, c.display_name, c.unread_count) for c in conversations] == [("+1", "Alice", 1)]

    ok, _ = send_message("+1", "hi back")
    assert ok
    send = process.lines[-1]
    assert send["method"] == "send"
    assert send["params"]["recipient"] == ["+1"]

    process.feed({"jsonrpc": "2.0", "id": send["id"], "result": {"timestamp": 5000}})
    process.feed({"jsonrpc": "2.0", "method": "receive", "params": {"envelope": {
        "source": "+1", "sourceNumber": "+1", "timestamp": 5001,
        "receiptMessage": {"isRead": True, "timestamps": [5000]},
    }}})

    messages = list_messages("+1")
    assert [m.body for m in messages] == ["hello", "hi back"]
    assert messages[1].timestamp_ms == 5000
    assert messages[1].status == MessageStatus.READ

    ok, _ = mark_conversation_read("+1")
    assert ok
    assert list_conversations()[0].unread_count == 0

    status = get_backend_status()
    assert status.is_running
    assert status.pending_sends == 0


def test_list_messages_returns_copies(backend):
    backend.process.feed(receive_frame("+1", "hello", 100))
    list_messages("+1")[0].body = "changed"
    assert list_messages("+1")[0].body == "hello"


def test_send_message_validation(backend):
    assert send_message("", "hi")[0] is False
    assert send_message("+1", "")[0] is False
    assert send_message("+404", "hi") == (False, "Unknown conversation: +404")
    assert mark_conversation_read("+404")[0] is False


def test_send_message_when_backend_died(backend):
    backend.process.feed(receive_frame("+1", "hello", 100))
    backend.process.running = False

    ok, message = send_message("+1", "anyone?")

    assert not ok
    failed, notice = list_messages("+1")[-2:]
    assert failed.body == "anyone?"
    assert failed.status == MessageStatus.FAILED
    assert notice.is_system


def test_send_reaction_and_display_names(backend):
    process = backend.process
    process.feed(receive_frame("+1", "hello", 100, name="Alice"))

    ok, _ = send_reaction("+1", "👍", "+1", 100)
    assert ok
    frame = process.lines[-1]
    assert frame["method"] == "sendReaction"
    assert frame["params"]["targetTimestamp"] == 100

    process.feed({"jsonrpc": "2.0", "method": "receive", "params": {"envelope": {
        "source": "+1", "sourceNumber": "+1", "sourceName": "Alice", "timestamp": 101,
        "dataMessage": {"timestamp": 101, "reaction": {
            "emoji": "😂", "targetAuthor": "+1", "targetSentTimestamp": 100,
        }},
    }}})

    reactions = list_messages("+1")[0].reactions
    assert [(r.sender_display, r.emoji) for r in reactions] == [("you", "👍"), ("Alice", "😂")]


def test_send_reaction_validation(backend):
    assert send_reaction("+1", "", "+1", 100)[0] is False
    assert send_reaction("+404", "👍", "+1", 100) == (False, "Unknown conversation: +404")


def test_mute_and_new_message_check(backend):
    process = backend.process
    process.feed(receive_frame("+1", "hello", 100))
    process.feed(receive_frame("+2", "hi", 101))

    has_new, unread = check_new_messages()
    assert has_new
    assert sorted(c.id for c in unread) == ["+1", "+2"]
    assert check_new_messages()[0] is False

    ok, _ = mute_conversation("+2")
    assert ok
    process.feed(receive_frame("+2", "again", 102))

    has_new, unread = check_new_messages()
    assert has_new is False
    assert [c.id for c in unread] == ["+1"]
    assert mute_conversation("+404")[0] is False


def test_functions_without_backend():
    with patch("signal_cli._backend", None):
        assert list_conversations() == []
        assert send_message("+1", "hi")[0] is False
        assert get_backend_status().is_running is False


def test_process_command_line():
    assert SignalCliProcess("signal-cli", ACCOUNT).command() == ["signal-cli", "-a", ACCOUNT, "jsonRpc"]
    assert SignalCliProcess("signal-cli").command() == ["signal-cli", "jsonRpc"]


@patch("subprocess.Popen", side_effect=FileNotFoundError("No such file"))
def test_process_start_missing_binary(mock_popen):
    process = SignalCliProcess("/missing/signal-cli")

    ok, message = process.start(lambda line: None)

    assert not ok
    assert "/missing/signal-cli" in message
    assert not process.is_running()


def test_process_write_without_start():
    with pytest.raises(RuntimeError):
        SignalCliProcess("signal-cli").write_line("{}")


@patch("signal_cli.start_backend", return_value=(True, "started"))
@patch("signal_cli.is_backend_running", return_value=False)
def test_ensure_backend_ready_starts_backend(mock_running, mock_start):
    assert signal_cli.ensure_backend_ready() == (True, "started")
    mock_start.assert_called_once()
