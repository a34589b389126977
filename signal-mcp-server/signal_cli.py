"""signal-cli backend management.

Runs ``signal-cli jsonRpc`` as a child process, reads its stdout line by
line, and hands normalized events to a single pump thread that owns the
reconciliation Session. Everything that changes session state, including
sends requested through MCP tools, is queued to that thread.
"""

import copy
import logging
import os
import queue
import signal
import subprocess
import threading
import time
from collections import deque
from concurrent.futures import Future
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import psutil

from config import AppConfig, create_database_adapter
from events import DomainEvent, Error
from models import BackendStatus, Conversation, Message, MessageStatus
from normalizer import normalize
from rpc import RpcCorrelator, new_request_id
from session import Session
from wire import JsonRpcRequest, WireError, parse_line

logger = logging.getLogger(__name__)

STARTUP_WAIT_SECONDS = 2
STOP_TIMEOUT_SECONDS = 10
CALL_TIMEOUT_SECONDS = 10
# Pump wakes up at least this often to expire typing indicators
PUMP_IDLE_SECONDS = 1.0


class SignalCliProcess:
    """The signal-cli child process and its stdio threads."""

    def __init__(self, cli_path: str, account: str = ""):
        self.cli_path = cli_path
        self.account = account
        self.process: Optional[subprocess.Popen] = None
        self.stderr_tail: Deque[str] = deque(maxlen=20)
        self._write_lock = threading.Lock()

    def command(self) -> List[str]:
        cmd = [self.cli_path]
        if self.account:
            cmd.extend(["-a", self.account])
        cmd.append("jsonRpc")
        return cmd

    def start(self, on_line: Callable[[str], None]) -> Tuple[bool, str]:
        """Spawn signal-cli and start feeding stdout lines to ``on_line``."""
        if self.is_running():
            return True, "signal-cli is already running"

        try:
            self.process = subprocess.Popen(
                self.command(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to spawn {self.cli_path}: {e}")
            return False, f"Failed to spawn signal-cli at '{self.cli_path}'. Is it installed and in PATH? ({e})"

        threading.Thread(target=self._read_stdout, args=(self.process, on_line), daemon=True).start()
        threading.Thread(target=self._read_stderr, args=(self.process,), daemon=True).start()

        # Catch immediate failures such as an unregistered account
        deadline = time.time() + STARTUP_WAIT_SECONDS
        while time.time() < deadline:
            if self.process.poll() is not None:
                detail = "; ".join(self.stderr_tail) or "no output captured"
                return False, f"signal-cli exited with code {self.process.returncode}: {detail}"
            time.sleep(0.1)

        return True, "signal-cli started successfully"

    def _read_stdout(self, process: subprocess.Popen, on_line: Callable[[str], None]) -> None:
        for line in iter(process.stdout.readline, ''):
            line = line.strip()
            if line:
                on_line(line)
        logger.info("signal-cli stdout closed")

    def _read_stderr(self, process: subprocess.Popen) -> None:
        for line in iter(process.stderr.readline, ''):
            line = line.rstrip()
            if line:
                self.stderr_tail.append(line)
                logger.debug(f"signal-cli: {line}")

    def write_line(self, line: str) -> None:
        """Write one request line to signal-cli's stdin.

        Raises:
            RuntimeError: If the process is not running
            OSError: If the pipe is broken
        """
        if self.process is None or self.process.stdin is None:
            raise RuntimeError("signal-cli is not running")
        with self._write_lock:
            self.process.stdin.write(line + "\n")
            self.process.stdin.flush()

    def is_running(self) -> bool:
        if self.process is None or self.process.poll() is not None:
            return False
        try:
            return psutil.Process(self.process.pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def stop(self) -> None:
        """Terminate signal-cli and any children it spawned."""
        if self.process is None:
            return
        process, self.process = self.process, None
        pid = process.pid
        try:
            try:
                os.killpg(os.getpgid(pid), signal.SIGTERM)
            except (ProcessLookupError, PermissionError):
                process.terminate()

            try:
                process.wait(timeout=STOP_TIMEOUT_SECONDS)
                logger.info("signal-cli terminated gracefully")
            except subprocess.TimeoutExpired:
                logger.warning("signal-cli did not exit in time; sending SIGKILL")
                try:
                    for child in psutil.Process(pid).children(recursive=True):
                        child.kill()
                except psutil.Error:
                    pass
                process.kill()
        except OSError as e:
            logger.error(f"Error stopping signal-cli: {e}")


class SignalClient:
    """JSON-RPC client over the signal-cli stdio channel.

    ``issue`` is the writer side and ``on_line`` the reader side. Every
    line read is classified through the correlator, normalized, and the
    resulting event passed to ``sink``.
    """

    def __init__(self, write_line: Callable[[str], None], sink: Callable[[DomainEvent], None]):
        self.correlator = RpcCorrelator()
        self._write_line = write_line
        self._sink = sink

    def issue(self, method: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Write a request and return its id.

        Raises:
            RuntimeError: If the backend is not running
            OSError: If the request could not be written
        """
        request_id = new_request_id()
        self.correlator.register(request_id, method)
        try:
            self._write_line(JsonRpcRequest(method=method, id=request_id, params=params).to_line())
        except (OSError, RuntimeError):
            self.correlator.discard(request_id)
            raise
        return request_id

    def on_line(self, line: str) -> None:
        try:
            response = parse_line(line)
        except WireError as e:
            self._sink(Error(str(e)))
            return
        method = self.correlator.resolve(response.id)
        event = normalize(response, method)
        if event is not None:
            self._sink(event)


class _Command:
    def __init__(self, fn: Callable[[Session], Any]):
        self.fn = fn
        self.future: Future = Future()


class EventPump:
    """Single thread that applies events and commands to a Session in order."""

    def __init__(self, session: Session):
        self.session = session
        self.queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def post(self, event: DomainEvent) -> None:
        self.queue.put(event)

    def submit(self, fn: Callable[[Session], Any]) -> Future:
        """Queue ``fn(session)`` to run on the pump thread."""
        command = _Command(fn)
        self.queue.put(command)
        return command.future

    def call(self, fn: Callable[[Session], Any], timeout: float = CALL_TIMEOUT_SECONDS) -> Any:
        """Run ``fn(session)`` on the pump thread and wait for its result."""
        return self.submit(fn).result(timeout=timeout)

    def start(self) -> None:
        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(target=self.run, name="signal-event-pump", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        if self._thread is not None:
            self.queue.put(None)
            self._thread.join(timeout=STOP_TIMEOUT_SECONDS)
            self._thread = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        while True:
            try:
                item = self.queue.get(timeout=PUMP_IDLE_SECONDS)
            except queue.Empty:
                self.session.cleanup_typing()
                continue
            if item is None:
                break
            self.process_item(item)

    def process_item(self, item: Any) -> None:
        if isinstance(item, _Command):
            if not item.future.set_running_or_notify_cancel():
                return
            try:
                item.future.set_result(item.fn(self.session))
            except Exception as e:
                item.future.set_exception(e)
            return
        try:
            self.session.handle_event(item)
        except Exception:
            logger.exception(f"Failed to apply event {item!r}")


class SignalBackend:
    """Wires the process, client, pump and session together."""

    def __init__(self, config: AppConfig, process: Optional[SignalCliProcess] = None):
        self.config = config
        self.db = None
        try:
            self.db = create_database_adapter(config)
        except ValueError as e:
            logger.warning(f"Running without persistence: {e}")
        self.session = Session(
            account=config.account,
            db=self.db,
            history_limit=config.history_limit,
            notify_direct=config.notify_direct,
            notify_group=config.notify_group,
        )
        self.pump = EventPump(self.session)
        self.process = process or SignalCliProcess(config.signal_cli_path, config.account)
        self.client = SignalClient(self.process.write_line, self.pump.post)

    def start(self) -> Tuple[bool, str]:
        self.session.load_from_db()
        self.pump.start()
        ok, message = self.process.start(self.client.on_line)
        if not ok:
            return ok, message
        self.pump.submit(lambda session: session.request_sync(self.client.issue))
        return True, message

    def stop(self) -> None:
        self.process.stop()
        self.pump.stop()
        if self.db is not None:
            self.db.close()
            self.db = None

    def is_running(self) -> bool:
        return self.process.is_running() and self.pump.is_alive


# Backend Management Functions

_backend: Optional[SignalBackend] = None


def get_backend() -> Optional[SignalBackend]:
    return _backend


def start_backend(config: Optional[AppConfig] = None) -> Tuple[bool, str]:
    """Start signal-cli and the event pump if they are not running."""
    global _backend
    if _backend is not None and _backend.is_running():
        return True, "signal-cli is already running"
    if _backend is not None:
        _backend.stop()
    try:
        _backend = SignalBackend(config or AppConfig.from_environment())
    except ValueError as e:
        return False, f"Invalid configuration: {e}"
    return _backend.start()


def stop_backend() -> bool:
    global _backend
    if _backend is not None:
        _backend.stop()
        _backend = None
    return True


def is_backend_running() -> bool:
    backend = get_backend()
    return backend is not None and backend.is_running()


def ensure_backend_ready() -> Tuple[bool, str]:
    """Make sure signal-cli is running, starting it if needed."""
    if is_backend_running():
        return True, "signal-cli is ready"
    return start_backend()


def get_backend_status() -> BackendStatus:
    backend = get_backend()
    if backend is None:
        return BackendStatus(is_running=False, account="", error_message="signal-cli has not been started")
    running = backend.is_running()
    if backend.pump.is_alive:
        return backend.pump.call(lambda session: session.status(running))
    return backend.session.status(running)


def list_conversations() -> List[Conversation]:
    """Snapshot of all conversations, without their messages."""
    backend = get_backend()
    if backend is None:
        return []

    def snapshot(session: Session) -> List[Conversation]:
        result = []
        for cid in session.directory.order:
            conv = session.conversations[cid]
            result.append(Conversation(
                id=conv.id,
                display_name=conv.display_name,
                is_group=conv.is_group,
                unread_count=conv.unread_count,
            ))
        return result

    return backend.pump.call(snapshot)


def list_messages(conversation_id: str, limit: int = 50) -> List[Message]:
    """Most recent messages of a conversation, oldest first."""
    backend = get_backend()
    if backend is None:
        return []

    def snapshot(session: Session) -> List[Message]:
        conversation = session.conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)
        messages = copy.deepcopy(conversation.messages[-limit:] if limit > 0 else [])
        for message in messages:
            for reaction in message.reactions:
                reaction.sender_display = session.sender_name(reaction.sender)
        return messages

    return backend.pump.call(snapshot)


def send_message(conversation_id: str, text: str) -> Tuple[bool, str]:
    """Send a text message to a known conversation."""
    if not conversation_id:
        return False, "Conversation id must be provided"
    if not text:
        return False, "Message must not be empty"
    backend = get_backend()
    if backend is None:
        return False, "signal-cli has not been started"
    try:
        message = backend.pump.call(lambda session: session.send_text(conversation_id, text, backend.client.issue))
    except KeyError:
        return False, f"Unknown conversation: {conversation_id}"
    if message.status == MessageStatus.FAILED:
        return False, "Failed to write the send request to signal-cli"
    return True, f"Message queued with timestamp {message.timestamp_ms}"


def mark_conversation_read(conversation_id: str) -> Tuple[bool, str]:
    backend = get_backend()
    if backend is None:
        return False, "signal-cli has not been started"

    def mark(session: Session) -> bool:
        if conversation_id not in session.conversations:
            return False
        session.mark_read(conversation_id)
        return True

    if not backend.pump.call(mark):
        return False, f"Unknown conversation: {conversation_id}"
    return True, f"Marked {conversation_id} as read"


def send_reaction(
    conversation_id: str,
    emoji: str,
    target_author: str,
    target_timestamp_ms: int,
    remove: bool = False,
) -> Tuple[bool, str]:
    """React to a message, or withdraw our reaction."""
    if not emoji:
        return False, "Emoji must be provided"
    backend = get_backend()
    if backend is None:
        return False, "signal-cli has not been started"
    try:
        backend.pump.call(lambda session: session.send_reaction(
            conversation_id, emoji, target_author, target_timestamp_ms, backend.client.issue, is_remove=remove,
        ))
    except KeyError:
        return False, f"Unknown conversation: {conversation_id}"
    except (OSError, RuntimeError) as e:
        logger.error(f"Failed to send reaction to {conversation_id}: {e}")
        return False, f"Failed to write the reaction request to signal-cli: {e}"
    if remove:
        return True, f"Removed reaction from message {target_timestamp_ms}"
    return True, f"Reacted {emoji} to message {target_timestamp_ms}"


def mute_conversation(conversation_id: str, muted: bool = True) -> Tuple[bool, str]:
    backend = get_backend()
    if backend is None:
        return False, "signal-cli has not been started"

    def mute(session: Session) -> bool:
        if conversation_id not in session.conversations:
            return False
        session.set_muted(conversation_id, muted)
        return True

    if not backend.pump.call(mute):
        return False, f"Unknown conversation: {conversation_id}"
    return True, f"{'Muted' if muted else 'Unmuted'} {conversation_id}"


def check_new_messages() -> Tuple[bool, List[Conversation]]:
    """Report whether a notification is pending and which conversations have unread messages.

    Clears the pending notification. Muted conversations are left out.
    """
    backend = get_backend()
    if backend is None:
        return False, []

    def check(session: Session) -> Tuple[bool, List[Conversation]]:
        unread = [
            Conversation(
                id=conv.id,
                display_name=conv.display_name,
                is_group=conv.is_group,
                unread_count=conv.unread_count,
            )
            for conv in (session.conversations[cid] for cid in session.directory.order)
            if conv.unread_count and conv.id not in session.muted
        ]
        return session.take_bell(), unread

    return backend.pump.call(check)
