from typing import List, Dict, Any
import functools
import logging
import os
import sys
from fastmcp import FastMCP

from models import Conversation, Message
from signal_cli import (
    list_conversations as signal_list_conversations,
    list_messages as signal_list_messages,
    send_message as signal_send_message,
    mark_conversation_read as signal_mark_conversation_read,
    send_reaction as signal_send_reaction,
    mute_conversation as signal_mute_conversation,
    check_new_messages as signal_check_new_messages,
    ensure_backend_ready,
    get_backend_status,
    start_backend,
)

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("signal")


def conversation_to_dict(conversation: Conversation) -> Dict[str, Any]:
    return {
        "id": conversation.id,
        "name": conversation.display_name,
        "is_group": conversation.is_group,
        "unread_count": conversation.unread_count,
    }


def message_to_dict(message: Message) -> Dict[str, Any]:
    result = {
        "sender": message.sender_display,
        "timestamp": message.timestamp.isoformat(),
        "timestamp_ms": message.timestamp_ms,
        "body": message.body,
        "is_outgoing": message.is_outgoing,
        "reactions": [{"emoji": r.emoji, "sender": r.sender_display or r.sender} for r in message.reactions],
    }
    if message.is_system:
        result["is_system"] = True
    if message.status is not None:
        result["status"] = message.status.name.lower()
    return result


def with_backend_check(func):
    """Decorator to ensure signal-cli is running before executing MCP tools."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        success, message = ensure_backend_ready()

        if not success:
            return {
                "error": "Signal Backend Error",
                "message": message,
                "troubleshooting": [
                    "• Ensure signal-cli is installed and on PATH (or set SIGNAL_CLI_PATH)",
                    "• Check that SIGNAL_ACCOUNT is registered or linked with signal-cli",
                    "• Try restarting the MCP server"
                ]
            }

        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.exception(f"Tool {func.__name__} failed")
            return {
                "error": "Tool Execution Error",
                "message": str(e),
                "suggestion": "Please try again or check the backend status"
            }

    return wrapper


@mcp.tool()
@with_backend_check
def list_conversations() -> List[Dict[str, Any]]:
    """List Signal conversations, 1:1 and groups, with their unread counts."""
    return [conversation_to_dict(c) for c in signal_list_conversations()]


@mcp.tool()
@with_backend_check
def list_messages(conversation_id: str, limit: int = 50) -> Dict[str, Any]:
    """Get the most recent messages of a Signal conversation, oldest first.

    Args:
        conversation_id: Phone number for 1:1 conversations or group id for groups
        limit: Maximum number of messages to return (default 50)
    """
    try:
        messages = signal_list_messages(conversation_id, limit)
    except KeyError:
        return {"error": "Unknown Conversation", "message": f"No conversation with id {conversation_id}"}
    return {
        "conversation_id": conversation_id,
        "messages": [message_to_dict(m) for m in messages],
    }


@mcp.tool()
@with_backend_check
def send_message(conversation_id: str, message: str) -> Dict[str, Any]:
    """Send a Signal text message to a known conversation.

    Args:
        conversation_id: Phone number for 1:1 conversations or group id for groups
        message: The message text to send

    Returns:
        A dictionary containing success status and a status message
    """
    success, status_message = signal_send_message(conversation_id, message)
    return {
        "success": success,
        "message": status_message
    }


@mcp.tool()
@with_backend_check
def mark_conversation_read(conversation_id: str) -> Dict[str, Any]:
    """Mark every message in a Signal conversation as read.

    Args:
        conversation_id: Phone number for 1:1 conversations or group id for groups
    """
    success, status_message = signal_mark_conversation_read(conversation_id)
    return {
        "success": success,
        "message": status_message
    }


@mcp.tool()
@with_backend_check
def send_reaction(
    conversation_id: str,
    emoji: str,
    target_author: str,
    target_timestamp_ms: int,
    remove: bool = False
) -> Dict[str, Any]:
    """React to a message in a Signal conversation, or withdraw the reaction.

    Args:
        conversation_id: Phone number for 1:1 conversations or group id for groups
        emoji: The reaction emoji
        target_author: Phone number of the reacted-to message's author (our
            own account for messages we sent)
        target_timestamp_ms: timestamp_ms of the reacted-to message, as
            returned by list_messages
        remove: Withdraw our reaction instead of setting it
    """
    success, status_message = signal_send_reaction(
        conversation_id, emoji, target_author, target_timestamp_ms, remove
    )
    return {
        "success": success,
        "message": status_message
    }


@mcp.tool()
@with_backend_check
def mute_conversation(conversation_id: str, muted: bool = True) -> Dict[str, Any]:
    """Mute or unmute notifications for a Signal conversation.

    Args:
        conversation_id: Phone number for 1:1 conversations or group id for groups
        muted: True to mute, False to unmute
    """
    success, status_message = signal_mute_conversation(conversation_id, muted)
    return {
        "success": success,
        "message": status_message
    }


@mcp.tool()
@with_backend_check
def check_new_messages() -> Dict[str, Any]:
    """Check whether new messages arrived since the last check.

    Returns:
        A dictionary with a has_new_messages flag and the unmuted
        conversations that still have unread messages
    """
    has_new, conversations = signal_check_new_messages()
    return {
        "has_new_messages": has_new,
        "unread_conversations": [conversation_to_dict(c) for c in conversations],
    }


@mcp.tool()
def check_backend_status() -> Dict[str, Any]:
    """Check the current status of the signal-cli backend.

    Returns:
        A dictionary containing whether signal-cli runs, the account, and
        counts of conversations, pending sends and buffered receipts
    """
    status = get_backend_status()

    return {
        "backend_running": status.is_running,
        "account": status.account,
        "status": "Ready" if status.is_running else "Not Ready",
        "conversation_count": status.conversation_count,
        "pending_sends": status.pending_sends,
        "pending_receipts": status.pending_receipts,
        "error_message": status.error_message,
    }


def configure_logging() -> None:
    # stdout belongs to the MCP stdio transport
    level = os.environ.get('SIGNAL_MCP_LOG_LEVEL', 'INFO').upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


if __name__ == "__main__":
    configure_logging()

    # Get transport mode from environment variable
    transport_mode = os.environ.get('MCP_TRANSPORT', 'stdio')

    valid_transports = ['stdio', 'sse']
    if transport_mode not in valid_transports:
        logger.warning(f"Invalid MCP_TRANSPORT '{transport_mode}', defaulting to 'stdio'")
        transport_mode = 'stdio'

    logger.info(f"Starting Signal MCP server with {transport_mode} transport...")

    success, message = start_backend()
    if not success:
        logger.warning(f"signal-cli initialization failed: {message}")

    if transport_mode == 'sse':
        port = int(os.environ.get('MCP_PORT', 3000))
        logger.info(f"SSE transport listening on port {port}")
        mcp.run(transport=transport_mode, host="127.0.0.1", port=port)
    else:
        mcp.run(transport=transport_mode)
