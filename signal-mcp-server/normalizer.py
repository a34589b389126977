"""Reduce signal-cli frames to domain events.

``normalize`` takes one parsed frame and the method the correlator resolved
for it (None for notifications) and returns at most one DomainEvent.
Nothing in here raises on malformed wire data: problems become ``Error``
events or are dropped.
"""

import logging
from typing import Any, Dict, List, Optional

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
from models import Attachment, Contact, Group
from wire import (
    DataPayload,
    JsonRpcResponse,
    ReceiptPayload,
    RoutingOnlyPayload,
    SyncSentPayload,
    TypingPayload,
    UnknownPayload,
    classify_envelope,
)

logger = logging.getLogger(__name__)

RECEIPT_KINDS = ("delivery", "read", "viewed")


def _str(value: Any) -> Optional[str]:
    """Return value if it is a non-empty string."""
    if isinstance(value, str) and value:
        return value
    return None


def _int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def parse_attachment(value: Any) -> Optional[Attachment]:
    """Parse one attachment object; entries without an id are skipped."""
    if not isinstance(value, dict):
        return None
    attachment_id = _str(value.get("id"))
    if attachment_id is None:
        return None
    return Attachment(
        id=attachment_id,
        content_type=_str(value.get("contentType")) or "application/octet-stream",
        filename=_str(value.get("filename")),
        local_path=_str(value.get("file")),
    )


def parse_contacts(result: Any) -> List[Contact]:
    """Parse a listContacts result.

    The display name is the first non-empty of profileName, contactName
    and name. Entries without a number are dropped.
    """
    contacts = []
    if not isinstance(result, list):
        return contacts
    for entry in result:
        if not isinstance(entry, dict):
            continue
        number = _str(entry.get("number"))
        if number is None:
            continue
        name = None
        for key in ("profileName", "contactName", "name"):
            name = _str(entry.get(key))
            if name:
                break
        contacts.append(Contact(number=number, name=name))
    return contacts


def parse_groups(result: Any) -> List[Group]:
    """Parse a listGroups result. Entries without an id are dropped."""
    groups = []
    if not isinstance(result, list):
        return groups
    for entry in result:
        if not isinstance(entry, dict):
            continue
        group_id = _str(entry.get("id"))
        if group_id is None:
            continue
        members = [m for m in entry.get("members") or [] if isinstance(m, str)]
        groups.append(Group(id=group_id, name=_str(entry.get("name")) or "", members=members))
    return groups


def _normalize_send_reply(response: JsonRpcResponse) -> DomainEvent:
    rpc_id = response.id or ""
    if response.error is not None:
        return SendFailed(rpc_id=rpc_id, reason=response.error.message)

    result = response.result if isinstance(response.result, dict) else {}
    results = result.get("results")
    if isinstance(results, list) and results:
        types = [r.get("type") for r in results if isinstance(r, dict)]
        if "SUCCESS" not in types:
            reason = ", ".join(str(t) for t in types if t) or "no successful recipient"
            return SendFailed(rpc_id=rpc_id, reason=reason)

    return SendConfirmed(rpc_id=rpc_id, server_timestamp_ms=_int(result.get("timestamp")))


def _normalize_reply(response: JsonRpcResponse, method: str) -> Optional[DomainEvent]:
    if method == "send":
        return _normalize_send_reply(response)

    if response.error is not None:
        return Error(f"{method} failed: {response.error.message}")

    if method == "listContacts":
        return ContactList(contacts=parse_contacts(response.result))
    if method == "listGroups":
        return GroupList(groups=parse_groups(response.result))

    # sendSyncRequest, sendReaction and friends carry nothing we track
    return None


def _group_info(message: Dict[str, Any]):
    info = message.get("groupInfo")
    if not isinstance(info, dict):
        return None, None
    return _str(info.get("groupId")), _str(info.get("groupName"))


def _reaction_event(
    reaction: Dict[str, Any],
    conversation_id: Optional[str],
    sender: str,
    sender_name: Optional[str],
) -> Optional[DomainEvent]:
    emoji = _str(reaction.get("emoji"))
    target_author = _str(reaction.get("targetAuthorNumber")) or _str(reaction.get("targetAuthor"))
    target_ts = _int(reaction.get("targetSentTimestamp"))
    if conversation_id is None or emoji is None or target_author is None or target_ts is None:
        logger.debug(f"Dropping incomplete reaction: {reaction}")
        return None
    return ReactionReceived(
        conversation_id=conversation_id,
        emoji=emoji,
        sender=sender,
        sender_name=sender_name,
        target_author=target_author,
        target_timestamp_ms=target_ts,
        is_remove=bool(reaction.get("isRemove")),
    )


def _attachments(message: Dict[str, Any]) -> List[Attachment]:
    raw = message.get("attachments")
    if not isinstance(raw, list):
        return []
    return [a for a in (parse_attachment(v) for v in raw) if a is not None]


def _normalize_data(payload: DataPayload, envelope: Dict[str, Any]) -> Optional[DomainEvent]:
    data = payload.data
    group_id, group_name = _group_info(data)

    reaction = data.get("reaction")
    if isinstance(reaction, dict):
        return _reaction_event(reaction, group_id or payload.source, payload.source, payload.source_name)

    timestamp_ms = _int(data.get("timestamp")) or _int(envelope.get("timestamp")) or 0
    return MessageReceived(
        source=payload.source,
        source_name=payload.source_name,
        timestamp_ms=timestamp_ms,
        body=_str(data.get("message")),
        attachments=_attachments(data),
        group_id=group_id,
        group_name=group_name,
        is_outgoing=False,
    )


def _normalize_sync(payload: SyncSentPayload, envelope: Dict[str, Any]) -> Optional[DomainEvent]:
    sent = payload.sent
    group_id, group_name = _group_info(sent)
    destination = _str(sent.get("destinationNumber")) or _str(sent.get("destination"))

    reaction = sent.get("reaction")
    if isinstance(reaction, dict):
        return _reaction_event(reaction, group_id or destination, payload.source, None)

    timestamp_ms = _int(sent.get("timestamp")) or _int(envelope.get("timestamp")) or 0
    return MessageReceived(
        source=payload.source,
        source_name=None,
        timestamp_ms=timestamp_ms,
        body=_str(sent.get("message")),
        attachments=_attachments(sent),
        group_id=group_id,
        group_name=group_name,
        is_outgoing=True,
        destination=destination,
    )


def _normalize_envelope(envelope: Dict[str, Any]) -> Optional[DomainEvent]:
    payload = classify_envelope(envelope)

    if isinstance(payload, RoutingOnlyPayload):
        return None

    if isinstance(payload, UnknownPayload):
        return Error(f"Unrecognized envelope fields: {', '.join(payload.fields)}")

    if isinstance(payload, SyncSentPayload):
        return _normalize_sync(payload, envelope)

    if isinstance(payload, TypingPayload):
        if not payload.sender:
            return Error("Typing indicator without source")
        return TypingIndicator(
            sender=payload.sender,
            sender_name=payload.sender_name,
            is_typing=payload.action.upper() == "STARTED",
        )

    if isinstance(payload, ReceiptPayload):
        if not payload.sender:
            return Error("Receipt without source")
        if payload.receipt_kind not in RECEIPT_KINDS or not payload.timestamps:
            logger.debug(f"Ignoring receipt of kind {payload.receipt_kind}")
            return None
        return ReceiptReceived(
            sender=payload.sender,
            receipt_kind=payload.receipt_kind,
            timestamps=payload.timestamps,
        )

    if isinstance(payload, DataPayload):
        if not payload.source:
            return Error("Data message without source")
        return _normalize_data(payload, envelope)

    return Error(f"Unhandled envelope payload: {type(payload).__name__}")


def normalize(response: JsonRpcResponse, resolved_method: Optional[str]) -> Optional[DomainEvent]:
    """Turn one frame into at most one domain event.

    Args:
        response: Parsed frame
        resolved_method: Method the correlator matched for this frame's id,
            None when the frame is a notification

    Returns:
        The domain event, or None when the frame carries nothing to act on
    """
    if resolved_method is not None:
        return _normalize_reply(response, resolved_method)

    if response.error is not None:
        return Error(f"Backend error {response.error.code}: {response.error.message}")

    if response.method != "receive" or response.params is None:
        return None

    envelope = response.params.get("envelope")
    if not isinstance(envelope, dict):
        return Error("receive notification without envelope")
    return _normalize_envelope(envelope)
