"""Typed representations of the JSON-RPC frames exchanged with signal-cli.

signal-cli in ``jsonRpc`` mode writes one JSON object per line. A line is
either a reply to a request we issued (``id`` plus ``result`` or ``error``)
or a notification (``method`` plus ``params``). Notifications of method
``receive`` carry an ``envelope`` whose shape is classified here into a
small tagged union so the normalizer can dispatch on type instead of
probing fields.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

# Envelope keys that only describe routing and never carry content
ROUTING_FIELDS = frozenset({
    "source",
    "sourceNumber",
    "sourceUuid",
    "sourceName",
    "sourceDevice",
    "timestamp",
    "serverReceivedTimestamp",
    "serverDeliveredTimestamp",
    "relay",
    "urgent",
})


class WireError(ValueError):
    """Raised when a line from the backend is not a JSON-RPC object."""


@dataclass
class JsonRpcRequest:
    """JSON-RPC request written to signal-cli's stdin."""
    method: str
    id: str
    params: Optional[Dict[str, Any]] = None

    def to_line(self) -> str:
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "method": self.method, "id": self.id}
        if self.params is not None:
            payload["params"] = self.params
        return json.dumps(payload, ensure_ascii=False)


@dataclass
class JsonRpcError:
    code: int
    message: str


@dataclass
class JsonRpcResponse:
    """One frame read from signal-cli's stdout.

    Attributes:
        id: Request id for replies, None for notifications
        result: Reply payload on success
        error: Reply error on protocol-level failure
        method: Notification method name
        params: Notification parameters
    """
    id: Optional[str] = None
    result: Any = None
    error: Optional[JsonRpcError] = None
    method: Optional[str] = None
    params: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JsonRpcResponse":
        error = None
        raw_error = data.get("error")
        if isinstance(raw_error, dict):
            try:
                code = int(raw_error.get("code", 0))
            except (TypeError, ValueError):
                code = 0
            error = JsonRpcError(code=code, message=str(raw_error.get("message", "")))
        elif raw_error is not None:
            error = JsonRpcError(code=0, message=str(raw_error))

        raw_id = data.get("id")
        params = data.get("params")
        return cls(
            id=str(raw_id) if raw_id is not None else None,
            result=data.get("result"),
            error=error,
            method=data.get("method") if isinstance(data.get("method"), str) else None,
            params=params if isinstance(params, dict) else None,
        )


def parse_line(line: str) -> JsonRpcResponse:
    """Parse one line of backend output.

    Args:
        line: Raw text line, without the trailing newline

    Returns:
        The parsed frame

    Raises:
        WireError: If the line is not valid JSON or not a JSON object
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise WireError(f"JSON parse error: {e}") from e
    if not isinstance(data, dict):
        raise WireError(f"JSON parse error: expected object, got {type(data).__name__}")
    return JsonRpcResponse.from_dict(data)


# --- Envelope payload shapes ---

@dataclass
class TypingPayload:
    sender: str
    sender_name: Optional[str]
    action: str
    group_id: Optional[str] = None


@dataclass
class ReceiptPayload:
    sender: str
    receipt_kind: Optional[str]
    timestamps: List[int] = field(default_factory=list)


@dataclass
class SyncSentPayload:
    """A copy of a message the account sent from another device."""
    source: str
    sent: Dict[str, Any]


@dataclass
class DataPayload:
    source: str
    source_name: Optional[str]
    data: Dict[str, Any]


@dataclass
class RoutingOnlyPayload:
    """Nothing to act on: routing metadata or content we knowingly skip."""


@dataclass
class UnknownPayload:
    fields: List[str]


EnvelopePayload = Union[
    TypingPayload,
    ReceiptPayload,
    SyncSentPayload,
    DataPayload,
    RoutingOnlyPayload,
    UnknownPayload,
]


def envelope_source(envelope: Dict[str, Any]) -> Optional[str]:
    """Best identifier for whoever produced the envelope."""
    for key in ("sourceNumber", "source", "sourceUuid"):
        value = envelope.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _receipt_kind(receipt: Dict[str, Any]) -> Optional[str]:
    if receipt.get("isViewed"):
        return "viewed"
    if receipt.get("isRead"):
        return "read"
    if receipt.get("isDelivery"):
        return "delivery"
    legacy = receipt.get("type")
    if isinstance(legacy, str) and legacy:
        return legacy.lower()
    return None


def _int_list(values: Any) -> List[int]:
    result = []
    if isinstance(values, list):
        for v in values:
            if isinstance(v, bool):
                continue
            if isinstance(v, (int, float)):
                result.append(int(v))
    return result


def classify_envelope(envelope: Dict[str, Any]) -> EnvelopePayload:
    """Map a ``receive`` envelope to one of the known payload shapes.

    The checks run in a fixed order: typing, receipt, sync, data. An envelope
    holding nothing beyond routing metadata is RoutingOnlyPayload; anything
    else unrecognized is UnknownPayload so it can be surfaced for diagnostics.
    """
    source = envelope_source(envelope) or ""
    source_name = envelope.get("sourceName") if isinstance(envelope.get("sourceName"), str) else None

    typing = envelope.get("typingMessage")
    if isinstance(typing, dict):
        group_id = typing.get("groupId") if isinstance(typing.get("groupId"), str) else None
        return TypingPayload(
            sender=source,
            sender_name=source_name or None,
            action=str(typing.get("action", "")),
            group_id=group_id,
        )

    receipt = envelope.get("receiptMessage")
    if isinstance(receipt, dict):
        timestamps = _int_list(receipt.get("timestamps"))
        if not timestamps and isinstance(envelope.get("timestamp"), int):
            timestamps = [envelope["timestamp"]]
        return ReceiptPayload(sender=source, receipt_kind=_receipt_kind(receipt), timestamps=timestamps)

    sync = envelope.get("syncMessage")
    if isinstance(sync, dict):
        sent = sync.get("sentMessage")
        if isinstance(sent, dict):
            return SyncSentPayload(source=source, sent=sent)
        # read markers, contact syncs and the like
        return RoutingOnlyPayload()

    data = envelope.get("dataMessage")
    if isinstance(data, dict):
        return DataPayload(source=source, source_name=source_name or None, data=data)

    extra = sorted(k for k, v in envelope.items() if k not in ROUTING_FIELDS and v is not None)
    if not extra:
        return RoutingOnlyPayload()
    return UnknownPayload(fields=extra)
