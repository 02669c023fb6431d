"""Typed JSON envelopes exchanged over the generation channel.

Client -> server: query {id, question}, cancel {id}
Server -> client: partial {id, text}, final {id, text}, error {id, error}, cancelled {id}
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class MessageType(str, Enum):
    QUERY = "query"          # Start a generation
    CANCEL = "cancel"        # Abort a generation in progress
    PARTIAL = "partial"      # Incremental text fragment
    FINAL = "final"          # Terminal answer text
    ERROR = "error"          # Terminal failure, human-readable message
    CANCELLED = "cancelled"  # Cancellation acknowledged


TERMINAL_TYPES = frozenset({MessageType.FINAL, MessageType.ERROR, MessageType.CANCELLED})


class MalformedMessage(ValueError):
    """Raised when a frame cannot be decoded into a ChannelMessage."""


@dataclass
class ChannelMessage:
    type: MessageType
    request_id: Optional[str] = None
    question: Optional[str] = None
    text: Optional[str] = None
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    def encode(self) -> str:
        """Serialize to a JSON frame. Absent fields are omitted; id is always present."""
        data = {"type": self.type.value, "id": self.request_id}
        for key in ("question", "text", "error"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return json.dumps(data)

    @classmethod
    def decode(cls, raw) -> "ChannelMessage":
        """Parse a JSON frame. Raises MalformedMessage for anything unusable."""
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedMessage(f"Frame is not UTF-8: {e}") from e
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise MalformedMessage(f"Invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedMessage("Frame is not a JSON object")

        try:
            msg_type = MessageType(data.get("type"))
        except ValueError:
            raise MalformedMessage(f"Unknown message type: {data.get('type')!r}") from None

        fields = {}
        for key, attr in (("id", "request_id"), ("question", "question"),
                          ("text", "text"), ("error", "error")):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                value = str(value)
            fields[attr] = value
        return cls(type=msg_type, **fields)


def query(request_id: str, question: str) -> ChannelMessage:
    return ChannelMessage(MessageType.QUERY, request_id, question=question)


def cancel(request_id: str) -> ChannelMessage:
    return ChannelMessage(MessageType.CANCEL, request_id)
