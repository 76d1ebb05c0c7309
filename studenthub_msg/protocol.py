"""
Relay wire protocol.

Every frame is a JSON object with a ``type`` tag. Each tag maps to exactly one
envelope class; parsing rejects unknown tags and missing fields with
InvalidPayload so both ends can log them instead of guessing.

Client -> server: send_message, ping
Server -> client: new_message, message_sent, pong, error
"""

import json
from dataclasses import dataclass
from typing import Union

from .errors import InvalidPayload
from .store import Message


# === CLIENT -> SERVER ===

@dataclass(frozen=True)
class SendMessage:
    type = "send_message"
    conversation_id: str
    sender_id: str
    content: str
    message_type: str = "text"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "content": self.content,
            "messageType": self.message_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SendMessage":
        for key in ("conversationId", "senderId"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise InvalidPayload(f"Missing '{key}'")
        if not isinstance(data.get("content"), str):
            raise InvalidPayload("Missing 'content'")
        message_type = data.get("messageType") or "text"
        if not isinstance(message_type, str):
            raise InvalidPayload("'messageType' must be a string")
        return cls(
            conversation_id=data["conversationId"],
            sender_id=data["senderId"],
            content=data["content"],
            message_type=message_type,
        )


@dataclass(frozen=True)
class Ping:
    type = "ping"

    def to_dict(self) -> dict:
        return {"type": self.type}

    @classmethod
    def from_dict(cls, data: dict) -> "Ping":
        return cls()


# === SERVER -> CLIENT ===

@dataclass(frozen=True)
class NewMessage:
    """Delivery of a message to its recipient."""
    type = "new_message"
    message: Message

    def to_dict(self) -> dict:
        return {"type": self.type, "message": self.message.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "NewMessage":
        return cls(message=_message_field(data))


@dataclass(frozen=True)
class MessageSent:
    """Acknowledgement to the sender that the message was stored."""
    type = "message_sent"
    message: Message

    def to_dict(self) -> dict:
        return {"type": self.type, "message": self.message.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "MessageSent":
        return cls(message=_message_field(data))


@dataclass(frozen=True)
class Pong:
    type = "pong"

    def to_dict(self) -> dict:
        return {"type": self.type}

    @classmethod
    def from_dict(cls, data: dict) -> "Pong":
        return cls()


@dataclass(frozen=True)
class ErrorEnvelope:
    """Structured failure reported back to the sender of a bad envelope."""
    type = "error"
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"type": self.type, "code": self.code, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorEnvelope":
        return cls(code=str(data.get("code", "error")), message=str(data.get("message", "")))


Inbound = Union[SendMessage, Ping]
Outbound = Union[NewMessage, MessageSent, Pong, ErrorEnvelope]

INBOUND_TYPES = {cls.type: cls for cls in (SendMessage, Ping)}
OUTBOUND_TYPES = {cls.type: cls for cls in (NewMessage, MessageSent, Pong, ErrorEnvelope)}


def _message_field(data: dict) -> Message:
    message = data.get("message")
    if not isinstance(message, dict):
        raise InvalidPayload("Missing 'message'")
    return Message.from_dict(message)


def decode(raw) -> dict:
    """Decode a text frame into a JSON object."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidPayload("Frame is not UTF-8") from exc
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidPayload("Invalid JSON") from exc
    if not isinstance(data, dict):
        raise InvalidPayload("Envelope must be a JSON object")
    return data


def _parse(raw, types: dict):
    data = decode(raw)
    msg_type = data.get("type")
    cls = types.get(msg_type)
    if cls is None:
        raise InvalidPayload(f"Unknown envelope type: {msg_type!r}")
    return cls.from_dict(data)


def parse_inbound(raw) -> Inbound:
    """Parse a client -> server frame."""
    return _parse(raw, INBOUND_TYPES)


def parse_outbound(raw) -> Outbound:
    """Parse a server -> client frame."""
    return _parse(raw, OUTBOUND_TYPES)


def encode(envelope) -> str:
    return json.dumps(envelope.to_dict())
