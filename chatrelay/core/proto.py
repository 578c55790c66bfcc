from __future__ import annotations

import base64
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator


# ---------------------------------------------------------------------------
# Event names carried in the "event" field of every post-handshake frame
# ---------------------------------------------------------------------------

EVENT_CONNECT = "connect"
EVENT_MESSAGE = "message"
EVENT_SENT = "message:sent"
EVENT_ERROR = "message:error"

Identity = Union[StrictStr, StrictInt]


def identity_key(identity: Identity) -> str:
    """Registry key for an identity; ``5`` and ``"5"`` share a delivery group."""

    return str(identity)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(moment: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""

    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_ts(value: str) -> datetime:
    """Parse a stored timestamp. Raises ValueError on anything unparseable."""

    if not isinstance(value, str):
        raise ValueError("timestamp must be a string")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_message_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """A routed message, exactly as persisted and delivered."""

    id: str
    from_: Identity = Field(alias="from")
    to: Identity
    content: Any
    ts: str

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @property
    def timestamp(self) -> datetime:
        return parse_ts(self.ts)


class SendRequest(BaseModel):
    """Inbound ``message`` event payload."""

    to: Identity
    content: Any
    temp_id: Any = Field(default=None, alias="tempId")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("to")
    @classmethod
    def _to_present(cls, value: Identity) -> Identity:
        if not value:
            raise ValueError("recipient is required")
        return value

    @field_validator("content")
    @classmethod
    def _content_present(cls, value: Any) -> Any:
        if not value:
            raise ValueError("content is required")
        return value


class Ack(BaseModel):
    """Delivery acknowledgment returned to the sending connection only."""

    temp_id: Any = Field(default=None, alias="tempId")
    server_id: str = Field(alias="serverId")
    ts: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------

def build_frame(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event, "data": data}


def encode_frame(frame: Dict[str, Any]) -> str:
    return orjson.dumps(frame).decode("utf-8")


def decode_frame(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Decode an inbound frame. Raises ValueError if it is not a JSON object."""

    frame = orjson.loads(raw)
    if not isinstance(frame, dict):
        raise ValueError("frame must be a JSON object")
    return frame


def extract_token(raw: Optional[Union[str, bytes]]) -> Optional[str]:
    """Pull the credential out of a handshake frame ``{"token": "..."}``."""

    if raw is None:
        return None
    try:
        frame = decode_frame(raw)
    except ValueError:
        return None
    token = frame.get("token")
    return token if isinstance(token, str) else None


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------

def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


__all__ = [
    "EVENT_CONNECT",
    "EVENT_MESSAGE",
    "EVENT_SENT",
    "EVENT_ERROR",
    "Identity",
    "identity_key",
    "utcnow",
    "format_ts",
    "parse_ts",
    "new_message_id",
    "Message",
    "SendRequest",
    "Ack",
    "build_frame",
    "encode_frame",
    "decode_frame",
    "extract_token",
    "b64url",
    "b64url_decode",
]
