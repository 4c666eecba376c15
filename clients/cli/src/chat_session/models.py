"""Wire-level records exchanged with the room broker."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional

_ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class Attention(str, Enum):
    FOCUSED = "focused"
    BLURRED = "blurred"


def is_full_url(value: object) -> bool:
    return isinstance(value, str) and _ABSOLUTE_URL.match(value) is not None


def parse_timestamp(raw: object) -> datetime:
    """Parse an ISO-8601 ``createdAt``; naive values are taken as UTC."""

    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
    if not isinstance(raw, str) or not raw:
        raise ValueError("createdAt must be an ISO-8601 string")
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"invalid createdAt: {raw!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def canonical_dm_room(user_a: str, user_b: str) -> str:
    a, b = sorted([user_a, user_b])
    return f"dm:{a}:{b}"


@dataclass(frozen=True)
class MediaRef:
    """Opaque storage reference; ``key`` is not a browsable URL."""

    key: str
    width: Optional[int] = None
    height: Optional[int] = None
    mime: Optional[str] = None

    @classmethod
    def from_wire(cls, payload: object) -> "MediaRef":
        if not isinstance(payload, dict) or not isinstance(payload.get("url"), str) or not payload["url"]:
            raise ValueError("media.url must be a non-empty string")
        width = payload.get("w")
        height = payload.get("h")
        mime = payload.get("mime")
        return cls(
            key=payload["url"],
            width=width if isinstance(width, int) else None,
            height=height if isinstance(height, int) else None,
            mime=mime if isinstance(mime, str) else None,
        )

    def to_wire(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"url": self.key}
        if self.width is not None:
            payload["w"] = self.width
        if self.height is not None:
            payload["h"] = self.height
        if self.mime is not None:
            payload["mime"] = self.mime
        return payload


@dataclass(frozen=True)
class Message:
    id: str
    room_id: str
    sender: str
    created_at: datetime
    created_at_raw: str
    type: MessageType = MessageType.TEXT
    text: Optional[str] = None
    media: Optional[MediaRef] = None
    recipient: Optional[str] = None
    read_by: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_wire(cls, payload: object) -> "Message":
        if not isinstance(payload, dict):
            raise ValueError("message payload must be a JSON object")
        message_id = payload.get("_id", payload.get("id"))
        room_id = payload.get("roomId")
        sender = payload.get("from")
        if not isinstance(message_id, str) or not message_id:
            raise ValueError("message _id required")
        if not isinstance(room_id, str) or not room_id:
            raise ValueError("message roomId required")
        if not isinstance(sender, str):
            raise ValueError("message from required")
        raw_created = payload.get("createdAt")
        created_at = parse_timestamp(raw_created)
        try:
            msg_type = MessageType(payload.get("type") or "text")
        except ValueError as exc:
            raise ValueError(f"unsupported message type: {payload.get('type')!r}") from exc
        media = MediaRef.from_wire(payload.get("media")) if msg_type is MessageType.IMAGE else None
        text = payload.get("text")
        recipient = payload.get("to")
        readers = payload.get("readBy")
        if not isinstance(readers, list):
            readers = []
        return cls(
            id=message_id,
            room_id=room_id,
            sender=sender,
            created_at=created_at,
            created_at_raw=raw_created if isinstance(raw_created, str) else created_at.isoformat(),
            type=msg_type,
            text=text if isinstance(text, str) else None,
            media=media,
            recipient=recipient if isinstance(recipient, str) else None,
            read_by=frozenset(r for r in readers if isinstance(r, str)),
        )

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "_id": self.id,
            "roomId": self.room_id,
            "from": self.sender,
            "type": self.type.value,
            "createdAt": self.created_at_raw,
            "readBy": sorted(self.read_by),
        }
        if self.recipient is not None:
            payload["to"] = self.recipient
        if self.text is not None:
            payload["text"] = self.text
        if self.media is not None:
            payload["media"] = self.media.to_wire()
        return payload

    def with_readers(self, readers: Iterable[str]) -> "Message":
        merged = self.read_by | frozenset(readers)
        if merged == self.read_by:
            return self
        return replace(self, read_by=merged)


@dataclass(frozen=True)
class JoinResult:
    history: list[Message]
    cursor: Optional[str]
    has_more: bool


@dataclass(frozen=True)
class PresenceEntry:
    user_id: str
    online: bool


@dataclass(frozen=True)
class TypingEntry:
    room_id: str
    user_id: str
    is_typing: bool
    expires_at: Optional[float] = None
