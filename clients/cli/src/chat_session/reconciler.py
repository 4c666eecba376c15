"""Per-room message timeline with dedup-by-id and a display projection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from typing import Dict, Iterable, List, Optional, Union

from .models import Message

NEAR_BOTTOM_THRESHOLD_PX = 120


@dataclass(frozen=True)
class ScrollCommand:
    animated: bool


@dataclass(frozen=True)
class DaySeparator:
    day: date
    label: str

    @property
    def id(self) -> str:
        return f"sep-{self.day.isoformat()}"


@dataclass(frozen=True)
class MessageRow:
    message: Message

    @property
    def id(self) -> str:
        return self.message.id


Row = Union[DaySeparator, MessageRow]


def day_label(moment: datetime) -> str:
    return f"{moment:%a}, {moment:%b} {moment.day}"


class MessageStreamReconciler:
    """Ordered, deduplicated message sequence for a single room.

    Messages are keyed by id: inserting an id that is already present keeps the
    stored content (first write wins) and only unions the reader set, so
    duplicate pushes, repeated pagination pages and a push racing its own join
    response all collapse into one entry.

    Day separators follow the calendar day in ``tz``; ``None`` means the local
    timezone of the running process.
    """

    def __init__(self, *, tz: tzinfo | None = None, near_bottom_threshold_px: int = NEAR_BOTTOM_THRESHOLD_PX) -> None:
        self._tz = tz
        self._threshold_px = near_bottom_threshold_px
        self._messages: Dict[str, Message] = {}
        self.near_bottom = True
        self.initial_scrolled = False

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def get(self, message_id: str) -> Optional[Message]:
        return self._messages.get(message_id)

    def insert(self, message: Message) -> bool:
        existing = self._messages.get(message.id)
        if existing is not None:
            self._messages[message.id] = existing.with_readers(message.read_by)
            return False
        self._messages[message.id] = message
        return True

    def load_initial(self, history: Iterable[Message]) -> ScrollCommand:
        for message in history:
            self.insert(message)
        self.initial_scrolled = True
        self.near_bottom = True
        return ScrollCommand(animated=False)

    def append(self, message: Message) -> Optional[ScrollCommand]:
        if not self.insert(message):
            return None
        if self.initial_scrolled and self.near_bottom:
            return ScrollCommand(animated=True)
        return None

    def prepend(self, older: Iterable[Message]) -> List[Message]:
        inserted = [message for message in older if self.insert(message)]
        self.near_bottom = False
        return inserted

    def update_viewport(self, content_height: float, offset_y: float, viewport_height: float) -> bool:
        distance_from_bottom = content_height - (offset_y + viewport_height)
        self.near_bottom = distance_from_bottom < self._threshold_px
        return self.near_bottom

    def apply_read_receipt(self, message_ids: Iterable[str], reader_id: str) -> int:
        changed = 0
        for message_id in set(message_ids):
            message = self._messages.get(message_id)
            if message is None:
                continue
            merged = message.with_readers([reader_id])
            if merged is not message:
                self._messages[message_id] = merged
                changed += 1
        return changed

    def earliest(self) -> Optional[Message]:
        ordered = self.messages()
        return ordered[0] if ordered else None

    def messages(self) -> List[Message]:
        return sorted(self._messages.values(), key=lambda m: (m.created_at, m.id))

    def local_day(self, message: Message) -> date:
        return self._localize(message.created_at).date()

    def rows(self) -> List[Row]:
        out: List[Row] = []
        last_day: Optional[date] = None
        for message in self.messages():
            local = self._localize(message.created_at)
            if local.date() != last_day:
                out.append(DaySeparator(day=local.date(), label=day_label(local)))
                last_day = local.date()
            out.append(MessageRow(message=message))
        return out

    def _localize(self, moment: datetime) -> datetime:
        if self._tz is None:
            return moment.astimezone()
        return moment.astimezone(self._tz)
