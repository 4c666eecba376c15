from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .events import EventEmitter, Listener
from .models import PresenceEntry, TypingEntry

logger = logging.getLogger(__name__)

DEFAULT_TYPING_TTL_S = 2.5


class PresenceTracker:
    """Online map plus a self-expiring typing map fed by broker pushes.

    A ``True`` typing entry owns exactly one reversion timer per
    ``(room_id, user_id)``; another ``True`` replaces the timer and a ``False``
    cancels it, so a lost "stopped typing" push still clears after the TTL.
    """

    def __init__(
        self,
        *,
        typing_ttl_s: float = DEFAULT_TYPING_TTL_S,
        now_func: Callable[[], float] = time.monotonic,
    ) -> None:
        self.typing_ttl_s = typing_ttl_s
        self._now = now_func
        self._presence: Dict[str, bool] = {}
        self._typing: Dict[Tuple[str, str], TypingEntry] = {}
        self._timers: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self._listeners: List[Listener] = []
        self.events = EventEmitter()

    def attach(self, source: EventEmitter) -> None:
        self.detach()
        self._listeners = [
            source.on("presence:update", self._on_presence_push),
            source.on("typing", self._on_typing_push),
        ]

    def detach(self) -> None:
        for listener in self._listeners:
            listener.cancel()
        self._listeners = []

    def close(self) -> None:
        self.detach()
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def update_presence(self, user_id: str, online: bool) -> PresenceEntry:
        self._presence[user_id] = bool(online)
        entry = PresenceEntry(user_id=user_id, online=bool(online))
        self.events.emit("presence", entry)
        return entry

    def is_online(self, user_id: str) -> bool:
        return self._presence.get(user_id, False)

    def snapshot(self) -> Dict[str, bool]:
        return dict(self._presence)

    def set_typing(self, room_id: str, user_id: str, is_typing: bool) -> TypingEntry:
        key = (room_id, user_id)
        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()
        if is_typing:
            entry = TypingEntry(room_id, user_id, True, expires_at=self._now() + self.typing_ttl_s)
            loop = asyncio.get_running_loop()
            self._timers[key] = loop.call_later(self.typing_ttl_s, self._expire, key)
        else:
            entry = TypingEntry(room_id, user_id, False)
        self._typing[key] = entry
        self.events.emit("typing", entry)
        return entry

    def is_typing(self, room_id: str, user_id: str) -> bool:
        entry = self._typing.get((room_id, user_id))
        return entry is not None and entry.is_typing

    def typing_entry(self, room_id: str, user_id: str) -> Optional[TypingEntry]:
        return self._typing.get((room_id, user_id))

    def typing_users(self, room_id: str, *, exclude: Optional[str] = None) -> Set[str]:
        return {
            user_id
            for (entry_room, user_id), entry in self._typing.items()
            if entry_room == room_id and entry.is_typing and user_id != exclude
        }

    def _expire(self, key: Tuple[str, str]) -> None:
        self._timers.pop(key, None)
        room_id, user_id = key
        entry = TypingEntry(room_id, user_id, False)
        self._typing[key] = entry
        self.events.emit("typing", entry)

    def _on_presence_push(self, body: Any = None) -> None:
        if not isinstance(body, dict) or not isinstance(body.get("userId"), str):
            logger.debug("ignoring malformed presence push")
            return
        self.update_presence(body["userId"], bool(body.get("online")))

    def _on_typing_push(self, body: Any = None) -> None:
        if not isinstance(body, dict):
            return
        room_id = body.get("roomId")
        user_id = body.get("userId")
        if not isinstance(room_id, str) or not isinstance(user_id, str):
            logger.debug("ignoring malformed typing push")
            return
        self.set_typing(room_id, user_id, bool(body.get("isTyping")))
