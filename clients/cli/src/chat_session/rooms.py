"""Room session protocol: join, history paging, send, attention and typing."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Any, Dict, List, Optional, Set

from .config import ClientConfig
from .connection import ConnectionCoordinator, ConnectionState
from .errors import CredentialError, RoomOperationError, TransportError
from .events import EventEmitter, Listener
from .models import Attention, JoinResult, MediaRef, Message, MessageType, parse_timestamp
from .reconciler import MessageStreamReconciler, Row, ScrollCommand

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Room:
    room_id: str
    timeline: MessageStreamReconciler
    participants: Set[str] = field(default_factory=set)
    before: Optional[Any] = None
    has_more: bool = True
    attention: Attention = Attention.BLURRED
    joining: bool = False
    joined: bool = False
    last_error: Optional[str] = None
    local_typing: bool = False

    @property
    def messages(self) -> List[Message]:
        return self.timeline.messages()

    def rows(self) -> List[Row]:
        return self.timeline.rows()


def _parse_messages(items: object) -> List[Message]:
    if not isinstance(items, list):
        return []
    parsed: List[Message] = []
    for item in items:
        try:
            parsed.append(Message.from_wire(item))
        except ValueError as exc:
            logger.debug("skipping malformed message: %s", exc)
    return parsed


def _is_earlier(candidate: Message, cursor: Any) -> bool:
    if cursor is None:
        return True
    try:
        return candidate.created_at < parse_timestamp(cursor)
    except ValueError:
        return True


class RoomSessionController:
    """Drives the per-room protocol over the coordinator's transport.

    Controller events: ``message`` (room_id, message, scroll command or None)
    for newly inserted messages, ``read`` (room_id, reader_id, changed count),
    ``attention`` (room_id, Attention) and ``joined`` (room_id, scroll command).
    """

    def __init__(
        self,
        connection: ConnectionCoordinator,
        *,
        config: ClientConfig | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        self.connection = connection
        self.config = config or connection.config
        self._tz = tz
        self.rooms: Dict[str, Room] = {}
        self.focused_room_id: Optional[str] = None
        self.app_active = True
        self.events = EventEmitter()
        self._tasks: Set[asyncio.Task] = set()
        self._joins: Dict[str, asyncio.Task] = {}
        self._listeners: List[Listener] = [
            connection.events.on("message", self._on_message),
            connection.events.on("readReceipt", self._on_read_receipt),
            connection.events.on("state", self._on_state),
        ]

    def mount(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            room = Room(
                room_id=room_id,
                timeline=MessageStreamReconciler(tz=self._tz, near_bottom_threshold_px=self.config.near_bottom_px),
            )
            self.rooms[room_id] = room
        return room

    async def join(self, room_id: str) -> JoinResult:
        """Join once per mount; concurrent callers share the in-flight join."""

        room = self.mount(room_id)
        if room.joined:
            return JoinResult(history=room.messages, cursor=room.before, has_more=room.has_more)
        pending = self._joins.get(room_id)
        if pending is None:
            pending = asyncio.get_running_loop().create_task(self._join(room))
            self._joins[room_id] = pending
            self._tasks.add(pending)
            pending.add_done_callback(self._join_settled(room_id))
        return await asyncio.shield(pending)

    def _join_settled(self, room_id: str):
        def settled(task: asyncio.Task) -> None:
            self._tasks.discard(task)
            if self._joins.get(room_id) is task:
                del self._joins[room_id]
            if not task.cancelled():
                task.exception()

        return settled

    async def _join(self, room: Room) -> JoinResult:
        room_id = room.room_id
        room.joining = True
        room.last_error = None
        try:
            try:
                await self.connection.wait_connected(self.config.request_timeout_s)
            except (TransportError, CredentialError) as exc:
                raise RoomOperationError("join", str(exc), room_id=room_id) from exc
            response = await self._request("join", room_id, "joinRoom", {"roomId": room_id})
            if not response.get("ok"):
                raise RoomOperationError("join", str(response.get("error") or "Unknown"), room_id=room_id)
        except RoomOperationError as exc:
            if self.rooms.get(room_id) is room:
                room.joining = False
                room.last_error = exc.reason
            raise

        history = _parse_messages(response.get("history"))
        page = response.get("page") if isinstance(response.get("page"), dict) else {}
        before = page.get("before")
        cursor = before if before not in (None, "") else None
        if self.rooms.get(room_id) is not room:
            return JoinResult(history=history, cursor=cursor, has_more=cursor is not None)

        room.before = cursor
        room.has_more = cursor is not None
        scroll = room.timeline.load_initial(history)
        for message in history:
            self._track_participants(room, message)
        room.joining = False
        room.joined = True
        await self.focus_room(room_id)
        self.events.emit("joined", room_id, scroll)
        return JoinResult(history=history, cursor=room.before, has_more=room.has_more)

    async def load_earlier(self, room_id: str, before: Any = None, limit: int | None = None) -> List[Message]:
        room = self.rooms.get(room_id)
        if room is None:
            raise RoomOperationError("loadEarlier", "room not joined", room_id=room_id)
        if not room.has_more:
            return []
        cursor = before if before is not None else room.before
        body: Dict[str, Any] = {"roomId": room_id, "limit": limit or self.config.history_page_size}
        if cursor is not None:
            body["before"] = cursor
        response = await self._request("loadEarlier", room_id, "loadEarlier", body)
        if not response.get("ok"):
            raise RoomOperationError("loadEarlier", str(response.get("error") or "Unknown"), room_id=room_id)
        if self.rooms.get(room_id) is not room:
            return []

        older = _parse_messages(response.get("older"))
        if not older:
            room.has_more = False
            return []
        inserted = room.timeline.prepend(older)
        for message in inserted:
            self._track_participants(room, message)
        earliest = min(older, key=lambda m: (m.created_at, m.id))
        if _is_earlier(earliest, room.before):
            room.before = earliest.created_at_raw
        return inserted

    async def send(
        self,
        room_id: str,
        *,
        text: str | None = None,
        media: MediaRef | None = None,
    ) -> Optional[Message]:
        """Submit a message and wait for the broker's ack.

        Nothing is inserted locally unless the ack carries the persisted
        record; otherwise the message shows up when the broker pushes it back.
        """

        if media is not None:
            payload: Dict[str, Any] = {"roomId": room_id, "type": MessageType.IMAGE.value, "media": media.to_wire()}
        else:
            clean = (text or "").strip()
            if not clean:
                raise ValueError("message text must not be empty")
            payload = {"roomId": room_id, "type": MessageType.TEXT.value, "text": clean}

        response = await self._request("send", room_id, "sendMessage", payload)
        if not response.get("success"):
            raise RoomOperationError("send", str(response.get("error") or "Unknown"), room_id=room_id)

        record = response.get("message")
        if not isinstance(record, dict):
            return None
        try:
            message = Message.from_wire(record)
        except ValueError as exc:
            logger.debug("ack carried a malformed record: %s", exc)
            return None
        room = self.rooms.get(message.room_id)
        if room is not None:
            self._ingest(room, message)
        return message

    async def set_attention(self, room_id: str, focused: bool) -> bool:
        if focused:
            return await self.focus_room(room_id)
        if self.focused_room_id == room_id:
            self.focused_room_id = None
        return await self._apply_attention(room_id, Attention.BLURRED)

    async def focus_room(self, room_id: str) -> bool:
        previous = self.focused_room_id
        self.focused_room_id = room_id
        if previous is not None and previous != room_id:
            await self._apply_attention(previous, Attention.BLURRED)
        if not self.app_active:
            return False
        return await self._apply_attention(room_id, Attention.FOCUSED)

    async def app_state_changed(self, active: bool) -> bool:
        self.app_active = active
        room_id = self.focused_room_id
        if room_id is None:
            return False
        return await self._apply_attention(room_id, Attention.FOCUSED if active else Attention.BLURRED)

    async def set_typing(self, room_id: str, is_typing: bool) -> bool:
        room = self.rooms.get(room_id)
        if room is not None:
            if room.local_typing == is_typing:
                return False
            room.local_typing = is_typing
        return await self._advise("typing", {"roomId": room_id, "isTyping": bool(is_typing)})

    async def input_changed(self, room_id: str, text: str) -> bool:
        return await self.set_typing(room_id, len(text) > 0)

    def update_viewport(self, room_id: str, content_height: float, offset_y: float, viewport_height: float) -> bool:
        room = self.rooms.get(room_id)
        if room is None:
            return False
        return room.timeline.update_viewport(content_height, offset_y, viewport_height)

    async def leave(self, room_id: str) -> None:
        room = self.rooms.get(room_id)
        if room is None:
            return
        self._joins.pop(room_id, None)
        if self.focused_room_id == room_id:
            self.focused_room_id = None
        if room.attention is Attention.FOCUSED:
            await self._apply_attention(room_id, Attention.BLURRED)
        if room.local_typing:
            await self.set_typing(room_id, False)
        if self.rooms.get(room_id) is room:
            del self.rooms[room_id]

    async def close(self) -> None:
        for listener in self._listeners:
            listener.cancel()
        self._listeners = []
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _apply_attention(self, room_id: str, attention: Attention, *, force: bool = False) -> bool:
        room = self.rooms.get(room_id)
        if room is not None:
            if room.attention is attention and not force:
                return False
            room.attention = attention
        event = "focusRoom" if attention is Attention.FOCUSED else "blurRoom"
        self.events.emit("attention", room_id, attention)
        return await self._advise(event, {"roomId": room_id})

    async def _request(self, operation: str, room_id: str, event: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.connection.request(event, body)
        except (TransportError, CredentialError) as exc:
            raise RoomOperationError(operation, str(exc), room_id=room_id) from exc
        return response if isinstance(response, dict) else {}

    async def _advise(self, event: str, body: Dict[str, Any]) -> bool:
        try:
            return await self.connection.emit(event, body)
        except (TransportError, CredentialError) as exc:
            logger.debug("%s not sent: %s", event, exc)
            return False

    def _ingest(self, room: Room, message: Message) -> Optional[ScrollCommand]:
        is_new = message.id not in room.timeline
        scroll = room.timeline.append(message)
        self._track_participants(room, message)
        if is_new:
            self.events.emit("message", room.room_id, message, scroll)
        return scroll

    @staticmethod
    def _track_participants(room: Room, message: Message) -> None:
        if message.sender:
            room.participants.add(message.sender)
        if message.recipient:
            room.participants.add(message.recipient)

    def _on_message(self, body: Any = None) -> None:
        try:
            message = Message.from_wire(body)
        except ValueError as exc:
            logger.debug("ignoring malformed message push: %s", exc)
            return
        room = self.rooms.get(message.room_id)
        if room is None:
            return
        self._ingest(room, message)

    def _on_read_receipt(self, body: Any = None) -> None:
        if not isinstance(body, dict):
            return
        room = self.rooms.get(body.get("roomId"))
        reader = body.get("userId")
        message_ids = body.get("messageIds")
        if room is None or not isinstance(reader, str) or not isinstance(message_ids, list):
            return
        changed = room.timeline.apply_read_receipt([m for m in message_ids if isinstance(m, str)], reader)
        room.participants.add(reader)
        self.events.emit("read", room.room_id, reader, changed)

    def _on_state(self, old: ConnectionState, new: ConnectionState) -> None:
        if new is not ConnectionState.CONNECTED or old is ConnectionState.CONNECTED:
            return
        room_id = self.focused_room_id
        if room_id is None or not self.app_active or room_id not in self.rooms:
            return
        if not self.rooms[room_id].joined:
            return
        task = asyncio.get_running_loop().create_task(
            self._apply_attention(room_id, Attention.FOCUSED, force=True)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
