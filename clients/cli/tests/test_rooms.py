import asyncio
import unittest
from datetime import timezone

from chat_session.config import ClientConfig
from chat_session.connection import ConnectionCoordinator
from chat_session.errors import RequestTimeout, RoomOperationError, SignOutRequired
from chat_session.models import Attention, MediaRef
from chat_session.reconciler import ScrollCommand
from chat_session.rooms import RoomSessionController
from chat_session.token_store import MemoryTokenStore, TokenPair
from chat_session.tokens import TokenLifecycleManager
from helpers.broker import wait_until, wire_message
from helpers.scripted_transport import TransportScript
from helpers.tokens import mint_token


def _history(room_id: str, count: int, *, start_minute: int = 10):
    return [
        wire_message(f"m{i}", room_id, f"2024-03-01T12:{start_minute + i:02d}:00Z")
        for i in range(count)
    ]


class RoomSessionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.script = TransportScript()
        self.tokens = TokenLifecycleManager(MemoryTokenStore(TokenPair(mint_token("me"), "r1")))
        self.connection = ConnectionCoordinator(self.tokens, ClientConfig(), transport_factory=self.script.factory)
        self.rooms = RoomSessionController(self.connection, tz=timezone.utc)
        self.addAsyncCleanup(self.connection.close)
        self.addAsyncCleanup(self.rooms.close)

    def _joins_with(self, histories, *, before=None):
        self.script.responses["joinRoom"] = lambda body: {
            "ok": True,
            "history": histories.get(body["roomId"], []),
            "page": {"before": before},
        }

    async def test_join_loads_history_and_focuses(self) -> None:
        history = _history("room-a", 3)
        self._joins_with({"room-a": history}, before=history[0]["createdAt"])
        joined = []
        self.rooms.events.on("joined", lambda room_id, scroll: joined.append((room_id, scroll)))
        await self.connection.start()

        result = await self.rooms.join("room-a")

        room = self.rooms.rooms["room-a"]
        self.assertEqual([m.id for m in result.history], ["m0", "m1", "m2"])
        self.assertTrue(result.has_more)
        self.assertEqual(result.cursor, "2024-03-01T12:10:00Z")
        self.assertTrue(room.joined)
        self.assertFalse(room.joining)
        self.assertIs(room.attention, Attention.FOCUSED)
        self.assertEqual(self.script.events_sent("focusRoom"), [("focusRoom", {"roomId": "room-a"})])
        self.assertEqual(joined, [("room-a", ScrollCommand(animated=False))])
        self.assertIn("u2", room.participants)

    async def test_join_without_cursor_has_no_more(self) -> None:
        self._joins_with({"room-a": _history("room-a", 2)})
        await self.connection.start()

        result = await self.rooms.join("room-a")

        self.assertFalse(result.has_more)
        self.assertEqual(await self.rooms.load_earlier("room-a"), [])
        self.assertEqual(len(self.script.events_sent("loadEarlier")), 0)

    async def test_join_waits_for_connection_and_is_issued_once(self) -> None:
        self._joins_with({"room-a": _history("room-a", 1)})

        first = asyncio.ensure_future(self.rooms.join("room-a"))
        second = asyncio.ensure_future(self.rooms.join("room-a"))
        await asyncio.sleep(0.01)
        self.assertEqual(self.script.sent, [])

        await self.connection.start()
        results = await asyncio.gather(first, second)

        self.assertEqual(len(self.script.events_sent("joinRoom")), 1)
        self.assertEqual(results[0].history, results[1].history)

    async def test_join_failure_leaves_room_mounted_and_empty(self) -> None:
        self.script.responses["joinRoom"] = {"ok": False, "error": "forbidden"}
        await self.connection.start()

        with self.assertRaises(RoomOperationError) as ctx:
            await self.rooms.join("room-a")

        self.assertEqual(ctx.exception.operation, "join")
        self.assertEqual(ctx.exception.reason, "forbidden")
        room = self.rooms.rooms["room-a"]
        self.assertEqual(room.messages, [])
        self.assertEqual(room.last_error, "forbidden")
        self.assertFalse(room.joined)
        self.assertTrue(self.connection.connected)

    async def test_join_timeout_is_a_room_error(self) -> None:
        self.script.responses["joinRoom"] = RequestTimeout("joinRoom", 15)
        await self.connection.start()

        with self.assertRaises(RoomOperationError) as ctx:
            await self.rooms.join("room-a")

        self.assertIn("No ack for joinRoom", ctx.exception.reason)
        self.assertTrue(self.connection.connected)

    async def test_join_after_sign_out_fails_fast(self) -> None:
        self._joins_with({"room-a": _history("room-a", 1)})
        await self.connection.start()
        await self.connection.sign_out("user request")

        with self.assertRaises(RoomOperationError) as ctx:
            await asyncio.wait_for(self.rooms.join("room-a"), 1.0)

        self.assertEqual(ctx.exception.reason, "not signed in")
        room = self.rooms.rooms["room-a"]
        self.assertFalse(room.joining)
        self.assertEqual(room.last_error, "not signed in")
        self.assertEqual(self.script.events_sent("joinRoom"), [])

    async def test_join_without_transport_gives_up_after_request_timeout(self) -> None:
        rooms = RoomSessionController(self.connection, config=ClientConfig(request_timeout_s=0.05))
        self.addAsyncCleanup(rooms.close)

        with self.assertRaises(RoomOperationError) as ctx:
            await asyncio.wait_for(rooms.join("room-a"), 1.0)

        self.assertIn("not connected", ctx.exception.reason)
        self.assertFalse(rooms.rooms["room-a"].joining)

    async def test_credential_loss_surfaces_as_room_error(self) -> None:
        self._joins_with({"room-a": _history("room-a", 1)})
        await self.connection.start()
        await self.rooms.join("room-a")
        self.tokens.sign_out("expired")

        with self.assertRaises(RoomOperationError) as ctx:
            await self.rooms.send("room-a", text="hello")

        self.assertEqual(ctx.exception.operation, "send")
        self.assertEqual(ctx.exception.reason, "no valid credential")
        self.assertIsInstance(ctx.exception.__cause__, SignOutRequired)

    async def test_push_racing_join_is_not_duplicated(self) -> None:
        history = _history("room-a", 2)

        def join(body):
            self.script.current.push("message", history[1])
            return {"ok": True, "history": history, "page": {"before": None}}

        self.script.responses["joinRoom"] = join
        await self.connection.start()

        await self.rooms.join("room-a")

        self.assertEqual([m.id for m in self.rooms.rooms["room-a"].messages], ["m0", "m1"])

    async def test_load_earlier_prepends_and_moves_cursor(self) -> None:
        recent = _history("room-a", 2, start_minute=30)
        older = _history("room-a", 2, start_minute=10)
        older = [dict(m, _id=f"old{i}") for i, m in enumerate(older)]
        self._joins_with({"room-a": recent}, before=recent[0]["createdAt"])
        pages = [{"ok": True, "older": older}, {"ok": True, "older": older}, {"ok": True, "older": []}]
        self.script.responses["loadEarlier"] = lambda body: pages.pop(0)
        await self.connection.start()
        await self.rooms.join("room-a")

        inserted = await self.rooms.load_earlier("room-a")
        repeated = await self.rooms.load_earlier("room-a")
        exhausted = await self.rooms.load_earlier("room-a")
        after_end = await self.rooms.load_earlier("room-a")

        room = self.rooms.rooms["room-a"]
        self.assertEqual([m.id for m in inserted], ["old0", "old1"])
        self.assertEqual(repeated, [])
        self.assertEqual(exhausted, [])
        self.assertEqual(after_end, [])
        self.assertEqual(len(room.messages), 4)
        self.assertEqual(room.before, "2024-03-01T12:10:00Z")
        self.assertFalse(room.has_more)
        self.assertFalse(room.timeline.near_bottom)
        calls = self.script.events_sent("loadEarlier")
        self.assertEqual(len(calls), 3)
        self.assertEqual(calls[0][1], {"roomId": "room-a", "limit": 30, "before": "2024-03-01T12:30:00Z"})
        self.assertEqual(calls[1][1]["before"], "2024-03-01T12:10:00Z")

    async def test_send_failure_mutates_nothing(self) -> None:
        self._joins_with({"room-a": _history("room-a", 1)})
        self.script.responses["sendMessage"] = {"success": False, "error": "Rate limited"}
        await self.connection.start()
        await self.rooms.join("room-a")

        with self.assertRaises(RoomOperationError) as ctx:
            await self.rooms.send("room-a", text="hello")

        self.assertEqual(ctx.exception.reason, "Rate limited")
        self.assertEqual([m.id for m in self.rooms.rooms["room-a"].messages], ["m0"])

    async def test_send_inserts_acked_record_once(self) -> None:
        self._joins_with({"room-a": []})
        record = wire_message("srv-1", "room-a", "2024-03-01T13:00:00Z", sender="me", text="hello")
        self.script.responses["sendMessage"] = {"success": True, "message": record}
        seen = []
        self.rooms.events.on("message", lambda room_id, message, scroll: seen.append((message.id, scroll)))
        await self.connection.start()
        await self.rooms.join("room-a")

        message = await self.rooms.send("room-a", text="  hello  ")
        self.script.current.push("message", record)

        self.assertEqual(message.id, "srv-1")
        self.assertEqual(self.script.events_sent("sendMessage")[0][1], {"roomId": "room-a", "type": "text", "text": "hello"})
        self.assertEqual(seen, [("srv-1", ScrollCommand(animated=True))])
        self.assertEqual(len(self.rooms.rooms["room-a"].messages), 1)

    async def test_send_media_and_validation(self) -> None:
        self.script.responses["sendMessage"] = {"success": True}
        await self.connection.start()

        with self.assertRaises(ValueError):
            await self.rooms.send("room-a", text="   ")
        self.assertIsNone(await self.rooms.send("room-a", media=MediaRef("uploads/a.jpg", 640, 480, "image/jpeg")))

        self.assertEqual(
            self.script.events_sent("sendMessage"),
            [
                (
                    "sendMessage",
                    {
                        "roomId": "room-a",
                        "type": "image",
                        "media": {"url": "uploads/a.jpg", "w": 640, "h": 480, "mime": "image/jpeg"},
                    },
                )
            ],
        )

    async def test_switching_rooms_blurs_before_focusing(self) -> None:
        self._joins_with({})
        await self.connection.start()
        await self.rooms.join("room-a")
        await self.rooms.join("room-b")

        self.assertEqual(
            self.script.events_sent("focusRoom", "blurRoom"),
            [
                ("focusRoom", {"roomId": "room-a"}),
                ("blurRoom", {"roomId": "room-a"}),
                ("focusRoom", {"roomId": "room-b"}),
            ],
        )
        self.assertIs(self.rooms.rooms["room-a"].attention, Attention.BLURRED)

    async def test_attention_changes_are_idempotent(self) -> None:
        self._joins_with({})
        await self.connection.start()
        await self.rooms.join("room-a")

        self.assertFalse(await self.rooms.set_attention("room-a", True))
        self.assertTrue(await self.rooms.app_state_changed(False))
        self.assertFalse(await self.rooms.app_state_changed(False))
        self.assertTrue(await self.rooms.app_state_changed(True))

        self.assertEqual(
            [event for event, _ in self.script.events_sent("focusRoom", "blurRoom")],
            ["focusRoom", "blurRoom", "focusRoom"],
        )

    async def test_focus_is_resent_after_reconnect(self) -> None:
        self._joins_with({})
        await self.connection.start()
        await self.rooms.join("room-a")

        self.script.current.drop()
        await self.script.current.reconnect()
        await wait_until(lambda: len(self.script.events_sent("focusRoom")) == 2)

        self.assertEqual(self.script.events_sent("focusRoom")[-1], ("focusRoom", {"roomId": "room-a"}))

    async def test_typing_is_coalesced(self) -> None:
        await self.connection.start()
        self.rooms.mount("room-a")

        for text in ["h", "he", "hel", "", ""]:
            await self.rooms.input_changed("room-a", text)

        self.assertEqual(
            self.script.events_sent("typing"),
            [
                ("typing", {"roomId": "room-a", "isTyping": True}),
                ("typing", {"roomId": "room-a", "isTyping": False}),
            ],
        )

    async def test_read_receipt_push_unions_readers(self) -> None:
        history = _history("room-a", 2)
        history[0]["readBy"] = ["u3"]
        self._joins_with({"room-a": history})
        reads = []
        self.rooms.events.on("read", lambda room_id, reader, changed: reads.append((reader, changed)))
        await self.connection.start()
        await self.rooms.join("room-a")

        self.script.current.push("readReceipt", {"roomId": "room-a", "userId": "u4", "messageIds": ["m0", "m1", "zz"]})
        self.script.current.push("readReceipt", {"roomId": "room-a", "userId": "u4", "messageIds": ["m0"]})

        timeline = self.rooms.rooms["room-a"].timeline
        self.assertEqual(timeline.get("m0").read_by, frozenset({"u3", "u4"}))
        self.assertEqual(timeline.get("m1").read_by, frozenset({"u4"}))
        self.assertEqual(reads, [("u4", 2), ("u4", 0)])

    async def test_pushes_for_unmounted_rooms_are_ignored(self) -> None:
        await self.connection.start()
        self.script.current.push("message", wire_message("x1", "elsewhere", "2024-03-01T12:00:00Z"))
        self.script.current.push("message", {"garbage": True})

        self.assertEqual(self.rooms.rooms, {})

    async def test_leave_blurs_and_discards_late_join(self) -> None:
        release = asyncio.Event()

        async def slow_join(body):
            await release.wait()
            return {"ok": True, "history": _history("room-a", 2), "page": {"before": None}}

        self.script.responses["joinRoom"] = slow_join
        await self.connection.start()
        pending = asyncio.ensure_future(self.rooms.join("room-a"))
        await wait_until(lambda: len(self.script.events_sent("joinRoom")) == 1)

        await self.rooms.leave("room-a")
        release.set()
        result = await pending

        self.assertEqual(len(result.history), 2)
        self.assertNotIn("room-a", self.rooms.rooms)
        self.assertEqual(self.script.events_sent("focusRoom"), [])

    async def test_leave_focused_room_sends_blur(self) -> None:
        self._joins_with({})
        await self.connection.start()
        await self.rooms.join("room-a")

        await self.rooms.leave("room-a")

        self.assertEqual(self.script.events_sent("blurRoom"), [("blurRoom", {"roomId": "room-a"})])
        self.assertIsNone(self.rooms.focused_room_id)
