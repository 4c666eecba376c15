"""aiohttp websocket transport speaking the broker's JSON frame protocol.

Every frame is ``{"v": 1, "t": <type>, "id"?: <correlation id>, "body": {...}}``.
The first frame on a socket is ``session.start`` carrying the current
``auth`` payload; the broker answers ``session.ready`` or an ``error`` frame.
Requests are matched to their ``ack`` frame by id; everything else is a push
and is emitted on :attr:`WebSocketTransport.events` under its frame type.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from .config import ReconnectPolicy
from .errors import NotConnectedError, RequestTimeout, TransportAuthError, TransportError, is_auth_failure
from .events import EventEmitter

logger = logging.getLogger(__name__)

BeforeConnect = Callable[[], Awaitable[bool]]

CLIENT_DISCONNECT = "io client disconnect"
TRANSPORT_CLOSE = "transport close"


def _frame(t: str, body: Any, request_id: str | None = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"v": 1, "t": t, "body": body}
    if request_id is not None:
        frame["id"] = request_id
    return frame


class WebSocketTransport:
    """One logical connection with transport-internal reconnection.

    Lifecycle events: ``connect``, ``disconnect`` (reason), ``connect_error``
    (exception), ``reconnect_attempt`` (attempt number), ``reconnect_failed``.
    ``before_connect`` is awaited before every attempt, the first one included,
    so the owner can rewrite :attr:`auth` with a fresh credential; returning
    False stops the loop. Auth rejections are never retried here.
    """

    def __init__(
        self,
        url: str,
        *,
        auth: Dict[str, Any],
        before_connect: BeforeConnect | None = None,
        session: aiohttp.ClientSession | None = None,
        reconnect: ReconnectPolicy | None = None,
        handshake_timeout_s: float = 10.0,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.url = url
        self.auth: Dict[str, Any] = dict(auth)
        self.events = EventEmitter()
        self.connected = False
        self._before_connect = before_connect
        self._session = session
        self._owns_session = session is None
        self._reconnect = reconnect or ReconnectPolicy()
        self._handshake_timeout_s = handshake_timeout_s
        self._rand = rand
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._run_task: asyncio.Task | None = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._stopping = False

    @property
    def active(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    async def connect(self) -> None:
        if self.active:
            return
        self._stopping = False
        self._run_task = asyncio.get_running_loop().create_task(self._run())

    async def restart(self) -> None:
        await self._stop()
        await self.connect()

    async def disconnect(self) -> None:
        await self._stop()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def request(self, event: str, body: Dict[str, Any], *, timeout: float) -> Dict[str, Any]:
        ws = self._ws
        if ws is None or not self.connected or ws.closed:
            raise NotConnectedError(f"cannot send {event}: not connected")
        request_id = f"{event}-{next(self._ids)}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send_json(_frame(event, body, request_id))
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeout(event, timeout) from exc
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise NotConnectedError(f"{event} failed: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

    async def emit(self, event: str, body: Dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None or not self.connected or ws.closed:
            logger.debug("dropping %s: not connected", event)
            return False
        try:
            await ws.send_json(_frame(event, body))
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.debug("dropping %s: %s", event, exc)
            return False
        return True

    async def _stop(self) -> None:
        self._stopping = True
        ws = self._ws
        task = self._run_task
        if ws is not None and not ws.closed:
            await ws.close()
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._run_task = None
        self._mark_disconnected(CLIENT_DISCONNECT)

    async def _run(self) -> None:
        attempt = 0
        while not self._stopping:
            if attempt:
                self.events.emit("reconnect_attempt", attempt)
            if self._before_connect is not None:
                proceed = await self._before_connect()
                if not proceed or self._stopping:
                    return
            try:
                ws = await self._open()
            except TransportAuthError as exc:
                self.events.emit("connect_error", exc)
                return
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, TransportError) as exc:
                self.events.emit("connect_error", exc)
                attempt += 1
                if not await self._backoff(attempt):
                    return
                continue

            if self._stopping:
                await ws.close()
                return
            self._ws = ws
            self.connected = True
            attempt = 0
            self.events.emit("connect")

            reason = await self._read_loop(ws)
            if self._stopping:
                return
            self._mark_disconnected(reason)
            attempt = 1
            if not await self._backoff(attempt):
                return

    async def _backoff(self, attempt: int) -> bool:
        policy = self._reconnect
        if not policy.unlimited and attempt > policy.max_attempts:
            self.events.emit("reconnect_failed")
            return False
        await asyncio.sleep(policy.delay_for(attempt, self._rand()))
        return not self._stopping

    async def _open(self) -> aiohttp.ClientWebSocketResponse:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            ws = await self._session.ws_connect(self.url)
        except aiohttp.WSServerHandshakeError as exc:
            if exc.status in (401, 403):
                raise TransportAuthError(exc.message or "unauthorized") from exc
            raise
        try:
            await ws.send_json(_frame("session.start", dict(self.auth), f"session.start-{next(self._ids)}"))
            await self._receive_ready(ws)
        except BaseException:
            await ws.close()
            raise
        return ws

    async def _receive_ready(self, ws: aiohttp.ClientWebSocketResponse) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._handshake_timeout_s
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError("Timed out waiting for session.ready")
            msg = await ws.receive(timeout=remaining)
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                reason = msg.extra if isinstance(msg.extra, str) else ""
                if is_auth_failure(reason):
                    raise TransportAuthError(reason)
                raise TransportError(f"socket closed during handshake {reason}".strip())
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise TransportError(f"socket error during handshake: {ws.exception()}")
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            try:
                frame = msg.json()
            except ValueError:
                continue
            if not isinstance(frame, dict):
                continue
            frame_type = frame.get("t")
            body = frame.get("body") if isinstance(frame.get("body"), dict) else {}
            if frame_type == "ping":
                await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
            elif frame_type == "session.ready":
                return body
            elif frame_type == "error":
                message = str(body.get("message") or body.get("code") or "handshake rejected")
                if body.get("code") == "unauthorized" or is_auth_failure(message):
                    raise TransportAuthError(message)
                raise TransportError(message)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> str:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.debug("ignoring malformed frame")
                        continue
                    if isinstance(frame, dict):
                        await self._dispatch(ws, frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    return f"transport error: {ws.exception()}"
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.info("socket failed: %s", exc)
            if not ws.closed:
                await ws.close()
            return f"transport error: {exc}"
        return TRANSPORT_CLOSE

    async def _dispatch(self, ws: aiohttp.ClientWebSocketResponse, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        frame_id = frame.get("id")
        body = frame.get("body")
        if frame_type == "ping":
            await ws.send_json({"v": 1, "t": "pong", "id": frame_id})
        elif frame_type == "pong":
            return
        elif frame_type == "ack":
            self._resolve(frame_id, body if isinstance(body, dict) else {})
        elif frame_type == "error":
            body = body if isinstance(body, dict) else {}
            message = str(body.get("message") or body.get("code") or "")
            if isinstance(frame_id, str) and frame_id in self._pending:
                self._resolve(frame_id, {"ok": False, "success": False, "error": message or "Unknown"})
            elif body.get("code") == "unauthorized" or is_auth_failure(message):
                self.events.emit("unauthorized", body)
            else:
                logger.debug("broker error frame: %s", message)
                self.events.emit("error", body)
        elif isinstance(frame_type, str):
            self.events.emit(frame_type, body)

    def _resolve(self, request_id: object, body: Dict[str, Any]) -> None:
        if not isinstance(request_id, str):
            return
        future = self._pending.pop(request_id, None)
        if future is not None and not future.done():
            future.set_result(body)

    def _mark_disconnected(self, reason: str) -> None:
        self._ws = None
        was_connected = self.connected
        self.connected = False
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(NotConnectedError(f"disconnected: {reason}"))
        if was_connected:
            self.events.emit("disconnect", reason)


def default_transport_factory(
    *,
    reconnect: ReconnectPolicy,
    handshake_timeout_s: float,
    session: Optional[aiohttp.ClientSession] = None,
) -> Callable[..., WebSocketTransport]:
    def factory(url: str, *, auth: Dict[str, Any], before_connect: BeforeConnect) -> WebSocketTransport:
        return WebSocketTransport(
            url,
            auth=auth,
            before_connect=before_connect,
            session=session,
            reconnect=reconnect,
            handshake_timeout_s=handshake_timeout_s,
        )

    return factory
