import inspect
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Tuple

from chat_session.errors import NotConnectedError, TransportAuthError, TransportError
from chat_session.events import EventEmitter
from chat_session.transport import CLIENT_DISCONNECT, TRANSPORT_CLOSE

OK = "ok"
AUTH = "auth"
NETWORK = "network"


class ScriptedTransport:
    """Stand-in for WebSocketTransport driven by a TransportScript.

    Each connect attempt awaits ``before_connect``, records the auth payload it
    would have presented and consumes the next scripted outcome.
    """

    def __init__(self, script: "TransportScript", url: str, *, auth: Dict[str, Any], before_connect) -> None:
        self.script = script
        self.url = url
        self.auth = dict(auth)
        self.events = EventEmitter()
        self.connected = False
        self.disconnected = False
        self.restarts = 0
        self.handshake_auths: List[Dict[str, Any]] = []
        self.requests: List[Tuple[str, Dict[str, Any]]] = []
        self._before_connect = before_connect

    async def connect(self) -> None:
        if self._before_connect is not None and not await self._before_connect():
            return
        self.handshake_auths.append(dict(self.auth))
        outcome = self.script.next_outcome()
        if outcome == AUTH:
            self.events.emit("connect_error", TransportAuthError("jwt expired"))
            return
        if outcome == NETWORK:
            self.events.emit("connect_error", TransportError("connect ECONNREFUSED"))
            return
        self.connected = True
        self.events.emit("connect")

    async def reconnect(self) -> None:
        self.events.emit("reconnect_attempt", 1)
        await self.connect()

    async def restart(self) -> None:
        self.restarts += 1
        self.connected = False
        await self.connect()

    async def disconnect(self) -> None:
        self.disconnected = True
        self.drop(CLIENT_DISCONNECT)

    def drop(self, reason: str = TRANSPORT_CLOSE) -> None:
        if self.connected:
            self.connected = False
            self.events.emit("disconnect", reason)

    def push(self, frame_type: str, body: Any) -> None:
        self.events.emit(frame_type, body)

    async def request(self, event: str, body: Dict[str, Any], *, timeout: float) -> Dict[str, Any]:
        if not self.connected:
            raise NotConnectedError(f"cannot send {event}: not connected")
        self.requests.append((event, dict(body)))
        self.script.sent.append((event, dict(body)))
        handler = self.script.responses.get(event)
        result = handler(body) if callable(handler) else handler
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        return result if result is not None else {}

    async def emit(self, event: str, body: Dict[str, Any]) -> bool:
        if not self.connected:
            return False
        self.script.sent.append((event, dict(body)))
        return True


class TransportScript:
    def __init__(
        self,
        outcomes: Iterable[str] = (),
        responses: Dict[str, Any] | None = None,
    ) -> None:
        self.outcomes: Deque[str] = deque(outcomes)
        self.responses: Dict[str, Any] = dict(responses or {})
        self.transports: List[ScriptedTransport] = []
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    def next_outcome(self) -> str:
        return self.outcomes.popleft() if self.outcomes else OK

    def factory(self, url: str, *, auth: Dict[str, Any], before_connect) -> ScriptedTransport:
        transport = ScriptedTransport(self, url, auth=auth, before_connect=before_connect)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> ScriptedTransport:
        return self.transports[-1]

    def events_sent(self, *names: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [(event, body) for event, body in self.sent if event in names]
