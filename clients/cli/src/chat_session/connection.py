"""Connection state machine tying the token lifecycle to the transport."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .config import ClientConfig
from .errors import (
    NotConnectedError,
    SignOutRequired,
    TransportAuthError,
    is_auth_failure,
)
from .events import EventEmitter, Listener
from .tokens import TokenChange, TokenChangeKind, TokenLifecycleManager
from .transport import default_transport_factory

logger = logging.getLogger(__name__)

PUSH_EVENTS = ("message", "typing", "readReceipt", "presence:update")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REAUTHENTICATING = "reauthenticating"


class ConnectionCoordinator:
    """Owns the single transport for the signed-in identity.

    Consumers subscribe to :attr:`events` rather than to the transport:
    ``state`` (old, new), ``signed_out`` (reason) and the broker pushes
    (``message``, ``typing``, ``readReceipt``, ``presence:update``) are
    re-emitted here, so nothing has to re-register when the transport is
    rebuilt.
    """

    def __init__(
        self,
        tokens: TokenLifecycleManager,
        config: ClientConfig | None = None,
        *,
        transport_factory: Callable[..., Any] | None = None,
    ) -> None:
        self.tokens = tokens
        self.config = config or ClientConfig()
        self.state = ConnectionState.DISCONNECTED
        self.events = EventEmitter()
        self._transport_factory = transport_factory or default_transport_factory(
            reconnect=self.config.reconnect,
            handshake_timeout_s=self.config.handshake_timeout_s,
        )
        self._transport: Any = None
        self._transport_listeners: List[Listener] = []
        self._connect_waiters: List[asyncio.Future] = []
        self._tasks: Set[asyncio.Task] = set()
        self._reauth_attempts = 0
        self._reauthenticating = False
        self._token_listener: Listener | None = tokens.subscribe(self._on_token_change)

    @property
    def transport(self) -> Any:
        return self._transport

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    async def start(self) -> None:
        if self._transport is not None:
            return
        token = await self.tokens.get_valid_access_token()
        if token is None:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        if self._transport is not None:
            return
        self._set_state(ConnectionState.CONNECTING)
        self._build_transport(token)
        await self._transport.connect()

    async def sign_out(self, reason: str = "sign_out") -> None:
        self.tokens.sign_out(reason)
        await self._teardown(reason)

    async def close(self) -> None:
        if self._token_listener is not None:
            self._token_listener.cancel()
            self._token_listener = None
        await self._teardown("closed")
        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_connected(self, timeout: float | None = None) -> None:
        """Wait for the transport to come up.

        Fails at once when there is no transport and no credential to start
        one with; a signed-out session never connects on its own.
        """

        if self.state is ConnectionState.CONNECTED:
            return
        if self._transport is None and self.tokens.credential is None:
            raise NotConnectedError("not signed in")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._connect_waiters.append(future)
        try:
            await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            raise NotConnectedError(f"not connected after {timeout:g}s") from exc
        finally:
            if future in self._connect_waiters:
                self._connect_waiters.remove(future)

    async def request(self, event: str, body: Dict[str, Any], *, timeout: float | None = None) -> Dict[str, Any]:
        transport = await self._prepare_outbound()
        return await transport.request(event, body, timeout=timeout or self.config.request_timeout_s)

    async def emit(self, event: str, body: Dict[str, Any]) -> bool:
        transport = await self._prepare_outbound()
        return await transport.emit(event, body)

    async def _prepare_outbound(self) -> Any:
        token = await self.tokens.get_valid_access_token()
        if token is None:
            raise SignOutRequired("no valid credential")
        transport = self._transport
        if transport is None:
            raise NotConnectedError("no transport")
        self._attach(transport, token)
        return transport

    def _auth_payload(self, token: str) -> Dict[str, Any]:
        return {"token": token, "role": self.config.role}

    def _attach(self, transport: Any, token: str) -> None:
        transport.auth = self._auth_payload(token)

    def _build_transport(self, token: str) -> None:
        self._detach_transport_listeners()
        transport = self._transport_factory(
            self.config.resolved_socket_url,
            auth=self._auth_payload(token),
            before_connect=self._prime_credentials,
        )
        events = transport.events
        self._transport_listeners = [
            events.on("connect", self._on_connect),
            events.on("disconnect", self._on_disconnect),
            events.on("connect_error", self._on_connect_error),
            events.on("unauthorized", self._on_unauthorized),
            events.on("reconnect_attempt", self._on_reconnect_attempt),
            events.on("reconnect_failed", self._on_reconnect_failed),
        ]
        for name in PUSH_EVENTS:
            self._transport_listeners.append(events.on(name, self._forwarder(name)))
        self._transport = transport

    def _forwarder(self, name: str) -> Callable[..., None]:
        def forward(*args: Any) -> None:
            self.events.emit(name, *args)

        return forward

    def _detach_transport_listeners(self) -> None:
        for listener in self._transport_listeners:
            listener.cancel()
        self._transport_listeners = []

    async def _prime_credentials(self) -> bool:
        token = await self.tokens.get_valid_access_token()
        transport = self._transport
        if token is None or transport is None:
            return False
        self._attach(transport, token)
        return True

    def _on_connect(self) -> None:
        self._reauth_attempts = 0
        self._set_state(ConnectionState.CONNECTED)

    def _on_disconnect(self, reason: str) -> None:
        logger.info("transport disconnected: %s", reason)
        if self.state is ConnectionState.CONNECTED:
            self._set_state(ConnectionState.CONNECTING)

    def _on_reconnect_attempt(self, attempt: int) -> None:
        logger.debug("reconnect attempt %d", attempt)

    def _on_reconnect_failed(self) -> None:
        logger.info("reconnect attempts exhausted")
        self._spawn(self._teardown("reconnect failed"))

    def _on_connect_error(self, exc: BaseException) -> None:
        if isinstance(exc, TransportAuthError) or is_auth_failure(exc):
            self._spawn(self._reauthenticate())
        else:
            logger.debug("connect_error: %s", exc)

    def _on_unauthorized(self, body: Any = None) -> None:
        self._spawn(self._reauthenticate())

    async def _reauthenticate(self) -> None:
        transport = self._transport
        if self._reauthenticating or transport is None or self.state is ConnectionState.DISCONNECTED:
            return
        self._reauthenticating = True
        try:
            self._reauth_attempts += 1
            if self._reauth_attempts > self.config.max_reauth_attempts:
                logger.warning("credential rejected %d times in a row", self._reauth_attempts - 1)
                self.tokens.sign_out("credential rejected by broker")
                await self._teardown("credential rejected by broker")
                return
            self._set_state(ConnectionState.REAUTHENTICATING)
            token = await self.tokens.refresh_access_token()
            if self._transport is not transport:
                return
            if token is None:
                await self._teardown("refresh failed")
                return
            self._attach(transport, token)
            await transport.restart()
        finally:
            self._reauthenticating = False

    async def _replace_identity(self) -> None:
        await self._teardown("identity changed")
        await self.start()

    def _on_token_change(self, change: TokenChange) -> None:
        if change.kind is TokenChangeKind.CLEARED:
            reason = change.reason or "credential cleared"
            self._set_state(ConnectionState.DISCONNECTED)
            self.events.emit("signed_out", reason)
            self._spawn(self._teardown(reason))
        elif change.kind is TokenChangeKind.REFRESHED:
            if self._transport is not None and change.access_token:
                self._attach(self._transport, change.access_token)
        elif change.kind is TokenChangeKind.SIGNED_IN:
            if self._transport is None:
                self._spawn(self.start())
            else:
                self._spawn(self._replace_identity())

    async def _teardown(self, reason: str) -> None:
        transport = self._transport
        self._transport = None
        self._detach_transport_listeners()
        self._set_state(ConnectionState.DISCONNECTED)
        waiters = list(self._connect_waiters)
        self._connect_waiters.clear()
        for future in waiters:
            if not future.done():
                future.set_exception(NotConnectedError(reason))
        if transport is not None:
            logger.info("tearing down transport: %s", reason)
            await transport.disconnect()

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self.state
        if old_state is new_state:
            return
        self.state = new_state
        logger.info("connection %s -> %s", old_state.value, new_state.value)
        if new_state is ConnectionState.CONNECTED:
            waiters = list(self._connect_waiters)
            self._connect_waiters.clear()
            for future in waiters:
                if not future.done():
                    future.set_result(None)
        self.events.emit("state", old_state, new_state)

    def _spawn(self, coro) -> Optional[asyncio.Task]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
