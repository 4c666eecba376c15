"""High-level facade wiring tokens, connection, rooms, presence and media."""

from __future__ import annotations

import logging
from datetime import tzinfo
from typing import Any, Callable, Optional, Set

import aiohttp

from .config import ClientConfig
from .connection import ConnectionCoordinator, ConnectionState
from .media import MediaResolver
from .models import MediaRef
from .presence import PresenceTracker
from .rooms import RoomSessionController
from .token_store import FileTokenStore
from .tokens import GraphQLTokenRefresher, Refresher, TokenLifecycleManager
from .transport import default_transport_factory

logger = logging.getLogger(__name__)


class ChatClient:
    """One signed-in chat session.

    Usage::

        async with ChatClient(config) as client:
            await client.rooms.join(room_id)
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        store=None,
        refresher: Refresher | None = None,
        transport_factory: Callable[..., Any] | None = None,
        session: aiohttp.ClientSession | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        if store is None:
            store = FileTokenStore(self.config.token_path)
        if refresher is None:
            refresher = GraphQLTokenRefresher(
                self.config.api_url,
                role=self.config.role,
                session=session,
                timeout_s=self.config.request_timeout_s,
            )
        if transport_factory is None:
            transport_factory = default_transport_factory(
                reconnect=self.config.reconnect,
                handshake_timeout_s=self.config.handshake_timeout_s,
                session=session,
            )
        self.tokens = TokenLifecycleManager(store, refresher, margin_s=self.config.refresh_margin_s)
        self.connection = ConnectionCoordinator(self.tokens, self.config, transport_factory=transport_factory)
        self.presence = PresenceTracker(typing_ttl_s=self.config.typing_ttl_s)
        self.presence.attach(self.connection.events)
        self.rooms = RoomSessionController(self.connection, config=self.config, tz=tz)
        self.media = MediaResolver(
            self.config.api_url,
            role=self.config.role,
            session=session,
            timeout_s=self.config.request_timeout_s,
        )

    async def __aenter__(self) -> "ChatClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def user_id(self) -> Optional[str]:
        return self.tokens.user_id

    async def start(self) -> None:
        await self.connection.start()

    def sign_in(self, access_token: str, refresh_token: str | None) -> None:
        self.tokens.sign_in(access_token, refresh_token)

    async def sign_out(self, reason: str = "sign_out") -> None:
        self.media.clear()
        await self.connection.sign_out(reason)

    def typing_users(self, room_id: str) -> Set[str]:
        return self.presence.typing_users(room_id, exclude=self.user_id)

    async def resolve_media(self, media: MediaRef | None) -> Optional[str]:
        token = await self.tokens.get_valid_access_token()
        return await self.media.resolve_media(media, token)

    async def close(self) -> None:
        await self.rooms.close()
        self.presence.close()
        await self.connection.close()
        await self.tokens.close()
        logger.debug("chat client closed")
