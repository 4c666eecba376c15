"""Access/refresh token lifecycle with a single deduplicated refresh."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
import jwt

from .errors import CredentialRejected
from .events import EventEmitter, Listener
from .token_store import MemoryTokenStore, TokenPair

logger = logging.getLogger(__name__)

Refresher = Callable[[str], Awaitable[TokenPair]]

REFRESH_MUTATION = """
mutation RefreshAccessToken($refreshToken: String!) {
  refreshAccessToken(refreshToken: $refreshToken) {
    accessToken
    refreshToken
  }
}
"""

_IDENTITY_CLAIMS = ("sub", "userId", "_id", "id")


class TokenChangeKind(str, Enum):
    SIGNED_IN = "signed_in"
    REFRESHED = "refreshed"
    CLEARED = "cleared"


@dataclass(frozen=True)
class TokenChange:
    kind: TokenChangeKind
    access_token: Optional[str] = None
    reason: Optional[str] = None


def decode_claims(token: str | None) -> Dict[str, Any]:
    """Read JWT claims without verifying the signature; {} when undecodable."""

    if not token:
        return {}
    try:
        claims = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.PyJWTError:
        return {}
    return claims if isinstance(claims, dict) else {}


def token_expiry(token: str | None) -> Optional[float]:
    exp = decode_claims(token).get("exp")
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        return float(exp)
    return None


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_token: Optional[str]

    @property
    def expires_at(self) -> Optional[float]:
        return token_expiry(self.access_token)


class GraphQLTokenRefresher:
    """Exchange a refresh token for a new pair via the GraphQL mutation."""

    def __init__(
        self,
        api_url: str,
        *,
        role: str = "client",
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self.url = f"{api_url.rstrip('/')}/graphql"
        self.role = role
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def __call__(self, refresh_token: str) -> TokenPair:
        if self._session is not None:
            return await self._post(self._session, refresh_token)
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            return await self._post(session, refresh_token)

    async def _post(self, session: aiohttp.ClientSession, refresh_token: str) -> TokenPair:
        payload = {"query": REFRESH_MUTATION, "variables": {"refreshToken": refresh_token}}
        headers = {"Content-Type": "application/json", "role": self.role}
        try:
            async with session.post(self.url, json=payload, headers=headers, timeout=self._timeout) as response:
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise CredentialRejected(f"refresh request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise CredentialRejected("invalid refresh response")
        errors = data.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) and errors else {}
            message = first.get("message") if isinstance(first, dict) else None
            raise CredentialRejected(message or "Failed to refresh token")
        result = (data.get("data") or {}).get("refreshAccessToken") or {}
        access_token = result.get("accessToken")
        new_refresh = result.get("refreshToken")
        if not isinstance(access_token, str) or not isinstance(new_refresh, str) or not access_token or not new_refresh:
            raise CredentialRejected("invalid refresh response")
        return TokenPair(access_token=access_token, refresh_token=new_refresh)


class TokenLifecycleManager:
    """Owns the credential pair and funnels every write through one refresh slot.

    Concurrent callers of :meth:`get_valid_access_token` that find the cached
    token inside the safety margin all await the same refresh task, so at most
    one refresh call is in flight. The slot is cleared as soon as the call
    settles. A failed refresh clears the stored pair and emits a ``cleared``
    change; consumers subscribed through :meth:`subscribe` react to it (tear
    down the transport, route to sign-in) instead of polling.
    """

    def __init__(
        self,
        store=None,
        refresher: Refresher | None = None,
        *,
        margin_s: int = 30,
        now_func: Callable[[], float] = time.time,
    ) -> None:
        self._store = store if store is not None else MemoryTokenStore()
        self._refresher = refresher
        self.margin_s = margin_s
        self._now = now_func
        self.events = EventEmitter()
        self._refresh_task: asyncio.Task | None = None
        self._generation = 0
        pair = self._store.load()
        self._credential: Credential | None = (
            Credential(access_token=pair.access_token, refresh_token=pair.refresh_token) if pair else None
        )

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None

    @property
    def user_id(self) -> Optional[str]:
        if self._credential is None:
            return None
        claims = decode_claims(self._credential.access_token)
        for claim in _IDENTITY_CLAIMS:
            value = claims.get(claim)
            if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value):
                return str(value)
        return None

    def subscribe(self, callback: Callable[[TokenChange], None]) -> Listener:
        return self.events.on("change", callback)

    def is_valid(self, token: str | None) -> bool:
        if not token:
            return False
        exp = token_expiry(token)
        if exp is None:
            return False
        return exp > self._now() + self.margin_s

    def cached_access_token(self) -> Optional[str]:
        if self._credential is None:
            return None
        return self._credential.access_token

    async def get_valid_access_token(self) -> Optional[str]:
        credential = self._credential
        if credential is not None and self.is_valid(credential.access_token):
            return credential.access_token
        return await self._await_refresh()

    async def refresh_access_token(self) -> Optional[str]:
        """Force a refresh, sharing the in-flight one when there is one."""

        return await self._await_refresh()

    async def _await_refresh(self) -> Optional[str]:
        task = self._refresh_task
        if task is None:
            credential = self._credential
            if credential is None or not credential.refresh_token:
                self._clear("no refresh token available")
                return None
            task = asyncio.get_running_loop().create_task(
                self._run_refresh(credential.refresh_token, self._generation)
            )
            self._refresh_task = task
        return await asyncio.shield(task)

    async def _run_refresh(self, refresh_token: str, generation: int) -> Optional[str]:
        try:
            if self._refresher is None:
                raise CredentialRejected("no refresher configured")
            pair = await self._refresher(refresh_token)
        except (CredentialRejected, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("token refresh failed: %s", exc)
            if generation == self._generation:
                self._clear(str(exc))
            return None
        finally:
            if self._refresh_task is asyncio.current_task():
                self._refresh_task = None

        # Signed out or signed in as someone else while the call was in flight.
        if generation != self._generation:
            logger.info("discarding refresh result for a replaced credential")
            return None
        self._credential = Credential(access_token=pair.access_token, refresh_token=pair.refresh_token)
        self._store.save(pair)
        logger.info("access token refreshed")
        self.events.emit("change", TokenChange(kind=TokenChangeKind.REFRESHED, access_token=pair.access_token))
        return pair.access_token

    def sign_in(self, access_token: str, refresh_token: str | None) -> None:
        self._generation += 1
        self._refresh_task = None
        pair = TokenPair(access_token=access_token, refresh_token=refresh_token)
        self._credential = Credential(access_token=access_token, refresh_token=refresh_token)
        self._store.save(pair)
        self.events.emit("change", TokenChange(kind=TokenChangeKind.SIGNED_IN, access_token=access_token))

    def sign_out(self, reason: str = "sign_out") -> None:
        self._clear(reason)

    def _clear(self, reason: str) -> None:
        self._generation += 1
        self._refresh_task = None
        had_credential = self._credential is not None
        self._credential = None
        self._store.clear()
        if had_credential:
            self.events.emit("change", TokenChange(kind=TokenChangeKind.CLEARED, reason=reason))

    async def close(self) -> None:
        task = self._refresh_task
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self._refresh_task = None
        self.events.clear()
