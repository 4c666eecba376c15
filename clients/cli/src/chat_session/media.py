"""Resolve opaque media keys carried by image messages into viewable URLs."""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from typing import Dict, Optional

import aiohttp

from .models import MediaRef, is_full_url

logger = logging.getLogger(__name__)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


class MediaResolver:
    """Per-session cache of ``key -> signed URL``.

    Only successful lookups are cached; a failed lookup returns None and is
    retried on the next call.
    """

    def __init__(
        self,
        api_url: str,
        *,
        role: str = "client",
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self.api_url = api_url
        self.role = role
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._cache: Dict[str, str] = {}

    def cached(self, key: str) -> Optional[str]:
        return self._cache.get(key)

    def clear(self) -> None:
        self._cache.clear()

    async def resolve_media(self, media: MediaRef | None, token: str | None) -> Optional[str]:
        if media is None:
            return None
        return await self.resolve(media.key, token)

    async def resolve(self, key: str | None, token: str | None) -> Optional[str]:
        if not key:
            return None
        if is_full_url(key):
            return key
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        if not token:
            return None

        if self._session is not None:
            url = await self._fetch(self._session, key, token)
        else:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                url = await self._fetch(session, key, token)
        if url is not None:
            self._cache[key] = url
        return url

    async def _fetch(self, session: aiohttp.ClientSession, key: str, token: str) -> Optional[str]:
        url = _build_url(self.api_url, f"/api/aws/media/{urllib.parse.quote(key, safe='')}")
        headers = {"Authorization": f"Bearer {token}", "role": self.role}
        try:
            async with session.get(url, headers=headers, timeout=self._timeout) as response:
                if response.status != 200:
                    logger.debug("media lookup for %s returned HTTP %d", key, response.status)
                    return None
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.debug("media lookup for %s failed: %s", key, exc)
            return None
        signed = data.get("url") if isinstance(data, dict) else None
        if not isinstance(signed, str) or not signed:
            return None
        return signed
