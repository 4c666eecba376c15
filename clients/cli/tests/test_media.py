import unittest

from aiohttp.test_utils import TestServer

from chat_session.media import MediaResolver
from chat_session.models import MediaRef
from helpers.broker import FakeBroker


class MediaResolverTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.broker = FakeBroker()
        self.server = TestServer(self.broker.create_app())
        await self.server.start_server()
        self.resolver = MediaResolver(str(self.server.make_url("/")), role="trainer")

    async def asyncTearDown(self) -> None:
        await self.server.close()

    async def test_resolves_with_bearer_and_caches(self) -> None:
        first = await self.resolver.resolve("uploads/a.jpg", "tok")
        second = await self.resolver.resolve("uploads/a.jpg", "other")

        self.assertEqual(first, "https://cdn.example.test/uploads/a.jpg?sig=1")
        self.assertEqual(second, first)
        self.assertEqual(self.broker.media_calls, [("uploads/a.jpg", "Bearer tok", "trainer")])
        self.assertEqual(self.resolver.cached("uploads/a.jpg"), first)

    async def test_full_urls_and_empty_keys_skip_lookup(self) -> None:
        self.assertEqual(
            await self.resolver.resolve("https://cdn.example.test/x.png", None),
            "https://cdn.example.test/x.png",
        )
        self.assertIsNone(await self.resolver.resolve("", "tok"))
        self.assertIsNone(await self.resolver.resolve(None, "tok"))
        self.assertEqual(self.broker.media_calls, [])

    async def test_missing_token_returns_none(self) -> None:
        self.assertIsNone(await self.resolver.resolve("uploads/a.jpg", None))
        self.assertEqual(self.broker.media_calls, [])

    async def test_failures_are_not_cached(self) -> None:
        self.broker.media_failures.add("uploads/b.jpg")
        self.assertIsNone(await self.resolver.resolve("uploads/b.jpg", "tok"))

        self.broker.media_failures.clear()
        resolved = await self.resolver.resolve_media(MediaRef("uploads/b.jpg"), "tok")

        self.assertEqual(resolved, "https://cdn.example.test/uploads/b.jpg?sig=1")
        self.assertEqual(len(self.broker.media_calls), 2)

    async def test_unreachable_service_returns_none(self) -> None:
        resolver = MediaResolver("http://127.0.0.1:9", timeout_s=1.0)
        self.assertIsNone(await resolver.resolve("uploads/c.jpg", "tok"))
