"""Tests for the Chromium pool: slot accounting, routing and cleanup."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from article_harvest.config import Settings
from article_harvest.core.exceptions import BrowserPoolExhaustedError
from article_harvest.services.browser import (
    BrowserPool,
    _build_stealth_script,
    _setup_route_blocking,
    is_blocked_request,
)


def _pool(size: int = 1, slot_timeout: float = 0.05) -> tuple[BrowserPool, MagicMock, MagicMock]:
    pool = BrowserPool(Settings(BROWSER_POOL_SIZE=size, BROWSER_SLOT_TIMEOUT=slot_timeout))
    pool.initialize = AsyncMock()
    pool._semaphore = asyncio.Semaphore(size)

    page = MagicMock()
    page.close = AsyncMock()
    context = MagicMock()
    context.route = AsyncMock()
    context.add_init_script = AsyncMock()
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()
    pool._chromium = MagicMock()
    pool._chromium.new_context = AsyncMock(return_value=context)
    return pool, context, page


class TestRequestBlocking:
    def test_substring_match(self):
        domains = ["doubleclick.net", "googletagmanager.com"]
        assert is_blocked_request("https://securepubads.g.doubleclick.net/tag/js/gpt.js", domains)
        assert is_blocked_request("https://www.googletagmanager.com/gtm.js?id=GTM-1", domains)
        assert not is_blocked_request("https://cdn.example.com/app.js", domains)

    @pytest.mark.asyncio
    async def test_route_handler_aborts_blocked(self):
        context = MagicMock()
        context.route = AsyncMock()
        await _setup_route_blocking(context, ["doubleclick.net"])
        handler = context.route.await_args.args[1]

        blocked = MagicMock(abort=AsyncMock(), continue_=AsyncMock())
        await handler(blocked, MagicMock(url="https://ad.doubleclick.net/x"))
        blocked.abort.assert_awaited_once()
        blocked.continue_.assert_not_awaited()

        allowed = MagicMock(abort=AsyncMock(), continue_=AsyncMock())
        await handler(allowed, MagicMock(url="https://example.com/story"))
        allowed.continue_.assert_awaited_once()

    def test_stealth_script_embeds_fingerprint(self):
        script = _build_stealth_script(["doubleclick.net"], "Intel Inc.", "Intel Iris OpenGL Engine", 8, 16)
        assert '["doubleclick.net"]' in script
        assert "webdriver" in script
        assert '"Intel Iris OpenGL Engine"' in script


class TestBrowserPool:
    @pytest.mark.asyncio
    async def test_page_lifecycle(self):
        pool, context, page = _pool()

        async with pool.get_page() as yielded:
            assert yielded is page
            assert pool._semaphore.locked()

        context.route.assert_awaited_once()
        context.add_init_script.assert_awaited_once()
        page.close.assert_awaited_once()
        context.close.assert_awaited_once()
        assert not pool._semaphore.locked()

    @pytest.mark.asyncio
    async def test_without_stealth(self):
        pool, context, _ = _pool()
        async with pool.get_page(stealth=False):
            pass
        context.add_init_script.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slot_released_on_error(self):
        pool, context, page = _pool()

        with pytest.raises(RuntimeError):
            async with pool.get_page():
                raise RuntimeError("capture failed")

        context.close.assert_awaited_once()
        assert not pool._semaphore.locked()

    @pytest.mark.asyncio
    async def test_cleanup_tolerates_dead_browser(self):
        pool, context, page = _pool()
        page.close.side_effect = RuntimeError("Target closed")

        async with pool.get_page():
            pass

        context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exhausted(self):
        pool, _, _ = _pool(size=1)

        async with pool.get_page():
            with pytest.raises(BrowserPoolExhaustedError):
                async with pool.get_page():
                    pass

        assert not pool._semaphore.locked()

    @pytest.mark.asyncio
    async def test_waiter_gets_released_slot(self):
        pool, _, _ = _pool(size=1, slot_timeout=1.0)
        order = []

        async def hold():
            async with pool.get_page():
                order.append("first")
                await asyncio.sleep(0.05)

        async def wait():
            await asyncio.sleep(0.01)
            async with pool.get_page():
                order.append("second")

        await asyncio.gather(hold(), wait())
        assert order == ["first", "second"]
