"""Tests for the Playwright adapters, using mocked pages and contexts."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from fakes import make_settings
from scrape_engine.browser.navigation import PlaywrightNavigator, ScrollMetrics
from scrape_engine.browser.session import PlaywrightSession, PlaywrightSessionFactory
from scrape_engine.errors import (
    BlockedError,
    NavigationTimeoutError,
    PageLoadError,
    RateLimitedError,
)


def _page(status=200, goto_error=None):
    page = MagicMock()
    if goto_error is not None:
        page.goto = AsyncMock(side_effect=goto_error)
    else:
        page.goto = AsyncMock(return_value=MagicMock(status=status))
    return page


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,error",
    [
        (403, BlockedError),
        (429, RateLimitedError),
        (500, PageLoadError),
    ],
)
async def test_http_status_mapping(status, error):
    navigator = PlaywrightNavigator(make_settings())
    with pytest.raises(error):
        await navigator.navigate(MagicMock(), "https://x.test", _page(status))


@pytest.mark.asyncio
async def test_navigation_errors_are_typed():
    navigator = PlaywrightNavigator(make_settings(navigation_timeout_ms=1234))

    with pytest.raises(NavigationTimeoutError) as excinfo:
        await navigator.navigate(MagicMock(), "https://x.test", _page(goto_error=PlaywrightTimeoutError("slow")))
    assert excinfo.value.timeout_ms == 1234

    with pytest.raises(PageLoadError):
        await navigator.navigate(
            MagicMock(), "https://x.test", _page(goto_error=PlaywrightError("net::ERR_CONNECTION_RESET"))
        )


@pytest.mark.asyncio
async def test_navigate_opens_page_when_none_given():
    navigator = PlaywrightNavigator(make_settings())
    page = _page(200)
    session = MagicMock()
    session.new_page = AsyncMock(return_value=page)

    assert await navigator.navigate(session, "https://x.test") is page
    page.goto.assert_awaited_once()
    assert page.goto.await_args.kwargs["wait_until"] == "networkidle"


def test_scroll_metrics_distance():
    metrics = ScrollMetrics(position=1800, height=2000, viewport=800)
    assert metrics.distance_to_bottom == 200


@pytest.mark.asyncio
async def test_session_reset_clears_state_and_pages():
    page = MagicMock()
    page.evaluate = AsyncMock()
    page.close = AsyncMock()
    context = MagicMock()
    context.clear_cookies = AsyncMock()
    context.pages = [page]
    context.close = AsyncMock()

    session = PlaywrightSession(context)
    await session.reset()

    context.clear_cookies.assert_awaited_once()
    page.evaluate.assert_awaited_once()
    page.close.assert_awaited_once()

    await session.close()
    assert session.alive is False
    context.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_force_kill_stops_driver():
    factory = PlaywrightSessionFactory(make_settings())
    playwright = MagicMock()
    playwright.stop = AsyncMock()
    factory._playwright = playwright

    await factory.force_kill()

    playwright.stop.assert_awaited_once()
    assert factory._playwright is None
    # nothing left to kill
    await factory.force_kill()
