"""Page-level operations the scraper needs from a browser session."""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from scrape_engine.browser.session import PlaywrightSession
from scrape_engine.config import Settings, settings as default_settings
from scrape_engine.errors import (
    BlockedError,
    NavigationTimeoutError,
    PageLoadError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

# Interactive verification pages
CHALLENGE_INDICATORS = [
    "captcha",
    "verify you are a human",
    "prove you're not a robot",
    "robot check",
    "enter the characters",
    "verifikasi",
]

# Ban / access denied pages
BLOCKED_INDICATORS = [
    "access denied",
    "you have been blocked",
    "request blocked",
    "akses ditolak",
]

AffordanceTarget = Union[str, Sequence[str], Callable[[str], bool]]


@dataclass
class ScrollMetrics:
    """Scroll geometry of the current page, in pixels."""
    position: int
    height: int
    viewport: int

    @property
    def distance_to_bottom(self) -> int:
        return self.height - self.position


class NavigationProvider(Protocol):
    """Minimal browser surface used by the scraper and content loader."""

    async def navigate(self, session, url: str, page=None):
        ...

    async def get_html(self, page) -> str:
        ...

    async def count_matching(self, page, selector: str) -> int:
        ...

    async def trigger_affordance(self, page, target: AffordanceTarget) -> bool:
        ...

    async def scroll_by(self, page, px: int) -> None:
        ...

    async def scroll_to_end(self, page) -> None:
        ...

    async def scroll_to_top(self, page) -> None:
        ...

    async def scroll_to_element(self, page, selector: str) -> bool:
        ...

    async def scroll_metrics(self, page) -> ScrollMetrics:
        ...

    async def wait_for_count_above(self, page, selector: str, previous: int, timeout_ms: int) -> int:
        ...

    async def wait_for_height_above(self, page, previous: int, timeout_ms: int) -> int:
        ...

    async def wait_for_selector(self, page, selector: str, timeout_ms: int) -> bool:
        ...

    async def is_enabled(self, page, selector: str) -> bool:
        ...

    async def page_text(self, page) -> str:
        ...

    async def page_title(self, page) -> str:
        ...

    async def href_of(self, page, selector: str) -> Optional[str]:
        ...

    async def screenshot(self, page, path: str) -> None:
        ...


class PlaywrightNavigator:
    """NavigationProvider backed by Playwright pages."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    async def navigate(self, session: PlaywrightSession, url: str, page: Optional[Page] = None) -> Page:
        """
        Load ``url`` in ``page`` (or a new page of ``session``).

        Args:
            session: Borrowed session
            url: Target URL
            page: Existing page to reuse

        Returns:
            The loaded page

        Raises:
            NavigationTimeoutError: Navigation did not settle in time
            BlockedError: HTTP 403
            RateLimitedError: HTTP 429
            PageLoadError: Any other navigation failure
        """
        if page is None:
            page = await session.new_page()
            page.set_default_timeout(self.settings.page_timeout_ms)

        timeout = self.settings.navigation_timeout_ms
        try:
            response = await page.goto(url, wait_until="networkidle", timeout=timeout)
        except PlaywrightTimeoutError:
            raise NavigationTimeoutError(url, timeout)
        except PlaywrightError as e:
            raise PageLoadError(url, str(e))

        if response is not None:
            if response.status == 403:
                raise BlockedError(f"HTTP 403 from {url}", url)
            if response.status == 429:
                raise RateLimitedError(f"HTTP 429 from {url}", url)
            if response.status >= 400:
                raise PageLoadError(url, f"HTTP {response.status}")

        logger.debug(f"Navigated to {url}")
        return page

    async def get_html(self, page: Page) -> str:
        return await page.content()

    async def count_matching(self, page: Page, selector: str) -> int:
        try:
            return await page.locator(selector).count()
        except PlaywrightError as e:
            logger.debug(f"Count failed for {selector[:50]}: {e}")
            return 0

    async def trigger_affordance(self, page: Page, target: AffordanceTarget) -> bool:
        """
        Click the first visible, enabled control matching ``target``.

        Args:
            page: Playwright page
            target: CSS selector, list of selectors, or a predicate over the
                visible text of buttons and links

        Returns:
            True if something was clicked
        """
        if callable(target):
            return await self._click_by_text(page, target)

        selectors: List[str] = [target] if isinstance(target, str) else list(target)
        for selector in selectors:
            try:
                locator = page.locator(selector).first
                if not await locator.count():
                    continue
                if await locator.is_visible() and await locator.is_enabled():
                    await locator.click(timeout=self.settings.fallback_selector_timeout_ms)
                    logger.debug(f"Clicked affordance: {selector[:50]}")
                    return True
            except PlaywrightError as e:
                logger.debug(f"Affordance {selector[:50]} not clickable: {e}")
                continue
        return False

    async def _click_by_text(self, page: Page, predicate: Callable[[str], bool]) -> bool:
        candidates = page.locator("button, a")
        count = await candidates.count()
        for i in range(count):
            element = candidates.nth(i)
            try:
                text = (await element.inner_text()).strip()
                if not predicate(text):
                    continue
                if await element.is_visible() and await element.is_enabled():
                    await element.click(timeout=self.settings.fallback_selector_timeout_ms)
                    logger.debug(f"Clicked affordance by text: {text[:50]}")
                    return True
            except PlaywrightError:
                continue
        return False

    async def scroll_by(self, page: Page, px: int) -> None:
        await page.evaluate("(d) => window.scrollBy({top: d, behavior: 'smooth'})", px)

    async def scroll_to_end(self, page: Page) -> None:
        await page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")

    async def scroll_to_top(self, page: Page) -> None:
        await page.evaluate("() => window.scrollTo({top: 0, behavior: 'smooth'})")

    async def scroll_to_element(self, page: Page, selector: str) -> bool:
        locator = page.locator(selector).first
        try:
            if not await locator.count():
                return False
            await locator.scroll_into_view_if_needed()
            return True
        except PlaywrightError as e:
            logger.debug(f"Scroll to {selector[:50]} failed: {e}")
            return False

    async def scroll_metrics(self, page: Page) -> ScrollMetrics:
        data = await page.evaluate(
            """() => ({
                position: Math.round(window.scrollY + window.innerHeight),
                height: document.body.scrollHeight,
                viewport: window.innerHeight,
            })"""
        )
        return ScrollMetrics(
            position=int(data["position"]),
            height=int(data["height"]),
            viewport=int(data["viewport"]),
        )

    async def wait_for_count_above(self, page: Page, selector: str, previous: int, timeout_ms: int) -> int:
        """Wait (on DOM mutations) until more than ``previous`` items match, then return the count."""
        try:
            await page.wait_for_function(
                "([s, n]) => document.querySelectorAll(s).length > n",
                arg=[selector, previous],
                polling="mutation",
                timeout=timeout_ms,
            )
        except PlaywrightTimeoutError:
            pass
        return await self.count_matching(page, selector)

    async def wait_for_height_above(self, page: Page, previous: int, timeout_ms: int) -> int:
        """Wait (on DOM mutations) until the document grows past ``previous`` px."""
        try:
            await page.wait_for_function(
                "(h) => document.body.scrollHeight > h",
                arg=previous,
                polling="mutation",
                timeout=timeout_ms,
            )
        except PlaywrightTimeoutError:
            pass
        return await page.evaluate("() => document.body.scrollHeight")

    async def wait_for_selector(self, page: Page, selector: str, timeout_ms: int) -> bool:
        try:
            await page.wait_for_selector(selector, timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            logger.debug(f"Selector timed out: {selector[:50]}")
            return False
        except PlaywrightError as e:
            logger.debug(f"Selector error: {selector[:50]} - {e}")
            return False

    async def is_enabled(self, page: Page, selector: str) -> bool:
        """True if ``selector`` exists and is neither disabled nor styled disabled."""
        element = await page.query_selector(selector)
        if element is None:
            return False
        return not await page.evaluate(
            "(el) => el.disabled || el.classList.contains('disabled')", element
        )

    async def page_text(self, page: Page) -> str:
        try:
            return await page.evaluate("() => document.body.innerText.toLowerCase().substring(0, 5000)")
        except PlaywrightError as e:
            logger.debug(f"Page text read failed (non-fatal): {e}")
            return ""

    async def page_title(self, page: Page) -> str:
        try:
            return await page.title()
        except PlaywrightError:
            return ""

    async def href_of(self, page: Page, selector: str) -> Optional[str]:
        element = await page.query_selector(selector)
        if element is None:
            return None
        return await element.evaluate("(el) => el.href || null")

    async def screenshot(self, page: Page, path: str) -> None:
        await page.screenshot(path=path, full_page=True)
