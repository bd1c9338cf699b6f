"""Scrape task: walks the search result pages of one job."""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from scrape_engine.browser.navigation import (
    BLOCKED_INDICATORS,
    CHALLENGE_INDICATORS,
    NavigationProvider,
)
from scrape_engine.browser.session import Session
from scrape_engine.config import Settings, settings as default_settings
from scrape_engine.errors import (
    BlockedError,
    ChallengeError,
    ContentSelectorMissingError,
    NavigationTimeoutError,
    PageLoadError,
)
from scrape_engine.parser.extractor import Extractor
from scrape_engine.queue.models import Job, isoformat
from scrape_engine.scraper.auto_scroll import ContentLoader, LoadOptions
from scrape_engine.utils import retry as retry_utils
from scrape_engine.utils.delay import long_pause, random_wait

logger = logging.getLogger(__name__)


@dataclass
class ScrapeResult:
    """Outcome of one scrape job."""
    success: bool
    keyword: Optional[str]
    total_products: int
    pages_scraped: int
    duration_ms: int
    scraped_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    products: List[Dict[str, Any]] = field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "keyword": self.keyword,
            "totalProducts": self.total_products,
            "pagesScraped": self.pages_scraped,
            "durationMs": self.duration_ms,
            "scrapedAt": isoformat(self.scraped_at),
            "products": self.products,
        }


def with_page_param(url: str, page: int) -> str:
    """Return ``url`` with its ``page`` query parameter set to ``page``."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "page"]
    query.append(("page", str(page)))
    return urlunsplit(parts._replace(query=urlencode(query)))


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, (NavigationTimeoutError, PageLoadError)) or retry_utils.is_retryable_error(error)


class ProductScraper:
    """
    Scrapes the listing pages of a job using a borrowed session.

    Per page: navigate, check for block/challenge pages, wait for items,
    load until stable, extract, then follow pagination.
    """

    def __init__(
        self,
        navigator: NavigationProvider,
        extractor: Extractor,
        loader: Optional[ContentLoader] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.navigator = navigator
        self.extractor = extractor
        self.loader = loader or ContentLoader(navigator, self.settings)

    async def scrape(self, session: Session, job: Job) -> ScrapeResult:
        """
        Scrape up to ``job.max_pages`` pages.

        Args:
            session: Session borrowed from the pool
            job: Job to run

        Returns:
            ScrapeResult with every extracted record

        Raises:
            ScrapeError subclasses for navigation, block, challenge and
            missing-content failures
        """
        started = time.monotonic()
        current_url = job.resolved_url
        products: List[Dict[str, Any]] = []
        pages_scraped = 0
        page = None

        logger.info(f"Starting product scrape: {current_url} (max_pages={job.max_pages})")

        try:
            for page_number in range(1, job.max_pages + 1):
                logger.info(f"Scraping page {page_number}/{job.max_pages}: {current_url}")
                page = await self._navigate(session, current_url, page)
                await self._check_page_state(page, current_url)

                selector = await self._find_item_selector(page, current_url, page_number)
                if selector is None:
                    break

                await random_wait(self.settings.page_delay_min_ms, self.settings.page_delay_max_ms)
                load = await self.loader.load_until_stable(
                    page,
                    LoadOptions.from_settings(self.settings, item_selector=selector),
                )
                logger.info(
                    f"Scroll completed on page {page_number}: {load.final_item_count} items, "
                    f"{load.cycles_run} cycles ({load.exit_reason})"
                )

                html = await self.navigator.get_html(page)
                records = self.extractor.extract(html)
                for record in records:
                    record["sourcePage"] = page_number
                    record["sourceUrl"] = current_url
                    record["keyword"] = job.keyword
                products.extend(records)
                pages_scraped = page_number
                logger.info(f"Products extracted from page {page_number}: {len(records)}")

                has_next = await self._has_next_page(page)
                if not has_next or page_number >= job.max_pages:
                    reason = "max_pages" if has_next else "no_next_page"
                    logger.info(f"Stopping pagination at page {page_number} ({reason})")
                    break

                current_url = await self._next_page_url(page, current_url, page_number + 1)
                await random_wait(self.settings.page_delay_min_ms, self.settings.page_delay_max_ms)
        except Exception:
            if page is not None and logger.isEnabledFor(logging.DEBUG):
                await self._debug_screenshot(page)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        result = ScrapeResult(
            success=True,
            keyword=job.keyword,
            total_products=len(products),
            pages_scraped=pages_scraped,
            duration_ms=duration_ms,
            products=products,
        )
        logger.info(
            f"Scraping completed: {result.total_products} products from "
            f"{pages_scraped} page(s) in {duration_ms / 1000:.1f}s"
        )
        return result

    async def _navigate(self, session: Session, url: str, page):
        strategy = retry_utils.FAST

        async def attempt(_: int):
            return await self.navigator.navigate(session, url, page)

        return await retry_utils.retry(
            attempt,
            max_attempts=strategy.max_attempts,
            initial_delay=strategy.initial_delay,
            max_delay=strategy.max_delay,
            factor=strategy.factor,
            is_retryable=_is_transient,
            on_retry=self._on_navigation_retry,
        )

    async def _on_navigation_retry(self, error: BaseException, attempt: int, delay: int) -> None:
        if "net::" in str(error):
            await long_pause()

    async def _check_page_state(self, page, url: str) -> None:
        text = (await self.navigator.page_text(page)).lower()
        for indicator in CHALLENGE_INDICATORS:
            if indicator in text:
                raise ChallengeError(f"Verification page detected on {url} ('{indicator}')", url)
        for indicator in BLOCKED_INDICATORS:
            if indicator in text:
                raise BlockedError(f"Blocked page detected on {url} ('{indicator}')", url)

    async def _find_item_selector(self, page, url: str, page_number: int) -> Optional[str]:
        primary = self.settings.item_selector
        if await self.navigator.wait_for_selector(page, primary, self.settings.selector_timeout_ms):
            return primary

        logger.warning(f"No product cards found on page {page_number} with primary selector")
        for fallback in self.settings.item_selector_fallbacks:
            if await self.navigator.wait_for_selector(page, fallback, self.settings.fallback_selector_timeout_ms):
                logger.info(f"Found products with fallback selector: {fallback}")
                return fallback

        if page_number == 1:
            title = await self.navigator.page_title(page)
            raise ContentSelectorMissingError(
                [primary, *self.settings.item_selector_fallbacks], url, title
            )

        logger.info(f"No items on page {page_number}, stopping pagination")
        return None

    async def _has_next_page(self, page) -> bool:
        for selector in [*self.settings.load_more_selectors, *self.settings.next_page_selectors]:
            try:
                if await self.navigator.is_enabled(page, selector):
                    return True
            except Exception as e:
                logger.debug(f"Next page check failed for {selector}: {e}")
        return False

    async def _next_page_url(self, page, current_url: str, next_page: int) -> str:
        for selector in self.settings.next_page_selectors:
            try:
                href = await self.navigator.href_of(page, selector)
            except Exception as e:
                logger.debug(f"Could not read next link {selector}: {e}")
                continue
            if href:
                return href
        return with_page_param(current_url, next_page)

    async def _debug_screenshot(self, page) -> None:
        path = os.path.join(
            self.settings.screenshot_dir,
            f"error-{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S')}.png",
        )
        try:
            await self.navigator.screenshot(page, path)
            logger.debug(f"Saved error screenshot to {path}")
        except Exception as e:
            logger.debug(f"Error screenshot failed: {e}")
