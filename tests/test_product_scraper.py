"""Tests for the per-job scrape task."""

from unittest.mock import AsyncMock, patch

import pytest

from fakes import FakeExtractor, FakeNavigator, FakeSession, make_settings
from scrape_engine.errors import (
    BlockedError,
    ChallengeError,
    ContentSelectorMissingError,
    PageLoadError,
)
from scrape_engine.queue.models import Job, JobSpec, build_search_url
from scrape_engine.scraper.product_scraper import ProductScraper, with_page_param


def _scraper(navigator, **overrides) -> ProductScraper:
    return ProductScraper(navigator, FakeExtractor(), settings=make_settings(**overrides))


@pytest.mark.asyncio
async def test_scrapes_every_page_and_tags_records():
    navigator = FakeNavigator(counts=[10, 15], next_pages=1)
    job = Job.create(JobSpec(keyword="iphone 15", max_pages=2))

    result = await _scraper(navigator).scrape(FakeSession(), job)

    assert result.success is True
    assert result.pages_scraped == 2
    assert result.total_products == 30
    assert navigator.visited[0] == build_search_url("iphone 15")
    assert "page=2" in navigator.visited[1]

    first, last = result.products[0], result.products[-1]
    assert first["sourcePage"] == 1
    assert last["sourcePage"] == 2
    assert first["keyword"] == "iphone 15"
    assert first["sourceUrl"] == navigator.visited[0]

    wire = result.to_wire()
    assert wire["totalProducts"] == 30
    assert wire["pagesScraped"] == 2
    assert wire["scrapedAt"].endswith("Z")


@pytest.mark.asyncio
async def test_stops_without_next_page():
    navigator = FakeNavigator(counts=[5], next_pages=0)
    job = Job.create(JobSpec(url="https://shop.test/search?q=tv", max_pages=3))

    result = await _scraper(navigator).scrape(FakeSession(), job)

    assert result.pages_scraped == 1
    assert result.total_products == 5
    assert result.keyword is None
    assert navigator.visited == ["https://shop.test/search?q=tv"]


@pytest.mark.asyncio
async def test_missing_selector_on_first_page():
    navigator = FakeNavigator(selector_present=False)
    job = Job.create(JobSpec(keyword="tv"))

    with pytest.raises(ContentSelectorMissingError):
        await _scraper(navigator).scrape(FakeSession(), job)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "text,error",
    [
        ("Please complete the CAPTCHA to continue", ChallengeError),
        ("Access Denied", BlockedError),
    ],
)
async def test_block_pages_raise(text, error):
    navigator = FakeNavigator(text=text)
    job = Job.create(JobSpec(keyword="tv"))

    with pytest.raises(error):
        await _scraper(navigator).scrape(FakeSession(), job)


@pytest.mark.asyncio
async def test_transient_navigation_errors_are_retried():
    navigator = FakeNavigator(
        counts=[4],
        navigate_errors=[PageLoadError("https://x", "HTTP 502")],
    )
    job = Job.create(JobSpec(keyword="tv", max_pages=1))

    with patch("scrape_engine.utils.retry.wait", new=AsyncMock()):
        result = await _scraper(navigator).scrape(FakeSession(), job)

    assert result.total_products == 4


@pytest.mark.asyncio
async def test_permanent_navigation_error_propagates():
    navigator = FakeNavigator(navigate_errors=[BlockedError("HTTP 403", "https://x")])
    job = Job.create(JobSpec(keyword="tv"))

    with patch("scrape_engine.utils.retry.wait", new=AsyncMock()) as waited:
        with pytest.raises(BlockedError):
            await _scraper(navigator).scrape(FakeSession(), job)
    waited.assert_not_awaited()


def test_with_page_param_replaces_existing():
    assert with_page_param("https://x.test/s?q=a&page=2", 3) == "https://x.test/s?q=a&page=3"
    assert with_page_param("https://x.test/s", 2) == "https://x.test/s?page=2"
