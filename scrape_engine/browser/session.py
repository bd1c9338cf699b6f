"""Browser sessions and the factories that create them."""

import asyncio
import itertools
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from scrape_engine.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


class Session:
    """
    One isolated execution context owned by the session pool.

    Subclasses bind it to a concrete runtime (a Playwright browser context,
    a remote browser, a container). The pool only relies on ``reset`` and
    ``close``.
    """

    def __init__(self):
        self.id = f"session-{next(_session_ids)}"
        self.created_at = datetime.now(timezone.utc)
        self.alive = True
        self.busy = False

    async def reset(self) -> None:
        """Clear transient state (cookies, local/session storage)."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release the underlying context."""
        self.alive = False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} alive={self.alive} busy={self.busy}>"


class SessionFactory(Protocol):
    """Creates sessions and owns the process(es) behind them."""

    async def start(self) -> None:
        ...

    async def create_session(self) -> Session:
        ...

    async def close(self) -> None:
        ...

    async def force_kill(self) -> None:
        ...


class PlaywrightSession(Session):
    """Session backed by an isolated Playwright browser context."""

    def __init__(self, context: BrowserContext):
        super().__init__()
        self.context = context

    async def new_page(self) -> Page:
        """Open a new tab in this context."""
        return await self.context.new_page()

    async def reset(self) -> None:
        """Clear cookies and storage, then close every open page."""
        await self.context.clear_cookies()

        for page in list(self.context.pages):
            try:
                await page.evaluate(
                    """() => {
                        try {
                            localStorage.clear();
                            sessionStorage.clear();
                        } catch (e) {}
                    }"""
                )
            except Exception as e:
                logger.debug(f"Storage cleanup failed on {self.id}: {e}")
            await page.close()

    async def close(self) -> None:
        """Close the browser context."""
        self.alive = False
        await self.context.close()


class PlaywrightSessionFactory:
    """
    Launches one Chromium process and hands out isolated contexts.

    Each session is a separate ``BrowserContext`` so cookies and storage
    never leak between concurrently running tasks.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._init_lock = asyncio.Lock()

    async def start(self) -> None:
        """Start Playwright and launch the browser."""
        async with self._init_lock:
            if self._browser is not None:
                return

            if self._playwright is None:
                self._playwright = await async_playwright().start()

            launch_options = {
                "headless": self.settings.headless,
                "args": list(self.settings.browser_args),
            }
            if self.settings.browser_executable_path:
                launch_options["executable_path"] = self.settings.browser_executable_path

            self._browser = await self._playwright.chromium.launch(**launch_options)
            logger.info(
                f"Launched Chromium (headless={self.settings.headless}, "
                f"args={len(launch_options['args'])})"
            )

    async def create_session(self) -> PlaywrightSession:
        """Create a new isolated context."""
        if self._browser is None:
            await self.start()

        context = await self._browser.new_context(
            viewport={
                "width": self.settings.viewport_width,
                "height": self.settings.viewport_height,
            },
        )
        context.set_default_navigation_timeout(self.settings.navigation_timeout_ms)
        context.set_default_timeout(self.settings.selector_timeout_ms)
        session = PlaywrightSession(context)
        logger.debug(f"Created {session.id}")
        return session

    async def close(self) -> None:
        """Close browser and stop Playwright."""
        if self._browser:
            await self._browser.close()
            self._browser = None

        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

    async def force_kill(self) -> None:
        """
        Terminate the Playwright driver and its browsers without the close protocol.

        Stopping the driver tears down the browser processes it launched. If the
        stop itself hangs, the driver subprocess is killed directly.
        """
        playwright = self._playwright
        self._browser = None
        self._playwright = None

        if playwright is None:
            return

        logger.warning("Force killing browser processes")
        try:
            await asyncio.wait_for(playwright.stop(), timeout=5.0)
            return
        except Exception as e:
            logger.error(f"Playwright stop failed during force kill: {e}")

        proc = _driver_process(playwright)
        if proc is not None and proc.returncode is None:
            proc.kill()
            logger.warning(f"Killed Playwright driver process (pid={proc.pid})")


def _driver_process(playwright: Playwright):
    """Best-effort lookup of the Playwright driver subprocess."""
    impl = getattr(playwright, "_impl_obj", None)
    connection = getattr(impl, "_connection", None)
    transport = getattr(connection, "_transport", None)
    return getattr(transport, "_proc", None)
