"""
Human-like incremental scrolling for infinite-scroll listings.

The loader scrolls in small, randomized steps and watches the item count
(or the document height when no item selector is usable) until one of:

- the requested minimum number of items is present
- the count stopped growing for ``max_stall_cycles`` consecutive cycles
- the cycle limit is reached
- the time budget is spent

All four are successful exits; the caller gets whatever loaded.
"""

import logging
import random
import time
from dataclasses import asdict, dataclass, field
from typing import Any, List, Optional, Sequence

from scrape_engine import metrics
from scrape_engine.browser.navigation import NavigationProvider
from scrape_engine.config import Settings, settings as default_settings
from scrape_engine.utils.delay import random_int, random_wait

logger = logging.getLogger(__name__)

EXIT_MIN_ITEMS = "min_items"
EXIT_MAX_CYCLES = "max_cycles"
EXIT_STALLED = "stalled"
EXIT_TIME_LIMIT = "time_limit"

# Stalls required before the escalated scroll-to-end attempt
ESCALATE_AFTER_STALLS = 2


@dataclass
class LoadOptions:
    """Parameters for one content-loading run."""
    item_selector: Optional[str] = None
    min_items: int = 0
    max_cycles: int = 30
    max_stall_cycles: int = 3
    observe_timeout_ms: int = 3000
    escalated_observe_timeout_ms: int = 6000
    load_more_selectors: Sequence[str] = ()
    max_duration_seconds: float = 180

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "LoadOptions":
        values = dict(
            item_selector=settings.item_selector,
            min_items=settings.scroll_min_items,
            max_cycles=settings.max_scrolls,
            max_stall_cycles=settings.max_stall_cycles,
            observe_timeout_ms=settings.observe_timeout_ms,
            escalated_observe_timeout_ms=settings.escalated_observe_timeout_ms,
            load_more_selectors=list(settings.load_more_selectors),
            max_duration_seconds=settings.scroll_max_duration_seconds,
        )
        values.update(overrides)
        return cls(**values)


@dataclass
class CycleTrace:
    """What happened in a single scroll cycle."""
    cycle: int
    item_count: int
    increased: bool
    stall_count: int
    escalated: bool = False
    affordance_used: bool = False


@dataclass
class ScrollState:
    """Mutable progress of a run."""
    observed: int = 0
    stall_count: int = 0
    cycle: int = 0
    started_at: float = field(default_factory=time.monotonic)
    last_credit_cycle: Optional[int] = None

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at


@dataclass
class LoadResult:
    """Outcome of ``ContentLoader.load_until_stable``."""
    cycles_run: int
    final_item_count: int
    stalled_at_end: bool
    exit_reason: str
    duration_ms: int
    confidence: str = "high"
    trace: List[CycleTrace] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class ContentLoader:
    """
    Drives progressive loading of a page through a NavigationProvider.

    Cycles are strictly sequential: each one scrolls, waits, and observes
    before the next one starts.
    """

    def __init__(
        self,
        navigator: NavigationProvider,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.navigator = navigator
        self.settings = settings or default_settings
        self.rng = rng or random.Random()

    async def load_until_stable(self, page, options: Optional[LoadOptions] = None) -> LoadResult:
        """
        Scroll until the listing stops growing or a limit is hit.

        Args:
            page: Page handle understood by the navigator
            options: Run parameters (defaults from settings)

        Returns:
            LoadResult with the exit reason and a per-cycle trace
        """
        options = options or LoadOptions.from_settings(self.settings)
        state = ScrollState()
        trace: List[CycleTrace] = []

        use_items = bool(options.item_selector)
        if use_items:
            state.observed = await self.navigator.count_matching(page, options.item_selector)
            if state.observed == 0:
                use_items = False

        confidence = "high"
        if not use_items:
            confidence = "low"
            state.observed = (await self.navigator.scroll_metrics(page)).height
            logger.warning(
                f"No item baseline for {options.item_selector!r}, "
                f"falling back to document height (low confidence)"
            )

        logger.info(
            f"Starting auto-scroll (baseline={state.observed}, "
            f"max_cycles={options.max_cycles}, min_items={options.min_items})"
        )

        exit_reason = EXIT_MAX_CYCLES
        while state.cycle < options.max_cycles:
            if state.elapsed_seconds >= options.max_duration_seconds:
                exit_reason = EXIT_TIME_LIMIT
                break

            state.cycle += 1
            await self._human_scroll(page)
            current = await self._observe(page, options, use_items, state.observed, options.observe_timeout_ms)

            escalated = False
            affordance_used = False
            if current <= state.observed:
                geometry = await self.navigator.scroll_metrics(page)
                near_bottom = geometry.distance_to_bottom <= self.settings.near_bottom_threshold_px

                if near_bottom and state.stall_count + 1 >= ESCALATE_AFTER_STALLS:
                    escalated = True
                    logger.debug(f"Cycle {state.cycle}: escalated scroll to end")
                    await self.navigator.scroll_to_end(page)
                    current = await self._observe(
                        page, options, use_items, state.observed, options.escalated_observe_timeout_ms
                    )

                if current <= state.observed and self._can_use_credit(state, options):
                    if await self.navigator.trigger_affordance(page, list(options.load_more_selectors)):
                        affordance_used = True
                        state.last_credit_cycle = state.cycle
                        logger.debug(f"Cycle {state.cycle}: triggered load-more control")
                        current = await self._observe(
                            page, options, use_items, state.observed, options.observe_timeout_ms
                        )

            increased = current > state.observed
            if increased:
                state.observed = current
                state.stall_count = 0
            elif not affordance_used:
                state.stall_count += 1

            trace.append(
                CycleTrace(
                    cycle=state.cycle,
                    item_count=state.observed,
                    increased=increased,
                    stall_count=state.stall_count,
                    escalated=escalated,
                    affordance_used=affordance_used,
                )
            )

            if increased and use_items and options.min_items > 0 and state.observed >= options.min_items:
                exit_reason = EXIT_MIN_ITEMS
                break

            if state.stall_count >= options.max_stall_cycles:
                exit_reason = EXIT_STALLED
                break

            if state.cycle % 10 == 0:
                logger.debug(f"Scroll progress: cycle={state.cycle}, observed={state.observed}")

        final_count = 0
        if options.item_selector:
            final_count = await self.navigator.count_matching(page, options.item_selector)

        result = LoadResult(
            cycles_run=state.cycle,
            final_item_count=final_count,
            stalled_at_end=exit_reason == EXIT_STALLED,
            exit_reason=exit_reason,
            duration_ms=int(state.elapsed_seconds * 1000),
            confidence=confidence,
            trace=trace,
        )
        metrics.record_scroll_run(exit_reason, state.cycle)
        logger.info(
            f"Auto-scroll completed: {exit_reason} after {state.cycle} cycles "
            f"({final_count} items, {result.duration_ms}ms)"
        )
        return result

    def _can_use_credit(self, state: ScrollState, options: LoadOptions) -> bool:
        if not options.load_more_selectors:
            return False
        return state.last_credit_cycle is None or state.last_credit_cycle != state.cycle - 1

    async def _observe(self, page, options: LoadOptions, use_items: bool, previous: int, timeout_ms: int) -> int:
        if use_items:
            return await self.navigator.wait_for_count_above(page, options.item_selector, previous, timeout_ms)
        return await self.navigator.wait_for_height_above(page, previous, timeout_ms)

    async def _human_scroll(self, page) -> None:
        """One variable-distance scroll with randomized pauses."""
        s = self.settings
        await self.navigator.scroll_by(page, random_int(s.scroll_increment_min_px, s.scroll_increment_max_px, self.rng))
        await random_wait(s.scroll_delay_min_ms, s.scroll_delay_max_ms, self.rng)

        if self.rng.random() < s.scroll_pause_probability:
            logger.debug("Taking reading pause")
            await random_wait(s.scroll_pause_min_ms, s.scroll_pause_max_ms, self.rng)

        if self.rng.random() < s.reverse_scroll_probability:
            up = random_int(s.reverse_scroll_min_px, s.reverse_scroll_max_px, self.rng)
            await self.navigator.scroll_by(page, -up)
            await random_wait(s.scroll_delay_min_ms // 2, s.scroll_delay_min_ms, self.rng)


async def scroll_to_element(navigator: NavigationProvider, page, selector: str, settings: Optional[Settings] = None) -> bool:
    """Bring the first match of ``selector`` into view, then pause briefly."""
    s = settings or default_settings
    if not await navigator.scroll_to_element(page, selector):
        logger.debug(f"Element not found for scroll: {selector}")
        return False
    await random_wait(s.scroll_delay_min_ms // 2, s.scroll_delay_min_ms)
    return True


async def scroll_to_top(navigator: NavigationProvider, page, settings: Optional[Settings] = None) -> None:
    """Scroll back to the top of the page."""
    s = settings or default_settings
    await navigator.scroll_to_top(page)
    await random_wait(s.scroll_delay_min_ms // 2, s.scroll_delay_min_ms)
