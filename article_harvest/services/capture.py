"""Progressive browser capture (tier 2).

A capture attempt walks the page through a fixed pipeline (navigate, DOM
ready, challenge wait, ready state, network idle, content selectors, consent,
scroll, paywall, stability) and records an ``HTMLSnapshot`` at each
checkpoint into a per-request arena. Every stage is bounded by the active
``TimeBudget`` and may be skipped when time runs short. When the budget
expires mid-attempt the attempt is abandoned and the snapshots already in the
arena are used, so a slow page still yields its best partial HTML.
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field

from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from article_harvest.config import Settings, settings as default_settings
from article_harvest.core.exceptions import NoSnapshotError
from article_harvest.core.metrics import capture_attempts_total, capture_snapshots_total
from article_harvest.core.patterns import Patterns, get_patterns
from article_harvest.services.browser import BrowserPool, browser_pool
from article_harvest.services.budget import TimeBudget

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Snapshot stages
# ---------------------------------------------------------------------------

STAGE_INITIAL = "initial"
STAGE_AFTER_CONSENT = "after-consent"
STAGE_AFTER_SCROLL = "after-scroll"
STAGE_PERIODIC = "periodic"
STAGE_STABILITY_CHECK = "stability-check"
STAGE_STABLE = "stable"
STAGE_STABLE_TIMEOUT = "stable-timeout"
STAGE_STABLE_INTERRUPTED = "stable-interrupted"
STAGE_MINIMAL = "minimal"
STAGE_MINIMAL_FALLBACK = "minimal-fallback"
STAGE_JS_FETCH_FALLBACK = "js-fetch-fallback"
STAGE_FALLBACK = "fallback"
STAGE_FINAL_FALLBACK = "final-fallback"

STAGE_PRIORITY = {
    STAGE_STABLE: 6,
    STAGE_STABLE_TIMEOUT: 5,
    STAGE_STABLE_INTERRUPTED: 4,
    STAGE_AFTER_SCROLL: 3,
    STAGE_AFTER_CONSENT: 2,
    STAGE_PERIODIC: 1,
    STAGE_INITIAL: 0,
    STAGE_MINIMAL: 0,
    STAGE_STABILITY_CHECK: 0,
    STAGE_FALLBACK: -1,
    STAGE_MINIMAL_FALLBACK: -1,
    STAGE_JS_FETCH_FALLBACK: -2,
    STAGE_FINAL_FALLBACK: -2,
}

# Best snapshot from one of these means the pipeline got far enough
COMPLETE_STAGES = frozenset(
    {STAGE_STABLE, STAGE_STABLE_TIMEOUT, STAGE_AFTER_SCROLL, STAGE_AFTER_CONSENT}
)

# ---------------------------------------------------------------------------
# In-page scripts
# ---------------------------------------------------------------------------

READY_STATE_SCRIPT = "document.readyState"

SCROLL_TO_SCRIPT = "(y) => window.scrollTo(0, y)"

CONTENT_SELECTOR_SCRIPT = """
([selectors, minText]) => {
    for (const selector of selectors) {
        const el = document.querySelector(selector);
        if (el) {
            const text = el.textContent || el.innerText || '';
            if (text.trim().length > minText) {
                return true;
            }
        }
    }
    return false;
}
"""

CONSENT_SCRIPT = """
(selectors) => {
    for (const selector of selectors) {
        const el = document.querySelector(selector);
        if (el && el.offsetParent !== null) {
            el.click();
            return true;
        }
    }
    const candidates = document.querySelectorAll('button, a, div[role="button"]');
    for (const btn of candidates) {
        const text = (btn.textContent || btn.innerText || '').toLowerCase().trim();
        const wanted = ['accept', 'consent', 'agree', 'continue'].some(w => text.includes(w));
        const unwanted = text.includes('decline') || text.includes('reject');
        if (wanted && !unwanted && btn.offsetParent !== null) {
            btn.click();
            return true;
        }
    }
    return false;
}
"""

PAYWALL_SCRIPT = """
(selectors) => {
    let found = false;
    for (const selector of selectors) {
        const elements = document.querySelectorAll(selector);
        if (elements.length > 0) {
            found = true;
            elements.forEach(el => {
                if (el.style) {
                    el.style.display = 'none';
                    el.style.visibility = 'hidden';
                }
                if (el.parentNode) {
                    el.parentNode.removeChild(el);
                }
            });
        }
    }
    if (document.body && document.body.style) {
        document.body.style.overflow = 'auto';
        document.body.style.position = 'static';
    }
    document.querySelectorAll('[class*="backdrop"], [class*="overlay"], [class*="modal-backdrop"]')
        .forEach(el => { if (el.style) el.style.display = 'none'; });
    return found;
}
"""

JS_FETCH_SCRIPT = """
async (url) => {
    try {
        const response = await fetch(url, {
            method: 'GET',
            headers: {
                'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
                'Accept-Language': 'en-US,en;q=0.9',
            },
        });
        if (response.ok) {
            return await response.text();
        }
    } catch (e) {}
    return '';
}
"""


@dataclass(frozen=True)
class HTMLSnapshot:
    html: str
    url: str
    timestamp: float
    stage: str
    length: int

    @classmethod
    def create(cls, html: str, url: str, stage: str) -> "HTMLSnapshot":
        return cls(html=html, url=url, timestamp=time.time(), stage=stage, length=len(html.strip()))

    def with_stage(self, stage: str) -> "HTMLSnapshot":
        return dataclasses.replace(self, stage=stage, timestamp=time.time())


@dataclass
class CaptureResult:
    snapshot: HTMLSnapshot
    final_url: str
    snapshots: list[HTMLSnapshot]
    attempts: int
    challenge_unresolved: bool = False
    navigation_error: str | None = None
    degraded: bool = False

    @property
    def html(self) -> str:
        return self.snapshot.html


@dataclass
class _AttemptState:
    """Mutable per-attempt bookkeeping; survives abandonment of the attempt task."""

    stage_html: dict[str, str] = field(default_factory=dict)
    current_url: str = ""
    recorded: int = 0
    navigation_error: str | None = None
    challenge_unresolved: bool = False


def select_best_snapshot(
    snapshots: list[HTMLSnapshot],
    patterns: Patterns,
    app_error_max_length: int = 1000,
    min_length: int = 0,
) -> HTMLSnapshot | None:
    """Highest stage priority wins, longer HTML breaks ties.

    Short pages that read like an application error are never chosen.
    Snapshots under ``min_length`` (blank documents left by a failed
    navigation) only compete when nothing longer exists.
    """
    substantial = [s for s in snapshots if s.length >= min_length]
    best: HTMLSnapshot | None = None
    best_priority = None
    for snap in substantial or snapshots:
        if snap.length < app_error_max_length and patterns.looks_like_app_error(snap.html):
            continue
        priority = STAGE_PRIORITY.get(snap.stage, 0)
        if best is None or priority > best_priority or (
            priority == best_priority and snap.length > best.length
        ):
            best = snap
            best_priority = priority
    return best


def adaptive_wait(remaining: float, ceiling: float, floor: float, reserve: float) -> float:
    """``min(ceiling, remaining - reserve)`` but never below ``floor``."""
    return max(min(ceiling, remaining - reserve), floor)


class CaptureEngine:
    def __init__(self, pool: BrowserPool | None = None, settings: Settings | None = None):
        self.pool = pool or browser_pool
        self.settings = settings or default_settings
        self.patterns = get_patterns(self.settings)

    def max_retries(self, remaining: float) -> int:
        retries = self.settings.CAPTURE_MAX_RETRIES
        if remaining < self.settings.CAPTURE_RETRY_LOW_BELOW:
            return 1
        if remaining < self.settings.CAPTURE_RETRY_MEDIUM_BELOW:
            return max(1, retries - 1)
        return retries

    async def capture(self, url: str, budget: TimeBudget) -> CaptureResult:
        """Capture the page, retrying attempts that produced nothing.

        Raises NoSnapshotError when every attempt came back empty, and
        BrowserPoolExhaustedError when no browser slot frees up in time.
        """
        arena: list[HTMLSnapshot] = []
        max_retries = self.max_retries(budget.remaining())
        attempts = 0
        final_url = ""
        navigation_error = None
        challenge_unresolved = False

        async with self.pool.get_page() as page:
            for attempt in range(max_retries):
                if attempt > 0:
                    backoff = budget.cap(self.settings.CAPTURE_BACKOFF_BASE ** attempt)
                    logger.info(
                        f"Retrying capture of {url} (attempt {attempt + 1}/{max_retries}) "
                        f"after {backoff:.1f}s backoff"
                    )
                    await asyncio.sleep(backoff)
                    if budget.expired:
                        break

                attempts += 1
                pooled = len(arena)
                state = await self._run_attempt(page, url, budget, arena)
                final_url = state.current_url or final_url
                navigation_error = state.navigation_error or navigation_error
                challenge_unresolved = challenge_unresolved or state.challenge_unresolved

                reason = self._retry_reason(state, arena[pooled:])
                if reason is None:
                    capture_attempts_total.labels(outcome="success").inc()
                    break
                capture_attempts_total.labels(outcome=reason).inc()
                logger.warning(f"Capture attempt {attempt + 1}/{max_retries} for {url} needs a retry ({reason})")
                if budget.expired:
                    break

        best = select_best_snapshot(
            arena, self.patterns, self.settings.APP_ERROR_MAX_LENGTH, self.settings.MIN_HTML_LENGTH
        )
        if best is None:
            raise NoSnapshotError(
                f"No usable snapshot for {url} after {attempts} attempt(s) "
                f"({len(arena)} snapshot(s) captured)"
            )

        degraded = challenge_unresolved or best.stage not in COMPLETE_STAGES
        logger.info(
            f"Capture complete for {url}: best stage={best.stage}, length={best.length}, "
            f"snapshots={len(arena)}, attempts={attempts}, degraded={degraded}"
        )
        return CaptureResult(
            snapshot=best,
            final_url=best.url or final_url or url,
            snapshots=arena,
            attempts=attempts,
            challenge_unresolved=challenge_unresolved,
            navigation_error=navigation_error,
            degraded=degraded,
        )

    def is_transient_error(self, error: str | None) -> bool:
        if not error:
            return False
        error = error.lower()
        return any(marker in error for marker in self.settings.CAPTURE_TRANSIENT_ERROR_MARKERS)

    def _retry_reason(self, state: _AttemptState, recorded: list[HTMLSnapshot]) -> str | None:
        """Why an attempt should be retried, or None when it succeeded.

        Snapshots of a retried attempt stay in the arena either way.
        """
        if not recorded:
            return "empty"
        if self.is_transient_error(state.navigation_error):
            return "transient"
        if max(s.length for s in recorded) < self.settings.MIN_HTML_LENGTH:
            return "minimal"
        return None

    async def _run_attempt(
        self, page: Page, url: str, budget: TimeBudget, arena: list[HTMLSnapshot]
    ) -> _AttemptState:
        state = _AttemptState()
        attempt_budget = budget.child(budget.remaining())
        try:
            await asyncio.wait_for(
                self._pipeline(page, url, attempt_budget, arena, state),
                timeout=budget.remaining(),
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Capture attempt for {url} abandoned at deadline with {state.recorded} snapshot(s)"
            )

        if state.recorded == 0:
            await self._fallbacks(page, url, budget, arena, state)
        return state

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _pipeline(
        self,
        page: Page,
        url: str,
        budget: TimeBudget,
        arena: list[HTMLSnapshot],
        state: _AttemptState,
    ):
        cfg = self.settings
        logger.info(f"Starting progressive capture for {url} ({budget!r})")

        nav_timeout = adaptive_wait(
            budget.remaining(), cfg.NAVIGATION_TIMEOUT, cfg.NAVIGATION_MIN_TIMEOUT, cfg.CAPTURE_STAGE_RESERVE
        )
        await self._navigate(page, url, nav_timeout, budget, state)

        dom_wait = cfg.DOM_READY_TIMEOUT
        if budget.remaining() < cfg.DOM_READY_TIMEOUT + cfg.DOM_READY_SHORT_TIMEOUT:
            dom_wait = cfg.DOM_READY_SHORT_TIMEOUT
        periodic = asyncio.create_task(self._capture_periodically(page, budget, arena, state))
        try:
            await self._wait_for_dom_ready(page, dom_wait, budget)
        finally:
            periodic.cancel()
            try:
                await periodic
            except asyncio.CancelledError:
                pass

        await self._capture(page, STAGE_INITIAL, budget, arena, state)
        await self._wait_for_challenge(page, budget, state)
        await self._wait_for_ready_state(page, budget)
        await self._wait_for_network_idle(page, budget)
        await self._wait_for_content_selectors(page, budget)
        await self._dismiss_consent(page, budget)
        await self._pause(cfg.CONSENT_SETTLE, budget)
        await self._capture(page, STAGE_AFTER_CONSENT, budget, arena, state)
        await self._scroll(page, budget)
        await self._capture(page, STAGE_AFTER_SCROLL, budget, arena, state)
        await self._remove_paywall(page, budget)

        max_wait = adaptive_wait(
            budget.remaining(), cfg.CHALLENGE_MAX_WAIT, cfg.STABILITY_MIN_WAIT, cfg.CAPTURE_STAGE_RESERVE
        )
        await self._wait_for_stability(page, max_wait, budget, arena, state)

        if page.url:
            state.current_url = page.url

    async def _navigate(self, page, url, timeout, budget, state):
        timeout = budget.cap(timeout)
        try:
            await asyncio.wait_for(
                page.goto(url, wait_until="commit", timeout=timeout * 1000),
                timeout=timeout,
            )
        except (PlaywrightTimeoutError, asyncio.TimeoutError):
            logger.info(f"Navigation to {url} timed out after {timeout:.1f}s, capturing anyway")
        except Exception as e:
            state.navigation_error = str(e)
            logger.warning(f"Navigation to {url} failed (will try to capture anyway): {e}")

    async def _wait_for_dom_ready(self, page, timeout, budget):
        timeout = budget.cap(timeout)
        try:
            await asyncio.wait_for(
                page.wait_for_load_state("domcontentloaded", timeout=timeout * 1000),
                timeout=timeout,
            )
        except (PlaywrightTimeoutError, asyncio.TimeoutError):
            logger.debug(f"DOMContentLoaded not reached within {timeout:.1f}s")
        except Exception as e:
            logger.debug(f"DOM ready wait failed: {e}")

    async def _capture_periodically(self, page, budget, arena, state):
        cfg = self.settings
        deadline = budget.clock() + cfg.PERIODIC_CAPTURE_MAX
        while budget.clock() < deadline and not budget.expired:
            snap = await self._capture(page, STAGE_PERIODIC, budget, arena, state)
            if snap is not None and snap.length > cfg.PERIODIC_CAPTURE_TARGET_LENGTH:
                logger.debug(f"Periodic capture got {snap.length} chars, stopping early")
                return
            await self._pause(min(cfg.PERIODIC_CAPTURE_INTERVAL, max(0.0, deadline - budget.clock())), budget)

    async def _wait_for_challenge(self, page, budget, state):
        cfg = self.settings
        html = await self._content(page, budget)
        if not html or not self.patterns.looks_like_challenge(html):
            return

        max_wait = budget.cap(
            adaptive_wait(budget.remaining(), cfg.CHALLENGE_MAX_WAIT, cfg.CHALLENGE_MIN_WAIT, cfg.CAPTURE_STAGE_RESERVE)
        )
        logger.info(f"Challenge page detected, waiting up to {max_wait:.1f}s for resolution")
        deadline = budget.clock() + max_wait
        while budget.clock() < deadline and not budget.expired:
            await self._pause(min(cfg.CHALLENGE_POLL_INTERVAL, max(0.0, deadline - budget.clock())), budget)
            html = await self._content(page, budget)
            if html and not self.patterns.looks_like_challenge(html):
                logger.info("Challenge resolved")
                return

        state.challenge_unresolved = True
        logger.warning(f"Challenge still present after {max_wait:.1f}s, continuing with current page")

    async def _wait_for_ready_state(self, page, budget):
        cfg = self.settings
        max_wait = budget.cap(
            adaptive_wait(
                budget.remaining(), cfg.READY_STATE_TIMEOUT, cfg.READY_STATE_MIN_TIMEOUT, cfg.CAPTURE_STAGE_RESERVE
            )
        )
        deadline = budget.clock() + max_wait
        while budget.clock() < deadline and not budget.expired:
            state = await self._evaluate(page, READY_STATE_SCRIPT, budget=budget)
            if state == "complete":
                await self._pause(cfg.READY_STATE_SETTLE, budget)
                return
            await self._pause(cfg.READY_STATE_POLL_INTERVAL, budget)
        logger.debug(f"readyState not complete after {max_wait:.1f}s")

    async def _wait_for_network_idle(self, page, budget):
        cfg = self.settings
        remaining = budget.remaining()
        if remaining < cfg.OPTIONAL_WAIT_MIN_REMAINING:
            logger.info(f"Skipping network idle wait (low time: {remaining:.1f}s)")
            return
        wait = cfg.NETWORK_IDLE_TIMEOUT
        if remaining < cfg.NETWORK_IDLE_TIMEOUT + 3:
            wait = cfg.NETWORK_IDLE_SHORT_TIMEOUT
        wait = budget.cap(wait)
        try:
            await asyncio.wait_for(
                page.wait_for_load_state("networkidle", timeout=wait * 1000), timeout=wait
            )
        except (PlaywrightTimeoutError, asyncio.TimeoutError):
            logger.debug(f"Network idle wait timed out after {wait:.1f}s")
        except Exception as e:
            logger.debug(f"Network idle wait failed: {e}")

    async def _wait_for_content_selectors(self, page, budget) -> bool:
        cfg = self.settings
        remaining = budget.remaining()
        if remaining < cfg.OPTIONAL_WAIT_MIN_REMAINING:
            logger.info(f"Skipping content selector wait (low time: {remaining:.1f}s)")
            return False

        timeouts = cfg.CONTENT_SELECTOR_TIMEOUTS
        wait = timeouts[-1]
        for candidate in timeouts:
            if remaining >= candidate + 3:
                wait = candidate
                break

        deadline = budget.clock() + budget.cap(wait)
        arg = [list(self.patterns.content_selectors), cfg.CONTENT_SELECTOR_MIN_TEXT]
        while budget.clock() < deadline and not budget.expired:
            if await self._evaluate(page, CONTENT_SELECTOR_SCRIPT, arg, budget=budget):
                logger.debug("Content selector found")
                return True
            await self._pause(cfg.CONTENT_SELECTOR_POLL_INTERVAL, budget)
        return False

    async def _dismiss_consent(self, page, budget) -> int:
        """Click through consent dialogs; returns how many were dismissed."""
        cfg = self.settings
        clicks = 0
        for attempt in range(cfg.CONSENT_MAX_ATTEMPTS):
            if budget.expired:
                break
            last = attempt == cfg.CONSENT_MAX_ATTEMPTS - 1
            clicked = await self._evaluate(page, CONSENT_SCRIPT, list(cfg.CONSENT_SELECTORS), budget=budget)
            if clicked:
                clicks += 1
                logger.info(f"Consent dialog dismissed (attempt {attempt + 1}/{cfg.CONSENT_MAX_ATTEMPTS})")
                await self._pause(cfg.CONSENT_RETRY_DELAY, budget)
            if not last:
                await self._pause(cfg.CONSENT_RETRY_DELAY, budget)
        return clicks

    async def _scroll(self, page, budget):
        cfg = self.settings
        remaining = budget.remaining()
        if remaining < cfg.OPTIONAL_WAIT_MIN_REMAINING:
            logger.info(f"Skipping scroll phase due to low time budget ({remaining:.1f}s)")
            return
        for step in range(cfg.SCROLL_STEPS):
            if budget.expired:
                return
            await self._evaluate(page, SCROLL_TO_SCRIPT, (step + 1) * cfg.SCROLL_STEP_PX, budget=budget)
            await self._pause(cfg.SCROLL_PAUSE, budget)
        await self._evaluate(page, SCROLL_TO_SCRIPT, 0, budget=budget)
        await self._pause(cfg.SCROLL_PAUSE, budget)

    async def _remove_paywall(self, page, budget) -> bool:
        found = await self._evaluate(page, PAYWALL_SCRIPT, list(self.settings.PAYWALL_SELECTORS), budget=budget)
        if found:
            logger.info("Paywall detected and removal attempted")
            await self._pause(self.settings.PAYWALL_SETTLE, budget)
        return bool(found)

    async def _wait_for_stability(self, page, max_wait, budget, arena, state) -> HTMLSnapshot | None:
        """Poll until the page length holds steady, then record the final stage."""
        cfg = self.settings
        deadline = budget.clock() + max_wait
        previous = 0
        stable_count = 0
        last: HTMLSnapshot | None = None
        logger.debug(f"Waiting for content stability (max: {max_wait:.1f}s)")

        while True:
            if budget.expired:
                return self._finish_stability(last, STAGE_STABLE_INTERRUPTED, arena, state)
            if budget.clock() >= deadline:
                return self._finish_stability(last, STAGE_STABLE_TIMEOUT, arena, state)

            snap = await self._snapshot(page, STAGE_STABILITY_CHECK, budget)
            if snap is None or snap.length == 0:
                await self._pause(cfg.STABILITY_CHECK_INTERVAL, budget)
                continue
            last = snap

            if previous > 0:
                change = abs(snap.length - previous) / previous
                if change < cfg.STABILITY_THRESHOLD:
                    stable_count += 1
                    if stable_count >= cfg.STABILITY_REQUIRED_CHECKS:
                        logger.info(f"Content stabilized at {snap.length} chars")
                        return self._finish_stability(snap, STAGE_STABLE, arena, state)
                else:
                    stable_count = 0
            previous = snap.length
            await self._pause(cfg.STABILITY_CHECK_INTERVAL, budget)

    def _finish_stability(self, snap, stage, arena, state) -> HTMLSnapshot | None:
        if snap is None:
            return None
        final = snap.with_stage(stage)
        self._record(final, arena, state)
        return final

    # ------------------------------------------------------------------
    # Fallbacks for attempts that recorded nothing
    # ------------------------------------------------------------------

    async def _fallbacks(self, page, url, budget, arena, state):
        cfg = self.settings

        for stage in (STAGE_AFTER_SCROLL, STAGE_AFTER_CONSENT, STAGE_INITIAL):
            html = state.stage_html.get(stage)
            if html:
                logger.info(f"Creating fallback snapshot from {stage} HTML")
                self._record(HTMLSnapshot.create(html, state.current_url or url, STAGE_FALLBACK), arena, state)
                return

        logger.info(f"No HTML captured for {url}, trying minimal navigation")
        minimal_budget = budget.child(cfg.MINIMAL_NAVIGATION_TIMEOUT)
        await self._navigate(page, url, cfg.MINIMAL_NAVIGATION_GOTO_TIMEOUT, minimal_budget, state)
        await self._wait_for_dom_ready(page, cfg.MINIMAL_NAVIGATION_DOM_TIMEOUT, minimal_budget)
        snap = await self._snapshot(page, STAGE_MINIMAL, minimal_budget)
        if snap is not None and snap.length > 0:
            self._record(snap.with_stage(STAGE_MINIMAL_FALLBACK), arena, state)
            return

        logger.info("Minimal navigation failed, trying in-page fetch")
        html = await self._evaluate(page, JS_FETCH_SCRIPT, url, timeout=cfg.JS_FETCH_TIMEOUT, budget=budget)
        if isinstance(html, str) and html.strip():
            self._record(HTMLSnapshot.create(html, url, STAGE_JS_FETCH_FALLBACK), arena, state)
            return

        snap = await self._snapshot(page, STAGE_FINAL_FALLBACK, budget, timeout=cfg.FINAL_CAPTURE_TIMEOUT)
        if snap is not None and snap.length > 0:
            self._record(snap, arena, state)

    # ------------------------------------------------------------------
    # Page helpers
    # ------------------------------------------------------------------

    async def _content(self, page, budget, timeout: float | None = None) -> str | None:
        timeout = budget.cap(timeout or self.settings.SNAPSHOT_TIMEOUT)
        if timeout <= 0:
            return None
        try:
            return await asyncio.wait_for(page.content(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"page.content() timed out after {timeout:.1f}s")
        except Exception as e:
            logger.debug(f"page.content() failed: {e}")
        return None

    async def _snapshot(self, page, stage, budget, timeout: float | None = None) -> HTMLSnapshot | None:
        html = await self._content(page, budget, timeout)
        if html is None:
            return None
        return HTMLSnapshot.create(html, page.url, stage)

    async def _capture(self, page, stage, budget, arena, state) -> HTMLSnapshot | None:
        """Snapshot the page and record it when it has any content."""
        snap = await self._snapshot(page, stage, budget)
        if snap is None:
            return None
        state.stage_html[stage] = snap.html
        if snap.url:
            state.current_url = snap.url
        if snap.length == 0:
            return None
        logger.debug(f"Captured {stage} snapshot: {snap.length} chars")
        self._record(snap, arena, state)
        return snap

    def _record(self, snap: HTMLSnapshot, arena: list[HTMLSnapshot], state: _AttemptState):
        arena.append(snap)
        state.recorded += 1
        capture_snapshots_total.labels(stage=snap.stage).inc()

    async def _evaluate(self, page, script, arg=None, timeout: float | None = None, budget: TimeBudget = None):
        timeout = budget.cap(timeout or self.settings.SNAPSHOT_TIMEOUT)
        if timeout <= 0:
            return None
        try:
            if arg is None:
                coro = page.evaluate(script)
            else:
                coro = page.evaluate(script, arg)
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"page.evaluate timed out after {timeout:.1f}s")
        except Exception as e:
            logger.debug(f"page.evaluate failed: {e}")
        return None

    async def _pause(self, seconds: float, budget: TimeBudget):
        delay = budget.cap(seconds)
        if delay > 0:
            await asyncio.sleep(delay)
