"""Tests for article_harvest.services.capture: progressive capture, retries and fallbacks."""

import time
from contextlib import asynccontextmanager

import pytest

from article_harvest.config import Settings
from article_harvest.core.exceptions import NoSnapshotError
from article_harvest.core.patterns import get_patterns
from article_harvest.services.budget import TimeBudget
from article_harvest.services.capture import (
    CONSENT_SCRIPT,
    CONTENT_SELECTOR_SCRIPT,
    JS_FETCH_SCRIPT,
    PAYWALL_SCRIPT,
    READY_STATE_SCRIPT,
    SCROLL_TO_SCRIPT,
    STAGE_AFTER_CONSENT,
    STAGE_AFTER_SCROLL,
    STAGE_FALLBACK,
    STAGE_INITIAL,
    STAGE_JS_FETCH_FALLBACK,
    STAGE_MINIMAL_FALLBACK,
    STAGE_PERIODIC,
    STAGE_STABLE,
    STAGE_STABLE_TIMEOUT,
    CaptureEngine,
    _AttemptState,
    HTMLSnapshot,
    adaptive_wait,
    select_best_snapshot,
)

ARTICLE_HTML = (
    "<html><head><title>Story</title></head><body><article>"
    + "<p>Paragraph of article text that makes the page worth reading.</p>" * 20
    + "</article></body></html>"
)

CHALLENGE_HTML = (
    "<html><head><title>Just a moment...</title></head>"
    "<body><p>Checking your browser before accessing example.com.</p></body></html>"
)

BLANK_HTML = "<html><head></head><body></body></html>"

APP_ERROR_HTML = "<html><body><h2>Application error: a client-side exception has occurred</h2></body></html>"

# Timings shrunk so a full pipeline run takes well under a second
FAST = dict(
    NAVIGATION_TIMEOUT=1.0,
    NAVIGATION_MIN_TIMEOUT=0.1,
    CAPTURE_STAGE_RESERVE=0.0,
    SNAPSHOT_TIMEOUT=0.5,
    DOM_READY_TIMEOUT=0.1,
    DOM_READY_SHORT_TIMEOUT=0.05,
    PERIODIC_CAPTURE_INTERVAL=0.02,
    PERIODIC_CAPTURE_MAX=0.05,
    CHALLENGE_MAX_WAIT=0.3,
    CHALLENGE_MIN_WAIT=0.1,
    CHALLENGE_POLL_INTERVAL=0.02,
    READY_STATE_TIMEOUT=0.2,
    READY_STATE_MIN_TIMEOUT=0.05,
    READY_STATE_POLL_INTERVAL=0.01,
    READY_STATE_SETTLE=0.01,
    NETWORK_IDLE_TIMEOUT=0.05,
    NETWORK_IDLE_SHORT_TIMEOUT=0.05,
    OPTIONAL_WAIT_MIN_REMAINING=0.0,
    CONTENT_SELECTOR_TIMEOUTS=[0.1],
    CONTENT_SELECTOR_POLL_INTERVAL=0.01,
    CONSENT_RETRY_DELAY=0.01,
    CONSENT_SETTLE=0.01,
    PAYWALL_SETTLE=0.01,
    SCROLL_PAUSE=0.01,
    STABILITY_CHECK_INTERVAL=0.02,
    STABILITY_MIN_WAIT=0.2,
    CAPTURE_BACKOFF_BASE=0.01,
    CAPTURE_RETRY_MEDIUM_BELOW=0.0,
    CAPTURE_RETRY_LOW_BELOW=0.0,
    MINIMAL_NAVIGATION_TIMEOUT=0.5,
    MINIMAL_NAVIGATION_GOTO_TIMEOUT=0.2,
    MINIMAL_NAVIGATION_DOM_TIMEOUT=0.05,
    JS_FETCH_TIMEOUT=0.2,
    FINAL_CAPTURE_TIMEOUT=0.2,
)


def fast_settings(**overrides) -> Settings:
    return Settings(**{**FAST, **overrides})


class FakePage:
    """Minimal stand-in for a Playwright page.

    ``html_for_goto`` maps the number of navigations so far to the HTML that
    ``content()`` returns; the highest key not above the count applies.
    """

    def __init__(
        self,
        html: str = ARTICLE_HTML,
        url: str = "https://example.com/story",
        html_for_goto: dict[int, str] | None = None,
        ready_state: str = "complete",
        consent_clicks: int = 0,
        paywall: bool = False,
        js_fetch_html: str = "",
        goto_error: Exception | None = None,
        goto_error_times: int | None = None,
    ):
        self.url = url
        self.html_for_goto = html_for_goto or {0: html}
        self.ready_state = ready_state
        self.consent_clicks = consent_clicks
        self.paywall = paywall
        self.js_fetch_html = js_fetch_html
        self.goto_error = goto_error
        self.goto_error_times = goto_error_times
        self.goto_calls = 0
        self.load_states: list[str] = []
        self.evaluations: list[tuple[str, object]] = []

    async def goto(self, url, wait_until=None, timeout=None):
        self.goto_calls += 1
        if self.goto_error is not None and (self.goto_error_times is None or self.goto_calls <= self.goto_error_times):
            raise self.goto_error

    async def wait_for_load_state(self, state, timeout=None):
        self.load_states.append(state)

    async def content(self):
        key = max(k for k in self.html_for_goto if k <= self.goto_calls)
        return self.html_for_goto[key]

    async def evaluate(self, script, arg=None):
        self.evaluations.append((script, arg))
        if script == READY_STATE_SCRIPT:
            return self.ready_state
        if script == CONTENT_SELECTOR_SCRIPT:
            return True
        if script == CONSENT_SCRIPT:
            if self.consent_clicks > 0:
                self.consent_clicks -= 1
                return True
            return False
        if script == PAYWALL_SCRIPT:
            return self.paywall
        if script == JS_FETCH_SCRIPT:
            return self.js_fetch_html
        return None

    def calls(self, script: str) -> list:
        return [arg for s, arg in self.evaluations if s == script]


class FakePool:
    def __init__(self, page: FakePage):
        self.page = page
        self.acquired = 0

    @asynccontextmanager
    async def get_page(self, stealth: bool = True):
        self.acquired += 1
        yield self.page


def _engine(page: FakePage, **overrides) -> CaptureEngine:
    return CaptureEngine(pool=FakePool(page), settings=fast_settings(**overrides))


def _snap(stage: str, html: str = ARTICLE_HTML) -> HTMLSnapshot:
    return HTMLSnapshot.create(html, "https://example.com/story", stage)


class TestSnapshotSelection:
    def test_stage_priority_beats_length(self):
        patterns = get_patterns(Settings())
        snaps = [
            _snap(STAGE_INITIAL, ARTICLE_HTML * 3),
            _snap(STAGE_AFTER_SCROLL),
            _snap(STAGE_PERIODIC, ARTICLE_HTML * 2),
        ]
        assert select_best_snapshot(snaps, patterns).stage == STAGE_AFTER_SCROLL

    def test_longer_wins_within_stage(self):
        patterns = get_patterns(Settings())
        short = _snap(STAGE_AFTER_CONSENT)
        long = _snap(STAGE_AFTER_CONSENT, ARTICLE_HTML * 2)
        assert select_best_snapshot([short, long], patterns) is long

    def test_stable_outranks_everything(self):
        patterns = get_patterns(Settings())
        snaps = [_snap(stage) for stage in (STAGE_FALLBACK, STAGE_STABLE_TIMEOUT, STAGE_STABLE, STAGE_AFTER_SCROLL)]
        assert select_best_snapshot(snaps, patterns).stage == STAGE_STABLE

    def test_short_app_error_excluded(self):
        patterns = get_patterns(Settings())
        snaps = [_snap(STAGE_STABLE, APP_ERROR_HTML), _snap(STAGE_INITIAL)]
        assert select_best_snapshot(snaps, patterns).stage == STAGE_INITIAL

    def test_long_page_mentioning_error_kept(self):
        patterns = get_patterns(Settings())
        html = ARTICLE_HTML.replace("</article>", "<p>Something went wrong with the launch.</p></article>")
        snaps = [_snap(STAGE_STABLE, html), _snap(STAGE_INITIAL)]
        assert select_best_snapshot(snaps, patterns).stage == STAGE_STABLE

    def test_blank_snapshot_only_used_as_last_resort(self):
        patterns = get_patterns(Settings())
        blank = _snap(STAGE_STABLE, BLANK_HTML)
        article = _snap(STAGE_AFTER_CONSENT)
        assert select_best_snapshot([blank, article], patterns, min_length=100) is article
        assert select_best_snapshot([blank], patterns, min_length=100) is blank

    def test_transient_error_markers(self):
        engine = CaptureEngine(pool=FakePool(FakePage()), settings=Settings())
        assert engine.is_transient_error("net::ERR_CONNECTION_RESET at https://example.com/")
        assert engine.is_transient_error("Timeout 20000ms exceeded")
        assert not engine.is_transient_error("Target page, context or browser has been closed")
        assert not engine.is_transient_error(None)

    def test_empty_arena(self):
        assert select_best_snapshot([], get_patterns(Settings())) is None

    def test_snapshot_length_is_trimmed(self):
        snap = HTMLSnapshot.create("   <p>x</p>  ", "https://x/", STAGE_INITIAL)
        assert snap.length == len("<p>x</p>")

    def test_with_stage_keeps_html(self):
        snap = _snap(STAGE_PERIODIC)
        restaged = snap.with_stage(STAGE_STABLE)
        assert restaged.stage == STAGE_STABLE
        assert restaged.html == snap.html
        assert snap.stage == STAGE_PERIODIC


class TestAdaptiveWait:
    def test_uses_ceiling_when_time_allows(self):
        assert adaptive_wait(60, 30, 5, 5) == 30

    def test_shrinks_with_remaining(self):
        assert adaptive_wait(20, 30, 5, 5) == 15

    def test_never_below_floor(self):
        assert adaptive_wait(4, 30, 5, 5) == 5


class TestMaxRetries:
    def test_reduced_as_time_shrinks(self):
        engine = CaptureEngine(pool=FakePool(FakePage()), settings=Settings())
        assert engine.max_retries(90) == 3
        assert engine.max_retries(45) == 2
        assert engine.max_retries(20) == 1


class TestCapturePipeline:
    @pytest.mark.asyncio
    async def test_stable_capture(self):
        page = FakePage()
        engine = _engine(page)
        result = await engine.capture("https://example.com/story", TimeBudget(5))

        assert result.snapshot.stage == STAGE_STABLE
        assert result.html == ARTICLE_HTML
        assert result.attempts == 1
        assert not result.degraded
        assert not result.challenge_unresolved
        assert result.final_url == "https://example.com/story"
        stages = {s.stage for s in result.snapshots}
        assert {STAGE_INITIAL, STAGE_AFTER_CONSENT, STAGE_AFTER_SCROLL, STAGE_STABLE} <= stages
        assert page.goto_calls == 1

    @pytest.mark.asyncio
    async def test_single_page_per_capture(self):
        page = FakePage()
        pool = FakePool(page)
        engine = CaptureEngine(pool=pool, settings=fast_settings())
        await engine.capture("https://example.com/story", TimeBudget(5))
        assert pool.acquired == 1

    @pytest.mark.asyncio
    async def test_waits_for_dom_and_network_idle(self):
        page = FakePage()
        await _engine(page).capture("https://example.com/story", TimeBudget(5))
        assert "domcontentloaded" in page.load_states
        assert "networkidle" in page.load_states

    @pytest.mark.asyncio
    async def test_optional_waits_skipped_when_time_is_short(self):
        page = FakePage()
        await _engine(page, OPTIONAL_WAIT_MIN_REMAINING=100.0).capture("https://example.com/story", TimeBudget(5))
        assert "networkidle" not in page.load_states
        assert page.calls(CONTENT_SELECTOR_SCRIPT) == []
        assert page.calls(SCROLL_TO_SCRIPT) == []

    @pytest.mark.asyncio
    async def test_consent_scroll_and_paywall(self):
        cfg = fast_settings()
        page = FakePage(consent_clicks=1, paywall=True)
        await CaptureEngine(pool=FakePool(page), settings=cfg).capture("https://example.com/story", TimeBudget(5))

        assert len(page.calls(CONSENT_SCRIPT)) == cfg.CONSENT_MAX_ATTEMPTS
        assert page.calls(CONSENT_SCRIPT)[0] == list(cfg.CONSENT_SELECTORS)
        assert page.calls(SCROLL_TO_SCRIPT) == [500, 1000, 1500, 0]
        assert page.calls(PAYWALL_SCRIPT) == [list(cfg.PAYWALL_SELECTORS)]

    @pytest.mark.asyncio
    async def test_persistent_navigation_error_still_captures(self):
        page = FakePage(goto_error=RuntimeError("net::ERR_CONNECTION_RESET"))
        result = await _engine(page).capture("https://example.com/story", TimeBudget(5))
        assert result.html == ARTICLE_HTML
        assert "ERR_CONNECTION_RESET" in result.navigation_error
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_unresolved_challenge_returns_last_snapshot(self):
        page = FakePage(html=CHALLENGE_HTML)
        result = await _engine(page).capture("https://example.com/story", TimeBudget(5))
        assert result.html == CHALLENGE_HTML
        assert result.challenge_unresolved
        assert result.degraded

    @pytest.mark.asyncio
    async def test_challenge_resolving_is_not_degraded(self):
        # Interstitial clears after a few reads
        page = FakePage(html=CHALLENGE_HTML)
        engine = _engine(page)

        original_content = page.content
        reads = {"n": 0}

        async def content():
            reads["n"] += 1
            if reads["n"] > 3:
                return ARTICLE_HTML
            return await original_content()

        page.content = content
        result = await engine.capture("https://example.com/story", TimeBudget(5))
        assert not result.challenge_unresolved
        assert result.snapshot.stage == STAGE_STABLE
        assert result.html == ARTICLE_HTML

    @pytest.mark.asyncio
    async def test_ready_state_never_complete_does_not_fail(self):
        page = FakePage(ready_state="loading")
        result = await _engine(page).capture("https://example.com/story", TimeBudget(5))
        assert result.snapshot.stage == STAGE_STABLE

    @pytest.mark.asyncio
    async def test_changing_page_ends_with_stable_timeout(self):
        page = FakePage()
        reads = {"n": 0}

        async def content():
            reads["n"] += 1
            return ARTICLE_HTML * (1 + reads["n"] % 2)

        page.content = content
        result = await _engine(page).capture("https://example.com/story", TimeBudget(5))
        assert result.snapshot.stage == STAGE_STABLE_TIMEOUT
        assert not result.degraded


class TestStabilityLoop:
    @pytest.mark.asyncio
    async def test_returns_soon_after_convergence(self):
        interval = 0.05
        cfg = fast_settings(STABILITY_CHECK_INTERVAL=interval)
        engine = CaptureEngine(pool=FakePool(FakePage()), settings=cfg)
        budget = TimeBudget(30)
        arena: list[HTMLSnapshot] = []

        state = _AttemptState()
        start = time.monotonic()
        snap = await engine._wait_for_stability(FakePage(), 20.0, budget, arena, state)
        elapsed = time.monotonic() - start

        assert snap.stage == STAGE_STABLE
        # first read plus 3 stable reads, with a pause between each
        assert elapsed < 4 * interval + 0.05
        assert arena == [snap]
        assert state.recorded == 1


class TestRetriesAndFallbacks:
    @pytest.mark.asyncio
    async def test_minimal_navigation_fallback(self):
        # Pipeline navigation (#1) sees an empty page; the minimal navigation (#2) gets content
        page = FakePage(html_for_goto={0: "", 2: ARTICLE_HTML})
        result = await _engine(page).capture("https://example.com/story", TimeBudget(5))
        assert result.snapshot.stage == STAGE_MINIMAL_FALLBACK
        assert result.attempts == 1
        assert result.degraded

    @pytest.mark.asyncio
    async def test_js_fetch_fallback(self):
        page = FakePage(html="", js_fetch_html=ARTICLE_HTML)
        result = await _engine(page).capture("https://example.com/story", TimeBudget(5))
        assert result.snapshot.stage == STAGE_JS_FETCH_FALLBACK
        assert result.html == ARTICLE_HTML
        assert result.degraded

    @pytest.mark.asyncio
    async def test_empty_attempt_is_retried(self):
        # Attempt 1 navigates twice (pipeline + minimal fallback) and sees nothing
        page = FakePage(html_for_goto={0: "", 3: ARTICLE_HTML})
        result = await _engine(page).capture("https://example.com/story", TimeBudget(5))
        assert result.attempts == 2
        assert result.snapshot.stage == STAGE_STABLE
        assert not result.degraded

    @pytest.mark.asyncio
    async def test_transient_navigation_error_is_retried(self):
        # First navigation resets and leaves the blank document behind
        page = FakePage(
            html_for_goto={0: BLANK_HTML, 2: ARTICLE_HTML},
            goto_error=RuntimeError("net::ERR_CONNECTION_RESET"),
            goto_error_times=1,
        )
        result = await _engine(page).capture("https://example.com/story", TimeBudget(5))

        assert page.goto_calls == 2
        assert result.attempts == 2
        assert result.html == ARTICLE_HTML
        assert result.snapshot.stage == STAGE_STABLE
        assert any(s.html == BLANK_HTML for s in result.snapshots)

    @pytest.mark.asyncio
    async def test_blank_page_is_retried(self):
        page = FakePage(html_for_goto={0: BLANK_HTML, 2: ARTICLE_HTML})
        result = await _engine(page).capture("https://example.com/story", TimeBudget(5))
        assert result.attempts == 2
        assert result.html == ARTICLE_HTML

    @pytest.mark.asyncio
    async def test_blank_page_returned_when_nothing_better(self):
        page = FakePage(html=BLANK_HTML)
        result = await _engine(page).capture("https://example.com/story", TimeBudget(5))
        assert result.attempts == 3
        assert result.html == BLANK_HTML

    @pytest.mark.asyncio
    async def test_no_snapshot_raises(self):
        page = FakePage(html="")
        with pytest.raises(NoSnapshotError):
            await _engine(page).capture("https://example.com/story", TimeBudget(5))
        assert page.goto_calls == 6

    @pytest.mark.asyncio
    async def test_retries_limited_by_remaining_time(self):
        page = FakePage(html="")
        engine = _engine(page, CAPTURE_RETRY_LOW_BELOW=30.0)
        with pytest.raises(NoSnapshotError):
            await engine.capture("https://example.com/story", TimeBudget(5))
        assert page.goto_calls == 2

    @pytest.mark.asyncio
    async def test_expired_budget_uses_existing_snapshots(self):
        # A budget that runs out mid-pipeline still returns what was captured early
        page = FakePage(ready_state="loading")
        engine = _engine(page, READY_STATE_TIMEOUT=10.0, READY_STATE_MIN_TIMEOUT=10.0)
        result = await engine.capture("https://example.com/story", TimeBudget(1.5))
        assert result.html == ARTICLE_HTML
        assert result.snapshot.stage in (STAGE_INITIAL, STAGE_PERIODIC)
        assert result.degraded
