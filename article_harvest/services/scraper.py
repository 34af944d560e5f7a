import asyncio
import contextvars
import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import urlparse

from article_harvest.config import Settings, settings as default_settings
from article_harvest.core.exceptions import (
    CloudflareBlockError,
    DeadlineExceededError,
    ExtractionEmptyError,
    HarvestError,
    InsufficientBudgetError,
    InvalidInputError,
    ScrapingFailedError,
    TierFailure,
)
from article_harvest.core.metrics import (
    scrape_duration_seconds,
    scrape_requests_total,
    tier_attempts_total,
    tier_duration_seconds,
)
from article_harvest.core.patterns import get_patterns
from article_harvest.core.request_id import bind_request_id
from article_harvest.schemas.article import ExtractionResult, ScrapeRequest
from article_harvest.services.budget import TimeBudget, browser_tier_timeout, plan_tiers
from article_harvest.services.capture import CaptureEngine
from article_harvest.services.content import ContentStrategySelector
from article_harvest.services.fetcher import StaticFetcher

logger = logging.getLogger(__name__)

TIER_STATIC = "static"
TIER_BROWSER = "browser"

# Thread pool for CPU-bound content extraction
_extraction_executor = ThreadPoolExecutor(max_workers=4)


def validate_url(url: str) -> str:
    """Reject anything that is not an absolute http(s) URL with a host."""
    if not url or not url.strip():
        raise InvalidInputError(url, "empty URL")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise InvalidInputError(url, f"unsupported scheme {parsed.scheme!r}")
    if not parsed.hostname:
        raise InvalidInputError(url, "missing host")
    return url


class _TierOutcome:
    """What one tier left behind for error classification."""

    __slots__ = ("error", "blocked_html", "extraction_empty")

    def __init__(self):
        self.error: BaseException | None = None
        self.blocked_html = False
        self.extraction_empty = False


class Orchestrator:
    """Two-tier article scrape under one wall-clock budget.

    Tier 1 is a static fetch; tier 2 a full browser capture. Tier 2 only runs
    when tier 1 produced nothing usable and enough time remains. Only this
    class raises terminal errors; lower layers degrade or raise TierFailure.
    """

    def __init__(
        self,
        fetcher: StaticFetcher | None = None,
        capture_engine: CaptureEngine | None = None,
        selector: ContentStrategySelector | None = None,
        settings: Settings | None = None,
        clock=time.monotonic,
    ):
        self.settings = settings or default_settings
        self.fetcher = fetcher or StaticFetcher(self.settings)
        self.capture_engine = capture_engine or CaptureEngine(settings=self.settings)
        self.selector = selector or ContentStrategySelector(self.settings)
        self.patterns = get_patterns(self.settings)
        self.clock = clock

    async def scrape(self, url: str, timeout: float, request_id: str | None = None) -> ExtractionResult:
        """Scrape ``url`` within ``timeout`` seconds.

        Returns an ExtractionResult with a non-empty title or content, or
        raises a HarvestError subclass.
        """
        with bind_request_id(request_id):
            start = time.monotonic()
            try:
                result = await self._scrape(url, timeout)
            except HarvestError as e:
                scrape_requests_total.labels(status=type(e).__name__).inc()
                logger.warning(f"Scrape failed for {url}: {e}")
                raise
            else:
                scrape_requests_total.labels(status="success").inc()
                return result
            finally:
                scrape_duration_seconds.observe(time.monotonic() - start)

    async def _scrape(self, url: str, timeout: float) -> ExtractionResult:
        cfg = self.settings
        url = validate_url(url)
        budget = TimeBudget(timeout, clock=self.clock, cleanup_reserve=cfg.CLEANUP_RESERVE)

        jitter = random.uniform(cfg.SCRAPE_JITTER_MIN_MS, cfg.SCRAPE_JITTER_MAX_MS) / 1000
        jitter = budget.cap(jitter)
        if jitter > 0:
            await asyncio.sleep(jitter)

        plan = plan_tiers(budget, cfg)
        logger.info(
            f"Scraping {url}: {budget!r}, time_limited={plan.time_limited}, "
            f"tier1={plan.tier1_timeout:.1f}s, tier2_planned={plan.tier2_planned:.1f}s"
        )

        static = _TierOutcome()
        if plan.tier1_timeout < cfg.TIER1_MIN_BUDGET:
            logger.info(f"Skipping static tier: {plan.tier1_timeout:.1f}s budget")
            tier_attempts_total.labels(tier=TIER_STATIC, outcome="skipped").inc()
        else:
            result = await self._run_static(url, budget.child(plan.tier1_timeout), static)
            if result is not None:
                return result

        if budget.expired:
            raise DeadlineExceededError(timeout, budget.elapsed())

        if plan.skip_tier2:
            tier_attempts_total.labels(tier=TIER_BROWSER, outcome="skipped").inc()
            raise InsufficientBudgetError(budget.remaining(), cfg.TIER2_MIN_VIABLE)

        tier2_timeout = browser_tier_timeout(budget, plan, cfg)
        if tier2_timeout < cfg.TIER2_MIN_VIABLE:
            tier_attempts_total.labels(tier=TIER_BROWSER, outcome="skipped").inc()
            raise InsufficientBudgetError(budget.remaining(), cfg.TIER2_MIN_VIABLE)

        browser = _TierOutcome()
        result = await self._run_browser(url, budget.child(tier2_timeout), browser)
        if result is not None:
            return result

        raise self._classify_failure(url, timeout, budget, static, browser)

    async def _run_static(self, url: str, budget: TimeBudget, outcome: _TierOutcome) -> ExtractionResult | None:
        start = time.monotonic()
        try:
            html, final_url = await self.fetcher.fetch_with_alternates(url, budget)
            result = await self._accept(html, url, final_url, TIER_STATIC, outcome)
        except TierFailure as e:
            outcome.error = e
            result = None
        finally:
            tier_duration_seconds.labels(tier=TIER_STATIC).observe(time.monotonic() - start)

        if result is None:
            tier_attempts_total.labels(tier=TIER_STATIC, outcome="failure").inc()
            logger.info(f"Static tier failed for {url}: {outcome.error} ({budget!r})")
            return None
        tier_attempts_total.labels(tier=TIER_STATIC, outcome="success").inc()
        return result

    async def _run_browser(self, url: str, budget: TimeBudget, outcome: _TierOutcome) -> ExtractionResult | None:
        start = time.monotonic()
        result = None
        try:
            capture = await asyncio.wait_for(
                self.capture_engine.capture(url, budget), timeout=budget.remaining() + self.settings.CLEANUP_RESERVE
            )
            if self.patterns.looks_blocked(capture.html):
                outcome.blocked_html = True
                raise TierFailure(TIER_BROWSER, "CF_BLOCKED: captured page is a protection page")
            result = await self._accept(capture.html, url, capture.final_url, TIER_BROWSER, outcome)
            if result is not None:
                result.degraded = capture.degraded
        except asyncio.TimeoutError:
            outcome.error = TierFailure(TIER_BROWSER, "browser capture exceeded its deadline")
        except TierFailure as e:
            outcome.error = e
        finally:
            tier_duration_seconds.labels(tier=TIER_BROWSER).observe(time.monotonic() - start)

        if result is None:
            tier_attempts_total.labels(tier=TIER_BROWSER, outcome="failure").inc()
            logger.warning(f"Browser tier failed for {url}: {outcome.error}")
            return None
        tier_attempts_total.labels(tier=TIER_BROWSER, outcome="success").inc()
        return result

    async def _accept(
        self, html: str, url: str, final_url: str, tier: str, outcome: _TierOutcome
    ) -> ExtractionResult:
        """Extract and apply the success gate; raises TierFailure when it fails."""
        length = len((html or "").strip())
        if length < self.settings.MIN_HTML_LENGTH:
            raise TierFailure(tier, f"{tier} tier returned minimal HTML ({length} chars)")

        loop = asyncio.get_running_loop()
        # Executor threads do not inherit contextvars; carry the request ID along
        ctx = contextvars.copy_context()
        result = await loop.run_in_executor(
            _extraction_executor, ctx.run, self.selector.select, html, final_url or url
        )
        if result.is_empty:
            outcome.extraction_empty = True
            raise TierFailure(tier, "content extraction returned empty results")

        result.source_url = url
        result.final_url = final_url or url
        result.tier = tier
        logger.info(
            f"{tier} tier succeeded for {url}: strategy={result.strategy}, "
            f"title={len(result.title)} chars, content={len(result.content)} chars, "
            f"quality={result.quality.score}"
        )
        return result

    def _classify_failure(
        self, url: str, timeout: float, budget: TimeBudget, static: _TierOutcome, browser: _TierOutcome
    ) -> HarvestError:
        if budget.expired:
            return DeadlineExceededError(timeout, budget.elapsed())

        # Only the browser tier decides whether the site is blocking us
        block_text = browser.error is not None and self.patterns.matches_block_text(str(browser.error))
        if browser.blocked_html or block_text:
            domain = urlparse(url).hostname or url
            return CloudflareBlockError(domain, browser.error)

        if static.extraction_empty or browser.extraction_empty:
            return ExtractionEmptyError(url, static.error, browser.error)
        return ScrapingFailedError(url, static.error, browser.error)


_default_orchestrator: Orchestrator | None = None


def get_orchestrator() -> Orchestrator:
    global _default_orchestrator
    if _default_orchestrator is None:
        _default_orchestrator = Orchestrator()
    return _default_orchestrator


async def scrape(url: str, timeout_ms: int | None = None, request_id: str | None = None) -> ExtractionResult:
    """Convenience entry point taking the timeout in milliseconds."""
    request = ScrapeRequest(
        url=url,
        timeout=timeout_ms if timeout_ms is not None else default_settings.DEFAULT_TIMEOUT,
        request_id=request_id,
    )
    return await get_orchestrator().scrape(request.url, request.timeout / 1000, request.request_id)
