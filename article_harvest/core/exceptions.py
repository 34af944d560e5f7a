"""Error taxonomy for article extraction.

Only the orchestrator raises the terminal errors below. ``TierFailure`` and
its subclasses are internal: a tier that produced nothing usable raises one,
and the orchestrator either escalates to the next tier or folds it into a
terminal error.
"""


class HarvestError(Exception):
    """Base class for every error this package raises."""

    status_code = 500


class InvalidInputError(HarvestError):
    """Raised before any network activity when the target URL is unusable."""

    status_code = 400

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Invalid URL {url!r}: {reason}")


class InsufficientBudgetError(HarvestError):
    """Raised when too little time remains to attempt a tier at all."""

    status_code = 503

    def __init__(self, remaining: float, required: float, stage: str = "browser"):
        self.remaining = remaining
        self.required = required
        self.stage = stage
        super().__init__(
            f"Insufficient time for {stage} tier: {remaining:.1f}s remaining, "
            f"{required:.1f}s required"
        )


class TierFailure(HarvestError):
    """A tier ran but produced no usable HTML or content."""

    def __init__(self, tier: str, message: str):
        self.tier = tier
        super().__init__(message)


class FetchError(TierFailure):
    """Static fetch could not retrieve a usable document."""

    def __init__(self, message: str):
        super().__init__("static", message)


class NoSnapshotError(TierFailure):
    """Browser capture produced no snapshot from any stage or fallback."""

    def __init__(self, message: str):
        super().__init__("browser", message)


class BrowserPoolExhaustedError(TierFailure):
    """No browser slot became available in time."""

    def __init__(self, message: str):
        super().__init__("browser", message)


class CloudflareBlockError(HarvestError):
    """The target served a protection/challenge page instead of content."""

    status_code = 451

    def __init__(self, domain: str, underlying: BaseException | str | None = None):
        self.domain = domain
        self.underlying = underlying
        detail = f": {underlying}" if underlying else ""
        super().__init__(f"Blocked by bot protection on {domain}{detail}")


class DeadlineExceededError(HarvestError):
    """The overall scrape deadline expired before a usable result existed."""

    status_code = 504

    def __init__(self, timeout: float, elapsed: float):
        self.timeout = timeout
        self.elapsed = elapsed
        super().__init__(
            f"Scrape deadline of {timeout:.1f}s exceeded after {elapsed:.1f}s"
        )


class ScrapingFailedError(HarvestError):
    """Both tiers ran (or were skipped) without producing usable content."""

    status_code = 500

    def __init__(
        self,
        url: str,
        static_error: BaseException | None = None,
        browser_error: BaseException | None = None,
    ):
        self.url = url
        self.static_error = static_error
        self.browser_error = browser_error
        super().__init__(
            f"Failed to scrape {url} (static: {static_error or 'n/a'}; "
            f"browser: {browser_error or 'n/a'})"
        )


class ExtractionEmptyError(ScrapingFailedError):
    """HTML was retrieved but every content strategy came back empty."""

    status_code = 422
