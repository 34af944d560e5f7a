from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    APP_NAME: str = "ArticleHarvest"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Logging
    LOG_FORMAT: str = "json"  # "json" or "text"
    LOG_LEVEL: str = "INFO"

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_ENVIRONMENT: str = "production"
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    # Metrics
    METRICS_PORT: int = 0  # 0 = don't expose

    # Browser Pool
    BROWSER_POOL_SIZE: int = 4
    BROWSER_HEADLESS: bool = True
    BROWSER_SLOT_TIMEOUT: float = 30.0  # seconds

    # Tier timeouts (seconds)
    DEFAULT_TIMEOUT: int = 60000  # ms
    HTTP_TIMEOUT: float = 12.0
    BROWSER_TIMEOUT: float = 60.0
    BROWSER_BUFFER: float = 5.0

    # Time budget planning (seconds)
    TIME_LIMITED_THRESHOLD: float = 25.0
    OVERHEAD_RESERVE: float = 2.0
    INTER_TIER_RESERVE: float = 1.0
    CLEANUP_RESERVE: float = 1.0
    TIER1_BUDGET_SHARE: float = 0.4
    TIER1_MIN_BUDGET: float = 1.0
    TIER2_MIN_VIABLE: float = 12.0

    # Static fetch
    FETCH_IMPERSONATE_PROFILES: List[str] = ["chrome124", "chrome120", "safari17_0", "safari15_5", "edge101"]
    FETCH_USE_HTTPX: bool = True
    FETCH_TRY_ALTERNATES: bool = True

    # Request jitter before tier 1 (ms)
    SCRAPE_JITTER_MIN_MS: int = 100
    SCRAPE_JITTER_MAX_MS: int = 500

    # Success gate
    MIN_HTML_LENGTH: int = 100

    # Capture pipeline (seconds)
    CAPTURE_STAGE_RESERVE: float = 5.0  # kept free after adaptive waits
    SNAPSHOT_TIMEOUT: float = 5.0
    NAVIGATION_TIMEOUT: float = 20.0
    NAVIGATION_MIN_TIMEOUT: float = 5.0
    DOM_READY_TIMEOUT: float = 5.0
    DOM_READY_SHORT_TIMEOUT: float = 3.0
    PERIODIC_CAPTURE_INTERVAL: float = 2.0
    PERIODIC_CAPTURE_MAX: float = 5.0
    PERIODIC_CAPTURE_TARGET_LENGTH: int = 500
    CHALLENGE_MAX_WAIT: float = 30.0
    CHALLENGE_MIN_WAIT: float = 5.0
    CHALLENGE_POLL_INTERVAL: float = 1.0
    READY_STATE_TIMEOUT: float = 10.0
    READY_STATE_MIN_TIMEOUT: float = 2.0
    READY_STATE_POLL_INTERVAL: float = 0.5
    READY_STATE_SETTLE: float = 1.0
    NETWORK_IDLE_TIMEOUT: float = 3.0
    NETWORK_IDLE_SHORT_TIMEOUT: float = 2.0
    CONTENT_SELECTOR_TIMEOUTS: List[float] = [10.0, 5.0, 3.0]  # longest that fits
    CONTENT_SELECTOR_POLL_INTERVAL: float = 0.5
    CONTENT_SELECTOR_MIN_TEXT: int = 100
    CONSENT_MAX_ATTEMPTS: int = 3
    CONSENT_RETRY_DELAY: float = 1.0
    CONSENT_SETTLE: float = 0.5
    PAYWALL_SETTLE: float = 0.5
    SCROLL_STEPS: int = 3
    SCROLL_STEP_PX: int = 500
    SCROLL_PAUSE: float = 0.5
    OPTIONAL_WAIT_MIN_REMAINING: float = 10.0
    STABILITY_CHECK_INTERVAL: float = 0.5
    STABILITY_REQUIRED_CHECKS: int = 3
    STABILITY_THRESHOLD: float = 0.05
    STABILITY_MIN_WAIT: float = 3.0

    # Capture retries and fallbacks
    CAPTURE_MAX_RETRIES: int = 3
    CAPTURE_RETRY_MEDIUM_BELOW: float = 60.0  # one fewer retry below this
    CAPTURE_RETRY_LOW_BELOW: float = 30.0  # single attempt below this
    CAPTURE_BACKOFF_BASE: float = 2.0
    # Navigation errors worth another attempt even when something was captured
    CAPTURE_TRANSIENT_ERROR_MARKERS: List[str] = ["timeout", "timed out", "network", "connection", "err_"]
    MINIMAL_NAVIGATION_TIMEOUT: float = 15.0
    MINIMAL_NAVIGATION_GOTO_TIMEOUT: float = 10.0
    MINIMAL_NAVIGATION_DOM_TIMEOUT: float = 3.0
    JS_FETCH_TIMEOUT: float = 5.0
    FINAL_CAPTURE_TIMEOUT: float = 2.0
    APP_ERROR_MAX_LENGTH: int = 1000

    # In-browser request blocking (substring match on request URL)
    BLOCKED_DOMAINS: List[str] = [
        "doubleclick",
        "googlesyndication",
        "google-analytics",
        "facebook.com/tr",
        "taboola",
        "outbrain",
        "scorecardresearch",
        "chartbeat",
        "amazon-adsystem",
    ]

    # Protection block detection (error text and captured HTML)
    CLOUDFLARE_PATTERNS: List[str] = [
        "cf_blocked",
        "cloudflare",
        "http 403",
        "all alternate urls failed",
        "attention required",
        "cloudflare ray id",
        "what can i do to resolve this?",
        "why have i been blocked?",
        "performance & security by cloudflare",
        "verifying you are human",
        "verify you are human",
        "checking your browser",
        "please wait while we verify",
        "this may take a few seconds",
    ]
    BLOCK_PAGE_MAX_TEXT: int = 3000

    # Interstitials that may resolve on their own
    CHALLENGE_PATTERNS: List[str] = [
        "verifying you are human",
        "verify you are human",
        "checking your browser",
        "please wait",
        "this may take a few seconds",
    ]

    APP_ERROR_PATTERNS: List[str] = [
        "application error",
        "a client-side exception has occurred",
        "something went wrong",
        "internal server error",
        "this page isn't working",
        "an error occurred while processing",
    ]

    CONSENT_SELECTORS: List[str] = [
        "[data-testid='accept-button']",
        "[data-testid='consent-accept']",
        ".consent-accept-button",
        "button[id*='accept']",
        "button[id*='consent']",
        "button[class*='accept']",
        "button[class*='consent']",
        ".accept-all",
        ".cookie-accept",
        "#onetrust-accept-btn-handler",
        "[data-consent='accept']",
        "[data-action='accept']",
    ]

    PAYWALL_SELECTORS: List[str] = [
        '[data-testid="paywall"]',
        '[class*="paywall"]',
        '[id*="paywall"]',
        '[class*="subscription-wall"]',
        '[class*="meter-wall"]',
        ".piano-template-modal",
        "[data-piano-template]",
        '[grid-area="paywall"]',
    ]

    # Content extraction
    CONTENT_SELECTORS: List[str] = [
        "[data-module='ArticleBody']",
        "[data-qa='article-body']",
        ".article__body",
        ".story__content-body",
        "article",
        "main",
        "[role='main']",
        ".content",
        ".post-content",
        ".entry-content",
        ".article-content",
        ".story-content",
    ]
    MIN_DESCRIPTION_LENGTH: int = 50
    MAX_DESCRIPTION_LENGTH: int = 300
    SIMPLE_STRATEGY_SCORE_THRESHOLD: float = 30.0
    JSONLD_SCORE_BONUS: float = 10.0
    METADATA_ONLY_SCORE: float = 10.0
    READABILITY_PREFERENCE_WINDOW: float = 10.0
    READABILITY_PREFERENCE_BONUS: float = 5.0

    # Images
    IMAGE_LIMIT: int = 10
    TARGET_IMAGE_WIDTH: int = 1000
    MIN_IMAGE_WIDTH: int = 600
    MIN_IMAGE_SHORT_SIDE: int = 100
    BAD_HINT_MAX_SHORT_SIDE: int = 200
    LARGE_IMAGE_WIDTH: int = 400
    # Assumed size of og/JSON-LD images that declare no dimensions
    ASSUMED_SHARE_IMAGE_WIDTH: int = 1200
    ASSUMED_SHARE_IMAGE_HEIGHT: int = 630
    AD_SIZES: List[str] = [
        "728x90", "300x250", "336x280", "300x600", "160x600",
        "120x600", "970x250", "970x90", "320x50", "320x100",
        "468x60", "234x60", "250x250", "200x200", "180x150",
        "125x125", "300x1050", "970x66", "300x50", "88x31",
    ]
    RATIO_WHITELIST: List[float] = [16 / 9, 4 / 3, 3 / 2, 1.91, 2.0, 5 / 4, 21 / 9]
    RATIO_TOLERANCE: float = 0.05
    IMAGE_EXCLUSION_KEYWORDS: List[str] = [
        "sidebar", "side-bar", "side_bar",
        "related", "featured", "popular", "trending", "most-read",
        "recommended", "recommendation", "you-may-like",
        "widget", "banner", "advertisement", "ad-", "advert",
        "navigation", "nav-", "navbar", "menu", "footer", "header",
        "carousel", "slider", "gallery", "aside",
        "promo", "promotion", "sponsored",
        "more-stories", "more-articles", "more-news",
        "latest-posts", "latest-articles", "latest-news", "latest-stories",
        "recent-posts", "recent-articles", "recent-news",
        "top-stories", "top-posts", "highlights", "must-read", "dont-miss",
        "editor-pick", "editor-choice", "read-more", "read-next",
        "story-list", "post-list", "grid-items", "list-items",
    ]

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "frozen": True,
    }


settings = Settings()
