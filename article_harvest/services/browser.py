import asyncio
import json
import logging
import random
from contextlib import asynccontextmanager

from playwright.async_api import async_playwright, Browser, BrowserContext, Page

from article_harvest.config import Settings, settings as default_settings
from article_harvest.core.exceptions import BrowserPoolExhaustedError
from article_harvest.core.metrics import active_browser_contexts, browser_pool_exhausted_total

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Fingerprint data, rotated per context
# ---------------------------------------------------------------------------

CHROME_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1440, "height": 900},
    {"width": 1536, "height": 864},
]

TIMEZONES = [
    "America/New_York",
    "America/Chicago",
    "America/Los_Angeles",
    "Europe/London",
]

WEBGL_RENDERERS = [
    ("Intel Inc.", "Intel Iris OpenGL Engine"),
    ("Google Inc. (NVIDIA)", "ANGLE (NVIDIA, NVIDIA GeForce RTX 3060 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
    ("Google Inc. (Intel)", "ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
    ("Google Inc. (AMD)", "ANGLE (AMD, AMD Radeon RX 580 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
]

# ---------------------------------------------------------------------------
# Request interception: ads and trackers
# ---------------------------------------------------------------------------


def is_blocked_request(url: str, blocked_domains: list[str]) -> bool:
    """Substring match of the full request URL against the block list."""
    return any(domain in url for domain in blocked_domains)


async def _setup_route_blocking(context: BrowserContext, blocked_domains: list[str]):
    """Abort every request whose URL mentions a blocked ad/tracker domain."""

    async def _route_handler(route, request):
        if is_blocked_request(request.url, blocked_domains):
            await route.abort()
            return
        await route.continue_()

    await context.route("**/*", _route_handler)


# ---------------------------------------------------------------------------
# Stealth init script
# Hides automation signals and blocks the same domains at fetch/XHR level,
# for requests issued before routing applies (service workers, early scripts).
# ---------------------------------------------------------------------------


def _build_stealth_script(
    blocked_domains: list[str],
    webgl_vendor: str,
    webgl_renderer: str,
    hw_concurrency: int,
    device_mem: int,
) -> str:
    """Build a parameterized init script with a per-context fingerprint."""
    domains = json.dumps(list(blocked_domains))
    vendor = json.dumps(webgl_vendor)
    renderer = json.dumps(webgl_renderer)
    return f"""
const blockedDomains = {domains};
const isBlocked = (url) => typeof url === 'string' && blockedDomains.some(d => url.includes(d));

const originalFetch = window.fetch;
window.fetch = function(...args) {{
    const target = args[0];
    const url = typeof target === 'string' ? target : (target && target.url);
    if (isBlocked(url)) {{
        return Promise.reject(new Error('Blocked'));
    }}
    return originalFetch.apply(this, args);
}};

const originalOpen = XMLHttpRequest.prototype.open;
XMLHttpRequest.prototype.open = function(method, url, ...rest) {{
    if (isBlocked(url)) {{
        throw new Error('Blocked');
    }}
    return originalOpen.apply(this, [method, url, ...rest]);
}};

// navigator.webdriver is the most common detection vector
Object.defineProperty(navigator, 'webdriver', {{ get: () => undefined, configurable: true }});
delete navigator.__proto__.webdriver;

Object.defineProperty(navigator, 'languages', {{ get: () => ['en-US', 'en'], configurable: true }});
Object.defineProperty(navigator, 'plugins', {{ get: () => [1, 2, 3, 4, 5], configurable: true }});
Object.defineProperty(navigator, 'hardwareConcurrency', {{ get: () => {hw_concurrency}, configurable: true }});
Object.defineProperty(navigator, 'deviceMemory', {{ get: () => {device_mem}, configurable: true }});

if (!window.chrome) {{
    window.chrome = {{ runtime: {{}} }};
}}

if (window.navigator.permissions && window.navigator.permissions.query) {{
    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => (
        parameters.name === 'notifications'
            ? Promise.resolve({{ state: Notification.permission }})
            : originalQuery(parameters)
    );
}}

const patchWebGL = (proto) => {{
    if (!proto) return;
    const getParameter = proto.getParameter;
    proto.getParameter = function(parameter) {{
        if (parameter === 37445) return {vendor};
        if (parameter === 37446) return {renderer};
        return getParameter.apply(this, arguments);
    }};
}};
patchWebGL(window.WebGLRenderingContext && WebGLRenderingContext.prototype);
patchWebGL(window.WebGL2RenderingContext && WebGL2RenderingContext.prototype);
"""


class BrowserPool:
    """A single Chromium process shared by all captures.

    Each capture gets its own context (fresh fingerprint, cookies, routes);
    the number of live contexts is bounded by a semaphore of
    ``BROWSER_POOL_SIZE`` slots.
    """

    _CHROMIUM_ARGS = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-blink-features=AutomationControlled",
        "--disable-infobars",
        "--disable-default-apps",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-hang-monitor",
        "--disable-prompt-on-repost",
        "--disable-background-networking",
        "--disable-background-timer-throttling",
        "--disable-renderer-backgrounding",
        "--disable-sync",
        "--metrics-recording-only",
        "--disable-features=IsolateOrigins,site-per-process,TranslateUI",
        "--disable-web-security",
        "--disable-gpu",
        "--force-color-profile=srgb",
        "--password-store=basic",
        "--use-mock-keychain",
    ]

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self._playwright = None
        self._chromium: Browser | None = None
        self._semaphore: asyncio.Semaphore | None = None
        self._initialized = False
        self._loop = None
        self._init_lock: asyncio.Lock | None = None

    def _get_init_lock(self) -> asyncio.Lock:
        """Get or create an asyncio.Lock bound to the current event loop."""
        current_loop = asyncio.get_running_loop()
        if self._init_lock is None or self._loop is not current_loop:
            self._init_lock = asyncio.Lock()
        return self._init_lock

    async def initialize(self):
        current_loop = asyncio.get_running_loop()
        if self._initialized and self._loop is current_loop:
            if self._chromium and self._chromium.is_connected():
                return

        async with self._get_init_lock():
            # Double-check after acquiring lock
            if self._initialized and self._loop is current_loop:
                if self._chromium and self._chromium.is_connected():
                    return
                logger.warning("Chromium browser disconnected, reinitializing browser pool")
                await self._close_quietly()

            self._loop = current_loop
            self._semaphore = asyncio.Semaphore(self.settings.BROWSER_POOL_SIZE)
            self._playwright = await async_playwright().start()
            self._chromium = await self._playwright.chromium.launch(
                headless=self.settings.BROWSER_HEADLESS,
                args=self._CHROMIUM_ARGS,
            )
            self._initialized = True
            logger.info(f"Browser pool initialized (chromium={self.settings.BROWSER_POOL_SIZE})")

    async def _close_quietly(self):
        for closer in (
            self._chromium.close if self._chromium else None,
            self._playwright.stop if self._playwright else None,
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.debug(f"Ignoring error while closing stale browser: {e}")
        self._chromium = None
        self._playwright = None
        self._initialized = False

    async def shutdown(self):
        if self._chromium:
            await self._chromium.close()
        if self._playwright:
            await self._playwright.stop()
        self._chromium = None
        self._playwright = None
        self._initialized = False
        self._loop = None
        logger.info("Browser pool shut down")

    def _context_kwargs(self) -> dict:
        ua = random.choice(CHROME_USER_AGENTS)
        platform = '"Windows"' if "Win" in ua else '"macOS"' if "Mac" in ua else '"Linux"'
        return dict(
            user_agent=ua,
            viewport=random.choice(VIEWPORTS),
            locale="en-US",
            timezone_id=random.choice(TIMEZONES),
            ignore_https_errors=True,
            java_script_enabled=True,
            has_touch=False,
            is_mobile=False,
            color_scheme="light",
            extra_http_headers={
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
                "Sec-Ch-Ua-Mobile": "?0",
                "Sec-Ch-Ua-Platform": platform,
                "Upgrade-Insecure-Requests": "1",
            },
        )

    @asynccontextmanager
    async def get_page(self, stealth: bool = True):
        """Yield a fresh page in its own context; context closed on exit."""
        await self.initialize()

        slot_timeout = self.settings.BROWSER_SLOT_TIMEOUT
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=slot_timeout)
        except asyncio.TimeoutError:
            browser_pool_exhausted_total.inc()
            raise BrowserPoolExhaustedError(
                f"No Chromium browser slots available after {slot_timeout:.0f}s"
            )
        try:
            active_browser_contexts.inc()
            try:
                context: BrowserContext = await self._chromium.new_context(**self._context_kwargs())
                await _setup_route_blocking(context, self.settings.BLOCKED_DOMAINS)

                if stealth:
                    webgl_vendor, webgl_renderer = random.choice(WEBGL_RENDERERS)
                    await context.add_init_script(
                        _build_stealth_script(
                            self.settings.BLOCKED_DOMAINS,
                            webgl_vendor,
                            webgl_renderer,
                            hw_concurrency=random.choice([4, 8, 12, 16]),
                            device_mem=random.choice([4, 8, 16]),
                        )
                    )

                page: Page = await context.new_page()
                try:
                    yield page
                finally:
                    # CancelledError is a BaseException; shield so an abandoned
                    # capture still closes its context.
                    try:
                        await asyncio.shield(self._safe_cleanup_page(page, context))
                    except (asyncio.CancelledError, Exception) as e:
                        logger.debug(f"Page cleanup interrupted: {e!r}")
            finally:
                active_browser_contexts.dec()
        finally:
            self._semaphore.release()

    async def _safe_cleanup_page(self, page: Page, context: BrowserContext):
        """Close page and context, tolerating an already-dead browser."""
        for closer in (page.close, context.close):
            try:
                await closer()
            except Exception as e:
                logger.debug(f"Cleanup error ignored: {e}")


browser_pool = BrowserPool()
