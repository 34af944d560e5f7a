"""Static HTML fetch (tier 1).

For each candidate URL (the original, then AMP and mobile alternates) several
HTTP clients are raced: curl_cffi with different browser TLS fingerprints and
an httpx HTTP/2 client. The first 2xx/3xx response whose body is not a
protection page wins.
"""

import asyncio
import logging
import random
import time
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx
from curl_cffi.requests import AsyncSession

from article_harvest.config import Settings, settings as default_settings
from article_harvest.core.exceptions import FetchError
from article_harvest.core.metrics import fetch_strategy_wins_total
from article_harvest.core.patterns import get_patterns
from article_harvest.services.budget import TimeBudget

logger = logging.getLogger(__name__)

_HTTPX_HEADER_POOL = [
    {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-Ch-Ua": '"Chromium";v="124", "Google Chrome";v="124", "Not-A.Brand";v="99"',
        "Sec-Ch-Ua-Mobile": "?0",
        "Sec-Ch-Ua-Platform": '"Windows"',
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Upgrade-Insecure-Requests": "1",
    },
    {
        "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Upgrade-Insecure-Requests": "1",
    },
]


def generate_alternate_urls(url: str) -> list[str]:
    """Original URL first, then AMP variants, then the mobile host."""
    parsed = urlparse(url)
    urls = [url]

    path = parsed.path.rstrip("/")
    if not path.endswith("/amp"):
        urls.append(urlunparse(parsed._replace(path=f"{path}/amp")))

    query = parse_qsl(parsed.query, keep_blank_values=True)
    keys = {k for k, _ in query}
    if "amp" not in keys:
        urls.append(urlunparse(parsed._replace(query=urlencode(query + [("amp", "1")]))))
    if "outputType" not in keys:
        urls.append(urlunparse(parsed._replace(query=urlencode(query + [("outputType", "amp")]))))

    host = (parsed.hostname or "").lower()
    if host and not host.startswith(("m.", "mobile.")):
        bare = host[4:] if host.startswith("www.") else host
        netloc = parsed.netloc.lower().replace(host, f"m.{bare}", 1)
        urls.append(urlunparse(parsed._replace(netloc=netloc)))

    seen: set[str] = set()
    return [u for u in urls if not (u in seen or seen.add(u))]


def _get_headers_for_profile(profile: str) -> dict[str, str]:
    """Return HTTP headers consistent with a curl_cffi TLS profile."""
    base: dict[str, str] = {
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Sec-Fetch-User": "?1",
        "Upgrade-Insecure-Requests": "1",
    }
    if profile.startswith("safari"):
        # Safari doesn't send Sec-Ch-Ua headers
        base.pop("Sec-Fetch-User", None)
        base["Accept"] = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
    elif profile.startswith("edge"):
        base["Sec-Ch-Ua"] = '"Chromium";v="101", "Microsoft Edge";v="101", "Not A;Brand";v="99"'
        base["Sec-Ch-Ua-Mobile"] = "?0"
        base["Sec-Ch-Ua-Platform"] = '"Windows"'
    elif profile.startswith("chrome"):
        version = profile.replace("chrome", "")
        base["Sec-Ch-Ua"] = f'"Chromium";v="{version}", "Google Chrome";v="{version}", "Not-A.Brand";v="99"'
        base["Sec-Ch-Ua-Mobile"] = "?0"
        base["Sec-Ch-Ua-Platform"] = '"Windows"'
    return base


# ---------------------------------------------------------------------------
# Race helper: runs fetch coroutines concurrently, returns first valid result
# ---------------------------------------------------------------------------


class RaceResult:
    """Winner of a race plus every rejection reason seen along the way."""

    __slots__ = ("winner_name", "winner_result", "failures")

    def __init__(self):
        self.winner_name: str | None = None
        self.winner_result = None
        self.failures: list[str] = []

    @property
    def success(self) -> bool:
        return self.winner_name is not None


async def _race_strategies(
    coros: list[tuple[str, Any]],
    url: str,
    validate_fn,
    timeout: float | None = None,
) -> RaceResult:
    """Run (name, coroutine) pairs concurrently; the first validated result wins.

    ``validate_fn(result)`` returns None to accept, or a short rejection
    reason. Losers are cancelled once a winner is found or time runs out.
    """
    race = RaceResult()
    if not coros:
        return race

    tasks = [asyncio.create_task(coro, name=name) for name, coro in coros]
    pending = set(tasks)
    race_start = time.monotonic()

    try:
        while pending:
            wait_timeout = None
            if timeout is not None:
                elapsed = time.monotonic() - race_start
                if elapsed >= timeout:
                    logger.warning(f"Race timeout ({timeout:.1f}s) for {url}, pending: {[t.get_name() for t in pending]}")
                    race.failures.append(f"timeout after {timeout:.1f}s")
                    break
                wait_timeout = timeout - elapsed

            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED, timeout=wait_timeout)
            if not done:
                logger.warning(f"Race: wait timeout for {url}, pending: {[t.get_name() for t in pending]}")
                race.failures.append(f"timeout after {timeout:.1f}s")
                break

            for task in done:
                name = task.get_name()
                try:
                    result = task.result()
                except Exception as e:
                    logger.warning(f"Race: {name} failed for {url}: {e}")
                    race.failures.append(f"{name}: {e}")
                    continue

                reason = validate_fn(result)
                if reason is None:
                    race.winner_name = name
                    race.winner_result = result
                    logger.info(f"Race winner: {name} for {url}")
                    break
                logger.warning(f"Race: {name} failed validation for {url} ({reason})")
                race.failures.append(f"{name}: {reason}")

            if race.success:
                break
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    return race


class StaticFetcher:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.patterns = get_patterns(self.settings)

    async def fetch_with_alternates(self, url: str, budget: TimeBudget) -> tuple[str, str]:
        """Return ``(html, final_url)`` from the first candidate URL that works.

        Raises FetchError when no candidate produced usable HTML in time.
        """
        candidates = generate_alternate_urls(url) if self.settings.FETCH_TRY_ALTERNATES else [url]
        failures: list[str] = []

        for i, candidate in enumerate(candidates):
            if budget.expired:
                failures.append("budget exhausted")
                break
            logger.info(f"Static fetch {i + 1}/{len(candidates)}: {candidate} ({budget!r})")
            race = await _race_strategies(
                self._strategies(candidate, budget.remaining()),
                candidate,
                validate_fn=self._validate,
                timeout=budget.remaining(),
            )
            if race.success:
                html, _, final_url = race.winner_result
                fetch_strategy_wins_total.labels(strategy=race.winner_name.split(":")[0]).inc()
                return html, final_url or candidate
            failures.extend(race.failures)

        raise FetchError(self._failure_message(url, failures))

    def _strategies(self, url: str, timeout: float) -> list[tuple[str, Any]]:
        coros = [
            (f"curl_cffi:{profile}", self._fetch_with_curl_cffi(url, timeout, profile))
            for profile in self.settings.FETCH_IMPERSONATE_PROFILES
        ]
        if self.settings.FETCH_USE_HTTPX:
            coros.append(("httpx", self._fetch_with_httpx(url, timeout)))
        return coros

    def _validate(self, result) -> str | None:
        html, status_code, _ = result
        if status_code >= 400:
            return f"HTTP {status_code}"
        if not html or not html.strip():
            return "empty body"
        if self.patterns.looks_blocked(html):
            return "CF_BLOCKED page"
        return None

    @staticmethod
    def _failure_message(url: str, failures: list[str]) -> str:
        # Keep block markers (HTTP 403, CF_BLOCKED) in the message so the
        # orchestrator can classify the failure.
        detail = "; ".join(dict.fromkeys(failures)) or "no strategies ran"
        return f"Static fetch failed for {url}: {detail}"

    async def _fetch_with_curl_cffi(self, url: str, timeout: float, profile: str) -> tuple[str, int, str]:
        """HTTP fetch with a single TLS fingerprint profile."""
        async with AsyncSession(impersonate=profile) as session:
            response = await session.get(
                url,
                timeout=timeout,
                allow_redirects=True,
                headers=_get_headers_for_profile(profile),
            )
            return response.text or "", response.status_code, str(response.url)

    async def _fetch_with_httpx(self, url: str, timeout: float) -> tuple[str, int, str]:
        async with httpx.AsyncClient(
            follow_redirects=True,
            http2=True,
            timeout=timeout,
            headers=random.choice(_HTTPX_HEADER_POOL),
        ) as client:
            response = await client.get(url)
            return response.text, response.status_code, str(response.url)
