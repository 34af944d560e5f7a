"""Compiled pattern sets shared by the capture and extraction layers.

Built once per ``Settings`` instance and never mutated afterwards, so a
single ``Patterns`` object is safely shared across concurrent scrapes and
the image-extraction worker threads.
"""

import logging
import re
from dataclasses import dataclass

from article_harvest.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.DOTALL | re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.DOTALL | re.IGNORECASE)
_NOSCRIPT_RE = re.compile(r"<noscript[^>]*>.*?</noscript>", re.DOTALL | re.IGNORECASE)
_BODY_RE = re.compile(r"<body[^>]*>(.*?)</body>", re.DOTALL | re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.DOTALL | re.IGNORECASE)


def _alternation(phrases) -> re.Pattern:
    return re.compile("|".join(re.escape(p.lower()) for p in phrases))


def visible_text(html: str) -> str:
    """Lower-cased, whitespace-collapsed body text with scripts/styles removed."""
    body_match = _BODY_RE.search(html)
    body_html = body_match.group(1) if body_match else html
    body_html = _SCRIPT_RE.sub(" ", body_html)
    body_html = _STYLE_RE.sub(" ", body_html)
    body_html = _NOSCRIPT_RE.sub(" ", body_html)
    text = _TAG_RE.sub(" ", body_html).strip().lower()
    return _WS_RE.sub(" ", text)


@dataclass(frozen=True)
class Patterns:
    challenge: re.Pattern
    cloudflare: re.Pattern
    app_error: re.Pattern
    block_page_max_text: int

    # Image extraction
    image_ext: re.Pattern
    bad_hint: re.Pattern
    width_style: re.Pattern
    height_style: re.Pattern
    dimensions_from_url: re.Pattern
    width_from_url: re.Pattern
    height_from_url: re.Pattern
    srcset_item: re.Pattern
    ad_sizes: frozenset
    ratio_whitelist: tuple
    ratio_tolerance: float
    exclusion_keywords: tuple

    # Selector strings
    content_selectors: tuple
    blocked_domains: tuple

    @classmethod
    def from_settings(cls, cfg: Settings) -> "Patterns":
        ad_sizes = set()
        for size in cfg.AD_SIZES:
            w, _, h = size.partition("x")
            ad_sizes.add((int(w), int(h)))

        return cls(
            challenge=_alternation(cfg.CHALLENGE_PATTERNS),
            cloudflare=_alternation(cfg.CLOUDFLARE_PATTERNS),
            app_error=_alternation(cfg.APP_ERROR_PATTERNS),
            block_page_max_text=cfg.BLOCK_PAGE_MAX_TEXT,
            image_ext=re.compile(r"\.(jpe?g|png|gif|webp|avif|bmp)(\?|#|$)", re.IGNORECASE),
            bad_hint=re.compile(
                r"(^|[^a-z])(ads?|advert\w*|banner|tracker|tracking|pixel|icon|logo|"
                r"sprite|avatar|spacer|1x1)([^a-z]|$)",
                re.IGNORECASE,
            ),
            width_style=re.compile(r"(?:^|[;\s])width\s*:\s*(\d+(?:\.\d+)?)px", re.IGNORECASE),
            height_style=re.compile(r"(?:^|[;\s])height\s*:\s*(\d+(?:\.\d+)?)px", re.IGNORECASE),
            dimensions_from_url=re.compile(r"(?<!\d)(\d{2,5})x(\d{2,5})(?!\d)"),
            width_from_url=re.compile(r"[?&](?:w|width)=(\d+)", re.IGNORECASE),
            height_from_url=re.compile(r"[?&](?:h|height)=(\d+)", re.IGNORECASE),
            srcset_item=re.compile(r"^(\S+)\s+(\d+)w$"),
            ad_sizes=frozenset(ad_sizes),
            ratio_whitelist=tuple(cfg.RATIO_WHITELIST),
            ratio_tolerance=cfg.RATIO_TOLERANCE,
            exclusion_keywords=tuple(k.lower() for k in cfg.IMAGE_EXCLUSION_KEYWORDS),
            content_selectors=tuple(cfg.CONTENT_SELECTORS),
            blocked_domains=tuple(cfg.BLOCKED_DOMAINS),
        )

    def looks_like_challenge(self, html: str) -> bool:
        return bool(html) and bool(self.challenge.search(html.lower()))

    def looks_like_app_error(self, html: str) -> bool:
        return bool(html) and bool(self.app_error.search(html.lower()))

    def matches_block_text(self, text: str) -> bool:
        """Match block markers in free text such as an error message."""
        return bool(text) and bool(self.cloudflare.search(text.lower()))

    def looks_blocked(self, html: str) -> bool:
        """True when HTML is a protection page rather than real content.

        Pages with substantial visible text are never block pages: article
        bodies routinely mention "cloudflare" or carry a Ray ID footer.
        """
        if not html:
            return False
        text = visible_text(html)
        if len(text) > self.block_page_max_text:
            return False
        title_match = _TITLE_RE.search(html)
        title = title_match.group(1).lower() if title_match else ""
        match = self.cloudflare.search(text) or self.cloudflare.search(title)
        if match:
            logger.warning(
                f"looks_blocked: matched '{match.group(0)}' (body_text={len(text)} chars)"
            )
            return True
        return False


_cache: dict[int, tuple[Settings, Patterns]] = {}


def get_patterns(cfg: Settings | None = None) -> Patterns:
    """Return the shared Patterns for a settings object, building it once."""
    cfg = cfg or default_settings
    entry = _cache.get(id(cfg))
    if entry is None or entry[0] is not cfg:
        entry = (cfg, Patterns.from_settings(cfg))
        _cache[id(cfg)] = entry
    return entry[1]
