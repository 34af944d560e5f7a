"""Article image candidate extraction, filtering and ranking.

Only three sources are admitted: the Open Graph image, the JSON-LD article
image, and ``<img>`` tags inside a recognised article container. Site chrome
(sidebars, related-post grids, widgets) is stripped before any candidate is
read, and every ``<img>`` is re-checked against its own ancestor chain.
"""

import copy
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup, Tag

from article_harvest.config import Settings, settings as default_settings
from article_harvest.core.patterns import Patterns, get_patterns
from article_harvest.schemas.article import Image
from article_harvest.services.structured_data import (
    as_text,
    find_article,
    image_url,
    iter_jsonld_objects,
)

logger = logging.getLogger(__name__)

SOURCE_OG = "og"
SOURCE_JSONLD = "jsonld"
SOURCE_IMG = "img"

# Removed before extraction
PREPASS_SELECTORS = [
    "aside",
    ".sidebar",
    ".right-rail",
    ".side-bar",
    ".related-posts",
    ".related-articles",
    ".recommended-posts",
    ".popular-posts",
    "[class*='sidebar']",
    "[id*='sidebar']",
    "[class*='related']",
    "[id*='related']",
    "[class*='popular']",
    "[id*='popular']",
    "nav",
    "footer",
]

ARTICLE_CONTAINER_SELECTOR = (
    "article, main, section[itemprop='articleBody'], [itemprop='articleBody'], "
    "section.article-body, #article-body"
)

# Attributes inspected for exclusion keywords
_SECTION_ATTRS = ("data-widget", "data-component", "data-type", "data-section")

# Article headers hold hero images and in-article galleries are real content
_SCOPE_IGNORED_KEYWORDS = frozenset({"header", "gallery"})

_LIST_TAGS = frozenset({"ul", "ol", "nav"})

# Layout classes such as "has-sidebar" on <body> must not wipe the page
_PROTECTED_TAGS = frozenset({"html", "body", "article", "main"})

# Three passes: og, jsonld, img
_pass_executor = ThreadPoolExecutor(max_workers=3, thread_name_prefix="image-pass")


@dataclass
class ImageCandidate:
    url: str
    alt: str = ""
    width: int = 0
    height: int = 0
    in_article: bool = False
    bad_hint: bool = False
    source: str = SOURCE_IMG
    score: float = 0.0
    area: int = 0

    @property
    def has_dimensions(self) -> bool:
        return self.width > 0 and self.height > 0

    @property
    def short_side(self) -> int:
        return min(self.width, self.height)


def canonical_image_url(url: str) -> str:
    """Drop query string and fragment so resized variants dedupe together."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def _parse_int(value) -> int:
    if value is None:
        return 0
    digits = ""
    for ch in str(value).strip():
        if not ch.isdigit():
            break
        digits += ch
    return int(digits) if digits else 0


def _is_article_container(tag: Tag) -> bool:
    if tag.name in ("article", "main"):
        return True
    if tag.get("itemprop") == "articleBody":
        return True
    if tag.get("id") == "article-body":
        return True
    return tag.name == "section" and "article-body" in (tag.get("class") or [])


def _ancestors(tag: Tag):
    """Parent chain up to (not including) the document object."""
    for parent in tag.parents:
        if not isinstance(parent, Tag) or parent.name == "[document]":
            return
        yield parent


class CandidateScorer:
    """Ranks article images from a parsed document.

    Stateless after construction; safe to share between threads.
    """

    def __init__(self, settings: Settings | None = None, patterns: Patterns | None = None):
        self.settings = settings or default_settings
        self.patterns = patterns or get_patterns(self.settings)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def score(self, document: str | BeautifulSoup, base_url: str) -> list[Image]:
        """Return up to IMAGE_LIMIT deduplicated article images, best first."""
        ranked = self.rank(document, base_url)
        return self.top_images(ranked, self.settings.IMAGE_LIMIT)

    def rank(self, document: str | BeautifulSoup, base_url: str) -> list[ImageCandidate]:
        """Extract, filter, score and sort candidates (duplicates retained)."""
        if isinstance(document, BeautifulSoup):
            soup = copy.copy(document)
        else:
            soup = BeautifulSoup(document or "", "lxml")

        self.preprocess(soup)

        passes = [
            _pass_executor.submit(self._extract_og_image, soup, base_url),
            _pass_executor.submit(self._extract_jsonld_image, soup, base_url),
            _pass_executor.submit(self._extract_article_images, soup, base_url),
        ]
        candidates: list[ImageCandidate] = []
        # Fan in in submission order so output is deterministic
        for future in passes:
            candidates.extend(future.result())

        filtered = []
        for c in candidates:
            if not c.in_article:
                continue
            if not self.passes_basic_filters(c):
                continue
            c.score = self.calculate_score(c)
            width, height = self.scoring_dimensions(c)
            c.area = width * height
            filtered.append(c)

        filtered.sort(key=lambda c: (c.score, c.area), reverse=True)
        return filtered

    # ------------------------------------------------------------------
    # Structural exclusion
    # ------------------------------------------------------------------

    def preprocess(self, soup: BeautifulSoup) -> None:
        """Remove site chrome from the document before candidate extraction."""
        for selector in PREPASS_SELECTORS:
            for el in soup.select(selector):
                if el.decomposed or el.name in _PROTECTED_TAGS:
                    continue
                el.decompose()

        # Site headers go, article headers stay
        for header in soup.find_all("header"):
            if not header.decomposed and header.find_parent(["article", "main"]) is None:
                header.decompose()

        for el in soup.select("[class*='widget'], [id*='widget']"):
            if el.decomposed or el.name in _PROTECTED_TAGS:
                continue
            if any(_is_article_container(a) for a in _ancestors(el)):
                continue
            el.decompose()

    def is_excluded_section(self, tag: Tag, ignore: frozenset = frozenset()) -> bool:
        if tag.name in ("html", "body"):
            return False
        classes = tag.get("class") or []
        if isinstance(classes, str):
            classes = [classes]
        parts = [" ".join(classes), tag.get("id") or ""]
        parts.extend(tag.get(attr) or "" for attr in _SECTION_ATTRS)
        combined = " ".join(parts).lower()
        if not combined.strip():
            return False
        return any(
            kw in combined
            for kw in self.patterns.exclusion_keywords
            if kw not in ignore
        )

    def _excluded_before_container(self, tag: Tag) -> bool:
        """Walk ancestors until an article container; True if an excluded section comes first."""
        for parent in _ancestors(tag):
            if _is_article_container(parent):
                return False
            if self.is_excluded_section(parent, ignore=_SCOPE_IGNORED_KEYWORDS):
                return True
        return False

    def in_article_scope(self, img: Tag) -> bool:
        for parent in _ancestors(img):
            if _is_article_container(parent):
                return True
            if self.is_excluded_section(parent, ignore=_SCOPE_IGNORED_KEYWORDS):
                return False
        return False

    def in_link_list(self, img: Tag) -> bool:
        """Detect thumbnail grids: link-dense ancestors holding several small images."""
        large_width = self.settings.LARGE_IMAGE_WIDTH
        for depth, parent in enumerate(_ancestors(img)):
            if depth >= 5:
                break
            link_count = len(parent.find_all("a"))
            imgs = parent.find_all("img")
            if link_count < 3 or len(imgs) < 2:
                continue

            if parent.name in _LIST_TAGS:
                return True

            has_large = False
            small_count = 0
            for other in imgs:
                w = _parse_int(other.get("width"))
                if w > large_width:
                    has_large = True
                elif w > 0:
                    small_count += 1
                if not has_large:
                    match = self.patterns.width_style.search(other.get("style") or "")
                    if match and float(match.group(1)) > large_width:
                        has_large = True

            if not has_large and small_count >= 2 and link_count >= 6:
                return True
        return False

    # ------------------------------------------------------------------
    # Candidate sources
    # ------------------------------------------------------------------

    def _extract_og_image(self, soup: BeautifulSoup, base_url: str) -> list[ImageCandidate]:
        og_url = alt = ""
        width = height = 0
        for meta in soup.find_all("meta"):
            prop = meta.get("property") or meta.get("name")
            content = meta.get("content")
            if not prop or content is None:
                continue
            if prop in ("og:image", "og:image:secure_url", "og:image:url"):
                og_url = content.strip()
            elif prop == "og:image:alt":
                alt = content.strip()
            elif prop == "og:image:width":
                width = _parse_int(content)
            elif prop == "og:image:height":
                height = _parse_int(content)

        if not og_url:
            return []
        abs_url = urljoin(base_url, og_url)
        if not self.patterns.image_ext.search(abs_url):
            return []

        if not width or not height:
            url_w, url_h = self.dimensions_from_url(abs_url)
            width = width or url_w
            height = height or url_h

        return [
            ImageCandidate(
                url=canonical_image_url(abs_url),
                alt=alt,
                width=width,
                height=height,
                in_article=True,
                source=SOURCE_OG,
            )
        ]

    def _extract_jsonld_image(self, soup: BeautifulSoup, base_url: str) -> list[ImageCandidate]:
        article = find_article(soup)
        raw = image_url(article.get("image")) if article else ""
        if not raw:
            # Fall back to any object that carries an image (e.g. WebPage)
            for obj in iter_jsonld_objects(soup):
                raw = image_url(obj.get("image"))
                if raw:
                    break
        if not raw:
            return []

        abs_url = urljoin(base_url, raw)
        if not self.patterns.image_ext.search(abs_url):
            return []

        alt = as_text(article.get("headline")) if article else ""
        return [
            ImageCandidate(
                url=canonical_image_url(abs_url),
                alt=alt,
                in_article=True,
                source=SOURCE_JSONLD,
            )
        ]

    def _extract_article_images(self, soup: BeautifulSoup, base_url: str) -> list[ImageCandidate]:
        candidates = []
        seen: set[int] = set()
        for container in soup.select(ARTICLE_CONTAINER_SELECTOR):
            if self._excluded_before_container(container):
                continue
            for img in container.find_all("img"):
                if id(img) in seen:
                    continue
                seen.add(id(img))
                candidate = self._extract_img_tag(img, base_url)
                if candidate is not None:
                    candidates.append(candidate)
        return candidates

    def _extract_img_tag(self, img: Tag, base_url: str) -> ImageCandidate | None:
        abs_url = self._resolve_src(img, base_url)
        if not abs_url:
            return None

        width, height = self.extract_dimensions(img)
        if not width or not height:
            url_w, url_h = self.dimensions_from_url(abs_url)
            width = width or url_w
            height = height or url_h

        in_article = self.in_article_scope(img) and not self.in_link_list(img)
        return ImageCandidate(
            url=canonical_image_url(abs_url),
            alt=(img.get("alt") or "").strip(),
            width=width,
            height=height,
            in_article=in_article,
            bad_hint=self.has_bad_hint(img, abs_url),
            source=SOURCE_IMG,
        )

    def _resolve_src(self, img: Tag, base_url: str) -> str:
        options = [
            self.pick_from_srcset(img.get("data-srcset") or ""),
            img.get("src"),
            img.get("data-src"),
            img.get("data-original"),
            img.get("data-lazy-src"),
            self.pick_from_srcset(img.get("srcset") or ""),
        ]
        for src in options:
            if not src or src.startswith("data:"):
                continue
            abs_url = urljoin(base_url, src.strip())
            if self.patterns.image_ext.search(abs_url):
                return abs_url
        return ""

    # ------------------------------------------------------------------
    # Attribute parsing
    # ------------------------------------------------------------------

    def pick_from_srcset(self, srcset: str) -> str:
        """Pick the srcset entry closest to TARGET_IMAGE_WIDTH, larger on ties."""
        target = self.settings.TARGET_IMAGE_WIDTH
        best_url, best_w = "", -1
        for item in srcset.split(","):
            match = self.patterns.srcset_item.match(item.strip())
            if not match:
                continue
            url, w = match.group(1), int(match.group(2))
            if best_w < 0:
                best_url, best_w = url, w
                continue
            diff, best_diff = abs(w - target), abs(best_w - target)
            if diff < best_diff or (diff == best_diff and w > best_w):
                best_url, best_w = url, w
        return best_url

    def extract_dimensions(self, img: Tag) -> tuple[int, int]:
        width = _parse_int(img.get("width"))
        height = _parse_int(img.get("height"))
        style = img.get("style") or ""
        if style:
            w_match = self.patterns.width_style.search(style)
            if w_match:
                width = int(float(w_match.group(1)))
            h_match = self.patterns.height_style.search(style)
            if h_match:
                height = int(float(h_match.group(1)))
        return width, height

    def dimensions_from_url(self, url: str) -> tuple[int, int]:
        match = self.patterns.dimensions_from_url.search(url)
        if match:
            return int(match.group(1)), int(match.group(2))
        w_match = self.patterns.width_from_url.search(url)
        h_match = self.patterns.height_from_url.search(url)
        return (
            int(w_match.group(1)) if w_match else 0,
            int(h_match.group(1)) if h_match else 0,
        )

    def has_bad_hint(self, img: Tag, url: str) -> bool:
        if self.patterns.bad_hint.search(url):
            return True
        classes = img.get("class") or []
        markup = " ".join([" ".join(classes), img.get("id") or ""])
        return bool(markup.strip()) and bool(self.patterns.bad_hint.search(markup))

    # ------------------------------------------------------------------
    # Filtering and scoring
    # ------------------------------------------------------------------

    def is_ad_size(self, width: int, height: int) -> bool:
        return (width, height) in self.patterns.ad_sizes

    def matches_ratio(self, width: int, height: int) -> bool:
        if not width or not height:
            return False
        aspect = width / height
        return any(
            abs(aspect - ratio) <= self.patterns.ratio_tolerance
            for ratio in self.patterns.ratio_whitelist
        )

    def passes_basic_filters(self, c: ImageCandidate) -> bool:
        s = self.settings
        if c.has_dimensions:
            if c.width <= c.height:
                return False
            if c.width < s.MIN_IMAGE_WIDTH:
                return False
            if c.short_side < s.MIN_IMAGE_SHORT_SIDE:
                return False
            if self.is_ad_size(c.width, c.height):
                return False
            # Large images survive a bad hint
            if c.bad_hint and c.short_side < s.BAD_HINT_MAX_SHORT_SIDE:
                return False
            return True
        return not c.bad_hint

    def scoring_dimensions(self, c: ImageCandidate) -> tuple[int, int]:
        """Declared size, or the standard share-card size for og/JSON-LD images that omit it."""
        if c.has_dimensions or c.source not in (SOURCE_OG, SOURCE_JSONLD):
            return c.width, c.height
        return self.settings.ASSUMED_SHARE_IMAGE_WIDTH, self.settings.ASSUMED_SHARE_IMAGE_HEIGHT

    def calculate_score(self, c: ImageCandidate) -> float:
        width, height = self.scoring_dimensions(c)
        score = 0.0
        if c.in_article:
            score += 2.0
        if c.source in (SOURCE_OG, SOURCE_JSONLD):
            score += 1.5
        if self.matches_ratio(width, height):
            score += 1.0
        area = width * height
        if area > 0:
            score += math.floor(math.log10(max(1, area)))
        return score

    @staticmethod
    def top_images(candidates: list[ImageCandidate], limit: int) -> list[Image]:
        """Dedupe by canonical URL keeping rank order; backfill missing alt text."""
        by_url: dict[str, Image] = {}
        for c in candidates:
            existing = by_url.get(c.url)
            if existing is None:
                by_url[c.url] = Image(url=c.url, alt=c.alt)
            elif not existing.alt and c.alt:
                existing.alt = c.alt
        return list(by_url.values())[:limit]
