"""Multi-strategy article content extraction.

Strategies run in a fixed priority order over one parsed document:

1. ``jsonld`` - schema.org Article/NewsArticle/BlogPosting markup
2. ``readability`` - boilerplate removal (readability-lxml, trafilatura fallback)
3. ``simple`` - body text minus chrome; only when readability came back weak
4. ``metadata-only`` - <title> and meta description; only when all else is empty

Each produces an independent ``ExtractionResult``; results are compared by a
composite score and never merged. Images, videos and article metadata are
computed once per document and attached to the winner.
"""

import copy
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import trafilatura
from bs4 import BeautifulSoup, Tag
from readability import Document

from article_harvest.config import Settings, settings as default_settings
from article_harvest.core.metrics import content_strategy_selected_total, images_extracted
from article_harvest.core.patterns import Patterns, get_patterns
from article_harvest.schemas.article import ExtractionResult, QualityMetrics
from article_harvest.services.images import CandidateScorer
from article_harvest.services.structured_data import as_text, find_article, find_meta, person_name
from article_harvest.services.videos import VideoExtractor

logger = logging.getLogger(__name__)

STRATEGY_JSONLD = "jsonld"
STRATEGY_READABILITY = "readability"
STRATEGY_SIMPLE = "simple"
STRATEGY_METADATA_ONLY = "metadata-only"

TEXT_TAGS = ["p", "h1", "h2", "h3", "h4", "h5", "h6", "li", "blockquote"]
HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}
NON_CONTENT_TAGS = ["script", "style", "nav", "header", "footer", "aside"]
SIMPLE_STRIP_TAGS = ["script", "style", "nav", "header", "footer"]

_INLINE_WS_RE = re.compile(r"[ \t\r\f\v]+")
_MULTI_NEWLINE_RE = re.compile(r"\n{3,}")


def clean_text(text: str) -> str:
    """Collapse runs of spaces per line and cap blank lines at one."""
    if not text:
        return ""
    lines = [_INLINE_WS_RE.sub(" ", line).strip() for line in text.split("\n")]
    return _MULTI_NEWLINE_RE.sub("\n\n", "\n".join(lines)).strip()


def structured_text(root: Tag | BeautifulSoup) -> str:
    """Text of p/h*/li/blockquote elements with block boundaries kept.

    Headings are preceded by a blank line and followed by a newline;
    paragraphs, list items and quotes each start on their own line.
    """
    parts: list[str] = []
    for el in root.find_all(TEXT_TAGS):
        # Nested text elements (li > p) are covered by their outer element
        if el.find_parent(TEXT_TAGS) is not None:
            continue
        text = el.get_text(" ", strip=True)
        if not text:
            continue
        if el.name in HEADING_TAGS:
            if parts:
                parts.append("\n\n")
            parts.append(text)
            parts.append("\n")
        else:
            if parts and not parts[-1].endswith("\n"):
                parts.append("\n")
            parts.append(text)
    return clean_text("".join(parts))


def fallback_text(root: Tag | BeautifulSoup) -> str:
    """All text under root with non-content tags removed."""
    root = copy.copy(root)
    for el in root.find_all(NON_CONTENT_TAGS):
        el.decompose()
    return clean_text(root.get_text("\n", strip=True))


@dataclass
class ParsedDocument:
    """One parsed page shared by every strategy; strategies copy before mutating."""

    html: str
    base_url: str
    soup: BeautifulSoup = field(init=False)

    def __post_init__(self):
        self.soup = BeautifulSoup(self.html or "", "lxml")

    def title_tag(self) -> str:
        tag = self.soup.find("title")
        return tag.get_text(strip=True) if tag else ""

    def meta_description(self) -> str:
        return find_meta(self.soup, name="description")


# ---------------------------------------------------------------------------
# Quality scoring
# ---------------------------------------------------------------------------


def score_quality(content: str, page_html: str, fragment: Tag | BeautifulSoup | None = None) -> QualityMetrics:
    """Score extracted content 0-100.

    ``fragment`` is the markup the content came from; it supplies the link
    and heading counts. Without it (JSON-LD bodies) both count as zero.
    """
    content = content or ""
    if not content.strip():
        return QualityMetrics()

    paragraphs = [p for p in content.split("\n") if p.strip()]
    paragraph_count = len(paragraphs)
    avg_len = sum(len(p) for p in paragraphs) / paragraph_count if paragraph_count else 0.0
    word_count = len(content.split())
    ratio = len(content) / len(page_html) if page_html else 0.0
    ratio = min(ratio, 1.0)

    link_count = len(fragment.find_all("a")) if fragment is not None else 0
    link_density = link_count / (len(content) / 1000)
    has_headers = bool(fragment.find(list(HEADING_TAGS))) if fragment is not None else False

    score = 0.0
    score += min(25.0, ratio * 100)
    score += min(20.0, paragraph_count * 2.0)
    if avg_len >= 80:
        score += 15
    elif avg_len >= 40:
        score += 8
    if has_headers:
        score += 10
    score += min(20, word_count // 50)
    if link_density <= 5:
        score += 10
    elif link_density <= 15:
        score += 5

    return QualityMetrics(
        score=round(min(score, 100.0), 2),
        text_to_html_ratio=round(ratio, 4),
        paragraph_count=paragraph_count,
        avg_paragraph_length=round(avg_len, 1),
        has_headers=has_headers,
        link_density=round(link_density, 2),
        word_count=word_count,
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class ContentStrategy(ABC):
    """One way of turning a parsed document into an ExtractionResult."""

    name: str = ""

    def __init__(self, settings: Settings, patterns: Patterns):
        self.settings = settings
        self.patterns = patterns

    def should_run(self, prior: dict[str, ExtractionResult]) -> bool:
        return True

    @abstractmethod
    def extract(self, doc: ParsedDocument) -> ExtractionResult | None:
        """Return a result, or None when the strategy does not apply."""

    # Shared title/description lookups

    def extract_title(self, doc: ParsedDocument) -> str:
        title = find_meta(doc.soup, prop="og:title") or find_meta(doc.soup, name="twitter:title")
        if title:
            return clean_text(title)
        h1 = doc.soup.find("h1")
        if h1 and h1.get_text(strip=True):
            return clean_text(h1.get_text(" ", strip=True))
        return clean_text(doc.title_tag())

    def extract_description(self, doc: ParsedDocument) -> str:
        desc = (
            find_meta(doc.soup, prop="og:description")
            or find_meta(doc.soup, name="twitter:description")
            or doc.meta_description()
        )
        if desc:
            return clean_text(desc)
        first_p = doc.soup.find("p")
        if first_p:
            text = first_p.get_text(" ", strip=True)
            if self.settings.MIN_DESCRIPTION_LENGTH < len(text) < self.settings.MAX_DESCRIPTION_LENGTH:
                return clean_text(text)
        return ""


class JsonLdStrategy(ContentStrategy):
    name = STRATEGY_JSONLD

    def extract(self, doc):
        article = find_article(doc.soup)
        if article is None:
            return None
        description = as_text(article.get("description"))
        content = as_text(article.get("articleBody")) or description
        quality = score_quality(content, doc.html)
        if content:
            quality.score = round(quality.score + self.settings.JSONLD_SCORE_BONUS, 2)
        return ExtractionResult(
            title=clean_text(as_text(article.get("headline"))),
            description=clean_text(description),
            content=clean_text(content),
            quality=quality,
            strategy=self.name,
        )


class ReadabilityStrategy(ContentStrategy):
    name = STRATEGY_READABILITY

    def extract(self, doc):
        content, fragment = self._readability(doc)
        if not content:
            content, fragment = self._trafilatura(doc)
        if not content:
            content, fragment = self._container(doc)
        return ExtractionResult(
            title=self.extract_title(doc),
            description=self.extract_description(doc),
            content=content,
            quality=score_quality(content, doc.html, fragment),
            strategy=self.name,
        )

    def _readability(self, doc):
        try:
            summary = Document(doc.html).summary(html_partial=True)
        except Exception as e:
            logger.debug(f"Readability failed for {doc.base_url}: {e}")
            return "", None
        fragment = BeautifulSoup(summary, "lxml")
        content = structured_text(fragment) or fallback_text(fragment)
        return content, fragment

    def _trafilatura(self, doc):
        try:
            extracted = trafilatura.extract(
                doc.html,
                url=doc.base_url,
                output_format="html",
                include_links=True,
                favor_recall=True,
            )
        except Exception as e:
            logger.debug(f"Trafilatura extraction failed for {doc.base_url}: {e}")
            return "", None
        if not extracted:
            return "", None
        fragment = BeautifulSoup(extracted, "lxml")
        return structured_text(fragment) or fallback_text(fragment), fragment

    def _container(self, doc):
        for selector in self.patterns.content_selectors:
            container = doc.soup.select_one(selector)
            if container is not None:
                break
        else:
            container = doc.soup.body or doc.soup
        content = structured_text(container) or fallback_text(container)
        return content, container


class SimpleStrategy(ContentStrategy):
    name = STRATEGY_SIMPLE

    def should_run(self, prior):
        readability = prior.get(STRATEGY_READABILITY)
        if readability is None:
            return True
        return (
            not readability.content
            or not readability.title
            or readability.quality.score < self.settings.SIMPLE_STRATEGY_SCORE_THRESHOLD
        )

    def extract(self, doc):
        body = doc.soup.body
        content = ""
        if body is not None:
            body = copy.copy(body)
            for el in body.find_all(SIMPLE_STRIP_TAGS):
                el.decompose()
            content = clean_text(body.get_text("\n", strip=True))
        return ExtractionResult(
            title=clean_text(doc.title_tag()),
            description=clean_text(doc.meta_description()),
            content=content,
            quality=QualityMetrics(),
            strategy=self.name,
        )


class MetadataOnlyStrategy(ContentStrategy):
    name = STRATEGY_METADATA_ONLY

    def should_run(self, prior):
        return all(r.is_empty for r in prior.values())

    def extract(self, doc):
        return ExtractionResult(
            title=clean_text(doc.title_tag()),
            description=clean_text(doc.meta_description()),
            content="",
            quality=QualityMetrics(score=self.settings.METADATA_ONLY_SCORE),
            strategy=self.name,
        )


STRATEGY_CLASSES: list[type[ContentStrategy]] = [
    JsonLdStrategy,
    ReadabilityStrategy,
    SimpleStrategy,
    MetadataOnlyStrategy,
]


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------


class ContentStrategySelector:
    def __init__(
        self,
        settings: Settings | None = None,
        image_scorer: CandidateScorer | None = None,
        video_extractor: VideoExtractor | None = None,
    ):
        self.settings = settings or default_settings
        self.patterns = get_patterns(self.settings)
        self.strategies = [cls(self.settings, self.patterns) for cls in STRATEGY_CLASSES]
        self.image_scorer = image_scorer or CandidateScorer(self.settings, self.patterns)
        self.video_extractor = video_extractor or VideoExtractor()

    def run_strategies(self, doc: ParsedDocument) -> dict[str, ExtractionResult]:
        results: dict[str, ExtractionResult] = {}
        for strategy in self.strategies:
            if not strategy.should_run(results):
                continue
            result = strategy.extract(doc)
            if result is None:
                continue
            logger.debug(
                f"Strategy {strategy.name}: title={len(result.title)} chars, "
                f"content={len(result.content)} chars, quality={result.quality.score}"
            )
            results[strategy.name] = result
        return results

    def composite_score(self, result: ExtractionResult) -> float:
        score = result.quality.score
        if result.title and result.content:
            score += 20
        score += min(len(result.content) // 100, 50)
        return score

    def pick_best(self, results: dict[str, ExtractionResult]) -> ExtractionResult:
        """Highest composite wins; ties go to longer content.

        Readability gets a small bonus when it is close to the leader, and it
        is kept over the heuristic fallbacks (simple, metadata-only) whenever
        it is within the preference window of them.
        """
        if not results:
            return ExtractionResult(strategy="none")

        window = self.settings.READABILITY_PREFERENCE_WINDOW
        composites = {name: self.composite_score(r) for name, r in results.items()}
        leader = max(composites.values())

        readability = results.get(STRATEGY_READABILITY)
        if readability is not None and readability.content:
            if composites[STRATEGY_READABILITY] >= leader - window:
                composites[STRATEGY_READABILITY] += self.settings.READABILITY_PREFERENCE_BONUS

        best_name = None
        for name, result in results.items():
            if best_name is None:
                best_name = name
                continue
            score, best_score = composites[name], composites[best_name]
            if score > best_score or (
                score == best_score and len(result.content) > len(results[best_name].content)
            ):
                best_name = name

        if (
            best_name in (STRATEGY_SIMPLE, STRATEGY_METADATA_ONLY)
            and readability is not None
            and readability.content
            and composites[STRATEGY_READABILITY] >= composites[best_name] - window
        ):
            best_name = STRATEGY_READABILITY

        logger.debug(f"Selected strategy {best_name} (composites={composites})")
        return results[best_name]

    def select(self, html: str, base_url: str) -> ExtractionResult:
        doc = ParsedDocument(html, base_url)
        results = self.run_strategies(doc)
        best = self.pick_best(results).model_copy(deep=True)

        best.images = self.image_scorer.score(doc.soup, base_url)
        best.videos = self.video_extractor.extract(doc.soup, base_url)
        self._apply_metadata(best, doc)
        best.source_url = base_url

        content_strategy_selected_total.labels(strategy=best.strategy).inc()
        images_extracted.observe(len(best.images))
        return best

    def _apply_metadata(self, result: ExtractionResult, doc: ParsedDocument) -> None:
        author = publish_date = language = None
        try:
            meta = trafilatura.extract_metadata(doc.html, default_url=doc.base_url)
        except Exception as e:
            logger.debug(f"Metadata extraction failed for {doc.base_url}: {e}")
            meta = None
        if meta is not None:
            author = getattr(meta, "author", None) or None
            publish_date = getattr(meta, "date", None) or None
            language = getattr(meta, "language", None) or None

        article = find_article(doc.soup)
        if article is not None:
            author = author or person_name(article.get("author")) or None
            publish_date = publish_date or as_text(article.get("datePublished")) or None
            language = language or as_text(article.get("inLanguage")) or None
        if not language and doc.soup.html is not None:
            language = (doc.soup.html.get("lang") or "").strip() or None

        result.author = author
        result.publish_date = publish_date
        result.language = language
        result.text_length = len(result.content)
        result.reading_time = max(1, result.text_length // 1000) if result.text_length else 0
        result.excerpt = result.description or self._first_paragraph(result.content)

    @staticmethod
    def _first_paragraph(content: str) -> str:
        for line in content.split("\n"):
            line = line.strip()
            if line:
                return line[:300]
        return ""
