from pydantic import BaseModel, field_validator


def _normalize_url(url: str) -> str:
    """Strip whitespace; scheme validation happens in the orchestrator."""
    return url.strip()


class ScrapeRequest(BaseModel):
    url: str
    timeout: int = 60000  # ms
    request_id: str | None = None

    @field_validator("url", mode="before")
    @classmethod
    def _strip(cls, v: str) -> str:
        return _normalize_url(v)


class Image(BaseModel):
    url: str
    alt: str = ""


class Video(BaseModel):
    url: str
    provider: str = "unknown"  # youtube, vimeo, dailymotion, twitch, facebook, tiktok, html5, unknown
    type: str = "embedded"  # og, twitter, jsonld, embedded, html5
    title: str = ""


class QualityMetrics(BaseModel):
    score: float = 0.0
    text_to_html_ratio: float = 0.0
    paragraph_count: int = 0
    avg_paragraph_length: float = 0.0
    has_headers: bool = False
    link_density: float = 0.0  # links per 1000 content characters
    word_count: int = 0


class ExtractionResult(BaseModel):
    title: str = ""
    description: str = ""
    content: str = ""
    images: list[Image] = []
    videos: list[Video] = []
    quality: QualityMetrics = QualityMetrics()

    # Article metadata
    author: str | None = None
    publish_date: str | None = None
    excerpt: str = ""
    reading_time: int = 0  # minutes
    language: str | None = None
    text_length: int = 0

    # Provenance
    strategy: str = ""  # jsonld, readability, simple, metadata-only
    source_url: str = ""
    final_url: str = ""
    tier: str = ""  # static, browser
    degraded: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.title.strip() and not self.content.strip()
