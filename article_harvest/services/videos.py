import logging
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from article_harvest.schemas.article import Video
from article_harvest.services.structured_data import as_text, iter_jsonld_objects, type_names

logger = logging.getLogger(__name__)

_VIDEO_EXT_RE = re.compile(r"\.(mp4|webm|ogg|mov|avi|mkv)(?:\?|$)", re.IGNORECASE)

_ARTICLE_SELECTOR = "article, main, [itemprop='articleBody'], section.article-body, #article-body"

# Substring -> provider, checked in order
_PROVIDERS = [
    ("youtube.com", "youtube"),
    ("youtu.be", "youtube"),
    ("vimeo.com", "vimeo"),
    ("dailymotion.com", "dailymotion"),
    ("twitch.tv", "twitch"),
    ("facebook.com", "facebook"),
    ("tiktok.com", "tiktok"),
]

_EMBED_MARKERS = (
    "youtube.com",
    "youtu.be",
    "vimeo.com",
    "dailymotion.com",
    "twitch.tv",
    "facebook.com/plugins/video",
    "tiktok.com",
)


def detect_provider(url: str) -> str:
    lower = url.lower()
    for marker, provider in _PROVIDERS:
        if marker in lower:
            return provider
    if _VIDEO_EXT_RE.search(url):
        return "html5"
    return "unknown"


def is_video_embed(url: str) -> bool:
    lower = url.lower()
    return any(m in lower for m in _EMBED_MARKERS) or bool(_VIDEO_EXT_RE.search(url))


class VideoExtractor:
    """Collects article videos from meta tags, JSON-LD, iframes and <video> tags.

    Sources are read in a fixed order and deduplicated by absolute URL, so the
    first source to mention a video decides its type and title.
    """

    def extract(self, document: str | BeautifulSoup, base_url: str) -> list[Video]:
        if isinstance(document, BeautifulSoup):
            soup = document
        else:
            soup = BeautifulSoup(document or "", "lxml")

        seen: set[str] = set()
        videos: list[Video] = []
        videos += self._og_videos(soup, base_url, seen)
        videos += self._twitter_player(soup, base_url, seen)
        videos += self._jsonld_videos(soup, base_url, seen)
        videos += self._embedded_videos(soup, base_url, seen)
        videos += self._html5_videos(soup, base_url, seen)
        return videos

    @staticmethod
    def _add(url: str, base_url: str, seen: set[str], **fields) -> list[Video]:
        abs_url = urljoin(base_url, url.strip())
        if not abs_url or abs_url in seen:
            return []
        seen.add(abs_url)
        provider = fields.pop("provider", None) or detect_provider(abs_url)
        return [Video(url=abs_url, provider=provider, **fields)]

    def _og_videos(self, soup, base_url, seen) -> list[Video]:
        video_url = title = ""
        for meta in soup.find_all("meta"):
            prop = meta.get("property")
            content = meta.get("content")
            if not prop or content is None:
                continue
            if prop in ("og:video", "og:video:url", "og:video:secure_url"):
                video_url = content
            elif prop == "og:title" and not title:
                title = content.strip()
        if not video_url:
            return []
        return self._add(video_url, base_url, seen, type="og", title=title)

    def _twitter_player(self, soup, base_url, seen) -> list[Video]:
        player_url = ""
        for meta in soup.find_all("meta", attrs={"name": "twitter:player"}):
            if meta.get("content"):
                player_url = meta["content"]
        if not player_url:
            return []
        return self._add(player_url, base_url, seen, type="twitter")

    def _jsonld_videos(self, soup, base_url, seen) -> list[Video]:
        videos = []
        for obj in iter_jsonld_objects(soup):
            if not any("video" in name for name in type_names(obj)):
                continue
            video_url = (
                as_text(obj.get("contentUrl"))
                or as_text(obj.get("embedUrl"))
                or as_text(obj.get("url"))
            )
            if not video_url:
                continue
            title = as_text(obj.get("name")) or as_text(obj.get("headline"))
            videos += self._add(video_url, base_url, seen, type="jsonld", title=title)
        return videos

    def _embedded_videos(self, soup, base_url, seen) -> list[Video]:
        videos = []
        for container in soup.select(_ARTICLE_SELECTOR):
            for iframe in container.find_all("iframe"):
                src = iframe.get("src") or iframe.get("data-src")
                if not src:
                    continue
                abs_url = urljoin(base_url, src.strip())
                if not is_video_embed(abs_url):
                    continue
                videos += self._add(
                    abs_url, base_url, seen, type="embedded", title=(iframe.get("title") or "").strip()
                )
        return videos

    def _html5_videos(self, soup, base_url, seen) -> list[Video]:
        videos = []
        for container in soup.select(_ARTICLE_SELECTOR):
            for video in container.find_all("video"):
                sources = [video.get("src")]
                sources += [s.get("src") for s in video.find_all("source")]
                for src in sources:
                    if src:
                        videos += self._add(src, base_url, seen, type="html5", provider="html5")
        return videos
