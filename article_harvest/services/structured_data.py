"""JSON-LD and meta-tag helpers shared by the content, image and video extractors."""

import json
import logging
from typing import Any, Iterator

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

ARTICLE_TYPE_MARKERS = ("article", "newsarticle", "blogposting")


def find_meta(soup: BeautifulSoup, prop: str | None = None, name: str | None = None) -> str:
    """Return the trimmed content of the first meta tag matching property or name."""
    for meta in soup.find_all("meta"):
        if prop and meta.get("property") == prop and meta.get("content") is not None:
            return meta["content"].strip()
        if name and meta.get("name") == name and meta.get("content") is not None:
            return meta["content"].strip()
    return ""


def load_jsonld(soup: BeautifulSoup) -> list[Any]:
    """Parse every application/ld+json block, skipping invalid ones."""
    blocks = []
    for script in soup.find_all("script", type="application/ld+json"):
        try:
            text = script.string or script.get_text()
            if text:
                blocks.append(json.loads(text))
        except (json.JSONDecodeError, TypeError):
            logger.debug("Skipping unparseable JSON-LD block")
    return blocks


def iter_jsonld_objects(soup: BeautifulSoup) -> Iterator[dict]:
    """Yield every JSON-LD object, flattening top-level arrays and @graph."""

    def _walk(node):
        if isinstance(node, list):
            for item in node:
                yield from _walk(item)
        elif isinstance(node, dict):
            yield node
            graph = node.get("@graph")
            if graph is not None:
                yield from _walk(graph)

    for block in load_jsonld(soup):
        yield from _walk(block)


def type_names(obj: dict) -> list[str]:
    raw = obj.get("@type")
    if isinstance(raw, str):
        return [raw.lower()]
    if isinstance(raw, list):
        return [t.lower() for t in raw if isinstance(t, str)]
    return []


def is_article_type(obj: dict) -> bool:
    return any(
        marker in name for name in type_names(obj) for marker in ARTICLE_TYPE_MARKERS
    )


def find_article(soup: BeautifulSoup) -> dict | None:
    """First article-typed JSON-LD object that carries a headline."""
    for obj in iter_jsonld_objects(soup):
        if is_article_type(obj) and as_text(obj.get("headline")):
            return obj
    return None


def image_url(value) -> str:
    """Resolve a schema.org image value (string, ImageObject or list) to a URL."""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        for item in value:
            url = image_url(item)
            if url:
                return url
        return ""
    if isinstance(value, dict):
        return image_url(value.get("url") or value.get("contentUrl") or "")
    return ""


def person_name(value) -> str:
    """Resolve a schema.org author value to a display name."""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        names = [person_name(v) for v in value]
        return ", ".join(n for n in names if n)
    if isinstance(value, dict):
        return as_text(value.get("name"))
    return ""


def as_text(value) -> str:
    return value.strip() if isinstance(value, str) else ""
