"""Article extraction through the remote fetch/render service.

The stage degrades in three steps:

1. Primary fetch (JS rendering, short wait, generous timeout, strict length check).
2. Fallback fetch (no rendering, shorter timeout, lenient length check) on
   5xx, transport errors, timeouts and insufficient content.
3. Stub content derived from the URL when both fetches fail.

HTTP 429 and other 4xx responses from the primary fetch are raised
immediately without a fallback fetch.
"""

from __future__ import annotations

import logging
import re
from typing import Optional, Tuple
from urllib.parse import urljoin, urlparse

import httpx
import trafilatura
from bs4 import BeautifulSoup
from trafilatura.settings import use_config

from config import require_scrapingbee_api_key, settings
from services.pipeline_models import ExtractedContent

logger = logging.getLogger(__name__)

TRAFILATURA_CONFIG = use_config()
TRAFILATURA_CONFIG.set("DEFAULT", "EXTRACTION_TIMEOUT", "0")

RATE_LIMIT = "rate_limit"
INVALID_REQUEST = "invalid_request"
TRANSIENT = "transient"
INSUFFICIENT_CONTENT = "insufficient_content"
NON_RETRYABLE_KINDS = (RATE_LIMIT, INVALID_REQUEST)

MAIN_CONTENT_SELECTORS = (
    "article",
    "[role='main']",
    ".post-content",
    ".entry-content",
    ".article-content",
    "main",
    ".main-content",
    ".content",
)
STRIPPED_TAGS = ("script", "style", "nav", "header", "footer", "aside", "noscript")

# (tag, attribute filter, attribute holding the image URL), in priority order.
COVER_IMAGE_CANDIDATES = (
    ("meta", {"property": "og:image"}, "content"),
    ("meta", {"name": "twitter:image"}, "content"),
    ("meta", {"property": "twitter:image"}, "content"),
    ("link", {"rel": "image_src"}, "href"),
)

_TITLE_SUFFIX_RE = re.compile(r"\s+[-–—|:]\s+[^-–—|:]+$")
_WHITESPACE_RE = re.compile(r"\s+")


class ExtractionError(Exception):
    """Extraction failure with a classification used by the caller."""

    def __init__(self, kind: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE_KINDS


def clean_text(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def clean_title(title: str) -> str:
    """Drop a trailing ' - Site Name' style suffix and collapse whitespace."""
    collapsed = clean_text(title)
    stripped = _TITLE_SUFFIX_RE.sub("", collapsed).strip()
    return stripped or collapsed


def title_from_url(url: str) -> str:
    """Best-effort human title from the URL path, falling back to the hostname."""
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    segments = [segment for segment in parsed.path.split("/") if segment]
    if segments:
        slug = re.sub(r"\.[a-z0-9]{2,5}$", "", segments[-1], flags=re.IGNORECASE)
        words = [word for word in re.split(r"[-_+\s]+", slug) if word and not word.isdigit()]
        if words:
            return " ".join(words).capitalize()
    return host or "Untitled Article"


def build_stub_content(url: str) -> ExtractedContent:
    """Placeholder content that still lets the pipeline produce audio."""
    host = (urlparse(url).hostname or "the original site").lower()
    if host.startswith("www."):
        host = host[4:]
    text = (
        f"We couldn't retrieve the full article from {host} right now. "
        "The page may be temporarily unavailable or may block automated readers. "
        f"You can read the original article at {url}."
    )
    return ExtractedContent(
        title=title_from_url(url),
        text=text,
        word_count=len(text.split()),
        url=url,
        cover_image_url=None,
        is_stub=True,
    )


def extract_cover_image(soup: BeautifulSoup, page_url: str) -> Optional[str]:
    """Return the first absolute http(s) cover image candidate, if any."""
    base_url = page_url
    base_tag = soup.find("base", href=True)
    if base_tag:
        base_url = urljoin(page_url, base_tag["href"].strip())

    for tag_name, attrs, url_attr in COVER_IMAGE_CANDIDATES:
        for element in soup.find_all(tag_name, attrs=attrs):
            candidate = (element.get(url_attr) or "").strip()
            if not candidate:
                continue
            absolute = urljoin(base_url, candidate)
            if urlparse(absolute).scheme in ("http", "https"):
                return absolute
    return None


def _title_from_html(soup: BeautifulSoup) -> Optional[str]:
    og_title = soup.find("meta", attrs={"property": "og:title"})
    if og_title and og_title.get("content"):
        return og_title["content"]
    if soup.title and soup.title.string:
        return soup.title.string
    h1 = soup.find("h1")
    if h1:
        return h1.get_text(" ", strip=True)
    return None


def _main_content_text(soup: BeautifulSoup) -> str:
    for tag in soup(list(STRIPPED_TAGS)):
        tag.decompose()
    for selector in MAIN_CONTENT_SELECTORS:
        node = soup.select_one(selector)
        if node is not None:
            text = clean_text(node.get_text(" ", strip=True))
            if text:
                return text
    return ""


def parse_article(html: str, url: str) -> Tuple[str, str, Optional[str]]:
    """Return (title, text, cover image url) for a fetched HTML document."""
    soup = BeautifulSoup(html, "lxml")
    cover_image_url = extract_cover_image(soup, url)

    metadata = trafilatura.extract_metadata(html, default_url=url)
    title = (metadata.title if metadata and metadata.title else None) or _title_from_html(soup)

    extracted = trafilatura.extract(
        html,
        url=url,
        include_comments=False,
        include_tables=False,
        config=TRAFILATURA_CONFIG,
    )
    text = clean_text(extracted or "")
    if len(text) < settings.EXTRACTION_MIN_CHARS:
        selector_text = _main_content_text(soup)
        if len(selector_text) > len(text):
            text = selector_text

    return clean_title(title or "Untitled Article"), text, cover_image_url


class ContentExtractor:
    """Extraction stage: remote fetch, readability parse and degradation ladder."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or require_scrapingbee_api_key()
        self.api_url = api_url or settings.SCRAPINGBEE_API_URL
        self._transport = transport

    async def extract(self, url: str) -> ExtractedContent:
        try:
            return await self._fetch_and_parse(
                url,
                render_js=True,
                wait_ms=settings.EXTRACTION_WAIT_MS,
                timeout=settings.EXTRACTION_TIMEOUT_SECONDS,
                min_chars=settings.EXTRACTION_MIN_CHARS,
            )
        except ExtractionError as exc:
            if not exc.retryable:
                logger.warning("Extraction for %s failed without fallback (%s): %s", url, exc.kind, exc)
                raise
            logger.warning("Primary extraction for %s failed (%s): %s; trying fallback", url, exc.kind, exc)

        try:
            return await self._fetch_and_parse(
                url,
                render_js=False,
                wait_ms=0,
                timeout=settings.EXTRACTION_FALLBACK_TIMEOUT_SECONDS,
                min_chars=settings.EXTRACTION_FALLBACK_MIN_CHARS,
            )
        except ExtractionError as exc:
            logger.warning("Fallback extraction for %s failed (%s): %s; using stub content", url, exc.kind, exc)
        return build_stub_content(url)

    async def _fetch_and_parse(
        self,
        url: str,
        *,
        render_js: bool,
        wait_ms: int,
        timeout: float,
        min_chars: int,
    ) -> ExtractedContent:
        params = {
            "api_key": self.api_key,
            "url": url,
            "render_js": "true" if render_js else "false",
        }
        if wait_ms:
            params["wait"] = str(wait_ms)

        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            try:
                response = await client.get(self.api_url, params=params)
            except httpx.TimeoutException as exc:
                raise ExtractionError(TRANSIENT, f"Extraction timed out after {timeout:.0f}s") from exc
            except httpx.HTTPError as exc:
                raise ExtractionError(TRANSIENT, f"Extraction transport error: {exc}") from exc

        status = response.status_code
        if status == 429:
            raise ExtractionError(RATE_LIMIT, "Rate limit exceeded by the extraction service", status)
        if 400 <= status < 500:
            raise ExtractionError(INVALID_REQUEST, f"Extraction service rejected the request ({status})", status)
        if status != 200:
            raise ExtractionError(TRANSIENT, f"Extraction service returned status {status}", status)

        html = response.content.decode("utf-8", errors="replace")
        title, text, cover_image_url = parse_article(html, url)
        if len(text) < min_chars:
            raise ExtractionError(
                INSUFFICIENT_CONTENT,
                f"Insufficient content extracted ({len(text)} chars, need {min_chars})",
            )

        logger.info("Extracted %s characters from %s (%s)", len(text), url, title)
        return ExtractedContent(
            title=title,
            text=text,
            word_count=len(text.split()),
            url=url,
            cover_image_url=cover_image_url,
        )
