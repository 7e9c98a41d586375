import httpx
import pytest
from bs4 import BeautifulSoup

from services.content_extractor import (
    INSUFFICIENT_CONTENT,
    INVALID_REQUEST,
    RATE_LIMIT,
    ContentExtractor,
    ExtractionError,
    build_stub_content,
    clean_title,
    extract_cover_image,
    title_from_url,
)


ARTICLE_URL = "https://www.example.com/news/city-adds-bike-lanes"
PARAGRAPHS = [
    "The city council approved a plan on Tuesday to add forty miles of protected bike lanes over the next three years.",
    "Transportation officials said the first segments will connect the university district with the downtown core.",
    "Residents who spoke at the hearing mostly supported the plan, although some raised concerns about parking.",
    "The project is funded through a mix of state grants and a voter-approved transportation bond from last year.",
]
ARTICLE_HTML = f"""
<html>
  <head>
    <title>City Adds Bike Lanes - Example News</title>
    <meta property="og:image" content="/images/bike-lanes.jpg">
  </head>
  <body>
    <nav>Home | News | Sports</nav>
    <article>
      <h1>City Adds Bike Lanes</h1>
      {''.join(f'<p>{paragraph}</p>' for paragraph in PARAGRAPHS)}
    </article>
    <footer>Copyright Example News</footer>
  </body>
</html>
"""


def _extractor(handler) -> ContentExtractor:
    return ContentExtractor(
        api_key="test-key",
        api_url="https://scraper.test/api/v1/",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_primary_fetch_parses_article():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=ARTICLE_HTML.encode("utf-8"))

    content = await _extractor(handler).extract(ARTICLE_URL)

    assert len(requests) == 1
    assert requests[0].url.params["render_js"] == "true"
    assert requests[0].url.params["wait"] == "1000"
    assert requests[0].url.params["url"] == ARTICLE_URL
    assert content.is_stub is False
    assert content.title == "City Adds Bike Lanes"
    assert "protected bike lanes" in content.text
    assert content.word_count == len(content.text.split())
    assert content.cover_image_url == "https://www.example.com/images/bike-lanes.jpg"


@pytest.mark.asyncio
async def test_rate_limit_is_raised_without_fallback_fetch():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(429, text="Too Many Requests")

    with pytest.raises(ExtractionError) as excinfo:
        await _extractor(handler).extract(ARTICLE_URL)

    assert excinfo.value.kind == RATE_LIMIT
    assert excinfo.value.status_code == 429
    assert excinfo.value.retryable is False
    assert "Rate limit" in str(excinfo.value)
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_client_error_is_raised_as_invalid_request():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(404)

    with pytest.raises(ExtractionError) as excinfo:
        await _extractor(handler).extract(ARTICLE_URL)

    assert excinfo.value.kind == INVALID_REQUEST
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_server_error_triggers_cheaper_fallback_fetch():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if len(requests) == 1:
            return httpx.Response(500)
        return httpx.Response(200, content=ARTICLE_HTML.encode("utf-8"))

    content = await _extractor(handler).extract(ARTICLE_URL)

    assert len(requests) == 2
    assert requests[1].url.params["render_js"] == "false"
    assert "wait" not in requests[1].url.params
    assert content.is_stub is False
    assert "voter-approved transportation bond" in content.text


@pytest.mark.asyncio
async def test_insufficient_primary_content_triggers_fallback():
    short_html = "<html><head><title>Teaser</title></head><body><article><p>Subscribe to read.</p></article></body></html>"
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if len(requests) == 1:
            return httpx.Response(200, text=short_html)
        return httpx.Response(200, content=ARTICLE_HTML.encode("utf-8"))

    content = await _extractor(handler).extract(ARTICLE_URL)

    assert len(requests) == 2
    assert content.is_stub is False


@pytest.mark.asyncio
async def test_both_fetches_failing_returns_stub_content():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        raise httpx.ConnectTimeout("timed out", request=request)

    content = await _extractor(handler).extract(ARTICLE_URL)

    assert len(requests) == 2
    assert content.is_stub is True
    assert content.title == "City adds bike lanes"
    assert ARTICLE_URL in content.text
    assert content.cover_image_url is None
    assert content.word_count == len(content.text.split())


@pytest.mark.asyncio
async def test_fallback_client_error_still_returns_stub():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["render_js"] == "true":
            return httpx.Response(503)
        return httpx.Response(403)

    content = await _extractor(handler).extract(ARTICLE_URL)
    assert content.is_stub is True


def test_extraction_error_kinds():
    assert ExtractionError(INSUFFICIENT_CONTENT, "short").retryable is True
    assert ExtractionError(INVALID_REQUEST, "bad", 400).retryable is False


def test_cover_image_prefers_open_graph_then_twitter_then_image_src():
    html = """
    <head>
      <link rel="image_src" href="https://cdn.example.com/link.jpg">
      <meta name="twitter:image" content="https://cdn.example.com/twitter.jpg">
      <meta property="og:image" content="https://cdn.example.com/og.jpg">
    </head>
    """
    soup = BeautifulSoup(html, "lxml")
    assert extract_cover_image(soup, ARTICLE_URL) == "https://cdn.example.com/og.jpg"

    soup = BeautifulSoup(html.replace('property="og:image"', 'property="og:title"'), "lxml")
    assert extract_cover_image(soup, ARTICLE_URL) == "https://cdn.example.com/twitter.jpg"


def test_cover_image_skips_non_http_candidates_and_resolves_against_base():
    html = """
    <head>
      <base href="https://static.example.org/assets/">
      <meta property="og:image" content="javascript:alert(1)">
      <meta name="twitter:image" content="">
      <link rel="image_src" href="img/cover.png">
    </head>
    """
    soup = BeautifulSoup(html, "lxml")
    assert extract_cover_image(soup, ARTICLE_URL) == "https://static.example.org/assets/img/cover.png"


def test_cover_image_absent_is_none():
    soup = BeautifulSoup("<html><head><title>x</title></head></html>", "lxml")
    assert extract_cover_image(soup, ARTICLE_URL) is None


def test_clean_title_strips_site_suffix_and_whitespace():
    assert clean_title("  Big   News Today - The Daily Example ") == "Big News Today"
    assert clean_title("Budget passes | Example Times") == "Budget passes"
    assert clean_title("Plain title") == "Plain title"


def test_title_from_url_uses_path_slug_then_host():
    assert title_from_url("https://www.example.com/news/2024/my-great-article.html") == "My great article"
    assert title_from_url("https://www.example.com/") == "example.com"


def test_stub_content_mentions_source():
    content = build_stub_content("https://blog.example.net/posts/launch")
    assert content.is_stub is True
    assert "blog.example.net" in content.text
    assert "https://blog.example.net/posts/launch" in content.text
