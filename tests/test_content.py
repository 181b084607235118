"""
Destination page fetching and text extraction.
"""

import asyncio

import httpx

from linktrust_agent.content import (
    HEAD_CHARS,
    TAIL_CHARS,
    TRUNCATION_MARKER,
    extract_text,
    extract_title,
    fetch_link_content,
    truncate_middle,
)

PAGE = """<html><head><title> Acme Widgets </title><style>body{color:red}</style>
<script>var secret = 1;</script></head>
<body><header>Top menu</header><nav><a href="/">Home</a></nav>
<main><h1>Blue widget</h1><p>Contact sales@acme-widgets.net or 555-123-4567.</p></main>
<footer>Copyright</footer></body></html>"""


def _fetch(handler, url="https://acme-widgets.net/item"):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await fetch_link_content(url, client, "TestAgent/1.0")

    return asyncio.run(run())


def test_extract_text_drops_page_chrome():
    text = extract_text(PAGE)
    assert "Blue widget" in text
    assert "secret" not in text
    assert "Top menu" not in text
    assert "Home" not in text
    assert "Copyright" not in text
    assert "  " not in text


def test_extract_title():
    assert extract_title(PAGE) == "Acme Widgets"
    assert extract_title("<p>no title</p>") == ""


def test_truncate_middle():
    short = "a" * 15_000
    assert truncate_middle(short) == short

    long = "h" * HEAD_CHARS + "m" * 10_000 + "t" * TAIL_CHARS
    out = truncate_middle(long)
    assert out == "h" * HEAD_CHARS + TRUNCATION_MARKER + "t" * TAIL_CHARS


def test_fetch_html_page_scrubs_contacts():
    def handler(request):
        assert request.headers["user-agent"] == "TestAgent/1.0"
        return httpx.Response(200, headers={"content-type": "text/html; charset=utf-8"}, text=PAGE)

    content = _fetch(handler)
    assert content.ok
    assert content.status_code == 200
    assert content.title == "Acme Widgets"
    assert "[email]" in content.text
    assert "[phone]" in content.text
    assert "sales@" not in content.text


def test_fetch_follows_redirects():
    def handler(request):
        if request.url.path == "/old":
            return httpx.Response(301, headers={"location": "https://acme-widgets.net/new"})
        return httpx.Response(200, headers={"content-type": "text/html"}, text="<p>moved here</p>")

    content = _fetch(handler, "https://acme-widgets.net/old")
    assert content.ok
    assert content.url == "https://acme-widgets.net/new"
    assert content.text == "moved here"


def test_fetch_non_html_and_http_errors():
    pdf = _fetch(lambda request: httpx.Response(200, headers={"content-type": "application/pdf"}, content=b"%PDF"))
    assert not pdf.ok
    assert pdf.error == "Not HTML content"

    missing = _fetch(lambda request: httpx.Response(404, text="nope"))
    assert not missing.ok
    assert missing.error == "HTTP 404"


def test_fetch_transport_failure():
    def handler(request):
        raise httpx.ConnectError("name resolution failed", request=request)

    content = _fetch(handler)
    assert not content.ok
    assert "name resolution failed" in content.error


def test_fetch_reads_at_most_max_html_chars():
    body = "<html><body><p>" + "widget " * 200_000 + "</p><p>TAILMARK</p></body></html>"
    content = _fetch(lambda request: httpx.Response(200, headers={"content-type": "text/html"}, text=body))
    assert content.ok
    assert "widget" in content.text
    assert "TAILMARK" not in content.text


def test_fetch_invalid_url_is_reported():
    def handler(request):
        raise AssertionError("no request expected")

    content = _fetch(handler, url="https://acme-widgets.net/\x01item")
    assert not content.ok
    assert content.error
