from __future__ import annotations

import re
from dataclasses import dataclass

import httpx

from .logger import get_logger
from .sanitize import scrub_pii

logger = get_logger(__name__)

MAX_HTML_CHARS = 1_000_000
MAX_TEXT_CHARS = 15_000
HEAD_CHARS = 10_000
TAIL_CHARS = 5_000
TRUNCATION_MARKER = " ... [content truncated] ... "

_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
_BLOCK_RES = [
    re.compile(rf"<{tag}\b[^>]*>.*?</{tag}>", re.IGNORECASE | re.DOTALL)
    for tag in ("script", "style", "noscript", "nav", "footer", "header")
]
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


@dataclass
class LinkContent:
    url: str
    status_code: int = 0
    title: str = ""
    text: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.text)


def extract_title(html: str) -> str:
    m = _TITLE_RE.search(html or "")
    return m.group(1).strip() if m else ""


def extract_text(html: str) -> str:
    """Visible text of a page, chrome blocks removed and whitespace collapsed."""
    out = html or ""
    for block in _BLOCK_RES:
        out = block.sub("", out)
    out = _TAG_RE.sub(" ", out)
    return _WS_RE.sub(" ", out).strip()


def truncate_middle(text: str) -> str:
    if len(text) <= MAX_TEXT_CHARS:
        return text
    return f"{text[:HEAD_CHARS]}{TRUNCATION_MARKER}{text[-TAIL_CHARS:]}"


async def _read_capped(res: httpx.Response, limit: int = MAX_HTML_CHARS) -> str:
    parts: list[str] = []
    size = 0
    async for chunk in res.aiter_text():
        parts.append(chunk)
        size += len(chunk)
        if size >= limit:
            break
    return "".join(parts)[:limit]


async def fetch_link_content(url: str, client: httpx.AsyncClient, user_agent: str) -> LinkContent:
    """
    Fetch a destination page for the model to read.

    The request has no timeout of its own beyond the client's; pages that
    are not 2xx HTML come back with ``error`` set instead of raising. At
    most ``MAX_HTML_CHARS`` of the body are read.
    """
    headers = {
        "User-Agent": user_agent,
        "Accept": _ACCEPT,
        "Accept-Language": "en-US,en;q=0.9",
    }
    try:
        async with client.stream("GET", url, headers=headers, follow_redirects=True, timeout=None) as res:
            final_url = str(res.url) if res.url else url
            if not res.is_success:
                return LinkContent(url=final_url, status_code=res.status_code, error=f"HTTP {res.status_code}")

            content_type = res.headers.get("content-type", "")
            if "text/html" not in content_type.lower():
                return LinkContent(url=final_url, status_code=res.status_code, error="Not HTML content")

            html = await _read_capped(res)
            status_code = res.status_code
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.info("content_fetch_failed", url=url, error=str(e) or type(e).__name__)
        return LinkContent(url=url, error=str(e) or "Failed to fetch")

    text = truncate_middle(extract_text(html))

    if final_url != url:
        logger.debug("content_redirected", url=url, final_url=final_url)

    return LinkContent(
        url=final_url,
        status_code=status_code,
        title=scrub_pii(extract_title(html)),
        text=scrub_pii(text),
    )
