from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

import tldextract

# Bundled public suffix snapshot only, no fetch at runtime.
_extract = tldextract.TLDExtract(suffix_list_urls=())


def normalize_url(url: str) -> str:
    """Canonical cache key: no fragment, no trailing slash except the root."""
    value = (url or "").strip()
    try:
        parts = urlsplit(value)
    except ValueError:
        return value
    if not parts.scheme or not parts.netloc:
        return value

    path = parts.path.rstrip("/") or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def hostname_of(url: str) -> str:
    try:
        return (urlsplit((url or "").strip()).hostname or "").lower()
    except ValueError:
        return ""


def _split(host: str) -> tldextract.ExtractResult:
    return _extract((host or "").lower().strip("."))


def registrable_domain(host: str) -> str:
    ext = _split(host)
    return ".".join(p for p in (ext.domain, ext.suffix) if p)


def second_level_label(host: str) -> str:
    """Label right before the public suffix: `rnicrosoft` for `login.rnicrosoft.com.ar`."""
    ext = _split(host)
    return ext.domain or ext.suffix


def same_site(a: str, b: str) -> bool:
    a = (a or "").lower().strip(".")
    b = (b or "").lower().strip(".")
    if not a or not b:
        return False
    return a == b or a.endswith("." + b) or b.endswith("." + a)
