from __future__ import annotations

import re

# Decorations a previous pass adds to link text. Text carrying any of these
# was produced by us and must not be analyzed again.
_MARKER_PATTERNS = [
    re.compile(r"⚠️?\s*(caution|safe|danger)", re.IGNORECASE),
    re.compile(r"trust\s*score", re.IGNORECASE),
    re.compile(r"\[(safe|suspicious|dangerous)\]", re.IGNORECASE),
    re.compile(r"phishing\s*risk", re.IGNORECASE),
    re.compile(r"link\s*trust", re.IGNORECASE),
]

_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_RE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")
_CARD_RE = re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b")
_WS_RE = re.compile(r"\s+")


def has_analysis_marker(text: str | None) -> bool:
    if not text or not text.strip():
        return False
    collapsed = _WS_RE.sub(" ", text)
    return any(p.search(collapsed) for p in _MARKER_PATTERNS)


def scrub_pii(text: str | None, limit: int | None = None) -> str:
    """
    Replace e-mail addresses, phone numbers and card numbers with
    placeholders before text is sent to a model. Cards are scrubbed before
    phones so a 16-digit number is never half-matched as a phone.
    """
    if not text:
        return ""
    out = _EMAIL_RE.sub("[email]", text)
    out = _CARD_RE.sub("[card]", out)
    out = _PHONE_RE.sub("[phone]", out)
    if limit is not None:
        out = out[:limit]
    return out
