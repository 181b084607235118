from __future__ import annotations

import re
from urllib.parse import unquote, urlsplit

from .models import HeuristicResult, LinkCandidate
from .typosquat import TyposquatDetector


# Renowned sites: verdicts for these skip external checks and AI entirely.
# Bare TLD entries ("edu", "gov") match every host under that TLD.
KNOWN_SAFE_DOMAINS = frozenset({
    # Google
    "google.com", "google.ro", "google.co.uk", "google.de", "google.fr", "google.it", "google.es",
    "gmail.com", "googlemail.com", "googledrive.com", "googleusercontent.com", "googleapis.com",
    "youtube.com", "youtu.be", "gstatic.com", "google-analytics.com", "doubleclick.net",
    "googletagmanager.com", "googleadservices.com",
    # Microsoft
    "microsoft.com", "microsoftstore.com", "office.com", "office365.com", "outlook.com",
    "live.com", "hotmail.com", "msn.com", "bing.com", "azure.com", "github.com", "github.io",
    "githubusercontent.com", "npmjs.com", "nuget.org",
    # Apple
    "apple.com", "icloud.com", "appleid.apple.com", "appstore.com", "itunes.com",
    # Social
    "facebook.com", "fb.com", "instagram.com", "whatsapp.com", "messenger.com",
    "twitter.com", "x.com", "t.co", "linkedin.com", "pinterest.com", "tumblr.com",
    "reddit.com", "redd.it", "discord.com", "discord.gg", "telegram.org", "t.me",
    "snapchat.com", "tiktok.com",
    # Commerce
    "amazon.com", "amazon.co.uk", "amazon.de", "amazon.fr", "amazon.it", "amazon.es",
    "ebay.com", "paypal.com", "stripe.com", "shopify.com", "etsy.com",
    # Streaming
    "netflix.com", "spotify.com", "twitch.tv", "vimeo.com", "dailymotion.com",
    "soundcloud.com", "bandcamp.com",
    # News and reference
    "wikipedia.org", "wikimedia.org", "wikidata.org", "bbc.com", "bbc.co.uk",
    "cnn.com", "reuters.com", "theguardian.com", "nytimes.com", "washingtonpost.com",
    "wsj.com", "bloomberg.com", "forbes.com", "techcrunch.com", "theverge.com",
    # Developer
    "stackoverflow.com", "stackexchange.com", "gitlab.com", "bitbucket.org",
    "pypi.org", "docker.com", "kubernetes.io", "nodejs.org", "python.org",
    "mozilla.org", "firefox.com", "chromium.org", "webkit.org",
    # Cloud
    "aws.amazon.com", "cloud.google.com", "azure.microsoft.com", "digitalocean.com",
    "heroku.com", "vercel.com", "netlify.com", "cloudflare.com",
    # Education
    "edu", "harvard.edu", "mit.edu", "stanford.edu", "coursera.org", "edx.org",
    "khanacademy.org", "udemy.com", "udacity.com",
    # Government and organizations
    "gov", "gov.uk", "europa.eu", "un.org", "who.int", "w3.org", "ietf.org",
    # Finance
    "chase.com", "bankofamerica.com", "wellsfargo.com", "citi.com", "usbank.com",
    "visa.com", "mastercard.com", "americanexpress.com",
    # Other services
    "dropbox.com", "box.com", "onedrive.com",
    "adobe.com", "adobe.io", "autodesk.com",
    "oracle.com", "ibm.com", "intel.com", "nvidia.com", "amd.com",
    "salesforce.com", "servicenow.com", "sap.com",
    "zoom.us", "webex.com", "gotomeeting.com",
    "slack.com", "teams.microsoft.com",
    "atlassian.com", "jira.com", "confluence.com", "trello.com",
    "notion.so", "evernote.com", "onenote.com",
})

# Free TLDs phishing campaigns favor.
SUSPICIOUS_TLDS = frozenset({"tk", "ml", "ga", "cf", "gq", "xyz", "top", "click", "download", "stream"})

URL_SHORTENERS = frozenset({
    "bit.ly", "tinyurl.com", "t.co", "goo.gl", "ow.ly", "is.gd", "buff.ly",
    "short.link", "cutt.ly", "rebrand.ly", "tiny.cc",
})

SUSPICIOUS_SUBDOMAIN_KEYWORDS = (
    "secure-", "verify-", "update-", "account-", "login-", "confirm-",
    "paypal-", "bank-", "amazon-", "microsoft-", "google-", "apple-",
)

_PLACEHOLDER_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"example\.com", r"example\.org", r"example\.net", r"test\.com",
        r"placeholder\.com", r"lorem\.com", r"demo\.com", r"sample\.com",
    )
]

_URGENCY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"click\s+here", r"download\s+now", r"free\s+download", r"urgent",
        r"verify\s+account", r"update\s+now", r"confirm\s+identity",
        r"suspended\s+account", r"limited\s+time", r"act\s+now",
    )
]

_MAILTO_RE = re.compile(r"mailto:([^?]+)", re.IGNORECASE)
_MAILTO_HINTS = ("noreply", "no-reply", "support", "security", "verify", "update")

_IPV4_RE = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")

_DANGEROUS_SCHEMES = ("data:", "javascript:")
_WEB_SCHEMES = ("http", "https")


def _base_domain(host: str) -> str:
    parts = host.split(".")
    return ".".join(parts[-2:]) if len(parts) >= 2 else host


def is_trusted_domain(domain: str) -> bool:
    host = (domain or "").strip().lower().rstrip(".")
    if not host:
        return False
    if host in KNOWN_SAFE_DOMAINS:
        return True
    if _base_domain(host) in KNOWN_SAFE_DOMAINS:
        return True
    return host.split(".")[-1] in KNOWN_SAFE_DOMAINS


def _is_known_safe(host: str) -> bool:
    # Unlike is_trusted_domain, bare TLD entries do not count here.
    return host in KNOWN_SAFE_DOMAINS or _base_domain(host) in KNOWN_SAFE_DOMAINS


def _typosquat_issue(brand: str, host: str) -> str:
    return f'PHISHING_RISK: Possible typosquatting of "{brand}" (e.g., "{host}" looks like "{brand}")'


_default_detector = TyposquatDetector()


def calculate_heuristics(link: LinkCandidate, detector: TyposquatDetector | None = None) -> HeuristicResult:
    """
    Rule-based issues and flags for one link. Never raises: a URL that
    cannot be parsed yields the single issue ``invalid_url``.
    """
    detector = detector or _default_detector
    issues: list[str] = []
    flags: dict[str, bool] = {}

    href = (link.href or "").strip()
    try:
        parts = urlsplit(href)
        scheme = parts.scheme.lower()
        if not scheme:
            raise ValueError("relative or scheme-less URL")
        host = (parts.hostname or "").lower()
        if scheme in _WEB_SCHEMES and not host:
            raise ValueError("missing host")
        port = parts.port
    except ValueError:
        return HeuristicResult(issues=["invalid_url"], flags={})

    host_parts = host.split(".")
    base = _base_domain(host)
    is_ip = bool(_IPV4_RE.match(host))
    known_safe = bool(host) and _is_known_safe(host)

    if scheme != "https":
        issues.append("no_https")
    else:
        flags["hasValidSSL"] = True

    if host in URL_SHORTENERS or base in URL_SHORTENERS:
        issues.append("short_url")

    if "xn--" in host:
        issues.append("punycode")

    if host_parts[-1] in SUSPICIOUS_TLDS:
        issues.append("suspicious_tld")

    if is_ip:
        issues.append("ip_address")

    subdomain = host_parts[0] if len(host_parts) > 2 else ""
    if subdomain and any(kw in subdomain for kw in SUSPICIOUS_SUBDOMAIN_KEYWORDS):
        issues.append("suspicious_subdomain")

    if parts.query and len(parts.query) + 1 > 200:
        issues.append("suspicious_params")

    if "%" in href and unquote(href) != href:
        issues.append("encoded_url")

    if len([seg for seg in parts.path.split("/") if seg]) > 5:
        issues.append("deep_path")

    if port is not None and port not in (80, 443) and port < 1024:
        issues.append("non_standard_port")

    if len(host_parts) == 2 and len(host_parts[0]) < 3:
        issues.append("very_short_domain")

    if host and not is_ip and not known_safe:
        brand = detector.detect(host)
        if brand:
            issues.append(_typosquat_issue(brand, host))

    target = (link.target or "").lower()
    rel = (link.rel or "").lower()
    has_noopener = "noopener" in rel
    if target in ("_blank", "blank") and not has_noopener:
        issues.append("target_blank_without_noopener")

    if link.download:
        flags["hasDownload"] = True
        if issues:
            issues.append("download_attribute")

    text = (link.text or "").lower()
    lowered_href = href.lower()
    if any(p.search(text) or p.search(lowered_href) for p in _PLACEHOLDER_PATTERNS):
        issues.append("example_placeholder_domain")

    if any(p.search(text) for p in _URGENCY_PATTERNS):
        if issues or not known_safe:
            issues.append("suspicious_link_text")

    if lowered_href.startswith(_DANGEROUS_SCHEMES):
        issues.append("dangerous_protocol")

    if scheme == "mailto":
        m = _MAILTO_RE.search(href)
        if m and any(h in m.group(1).lower() for h in _MAILTO_HINTS):
            flags["hasMailto"] = True

    flags["hasNoopener"] = has_noopener
    flags["hasNoreferrer"] = "noreferrer" in rel
    flags["isKnownSafe"] = known_safe
    flags["hasValidDomain"] = len(host_parts) >= 2 and all(host_parts)

    return HeuristicResult(issues=issues, flags=flags)
