"""
Third-party threat intelligence lookups.

Each provider adapter owns the response shape of its API and turns it into
an ExternalCheckResult at the boundary. A provider without credentials, or
one that errors, answers neutrally (safe=True, confidence=0) so the
aggregate never fails because of a single source.
"""
from __future__ import annotations

import asyncio

import httpx
from pydantic import BaseModel, Field, ValidationError

from .heuristics import is_trusted_domain
from .logger import get_logger
from .models import AggregatedExternalResult, ExternalCheckResult
from .urls import hostname_of

logger = get_logger(__name__)

CONFIDENT = 0.5
MAX_AGGREGATE_CONFIDENCE = 0.95

TRUSTED_SOURCE = "Trusted Domain"


def _is_placeholder(key: str) -> bool:
    return not key or "placeholder" in key.lower()


class ThreatProvider:
    name = "provider"
    requires_key = True

    def __init__(self, client: httpx.AsyncClient, api_key: str = "", timeout: float = 10.0) -> None:
        self.client = client
        self.api_key = (api_key or "").strip()
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return not (self.requires_key and _is_placeholder(self.api_key))

    def neutral(self, error: str) -> ExternalCheckResult:
        return ExternalCheckResult(source=self.name, safe=True, confidence=0.0, error=error)

    async def check(self, url: str) -> ExternalCheckResult:
        if not self.configured:
            return self.neutral("API key not configured")
        try:
            return await self._query(url)
        except httpx.HTTPStatusError as e:
            logger.warning("provider_http_error", provider=self.name, status=e.response.status_code)
            return self.neutral(f"API error: {e.response.status_code}")
        except (httpx.HTTPError, ValidationError, ValueError) as e:
            logger.warning("provider_check_failed", provider=self.name, error=str(e) or type(e).__name__)
            return self.neutral(str(e) or type(e).__name__)

    async def _query(self, url: str) -> ExternalCheckResult:
        raise NotImplementedError


class _SafeBrowsingMatch(BaseModel):
    threatType: str = "UNKNOWN"


class _SafeBrowsingResponse(BaseModel):
    matches: list[_SafeBrowsingMatch] = Field(default_factory=list)


class GoogleSafeBrowsing(ThreatProvider):
    name = "Google Safe Browsing"
    endpoint = "https://safebrowsing.googleapis.com/v4/threatMatches:find"

    async def _query(self, url: str) -> ExternalCheckResult:
        body = {
            "client": {"clientId": "linktrust", "clientVersion": "0.1.0"},
            "threatInfo": {
                "threatTypes": [
                    "MALWARE",
                    "SOCIAL_ENGINEERING",
                    "UNWANTED_SOFTWARE",
                    "POTENTIALLY_HARMFUL_APPLICATION",
                ],
                "platformTypes": ["ANY_PLATFORM"],
                "threatEntryTypes": ["URL"],
                "threatEntries": [{"url": url}],
            },
        }
        res = await self.client.post(self.endpoint, params={"key": self.api_key}, json=body, timeout=self.timeout)
        res.raise_for_status()
        data = _SafeBrowsingResponse.model_validate(res.json())

        if data.matches:
            kinds = ", ".join(m.threatType for m in data.matches)
            return ExternalCheckResult(
                source=self.name, safe=False, confidence=0.95, details=f"Threats detected: {kinds}"
            )
        return ExternalCheckResult(source=self.name, safe=True, confidence=0.8, details="No threats found")


class _VirusTotalReport(BaseModel):
    response_code: int | None = None
    positives: int = 0
    total: int = 0


class VirusTotal(ThreatProvider):
    """
    Submits the URL for a scan. A successful submission only means the scan
    is pending; when submission is refused the latest stored report is used
    instead.
    """

    name = "VirusTotal"
    scan_endpoint = "https://www.virustotal.com/vtapi/v2/url/scan"
    report_endpoint = "https://www.virustotal.com/vtapi/v2/url/report"

    async def _query(self, url: str) -> ExternalCheckResult:
        submit = await self.client.post(
            self.scan_endpoint, data={"apikey": self.api_key, "url": url}, timeout=self.timeout
        )
        if submit.is_success:
            return ExternalCheckResult(
                source=self.name, safe=True, confidence=0.5, details="Scan submitted, results pending"
            )

        res = await self.client.get(
            self.report_endpoint, params={"apikey": self.api_key, "resource": url}, timeout=self.timeout
        )
        if res.is_success:
            report = _VirusTotalReport.model_validate(res.json())
            if report.response_code == 1:
                if report.positives == 0:
                    return ExternalCheckResult(
                        source=self.name, safe=True, confidence=0.9, details="No threats detected"
                    )
                return ExternalCheckResult(
                    source=self.name,
                    safe=False,
                    confidence=0.95,
                    details=f"{report.positives}/{report.total} engines flagged this URL",
                )
        return self.neutral(f"API error: {submit.status_code}")


class _URLVoidStats(BaseModel):
    detections: int | None = None


class _URLVoidResponse(BaseModel):
    detections: int | None = None
    response: _URLVoidStats | None = None

    @property
    def detection_count(self) -> int:
        if self.response is not None and self.response.detections:
            return self.response.detections
        return self.detections or 0


class URLVoid(ThreatProvider):
    name = "URLVoid"
    endpoint = "https://api.urlvoid.com/v1/pay-as-you-go/"

    async def _query(self, url: str) -> ExternalCheckResult:
        host = hostname_of(url)
        if not host:
            raise ValueError("URL has no host")
        res = await self.client.get(
            self.endpoint, params={"key": self.api_key, "host": host, "stats": 1}, timeout=self.timeout
        )
        res.raise_for_status()
        detections = _URLVoidResponse.model_validate(res.json()).detection_count

        if detections == 0:
            return ExternalCheckResult(source=self.name, safe=True, confidence=0.85, details="No detections")
        return ExternalCheckResult(
            source=self.name, safe=False, confidence=0.9, details=f"{detections} detection(s) found"
        )


class _PhishTankResults(BaseModel):
    in_database: bool | None = None
    valid: bool | None = None
    verified: bool | None = None


class _PhishTankResponse(BaseModel):
    results: _PhishTankResults | None = None


class PhishTank(ThreatProvider):
    name = "PhishTank"
    endpoint = "https://checkurl.phishtank.com/checkurl/"
    requires_key = False

    async def _query(self, url: str) -> ExternalCheckResult:
        res = await self.client.post(
            self.endpoint,
            data={"url": url, "format": "json", "app_key": self.api_key},
            headers={"User-Agent": "phishtank/linktrust"},
            timeout=self.timeout,
        )
        res.raise_for_status()
        results = _PhishTankResponse.model_validate(res.json()).results

        is_phish = results is not None and results.in_database is True and results.verified is True
        if is_phish:
            return ExternalCheckResult(source=self.name, safe=False, confidence=0.95, details="Phishing URL detected")
        return ExternalCheckResult(source=self.name, safe=True, confidence=0.8, details="Not in phishing database")


def aggregate(results: list[ExternalCheckResult]) -> AggregatedExternalResult:
    confident = [r for r in results if r.confidence > CONFIDENT]
    threat_count = sum(1 for r in confident if not r.safe)
    safe_count = len(confident) - threat_count

    if confident:
        confidence = (safe_count / len(confident)) * 0.9 + (0.0 if threat_count else 0.1)
    else:
        confidence = 0.5

    return AggregatedExternalResult(
        safe=threat_count == 0,
        confidence=min(MAX_AGGREGATE_CONFIDENCE, confidence),
        sources=results,
        threat_count=threat_count,
    )


def trusted_result() -> AggregatedExternalResult:
    return AggregatedExternalResult(
        safe=True,
        confidence=1.0,
        sources=[
            ExternalCheckResult(
                source=TRUSTED_SOURCE,
                safe=True,
                confidence=1.0,
                details="Renowned, trusted website. No external checks needed.",
            )
        ],
        threat_count=0,
    )


def neutral_result() -> AggregatedExternalResult:
    """Stand-in when the aggregation itself could not run."""
    return AggregatedExternalResult(safe=True, confidence=0.5, sources=[], threat_count=0)


class ThreatAggregator:
    def __init__(self, providers: list[ThreatProvider]) -> None:
        self.providers = list(providers)

    @classmethod
    def from_settings(cls, settings, client: httpx.AsyncClient) -> "ThreatAggregator":
        keys = settings.provider_keys
        timeout = settings.provider_timeout_s
        return cls(
            [
                GoogleSafeBrowsing(client, keys.google_safe_browsing, timeout),
                VirusTotal(client, keys.virustotal, timeout),
                URLVoid(client, keys.urlvoid, timeout),
                PhishTank(client, keys.phishtank, timeout),
            ]
        )

    async def check(self, url: str, domain: str = "") -> AggregatedExternalResult:
        if is_trusted_domain(domain or hostname_of(url)):
            return trusted_result()

        settled = await asyncio.gather(*(p.check(url) for p in self.providers), return_exceptions=True)

        results: list[ExternalCheckResult] = []
        for provider, outcome in zip(self.providers, settled):
            if isinstance(outcome, BaseException):
                logger.warning("provider_raised", provider=provider.name, error=repr(outcome))
                continue
            results.append(outcome)

        agg = aggregate(results)
        logger.debug("external_checks_done", url=url, threats=agg.threat_count, confidence=agg.confidence)
        return agg
