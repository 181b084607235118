"""
AI judgment for links that are neither obviously safe nor obviously dangerous.

The model reads the destination page together with the page the user is on
and answers with a small JSON verdict. Model output is untrusted: it goes
through a three-stage JSON parser and a normalizer that clamps and coerces
every field before anything downstream sees it.
"""
from __future__ import annotations

import enum
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from .content import LinkContent, fetch_link_content
from .llm import ModelAvailability, ModelError, ModelRuntime
from .logger import get_logger
from .models import AIVerdict, HeuristicResult, LinkCandidate
from .sanitize import scrub_pii
from .urls import hostname_of, normalize_url, same_site

logger = get_logger(__name__)

SOURCE_CONTEXT_LIMIT = 5000
RELEVANCE_LIMIT = 500
CLICK_BEHAVIOR_LIMIT = 300
REASONING_LIMIT = 500
FETCH_FAILURE_PENALTY = 20
DEFAULT_AI_CACHE_TTL_S = 12 * 3600

_SOURCE_DOMAIN_RE = re.compile(r"Page Domain:\s*([^\n]+)", re.IGNORECASE)
_FENCED_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


class JudgmentStage(str, enum.Enum):
    UNSEEN = "UNSEEN"
    CONTENT_FETCHED = "CONTENT_FETCHED"
    PROMPTED = "PROMPTED"
    PARSED = "PARSED"
    CACHED = "CACHED"


@dataclass(frozen=True)
class ParseOutcome:
    payload: dict[str, Any] | None = None
    strategy: str | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.payload is not None


def _load_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def parse_model_json(text: str | None) -> ParseOutcome:
    """Strict parse, then a fenced code block, then the outermost braces."""
    raw = (text or "").strip()
    if not raw:
        return ParseOutcome(reason="empty response")

    payload = _load_object(raw)
    if payload is not None:
        return ParseOutcome(payload=payload, strategy="strict")

    m = _FENCED_RE.search(raw)
    if m:
        payload = _load_object(m.group(1))
        if payload is not None:
            return ParseOutcome(payload=payload, strategy="fenced")

    start, end = raw.find("{"), raw.rfind("}")
    if start != -1 and end > start:
        payload = _load_object(raw[start : end + 1])
        if payload is not None:
            return ParseOutcome(payload=payload, strategy="braces")

    return ParseOutcome(reason="no JSON object found in model output")


def _text_field(raw: dict[str, Any], key: str, limit: int, default: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        return default
    return value.strip()[:limit]


def coerce_recommendation(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return "CAUTION_ADVISED"
    rec = value.strip().upper()
    if "SAFE" in rec or "FOLLOW" in rec:
        return "SAFE_TO_FOLLOW"
    if "AVOID" in rec or "DANGER" in rec:
        return "AVOID"
    return "CAUTION_ADVISED"


def normalize_ai_output(raw: dict[str, Any], trust_score: float) -> AIVerdict:
    """Clamp and coerce a parsed model payload into an AIVerdict.

    A missing or non-numeric safetyRating falls back to the current trust
    score; free-text fields get defaults when absent and are truncated.
    """
    rating_raw = raw.get("safetyRating")
    if isinstance(rating_raw, bool) or not isinstance(rating_raw, (int, float)) or rating_raw != rating_raw:
        rating = trust_score * 100
    else:
        rating = float(rating_raw)
    rating = max(0, min(100, round(rating)))

    return AIVerdict(
        content_relevance=_text_field(
            raw, "contentRelevance", RELEVANCE_LIMIT, "Content analysis unavailable - could not determine relevance"
        ),
        follow_recommendation=coerce_recommendation(raw.get("followRecommendation")),
        click_behavior=_text_field(
            raw, "clickBehavior", CLICK_BEHAVIOR_LIMIT, "Unknown behavior - could not determine click behavior"
        ),
        safety_rating=rating,
        reasoning=_text_field(raw, "reasoning", REASONING_LIMIT, "Analysis incomplete - could not generate reasoning"),
    )


def degraded_verdict(trust_score: float, error: str | None) -> AIVerdict:
    rating = max(0, min(100, round(trust_score * 100 - FETCH_FAILURE_PENALTY)))
    return AIVerdict(
        content_relevance="Could not fetch link content",
        follow_recommendation="UNAVAILABLE",
        click_behavior="Unknown - content fetch failed",
        safety_rating=rating,
        reasoning=f"Failed to fetch content: {error or 'Unknown error'}",
    )


def fallback_verdict(trust_score: float) -> AIVerdict:
    pct = round(trust_score * 100)
    return AIVerdict(
        content_relevance="AI analysis completed but response format was invalid. Using heuristic analysis.",
        follow_recommendation="AVOID" if trust_score < 0.4 else "CAUTION_ADVISED",
        click_behavior="Could not determine click behavior from AI response",
        safety_rating=max(0, min(100, pct)),
        reasoning=f"AI response parsing failed. Trust score: {pct}% based on heuristics.",
    )


def extract_source_domain(source_context: str) -> str | None:
    m = _SOURCE_DOMAIN_RE.search(source_context or "")
    return m.group(1).strip() if m else None


def build_prompt(
    link: LinkCandidate,
    content: LinkContent,
    source_context: str,
    issues: list[str],
    trust_score: float,
    source_domain: str | None = None,
) -> str:
    """Build the judgment prompt for one link."""
    context = scrub_pii(source_context, limit=SOURCE_CONTEXT_LIMIT)
    src = source_domain or extract_source_domain(source_context) or "Unknown"
    link_domain = hostname_of(link.href) or link.target_domain or "Unknown"
    same = src != "Unknown" and same_site(src, link_domain)
    issue_text = "; ".join(issues) if issues else "None"
    match_text = (
        "YES - Same domain (link is on the same site as source page)" if same else "NO - Different domain"
    )

    return f"""You are a cybersecurity analyst. Judge whether the user should follow this link, given the SOURCE PAGE they are currently browsing. Return ONLY valid JSON, no other text.

A link that is expected on the official site (for example "Buy WinRAR" on winrar.com) can be suspicious when it shows up on an unrelated site. Weigh the source page context accordingly.

## REQUIRED JSON FORMAT

{{
  "contentRelevance": "1-2 sentences: what the link leads to and how it relates to the source page",
  "followRecommendation": "SAFE_TO_FOLLOW" or "CAUTION_ADVISED" or "AVOID",
  "clickBehavior": "1 sentence: what happens when the user clicks",
  "safetyRating": <0-100 integer>,
  "reasoning": "2-3 sentences: is the link relevant to the source page, does it make sense there, is the source page the official site for it"
}}

## SOURCE PAGE CONTEXT
{context or 'Not available'}

## LINK TO ANALYZE
- Link URL: {scrub_pii(link.href)}
- Link Domain: {link_domain}
- Link Text: {scrub_pii(link.text)}
- Target Page Title: {content.title or 'No title'}
- Target Page Content: {content.text}

## ANALYSIS CONTEXT
- Source Domain: {src}
- Link Domain: {link_domain}
- Domain Match: {match_text}
- Current Trust Score: {trust_score * 100:.0f}%
- Security Issues Detected: {issue_text}

## EVALUATION CRITERIA
1. Source page and link on the same site (both on winrar.com): links like "Buy WinRAR" are SAFE_TO_FOLLOW.
2. Source page is the official site for the product or service: purchase and download links are usually SAFE_TO_FOLLOW.
3. Link placed on an unrelated third-party site: lean to CAUTION_ADVISED or AVOID.
4. Ask whether the link makes sense given what the source page is about.

Return ONLY the JSON object: no markdown, no code blocks, no explanations."""


class AIResponseCache:
    """Parsed AI verdicts keyed by normalized URL, valid for ``ttl_s``."""

    def __init__(self, ttl_s: float = DEFAULT_AI_CACHE_TTL_S, clock: Callable[[], float] = time.time) -> None:
        self.ttl_s = ttl_s
        self.clock = clock
        self._entries: dict[str, tuple[AIVerdict, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, url: str) -> AIVerdict | None:
        key = normalize_url(url)
        entry = self._entries.get(key)
        if entry is None:
            return None
        verdict, stored_at = entry
        if self.clock() - stored_at >= self.ttl_s:
            del self._entries[key]
            return None
        return verdict

    def put(self, url: str, verdict: AIVerdict) -> None:
        self.sweep()
        self._entries[normalize_url(url)] = (verdict, self.clock())

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self.clock()
        expired = [k for k, (_, stored_at) in self._entries.items() if now - stored_at >= self.ttl_s]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()


ContentFetcher = Callable[[str], Awaitable[LinkContent]]


class AIJudge:
    def __init__(
        self,
        runtime: ModelRuntime,
        availability: ModelAvailability,
        cache: AIResponseCache,
        http_client: httpx.AsyncClient | None = None,
        user_agent: str = "",
        fetcher: ContentFetcher | None = None,
    ) -> None:
        if fetcher is None and http_client is None:
            raise ValueError("AIJudge needs an http_client or a fetcher")
        self.runtime = runtime
        self.availability = availability
        self.cache = cache
        self._http = http_client
        self._user_agent = user_agent
        self._fetcher = fetcher
        self._stages: dict[str, JudgmentStage] = {}

    def stage(self, url: str) -> JudgmentStage:
        key = normalize_url(url)
        if key in self._stages:
            return self._stages[key]
        if self.cache.get(key) is not None:
            return JudgmentStage.CACHED
        return JudgmentStage.UNSEEN

    def _advance(self, key: str, stage: JudgmentStage) -> None:
        # Only in-flight stages are tracked; CACHED is read from the cache.
        if stage is JudgmentStage.CACHED:
            self._stages.pop(key, None)
        else:
            self._stages[key] = stage
        logger.debug("ai_stage", url=key, stage=stage.value)

    def _reset(self, key: str) -> None:
        self._stages.pop(key, None)

    async def _fetch(self, url: str) -> LinkContent:
        if self._fetcher is not None:
            return await self._fetcher(url)
        return await fetch_link_content(url, self._http, self._user_agent)

    async def judge(
        self,
        link: LinkCandidate,
        source_context: str,
        heuristics: HeuristicResult,
        trust_score: float,
        source_domain: str | None = None,
    ) -> AIVerdict | None:
        """
        One model judgment for ``link``, or None when the model could not be
        asked. A fetch failure gives a degraded verdict and unparseable
        output gives a conservative fallback; neither is cached.
        """
        key = normalize_url(link.href)

        cached = self.cache.get(key)
        if cached is not None:
            self._advance(key, JudgmentStage.CACHED)
            logger.info("ai_cache_hit", url=key)
            return cached

        if not await self.availability.is_available():
            logger.debug("ai_unavailable", url=key, provider=self.runtime.name)
            return None

        content = await self._fetch(link.href)
        if not content.ok:
            self._reset(key)
            logger.info("ai_content_unavailable", url=key, error=content.error)
            return degraded_verdict(trust_score, content.error or "empty page")
        self._advance(key, JudgmentStage.CONTENT_FETCHED)

        prompt = build_prompt(link, content, source_context, heuristics.issues, trust_score, source_domain)
        self._advance(key, JudgmentStage.PROMPTED)
        try:
            text = await self.runtime.generate(prompt)
        except ModelError as e:
            self._reset(key)
            logger.warning("ai_call_failed", url=key, provider=self.runtime.name, error=str(e))
            return None
        if not text or not text.strip():
            self._reset(key)
            logger.warning("ai_empty_response", url=key, provider=self.runtime.name)
            return None

        outcome = parse_model_json(text)
        if not outcome.ok:
            self._reset(key)
            logger.warning("ai_parse_failed", url=key, reason=outcome.reason, preview=text[:200])
            return fallback_verdict(trust_score)
        self._advance(key, JudgmentStage.PARSED)

        verdict = normalize_ai_output(outcome.payload, trust_score)
        self.cache.put(key, verdict)
        self._advance(key, JudgmentStage.CACHED)
        logger.info(
            "ai_judged",
            url=key,
            strategy=outcome.strategy,
            recommendation=verdict.follow_recommendation,
            rating=verdict.safety_rating,
        )
        return verdict
