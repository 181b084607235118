"""
Trust-score arithmetic shared by the analyzer.

Pure functions only: heuristic/external signals -> score -> category, the
issue merge, and the in-place AI refinement of a TrustVerdict.
"""
from __future__ import annotations

from dataclasses import dataclass

from .models import AggregatedExternalResult, AIVerdict, HeuristicResult, TrustVerdict

BASE_SCORE = 0.5

# Substring of an issue tag -> penalty. A tag matching several entries is
# penalized for each.
ISSUE_PENALTIES: tuple[tuple[str, float], ...] = (
    ("short_url", 0.12),
    ("no_https", 0.20),
    ("punycode", 0.18),
    ("suspicious_tld", 0.15),
    ("ip_address", 0.15),
    ("suspicious_params", 0.10),
    ("encoded_url", 0.08),
    ("invalid_url", 0.25),
    ("external_threats", 0.30),
)
PHISHING_PENALTY = 0.50

FLAG_BONUSES: tuple[tuple[str, float], ...] = (
    ("hasNoopener", 0.05),
    ("isKnownSafe", 0.20),
    ("hasValidSSL", 0.10),
    ("hasValidDomain", 0.05),
)

SAFE_MIN = 0.7
SUSPICIOUS_MIN = 0.4

AI_CONFIDENCE = 0.85
UNAVAILABLE_CONFIDENCE = 0.5

SUMMARY_SKIPPED_DANGEROUS = "High risk detected by security checks. AI analysis skipped, dangerous."
SUMMARY_SKIPPED_SAFE = "Link verified as safe by security checks. AI analysis skipped, safe."
SUMMARY_AI_UNAVAILABLE = (
    "AI analysis temporarily unavailable. Heuristic and external security checks are still active."
)
SUMMARY_TRUSTED = "Trusted domain. No analysis needed."

_RECOMMENDATION_LABELS = {
    "SAFE_TO_FOLLOW": "Safe to follow",
    "AVOID": "Avoid",
    "CAUTION_ADVISED": "Proceed with caution",
    "UNAVAILABLE": "Content unavailable, proceed with caution",
}

_RISK_TAGS = {
    "AVOID": "high_risk",
    "CAUTION_ADVISED": "moderate_risk",
    "SAFE_TO_FOLLOW": "low_risk",
    "UNAVAILABLE": "unverified",
}


@dataclass(frozen=True)
class FastPathThresholds:
    dangerous_max: float = 0.2
    safe_min: float = 0.8
    safe_external_min: float = 0.85
    safe_external_confidence: float = 0.8


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def _is_phishing_issue(issue: str) -> bool:
    return "PHISHING_RISK" in issue or "typosquatting" in issue


def calculate_trust_score(
    heuristics: HeuristicResult,
    external: AggregatedExternalResult | None = None,
) -> float:
    score = BASE_SCORE

    for issue in heuristics.issues:
        if _is_phishing_issue(issue):
            score -= PHISHING_PENALTY
        for needle, penalty in ISSUE_PENALTIES:
            if needle in issue:
                score -= penalty

    for flag, bonus in FLAG_BONUSES:
        if heuristics.flags.get(flag):
            score += bonus

    if external is not None:
        if external.confidence > 0.7:
            if external.safe:
                score = min(1.0, score + 0.15)
            else:
                score = min(score, 0.3)
        agreement = external.confidence if external.safe else 1.0 - external.confidence
        score = score * 0.6 + agreement * 0.4

    return _clamp(score)


def categorize_trust(score: float) -> str:
    if score >= SAFE_MIN:
        return "SAFE"
    if score >= SUSPICIOUS_MIN:
        return "SUSPICIOUS"
    return "DANGEROUS"


def merge_issues(heuristics: HeuristicResult, external: AggregatedExternalResult | None) -> list[str]:
    issues = list(heuristics.issues)
    if external is None:
        return issues
    if external.threat_count > 0:
        issues.append(f"external_threats: {external.threat_count} service(s) flagged this URL")
    for src in external.sources:
        if not src.safe and src.details:
            issues.append(f"{src.source.lower()}: {src.details}")
    return issues


def is_obviously_dangerous(
    score: float,
    external: AggregatedExternalResult,
    thresholds: FastPathThresholds,
) -> bool:
    return score < thresholds.dangerous_max and external.threat_count > 0


def is_obviously_safe(
    score: float,
    issues: list[str],
    external: AggregatedExternalResult,
    thresholds: FastPathThresholds,
) -> bool:
    if score > thresholds.safe_min and not issues:
        return True
    return (
        score > thresholds.safe_external_min
        and external.safe
        and external.confidence > thresholds.safe_external_confidence
    )


def format_ai_summary(ai: AIVerdict) -> str:
    parts = []
    if ai.content_relevance:
        parts.append(f"Content relevance: {ai.content_relevance}")
    if ai.click_behavior:
        parts.append(f"Click behavior: {ai.click_behavior}")
    if ai.reasoning:
        parts.append(f"Reasoning: {ai.reasoning}")
    parts.append(_RECOMMENDATION_LABELS.get(ai.follow_recommendation, "Proceed with caution"))
    return "\n\n".join(parts)


def apply_ai_verdict(verdict: TrustVerdict, ai: AIVerdict) -> TrustVerdict:
    """
    Fold an AI judgment into a verdict in place and return it.

    SAFE_TO_FOLLOW floors the score at 0.7, AVOID caps it at 0.3 and
    CAUTION_ADVISED clamps it to [0.4, 0.69]; each forces its category.
    Anything else blends 60% AI rating with 40% of the current score.
    """
    rating = ai.safety_rating / 100.0
    rec = ai.follow_recommendation

    if rec == "SAFE_TO_FOLLOW":
        verdict.trust_score = max(SAFE_MIN, _clamp(rating))
        verdict.category = "SAFE"
    elif rec == "AVOID":
        verdict.trust_score = min(0.3, _clamp(rating))
        verdict.category = "DANGEROUS"
    elif rec == "CAUTION_ADVISED":
        verdict.trust_score = _clamp(rating, SUSPICIOUS_MIN, 0.69)
        verdict.category = "SUSPICIOUS"
    else:
        verdict.trust_score = _clamp(rating * 0.6 + verdict.trust_score * 0.4)
        verdict.category = categorize_trust(verdict.trust_score)

    verdict.ai_summary = format_ai_summary(ai)
    verdict.recommendation = rec
    verdict.risk_tags = [_RISK_TAGS.get(rec, "moderate_risk")]
    verdict.confidence = UNAVAILABLE_CONFIDENCE if rec == "UNAVAILABLE" else AI_CONFIDENCE
    return verdict
