from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Category = Literal["SAFE", "SUSPICIOUS", "DANGEROUS"]
FollowRecommendation = Literal["SAFE_TO_FOLLOW", "CAUTION_ADVISED", "AVOID", "UNAVAILABLE"]

RECOMMENDATIONS: tuple[str, ...] = ("SAFE_TO_FOLLOW", "CAUTION_ADVISED", "AVOID")


class _CamelModel(BaseModel):
    # The browser collaborator speaks camelCase; Python code uses snake_case.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LinkCandidate(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    href: str = Field(..., min_length=1)
    text: str = ""
    rel: str | None = None
    target: str | None = None
    download: str | None = None
    context_snippet: str | None = None
    target_domain: str = ""
    element_selector: str | None = None


class HeuristicResult(BaseModel):
    issues: list[str] = Field(default_factory=list)
    flags: dict[str, bool] = Field(default_factory=dict)


class ExternalCheckResult(BaseModel):
    source: str
    safe: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    details: str | None = None
    error: str | None = None


class AggregatedExternalResult(_CamelModel):
    safe: bool
    confidence: float
    sources: list[ExternalCheckResult] = Field(default_factory=list)
    threat_count: int = 0


class AIVerdict(_CamelModel):
    content_relevance: str
    follow_recommendation: FollowRecommendation
    click_behavior: str
    safety_rating: int = Field(..., ge=0, le=100)
    reasoning: str


class TrustVerdict(_CamelModel):
    trust_score: float = Field(..., ge=0.0, le=1.0)
    category: Category
    issues: list[str] = Field(default_factory=list)
    ai_summary: str | None = None
    recommendation: str | None = None
    risk_tags: list[str] | None = None
    confidence: float | None = None


class LinkAnalysis(_CamelModel):
    link: LinkCandidate
    verdict: TrustVerdict


class AnalyzeRequest(_CamelModel):
    links: list[LinkCandidate] = Field(default_factory=list)
    domain: str = ""
    source_page_context: str = Field("", max_length=20000)
    priority_url: str | None = None


class AnalyzeResponse(_CamelModel):
    job_id: str | None = None
    analyses: list[LinkAnalysis]


class SingleAnalyzeRequest(_CamelModel):
    link: LinkCandidate
    domain: str = ""
    source_page_context: str = Field("", max_length=20000)


class SingleAnalyzeResponse(_CamelModel):
    job_id: str | None = None
    analysis: LinkAnalysis | None = None


class VerdictUpdate(_CamelModel):
    index: int
    analysis: LinkAnalysis


class UpdatesResponse(_CamelModel):
    job_id: str
    updates: list[VerdictUpdate]
    cursor: int
    done: bool
    polls_remaining: int


class ModelHealth(_CamelModel):
    available: bool
    provider: str
    model: str | None = None
    error: str | None = None
    available_models: list[str] = Field(default_factory=list)
