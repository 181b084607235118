"""
Pytest fixtures for LinkTrust tests. Each test gets its own SQLite file, a
controllable clock, a scripted model runtime and stub threat providers.
"""

from __future__ import annotations

import json
from dataclasses import replace

import pytest

from linktrust_agent.ai_judge import AIJudge, AIResponseCache
from linktrust_agent.analyzer import LinkAnalyzer
from linktrust_agent.config import Settings
from linktrust_agent.content import LinkContent
from linktrust_agent.external import ThreatAggregator, ThreatProvider
from linktrust_agent.llm import ModelAvailability
from linktrust_agent.models import ExternalCheckResult, LinkCandidate
from linktrust_agent.store import VerdictStore

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRuntime:
    """Scripted model runtime. ``replies`` are returned in order, the last one repeats."""

    name = "fake"

    def __init__(self, replies=None, models=None, model: str = "fake-model") -> None:
        self.model = model
        self.models = ["fake-model:latest"] if models is None else models
        self.replies = list(replies or [])
        self.configured = True
        self.prompts: list[str] = []
        self.probe_calls = 0
        self.list_calls = 0
        self.probe_error: Exception | None = None
        self.generate_error: Exception | None = None

    async def list_models(self, timeout=None):
        self.list_calls += 1
        return list(self.models)

    async def generate(self, prompt, *, model=None, max_tokens=None, temperature=0.2, timeout=None):
        if max_tokens == 1:
            self.probe_calls += 1
            if self.probe_error is not None:
                raise self.probe_error
            return "H"
        self.prompts.append(prompt)
        if self.generate_error is not None:
            raise self.generate_error
        if not self.replies:
            return ""
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


class StubProvider(ThreatProvider):
    requires_key = False

    def __init__(self, name: str, safe: bool = True, confidence: float = 0.8, details: str | None = None):
        super().__init__(client=None)
        self.name = name
        self.result = ExternalCheckResult(source=name, safe=safe, confidence=confidence, details=details)
        self.calls: list[str] = []

    async def _query(self, url):
        self.calls.append(url)
        return self.result


def ai_reply(recommendation: str = "SAFE_TO_FOLLOW", rating: int = 90) -> str:
    return json.dumps(
        {
            "contentRelevance": "Product page on the same store.",
            "followRecommendation": recommendation,
            "clickBehavior": "Opens the product page.",
            "safetyRating": rating,
            "reasoning": "Link matches the page it sits on.",
        }
    )


def make_link(href: str, text: str = "Open", **kwargs) -> LinkCandidate:
    kwargs.setdefault("target_domain", "")
    return LinkCandidate(href=href, text=text, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def store(tmp_path, clock):
    s = VerdictStore.from_url(f"sqlite:///{tmp_path / 'linktrust.db'}", clock=clock)
    yield s
    s.dispose()


@pytest.fixture
def runtime():
    return FakeRuntime(replies=[ai_reply()])


@pytest.fixture
def page_fetcher():
    fetched: list[str] = []

    async def fetch(url: str) -> LinkContent:
        fetched.append(url)
        return LinkContent(url=url, status_code=200, title="Widget", text="A page about widgets and gadgets.")

    fetch.fetched = fetched
    return fetch


@pytest.fixture
def judge(runtime, clock, page_fetcher):
    availability = ModelAvailability(runtime, interval_s=300, clock=clock)
    return AIJudge(runtime, availability, AIResponseCache(clock=clock), fetcher=page_fetcher)


@pytest.fixture
def make_analyzer(settings, store, judge):
    """Factory: analyzer over the shared store/judge with the given providers and settings overrides."""

    def _make(providers=(), **overrides):
        cfg = replace(settings, **overrides) if overrides else settings
        return LinkAnalyzer(cfg, store, ThreatAggregator(list(providers)), judge)

    return _make
