"""
Batch analysis: cache, trusted domains, fast paths, deduplicated AI refinement.
"""

import asyncio

import pytest

from linktrust_agent.analyzer import MARKED_SUMMARY
from linktrust_agent.content import LinkContent
from linktrust_agent.models import TrustVerdict
from linktrust_agent.scoring import SUMMARY_AI_UNAVAILABLE, SUMMARY_SKIPPED_DANGEROUS, SUMMARY_SKIPPED_SAFE, SUMMARY_TRUSTED

from conftest import StubProvider, ai_reply, make_link

ITEM = "https://acme-widgets.net/item"


def _run(analyzer, links, domain="acme-widgets.net", **kwargs):
    """Run one batch and wait for background AI work. Returns (analyses, updates, completions)."""
    updates = []
    completions = []

    async def run():
        analyses = await analyzer.analyze(
            links,
            domain,
            on_update=lambda i, a: updates.append((i, a)),
            on_complete=lambda: completions.append(True),
            **kwargs,
        )
        await analyzer.wait_idle()
        return analyses

    return asyncio.run(run()), updates, completions


@pytest.mark.parametrize("links,domain", [([], "acme-widgets.net"), ([make_link(ITEM)], ""), ([make_link(ITEM)], "  ")])
def test_rejects_empty_batch_or_domain(make_analyzer, links, domain):
    with pytest.raises(ValueError):
        asyncio.run(make_analyzer().analyze(links, domain))


def test_duplicate_urls_share_one_ai_call(make_analyzer, runtime, store):
    analyzer = make_analyzer()
    links = [make_link(ITEM, text="Blue widget"), make_link(ITEM + "/#reviews", text="Reviews")]

    analyses, updates, completions = _run(analyzer, links, user_id="user-1")

    assert len(runtime.prompts) == 1
    assert analyses[0].verdict is analyses[1].verdict
    assert analyses[1].link.text == "Reviews"
    assert sorted(i for i, _ in updates) == [0, 1]
    assert completions == [True]

    verdict = analyses[0].verdict
    assert verdict.category == "SAFE"
    assert verdict.trust_score == pytest.approx(0.9)
    assert verdict.recommendation == "SAFE_TO_FOLLOW"
    assert verdict.risk_tags == ["low_risk"]

    stored = asyncio.run(store.get(ITEM))
    assert stored.recommendation == "SAFE_TO_FOLLOW"
    assert store.count() == 1


def test_first_answer_is_heuristic_before_ai(make_analyzer):
    analyzer = make_analyzer()

    async def run():
        analyses = await analyzer.analyze([make_link(ITEM)], "acme-widgets.net", user_id="user-1")
        snapshot = analyses[0].verdict.model_copy()
        await analyzer.wait_idle()
        return snapshot, analyses[0].verdict

    first, final = asyncio.run(run())
    # 0.65 heuristic score blended with a neutral 0.5 external answer
    assert first.trust_score == pytest.approx(0.59)
    assert first.category == "SUSPICIOUS"
    assert first.confidence == pytest.approx(0.7)
    assert first.recommendation is None
    assert final.recommendation == "SAFE_TO_FOLLOW"


def test_priority_url_is_judged_first(make_analyzer, runtime):
    analyzer = make_analyzer()
    urls = ["https://acme-widgets.net/a", "https://acme-widgets.net/b", "https://acme-widgets.net/c"]

    _run(analyzer, [make_link(u) for u in urls], user_id="user-1", priority_url=urls[2] + "/")

    judged = [next(u for u in urls if f"Link URL: {u}\n" in prompt) for prompt in runtime.prompts]
    assert judged == [urls[2], urls[0], urls[1]]


def test_cached_verdict_skips_checks(make_analyzer, store, runtime):
    cached = TrustVerdict(trust_score=0.42, category="SUSPICIOUS", issues=["deep_path"], ai_summary="stored")
    asyncio.run(store.upsert(ITEM, cached))
    provider = StubProvider("Feed")
    analyzer = make_analyzer([provider])

    analyses, updates, completions = _run(analyzer, [make_link(ITEM)], user_id="user-1")

    assert analyses[0].verdict.ai_summary == "stored"
    assert analyses[0].verdict.trust_score == pytest.approx(0.42)
    assert provider.calls == []
    assert runtime.prompts == []
    assert updates == []
    assert completions == [True]


def test_trusted_domain_gets_fixed_verdict(make_analyzer, store, runtime):
    provider = StubProvider("Feed")
    analyzer = make_analyzer([provider])

    analyses, _, _ = _run(analyzer, [make_link("https://github.com/microsoft")], user_id="user-1")

    verdict = analyses[0].verdict
    assert verdict.trust_score == 1.0
    assert verdict.category == "SAFE"
    assert verdict.confidence == 1.0
    assert verdict.ai_summary == SUMMARY_TRUSTED
    assert provider.calls == []
    assert runtime.prompts == []
    assert asyncio.run(store.get("https://github.com/microsoft")) is not None


def test_obviously_dangerous_skips_ai(make_analyzer, runtime, store):
    providers = [
        StubProvider("A", safe=True, confidence=0.8),
        StubProvider("B", safe=True, confidence=0.8),
        StubProvider("C", safe=True, confidence=0.8),
        StubProvider("Bad", safe=False, confidence=0.95, details="Threats detected: MALWARE"),
    ]
    analyzer = make_analyzer(providers)

    analyses, _, completions = _run(analyzer, [make_link("http://paypa1.com/login")], user_id="user-1")

    verdict = analyses[0].verdict
    assert verdict.category == "DANGEROUS"
    assert verdict.ai_summary == SUMMARY_SKIPPED_DANGEROUS
    assert "external_threats: 1 service(s) flagged this URL" in verdict.issues
    assert "bad: Threats detected: MALWARE" in verdict.issues
    assert any("typosquatting" in issue for issue in verdict.issues)
    assert runtime.prompts == []
    assert completions == [True]
    assert asyncio.run(store.get("http://paypa1.com/login")).ai_summary == SUMMARY_SKIPPED_DANGEROUS


def test_obviously_safe_skips_ai(make_analyzer, runtime):
    providers = [StubProvider("A", confidence=0.8), StubProvider("B", confidence=0.85)]
    analyzer = make_analyzer(providers)

    link = make_link("https://docs.acme-widgets.net/guide", rel="noopener")
    analyses, _, _ = _run(analyzer, [link], user_id="user-1")

    verdict = analyses[0].verdict
    assert verdict.trust_score == pytest.approx(0.89)
    assert verdict.ai_summary == SUMMARY_SKIPPED_SAFE
    assert verdict.confidence == pytest.approx(0.95)
    assert runtime.prompts == []


def test_marked_links_are_not_analyzed(make_analyzer, store):
    analyzer = make_analyzer()
    analyses, _, _ = _run(analyzer, [make_link(ITEM, text="⚠️ Caution: unverified")])

    verdict = analyses[0].verdict
    assert verdict.trust_score == 0.5
    assert verdict.category == "SUSPICIOUS"
    assert verdict.confidence == 0.5
    assert verdict.ai_summary == MARKED_SUMMARY
    assert store.count() == 0


def test_no_ai_without_user(make_analyzer, runtime, store):
    analyzer = make_analyzer()
    analyses, updates, completions = _run(analyzer, [make_link(ITEM)])

    assert runtime.prompts == []
    assert updates == []
    assert completions == [True]
    assert analyses[0].verdict.ai_summary is None
    assert asyncio.run(store.get(ITEM)) is not None


def test_ai_without_auth_when_allowed(make_analyzer, runtime):
    analyzer = make_analyzer(allow_ai_without_auth=True)
    _run(analyzer, [make_link(ITEM)])
    assert len(runtime.prompts) == 1


def test_unavailable_model_leaves_verdict_unpersisted(make_analyzer, runtime, store):
    runtime.models = []
    analyzer = make_analyzer()

    analyses, updates, _ = _run(analyzer, [make_link(ITEM)], user_id="user-1")

    assert analyses[0].verdict.ai_summary == SUMMARY_AI_UNAVAILABLE
    assert [i for i, _ in updates] == [0]
    assert asyncio.run(store.get(ITEM)) is None


def test_degraded_verdict_is_persisted(make_analyzer, store):
    analyzer = make_analyzer()

    async def broken(url):
        return LinkContent(url=url, error="HTTP 500")

    analyzer.judge._fetcher = broken
    analyses, _, _ = _run(analyzer, [make_link(ITEM)], user_id="user-1")

    verdict = analyses[0].verdict
    assert verdict.recommendation == "UNAVAILABLE"
    assert verdict.risk_tags == ["unverified"]
    assert verdict.confidence == pytest.approx(0.5)
    assert asyncio.run(store.get(ITEM)).recommendation == "UNAVAILABLE"


def test_store_failures_do_not_break_analysis(make_analyzer, store, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(store, "get_many", boom)
    monkeypatch.setattr(store, "upsert", boom)
    analyzer = make_analyzer()

    analyses, updates, _ = _run(analyzer, [make_link(ITEM), make_link("https://github.com/")], user_id="user-1")

    assert len(analyses) == 2
    assert analyses[0].verdict.recommendation == "SAFE_TO_FOLLOW"
    assert analyses[1].verdict.ai_summary == SUMMARY_TRUSTED
    assert [i for i, _ in updates] == [0]


def test_second_request_is_served_from_cache(make_analyzer, runtime):
    analyzer = make_analyzer()
    _run(analyzer, [make_link(ITEM)], user_id="user-1")
    analyses, _, _ = _run(analyzer, [make_link(ITEM)], user_id="user-1")

    assert len(runtime.prompts) == 1
    assert analyses[0].verdict.recommendation == "SAFE_TO_FOLLOW"


def test_avoid_recommendation_marks_link_dangerous(make_analyzer, runtime):
    runtime.replies = [ai_reply("AVOID", 10)]
    analyzer = make_analyzer()

    analyses, _, _ = _run(analyzer, [make_link(ITEM)], user_id="user-1")
    verdict = analyses[0].verdict
    assert verdict.category == "DANGEROUS"
    assert verdict.trust_score == pytest.approx(0.1)
    assert verdict.risk_tags == ["high_risk"]
