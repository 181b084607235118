from __future__ import annotations

import asyncio
from typing import Any, Callable

from .ai_judge import AIJudge
from .config import Settings
from .external import ThreatAggregator, neutral_result, trusted_result
from .heuristics import calculate_heuristics, is_trusted_domain
from .logger import get_logger
from .models import AggregatedExternalResult, LinkAnalysis, LinkCandidate, TrustVerdict
from .sanitize import has_analysis_marker
from .scoring import (
    SUMMARY_AI_UNAVAILABLE,
    SUMMARY_SKIPPED_DANGEROUS,
    SUMMARY_SKIPPED_SAFE,
    SUMMARY_TRUSTED,
    apply_ai_verdict,
    calculate_trust_score,
    categorize_trust,
    is_obviously_dangerous,
    is_obviously_safe,
    merge_issues,
)
from .store import VerdictStore
from .typosquat import TyposquatDetector
from .urls import hostname_of, normalize_url
from .work_queue import AIWorkItem, AIWorkQueue

logger = get_logger(__name__)

UpdateCallback = Callable[[int, LinkAnalysis], Any]
DoneCallback = Callable[[], Any]

MARKED_SUMMARY = "Link already processed"


def marked_verdict() -> TrustVerdict:
    return TrustVerdict(trust_score=0.5, category=categorize_trust(0.5), issues=[], confidence=0.5, ai_summary=MARKED_SUMMARY)


def trusted_verdict() -> TrustVerdict:
    return TrustVerdict(trust_score=1.0, category="SAFE", issues=[], confidence=1.0, ai_summary=SUMMARY_TRUSTED)


def _link_domain(link: LinkCandidate) -> str:
    return (link.target_domain or hostname_of(link.href)).lower()


class LinkAnalyzer:
    """
    Turns a batch of link candidates into verdicts.

    The first answer comes from the verdict cache, heuristics and external
    threat feeds. Links that still look ambiguous are refined by the AI
    judge afterwards, one at a time, and each refinement is pushed to
    ``on_update`` for every batch position that shares the URL.
    """

    def __init__(
        self,
        settings: Settings,
        store: VerdictStore,
        aggregator: ThreatAggregator,
        judge: AIJudge | None,
        detector: TyposquatDetector | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.aggregator = aggregator
        self.judge = judge
        self.detector = detector or TyposquatDetector(settings.typosquat)
        self._tasks: set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return bool(self._tasks)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _external(self, link: LinkCandidate) -> AggregatedExternalResult:
        try:
            return await self.aggregator.check(link.href, _link_domain(link))
        except Exception:
            logger.exception("external_checks_failed", url=link.href)
            return neutral_result()

    async def _persist(
        self,
        link: LinkCandidate,
        verdict: TrustVerdict,
        user_id: str | None,
        external: AggregatedExternalResult | None = None,
        ai=None,
    ) -> bool:
        try:
            await self.store.upsert(
                link.href,
                verdict,
                link_text=link.text,
                domain=_link_domain(link),
                user_id=user_id,
                external=external,
                ai=ai,
            )
            return True
        except Exception:
            logger.exception("verdict_persist_failed", url=link.href)
            return False

    async def analyze(
        self,
        links: list[LinkCandidate],
        domain: str,
        source_context: str = "",
        priority_url: str | None = None,
        user_id: str | None = None,
        on_update: UpdateCallback | None = None,
        on_complete: DoneCallback | None = None,
    ) -> list[LinkAnalysis]:
        if not links:
            raise ValueError("links must not be empty")
        if not (domain or "").strip():
            raise ValueError("domain is required")

        analyses: list[LinkAnalysis | None] = [None] * len(links)

        # normalized URL -> batch positions
        groups: dict[str, list[int]] = {}
        for i, link in enumerate(links):
            if has_analysis_marker(link.text):
                analyses[i] = LinkAnalysis(link=link, verdict=marked_verdict())
                continue
            groups.setdefault(normalize_url(link.href), []).append(i)

        cached: dict[str, TrustVerdict] = {}
        if groups:
            try:
                cached = await self.store.get_many(groups.keys())
            except Exception:
                logger.exception("cache_lookup_failed", urls=len(groups))

        misses = [key for key in groups if key not in cached]
        logger.info("cache_lookup", hits=len(groups) - len(misses), misses=len(misses))

        for key, verdict in cached.items():
            for i in groups[key]:
                analyses[i] = LinkAnalysis(link=links[i], verdict=verdict)

        trusted = {key for key in misses if is_trusted_domain(_link_domain(links[groups[key][0]]))}
        untrusted = [key for key in misses if key not in trusted]

        writes = []
        for key in trusted:
            first = links[groups[key][0]]
            verdict = trusted_verdict()
            for i in groups[key]:
                analyses[i] = LinkAnalysis(link=links[i], verdict=verdict)
            writes.append(self._persist(first, verdict, user_id, external=trusted_result()))

        externals = await asyncio.gather(*(self._external(links[groups[key][0]]) for key in untrusted))

        ai_allowed = bool(user_id) or self.settings.allow_ai_without_auth
        fast = self.settings.fast_path
        queue = AIWorkQueue()

        for key, external in zip(untrusted, externals):
            first = links[groups[key][0]]
            heuristics = calculate_heuristics(first, self.detector)
            score = calculate_trust_score(heuristics, external)
            issues = merge_issues(heuristics, external)
            verdict = TrustVerdict(
                trust_score=score,
                category=categorize_trust(score),
                issues=issues,
                confidence=max(0.7, external.confidence),
            )
            for i in groups[key]:
                analyses[i] = LinkAnalysis(link=links[i], verdict=verdict)

            if is_obviously_dangerous(score, external, fast):
                verdict.ai_summary = SUMMARY_SKIPPED_DANGEROUS
            elif is_obviously_safe(score, issues, external, fast):
                verdict.ai_summary = SUMMARY_SKIPPED_SAFE
            elif ai_allowed and self.judge is not None:
                queue.push(
                    AIWorkItem(
                        key=key,
                        link=first,
                        heuristics=heuristics,
                        external=external,
                        verdict=verdict,
                        positions=[(i, links[i]) for i in groups[key]],
                    )
                )
                continue
            writes.append(self._persist(first, verdict, user_id, external=external))

        if writes:
            await asyncio.gather(*writes)

        if priority_url and queue.move_to_front(normalize_url(priority_url)):
            logger.debug("ai_priority", url=normalize_url(priority_url))

        if len(queue):
            logger.info("ai_queued", items=len(queue), links=sum(len(groups[k]) for k in queue.keys()))
            task = asyncio.create_task(
                self._drain(queue, domain, source_context, user_id, on_update, on_complete)
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif on_complete is not None:
            on_complete()

        return [a for a in analyses if a is not None]

    async def _drain(
        self,
        queue: AIWorkQueue,
        domain: str,
        source_context: str,
        user_id: str | None,
        on_update: UpdateCallback | None,
        on_complete: DoneCallback | None,
    ) -> None:
        async def handle(item: AIWorkItem) -> None:
            await self._refine(item, domain, source_context, user_id)
            self._deliver(item, on_update)

        try:
            processed = await queue.drain(handle)
            logger.info("ai_queue_drained", processed=processed)
        finally:
            if on_complete is not None:
                try:
                    on_complete()
                except Exception:
                    logger.exception("update_complete_callback_failed")

    async def _refine(self, item: AIWorkItem, domain: str, source_context: str, user_id: str | None) -> None:
        verdict = item.verdict
        context = source_context or item.link.context_snippet or ""
        try:
            ai = await self.judge.judge(item.link, context, item.heuristics, verdict.trust_score, domain)
        except Exception:
            logger.exception("ai_judge_failed", url=item.key)
            ai = None

        if ai is None:
            # Provisional verdict stays unpersisted so the next request retries AI.
            if not verdict.ai_summary:
                verdict.ai_summary = SUMMARY_AI_UNAVAILABLE
            return

        apply_ai_verdict(verdict, ai)
        logger.info("ai_applied", url=item.key, category=verdict.category, score=round(verdict.trust_score, 2))
        await self._persist(item.link, verdict, user_id, external=item.external, ai=ai)

    def _deliver(self, item: AIWorkItem, on_update: UpdateCallback | None) -> None:
        if on_update is None:
            return
        for index, link in item.positions:
            try:
                on_update(index, LinkAnalysis(link=link, verdict=item.verdict))
            except Exception:
                logger.exception("update_callback_failed", index=index)
