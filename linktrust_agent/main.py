from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .ai_judge import AIJudge, AIResponseCache
from .analyzer import LinkAnalyzer
from .config import Settings, get_settings
from .external import ThreatAggregator
from .llm import ModelAvailability, build_runtime
from .logger import get_logger
from .models import (
    AnalyzeRequest,
    AnalyzeResponse,
    LinkCandidate,
    ModelHealth,
    SingleAnalyzeRequest,
    SingleAnalyzeResponse,
    UpdatesResponse,
)
from .store import VerdictStore
from .updates import UpdateHub

logger = get_logger(__name__)

MAX_HREF = 2048
MAX_TEXT = 500
MAX_SNIPPET = 500
MAX_DOMAIN = 255


@dataclass
class Services:
    settings: Settings
    store: VerdictStore
    analyzer: LinkAnalyzer
    availability: ModelAvailability
    hub: UpdateHub
    clients: tuple[httpx.AsyncClient, ...] = ()

    async def aclose(self) -> None:
        await self.analyzer.wait_idle()
        for client in self.clients:
            await client.aclose()
        self.store.dispose()


def build_services(settings: Settings) -> Services:
    store = VerdictStore.from_url(settings.database_url, ttl_s=settings.cache_ttl_s)

    provider_client = httpx.AsyncClient(timeout=settings.provider_timeout_s)
    # Page fetches and model calls are unbounded; probes pass their own timeouts.
    content_client = httpx.AsyncClient(timeout=None)

    runtime = build_runtime(settings, content_client)
    availability = ModelAvailability(runtime, interval_s=settings.model_check_interval_s)
    judge = AIJudge(
        runtime,
        availability,
        AIResponseCache(ttl_s=settings.ai_cache_ttl_s),
        http_client=content_client,
        user_agent=settings.user_agent,
    )
    analyzer = LinkAnalyzer(settings, store, ThreatAggregator.from_settings(settings, provider_client), judge)
    hub = UpdateHub(max_polls=settings.max_polls, retention_s=settings.job_retention_s)

    return Services(
        settings=settings,
        store=store,
        analyzer=analyzer,
        availability=availability,
        hub=hub,
        clients=(provider_client, content_client),
    )


def _clip_link(link: LinkCandidate) -> LinkCandidate:
    return link.model_copy(
        update={
            "href": link.href[:MAX_HREF],
            "text": (link.text or "")[:MAX_TEXT],
            "context_snippet": link.context_snippet[:MAX_SNIPPET] if link.context_snippet else link.context_snippet,
            "target_domain": (link.target_domain or "")[:MAX_DOMAIN],
        }
    )


def create_app(services: Services | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or build_services(get_settings())
        logger.info("linktrust_started", provider=app.state.services.settings.ai_provider)
        try:
            yield
        finally:
            if owned:
                await app.state.services.aclose()

    app = FastAPI(title="LinkTrust Agent", version="0.1.0", lifespan=lifespan)

    origins = services.settings.cors_origins if services is not None else get_settings().cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _services(request: Request) -> Services:
        return request.app.state.services

    async def _run(
        request: Request,
        links: list[LinkCandidate],
        domain: str,
        context: str,
        priority_url: str | None,
        user_id: str | None,
    ):
        svc = _services(request)
        clipped = [_clip_link(link) for link in links[: svc.settings.max_links]]
        feed = svc.hub.create()
        try:
            analyses = await svc.analyzer.analyze(
                clipped,
                (domain or "")[:MAX_DOMAIN],
                source_context=context,
                priority_url=priority_url,
                user_id=user_id or None,
                on_update=feed.publish,
                on_complete=lambda: svc.hub.finish(feed),
            )
        except ValueError as e:
            svc.hub.discard(feed.job_id)
            raise HTTPException(status_code=400, detail=str(e))
        return feed.job_id, analyses

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.get("/health/model", response_model=ModelHealth)
    async def model_health(request: Request):
        return await _services(request).availability.probe()

    @app.post("/analyze", response_model=AnalyzeResponse)
    async def analyze_endpoint(req: AnalyzeRequest, request: Request, x_user_id: str | None = Header(None)):
        job_id, analyses = await _run(
            request, req.links, req.domain, req.source_page_context, req.priority_url, x_user_id
        )
        return AnalyzeResponse(job_id=job_id, analyses=analyses)

    @app.post("/analyze/single", response_model=SingleAnalyzeResponse)
    async def analyze_single(req: SingleAnalyzeRequest, request: Request, x_user_id: str | None = Header(None)):
        job_id, analyses = await _run(
            request, [req.link], req.domain, req.source_page_context, req.link.href, x_user_id
        )
        return SingleAnalyzeResponse(job_id=job_id, analysis=analyses[0] if analyses else None)

    @app.get("/analyze/{job_id}/updates", response_model=UpdatesResponse)
    def analyze_updates(job_id: str, request: Request, cursor: int = 0):
        resp = _services(request).hub.poll(job_id, cursor)
        if resp is None:
            raise HTTPException(status_code=404, detail="Unknown job or no polls remaining")
        return resp

    return app


app = create_app()
