"""
Durable verdict cache backed by SQLAlchemy.

One row per normalized URL in ``link_scans``. A row is served only while
``now - created_at <= ttl``; older rows are ignored on read and overwritten
by the next write for the same URL. Writes for a URL are serialized through
a KeyedLock, and every blocking database call runs in a worker thread.
"""
from __future__ import annotations

import asyncio
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator

from sqlalchemy import JSON, Column, Float, Integer, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .locks import KeyedLock
from .logger import get_logger
from .models import AggregatedExternalResult, AIVerdict, TrustVerdict
from .urls import normalize_url

logger = get_logger(__name__)

Base = declarative_base()

DEFAULT_TTL_S = 24 * 3600


class LinkScan(Base):
    __tablename__ = "link_scans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(String(2048), unique=True, nullable=False, index=True)
    domain = Column(String(255), nullable=True, index=True)
    user_id = Column(String(128), nullable=True)
    link_text = Column(String(500), nullable=True)
    detected_issues = Column(JSON, nullable=False, default=list)
    trust_score = Column(Float, nullable=False)
    category = Column(String(16), nullable=False)
    ai_summary = Column(Text, nullable=True)
    ai_analysis = Column(JSON, nullable=True)  # raw AIVerdict, camelCase keys
    external_checks = Column(JSON, nullable=True)
    recommendation = Column(String(32), nullable=True)
    risk_tags = Column(JSON, nullable=True)
    confidence = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, index=True)  # Unix seconds
    updated_at = Column(Float, nullable=False)

    def to_verdict(self) -> TrustVerdict:
        return TrustVerdict(
            trust_score=max(0.0, min(1.0, float(self.trust_score))),
            category=self.category,
            issues=list(self.detected_issues or []),
            ai_summary=self.ai_summary,
            recommendation=self.recommendation,
            risk_tags=list(self.risk_tags) if self.risk_tags is not None else None,
            confidence=self.confidence,
        )


def create_store_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create tables if missing. Safe to call on every startup."""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("verdict_store_init_db", url=str(engine.url).split("?")[0].split("//")[-1])
    except Exception as e:
        logger.exception("verdict_store_init_db_failed", error=str(e))
        raise


def _fields_for(
    verdict: TrustVerdict,
    link_text: str | None,
    domain: str | None,
    user_id: str | None,
    external: AggregatedExternalResult | None,
    ai: AIVerdict | None,
) -> dict[str, Any]:
    return {
        "domain": domain,
        "user_id": user_id,
        "link_text": (link_text or "")[:500] or None,
        "detected_issues": list(verdict.issues),
        "trust_score": verdict.trust_score,
        "category": verdict.category,
        "ai_summary": verdict.ai_summary,
        "ai_analysis": ai.model_dump(by_alias=True) if ai is not None else None,
        "external_checks": external.model_dump(by_alias=True) if external is not None else None,
        "recommendation": verdict.recommendation,
        "risk_tags": list(verdict.risk_tags) if verdict.risk_tags is not None else None,
        "confidence": verdict.confidence,
    }


# Always taken from the newest write, even when it is None.
_REQUIRED_FIELDS = ("detected_issues", "trust_score", "category", "link_text")


def _improves(row: LinkScan, fields: dict[str, Any]) -> bool:
    """A live row is only touched by AI output, a first summary or higher confidence."""
    if fields["ai_analysis"] is not None:
        return True
    if fields["ai_summary"] and not row.ai_summary:
        return True
    return (fields["confidence"] or 0.0) > (row.confidence or 0.0)


class VerdictStore:
    def __init__(
        self,
        engine: Engine,
        ttl_s: float = DEFAULT_TTL_S,
        clock: Callable[[], float] = time.time,
        locks: KeyedLock | None = None,
    ) -> None:
        self.engine = engine
        self.ttl_s = ttl_s
        self.clock = clock
        self.locks = locks or KeyedLock()
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "VerdictStore":
        engine = create_store_engine(url)
        init_db(engine)
        return cls(engine, **kwargs)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        """Commits on success, rolls back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _is_fresh(self, row: LinkScan, now: float) -> bool:
        return now - row.created_at <= self.ttl_s

    # reads

    def _get_many_sync(self, keys: list[str]) -> dict[str, TrustVerdict]:
        if not keys:
            return {}
        now = self.clock()
        with self._session_scope() as session:
            rows = session.query(LinkScan).filter(LinkScan.url.in_(keys)).all()
            return {row.url: row.to_verdict() for row in rows if self._is_fresh(row, now)}

    async def get_many(self, urls: Iterable[str]) -> dict[str, TrustVerdict]:
        """Live verdicts for the given URLs, keyed by normalized URL. Misses are absent."""
        keys = sorted({normalize_url(u) for u in urls if u})
        return await asyncio.to_thread(self._get_many_sync, keys)

    async def get(self, url: str) -> TrustVerdict | None:
        key = normalize_url(url)
        found = await self.get_many([key])
        return found.get(key)

    # writes

    def _upsert_sync(self, key: str, fields: dict[str, Any]) -> None:
        now = self.clock()
        with self._session_scope() as session:
            row = session.query(LinkScan).filter(LinkScan.url == key).first()
            if row is None:
                session.add(LinkScan(url=key, created_at=now, updated_at=now, **fields))
                return

            if not self._is_fresh(row, now):
                for name, value in fields.items():
                    setattr(row, name, value)
                row.created_at = now
                row.updated_at = now
                return

            if not _improves(row, fields):
                return
            for name, value in fields.items():
                if name in _REQUIRED_FIELDS or value is not None:
                    setattr(row, name, value)
            row.updated_at = now

    async def upsert(
        self,
        url: str,
        verdict: TrustVerdict,
        *,
        link_text: str | None = None,
        domain: str | None = None,
        user_id: str | None = None,
        external: AggregatedExternalResult | None = None,
        ai: AIVerdict | None = None,
    ) -> None:
        """
        Insert or update the row for ``url``.

        A live row is only updated when the write brings AI output, a summary
        the row lacks, or higher confidence; optional fields are then merged
        so an AI-less write keeps the stored summary. A stale row is replaced
        wholesale and becomes the new live entry.
        """
        key = normalize_url(url)
        fields = _fields_for(verdict, link_text, domain, user_id, external, ai)
        async with self.locks.hold(key):
            try:
                await asyncio.to_thread(self._upsert_sync, key, fields)
            except IntegrityError:
                # Another process inserted the row first; retry as an update.
                await asyncio.to_thread(self._upsert_sync, key, fields)
        logger.debug("verdict_stored", url=key, category=verdict.category)

    def _purge_stale_sync(self) -> int:
        cutoff = self.clock() - self.ttl_s
        with self._session_scope() as session:
            return session.query(LinkScan).filter(LinkScan.created_at < cutoff).delete(synchronize_session=False)

    async def purge_stale(self) -> int:
        removed = await asyncio.to_thread(self._purge_stale_sync)
        if removed:
            logger.info("verdict_store_purged", removed=removed)
        return removed

    def count(self, url: str | None = None) -> int:
        with self._session_scope() as session:
            q = session.query(LinkScan)
            if url is not None:
                q = q.filter(LinkScan.url == normalize_url(url))
            return q.count()
