"""
Poll-based delivery of AI refinements.

Each /analyze call gets a job; background AI work publishes (index,
analysis) pairs into the job's feed and the client polls with a cursor.
A job answers at most ``max_polls`` polls, then is forgotten. Finished jobs
are dropped once ``retention_s`` has passed.
"""
from __future__ import annotations

import time
import uuid
from typing import Callable

from .logger import get_logger
from .models import LinkAnalysis, UpdatesResponse, VerdictUpdate

logger = get_logger(__name__)


class UpdateFeed:
    def __init__(self, job_id: str, created_at: float) -> None:
        self.job_id = job_id
        self.created_at = created_at
        self.finished_at: float | None = None
        self.updates: list[VerdictUpdate] = []
        self.polls = 0

    @property
    def done(self) -> bool:
        return self.finished_at is not None

    def publish(self, index: int, analysis: LinkAnalysis) -> None:
        self.updates.append(VerdictUpdate(index=index, analysis=analysis))


class UpdateHub:
    def __init__(
        self,
        max_polls: int = 60,
        retention_s: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_polls = max_polls
        self.retention_s = retention_s
        self.clock = clock
        self._feeds: dict[str, UpdateFeed] = {}

    def __len__(self) -> int:
        return len(self._feeds)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._feeds

    def create(self, job_id: str | None = None) -> UpdateFeed:
        self._expire()
        feed = UpdateFeed(job_id or uuid.uuid4().hex, self.clock())
        self._feeds[feed.job_id] = feed
        return feed

    def discard(self, job_id: str) -> None:
        self._feeds.pop(job_id, None)

    def finish(self, feed: UpdateFeed) -> None:
        if feed.finished_at is None:
            feed.finished_at = self.clock()

    def _expire(self) -> None:
        now = self.clock()
        stale = [
            job_id
            for job_id, feed in self._feeds.items()
            if feed.finished_at is not None and now - feed.finished_at > self.retention_s
        ]
        for job_id in stale:
            del self._feeds[job_id]
        if stale:
            logger.debug("update_feeds_expired", count=len(stale))

    def poll(self, job_id: str, cursor: int = 0) -> UpdatesResponse | None:
        """New updates since ``cursor``, or None for an unknown or exhausted job."""
        self._expire()
        feed = self._feeds.get(job_id)
        if feed is None:
            return None

        feed.polls += 1
        remaining = max(0, self.max_polls - feed.polls)
        start = max(0, cursor)
        resp = UpdatesResponse(
            job_id=job_id,
            updates=feed.updates[start:],
            cursor=len(feed.updates),
            done=feed.done,
            polls_remaining=remaining,
        )
        if remaining == 0:
            del self._feeds[job_id]
            logger.info("update_feed_exhausted", job_id=job_id, polls=feed.polls)
        return resp
