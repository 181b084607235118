from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable

from .logger import get_logger
from .models import AggregatedExternalResult, HeuristicResult, LinkCandidate, TrustVerdict

logger = get_logger(__name__)


@dataclass
class AIWorkItem:
    key: str
    link: LinkCandidate
    heuristics: HeuristicResult
    external: AggregatedExternalResult
    verdict: TrustVerdict
    # (original batch index, link at that index); every position shares `verdict`
    positions: list[tuple[int, LinkCandidate]] = field(default_factory=list)


class AIWorkQueue:
    """
    Ordered AI work for one batch, drained by a single consumer.

    Items run strictly one after another; ``move_to_front`` puts the link the
    user is about to click ahead of everything else.
    """

    def __init__(self, items: list[AIWorkItem] | None = None) -> None:
        self._items: list[AIWorkItem] = list(items or [])
        self._draining = False

    def __len__(self) -> int:
        return len(self._items)

    def keys(self) -> list[str]:
        return [item.key for item in self._items]

    def push(self, item: AIWorkItem) -> None:
        self._items.append(item)

    def move_to_front(self, key: str) -> bool:
        for i, item in enumerate(self._items):
            if item.key == key:
                if i:
                    self._items.insert(0, self._items.pop(i))
                return True
        return False

    def pop(self) -> AIWorkItem | None:
        return self._items.pop(0) if self._items else None

    async def drain(self, handler: Callable[[AIWorkItem], Awaitable[None]]) -> int:
        if self._draining:
            raise RuntimeError("queue already has a consumer")
        self._draining = True
        done = 0
        try:
            while self._items:
                item = self._items.pop(0)
                try:
                    await handler(item)
                except Exception:
                    logger.exception("ai_item_failed", url=item.key)
                done += 1
        finally:
            self._draining = False
        return done
