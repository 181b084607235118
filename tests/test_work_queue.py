"""
Per-batch AI work queue ordering and draining.
"""

import asyncio

import pytest

from linktrust_agent.models import AggregatedExternalResult, HeuristicResult, TrustVerdict
from linktrust_agent.work_queue import AIWorkItem, AIWorkQueue

from conftest import make_link


def _item(key):
    link = make_link(key)
    return AIWorkItem(
        key=key,
        link=link,
        heuristics=HeuristicResult(),
        external=AggregatedExternalResult(safe=True, confidence=0.5),
        verdict=TrustVerdict(trust_score=0.5, category="SUSPICIOUS"),
        positions=[(0, link)],
    )


def test_move_to_front():
    queue = AIWorkQueue([_item("https://a.net/"), _item("https://b.net/"), _item("https://c.net/")])
    assert queue.move_to_front("https://c.net/")
    assert queue.keys() == ["https://c.net/", "https://a.net/", "https://b.net/"]
    assert queue.move_to_front("https://c.net/")
    assert not queue.move_to_front("https://missing.net/")
    assert len(queue) == 3


def test_drain_runs_in_order_and_survives_failures():
    queue = AIWorkQueue([_item("https://a.net/"), _item("https://b.net/"), _item("https://c.net/")])
    seen = []

    async def handler(item):
        seen.append(item.key)
        if item.key == "https://b.net/":
            raise RuntimeError("model crashed")

    processed = asyncio.run(queue.drain(handler))
    assert processed == 3
    assert seen == ["https://a.net/", "https://b.net/", "https://c.net/"]
    assert len(queue) == 0
    assert queue.pop() is None


def test_single_consumer():
    queue = AIWorkQueue([_item("https://a.net/"), _item("https://b.net/")])

    async def slow(item):
        await asyncio.sleep(0.01)

    async def run():
        first = asyncio.create_task(queue.drain(slow))
        await asyncio.sleep(0)
        with pytest.raises(RuntimeError):
            await queue.drain(slow)
        return await first

    assert asyncio.run(run()) == 2


def test_items_pushed_while_draining_are_processed():
    queue = AIWorkQueue([_item("https://a.net/")])

    async def handler(item):
        if item.key == "https://a.net/":
            queue.push(_item("https://late.net/"))

    assert asyncio.run(queue.drain(handler)) == 2
