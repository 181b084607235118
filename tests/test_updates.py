"""
Poll-based update feeds: cursors, poll budget and retention.
"""

from linktrust_agent.models import LinkAnalysis, TrustVerdict
from linktrust_agent.updates import UpdateHub

from conftest import FakeClock, make_link


def _analysis(score=0.8):
    return LinkAnalysis(
        link=make_link("https://acme-widgets.net/item"),
        verdict=TrustVerdict(trust_score=score, category="SAFE"),
    )


def test_cursor_returns_only_new_updates():
    hub = UpdateHub()
    feed = hub.create()
    feed.publish(0, _analysis())
    feed.publish(2, _analysis())

    first = hub.poll(feed.job_id, 0)
    assert [u.index for u in first.updates] == [0, 2]
    assert first.cursor == 2
    assert first.done is False

    feed.publish(1, _analysis())
    hub.finish(feed)
    second = hub.poll(feed.job_id, first.cursor)
    assert [u.index for u in second.updates] == [1]
    assert second.cursor == 3
    assert second.done is True


def test_unknown_job():
    assert UpdateHub().poll("nope", 0) is None


def test_poll_budget_is_exhausted():
    hub = UpdateHub(max_polls=3)
    feed = hub.create("job-1")

    remaining = [hub.poll("job-1", 0).polls_remaining for _ in range(3)]
    assert remaining == [2, 1, 0]
    assert hub.poll("job-1", 0) is None
    assert "job-1" not in hub
    assert feed.polls == 3


def test_finished_jobs_expire_after_retention():
    clock = FakeClock()
    hub = UpdateHub(retention_s=600, clock=clock)
    done = hub.create("done")
    hub.create("running")
    hub.finish(done)

    clock.advance(601)
    assert hub.poll("done", 0) is None
    assert hub.poll("running", 0) is not None
    assert len(hub) == 1


def test_discard():
    hub = UpdateHub()
    feed = hub.create()
    hub.discard(feed.job_id)
    assert feed.job_id not in hub


def test_response_serializes_camel_case():
    hub = UpdateHub()
    feed = hub.create("job-2")
    feed.publish(0, _analysis(0.75))
    body = hub.poll("job-2", 0).model_dump(by_alias=True)
    assert set(body) == {"jobId", "updates", "cursor", "done", "pollsRemaining"}
    assert body["updates"][0]["analysis"]["verdict"]["trustScore"] == 0.75
