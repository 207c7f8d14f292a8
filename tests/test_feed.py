"""
tests/test_feed.py — score.updated fan-out hub
===============================================

Async paths are driven with ``asyncio.run`` (no pytest-asyncio).
"""

from __future__ import annotations

import asyncio
import threading
from datetime import UTC, datetime

from scorebank.engine.feed import ScoreFeed, ScoreUpdate

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def make_update(user_id: str = "u1", version: int = 1) -> ScoreUpdate:
    return ScoreUpdate(user_id, "reputation", 10.0, version, "earned", T0)


def test_to_dict_from_dict():
    data = make_update().to_dict()
    assert data["type"] == "score.updated"
    assert ScoreUpdate.from_dict(data) == make_update()


def test_publish_from_worker_thread_reaches_subscriber():
    feed = ScoreFeed()

    async def main():
        sub = feed.subscribe(asyncio.get_running_loop(), ["u1"])
        worker = threading.Thread(target=feed.publish, args=(make_update(),))
        worker.start()
        got = await asyncio.wait_for(sub.get(), timeout=2)
        worker.join()
        feed.unsubscribe(sub)
        return got

    assert asyncio.run(main()).user_id == "u1"
    assert feed.subscriber_count == 0


def test_filtered_subscription_skips_other_users():
    feed = ScoreFeed()

    async def main():
        sub = feed.subscribe(asyncio.get_running_loop(), ["u1"])
        feed.publish(make_update("u2"))
        feed.publish(make_update("u1"))
        await asyncio.sleep(0)
        return [sub.queue.get_nowait().user_id for _ in range(sub.queue.qsize())]

    assert asyncio.run(main()) == ["u1"]


def test_slow_consumer_drops_oldest():
    feed = ScoreFeed(queue_size=2)

    async def main():
        sub = feed.subscribe(asyncio.get_running_loop())
        for version in (1, 2, 3):
            feed.publish(make_update(version=version))
        await asyncio.sleep(0)
        versions = [sub.queue.get_nowait().version for _ in range(sub.queue.qsize())]
        return versions, sub.dropped

    versions, dropped = asyncio.run(main())
    assert versions == [2, 3]
    assert dropped == 1


def test_listener_failure_does_not_propagate():
    feed = ScoreFeed()
    seen = []

    def broken(update):
        raise RuntimeError("boom")

    feed.add_listener(broken)
    feed.add_listener(seen.append)
    feed.publish(make_update())
    assert len(seen) == 1


def test_deliver_skips_listeners():
    feed = ScoreFeed()
    seen = []
    feed.add_listener(seen.append)
    feed.deliver(make_update())
    assert seen == []


def test_closed_loop_subscription_removed():
    feed = ScoreFeed()
    loop = asyncio.new_event_loop()
    feed.subscribe(loop)
    loop.close()
    feed.publish(make_update())
    assert feed.subscriber_count == 0
