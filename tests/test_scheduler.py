import asyncio

import pytest

from conftest import DAY, FakeNotifier
from forum_exchange.lifecycle import LifecycleCoordinator
from forum_exchange.models import GatewayError
from forum_exchange.scheduler import AutoBumpScheduler

pytestmark = pytest.mark.asyncio


def make_scheduler(db, gateway, notifier=None, **kwargs):
    coordinator = LifecycleCoordinator(db, gateway)
    kwargs.setdefault("days_inactive", 7)
    kwargs.setdefault("max_bumps", 3)
    return AutoBumpScheduler(db, coordinator, gateway, notifier=notifier, **kwargs), coordinator


async def publish(coordinator, title="Kettle"):
    result = await coordinator.create_post(
        forum_id=500, author_id=10, title=title, description="", category="home"
    )
    return result.post


async def test_sweep_bumps_stale_posts_only(db, gateway, clock):
    scheduler, coordinator = make_scheduler(db, gateway)
    stale = await publish(coordinator, title="Old kettle")
    clock.advance(8 * DAY)
    fresh = await publish(coordinator, title="New kettle")

    report = await scheduler.run_sweep()
    assert report.bumped == [stale.thread_id]
    assert (await db.get_post(stale.thread_id)).bump_count == 1
    assert (await db.get_post(fresh.thread_id)).bump_count == 0
    assert gateway.threads[stale.thread_id].sent
    assert scheduler.stats.total_checks == 1
    assert scheduler.stats.total_bumps == 1
    assert scheduler.stats.last_check == clock.now

    again = await scheduler.run_sweep()
    assert again.bumped == []


async def test_concurrent_sweeps_bump_once(db, gateway, clock):
    scheduler, coordinator = make_scheduler(db, gateway)
    post = await publish(coordinator)
    clock.advance(8 * DAY)

    first, second = await asyncio.gather(scheduler.run_sweep(), scheduler.run_sweep())
    assert len(first.bumped) + len(second.bumped) == 1
    assert (await db.get_post(post.thread_id)).bump_count == 1
    assert len(gateway.threads[post.thread_id].sent) == 1


async def test_escalates_after_max_bumps(db, gateway, clock):
    notifier = FakeNotifier()
    scheduler, coordinator = make_scheduler(db, gateway, notifier, max_bumps=1)
    post = await publish(coordinator)
    await db.increment_bump(post.thread_id)
    clock.advance(8 * DAY)

    report = await scheduler.run_sweep()
    assert report.escalated == [post.thread_id]
    assert report.bumped == []
    stored = await db.get_post(post.thread_id)
    assert stored.bump_count == 1
    assert stored.last_activity == clock.now
    assert notifier.sent[0][0] == 10


async def test_failed_escalation_message_is_not_fatal(db, gateway, clock):
    notifier = FakeNotifier(deliver=False)
    scheduler, coordinator = make_scheduler(db, gateway, notifier, max_bumps=0)
    post = await publish(coordinator)
    clock.advance(8 * DAY)

    report = await scheduler.run_sweep()
    assert report.escalated == [post.thread_id]


async def test_missing_and_archived_threads_are_retired(db, gateway, clock):
    scheduler, coordinator = make_scheduler(db, gateway)
    deleted = await publish(coordinator, title="Gone kettle")
    archived = await publish(coordinator, title="Archived kettle")
    del gateway.threads[deleted.thread_id]
    gateway.threads[archived.thread_id].archived = True
    clock.advance(8 * DAY)

    report = await scheduler.run_sweep()
    assert sorted(report.deactivated) == sorted([deleted.thread_id, archived.thread_id])
    for thread_id in (deleted.thread_id, archived.thread_id):
        post = await db.get_post(thread_id)
        assert not post.active
        assert await db.get_exchange_for_thread(thread_id) is None


async def test_gateway_hiccup_skips_post(db, gateway, clock):
    scheduler, coordinator = make_scheduler(db, gateway)
    post = await publish(coordinator)
    gateway.failures["is_thread_archived"] = GatewayError("rate limited")
    clock.advance(8 * DAY)

    report = await scheduler.run_sweep()
    assert report.skipped == [post.thread_id]
    stored = await db.get_post(post.thread_id)
    assert stored.active
    assert stored.bump_count == 0


async def test_bump_notice_failure_keeps_bump(db, gateway, clock):
    scheduler, coordinator = make_scheduler(db, gateway)
    post = await publish(coordinator)
    gateway.failures["send_message"] = GatewayError("rate limited")
    clock.advance(8 * DAY)

    report = await scheduler.run_sweep()
    assert report.bumped == [post.thread_id]
    assert (await db.get_post(post.thread_id)).bump_count == 1
