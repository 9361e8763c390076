import asyncio
from datetime import timedelta

import pytest

from weekly_orders.core.errors import StorageReadError
from weekly_orders.core.timeutil import utcnow
from weekly_orders.services.aggregator import empty_summary
from weekly_orders.services.cache import summary_key
from weekly_orders.services.feed import ChangeEvent, EventKind
from weekly_orders.services.menu_changes import RESET_NOTICE
from weekly_orders.services.reconciler import (
    ReconcilerRegistry,
    ReconcilerState,
    SequenceGuard,
    SummaryReconciler,
)
from weekly_orders.services.repository import OrderRepository

from conftest import MENU, TEST_WEEK


@pytest.fixture
async def published(menu_service):
    await menu_service.publish(MENU)


def test_sequence_guard_only_latest_wins():
    guard = SequenceGuard()
    first = guard.issue("summary")
    second = guard.issue("summary")
    assert not guard.is_latest("summary", first)
    assert guard.is_latest("summary", second)
    assert guard.current("other") == 0


async def test_first_load_aggregates_and_persists(registry, session_factory, published):
    reconciler = registry.get(TEST_WEEK)
    summary = await reconciler.get()

    assert reconciler.state == ReconcilerState.LIVE
    assert summary.total == 0
    async with session_factory() as session:
        row = await OrderRepository(session).get_summary(TEST_WEEK, "general")
    assert row is not None
    assert row.updated_by == "general"


async def test_stored_summary_is_loaded_as_is(registry, session_factory, published):
    stored = empty_summary(TEST_WEEK, {"Lunes": ["Milanesa"]})
    stored.day("Lunes").counts["Milanesa"] = 7
    async with session_factory() as session:
        await OrderRepository(session).save_summary(TEST_WEEK, "general", stored.to_dict(), "user2")

    summary = await registry.get(TEST_WEEK).get()
    assert summary.day("Lunes").counts["Milanesa"] == 7
    assert summary.updated_by == "user2"


async def test_record_changes_keep_the_summary_current(registry, order_service, published):
    reconciler = registry.get(TEST_WEEK)
    await reconciler.get()
    messages = []

    async def listener(message):
        messages.append(message)

    reconciler.subscribe(listener)

    await order_service.increment("user1", "Lunes", "Milanesa", amount=2)
    await order_service.increment("user2", "Lunes", "Milanesa")
    await order_service.increment("user3", "Viernes", "Pizza")

    summary = await reconciler.get()
    assert summary.day("Lunes").counts["Milanesa"] == 3
    assert summary.day("Viernes").counts["Pizza"] == 1
    assert messages[-1]["type"] == "summary"
    assert reconciler.pending is False


async def test_events_of_other_weeks_are_ignored(registry, order_service, published):
    reconciler = registry.get(TEST_WEEK)
    await reconciler.get()
    await order_service.increment("user1", "Lunes", "Milanesa", week_start="2024-03-11")
    assert (await reconciler.get()).total == 0


async def test_pushed_summary_from_another_process_is_applied(registry, published):
    reconciler = registry.get(TEST_WEEK)
    current = await reconciler.get()

    pushed = empty_summary(TEST_WEEK, {"Lunes": ["Milanesa"]})
    pushed.day("Lunes").counts["Milanesa"] = 4
    pushed.updated_at = current.updated_at + timedelta(seconds=1)
    event = ChangeEvent(kind=EventKind.SUMMARY, week_start=TEST_WEEK, payload=pushed.to_dict(), origin="other")

    await registry.dispatch(event)
    assert (await reconciler.get()).total == 4


async def test_older_push_is_rejected(registry, published):
    reconciler = registry.get(TEST_WEEK)
    current = await reconciler.get()

    older = empty_summary(TEST_WEEK, {"Lunes": ["Milanesa"]})
    older.day("Lunes").counts["Milanesa"] = 9
    older.updated_at = current.updated_at - timedelta(minutes=5)

    assert await reconciler.apply_push(older) is False
    assert (await reconciler.get()).total == 0


async def test_menu_reset_event_zeroes_and_notifies(registry, order_service, menu_service, published):
    reconciler = registry.get(TEST_WEEK)
    await order_service.increment("user1", "Lunes", "Milanesa")
    await reconciler.get()
    messages = []

    async def listener(message):
        messages.append(message)

    reconciler.subscribe(listener)
    await menu_service.publish(dict(MENU, MARTES=["Pastas", "Ñoquis"]))

    summary = await reconciler.get()
    assert summary.total == 0
    assert summary.day("Martes").counts == {"Pastas": 0, "Ñoquis": 0}
    reset = messages.index({"type": "menu_reset", "notice": RESET_NOTICE})
    assert messages[reset - 1]["type"] == "summary"
    # The announced menu triggers one more aggregation, against the new options
    assert messages[-1]["type"] == "summary"
    assert messages[-1]["summary"]["orders"][1]["counts"] == {"Pastas": 0, "Ñoquis": 0}


async def test_tick_refreshes_only_pending_after_interval(registry, order_service, published):
    reconciler = registry.get(TEST_WEEK)
    await reconciler.get()
    assert await reconciler.tick() is False

    reconciler.pending = True
    assert await reconciler.tick(reconciler.last_refresh) is False

    later = reconciler.last_refresh + timedelta(seconds=reconciler.refresh_interval + 1)
    assert await reconciler.tick(later) is True
    assert reconciler.pending is False
    assert reconciler.state == ReconcilerState.LIVE


async def test_degraded_load_serves_cached_summary(cache, feed, broken_session_factory):
    cached = empty_summary(TEST_WEEK, {"Lunes": ["Milanesa"]})
    cached.day("Lunes").counts["Milanesa"] = 2
    await cache.set(summary_key(TEST_WEEK), cached.to_dict())

    async def menu():
        return {"Lunes": ["Milanesa"]}

    reconciler = SummaryReconciler(TEST_WEEK, broken_session_factory, cache, feed, menu)
    summary = await reconciler.get()

    assert summary.total == 2
    assert reconciler.degraded is True
    assert reconciler.pending is True
    assert reconciler.state == ReconcilerState.STALE

    # The refresh keeps failing, the cached copy stays in place
    assert await reconciler.tick(utcnow() + timedelta(hours=1)) is False
    assert (await reconciler.get()).total == 2


async def test_load_without_database_or_cache_fails(cache, feed, broken_session_factory):
    async def menu():
        return {}

    reconciler = SummaryReconciler(TEST_WEEK, broken_session_factory, cache, feed, menu)
    with pytest.raises(StorageReadError):
        await reconciler.get()


def test_registry_keeps_a_bounded_number_of_weeks(session_factory, cache, feed):
    async def menu():
        return {}

    registry = ReconcilerRegistry(session_factory, cache, feed, menu, max_weeks=2)
    for week in ("2024-02-19", "2024-02-26", "2024-03-04"):
        registry.get(week)
    assert sorted(registry.reconcilers) == ["2024-02-26", "2024-03-04"]


def test_registry_drops_the_least_recently_used_week(session_factory, cache, feed):
    async def menu():
        return {}

    registry = ReconcilerRegistry(session_factory, cache, feed, menu, max_weeks=2)
    current = registry.get("2024-03-04")
    registry.get("2024-03-11")
    registry.get("2024-03-04")

    # Looking back at an old week keeps it, and the week in use stays
    old = registry.get("2024-02-19")
    assert list(registry.reconcilers) == ["2024-03-04", "2024-02-19"]
    assert registry.get("2024-02-19") is old
    assert registry.get("2024-03-04") is current


async def test_menu_event_from_another_process_reaggregates_every_week(registry, feed, published):
    current = registry.get(TEST_WEEK)
    previous = registry.get("2024-02-26")
    await current.get()
    await previous.get()
    pushes = len([e for e in feed.published if e.kind == EventKind.SUMMARY])

    menu = dict(await current.menu_provider(), Lunes=["Sopa"])
    event = ChangeEvent(kind=EventKind.MENU, week_start=TEST_WEEK, payload={"menu": menu, "menu_id": 9}, origin="other")
    await registry.dispatch(event)

    assert (await current.get()).day("Lunes").counts == {"Sopa": 0}
    assert (await previous.get()).day("Lunes").counts == {"Sopa": 0}
    # The publishing process persists; this one only recomputes
    assert len([e for e in feed.published if e.kind == EventKind.SUMMARY]) == pushes


async def test_menu_event_before_first_load_is_left_to_the_load(registry, published):
    reconciler = registry.get(TEST_WEEK)
    event = ChangeEvent(kind=EventKind.MENU, week_start=TEST_WEEK, payload={"menu": {"Lunes": ["Sopa"]}}, origin="other")
    await registry.dispatch(event)
    assert reconciler.summary is None
    assert reconciler.state == ReconcilerState.LOADING


# --- Overlapping updates ---

def hold_first_read(monkeypatch, stale_rows=None):
    """Block the first row read until released; later reads go through."""
    original = OrderRepository.list_orders
    fetched, release = asyncio.Event(), asyncio.Event()
    calls = []

    async def list_orders(self, week_start, user_name=None):
        calls.append(week_start)
        if len(calls) > 1:
            return await original(self, week_start, user_name)
        rows = stale_rows if stale_rows is not None else await original(self, week_start, user_name)
        fetched.set()
        await release.wait()
        return rows

    monkeypatch.setattr(OrderRepository, "list_orders", list_orders)
    return fetched, release


async def add_row(session_factory, day="Lunes", option="Milanesa", user="user1"):
    async with session_factory() as session:
        await OrderRepository(session).adjust_count(TEST_WEEK, day, option, user, 1)


async def test_slow_recomputation_does_not_overwrite_a_newer_one(
    registry, session_factory, monkeypatch, published
):
    reconciler = registry.get(TEST_WEEK)
    await reconciler.get()
    await add_row(session_factory)

    # The slow one read the rows before the new one landed
    fetched, release = hold_first_read(monkeypatch, stale_rows=[])
    slow = asyncio.create_task(reconciler.recompute(persist=False, reason="slow"))
    await fetched.wait()

    fast = await reconciler.recompute(persist=False, reason="fast")
    assert fast.total == 1

    release.set()
    result = await slow
    assert result is reconciler.summary
    assert reconciler.summary.total == 1
    assert reconciler.state == ReconcilerState.LIVE


async def test_push_during_recomputation_wins_and_keeps_pending(
    registry, session_factory, monkeypatch, published
):
    reconciler = registry.get(TEST_WEEK)
    await reconciler.get()
    await add_row(session_factory)

    fetched, release = hold_first_read(monkeypatch)
    reconciler.pending = True
    running = asyncio.create_task(reconciler.recompute(persist=False))
    await fetched.wait()

    pushed = empty_summary(TEST_WEEK, {"Lunes": ["Milanesa"]})
    pushed.day("Lunes").counts["Milanesa"] = 4
    pushed.updated_at = utcnow() + timedelta(minutes=1)
    assert await reconciler.apply_push(pushed) is True

    release.set()
    await running
    assert reconciler.summary.total == 4
    assert reconciler.pending is True


async def test_menu_reset_during_recomputation_wins(registry, session_factory, monkeypatch, published):
    reconciler = registry.get(TEST_WEEK)
    await reconciler.get()
    await add_row(session_factory)

    fetched, release = hold_first_read(monkeypatch)
    running = asyncio.create_task(reconciler.recompute(persist=False))
    await fetched.wait()

    zeroed = empty_summary(TEST_WEEK, {"Lunes": ["Milanesa"]})
    event = ChangeEvent(
        kind=EventKind.MENU_RESET,
        week_start=TEST_WEEK,
        payload={"notice": RESET_NOTICE, "summary": zeroed.to_dict(), "deleted": 1},
        origin="other",
    )
    await registry.dispatch(event)

    release.set()
    await running
    assert reconciler.summary.total == 0
    assert reconciler.pending is False
