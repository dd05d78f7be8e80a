# backend/tests/unit/test_session_service.py
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from flowbot.models.conversation import SessionState, utcnow
from flowbot.services.session_service import SessionStore, DEFAULT_TTL


def expire(session):
    session.expires_at = utcnow() - timedelta(seconds=1)


@pytest.mark.asyncio
async def test_start_creates_session_and_fires_start_hook():
    on_start = AsyncMock()
    store = SessionStore(on_start=on_start)

    session = await store.start(1, 10, 0, "register", "name")

    assert session.flow_id == "register"
    assert session.step_id == "name"
    assert session.ttl == DEFAULT_TTL
    assert await store.get(1, 10) is session
    on_start.assert_awaited_once_with(session)


@pytest.mark.asyncio
async def test_start_uses_default_ttl_for_non_positive_ttl():
    store = SessionStore(default_ttl=timedelta(minutes=5))
    session = await store.start(1, 10, 0, "f", "s", ttl=timedelta(0))
    assert session.ttl == timedelta(minutes=5)

    custom = await store.start(2, 10, 0, "f", "s", ttl=timedelta(seconds=90))
    assert custom.ttl == timedelta(seconds=90)


@pytest.mark.asyncio
async def test_start_replaces_existing_session_after_end_hook_completes():
    """The new session must not be visible until the old session's end hook has run."""
    store = SessionStore()
    seen_during_end = []

    async def on_end(old):
        seen_during_end.append(await store.get(1, 10))

    store.on_end = on_end
    old = await store.start(1, 10, 0, "f", "a")
    new = await store.start(1, 10, 0, "f", "b")

    assert seen_during_end == [None]
    assert old.state == SessionState.CANCELLED
    assert await store.get(1, 10) is new


@pytest.mark.asyncio
async def test_get_returns_none_for_expired_session_and_ends_it_once():
    on_end = AsyncMock()
    store = SessionStore(on_end=on_end)
    session = await store.start(1, 10, 0, "f", "s")
    expire(session)

    results = await asyncio.gather(*(store.get(1, 10) for _ in range(5)))

    assert results == [None] * 5
    on_end.assert_awaited_once_with(session)
    assert await store.count() == 0


@pytest.mark.asyncio
async def test_end_removes_session_and_fires_hook_once():
    on_end = AsyncMock()
    store = SessionStore(on_end=on_end)
    session = await store.start(1, 10, 0, "f", "s")

    assert await store.end(1, 10) is session
    assert await store.end(1, 10) is None
    assert session.state == SessionState.COMPLETED
    on_end.assert_awaited_once_with(session)


@pytest.mark.asyncio
async def test_end_without_session_is_noop():
    on_end = AsyncMock()
    store = SessionStore(on_end=on_end)
    assert await store.end(99, 99) is None
    on_end.assert_not_awaited()


@pytest.mark.asyncio
async def test_change_step_fires_step_change_hook():
    on_step_change = AsyncMock()
    store = SessionStore(on_step_change=on_step_change)
    session = await store.start(1, 10, 0, "f", "a")

    moved = await store.change_step(1, 10, "b")

    assert moved is session
    assert session.step_id == "b"
    on_step_change.assert_awaited_once_with(session, "a", "b")


@pytest.mark.asyncio
async def test_change_step_without_session_is_noop():
    on_step_change = AsyncMock()
    store = SessionStore(on_step_change=on_step_change)
    assert await store.change_step(1, 10, "b") is None
    on_step_change.assert_not_awaited()


@pytest.mark.asyncio
async def test_cleanup_removes_only_expired_sessions():
    on_end = AsyncMock()
    store = SessionStore(on_end=on_end)
    first = await store.start(1, 10, 0, "f", "s")
    second = await store.start(2, 10, 0, "f", "s")
    live = await store.start(3, 10, 0, "f", "s")
    expire(first)
    expire(second)

    removed = await store.cleanup()

    assert removed == 2
    assert on_end.await_count == 2
    assert await store.count() == 1
    assert await store.get(3, 10) is live


@pytest.mark.asyncio
async def test_sessions_are_keyed_by_user_and_chat():
    store = SessionStore()
    a = await store.start(1, 10, 0, "f", "s")
    b = await store.start(1, 20, 0, "f", "s")
    c = await store.start(2, 10, 0, "f", "s")

    assert await store.get(1, 10) is a
    assert await store.get(1, 20) is b
    assert await store.get(2, 10) is c
    assert await store.count() == 3


@pytest.mark.asyncio
async def test_hook_errors_are_logged_not_raised():
    store = SessionStore(on_start=AsyncMock(side_effect=RuntimeError("boom")),
                         on_end=AsyncMock(side_effect=RuntimeError("boom")))
    session = await store.start(1, 10, 0, "f", "s")
    assert await store.end(1, 10) is session


@pytest.mark.asyncio
async def test_run_cleanup_sweeps_until_stopped():
    store = SessionStore()
    session = await store.start(1, 10, 0, "f", "s")
    expire(session)
    stop = asyncio.Event()

    task = asyncio.create_task(store.run_cleanup(stop, interval=0.01))
    for _ in range(100):
        if await store.count() == 0:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert await store.count() == 0


@pytest.mark.asyncio
async def test_serialize_runs_events_for_one_conversation_in_order():
    store = SessionStore()
    order = []

    async def handle(tag, delay):
        async with store.serialize(1, 10):
            order.append(f"{tag}-in")
            await asyncio.sleep(delay)
            order.append(f"{tag}-out")

    await asyncio.gather(handle("first", 0.02), handle("second", 0))

    assert order == ["first-in", "first-out", "second-in", "second-out"]
