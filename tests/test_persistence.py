"""Store contract tests, run against the in-memory and JSON backends."""

import pytest

from turnkeeper.deltas import stamp_events
from turnkeeper.persistence import (
    InMemoryWorldStore,
    JsonWorldStore,
    StoreUnavailableError,
)
from turnkeeper.schemas import (
    CommitResult,
    EntityChange,
    PendingAction,
    PromptDescriptor,
    ProposedEvent,
    StateDelta,
)


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryWorldStore()
    return JsonWorldStore(tmp_path / "worlds")


def _commit_args(snapshot, turn_id, *, hits=1):
    delta = StateDelta(
        turn_id=turn_id,
        entity_changes=[EntityChange(entity_id="goblin", op="increment", attribute="hp", value=-1)],
        events=[ProposedEvent(type="CombatTurn", summary=f"hit {i}") for i in range(hits)],
    )
    events = stamp_events(snapshot, delta, turn_id=turn_id)
    result = CommitResult(
        turn_id=turn_id, status="committed", events=events, state_version=snapshot.version + 1
    )
    return delta, events, result


@pytest.mark.asyncio
async def test_seed_and_read_returns_copies(store, snapshot):
    await store.initialize()
    await store.seed_snapshot(snapshot)

    first = await store.read_snapshot("s1")
    first.entities["goblin"].attributes["hp"] = 999

    second = await store.read_snapshot("s1")
    assert second.entities["goblin"].attributes["hp"] == 6
    assert await store.read_snapshot("nobody") is None


@pytest.mark.asyncio
async def test_append_commit_applies_everything_once(store, snapshot):
    await store.initialize()
    await store.seed_snapshot(snapshot)
    delta, events, result = _commit_args(snapshot, "t1", hits=2)

    status = await store.append_commit("s1", "t1", delta, events, base_version=0, result=result)
    assert status == "ok"

    world = await store.read_snapshot("s1")
    assert world.version == 1
    assert world.last_sequence == 2
    assert world.entities["goblin"].attributes["hp"] == 5
    assert [event.sequence for event in await store.list_events("s1")] == [1, 2]
    assert await store.has_applied("t1")
    assert (await store.get_commit_result("t1")).state_version == 1

    again = await store.append_commit("s1", "t1", delta, events, base_version=1, result=result)
    assert again == "duplicate"
    assert (await store.read_snapshot("s1")).version == 1
    assert len(await store.list_events("s1")) == 2


@pytest.mark.asyncio
async def test_stale_base_version_is_a_conflict(store, snapshot):
    await store.initialize()
    await store.seed_snapshot(snapshot)
    delta, events, result = _commit_args(snapshot, "t1")
    await store.append_commit("s1", "t1", delta, events, base_version=0, result=result)

    stale_delta, stale_events, stale_result = _commit_args(snapshot, "t2")
    status = await store.append_commit(
        "s1", "t2", stale_delta, stale_events, base_version=0, result=stale_result
    )

    assert status == "conflict"
    assert not await store.has_applied("t2")
    assert (await store.read_snapshot("s1")).entities["goblin"].attributes["hp"] == 5


@pytest.mark.asyncio
async def test_unknown_session_commit_raises(store, snapshot):
    await store.initialize()
    delta, events, result = _commit_args(snapshot, "t1")
    with pytest.raises(StoreUnavailableError):
        await store.append_commit("s1", "t1", delta, events, base_version=0, result=result)


@pytest.mark.asyncio
async def test_list_events_window(store, snapshot):
    await store.initialize()
    await store.seed_snapshot(snapshot)
    delta, events, result = _commit_args(snapshot, "t1", hits=5)
    await store.append_commit("s1", "t1", delta, events, base_version=0, result=result)

    assert [e.sequence for e in await store.list_events("s1", limit=2)] == [4, 5]
    assert [e.sequence for e in await store.list_events("s1", since_sequence=3)] == [4, 5]
    assert await store.list_events("s1", limit=0) == []
    assert await store.list_events("other") == []


@pytest.mark.asyncio
async def test_pending_action_lifecycle(store, snapshot):
    await store.initialize()
    await store.seed_snapshot(snapshot)
    action = PendingAction.create(
        turn_id="t1",
        session_id="s1",
        requested_by="exploration",
        prompt=PromptDescriptor(type="dice_roll", data={"formula": "d20+DEX", "dc": 12}),
        original_input="I pick the lock",
        ttl_seconds=60,
    )

    await store.save_pending_action(action)
    loaded = await store.get_pending_action("s1")
    assert loaded.turn_id == "t1"
    assert loaded.prompt.data["dc"] == 12

    assert not await store.delete_pending_action("s1", "t-other")
    assert await store.get_pending_action("s1") is not None
    assert await store.delete_pending_action("s1", "t1")
    assert await store.get_pending_action("s1") is None


@pytest.mark.asyncio
async def test_json_store_survives_restart(tmp_path, snapshot):
    path = tmp_path / "worlds"
    store = JsonWorldStore(path)
    await store.initialize()
    await store.seed_snapshot(snapshot)
    delta, events, result = _commit_args(snapshot, "t1")
    await store.append_commit("s1", "t1", delta, events, base_version=0, result=result)

    reopened = JsonWorldStore(path)
    await reopened.initialize()

    assert await reopened.has_applied("t1")
    assert (await reopened.read_snapshot("s1")).version == 1
    assert (await reopened.list_events("s1"))[0].event_id == "t1-001"
    assert not list(path.glob("*/*.tmp"))


@pytest.mark.asyncio
async def test_json_store_delete_session(tmp_path, snapshot):
    store = JsonWorldStore(tmp_path)
    await store.initialize()
    await store.seed_snapshot(snapshot)
    delta, events, result = _commit_args(snapshot, "t1")
    await store.append_commit("s1", "t1", delta, events, base_version=0, result=result)

    await store.delete_session("s1")

    assert await store.read_snapshot("s1") is None
    assert not await store.has_applied("t1")
