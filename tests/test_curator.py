from datetime import datetime, timezone

import pytest

from turnkeeper.curator import MemoryCurator
from turnkeeper.retrieval import InMemoryRetrievalIndex
from turnkeeper.schemas import Event

_sequence = 0


def _event(event_type, summary="", *, refs=(), **payload):
    global _sequence
    _sequence += 1
    return Event(
        event_id=f"t{_sequence}-001",
        sequence=_sequence,
        session_id="s1",
        turn_id=f"t{_sequence}",
        type=event_type,
        summary=summary,
        entity_refs=list(refs),
        payload=payload,
        timestamp=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


class FlakyIndex(InMemoryRetrievalIndex):
    def __init__(self):
        super().__init__()
        self.down = True

    async def upsert(self, fact):
        if self.down:
            raise ConnectionError("vector store offline")
        await super().upsert(fact)


@pytest.mark.asyncio
async def test_only_durable_events_become_cited_facts():
    index = InMemoryRetrievalIndex()
    curator = MemoryCurator(index)
    defeated = _event("EntityDefeated", "Goblin is defeated", refs=["goblin"], fact="The goblin was defeated.")
    swing = _event("CombatTurn", "Player hits Goblin", refs=["goblin"])

    facts = await curator.curate([swing, defeated])

    assert len(facts) == 1
    assert facts[0].statement == "The goblin was defeated."
    assert facts[0].citations == [defeated.event_id]
    assert facts[0].session_id == "s1"
    assert "EntityDefeated" in facts[0].tags
    assert list(index.all_facts()) == facts


@pytest.mark.asyncio
async def test_payload_flag_overrides_event_type():
    curator = MemoryCurator(InMemoryRetrievalIndex())
    promoted = _event("DialogueSpoken", "Mira: the key is under the mat", refs=["barkeep"], durable=True)
    suppressed = _event("LockOpened", "Picked the lock", refs=["cellar_door"], durable=False)

    facts = await curator.curate([promoted, suppressed])

    assert [fact.statement for fact in facts] == ["Mira: the key is under the mat"]


@pytest.mark.asyncio
async def test_duplicates_are_not_promoted_twice():
    curator = MemoryCurator(InMemoryRetrievalIndex())
    first = _event("DiscoveryMade", refs=["barkeep"], fact="Mira is a retired adventurer.")
    again = _event("DiscoveryMade", refs=["barkeep"], fact="mira is a retired   adventurer")

    assert len(await curator.curate([first])) == 1
    assert await curator.curate([again]) == []
    assert await curator.curate([first, again]) == []


@pytest.mark.asyncio
async def test_same_subject_supersedes_older_fact():
    index = InMemoryRetrievalIndex()
    curator = MemoryCurator(index)
    location = "player:location"

    [old] = await curator.curate(
        [_event("LocationEntered", refs=["market"], fact="The player travelled to Market Square.", subject_key=location)]
    )
    [new] = await curator.curate(
        [_event("LocationEntered", refs=["market"], fact="The player travelled back to the market.", subject_key=location)]
    )

    assert new.supersedes == old.fact_id
    assert [fact.fact_id for fact in await index.facts_for(["market"])] == [new.fact_id]


@pytest.mark.asyncio
async def test_module_patch_fact_mentions_new_content():
    curator = MemoryCurator(InMemoryRetrievalIndex())
    event = _event(
        "ModulePatched",
        "New npc appears: Hooded Stranger",
        patch={"patch_id": "hooded_stranger", "name": "Hooded Stranger", "description": "A cloaked figure by the fire."},
    )

    [fact] = await curator.curate([event])

    assert fact.statement == "Hooded Stranger exists: A cloaked figure by the fire."
    assert "hooded_stranger" in fact.entity_refs


@pytest.mark.asyncio
async def test_failed_batch_is_kept_and_retried():
    index = FlakyIndex()
    curator = MemoryCurator(index)
    batch = [_event("QuestCompleted", "Rats cleared", quest_id="rats")]

    assert await curator.curate(batch) == []
    assert len(curator.failed_batches) == 1

    assert await curator.retry_failed() == []
    assert len(curator.failed_batches) == 1

    index.down = False
    facts = await curator.retry_failed()
    assert [fact.quest_id for fact in facts] == ["rats"]
    assert curator.failed_batches == []


@pytest.mark.asyncio
async def test_same_subject_on_different_entities_still_supersedes():
    index = InMemoryRetrievalIndex()
    curator = MemoryCurator(index)
    location = "player:location"

    [market] = await curator.curate(
        [_event("LocationEntered", refs=["market"], fact="The player travelled to market.", subject_key=location)]
    )
    [docks] = await curator.curate(
        [_event("LocationEntered", refs=["docks"], fact="The player travelled to docks.", subject_key=location)]
    )

    assert docks.supersedes == market.fact_id
    assert [fact.statement for fact in index.all_facts()] == ["The player travelled to docks."]


@pytest.mark.asyncio
async def test_same_subject_within_one_batch_keeps_only_the_latest():
    index = InMemoryRetrievalIndex()
    curator = MemoryCurator(index)
    location = "player:location"

    first, second = await curator.curate(
        [
            _event("LocationEntered", refs=["market"], fact="The player travelled to market.", subject_key=location),
            _event("LocationEntered", refs=["docks"], fact="The player travelled to docks.", subject_key=location),
        ]
    )

    assert second.supersedes == first.fact_id
    assert [fact.fact_id for fact in index.all_facts()] == [second.fact_id]
