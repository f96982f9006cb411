import asyncio

import pytest

from turnkeeper.director import KeywordPlotDirector, LLMPlotDirector, safe_direct
from turnkeeper.invoke import ScriptedInvoker
from turnkeeper.schemas import (
    AdventureModule,
    ContextPack,
    EventPreview,
    ObjectivePreview,
    ParticipantRef,
)

MODULE = AdventureModule(
    module_id="rats",
    title="Rats in the Cellar",
    plot_hooks=["A scratching sound rises from below.", "Mira glances at the cellar door."],
)


def _context(text, **kwargs):
    return ContextPack(turn_id="t1", session_id="s1", player_input=text, **kwargs)


class SlowDirector:
    async def direct(self, context, module):
        await asyncio.sleep(1)


class BrokenDirector:
    async def direct(self, context, module):
        raise RuntimeError("director crashed")


@pytest.mark.asyncio
async def test_keyword_director_picks_agent_and_pacing():
    director = KeywordPlotDirector()

    fight = await director.direct(_context("I attack the goblin"), MODULE)
    assert fight.starting_agent == "combat"
    assert fight.pacing == "fast"

    chat = await director.direct(
        _context("I ask about rumours", dialogue_recap=["a", "b", "c"]), MODULE
    )
    assert chat.starting_agent == "dialogue"
    assert chat.pacing == "slow"

    idle = await director.direct(_context("hmm"), None)
    assert idle.starting_agent is None
    assert idle.suggested_beat is None


@pytest.mark.asyncio
async def test_keyword_director_targets_and_spotlight():
    context = _context(
        "search the room",
        participants=[
            ParticipantRef(entity_id="player", kind="player"),
            ParticipantRef(entity_id="barkeep", kind="npc"),
        ],
        objectives=[
            ObjectivePreview(quest_id="q", objective_id=f"o{n}", text=f"objective {n}") for n in range(3)
        ],
        recent_events=[EventPreview(sequence=1, type="AreaSearched")],
    )

    directive = await KeywordPlotDirector().direct(context, MODULE)

    assert directive.starting_agent == "exploration"
    assert directive.target_objectives == ["o0", "o1"]
    assert directive.spotlight == ["barkeep"]
    assert directive.suggested_beat == MODULE.plot_hooks[1]


@pytest.mark.asyncio
async def test_llm_director_uses_scripted_decision():
    invoker = ScriptedInvoker({"director": [{"starting_agent": "dialogue", "pacing": "slow"}]})
    director = LLMPlotDirector(invoker, agent_names=["dialogue", "combat"])

    directive = await director.direct(_context("hello"), MODULE)

    assert directive.starting_agent == "dialogue"
    _, prompt = invoker.calls[0]
    assert "dialogue, combat" in prompt.user
    assert "Rats in the Cellar" in prompt.user


@pytest.mark.asyncio
@pytest.mark.parametrize("director", [None, SlowDirector(), BrokenDirector()])
async def test_safe_direct_falls_back_to_empty(director):
    directive = await safe_direct(director, _context("hello"), MODULE, timeout=0.05)
    assert directive.starting_agent is None
    assert directive.target_objectives == []
