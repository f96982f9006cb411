"""A short scripted evening at the Prancing Lantern.

By default everything is deterministic (rule guard, keyword director and the
reference agents), so the session runs offline:

    uv run python examples/tavern/run.py

Pass `--llm` to hand Guard, Director and agents to a language model
(requires `LLM_PROVIDER`, `LLM_MODEL` and the provider's API key):

    uv run python examples/tavern/run.py --llm

`--data-dir` persists the session as JSON so a later run can inspect it.
"""

from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
from typing import List

from turnkeeper import (
    AdventureModule,
    AgentRegistry,
    Config,
    Entity,
    InMemoryRetrievalIndex,
    InMemoryWorldStore,
    JsonWorldStore,
    KeywordPlotDirector,
    LLMDomainAgent,
    LLMGuard,
    LLMInvoker,
    LLMPlotDirector,
    ModulePatch,
    Objective,
    QuestState,
    RuleGuard,
    SceneState,
    TurnCoordinator,
    TurnInput,
    TurnRandom,
    TurnSettings,
    WorldSnapshot,
    default_registry,
)

SESSION_ID = "prancing-lantern"

MODULE = AdventureModule(
    module_id="rats-in-the-cellar",
    title="Rats in the Cellar",
    setting="A roadside tavern on a rainy night",
    theme="cosy mystery",
    plot_hooks=[
        "Something heavy thumps against the cellar door.",
        "Mira keeps glancing at the cellar, then at you.",
    ],
    content_ids=["barkeep", "goblin", "cellar_door", "market"],
)

SCRIPT = [
    "Hello Mira, is there any work for an adventurer?",
    "I want a million gold for my trouble",
    "I attack the goblin",
    "I attack the goblin again",
    "I pick the lock on the cellar door",
    "I greet the hooded stranger by the fire",
    "I go to the Market Square",
]


def build_snapshot() -> WorldSnapshot:
    return WorldSnapshot(
        session_id=SESSION_ID,
        clock=datetime(2024, 10, 31, 19, 0, tzinfo=timezone.utc),
        weather="rain",
        scene=SceneState(
            scene_id="tavern",
            summary="The Prancing Lantern: low beams, a crackling hearth, rain on the shutters.",
            participants=["player", "barkeep"],
        ),
        entities={
            "player": Entity(entity_id="player", kind="player", name="You", location="tavern", attributes={"hp": 20}),
            "barkeep": Entity(
                entity_id="barkeep",
                kind="npc",
                name="Mira",
                location="tavern",
                attributes={"disposition": "friendly"},
                tags=["merchant"],
            ),
            "goblin": Entity(
                entity_id="goblin",
                kind="npc",
                name="Goblin",
                location="tavern",
                attributes={"hp": 7, "hostile": True},
            ),
            "cellar_door": Entity(
                entity_id="cellar_door",
                kind="door",
                name="cellar door",
                location="tavern",
                attributes={"locked": True, "dc": 12},
            ),
            "market": Entity(entity_id="market", kind="location", name="Market Square", location="tavern"),
        },
        quests={
            "rats": QuestState(
                quest_id="rats",
                title="Rats in the Cellar",
                objectives=[
                    Objective(objective_id="open_cellar", text="Get the cellar door open"),
                    Objective(objective_id="clear_rats", text="Deal with whatever is down there"),
                ],
            )
        },
    )


def build_guard() -> RuleGuard:
    stranger = ModulePatch(
        patch_id="hooded_stranger",
        kind="npc",
        name="Hooded Stranger",
        description="A cloaked traveller nursing a cold drink by the fire.",
        attributes={"disposition": "wary"},
        power=1,
    )
    return RuleGuard(improv_rules={"stranger": stranger})


def build_llm_registry(invoker: LLMInvoker) -> AgentRegistry:
    names = ["dialogue", "combat", "exploration"]
    return AgentRegistry(
        [
            LLMDomainAgent(name, invoker, handoff_targets=[other for other in names if other != name])
            for name in names
        ]
    )


async def main() -> None:
    parser = argparse.ArgumentParser(description="Play a scripted tavern session")
    parser.add_argument("--llm", action="store_true", help="Use language-model guard, director and agents")
    parser.add_argument("--data-dir", default=None, help="Persist the session as JSON in this directory")
    args = parser.parse_args()

    store = JsonWorldStore(args.data_dir) if args.data_dir else InMemoryWorldStore()
    index = InMemoryRetrievalIndex()
    await store.initialize()
    await store.seed_snapshot(build_snapshot())

    settings = TurnSettings()
    if args.llm:
        Config.validate()
        invoker = LLMInvoker()
        registry = build_llm_registry(invoker)
        guard = LLMGuard(invoker)
        director = LLMPlotDirector(invoker, agent_names=registry.names())
    else:
        registry = default_registry()
        guard = build_guard()
        director = KeywordPlotDirector()

    coordinator = TurnCoordinator(
        store=store,
        index=index,
        guard=guard,
        director=director,
        registry=registry,
        settings=settings,
        module=MODULE,
    )

    print(f"=== {MODULE.title} ===")
    transcript: List[str] = []
    for text in SCRIPT:
        print(f"\n> {text}")
        outcome = await coordinator.process_turn(TurnInput(session_id=SESSION_ID, text=text))

        # Answer dice prompts with a seeded roll so reruns match.
        while outcome.status == "paused" and outcome.prompt and outcome.prompt.type == "dice_roll":
            print(outcome.narrative)
            roll = TurnRandom.for_turn(outcome.turn_id, text).roll_formula(
                outcome.prompt.data.get("formula", "d20"), {"DEX": 2}
            )
            print(f"> (rolls {roll})")
            outcome = await coordinator.process_turn(
                TurnInput(session_id=SESSION_ID, resume_of=outcome.turn_id, answer=str(roll))
            )

        print(outcome.narrative)
        transcript.append(f"{outcome.status:>9}  {text}")
        for fact in outcome.facts:
            print(f"  (remembered: {fact.statement})")

    world = await store.read_snapshot(SESSION_ID)
    print("\n=== Session summary ===")
    print("\n".join(transcript))
    print(f"World version {world.version}, {world.last_sequence} events, scene '{world.scene.scene_id}'")
    print(f"Facts remembered: {len(list(index.all_facts()))}")
    await store.close()


if __name__ == "__main__":
    asyncio.run(main())
