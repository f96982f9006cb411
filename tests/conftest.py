"""Shared fixtures: a small tavern world and deterministic turn settings."""

from datetime import datetime, timezone

import pytest

from turnkeeper.config import TurnSettings
from turnkeeper.schemas import Entity, Objective, QuestState, SceneState, WorldSnapshot


@pytest.fixture
def snapshot() -> WorldSnapshot:
    return WorldSnapshot(
        session_id="s1",
        clock=datetime(2024, 5, 1, 19, 0, tzinfo=timezone.utc),
        weather="rain",
        scene=SceneState(
            scene_id="tavern",
            summary="A smoky tavern with a crackling hearth.",
            participants=["player", "barkeep"],
        ),
        entities={
            "player": Entity(entity_id="player", kind="player", name="Player", location="tavern", attributes={"hp": 20}),
            "barkeep": Entity(
                entity_id="barkeep",
                kind="npc",
                name="Mira",
                location="tavern",
                attributes={"disposition": "friendly", "gold": 40},
            ),
            "goblin": Entity(
                entity_id="goblin",
                kind="npc",
                name="Goblin",
                location="tavern",
                attributes={"hp": 6, "hostile": True},
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
                    Objective(objective_id="open_cellar", text="Open the cellar door"),
                    Objective(objective_id="clear_rats", text="Clear out the rats"),
                ],
            )
        },
    )


@pytest.fixture
def settings() -> TurnSettings:
    return TurnSettings(
        max_handoff_rounds=4,
        max_tool_calls_per_agent=3,
        default_agent="dialogue",
        recap_lines=4,
        recent_event_window=5,
        retrieval_top_k=3,
        context_budget_chars=20000,
        context_timeout_seconds=2.0,
        director_timeout_seconds=0.5,
        guard_timeout_seconds=0.5,
        agent_timeout_seconds=0.5,
        pending_action_ttl_seconds=600,
        module_patch_power_budget=3,
        commit_retry_attempts=3,
    )
