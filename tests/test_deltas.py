from datetime import timedelta

from turnkeeper.deltas import apply_delta, merge_deltas, stamp_events, validate_delta
from turnkeeper.schemas import (
    MODULE_PATCHED_EVENT,
    Entity,
    EntityChange,
    ProposedEvent,
    QuestChange,
    SceneState,
    StateDelta,
)


def _patch_event(**patch) -> ProposedEvent:
    base = {"patch_id": "mysterious_stranger", "kind": "npc", "name": "Mysterious Stranger", "power": 1}
    base.update(patch)
    return ProposedEvent(type=MODULE_PATCHED_EVENT, summary="A stranger appears", payload={"patch": base})


def test_merge_concatenates_in_order_and_sums_time():
    first = StateDelta(
        turn_id="t1",
        entity_changes=[EntityChange(entity_id="goblin", op="increment", attribute="hp", value=-2)],
        time_advance_minutes=1,
        events=[ProposedEvent(type="CombatTurn")],
    )
    second = StateDelta(
        entity_changes=[EntityChange(entity_id="barkeep", op="set", attribute="disposition", value="wary")],
        time_advance_minutes=5,
        events=[ProposedEvent(type="DialogueSpoken")],
    )

    merged = merge_deltas(first, second)

    assert merged.turn_id == "t1"
    assert [change.entity_id for change in merged.entity_changes] == ["goblin", "barkeep"]
    assert [event.type for event in merged.events] == ["CombatTurn", "DialogueSpoken"]
    assert merged.time_advance_minutes == 6
    # inputs untouched
    assert len(first.events) == 1 and len(second.events) == 1


def test_merge_with_none_returns_copy():
    delta = StateDelta(events=[ProposedEvent(type="AreaSearched")])
    merged = merge_deltas(delta, None)
    assert merged == delta
    assert merged is not delta


def test_valid_delta_has_no_errors(snapshot):
    delta = StateDelta(
        entity_changes=[
            EntityChange(entity_id="goblin", op="increment", attribute="hp", value=-3),
            EntityChange(
                entity_id="rat",
                op="create",
                entity=Entity(entity_id="rat", name="Giant Rat", location="tavern"),
            ),
            EntityChange(entity_id="rat", op="set", attribute="hp", value=3),
        ],
        quest_changes=[QuestChange(quest_id="rats", complete_objectives=["open_cellar"])],
        events=[ProposedEvent(type="CombatTurn", entity_refs=["goblin", "rat"])],
    )
    assert validate_delta(snapshot, delta, power_budget=3) == []


def test_validate_reports_each_broken_rule(snapshot):
    delta = StateDelta(
        entity_changes=[
            EntityChange(entity_id="ghost", op="set", attribute="hp", value=1),
            EntityChange(entity_id="barkeep", op="create", entity=Entity(entity_id="barkeep")),
            EntityChange(entity_id="goblin", op="set", attribute="hp", value=1),
            EntityChange(entity_id="goblin", op="set", attribute="hp", value=2),
            EntityChange(entity_id="barkeep", op="increment", attribute="disposition", value=1),
            EntityChange(entity_id="player", op="increment", attribute="location", value=1),
            EntityChange(entity_id="cellar_door", op="remove"),
            EntityChange(entity_id="cellar_door", op="set", attribute="locked", value=False),
        ],
        quest_changes=[
            QuestChange(quest_id="dragons"),
            QuestChange(quest_id="rats", status="completed", complete_objectives=["slay_dragon"]),
            QuestChange(quest_id="rats", status="failed"),
        ],
        scene_changes=[SceneState(scene_id="market"), SceneState(scene_id="cellar")],
        events=[ProposedEvent(type="Haunting", entity_refs=["ghost"])],
    )

    errors = validate_delta(snapshot, delta, power_budget=3)
    joined = "\n".join(errors)

    assert "unknown entity ghost" in joined
    assert "cannot create barkeep" in joined
    assert "conflicting values set for goblin.hp" in joined
    assert "non-numeric barkeep.disposition" in joined
    assert "core field player.location" in joined
    assert "cellar_door is removed and changed" in joined
    assert "unknown quest dragons" in joined
    assert "unknown objective slay_dragon" in joined
    assert "contradictory statuses for quest rats" in joined
    assert "more than one scene change" in joined
    assert "references unknown entity ghost" in joined


def test_set_then_increment_same_field_conflicts(snapshot):
    delta = StateDelta(
        entity_changes=[
            EntityChange(entity_id="goblin", op="set", attribute="hp", value=4),
            EntityChange(entity_id="goblin", op="increment", attribute="hp", value=-1),
        ]
    )
    assert any("both set and incremented" in error for error in validate_delta(snapshot, delta, power_budget=3))


def test_repeated_identical_set_is_allowed(snapshot):
    delta = StateDelta(
        entity_changes=[
            EntityChange(entity_id="goblin", op="set", attribute="hostile", value=False),
            EntityChange(entity_id="goblin", op="set", attribute="hostile", value=False),
        ]
    )
    assert validate_delta(snapshot, delta, power_budget=3) == []


def test_core_field_sets_are_type_checked(snapshot):
    delta = StateDelta(
        entity_changes=[
            EntityChange(entity_id="barkeep", op="set", attribute="name", value=None),
            EntityChange(entity_id="goblin", op="set", attribute="kind", value=7),
            EntityChange(entity_id="goblin", op="set", attribute="location", value="market"),
        ]
    )

    errors = validate_delta(snapshot, delta, power_budget=3)

    assert len(errors) == 2
    assert errors[0].startswith("invalid value for barkeep.name")
    assert errors[1].startswith("invalid value for goblin.kind")


def test_core_field_set_on_created_entity_is_checked(snapshot):
    delta = StateDelta(
        entity_changes=[
            EntityChange(entity_id="rat", op="create", entity=Entity(entity_id="rat", name="Rat")),
            EntityChange(entity_id="rat", op="set", attribute="name", value=["Big", "Rat"]),
        ]
    )
    assert [error.split(":")[0] for error in validate_delta(snapshot, delta, power_budget=3)] == [
        "invalid value for rat.name"
    ]


def test_apply_delta_keeps_core_fields_valid(snapshot):
    delta = StateDelta(
        entity_changes=[EntityChange(entity_id="barkeep", op="set", attribute="location", value="cellar")]
    )

    world = apply_delta(snapshot, delta, [])

    assert world.entities["barkeep"].location == "cellar"
    assert world.entities["barkeep"].name == "Mira"
    assert snapshot.entities["barkeep"].location != "cellar"


def test_module_patch_rules(snapshot):
    assert validate_delta(snapshot, StateDelta(events=[_patch_event()]), power_budget=3) == []

    too_strong = StateDelta(events=[_patch_event(power=9)])
    assert any("exceeds budget" in e for e in validate_delta(snapshot, too_strong, power_budget=3))

    bad_kind = StateDelta(events=[_patch_event(kind="dragon_hoard")])
    assert any("unknown kind" in e for e in validate_delta(snapshot, bad_kind, power_budget=3))

    nameless = StateDelta(events=[_patch_event(name="  ")])
    assert any("has no name" in e for e in validate_delta(snapshot, nameless, power_budget=3))

    clash = StateDelta(events=[_patch_event(patch_id="barkeep")])
    assert any("already in use" in e for e in validate_delta(snapshot, clash, power_budget=3))

    authored = StateDelta(events=[_patch_event(patch_id="old_mill")])
    errors = validate_delta(snapshot, authored, power_budget=3, known_content_ids=["old_mill"])
    assert any("already in use" in e for e in errors)

    broken = StateDelta(events=[ProposedEvent(type=MODULE_PATCHED_EVENT, payload={"patch": {"kind": "npc"}})])
    assert any("schema validation" in e for e in validate_delta(snapshot, broken, power_budget=3))


def test_stamp_events_continues_sequence(snapshot):
    world = snapshot.model_copy(update={"last_sequence": 7})
    delta = StateDelta(
        time_advance_minutes=10,
        events=[ProposedEvent(type="CombatTurn"), ProposedEvent(type="EntityDefeated", parent_ids=["t0-001"])],
    )

    events = stamp_events(world, delta, turn_id="t9")

    assert [event.event_id for event in events] == ["t9-001", "t9-002"]
    assert [event.sequence for event in events] == [8, 9]
    assert all(event.session_id == "s1" and event.turn_id == "t9" for event in events)
    assert events[0].timestamp == snapshot.clock + timedelta(minutes=10)
    assert events[1].parent_ids == ["t0-001"]


def test_apply_delta_returns_new_snapshot(snapshot):
    delta = StateDelta(
        entity_changes=[
            EntityChange(entity_id="goblin", op="increment", attribute="hp", value=-6),
            EntityChange(entity_id="goblin", op="set", attribute="defeated", value=True),
            EntityChange(entity_id="player", op="set", attribute="location", value="market"),
            EntityChange(entity_id="cellar_door", op="remove"),
        ],
        quest_changes=[QuestChange(quest_id="rats", status="completed", complete_objectives=["open_cellar"])],
        scene_changes=[SceneState(scene_id="market", summary="Stalls and shouting.")],
        time_advance_minutes=30,
        events=[ProposedEvent(type="EntityDefeated", entity_refs=["goblin"]), _patch_event()],
    )
    events = stamp_events(snapshot, delta, turn_id="t1")

    updated = apply_delta(snapshot, delta, events)

    assert updated.version == snapshot.version + 1
    assert updated.last_sequence == 2
    assert updated.entities["goblin"].attributes == {"hp": 0, "hostile": True, "defeated": True}
    assert updated.entities["player"].location == "market"
    assert "cellar_door" not in updated.entities
    assert updated.quests["rats"].status == "completed"
    assert updated.quests["rats"].objectives[0].done
    assert updated.scene.scene_id == "market"
    assert updated.clock == snapshot.clock + timedelta(minutes=30)
    assert "mysterious_stranger" in updated.module_additions
    stranger = updated.entities["mysterious_stranger"]
    assert stranger.kind == "npc" and stranger.location == "market"

    # original untouched
    assert snapshot.version == 0
    assert snapshot.entities["goblin"].attributes["hp"] == 6
    assert "cellar_door" in snapshot.entities


def test_empty_delta_still_bumps_version(snapshot):
    updated = apply_delta(snapshot, StateDelta(), [])
    assert updated.version == 1
    assert updated.last_sequence == 0
    assert StateDelta().is_empty()
