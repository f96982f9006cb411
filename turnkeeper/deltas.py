"""Pure helpers over StateDelta.

The coordinator folds partial deltas with :func:`merge_deltas`; the World
Writer runs :func:`validate_delta` and :func:`stamp_events` against a
snapshot, and stores call :func:`apply_delta` inside their commit unit. None
of these functions mutate their arguments.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import timedelta
from typing import Any, Iterable

from pydantic import ValidationError

from .schemas import (
    ENTITY_CORE_FIELDS,
    Entity,
    Event,
    ModulePatch,
    StateDelta,
    WorldSnapshot,
)

MODULE_PATCH_KINDS = frozenset({"npc", "shop", "location", "item"})


def merge_deltas(accumulated: StateDelta, partial: StateDelta | None) -> StateDelta:
    """Return a new delta with ``partial`` appended after ``accumulated``."""

    if partial is None:
        return accumulated.model_copy(deep=True)
    return StateDelta(
        turn_id=accumulated.turn_id or partial.turn_id,
        entity_changes=[*accumulated.entity_changes, *partial.entity_changes],
        quest_changes=[*accumulated.quest_changes, *partial.quest_changes],
        scene_changes=[*accumulated.scene_changes, *partial.scene_changes],
        time_advance_minutes=accumulated.time_advance_minutes + partial.time_advance_minutes,
        events=[*accumulated.events, *partial.events],
    ).model_copy(deep=True)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _current_value(entity: Entity, attribute: str) -> Any:
    if attribute in ENTITY_CORE_FIELDS:
        return getattr(entity, attribute)
    return entity.attributes.get(attribute)


def _check_core_set(entity: Entity, attribute: str, value: Any) -> str | None:
    try:
        Entity.model_validate({**entity.model_dump(), attribute: value})
    except ValidationError as exc:
        return f"invalid value for {entity.entity_id}.{attribute}: {exc.errors()[0]['msg']}"
    return None


def _validate_patches(
    snapshot: WorldSnapshot,
    delta: StateDelta,
    *,
    power_budget: int,
    known_content_ids: Iterable[str],
) -> list[str]:
    errors: list[str] = []
    taken = set(snapshot.module_additions) | set(snapshot.entities) | set(known_content_ids)
    seen: set[str] = set()

    for event in delta.module_patch_events():
        try:
            patch = ModulePatch.model_validate(event.payload.get("patch"))
        except ValidationError as exc:
            errors.append(f"module patch failed schema validation: {exc.errors()[0]['msg']}")
            continue
        if not patch.patch_id.strip():
            errors.append("module patch has an empty patch_id")
        if patch.kind not in MODULE_PATCH_KINDS:
            errors.append(f"module patch {patch.patch_id} has unknown kind '{patch.kind}'")
        if not patch.name.strip():
            errors.append(f"module patch {patch.patch_id} has no name")
        if patch.power < 0 or patch.power > power_budget:
            errors.append(
                f"module patch {patch.patch_id} power {patch.power} exceeds budget {power_budget}"
            )
        if patch.patch_id in taken or patch.patch_id in seen:
            errors.append(f"module patch id {patch.patch_id} is already in use")
        seen.add(patch.patch_id)
    return errors


def validate_delta(
    snapshot: WorldSnapshot,
    delta: StateDelta,
    *,
    power_budget: int,
    known_content_ids: Iterable[str] = (),
) -> list[str]:
    """Check a delta against a snapshot. Returns error strings (empty when valid)."""

    errors: list[str] = []
    existing = set(snapshot.entities)
    created: dict[str, Entity] = {}
    ops_by_entity: dict[str, list[str]] = defaultdict(list)
    set_values: dict[tuple[str, str], Any] = {}
    incremented: set[tuple[str, str]] = set()

    for change in delta.entity_changes:
        entity_id = change.entity_id
        ops_by_entity[entity_id].append(change.op)

        if change.op == "create":
            if entity_id in existing or entity_id in created:
                errors.append(f"cannot create {entity_id}: entity already exists")
            created[entity_id] = change.entity
            continue

        if entity_id not in existing and entity_id not in created:
            errors.append(f"unknown entity {entity_id} in '{change.op}' change")
            continue

        key = (entity_id, change.attribute or "")
        if change.op == "set":
            if key in set_values and set_values[key] != change.value:
                errors.append(f"conflicting values set for {entity_id}.{change.attribute}")
            if key in incremented:
                errors.append(f"{entity_id}.{change.attribute} is both set and incremented")
            set_values[key] = change.value
            if change.attribute in ENTITY_CORE_FIELDS:
                base = snapshot.entities.get(entity_id) or created[entity_id]
                problem = _check_core_set(base, change.attribute, change.value)
                if problem:
                    errors.append(problem)
        elif change.op == "increment":
            if change.attribute in ENTITY_CORE_FIELDS:
                errors.append(f"cannot increment core field {entity_id}.{change.attribute}")
            elif entity_id in existing:
                current = _current_value(snapshot.entities[entity_id], change.attribute)
                if current is not None and not _is_number(current):
                    errors.append(f"cannot increment non-numeric {entity_id}.{change.attribute}")
            if key in set_values:
                errors.append(f"{entity_id}.{change.attribute} is both set and incremented")
            incremented.add(key)

    for entity_id, ops in ops_by_entity.items():
        if "remove" in ops and len(ops) > 1:
            errors.append(f"{entity_id} is removed and changed in the same turn")

    statuses: dict[str, set[str]] = defaultdict(set)
    for quest_change in delta.quest_changes:
        quest = snapshot.quests.get(quest_change.quest_id)
        if quest is None:
            errors.append(f"unknown quest {quest_change.quest_id}")
            continue
        if quest_change.status:
            statuses[quest_change.quest_id].add(quest_change.status)
        objective_ids = {objective.objective_id for objective in quest.objectives}
        for objective_id in quest_change.complete_objectives:
            if objective_id not in objective_ids:
                errors.append(f"unknown objective {objective_id} in quest {quest_change.quest_id}")
    for quest_id, wanted in statuses.items():
        if len(wanted) > 1:
            errors.append(f"contradictory statuses for quest {quest_id}: {sorted(wanted)}")

    if len({scene.scene_id for scene in delta.scene_changes}) > 1:
        errors.append("more than one scene change in a single turn")

    known = existing | set(created)
    for event in delta.events:
        for ref in event.entity_refs:
            if ref not in known:
                errors.append(f"event {event.type} references unknown entity {ref}")

    errors.extend(
        _validate_patches(
            snapshot, delta, power_budget=power_budget, known_content_ids=known_content_ids
        )
    )
    return errors


def stamp_events(
    snapshot: WorldSnapshot,
    delta: StateDelta,
    *,
    turn_id: str,
) -> list[Event]:
    """Assign ids, sequence numbers and the post-commit clock to proposed events."""

    timestamp = snapshot.clock + timedelta(minutes=delta.time_advance_minutes)
    stamped = []
    for offset, proposed in enumerate(delta.events, start=1):
        stamped.append(
            Event(
                event_id=f"{turn_id}-{offset:03d}",
                sequence=snapshot.last_sequence + offset,
                session_id=snapshot.session_id,
                turn_id=turn_id,
                type=proposed.type,
                summary=proposed.summary,
                entity_refs=list(proposed.entity_refs),
                payload=dict(proposed.payload),
                parent_ids=list(proposed.parent_ids),
                timestamp=timestamp,
            )
        )
    return stamped


def apply_delta(snapshot: WorldSnapshot, delta: StateDelta, events: list[Event]) -> WorldSnapshot:
    """Return the snapshot after ``delta``. Assumes ``validate_delta`` passed."""

    world = snapshot.model_copy(deep=True)

    for change in delta.entity_changes:
        if change.op == "create":
            world.entities[change.entity_id] = change.entity.model_copy(deep=True)
        elif change.op == "remove":
            world.entities.pop(change.entity_id, None)
        elif change.op == "set":
            entity = world.entities[change.entity_id]
            if change.attribute in ENTITY_CORE_FIELDS:
                world.entities[change.entity_id] = Entity.model_validate(
                    {**entity.model_dump(), change.attribute: change.value}
                )
            else:
                entity.attributes[change.attribute] = change.value
        else:
            entity = world.entities[change.entity_id]
            current = entity.attributes.get(change.attribute) or 0
            entity.attributes[change.attribute] = current + change.value

    for quest_change in delta.quest_changes:
        quest = world.quests[quest_change.quest_id]
        done = set(quest_change.complete_objectives)
        for objective in quest.objectives:
            if objective.objective_id in done:
                objective.done = True
        if quest_change.status:
            quest.status = quest_change.status

    if delta.scene_changes:
        world.scene = delta.scene_changes[-1].model_copy(deep=True)

    for event in delta.module_patch_events():
        patch = ModulePatch.model_validate(event.payload["patch"])
        world.module_additions[patch.patch_id] = patch
        # NPCs and shops become present in the current scene
        if patch.kind in ("npc", "shop") and patch.patch_id not in world.entities:
            world.entities[patch.patch_id] = Entity(
                entity_id=patch.patch_id,
                kind=patch.kind,
                name=patch.name,
                location=world.scene.scene_id,
                attributes=dict(patch.attributes),
            )

    world.clock = world.clock + timedelta(minutes=delta.time_advance_minutes)
    if events:
        world.last_sequence = events[-1].sequence
    world.version += 1
    return world
