import pytest

from turnkeeper.guard import DEFAULT_REJECT_NARRATIVE, GuardCheck, LLMGuard, RuleGuard
from turnkeeper.invoke import DecisionError, ScriptedInvoker
from turnkeeper.rng import TurnRandom
from turnkeeper.schemas import (
    ContextPack,
    ModulePatch,
    ParticipantRef,
    PromptDescriptor,
    ResumeContext,
)


def _context(text, *, participants=(), resume=None):
    return ContextPack(
        turn_id="t1",
        session_id="s1",
        player_input=text,
        scene_id="tavern",
        participants=[ParticipantRef(entity_id=pid, name=pid) for pid in participants],
        resume=resume,
    )


STRANGER = ModulePatch(patch_id="hooded_stranger", kind="npc", name="Hooded Stranger", power=1)
CHOICE = PromptDescriptor(type="choice", data={"options": ["left", "right"]}, message="Which path?")


@pytest.mark.asyncio
async def test_reject_phrase_uses_in_world_narrative():
    guard = RuleGuard()
    decision = await guard.evaluate("I buy a MILLION GOLD sword", _context("x"), TurnRandom(1))

    assert decision.status == "reject"
    assert decision.narrative == DEFAULT_REJECT_NARRATIVE


@pytest.mark.asyncio
async def test_input_rule_asks_player_unless_resuming():
    guard = RuleGuard(input_rules={"fork in the road": CHOICE})
    text = "I walk to the fork in the road"

    asked = await guard.evaluate(text, _context(text), TurnRandom(1))
    assert asked.status == "needs_player_input"
    assert asked.prompt.type == "choice"

    resume = ResumeContext(
        resumed_turn_id="t0", requested_by="guard", original_input=text, prompt=CHOICE, answer="left"
    )
    answered = await guard.evaluate(text, _context(text, resume=resume), TurnRandom(1))
    assert answered.status == "valid"


@pytest.mark.asyncio
async def test_dice_check_failure_and_success():
    failing = RuleGuard(checks=[GuardCheck("jump the chasm", "1", 5, "You balk at the edge.")])
    decision = await failing.evaluate("I jump the chasm", _context("x"), TurnRandom(1))
    assert decision.status == "reject"
    assert decision.narrative == "You balk at the edge."

    passing = RuleGuard(checks=[GuardCheck("jump the chasm", "10", 5, "unused")])
    assert (await passing.evaluate("I jump the chasm", _context("x"), TurnRandom(1))).status == "valid"


@pytest.mark.asyncio
async def test_improv_only_for_absent_content():
    guard = RuleGuard(improv_rules={"stranger": STRANGER})

    decision = await guard.evaluate("I look for a stranger", _context("x"), TurnRandom(1))
    assert decision.status == "improv"
    assert decision.patch.patch_id == "hooded_stranger"

    present = _context("x", participants=["hooded_stranger"])
    assert (await guard.evaluate("I talk to the stranger", present, TurnRandom(1))).status == "valid"


@pytest.mark.asyncio
async def test_llm_guard_parses_scripted_decision():
    invoker = ScriptedInvoker(
        {"guard": [{"status": "reject", "narrative": "The gate is sealed."}, "I think it's fine"]}
    )
    guard = LLMGuard(invoker)

    decision = await guard.evaluate("open the gate", _context("open the gate"), TurnRandom(1))
    assert decision.status == "reject"
    assert decision.narrative == "The gate is sealed."
    role, prompt = invoker.calls[0]
    assert role == "guard"
    assert "open the gate" in prompt.user

    with pytest.raises(DecisionError):
        await guard.evaluate("open the gate", _context("open the gate"), TurnRandom(1))


@pytest.mark.asyncio
async def test_llm_guard_rejects_malformed_improv():
    invoker = ScriptedInvoker({"guard": [{"status": "improv"}]})
    with pytest.raises(DecisionError):
        await LLMGuard(invoker).evaluate("x", _context("x"), TurnRandom(1))
