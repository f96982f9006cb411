"""Seeded randomness for turns.

Every turn gets its own generator seeded from the turn id and the player's
input, so replaying a turn with scripted collaborators reproduces the same
rolls.
"""

import hashlib
import random
import re
from typing import Mapping, Optional, Sequence, TypeVar

T = TypeVar("T")

_TERM = re.compile(r"([+-]?)\s*(\d*d\d+|\d+|[A-Za-z_]+)")
_DICE = re.compile(r"^(\d*)d(\d+)$")


def turn_seed(turn_id: str, text: str) -> int:
    """Derive a stable 64-bit seed (hash() is salted per process, sha256 is not)."""

    digest = hashlib.sha256(f"{turn_id}\x1f{text}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


class TurnRandom:
    """Dice and choices for one turn."""

    def __init__(self, seed: int):
        self.seed = seed
        self._random = random.Random(seed)

    @classmethod
    def for_turn(cls, turn_id: str, text: str) -> "TurnRandom":
        return cls(turn_seed(turn_id, text))

    def roll(self, sides: int) -> int:
        if sides < 1:
            raise ValueError(f"die needs at least one side, got {sides}")
        return self._random.randint(1, sides)

    def roll_many(self, count: int, sides: int) -> list[int]:
        return [self.roll(sides) for _ in range(count)]

    def roll_formula(self, formula: str, modifiers: Optional[Mapping[str, int]] = None) -> int:
        """Evaluate formulas like ``2d6+3`` or ``d20+DEX``.

        Named terms are looked up in ``modifiers`` (missing names count as 0).
        The total never drops below zero.
        """

        text = formula.replace(" ", "")
        if not text:
            raise ValueError("empty dice formula")

        modifiers = modifiers or {}
        total = 0
        position = 0
        for match in _TERM.finditer(text):
            if match.start() != position or (position and not match.group(1)):
                raise ValueError(f"cannot parse dice formula {formula!r}")
            position = match.end()

            sign = -1 if match.group(1) == "-" else 1
            term = match.group(2)
            dice = _DICE.match(term)
            if dice:
                count = int(dice.group(1) or 1)
                value = sum(self.roll_many(count, int(dice.group(2))))
            elif term.isdigit():
                value = int(term)
            else:
                value = int(modifiers.get(term, 0))
            total += sign * value

        if position != len(text):
            raise ValueError(f"cannot parse dice formula {formula!r}")
        return max(total, 0)

    def check(self, target: int) -> bool:
        """Percentile check: succeeds when d100 <= target."""
        return self.roll(100) <= target

    def choose(self, items: Sequence[T]) -> T:
        if not items:
            raise ValueError("cannot choose from an empty sequence")
        return self._random.choice(list(items))
