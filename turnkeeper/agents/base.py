"""Domain agent protocol, per-invocation scope and the agent registry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol

from ..rng import TurnRandom
from ..schemas import ContextPack, DomainResult, PlotDirective, StateDelta


@dataclass(frozen=True)
class AgentScope:
    """What an agent gets besides the context: bookkeeping for this invocation.

    ``accumulated`` is a copy of the changes proposed earlier in the turn;
    agents read it but return their own changes in ``DomainResult.delta``.
    """

    turn_id: str
    rng: TurnRandom
    accumulated: StateDelta
    round: int
    tool_budget: int
    note: Optional[str] = None


class DomainAgent(Protocol):
    """Protocol for specialists (dialogue, combat, exploration, ...)."""

    name: str

    async def handle(
        self, context: ContextPack, directive: PlotDirective, scope: AgentScope
    ) -> DomainResult:
        """Return exactly one DomainResult.

        Agents never write state; proposed changes travel in ``result.delta``
        and only take effect if the whole turn commits. ``tool_calls`` must
        report how many tool calls were spent.
        """

        ...


class AgentRegistry:
    """Name -> agent lookup used by the coordinator for handoffs."""

    def __init__(self, agents: Iterable[DomainAgent] = ()):
        self._agents: Dict[str, DomainAgent] = {}
        for agent in agents:
            self.register(agent)

    def register(self, agent: DomainAgent) -> None:
        if agent.name in self._agents:
            raise ValueError(f"Agent '{agent.name}' is already registered")
        self._agents[agent.name] = agent

    def get(self, name: str) -> Optional[DomainAgent]:
        return self._agents.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def names(self) -> list[str]:
        return list(self._agents)
