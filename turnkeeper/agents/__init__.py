"""Domain agents: protocol, registry, reference agents and the LLM agent."""

from .base import AgentRegistry, AgentScope, DomainAgent
from .builtin import CombatAgent, DialogueAgent, ExplorationAgent
from .llm import LLMDomainAgent


def default_registry() -> AgentRegistry:
    """Registry with the three deterministic reference agents."""
    return AgentRegistry([DialogueAgent(), CombatAgent(), ExplorationAgent()])


__all__ = [
    "AgentRegistry",
    "AgentScope",
    "DomainAgent",
    "DialogueAgent",
    "CombatAgent",
    "ExplorationAgent",
    "LLMDomainAgent",
    "default_registry",
]
