"""Prompt templates and rendering for Guard, Director and domain agents.

Templates use ``{{placeholder}}`` markers (double braces keep JSON examples
intact). Everything substituted comes from the turn's ContextPack, the plot
directive and per-call extras; no conversation history is ever injected.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from .schemas import ContextPack, PlotDirective


@dataclass
class PromptTemplate:
    name: str
    system: str
    user: str
    description: str = ""


@dataclass
class RenderedPrompt:
    system: str
    user: str


class PromptLibrary:
    """Named templates, one per role."""

    def __init__(self) -> None:
        self.templates: Dict[str, PromptTemplate] = {}

    def register(self, template: PromptTemplate) -> None:
        self.templates[template.name] = template

    def get(self, name: str) -> PromptTemplate:
        try:
            return self.templates[name]
        except KeyError as exc:
            raise KeyError(f"No prompt template named '{name}'") from exc

    def names(self) -> list[str]:
        return sorted(self.templates)


def summarize_context(context: ContextPack) -> str:
    """Compact plain-text view of a ContextPack."""

    lines = [f"Scene: {context.scene_id or 'unknown'}"]
    if context.scene_summary:
        lines.append(context.scene_summary)
    if context.time_of_day or context.weather:
        lines.append(f"Time: {context.time_of_day or '?'} | Weather: {context.weather or '?'}")
    if context.participants:
        present = ", ".join(ref.name or ref.entity_id for ref in context.participants)
        lines.append(f"Present: {present}")
    if context.dialogue_recap:
        lines.append("Recent dialogue:")
        lines.extend(f"- {line}" for line in context.dialogue_recap)
    if context.recent_events:
        lines.append("Recent events:")
        lines.extend(f"- [{event.type}] {event.summary}" for event in context.recent_events)
    if context.objectives:
        lines.append("Open objectives:")
        lines.extend(
            f"- {objective.quest_title}: {objective.text} ({objective.objective_id})"
            for objective in context.objectives
        )
    if context.snippets:
        lines.append("Known facts:")
        lines.extend(f"- {snippet.text}" for snippet in context.snippets)
    return "\n".join(lines)


def resume_text(context: ContextPack) -> str:
    if context.resume is None:
        return "None."
    resume = context.resume
    return (
        f"The player is answering an earlier request from {resume.requested_by}.\n"
        f"Original action: {resume.original_input}\n"
        f"Request: {resume.prompt.type} {json.dumps(resume.prompt.data)}\n"
        f"Answer: {resume.answer}"
    )


def render_prompt(
    template: PromptTemplate,
    context: ContextPack,
    *,
    directive: PlotDirective | None = None,
    extra: Mapping[str, Any] | None = None,
) -> RenderedPrompt:
    """Substitute placeholders in ``template`` from the context and extras.

    Placeholders: ``player_input``, ``context_json``, ``context_summary``,
    ``directive_json``, ``resume_text``, plus any key in ``extra`` (non-string
    values are JSON encoded). Unknown placeholders are left untouched.
    """

    replacements: Dict[str, str] = {
        "player_input": context.player_input,
        "context_json": context.model_dump_json(indent=2),
        "context_summary": summarize_context(context),
        "directive_json": (directive or PlotDirective.empty()).model_dump_json(indent=2),
        "resume_text": resume_text(context),
    }
    for key, value in (extra or {}).items():
        replacements[key] = value if isinstance(value, str) else json.dumps(value, default=str)

    system, user = template.system, template.user
    for key, value in replacements.items():
        marker = "{{" + key + "}}"
        system = system.replace(marker, value)
        user = user.replace(marker, value)
    return RenderedPrompt(system=system.strip(), user=user.strip())


DEFAULT_PROMPTS = PromptLibrary()

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="guard",
        system=(
            "You are the rules referee of a tabletop role-playing game. Decide whether the "
            "player's action is possible in the current world. You never change the world yourself."
        ),
        user=(
            "Player action: {{player_input}}\n\n"
            "Situation:\n{{context_summary}}\n\n"
            "Pending answer:\n{{resume_text}}\n\n"
            "Reply with JSON for one of:\n"
            "{\"status\": \"valid\"}\n"
            "{\"status\": \"reject\", \"narrative\": \"in-world reason it fails\"}\n"
            "{\"status\": \"improv\", \"patch\": {\"patch_id\": \"...\", \"kind\": \"npc|shop|location|item\", "
            "\"name\": \"...\", \"description\": \"...\", \"power\": 1}}\n"
            "{\"status\": \"needs_player_input\", \"prompt\": {\"type\": \"choice\", \"data\": {...}, \"message\": \"...\"}}"
        ),
        description="Validates player intent against world rules.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="director",
        system=(
            "You are the plot director. Suggest how this turn should advance the story. "
            "Your advice is optional; agents may ignore it."
        ),
        user=(
            "Player action: {{player_input}}\n\n"
            "Situation:\n{{context_summary}}\n\n"
            "Adventure:\n{{module_json}}\n\n"
            "Available agents: {{agent_names}}\n\n"
            "Reply with JSON: {\"target_objectives\": [...], \"suggested_beat\": \"...\", "
            "\"pacing\": \"slow|normal|fast\", \"starting_agent\": \"...\", \"spotlight\": [...]}"
        ),
        description="Produces an advisory PlotDirective.",
    )
)

_AGENT_USER = (
    "Player action: {{player_input}}\n\n"
    "Situation:\n{{context_summary}}\n\n"
    "Plot directive:\n{{directive_json}}\n\n"
    "Pending answer:\n{{resume_text}}\n\n"
    "Handoff note: {{handoff_note}}\n"
    "Changes already proposed this turn:\n{{accumulated_json}}\n\n"
    "Tool results so far:\n{{tool_results}}\n\n"
    "Tools:\n{{tool_catalog}}\n\n"
    "Agents you may hand off to: {{agent_names}}\n\n"
    "Reply with JSON: {\"status\": \"completed|continue|needs_player_input|error\", "
    "\"narrative\": \"...\", \"delta\": {\"entity_changes\": [...], \"events\": [...]}, "
    "\"next_agent\": null, \"prompt\": null}"
)

for _name, _role in (
    ("dialogue", "You voice the non-player characters in conversation."),
    ("combat", "You resolve fights: attacks, damage and defeat."),
    ("exploration", "You resolve movement, searching, locks and traps."),
):
    DEFAULT_PROMPTS.register(
        PromptTemplate(
            name=_name,
            system=(
                f"{_role} Propose changes only through the delta; never assume they are applied. "
                "Hand off with status 'continue' when another specialist should act."
            ),
            user=_AGENT_USER,
            description=f"Domain agent prompt for {_name}.",
        )
    )
