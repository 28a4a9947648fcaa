"""Script stage interface.

A stage is any object with a `name`, a `description` and an async
`execute(context)` returning a ScriptOutput. Stages never mutate the context
they are handed; they describe changes through `context_updates` and the
runner merges them before the next stage runs.

Context keys every stage can rely on:

    session_id        int
    active_cards      list[Card]   cards active when the turn started
    current_input     str          the player's text
    current_response  str          the model's reply for this turn
    story_history     list[dict]   prior turns as {input, response}
    turn_number       int
    focus_card_id     int | None
"""

from __future__ import annotations

from typing import Any, Protocol

from pydantic import BaseModel, Field

from storycards.models import Card


class ScriptOutput(BaseModel):
    context_updates: dict[str, Any] = Field(default_factory=dict)
    events: list[dict[str, Any]] = Field(default_factory=list)
    cards_to_activate: list[int] = Field(default_factory=list)
    cards_to_deactivate: list[int] = Field(default_factory=list)
    new_cards: list[dict[str, Any]] = Field(default_factory=list)
    notifications: list[dict[str, str]] = Field(default_factory=list)


class Script(Protocol):
    name: str
    description: str

    async def execute(self, context: dict[str, Any]) -> ScriptOutput: ...


def turn_text(context: dict[str, Any]) -> str:
    """Player input and model response of the current turn, joined."""
    return f"{context.get('current_input', '')} {context.get('current_response', '')}"


def contains_keyword(text: str, keywords: list[str] | tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(k.lower() in lowered for k in keywords)


def active_card_list(context: dict[str, Any]) -> list[Card]:
    return [c if isinstance(c, Card) else Card.model_validate(c)
            for c in context.get("active_cards") or []]
