"""Core domain models.

Cards, sessions and turn records are pydantic models; every storage function
and engine component reads and writes these types. Validation happens at the
model boundary, so a bad enum value never reaches the JSON files.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

CardType = Literal["Character", "Location", "World", "Time", "Mood"]
Rarity = Literal["Common", "Bronze", "Silver", "Gold"]
CardSource = Literal["user", "system", "default", "auto_generated"]

CARD_TYPES: tuple[str, ...] = ("Character", "Location", "World", "Time", "Mood")
RARITIES: tuple[str, ...] = ("Common", "Bronze", "Silver", "Gold")

RARITY_MAX_KNOWLEDGE = {"Common": 2, "Bronze": 3, "Silver": 4, "Gold": 5}

# Only these fields may change on system/default cards.
USAGE_STAT_FIELDS = frozenset({"times_used", "last_used"})
IMMUTABLE_SOURCES = frozenset({"system", "default"})


def max_knowledge_for(rarity: str) -> int:
    return RARITY_MAX_KNOWLEDGE.get(rarity, 2)


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class Trigger(BaseModel):
    """A declarative rule consumed by the script pipeline.

    `on_mention`: `condition` text appearing in the turn activates `target`
    (or the owning card when no target is set).
    `on_quest_complete`: `condition` text appearing completes a quest.
    """

    type: str
    condition: str = ""
    action: str = ""
    target: int | None = None


class Card(BaseModel):
    """A reusable narrative fragment."""

    id: int
    name: str
    type: CardType
    rarity: Rarity
    source: CardSource = "user"
    prompt_text: str = ""
    compressed_prompt: str | None = None
    knowledge_level: int = 1
    max_knowledge_level: int = 2
    progression_points: int = 0
    possession_state: bool = False  # companion flag, Character cards only
    parent_card_ids: list[int] = Field(default_factory=list)
    linked_card_ids: list[int] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    triggers: list[Trigger] = Field(default_factory=list)
    unlock_conditions: dict[str, Any] = Field(default_factory=dict)
    times_used: int = 0
    last_used: str | None = None
    created_at: str = Field(default_factory=utcnow)
    updated_at: str = Field(default_factory=utcnow)

    @property
    def is_editable(self) -> bool:
        return self.source not in IMMUTABLE_SOURCES

    @property
    def is_deletable(self) -> bool:
        return self.source not in IMMUTABLE_SOURCES


class Session(BaseModel):
    """One story's running state."""

    id: int
    name: str = "New Story"
    active_cards: list[int] = Field(default_factory=list)
    story_memory: dict[str, Any] = Field(default_factory=dict)
    quest_progress: dict[str, Any] = Field(default_factory=dict)
    # script-owned context fields written back after each pipeline run
    script_state: dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utcnow)
    updated_at: str = Field(default_factory=utcnow)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class StoryTurn(BaseModel, frozen=True):
    """Immutable append-only record of one player-input → response exchange."""

    session_id: int
    turn_number: int
    player_input: str
    llm_response: str
    system_prompt: str
    token_count: int = 0
    created_at: str = Field(default_factory=utcnow)
