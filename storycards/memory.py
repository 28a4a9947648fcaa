"""Story memory: a bounded rolling log of key events and facts.

Persisted on the session as plain data. `to_dict()` and `from_dict()` are
exact inverses, so loading and re-saving a session never changes its memory.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from storycards.models import utcnow

MAX_RECENT_EVENTS = 5


class MemoryEvent(BaseModel):
    description: str
    importance: str = "normal"
    timestamp: str = Field(default_factory=utcnow)


class StoryMemory(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_location: str | None = Field(default=None, alias="currentLocation")
    recent_events: list[MemoryEvent] = Field(default_factory=list, alias="recentEvents")
    established_facts: list[str] = Field(default_factory=list, alias="establishedFacts")
    quest_progress: dict[str, int] = Field(default_factory=dict, alias="questProgress")

    def add_event(self, description: str, importance: str = "normal") -> MemoryEvent:
        """Append an event; oldest events fall off past MAX_RECENT_EVENTS.

        Critical events are also promoted to established facts.
        """
        event = MemoryEvent(description=description, importance=importance)
        self.recent_events.append(event)
        if len(self.recent_events) > MAX_RECENT_EVENTS:
            del self.recent_events[: len(self.recent_events) - MAX_RECENT_EVENTS]
        if importance == "critical":
            self.add_established_fact(description)
        return event

    def add_established_fact(self, fact: str) -> None:
        if fact not in self.established_facts:
            self.established_facts.append(fact)

    def set_location(self, location: str | None) -> None:
        self.current_location = location

    def set_quest_progress(self, quest: str, percent: int) -> None:
        self.quest_progress[quest] = max(0, min(100, int(percent)))

    @property
    def is_empty(self) -> bool:
        return not (
            self.current_location
            or self.recent_events
            or self.established_facts
            or self.quest_progress
        )

    def build_memory_prompt(self) -> str:
        """Render the memory block; empty sections are left out, empty memory is ''."""
        if self.is_empty:
            return ""
        sections: list[str] = []
        if self.current_location:
            sections.append(f"Current Location: {self.current_location}")
        if self.established_facts:
            sections.append(
                "Established Facts:\n" + "\n".join(f"- {f}" for f in self.established_facts)
            )
        if self.recent_events:
            sections.append(
                "Recent Events:\n" + "\n".join(f"- {e.description}" for e in self.recent_events)
            )
        if self.quest_progress:
            sections.append(
                "Active Quests:\n"
                + "\n".join(f"- {name}: {pct}%" for name, pct in self.quest_progress.items())
            )
        return "=== STORY MEMORY ===\n" + "\n\n".join(sections)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> StoryMemory:
        return cls.model_validate(data or {})
