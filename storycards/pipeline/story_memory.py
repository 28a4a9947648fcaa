"""Track key events and recurring names in the model's responses.

Best-effort heuristics: a keyphrase hit becomes a key event (the phrase with
up to 50 characters of context on each side), and capitalized words that are
not common sentence starters are counted as character mentions.
"""

from __future__ import annotations

import re
from typing import Any

from storycards.models import utcnow
from storycards.pipeline.base import ScriptOutput

MAX_KEY_EVENTS = 20
SUMMARY_AFTER_TURNS = 10

KEY_PHRASES = (
    r"discovers?\s+that",
    r"reveals?\s+that",
    r"decides?\s+to",
    r"promises?\s+to",
    r"suddenly",
    r"finally",
    r"realizes?\s+that",
    r"confronts?",
    r"defeats?",
    r"\b(?:dies?|death|killed)\b",
    r"\b(?:married|marries|wedding)\b",
    r"\b(?:born|birth)\b",
    r"\b(?:war|battle|fight)",
)

NOT_NAMES = frozenset({
    "The", "This", "That", "These", "Those", "There", "Here",
    "What", "When", "Where", "Why", "How", "Which", "Who",
    "Then", "Now", "Soon", "Later", "Before", "After",
    "Yes", "No", "But", "And", "Or", "So", "If",
})


def extract_key_event(text: str) -> str | None:
    for phrase in KEY_PHRASES:
        match = re.search(rf".{{0,50}}(?:{phrase}).{{0,50}}", text, re.IGNORECASE)
        if match:
            return match.group(0).strip()
    return None


def extract_characters(text: str) -> list[str]:
    words = re.findall(r"\b[A-Z][a-z]+\b", text)
    return list(dict.fromkeys(w for w in words if w not in NOT_NAMES))


def summarize(memory: dict[str, Any]) -> str:
    parts = []
    if memory["key_events"]:
        recent = memory["key_events"][-5:]
        parts.append("Recent events: " + "; ".join(e["event"] for e in recent))
    ranked = sorted(
        memory["characters"].items(), key=lambda kv: kv[1]["mention_count"], reverse=True
    )
    if ranked:
        parts.append("Key characters: " + ", ".join(name for name, _ in ranked[:5]))
    return "\n".join(parts)


class StoryMemoryScript:
    name = "story-memory"
    description = "Records key events and character mentions from the story"

    async def execute(self, context: dict[str, Any]) -> ScriptOutput:
        memory = context.get("story_memory") or {}
        memory.setdefault("key_events", [])
        memory.setdefault("characters", {})
        history = context.get("story_history") or []
        response = context.get("current_response") or ""
        output = ScriptOutput()

        event = extract_key_event(response) if response else None
        if event:
            memory["key_events"].append(
                {"event": event, "turn": len(history), "timestamp": utcnow()}
            )
            del memory["key_events"][:-MAX_KEY_EVENTS]
            output.events.append({"type": "key_event_recorded", "event": event})

        now = utcnow()
        for name in extract_characters(response):
            state = memory["characters"].get(name)
            if state is None:
                memory["characters"][name] = {
                    "first_mentioned": now, "last_mentioned": now, "mention_count": 1,
                }
            else:
                state["last_mentioned"] = now
                state["mention_count"] += 1

        summary = summarize(memory) if len(history) > SUMMARY_AFTER_TURNS else None
        output.context_updates = {"story_memory": memory, "memory_summary": summary}
        return output
