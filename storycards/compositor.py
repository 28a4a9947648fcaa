"""Prompt compositor: active cards → one bounded system prompt.

Two layouts:

  focus-based (a focus card exists)
    TONE & ATMOSPHERE   mood cards, full text
    WORLD RULES & LORE  world cards not on the ancestor chain, full text
    CONTEXT             ancestor chain root-first, one essence line each
    CURRENT FOCUS       the focus card, full text
    ALSO PRESENT        remaining active cards, full text
    ALSO AVAILABLE      up to 5 inactive cards sharing an ancestor, names only
    STORY MEMORY

  standard (no focus card)
    cards grouped by type in Mood, World, Location, Time, Character order

The ancestor chain follows parent index 0 only (the primary path), at most
5 levels. Token counts everywhere are estimated at 4 characters per token.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable

from storycards.cards import CardGraph
from storycards.memory import StoryMemory
from storycards.models import Card

logger = logging.getLogger(__name__)

BASE_INSTRUCTIONS = """You are an interactive storytelling AI. Your role is to create an engaging, immersive narrative experience.

Guidelines:
- Respond to the player's actions with vivid, descriptive prose
- Stay consistent with the established world, characters, and events
- Allow player agency - their choices should matter
- Keep responses focused and around 150-250 words
- End with a clear situation that invites player action
- Never break character or acknowledge you're an AI"""

OPEN_ENDED_PROMPT = "Begin an open-ended adventure based on the player's first action."

FOCUS_PRIORITY = ("Location", "Character", "Time", "World", "Mood")
STANDARD_ORDER = ("Mood", "World", "Location", "Time", "Character")

DEFAULT_TOKEN_BUDGET = 4000
CHARS_PER_TOKEN = 4
MAX_CHAIN_DEPTH = 5
MAX_AVAILABLE_HINTS = 5
ESSENCE_LIMIT = 200


def estimate_tokens(text: str | None) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def compress_to_essence(card: Card) -> str:
    """Short deterministic rendering of a card for non-focus context."""
    if card.compressed_prompt:
        return card.compressed_prompt
    text = card.prompt_text or ""
    if len(text) <= ESSENCE_LIMIT:
        return text
    first_paragraph = text.split("\n\n", 1)[0]
    if len(first_paragraph) <= ESSENCE_LIMIT:
        return first_paragraph
    return text[: ESSENCE_LIMIT - 3] + "..."


def _section(title: str, body: str) -> str:
    return f"=== {title} ===\n{body}"


def _character_line(card: Card) -> str:
    suffix = " (traveling with player)" if card.possession_state else ""
    return f"{card.name}{suffix}:\n{card.prompt_text or ''}"


class PromptCompositor:
    def __init__(
        self,
        graph: CardGraph,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
        base_instructions: str = BASE_INSTRUCTIONS,
    ) -> None:
        self._graph = graph
        self.token_budget = token_budget
        self.base_instructions = base_instructions

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_system_prompt(
        self,
        active_cards: list[Card],
        focus_card_id: int | None = None,
        story_memory: StoryMemory | None = None,
        use_focus: bool = True,
    ) -> str:
        """Compose the system prompt.

        With `use_focus=False` the standard grouped-by-type layout is used
        regardless of which cards are active.
        """
        if not active_cards:
            parts = [self.base_instructions, OPEN_ENDED_PROMPT]
            if story_memory is not None and not story_memory.is_empty:
                parts.append(story_memory.build_memory_prompt())
            return "\n\n".join(parts)

        focus = self.select_focus(active_cards, focus_card_id) if use_focus else None
        if focus is not None:
            sections = self._focus_sections(active_cards, focus)
            prompt = self._assemble(sections, story_memory)
            if estimate_tokens(prompt) > self.token_budget:
                logger.warning(
                    "prompt over budget (%d > %d tokens); compressing secondary cards",
                    estimate_tokens(prompt), self.token_budget,
                )
                sections = self._focus_sections(active_cards, focus, compact=True)
                prompt = self._assemble(sections, story_memory)
        else:
            prompt = self._assemble(self._standard_sections(active_cards), story_memory)

        logger.debug("built system prompt: %d chars, ~%d tokens",
                     len(prompt), estimate_tokens(prompt))
        return prompt

    def select_focus(self, active_cards: list[Card], focus_card_id: int | None = None) -> Card | None:
        """Explicit focus if given, else the first card of the highest-priority type."""
        if focus_card_id is not None:
            for card in active_cards:
                if card.id == focus_card_id:
                    return card
            explicit = self._graph.find(focus_card_id)
            if explicit is not None:
                return explicit
        for card_type in FOCUS_PRIORITY:
            for card in active_cards:
                if card.type == card_type:
                    return card
        return active_cards[0] if active_cards else None

    def ancestor_chain(self, card: Card) -> list[Card]:
        """Primary-parent chain above `card`, root first."""
        chain: list[Card] = []
        visited = {card.id}
        current = card
        for _ in range(MAX_CHAIN_DEPTH):
            if not current.parent_card_ids:
                break
            parent_id = current.parent_card_ids[0]
            if parent_id in visited:
                break
            parent = self._graph.find(parent_id)
            if parent is None:
                break
            visited.add(parent_id)
            chain.append(parent)
            current = parent
        chain.reverse()
        return chain

    def available_cards(self, focus: Card, active_ids: Iterable[int], limit: int = MAX_AVAILABLE_HINTS) -> list[Card]:
        """Inactive cards that share an ancestor with `focus`, nearest ancestor first."""
        ancestors = self._graph.get_ancestors(focus.id)
        excluded = set(active_ids) | {focus.id} | {a.id for a in ancestors}
        found: list[Card] = []
        seen: set[int] = set()
        for ancestor in ancestors:
            for relative in self._graph.get_descendants(ancestor.id):
                if relative.id in excluded or relative.id in seen:
                    continue
                seen.add(relative.id)
                found.append(relative)
                if len(found) >= limit:
                    return found
        return found

    def get_token_report(self, system_prompt: str, active_cards: list[Card]) -> dict[str, Any]:
        return {
            "total": estimate_tokens(system_prompt),
            "breakdown": {
                "baseInstructions": estimate_tokens(self.base_instructions),
                "cards": [
                    {
                        "id": c.id,
                        "name": c.name,
                        "type": c.type,
                        "tokens": estimate_tokens(c.prompt_text),
                    }
                    for c in active_cards
                ],
            },
        }

    # ------------------------------------------------------------------
    # Layouts
    # ------------------------------------------------------------------

    def _focus_sections(self, active_cards: list[Card], focus: Card, compact: bool = False) -> list[str]:
        chain = self.ancestor_chain(focus)
        chain_ids = {c.id for c in chain}
        classified = chain_ids | {focus.id}

        moods = [c for c in active_cards if c.type == "Mood" and c.id != focus.id]
        worlds = [
            c for c in active_cards
            if c.type == "World" and c.id not in classified
        ]
        classified |= {c.id for c in moods} | {c.id for c in worlds}
        others = [c for c in active_cards if c.id not in classified]

        sections: list[str] = []
        if moods:
            sections.append(_section(
                "TONE & ATMOSPHERE", "\n\n".join(c.prompt_text or "" for c in moods)
            ))
        if worlds:
            sections.append(_section(
                "WORLD RULES & LORE", "\n\n".join(c.prompt_text or "" for c in worlds)
            ))
        if chain:
            sections.append(_section(
                "CONTEXT", "\n".join(f"- {c.name}: {compress_to_essence(c)}" for c in chain)
            ))
        sections.append(_section(
            "CURRENT FOCUS", f"{focus.type}: {focus.name}\n{focus.prompt_text or ''}"
        ))
        if others:
            if compact:
                body = "\n".join(f"- {c.name}: {compress_to_essence(c)}" for c in others)
            else:
                body = "\n\n".join(
                    _character_line(c) if c.type == "Character" else f"{c.name}:\n{c.prompt_text or ''}"
                    for c in others
                )
            sections.append(_section("ALSO PRESENT", body))
        if not compact:
            hints = self.available_cards(focus, (c.id for c in active_cards))
            if hints:
                sections.append(_section(
                    "ALSO AVAILABLE (not loaded)",
                    "\n".join(f"- {c.name} ({c.type})" for c in hints),
                ))
        return sections

    def _standard_sections(self, active_cards: list[Card]) -> list[str]:
        titles = {
            "Mood": "TONE & ATMOSPHERE",
            "World": "WORLD RULES & LORE",
            "Location": "LOCATION",
            "Time": "TIME",
            "Character": "CHARACTERS IN SCENE",
        }
        sections: list[str] = []
        for card_type in STANDARD_ORDER:
            group = [c for c in active_cards if c.type == card_type]
            if not group:
                continue
            if card_type == "Character":
                body = "\n\n".join(_character_line(c) for c in group)
            else:
                body = "\n\n".join(c.prompt_text or "" for c in group)
            sections.append(_section(titles[card_type], body))
        return sections

    def _assemble(self, sections: list[str], story_memory: StoryMemory | None) -> str:
        parts = [self.base_instructions, *sections]
        if story_memory is not None and not story_memory.is_empty:
            parts.append(story_memory.build_memory_prompt())
        return "\n\n".join(parts)
