"""Card graph store: card records plus the parent/link/tag/trigger relations.

Cards form a multi-parent DAG through `parent_card_ids`. Relations are plain
id lists looked up through the card repository; nothing holds a reference to
another card object, so cycle checks are explicit reachability searches.

Mutation rules:
  - system/default cards accept only usage-stat updates (times_used, last_used)
    and can never be deleted; clone() is the way to get an editable copy.
  - add_parent() refuses any edge that would close a cycle, leaving the graph
    untouched.
  - tag/link/parent edits are idempotent set operations.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Iterable

import pydantic

from storycards.errors import (
    CycleError,
    ImmutableCardError,
    NotFoundError,
    ValidationError,
)
from storycards.models import (
    CARD_TYPES,
    RARITIES,
    USAGE_STAT_FIELDS,
    Card,
    Trigger,
    max_knowledge_for,
    utcnow,
)
from storycards.storage import CardRepository

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10

# Fields callers may patch through update(); everything else is store-owned.
_UPDATABLE_FIELDS = {
    "name", "type", "rarity", "prompt_text", "compressed_prompt",
    "knowledge_level", "progression_points", "possession_state",
    "parent_card_ids", "linked_card_ids", "tags", "triggers",
    "unlock_conditions", "times_used", "last_used",
}


def _validate_enums(data: dict[str, Any]) -> None:
    if "type" in data and data["type"] not in CARD_TYPES:
        raise ValidationError(
            f"Invalid type {data['type']!r}. Must be one of: {', '.join(CARD_TYPES)}"
        )
    if "rarity" in data and data["rarity"] not in RARITIES:
        raise ValidationError(
            f"Invalid rarity {data['rarity']!r}. Must be one of: {', '.join(RARITIES)}"
        )


def _validate_knowledge(level: Any, rarity: str) -> None:
    ceiling = max_knowledge_for(rarity)
    if isinstance(level, int) and not 0 <= level <= ceiling:
        raise ValidationError(
            f"knowledge_level {level} out of range for {rarity} card (0..{ceiling})"
        )


def _to_trigger(trigger: Trigger | dict[str, Any]) -> Trigger:
    try:
        return Trigger.model_validate(trigger)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid trigger: {e}") from e


class CardGraph:
    def __init__(self, repo: CardRepository) -> None:
        self._repo = repo

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, card_id: int) -> Card:
        card = self._repo.get_card(card_id)
        if card is None:
            raise NotFoundError("Card", card_id)
        return card

    def find(self, card_id: int) -> Card | None:
        return self._repo.get_card(card_id)

    def list_all(self) -> list[Card]:
        return self._repo.list_cards()

    def get_many(self, ids: Iterable[int]) -> list[Card]:
        return self._repo.get_cards_by_ids(ids)

    def get_by_type(self, card_type: str) -> list[Card]:
        return [c for c in self.list_all() if c.type == card_type]

    def get_by_rarity(self, rarity: str) -> list[Card]:
        return [c for c in self.list_all() if c.rarity == rarity]

    def get_by_source(self, source: str) -> list[Card]:
        return [c for c in self.list_all() if c.source == source]

    def get_by_tag(self, tag: str) -> list[Card]:
        return [c for c in self.list_all() if tag in c.tags]

    def get_all_tags(self) -> list[str]:
        return sorted({tag for c in self.list_all() for tag in c.tags})

    def get_children(self, card_id: int) -> list[Card]:
        """Cards that list `card_id` as a direct parent."""
        return [c for c in self.list_all() if card_id in c.parent_card_ids]

    def get_top_level(self) -> list[Card]:
        return [c for c in self.list_all() if not c.parent_card_ids]

    # ------------------------------------------------------------------
    # Create / update / delete / clone
    # ------------------------------------------------------------------

    def create(self, data: dict[str, Any]) -> Card:
        """Create a card. Raises ValidationError on missing or invalid fields."""
        missing = [f for f in ("name", "type", "rarity") if not data.get(f)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        _validate_enums(data)

        payload = dict(data)
        payload.setdefault("source", "user")
        payload["max_knowledge_level"] = max_knowledge_for(payload["rarity"])
        _validate_knowledge(payload.get("knowledge_level"), payload["rarity"])
        payload["parent_card_ids"] = list(dict.fromkeys(payload.get("parent_card_ids") or []))
        for parent_id in payload["parent_card_ids"]:
            if self.find(parent_id) is None:
                raise ValidationError(f"Parent card {parent_id} does not exist")
        payload.pop("created_at", None)
        payload.pop("updated_at", None)

        try:
            card = self._repo.insert_card(payload)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid card data: {e}") from e
        logger.info("created card id=%d name=%r type=%s source=%s",
                    card.id, card.name, card.type, card.source)
        return card

    def update(self, card_id: int, patch: dict[str, Any]) -> Card:
        """Apply a partial update.

        Raises NotFoundError, ImmutableCardError (system/default card and the
        patch touches anything but usage stats), ValidationError, CycleError.
        """
        card = self.get(card_id)
        if not card.is_editable:
            disallowed = sorted(set(patch) - USAGE_STAT_FIELDS)
            if disallowed:
                raise ImmutableCardError(
                    f"{card.source.capitalize()} card {card_id} cannot be edited "
                    f"({', '.join(disallowed)}). Clone the card to create an editable copy."
                )
        _validate_enums(patch)

        changes = {k: v for k, v in patch.items() if k in _UPDATABLE_FIELDS}
        if not changes:
            return card
        if "rarity" in changes:
            changes["max_knowledge_level"] = max_knowledge_for(changes["rarity"])
        if "rarity" in changes or "knowledge_level" in changes:
            _validate_knowledge(
                changes.get("knowledge_level", card.knowledge_level),
                changes.get("rarity", card.rarity),
            )
        if "parent_card_ids" in changes:
            new_parents = list(dict.fromkeys(changes["parent_card_ids"]))
            for parent_id in new_parents:
                if parent_id in card.parent_card_ids:
                    continue
                if self.find(parent_id) is None:
                    raise ValidationError(f"Parent card {parent_id} does not exist")
                if self.would_create_cycle(card_id, parent_id):
                    raise CycleError(card_id, parent_id)
            changes["parent_card_ids"] = new_parents
        changes["updated_at"] = utcnow()

        try:
            updated = Card.model_validate({**card.model_dump(), **changes})
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid card data: {e}") from e
        return self._repo.save_card(updated)

    def delete(self, card_id: int) -> None:
        card = self.get(card_id)
        if not card.is_deletable:
            raise ImmutableCardError(
                f"{card.source.capitalize()} cards cannot be deleted (card {card_id})."
            )
        self._repo.delete_card(card_id)
        logger.info("deleted card id=%d name=%r", card_id, card.name)

    def clone(self, card_id: int, overrides: dict[str, Any] | None = None) -> Card:
        """Create an editable user copy of any card.

        Knowledge resets to 1 and unlock conditions to empty; list fields are
        copied so the clone never shares state with the original.
        """
        original = self.get(card_id)
        overrides = dict(overrides or {})
        data: dict[str, Any] = {
            "name": overrides.pop("name", None) or f"{original.name} (Copy)",
            "type": original.type,
            "rarity": original.rarity,
            "prompt_text": original.prompt_text,
            "compressed_prompt": original.compressed_prompt,
            "knowledge_level": 1,
            "parent_card_ids": list(original.parent_card_ids),
            "tags": list(original.tags),
            "triggers": [t.model_dump() for t in original.triggers],
            "linked_card_ids": list(original.linked_card_ids),
            "unlock_conditions": {},
        }
        data.update(overrides)
        data["source"] = "user"
        clone = self.create(data)
        logger.info("cloned card id=%d -> id=%d", card_id, clone.id)
        return clone

    # ------------------------------------------------------------------
    # Usage and knowledge
    # ------------------------------------------------------------------

    def increment_usage(self, card_id: int) -> Card:
        card = self.get(card_id)
        return self.update(card_id, {"times_used": card.times_used + 1, "last_used": utcnow()})

    def add_progression(self, card_id: int, points: int) -> Card:
        """Add progression points; every 3 points is one knowledge level, capped by rarity."""
        card = self.get(card_id)
        total = card.progression_points + points
        level = min(total // 3, card.max_knowledge_level)
        return self.update(card_id, {"progression_points": total, "knowledge_level": level})

    # ------------------------------------------------------------------
    # Parents (DAG edges)
    # ------------------------------------------------------------------

    def would_create_cycle(self, card_id: int, parent_id: int) -> bool:
        """True if `card_id` is reachable from `parent_id` by following parent edges."""
        visited: set[int] = set()
        stack = [parent_id]
        while stack:
            current = stack.pop()
            if current == card_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            node = self.find(current)
            if node is not None:
                stack.extend(node.parent_card_ids)
        return False

    def add_parent(self, card_id: int, parent_id: int) -> Card:
        card = self.get(card_id)
        self.get(parent_id)
        if self.would_create_cycle(card_id, parent_id):
            raise CycleError(card_id, parent_id)
        if parent_id in card.parent_card_ids:
            return card
        return self.update(card_id, {"parent_card_ids": [*card.parent_card_ids, parent_id]})

    def remove_parent(self, card_id: int, parent_id: int) -> Card:
        card = self.get(card_id)
        if parent_id not in card.parent_card_ids:
            return card
        return self.update(
            card_id, {"parent_card_ids": [p for p in card.parent_card_ids if p != parent_id]}
        )

    def get_ancestors(self, card_id: int, max_depth: int = DEFAULT_MAX_DEPTH) -> list[Card]:
        """Breadth-first walk up parent edges, at most `max_depth` levels."""
        return self._walk(card_id, max_depth, lambda c: self.get_many(c.parent_card_ids))

    def get_descendants(self, card_id: int, max_depth: int = DEFAULT_MAX_DEPTH) -> list[Card]:
        """Breadth-first walk down child edges, at most `max_depth` levels."""
        return self._walk(card_id, max_depth, lambda c: self.get_children(c.id))

    def _walk(self, card_id: int, max_depth: int, step) -> list[Card]:
        start = self.get(card_id)
        found: list[Card] = []
        visited = {card_id}
        frontier = deque([start])
        depth = 0
        while frontier and depth < max_depth:
            next_level: deque[Card] = deque()
            for node in frontier:
                for neighbour in step(node):
                    if neighbour.id in visited:
                        continue
                    visited.add(neighbour.id)
                    found.append(neighbour)
                    next_level.append(neighbour)
            frontier = next_level
            depth += 1
        return found

    # ------------------------------------------------------------------
    # Tags and links
    # ------------------------------------------------------------------

    def add_tag(self, card_id: int, tag: str) -> Card:
        card = self.get(card_id)
        if tag in card.tags:
            return card
        return self.update(card_id, {"tags": [*card.tags, tag]})

    def remove_tag(self, card_id: int, tag: str) -> Card:
        card = self.get(card_id)
        if tag not in card.tags:
            return card
        return self.update(card_id, {"tags": [t for t in card.tags if t != tag]})

    def add_link(self, card_id: int, linked_id: int) -> Card:
        card = self.get(card_id)
        if linked_id in card.linked_card_ids:
            return card
        return self.update(card_id, {"linked_card_ids": [*card.linked_card_ids, linked_id]})

    def remove_link(self, card_id: int, linked_id: int) -> Card:
        card = self.get(card_id)
        if linked_id not in card.linked_card_ids:
            return card
        return self.update(
            card_id, {"linked_card_ids": [i for i in card.linked_card_ids if i != linked_id]}
        )

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def add_trigger(self, card_id: int, trigger: Trigger | dict[str, Any]) -> Card:
        card = self.get(card_id)
        trigger = _to_trigger(trigger)
        return self.update(card_id, {"triggers": [*card.triggers, trigger]})

    def update_trigger(self, card_id: int, index: int, trigger: Trigger | dict[str, Any]) -> Card:
        """Replace the trigger at `index`. Out-of-range indexes return the card unchanged."""
        card = self.get(card_id)
        if not 0 <= index < len(card.triggers):
            logger.debug("update_trigger: index %d out of range for card %d", index, card_id)
            return card
        triggers = list(card.triggers)
        triggers[index] = _to_trigger(trigger)
        return self.update(card_id, {"triggers": triggers})

    def remove_trigger(self, card_id: int, index: int) -> Card:
        """Drop the trigger at `index`. Out-of-range indexes return the card unchanged."""
        card = self.get(card_id)
        if not 0 <= index < len(card.triggers):
            logger.debug("remove_trigger: index %d out of range for card %d", index, card_id)
            return card
        triggers = list(card.triggers)
        triggers.pop(index)
        return self.update(card_id, {"triggers": triggers})
