"""Inventory tracking from free text.

Acquisition and loss are detected with verb patterns ("picks up the lantern",
"drops the key"); currency amounts are reported but never added to the
inventory, since the text alone can't say whether they were gained or spent.
Active cards tagged `item` are always listed in the inventory.
"""

from __future__ import annotations

import re
from typing import Any

from storycards.models import utcnow
from storycards.pipeline.base import ScriptOutput, active_card_list, turn_text

_ITEM_TAIL = r"([a-zA-Z\s]+?)(?:\.|,|!|\?|$)"

ACQUIRE_PATTERNS = (
    re.compile(
        r"(?:receives?|obtains?|finds?|picks?\s*up|takes?|grabs?|gets?)\s+"
        r"(?:a\s+|an\s+|the\s+)?" + _ITEM_TAIL,
        re.IGNORECASE,
    ),
    re.compile(r"(?:given|handed|awarded)\s+(?:a\s+|an\s+|the\s+)?" + _ITEM_TAIL, re.IGNORECASE),
)

LOSE_PATTERNS = (
    re.compile(
        r"(?:loses?|drops?|gives?\s*away|uses?\s*up|breaks?|destroys?)\s+(?:the\s+)?" + _ITEM_TAIL,
        re.IGNORECASE,
    ),
)

CURRENCY_PATTERN = re.compile(
    r"(\d+)\s*(gold|silver|copper|coins?|dollars?|credits?|gems?)", re.IGNORECASE
)

COMMON_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "it", "this", "that", "these", "those",
    "is", "are", "was", "were", "be", "been", "being", "have", "has",
    "had", "do", "does", "did", "will", "would", "could", "should",
    "may", "might", "must", "shall", "can", "need", "dare", "ought",
    "used", "way", "look", "something", "nothing", "everything", "anything",
})


def _is_item_name(name: str) -> bool:
    return 2 < len(name) < 30 and name not in COMMON_WORDS


class PossessionScript:
    name = "possession-tracking"
    description = "Track items and possessions mentioned in the story"

    async def execute(self, context: dict[str, Any]) -> ScriptOutput:
        inventory = context.get("inventory") or {}
        inventory.setdefault("items", [])
        inventory.setdefault("currencies", {})
        items: list[dict[str, Any]] = inventory["items"]
        text = turn_text(context)
        output = ScriptOutput()

        for pattern in ACQUIRE_PATTERNS:
            for match in pattern.finditer(text):
                name = match.group(1).strip().lower()
                if not _is_item_name(name) or any(i["name"] == name for i in items):
                    continue
                items.append({"name": name, "acquired": utcnow(), "source": "story"})
                output.events.append({"type": "item_acquired", "item": name})
                output.notifications.append({"type": "info", "message": f"Item acquired: {name}"})

        for pattern in LOSE_PATTERNS:
            for match in pattern.finditer(text):
                name = match.group(1).strip().lower()
                for i, item in enumerate(items):
                    if item["name"] == name:
                        del items[i]
                        output.events.append({"type": "item_lost", "item": name})
                        output.notifications.append(
                            {"type": "warning", "message": f"Item lost: {name}"}
                        )
                        break

        for match in CURRENCY_PATTERN.finditer(text):
            currency = match.group(2).lower()
            if currency.endswith("s"):
                currency = currency[:-1]
            inventory["currencies"].setdefault(currency, 0)
            output.events.append(
                {"type": "currency_mentioned", "currency": currency, "amount": int(match.group(1))}
            )

        for card in active_card_list(context):
            if "item" in card.tags and not any(i.get("card_id") == card.id for i in items):
                items.append(
                    {"name": card.name, "card_id": card.id, "acquired": utcnow(), "source": "card"}
                )

        output.context_updates["inventory"] = inventory
        return output
