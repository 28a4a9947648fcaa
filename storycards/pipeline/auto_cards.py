"""Auto-activate cards mentioned in the current turn."""

from __future__ import annotations

import logging
from typing import Any

from storycards.cards import CardGraph
from storycards.pipeline.base import ScriptOutput, active_card_list, contains_keyword, turn_text

logger = logging.getLogger(__name__)


class AutoCardsScript:
    name = "auto-cards"
    description = "Automatically activate cards based on mentions and triggers"

    def __init__(self, graph: CardGraph) -> None:
        self._graph = graph

    async def execute(self, context: dict[str, Any]) -> ScriptOutput:
        text = turn_text(context)
        active_ids = {c.id for c in active_card_list(context)}
        output = ScriptOutput()

        for card in self._graph.list_all():
            if card.id in active_ids or card.id in output.cards_to_activate:
                continue

            if card.name and contains_keyword(text, [card.name]):
                output.cards_to_activate.append(card.id)
                output.events.append(
                    {"type": "card_mentioned", "card_id": card.id, "card_name": card.name}
                )
                output.notifications.append(
                    {"type": "info", "message": f'Card "{card.name}" mentioned - activating'}
                )
                continue

            for trigger in card.triggers:
                if trigger.type != "on_mention" or not trigger.condition:
                    continue
                if not contains_keyword(text, [trigger.condition]):
                    continue
                target = self._trigger_target(card.id, trigger.target)
                if target in active_ids or target in output.cards_to_activate:
                    continue
                output.cards_to_activate.append(target)
                output.events.append({
                    "type": "trigger_activated",
                    "card_id": target,
                    "source_card_id": card.id,
                    "condition": trigger.condition,
                })
                output.notifications.append({
                    "type": "info",
                    "message": f'Trigger activated for "{card.name}": {trigger.condition}',
                })
                break

        output.context_updates["auto_activated_cards"] = list(output.cards_to_activate)
        return output

    def _trigger_target(self, card_id: int, target: int | None) -> int:
        if target is None:
            return card_id
        if self._graph.find(target) is None:
            logger.debug("on_mention trigger on card %d targets missing card %d; using owner",
                         card_id, target)
            return card_id
        return target
