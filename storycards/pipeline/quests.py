"""Quest tracking.

Quests complete when an active card's `on_quest_complete` trigger condition
shows up in the turn text. Character cards and cards tagged `quest` are kept
as objectives with a running mention count.
"""

from __future__ import annotations

from typing import Any

from storycards.models import utcnow
from storycards.pipeline.base import ScriptOutput, active_card_list, contains_keyword, turn_text

QUEST_KEYWORDS = (
    "must find", "needs to", "has to", "quest", "mission",
    "objective", "goal", "task", "journey to", "search for",
    "rescue", "defeat", "discover", "collect",
)


def quest_id(card_id: int, condition: str) -> str:
    return f"{card_id}-{condition}"


class QuestTrackingScript:
    name = "quest-tracking"
    description = "Track quest objectives and story progress"

    async def execute(self, context: dict[str, Any]) -> ScriptOutput:
        state = context.get("quest_state") or {}
        state.setdefault("active_quests", [])
        state.setdefault("completed_quests", [])
        state.setdefault("objectives", {})
        text = turn_text(context)
        output = ScriptOutput()

        for card in active_card_list(context):
            for trigger in card.triggers:
                if trigger.type != "on_quest_complete" or not trigger.condition:
                    continue
                if not contains_keyword(text, [trigger.condition]):
                    continue
                qid = quest_id(card.id, trigger.condition)
                if qid in state["completed_quests"]:
                    continue
                state["completed_quests"].append(qid)
                state["active_quests"] = [q for q in state["active_quests"] if q.get("id") != qid]
                output.events.append({
                    "type": "quest_completed",
                    "quest_id": qid,
                    "card_id": card.id,
                    "card_name": card.name,
                    "condition": trigger.condition,
                })
                output.notifications.append(
                    {"type": "success", "message": f"Quest completed: {trigger.condition}"}
                )

            if card.type == "Character" or "quest" in card.tags:
                key = f"card-{card.id}"
                objective = state["objectives"].setdefault(key, {
                    "card_id": card.id,
                    "card_name": card.name,
                    "mention_count": 0,
                    "first_seen": utcnow(),
                    "last_seen": None,
                    "status": "active",
                })
                if contains_keyword(text, [card.name]):
                    objective["mention_count"] += 1
                    objective["last_seen"] = utcnow()

        for keyword in QUEST_KEYWORDS:
            if contains_keyword(text, [keyword]):
                output.events.append({"type": "potential_quest_detected", "keyword": keyword})
                break

        output.context_updates["quest_state"] = state
        return output
