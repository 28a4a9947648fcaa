"""Tests for storycards.models."""

import pydantic
import pytest

from storycards.models import Card, Session, StoryTurn, Trigger, max_knowledge_for


# ---------------------------------------------------------------------------
# Card
# ---------------------------------------------------------------------------

class TestCard:
    def test_defaults(self) -> None:
        card = Card(id=1, name="Tavern", type="Location", rarity="Common")
        assert card.source == "user"
        assert card.prompt_text == ""
        assert card.knowledge_level == 1
        assert card.parent_card_ids == []
        assert card.triggers == []
        assert card.times_used == 0
        assert card.last_used is None

    def test_invalid_type_rejected(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            Card(id=1, name="X", type="Item", rarity="Common")

    def test_invalid_rarity_rejected(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            Card(id=1, name="X", type="Mood", rarity="Legendary")

    @pytest.mark.parametrize("source,editable", [
        ("user", True),
        ("auto_generated", True),
        ("system", False),
        ("default", False),
    ])
    def test_editable_by_source(self, source: str, editable: bool) -> None:
        card = Card(id=1, name="X", type="Mood", rarity="Common", source=source)
        assert card.is_editable is editable
        assert card.is_deletable is editable

    def test_list_defaults_not_shared(self) -> None:
        a = Card(id=1, name="A", type="Mood", rarity="Common")
        b = Card(id=2, name="B", type="Mood", rarity="Common")
        a.tags.append("dark")
        assert b.tags == []

    def test_triggers_parsed_from_dicts(self) -> None:
        card = Card.model_validate({
            "id": 1, "name": "Gate", "type": "Location", "rarity": "Common",
            "triggers": [{"type": "on_mention", "condition": "gate", "target": 4}],
        })
        assert isinstance(card.triggers[0], Trigger)
        assert card.triggers[0].target == 4


def test_max_knowledge_by_rarity() -> None:
    assert max_knowledge_for("Common") == 2
    assert max_knowledge_for("Bronze") == 3
    assert max_knowledge_for("Silver") == 4
    assert max_knowledge_for("Gold") == 5


def test_session_defaults() -> None:
    session = Session(id=3)
    assert session.name == "New Story"
    assert session.active_cards == []
    assert session.story_memory == {}
    assert session.script_state == {}


def test_story_turn_is_frozen() -> None:
    turn = StoryTurn(
        session_id=1, turn_number=1, player_input="hi",
        llm_response="hello", system_prompt="sys",
    )
    with pytest.raises(pydantic.ValidationError):
        turn.llm_response = "changed"
