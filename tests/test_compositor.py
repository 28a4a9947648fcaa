"""Tests for storycards.compositor: PromptCompositor."""

import pytest

from storycards.compositor import (
    BASE_INSTRUCTIONS,
    OPEN_ENDED_PROMPT,
    PromptCompositor,
    compress_to_essence,
    estimate_tokens,
)
from storycards.memory import StoryMemory
from storycards.models import Card


def _make(graph, name, type, text="", **extra):
    return graph.create({"name": name, "type": type, "rarity": "Common", "prompt_text": text, **extra})


@pytest.fixture
def compositor(graph) -> PromptCompositor:
    return PromptCompositor(graph)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens(None) == 0


class TestEssence:
    def _card(self, text: str, compressed: str | None = None) -> Card:
        return Card(id=1, name="X", type="World", rarity="Common",
                    prompt_text=text, compressed_prompt=compressed)

    def test_compressed_prompt_wins(self) -> None:
        assert compress_to_essence(self._card("long text", "short")) == "short"

    def test_short_text_unchanged(self) -> None:
        assert compress_to_essence(self._card("A quiet village.")) == "A quiet village."

    def test_first_paragraph_when_it_fits(self) -> None:
        text = "First paragraph.\n\n" + "x" * 300
        assert compress_to_essence(self._card(text)) == "First paragraph."

    def test_truncated_with_ellipsis(self) -> None:
        essence = compress_to_essence(self._card("y" * 450))
        assert len(essence) == 200
        assert essence.endswith("...")


# ---------------------------------------------------------------------------
# Focus layout
# ---------------------------------------------------------------------------

class TestFocusLayout:
    def test_no_cards_is_open_ended(self, compositor) -> None:
        prompt = compositor.build_system_prompt([])
        assert prompt == f"{BASE_INSTRUCTIONS}\n\n{OPEN_ENDED_PROMPT}"

    def test_mood_then_location_focus(self, graph, compositor) -> None:
        dark = _make(graph, "Dark", "Mood", "Shadows everywhere.")
        tavern = _make(graph, "Tavern", "Location", "A smoky common room.")
        prompt = compositor.build_system_prompt([dark, tavern])

        assert prompt.startswith(BASE_INSTRUCTIONS)
        tone = prompt.index("=== TONE & ATMOSPHERE ===\nShadows everywhere.")
        focus = prompt.index("=== CURRENT FOCUS ===\nLocation: Tavern\nA smoky common room.")
        assert tone < focus

    def test_focus_priority(self, graph, compositor) -> None:
        night = _make(graph, "Night", "Time")
        hero = _make(graph, "Ayla", "Character")
        world = _make(graph, "Realm", "World")
        assert compositor.select_focus([night, world, hero]).id == hero.id
        assert compositor.select_focus([world, night]).id == night.id

    def test_explicit_focus(self, graph, compositor) -> None:
        tavern = _make(graph, "Tavern", "Location")
        hero = _make(graph, "Ayla", "Character", "A sellsword.")
        prompt = compositor.build_system_prompt([tavern, hero], focus_card_id=hero.id)
        assert "=== CURRENT FOCUS ===\nCharacter: Ayla\nA sellsword." in prompt
        assert "=== ALSO PRESENT ===\nTavern:" in prompt

    def test_ancestor_chain_root_first(self, graph, compositor) -> None:
        world = _make(graph, "Realm", "World", "Five kingdoms.")
        city = _make(graph, "Harbor City", "Location", "A trading port.", parent_card_ids=[world.id])
        dock = _make(graph, "Dock Seven", "Location", "Rotting piers.", parent_card_ids=[city.id])

        assert [c.id for c in compositor.ancestor_chain(dock)] == [world.id, city.id]
        prompt = compositor.build_system_prompt([dock])
        context = prompt.index("=== CONTEXT ===\n- Realm: Five kingdoms.\n- Harbor City: A trading port.")
        assert context < prompt.index("=== CURRENT FOCUS ===\nLocation: Dock Seven\nRotting piers.")

    def test_chain_follows_first_parent_only(self, graph, compositor) -> None:
        primary = _make(graph, "Primary", "World")
        secondary = _make(graph, "Secondary", "World")
        focus = _make(graph, "Spot", "Location", parent_card_ids=[primary.id, secondary.id])
        assert [c.name for c in compositor.ancestor_chain(focus)] == ["Primary"]

    def test_active_world_on_chain_not_repeated(self, graph, compositor) -> None:
        world = _make(graph, "Realm", "World", "Five kingdoms.")
        spot = _make(graph, "Spot", "Location", "A clearing.", parent_card_ids=[world.id])
        prompt = compositor.build_system_prompt([world, spot])
        assert "WORLD RULES & LORE" not in prompt
        assert "- Realm: Five kingdoms." in prompt

    def test_available_hints_for_siblings(self, graph, compositor) -> None:
        world = _make(graph, "Realm", "World")
        market = _make(graph, "Market", "Location", parent_card_ids=[world.id])
        _make(graph, "Docks", "Location", parent_card_ids=[world.id])
        prompt = compositor.build_system_prompt([market])
        assert "=== ALSO AVAILABLE (not loaded) ===\n- Docks (Location)" in prompt
        assert "- Market (Location)" not in prompt

    def test_missing_prompt_text_is_empty(self, graph, compositor) -> None:
        spot = _make(graph, "Spot", "Location")
        assert "=== CURRENT FOCUS ===\nLocation: Spot\n" in compositor.build_system_prompt([spot])

    def test_memory_appended_last(self, graph, compositor) -> None:
        spot = _make(graph, "Spot", "Location", "A clearing.")
        memory = StoryMemory()
        memory.add_event("Found a map")
        prompt = compositor.build_system_prompt([spot], story_memory=memory)
        assert prompt.endswith("=== STORY MEMORY ===\nRecent Events:\n- Found a map")

    def test_over_budget_switches_to_essences(self, graph) -> None:
        world = _make(graph, "Realm", "World")
        focus = _make(graph, "Market", "Location", "Stalls.", parent_card_ids=[world.id])
        _make(graph, "Docks", "Location", parent_card_ids=[world.id])
        bulky = _make(graph, "Ayla", "Character", "z" * 2000)
        compositor = PromptCompositor(graph, token_budget=50)

        prompt = compositor.build_system_prompt([focus, bulky])
        assert "=== ALSO PRESENT ===\n- Ayla: " + "z" * 197 + "..." in prompt
        assert "ALSO AVAILABLE" not in prompt
        assert "z" * 300 not in prompt


# ---------------------------------------------------------------------------
# Standard layout
# ---------------------------------------------------------------------------

class TestStandardLayout:
    def test_grouped_by_type(self, graph, compositor) -> None:
        hero = _make(graph, "Ayla", "Character", "A sellsword.", possession_state=True)
        night = _make(graph, "Night", "Time", "Stars out.")
        dark = _make(graph, "Dark", "Mood", "Ominous.")
        prompt = compositor.build_system_prompt([hero, night, dark], use_focus=False)

        order = [
            prompt.index("=== TONE & ATMOSPHERE ==="),
            prompt.index("=== TIME ===\nStars out."),
            prompt.index("=== CHARACTERS IN SCENE ===\nAyla (traveling with player):\nA sellsword."),
        ]
        assert order == sorted(order)
        assert "CURRENT FOCUS" not in prompt


def test_token_report(graph, compositor) -> None:
    spot = _make(graph, "Spot", "Location", "abcdefgh")
    prompt = compositor.build_system_prompt([spot])
    report = compositor.get_token_report(prompt, [spot])
    assert report["total"] == estimate_tokens(prompt)
    assert report["breakdown"]["baseInstructions"] == estimate_tokens(BASE_INSTRUCTIONS)
    assert report["breakdown"]["cards"] == [
        {"id": spot.id, "name": "Spot", "type": "Location", "tokens": 2}
    ]
