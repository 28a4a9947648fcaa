"""Built-in cards.

SYSTEM_CARDS are read-only, undeletable starter cards with deliberately broad
descriptions. DEFAULT_CARDS are the richer sample set a fresh install starts
with; they are undeletable too but can be cloned.
"""

from __future__ import annotations

import logging
from typing import Any

from storycards.cards import CardGraph

logger = logging.getLogger(__name__)


def _system(name: str, type: str, prompt_text: str, tags: list[str]) -> dict[str, Any]:
    return {
        "name": name,
        "type": type,
        "rarity": "Common",
        "source": "system",
        "prompt_text": prompt_text,
        "tags": tags,
    }


SYSTEM_CARDS: list[dict[str, Any]] = [
    # Locations: nature
    _system("Swamp", "Location",
            "A murky wetland with dark water, tangled vegetation, and an atmosphere of mystery.",
            ["nature", "water", "outdoor"]),
    _system("Forest", "Location",
            "Dense woods with trees, undergrowth, and dappled light.",
            ["nature", "outdoor"]),
    _system("Cave", "Location",
            "A dark underground tunnel or cavern, cool and enclosed.",
            ["nature", "indoor", "underground"]),
    _system("Mountain", "Location",
            "A rocky peak rising above the surrounding terrain, rugged and imposing.",
            ["nature", "outdoor", "elevated"]),
    # Locations: settlements
    _system("Tavern", "Location",
            "A local pub where travelers and locals gather for drink and conversation.",
            ["building", "indoor", "social"]),
    _system("Road", "Location",
            "A dirt path connecting places, traveled by foot, horse, or cart.",
            ["outdoor", "travel"]),
    _system("Castle", "Location",
            "A stone fortress with walls, towers, and an air of authority.",
            ["building", "indoor", "fortified"]),
    _system("Village", "Location",
            "A small settlement with simple homes and a close-knit community.",
            ["outdoor", "settlement", "rural"]),
    _system("Market", "Location",
            "Busy stalls where merchants sell goods and crowds browse wares.",
            ["outdoor", "social", "commerce"]),
    # Times
    _system("Morning", "Time",
            "Early daylight hours. The day begins, fresh and new.",
            ["daytime"]),
    _system("Night", "Time",
            "Dark hours. Stars or city lights, a different world emerges.",
            ["nighttime"]),
    _system("Dusk", "Time",
            "Fading sun. The transition from day to night, shadows lengthening.",
            ["transition"]),
]

DEFAULT_CARDS: list[dict[str, Any]] = [
    {
        "name": "Medieval Fantasy Setting",
        "type": "World",
        "rarity": "Gold",
        "source": "default",
        "prompt_text": (
            "This is a medieval fantasy world with magic, knights, and ancient kingdoms. "
            "Magic is rare but powerful, practiced by trained wizards. The land is divided "
            "into five kingdoms, each with their own culture and customs. Dragons are "
            "legendary creatures, rarely seen but deeply feared."
        ),
    },
    {
        "name": "Dark and Mysterious",
        "type": "Mood",
        "rarity": "Bronze",
        "source": "default",
        "prompt_text": (
            "The atmosphere should be dark, mysterious, and slightly ominous. Shadows lurk "
            "in corners, and danger feels ever-present. Create tension and suspense in your "
            "descriptions."
        ),
    },
    {
        "name": "Tavern Quarter",
        "type": "Location",
        "rarity": "Silver",
        "source": "default",
        "prompt_text": (
            "A bustling district filled with inns, taverns, and alehouses. The cobblestone "
            "streets are crowded with travelers, merchants, and locals. Lanterns cast a warm "
            "glow in the evening. The smell of roasted meat and ale fills the air."
        ),
    },
    {
        "name": "Evening Time",
        "type": "Time",
        "rarity": "Common",
        "source": "default",
        "prompt_text": (
            "It is evening, with the sun setting on the horizon. Shadows grow longer and "
            "the air cools. People begin to light lanterns and candles."
        ),
    },
]


# child name → parent names, resolved against seeded cards
SEED_PARENTS: dict[str, list[str]] = {
    "Tavern Quarter": ["Medieval Fantasy Setting"],
}


def seed_cards(graph: CardGraph) -> int:
    """Insert any built-in card not already present. Returns the number created."""
    ids = {(c.source, c.name): c.id for c in graph.list_all()}
    created = 0
    for data in [*SYSTEM_CARDS, *DEFAULT_CARDS]:
        key = (data["source"], data["name"])
        if key in ids:
            continue
        parents = [
            ids[(data["source"], name)]
            for name in SEED_PARENTS.get(data["name"], [])
            if (data["source"], name) in ids
        ]
        card = graph.create({**data, "parent_card_ids": parents})
        ids[key] = card.id
        created += 1
    logger.info("seeded %d built-in cards", created)
    return created
