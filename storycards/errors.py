"""Error taxonomy for the story engine.

Every error here is recoverable and reported at the turn boundary; none is
process-fatal. Callers branch on type: `NotFoundError` maps to "missing",
`ValidationError`, `ImmutableCardError` and `CycleError` to "bad request",
`GenerationError` to "the model call failed".
"""

from __future__ import annotations


class StoryCardsError(Exception):
    """Base class for all engine errors."""


class ValidationError(StoryCardsError, ValueError):
    """Malformed input to a create/update call (bad enum, missing field)."""


class NotFoundError(StoryCardsError, LookupError):
    """A referenced card or session id does not exist."""

    def __init__(self, kind: str, ident: object) -> None:
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class ImmutableCardError(StoryCardsError):
    """Edit or delete of a system/default card outside the usage-stat fields."""


class CycleError(StoryCardsError):
    """Adding a parent edge would close a cycle in the card graph."""

    def __init__(self, card_id: int, parent_id: int) -> None:
        super().__init__(
            f"Adding card {parent_id} as a parent of card {card_id} would create a cycle"
        )
        self.card_id = card_id
        self.parent_id = parent_id


class GenerationError(StoryCardsError):
    """The LLM collaborator failed during main response generation."""
