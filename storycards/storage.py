"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM; reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      ids.json                ← last issued id per record kind
      cards.json              ← list of Card objects
      sessions.json           ← list of Session objects
      turns/
        {session_id}.json     ← append-only StoryTurn log

The engine only depends on the three collaborator protocols below; `Storage`
implements all of them.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Protocol

from storycards.errors import NotFoundError, ValidationError
from storycards.models import Card, Session, StoryTurn, utcnow

logger = logging.getLogger(__name__)

_SESSION_FIELDS = {"name", "active_cards", "story_memory", "quest_progress", "script_state"}


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------

class CardRepository(Protocol):
    def get_card(self, card_id: int) -> Card | None: ...
    def list_cards(self) -> list[Card]: ...
    def get_cards_by_ids(self, ids: Iterable[int]) -> list[Card]: ...
    def insert_card(self, data: dict[str, Any]) -> Card: ...
    def save_card(self, card: Card) -> Card: ...
    def delete_card(self, card_id: int) -> bool: ...


class SessionRepository(Protocol):
    def get_session(self, session_id: int) -> Session | None: ...
    def create_session(self, name: str = ...) -> Session: ...
    def update_session(self, session_id: int, fields: dict[str, Any]) -> Session | None: ...
    def delete_session(self, session_id: int) -> bool: ...


class TurnRepository(Protocol):
    def append_turn(self, turn: StoryTurn) -> StoryTurn: ...
    def get_turns(self, session_id: int) -> list[StoryTurn]: ...
    def get_last_turn_number(self, session_id: int) -> int: ...


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._turns_root = self._base / "turns"
        self._turns_root.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.is_file():
            return default
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    def _next_id(self, kind: str) -> int:
        path = self._base / "ids.json"
        ids = self._read_json(path, {})
        ids[kind] = ids.get(kind, 0) + 1
        self._write_json(path, ids)
        return ids[kind]

    def _cards_file(self) -> Path:
        return self._base / "cards.json"

    def _sessions_file(self) -> Path:
        return self._base / "sessions.json"

    def _turns_file(self, session_id: int) -> Path:
        return self._turns_root / f"{session_id}.json"

    def _load_cards(self) -> list[Card]:
        return [Card.model_validate(c) for c in self._read_json(self._cards_file(), [])]

    def _dump_cards(self, cards: list[Card]) -> None:
        self._write_json(self._cards_file(), [c.model_dump(mode="json") for c in cards])

    def _load_sessions(self) -> list[Session]:
        return [Session.model_validate(s) for s in self._read_json(self._sessions_file(), [])]

    def _dump_sessions(self, sessions: list[Session]) -> None:
        self._write_json(
            self._sessions_file(), [s.model_dump(mode="json") for s in sessions]
        )

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    def get_card(self, card_id: int) -> Card | None:
        for card in self._load_cards():
            if card.id == card_id:
                return card
        return None

    def list_cards(self) -> list[Card]:
        """All cards, newest first."""
        cards = self._load_cards()
        cards.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        return cards

    def get_cards_by_ids(self, ids: Iterable[int]) -> list[Card]:
        """Cards for the given ids in the order requested; unknown ids are skipped."""
        by_id = {c.id: c for c in self._load_cards()}
        return [by_id[i] for i in ids if i in by_id]

    def insert_card(self, data: dict[str, Any]) -> Card:
        """Assign a fresh id and store. Raises pydantic.ValidationError on bad data."""
        card = Card.model_validate({**data, "id": 0})
        card = card.model_copy(update={"id": self._next_id("cards")})
        cards = self._load_cards()
        cards.append(card)
        self._dump_cards(cards)
        return card

    def save_card(self, card: Card) -> Card:
        """Upsert a card by id."""
        cards = self._load_cards()
        for i, c in enumerate(cards):
            if c.id == card.id:
                cards[i] = card
                break
        else:
            cards.append(card)
        self._dump_cards(cards)
        return card

    def delete_card(self, card_id: int) -> bool:
        cards = self._load_cards()
        remaining = [c for c in cards if c.id != card_id]
        if len(remaining) == len(cards):
            return False
        self._dump_cards(remaining)
        return True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, name: str = "New Story") -> Session:
        session = Session(id=self._next_id("sessions"), name=name)
        sessions = self._load_sessions()
        sessions.append(session)
        self._dump_sessions(sessions)
        logger.info("created session id=%d name=%r", session.id, name)
        return session

    def get_session(self, session_id: int) -> Session | None:
        for session in self._load_sessions():
            if session.id == session_id:
                return session
        return None

    def list_sessions(self) -> list[Session]:
        """All sessions, most recently updated first."""
        sessions = self._load_sessions()
        sessions.sort(key=lambda s: (s.updated_at, s.id), reverse=True)
        return sessions

    def update_session(self, session_id: int, fields: dict[str, Any]) -> Session | None:
        """Apply a partial update. Unknown keys are ignored. Returns None if missing."""
        sessions = self._load_sessions()
        for i, session in enumerate(sessions):
            if session.id == session_id:
                patch = {k: v for k, v in fields.items() if k in _SESSION_FIELDS}
                if not patch:
                    return session
                patch["updated_at"] = utcnow()
                updated = Session.model_validate({**session.model_dump(), **patch})
                sessions[i] = updated
                self._dump_sessions(sessions)
                return updated
        return None

    def rename_session(self, session_id: int, name: str) -> Session:
        if not name.strip():
            raise ValidationError("Session name must not be empty")
        session = self.update_session(session_id, {"name": name.strip()})
        if session is None:
            raise NotFoundError("Session", session_id)
        return session

    def delete_session(self, session_id: int) -> bool:
        sessions = self._load_sessions()
        remaining = [s for s in sessions if s.id != session_id]
        if len(remaining) == len(sessions):
            return False
        self._dump_sessions(remaining)
        turns = self._turns_file(session_id)
        if turns.is_file():
            turns.unlink()
        return True

    def activate_card(self, session_id: int, card_id: int) -> Session:
        """Add a card to the session's active set (idempotent)."""
        session = self.get_session(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        if self.get_card(card_id) is None:
            raise NotFoundError("Card", card_id)
        if card_id in session.active_cards:
            return session
        return self.update_session(session_id, {"active_cards": [*session.active_cards, card_id]})

    def deactivate_card(self, session_id: int, card_id: int) -> Session:
        """Remove a card from the session's active set (idempotent)."""
        session = self.get_session(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        if card_id not in session.active_cards:
            return session
        return self.update_session(
            session_id, {"active_cards": [c for c in session.active_cards if c != card_id]}
        )

    # ------------------------------------------------------------------
    # Turn history (append-only)
    # ------------------------------------------------------------------

    def get_turns(self, session_id: int) -> list[StoryTurn]:
        turns = [
            StoryTurn.model_validate(t)
            for t in self._read_json(self._turns_file(session_id), [])
        ]
        turns.sort(key=lambda t: t.turn_number)
        return turns

    def get_last_turn_number(self, session_id: int) -> int:
        return max((t.turn_number for t in self.get_turns(session_id)), default=0)

    def append_turn(self, turn: StoryTurn) -> StoryTurn:
        path = self._turns_file(turn.session_id)
        existing = self._read_json(path, [])
        existing.append(turn.model_dump(mode="json"))
        self._write_json(path, existing)
        return turn
