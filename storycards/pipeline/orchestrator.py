"""Turn orchestrator: runs one player turn end-to-end.

Turn flow:
  1. Validate input, load the session and its active cards.
  2. Build the system prompt from the active cards and story memory.
  3. Call the LLM with the prompt, the player input and the last 3 turns.
  4. Ask the LLM for a one-line key event and fold it into story memory.
  5. Run the script pipeline over the fresh response.
  6. Persist: session (memory, active cards, script state), then the turn record,
     then usage counters of the cards that were in the prompt.

Nothing is written before step 3 succeeds. An LLM failure surfaces as
GenerationError and leaves the session and history untouched.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator

from pydantic import BaseModel, Field

from storycards.cards import CardGraph
from storycards.compositor import PromptCompositor
from storycards.errors import GenerationError, NotFoundError, ValidationError
from storycards.llm import FALLBACK_EVENT, LLM
from storycards.memory import StoryMemory
from storycards.models import Card, Session, StoryTurn, TokenUsage
from storycards.pipeline.runner import PipelineRun, ScriptPipeline
from storycards.storage import Storage

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 3

# Context fields owned by scripts, carried between turns in session.script_state.
SCRIPT_STATE_KEYS = ("inventory", "quest_state", "story_memory", "memory_summary")


class TurnResult(BaseModel):
    response: str
    turn_number: int
    token_usage: TokenUsage
    token_report: dict[str, Any]
    extracted_event: str
    activated_cards: list[int] = Field(default_factory=list)
    created_cards: list[int] = Field(default_factory=list)
    script_events: list[dict[str, Any]] = Field(default_factory=list)
    notifications: list[dict[str, str]] = Field(default_factory=list)


class PromptPreview(BaseModel):
    system_prompt: str
    token_report: dict[str, Any]
    active_card_count: int


def recent_history(turns: list[StoryTurn], window: int = HISTORY_WINDOW) -> list[dict[str, str]]:
    """The last `window` turns as alternating user/assistant messages."""
    messages: list[dict[str, str]] = []
    for turn in turns[-window:] if window > 0 else []:
        messages.append({"role": "user", "content": turn.player_input})
        messages.append({"role": "assistant", "content": turn.llm_response})
    return messages


class TurnOrchestrator:
    def __init__(
        self,
        storage: Storage,
        graph: CardGraph,
        llm: LLM,
        compositor: PromptCompositor | None = None,
        pipeline: ScriptPipeline | None = None,
    ) -> None:
        self._storage = storage
        self._graph = graph
        self._llm = llm
        self._compositor = compositor or PromptCompositor(graph)
        self._pipeline = pipeline
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}

    @contextlib.asynccontextmanager
    async def _session_lock(self, session_id: int) -> AsyncIterator[None]:
        """Serialise turns per session; the lock is dropped once no turn holds or awaits it."""
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    def _load_session(self, session_id: int) -> Session:
        session = self._storage.get_session(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        return session

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def preview_prompt(self, session_id: int, focus_card_id: int | None = None) -> PromptPreview:
        """The system prompt the next turn would use, without calling the LLM."""
        session = self._load_session(session_id)
        active_cards = self._graph.get_many(session.active_cards)
        memory = StoryMemory.from_dict(session.story_memory)
        prompt = self._compositor.build_system_prompt(active_cards, focus_card_id, memory)
        return PromptPreview(
            system_prompt=prompt,
            token_report=self._compositor.get_token_report(prompt, active_cards),
            active_card_count=len(active_cards),
        )

    def history(self, session_id: int) -> list[StoryTurn]:
        self._load_session(session_id)
        return self._storage.get_turns(session_id)

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        session_id: int,
        player_input: str,
        focus_card_id: int | None = None,
    ) -> TurnResult:
        """Execute one player turn.

        Raises ValidationError (empty input), NotFoundError (unknown session)
        and GenerationError (LLM failure; nothing persisted).
        """
        if not isinstance(player_input, str) or not player_input.strip():
            raise ValidationError("player_input is required")

        async with self._session_lock(session_id):
            return await self._run_turn(session_id, player_input, focus_card_id)

    async def _run_turn(
        self, session_id: int, player_input: str, focus_card_id: int | None
    ) -> TurnResult:
        session = self._load_session(session_id)
        active_cards = self._graph.get_many(session.active_cards)
        memory = StoryMemory.from_dict(session.story_memory)
        system_prompt = self._compositor.build_system_prompt(active_cards, focus_card_id, memory)

        turns = self._storage.get_turns(session_id)
        try:
            result = await self._llm.generate_response(
                system_prompt, player_input, recent_history(turns)
            )
        except Exception as e:
            logger.warning("generation failed for session %d: %s", session_id, e)
            raise GenerationError(f"Story generation failed: {e}") from e

        key_event = await self._extract_key_event(result.content)
        memory.add_event(key_event)

        active_ids = list(session.active_cards)
        script_state = dict(session.script_state)
        run: PipelineRun | None = None
        created: list[int] = []
        if self._pipeline is not None:
            run = await self._pipeline.run_pipeline({
                "session_id": session_id,
                "active_cards": active_cards,
                "current_input": player_input,
                "current_response": result.content,
                "story_history": [
                    {"input": t.player_input, "response": t.llm_response} for t in turns
                ],
                "turn_number": len(turns) + 1,
                "focus_card_id": focus_card_id,
                **{k: v for k, v in script_state.items() if k in SCRIPT_STATE_KEYS},
            })
            created = self._create_script_cards(run)
            active_ids = self._apply_activations(active_ids, run, created)
            for event in run.events:
                if event.get("type") != "quest_completed":
                    continue
                quest = event.get("condition") or event.get("quest_id")
                if quest:
                    memory.set_quest_progress(str(quest), 100)
                else:
                    logger.debug("quest_completed event without a quest name: %r", event)
            script_state.update(
                {k: run.context[k] for k in SCRIPT_STATE_KEYS if k in run.context}
            )

        updated = self._storage.update_session(session_id, {
            "story_memory": memory.to_dict(),
            "active_cards": active_ids,
            "script_state": script_state,
        })
        if updated is None:
            raise NotFoundError("Session", session_id)

        turn_number = self._storage.get_last_turn_number(session_id) + 1
        self._storage.append_turn(StoryTurn(
            session_id=session_id,
            turn_number=turn_number,
            player_input=player_input,
            llm_response=result.content,
            system_prompt=system_prompt,
            token_count=result.usage.total_tokens,
        ))
        for card in active_cards:
            self._graph.increment_usage(card.id)

        logger.info("session %d turn %d complete (%d tokens)",
                    session_id, turn_number, result.usage.total_tokens)
        return TurnResult(
            response=result.content,
            turn_number=turn_number,
            token_usage=result.usage,
            token_report=self._compositor.get_token_report(system_prompt, active_cards),
            extracted_event=key_event,
            activated_cards=[i for i in active_ids if i not in session.active_cards],
            created_cards=created,
            script_events=run.events if run else [],
            notifications=run.notifications if run else [],
        )

    async def _extract_key_event(self, text: str) -> str:
        try:
            event = await self._llm.extract_key_event(text)
        except Exception as e:
            logger.warning("key event extraction failed: %s", e)
            return FALLBACK_EVENT
        return event or FALLBACK_EVENT

    def _create_script_cards(self, run: PipelineRun) -> list[int]:
        created: list[int] = []
        for data in run.new_cards:
            try:
                card: Card = self._graph.create({**data, "source": "auto_generated"})
            except ValidationError as e:
                logger.warning("script card %r rejected: %s", data.get("name"), e)
                continue
            created.append(card.id)
        return created

    def _apply_activations(
        self, active_ids: list[int], run: PipelineRun, created: list[int]
    ) -> list[int]:
        result = list(active_ids)
        for card_id in [*run.cards_to_activate, *created]:
            if card_id not in result and self._graph.find(card_id) is not None:
                result.append(card_id)
        deactivate = set(run.cards_to_deactivate)
        return [i for i in result if i not in deactivate]
