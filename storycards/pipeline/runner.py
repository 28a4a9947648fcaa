"""Script pipeline: ordered, fault-tolerant stage execution.

Stages run strictly one after another, lowest `order` first (ties keep
registration order). Each stage sees the context as left by the stages before
it. A stage that raises is logged and skipped; the remaining stages still run
against the last good context.

Every stage invocation is timed and recorded in a ring log shared by all runs
(newest 100 entries), tagged with the run's turn id.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from storycards.models import utcnow
from storycards.pipeline.base import Script, ScriptOutput

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 100
MAX_LOGGED_STRING = 500
DEFAULT_ORDER = 100


class ScriptLogEntry(BaseModel):
    turn_id: int
    script: str
    timestamp: str = Field(default_factory=utcnow)
    duration_ms: float
    success: bool
    input: Any = None
    output: Any = None
    error: str | None = None


class ScriptResult(BaseModel):
    name: str
    success: bool
    output: ScriptOutput | None = None
    error: str | None = None


class PipelineRun(BaseModel):
    turn_id: int
    context: dict[str, Any]
    results: list[ScriptResult]
    logs: list[ScriptLogEntry]

    def _successful(self) -> list[ScriptOutput]:
        return [r.output for r in self.results if r.success and r.output is not None]

    @property
    def cards_to_activate(self) -> list[int]:
        return list(dict.fromkeys(i for o in self._successful() for i in o.cards_to_activate))

    @property
    def cards_to_deactivate(self) -> list[int]:
        return list(dict.fromkeys(i for o in self._successful() for i in o.cards_to_deactivate))

    @property
    def new_cards(self) -> list[dict[str, Any]]:
        return [c for o in self._successful() for c in o.new_cards]

    @property
    def events(self) -> list[dict[str, Any]]:
        return [e for o in self._successful() for e in o.events]

    @property
    def notifications(self) -> list[dict[str, str]]:
        return [n for o in self._successful() for n in o.notifications]


@dataclass
class _Registration:
    script: Script
    order: int
    seq: int


class _Unserializable(Exception):
    pass


def _sanitize(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return _sanitize(value.model_dump(mode="json"))
    if isinstance(value, str):
        if len(value) > MAX_LOGGED_STRING:
            return value[:MAX_LOGGED_STRING] + "..."
        return value
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, dict):
        return {str(k): _sanitize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize(v) for v in value]
    raise _Unserializable(type(value).__name__)


def sanitize_for_log(value: Any) -> Any:
    """JSON-safe copy of `value` with long strings truncated."""
    try:
        return _sanitize(value)
    except _Unserializable:
        return {"error": "Could not serialize for logging"}


class ScriptPipeline:
    def __init__(self) -> None:
        self._scripts: dict[str, _Registration] = {}
        self._enabled: set[str] = set()
        self._execution_order: list[str] = []
        self._logs: deque[ScriptLogEntry] = deque(maxlen=MAX_LOG_ENTRIES)
        self._seq = 0
        self._last_turn_id = 0
        self._run_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, name: str, script: Script, order: int = DEFAULT_ORDER) -> None:
        """Add a stage, or replace the stage already registered under `name`."""
        self._seq += 1
        self._scripts[name] = _Registration(script=script, order=order, seq=self._seq)
        self._enabled.add(name)
        self._update_execution_order()
        logger.debug("registered script %s (order %d)", name, order)

    def unregister(self, name: str) -> bool:
        if name not in self._scripts:
            return False
        del self._scripts[name]
        self._enabled.discard(name)
        self._update_execution_order()
        return True

    def enable(self, name: str) -> bool:
        if name not in self._scripts:
            return False
        self._enabled.add(name)
        return True

    def disable(self, name: str) -> bool:
        if name not in self._scripts:
            return False
        self._enabled.discard(name)
        return True

    def is_enabled(self, name: str) -> bool:
        return name in self._enabled

    def update_script_settings(
        self, name: str, enabled: bool | None = None, order: int | None = None
    ) -> bool:
        """Change a stage's enabled flag and/or order. False for unknown names."""
        registration = self._scripts.get(name)
        if registration is None:
            return False
        if enabled is not None:
            if enabled:
                self._enabled.add(name)
            else:
                self._enabled.discard(name)
        if order is not None:
            registration.order = int(order)
            self._update_execution_order()
        return True

    def apply_settings(self, settings: dict[str, dict[str, Any]]) -> None:
        """Apply a `{name: {enabled, order}}` mapping, e.g. from config."""
        for name, values in settings.items():
            ok = self.update_script_settings(
                name, enabled=values.get("enabled"), order=values.get("order")
            )
            if not ok:
                logger.warning("settings for unknown script %r ignored", name)

    def list_scripts(self) -> list[dict[str, Any]]:
        return [
            {
                "name": name,
                "description": getattr(self._scripts[name].script, "description", ""),
                "order": self._scripts[name].order,
                "enabled": name in self._enabled,
            }
            for name in self._execution_order
        ]

    @property
    def execution_order(self) -> list[str]:
        return list(self._execution_order)

    def _update_execution_order(self) -> None:
        self._execution_order = sorted(
            self._scripts, key=lambda n: (self._scripts[n].order, self._scripts[n].seq)
        )

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def get_logs(self, limit: int = 50) -> list[ScriptLogEntry]:
        """Most recent log entries, oldest first."""
        if limit <= 0:
            return []
        return list(self._logs)[-limit:]

    def get_logs_for_turn(self, turn_id: int) -> list[ScriptLogEntry]:
        return [entry for entry in self._logs if entry.turn_id == turn_id]

    def clear_logs(self) -> None:
        self._logs.clear()

    def _next_turn_id(self) -> int:
        turn_id = max(int(time.time() * 1000), self._last_turn_id + 1)
        self._last_turn_id = turn_id
        return turn_id

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run_pipeline(self, context: dict[str, Any]) -> PipelineRun:
        async with self._run_lock:
            return await self._run(context)

    async def _run(self, context: dict[str, Any]) -> PipelineRun:
        turn_id = self._next_turn_id()
        current = dict(context)
        results: list[ScriptResult] = []

        for name in self._execution_order:
            if name not in self._enabled:
                continue
            script = self._scripts[name].script
            stage_input: dict[str, Any] = {}
            started = time.perf_counter()
            logger.debug("script %s start (turn %d)", name, turn_id)
            try:
                stage_input = copy.deepcopy(current)
                output = await script.execute(stage_input)
                if not isinstance(output, ScriptOutput):
                    output = ScriptOutput.model_validate(output or {})
                # A stage whose updates cannot be copied counts as failed.
                updates = copy.deepcopy(output.context_updates)
            except Exception as e:
                duration = (time.perf_counter() - started) * 1000
                logger.warning("script %s failed after %.1fms: %s", name, duration, e)
                self._logs.append(ScriptLogEntry(
                    turn_id=turn_id, script=name, duration_ms=duration, success=False,
                    input=sanitize_for_log(stage_input), error=str(e),
                ))
                results.append(ScriptResult(name=name, success=False, error=str(e)))
                continue

            duration = (time.perf_counter() - started) * 1000
            logger.debug("script %s done in %.1fms", name, duration)
            current.update(updates)
            self._logs.append(ScriptLogEntry(
                turn_id=turn_id, script=name, duration_ms=duration, success=True,
                input=sanitize_for_log(stage_input), output=sanitize_for_log(output),
            ))
            results.append(ScriptResult(name=name, success=True, output=output))

        return PipelineRun(
            turn_id=turn_id,
            context=current,
            results=results,
            logs=self.get_logs_for_turn(turn_id),
        )
