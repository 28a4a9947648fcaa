from typing import Any

import pytest

from storycards.cards import CardGraph
from storycards.llm import ConnectionStatus, LLMResponse, ModelInfo
from storycards.models import TokenUsage
from storycards.storage import Storage


class StubLLM:
    """Scripted LLM double.

    `responses` are returned in order (the last one repeats). Any entry that
    is an Exception is raised instead. Every call is recorded in `calls`.
    """

    def __init__(self, responses: list[Any] | None = None, key_event: str = "Something happened") -> None:
        self.responses = list(responses or ["The story continues."])
        self.key_event = key_event
        self.calls: list[dict[str, Any]] = []
        self.key_event_calls: list[str] = []

    async def generate_response(self, system_prompt, user_input, history=None, options=None):
        self.calls.append({
            "system_prompt": system_prompt,
            "user_input": user_input,
            "history": list(history or []),
        })
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return LLMResponse(
            content=item,
            usage=TokenUsage(prompt_tokens=100, completion_tokens=20, total_tokens=120),
        )

    async def extract_key_event(self, text: str) -> str:
        self.key_event_calls.append(text)
        return self.key_event

    async def test_connection(self) -> ConnectionStatus:
        return ConnectionStatus(success=True, message="stub")

    async def get_models(self) -> list[ModelInfo]:
        return [ModelInfo(id="stub", name="Stub")]


@pytest.fixture
def storage(tmp_path) -> Storage:
    return Storage(tmp_path / "data")


@pytest.fixture
def graph(storage) -> CardGraph:
    return CardGraph(storage)


@pytest.fixture
def stub_llm() -> StubLLM:
    return StubLLM()


@pytest.fixture
def make_llm():
    """Build a StubLLM with custom responses: make_llm(["first", RuntimeError()])."""
    return StubLLM
