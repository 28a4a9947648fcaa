"""LLM collaborator: chat-completion backends over HTTP.

The turn orchestrator talks to any object matching the LLM protocol:

    async def generate_response(system_prompt, user_input, history, options) -> LLMResponse
    async def extract_key_event(text) -> str
    async def test_connection() -> ConnectionStatus
    async def get_models() -> list[ModelInfo]

Every vendor variant is an HttpProvider subclass that only differs in how it
builds the request and parses the response:

    openai      POST {base}/v1/chat/completions
    openrouter  same wire format as openai, different base URL
    claude      POST {base}/v1/messages
    gemini      POST {base}/v1beta/models/{model}:generateContent
    koboldcpp   POST {base}/api/v1/generate   (local; usage is estimated)
    echo        no network; returns the player input. Useful for smoke-testing
                the turn wiring without a running model.

Production code builds a provider with get_provider() from config.
Tests use StubLLM (defined in conftest) instead.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel

from storycards.compositor import estimate_tokens
from storycards.models import TokenUsage

logger = logging.getLogger(__name__)

FALLBACK_EVENT = "Story continued"

KEY_EVENT_PROMPT = """Summarize the key event from this story turn in one brief sentence (10 words or less):

{text}

Focus on: location changes, important discoveries, quest milestones, character relationships.
Output only the event description, nothing else."""

KEY_EVENT_SYSTEM = "You are a helpful assistant that summarizes story events in one brief sentence."


class LLMResponse(BaseModel):
    content: str
    usage: TokenUsage


class ConnectionStatus(BaseModel):
    success: bool
    message: str
    model: str | None = None


class ModelInfo(BaseModel):
    id: str
    name: str


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match these signatures
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def generate_response(
        self,
        system_prompt: str,
        user_input: str,
        history: list[dict[str, str]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> LLMResponse: ...

    async def extract_key_event(self, text: str) -> str: ...

    async def test_connection(self) -> ConnectionStatus: ...

    async def get_models(self) -> list[ModelInfo]: ...


def estimate_usage(prompt: str, completion: str) -> TokenUsage:
    prompt_tokens = estimate_tokens(prompt)
    completion_tokens = estimate_tokens(completion)
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


# ---------------------------------------------------------------------------
# HttpProvider: shared transport and error mapping
# ---------------------------------------------------------------------------

class HttpProvider:
    """Async HTTP client base for chat-completion backends.

    Args:
        api_key:  Credential for the vendor, or empty string if not required.
        model:    Model identifier; falls back to `default_model`.
        base_url: Override of `default_base_url` (proxies, self-hosted gateways).
        timeout:  HTTP timeout in seconds. Defaults to 120.
    """

    name = "base"
    display_name = "Base"
    default_base_url = ""
    default_model = ""
    requires_api_key = True
    supports_base_url = False
    models: tuple[tuple[str, str], ...] = ()

    def __init__(
        self,
        api_key: str = "",
        model: str = "",
        base_url: str = "",
        timeout: float = 120.0,
    ) -> None:
        self._api_key = api_key
        self._model = model or self.default_model
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._timeout = timeout

    @property
    def model(self) -> str:
        return self._model

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _build_request(
        self,
        system_prompt: str,
        user_input: str,
        history: list[dict[str, str]],
        options: dict[str, Any],
    ) -> tuple[str, dict]:
        raise NotImplementedError

    def _parse_response(self, data: dict, prompt_text: str) -> tuple[str, TokenUsage]:
        raise NotImplementedError

    async def _post(self, url: str, body: dict) -> dict:
        logger.debug("llm call provider=%s url=%s", self.name, url)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to {self.display_name} at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"{self.display_name} returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"{self.display_name} timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"Request to {self.display_name} failed: {e}") from e
        try:
            return resp.json()
        except ValueError as e:
            raise LLMError(f"{self.display_name} returned a non-JSON response") from e

    async def generate_response(
        self,
        system_prompt: str,
        user_input: str,
        history: list[dict[str, str]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> LLMResponse:
        history = history or []
        options = options or {}
        url, body = self._build_request(system_prompt, user_input, history, options)
        data = await self._post(url, body)
        prompt_text = "\n".join([system_prompt, *(m["content"] for m in history), user_input])
        content, usage = self._parse_response(data, prompt_text)
        logger.debug("llm response provider=%s len=%d tokens=%d",
                     self.name, len(content), usage.total_tokens)
        return LLMResponse(content=content, usage=usage)

    async def extract_key_event(self, text: str) -> str:
        """One-line summary of a turn. Falls back to FALLBACK_EVENT on any backend failure."""
        try:
            result = await self.generate_response(
                KEY_EVENT_SYSTEM,
                KEY_EVENT_PROMPT.format(text=text),
                options={"temperature": 0.3, "max_tokens": 50},
            )
        except LLMError as e:
            logger.warning("key event extraction failed (%s): %s", self.name, e)
            return FALLBACK_EVENT
        return result.content.strip() or FALLBACK_EVENT

    async def test_connection(self) -> ConnectionStatus:
        try:
            await self.generate_response("", "Hi", options={"max_tokens": 5})
        except LLMError as e:
            return ConnectionStatus(success=False, message=str(e))
        return ConnectionStatus(
            success=True, message=f"Connected to {self.display_name}", model=self._model
        )

    async def get_models(self) -> list[ModelInfo]:
        return [ModelInfo(id=mid, name=label) for mid, label in self.models]

    @classmethod
    def info(cls) -> dict[str, Any]:
        return {
            "name": cls.name,
            "display_name": cls.display_name,
            "requires_api_key": cls.requires_api_key,
            "supports_base_url": cls.supports_base_url,
            "default_model": cls.default_model,
        }


def _chat_messages(history: list[dict[str, str]], user_input: str) -> list[dict[str, str]]:
    messages = [
        {"role": "assistant" if m.get("role") == "assistant" else "user", "content": m["content"]}
        for m in history
    ]
    messages.append({"role": "user", "content": user_input})
    return messages


# ---------------------------------------------------------------------------
# OpenAI / OpenRouter
# ---------------------------------------------------------------------------

class OpenAIProvider(HttpProvider):
    name = "openai"
    display_name = "OpenAI"
    default_base_url = "https://api.openai.com"
    default_model = "gpt-4o-mini"
    supports_base_url = True
    models = (
        ("gpt-4o", "GPT-4o"),
        ("gpt-4o-mini", "GPT-4o Mini"),
        ("gpt-4-turbo", "GPT-4 Turbo"),
        ("gpt-3.5-turbo", "GPT-3.5 Turbo"),
    )

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, system_prompt, user_input, history, options):
        messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
        messages.extend(_chat_messages(history, user_input))
        body = {
            "model": options.get("model") or self._model,
            "messages": messages,
            "temperature": options.get("temperature", 0.9),
            "max_tokens": options.get("max_tokens", 500),
        }
        return f"{self._base_url}/v1/chat/completions", body

    def _parse_response(self, data, prompt_text):
        choices = data.get("choices")
        if not choices or "message" not in choices[0]:
            raise LLMError(f"Unexpected response format from {self.display_name}")
        content = (choices[0]["message"].get("content") or "").strip()
        usage = data.get("usage")
        if usage:
            return content, TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
            )
        return content, estimate_usage(prompt_text, content)


class OpenRouterProvider(OpenAIProvider):
    name = "openrouter"
    display_name = "OpenRouter"
    default_base_url = "https://openrouter.ai/api"
    default_model = "anthropic/claude-3-haiku"
    supports_base_url = False
    models = (
        ("anthropic/claude-3-haiku", "Claude 3 Haiku"),
        ("meta-llama/llama-3.1-70b-instruct", "Llama 3.1 70B"),
        ("mistralai/mistral-large", "Mistral Large"),
    )

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["X-Title"] = "Story Cards"
        return headers


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

class ClaudeProvider(HttpProvider):
    name = "claude"
    display_name = "Anthropic"
    default_base_url = "https://api.anthropic.com"
    default_model = "claude-3-5-sonnet-latest"
    supports_base_url = True
    models = (
        ("claude-3-5-sonnet-latest", "Claude 3.5 Sonnet"),
        ("claude-3-5-haiku-latest", "Claude 3.5 Haiku"),
        ("claude-3-opus-latest", "Claude 3 Opus"),
    )

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["anthropic-version"] = "2023-06-01"
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    def _build_request(self, system_prompt, user_input, history, options):
        body: dict[str, Any] = {
            "model": options.get("model") or self._model,
            "messages": _chat_messages(history, user_input),
            "max_tokens": options.get("max_tokens", 500),
            "temperature": options.get("temperature", 0.9),
        }
        if system_prompt:
            body["system"] = system_prompt
        return f"{self._base_url}/v1/messages", body

    def _parse_response(self, data, prompt_text):
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise LLMError(f"Unexpected response format from {self.display_name}")
        content = "".join(b.get("text", "") for b in blocks if b.get("type") == "text").strip()
        usage = data.get("usage")
        if usage:
            prompt_tokens = usage.get("input_tokens", 0)
            completion_tokens = usage.get("output_tokens", 0)
            return content, TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            )
        return content, estimate_usage(prompt_text, content)


# ---------------------------------------------------------------------------
# Google Gemini
# ---------------------------------------------------------------------------

class GeminiProvider(HttpProvider):
    name = "gemini"
    display_name = "Google Gemini"
    default_base_url = "https://generativelanguage.googleapis.com"
    default_model = "gemini-1.5-pro"
    models = (
        ("gemini-1.5-pro", "Gemini 1.5 Pro"),
        ("gemini-1.5-flash", "Gemini 1.5 Flash"),
    )

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._api_key:
            headers["x-goog-api-key"] = self._api_key
        return headers

    def _build_request(self, system_prompt, user_input, history, options):
        model = options.get("model") or self._model
        contents = [
            {
                "role": "model" if m.get("role") == "assistant" else "user",
                "parts": [{"text": m["content"]}],
            }
            for m in history
        ]
        contents.append({"role": "user", "parts": [{"text": user_input}]})
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": options.get("max_tokens", 500),
                "temperature": options.get("temperature", 0.9),
            },
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return f"{self._base_url}/v1beta/models/{model}:generateContent", body

    def _parse_response(self, data, prompt_text):
        candidates = data.get("candidates")
        if not candidates:
            raise LLMError(f"Unexpected response format from {self.display_name}")
        parts = candidates[0].get("content", {}).get("parts", [])
        content = "".join(p.get("text", "") for p in parts).strip()
        estimated = estimate_usage(prompt_text, content)
        meta = data.get("usageMetadata") or {}
        return content, TokenUsage(
            prompt_tokens=meta.get("promptTokenCount") or estimated.prompt_tokens,
            completion_tokens=meta.get("candidatesTokenCount") or estimated.completion_tokens,
            total_tokens=meta.get("totalTokenCount") or estimated.total_tokens,
        )


# ---------------------------------------------------------------------------
# KoboldCpp (local)
# ---------------------------------------------------------------------------

class KoboldCppProvider(HttpProvider):
    name = "koboldcpp"
    display_name = "KoboldCpp (Local)"
    default_base_url = "http://localhost:5001"
    default_model = "local"
    requires_api_key = False
    supports_base_url = True
    models = (("local", "Local Model (KoboldCpp)"),)

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    @staticmethod
    def build_prompt(system_prompt: str, user_input: str, history: list[dict[str, str]]) -> str:
        prompt = f"### System:\n{system_prompt}\n\n"
        for msg in history:
            if msg.get("role") == "assistant":
                prompt += f"### Assistant:\n{msg['content']}\n\n"
            else:
                prompt += f"### Human:\n{msg['content']}\n\n"
        prompt += f"### Human:\n{user_input}\n\n### Assistant:\n"
        return prompt

    def _build_request(self, system_prompt, user_input, history, options):
        body = {
            "prompt": self.build_prompt(system_prompt, user_input, history),
            "max_length": options.get("max_tokens", 500),
            "temperature": options.get("temperature", 0.9),
            "top_p": 0.9,
            "rep_pen": 1.1,
            "stop_sequence": ["### Human:", "### User:", "\n\n###"],
        }
        return f"{self._base_url}/api/v1/generate", body

    def _parse_response(self, data, prompt_text):
        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        content = results[0]["text"].strip()
        return content, estimate_usage(prompt_text, content)

    async def _get_model_name(self) -> str:
        url = f"{self._base_url}/api/v1/model"
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(url, headers=self._headers())
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise LLMError(f"Cannot reach KoboldCpp at {self._base_url} - is it running?") from e
        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("KoboldCpp returned a non-JSON model response") from e
        return data.get("result") or "Local Model"

    async def test_connection(self) -> ConnectionStatus:
        try:
            model = await self._get_model_name()
        except LLMError as e:
            return ConnectionStatus(success=False, message=str(e))
        return ConnectionStatus(success=True, message="Connected to KoboldCpp", model=model)

    async def get_models(self) -> list[ModelInfo]:
        try:
            return [ModelInfo(id="local", name=await self._get_model_name())]
        except LLMError:
            return await super().get_models()


# ---------------------------------------------------------------------------
# EchoProvider: no network calls
# ---------------------------------------------------------------------------

class EchoProvider(HttpProvider):
    """Returns the player input as the story response.

    Lets you verify that the turn wiring (prompt building, script pipeline,
    storage writes) works end-to-end without a running model.
    """

    name = "echo"
    display_name = "Echo (offline)"
    default_model = "echo"
    requires_api_key = False
    models = (("echo", "Echo"),)

    async def generate_response(self, system_prompt, user_input, history=None, options=None):
        logger.debug("EchoProvider prompt_len=%d", len(system_prompt))
        return LLMResponse(content=user_input, usage=estimate_usage(system_prompt, user_input))

    async def extract_key_event(self, text: str) -> str:
        first_line = text.strip().split("\n", 1)[0]
        return first_line[:80] or FALLBACK_EVENT

    async def test_connection(self) -> ConnectionStatus:
        return ConnectionStatus(success=True, message="Echo provider ready", model="echo")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PROVIDERS: dict[str, type[HttpProvider]] = {
    cls.name: cls
    for cls in (
        OpenAIProvider,
        ClaudeProvider,
        GeminiProvider,
        OpenRouterProvider,
        KoboldCppProvider,
        EchoProvider,
    )
}


def provider_info() -> list[dict[str, Any]]:
    return [cls.info() for cls in PROVIDERS.values()]


def get_provider(name: str, settings: dict[str, Any] | None = None) -> HttpProvider:
    """Build a provider from its name and a settings dict (api_key, model, base_url, timeout)."""
    cls = PROVIDERS.get(name)
    if cls is None:
        raise LLMError(f"Unknown provider: {name}. Available: {', '.join(PROVIDERS)}")
    settings = settings or {}
    return cls(
        api_key=settings.get("api_key") or "",
        model=settings.get("model") or "",
        base_url=settings.get("base_url") or "",
        timeout=float(settings.get("timeout") or 120.0),
    )


# ---------------------------------------------------------------------------
# LLMError: raised by providers for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
