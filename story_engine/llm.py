"""LLM client: HTTP connection to a chat or text-completion backend.

Every component that talks to a model receives an object matching the LLM
protocol below. `stage` names the caller (e.g. "narrative", "tier3_selection",
"lore_management"); implementations use it for logging only.

    generate_text(stage, system, prompt)              -> str
    generate_structured(stage, schema, system, prompt) -> schema instance
    generate_with_tools(stage, messages, tools)       -> ToolResponse

All three accept `signal=`, an AbortSignal. When it fires, the in-flight
HTTP request is cancelled and AbortError is raised.

HttpLLM is the one real implementation. It speaks two wire formats:

    "openai"     POST /v1/chat/completions  (text, JSON-schema output, tools)
    "koboldcpp"  POST /api/v1/generate      (text and prompted JSON only)

Tests use StubLLM (defined in conftest.py) instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal, Protocol, TypeVar

import httpx
from pydantic import BaseModel, Field, ValidationError

from story_engine.cancel import AbortSignal, guarded
from story_engine.prompts import parse_json_output

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


# ---------------------------------------------------------------------------
# Tool-calling response types
# ---------------------------------------------------------------------------

class ToolCall(BaseModel):
    id: str
    name: str
    arguments: str = "{}"  # raw JSON, validated by the tool registry


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ToolResponse(BaseModel):
    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    reasoning: str | None = None
    finish_reason: str | None = None
    usage: Usage = Field(default_factory=Usage)


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match these signatures
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def generate_text(
        self, stage: str, system: str, prompt: str, *, signal: AbortSignal | None = None,
    ) -> str: ...

    async def generate_structured(
        self, stage: str, schema: type[T], system: str, prompt: str,
        *, signal: AbortSignal | None = None,
    ) -> T: ...

    async def generate_with_tools(
        self, stage: str, messages: list[dict[str, Any]], tools: list[dict[str, Any]],
        *, signal: AbortSignal | None = None,
    ) -> ToolResponse: ...


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]


class HttpLLM:
    """Async HTTP client for chat and text-completion backends.

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "openai".
        model:           Model identifier, sent only by the openai format.
        timeout:         HTTP timeout in seconds. Defaults to 120.
        temperature:     Sampling temperature, omitted from requests when None.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "openai",
        model: str = "",
        timeout: float = 120.0,
        temperature: float | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._temperature = temperature

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _chat_body(self, messages: list[dict[str, Any]]) -> dict[str, Any]:
        body: dict[str, Any] = {"messages": [_to_wire_message(m) for m in messages]}
        if self._model:
            body["model"] = self._model
        if self._temperature is not None:
            body["temperature"] = self._temperature
        return body

    def _kobold_body(self, system: str, prompt: str) -> dict[str, Any]:
        body: dict[str, Any] = {"prompt": f"{system}\n\n{prompt}" if system else prompt}
        if self._temperature is not None:
            body["temperature"] = self._temperature
        return body

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, stage: str, url: str, body: dict[str, Any]) -> dict[str, Any]:
        logger.debug("llm call stage=%s url=%s", stage, url)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM request to {self._base_url} failed: {e}") from e
        try:
            return resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON response") from e

    async def _chat(
        self, stage: str, body: dict[str, Any], signal: AbortSignal | None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}/v1/chat/completions"
        data = await guarded(signal, self._post(stage, url, body))
        choices = data.get("choices")
        if not choices or "message" not in choices[0]:
            raise LLMError("Unexpected response format from OpenAI-compatible backend")
        return data

    async def _kobold(
        self, stage: str, system: str, prompt: str, signal: AbortSignal | None,
    ) -> str:
        url = f"{self._base_url}/api/v1/generate"
        data = await guarded(signal, self._post(stage, url, self._kobold_body(system, prompt)))
        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    # ------------------------------------------------------------------
    # Protocol methods
    # ------------------------------------------------------------------

    async def generate_text(
        self, stage: str, system: str, prompt: str, *, signal: AbortSignal | None = None,
    ) -> str:
        if self._format == "koboldcpp":
            text = await self._kobold(stage, system, prompt, signal)
        else:
            body = self._chat_body(_system_user(system, prompt))
            data = await self._chat(stage, body, signal)
            text = data["choices"][0]["message"].get("content") or ""
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text

    async def generate_structured(
        self, stage: str, schema: type[T], system: str, prompt: str,
        *, signal: AbortSignal | None = None,
    ) -> T:
        json_schema = schema.model_json_schema()
        if self._format == "koboldcpp":
            instructions = (
                "Respond with a single JSON object matching this schema and nothing else:\n"
                + json.dumps(json_schema)
            )
            text = await self._kobold(stage, system, f"{prompt}\n\n{instructions}", signal)
        else:
            body = self._chat_body(_system_user(system, prompt))
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": schema.__name__, "schema": json_schema},
            }
            data = await self._chat(stage, body, signal)
            text = data["choices"][0]["message"].get("content") or ""

        parsed = parse_json_output(text)
        if parsed is None:
            raise LLMError(f"Structured output for stage {stage!r} is not a JSON object")
        try:
            return schema.model_validate(parsed)
        except ValidationError as e:
            raise LLMError(
                f"Structured output for stage {stage!r} does not match {schema.__name__}: {e}"
            ) from e

    async def generate_with_tools(
        self, stage: str, messages: list[dict[str, Any]], tools: list[dict[str, Any]],
        *, signal: AbortSignal | None = None,
    ) -> ToolResponse:
        if self._format == "koboldcpp":
            raise LLMError("Tool calling is not supported by the KoboldCpp backend")

        body = self._chat_body(messages)
        if tools:
            body["tools"] = tools
        data = await self._chat(stage, body, signal)
        return _parse_tool_response(data)


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------

def _system_user(system: str, prompt: str) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return messages


def _to_wire_message(message: dict[str, Any]) -> dict[str, Any]:
    """Translate an internal history message to the OpenAI chat shape."""
    wire = {k: v for k, v in message.items() if k not in ("reasoning", "tool_calls")}
    if message.get("reasoning"):
        wire["reasoning_content"] = message["reasoning"]
    if message.get("tool_calls"):
        wire["tool_calls"] = [
            {
                "id": call["id"],
                "type": "function",
                "function": {"name": call["name"], "arguments": call["arguments"]},
            }
            for call in message["tool_calls"]
        ]
    return wire


def _parse_tool_response(data: dict[str, Any]) -> ToolResponse:
    choice = data["choices"][0]
    message = choice["message"]
    calls = []
    for raw in message.get("tool_calls") or []:
        fn = raw.get("function") or {}
        arguments = fn.get("arguments") or "{}"
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        calls.append(ToolCall(id=raw.get("id", ""), name=fn.get("name", ""), arguments=arguments))

    usage = data.get("usage") or {}
    return ToolResponse(
        content=message.get("content"),
        tool_calls=calls,
        reasoning=message.get("reasoning_content") or message.get("reasoning"),
        finish_reason=choice.get("finish_reason"),
        usage=Usage(
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        ),
    )


# ---------------------------------------------------------------------------
# LLMError: raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
