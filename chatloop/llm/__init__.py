"""Anthropic provider - streaming HTTP calls to the Messages API."""

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from chatloop.config import DEFAULT_API_HOST, normalize_api_host
from chatloop.exceptions import (
    AuthenticationError,
    ExchangeError,
    RateLimitOrNetworkError,
    classify_provider_error,
)
from chatloop.logging import get_logger

log = get_logger(__name__)


ANTHROPIC_API_VERSION = "2023-06-01"

CLAUDE_MODEL_CONFIGS: dict[str, dict[str, int]] = {
    "claude-3-opus-20240229": {"max_tokens": 4096},
    "claude-3-sonnet-20240229": {"max_tokens": 4096},
    "claude-3-haiku-20240307": {"max_tokens": 4096},
    "claude-3-5-haiku-latest": {"max_tokens": 4096},
}
DEFAULT_MAX_TOKENS = 4096

MODELS = sorted(CLAUDE_MODEL_CONFIGS)


@dataclass
class Message:
    """A message in the conversation.

    ``content`` is plain text or a list of structured content blocks
    (tool_use / tool_result / text).
    """

    role: str  # "system", "user", "assistant"
    content: str | list[dict[str, Any]]

    @classmethod
    def coerce(cls, value: "Message | dict[str, Any]") -> "Message":
        if isinstance(value, Message):
            return value
        if isinstance(value, dict):
            return cls(role=str(value.get("role", "user")), content=value.get("content") or "")
        raise TypeError(f"Unsupported message type: {type(value)!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


def split_system_messages(
    messages: list[Message],
    system: str | None = None,
) -> tuple[str, list[Message]]:
    """Fold system-role messages into the system prompt parameter."""
    parts: list[str] = []
    if system and system.strip():
        parts.append(system.strip())
    rest: list[Message] = []
    for msg in messages:
        if msg.role == "system":
            text = msg.content if isinstance(msg.content, str) else json.dumps(msg.content)
            if text.strip():
                parts.append(text.strip())
            continue
        rest.append(msg)
    return "\n\n".join(parts), rest


def resolve_max_tokens(model: str, max_tokens: int | None = None) -> int:
    """Explicit value wins, then the per-model table."""
    if max_tokens:
        return int(max_tokens)
    return CLAUDE_MODEL_CONFIGS.get(model, {}).get("max_tokens", DEFAULT_MAX_TOKENS)


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Decode Server-Sent-Events lines into JSON payloads."""
    data_lines: list[str] = []
    async for line in lines:
        if not line.strip():
            if data_lines:
                raw = "\n".join(data_lines)
                data_lines = []
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    log.debug("Skipping undecodable stream payload", payload=raw[:200])
                    continue
                if isinstance(payload, dict):
                    yield payload
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        try:
            payload = json.loads("\n".join(data_lines))
        except json.JSONDecodeError:
            return
        if isinstance(payload, dict):
            yield payload


class LLMProvider(ABC):
    """Abstract base class for streaming LLM providers."""

    model: str = ""
    temperature: float = 0.7
    max_tokens: int = DEFAULT_MAX_TOKENS

    @abstractmethod
    def stream_events(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Open one streaming turn and yield raw provider events."""
        pass

    async def close(self) -> None:
        return None


class AnthropicProvider(LLMProvider):
    """Direct Anthropic Messages API provider."""

    def __init__(
        self,
        model: str = "claude-3-5-haiku-latest",
        base_url: str = DEFAULT_API_HOST,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        api_key: str | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Anthropic provider.

        Args:
            model: Claude model id
            base_url: API host, bare hosts get an https:// prefix
            temperature: Sampling temperature
            max_tokens: Max output tokens; defaults to the per-model limit
            api_key: API key, falls back to ANTHROPIC_API_KEY
            timeout: Request timeout in seconds
            client: Optional preconfigured HTTP client
        """
        self.model = model
        self.base_url = normalize_api_host(base_url)
        self.temperature = temperature
        self.max_tokens = resolve_max_tokens(model, max_tokens)
        self.api_key = (api_key or os.environ.get("ANTHROPIC_API_KEY", "")).strip()

        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Messages API format (system already removed)."""
        result = []
        for msg in messages:
            content = msg.content
            if isinstance(content, str):
                content = content or ""
            result.append({"role": msg.role, "content": content})
        return result

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Messages API format."""
        result = []
        for tool in tools:
            if not tool.name:
                continue
            result.append({
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": tool.parameters or {"type": "object", "properties": {}},
            })
        return result

    def _request_body(
        self,
        messages: list[Message],
        system: str | None,
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        system_prompt, rest = split_system_messages(messages, system)
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "messages": self._convert_messages(rest),
            "stream": True,
        }
        if system_prompt:
            body["system"] = system_prompt
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
        }

    @staticmethod
    def _error_from_response(status_code: int, body: str) -> ExchangeError:
        error_type = None
        message = body.strip()
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            error_type = data["error"].get("type")
            message = str(data["error"].get("message") or message)
        return classify_provider_error(
            f"Anthropic API error {status_code}: {message}",
            status_code=status_code,
            error_type=error_type,
        )

    async def stream_events(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream raw Messages API events for one turn."""
        if not self.api_key:
            raise AuthenticationError(
                "Missing Anthropic API key. Set model.api_key in config "
                "or ANTHROPIC_API_KEY environment variable."
            )

        url = f"{self.base_url}/v1/messages"
        body = self._request_body(messages, system, tools, temperature, max_tokens)

        try:
            log.debug(
                "Opening provider stream",
                model=self.model,
                url=url,
                msg_count=len(body["messages"]),
                tool_count=len(body.get("tools", [])),
            )
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                log.debug("Provider response status", status=response.status_code)
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise self._error_from_response(response.status_code, error_text)

                async for event in iter_sse_events(response.aiter_lines()):
                    yield event

        except ExchangeError:
            raise
        except httpx.HTTPError as e:
            raise RateLimitOrNetworkError(f"Anthropic streaming error: {e}")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "anthropic",
    model: str = "claude-3-5-haiku-latest",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int | None = None,
    timeout: float = 120.0,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (anthropic, claude)
        model: Model name
        api_key: Optional API key
        base_url: Optional API host override
        temperature: Default temperature
        max_tokens: Default max output tokens

    Returns:
        Configured LLMProvider instance
    """
    name = str(provider or "").strip().lower()
    if name in {"anthropic", "claude"}:
        return AnthropicProvider(
            model=model,
            base_url=base_url or DEFAULT_API_HOST,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'anthropic'.")


__all__ = [
    "AnthropicProvider",
    "CLAUDE_MODEL_CONFIGS",
    "LLMProvider",
    "MODELS",
    "Message",
    "ToolDefinition",
    "create_provider",
    "iter_sse_events",
    "resolve_max_tokens",
    "split_system_messages",
]
