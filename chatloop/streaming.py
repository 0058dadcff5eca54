"""Normalization of raw provider stream events."""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Union

from chatloop.exceptions import ProtocolViolationError


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str


@dataclass(frozen=True)
class ToolCallArgDelta:
    id: str
    fragment: str


@dataclass(frozen=True)
class ToolCallEnd:
    id: str


@dataclass(frozen=True)
class TurnEnd:
    pass


@dataclass(frozen=True)
class StreamError:
    """Error event sent by the provider inside an open stream."""

    error_type: str
    message: str
    cause: Any = None


@dataclass(frozen=True)
class UsageUpdate:
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str | None = None


StreamEvent = Union[
    TextDelta,
    ToolCallStart,
    ToolCallArgDelta,
    ToolCallEnd,
    TurnEnd,
    StreamError,
    UsageUpdate,
]


@dataclass(frozen=True)
class _Block:
    type: str
    call_id: str | None = None


class AnthropicEventParser:
    """Translate Messages API stream events into the internal vocabulary.

    Content blocks are identified by index. The block-start event records the
    block type (and tool call id), later delta/stop events for the same index
    are routed using that declared type. Unknown event types map to ``None``;
    text arriving on a tool_use block raises ``ProtocolViolationError``.
    """

    def __init__(self) -> None:
        self._blocks: dict[int, _Block] = {}

    def parse(self, raw: dict[str, Any]) -> StreamEvent | None:
        event_type = str(raw.get("type", "") or "")

        if event_type == "content_block_start":
            return self._on_block_start(raw)
        if event_type == "content_block_delta":
            return self._on_block_delta(raw)
        if event_type == "content_block_stop":
            block = self._blocks.get(self._index(raw))
            if block is not None and block.type == "tool_use":
                return ToolCallEnd(id=block.call_id or "")
            return None
        if event_type == "message_start":
            message = raw.get("message") or {}
            usage = message.get("usage") or {}
            return UsageUpdate(
                input_tokens=int(usage.get("input_tokens", 0) or 0),
                output_tokens=int(usage.get("output_tokens", 0) or 0),
            )
        if event_type == "message_delta":
            usage = raw.get("usage") or {}
            delta = raw.get("delta") or {}
            return UsageUpdate(
                output_tokens=int(usage.get("output_tokens", 0) or 0),
                stop_reason=delta.get("stop_reason"),
            )
        if event_type == "message_stop":
            return TurnEnd()
        if event_type == "error":
            error = raw.get("error") or {}
            return StreamError(
                error_type=str(error.get("type", "") or "api_error"),
                message=str(error.get("message", "") or "Provider stream error"),
                cause=raw,
            )

        return None

    @staticmethod
    def _index(raw: dict[str, Any]) -> int:
        try:
            return int(raw.get("index", -1))
        except (TypeError, ValueError):
            return -1

    def _on_block_start(self, raw: dict[str, Any]) -> StreamEvent | None:
        index = self._index(raw)
        block = raw.get("content_block") or {}
        block_type = str(block.get("type", "") or "")

        if block_type == "tool_use":
            call_id = str(block.get("id", "") or f"block_{index}")
            self._blocks[index] = _Block(type="tool_use", call_id=call_id)
            return ToolCallStart(id=call_id, name=str(block.get("name", "") or ""))

        self._blocks[index] = _Block(type=block_type)
        if block_type == "text" and block.get("text"):
            return TextDelta(text=str(block["text"]))
        return None

    def _on_block_delta(self, raw: dict[str, Any]) -> StreamEvent | None:
        index = self._index(raw)
        delta = raw.get("delta") or {}
        delta_type = str(delta.get("type", "") or "")
        block = self._blocks.get(index)

        if delta_type == "text_delta":
            if block is not None and block.type == "tool_use":
                raise ProtocolViolationError(
                    f"Text delta on tool_use block {index} ({block.call_id})"
                )
            if block is None or block.type == "text":
                return TextDelta(text=str(delta.get("text", "") or ""))
            return None
        if delta_type == "input_json_delta":
            # An unknown index keeps a synthetic id so the accumulator rejects it.
            call_id = block.call_id if block is not None and block.type == "tool_use" else None
            return ToolCallArgDelta(
                id=call_id or f"block_{index}",
                fragment=str(delta.get("partial_json", "") or ""),
            )
        return None


async def parse_stream(
    raw_events: AsyncIterator[dict[str, Any]],
    parser: AnthropicEventParser | None = None,
) -> AsyncIterator[StreamEvent]:
    """Lazily map a raw provider event stream to normalized events."""
    parser = parser or AnthropicEventParser()
    try:
        async for raw in raw_events:
            event = parser.parse(raw)
            if event is None:
                continue
            yield event
    finally:
        aclose = getattr(raw_events, "aclose", None)
        if aclose is not None:
            await aclose()
