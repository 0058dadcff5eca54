"""Buffering of streamed tool-call arguments."""

import json
from dataclasses import dataclass, field
from typing import Any

from chatloop.exceptions import MalformedToolArgumentsError, ProtocolViolationError


@dataclass
class PendingToolCall:
    """A tool call requested by the model within one turn."""

    id: str
    name: str
    argument_buffer: str = ""
    arguments: dict[str, Any] | None = None
    finalized: bool = False

    def to_tool_use_block(self) -> dict[str, Any]:
        """Render the call exactly as the model requested it."""
        return {
            "type": "tool_use",
            "id": self.id,
            "name": self.name,
            "input": dict(self.arguments or {}),
        }


def parse_tool_arguments(call: PendingToolCall) -> dict[str, Any]:
    """Parse an accumulated argument buffer into a key-value object."""
    raw = call.argument_buffer.strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedToolArgumentsError(call.id, call.name, f"invalid JSON ({e.msg})") from e
    if not isinstance(parsed, dict):
        raise MalformedToolArgumentsError(
            call.id, call.name, f"expected an object, got {type(parsed).__name__}"
        )
    return parsed


@dataclass
class ToolCallAccumulator:
    """Collect argument fragments per call id until the call is closed.

    One accumulator lives for one turn. Fragments are concatenated in arrival
    order.
    """

    _calls: dict[str, PendingToolCall] = field(default_factory=dict)
    _finalized: list[PendingToolCall] = field(default_factory=list)

    def on_start(self, call_id: str, name: str) -> PendingToolCall:
        if call_id in self._calls:
            raise ProtocolViolationError(f"Tool call {call_id} started twice")
        call = PendingToolCall(id=call_id, name=name)
        self._calls[call_id] = call
        return call

    def on_arg_fragment(self, call_id: str, text: str) -> None:
        call = self._calls.get(call_id)
        if call is None:
            raise ProtocolViolationError(f"Argument fragment for unknown tool call {call_id}")
        if call.finalized:
            raise ProtocolViolationError(f"Argument fragment after end of tool call {call_id}")
        call.argument_buffer += text

    def on_end(self, call_id: str) -> PendingToolCall:
        call = self._calls.get(call_id)
        if call is None:
            raise ProtocolViolationError(f"End of unknown tool call {call_id}")
        if call.finalized:
            raise ProtocolViolationError(f"Tool call {call_id} finalized twice")
        call.arguments = parse_tool_arguments(call)
        call.finalized = True
        self._finalized.append(call)
        return call

    @property
    def finalized(self) -> list[PendingToolCall]:
        """Finalized calls in the order they were closed."""
        return list(self._finalized)

    @property
    def open_calls(self) -> list[PendingToolCall]:
        return [call for call in self._calls.values() if not call.finalized]
