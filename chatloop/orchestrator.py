"""Turn orchestration: streaming, tool dispatch and continuation."""

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from chatloop.accumulator import PendingToolCall, ToolCallAccumulator
from chatloop.config import Config
from chatloop.exceptions import (
    ExchangeCancelled,
    ExchangeError,
    ProtocolViolationError,
    ToolBudgetExceededError,
    ToolError,
    classify_provider_error,
)
from chatloop.llm import LLMProvider, Message
from chatloop.logging import get_logger
from chatloop.rewriter import CITATION_INSTRUCTION, rewrite_conversation
from chatloop.streaming import (
    AnthropicEventParser,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallArgDelta,
    ToolCallEnd,
    ToolCallStart,
    TurnEnd,
    UsageUpdate,
    parse_stream,
)
from chatloop.tools.registry import ToolRegistry, ToolResult

log = get_logger(__name__)

T = TypeVar("T")

TextCallback = Callable[[str], Any]

DEFAULT_MAX_TOOL_CALLS = 3


class ExchangeState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETING = "completing"
    TOOL_DISPATCH = "tool_dispatch"
    REWRITING = "rewriting"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[ExchangeState, set[ExchangeState]] = {
    ExchangeState.IDLE: {ExchangeState.STREAMING, ExchangeState.FAILED},
    ExchangeState.STREAMING: {
        ExchangeState.COMPLETING,
        ExchangeState.TOOL_DISPATCH,
        ExchangeState.FAILED,
    },
    ExchangeState.COMPLETING: {ExchangeState.DONE},
    ExchangeState.TOOL_DISPATCH: {ExchangeState.REWRITING, ExchangeState.FAILED},
    ExchangeState.REWRITING: {ExchangeState.STREAMING, ExchangeState.FAILED},
    ExchangeState.DONE: set(),
    ExchangeState.FAILED: set(),
}


class ToolCallBudget:
    """Count of tool calls executed in one exchange against a fixed ceiling."""

    def __init__(self, ceiling: int = DEFAULT_MAX_TOOL_CALLS):
        self.ceiling = max(0, int(ceiling))
        self.used = 0

    @property
    def remaining(self) -> int:
        return max(0, self.ceiling - self.used)

    def can_spend(self, count: int) -> bool:
        return self.used + count <= self.ceiling

    def consume(self, count: int = 1) -> None:
        self.used += count


@dataclass
class ExchangeResult:
    """Outcome of a completed exchange."""

    text: str
    conversation: list[Message]
    turns: int
    tool_calls: int
    usage: dict[str, int] = field(default_factory=dict)


class Exchange:
    """One logical user request, possibly spanning several provider turns.

    The exchange exclusively owns its conversation and tool-call budget.
    ``text`` stays readable after any outcome, including cancellation.
    """

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry | None,
        conversation: list[Message | dict[str, Any]],
        *,
        system_prompt: str | None = None,
        use_tools: bool = True,
        max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
        on_text: TextCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        citation_instruction: str | None = CITATION_INSTRUCTION,
    ):
        self._provider = provider
        self._tools = tools
        self._use_tools = bool(use_tools and tools is not None)
        self._on_text = on_text
        self._cancel_event = cancel_event
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._citation_instruction = citation_instruction
        self.system_prompt = system_prompt
        self.conversation: list[Message] = [Message.coerce(m) for m in conversation]
        self.budget = ToolCallBudget(max_tool_calls)
        self.state = ExchangeState.IDLE
        self.text = ""
        self.turns = 0
        self.usage: dict[str, int] = {"input_tokens": 0, "output_tokens": 0}
        self.error: ExchangeError | None = None

    def _transition(self, target: ExchangeState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid exchange transition {self.state.value} -> {target.value}")
        log.debug("Exchange state", source=self.state.value, target=target.value)
        self.state = target

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def _raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ExchangeCancelled()

    async def _guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the cancel event fires first."""
        if self._cancel_event is None:
            return await awaitable

        work = asyncio.ensure_future(awaitable)
        if self._cancel_event.is_set():
            await _cancel_task(work)
            raise ExchangeCancelled()
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _cancel_task(work)
            raise
        finally:
            await _cancel_task(waiter)

        if work in done:
            return work.result()
        await _cancel_task(work)
        raise ExchangeCancelled()

    async def _emit_text(self, fragment: str) -> None:
        self.text += fragment
        if self._on_text is None:
            return
        outcome = self._on_text(fragment)
        if inspect.isawaitable(outcome):
            await outcome

    async def run(self) -> ExchangeResult:
        """Drive the exchange until it is done or failed."""
        if self.state is not ExchangeState.IDLE:
            raise RuntimeError("Exchange already started")

        try:
            self._raise_if_cancelled()
            while True:
                calls = await self._stream_turn()

                if not calls:
                    self._transition(ExchangeState.COMPLETING)
                    self._transition(ExchangeState.DONE)
                    log.info(
                        "Exchange finished",
                        turns=self.turns,
                        tool_calls=self.budget.used,
                        chars=len(self.text),
                    )
                    return ExchangeResult(
                        text=self.text,
                        conversation=list(self.conversation),
                        turns=self.turns,
                        tool_calls=self.budget.used,
                        usage=dict(self.usage),
                    )

                if not self.budget.can_spend(len(calls)):
                    await self._emit_text(
                        f"\n\n[Tool call limit reached: {self.budget.used} of "
                        f"{self.budget.ceiling} calls used]"
                    )
                    log.warning(
                        "Tool call budget exhausted",
                        used=self.budget.used,
                        requested=len(calls),
                        ceiling=self.budget.ceiling,
                    )
                    raise ToolBudgetExceededError(self.budget.used, len(calls), self.budget.ceiling)

                self._transition(ExchangeState.TOOL_DISPATCH)
                results = await self._dispatch(calls)

                self._transition(ExchangeState.REWRITING)
                self.conversation = rewrite_conversation(
                    self.conversation,
                    calls,
                    results,
                    citation_instruction=self._citation_instruction,
                )
        except ExchangeError as e:
            e.partial_text = self.text
            self.error = e
            self._transition(ExchangeState.FAILED)
            if isinstance(e, ExchangeCancelled):
                log.info("Exchange cancelled", turns=self.turns, chars=len(self.text))
            else:
                log.error("Exchange failed", kind=e.kind.value, error=str(e), turns=self.turns)
            raise
        except asyncio.CancelledError:
            # Task cancelled from outside: record the outcome, keep asyncio semantics.
            self.error = ExchangeCancelled(partial_text=self.text)
            self._transition(ExchangeState.FAILED)
            raise

    async def _stream_turn(self) -> list[PendingToolCall]:
        """Run one provider turn; return the tool calls it finalized."""
        self._transition(ExchangeState.STREAMING)
        self.turns += 1

        accumulator = ToolCallAccumulator()
        raw_events = self._provider.stream_events(
            self.conversation,
            system=self.system_prompt,
            tools=self._tools.get_definitions() if self._use_tools else [],
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        events = parse_stream(raw_events, AnthropicEventParser())
        log.debug("Turn started", turn=self.turns, messages=len(self.conversation))

        try:
            while True:
                self._raise_if_cancelled()
                event = await self._guard(_next_event(events))
                if event is None:
                    raise ProtocolViolationError("Provider stream ended before turn end")
                if isinstance(event, TurnEnd):
                    break
                await self._handle_event(event, accumulator)
        finally:
            await events.aclose()

        if accumulator.open_calls:
            open_ids = ", ".join(call.id for call in accumulator.open_calls)
            raise ProtocolViolationError(f"Turn ended with unfinished tool calls: {open_ids}")

        calls = accumulator.finalized
        if calls and not self._use_tools:
            raise ProtocolViolationError("Model requested tools while tool use is disabled")
        log.debug("Turn ended", turn=self.turns, tool_calls=len(calls))
        return calls

    async def _handle_event(self, event: StreamEvent, accumulator: ToolCallAccumulator) -> None:
        if isinstance(event, TextDelta):
            if event.text:
                await self._emit_text(event.text)
        elif isinstance(event, ToolCallStart):
            accumulator.on_start(event.id, event.name)
        elif isinstance(event, ToolCallArgDelta):
            accumulator.on_arg_fragment(event.id, event.fragment)
        elif isinstance(event, ToolCallEnd):
            accumulator.on_end(event.id)
        elif isinstance(event, UsageUpdate):
            self.usage["input_tokens"] += event.input_tokens
            self.usage["output_tokens"] += event.output_tokens
            if event.stop_reason == "max_tokens":
                log.warning("Turn stopped at max tokens", turn=self.turns)
        elif isinstance(event, StreamError):
            raise classify_provider_error(
                f"Provider stream error ({event.error_type}): {event.message}",
                error_type=event.error_type,
            )

    async def _dispatch(self, calls: list[PendingToolCall]) -> list[ToolResult]:
        """Execute all calls concurrently and wait for every one of them."""
        self._raise_if_cancelled()
        log.info("Dispatching tool calls", calls=[call.name for call in calls])
        return list(await self._guard(asyncio.gather(*(self._execute_call(c) for c in calls))))

    async def _execute_call(self, call: PendingToolCall) -> ToolResult:
        assert self._tools is not None
        try:
            result = await self._tools.execute(call.name, dict(call.arguments or {}))
        except ToolError as e:
            log.warning("Tool call failed", tool=call.name, call_id=call.id, error=str(e))
            result = ToolResult(success=False, error=str(e))
        self.budget.consume()
        return result.model_copy(update={"tool_call_id": call.id})


async def _next_event(events: AsyncIterator[StreamEvent]) -> StreamEvent | None:
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return None


async def _cancel_task(task: "asyncio.Future[Any] | None") -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None:
        return
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        pass


class TurnOrchestrator:
    """Entry point used by the session layer to run exchanges."""

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry | None = None,
        *,
        use_tools: bool = True,
        max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
        default_prompt: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        self.provider = provider
        self.tools = tools
        self.use_tools = use_tools
        self.max_tool_calls = max_tool_calls
        self.default_prompt = default_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_config(
        cls,
        config: Config,
        provider: LLMProvider,
        tools: ToolRegistry | None = None,
    ) -> "TurnOrchestrator":
        return cls(
            provider,
            tools,
            use_tools=config.tools.use_tools,
            max_tool_calls=config.tools.max_tool_calls,
            default_prompt=config.model.default_prompt,
        )

    def new_exchange(
        self,
        conversation: list[Message | dict[str, Any]],
        system_prompt: str | None = None,
        on_text: TextCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Exchange:
        """Create a fresh exchange; budget and state start from zero."""
        return Exchange(
            self.provider,
            self.tools,
            conversation,
            system_prompt=system_prompt if system_prompt is not None else self.default_prompt,
            use_tools=self.use_tools,
            max_tool_calls=self.max_tool_calls,
            on_text=on_text,
            cancel_event=cancel_event,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

    async def start_exchange(
        self,
        conversation: list[Message | dict[str, Any]],
        system_prompt: str | None = None,
        on_text: TextCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExchangeResult:
        """Run one exchange to completion.

        Raises:
            ExchangeError subclass describing why the exchange ended early;
            its ``partial_text`` holds the text streamed so far.
        """
        exchange = self.new_exchange(
            conversation,
            system_prompt=system_prompt,
            on_text=on_text,
            cancel_event=cancel_event,
        )
        return await exchange.run()
