import pytest

from chatloop.exceptions import ProtocolViolationError

from chatloop.streaming import (
    AnthropicEventParser,
    StreamError,
    TextDelta,
    ToolCallArgDelta,
    ToolCallEnd,
    ToolCallStart,
    TurnEnd,
    UsageUpdate,
    parse_stream,
)


def _tool_start(index: int, call_id: str, name: str) -> dict:
    return {
        "type": "content_block_start",
        "index": index,
        "content_block": {"type": "tool_use", "id": call_id, "name": name, "input": {}},
    }


def test_parser_maps_text_blocks_to_text_deltas():
    parser = AnthropicEventParser()

    assert parser.parse({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}) is None
    event = parser.parse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}})
    stop = parser.parse({"type": "content_block_stop", "index": 0})

    assert event == TextDelta(text="Hi")
    assert stop is None


def test_parser_routes_tool_blocks_by_declared_type_not_position():
    parser = AnthropicEventParser()

    parser.parse({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}})
    start = parser.parse(_tool_start(1, "toolu_1", "search"))
    delta = parser.parse(
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"q'}}
    )
    text = parser.parse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "x"}})
    end = parser.parse({"type": "content_block_stop", "index": 1})

    assert start == ToolCallStart(id="toolu_1", name="search")
    assert delta == ToolCallArgDelta(id="toolu_1", fragment='{"q')
    assert text == TextDelta(text="x")
    assert end == ToolCallEnd(id="toolu_1")


def test_parser_is_idempotent_for_repeated_events():
    parser = AnthropicEventParser()
    parser.parse(_tool_start(0, "toolu_1", "search"))
    raw = {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": "{}"}}

    assert parser.parse(raw) == parser.parse(raw)
    assert parser.parse(_tool_start(0, "toolu_1", "search")) == ToolCallStart(id="toolu_1", name="search")


def test_parser_drops_unknown_and_ping_events():
    parser = AnthropicEventParser()

    assert parser.parse({"type": "ping"}) is None
    assert parser.parse({"type": "brand_new_event", "payload": 1}) is None
    assert parser.parse({"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta"}}) is None


def test_parser_wraps_error_events():
    parser = AnthropicEventParser()

    event = parser.parse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})

    assert isinstance(event, StreamError)
    assert event.error_type == "overloaded_error"
    assert event.message == "Overloaded"


def test_parser_reports_usage_and_turn_end():
    parser = AnthropicEventParser()

    start = parser.parse({"type": "message_start", "message": {"usage": {"input_tokens": 12, "output_tokens": 1}}})
    delta = parser.parse({"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 30}})

    assert start == UsageUpdate(input_tokens=12, output_tokens=1)
    assert delta == UsageUpdate(output_tokens=30, stop_reason="tool_use")
    assert parser.parse({"type": "message_stop"}) == TurnEnd()


def test_parser_rejects_text_delta_on_tool_use_block():
    parser = AnthropicEventParser()
    parser.parse(_tool_start(0, "toolu_1", "search"))

    with pytest.raises(ProtocolViolationError):
        parser.parse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "oops"}})


def test_parser_gives_unknown_index_arg_delta_a_synthetic_id():
    parser = AnthropicEventParser()

    event = parser.parse(
        {"type": "content_block_delta", "index": 4, "delta": {"type": "input_json_delta", "partial_json": "{"}}
    )

    assert event == ToolCallArgDelta(id="block_4", fragment="{")


@pytest.mark.asyncio
async def test_parse_stream_filters_and_closes_source():
    closed = False

    async def source():
        nonlocal closed
        try:
            yield {"type": "message_start", "message": {"usage": {}}}
            yield {"type": "ping"}
            yield {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}
            yield {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "ok"}}
            yield {"type": "message_stop"}
        finally:
            closed = True

    events = [event async for event in parse_stream(source())]

    assert events == [UsageUpdate(), TextDelta(text="ok"), TurnEnd()]
    assert closed is True
