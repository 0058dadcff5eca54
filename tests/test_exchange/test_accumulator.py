import pytest

from chatloop.accumulator import ToolCallAccumulator
from chatloop.exceptions import MalformedToolArgumentsError, ProtocolViolationError


def test_fragments_are_concatenated_in_arrival_order():
    acc = ToolCallAccumulator()
    acc.on_start("call_1", "search")
    acc.on_arg_fragment("call_1", '{"qu')
    acc.on_arg_fragment("call_1", 'ery":"cats"}')

    call = acc.on_end("call_1")

    assert call.arguments == {"query": "cats"}
    assert call.to_tool_use_block() == {
        "type": "tool_use",
        "id": "call_1",
        "name": "search",
        "input": {"query": "cats"},
    }
    assert acc.finalized == [call]
    assert acc.open_calls == []


def test_empty_buffer_finalizes_to_empty_arguments():
    acc = ToolCallAccumulator()
    acc.on_start("call_1", "search")

    assert acc.on_end("call_1").arguments == {}


def test_interleaved_calls_keep_separate_buffers():
    acc = ToolCallAccumulator()
    acc.on_start("a", "search")
    acc.on_start("b", "browse")
    acc.on_arg_fragment("a", '{"query":')
    acc.on_arg_fragment("b", '{"urls":["u1"]}')
    acc.on_arg_fragment("a", '"x"}')

    assert acc.on_end("b").arguments == {"urls": ["u1"]}
    assert acc.on_end("a").arguments == {"query": "x"}
    assert [call.id for call in acc.finalized] == ["b", "a"]


def test_fragment_for_unknown_call_is_protocol_violation():
    acc = ToolCallAccumulator()

    with pytest.raises(ProtocolViolationError):
        acc.on_arg_fragment("missing", "{}")


def test_double_finalize_is_protocol_violation():
    acc = ToolCallAccumulator()
    acc.on_start("call_1", "search")
    acc.on_end("call_1")

    with pytest.raises(ProtocolViolationError):
        acc.on_end("call_1")
    with pytest.raises(ProtocolViolationError):
        acc.on_arg_fragment("call_1", "{}")


def test_end_of_unknown_call_is_protocol_violation():
    with pytest.raises(ProtocolViolationError):
        ToolCallAccumulator().on_end("nope")


def test_duplicate_start_is_protocol_violation():
    acc = ToolCallAccumulator()
    acc.on_start("call_1", "search")

    with pytest.raises(ProtocolViolationError):
        acc.on_start("call_1", "search")


@pytest.mark.parametrize("buffer", ['{"query": ', "[1, 2]"])
def test_malformed_arguments_are_attributed_to_the_call(buffer):
    acc = ToolCallAccumulator()
    acc.on_start("call_7", "search")
    acc.on_arg_fragment("call_7", buffer)

    with pytest.raises(MalformedToolArgumentsError) as exc_info:
        acc.on_end("call_7")

    assert exc_info.value.call_id == "call_7"
    assert exc_info.value.tool_name == "search"
