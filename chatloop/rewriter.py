"""Conversation rewriting after a tool round-trip."""

from typing import Any

from chatloop.accumulator import PendingToolCall
from chatloop.llm import Message
from chatloop.tools.registry import ToolResult

CITATION_INSTRUCTION = (
    "You are an AI assistant tasked with answering user questions based on the provided "
    "tool results. Use the results to create an accurate and concise answer. Include "
    "in-text citations for references, linking directly to the sources. Adjust the "
    "answer's language to match the user's query language.\n"
    "Output Format Example:\n"
    "Answer based on search results, with in-text citations like [1](https://example.com).\n"
    "---\n"
    "### References\n"
    "1. **[Title 1](https://example.com)**: Brief explanation or key points from the source.\n"
    "2. **[Title 2](https://example.com)**: Brief explanation or key points from the source."
)


def tool_use_message(calls: list[PendingToolCall]) -> Message:
    return Message(role="assistant", content=[call.to_tool_use_block() for call in calls])


def tool_result_message(calls: list[PendingToolCall], results: list[ToolResult]) -> Message:
    by_id = {result.tool_call_id: result for result in results}
    blocks: list[dict[str, Any]] = []
    for call in calls:
        result = by_id.get(call.id) or ToolResult(success=False, error="No result produced")
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": call.id,
            "content": result.payload,
        }
        if not result.success:
            block["is_error"] = True
        blocks.append(block)
    return Message(role="user", content=blocks)


def rewrite_conversation(
    conversation: list[Message],
    calls: list[PendingToolCall],
    results: list[ToolResult],
    citation_instruction: str | None = CITATION_INSTRUCTION,
) -> list[Message]:
    """Return the next conversation to resend to the model.

    Appends the assistant tool-use message, the user tool-result message and
    the citation instruction. Earlier entries are carried over untouched.
    """
    rewritten = list(conversation)
    rewritten.append(tool_use_message(calls))
    rewritten.append(tool_result_message(calls, results))
    if citation_instruction:
        rewritten.append(Message(role="user", content=citation_instruction))
    return rewritten
