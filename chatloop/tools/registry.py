"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, model_validator

from chatloop.exceptions import ToolExecutionError, ToolNotFoundError
from chatloop.llm import ToolDefinition
from chatloop.logging import get_logger

log = get_logger(__name__)


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for comparisons."""
    return str(value or "").strip().lower()


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None
    tool_call_id: str = ""

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    @property
    def payload(self) -> str:
        """Serialized payload handed back to the model."""
        if self.success:
            return self.content
        return f"Error: {self.error}"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with the serialized payload

        Raises:
            ToolExecutionError on network failure, bad response, or missing credential
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for the LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )

    async def close(self) -> None:
        return None


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, enabled: list[str] | None = None, timeout_seconds: float | None = None):
        self._tools: dict[str, Tool] = {}
        self._enabled = (
            None if enabled is None else {_normalize_tool_name(name) for name in enabled}
        )
        self._timeout_seconds = timeout_seconds

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def _is_enabled(self, name: str) -> bool:
        return self._enabled is None or _normalize_tool_name(name) in self._enabled

    def get(self, name: str) -> Tool:
        """Get an enabled tool by name.

        Raises:
            ToolNotFoundError if not registered or not enabled
        """
        if name not in self._tools or not self._is_enabled(name):
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List enabled tool names."""
        return [name for name in self._tools if self._is_enabled(name)]

    def get_definitions(self) -> list[ToolDefinition]:
        """Get definitions of all enabled tools for the LLM."""
        return [self._tools[name].get_definition() for name in self.list_tools()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails or times out
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        timeout_seconds = float(self._timeout_seconds or tool.timeout_seconds or 30.0)
        timeout_seconds = max(1.0, timeout_seconds)

        try:
            log.info("Executing tool", tool=name, args=arguments)
            result = await asyncio.wait_for(tool.execute(**arguments), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))

        if not isinstance(result, ToolResult):
            raise ToolExecutionError(name, "Tool returned invalid result payload")
        log.info("Tool executed", tool=name, success=result.success)
        return result

    async def close(self) -> None:
        """Close every registered tool."""
        for tool in self._tools.values():
            await tool.close()
