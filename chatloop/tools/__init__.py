"""Tools package for chatloop."""

from chatloop.config import ToolsConfig
from chatloop.tools.registry import Tool, ToolRegistry, ToolResult
from chatloop.tools.web_fetch import (
    DirectPageFetcher,
    ExaContentsFetcher,
    PageContent,
    WebBrowseTool,
    create_page_fetcher,
)
from chatloop.tools.web_search import (
    ExaSearchBackend,
    GoogleSearchBackend,
    SearchResult,
    WebSearchTool,
    create_search_backend,
)


def build_tool_registry(config: ToolsConfig) -> ToolRegistry:
    """Create a registry holding the search and browse tools for ``config``."""
    registry = ToolRegistry(enabled=config.enabled, timeout_seconds=config.timeout)
    registry.register(WebSearchTool(create_search_backend(config.search)))
    registry.register(WebBrowseTool(create_page_fetcher(config.browse)))
    return registry


__all__ = [
    "DirectPageFetcher",
    "ExaContentsFetcher",
    "ExaSearchBackend",
    "GoogleSearchBackend",
    "PageContent",
    "SearchResult",
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "WebBrowseTool",
    "WebSearchTool",
    "build_tool_registry",
    "create_page_fetcher",
    "create_search_backend",
]
