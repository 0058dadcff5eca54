"""Web search tool backed by Google Custom Search or Exa."""

import json
import os
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel

from chatloop.config import SearchToolConfig
from chatloop.exceptions import ToolExecutionError
from chatloop.logging import get_logger
from chatloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)

TOOL_NAME = "search"


class SearchResult(BaseModel):
    """Provider-neutral search hit."""

    title: str
    url: str
    snippet: str = ""


def _clean_text(value: str, max_chars: int = 500) -> str:
    """Normalize whitespace and bound output size."""
    cleaned = re.sub(r"\s+", " ", (value or "")).strip()
    if len(cleaned) <= max_chars:
        return cleaned
    return cleaned[:max_chars].rstrip() + "... [truncated]"


def _http_error_detail(error: httpx.HTTPStatusError) -> str:
    detail = f"HTTP {error.response.status_code}"
    body = (error.response.text or "").strip()
    if body:
        detail = f"{detail}: {_clean_text(body, max_chars=300)}"
    return detail


class SearchBackend(ABC):
    """One concrete search provider."""

    label: str = ""

    def __init__(self, config: SearchToolConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": "chatloop/0.1.0 (Search Tool)"},
        )

    def effective_count(self, result_count: int | None) -> int:
        count = self.config.max_results if result_count is None else int(result_count)
        return min(max(count, 1), max(1, self.config.max_results_limit))

    @abstractmethod
    async def search(
        self,
        query: str,
        category: str | None = None,
        include_domains: list[str] | None = None,
        exclude_domains: list[str] | None = None,
        result_count: int | None = None,
    ) -> list[SearchResult]:
        pass

    async def close(self) -> None:
        await self.client.aclose()


class GoogleSearchBackend(SearchBackend):
    """Google Custom Search JSON API."""

    label = "Google"

    @staticmethod
    def _build_query(
        query: str,
        include_domains: list[str] | None,
        exclude_domains: list[str] | None,
    ) -> str:
        parts = [query]
        included = [d.strip() for d in include_domains or [] if d.strip()]
        if included:
            parts.append(" OR ".join(f"site:{domain}" for domain in included))
        parts.extend(f"-site:{d.strip()}" for d in exclude_domains or [] if d.strip())
        return " ".join(parts)

    async def search(
        self,
        query: str,
        category: str | None = None,
        include_domains: list[str] | None = None,
        exclude_domains: list[str] | None = None,
        result_count: int | None = None,
    ) -> list[SearchResult]:
        api_key = self.config.google_api_key.strip() or os.environ.get("GOOGLE_API_KEY", "").strip()
        cx = self.config.google_cx.strip() or os.environ.get("GOOGLE_CSE_ID", "").strip()
        if not api_key or not cx:
            raise ToolExecutionError(
                TOOL_NAME,
                "Missing Google search credentials. Set tools.search.google_api_key and "
                "tools.search.google_cx in config or GOOGLE_API_KEY / GOOGLE_CSE_ID.",
            )
        if category:
            log.debug("Google search ignores category filter", category=category)

        params = {
            "key": api_key,
            "cx": cx,
            "q": self._build_query(query, include_domains, exclude_domains),
            "num": min(self.effective_count(result_count), 10),
        }

        try:
            response = await self.client.get(
                self.config.google_base_url,
                params=params,
                timeout=float(self.config.timeout),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            detail = _http_error_detail(e)
            log.error("Google search failed", query=query, error=detail)
            raise ToolExecutionError(TOOL_NAME, detail)
        except httpx.HTTPError as e:
            log.error("Google search failed", query=query, error=str(e))
            raise ToolExecutionError(TOOL_NAME, f"HTTP error: {e}")

        items = payload.get("items", []) if isinstance(payload, dict) else []
        results: list[SearchResult] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            results.append(SearchResult(
                title=_clean_text(str(item.get("title", "") or "Untitled"), max_chars=180),
                url=str(item.get("link", "") or "").strip(),
                snippet=_clean_text(str(item.get("snippet", "") or ""), self.config.snippet_chars),
            ))
        return results


class ExaSearchBackend(SearchBackend):
    """Exa neural search API."""

    label = "Exa"

    async def search(
        self,
        query: str,
        category: str | None = None,
        include_domains: list[str] | None = None,
        exclude_domains: list[str] | None = None,
        result_count: int | None = None,
    ) -> list[SearchResult]:
        api_key = self.config.exa_api_key.strip() or os.environ.get("EXA_API_KEY", "").strip()
        if not api_key:
            raise ToolExecutionError(
                TOOL_NAME,
                "Missing Exa API key. Set tools.search.exa_api_key in config "
                "or EXA_API_KEY environment variable.",
            )

        body: dict[str, Any] = {
            "query": query,
            "numResults": self.effective_count(result_count),
            "contents": {"text": {"maxCharacters": self.config.snippet_chars}},
        }
        if category:
            body["category"] = category
        if include_domains:
            body["includeDomains"] = list(include_domains)
        if exclude_domains:
            body["excludeDomains"] = list(exclude_domains)

        headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key,
        }

        try:
            response = await self.client.post(
                self.config.exa_base_url,
                json=body,
                headers=headers,
                timeout=float(self.config.timeout),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            detail = _http_error_detail(e)
            log.error("Exa search failed", query=query, error=detail)
            raise ToolExecutionError(TOOL_NAME, detail)
        except httpx.HTTPError as e:
            log.error("Exa search failed", query=query, error=str(e))
            raise ToolExecutionError(TOOL_NAME, f"HTTP error: {e}")

        items = payload.get("results", []) if isinstance(payload, dict) else []
        results: list[SearchResult] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            snippet = item.get("text") or item.get("summary") or " ".join(item.get("highlights") or [])
            results.append(SearchResult(
                title=_clean_text(str(item.get("title", "") or "Untitled"), max_chars=180),
                url=str(item.get("url", "") or "").strip(),
                snippet=_clean_text(str(snippet or ""), self.config.snippet_chars),
            ))
        return results


SEARCH_BACKENDS: dict[int, type[SearchBackend]] = {
    1: GoogleSearchBackend,
    2: ExaSearchBackend,
}


def create_search_backend(
    config: SearchToolConfig,
    client: httpx.AsyncClient | None = None,
) -> SearchBackend:
    """Create the backend selected by ``config.backend``."""
    backend_cls = SEARCH_BACKENDS.get(config.backend)
    if backend_cls is None:
        raise ValueError(f"Unsupported search backend: {config.backend!r}")
    return backend_cls(config, client=client)


def _as_domain_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class WebSearchTool(Tool):
    """Search the web and return normalized results."""

    name = TOOL_NAME
    description = "Search the internet for current information."
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The search query",
            },
            "category": {
                "type": "string",
                "description": "Optional result category (example: news, research paper, company)",
            },
            "include_domains": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Only return results from these domains",
            },
            "exclude_domains": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Never return results from these domains",
            },
            "result_count": {
                "type": "number",
                "description": "Maximum results to return",
            },
        },
        "required": ["query"],
    }

    def __init__(self, backend: SearchBackend):
        self.backend = backend
        self.timeout_seconds = float(backend.config.timeout)

    async def search(
        self,
        query: str,
        category: str | None = None,
        include_domains: list[str] | None = None,
        exclude_domains: list[str] | None = None,
        result_count: int | None = None,
    ) -> list[SearchResult]:
        q = (query or "").strip()
        if not q:
            raise ToolExecutionError(self.name, "Missing required query")
        return await self.backend.search(
            q,
            category=(category or "").strip() or None,
            include_domains=_as_domain_list(include_domains),
            exclude_domains=_as_domain_list(exclude_domains),
            result_count=result_count,
        )

    async def execute(
        self,
        query: str = "",
        category: str | None = None,
        include_domains: list[str] | None = None,
        exclude_domains: list[str] | None = None,
        result_count: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Run the search and serialize results as a JSON array."""
        results = await self.search(
            query,
            category=category,
            include_domains=include_domains,
            exclude_domains=exclude_domains,
            result_count=result_count,
        )
        log.info("Search finished", backend=self.backend.label, query=query, results=len(results))
        return ToolResult(
            success=True,
            content=json.dumps([r.model_dump() for r in results], ensure_ascii=False),
        )

    async def close(self) -> None:
        await self.backend.close()
