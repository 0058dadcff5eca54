"""Browse tool for retrieving web page content."""

import asyncio
import json
import os
import re
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel

from chatloop.config import BrowseToolConfig
from chatloop.exceptions import ToolExecutionError
from chatloop.logging import get_logger
from chatloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)

TOOL_NAME = "browse"
TRUNCATION_MARKER = "... [truncated]"


class PageContent(BaseModel):
    """Extracted content of one URL."""

    url: str
    title: str = ""
    text: str = ""
    error: str | None = None


def truncate_text(text: str, max_chars: int) -> str:
    """Cap ``text`` at ``max_chars`` characters, truncation marker included."""
    if len(text) <= max_chars:
        return text
    suffix = "\n" + TRUNCATION_MARKER
    if max_chars <= len(suffix):
        return text[:max_chars]
    return text[: max_chars - len(suffix)] + suffix


class PageFetcher(ABC):
    """Fetches page text for a batch of URLs."""

    def __init__(self, config: BrowseToolConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.client = client or httpx.AsyncClient(
            timeout=float(config.timeout),
            follow_redirects=True,
            headers={"User-Agent": "chatloop/0.1.0 (Browse Tool)"},
        )

    @abstractmethod
    async def fetch(
        self,
        urls: list[str],
        include_markup: bool = False,
        max_characters: int = 2048,
    ) -> list[PageContent]:
        pass

    async def close(self) -> None:
        await self.client.aclose()


class ExaContentsFetcher(PageFetcher):
    """Exa contents API; one request for all URLs."""

    async def fetch(
        self,
        urls: list[str],
        include_markup: bool = False,
        max_characters: int = 2048,
    ) -> list[PageContent]:
        api_key = self.config.exa_api_key.strip() or os.environ.get("EXA_API_KEY", "").strip()
        if not api_key:
            raise ToolExecutionError(
                TOOL_NAME,
                "Missing Exa API key. Set tools.browse.exa_api_key in config "
                "or EXA_API_KEY environment variable.",
            )

        body = {
            "ids": urls,
            "contents": {
                "text": {
                    "maxCharacters": max_characters,
                    "includeHtmlTags": include_markup,
                },
            },
        }
        headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key,
        }

        try:
            response = await self.client.post(self.config.exa_base_url, json=body, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            detail = f"Error fetching content: HTTP {e.response.status_code} {e.response.reason_phrase}"
            log.error("Exa contents request failed", urls=urls, error=detail)
            raise ToolExecutionError(TOOL_NAME, detail.strip())
        except httpx.HTTPError as e:
            log.error("Exa contents request failed", urls=urls, error=str(e))
            raise ToolExecutionError(TOOL_NAME, f"HTTP error: {e}")

        items = payload.get("results", []) if isinstance(payload, dict) else []
        by_url: dict[str, dict[str, Any]] = {}
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            for key in ("url", "id"):
                value = str(item.get(key, "") or "").strip()
                if value:
                    by_url.setdefault(value, item)

        pages: list[PageContent] = []
        for url in urls:
            item = by_url.get(url)
            if item is None:
                pages.append(PageContent(url=url, error="No content returned"))
                continue
            pages.append(PageContent(
                url=url,
                title=str(item.get("title", "") or ""),
                text=str(item.get("text", "") or "")[:max_characters],
            ))
        return pages


class DirectPageFetcher(PageFetcher):
    """Plain HTTP fetch with readable-text extraction."""

    async def fetch(
        self,
        urls: list[str],
        include_markup: bool = False,
        max_characters: int = 2048,
    ) -> list[PageContent]:
        return list(await asyncio.gather(
            *(self._fetch_one(url, include_markup, max_characters) for url in urls)
        ))

    async def _fetch_one(self, url: str, include_markup: bool, max_characters: int) -> PageContent:
        try:
            log.info("Fetching URL", url=url)
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.error("HTTP fetch failed", url=url, error=str(e))
            return PageContent(url=url, error=f"HTTP error: {e}")

        if include_markup:
            return PageContent(url=url, text=truncate_text(response.text, max_characters))

        title, text = self._extract_readable_text(response.text, base_url=url)
        return PageContent(url=url, title=title, text=truncate_text(text, max_characters))

    @staticmethod
    def _extract_readable_text(html: str, base_url: str | None = None) -> tuple[str, str]:
        """Extract title and human-readable text from raw HTML."""
        soup = BeautifulSoup(html, "html.parser")

        for tag in soup(["script", "style", "noscript", "template", "svg", "canvas"]):
            tag.decompose()

        # Keep links so later turns can cite sources.
        for anchor in soup.find_all("a"):
            href = (anchor.get("href") or "").strip()
            label = anchor.get_text(" ", strip=True)
            if not href:
                continue
            absolute = urljoin(base_url, href) if base_url else href
            if label:
                anchor.replace_with(f"{label} ({absolute})")
            else:
                anchor.replace_with(absolute)

        title = ""
        if soup.title and soup.title.string:
            title = soup.title.string.strip()

        raw_text = soup.get_text(separator="\n")
        lines: list[str] = []
        for line in raw_text.splitlines():
            cleaned = re.sub(r"\s+", " ", line).strip()
            if cleaned:
                lines.append(cleaned)

        return title, "\n".join(lines)


PAGE_FETCHERS: dict[str, type[PageFetcher]] = {
    "exa": ExaContentsFetcher,
    "direct": DirectPageFetcher,
}


def create_page_fetcher(
    config: BrowseToolConfig,
    client: httpx.AsyncClient | None = None,
) -> PageFetcher:
    """Create the fetcher selected by ``config.backend``."""
    fetcher_cls = PAGE_FETCHERS.get(config.backend)
    if fetcher_cls is None:
        raise ValueError(f"Unsupported browse backend: {config.backend!r}")
    return fetcher_cls(config, client=client)


class WebBrowseTool(Tool):
    """Fetch the text content of one or more web pages."""

    name = TOOL_NAME
    description = "Fetch and extract readable text content from one or more URLs."
    parameters = {
        "type": "object",
        "properties": {
            "urls": {
                "type": "array",
                "items": {"type": "string"},
                "description": "URLs to fetch",
            },
            "include_markup": {
                "type": "boolean",
                "description": "Keep HTML tags in the returned text (default false)",
            },
            "max_characters": {
                "type": "number",
                "description": "Maximum characters per page",
            },
        },
        "required": ["urls"],
    }

    def __init__(self, fetcher: PageFetcher):
        self.fetcher = fetcher
        self.timeout_seconds = float(fetcher.config.timeout)

    def effective_max_chars(self, max_characters: int | None) -> int:
        cfg = self.fetcher.config
        value = cfg.max_chars if max_characters is None else int(max_characters)
        return min(max(1, value), max(1, cfg.max_chars_limit))

    async def browse(
        self,
        urls: list[str] | str,
        include_markup: bool = False,
        max_characters: int | None = None,
    ) -> list[PageContent]:
        if isinstance(urls, str):
            urls = [urls]
        cleaned = [str(url).strip() for url in urls or [] if str(url).strip()]
        if not cleaned:
            raise ToolExecutionError(self.name, "Missing required urls")

        pages = await self.fetcher.fetch(
            cleaned,
            include_markup=bool(include_markup),
            max_characters=self.effective_max_chars(max_characters),
        )
        if pages and all(page.error for page in pages):
            raise ToolExecutionError(self.name, "; ".join(f"{p.url}: {p.error}" for p in pages))
        return pages

    async def execute(
        self,
        urls: list[str] | str | None = None,
        include_markup: bool = False,
        max_characters: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Fetch pages and serialize them as a JSON array."""
        pages = await self.browse(urls or [], include_markup=include_markup, max_characters=max_characters)
        return ToolResult(
            success=True,
            content=json.dumps(
                [page.model_dump(exclude_none=True) for page in pages],
                ensure_ascii=False,
            ),
        )

    async def close(self) -> None:
        await self.fetcher.close()
