import json

import httpx
import pytest

from chatloop.config import BrowseToolConfig
from chatloop.exceptions import ToolExecutionError
from chatloop.tools.web_fetch import (
    DirectPageFetcher,
    ExaContentsFetcher,
    WebBrowseTool,
    create_page_fetcher,
    truncate_text,
)


class _FakeResponse:
    def __init__(self, text: str = "", status_code: int = 200, payload: dict | None = None):
        self.text = text
        self.status_code = status_code
        self._payload = payload
        self.request = httpx.Request("GET", "https://example.com")

    def json(self) -> dict:
        return self._payload or {}

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise httpx.HTTPStatusError(
                message=f"status={self.status_code}",
                request=self.request,
                response=httpx.Response(self.status_code, request=self.request, text=self.text),
            )


class _FakeClient:
    def __init__(self, responses: dict[str, _FakeResponse] | _FakeResponse):
        self._responses = responses
        self.calls: list[dict] = []

    def _lookup(self, url: str) -> _FakeResponse:
        if isinstance(self._responses, dict):
            return self._responses[url]
        return self._responses

    async def get(self, url: str, **kwargs):
        self.calls.append({"url": url, **kwargs})
        return self._lookup(url)

    async def post(self, url: str, **kwargs):
        self.calls.append({"url": url, **kwargs})
        return self._lookup(url)

    async def aclose(self) -> None:
        return None


def _direct_tool(client: _FakeClient, **overrides) -> WebBrowseTool:
    return WebBrowseTool(DirectPageFetcher(BrowseToolConfig(backend="direct", **overrides), client=client))


def test_truncate_text_keeps_marker_inside_limit():
    assert truncate_text("short", 10) == "short"
    assert truncate_text("y" * 40, 30) == "y" * 14 + "\n... [truncated]"
    assert len(truncate_text("y" * 40, 30)) == 30
    assert truncate_text("y" * 40, 8) == "y" * 8


def test_create_page_fetcher_selects_backend():
    assert isinstance(create_page_fetcher(BrowseToolConfig(backend="exa"), client=_FakeClient({})), ExaContentsFetcher)
    assert isinstance(create_page_fetcher(BrowseToolConfig(backend="direct"), client=_FakeClient({})), DirectPageFetcher)


@pytest.mark.asyncio
async def test_direct_browse_extracts_readable_text():
    html = """
    <html>
      <head>
        <title>Example Page</title>
        <script>var should_not_show = true;</script>
      </head>
      <body>
        <h1>Hello World</h1>
        <p>Read <a href="/guide">the guide</a> for details.</p>
      </body>
    </html>
    """
    tool = _direct_tool(_FakeClient(_FakeResponse(html)))

    result = await tool.execute(urls=["https://example.com/start"])

    pages = json.loads(result.content)
    assert result.success is True
    assert pages[0]["url"] == "https://example.com/start"
    assert pages[0]["title"] == "Example Page"
    assert "Hello World" in pages[0]["text"]
    assert "the guide (https://example.com/guide)" in pages[0]["text"]
    assert "should_not_show" not in pages[0]["text"]


@pytest.mark.asyncio
async def test_direct_browse_keeps_markup_when_requested():
    html = "<html><body><h1>Hello</h1></body></html>"
    tool = _direct_tool(_FakeClient(_FakeResponse(html)))

    pages = await tool.browse("https://example.com", include_markup=True)

    assert pages[0].text == html


@pytest.mark.asyncio
async def test_direct_browse_caps_characters_at_configured_limit():
    html = "<html><body><p>" + "x" * 200 + "</p></body></html>"
    tool = _direct_tool(_FakeClient(_FakeResponse(html)), max_chars=20, max_chars_limit=50)

    default_pages = await tool.browse(["https://example.com"])
    capped_pages = await tool.browse(["https://example.com"], max_characters=10_000)

    assert default_pages[0].text == "x" * 4 + "\n... [truncated]"
    assert capped_pages[0].text == "x" * 34 + "\n... [truncated]"
    assert len(default_pages[0].text) == 20
    assert len(capped_pages[0].text) == 50


@pytest.mark.asyncio
async def test_direct_browse_reports_per_url_failures_and_raises_when_all_fail():
    client = _FakeClient({
        "https://ok.example": _FakeResponse("<p>fine</p>"),
        "https://down.example": _FakeResponse("boom", status_code=503),
    })
    tool = _direct_tool(client)

    pages = await tool.browse(["https://ok.example", "https://down.example"])

    assert pages[0].text == "fine"
    assert pages[1].error is not None
    with pytest.raises(ToolExecutionError):
        await tool.browse(["https://down.example"])


@pytest.mark.asyncio
async def test_exa_browse_sends_contents_request_and_orders_by_url():
    client = _FakeClient(
        _FakeResponse(
            payload={
                "results": [
                    {"id": "https://b.example", "url": "https://b.example", "title": "B", "text": "bbb"},
                    {"id": "https://a.example", "url": "https://a.example", "title": "A", "text": "aaa"},
                ]
            }
        )
    )
    tool = WebBrowseTool(ExaContentsFetcher(BrowseToolConfig(exa_api_key="exa-key"), client=client))

    pages = await tool.browse(["https://a.example", "https://b.example"], max_characters=3000)

    assert [p.title for p in pages] == ["A", "B"]
    body = client.calls[0]["json"]
    assert body["ids"] == ["https://a.example", "https://b.example"]
    assert body["contents"]["text"] == {"maxCharacters": 3000, "includeHtmlTags": False}
    assert client.calls[0]["headers"]["x-api-key"] == "exa-key"


@pytest.mark.asyncio
async def test_exa_browse_fails_on_non_2xx_and_missing_key(monkeypatch):
    monkeypatch.delenv("EXA_API_KEY", raising=False)
    failing = WebBrowseTool(
        ExaContentsFetcher(BrowseToolConfig(exa_api_key="k"), client=_FakeClient(_FakeResponse("", status_code=500)))
    )
    keyless = WebBrowseTool(ExaContentsFetcher(BrowseToolConfig(), client=_FakeClient(_FakeResponse())))

    with pytest.raises(ToolExecutionError) as exc_info:
        await failing.browse(["https://a.example"])
    assert "HTTP 500" in str(exc_info.value)

    with pytest.raises(ToolExecutionError) as exc_info:
        await keyless.browse(["https://a.example"])
    assert "Missing Exa API key" in str(exc_info.value)


@pytest.mark.asyncio
async def test_browse_requires_urls():
    tool = _direct_tool(_FakeClient({}))

    with pytest.raises(ToolExecutionError):
        await tool.execute(urls=[])
