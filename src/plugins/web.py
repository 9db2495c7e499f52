"""Web plugin: HTTP requests and page scraping over a shared httpx client."""

import re
from html.parser import HTMLParser
from typing import Any, Optional

import httpx

from shared.logging import get_logger
from shared.models import Plugin, ToolDefinition, ToolParameters

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0
API_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH"]

VOID_ELEMENTS = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
})
HIDDEN_ELEMENTS = frozenset({"head", "script", "style", "noscript", "template"})

_SELECTOR = re.compile(
    r"^(?P<tag>[a-zA-Z][a-zA-Z0-9-]*)?(?:#(?P<id>[\w-]+))?(?:\.(?P<cls>[\w-]+))?$"
)


def parse_selector(selector: str) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Split a simple selector into (tag, id, class).

    Supported forms are `tag`, `#id`, `.class` and combinations such as
    `tag.class` or `tag#id.class`.

    Raises:
        ValueError: For anything else (descendants, attributes, pseudo-classes)
    """
    match = _SELECTOR.match(selector.strip())
    if not match or not any(match.groupdict().values()):
        raise ValueError(f"Unsupported selector: {selector!r}")
    tag = match["tag"].lower() if match["tag"] else None
    return tag, match["id"], match["cls"]


class PageParser(HTMLParser):
    """Collects title, meta tags, visible text and selector matches from a page."""

    def __init__(self, selector: Optional[str] = None) -> None:
        super().__init__(convert_charrefs=True)
        self.selector = parse_selector(selector) if selector else None
        self.title = ""
        self.meta: dict[str, str] = {}
        self.matches: list[list[str]] = []
        self._text: list[str] = []
        self._stack: list[tuple[str, Optional[int]]] = []
        self._open_matches: list[int] = []
        self._hidden_depth = 0
        self._in_title = False

    @property
    def text(self) -> str:
        return " ".join(self._text)

    @property
    def matched_text(self) -> list[str]:
        return [" ".join(chunks) for chunks in self.matches]

    def _is_match(self, tag: str, attributes: dict[str, Optional[str]]) -> bool:
        want_tag, want_id, want_class = self.selector
        if want_tag and tag != want_tag:
            return False
        if want_id and attributes.get("id") != want_id:
            return False
        if want_class and want_class not in (attributes.get("class") or "").split():
            return False
        return True

    def handle_starttag(self, tag: str, attrs: list[tuple[str, Optional[str]]]) -> None:
        attributes = dict(attrs)

        if tag == "meta":
            name = (attributes.get("name") or "").lower()
            if name in ("description", "keywords") and attributes.get("content"):
                self.meta[name] = attributes["content"]
        elif tag == "title":
            self._in_title = True

        if tag in VOID_ELEMENTS:
            return

        if tag in HIDDEN_ELEMENTS:
            self._hidden_depth += 1

        opened = None
        if self.selector and self._is_match(tag, attributes):
            self.matches.append([])
            opened = len(self.matches) - 1
            self._open_matches.append(opened)

        self._stack.append((tag, opened))

    def handle_endtag(self, tag: str) -> None:
        if tag == "title":
            self._in_title = False

        if tag in VOID_ELEMENTS or not any(name == tag for name, _ in self._stack):
            return

        # Unclosed children are closed along with their parent
        while self._stack:
            name, opened = self._stack.pop()
            if name in HIDDEN_ELEMENTS:
                self._hidden_depth -= 1
            if opened is not None:
                self._open_matches.remove(opened)
            if name == tag:
                break

    def handle_data(self, data: str) -> None:
        if self._in_title:
            self.title += data
            return

        text = " ".join(data.split())
        if not text or self._hidden_depth:
            return

        self._text.append(text)
        for index in self._open_matches:
            self.matches[index].append(text)


class HttpTools:
    """
    HTTP tool executors bound to one client.

    The client is created by the plugin's initialize hook and closed by its
    cleanup hook, so a reload gets a fresh connection pool.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.timeout = timeout
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self.transport
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        await self.open()

        url = params["url"]
        logger.debug("HTTP request", method=method, url=url)

        try:
            response = await self._client.request(
                method,
                url,
                headers=params.get("headers"),
                params=params.get("params"),
                json=params.get("data"),
            )
        except httpx.HTTPError as e:
            return {"success": False, "error": f"{method} {url} failed: {e}"}

        data = {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": _decode_body(response),
        }

        if response.is_error:
            return {
                "success": False,
                "error": f"{method} {url} returned {response.status_code} {response.reason_phrase}",
                "data": data,
            }

        return {"success": True, "data": data}

    async def http_get(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request("GET", params)

    async def http_post(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", params)

    async def http_put(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", params)

    async def http_delete(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request("DELETE", params)

    async def api_request(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request(params["method"].upper(), params)

    async def scrape_webpage(self, params: dict[str, Any]) -> dict[str, Any]:
        """
        Fetch a page and extract its readable content.

        Without a selector the result carries the title, description and
        keywords meta tags and the visible body text. With one it carries
        the text of each matching element.
        """
        url = params["url"]

        try:
            parser = PageParser(params.get("selector"))
        except ValueError as e:
            return {"success": False, "error": str(e)}

        await self.open()

        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            return {"success": False, "error": f"GET {url} failed: {e}"}

        if response.is_error:
            return {
                "success": False,
                "error": f"GET {url} returned {response.status_code} {response.reason_phrase}",
            }

        parser.feed(response.text)
        parser.close()

        if parser.selector:
            content: Any = [{"text": text} for text in parser.matched_text]
        else:
            content = {
                "title": parser.title.strip(),
                "meta": {
                    "description": parser.meta.get("description"),
                    "keywords": parser.meta.get("keywords"),
                },
                "text": parser.text,
            }

        return {"success": True, "data": {"url": url, "content": content}}


def _decode_body(response: httpx.Response) -> Any:
    """JSON when the response declares it, text otherwise."""
    if "json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            pass
    return response.text


_URL = {"type": "string", "description": "URL to request"}
_HEADERS = {"type": "object", "description": "HTTP headers to include"}
_QUERY = {"type": "object", "description": "Query parameters"}
_BODY = {"type": "object", "description": "Request body, sent as JSON"}


def plugin(transport: Optional[httpx.AsyncBaseTransport] = None) -> Plugin:
    tools = HttpTools(transport=transport)

    return Plugin(
        name="web",
        version="1.0.0",
        description="Web operations: HTTP requests, API calls and page scraping",
        author="Assistant Gateway",
        tools=[
            ToolDefinition(
                name="http_get",
                description="Make an HTTP GET request",
                parameters=ToolParameters(
                    properties={"url": _URL, "headers": _HEADERS, "params": _QUERY},
                    required=["url"],
                ),
                executor=tools.http_get,
            ),
            ToolDefinition(
                name="http_post",
                description="Make an HTTP POST request with a JSON body",
                parameters=ToolParameters(
                    properties={"url": _URL, "data": _BODY, "headers": _HEADERS, "params": _QUERY},
                    required=["url"],
                ),
                executor=tools.http_post,
            ),
            ToolDefinition(
                name="http_put",
                description="Make an HTTP PUT request with a JSON body",
                parameters=ToolParameters(
                    properties={"url": _URL, "data": _BODY, "headers": _HEADERS},
                    required=["url", "data"],
                ),
                executor=tools.http_put,
            ),
            ToolDefinition(
                name="http_delete",
                description="Make an HTTP DELETE request",
                parameters=ToolParameters(
                    properties={"url": _URL, "headers": _HEADERS},
                    required=["url"],
                ),
                executor=tools.http_delete,
            ),
            ToolDefinition(
                name="scrape_webpage",
                description="Scrape readable content from a webpage",
                parameters=ToolParameters(
                    properties={
                        "url": {"type": "string", "description": "URL to scrape"},
                        "selector": {
                            "type": "string",
                            "description": "Simple selector (tag, #id, .class or tag.class) to extract",
                        },
                    },
                    required=["url"],
                ),
                executor=tools.scrape_webpage,
            ),
            ToolDefinition(
                name="api_request",
                description="Make a custom API request with full control over method, headers, body and query",
                parameters=ToolParameters(
                    properties={
                        "url": {"type": "string", "description": "API endpoint URL"},
                        "method": {"type": "string", "description": "HTTP method", "enum": API_METHODS},
                        "headers": _HEADERS,
                        "data": _BODY,
                        "params": _QUERY,
                    },
                    required=["url", "method"],
                ),
                executor=tools.api_request,
            ),
        ],
        initialize=tools.open,
        cleanup=tools.close,
    )
