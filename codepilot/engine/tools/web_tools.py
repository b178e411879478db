"""Web capability: page fetch and search over aiohttp."""
from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

import aiohttp

from ..errors import ArgumentError, ExecutionError
from ..models import RiskClass
from .base import ToolContext, ToolDescriptor, _error, _text, dumps, object_schema

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
USER_AGENT = "codepilot/0.1 (+autonomous coding agent)"

_SCRIPT_RE = re.compile(r"<(script|style|noscript)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_BLOCK_RE = re.compile(r"</?(p|div|br|li|tr|h[1-6]|section|article|pre)[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_ENTITIES = {
    "&nbsp;": " ", "&amp;": "&", "&lt;": "<", "&gt;": ">",
    "&quot;": '"', "&#39;": "'", "&apos;": "'",
}


def html_to_text(html: str) -> str:
    """Reduce an HTML page to readable text, keeping paragraph breaks."""
    text = _SCRIPT_RE.sub("", html)
    text = _COMMENT_RE.sub("", text)
    text = _BLOCK_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    for entity, repl in _ENTITIES.items():
        text = text.replace(entity, repl)
    lines = (" ".join(line.split()) for line in text.splitlines())
    return "\n".join(line for line in lines if line)


SessionFactory = Callable[..., aiohttp.ClientSession]


class WebTools:
    """web_fetch and web_search handlers.

    ``search_type`` is ``"brave"`` (needs ``search_api_key``) or
    ``"searx"`` (needs ``search_url``); without it web_search is not
    offered to the model.
    """

    def __init__(
        self,
        *,
        fetch_enabled: bool = True,
        fetch_timeout_seconds: float = 30.0,
        fetch_max_length: int = 5000,
        search_type: str | None = None,
        search_api_key: str | None = None,
        search_url: str | None = None,
        session_factory: SessionFactory = aiohttp.ClientSession,
    ) -> None:
        self._fetch_enabled = fetch_enabled
        self._timeout = aiohttp.ClientTimeout(total=fetch_timeout_seconds)
        self._max_length = fetch_max_length
        self._search_type = (search_type or "").lower() or None
        self._search_api_key = search_api_key
        self._search_url = (search_url or "").rstrip("/") or None
        self._session_factory = session_factory

    def descriptors(self) -> list[ToolDescriptor]:
        out: list[ToolDescriptor] = []
        if self._fetch_enabled:
            out.append(ToolDescriptor(
                name="web_fetch",
                description=(
                    "Fetch a URL. HTML is simplified to text unless raw=true. "
                    "Long pages are paged with start_index."
                ),
                parameters=object_schema(
                    {
                        "url": {"type": "string", "minLength": 1},
                        "max_length": {"type": "integer", "minimum": 1},
                        "start_index": {"type": "integer", "minimum": 0},
                        "raw": {"type": "boolean"},
                    },
                    ["url"],
                ),
                risk_class=RiskClass.NETWORK,
                handler=self.web_fetch,
            ))
        if self._search_type in ("brave", "searx"):
            out.append(ToolDescriptor(
                name="web_search",
                description="Search the web. Returns title, url and snippet per hit.",
                parameters=object_schema(
                    {
                        "query": {"type": "string", "minLength": 1},
                        "count": {"type": "integer", "minimum": 1, "maximum": 20},
                    },
                    ["query"],
                ),
                risk_class=RiskClass.NETWORK,
                handler=self.web_search,
            ))
        return out

    async def web_fetch(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        url = str(args["url"]).strip()
        if urlparse(url).scheme not in ("http", "https"):
            raise ArgumentError("web_fetch", f"unsupported URL scheme: {url}")
        max_length = int(args.get("max_length", self._max_length))
        start = int(args.get("start_index", 0))
        raw = bool(args.get("raw", False))

        try:
            async with self._session_factory(
                timeout=self._timeout, headers={"User-Agent": USER_AGENT},
            ) as session:
                async with session.get(url) as response:
                    body = await response.text(errors="replace")
                    status = response.status
                    content_type = response.headers.get("Content-Type", "")
        except asyncio.TimeoutError as exc:
            raise ExecutionError(f"Timed out fetching {url}") from exc
        except aiohttp.ClientError as exc:
            raise ExecutionError(f"Failed to fetch {url}: {exc}") from exc

        if status >= 400:
            return _error(f"HTTP {status} fetching {url}")
        if not raw and "html" in content_type.lower():
            body = html_to_text(body)

        if start >= len(body) and body:
            return _error(f"start_index {start} is past the end ({len(body)} chars)")
        page = body[start:start + max_length]
        text = f"Contents of {url}:\n{page}"
        remaining = len(body) - (start + len(page))
        if remaining > 0:
            text += (
                f"\n\n<content truncated: {remaining} more characters. "
                f"Call web_fetch with start_index={start + len(page)} for more.>"
            )
        return _text(text)

    async def web_search(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        query = str(args["query"])
        count = int(args.get("count", 10))
        try:
            if self._search_type == "brave":
                hits = await self._brave(query, count)
            else:
                hits = await self._searx(query, count)
        except asyncio.TimeoutError as exc:
            raise ExecutionError(f"Web search timed out for {query!r}") from exc
        except aiohttp.ClientError as exc:
            raise ExecutionError(f"Web search failed: {exc}") from exc
        if not hits:
            return _text(f"No results for {query!r}.")
        return _text(dumps(hits[:count]))

    async def _brave(self, query: str, count: int) -> list[dict[str, str]]:
        if not self._search_api_key:
            raise ExecutionError("Brave search requires web_search.api_key")
        headers = {
            "Accept": "application/json",
            "X-Subscription-Token": self._search_api_key,
        }
        async with self._session_factory(timeout=self._timeout) as session:
            async with session.get(
                BRAVE_SEARCH_URL,
                params={"q": query, "count": str(count)},
                headers=headers,
            ) as response:
                if response.status >= 400:
                    raise ExecutionError(f"Brave search returned HTTP {response.status}")
                data = await response.json(content_type=None)
        results = (data.get("web") or {}).get("results") or []
        return [
            {
                "title": r.get("title", ""),
                "url": r.get("url", ""),
                "snippet": r.get("description", ""),
            }
            for r in results
        ]

    async def _searx(self, query: str, count: int) -> list[dict[str, str]]:
        if not self._search_url:
            raise ExecutionError("SearX search requires web_search.url")
        async with self._session_factory(timeout=self._timeout) as session:
            async with session.get(
                f"{self._search_url}/search",
                params={"q": query, "format": "json"},
            ) as response:
                if response.status >= 400:
                    raise ExecutionError(f"SearX returned HTTP {response.status}")
                data = await response.json(content_type=None)
        return [
            {
                "title": r.get("title", ""),
                "url": r.get("url", ""),
                "snippet": r.get("content", ""),
            }
            for r in (data.get("results") or [])[:count]
        ]
