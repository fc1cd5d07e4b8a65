import asyncio
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .schemas import GroundingSource, WebPage, WebSearchResult


logger = logging.getLogger("uvicorn.error")

MAX_PAGE_CHARS = 6000

RECENCY_HINTS = (
    "today",
    "current",
    "latest",
    "recent",
    "breaking",
    "news",
    "headline",
    "headlines",
    "this week",
    "this month",
    "this year",
)

_MATH_ONLY_RE = re.compile(r"^[\d\s\.\+\-\*/\^\(\)%=x]+$")


class TavilyClient:
    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 5,
        topic: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            # Tavily caps a single search at 20 results.
            "max_results": max(1, min(int(max_results), 20)),
        }
        if topic in ("general", "news", "finance"):
            payload["topic"] = topic
        return await self._post("https://api.tavily.com/search", payload)

    async def extract(self, urls: List[str], extract_depth: str = "basic") -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload = {"urls": urls, "extract_depth": extract_depth}
        return await self._post("https://api.tavily.com/extract", payload)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}
        payload = {**payload, "api_key": self.api_key}
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class SearchPipeline:
    """Two-step web retrieval: ranked result stubs, then page content for those stubs."""

    def __init__(self, tavily: TavilyClient, search_depth: str = "basic", extract_depth: str = "basic"):
        self.tavily = tavily
        self.search_depth = search_depth
        self.extract_depth = extract_depth

    @property
    def enabled(self) -> bool:
        return self.tavily.enabled

    async def search(self, query: str, limit: int) -> List[WebSearchResult]:
        response = await self.tavily.search(query, search_depth=self.search_depth, max_results=limit)
        if response.get("error"):
            logger.warning("Web search failed for %r: %s", query, response.get("detail") or response["error"])
            return []
        results: List[WebSearchResult] = []
        for item in response.get("results") or []:
            url = item.get("url")
            if not url:
                continue
            results.append(
                WebSearchResult(
                    title=item.get("title") or url,
                    url=url,
                    snippet=item.get("content") or "",
                    score=item.get("score"),
                )
            )
        return results[:limit]

    async def fetch_contents(self, results: List[WebSearchResult], limit: int) -> List[WebPage]:
        selected = results[:limit]
        if not selected:
            return []
        contents: Dict[str, str] = {}
        response = await self.tavily.extract([r.url for r in selected], extract_depth=self.extract_depth)
        if response.get("error"):
            logger.warning("Page extraction failed, using snippets: %s", response.get("detail") or response["error"])
        else:
            for item in response.get("results") or []:
                if item.get("url") and item.get("raw_content"):
                    contents[item["url"]] = item["raw_content"][:MAX_PAGE_CHARS]
        return [
            WebPage(title=r.title, url=r.url, content=contents.get(r.url) or r.snippet, snippet=r.snippet)
            for r in selected
        ]

    async def search_and_fetch(self, query: str, limit: int) -> List[WebPage]:
        results = await self.search(query, limit)
        if not results:
            return []
        return await self.fetch_contents(results, limit)

    async def search_many(self, queries: List[str], limit: int) -> List[Dict[str, Any]]:
        """Run every query concurrently; a failing query yields an empty page list."""

        async def one(query: str) -> Dict[str, Any]:
            try:
                pages = await self.search_and_fetch(query, limit)
            except Exception as exc:
                logger.warning("Search for %r failed: %s", query, exc)
                pages = []
            return {"query": query, "pages": pages}

        return list(await asyncio.gather(*(one(q) for q in queries)))

    async def close(self) -> None:
        await self.tavily.close()


def guess_needs_web(question: str) -> bool:
    """Lightweight heuristic for prompts that want live or factual web data."""
    q = (question or "").lower().strip()
    if not q or _MATH_ONLY_RE.match(q):
        return False
    recency_tokens = RECENCY_HINTS + (
        "update",
        "press release",
        "announcement",
        "changelog",
        "release notes",
    )
    if any(token in q for token in recency_tokens):
        return True
    citation_tokens = ("source", "sources", "citation", "cite", "reference", "references", "link", "links")
    if any(token in q for token in citation_tokens):
        return True
    data_signals = (
        "percent",
        "percentage",
        "price",
        "cost",
        "net worth",
        "market cap",
        "revenue",
        "forecast",
        "population",
        "median",
        "statistic",
        "statistics",
        "survey",
        "benchmark",
    )
    return any(token in q for token in data_signals)


def needs_freshness(question: str) -> bool:
    q = (question or "").lower()
    tokens = (
        "verify",
        "confirm",
        "is it true",
        "did it happen",
        "latest",
        "today",
        "current",
        "as of",
        "right now",
        "breaking",
        "this week",
        "this month",
        "this year",
        "up to date",
        "up-to-date",
        "recent",
        "news",
    )
    return any(token in q for token in tokens)


def should_use_external_search(query: str, model_supports_search: bool, explicit: bool) -> bool:
    if explicit:
        return True
    if model_supports_search:
        return False
    return needs_freshness(query) or guess_needs_web(query)


def format_preflight_context(query: str, pages: List[WebPage]) -> str:
    blocks = []
    for idx, page in enumerate(pages, start=1):
        blocks.append(
            f"--- RESULT {idx} ---\n"
            f"Title: {page.title}\n"
            f"URL: {page.url}\n"
            f"Content: {page.content or page.snippet or '(No content available)'}\n"
        )
    return (
        "\n=== EXTERNAL WEB SEARCH RESULTS ===\n"
        f'Query: "{query}"\n'
        + "\n".join(blocks)
        + "=================================================\n"
    )


def format_query_context(query: str, pages: List[WebPage]) -> str:
    body = "\n\n".join(f"[{i}] {p.title} ({p.url}):\n{p.content}" for i, p in enumerate(pages, start=1))
    return f'\n\n=== WEB RESULTS FOR QUERY: "{query}" ===\n{body}'


def pages_to_sources(pages: Iterable[WebPage]) -> List[GroundingSource]:
    return [GroundingSource(url=p.url, title=p.title) for p in pages]


def dedupe_sources(sources: Iterable[Any]) -> List[Dict[str, str]]:
    """Collapse sources by URL, keeping the first title seen."""
    seen: Dict[str, Dict[str, str]] = {}
    for src in sources:
        if isinstance(src, GroundingSource):
            url, title = src.url, src.title
        elif isinstance(src, dict):
            web = src.get("web") if isinstance(src.get("web"), dict) else src
            url, title = web.get("url") or web.get("uri"), web.get("title") or ""
        else:
            continue
        if not url or url in seen:
            continue
        seen[url] = {"url": url, "title": title or url}
    return list(seen.values())


SEARCH_FILLER_PREFIXES = (
    "can you",
    "could you",
    "would you",
    "tell me",
    "show me",
    "find me",
    "research",
    "look up",
    "search for",
)


def strip_search_filler(text: str) -> str:
    base = " ".join((text or "").strip().split())
    base = base.strip(" .?!,;:")
    if not base:
        return ""
    if base.lower().startswith("please "):
        base = base[7:].strip()
    lower = base.lower()
    for prefix in SEARCH_FILLER_PREFIXES:
        if lower.startswith(prefix + " "):
            base = base[len(prefix):].strip()
            break
    return base


def expand_queries(question: str, limit: int = 4) -> List[str]:
    """Query variants for deep research: the cleaned question plus recency/data angles."""
    base = strip_search_filler(question) or (question or "").strip()
    if not base:
        return []
    lower = base.lower()
    variants = [base]
    if any(token in lower for token in RECENCY_HINTS):
        variants.append(f"{base} latest")
    if "overview" not in lower:
        variants.append(f"{base} overview")
    if "data" not in lower and "statistics" not in lower:
        variants.append(f"{base} data")
    if "analysis" not in lower:
        variants.append(f"{base} analysis")
    if "report" not in lower and "study" not in lower:
        variants.append(f"{base} report")
    queries: List[str] = []
    seen = set()
    for q in variants:
        key = q.lower()
        if key in seen:
            continue
        seen.add(key)
        queries.append(q)
    return queries[:limit]
