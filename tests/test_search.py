import json

import pytest
import respx
from httpx import Response

from bubble.schemas import GroundingSource, WebPage
from bubble.search import (
    MAX_PAGE_CHARS,
    SearchPipeline,
    TavilyClient,
    dedupe_sources,
    expand_queries,
    format_preflight_context,
    format_query_context,
    should_use_external_search,
    strip_search_filler,
)
from tests.fakes import FakeTavilyClient, search_results


@pytest.mark.asyncio
async def test_tavily_search_payload_and_headers():
    client = TavilyClient("test-key")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, json={"results": []})

            respx_mock.post("https://api.tavily.com/search").mock(side_effect=handler)
            resp = await client.search("hello", search_depth="basic", max_results=50, topic="news")
            assert resp == {"results": []}
            assert captured["json"]["api_key"] == "test-key"
            assert captured["json"]["max_results"] == 20
            assert captured["json"]["topic"] == "news"
            assert captured["headers"]["Authorization"] == "Bearer test-key"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_tavily_extract_handles_http_error():
    client = TavilyClient("test-key")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.tavily.com/extract").mock(
                return_value=Response(500, json={"error": "boom"})
            )
            resp = await client.extract(["http://example.com"], extract_depth="basic")
            assert resp["error"] == "http_status"
            assert resp["status_code"] == 500
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_tavily_without_key_does_not_call_out():
    client = TavilyClient(None)
    try:
        assert await client.search("hello") == {"error": "missing_api_key"}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_pipeline_uses_extracted_content_with_snippet_fallback():
    tavily = FakeTavilyClient(
        api_key="tv",
        search_response=search_results("https://a.test", "https://b.test"),
        extract_response={"results": [{"url": "https://a.test", "raw_content": "x" * (MAX_PAGE_CHARS + 50)}]},
    )
    pipeline = SearchPipeline(tavily, search_depth="advanced", extract_depth="advanced")

    pages = await pipeline.search_and_fetch("query", limit=5)

    assert [p.url for p in pages] == ["https://a.test", "https://b.test"]
    assert len(pages[0].content) == MAX_PAGE_CHARS
    assert pages[1].content == "Snippet 2"
    assert tavily.search_calls[0]["search_depth"] == "advanced"
    assert tavily.extract_calls[0] == {"urls": ["https://a.test", "https://b.test"], "extract_depth": "advanced"}


@pytest.mark.asyncio
async def test_pipeline_search_error_yields_no_results():
    tavily = FakeTavilyClient(api_key="tv", search_response={"error": "http_status", "status_code": 500})
    pipeline = SearchPipeline(tavily)

    assert await pipeline.search("query", limit=5) == []
    assert await pipeline.search_and_fetch("query", limit=5) == []
    assert tavily.extract_calls == []


@pytest.mark.asyncio
async def test_search_many_isolates_failing_queries():
    def respond(query):
        if query == "bad":
            raise RuntimeError("network down")
        return search_results(f"https://{query}.test")

    pipeline = SearchPipeline(FakeTavilyClient(api_key="tv", search_response=respond))

    batches = await pipeline.search_many(["good", "bad"], limit=3)

    assert [b["query"] for b in batches] == ["good", "bad"]
    assert [p.url for p in batches[0]["pages"]] == ["https://good.test"]
    assert batches[1]["pages"] == []


def test_should_use_external_search():
    assert should_use_external_search("anything", model_supports_search=True, explicit=True)
    assert not should_use_external_search("latest news", model_supports_search=True, explicit=False)
    assert should_use_external_search("latest news", model_supports_search=False, explicit=False)
    assert should_use_external_search("bitcoin price", model_supports_search=False, explicit=False)
    assert not should_use_external_search("write a poem", model_supports_search=False, explicit=False)
    assert not should_use_external_search("2 + 2", model_supports_search=False, explicit=False)


def test_format_contexts():
    pages = [WebPage(title="A", url="https://a.test", content="alpha"), WebPage(title="B", url="https://b.test")]
    query_context = format_query_context("q", pages[:1])
    assert query_context == '\n\n=== WEB RESULTS FOR QUERY: "q" ===\n[1] A (https://a.test):\nalpha'
    preflight = format_preflight_context("q", pages)
    assert "=== EXTERNAL WEB SEARCH RESULTS ===" in preflight
    assert "--- RESULT 2 ---" in preflight
    assert "Content: (No content available)" in preflight


def test_dedupe_sources_accepts_mixed_shapes():
    sources = [
        GroundingSource(url="https://a.test", title="A"),
        {"web": {"uri": "https://a.test", "title": "dup"}},
        {"url": "https://b.test"},
        {"title": "no url"},
    ]
    assert dedupe_sources(sources) == [
        {"url": "https://a.test", "title": "A"},
        {"url": "https://b.test", "title": "https://b.test"},
    ]


def test_strip_search_filler_and_expand_queries():
    assert strip_search_filler("  Can you find solar subsidies?  ") == "find solar subsidies"
    assert strip_search_filler("please research quantum dots") == "quantum dots"
    queries = expand_queries("Please research quantum dots", limit=4)
    assert queries == ["quantum dots", "quantum dots overview", "quantum dots data", "quantum dots analysis"]
    assert expand_queries("latest chip news", limit=2) == ["latest chip news", "latest chip news latest"]
    assert expand_queries("   ") == []
