import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from deepsea import tools
from deepsea.models import SearchAction
from deepsea.tools import (
    BraveSearch,
    CodeSandbox,
    ContentReader,
    OpenAIWebSearch,
    QueryRewriter,
    SandboxError,
    html_to_text,
)
from deepsea.usage import TokenTracker

PAGE = """
<html><head><title>Nile facts</title>
<meta property="article:published_time" content="2024-03-01T10:00:00Z"></head>
<body><nav>Home | About</nav><script>var x = 1;</script>
<main><h1>The Nile</h1><p>The Nile is about   6,650 km long.</p></main>
<footer>Copyright</footer></body></html>
"""


class JSONLLM:
    def __init__(self, replies):
        self.replies = list(replies)
        self.prompts = []

    async def json(self, system, user, metadata=None):
        self.prompts.append(user)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def test_html_to_text_keeps_main_content():
    title, text, published = html_to_text(PAGE)

    assert title == "Nile facts"
    assert published == "2024-03-01T10:00:00Z"
    assert text == "The Nile\nThe Nile is about 6,650 km long."


def test_content_reader_success_and_failure():
    def handler(request):
        if request.url.path == "/nile":
            return httpx.Response(200, text=PAGE, headers={"content-type": "text/html"})
        return httpx.Response(404, text="missing")

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            reader = ContentReader(max_chars=20)
            ok = await reader.read("https://example.com/nile", client)
            bad = await reader.read("https://example.com/gone", client)
            return ok, bad

    ok, bad = asyncio.run(go())

    assert ok.success is True
    assert ok.title == "Nile facts"
    assert ok.content == "The Nile\nThe Nile is"
    assert bad.success is False
    assert "404" in bad.error


def test_brave_search_maps_results(monkeypatch):
    seen = {}

    def handler(request):
        seen["token"] = request.headers.get("X-Subscription-Token")
        seen["q"] = request.url.params.get("q")
        body = {"web": {"results": [{"title": "T", "url": "https://a.com", "description": "d", "page_age": "2024-01-01"}]}}
        return httpx.Response(200, json=body)

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        tools.httpx,
        "AsyncClient",
        lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw),
    )

    results = asyncio.run(BraveSearch(api_key="secret").search("nile"))

    assert results == [{"title": "T", "url": "https://a.com", "description": "d", "date": "2024-01-01"}]
    assert seen == {"token": "secret", "q": "nile"}


def test_brave_search_failure_is_empty(monkeypatch):
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        tools.httpx,
        "AsyncClient",
        lambda **kw: real_client(transport=httpx.MockTransport(lambda r: httpx.Response(500)), **kw),
    )
    search = BraveSearch(api_key="k")

    assert asyncio.run(search.search("nile")) == []
    assert "500" in search.last_error


def test_brave_search_sends_freshness_for_time_filter(monkeypatch):
    seen = {}

    def handler(request):
        seen.update(request.url.params)
        return httpx.Response(200, json={"web": {"results": []}})

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        tools.httpx,
        "AsyncClient",
        lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw),
    )

    asyncio.run(BraveSearch(api_key="k").search("election results", tbs="qdr:w"))

    assert seen["freshness"] == "pw"


def test_openai_web_search_parses_and_records_usage():
    output = "Here you go: " + json.dumps(
        {"results": [{"title": "A", "url": "https://a.com/x", "snippet": "s"}, {"title": "bad", "url": "nope"}]}
    )

    async def create(**kwargs):
        return SimpleNamespace(output_text=output, usage={"total_tokens": 42})

    client = SimpleNamespace(responses=SimpleNamespace(create=create))
    tracker = TokenTracker()
    search = OpenAIWebSearch(config={}, token_tracker=tracker, client=client)

    results = asyncio.run(search.search("q"))

    assert results == [{"title": "A", "url": "https://a.com/x", "description": "s", "date": ""}]
    assert tracker.total_tokens == 42
    assert tracker.events[0]["stage"] == "searchGrounding"


def test_openai_web_search_failure_is_empty():
    async def create(**kwargs):
        raise RuntimeError("quota")

    search = OpenAIWebSearch(config={}, client=SimpleNamespace(responses=SimpleNamespace(create=create)))

    assert asyncio.run(search.search("q")) == []
    assert "quota" in search.last_error


def test_openai_web_search_puts_filters_in_prompt():
    prompts = []

    async def create(**kwargs):
        prompts.append(kwargs["input"])
        return SimpleNamespace(output_text='{"results": []}', usage=None)

    search = OpenAIWebSearch(config={}, client=SimpleNamespace(responses=SimpleNamespace(create=create)))

    asyncio.run(search.search("rent prices", tbs="qdr:m", location="Berlin"))

    assert "published within the past month" in prompts[0]
    assert "location: Berlin" in prompts[0]


def test_query_rewriter_parses_queries_and_tolerates_failure():
    llm = JSONLLM([{"queries": [{"q": "nile length km", "tbs": "qdr:y"}, "nile source", {"q": " "}]}, RuntimeError("x")])
    rewriter = QueryRewriter(llm=llm)
    action = SearchAction(think="t", search_requests=["nile"])

    first = asyncio.run(rewriter.rewrite(action, "The Nile is long"))
    second = asyncio.run(rewriter.rewrite(action, ""))

    assert [(q.q, q.tbs) for q in first] == [("nile length km", "qdr:y"), ("nile source", "")]
    assert "The Nile is long" in llm.prompts[0]
    assert second == []


def test_code_sandbox_runs_isolated_program():
    sandbox = CodeSandbox(llm=JSONLLM([]))

    output, error = asyncio.run(sandbox.run("print(sum(range(5)))"))

    assert (output, error) == ("10", None)
    _, error = asyncio.run(sandbox.run("raise ValueError('bad input')"))
    assert "bad input" in error


def test_code_sandbox_retries_with_error_feedback():
    llm = JSONLLM([{"code": "print(undefined_name)"}, {"code": "print(len('hello'))"}])
    sandbox = CodeSandbox(llm=llm)

    solution = asyncio.run(sandbox.solve("count letters in hello"))

    assert solution.output == "5"
    assert solution.attempts[0]["code"] == "print(undefined_name)"
    assert "NameError" in llm.prompts[1]


def test_code_sandbox_gives_up():
    sandbox = CodeSandbox(llm=JSONLLM([{"code": ""}, {"code": ""}]), max_attempts=2)

    with pytest.raises(SandboxError, match="2 attempts"):
        asyncio.run(sandbox.solve("impossible"))
