import asyncio
import json
import os
import sys
import textwrap
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx
from bs4 import BeautifulSoup
from openai import AsyncOpenAI

from deepsea.config import get_model_settings, load_agent_config, load_prompt
from deepsea.llm import LLM
from deepsea.models import KnowledgeItem, SERPQuery, SearchAction
from deepsea.url_tools import normalize_url
from deepsea.usage import TokenTracker

SYSTEM_QUERY_REWRITER = load_prompt("query_rewriter.system.txt")
SYSTEM_CODER = load_prompt("coder.system.txt")

BRAVE_API_URL = "https://api.search.brave.com/res/v1/web/search"
BRAVE_FRESHNESS = {"qdr:h": "pd", "qdr:d": "pd", "qdr:w": "pw", "qdr:m": "pm", "qdr:y": "py"}
TBS_PHRASES = {
    "qdr:h": "the past hour",
    "qdr:d": "the past 24 hours",
    "qdr:w": "the past week",
    "qdr:m": "the past month",
    "qdr:y": "the past year",
}
USER_AGENT = "Mozilla/5.0 (compatible; deepsea/0.1)"
EXCLUDED_TAGS = (
    "nav", "footer", "header", "aside", "script", "style",
    "form", "iframe", "noscript", "svg", "canvas",
)


class OpenAIWebSearch:
    """Web search through the Responses API web search tool."""

    def __init__(
        self,
        config: Dict[str, Any] | None = None,
        token_tracker: TokenTracker | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        settings = get_model_settings(config or load_agent_config(), "searchGrounding")
        self.model = settings["model"]
        self.token_tracker = token_tracker
        self._client = client
        tool_types = os.getenv(
            "OPENAI_WEB_SEARCH_TOOL_TYPES", "web_search_preview,web_search"
        )
        self.tool_types = [t.strip() for t in tool_types.split(",") if t.strip()]
        self.last_error = ""

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    async def search(
        self,
        query: str,
        k: int = 10,
        tbs: str = "",
        location: str = "",
    ) -> List[Dict[str, str]]:
        filters = []
        if tbs in TBS_PHRASES:
            filters.append(f"- Only include results published within {TBS_PHRASES[tbs]}.")
        if location:
            filters.append(f"- Prefer results relevant to this location: {location}.")
        prompt = textwrap.dedent(
            f"""
            Search the web for the query below and return STRICT JSON:
            {{
              "results": [
                {{"title": "...", "url": "https://...", "description": "...", "date": ""}}
              ]
            }}
            Rules:
            - Return at most {k} results.
            - Include only results with valid absolute URLs.
            - Keep each description to 1-2 sentences.
            - "date" is the publication date if known, otherwise empty.

            Query: {query}
            """
        ).strip()
        if filters:
            prompt += "\nFilters:\n" + "\n".join(filters)
        self.last_error = ""
        errors: List[str] = []
        for tool_type in self.tool_types:
            try:
                rsp = await self.client.responses.create(
                    model=self.model,
                    tools=[{"type": tool_type}],
                    tool_choice={"type": tool_type},
                    input=prompt,
                )
                if self.token_tracker:
                    self.token_tracker.record(
                        stage="searchGrounding",
                        provider="responses",
                        model=self.model,
                        usage=getattr(rsp, "usage", None),
                        metadata={"query": query, "tool_type": tool_type},
                    )
                data = self._parse_results_json(rsp.output_text)
                items = data.get("results", [])[:k]
                return [
                    {
                        "title": str(i.get("title", "")),
                        "url": str(i.get("url", "")).strip(),
                        "description": str(i.get("description") or i.get("snippet") or ""),
                        "date": str(i.get("date") or ""),
                    }
                    for i in items
                    if isinstance(i, dict) and normalize_url(str(i.get("url", "")))
                ]
            except Exception as exc:
                errors.append(f"{tool_type}: {exc}")
        self.last_error = " | ".join(errors) if errors else "unknown search error"
        print(f"[search] openai search failed for {query!r}: {self.last_error}")
        return []

    def _parse_results_json(self, text: str) -> Dict[str, Any]:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            start = text.find("{")
            end = text.rfind("}")
            if start != -1 and end != -1 and end > start:
                return json.loads(text[start : end + 1])
            raise ValueError("Failed to parse OpenAI web search response as JSON.")


class BraveSearch:
    def __init__(self, api_key: str | None = None, timeout: float = 15.0) -> None:
        self.api_key = api_key if api_key is not None else os.getenv("BRAVE_API_KEY", "")
        self.timeout = timeout
        self.last_error = ""

    async def search(
        self,
        query: str,
        k: int = 10,
        tbs: str = "",
        location: str = "",
    ) -> List[Dict[str, str]]:
        self.last_error = ""
        params: Dict[str, Any] = {"q": query, "count": k}
        if tbs in BRAVE_FRESHNESS:
            params["freshness"] = BRAVE_FRESHNESS[tbs]
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                rsp = await client.get(
                    BRAVE_API_URL,
                    headers={
                        "Accept": "application/json",
                        "X-Subscription-Token": self.api_key,
                    },
                    params=params,
                )
                rsp.raise_for_status()
                data = rsp.json()
        except (httpx.HTTPError, ValueError) as exc:
            self.last_error = str(exc)
            print(f"[search] brave search failed for {query!r}: {exc}")
            return []
        return [
            {
                "title": str(item.get("title", "")),
                "url": str(item.get("url", "")),
                "description": str(item.get("description", "")),
                "date": str(item.get("page_age") or item.get("age") or ""),
            }
            for item in (data.get("web") or {}).get("results", [])
            if isinstance(item, dict)
        ]


def build_search_provider(
    config: Dict[str, Any],
    token_tracker: TokenTracker | None = None,
) -> Any:
    if config.get("search_provider") == "brave":
        return BraveSearch()
    return OpenAIWebSearch(config=config, token_tracker=token_tracker)


@dataclass
class ReadResult:
    url: str
    success: bool
    title: str = ""
    content: str = ""
    published: str = ""
    error: str = ""


def html_to_text(html: str) -> tuple[str, str, str]:
    """Title, cleaned body text and publication time of an HTML page."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    published = ""
    for attr in ("article:published_time", "article:modified_time", "og:updated_time"):
        meta = soup.find("meta", attrs={"property": attr})
        if meta and meta.get("content"):
            published = str(meta["content"])
            break
    for tag in soup.find_all(list(EXCLUDED_TAGS)):
        tag.decompose()
    root = soup.find("main") or soup.find("article") or soup.body or soup
    lines = [" ".join(line.split()) for line in root.get_text("\n").splitlines()]
    text = "\n".join(line for line in lines if line)
    return title, text, published


class ContentReader:
    """Fetches pages and extracts readable text. Failures mark the URL bad."""

    def __init__(self, max_chars: int = 12000, timeout: float = 20.0) -> None:
        self.max_chars = max_chars
        self.timeout = timeout

    async def read(self, url: str, client: httpx.AsyncClient | None = None) -> ReadResult:
        try:
            if client is None:
                async with httpx.AsyncClient(
                    follow_redirects=True,
                    timeout=self.timeout,
                    headers={"User-Agent": USER_AGENT},
                ) as c:
                    rsp = await c.get(url)
            else:
                rsp = await client.get(url)
            rsp.raise_for_status()
        except httpx.HTTPError as exc:
            print(f"[reader] failed to read {url}: {exc}")
            return ReadResult(url=url, success=False, error=str(exc))

        content_type = rsp.headers.get("content-type", "")
        if "html" in content_type or not content_type:
            title, text, published = html_to_text(rsp.text)
        elif content_type.startswith("text/") or "json" in content_type:
            title, text, published = "", rsp.text.strip(), ""
        else:
            return ReadResult(url=url, success=False, error=f"unsupported content type: {content_type}")
        if not published and rsp.headers.get("last-modified"):
            try:
                published = parsedate_to_datetime(rsp.headers["last-modified"]).isoformat()
            except (TypeError, ValueError):
                published = ""
        if not text:
            return ReadResult(url=url, success=False, title=title, error="empty content")
        return ReadResult(
            url=url,
            success=True,
            title=title,
            content=text[: self.max_chars],
            published=published,
        )

    async def read_many(self, urls: Sequence[str]) -> List[ReadResult]:
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.timeout,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            return list(await asyncio.gather(*(self.read(u, client) for u in urls)))


class QueryRewriter:
    def __init__(
        self,
        config: Dict[str, Any] | None = None,
        token_tracker: TokenTracker | None = None,
        llm: Any = None,
    ) -> None:
        self.llm = llm or LLM("queryRewriter", config=config, token_tracker=token_tracker)

    async def rewrite(self, action: SearchAction, sound_bites: str) -> List[SERPQuery]:
        prompt = textwrap.dedent(
            f"""
            Original search requests:
            {json.dumps(action.search_requests, ensure_ascii=False)}

            Reasoning of the researcher:
            {json.dumps(action.think, ensure_ascii=False)}

            Sound bites from the first results:
            {json.dumps(sound_bites[:4000], ensure_ascii=False)}
            """
        ).strip()
        try:
            data = await self.llm.json(
                SYSTEM_QUERY_REWRITER, prompt, metadata={"stage": "rewrite_query"}
            )
        except Exception as exc:
            print(f"[search] query rewrite failed: {exc}")
            return []
        out: List[SERPQuery] = []
        for item in data.get("queries", []):
            if isinstance(item, str) and item.strip():
                out.append(SERPQuery(q=item.strip()))
            elif isinstance(item, dict) and str(item.get("q", "")).strip():
                out.append(
                    SERPQuery(
                        q=str(item["q"]).strip(),
                        tbs=str(item.get("tbs") or ""),
                        location=str(item.get("location") or ""),
                    )
                )
        return out


class SandboxError(RuntimeError):
    pass


@dataclass
class CodingSolution:
    code: str
    output: str
    attempts: List[Dict[str, str]] = field(default_factory=list)


class CodeSandbox:
    """
    Has the coder model write a Python program for an issue and runs it in an
    isolated interpreter subprocess, feeding errors back for another try.
    """

    def __init__(
        self,
        config: Dict[str, Any] | None = None,
        token_tracker: TokenTracker | None = None,
        llm: Any = None,
        max_attempts: int = 3,
        timeout: float = 10.0,
    ) -> None:
        self.llm = llm or LLM("coder", config=config, token_tracker=token_tracker)
        self.max_attempts = max_attempts
        self.timeout = timeout

    async def solve(
        self,
        issue: str,
        knowledge: Sequence[KnowledgeItem] = (),
    ) -> CodingSolution:
        attempts: List[Dict[str, str]] = []
        context = [
            {"question": k.question.strip()[:300], "answer": k.answer.strip()[:600]}
            for k in list(knowledge)[-10:]
        ]
        for _ in range(self.max_attempts):
            prompt = self._format_prompt(issue, context, attempts)
            try:
                data = await self.llm.json(SYSTEM_CODER, prompt, metadata={"stage": "coding"})
            except Exception as exc:
                raise SandboxError(f"coder model failed: {exc}") from exc
            code = str(data.get("code", "")).strip()
            if not code:
                attempts.append({"code": "", "error": "no code returned"})
                continue
            output, error = await self.run(code)
            if error is None:
                return CodingSolution(code=code, output=output, attempts=attempts)
            attempts.append({"code": code, "error": error})
        raise SandboxError(f"failed to solve coding issue after {self.max_attempts} attempts")

    async def run(self, code: str) -> tuple[str, Optional[str]]:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-I",
            "-c",
            code,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return "", f"timed out after {self.timeout}s"
        if proc.returncode != 0:
            return "", stderr.decode("utf-8", errors="replace").strip()[-2000:]
        output = stdout.decode("utf-8", errors="replace").strip()
        if not output:
            return "", "program printed nothing"
        return output, None

    def _format_prompt(
        self,
        issue: str,
        context: List[Dict[str, str]],
        attempts: List[Dict[str, str]],
    ) -> str:
        return textwrap.dedent(
            f"""
            Problem:
            {json.dumps(issue, ensure_ascii=False)}

            Available context:
            {json.dumps(context, ensure_ascii=False)}

            Previous failed attempts:
            {json.dumps(attempts, ensure_ascii=False)}
            """
        ).strip()
