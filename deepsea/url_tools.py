import asyncio
import re
from collections import Counter
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Sequence
from urllib.parse import urlsplit, urlunsplit

import httpx

from deepsea.dedup import tokenize
from deepsea.models import AnswerAction, BoostedSearchSnippet, Reference, SearchSnippet
from deepsea.text_tools import smart_merge_strings

URLRepository = Dict[str, SearchSnippet]

_DEFAULT_PORTS = {"http": 80, "https": 443}
_URL_IN_TEXT_RE = re.compile(r"https?://[^\s<>\"'`\]\[)(]+")
_NON_WORD_RE = re.compile(r"[^\w\s]|_")


def normalize_url(url: str) -> str:
    """
    Canonical repository key: lower-case scheme and host, no default port,
    no fragment, no trailing slash. Returns "" for anything that is not an
    absolute http(s) URL.
    """
    raw = (url or "").strip()
    if not raw:
        return ""
    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError:
        return ""
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        return ""
    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        host = f"{host}:{port}"
    path = parts.path.rstrip("/")
    return urlunsplit((scheme, host, path, parts.query, ""))


def get_hostname(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def matches_hostname(host: str, rule: str) -> bool:
    host = (host or "").lower()
    rule = (rule or "").strip().lower().lstrip(".")
    if not host or not rule:
        return False
    return host == rule or host.endswith("." + rule)


def add_to_all_urls(snippet: SearchSnippet, repo: URLRepository) -> int:
    """
    Insert or merge ``snippet`` under its normalized URL.

    Returns 1 when the URL is new or an empty title/description got filled,
    0 otherwise.
    """
    url = normalize_url(snippet.url)
    if not url:
        return 0
    existing = repo.get(url)
    if existing is None:
        repo[url] = SearchSnippet(
            url=url,
            title=snippet.title or "",
            description=snippet.description or "",
            weight=snippet.weight,
            date=snippet.date or "",
        )
        return 1

    delta = 0
    existing.weight += snippet.weight
    if snippet.title and not existing.title:
        existing.title = snippet.title
        delta = 1
    if snippet.description:
        if not existing.description:
            delta = 1
        existing.description = smart_merge_strings(existing.description, snippet.description)
    if snippet.date and not existing.date:
        existing.date = snippet.date
    return delta


def filter_urls(
    repo: URLRepository,
    visited: Iterable[str],
    bad_hostnames: Sequence[str] | None = None,
    only_hostnames: Sequence[str] | None = None,
) -> List[SearchSnippet]:
    visited_set = {normalize_url(u) or u for u in visited}
    out: List[SearchSnippet] = []
    for url, snippet in repo.items():
        if url in visited_set:
            continue
        host = get_hostname(url)
        if bad_hostnames and any(matches_hostname(host, h) for h in bad_hostnames):
            continue
        if only_hostnames and not any(matches_hostname(host, h) for h in only_hostnames):
            continue
        out.append(snippet)
    return out


def _path_prefix(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return ""
    first = parts.path.strip("/").split("/", 1)[0]
    return f"{(parts.hostname or '').lower()}/{first}"


def rank_urls(
    candidates: Sequence[SearchSnippet],
    question: str = "",
    boost_hostnames: Sequence[str] | None = None,
    hostname_bonus: float = 0.5,
) -> List[BoostedSearchSnippet]:
    """
    Score = frequency + hostname share + path share + token relevance to the
    question, plus ``hostname_bonus`` for boosted hostnames. Ties break on URL
    so identical inputs always produce the same order.
    """
    if not candidates:
        return []
    total = float(len(candidates))
    host_counts = Counter(get_hostname(c.url) for c in candidates)
    path_counts = Counter(_path_prefix(c.url) for c in candidates)
    q_tokens = tokenize(question)

    ranked: List[BoostedSearchSnippet] = []
    for c in candidates:
        host = get_hostname(c.url)
        merged = " ".join(x for x in (c.title, c.description) if x)
        freq_boost = c.weight * 0.5
        hostname_boost = host_counts[host] / total * 0.5
        if boost_hostnames and any(matches_hostname(host, h) for h in boost_hostnames):
            hostname_boost += hostname_bonus
        path_boost = path_counts[_path_prefix(c.url)] / total * 0.4
        relevance_boost = 0.0
        if q_tokens:
            doc_tokens = tokenize(merged)
            if doc_tokens:
                relevance_boost = 2.0 * len(q_tokens & doc_tokens) / float(len(q_tokens | doc_tokens))
        ranked.append(
            BoostedSearchSnippet(
                url=c.url,
                title=c.title,
                description=c.description,
                weight=c.weight,
                date=c.date,
                score=freq_boost + hostname_boost + path_boost + relevance_boost,
                merged=merged,
                freq_boost=freq_boost,
                hostname_boost=hostname_boost,
                path_boost=path_boost,
                relevance_boost=relevance_boost,
            )
        )
    ranked.sort(key=lambda r: (-r.score, r.url))
    return ranked


def keep_k_per_hostname(items: Sequence[Any], k: int = 2) -> List[Any]:
    """At most ``k`` highest-scoring items per hostname; input order kept."""
    if k <= 0:
        return []
    order = sorted(
        range(len(items)),
        key=lambda i: (-float(getattr(items[i], "score", 0.0)), i),
    )
    counts: Counter = Counter()
    keep = set()
    for i in order:
        host = get_hostname(items[i].url)
        if counts[host] < k:
            counts[host] += 1
            keep.add(i)
    return [item for i, item in enumerate(items) if i in keep]


def sort_select_urls(items: Sequence[Any], n: int) -> List[Any]:
    if n <= 0:
        return []
    ordered = sorted(items, key=lambda r: -float(getattr(r, "score", 0.0)))
    return ordered[:n]


def extract_urls_with_description(text: str, context_window: int = 50) -> List[SearchSnippet]:
    """URLs found in free text, each described by the words around it."""
    out: List[SearchSnippet] = []
    seen = set()
    for m in _URL_IN_TEXT_RE.finditer(text or ""):
        raw = m.group(0).rstrip(".,;:!?")
        url = normalize_url(raw)
        if not url or url in seen:
            continue
        seen.add(url)
        start = max(0, m.start() - context_window)
        end = min(len(text), m.start() + len(raw) + context_window)
        around = (text[start : m.start()] + " " + text[m.start() + len(raw) : end]).strip()
        out.append(SearchSnippet(url=url, title="", description=" ".join(around.split())))
    return out


async def get_last_modified(
    url: str,
    client: httpx.AsyncClient | None = None,
    timeout: float = 10.0,
) -> str:
    """ISO timestamp from the Last-Modified header, or "" when unknown."""
    try:
        if client is None:
            async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as c:
                rsp = await c.head(url)
        else:
            rsp = await client.head(url)
        value = rsp.headers.get("last-modified")
        if not value:
            return ""
        return parsedate_to_datetime(value).isoformat()
    except (httpx.HTTPError, TypeError, ValueError) as exc:
        print(f"[reader] last-modified lookup failed for {url}: {exc}")
        return ""


async def update_references(
    step: AnswerAction,
    repo: URLRepository,
    last_modified: Callable[[str], Awaitable[str]] = get_last_modified,
) -> None:
    """
    Normalize and enrich answer references in place: canonical URLs, one
    reference per URL, quote/title/date backfilled from the repository, then
    missing dates looked up concurrently.
    """
    refs: List[Reference] = []
    seen = set()
    for ref in step.references:
        url = normalize_url(ref.url)
        if not url or url in seen:
            continue
        seen.add(url)
        snippet = repo.get(url)
        quote = ref.exact_quote or (snippet.description if snippet else "") or (
            snippet.title if snippet else ""
        )
        quote = " ".join(_NON_WORD_RE.sub(" ", quote).split())
        refs.append(
            Reference(
                exact_quote=quote,
                url=url,
                title=(snippet.title if snippet else "") or ref.title,
                date_time=ref.date_time or (snippet.date if snippet else ""),
            )
        )
    step.references = refs

    missing = [r for r in refs if not r.date_time]
    if missing:
        dates = await asyncio.gather(*(last_modified(r.url) for r in missing))
        for ref, date in zip(missing, dates):
            ref.date_time = date or ""
