import re
import textwrap
from typing import Any, Dict, List, Sequence, TypeVar
from urllib.parse import urlparse

from bs4 import BeautifulSoup

T = TypeVar("T")

_TAG_RE = re.compile(r"<[^>]*>")
_FOOTNOTE_MARK_RE = re.compile(r"\[\^(\d+)\](?!:)")
_FOOTNOTE_DEF_RE = re.compile(r"^\[\^(\d+)\]:\s*(.*)$", re.MULTILINE)
_FENCE_RE = re.compile(r"^([ \t]*)(```[^\n]*)\n(.*?)^[ \t]*```[ \t]*$", re.MULTILINE | re.DOTALL)
_TABLE_RE = re.compile(r"<table\b.*?</table>", re.IGNORECASE | re.DOTALL)
_MD_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")


def remove_html_tags(text: str) -> str:
    return _TAG_RE.sub("", text or "")


def remove_extra_line_breaks(text: str) -> str:
    return re.sub(r"\n{3,}", "\n\n", text or "")


def choose_k(items: Sequence[T], k: int) -> List[T]:
    """First ``k`` items, order preserved."""
    if k <= 0:
        return []
    return list(items[:k])


def smart_merge_strings(a: str, b: str) -> str:
    """Join two texts, collapsing the longest suffix of ``a`` that prefixes ``b``."""
    a = a or ""
    b = b or ""
    if not a:
        return b
    if not b or b in a:
        return a
    if a in b:
        return b
    max_overlap = min(len(a), len(b))
    for size in range(max_overlap, 0, -1):
        if a.endswith(b[:size]):
            return a + b[size:]
    return f"{a} {b}"


def build_md_from_answer(answer: str, references: List[Any]) -> str:
    """
    Answer text plus footnote definitions for its references.

    Markers already in the answer are kept; when the answer has none, the
    markers are appended to its last paragraph.
    """
    answer = (answer or "").strip()
    refs = [_ref_dict(r) for r in references or []]
    refs = [r for r in refs if r.get("url")]
    if not refs:
        return answer
    if not _FOOTNOTE_MARK_RE.search(answer):
        answer += " " + "".join(f"[^{i}]" for i in range(1, len(refs) + 1))
    lines = []
    for i, ref in enumerate(refs, start=1):
        quote = (ref.get("exactQuote") or "").strip()
        title = (ref.get("title") or "").strip() or _hostname(ref["url"])
        body = f"{quote} [{title}]({ref['url']})" if quote else f"[{title}]({ref['url']})"
        lines.append(f"[^{i}]: {body}")
    return f"{answer}\n\n" + "\n\n".join(lines)


def repair_markdown_footnotes(markdown: str) -> str:
    """Drop markers that have no definition and definitions nobody cites."""
    text = markdown or ""
    defined = {m.group(1) for m in _FOOTNOTE_DEF_RE.finditer(text)}
    body = _FOOTNOTE_DEF_RE.sub("", text)
    cited = {m.group(1) for m in _FOOTNOTE_MARK_RE.finditer(body)}

    def drop_marker(m: re.Match) -> str:
        return m.group(0) if m.group(1) in defined else ""

    text = _FOOTNOTE_MARK_RE.sub(drop_marker, text)

    def drop_def(m: re.Match) -> str:
        return m.group(0) if m.group(1) in cited else ""

    text = _FOOTNOTE_DEF_RE.sub(drop_def, text)
    return remove_extra_line_breaks(text).strip()


def fix_code_block_indentation(markdown: str) -> str:
    def fix(m: re.Match) -> str:
        indent, opener, body = m.group(1), m.group(2), m.group(3)
        dedented = textwrap.dedent(body)
        reindented = textwrap.indent(dedented, indent) if indent else dedented
        return f"{indent}{opener}\n{reindented}{indent}```"

    return _FENCE_RE.sub(fix, markdown or "")


def fix_bad_url_md_links(markdown: str, repo: Dict[str, Any]) -> str:
    """Links whose text is the bare URL get the page title (or hostname) instead."""

    def fix(m: re.Match) -> str:
        text, url = m.group(1), m.group(2)
        if text.strip() != url.strip():
            return m.group(0)
        snippet = repo.get(url)
        title = getattr(snippet, "title", "") if snippet is not None else ""
        label = title.strip() or _hostname(url) or url
        return f"[{label}]({url})"

    return _MD_LINK_RE.sub(fix, markdown or "")


def convert_html_tables_to_md(markdown: str) -> str:
    def convert(m: re.Match) -> str:
        soup = BeautifulSoup(m.group(0), "html.parser")
        rows: List[List[str]] = []
        for tr in soup.find_all("tr"):
            cells = [
                " ".join(cell.get_text(" ", strip=True).split()).replace("|", "\\|")
                for cell in tr.find_all(["th", "td"])
            ]
            if cells:
                rows.append(cells)
        if not rows:
            return m.group(0)
        width = max(len(r) for r in rows)
        rows = [r + [""] * (width - len(r)) for r in rows]
        out = ["| " + " | ".join(rows[0]) + " |", "|" + " --- |" * width]
        out.extend("| " + " | ".join(r) + " |" for r in rows[1:])
        return "\n".join(out)

    return _TABLE_RE.sub(convert, markdown or "")


def repair_unknown_chars(markdown: str) -> str:
    return (markdown or "").replace("�", "")


def repair_markdown_final(markdown: str) -> str:
    text = "\n".join(line.rstrip() for line in (markdown or "").splitlines())
    if text.count("```") % 2 == 1:
        text += "\n```"
    return remove_extra_line_breaks(text).strip()


def finalize_markdown(
    answer: str,
    references: List[Any],
    repo: Dict[str, Any],
    trivial: bool = False,
) -> str:
    md = build_md_from_answer(answer, references)
    if trivial:
        return convert_html_tables_to_md(fix_code_block_indentation(md))
    md = repair_markdown_footnotes(repair_unknown_chars(md))
    md = fix_bad_url_md_links(fix_code_block_indentation(md), repo)
    return repair_markdown_final(convert_html_tables_to_md(md))


def _ref_dict(ref: Any) -> Dict[str, Any]:
    if isinstance(ref, dict):
        return ref
    if hasattr(ref, "model_dump"):
        return ref.model_dump(by_alias=True)
    return {}


def _hostname(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""
