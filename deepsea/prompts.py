import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence, Tuple

from deepsea.config import load_prompt
from deepsea.models import BoostedSearchSnippet, KnowledgeItem, Permission
from deepsea.text_tools import remove_extra_line_breaks
from deepsea.url_tools import sort_select_urls

SYSTEM_AGENT = load_prompt("agent.system.txt")
SYSTEM_BEAST_MODE = load_prompt("beast_mode.system.txt")

ACTION_VISIT = """<action-visit>
- Crawl and read the full content of URLs, including their last updated datetime.
- Must check URLs mentioned in <question> if any.
- Choose and visit relevant URLs below for more knowledge. Higher weight suggests more relevant:
<url-list>
{url_list}
</url-list>
</action-visit>"""

ACTION_SEARCH = """<action-search>
- Use web search to find relevant information.
- Build a search request based on the deep intention behind the original question and the expected answer format.
- Always prefer a single search request, only add another request if the original question covers multiple aspects and one query is not enough.
{bad_requests}
</action-search>"""

ACTION_ANSWER = """<action-answer>
- For greetings, casual conversation and general knowledge questions, answer directly without references.
- If the user asks about previous messages, you have access to the chat history, answer directly without references.
- For all other questions, provide a verified answer with references. Each reference must include exactQuote, url and dateTime.
- If uncertain, use <action-reflect>.
</action-answer>"""

ACTION_REFLECT = """<action-reflect>
- Think slowly and plan ahead. Examine <question>, <context> and the previous conversation to identify knowledge gaps.
- Reflect on the gaps and plan a list of key clarifying questions that are deeply related to the original question and lead to the answer.
</action-reflect>"""

ACTION_CODING = """<action-coding>
- A Python sandbox for programming tasks like counting, filtering, transforming, sorting, regex extraction and data processing.
- Describe the problem in the "codingIssue" field. Include actual values for small inputs.
- No code writing is required, an engineer handles the implementation.
</action-coding>"""


def format_url_list(urls: Sequence[BoostedSearchSnippet]) -> str:
    return "\n".join(
        f'  - [idx={i}] [weight={u.score:.2f}] "{u.url}": "{u.merged[:50]}"'
        for i, u in enumerate(urls, start=1)
    )


def format_knowledge(knowledge: Sequence[KnowledgeItem]) -> str:
    items = []
    for i, k in enumerate(knowledge, start=1):
        refs = ""
        if k.references:
            refs = f"\n<references>{json.dumps(k.to_dict().get('references', []), ensure_ascii=False)}</references>"
        items.append(
            f"<knowledge-{i}>\n<question>{k.question.strip()}</question>\n"
            f"<answer>{k.answer.strip()}</answer>{refs}\n</knowledge-{i}>"
        )
    return "\n\n".join(items)


def get_prompt(
    diary: Sequence[str],
    all_keywords: Sequence[str],
    allowed: Permission,
    knowledge: Sequence[KnowledgeItem],
    weighted_urls: Sequence[BoostedSearchSnippet],
    beast_mode: bool = False,
    max_urls: int = 20,
) -> Tuple[str, List[str]]:
    """
    System prompt for one decision step and the URL list it shows.

    The returned URL list is what ``URLTargets`` indices (1-based) refer to.
    """
    sections: List[str] = [
        f"Current date: {datetime.now(timezone.utc).strftime('%a, %d %b %Y %H:%M:%S GMT')}",
        SYSTEM_AGENT,
    ]
    if diary:
        joined = "\n".join(diary)
        sections.append(f"You have conducted the following actions:\n<context>\n{joined}\n</context>")
    if knowledge:
        sections.append(
            f"<knowledge>\nKnowledge gathered so far:\n{format_knowledge(knowledge)}\n</knowledge>"
        )

    actions: List[str] = []
    url_list = sort_select_urls(weighted_urls, max_urls)
    if Permission.VISIT in allowed and url_list:
        actions.append(ACTION_VISIT.format(url_list=format_url_list(url_list)))
    if Permission.SEARCH in allowed:
        bad = ""
        if all_keywords:
            bad = "- Avoid those unsuccessful search requests and queries:\n<bad-requests>\n"
            bad += "\n".join(all_keywords) + "\n</bad-requests>"
        actions.append(ACTION_SEARCH.format(bad_requests=bad))
    if Permission.ANSWER in allowed:
        actions.append(ACTION_ANSWER)
    if beast_mode:
        actions.append(SYSTEM_BEAST_MODE)
    if Permission.REFLECT in allowed:
        actions.append(ACTION_REFLECT)
    if Permission.CODING in allowed:
        actions.append(ACTION_CODING)

    joined_actions = "\n\n".join(actions)
    sections.append(
        "Based on the current context, you must choose one of the following actions:\n"
        f"<actions>\n{joined_actions}\n</actions>"
    )
    sections.append(
        "Think step by step, choose the action, then respond by matching the schema of that action."
    )
    return remove_extra_line_breaks("\n\n".join(sections)), [u.url for u in url_list]


def build_msgs_from_knowledge(knowledge: Sequence[KnowledgeItem]) -> List[Dict[str, str]]:
    """Each knowledge item replayed as a user question and an assistant answer."""
    messages: List[Dict[str, str]] = []
    for k in knowledge:
        messages.append({"role": "user", "content": k.question.strip()})
        parts: List[str] = []
        if k.updated and k.type in {"url", "side-info"}:
            parts.append(f"<answer-datetime>\n{k.updated}\n</answer-datetime>")
        if k.references and k.type == "url":
            first = k.references[0]
            url = first.get("url", "") if isinstance(first, dict) else getattr(first, "url", first)
            parts.append(f"<url>\n{url}\n</url>")
        parts.append(k.answer.strip())
        messages.append(
            {"role": "assistant", "content": remove_extra_line_breaks("\n\n".join(parts)).strip()}
        )
    return messages


def compose_msgs(
    messages: Sequence[Dict[str, Any]],
    knowledge: Sequence[KnowledgeItem],
    question: str,
    final_answer_pip: Sequence[str] | None = None,
) -> List[Dict[str, Any]]:
    """Knowledge first, then the real conversation, then the current question."""
    msgs: List[Dict[str, Any]] = build_msgs_from_knowledge(knowledge) + list(messages)
    content = question.strip()
    if final_answer_pip:
        reviewers = "\n".join(
            f"<reviewer-{i}>\n{p}\n</reviewer-{i}>" for i, p in enumerate(final_answer_pip, start=1)
        )
        content += (
            "\n\n<answer-requirements>\n"
            "- Provide deep, unexpected insights and identify hidden patterns and connections.\n"
            "- Follow the reviewers' feedback and improve your answer quality.\n"
            f"{reviewers}\n</answer-requirements>"
        )
    msgs.append({"role": "user", "content": remove_extra_line_breaks(content)})
    return msgs
