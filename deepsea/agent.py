import argparse
import asyncio
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from deepsea.action_tracker import ActionTracker
from deepsea.config import load_agent_config
from deepsea.dedup import QueryDeduplicator
from deepsea.evaluator import Evaluator
from deepsea.models import (
    AnswerAction,
    BoostedSearchSnippet,
    CodingAction,
    EvaluationMetric,
    EvaluationResponse,
    KnowledgeItem,
    Permission,
    ReflectAction,
    SERPQuery,
    SearchAction,
    SearchSnippet,
    VisitAction,
    permission_names,
)
from deepsea.prompts import compose_msgs, get_prompt
from deepsea.safe_generator import ObjectGenerator
from deepsea.schemas import get_agent_schema, parse_step_action
from deepsea.text_tools import choose_k, finalize_markdown, remove_html_tags
from deepsea.tools import CodeSandbox, ContentReader, QueryRewriter, ReadResult, build_search_provider
from deepsea.url_tools import (
    add_to_all_urls,
    extract_urls_with_description,
    filter_urls,
    get_last_modified,
    keep_k_per_hostname,
    normalize_url,
    rank_urls,
    update_references,
)
from deepsea.usage import TokenTracker

TBS_LABELS = {
    "qdr:h": "past hour",
    "qdr:d": "past 24 hours",
    "qdr:w": "past week",
    "qdr:m": "past month",
    "qdr:y": "past year",
}


class ResearchAbortedError(RuntimeError):
    pass


@dataclass
class TrackerContext:
    token_tracker: TokenTracker
    action_tracker: ActionTracker


@dataclass
class Toolset:
    generator: Any
    evaluator: Any
    search_provider: Any
    reader: Any
    rewriter: Any
    deduplicator: Any
    sandbox: Any
    last_modified: Callable[[str], Awaitable[str]]


@dataclass
class StepOutcome:
    disable: Permission = Permission.NONE
    stop: bool = False


@dataclass
class ResearchState:
    """Everything one research run mutates. Never shared between runs."""

    question: str
    messages: List[Dict[str, Any]]
    gaps: List[str]
    all_questions: List[str]
    tools: Optional[Toolset] = None
    no_direct_answer: bool = False
    boost_hostnames: List[str] = field(default_factory=list)
    bad_hostnames: List[str] = field(default_factory=list)
    only_hostnames: List[str] = field(default_factory=list)
    all_keywords: List[str] = field(default_factory=list)
    knowledge: List[KnowledgeItem] = field(default_factory=list)
    diary: List[str] = field(default_factory=list)
    all_context: List[Dict[str, Any]] = field(default_factory=list)
    all_urls: Dict[str, SearchSnippet] = field(default_factory=dict)
    visited_urls: List[str] = field(default_factory=list)
    bad_urls: List[str] = field(default_factory=list)
    weighted_urls: List[BoostedSearchSnippet] = field(default_factory=list)
    url_list: List[str] = field(default_factory=list)
    evaluation_metrics: Dict[str, List[EvaluationMetric]] = field(default_factory=dict)
    final_answer_pip: List[str] = field(default_factory=list)
    next_allowed: Permission = Permission.ALL & ~Permission.CODING
    this_step: Any = None
    trivial: bool = False
    step: int = 0
    total_step: int = 0


@dataclass
class ResearchResult:
    result: AnswerAction
    context: TrackerContext
    visited_urls: List[str]
    read_urls: List[str]
    all_urls: List[str]
    state: ResearchState


def message_text(message: Dict[str, Any], last_only: bool = False) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts = [
            str(c.get("text", ""))
            for c in content
            if isinstance(c, dict) and c.get("type") == "text"
        ]
        if last_only:
            return texts[-1].strip() if texts else ""
        return "\n".join(texts).strip()
    return ""


class DeepSearchAgent:
    """
    Budget-bounded research loop.

    Each step picks the next open question round-robin, ranks the known URLs
    for it, asks the model for one action under the currently allowed set and
    runs it. The loop stops on a verified answer or when 85% of the token
    budget is used; a final answer-only pass then runs if needed.
    """

    def __init__(
        self,
        config: Dict[str, Any] | None = None,
        generator: Any = None,
        evaluator: Any = None,
        search_provider: Any = None,
        reader: Any = None,
        rewriter: Any = None,
        deduplicator: Any = None,
        sandbox: Any = None,
        last_modified: Callable[[str], Awaitable[str]] | None = None,
        enable_coding: bool = True,
        verbose: bool = True,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        run_id: str = "",
        should_abort: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.config = config or load_agent_config()
        self.generator = generator
        self.evaluator = evaluator
        self.search_provider = search_provider
        self.reader = reader
        self.rewriter = rewriter
        self.deduplicator = deduplicator
        self.sandbox = sandbox
        self.last_modified = last_modified
        self.enable_coding = enable_coding
        self.verbose = verbose
        self.event_callback = event_callback
        self.run_id = run_id
        self.should_abort = should_abort

    def _toolset(self, tracker: TokenTracker) -> Toolset:
        cfg = self.config
        sandbox = self.sandbox
        if sandbox is None and self.enable_coding:
            sandbox = CodeSandbox(config=cfg, token_tracker=tracker)
        return Toolset(
            generator=self.generator or ObjectGenerator(token_tracker=tracker, config=cfg),
            evaluator=self.evaluator or Evaluator(config=cfg, token_tracker=tracker),
            search_provider=self.search_provider or build_search_provider(cfg, tracker),
            reader=self.reader or ContentReader(max_chars=cfg["max_content_chars"]),
            rewriter=self.rewriter or QueryRewriter(config=cfg, token_tracker=tracker),
            deduplicator=self.deduplicator or QueryDeduplicator(cfg["dedup_similarity"]),
            sandbox=sandbox,
            last_modified=self.last_modified or get_last_modified,
        )

    async def run(
        self,
        question: str = "",
        token_budget: int = 1_000_000,
        max_bad_attempts: int = 2,
        messages: List[Dict[str, Any]] | None = None,
        existing_context: TrackerContext | None = None,
        num_returned_urls: int | None = None,
        no_direct_answer: bool = False,
        boost_hostnames: List[str] | None = None,
        bad_hostnames: List[str] | None = None,
        only_hostnames: List[str] | None = None,
    ) -> ResearchResult:
        question = (question or "").strip()
        history = [m for m in (messages or []) if m.get("role") != "system"]
        if history:
            question = message_text(history[-1], last_only=True)
        else:
            history = [{"role": "user", "content": question}]
        if not question:
            raise ValueError("A question is required.")

        context = existing_context or TrackerContext(
            token_tracker=TokenTracker(budget=token_budget),
            action_tracker=ActionTracker(),
        )
        context.action_tracker.on(self._on_tracker_event)
        try:
            tracker = context.token_tracker
            state = ResearchState(
                tools=self._toolset(tracker),
                question=question,
                messages=history,
                gaps=[question],
                all_questions=[question],
                no_direct_answer=no_direct_answer,
                boost_hostnames=list(boost_hostnames or []),
                bad_hostnames=list(bad_hostnames or []),
                only_hostnames=list(only_hostnames or []),
            )
            state.this_step = AnswerAction(answer="", references=[], think="", is_final=False)
            for m in history:
                for snippet in extract_urls_with_description(message_text(m)):
                    add_to_all_urls(snippet, state.all_urls)

            self._log(f"Starting research: {question}")
            self._emit("run_started", {"question": question, "token_budget": token_budget})
            regular_budget = token_budget * self.config["regular_budget_ratio"]

            while tracker.total_tokens < regular_budget:
                self._abort_if_requested("step_start")
                state.step += 1
                state.total_step += 1
                pct = tracker.total_tokens / float(token_budget) * 100 if token_budget else 100.0
                self._log(f"Step {state.total_step} / Budget used {pct:.2f}%")
                outcome = await self._run_step(state, context, max_bad_attempts)
                if outcome.stop:
                    break
                await asyncio.sleep(self.config["step_sleep"])

            answer_step = state.this_step
            if not (isinstance(answer_step, AnswerAction) and answer_step.is_final):
                answer_step = await self._beast_mode(state, context)

            answer_step.md_answer = finalize_markdown(
                answer_step.answer, answer_step.references, state.all_urls, trivial=state.trivial
            )

            limit = min(
                num_returned_urls or self.config["num_returned_urls"],
                self.config["max_returned_urls"],
            )
            result = ResearchResult(
                result=answer_step,
                context=context,
                visited_urls=[r.url for r in state.weighted_urls[:limit]],
                read_urls=[u for u in state.visited_urls if u not in state.bad_urls],
                all_urls=[r.url for r in state.weighted_urls],
                state=state,
            )
            self._emit(
                "run_completed",
                {
                    "answer": answer_step.answer,
                    "md_answer": answer_step.md_answer,
                    "visited_urls": result.visited_urls,
                    "read_urls": result.read_urls,
                    "total_tokens": tracker.total_tokens,
                },
            )
            self._log(f"Research finished after {state.total_step} steps.")
            return result
        finally:
            context.action_tracker.off(self._on_tracker_event)

    async def _run_step(
        self,
        state: ResearchState,
        context: TrackerContext,
        max_bad_attempts: int,
    ) -> StepOutcome:
        cfg = self.config
        allowed = state.next_allowed
        if len(state.gaps) > cfg["max_reflect_per_step"]:
            allowed &= ~Permission.REFLECT
        current = state.gaps[state.total_step % len(state.gaps)]

        if current not in state.evaluation_metrics:
            if current == state.question:
                types = await state.tools.evaluator.evaluate_question(current)
                metrics = [EvaluationMetric(t, max_bad_attempts) for t in types if t != "strict"]
                metrics.append(EvaluationMetric("strict", max_bad_attempts))
                state.evaluation_metrics[current] = metrics
            else:
                state.evaluation_metrics[current] = []
        if state.total_step == 1 and any(
            m.type == "freshness" for m in state.evaluation_metrics[current]
        ):
            allowed &= ~(Permission.ANSWER | Permission.REFLECT)

        if state.all_urls:
            state.weighted_urls = keep_k_per_hostname(
                rank_urls(
                    filter_urls(
                        state.all_urls,
                        state.visited_urls,
                        state.bad_hostnames,
                        state.only_hostnames,
                    ),
                    question=current,
                    boost_hostnames=state.boost_hostnames,
                    hostname_bonus=cfg["hostname_boost"],
                ),
                cfg["urls_per_hostname"],
            )
        if not state.weighted_urls:
            allowed &= ~Permission.VISIT
        if len(state.weighted_urls) > cfg["search_url_limit"]:
            allowed &= ~Permission.SEARCH
        if state.tools.sandbox is None:
            allowed &= ~Permission.CODING
        if allowed == Permission.NONE:
            allowed = Permission.ANSWER

        system, state.url_list = get_prompt(
            state.diary,
            state.all_keywords,
            allowed,
            state.knowledge,
            state.weighted_urls,
            beast_mode=False,
            max_urls=cfg["max_urls_in_prompt"],
        )
        schema = get_agent_schema(
            allowed,
            current,
            max_queries=cfg["max_queries_per_step"],
            max_urls=cfg["max_urls_per_step"],
            max_reflect=cfg["max_reflect_per_step"],
        )
        msgs = compose_msgs(
            state.messages,
            state.knowledge,
            current,
            state.final_answer_pip if current == state.question else None,
        )
        self._emit(
            "step_started",
            {"step": state.total_step, "question": current, "allowed": permission_names(allowed)},
        )
        generated = await state.tools.generator.generate(
            "agent",
            schema,
            system,
            msgs,
            num_retries=2,
            validator=lambda obj: parse_step_action(obj, allowed),
            original_query=current,
        )
        this_step = generated.object
        state.this_step = this_step
        self._log(f"{current}: {this_step.action} <- [{', '.join(permission_names(allowed))}]")
        context.action_tracker.track_action(state.total_step, this_step.to_dict(), state.gaps)
        self._emit("action", {"step": state.total_step, "action": this_step.to_dict()})

        state.next_allowed = Permission.ALL
        if isinstance(this_step, AnswerAction) and this_step.answer.strip():
            outcome = await self._handle_answer(state, context, this_step, current)
        elif isinstance(this_step, ReflectAction):
            outcome = await self._handle_reflect(state, this_step, current)
        elif isinstance(this_step, SearchAction):
            outcome = await self._handle_search(state, context, this_step, current)
        elif isinstance(this_step, VisitAction):
            outcome = await self._handle_visit(state, context, this_step, current)
        elif isinstance(this_step, CodingAction):
            outcome = await self._handle_coding(state, this_step)
        else:
            self._log("Empty answer ignored.")
            outcome = StepOutcome()
        state.next_allowed &= ~outcome.disable

        if not outcome.stop:
            self._store_context(state, system, schema, msgs)
        return outcome

    async def _handle_answer(
        self,
        state: ResearchState,
        context: TrackerContext,
        step: AnswerAction,
        current: str,
    ) -> StepOutcome:
        await update_references(step, state.all_urls, state.tools.last_modified)

        if state.total_step == 1 and not step.references and not state.no_direct_answer:
            step.is_final = True
            state.trivial = True
            self._log("Answered directly on the first step.")
            return StepOutcome(stop=True)

        if step.references:
            new_urls: List[str] = []
            for ref in step.references:
                if ref.url not in state.visited_urls and ref.url not in new_urls:
                    new_urls.append(ref.url)
            await self._process_urls(state, context, new_urls, current)
            step.references = [r for r in step.references if r.url not in state.bad_urls]

        state.all_context.append({"totalStep": state.total_step, "question": current, **step.to_dict()})

        evaluation = EvaluationResponse(passed=True, think="")
        metrics = state.evaluation_metrics[current]
        if metrics:
            context.action_tracker.track_think("eval_first")
            evaluation = await state.tools.evaluator.evaluate_answer(
                current, step, [m.type for m in metrics], state.knowledge
            )

        if current == state.question:
            if evaluation.passed:
                state.diary.append(
                    f"At step {state.step}, you took **answer** action and finally found the "
                    f"answer to the original question:\n\nOriginal question:\n{current}\n\n"
                    f"Your answer:\n{step.answer}\n\nThe evaluator thinks your answer is good "
                    f"because:\n{evaluation.think}\n\nYour journey ends here."
                )
                step.is_final = True
                return StepOutcome(stop=True)

            for m in metrics:
                if m.type == evaluation.type:
                    m.num_evals_required -= 1
            state.evaluation_metrics[current] = [m for m in metrics if m.num_evals_required > 0]
            if evaluation.type == "strict" and evaluation.improvement_plan:
                state.final_answer_pip.append(evaluation.improvement_plan)
            self._log(f"Answer rejected ({evaluation.type}): {evaluation.think}")
            self._emit("answer_rejected", {"type": evaluation.type, "think": evaluation.think})

            if not state.evaluation_metrics[current]:
                step.is_final = False
                return StepOutcome(stop=True)

            state.diary.append(
                f"At step {state.step}, you took **answer** action but evaluator thinks it is "
                f"not a good answer:\n\nOriginal question:\n{current}\n\nYour answer:\n"
                f"{step.answer}\n\nThe evaluator thinks your answer is bad because:\n"
                f"{evaluation.think}"
            )
            analysis = await state.tools.evaluator.analyze_steps(state.diary)
            state.knowledge.append(
                KnowledgeItem(
                    question=(
                        "Why is the following answer bad for the question? Please reflect\n\n"
                        f"<question>\n{current}\n</question>\n\n<answer>\n{step.answer}\n</answer>"
                    ),
                    answer="\n\n".join(
                        part
                        for part in (
                            evaluation.think,
                            analysis.get("recap", ""),
                            analysis.get("blame", ""),
                            analysis.get("improvement", ""),
                        )
                        if part
                    ),
                    type="qa",
                )
            )
            state.diary = []
            state.step = 0
            return StepOutcome(disable=Permission.ANSWER | Permission.CODING)

        if evaluation.passed:
            state.diary.append(
                f"At step {state.step}, you took **answer** action. You found a good answer to "
                f"the sub-question:\n\nSub-question:\n{current}\n\nYour answer:\n{step.answer}\n\n"
                "Although you solved a sub-question, you still need to find the answer to the "
                "original question. You need to keep going."
            )
            state.knowledge.append(
                KnowledgeItem(
                    question=current,
                    answer=step.answer,
                    references=list(step.references),
                    type="qa",
                    updated=_now_iso(),
                )
            )
            state.gaps.remove(current)
        return StepOutcome()

    async def _handle_reflect(
        self,
        state: ResearchState,
        step: ReflectAction,
        current: str,
    ) -> StepOutcome:
        new_questions = choose_k(
            await state.tools.deduplicator.dedup(step.questions_to_answer, state.all_questions),
            self.config["max_reflect_per_step"],
        )
        step.questions_to_answer = new_questions
        if new_questions:
            listed = "\n".join(f"- {q}" for q in new_questions)
            state.diary.append(
                f"At step {state.step}, you took **reflect** and think about the knowledge gaps. "
                f'You found some sub-questions are important to the question: "{current}"\n'
                f"You realize you need to know the answers to the following sub-questions:\n{listed}"
            )
            state.gaps.extend(new_questions)
            state.all_questions.extend(new_questions)
            state.all_context.append({"totalStep": state.total_step, **step.to_dict()})
        else:
            state.diary.append(
                f"At step {state.step}, you took **reflect** and think about the knowledge gaps. "
                f'You tried to break down the question "{current}" into gap-questions, but you '
                "have asked them before. You decided to think out of the box or cut from a "
                "completely different angle."
            )
            state.all_context.append(
                {
                    "totalStep": state.total_step,
                    **step.to_dict(),
                    "result": "You have tried all possible questions and found no useful information.",
                }
            )
        return StepOutcome(disable=Permission.REFLECT)

    async def _handle_search(
        self,
        state: ResearchState,
        context: TrackerContext,
        step: SearchAction,
        current: str,
    ) -> StepOutcome:
        max_queries = self.config["max_queries_per_step"]
        queries = choose_k(
            await state.tools.deduplicator.dedup(step.search_requests, state.all_keywords),
            max_queries,
        )
        step.search_requests = queries
        searched, new_knowledge = await self._execute_search_queries(
            state, context, [SERPQuery(q=q) for q in queries]
        )
        state.all_keywords.extend(searched)
        state.knowledge.extend(new_knowledge)

        sound_bites = " ".join(k.answer for k in new_knowledge)
        rewritten = await state.tools.rewriter.rewrite(step, sound_bites)
        q_only = [q.q for q in rewritten if q.q]
        unique = choose_k(
            await state.tools.deduplicator.dedup(q_only, state.all_keywords), max_queries
        )
        keyword_queries: List[SERPQuery] = []
        for q in unique:
            matches = [r for r in rewritten if r.q == q]
            keyword_queries.append(SERPQuery(q=q) if len(matches) != 1 else matches[0])

        any_result = False
        if keyword_queries:
            searched, new_knowledge = await self._execute_search_queries(
                state, context, keyword_queries, state.only_hostnames
            )
            if searched:
                any_result = True
                state.all_keywords.extend(searched)
                state.knowledge.extend(new_knowledge)
                state.diary.append(
                    f"At step {state.step}, you took the **search** action and look for external "
                    f'information for the question: "{current}".\nIn particular, you tried to '
                    f'search for the following keywords: "{", ".join(q.q for q in keyword_queries)}".\n'
                    "You found quite some information and add them to your URL list and **visit** "
                    "them later when needed."
                )
                state.all_context.append(
                    {"totalStep": state.total_step, "question": current, **step.to_dict()}
                )
        if not any_result:
            state.diary.append(
                f"At step {state.step}, you took the **search** action and look for external "
                f'information for the question: "{current}".\nIn particular, you tried to search '
                f'for the following keywords: "{", ".join(q.q for q in keyword_queries)}".\n'
                "But then you realized you have already searched for these keywords before, no new "
                "information is returned.\nYou decided to think out of the box or cut from a "
                "completely different angle."
            )
            state.all_context.append(
                {
                    "totalStep": state.total_step,
                    **step.to_dict(),
                    "result": "You have tried all possible queries and found no new information.",
                }
            )
        return StepOutcome(disable=Permission.SEARCH)

    async def _execute_search_queries(
        self,
        state: ResearchState,
        context: TrackerContext,
        queries: List[SERPQuery],
        only_hostnames: List[str] | None = None,
    ) -> tuple[List[str], List[KnowledgeItem]]:
        searched: List[str] = []
        new_knowledge: List[KnowledgeItem] = []
        if not queries:
            return searched, new_knowledge
        context.action_tracker.track_think(
            "search_for", {"keywords": ", ".join(q.q for q in queries)}
        )
        utility = 0
        for query in queries:
            q = query.q
            if only_hostnames:
                q = f"{q} site:{' OR site:'.join(only_hostnames)}"
            try:
                self._log(f"Search query: {q}")
                results = await state.tools.search_provider.search(
                    q, tbs=query.tbs, location=query.location
                )
            except Exception as exc:
                print(f"[search] search failed for {q!r}: {exc}")
                results = []
            finally:
                await asyncio.sleep(self.config["step_sleep"])
            if not results:
                self._log(f"No results for: {q}")
                continue

            snippets: List[SearchSnippet] = []
            for r in results:
                url = normalize_url(str(r.get("url") or r.get("link") or ""))
                if not url:
                    continue
                snippets.append(
                    SearchSnippet(
                        url=url,
                        title=str(r.get("title") or ""),
                        description=str(r.get("description") or r.get("snippet") or ""),
                        weight=1.0,
                        date=str(r.get("date") or ""),
                    )
                )
            for s in snippets:
                utility += add_to_all_urls(s, state.all_urls)
            searched.append(q)
            new_knowledge.append(
                KnowledgeItem(
                    question=f'What do Internet say about "{query.q}"?',
                    answer=remove_html_tags("; ".join(s.description for s in snippets)),
                    type="side-info",
                    updated=TBS_LABELS.get(query.tbs, "") if query.tbs else "",
                )
            )

        if not searched:
            if only_hostnames:
                context.action_tracker.track_think(
                    "hostnames_no_results", {"hostnames": ", ".join(only_hostnames)}
                )
        else:
            self._log(f"Utility/Queries: {utility}/{len(searched)}")
        return searched, new_knowledge

    async def _handle_visit(
        self,
        state: ResearchState,
        context: TrackerContext,
        step: VisitAction,
        current: str,
    ) -> StepOutcome:
        targets: List[str] = []
        for target in step.url_targets:
            if isinstance(target, int):
                raw = state.url_list[target - 1] if 1 <= target <= len(state.url_list) else ""
            else:
                raw = str(target)
            url = normalize_url(raw)
            if url and url not in state.visited_urls and url not in targets:
                targets.append(url)
        for r in state.weighted_urls:
            if r.url not in targets:
                targets.append(r.url)
        targets = targets[: self.config["max_urls_per_step"]]
        step.url_targets = targets

        if targets:
            results = await self._process_urls(state, context, targets, current)
            if results:
                listed = "\n".join(results)
                state.diary.append(
                    f"At step {state.step}, you took the **visit** action and deep dive into the "
                    f"following URLs:\n{listed}\nYou found some useful information on the web and "
                    "add them to your knowledge for future reference."
                )
                state.all_context.append(
                    {"totalStep": state.total_step, "question": current, **step.to_dict(), "result": results}
                )
            else:
                state.diary.append(
                    f"At step {state.step}, you took the **visit** action and try to visit some "
                    "URLs but failed to read the content. You need to think out of the box or cut "
                    "from a completely different angle."
                )
                state.all_context.append(
                    {
                        "totalStep": state.total_step,
                        **step.to_dict(),
                        "result": "You have tried all possible URLs and found no new information.",
                    }
                )
        else:
            state.diary.append(
                f"At step {state.step}, you took the **visit** action. But then you realized you "
                "have already visited these URLs and you already know very well about their contents."
            )
            state.all_context.append(
                {
                    "totalStep": state.total_step,
                    **step.to_dict(),
                    "result": "You have visited all possible URLs and found no new information.",
                }
            )
        return StepOutcome(disable=Permission.VISIT)

    async def _process_urls(
        self,
        state: ResearchState,
        context: TrackerContext,
        urls: List[str],
        question: str,
    ) -> List[str]:
        """Read ``urls``; readable pages become knowledge, the rest are marked bad."""
        if not urls:
            return []
        context.action_tracker.track_think("read_for", {"urls": ", ".join(urls)})
        try:
            reads = await state.tools.reader.read_many(urls)
        except Exception as exc:
            print(f"[reader] batch read failed: {exc}")
            reads = [ReadResult(url=u, success=False, error=str(exc)) for u in urls]

        read_ok: List[str] = []
        for r in reads:
            url = normalize_url(r.url) or r.url
            if url not in state.visited_urls:
                state.visited_urls.append(url)
            if not r.success:
                if url not in state.bad_urls:
                    state.bad_urls.append(url)
                print(f"[reader] unreadable {url}: {r.error}")
                continue
            snippet = state.all_urls.get(url)
            if snippet is not None and r.title and not snippet.title:
                snippet.title = r.title
            state.knowledge.append(
                KnowledgeItem(
                    question=f'What do expert say about "{question}"?',
                    answer=" ".join(r.content.split()),
                    references=[url],
                    type="url",
                    updated=r.published or "",
                )
            )
            read_ok.append(url)
            self._emit("url_visit", {"url": url, "title": r.title})
        return read_ok

    async def _handle_coding(self, state: ResearchState, step: CodingAction) -> StepOutcome:
        try:
            solution = await state.tools.sandbox.solve(step.coding_issue, state.knowledge)
        except Exception as exc:
            print(f"[progress] coding failed: {exc}")
            state.diary.append(
                f"At step {state.step}, you took the **coding** action and try to solve the coding "
                f"issue: {step.coding_issue}.\nBut unfortunately, you failed to solve the issue. You "
                "need to think out of the box or cut from a completely different angle."
            )
            state.all_context.append(
                {
                    "totalStep": state.total_step,
                    **step.to_dict(),
                    "result": "You have tried all possible solutions and found no new information.",
                }
            )
            return StepOutcome(disable=Permission.CODING)

        state.knowledge.append(
            KnowledgeItem(
                question=f"What is the solution to the coding issue: {step.coding_issue}?",
                answer=solution.output,
                source_code=solution.code,
                type="coding",
                updated=_now_iso(),
            )
        )
        state.diary.append(
            f"At step {state.step}, you took the **coding** action and try to solve the coding "
            f"issue: {step.coding_issue}.\nYou found the solution and add it to your knowledge for "
            "future reference."
        )
        state.all_context.append(
            {"totalStep": state.total_step, **step.to_dict(), "result": solution.output}
        )
        return StepOutcome(disable=Permission.CODING)

    async def _beast_mode(self, state: ResearchState, context: TrackerContext) -> AnswerAction:
        self._log("Entering beast mode.")
        self._emit("beast_mode", {"step": state.total_step + 1})
        state.step += 1
        state.total_step += 1
        context.action_tracker.track_think("beast_mode")
        system, _ = get_prompt(
            state.diary,
            state.all_keywords,
            Permission.NONE,
            state.knowledge,
            state.weighted_urls,
            beast_mode=True,
            max_urls=self.config["max_urls_in_prompt"],
        )
        schema = get_agent_schema(Permission.ANSWER, state.question)
        msgs = compose_msgs(state.messages, state.knowledge, state.question, state.final_answer_pip)
        generated = await state.tools.generator.generate(
            "agentBeastMode",
            schema,
            system,
            msgs,
            num_retries=2,
            validator=lambda obj: parse_step_action(obj, Permission.ANSWER),
            original_query=state.question,
        )
        step: AnswerAction = generated.object
        await update_references(step, state.all_urls, state.tools.last_modified)
        step.is_final = True
        state.this_step = step
        context.action_tracker.track_action(state.total_step, step.to_dict(), state.gaps)
        return step

    def _store_context(
        self,
        state: ResearchState,
        system: str,
        schema: Dict[str, Any],
        msgs: List[Dict[str, Any]],
    ) -> None:
        context_dir = self.config.get("context_dir")
        if not context_dir:
            return
        try:
            path = Path(context_dir)
            if self.run_id:
                path = path / self.run_id
            path.mkdir(parents=True, exist_ok=True)
            (path / f"prompt-{state.total_step}.txt").write_text(
                f"Prompt:\n{system}\n\nJSONSchema:\n{json.dumps(schema, indent=2)}\n",
                encoding="utf-8",
            )
            files = {
                "context.json": state.all_context,
                "queries.json": state.all_keywords,
                "questions.json": state.all_questions,
                "knowledge.json": [k.to_dict() for k in state.knowledge],
                "urls.json": [asdict(u) for u in state.weighted_urls],
                "messages.json": msgs,
            }
            for name, payload in files.items():
                (path / name).write_text(
                    json.dumps(payload, ensure_ascii=False, indent=2, default=str),
                    encoding="utf-8",
                )
        except (OSError, TypeError, ValueError) as exc:
            print(f"[state] context storage failed: {exc}")

    def _on_tracker_event(self, kind: str, payload: Dict[str, Any]) -> None:
        if kind == "think":
            self._emit("think", {"text": payload.get("think", "")})

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[progress] {message}")

    def _abort_if_requested(self, context: str) -> None:
        if self.should_abort and self.should_abort():
            self._log(f"Abort requested ({context}).")
            raise ResearchAbortedError("Run aborted by user")

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.event_callback:
            return
        event = {
            "run_id": self.run_id,
            "timestamp": _now_iso(),
            "event_type": event_type,
            "payload": payload,
        }
        try:
            self.event_callback(event)
        except Exception as exc:
            print(f"[progress] event callback failed: {exc}")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def main() -> None:
    parser = argparse.ArgumentParser(description="Deep search research agent")
    parser.add_argument("question", help="Question to research")
    parser.add_argument("--token-budget", type=int, default=1_000_000, help="Total token budget")
    parser.add_argument(
        "--max-bad-attempts",
        type=int,
        default=2,
        help="Allowed failed evaluations per check before giving up",
    )
    parser.add_argument(
        "--max-returned-urls", type=int, default=100, help="Number of ranked URLs to return"
    )
    parser.add_argument(
        "--no-direct-answer",
        action="store_true",
        help="Always evaluate answers, even a first-step answer without references",
    )
    parser.add_argument("--boost-hostnames", nargs="*", default=[], help="Hostnames to rank higher")
    parser.add_argument("--bad-hostnames", nargs="*", default=[], help="Hostnames to exclude")
    parser.add_argument(
        "--only-hostnames", nargs="*", default=[], help="Restrict searches to these hostnames"
    )
    parser.add_argument("--quiet", action="store_true", help="Disable progress updates")
    args = parser.parse_args()

    agent = DeepSearchAgent(verbose=not args.quiet)
    result = asyncio.run(
        agent.run(
            args.question,
            token_budget=args.token_budget,
            max_bad_attempts=args.max_bad_attempts,
            num_returned_urls=args.max_returned_urls,
            no_direct_answer=args.no_direct_answer,
            boost_hostnames=args.boost_hostnames,
            bad_hostnames=args.bad_hostnames,
            only_hostnames=args.only_hostnames,
        )
    )
    print(f"[answer] {result.result.answer}")
    print(f"[answer] visited: {json.dumps(result.visited_urls)}")
    result.context.token_tracker.print_summary()
    print(result.result.md_answer)


if __name__ == "__main__":
    main()
