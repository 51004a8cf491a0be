import json
import textwrap
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence

from deepsea.config import load_prompt
from deepsea.llm import LLM
from deepsea.models import AnswerAction, EvaluationResponse, KnowledgeItem
from deepsea.usage import TokenTracker

SYSTEM_EVALUATE_QUESTION = load_prompt("evaluate_question.system.txt")
SYSTEM_EVALUATE_ANSWER = load_prompt("evaluate_answer.system.txt")
SYSTEM_ERROR_ANALYZER = load_prompt("error_analyzer.system.txt")

CRITERIA: Dict[str, str] = {
    "definitive": (
        "The answer must be definitive: a clear, direct response without hedging, "
        "disclaimers or statements that the information is unavailable. An answer "
        "saying it cannot find the information fails unless it proves why."
    ),
    "freshness": (
        "The answer must be based on up-to-date information. Compare the dates in the "
        "answer and its references with the current date; for fast-changing topics "
        "information older than a few months fails."
    ),
    "plurality": (
        "The question asks for several items or a specific number of them. The answer "
        "must provide at least the requested number of distinct items."
    ),
    "completeness": (
        "The question names several explicit aspects or entities. The answer must "
        "address every one of them; missing any aspect fails."
    ),
    "strict": (
        "Be brutally strict, like a senior expert reviewer. The answer must be deep, "
        "specific and fully supported by its references; generic, shallow or partially "
        "supported answers fail. For a failure, give a concrete improvement plan."
    ),
}

_QUESTION_FLAGS = (
    ("needsDefinitive", "definitive"),
    ("needsFreshness", "freshness"),
    ("needsPlurality", "plurality"),
    ("needsCompleteness", "completeness"),
)


class Evaluator:
    """Decides which checks a question needs and judges answers against them."""

    def __init__(
        self,
        config: Dict[str, Any] | None = None,
        token_tracker: TokenTracker | None = None,
        llm: Any = None,
        analyzer_llm: Any = None,
    ) -> None:
        self.llm = llm or LLM("evaluator", config=config, token_tracker=token_tracker)
        self.analyzer_llm = analyzer_llm or LLM(
            "errorAnalyzer", config=config, token_tracker=token_tracker
        )

    async def evaluate_question(self, question: str) -> List[str]:
        try:
            data = await self.llm.json(
                SYSTEM_EVALUATE_QUESTION,
                f"<question>\n{question}\n</question>",
                metadata={"stage": "evaluate_question"},
            )
        except Exception as exc:
            print(f"[eval] question evaluation failed: {exc}")
            return []
        return [name for key, name in _QUESTION_FLAGS if data.get(key) is True]

    async def evaluate_answer(
        self,
        question: str,
        action: AnswerAction,
        types: Sequence[str],
        knowledge: Sequence[KnowledgeItem],
    ) -> EvaluationResponse:
        """Checks ``types`` in order and stops at the first failure."""
        last = EvaluationResponse(passed=True, think="")
        for eval_type in types:
            criterion = CRITERIA.get(eval_type)
            if not criterion:
                continue
            prompt = self._format_answer_prompt(question, action, eval_type, criterion, knowledge)
            try:
                data = await self.llm.json(
                    SYSTEM_EVALUATE_ANSWER,
                    prompt,
                    metadata={"stage": "evaluate_answer", "type": eval_type},
                )
            except Exception as exc:
                print(f"[eval] {eval_type} evaluation failed: {exc}")
                continue
            result = EvaluationResponse(
                passed=bool(data.get("pass", True)),
                think=str(data.get("think", "")),
                type=eval_type,
                improvement_plan=str(data.get("improvement_plan", "") or ""),
            )
            if not result.passed:
                return result
            last = result
        return last

    async def analyze_steps(self, diary: Sequence[str]) -> Dict[str, str]:
        steps = "\n".join(f"<step-{i}>\n{d.strip()}\n</step-{i}>" for i, d in enumerate(diary, start=1))
        try:
            data = await self.analyzer_llm.json(
                SYSTEM_ERROR_ANALYZER,
                f"<steps>\n{steps}\n</steps>",
                metadata={"stage": "analyze_steps"},
            )
        except Exception as exc:
            print(f"[eval] step analysis failed: {exc}")
            data = {}
        return {
            "recap": str(data.get("recap", "") or ""),
            "blame": str(data.get("blame", "") or ""),
            "improvement": str(data.get("improvement", "") or ""),
        }

    def _format_answer_prompt(
        self,
        question: str,
        action: AnswerAction,
        eval_type: str,
        criterion: str,
        knowledge: Sequence[KnowledgeItem],
    ) -> str:
        refs = [r.model_dump(by_alias=True) for r in action.references]
        facts = [{"question": k.question.strip()[:300], "answer": k.answer.strip()[:600]} for k in knowledge[-12:]]
        return textwrap.dedent(
            f"""
            Current date:
            {datetime.now(timezone.utc).date().isoformat()}

            Criterion ({eval_type}):
            {criterion}

            Question:
            {question}

            Answer:
            {action.answer}

            References:
            {json.dumps(refs, ensure_ascii=False)}

            Knowledge collected by the researcher:
            {json.dumps(facts, ensure_ascii=False)}
            """
        ).strip()
