import asyncio

from deepsea.evaluator import Evaluator
from deepsea.models import AnswerAction, KnowledgeItem, Reference


class JSONLLM:
    def __init__(self, replies):
        self.replies = list(replies)
        self.prompts = []

    async def json(self, system, user, metadata=None):
        self.prompts.append({"system": system, "user": user, "metadata": metadata})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def _answer():
    return AnswerAction(
        think="t",
        answer="Paris is the capital.",
        references=[Reference(url="https://example.com", exact_quote="Paris")],
    )


def test_evaluate_question_maps_flags_to_types():
    llm = JSONLLM([{"needsDefinitive": True, "needsFreshness": False, "needsPlurality": True, "needsCompleteness": "yes"}])
    evaluator = Evaluator(llm=llm, analyzer_llm=JSONLLM([]))

    types = asyncio.run(evaluator.evaluate_question("List three rivers"))

    assert types == ["definitive", "plurality"]
    assert "List three rivers" in llm.prompts[0]["user"]


def test_evaluate_question_failure_means_no_extra_checks():
    evaluator = Evaluator(llm=JSONLLM([RuntimeError("down")]), analyzer_llm=JSONLLM([]))

    assert asyncio.run(evaluator.evaluate_question("q")) == []


def test_evaluate_answer_short_circuits_on_first_failure():
    llm = JSONLLM(
        [
            {"think": "clear", "pass": True},
            {"think": "too old", "pass": False},
            {"think": "unused", "pass": True},
        ]
    )
    evaluator = Evaluator(llm=llm, analyzer_llm=JSONLLM([]))

    result = asyncio.run(
        evaluator.evaluate_answer(
            "q", _answer(), ["definitive", "freshness", "strict"], [KnowledgeItem(question="kq", answer="ka")]
        )
    )

    assert result.passed is False
    assert result.type == "freshness"
    assert result.think == "too old"
    assert len(llm.prompts) == 2
    assert "https://example.com" in llm.prompts[0]["user"]
    assert "kq" in llm.prompts[0]["user"]


def test_evaluate_answer_skips_failed_calls_and_returns_last_pass():
    llm = JSONLLM([RuntimeError("timeout"), {"think": "deep enough", "pass": True, "improvement_plan": ""}])
    evaluator = Evaluator(llm=llm, analyzer_llm=JSONLLM([]))

    result = asyncio.run(evaluator.evaluate_answer("q", _answer(), ["definitive", "strict"], []))

    assert result.passed is True
    assert result.type == "strict"


def test_strict_failure_carries_improvement_plan():
    llm = JSONLLM([{"think": "shallow", "pass": False, "improvement_plan": "add numbers"}])
    evaluator = Evaluator(llm=llm, analyzer_llm=JSONLLM([]))

    result = asyncio.run(evaluator.evaluate_answer("q", _answer(), ["strict"], []))

    assert result.improvement_plan == "add numbers"


def test_analyze_steps_formats_diary_and_tolerates_failure():
    analyzer = JSONLLM([{"recap": "r", "blame": "b", "improvement": "i"}, RuntimeError("down")])
    evaluator = Evaluator(llm=JSONLLM([]), analyzer_llm=analyzer)

    first = asyncio.run(evaluator.analyze_steps(["searched", "answered"]))
    second = asyncio.run(evaluator.analyze_steps(["x"]))

    assert first == {"recap": "r", "blame": "b", "improvement": "i"}
    assert "<step-2>\nanswered\n</step-2>" in analyzer.prompts[0]["user"]
    assert second == {"recap": "", "blame": "", "improvement": ""}
