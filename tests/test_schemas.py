import pytest

from deepsea.models import (
    AnswerAction,
    EvaluationResponse,
    KnowledgeItem,
    Permission,
    Reference,
    VisitAction,
    permission_names,
)
from deepsea.schemas import SchemaConformanceError, distill_schema, get_agent_schema, parse_step_action


def test_schema_lists_only_allowed_actions():
    schema = get_agent_schema(Permission.SEARCH | Permission.ANSWER, "q", max_queries=3)

    props = schema["properties"]
    assert props["action"]["enum"] == ["search", "answer"]
    assert props["searchRequests"]["maxItems"] == 3
    assert "URLTargets" not in props
    assert "questionsToAnswer" not in props
    assert "codingIssue" not in props
    assert schema["required"] == ["action", "think"]


def test_schema_requires_some_action():
    with pytest.raises(ValueError):
        get_agent_schema(Permission.NONE)


def test_distill_schema_strips_descriptions_only():
    schema = get_agent_schema(Permission.ALL, "q")

    distilled = distill_schema(schema)

    assert "description" not in str(distilled)
    assert distilled["properties"]["action"]["enum"] == schema["properties"]["action"]["enum"]
    assert "description" in schema["properties"]["action"]


def test_parse_step_action_builds_variant():
    step = parse_step_action(
        {
            "action": "answer",
            "think": "t",
            "answer": "Paris",
            "references": [{"exactQuote": "capital", "url": "https://example.com"}],
        }
    )

    assert isinstance(step, AnswerAction)
    assert step.references[0].exact_quote == "capital"
    assert step.is_final is False
    assert step.to_dict()["references"][0]["exactQuote"] == "capital"


def test_parse_step_action_accepts_nested_payload():
    step = parse_step_action({"action": "Visit", "visit": {"URLTargets": [2, "https://a.com"]}})

    assert isinstance(step, VisitAction)
    assert step.url_targets == [2, "https://a.com"]
    assert step.think == ""


def test_numeric_string_url_targets_become_indices():
    step = parse_step_action({"action": "visit", "URLTargets": ["1", " 3 ", "https://a.com"]})

    assert step.url_targets == [1, 3, "https://a.com"]


@pytest.mark.parametrize(
    "obj",
    [
        ["not", "an", "object"],
        {"action": "dance"},
        {"action": "coding", "codingIssue": "sum"},
        {"action": "search", "searchRequests": []},
    ],
)
def test_parse_step_action_rejects(obj):
    with pytest.raises(SchemaConformanceError):
        parse_step_action(obj, Permission.ALL & ~Permission.CODING)


def test_permission_names_follow_flag_order():
    assert permission_names(Permission.ALL & ~Permission.CODING) == ["search", "visit", "answer", "reflect"]
    assert permission_names(Permission.NONE) == []


def test_evaluation_response_reads_pass_alias():
    resp = EvaluationResponse.model_validate({"pass": False, "think": "no", "type": "strict"})

    assert resp.passed is False
    assert resp.type == "strict"


def test_knowledge_item_to_dict_serializes_references():
    item = KnowledgeItem(
        question="q",
        answer="a",
        references=[Reference(url="https://example.com", exact_quote="x")],
        source_code="print(1)",
    )

    out = item.to_dict()

    assert out["references"][0]["url"] == "https://example.com"
    assert out["sourceCode"] == "print(1)"
    assert "updated" not in out
