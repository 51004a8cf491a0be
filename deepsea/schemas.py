import copy
from typing import Any, Dict

from pydantic import BaseModel, ValidationError

from deepsea.models import (
    ACTION_PERMISSIONS,
    STEP_ACTION_ADAPTER,
    Permission,
    permission_names,
)


class SchemaConformanceError(ValueError):
    pass


def _string_array(description: str, max_items: int) -> Dict[str, Any]:
    return {
        "type": "array",
        "description": description,
        "items": {"type": "string"},
        "maxItems": max_items,
    }


def get_agent_schema(
    allowed: Permission,
    current_question: str = "",
    max_queries: int = 5,
    max_urls: int = 4,
    max_reflect: int = 2,
) -> Dict[str, Any]:
    """
    JSON schema of a flat StepAction object, restricted to the allowed actions.

    The ``action`` enum only lists allowed kinds and only their payload
    fields are present, so a model following the schema cannot pick a
    disabled action.
    """
    actions = permission_names(allowed)
    if not actions:
        raise ValueError("At least one action must be allowed.")
    properties: Dict[str, Any] = {
        "action": {
            "type": "string",
            "enum": actions,
            "description": "Choose exactly one best action from the available actions.",
        },
        "think": {
            "type": "string",
            "description": (
                "Concisely explain your reasoning process in first person, "
                "in the language of the question."
            ),
        },
    }
    if Permission.SEARCH in allowed:
        properties["searchRequests"] = _string_array(
            "Required when action='search'. Always prefer a single request, only add "
            "another request if the original question covers multiple aspects. "
            "Each request is a short keyword-based query.",
            max_queries,
        )
    if Permission.VISIT in allowed:
        properties["URLTargets"] = {
            "type": "array",
            "description": (
                "Required when action='visit'. Must be the index of the URL in "
                "from the original list of URLs. Maximum "
                f"{max_urls} URLs allowed."
            ),
            "items": {"type": "integer"},
            "maxItems": max_urls,
        }
    if Permission.REFLECT in allowed:
        properties["questionsToAnswer"] = _string_array(
            "Required when action='reflect'. Reflection and planning, generate a list "
            "of most important questions to fill the knowledge gaps to "
            f"<og-question> {current_question} </og-question>.",
            max_reflect,
        )
    if Permission.ANSWER in allowed:
        properties["answer"] = {
            "type": "string",
            "description": (
                "Required when action='answer'. Use all your knowledge you have "
                "collected, cover multiple aspects if needed. Must be definitive, "
                "no ambiguity, no uncertainty, no disclaimers."
            ),
        }
        properties["references"] = {
            "type": "array",
            "description": "Required when action='answer'. Must be an array of references that support the answer.",
            "items": {
                "type": "object",
                "properties": {
                    "exactQuote": {
                        "type": "string",
                        "description": "Exact relevant quote from the document.",
                    },
                    "url": {
                        "type": "string",
                        "description": "Source URL of the document.",
                    },
                    "dateTime": {
                        "type": "string",
                        "description": "Use original message's <answer-datetime> if available.",
                    },
                },
                "required": ["exactQuote", "url"],
            },
        }
    if Permission.CODING in allowed:
        properties["codingIssue"] = {
            "type": "string",
            "description": (
                "Required when action='coding'. Describe what issue to solve with "
                "coding, format like a github issue ticket. Specify the input value "
                "when it is short."
            ),
        }
    return {
        "type": "object",
        "properties": properties,
        "required": ["action", "think"],
    }


def distill_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a JSON schema with every human-readable description removed."""
    clone = copy.deepcopy(schema)

    def strip(node: Any) -> None:
        if isinstance(node, dict):
            if isinstance(node.get("description"), str):
                node.pop("description")
            for value in node.values():
                strip(value)
        elif isinstance(node, list):
            for item in node:
                strip(item)

    strip(clone)
    return clone


def parse_step_action(obj: Any, allowed: Permission = Permission.ALL) -> BaseModel:
    if not isinstance(obj, dict):
        raise SchemaConformanceError(f"Expected a JSON object, got {type(obj).__name__}.")
    action = obj.get("action")
    if isinstance(action, str):
        action = action.strip().lower()
    if action not in ACTION_PERMISSIONS:
        raise SchemaConformanceError(f"Unknown action: {action!r}")
    if ACTION_PERMISSIONS[action] not in allowed:
        raise SchemaConformanceError(f"Action not allowed in this step: {action}")
    payload = dict(obj)
    payload["action"] = action
    # Some models nest the payload under the action name.
    if isinstance(payload.get(action), dict):
        for key, value in payload.pop(action).items():
            payload.setdefault(key, value)
    if payload.get("think") is None:
        payload["think"] = ""
    try:
        return STEP_ACTION_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise SchemaConformanceError(str(exc)) from exc

