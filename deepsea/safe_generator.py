import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import json_repair

from deepsea.config import load_agent_config
from deepsea.llm import LLM
from deepsea.schemas import SchemaConformanceError, distill_schema
from deepsea.usage import TokenTracker, usage_dict

ZERO_USAGE: Dict[str, int] = {
    "prompt_tokens": 0,
    "completion_tokens": 0,
    "total_tokens": 0,
}

FALLBACK_ANSWER = (
    "I was unable to produce a well-formed answer for this step. "
    "Please retry the question."
)
MAX_FALLBACK_INPUT_CHARS = 8000


class GenerationError(Exception):
    """A model call failed and could not be recovered."""

    def __init__(self, message: str, original_query: str = "") -> None:
        super().__init__(message)
        self.original_query = original_query


class GenerationConformanceError(GenerationError):
    """The model answered, but its text does not parse or validate."""

    def __init__(
        self,
        message: str,
        text: str = "",
        usage: Any = None,
        original_query: str = "",
    ) -> None:
        super().__init__(message, original_query=original_query)
        self.text = text
        self.usage = usage


@dataclass
class GenerationResult:
    object: Any
    usage: Dict[str, int] = field(default_factory=lambda: dict(ZERO_USAGE))
    stage: str = "primary"


@dataclass
class FailureContext:
    text: Optional[str]
    usage: Any
    original_query: str
    error: Exception


Validator = Callable[[Any], Any]
Strategy = Callable[[FailureContext], Optional[Dict[str, Any]]]


def _require_object(obj: Any) -> Any:
    if not isinstance(obj, dict):
        raise SchemaConformanceError(f"Expected a JSON object, got {type(obj).__name__}.")
    return obj


def strip_code_fences(text: str) -> str:
    cleaned = re.sub(r"```[a-zA-Z]*", "", text or "")
    return cleaned.strip()


def parse_strict(ctx: FailureContext) -> Optional[Dict[str, Any]]:
    if not ctx.text:
        return None
    try:
        data = json.loads(strip_code_fences(ctx.text))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def parse_lenient(ctx: FailureContext) -> Optional[Dict[str, Any]]:
    """Trailing commas, unquoted keys, single quotes, prose around the object."""
    if not ctx.text:
        return None
    cleaned = strip_code_fences(ctx.text)
    if "{" not in cleaned:
        return None
    try:
        data = json_repair.loads(cleaned)
    except Exception:
        return None
    if isinstance(data, list):
        data = next((d for d in data if isinstance(d, dict) and d), None)
    return data if isinstance(data, dict) and data else None


_ACTION_RE = re.compile(r"[\"']?action[\"']?\s*[:=]\s*[\"']?([a-zA-Z]+)")
_THINK_RE = re.compile(r"[\"']?think[\"']?\s*[:=]\s*[\"']?(.+?)(?:[\"']\s*[,}]|\n|$)")


def emergency_extract(ctx: FailureContext) -> Optional[Dict[str, Any]]:
    """
    Last local resort: pull ``action``/``think`` out with regexes and build a
    minimal object for that action with placeholder content.
    """
    text = ctx.text or ""
    query = ctx.original_query or ""
    if not text.strip():
        if not query:
            return None
        return {
            "action": "search",
            "think": "The previous response was empty, searching for the question directly.",
            "searchRequests": [query],
        }
    match = _ACTION_RE.search(text)
    if not match:
        return None
    action = match.group(1).lower()
    think_match = _THINK_RE.search(text)
    think = think_match.group(1).strip() if think_match else ""
    if action == "search" and query:
        return {"action": "search", "think": think, "searchRequests": [query]}
    if action == "answer":
        return {
            "action": "answer",
            "think": think,
            "answer": FALLBACK_ANSWER,
            "references": [],
        }
    if action == "reflect" and query:
        return {"action": "reflect", "think": think, "questionsToAnswer": [query]}
    if action == "visit":
        return {"action": "visit", "think": think, "URLTargets": [1]}
    if action == "coding" and query:
        return {"action": "coding", "think": think, "codingIssue": query}
    return None


RECOVERY_STRATEGIES: List[Strategy] = [parse_strict, parse_lenient, emergency_extract]


def fallback_input(text: str) -> str:
    """Failing text cut just before the last ``"url":`` field, capped in length."""
    end = text.rfind('"url":')
    if end == -1:
        end = len(text)
    return text[: min(end, MAX_FALLBACK_INPUT_CHARS)]


class ObjectGenerator:
    """
    Schema-guided generation that nearly always returns a usable object.

    Recovery order: the primary model call, then each entry of
    ``RECOVERY_STRATEGIES`` on the failing text, then a full retry while
    retries remain, then a cheaper model asked to re-extract the fields
    under the distilled schema (with the same strategies applied to its
    output). If all of that fails the primary error is raised.
    """

    def __init__(
        self,
        token_tracker: TokenTracker | None = None,
        config: Dict[str, Any] | None = None,
        llm_factory: Callable[[str], Any] | None = None,
        strategies: List[Strategy] | None = None,
    ) -> None:
        self.token_tracker = token_tracker
        self.config = config or load_agent_config()
        self.llm_factory = llm_factory or self._default_llm
        self.strategies = list(strategies or RECOVERY_STRATEGIES)
        self._llms: Dict[str, Any] = {}

    def _default_llm(self, role: str) -> LLM:
        return LLM(role, config=self.config, token_tracker=self.token_tracker)

    def _llm(self, role: str) -> Any:
        if role not in self._llms:
            self._llms[role] = self.llm_factory(role)
        return self._llms[role]

    async def generate(
        self,
        role: str,
        schema: Dict[str, Any],
        system: str | None,
        messages: List[Dict[str, str]],
        num_retries: int = 0,
        validator: Validator | None = None,
        original_query: str = "",
    ) -> GenerationResult:
        validate = validator or _require_object
        ctx, result = await self._attempt(
            self._llm(role), schema, system, messages, validate, original_query
        )
        if result is not None:
            return result
        recovered = self._recover(ctx, validate)
        if recovered is not None:
            return recovered

        if num_retries > 0:
            print(
                f"[generator] {role}: recovery failed, retrying "
                f"({num_retries - 1} retries left)"
            )
            return await self.generate(
                role,
                schema,
                system,
                messages,
                num_retries=num_retries - 1,
                validator=validate,
                original_query=original_query,
            )

        print(f"[generator] {role}: falling back to the distilled schema")
        failed_output = fallback_input(ctx.text or "")
        prompt = (
            "Following the given JSON schema, extract the field from below: \n\n "
            f"{failed_output}"
        )
        fb_ctx, fb_result = await self._attempt(
            self._llm("fallback"),
            distill_schema(schema),
            None,
            [{"role": "user", "content": prompt}],
            validate,
            original_query,
        )
        if fb_result is not None:
            fb_result.stage = "fallback"
            return fb_result
        recovered = self._recover(fb_ctx, validate)
        if recovered is not None:
            recovered.stage = f"fallback_{recovered.stage}"
            return recovered

        print(f"[generator] {role}: all recovery stages failed")
        raise self._primary_error(ctx, original_query)

    async def _attempt(
        self,
        llm: Any,
        schema: Dict[str, Any],
        system: str | None,
        messages: List[Dict[str, str]],
        validate: Validator,
        original_query: str,
    ) -> tuple[FailureContext, Optional[GenerationResult]]:
        try:
            completion = await llm.structured(schema, system, messages)
        except Exception as exc:
            print(f"[generator] {getattr(llm, 'role', 'llm')} call failed: {exc}")
            return FailureContext(None, None, original_query, exc), None
        try:
            obj = validate(json.loads(completion.text))
            return (
                FailureContext(completion.text, completion.usage, original_query, None),
                GenerationResult(obj, usage_dict(completion.usage), "primary"),
            )
        except (ValueError, SchemaConformanceError) as exc:
            error = GenerationConformanceError(
                str(exc),
                text=completion.text,
                usage=completion.usage,
                original_query=original_query,
            )
            return FailureContext(completion.text, completion.usage, original_query, error), None

    def _recover(self, ctx: FailureContext, validate: Validator) -> Optional[GenerationResult]:
        # Provider failures leave no text to recover from.
        if ctx.text is None:
            return None
        usage = usage_dict(ctx.usage)
        for strategy in self.strategies:
            candidate = strategy(ctx)
            if candidate is None:
                continue
            try:
                obj = validate(candidate)
            except (ValueError, SchemaConformanceError):
                continue
            return GenerationResult(obj, usage, strategy.__name__)
        return None

    def _primary_error(self, ctx: FailureContext, original_query: str) -> Exception:
        error = ctx.error
        if isinstance(error, GenerationError):
            error.original_query = original_query
            return error
        wrapped = GenerationError(str(error), original_query=original_query)
        wrapped.__cause__ = error
        return wrapped
