from dataclasses import dataclass, field
from enum import Flag
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class Permission(Flag):
    NONE = 0
    SEARCH = 1
    VISIT = 2
    ANSWER = 4
    REFLECT = 8
    CODING = 16
    ALL = 31


ACTION_PERMISSIONS: Dict[str, Permission] = {
    "search": Permission.SEARCH,
    "visit": Permission.VISIT,
    "answer": Permission.ANSWER,
    "reflect": Permission.REFLECT,
    "coding": Permission.CODING,
}


def permission_names(allowed: Permission) -> List[str]:
    return [name for name, flag in ACTION_PERMISSIONS.items() if flag in allowed]


class _Action(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    think: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Reference(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    exact_quote: str = Field(default="", alias="exactQuote")
    url: str = ""
    title: str = ""
    date_time: str = Field(default="", alias="dateTime")


class SearchAction(_Action):
    action: Literal["search"] = "search"
    search_requests: List[str] = Field(alias="searchRequests", min_length=1)


class VisitAction(_Action):
    action: Literal["visit"] = "visit"
    url_targets: List[Union[int, str]] = Field(alias="URLTargets", min_length=1)

    @field_validator("url_targets", mode="before")
    @classmethod
    def _numeric_targets(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [int(v.strip()) if isinstance(v, str) and v.strip().isdigit() else v for v in value]
        return value


class ReflectAction(_Action):
    action: Literal["reflect"] = "reflect"
    questions_to_answer: List[str] = Field(alias="questionsToAnswer", min_length=1)


class AnswerAction(_Action):
    action: Literal["answer"] = "answer"
    answer: str
    references: List[Reference] = Field(default_factory=list)
    is_final: bool = Field(default=False, alias="isFinal")
    md_answer: str = Field(default="", alias="mdAnswer")


class CodingAction(_Action):
    action: Literal["coding"] = "coding"
    coding_issue: str = Field(alias="codingIssue", min_length=1)


StepAction = Annotated[
    Union[SearchAction, VisitAction, ReflectAction, AnswerAction, CodingAction],
    Field(discriminator="action"),
]

STEP_ACTION_ADAPTER: TypeAdapter = TypeAdapter(StepAction)


class EvaluationResponse(BaseModel):
    passed: bool = Field(default=True, alias="pass")
    think: str = ""
    type: Optional[str] = None
    improvement_plan: str = ""

    model_config = ConfigDict(populate_by_name=True)


@dataclass
class EvaluationMetric:
    type: str
    num_evals_required: int


@dataclass
class KnowledgeItem:
    question: str
    answer: str
    type: str = "qa"  # side-info | qa | url | coding
    references: List[Any] = field(default_factory=list)
    updated: str = ""
    source_code: str = ""

    def to_dict(self) -> Dict[str, Any]:
        refs = [r.model_dump(by_alias=True) if isinstance(r, BaseModel) else r for r in self.references]
        out: Dict[str, Any] = {
            "question": self.question,
            "answer": self.answer,
            "type": self.type,
        }
        if refs:
            out["references"] = refs
        if self.updated:
            out["updated"] = self.updated
        if self.source_code:
            out["sourceCode"] = self.source_code
        return out


@dataclass
class SearchSnippet:
    url: str
    title: str = ""
    description: str = ""
    weight: float = 1.0
    date: str = ""


@dataclass
class BoostedSearchSnippet(SearchSnippet):
    score: float = 0.0
    merged: str = ""
    freq_boost: float = 0.0
    hostname_boost: float = 0.0
    path_boost: float = 0.0
    relevance_boost: float = 0.0


@dataclass
class SERPQuery:
    q: str
    tbs: str = ""
    location: str = ""
