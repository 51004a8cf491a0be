from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


RunStatus = Literal["queued", "running", "completed", "failed", "aborted"]


class DeepseaArguments(BaseModel):
    question: str = Field(min_length=1)
    max_returned_urls: int = Field(default=10, ge=1)
    no_direct_answer: bool = False
    boost_hostnames: List[str] = Field(default_factory=list)
    bad_hostnames: List[str] = Field(default_factory=list)
    only_hostnames: List[str] = Field(default_factory=list)


class CallToolRequest(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolSpec(BaseModel):
    name: str
    description: str
    streaming: bool = False
    input_schema: Dict[str, Any] = Field(default_factory=dict)


class ListToolsResponse(BaseModel):
    tools: List[ToolSpec]


class HealthResponse(BaseModel):
    type: Literal["health"] = "health"
    status: str = "ok"
    timestamp: datetime


class RunState(BaseModel):
    run_id: str
    status: RunStatus
    created_at: datetime
    updated_at: datetime
    question: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    thinking: List[str] = Field(default_factory=list)
    answer: Optional[str] = None
    visited_urls: List[str] = Field(default_factory=list)
    read_urls: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    token_usage: Optional[Dict[str, Any]] = None
