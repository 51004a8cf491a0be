from queue import Empty, Queue
from typing import Iterator

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from app.models import (
    CallToolRequest,
    DeepseaArguments,
    HealthResponse,
    ListToolsResponse,
    RunState,
    ToolSpec,
)
from app.run_manager import RunManager, _now
from app.sse import format_sse


run_manager = RunManager()

app = FastAPI(title="Deepsea Tools")

TOOLS = [
    ToolSpec(
        name="health",
        description="Report whether the research service is up.",
        input_schema={"type": "object", "properties": {}},
    ),
    ToolSpec(
        name="deepsea",
        description=(
            "Research a question on the web: search, read pages, reason and answer "
            "with references. Streams thinking, visited URLs and the final answer."
        ),
        streaming=True,
        input_schema=DeepseaArguments.model_json_schema(),
    ),
]


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(timestamp=_now())


@app.get("/api/tools", response_model=ListToolsResponse)
def list_tools() -> ListToolsResponse:
    return ListToolsResponse(tools=TOOLS)


def _record_stream(run_id: str, q: Queue) -> Iterator[str]:
    try:
        while True:
            try:
                record = q.get(timeout=15)
            except Empty:
                yield ": keep-alive\n\n"
                continue
            if record is None:
                return
            yield format_sse(record)
    finally:
        run_manager.unsubscribe(run_id, q)


@app.post("/api/tools/call")
def call_tool(req: CallToolRequest):
    if req.name == "health":
        return HealthResponse(timestamp=_now())
    if req.name != "deepsea":
        raise HTTPException(status_code=404, detail=f"Unknown tool: {req.name}")
    try:
        args = DeepseaArguments.model_validate(req.arguments)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc

    q: Queue = Queue()
    run_id = run_manager.create_run(args, subscriber=q)
    return StreamingResponse(
        _record_stream(run_id, q),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Run-Id": run_id},
    )


@app.get("/api/runs/{run_id}", response_model=RunState)
def get_run(run_id: str) -> RunState:
    state = run_manager.get_snapshot(run_id)
    if not state:
        raise HTTPException(status_code=404, detail="Run not found")
    return state


@app.post("/api/runs/{run_id}/abort")
def abort_run(run_id: str) -> dict:
    status = run_manager.abort_run(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return {"run_id": run_id, "status": status}


def serve() -> None:
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000)
