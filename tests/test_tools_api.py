import json
from types import SimpleNamespace

from fastapi.testclient import TestClient

from app import main
from deepsea.usage import TokenTracker


client = TestClient(main.app)


def _records(body: str):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


class FakeAgent:
    instances = []

    def __init__(self, event_callback=None, run_id="", should_abort=None, fail=False):
        self.event_callback = event_callback
        self.run_id = run_id
        self.fail = fail
        self.kwargs = {}
        FakeAgent.instances.append(self)

    async def run(self, question, **kwargs):
        self.kwargs = dict(kwargs, question=question)
        self.event_callback({"event_type": "think", "payload": {"text": "Let me search for it."}})
        self.event_callback({"event_type": "step_started", "payload": {"step": 1}})
        self.event_callback({"event_type": "url_visit", "payload": {"url": "https://example.com/a"}})
        if self.fail:
            raise RuntimeError("provider exploded")
        return SimpleNamespace(
            result=SimpleNamespace(answer="Paris", md_answer="Paris [^1]\n\n[^1]: [a](https://example.com/a)"),
            visited_urls=["https://example.com/a", "https://example.com/b"],
            read_urls=["https://example.com/a"],
            context=SimpleNamespace(token_tracker=TokenTracker()),
        )


def test_health_endpoint_and_tool():
    assert client.get("/health").json()["status"] == "ok"

    rsp = client.post("/api/tools/call", json={"name": "health"})

    assert rsp.status_code == 200
    assert rsp.json()["type"] == "health"
    assert rsp.json()["status"] == "ok"


def test_list_tools_catalog():
    rsp = client.get("/api/tools")

    tools = {t["name"]: t for t in rsp.json()["tools"]}
    assert set(tools) == {"health", "deepsea"}
    assert tools["deepsea"]["streaming"] is True
    assert "question" in tools["deepsea"]["input_schema"]["properties"]


def test_deepsea_tool_streams_records_until_complete_response(monkeypatch):
    FakeAgent.instances = []
    monkeypatch.setattr(main.run_manager, "agent_factory", lambda **kw: FakeAgent(**kw))

    rsp = client.post(
        "/api/tools/call",
        json={"name": "deepsea", "arguments": {"question": "capital of France?", "bad_hostnames": ["spam.com"]}},
    )

    assert rsp.status_code == 200
    assert rsp.headers["content-type"].startswith("text/event-stream")
    records = _records(rsp.text)
    assert [r["type"] for r in records] == ["thinking", "url_visit", "answer", "complete_response"]
    final = records[-1]
    assert final["thinking"] == "Let me search for it."
    assert final["answer"].startswith("Paris")
    assert final["visited_urls"] == ["https://example.com/a", "https://example.com/b"]
    assert final["read_urls"] == ["https://example.com/a"]

    agent = FakeAgent.instances[0]
    assert agent.kwargs["question"] == "capital of France?"
    assert agent.kwargs["num_returned_urls"] == 10
    assert agent.kwargs["bad_hostnames"] == ["spam.com"]

    snapshot = client.get(f"/api/runs/{agent.run_id}").json()
    assert snapshot["status"] == "completed"
    assert snapshot["thinking"] == ["Let me search for it."]


def test_deepsea_failure_streams_error_record(monkeypatch):
    monkeypatch.setattr(main.run_manager, "agent_factory", lambda **kw: FakeAgent(fail=True, **kw))

    rsp = client.post("/api/tools/call", json={"name": "deepsea", "arguments": {"question": "q"}})

    records = _records(rsp.text)
    assert records[-1] == {"type": "error", "error": "provider exploded"}
    run_id = rsp.headers["x-run-id"]
    assert client.get(f"/api/runs/{run_id}").json()["status"] == "failed"


def test_deepsea_requires_question():
    rsp = client.post("/api/tools/call", json={"name": "deepsea", "arguments": {"max_returned_urls": 3}})

    assert rsp.status_code == 422


def test_unknown_tool_and_run_are_404():
    assert client.post("/api/tools/call", json={"name": "nope"}).status_code == 404
    assert client.get("/api/runs/missing").status_code == 404
    assert client.post("/api/runs/missing/abort").status_code == 404
