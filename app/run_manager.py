import asyncio
import threading
import uuid
from datetime import datetime, timezone
from queue import Queue
from typing import Any, Callable, Dict, List, Optional

from app.models import DeepseaArguments, RunState
from deepsea.agent import DeepSearchAgent, ResearchAbortedError

AgentFactory = Callable[..., Any]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _default_agent_factory(**kwargs: Any) -> DeepSearchAgent:
    return DeepSearchAgent(verbose=True, **kwargs)


class RunManager:
    """
    Runs research sessions on worker threads and fans their progress out to
    subscriber queues as stream records. A ``None`` record closes a stream.
    """

    _MAX_THINKING_PER_RUN = 500

    def __init__(self, agent_factory: AgentFactory | None = None) -> None:
        self._runs: Dict[str, RunState] = {}
        self._subscribers: Dict[str, List[Queue]] = {}
        self._cancel_flags: Dict[str, bool] = {}
        self._lock = threading.Lock()
        self.agent_factory = agent_factory or _default_agent_factory

    def create_run(self, args: DeepseaArguments, subscriber: Queue | None = None) -> str:
        run_id = str(uuid.uuid4())
        now = _now()
        state = RunState(
            run_id=run_id,
            status="queued",
            created_at=now,
            updated_at=now,
            question=args.question,
            arguments=args.model_dump(),
        )
        with self._lock:
            self._runs[run_id] = state
            self._subscribers[run_id] = [subscriber] if subscriber is not None else []
            self._cancel_flags[run_id] = False

        t = threading.Thread(
            target=self._execute_run,
            args=(run_id, args),
            daemon=True,
        )
        t.start()
        return run_id

    def get_snapshot(self, run_id: str) -> Optional[RunState]:
        with self._lock:
            state = self._runs.get(run_id)
            return state.model_copy(deep=True) if state else None

    def unsubscribe(self, run_id: str, queue: Queue) -> None:
        with self._lock:
            subs = self._subscribers.get(run_id, [])
            if queue in subs:
                subs.remove(queue)

    def abort_run(self, run_id: str) -> Optional[str]:
        with self._lock:
            state = self._runs.get(run_id)
            if not state:
                return None
            if state.status in ("queued", "running"):
                self._cancel_flags[run_id] = True
                return "abort_requested"
            return state.status

    def _publish(self, run_id: str, record: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(run_id, []))
        for q in subscribers:
            q.put(record)

    def _project_event(self, run_id: str, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update the run snapshot from an agent event; returns the stream record, if any."""
        event_type = str(event.get("event_type", ""))
        payload = event.get("payload", {}) if isinstance(event.get("payload"), dict) else {}
        record: Optional[Dict[str, Any]] = None
        if event_type == "think":
            text = str(payload.get("text", "")).strip()
            if text:
                record = {"type": "thinking", "content": text}
        elif event_type == "action":
            action = payload.get("action", {}) if isinstance(payload.get("action"), dict) else {}
            text = str(action.get("think", "")).strip()
            if text:
                record = {"type": "thinking", "content": text}
        elif event_type == "url_visit":
            url = str(payload.get("url", "")).strip()
            if url:
                record = {"type": "url_visit", "url": url}
        if record is None:
            return None

        with self._lock:
            state = self._runs.get(run_id)
            if state:
                state.updated_at = _now()
                if record["type"] == "thinking":
                    state.thinking.append(record["content"])
                    if len(state.thinking) > self._MAX_THINKING_PER_RUN:
                        del state.thinking[: -self._MAX_THINKING_PER_RUN]
        return record

    def _execute_run(self, run_id: str, args: DeepseaArguments) -> None:
        def callback(event: Dict[str, Any]) -> None:
            record = self._project_event(run_id, event)
            if record is not None:
                self._publish(run_id, record)

        def should_abort() -> bool:
            with self._lock:
                return bool(self._cancel_flags.get(run_id, False))

        with self._lock:
            self._runs[run_id].status = "running"
            self._runs[run_id].updated_at = _now()

        agent = self.agent_factory(
            event_callback=callback,
            run_id=run_id,
            should_abort=should_abort,
        )
        try:
            result = asyncio.run(
                agent.run(
                    question=args.question,
                    num_returned_urls=args.max_returned_urls,
                    no_direct_answer=args.no_direct_answer,
                    boost_hostnames=args.boost_hostnames,
                    bad_hostnames=args.bad_hostnames,
                    only_hostnames=args.only_hostnames,
                )
            )
        except Exception as exc:
            aborted = isinstance(exc, ResearchAbortedError)
            print(f"[state] run {run_id} {'aborted' if aborted else 'failed'}: {exc}")
            with self._lock:
                state = self._runs[run_id]
                state.status = "aborted" if aborted else "failed"
                state.error = str(exc)
                state.updated_at = _now()
            self._publish(run_id, {"type": "error", "error": str(exc)})
            self._publish(run_id, None)
            return

        answer = result.result.md_answer or result.result.answer
        with self._lock:
            state = self._runs[run_id]
            state.status = "completed"
            state.answer = answer
            state.visited_urls = list(result.visited_urls)
            state.read_urls = list(result.read_urls)
            state.token_usage = result.context.token_tracker.to_dict()
            state.updated_at = _now()
            thinking = list(state.thinking)
        self._publish(run_id, {"type": "answer", "content": answer})
        self._publish(
            run_id,
            {
                "type": "complete_response",
                "thinking": "\n".join(thinking),
                "answer": answer,
                "visited_urls": list(result.visited_urls),
                "read_urls": list(result.read_urls),
            },
        )
        self._publish(run_id, None)
