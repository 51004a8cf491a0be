from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

Listener = Callable[[str, Dict[str, Any]], None]

THINK_MESSAGES: Dict[str, str] = {
    "eval_first": "But wait, let me evaluate the answer first.",
    "search_for": "Let me search for {keywords} to gather more information.",
    "read_for": "Let me read {urls} to gather more information.",
    "hostnames_no_results": "Can't find any results from {hostnames}.",
    "beast_mode": "I've run out of research budget, let me give the best answer I can.",
}


class ActionTracker:
    """Append-only log of executed steps plus the agent's running "think" text."""

    def __init__(self) -> None:
        self.steps: List[Dict[str, Any]] = []
        self.think = ""
        self.last_action: Dict[str, Any] = {}
        self._listeners: List[Listener] = []

    def on(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def off(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def track_action(
        self,
        total_step: int,
        step: Dict[str, Any],
        gaps: List[str],
    ) -> None:
        entry = {
            "total_step": total_step,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "step": dict(step),
            "gaps": list(gaps),
        }
        self.steps.append(entry)
        self.last_action = entry
        self._notify("action", entry)

    def track_think(self, key: str, params: Optional[Dict[str, Any]] = None) -> None:
        template = THINK_MESSAGES.get(key, key)
        try:
            self.think = template.format(**(params or {}))
        except (KeyError, IndexError):
            self.think = template
        self._notify("think", {"think": self.think, "key": key})

    def _notify(self, kind: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, payload)
            except Exception as exc:
                # Listeners are observers only.
                print(f"[tracker] listener failed: {exc}")
