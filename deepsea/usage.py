from datetime import datetime, timezone
from typing import Any, Dict, List


class TokenTracker:
    """
    Running token counter with a budget ceiling.

    Every model call is recorded as an event so usage can be broken down by
    stage (model role) and by model. The agent loop only reads
    ``total_tokens`` against ``budget``.
    """

    def __init__(self, budget: int = 1_000_000, enabled: bool = True) -> None:
        self.budget = max(0, int(budget))
        self.enabled = enabled
        self.events: List[Dict[str, Any]] = []
        self._total_tokens = 0

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    def budget_fraction(self) -> float:
        if self.budget <= 0:
            return 1.0
        return self._total_tokens / float(self.budget)

    def record(
        self,
        stage: str,
        provider: str,
        model: str,
        usage: Any,
        attempt: int = 1,
        metadata: Dict[str, Any] | None = None,
    ) -> int:
        input_tokens, output_tokens, total_tokens, usage_missing = self._extract_usage(
            usage
        )
        self._total_tokens += total_tokens
        if not self.enabled:
            return total_tokens
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "stage": stage,
            "provider": provider,
            "model": model,
            "attempt": attempt,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": total_tokens,
            "metadata": dict(metadata or {}),
        }
        if usage_missing:
            event["metadata"]["usage_missing"] = True
        self.events.append(event)
        return total_tokens

    def track_usage(self, stage: str, usage: Any) -> int:
        return self.record(stage=stage, provider="local", model="", usage=usage)

    def _extract_usage(self, usage: Any) -> tuple[int, int, int, bool]:
        return extract_usage(usage)

    def to_dict(self) -> Dict[str, Any]:
        by_stage: Dict[str, Dict[str, int]] = {}
        by_model: Dict[str, Dict[str, int]] = {}
        totals = {
            "input_tokens": 0,
            "output_tokens": 0,
            "total_tokens": 0,
            "calls": len(self.events),
        }
        for e in self.events:
            for bucket, key in ((by_stage, e["stage"]), (by_model, e["model"])):
                if key not in bucket:
                    bucket[key] = {
                        "input_tokens": 0,
                        "output_tokens": 0,
                        "total_tokens": 0,
                        "calls": 0,
                    }
                bucket[key]["input_tokens"] += e["input_tokens"]
                bucket[key]["output_tokens"] += e["output_tokens"]
                bucket[key]["total_tokens"] += e["total_tokens"]
                bucket[key]["calls"] += 1
            totals["input_tokens"] += e["input_tokens"]
            totals["output_tokens"] += e["output_tokens"]
            totals["total_tokens"] += e["total_tokens"]

        return {
            "enabled": self.enabled,
            "budget": self.budget,
            "used": self._total_tokens,
            "events": self.events,
            "by_stage": by_stage,
            "by_model": by_model,
            "total": totals,
        }

    def print_summary(self) -> None:
        usage = self.to_dict()
        total = usage["total"]
        print("[usage] token breakdown")
        print(
            "[usage] total "
            f"in={total['input_tokens']} "
            f"out={total['output_tokens']} "
            f"all={self._total_tokens} "
            f"budget={self.budget} "
            f"calls={total['calls']}"
        )
        top = sorted(
            [(stage, stats["total_tokens"]) for stage, stats in usage["by_stage"].items()],
            key=lambda x: x[1],
            reverse=True,
        )[:6]
        for stage, tok in top:
            print(f"[usage] stage={stage} tokens={tok}")


def extract_usage(usage: Any) -> tuple[int, int, int, bool]:
    if usage is None:
        return 0, 0, 0, True

    def pick_int(obj: Any, keys: List[str]) -> int:
        for key in keys:
            val = None
            if isinstance(obj, dict):
                val = obj.get(key)
            else:
                val = getattr(obj, key, None)
            if isinstance(val, int):
                return val
        return 0

    input_tokens = pick_int(usage, ["prompt_tokens", "input_tokens"])
    output_tokens = pick_int(usage, ["completion_tokens", "output_tokens"])
    total_tokens = pick_int(usage, ["total_tokens"])
    if total_tokens == 0:
        total_tokens = input_tokens + output_tokens
    return input_tokens, output_tokens, total_tokens, False


def usage_dict(usage: Any) -> Dict[str, int]:
    input_tokens, output_tokens, total_tokens, _ = extract_usage(usage)
    return {
        "prompt_tokens": input_tokens,
        "completion_tokens": output_tokens,
        "total_tokens": total_tokens,
    }
