import json
from typing import Any, Dict


def format_sse(record: Dict[str, Any]) -> str:
    payload = json.dumps(record, ensure_ascii=False)
    return f"data: {payload}\n\n"
