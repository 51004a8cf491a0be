import json
import os
from pathlib import Path
from typing import Any, Dict

PACKAGE_DIR = Path(__file__).resolve().parent
PROMPTS_DIR = PACKAGE_DIR / "templates"
CONFIG_PATH = Path(os.getenv("DEEPSEA_CONFIG_FILE", "agent_config.json"))

DEFAULT_MODEL = "gpt-4.1"

DEFAULT_MODEL_SETTINGS: Dict[str, Dict[str, Any]] = {
    "default": {"model": DEFAULT_MODEL, "temperature": 0.0, "max_tokens": 8000},
    "agent": {"temperature": 0.7},
    "agentBeastMode": {"temperature": 0.7},
    "fallback": {"model": "gpt-4.1-mini", "temperature": 0.0, "max_tokens": 8000},
    "evaluator": {},
    "errorAnalyzer": {},
    "queryRewriter": {"temperature": 0.1},
    "coder": {"temperature": 0.7},
    "searchGrounding": {},
}

DEFAULT_AGENT_CONFIG: Dict[str, Any] = {
    "step_sleep": 1.0,
    "search_provider": "openai",
    "max_queries_per_step": 5,
    "max_urls_per_step": 4,
    "max_reflect_per_step": 2,
    "max_urls_in_prompt": 20,
    "search_url_limit": 200,
    "urls_per_hostname": 2,
    "regular_budget_ratio": 0.85,
    "num_returned_urls": 100,
    "max_returned_urls": 300,
    "dedup_similarity": 0.6,
    "hostname_boost": 0.5,
    "max_content_chars": 12000,
    "context_dir": "runs/context",
    "models": DEFAULT_MODEL_SETTINGS,
}

_POSITIVE_INT_KEYS = (
    "max_queries_per_step",
    "max_urls_per_step",
    "max_reflect_per_step",
    "max_urls_in_prompt",
    "search_url_limit",
    "num_returned_urls",
    "max_returned_urls",
    "max_content_chars",
)


def load_prompt(filename: str) -> str:
    path = PROMPTS_DIR / filename
    if not path.exists():
        raise FileNotFoundError(f"Missing prompt file: {path}")
    return path.read_text(encoding="utf-8").strip()


def _merge_models(raw: Any) -> Dict[str, Dict[str, Any]]:
    models = {role: dict(settings) for role, settings in DEFAULT_MODEL_SETTINGS.items()}
    env_model = os.getenv("OPENAI_MODEL", "").strip()
    if env_model:
        models["default"]["model"] = env_model
    if not isinstance(raw, dict):
        return models
    for role, settings in raw.items():
        if not isinstance(settings, dict):
            continue
        target = models.setdefault(str(role), {})
        if isinstance(settings.get("model"), str) and settings["model"].strip():
            target["model"] = settings["model"].strip()
        if isinstance(settings.get("temperature"), (int, float)):
            target["temperature"] = min(2.0, max(0.0, float(settings["temperature"])))
        if isinstance(settings.get("max_tokens"), int) and settings["max_tokens"] > 0:
            target["max_tokens"] = int(settings["max_tokens"])
    return models


def load_agent_config(path: Path | None = None) -> Dict[str, Any]:
    config = dict(DEFAULT_AGENT_CONFIG)
    config["models"] = _merge_models(None)
    path = path or CONFIG_PATH
    if not path.exists():
        return config
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return config
    if not isinstance(raw, dict):
        return config

    if isinstance(raw.get("step_sleep"), (int, float)):
        config["step_sleep"] = max(0.0, float(raw["step_sleep"]))
    if raw.get("search_provider") in {"openai", "brave"}:
        config["search_provider"] = raw["search_provider"]
    for key in _POSITIVE_INT_KEYS:
        if isinstance(raw.get(key), int) and not isinstance(raw.get(key), bool):
            config[key] = max(1, int(raw[key]))
    if isinstance(raw.get("urls_per_hostname"), int):
        config["urls_per_hostname"] = max(0, int(raw["urls_per_hostname"]))
    if isinstance(raw.get("regular_budget_ratio"), (int, float)):
        v = float(raw["regular_budget_ratio"])
        config["regular_budget_ratio"] = min(0.99, max(0.1, v))
    if isinstance(raw.get("dedup_similarity"), (int, float)):
        v = float(raw["dedup_similarity"])
        config["dedup_similarity"] = min(0.99, max(0.3, v))
    if isinstance(raw.get("hostname_boost"), (int, float)):
        config["hostname_boost"] = max(0.0, float(raw["hostname_boost"]))
    if isinstance(raw.get("context_dir"), str):
        config["context_dir"] = raw["context_dir"].strip()
    config["models"] = _merge_models(raw.get("models"))
    return config


def get_model_settings(config: Dict[str, Any], role: str) -> Dict[str, Any]:
    """
    Resolve model, temperature and max_tokens for a model role.
    Role-specific values override the "default" entry.
    """
    models = config.get("models") or DEFAULT_MODEL_SETTINGS
    default = dict(DEFAULT_MODEL_SETTINGS["default"])
    default.update(models.get("default", {}))
    overrides = models.get(role, {})
    return {
        "model": str(overrides.get("model", default["model"])),
        "temperature": float(overrides.get("temperature", default["temperature"])),
        "max_tokens": int(overrides.get("max_tokens", default["max_tokens"])),
    }
