import json

from deepsea.config import DEFAULT_AGENT_CONFIG, get_model_settings, load_agent_config, load_prompt


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_MODEL", raising=False)

    config = load_agent_config(tmp_path / "missing.json")

    assert config["max_queries_per_step"] == DEFAULT_AGENT_CONFIG["max_queries_per_step"]
    assert config["models"]["default"]["model"] == "gpt-4.1"


def test_recognised_keys_are_validated_and_clamped(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_MODEL", raising=False)
    path = tmp_path / "agent_config.json"
    path.write_text(
        json.dumps(
            {
                "step_sleep": -3,
                "search_provider": "bing",
                "max_urls_per_step": 0,
                "max_queries_per_step": "seven",
                "regular_budget_ratio": 5,
                "dedup_similarity": 0.1,
                "context_dir": "  ",
                "models": {"agent": {"model": "gpt-x", "temperature": 9}, "coder": "bad"},
            }
        ),
        encoding="utf-8",
    )

    config = load_agent_config(path)

    assert config["step_sleep"] == 0.0
    assert config["search_provider"] == "openai"
    assert config["max_urls_per_step"] == 1
    assert config["max_queries_per_step"] == 5
    assert config["regular_budget_ratio"] == 0.99
    assert config["dedup_similarity"] == 0.3
    assert config["context_dir"] == ""
    assert get_model_settings(config, "agent") == {"model": "gpt-x", "temperature": 2.0, "max_tokens": 8000}
    assert get_model_settings(config, "coder")["model"] == "gpt-4.1"


def test_invalid_json_falls_back(tmp_path):
    path = tmp_path / "agent_config.json"
    path.write_text("{not json", encoding="utf-8")

    assert load_agent_config(path)["search_url_limit"] == 200


def test_env_model_overrides_default(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_MODEL", "gpt-env")

    config = load_agent_config(tmp_path / "missing.json")

    assert get_model_settings(config, "evaluator")["model"] == "gpt-env"
    assert get_model_settings(config, "fallback")["model"] == "gpt-4.1-mini"


def test_prompts_are_packaged():
    assert "research" in load_prompt("agent.system.txt").lower()
