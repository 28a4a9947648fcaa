import json

import pytest

from storycards.config import get_config, provider_settings, public_config, update_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("LLM_PROVIDER", "OPENAI_API_KEY", "OPENAI_MODEL", "ANTHROPIC_API_KEY",
                "GOOGLE_API_KEY", "OPENROUTER_API_KEY", "CLAUDE_MODEL", "GEMINI_MODEL",
                "OPENROUTER_MODEL", "KOBOLDCPP_URL", "DATA_DIR"):
        monkeypatch.delenv(var, raising=False)


def test_defaults_when_no_file(tmp_path):
    config = get_config(tmp_path)
    assert config["llm_provider"] == "openai"
    assert config["token_budget"] == 4000
    assert config["scripts"] == {}
    assert not (tmp_path / "config.json").exists()


def test_env_selects_provider(tmp_path, monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "koboldcpp")
    assert get_config(tmp_path)["llm_provider"] == "koboldcpp"


def test_stored_value_beats_env(tmp_path, monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "koboldcpp")
    update_config(tmp_path, {"llm_provider": "claude"})
    assert get_config(tmp_path)["llm_provider"] == "claude"


def test_update_merges_partially(tmp_path):
    update_config(tmp_path, {"providers": {"openai": {"model": "gpt-4o"}}})
    config = update_config(tmp_path, {"providers": {"openai": {"api_key": "sk-1"}}, "token_budget": "3000"})
    assert config["providers"]["openai"] == {"model": "gpt-4o", "base_url": "", "api_key": "sk-1"}
    assert config["providers"]["claude"]["model"] == ""
    assert config["token_budget"] == 3000
    stored = json.loads((tmp_path / "config.json").read_text())
    assert stored["providers"]["openai"]["model"] == "gpt-4o"


def test_script_settings_merge_per_script(tmp_path):
    update_config(tmp_path, {"scripts": {"auto-cards": {"enabled": False}}})
    config = update_config(tmp_path, {"scripts": {"auto-cards": {"order": 50}, "story-memory": {"order": 5}}})
    assert config["scripts"] == {
        "auto-cards": {"enabled": False, "order": 50},
        "story-memory": {"order": 5},
    }


def test_provider_settings_env_fallback(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("KOBOLDCPP_URL", "http://gpu-box:5001")
    config = get_config(tmp_path)
    assert provider_settings(config)["api_key"] == "sk-env"
    assert provider_settings(config, "koboldcpp")["base_url"] == "http://gpu-box:5001"


def test_stored_key_beats_env(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    config = update_config(tmp_path, {"providers": {"openai": {"api_key": "sk-file"}}})
    assert provider_settings(config, "openai")["api_key"] == "sk-file"


def test_public_config_hides_keys(tmp_path, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "ak-env")
    config = update_config(tmp_path, {"providers": {"openai": {"api_key": "sk-file"}}})
    shown = public_config(config)
    assert "api_key" not in shown["providers"]["openai"]
    assert shown["providers"]["openai"]["has_api_key"] is True
    assert shown["providers"]["claude"]["has_api_key"] is True
    assert shown["providers"]["gemini"]["has_api_key"] is False
    assert config["providers"]["openai"]["api_key"] == "sk-file"
