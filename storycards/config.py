"""Engine configuration (LLM provider, token budget, script settings).

Stored as config.json in the data directory. Missing keys fall back to
_CONFIG_DEFAULTS; provider API keys and the KoboldCpp URL fall back to
environment variables so secrets can live in .env instead of on disk.
"""

import copy
import json
import os
from pathlib import Path
from typing import Any

_CONFIG_DEFAULTS: dict[str, Any] = {
    "llm_provider": "openai",
    "providers": {
        "openai":     {"model": "", "base_url": "", "api_key": ""},
        "claude":     {"model": "", "base_url": "", "api_key": ""},
        "gemini":     {"model": "", "base_url": "", "api_key": ""},
        "openrouter": {"model": "", "base_url": "", "api_key": ""},
        "koboldcpp":  {"model": "", "base_url": "", "api_key": ""},
        "echo":       {"model": "", "base_url": "", "api_key": ""},
    },
    "token_budget": 4000,
    "scripts": {},
}

# provider → (api key env var, model env var, base url env var)
_PROVIDER_ENV: dict[str, tuple[str, str, str]] = {
    "openai":     ("OPENAI_API_KEY", "OPENAI_MODEL", ""),
    "claude":     ("ANTHROPIC_API_KEY", "CLAUDE_MODEL", ""),
    "gemini":     ("GOOGLE_API_KEY", "GEMINI_MODEL", ""),
    "openrouter": ("OPENROUTER_API_KEY", "OPENROUTER_MODEL", ""),
    "koboldcpp":  ("", "", "KOBOLDCPP_URL"),
}


def data_dir() -> Path:
    return Path(os.getenv("DATA_DIR", "data"))


def _config_path(base: Path) -> Path:
    return Path(base) / "config.json"


def get_config(base: Path) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config = copy.deepcopy(_CONFIG_DEFAULTS)
    config["llm_provider"] = os.getenv("LLM_PROVIDER", config["llm_provider"])
    path = _config_path(base)
    if path.is_file():
        _merge(config, json.loads(path.read_text()))
    return config


def update_config(base: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into config and persist. Returns full config."""
    config = get_config(base)
    _merge(config, fields)
    path = _config_path(base)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2))
    return config


def _merge(config: dict[str, Any], fields: dict[str, Any]) -> None:
    if "llm_provider" in fields:
        config["llm_provider"] = fields["llm_provider"]
    if "token_budget" in fields:
        config["token_budget"] = int(fields["token_budget"])
    if "providers" in fields:
        for name, vals in fields["providers"].items():
            if isinstance(vals, dict):
                config["providers"].setdefault(name, {}).update(vals)
    if "scripts" in fields:
        for name, vals in fields["scripts"].items():
            if isinstance(vals, dict):
                config["scripts"].setdefault(name, {}).update(vals)


def provider_settings(config: dict[str, Any], name: str | None = None) -> dict[str, Any]:
    """Settings for one provider, with environment fallbacks filled in."""
    name = name or config["llm_provider"]
    settings = dict(config["providers"].get(name, {}))
    key_var, model_var, url_var = _PROVIDER_ENV.get(name, ("", "", ""))
    if key_var and not settings.get("api_key"):
        settings["api_key"] = os.getenv(key_var, "")
    if model_var and not settings.get("model"):
        settings["model"] = os.getenv(model_var, "")
    if url_var and not settings.get("base_url"):
        settings["base_url"] = os.getenv(url_var, "")
    return settings


def public_config(config: dict[str, Any]) -> dict[str, Any]:
    """Config safe to display: API keys replaced by has_api_key flags."""
    shown = copy.deepcopy(config)
    for name, vals in shown["providers"].items():
        vals["has_api_key"] = bool(provider_settings(config, name).get("api_key"))
        vals.pop("api_key", None)
    return shown
