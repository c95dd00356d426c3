"""Configuration loading for the Jarvis receiver.

Defaults are overlaid by an optional JSON file and then by environment
variables, so deployments can stay env-only while local setups keep a
config/config.json around.
"""

import copy
import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
CONFIG_FILE = BASE_DIR / "config" / "config.json"

DEFAULTS = {
    "server": {
        "host": "0.0.0.0",
        "port": 3000,
    },
    "database": {
        "path": str(BASE_DIR / "data" / "jarvis.db"),
        "store_health_url": "",
    },
    "buffer": {
        "analysis_interval": 30,
        "silence_threshold": 120,
        "min_words_after_silence": 5,
        "merge_window": 2.0,
        "cleanup_interval": 300,
        "session_ttl": 3600,
        "store_retention": 86400,
    },
    "assistant": {
        "ollama_base_url": "",
        "ollama_model": "gpt-oss:20b",
        "ollama_api_key": "ollama",
        "omi_chat_endpoint": "",
        "omi_api_key": "",
        "openrouter_api_key": "",
        "openrouter_model": "openai/gpt-4o-mini",
        "openrouter_referer": "https://jarvis-app.ondigitalocean.app",
        "openrouter_title": "JARVIS Assistant",
        "tool_calling_enabled": False,
        "reply_fallback": "Acknowledged.",
        "history_window": 10,
    },
    "omi": {
        "api_base_url": "https://api.omi.me",
    },
    "security": {
        "encryption_key": "",
        "encryption_key_prev": "",
        "webhook_secret": "",
        "csrf_token_ttl": 900,
        "max_failed_attempts": 3,
        "lockout_duration": 1800,
    },
    "environment": "development",
}

# env var -> (section, key, type)
ENV_OVERRIDES = {
    "PORT": ("server", "port", int),
    "JARVIS_DB_PATH": ("database", "path", str),
    "JARVIS_STORE_HEALTH_URL": ("database", "store_health_url", str),
    "OLLAMA_BASE_URL": ("assistant", "ollama_base_url", str),
    "OLLAMA_MODEL": ("assistant", "ollama_model", str),
    "OLLAMA_API_KEY": ("assistant", "ollama_api_key", str),
    "OMI_CHAT_ENDPOINT": ("assistant", "omi_chat_endpoint", str),
    "OMI_API_KEY": ("assistant", "omi_api_key", str),
    "OPENROUTER_API_KEY": ("assistant", "openrouter_api_key", str),
    "OPENROUTER_REFERER": ("assistant", "openrouter_referer", str),
    "OPENROUTER_TITLE": ("assistant", "openrouter_title", str),
    "TOOL_CALLING_ENABLED": ("assistant", "tool_calling_enabled", bool),
    "OMI_API_BASE_URL": ("omi", "api_base_url", str),
    "ENCRYPTION_KEY": ("security", "encryption_key", str),
    "ENCRYPTION_KEY_PREV": ("security", "encryption_key_prev", str),
    "JARVIS_WEBHOOK_SECRET": ("security", "webhook_secret", str),
}


def _coerce(value: str, kind):
    if kind is bool:
        return value.strip().lower() in ("1", "true", "yes", "on")
    return kind(value)


def _merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: str | None = None, env: dict | None = None) -> dict:
    """Build the effective configuration.

    Args:
        path: Optional JSON file. Falls back to $JARVIS_CONFIG, then config/config.json.
        env: Environment mapping, defaults to os.environ.

    Returns:
        Nested config dict.
    """
    env = os.environ if env is None else env
    cfg = copy.deepcopy(DEFAULTS)

    config_path = Path(path or env.get("JARVIS_CONFIG") or CONFIG_FILE)
    if config_path.exists():
        try:
            with open(config_path) as f:
                _merge(cfg, json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read config file {config_path}: {e}")

    for var, (section, key, kind) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            cfg[section][key] = _coerce(raw, kind)
        except ValueError:
            logger.warning(f"Ignoring invalid value for {var}: {raw!r}")

    if env.get("NODE_ENV") or env.get("JARVIS_ENV"):
        cfg["environment"] = env.get("JARVIS_ENV") or env.get("NODE_ENV")
    return cfg


def save_config(cfg: dict, path: str | None = None):
    config_path = Path(path or CONFIG_FILE)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        json.dump(cfg, f, indent=2)


def config_warnings(cfg: dict) -> list[str]:
    """Return human-readable warnings about risky or missing settings."""
    warnings = []
    sec = cfg["security"]
    asst = cfg["assistant"]
    production = cfg.get("environment") == "production"

    if not sec["encryption_key"]:
        warnings.append("CRITICAL: ENCRYPTION_KEY not set - stored OMI keys cannot be decrypted after restart")
    elif production and len(sec["encryption_key"]) < 32:
        warnings.append("CRITICAL: production requires a strong ENCRYPTION_KEY (32+ characters)")

    if not (asst["openrouter_api_key"] or asst["ollama_base_url"] or asst["omi_chat_endpoint"]):
        warnings.append("WARNING: no chat model configured - assistant replies use the canned fallback")

    if not sec["webhook_secret"]:
        warnings.append("WARNING: JARVIS_WEBHOOK_SECRET not set - /webhook accepts unauthenticated requests")
    return warnings
