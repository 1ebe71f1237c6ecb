import copy
import json
import os
from typing import Any, Dict, Optional

from .logger import logger

"""
Configuration loader for smsledger.

Behavior:
- Looks for config path in env var `SMSLEDGER_CONFIG`.
- Falls back to `smsledger/config.json` next to the package.
- Then `smsledger/config.json.example`, then the built-in defaults.
- Every loaded file is validated against `json_schema/config.schema.json`
  and deep-merged over DEFAULT_CONFIG, so partial files are fine.
"""

DEFAULT_CONFIG: Dict[str, Any] = {
    "provider": "gemini",
    "embedding_provider": "gemini",
    "providers": {
        "gemini": {
            "model": "gemini-2.0-flash",
            "embedding_model": "gemini-embedding-001",
            "timeout": 30,
        },
        "openai": {
            "model": "gpt-4o-mini",
            "embedding_model": "text-embedding-3-small",
            "timeout": 30,
        },
        "ollama": {
            "base_url": "http://localhost:11434",
            "model": "llama3",
            "embedding_model": "nomic-embed-text",
            "timeout": 60,
        },
    },
    "thresholds": {
        "non_payment": 0.97,
        "auto_apply": 0.95,
        "confirm": 0.92,
        "llm_trigger": 0.80,
        "grouping": 0.95,
        "small_group_merge": 0.70,
        "remote_default": 0.94,
    },
    "regex": {
        "min_amount": 100,
        "group_min_ratio": 0.8,
        "repair_rounds": 1,
        "max_samples": 3,
        "min_samples_for_synthesis": 3,
    },
    "rate_limit": {
        "max_retries": 3,
        "base_delay": 2.0,
        "requests_per_minute": 0,
        "embedding_chunk_size": 100,
        "embedding_concurrency": 10,
        "llm_batch_size": 20,
        "llm_concurrency": 5,
        "batch_max_retries": 2,
        "batch_retry_base_delay": 1.0,
    },
    "cooldown": {"failure_threshold": 2, "window_seconds": 1800},
    "pattern_store": {"path": None, "stale_days": 30},
    "remote_rules": {"url": None, "ttl_seconds": 600, "failure_ttl_seconds": 60, "timeout": 10},
    "clustering": {"small_group_max": 5, "yield_every": 50},
    "user_exclude_keywords": [],
    "templates_dir": None,
    "log_level": "INFO",
}

_config_cache: Dict[str, Any] = {}
_schema_cache: Dict[str, Any] = {}


def _default_config_path() -> str:
    base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    return os.path.join(base_dir, "config.json")


def _schema_path() -> str:
    return os.path.join(
        os.path.dirname(__file__), "..", "json_schema", "config.schema.json"
    )


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of `base` with `override` merged in (dicts recursively)."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from JSON with sensible fallbacks.

    Returns the merged configuration dictionary. Invalid files are logged and
    skipped; if nothing usable is found the defaults are returned.
    """
    global _config_cache
    if _config_cache and path is None:
        return _config_cache

    env_path = os.environ.get("SMSLEDGER_CONFIG")
    candidates = []
    if path:
        candidates.append(path)
    if env_path:
        candidates.append(env_path)
    candidates.append(_default_config_path())
    candidates.append(
        os.path.join(os.path.dirname(__file__), "..", "config.json.example")
    )

    for p in candidates:
        try:
            p_abs = os.path.abspath(p)
            if not os.path.exists(p_abs):
                continue
            with open(p_abs, "r", encoding="utf-8") as f:
                cfg = json.load(f)
            validate_config(cfg)
            _config_cache = deep_merge(DEFAULT_CONFIG, cfg)
            logger.info(f"Configuration loaded from {p_abs}")
            return _config_cache
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in config file {p}: {e}")
            continue
        except Exception as e:
            logger.warning(f"Failed to load config {p}: {e}")
            continue

    logger.warning(
        "No config found; using defaults. Create 'smsledger/config.json' or set SMSLEDGER_CONFIG to customize."
    )
    _config_cache = copy.deepcopy(DEFAULT_CONFIG)
    return _config_cache


def _load_schema() -> Dict[str, Any]:
    if not _schema_cache:
        with open(_schema_path(), "r", encoding="utf-8") as f:
            _schema_cache.update(json.load(f))
    return _schema_cache


def validate_config(cfg: Dict[str, Any]) -> None:
    """Validate configuration using the bundled JSON Schema.

    Raises jsonschema.ValidationError on invalid configs.
    """
    from jsonschema import validate

    if not isinstance(cfg, dict):
        raise ValueError("Configuration must be a JSON object/dict")

    try:
        schema = _load_schema()
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not load config schema for validation: {e}")
        if "provider" in cfg and not isinstance(cfg["provider"], str):
            raise ValueError("Configuration key 'provider' must be a string")
        return

    validate(instance=cfg, schema=schema)


def get_section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return a config section merged over its defaults."""
    return deep_merge(DEFAULT_CONFIG.get(name, {}), cfg.get(name) or {})


def reset_config_cache() -> None:
    """Drop the cached configuration (mainly for testing)."""
    _config_cache.clear()


if __name__ == "__main__":
    print(json.dumps(load_config(), indent=2, ensure_ascii=False))
