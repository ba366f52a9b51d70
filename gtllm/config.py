"""
Config loader for gtllm.
Reads config.yaml once and deep-merges it over the built-in defaults.
All other modules import from here.

String values may reference environment variables as ${ENV_VAR}; a .env file
in the working directory is loaded first.
"""

from __future__ import annotations

import copy
import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

from gtllm.paths import config_path

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULTS: dict = {
    "gateway": {
        "base_url": "https://openrouter.ai/api/v1",
        "referer": "https://github.com/gtllm/gtllm",
        "title": "gtllm",
        "connect_timeout": 30,
        "idle_timeout": 60,
        "max_retries": 2,
        "backoff_base": 1.5,
        "backoff_max": 10.0,
    },
    "engine": {
        "throttle_ms": 50,
        "checkpoint_phases": True,
    },
    "collaborative": {
        "consensus_strategy": "synthesizer",
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
}

_config: dict | None = None


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        return os.environ.get(match.group(1), "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file. A missing file yields the defaults."""
    global _config
    if _config is not None and path is None:
        return _config

    cfg_path = path or config_path()
    raw: dict = {}
    if cfg_path.exists():
        with open(cfg_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config root must be a mapping: {cfg_path}")
        logger.debug("Loaded config from %s", cfg_path)

    _config = _deep_merge(DEFAULTS, _walk_and_resolve(raw))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (next get_config() reloads)."""
    global _config
    _config = None
