"""Configuration loading utilities for the MyAi server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable MYAI_CONFIG
3. Fallback to "config/default.yaml"
4. Built-in defaults when no file exists

It also supports overrides from environment variables with prefix
``MYAI__`` (e.g., MYAI__SESSION__MAX_MESSAGES=120).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from vault.errors import ConfigError

from .governor import SessionPolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = "MYAI__"

DEFAULTS: Dict[str, Any] = {
    "store": {"data_dir": "data", "max_bytes": None},
    "session": {"max_messages": 100, "warning_ratio": 0.8},
    "llm": {
        "base_url": None,
        "api_key": None,
        "model": "llama-3.1-405b-instruct",
        "timeout": 20.0,
        "max_tokens": 500,
        "temperature": 0.7,
    },
    "backup": {"passphrase": None, "kdf_iterations": 390000},
    "server": {"cors_origins": ["*"]},
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix MYAI__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., MYAI__LLM__API_KEY -> cfg["llm"]["api_key"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML configuration merged over the built-in defaults.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``MYAI_CONFIG`` is consulted. As a last resort
        ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get("MYAI_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(loaded, dict):
        raise ConfigError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, loaded))


def session_policy(cfg: Dict[str, Any]) -> SessionPolicy:
    """Validated thresholds from the ``session`` section."""
    sess = cfg.get("session", {})
    try:
        max_messages = int(sess.get("max_messages", 100))
        ratio = float(sess.get("warning_ratio", 0.8))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid session config: {e}") from e
    if max_messages < 1:
        raise ConfigError("session.max_messages must be >= 1")
    if not 0.0 < ratio <= 1.0:
        raise ConfigError("session.warning_ratio must be in (0, 1]")
    return SessionPolicy(max_messages=max_messages, warning_ratio=ratio)
