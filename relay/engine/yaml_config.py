"""YAML configuration loader.

Two optional files are read: the user-level ``~/.relay/config.yaml``
and the project-level ``<project>/.relay/config.yaml``. The project
file is deep-merged over the user file, and the merged result is
applied on top of ``EngineConfig.from_env()``.

Example YAML:
    provider:
      model: gpt-4.1
      base_url: https://api.openai.com/v1
      api_key_env: OPENAI_API_KEY
      repair_model: gpt-4.1-mini

    loop:
      max_iterations: 90

    tools:
      max_output_tokens: 8000
      truncation_policy: replace     # replace | truncate | raise
      bash_timeout: 120
      allowed_dirs: ["${HOME}/scratch"]

    dynamic_tools:
      enabled: true
      max_tools: 50
      describe_timeout: 10
      execute_timeout: 30

    pricing:
      input_per_mtok: 2.0
      output_per_mtok: 8.0
      cached_input_per_mtok: 0.5
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

# (section, key) -> (EngineConfig attribute, converter)
_FIELD_MAP: dict[tuple[str, str], tuple[str, Any]] = {
    ("provider", "model"): ("model", str),
    ("provider", "base_url"): ("base_url", str),
    ("provider", "api_key_env"): ("api_key_env", str),
    ("provider", "repair_model"): ("repair_model", str),
    ("provider", "request_timeout"): ("request_timeout_seconds", float),
    ("loop", "max_iterations"): ("max_iterations", int),
    ("tools", "max_output_tokens"): ("max_tool_output_tokens", int),
    ("tools", "truncation_policy"): ("truncation_policy", str),
    ("tools", "token_encoding"): ("token_encoding", str),
    ("tools", "bash_timeout"): ("bash_timeout_seconds", float),
    ("tools", "allowed_dirs"): ("allowed_dirs", list),
    ("tools", "auto_accept_all"): ("auto_accept_all", bool),
    ("dynamic_tools", "enabled"): ("dynamic_tools_enabled", bool),
    ("dynamic_tools", "max_tools"): ("max_dynamic_tools", int),
    ("dynamic_tools", "describe_timeout"): ("dynamic_describe_timeout_seconds", float),
    ("dynamic_tools", "execute_timeout"): ("dynamic_execute_timeout_seconds", float),
    ("dynamic_tools", "max_output_bytes"): ("dynamic_max_output_bytes", int),
    ("dynamic_tools", "user_dir"): ("user_tools_dir", Path),
    ("pricing", "input_per_mtok"): ("input_price_per_mtok", float),
    ("pricing", "output_per_mtok"): ("output_price_per_mtok", float),
    ("pricing", "cached_input_per_mtok"): ("cached_input_price_per_mtok", float),
    ("logging", "level"): ("log_level", str),
}


def user_config_path() -> Path:
    """Return the user-level config path (~/.relay/config.yaml)."""
    return Path.home() / ".relay" / "config.yaml"


def project_config_path(project_dir: str | Path) -> Path:
    return Path(project_dir) / ".relay" / "config.yaml"


def _expand_env(value: Any) -> Any:
    """Expand ``${VAR}`` references in every string of a parsed document."""
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    return value


def deep_merge(base: dict, override: dict) -> dict:
    """Return ``base`` with ``override`` merged in; nested dicts merge key-wise."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml_file(path: Path, label: str) -> dict:
    """Load one YAML file, returning {} when it is missing or unreadable."""
    if not path.is_file():
        logger.debug("_load_yaml_file: %s not found at %s", label, path)
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.warning("_load_yaml_file: YAML parse error in %s (%s): %s", label, path, exc)
        return {}
    except OSError as exc:
        logger.warning("_load_yaml_file: cannot read %s (%s): %s", label, path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("_load_yaml_file: %s (%s) is not a mapping, ignoring", label, path)
        return {}
    logger.info(
        "_load_yaml_file: loaded %s from %s (sections: %s)",
        label, path, ", ".join(sorted(data)) or "empty",
    )
    return _expand_env(data)


def _convert(converter: Any, value: Any) -> Any:
    if converter is bool:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if converter is list:
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]
    if converter is Path:
        return Path(str(value)).expanduser()
    return converter(value)


def apply_yaml(config: EngineConfig, raw: dict) -> EngineConfig:
    """Apply a parsed YAML document to ``config`` in place and return it."""
    for section, body in raw.items():
        if not isinstance(body, dict):
            logger.warning("apply_yaml: section %r is not a mapping, ignoring", section)
            continue
        for key, value in body.items():
            target = _FIELD_MAP.get((section, key))
            if target is None:
                logger.warning("apply_yaml: unknown config key %s.%s", section, key)
                continue
            attr, converter = target
            if value is None:
                continue
            try:
                setattr(config, attr, _convert(converter, value))
            except (TypeError, ValueError) as exc:
                logger.warning(
                    "apply_yaml: bad value for %s.%s (%r): %s",
                    section, key, value, exc,
                )
    return config


def load_config(project_dir: str | Path | None = None) -> EngineConfig:
    """Build the effective EngineConfig for a project.

    Precedence (lowest to highest): defaults, RELAY_* env vars,
    ``~/.relay/config.yaml``, ``<project>/.relay/config.yaml``.
    """
    config = EngineConfig.from_env()
    raw = _load_yaml_file(user_config_path(), "user config")
    if project_dir is not None:
        project_raw = _load_yaml_file(
            project_config_path(project_dir), "project config"
        )
        raw = deep_merge(raw, project_raw)
    return apply_yaml(config, raw)
