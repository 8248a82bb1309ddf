"""Configuration loading and validation.

Configuration is YAML. `load_config` reads either an explicit file or the
bundled ``defaults.yml``; `validate_config` fills in missing sections and
values and rejects values the application cannot use.
"""

from __future__ import annotations

import logging
import os
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

CONFIG_ENV_VAR = "MATHQUIZ_CONFIG"
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _load_yaml(text: str, origin: str) -> dict[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {origin}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {origin} must be a mapping.")
    return data


def load_config(path: str | Path | None = None) -> dict[str, Any]:
    """Load configuration from YAML or package defaults.

    Args:
        path: Optional path to a YAML config. When None, ``MATHQUIZ_CONFIG`` is
            consulted and then the bundled defaults are used.

    Returns:
        The raw configuration dictionary (not yet validated).
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or None
    if path is None:
        text = resources.files("mathquiz").joinpath("defaults.yml").read_text(encoding="utf-8")
        return _load_yaml(text, "defaults.yml")
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}") from None
    return _load_yaml(text, str(config_path))


def validate_config(cfg: dict[str, Any]) -> dict[str, Any]:
    """Apply defaults and validate configuration values.

    Args:
        cfg: The raw configuration dictionary.

    Returns:
        The validated and merged configuration dictionary.
    """
    for section in ("storage", "quiz", "logging"):
        cfg.setdefault(section, {})
        if not isinstance(cfg[section], dict):
            raise ConfigError(f"Config section '{section}' must be a mapping.")

    storage = cfg["storage"]
    quiz = cfg["quiz"]
    log_cfg = cfg["logging"]

    storage.setdefault("db_path", ".mathquiz/progress.db")
    storage.setdefault("offline_queue_path", ".mathquiz/offline_queue.jsonl")

    quiz.setdefault("questions_per_session", 5)
    quiz.setdefault("unlock_threshold", 3)
    quiz.setdefault("feedback", True)

    log_cfg.setdefault("level", "WARNING")

    for key in ("db_path", "offline_queue_path"):
        value = storage[key]
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"storage.{key} must be a non-empty string.")

    size = quiz["questions_per_session"]
    if isinstance(size, bool) or not isinstance(size, int) or size < 1:
        raise ConfigError("quiz.questions_per_session must be a positive integer.")

    threshold = quiz["unlock_threshold"]
    if isinstance(threshold, bool) or not isinstance(threshold, int) or not 1 <= threshold <= size:
        raise ConfigError(f"quiz.unlock_threshold must be an integer in 1..{size}.")

    if not isinstance(quiz["feedback"], bool):
        raise ConfigError("quiz.feedback must be true or false.")

    level = str(log_cfg["level"]).upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of {sorted(LOG_LEVELS)}.")
    log_cfg["level"] = level

    return cfg


def configure_logging(cfg: dict[str, Any]) -> None:
    """Install the root log handler at the configured level."""
    logging.basicConfig(
        level=getattr(logging, cfg["logging"]["level"]),
        format="%(levelname)s: %(name)s: %(message)s",
    )
