"""Engine configuration (arbiter connection, cadence, persistence policy).

Settings come from three layers, later ones winning:

    built-in defaults  →  {data_dir}/config.json  →  STORYLINE_* environment

`get_config` returns the merged dict; `update_config` merges a partial update
into the stored file. `EngineSettings` validates and clamps the values the
engine actually reads.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, field_validator

from storyline.llm import LLM, WIRE_FORMATS, EchoLLM, HttpLLM

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"

DEFAULT_INTERVAL_TURNS = 3
MIN_INTERVAL_TURNS = 1
MAX_INTERVAL_TURNS = 99
ARBITER_PROMPT_MAX_LENGTH = 1200
ARBITER_SNAPSHOT_LIMIT = 10
ARBITER_RESPONSE_LENGTH = 256

DEFAULT_ARBITER_PROMPT = """\
You are the Checkpoint Arbiter. Your job is to EVALUATE, not narrate.
You ONLY judge whether the current objective is clearly met or clearly failed based on the supplied context.
Do not continue the story, invent facts, or speculate beyond what is written.
When in doubt, assume the checkpoint has NOT advanced yet ("continue")."""

_CONFIG_DEFAULTS: dict[str, Any] = {
    "llm": {
        "provider_url": "",
        "api_key": "",
        "provider_format": "koboldcpp",
        "model": "",
        "timeout": 120.0,
    },
    "arbiter": {
        "interval_turns": DEFAULT_INTERVAL_TURNS,
        "prompt": DEFAULT_ARBITER_PROMPT,
        "snapshot_limit": ARBITER_SNAPSHOT_LIMIT,
        "response_length": ARBITER_RESPONSE_LENGTH,
        "reset_since_eval_on": "enqueue",
    },
    "session": {
        "require_group_chat": True,
        "history_limit": 50,
    },
}

_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "STORYLINE_LLM_URL": ("llm", "provider_url"),
    "STORYLINE_LLM_API_KEY": ("llm", "api_key"),
    "STORYLINE_LLM_FORMAT": ("llm", "provider_format"),
    "STORYLINE_LLM_MODEL": ("llm", "model"),
    "STORYLINE_INTERVAL_TURNS": ("arbiter", "interval_turns"),
}


def _config_path(data_dir: Path) -> Path:
    return data_dir / CONFIG_FILE


def _defaults() -> dict[str, Any]:
    return json.loads(json.dumps(_CONFIG_DEFAULTS))


def _merge_groups(config: dict[str, Any], fields: dict[str, Any]) -> None:
    for group, vals in fields.items():
        if group in config and isinstance(vals, dict):
            config[group].update(vals)


def _stored_config(data_dir: Path) -> dict[str, Any]:
    config = _defaults()
    path = _config_path(data_dir)
    if path.is_file():
        _merge_groups(config, json.loads(path.read_text()))
    return config


def get_config(data_dir: Path) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values and env overrides."""
    config = _stored_config(data_dir)
    for var, (group, key) in _ENV_OVERRIDES.items():
        value = os.getenv(var)
        if value:
            config[group][key] = value
    return config


def update_config(data_dir: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into the stored config and persist. Returns full config."""
    stored = _stored_config(data_dir)
    _merge_groups(stored, fields)
    data_dir.mkdir(parents=True, exist_ok=True)
    _config_path(data_dir).write_text(json.dumps(stored, indent=2))
    return get_config(data_dir)


# ---------------------------------------------------------------------------
# Validated engine settings
# ---------------------------------------------------------------------------

def normalize_prompt(value: Any) -> str:
    """Strip carriage returns and surrounding blanks; clamp to the max length."""
    if not isinstance(value, str):
        return DEFAULT_ARBITER_PROMPT
    text = value.replace("\r", "").strip()
    if not text:
        return DEFAULT_ARBITER_PROMPT
    return text[:ARBITER_PROMPT_MAX_LENGTH]


def sanitize_interval(value: Any) -> int:
    try:
        turns = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_INTERVAL_TURNS
    return max(MIN_INTERVAL_TURNS, min(MAX_INTERVAL_TURNS, turns))


class EngineSettings(BaseModel):
    interval_turns: int = DEFAULT_INTERVAL_TURNS
    arbiter_prompt: str = DEFAULT_ARBITER_PROMPT
    snapshot_limit: int = ARBITER_SNAPSHOT_LIMIT
    response_length: int = ARBITER_RESPONSE_LENGTH
    reset_since_eval_on: Literal["enqueue", "evaluated"] = "enqueue"
    require_group_chat: bool = True
    history_limit: int = 50

    @field_validator("interval_turns", mode="before")
    @classmethod
    def _interval(cls, value: Any) -> int:
        return sanitize_interval(value)

    @field_validator("arbiter_prompt", mode="before")
    @classmethod
    def _prompt(cls, value: Any) -> str:
        return normalize_prompt(value)

    @field_validator("snapshot_limit", "response_length", "history_limit")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        return max(0, value)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> EngineSettings:
        arbiter = config.get("arbiter", {})
        session = config.get("session", {})
        return cls(
            interval_turns=arbiter.get("interval_turns", DEFAULT_INTERVAL_TURNS),
            arbiter_prompt=arbiter.get("prompt", DEFAULT_ARBITER_PROMPT),
            snapshot_limit=arbiter.get("snapshot_limit", ARBITER_SNAPSHOT_LIMIT),
            response_length=arbiter.get("response_length", ARBITER_RESPONSE_LENGTH),
            reset_since_eval_on=arbiter.get("reset_since_eval_on", "enqueue"),
            require_group_chat=session.get("require_group_chat", True),
            history_limit=session.get("history_limit", 50),
        )


def llm_from_config(config: dict[str, Any]) -> LLM:
    """Build the arbiter's LLM. Without a provider URL sessions run on EchoLLM."""
    llm_cfg = config.get("llm", {})
    url = llm_cfg.get("provider_url", "")
    if not url:
        logger.warning("No arbiter LLM configured; evaluations will always continue")
        return EchoLLM()
    provider_format = llm_cfg.get("provider_format", "koboldcpp")
    if provider_format not in WIRE_FORMATS:
        logger.warning("Unknown LLM provider format %r; using koboldcpp", provider_format)
        provider_format = "koboldcpp"
    return HttpLLM(
        provider_url=url,
        api_key=llm_cfg.get("api_key", ""),
        provider_format=provider_format,
        model=llm_cfg.get("model", ""),
        response_length=int(config.get("arbiter", {}).get("response_length", ARBITER_RESPONSE_LENGTH)),
        timeout=float(llm_cfg.get("timeout", 120.0)),
    )
