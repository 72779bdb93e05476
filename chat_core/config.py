from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path

from .types import SamplingOptions

DEFAULT_PROVIDER = "github"
DEFAULT_BASE_URL = "https://models.github.ai/inference"
DEFAULT_MODEL_NAME = "openai/gpt-4o"
DEFAULT_REASONING_MODEL_NAME = "openai/o1-preview"
DEFAULT_API_KEY_ENV = "GITHUB_TOKEN"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


@dataclass(frozen=True)
class AppConfig:
    provider: str = DEFAULT_PROVIDER
    model_name: str = DEFAULT_MODEL_NAME
    base_url: str = DEFAULT_BASE_URL
    api_key_env: str | None = DEFAULT_API_KEY_ENV
    api_key: str | None = None
    timeout_seconds: int = 60
    tool_timeout_seconds: float = 30.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stream: bool = False
    max_tool_rounds: int = 8
    reasoning_model_name: str = DEFAULT_REASONING_MODEL_NAME
    log_dir: str = "./logs"

    @property
    def sampling(self) -> SamplingOptions:
        return SamplingOptions(temperature=self.temperature, top_p=self.top_p, max_tokens=self.max_tokens)


_ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _is_env_var_name(value: str) -> bool:
    return bool(_ENV_NAME_PATTERN.match(value))


def _to_float_in_range(value: object, *, low: float, high: float, low_inclusive: bool = True) -> float | None:
    if value is None:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if parsed > high or parsed < low or (parsed == low and not low_inclusive):
        return None
    return parsed


def _to_positive_int(value: object, default: int | None) -> int | None:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _to_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def _to_text(value: object, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def default_config() -> AppConfig:
    return AppConfig()


def load_config(path: str) -> AppConfig:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")

    api_key_raw = raw.get("api_key")
    api_key = str(api_key_raw).strip() if api_key_raw is not None else None
    if api_key == "":
        api_key = None

    api_key_env_raw = raw.get("api_key_env")
    api_key_env: str | None = None
    if api_key_env_raw is not None:
        candidate = str(api_key_env_raw).strip()
        if candidate:
            if _is_env_var_name(candidate):
                api_key_env = candidate
            elif api_key is None:
                # Backward compatibility: if api_key_env contains a literal key, treat it as api_key.
                api_key = candidate

    if api_key_env is None:
        api_key_env = DEFAULT_API_KEY_ENV

    tool_timeout_raw = raw.get("tool_timeout_seconds", 30)
    try:
        tool_timeout_seconds = float(tool_timeout_raw)
    except (TypeError, ValueError):
        tool_timeout_seconds = 30.0
    if tool_timeout_seconds <= 0:
        tool_timeout_seconds = 30.0

    return AppConfig(
        provider=_to_text(raw.get("provider"), DEFAULT_PROVIDER),
        model_name=_to_text(raw.get("model_name"), DEFAULT_MODEL_NAME),
        base_url=_to_text(raw.get("base_url"), DEFAULT_BASE_URL),
        api_key_env=api_key_env,
        api_key=api_key,
        timeout_seconds=_to_positive_int(raw.get("timeout_seconds"), 60) or 60,
        tool_timeout_seconds=tool_timeout_seconds,
        system_prompt=_to_text(raw.get("system_prompt"), DEFAULT_SYSTEM_PROMPT),
        temperature=_to_float_in_range(raw.get("temperature"), low=0.0, high=2.0),
        top_p=_to_float_in_range(raw.get("top_p"), low=0.0, high=1.0, low_inclusive=False),
        max_tokens=_to_positive_int(raw.get("max_tokens"), None),
        stream=_to_bool(raw.get("stream"), False),
        max_tool_rounds=_to_positive_int(raw.get("max_tool_rounds"), 8) or 8,
        reasoning_model_name=_to_text(raw.get("reasoning_model_name"), DEFAULT_REASONING_MODEL_NAME),
        log_dir=_to_text(raw.get("log_dir"), "./logs"),
    )
