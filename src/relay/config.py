"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from relay.actions.parser import DEFAULT_RESULT_CHAR_LIMIT
from relay.agent.models import MAX_STEPS
from relay.dispatch.audit import DEFAULT_AUDIT_CAPACITY
from relay.dispatch.dispatcher import DEFAULT_QUERY_TIMEOUT, MAX_ACTION_TIMEOUT
from relay.llm.client import DEFAULT_OLLAMA_HOST, DEFAULT_OLLAMA_MODEL, DEFAULT_OPENAI_URL
from relay.shell import DEFAULT_OUTPUT_CAP_BYTES
from relay.skills.registry import Platform

Provider = Literal["openai", "ollama"]
_PROVIDERS: set[str] = {"openai", "ollama"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables and config files."""

    provider: Provider
    api_key: str | None
    model: str
    api_url: str
    reasoning_effort: str | None
    ollama_host: str
    ollama_model: str
    backend_timeout: float
    platform: Platform
    max_steps: int
    query_timeout: float
    action_timeout: float
    output_cap_bytes: int
    result_char_limit: int
    audit_capacity: int
    log_dir: str
    log_level: str
    show_audit: bool
    working_directory: str | None

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        openai_from_file = file_config.get("openai")
        openai_config = openai_from_file if isinstance(openai_from_file, dict) else {}
        ollama_from_file = file_config.get("ollama")
        ollama_config = ollama_from_file if isinstance(ollama_from_file, dict) else {}

        return cls(
            provider=_resolve_provider(
                os.getenv("RELAY_PROVIDER") or _to_optional_string(file_config.get("provider"))
            ),
            api_key=(
                os.getenv("RELAY_OPENAI_API_KEY")
                or os.getenv("RELAY_API_KEY")
                or _to_optional_string(openai_config.get("api_key"))
                or _to_optional_string(file_config.get("api_key"))
            ),
            model=(
                os.getenv("RELAY_MODEL")
                or _to_optional_string(openai_config.get("model"))
                or _to_optional_string(file_config.get("model"))
                or "gpt-4.1-mini"
            ),
            api_url=(
                os.getenv("RELAY_API_URL")
                or _to_optional_string(openai_config.get("api_url"))
                or DEFAULT_OPENAI_URL
            ),
            reasoning_effort=(
                os.getenv("RELAY_REASONING_EFFORT")
                or _to_optional_string(openai_config.get("reasoning_effort"))
            ),
            ollama_host=(
                os.getenv("RELAY_OLLAMA_HOST")
                or _to_optional_string(ollama_config.get("host"))
                or _to_optional_string(file_config.get("ollama_host"))
                or DEFAULT_OLLAMA_HOST
            ),
            ollama_model=(
                os.getenv("RELAY_OLLAMA_MODEL")
                or _to_optional_string(ollama_config.get("model"))
                or _to_optional_string(file_config.get("ollama_model"))
                or DEFAULT_OLLAMA_MODEL
            ),
            backend_timeout=_to_positive_float(
                os.getenv("RELAY_BACKEND_TIMEOUT") or file_config.get("backend_timeout"),
                default=60.0,
            ),
            platform=_resolve_platform(
                os.getenv("RELAY_PLATFORM") or _to_optional_string(file_config.get("platform"))
            ),
            max_steps=min(
                _to_positive_int(
                    os.getenv("RELAY_MAX_STEPS") or file_config.get("max_steps"),
                    default=MAX_STEPS,
                ),
                MAX_STEPS,
            ),
            query_timeout=_to_positive_float(
                os.getenv("RELAY_QUERY_TIMEOUT") or file_config.get("query_timeout"),
                default=DEFAULT_QUERY_TIMEOUT,
            ),
            action_timeout=min(
                _to_positive_float(
                    os.getenv("RELAY_ACTION_TIMEOUT") or file_config.get("action_timeout"),
                    default=MAX_ACTION_TIMEOUT,
                ),
                MAX_ACTION_TIMEOUT,
            ),
            output_cap_bytes=_to_positive_int(
                os.getenv("RELAY_OUTPUT_CAP_BYTES") or file_config.get("output_cap_bytes"),
                default=DEFAULT_OUTPUT_CAP_BYTES,
            ),
            result_char_limit=_to_positive_int(
                os.getenv("RELAY_RESULT_CHAR_LIMIT") or file_config.get("result_char_limit"),
                default=DEFAULT_RESULT_CHAR_LIMIT,
            ),
            audit_capacity=_to_positive_int(
                os.getenv("RELAY_AUDIT_CAPACITY") or file_config.get("audit_capacity"),
                default=DEFAULT_AUDIT_CAPACITY,
            ),
            log_dir=(
                os.getenv("RELAY_LOG_DIR")
                or _to_optional_string(file_config.get("log_dir"))
                or "logs"
            ),
            log_level=_resolve_log_level(
                os.getenv("RELAY_LOG_LEVEL") or _to_optional_string(file_config.get("log_level"))
            ),
            show_audit=_to_bool(
                os.getenv("RELAY_SHOW_AUDIT"),
                default=bool(file_config.get("show_audit", False)),
            ),
            working_directory=(
                os.getenv("RELAY_CWD")
                or _to_optional_string(file_config.get("working_directory"))
                or _to_optional_string(file_config.get("cwd"))
            ),
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("RELAY_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("relay.config.json")
    local_override = _load_file_config("relay.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _resolve_provider(value: str | None) -> Provider:
    normalized = (value or "openai").strip().lower()
    if normalized in _PROVIDERS:
        return normalized  # type: ignore[return-value]
    return "openai"


def _resolve_platform(value: str | None) -> Platform:
    if value is None:
        return Platform.current()
    try:
        return Platform.parse(value)
    except ValueError:
        return Platform.current()


def _resolve_log_level(value: str | None) -> str:
    normalized = (value or "INFO").strip().upper()
    return normalized if normalized in _LOG_LEVELS else "INFO"


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _to_positive_float(value: object, *, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default
