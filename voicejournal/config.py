"""Configuration management: defaults, a persisted JSON file, then the environment."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from .models import Config

CONFIG_PATH = (Path.home() / ".voicejournal" / "config.json").expanduser()

# The provider API key is never written to disk.
_NOT_PERSISTED = frozenset({"openai_api_key"})


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or saved."""


def _split_origins(raw: str) -> list[str]:
    return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]


def _to_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


ENV_VARS: Dict[str, tuple[str, Callable[[str], Any]]] = {
    "PORT": ("port", int),
    "VOICEJOURNAL_HOST": ("host", str),
    "OPENAI_API_KEY": ("openai_api_key", str),
    "VOICEJOURNAL_PROVIDER_URL": ("provider_url", str),
    "VOICEJOURNAL_MODEL": ("model", str),
    "VOICEJOURNAL_LANGUAGE": ("language", str),
    "VOICEJOURNAL_PROVIDER_TIMEOUT": ("provider_timeout", float),
    "VOICEJOURNAL_ALLOWED_ORIGINS": ("allowed_origins", _split_origins),
    "VOICEJOURNAL_TRANSCRIPTIONS_DIR": ("transcriptions_dir", str),
    "VOICEJOURNAL_MAX_UPLOAD_BYTES": ("max_upload_bytes", int),
    "VOICEJOURNAL_SERVER_URL": ("server_url", str),
    "VOICEJOURNAL_VERIFY_SSL": ("verify_ssl", _to_bool),
}


def _load_file() -> Dict[str, Any]:
    if not CONFIG_PATH.exists():
        return {}
    try:
        payload = json.loads(CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse configuration file: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Configuration file must contain a JSON object")
    known = {f.name for f in fields(Config)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration key: {', '.join(unknown)}")
    return payload


def _environment_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for variable, (key, convert) in ENV_VARS.items():
        raw = environ.get(variable)
        if raw is None or raw == "":
            continue
        try:
            overrides[key] = convert(raw)
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {variable}: {raw!r}") from exc
    return overrides


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Return the active configuration.

    Values come from the dataclass defaults, then ``CONFIG_PATH``, then the
    process environment, each layer overriding the previous one.
    """

    payload = _load_file()
    payload.update(_environment_overrides(os.environ if environ is None else environ))
    return Config(**payload)


def save_config(config: Config) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    data = {
        k: v for k, v in asdict(config).items() if v is not None and k not in _NOT_PERSISTED
    }
    CONFIG_PATH.write_text(json.dumps(data, indent=2))


def update_config(**kwargs: Any) -> Config:
    """Persist the given keys to ``CONFIG_PATH`` without baking in environment values."""

    config = Config(**_load_file())
    for key, value in kwargs.items():
        if key in _NOT_PERSISTED:
            raise ConfigError(f"{key} must be supplied through the environment")
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            raise ConfigError(f"Unknown configuration key: {key}")
    save_config(config)
    return load_config()
