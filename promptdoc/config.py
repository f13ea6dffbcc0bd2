"""Runtime configuration loaded from YAML files and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .callbacks import DEFAULT_TIMEOUT_SECONDS
from .errors import ConfigurationError

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

PROVIDER_ENV_KEYS: Dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


@dataclass
class ProviderConfig:
    api_key: str = ""
    api_base: str = ""


@dataclass
class RuntimeConfig:
    callback_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    log_level: str = "WARNING"
    verbose: bool = False
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)

    def provider(self, name: str) -> ProviderConfig:
        return self.providers.get(name) or ProviderConfig()


def expand_env(value: str) -> str:
    """Expand a whole-value ``${VAR}`` placeholder; other strings pass through."""
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        return os.environ.get(value[2:-1], "")
    return value


def resolve_api_key(env_key: str, api_key: str = "") -> str:
    """Return the API key from the environment or the explicit value.

    Raises:
        ConfigurationError: if neither is available
    """
    env_value = os.environ.get(env_key, "") if env_key else ""
    if env_value:
        return env_value

    api_key = expand_env(api_key or "")
    if api_key:
        return api_key

    raise ConfigurationError(f"Missing API key {env_key} in environment")


def load_raw_config(config_path: str = "config/config.local.yaml") -> Dict[str, Any]:
    """Load raw configuration dictionary from YAML.

    ``config.local.yaml`` is overlaid on ``config.yaml`` from the same
    directory; any other path is loaded as-is. Missing files yield ``{}``.
    """
    repo_root = Path(__file__).resolve().parents[1]

    def _resolve(candidate: Path) -> Path:
        if candidate.exists() or candidate.is_absolute():
            return candidate
        alt = repo_root / candidate
        if alt.exists():
            return alt
        return candidate

    def _load_yaml(path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file must be a mapping: {path}")
        return data

    def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(base)
        for key, value in override.items():
            base_value = merged.get(key)
            if isinstance(base_value, dict) and isinstance(value, dict):
                merged[key] = _deep_merge(base_value, value)
            else:
                merged[key] = value
        return merged

    target = _resolve(Path(config_path))
    if target.name == "config.local.yaml":
        base = _load_yaml(_resolve(Path(config_path).with_name("config.yaml")))
        return _deep_merge(base, _load_yaml(target))
    return _load_yaml(target)


def config_from_dict(data: Dict[str, Any]) -> RuntimeConfig:
    callbacks = data.get("callbacks") or {}
    if not isinstance(callbacks, dict):
        raise ConfigurationError("callbacks must be a mapping")
    timeout = callbacks.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigurationError(f"callbacks.timeout_seconds must be a positive number, got {timeout!r}")

    logging_section = data.get("logging") or {}
    if not isinstance(logging_section, dict):
        raise ConfigurationError("logging must be a mapping")
    level = str(logging_section.get("level", "WARNING")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigurationError(f"logging.level must be one of {', '.join(_LOG_LEVELS)}, got {level}")

    providers: Dict[str, ProviderConfig] = {}
    for name, entry in (data.get("providers") or {}).items():
        if entry is None:
            entry = {}
        if not isinstance(entry, dict):
            raise ConfigurationError(f"providers.{name} must be a mapping")
        providers[name] = ProviderConfig(
            api_key=expand_env(str(entry.get("api_key", "") or "")),
            api_base=str(entry.get("api_base", "") or ""),
        )

    return RuntimeConfig(
        callback_timeout_seconds=float(timeout),
        log_level=level,
        verbose=bool(logging_section.get("verbose", False)),
        providers=providers,
    )


def load_config(config_path: Optional[str] = None) -> RuntimeConfig:
    """Load runtime configuration; missing files give the defaults."""
    return config_from_dict(load_raw_config(config_path or "config/config.local.yaml"))
