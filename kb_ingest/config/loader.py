"""YAML configuration loader with environment variable overrides.

Layers, later wins:

  1. config/config.yaml  -- defaults checked into the repo
  2. .env file           -- local overrides
  3. environment vars    -- deployment

Only settings that were explicitly provided through the environment or
``.env`` override the YAML file; untouched Settings defaults never shadow a
YAML value.
"""

from pathlib import Path
from typing import Any

import yaml

from kb_ingest.config.settings import Settings


def load_config(path: str = "config/config.yaml", settings: Settings | None = None) -> Settings:
    """Build a :class:`Settings` from the YAML file merged with the environment.

    The YAML file is flat or grouped one level deep; group names are
    dropped, so ``queue: {url: ...}`` and ``queue_url: ...`` are equivalent.

    Args:
        path: Path to the YAML configuration file.
        settings: Pre-built environment settings (mainly for tests).

    Returns:
        Fully resolved settings.
    """
    config_path = Path(path)
    yaml_config: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            yaml_config = _flatten(yaml.safe_load(f) or {})

    env_settings = settings or Settings()
    env_overrides = env_settings.model_dump(include=env_settings.model_fields_set)

    merged = dict(yaml_config)
    _deep_merge(merged, env_overrides)
    known = {k: v for k, v in merged.items() if k in Settings.model_fields}
    return Settings.model_validate(known)


def _flatten(raw: dict[str, Any]) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                flat[f"{key}_{sub_key}"] = sub_value
        else:
            flat[key] = value
    return flat


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
