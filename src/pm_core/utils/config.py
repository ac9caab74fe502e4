"""Helpers for loading strategy configuration files."""
from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any, Final

import yaml


class ConfigError(RuntimeError):
    """Raised when a configuration file cannot be loaded or is malformed."""


_TOML_EXTENSIONS: Final = {".toml"}
_YAML_EXTENSIONS: Final = {".yaml", ".yml"}
_JSON_EXTENSIONS: Final = {".json"}


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc


def load_config(path: str | Path) -> dict[str, Any]:
    """Load a TOML, YAML or JSON file and return its top-level mapping."""
    config_path = Path(path)
    suffix = config_path.suffix.lower()

    if suffix in _TOML_EXTENSIONS:
        try:
            return tomllib.loads(_read_text(config_path))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"invalid TOML config: {config_path}") from exc

    if suffix in _JSON_EXTENSIONS:
        try:
            data = json.loads(_read_text(config_path))
        except json.JSONDecodeError as exc:
            raise ConfigError(f"invalid JSON config: {config_path}") from exc
    elif suffix in _YAML_EXTENSIONS:
        try:
            data = yaml.safe_load(_read_text(config_path))
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML config: {config_path}") from exc
        if data is None:
            return {}
    else:
        raise ConfigError(f"unsupported config extension: {config_path.suffix}")

    if not isinstance(data, dict):
        raise ConfigError("config must define a mapping at the top level")
    return data


__all__ = ["ConfigError", "load_config"]
