"""Configuration loading for cimigrate (.cimigrate.yml)."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from .models import Dialect

CONFIG_FILENAME = ".cimigrate.yml"


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be parsed."""


@dataclass
class RulesConfig:
    """Which rule files make up the effective rule table."""

    include_builtin: bool = True
    paths: List[Path] = field(default_factory=list)


@dataclass
class SecurityConfig:
    """Security pre-screen settings."""

    strict: bool = False


@dataclass
class EmitConfig:
    """Output settings for the emitted pipeline."""

    title: Optional[str] = None


@dataclass
class CimigrateConfig:
    """Represents the settings defined in .cimigrate.yml."""

    root: Path
    dialect: Optional[Dialect] = None
    rules: RulesConfig = field(default_factory=RulesConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    emit: EmitConfig = field(default_factory=EmitConfig)


def load_config(config_path: Path) -> CimigrateConfig:
    """Load configuration from disk."""
    config_file = _resolve_config_path(config_path)
    root = config_file.parent.resolve()

    if not config_file.exists():
        return CimigrateConfig(root=root)

    data = _read_config(config_file)
    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the root")

    dialect = None
    dialect_name = _as_str(data.get("dialect"))
    if dialect_name:
        try:
            dialect = Dialect.parse(dialect_name)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

    rules = RulesConfig()
    rules_data = _as_dict(data.get("rules"))
    if rules_data:
        include_builtin = _as_bool(rules_data.get("include_builtin"))
        rules.include_builtin = True if include_builtin is None else include_builtin
        rules.paths = [root / item for item in _as_str_list(rules_data.get("paths"))]

    security = SecurityConfig()
    security_data = _as_dict(data.get("security"))
    if security_data:
        security.strict = _as_bool(security_data.get("strict")) or False

    emit_data = _as_dict(data.get("emit"))
    emit = EmitConfig(title=_as_str(emit_data.get("title")) if emit_data else None)

    return CimigrateConfig(
        root=root,
        dialect=dialect,
        rules=rules,
        security=security,
        emit=emit,
    )


def _resolve_config_path(config_path: Path) -> Path:
    config_path = config_path.expanduser()
    if config_path.is_dir():
        return (config_path / CONFIG_FILENAME).resolve()
    if config_path.name != CONFIG_FILENAME:
        return (config_path.parent / CONFIG_FILENAME).resolve()
    return config_path.resolve()


def _read_config(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return {} if loaded is None else loaded


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, (str, int, float, bool)) else None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return None


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Sequence):
        return [str(item) for item in value if isinstance(item, (str, int, float, bool))]
    return []


__all__ = [
    "CONFIG_FILENAME",
    "CimigrateConfig",
    "ConfigError",
    "EmitConfig",
    "RulesConfig",
    "SecurityConfig",
    "load_config",
]
