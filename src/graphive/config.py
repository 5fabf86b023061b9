"""Configuration system for graphive. YAML-based with env var expansion and env var overlay."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal, get_args

import yaml
from pydantic import BaseModel, Field

# --- Config Models ---

Provider = Literal["neo4j", "falkordb"]

# Default port per protocol; FalkorDB's browser API listens on 3000
DEFAULT_PORTS: dict[str, int] = {
    "bolt": 7687,
    "bolt+s": 7687,
    "bolt+ssc": 7687,
    "neo4j": 7687,
    "neo4j+s": 7687,
    "neo4j+ssc": 7687,
    "http": 7474,
    "https": 7473,
}
FALKORDB_DEFAULT_PORT = 3000


class ConnectionConfig(BaseModel):
    """Backend connection settings. The password is never saved to disk."""

    provider: Provider = "neo4j"
    protocol: str = "neo4j"
    host: str = "localhost"
    port: int | None = None
    username: str = "neo4j"
    password: str = ""
    database: str = ""  # Neo4j database name, FalkorDB graph name

    @property
    def resolved_port(self) -> int:
        if self.port:
            return self.port
        if self.provider == "falkordb":
            return FALKORDB_DEFAULT_PORT
        return DEFAULT_PORTS.get(self.protocol, 7687)

    @property
    def is_secure(self) -> bool:
        return self.protocol.endswith(("+s", "+ssc")) or self.protocol == "https"

    @property
    def key(self) -> str:
        """Identity of the backend this config points at (excluding secrets)."""
        return f"{self.provider}:{self.protocol}://{self.username}@{self.host}:{self.resolved_port}/{self.database}"


class SyncConfig(BaseModel):
    connect_timeout: float = 10.0   # seconds; test_connection / check_connection
    query_timeout: float = 30.0     # seconds; per HTTP request for the streaming backend
    notification_history: int = 50


class LayoutConfig(BaseModel):
    direction: Literal["TB", "LR"] = "TB"
    node_width: float = 150.0
    node_height: float = 50.0
    node_sep: float = 50.0
    rank_sep: float = 80.0
    merge_offset: float = 300.0  # gap between existing canvas and merged nodes


class LoggingConfig(BaseModel):
    """Logging configuration."""
    format: str = "text"   # "text" or "json"
    level: str = "WARNING"


class Config(BaseModel):
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# --- Helpers ---

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def get_config_dir() -> Path:
    """Get or create graphive config directory."""
    config_dir = Path.home() / ".graphive"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    return get_config_dir() / "config.yaml"


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR} in strings."""
    if isinstance(data, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), data)
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(v) for v in data]
    return data


# Mapping of GRAPHIVE_* env var suffixes to (section, field) tuples.
_ENV_VAR_MAP: dict[str, tuple[str, str]] = {
    "PROVIDER": ("connection", "provider"),
    "PROTOCOL": ("connection", "protocol"),
    "HOST": ("connection", "host"),
    "PORT": ("connection", "port"),
    "USERNAME": ("connection", "username"),
    "PASSWORD": ("connection", "password"),
    "DATABASE": ("connection", "database"),
    "CONNECT_TIMEOUT": ("sync", "connect_timeout"),
    "QUERY_TIMEOUT": ("sync", "query_timeout"),
    "LAYOUT_DIRECTION": ("layout", "direction"),
    "LOG_FORMAT": ("logging", "format"),
    "LOG_LEVEL": ("logging", "level"),
}


def _get_section_models() -> dict[str, type[BaseModel]]:
    return {
        "connection": ConnectionConfig,
        "sync": SyncConfig,
        "layout": LayoutConfig,
        "logging": LoggingConfig,
    }


def _apply_env_overlay(data: dict[str, Any]) -> dict[str, Any]:
    """Apply GRAPHIVE_* environment variables on top of YAML data dict.

    Converts values to the correct type based on Pydantic field annotations.
    The password is applied but never logged.
    """
    section_models = _get_section_models()

    for env_suffix, (section, field) in _ENV_VAR_MAP.items():
        raw_val = os.environ.get(f"GRAPHIVE_{env_suffix}")
        if raw_val is None:
            continue

        target_type: type = str
        field_info = section_models[section].model_fields.get(field)
        if field_info is not None:
            ann = field_info.annotation
            if ann is int or int in get_args(ann):
                target_type = int
            elif ann is float:
                target_type = float
            elif ann is bool:
                target_type = bool

        try:
            if target_type is bool:
                typed_val: Any = raw_val.lower() in ("1", "true", "yes")
            else:
                typed_val = target_type(raw_val)
        except (ValueError, TypeError):
            typed_val = raw_val  # Pydantic will report it

        if section not in data or not isinstance(data[section], dict):
            data[section] = {}
        data[section][field] = typed_val

    return data


def load_config(path: Path | None = None) -> Config:
    """Load config from YAML, expanding env vars, then applying GRAPHIVE_* env overlay."""
    config_path = path or get_config_path()
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        data = _expand_env_vars(raw)
    else:
        data = {}
    data = _apply_env_overlay(data)
    return Config(**data)


def save_config(config: Config, path: Path | None = None) -> None:
    """Save config to YAML, leaving the password out."""
    config_path = path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(exclude={"connection": {"password"}})
    with open(config_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_config_value(config: Config, key_path: str) -> Any:
    """Get nested config value via dot notation (e.g. 'connection.host')."""
    obj: Any = config
    for part in key_path.split("."):
        if isinstance(obj, BaseModel):
            obj = getattr(obj, part, None)
        elif isinstance(obj, dict):
            obj = obj.get(part)
        else:
            return None
    return obj


def set_config_value(key_path: str, value: str, path: Path | None = None) -> Config:
    """Set config value via dot notation, validate, save, and return updated config."""
    if key_path == "connection.password":
        raise ValueError("The password is not stored; use GRAPHIVE_PASSWORD or ${VAR} expansion")
    config_path = path or get_config_path()
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    else:
        raw = {}

    parts = key_path.split(".")
    obj = raw
    for part in parts[:-1]:
        if part not in obj or not isinstance(obj[part], dict):
            obj[part] = {}
        obj = obj[part]
    obj[parts[-1]] = value

    Config(**_expand_env_vars(raw))  # raises ValidationError before anything is written

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.dump(raw, f, default_flow_style=False, sort_keys=False)

    return load_config(config_path)
