"""
Configuration
=============
YAML file first, environment variables on top.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = "./config.yaml"
STORAGE_BACKENDS = ("memory", "sql")


class ConfigError(Exception):
    pass


@dataclass
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8080
    shutdown_timeout_seconds: int = 10
    keep_alive_timeout_seconds: int = 5


@dataclass
class StorageSettings:
    backend: str = "memory"
    database_url: str = "sqlite+aiosqlite:///./vending.db"
    echo: bool = False


@dataclass
class LoggingSettings:
    level: str = "INFO"


@dataclass
class Settings:
    server: ServerSettings = field(default_factory=ServerSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# (section, key, env var, parser)
ENV_OVERRIDES = [
    ("server", "host", "SERVER_HOST", str),
    ("server", "port", "SERVER_PORT", int),
    ("server", "shutdown_timeout_seconds", "SERVER_SHUTDOWN_TIMEOUT_SECONDS", int),
    ("server", "keep_alive_timeout_seconds", "SERVER_KEEP_ALIVE_TIMEOUT_SECONDS", int),
    ("storage", "backend", "STORAGE_BACKEND", str),
    ("storage", "database_url", "DATABASE_URL", str),
    ("storage", "echo", "DATABASE_ECHO", None),
    ("logging", "level", "LOG_LEVEL", str),
]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _coerce(section: str, key: str, value: Any, parser: Optional[Callable[[Any], Any]]):
    try:
        return (parser or _parse_bool)(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {section}.{key}: {value!r}") from exc


def read_yaml(path: str | Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"failed to open config file: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to decode config: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a mapping at the top level")
    return data


def load_config(path: str | Path = DEFAULT_CONFIG_PATH, env: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build Settings from the YAML file at ``path``, then apply overrides
    from ``env`` (defaults to the process environment, .env included).
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    raw = read_yaml(path)
    settings = Settings()
    parsers = {(section, key): parser for section, key, _, parser in ENV_OVERRIDES}

    for section_name, values in raw.items():
        section = getattr(settings, section_name, None)
        if section is None:
            raise ConfigError(f"unknown config section: {section_name!r}")
        if values is None:
            values = {}
        if not isinstance(values, dict):
            raise ConfigError(f"config section {section_name!r} must be a mapping")

        for key, value in values.items():
            if not hasattr(section, key):
                raise ConfigError(f"unknown config key: {section_name}.{key}")
            setattr(section, key, _coerce(section_name, key, value, parsers[(section_name, key)]))

    for section_name, key, env_var, parser in ENV_OVERRIDES:
        if env.get(env_var) is not None:
            section = getattr(settings, section_name)
            setattr(section, key, _coerce(section_name, key, env[env_var], parser))

    validate_config(settings)
    return settings


def validate_config(settings: Settings) -> None:
    if not 0 < settings.server.port < 65536:
        raise ConfigError(f"server.port out of range: {settings.server.port}")
    if settings.server.shutdown_timeout_seconds < 0:
        raise ConfigError("server.shutdown_timeout_seconds must not be negative")
    if settings.server.keep_alive_timeout_seconds < 0:
        raise ConfigError("server.keep_alive_timeout_seconds must not be negative")
    if settings.storage.backend not in STORAGE_BACKENDS:
        raise ConfigError(f"storage.backend must be one of {STORAGE_BACKENDS}, got {settings.storage.backend!r}")
    if settings.storage.backend == "sql" and not settings.storage.database_url:
        raise ConfigError("storage.database_url is required for the sql backend")
    settings.logging.level = settings.logging.level.upper()
    if settings.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"unknown logging.level: {settings.logging.level!r}")
