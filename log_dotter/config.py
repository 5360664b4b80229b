"""Configuration loading from CLI args, env vars, and optional YAML file."""

import os
from dataclasses import dataclass, fields

import yaml

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# zap-style level names
LEVEL_ALIASES = {
    "WARN": "WARNING",
    "DPANIC": "CRITICAL",
    "PANIC": "CRITICAL",
    "FATAL": "CRITICAL",
}


class ConfigError(ValueError):
    """Raised when startup configuration cannot be used."""


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Config:
    http_enabled: bool = False
    development: bool = False
    log_level: str = "INFO"
    log_file: str = ""
    interval_ms: int = 1000
    timeout_minutes: int = 60
    burst_size: int = 150_000
    http_host: str = "0.0.0.0"
    http_port: int = 9093
    metrics_port: int = 9094
    max_size_mb: int = 1024
    max_backups: int = 1
    max_age_days: int = 7
    compress: bool = False


# field name -> environment variable
ENV_VARS = {
    "http_enabled": "HTTP_ENABLE",
    "development": "LOG_DEVELOPMENT",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "interval_ms": "LOG_INTERVAL_MS",
    "timeout_minutes": "LOG_TIMEOUT_MINUTES",
    "burst_size": "BURST_SIZE",
    "http_host": "HTTP_HOST",
    "http_port": "HTTP_PORT",
    "metrics_port": "METRICS_PORT",
    "max_size_mb": "LOG_MAX_SIZE_MB",
    "max_backups": "LOG_MAX_BACKUPS",
    "max_age_days": "LOG_MAX_AGE_DAYS",
    "compress": "LOG_COMPRESS",
}


def load_yaml_config(path: str | None) -> dict:
    """Load settings from a YAML file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"config file {path} not found") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def _coerce(name: str, kind: type, value):
    if isinstance(value, str):
        value = value.strip()
        if kind is bool:
            return _parse_bool(value)
    if kind is bool:
        return bool(value)
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name}: expected {kind.__name__}, got {value!r}") from e


def load_config(cli_args=None, yaml_data: dict | None = None) -> Config:
    """Build Config with precedence CLI > env > YAML > defaults.

    ``cli_args`` is an argparse namespace whose attributes use the Config
    field names; attributes left at ``None`` fall through to the next layer.
    """
    yaml_data = yaml_data or {}
    unknown = set(yaml_data) - set(ENV_VARS)
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")

    values = {}
    for f in fields(Config):
        kind = type(f.default)
        raw = getattr(cli_args, f.name, None) if cli_args is not None else None
        if raw is None:
            raw = os.environ.get(ENV_VARS[f.name])
        if raw is None:
            raw = yaml_data.get(f.name)
        if raw is None:
            continue
        values[f.name] = _coerce(f.name, kind, raw)

    level = values.get("log_level", Config.log_level).upper()
    level = LEVEL_ALIASES.get(level, level)
    if level not in LOG_LEVELS:
        raise ConfigError(
            f"fail to parse log level, level = {level.lower()}, "
            f"expected one of {', '.join(name.lower() for name in LOG_LEVELS)}"
        )
    values["log_level"] = level

    if values.get("max_size_mb", Config.max_size_mb) <= 0:
        raise ConfigError(f"max_size_mb must be positive, got {values['max_size_mb']}")
    # port 0 binds an ephemeral port
    for name in ("http_port", "metrics_port", "max_backups", "max_age_days"):
        if name in values and values[name] < 0:
            raise ConfigError(f"{name} must not be negative, got {values[name]}")

    return Config(**values)
