"""
Configuration loading for the lead sync service.

Defaults come from config/settings.yaml; environment variables (and a .env
file, when present) override them.
"""

import copy
import os
from functools import lru_cache
from pathlib import Path

import yaml
from dotenv import load_dotenv

from alerts import AlertConfig
from retry import RetryConfig

SETTINGS_PATH = Path(__file__).parent / "config" / "settings.yaml"


def parse_bool(value, default: bool = False) -> bool:
    """Parse a boolean from an environment variable."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def parse_int(value, default: int) -> int:
    """Parse an integer, falling back to the default when unset or invalid."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _read_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _apply_env(settings: dict, env) -> dict:
    alerts = settings.setdefault("alerts", {})
    smtp = alerts.setdefault("smtp", {})
    retry = settings.setdefault("retry", {})
    logging_cfg = settings.setdefault("logging", {})

    smtp["host"] = env.get("SMTP_HOST") or smtp.get("host")
    smtp["port"] = parse_int(env.get("SMTP_PORT"), smtp.get("port") or 587)
    smtp["secure"] = parse_bool(env.get("SMTP_SECURE"), bool(smtp.get("secure")))
    smtp["user"] = env.get("SMTP_USER") or smtp.get("user")
    smtp["password"] = env.get("SMTP_PASS") or smtp.get("password")

    alerts["email_to"] = env.get("ALERT_EMAIL_TO") or alerts.get("email_to")
    alerts["email_from"] = env.get("ALERT_EMAIL_FROM") or alerts.get("email_from")
    alerts["failure_threshold"] = parse_int(
        env.get("ALERT_FAILURE_THRESHOLD"), alerts.get("failure_threshold") or 3
    )
    enabled_default = alerts.get("enabled")
    if enabled_default is None:
        enabled_default = bool(smtp["host"])
    alerts["enabled"] = parse_bool(env.get("ALERTS_ENABLED"), enabled_default)

    retry["max_attempts"] = parse_int(env.get("RETRY_MAX_ATTEMPTS"), retry.get("max_attempts", 3))
    retry["base_delay_ms"] = parse_int(env.get("RETRY_BASE_DELAY_MS"), retry.get("base_delay_ms", 1000))
    retry["max_delay_ms"] = parse_int(env.get("RETRY_MAX_DELAY_MS"), retry.get("max_delay_ms", 10000))

    logging_cfg["level"] = env.get("LOG_LEVEL") or logging_cfg.get("level") or "INFO"
    logging_cfg["format"] = env.get("LOG_FORMAT") or logging_cfg.get("format") or "text"
    return settings


def build_settings(path: Path = SETTINGS_PATH, env=None) -> dict:
    """Merge YAML defaults with environment overrides (uncached)."""
    settings = copy.deepcopy(_read_yaml(path))
    return _apply_env(settings, os.environ if env is None else env)


@lru_cache(maxsize=1)
def load_settings() -> dict:
    """Load settings once per process.

    Cached for the process lifetime. Restart the service to pick up changes.
    """
    load_dotenv()
    return build_settings()


def get_alert_config(settings: dict | None = None) -> AlertConfig:
    """Alert configuration (threshold, addresses, SMTP)."""
    settings = settings if settings is not None else load_settings()
    return AlertConfig.from_mapping(settings.get("alerts", {}))


def get_retry_config(settings: dict | None = None, **overrides) -> RetryConfig:
    """Default retry configuration; delays are converted from ms to seconds."""
    settings = settings if settings is not None else load_settings()
    retry = settings.get("retry", {})
    options = {
        "max_attempts": retry.get("max_attempts", 3),
        "base_delay": retry.get("base_delay_ms", 1000) / 1000,
        "max_delay": retry.get("max_delay_ms", 10000) / 1000,
    }
    options.update(overrides)
    return RetryConfig(**options)


def get_rate_limits(settings: dict | None = None) -> dict[str, tuple[int, float]]:
    """Per-API (max_requests, window_seconds)."""
    settings = settings if settings is not None else load_settings()
    return {
        name: (int(cfg.get("max_requests", 100)), float(cfg.get("window_seconds", 60)))
        for name, cfg in (settings.get("rate_limits") or {}).items()
    }


def get_logging_config(settings: dict | None = None) -> dict:
    settings = settings if settings is not None else load_settings()
    return settings.get("logging", {"level": "INFO", "format": "text"})
