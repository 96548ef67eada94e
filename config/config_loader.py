"""
Unified configuration loader for the multi-site access-control layer.

Loads config.yaml and provides network, audit and logging settings to the
services that need them.

Precedence (lowest to highest):
    1. Hardcoded Python fallbacks (always present)
    2. config.yaml sections (deployment-level settings)
    3. Environment variables MSA_* (container-level overrides)
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.exceptions import ConfigurationError


# Search order for config file
_CONFIG_SEARCH_PATHS = [
    os.environ.get("MSA_CONFIG", ""),
    "config/config.yaml",
    str(Path(__file__).parent / "config.yaml"),
]

_cached_config: Optional[Dict] = None


def _find_config_file() -> Optional[Path]:
    """Find config.yaml from search paths."""
    for path_str in _CONFIG_SEARCH_PATHS:
        if not path_str:
            continue
        p = Path(path_str)
        if p.is_file():
            return p
    return None


def _resolve_env_vars(config: Any) -> Any:
    """Recursively resolve ${VAR:default} placeholders in config values."""
    if isinstance(config, dict):
        return {k: _resolve_env_vars(v) for k, v in config.items()}
    elif isinstance(config, list):
        return [_resolve_env_vars(item) for item in config]
    elif isinstance(config, str) and config.startswith("${") and config.endswith("}"):
        env_var = config[2:-1]
        default = None
        if ":" in env_var:
            env_var, default = env_var.split(":", 1)
        return os.environ.get(env_var, default)
    return config


def _to_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load and cache the full config.yaml.

    Args:
        config_path: Optional explicit path. If None, uses search order.

    Returns:
        Full parsed YAML dict. Returns empty dict if no config found.

    Raises:
        ConfigurationError: If the file exists but is not valid YAML.
    """
    global _cached_config

    if _cached_config is not None and config_path is None:
        return _cached_config

    if config_path:
        p = Path(config_path)
    else:
        p = _find_config_file()

    if p is None or not p.is_file():
        _cached_config = {}
        return _cached_config

    try:
        with open(p, "r", encoding="utf-8") as f:
            _cached_config = _resolve_env_vars(yaml.safe_load(f) or {})
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid configuration file {p}: {e}")

    return _cached_config


def reload_config():
    """Force reload of config (clears cache)."""
    global _cached_config
    _cached_config = None


def get_full_config() -> Dict[str, Any]:
    """Return the complete parsed config.yaml as a nested dict."""
    return load_config()


def get_network_settings() -> Dict[str, Any]:
    """
    Return a flat dict of network-wide access settings.

    Keys match the fields of `core.models.NetworkSettings`.
    """
    cfg = load_config()
    network = cfg.get("network", {})
    settings = network.get("settings", {})

    # Hardcoded fallback defaults
    defaults = {
        "emergency_access_enabled": True,
        "break_glass_audit_required": True,
        "break_glass_access_level": "read_only",
        "break_glass_duration_hours": 24,
        "min_temporary_access_hours": 1,
        "max_temporary_access_hours": 720,
        "referral_expiry_days": 30,
        "audit_retention_days": 2555,
    }

    for key in defaults:
        value = settings.get(key)
        if value is not None:
            defaults[key] = value

    # Override from environment variables
    env_mapping = {
        "MSA_EMERGENCY_ACCESS_ENABLED": ("emergency_access_enabled", _to_bool),
        "MSA_BREAK_GLASS_AUDIT_REQUIRED": ("break_glass_audit_required", _to_bool),
        "MSA_BREAK_GLASS_ACCESS_LEVEL": ("break_glass_access_level", str),
        "MSA_BREAK_GLASS_DURATION_HOURS": ("break_glass_duration_hours", int),
        "MSA_MAX_TEMPORARY_ACCESS_HOURS": ("max_temporary_access_hours", int),
        "MSA_REFERRAL_EXPIRY_DAYS": ("referral_expiry_days", int),
    }

    for env_var, (key, converter) in env_mapping.items():
        val = os.environ.get(env_var)
        if val is not None:
            try:
                defaults[key] = converter(val)
            except (ValueError, TypeError):
                raise ConfigurationError(
                    f"Invalid value for {env_var}: {val!r}", config_key=key
                )

    return defaults


def get_site_definitions() -> List[Dict[str, Any]]:
    """Return the raw site definitions listed under network.sites."""
    cfg = load_config()
    return list(cfg.get("network", {}).get("sites", []) or [])


def get_audit_settings() -> Dict[str, Any]:
    """Get audit sink configuration."""
    cfg = load_config()
    audit = cfg.get("audit", {})
    return {
        "backend": os.environ.get("MSA_AUDIT_BACKEND", audit.get("backend", "memory")),
        "storage_path": os.environ.get(
            "MSA_AUDIT_PATH", audit.get("storage_path", "logs/audit")
        ),
        "db_path": audit.get("db_path", "data/access_control.db"),
        "retention_days": audit.get("retention_days", 2555),
    }


def get_logging_settings() -> Dict[str, Any]:
    """Get structured logging configuration."""
    cfg = load_config()
    logging_cfg = cfg.get("logging", {})
    return {
        "level": os.environ.get("MSA_LOG_LEVEL", logging_cfg.get("level", "INFO")),
        "format": logging_cfg.get("format", "json"),
        "file": logging_cfg.get("file"),
    }
