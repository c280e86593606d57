"""
Settings loader for settings.yaml

Usage:
    from campaign_engine.settings import settings

    max_steps = settings.engine.max_steps
    retention = settings.idempotency.retention_seconds
"""

import yaml
from pathlib import Path
from typing import List, Any


# Path to the settings file
SETTINGS_FILE = Path(__file__).parent / "settings.yaml"

# Defaults (used when a key is not present in the YAML)
DEFAULTS = {
    "llm": {
        "model": "gemini-1.5-flash",
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "api_key_env": "GEMINI_API_KEY",
        "timeout": 30,
        "temperature": 0.4,
        "max_output_tokens": 512,
    },
    "transport": {
        "base_url": "http://localhost:3000",
        "api_key_env": "WAHA_API_KEY",
        "timeout": 15,
    },
    "retry": {
        "max_retries": 3,
        "initial_delay": 0.5,
        "max_delay": 5.0,
        "backoff_multiplier": 2.0,
    },
    "engine": {
        "max_steps": 25,
        "history_limit": 20,
        "default_reentry_after_close": True,
        "config_error_alert_threshold": 3,
        "config_error_window_seconds": 3600,
    },
    "idempotency": {
        "retention_seconds": 1800,
        "purge_interval_seconds": 60,
    },
    "router": {
        "index_ttl_seconds": 30,
    },
    "emotion": {
        "decay_factor": 0.7,
        "low": 0.3,
        "high": 0.7,
        "baseline": [0.5, 0.5, 0.5],
    },
    "storage": {
        "db_path": "data/engine.db",
        "sqlite_timeout_seconds": 30,
        "busy_timeout_ms": 5000,
    },
    "locks": {
        "lock_dir": "/tmp/campaign_engine_locks",
    },
    "realtime": {
        "queue_size": 256,
    },
    "logging": {
        "level": "INFO",
        "log_llm_requests": False,
    },
}


class DotDict(dict):
    """Dictionary with attribute access: d.key instead of d['key']"""

    def __getattr__(self, key: str) -> Any:
        try:
            value = self[key]
            if isinstance(value, dict):
                return DotDict(value)
            return value
        except KeyError:
            raise AttributeError(f"Setting '{key}' not found")

    def __setattr__(self, key: str, value: Any) -> None:
        self[key] = value

    def get_nested(self, path: str, default: Any = None) -> Any:
        """Get a value by dotted path: 'llm.model'"""
        keys = path.split('.')
        value = self
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge of dictionaries (override wins over base)"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(filepath: Path = None) -> DotDict:
    """
    Load settings from a YAML file.

    Priority:
    1. Values from the YAML file (highest)
    2. DEFAULTS

    Args:
        filepath: Path to the settings file (settings.yaml by default)

    Returns:
        DotDict with settings
    """
    filepath = filepath or SETTINGS_FILE

    # Start from defaults
    config = _deep_merge({}, DEFAULTS)  # deep copy

    if filepath.exists():
        with open(filepath, "r", encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        config = _deep_merge(config, yaml_config)
    else:
        print(f"[settings] Settings file not found: {filepath}")
        print("[settings] Using defaults")

    return DotDict(config)


def validate_settings(settings: DotDict) -> List[str]:
    """
    Validate settings.

    Returns:
        List of problems (empty when everything is OK)
    """
    errors = []

    # LLM
    if not settings.llm.model:
        errors.append("llm.model is not set")
    if not settings.llm.base_url:
        errors.append("llm.base_url is not set")
    if settings.llm.timeout <= 0:
        errors.append("llm.timeout must be > 0")

    # Transport
    if not settings.transport.base_url:
        errors.append("transport.base_url is not set")
    if settings.transport.timeout <= 0:
        errors.append("transport.timeout must be > 0")

    # Retry
    if settings.retry.max_retries < 1:
        errors.append("retry.max_retries must be >= 1")
    if settings.retry.initial_delay < 0:
        errors.append("retry.initial_delay must be >= 0")
    if settings.retry.max_delay < settings.retry.initial_delay:
        errors.append("retry.max_delay must be >= retry.initial_delay")

    # Engine
    if settings.engine.max_steps < 1:
        errors.append("engine.max_steps must be >= 1")
    if settings.engine.history_limit < 1:
        errors.append("engine.history_limit must be >= 1")
    if settings.engine.config_error_window_seconds <= 0:
        errors.append("engine.config_error_window_seconds must be > 0")

    # Idempotency
    if settings.idempotency.retention_seconds <= 0:
        errors.append("idempotency.retention_seconds must be > 0")
    if settings.idempotency.purge_interval_seconds < 0:
        errors.append("idempotency.purge_interval_seconds must be >= 0")

    # Emotion bands
    low = settings.emotion.low
    high = settings.emotion.high
    if not (0 <= low < high <= 1):
        errors.append("emotion.low/high must satisfy 0 <= low < high <= 1")
    if not (0 < settings.emotion.decay_factor < 1):
        errors.append("emotion.decay_factor must be between 0 and 1")

    return errors


# Global settings instance (lazy)
_settings = None


def get_settings() -> DotDict:
    """Get global settings (singleton)"""
    global _settings
    if _settings is None:
        _settings = load_settings()
        errors = validate_settings(_settings)
        if errors:
            print("[settings] Settings errors:")
            for err in errors:
                print(f"  - {err}")
    return _settings


def reload_settings() -> DotDict:
    """Reload settings from file"""
    global _settings
    _settings = None
    return get_settings()


# For convenient import: from campaign_engine.settings import settings
settings = get_settings()


# =============================================================================
# CLI for inspecting settings
# =============================================================================

if __name__ == "__main__":
    import json

    print("=" * 60)
    print("CURRENT SETTINGS")
    print("=" * 60)

    s = load_settings()

    errors = validate_settings(s)
    if errors:
        print("\n[!] ERRORS:")
        for err in errors:
            print(f"  - {err}")
    else:
        print("\n[+] All settings are valid")

    print("\n" + "-" * 60)
    print(json.dumps(dict(s), indent=2, ensure_ascii=False))
