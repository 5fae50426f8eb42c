from __future__ import annotations

from flask import current_app, has_app_context


DEFAULT_FLAGS: dict[str, bool] = {
    "jobs.order_timeouts_enabled": True,
    "jobs.auto_release_enabled": True,
    "jobs.payouts_enabled": True,
}

# flag name -> app.config key
CONFIG_KEYS: dict[str, str] = {
    "jobs.order_timeouts_enabled": "ORDER_TIMEOUTS_ENABLED",
    "jobs.auto_release_enabled": "AUTO_RELEASE_ENABLED",
    "jobs.payouts_enabled": "PAYOUTS_ENABLED",
}


def _coerce_bool(value, default: bool = False) -> bool:
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return int(value) == 1
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(default)


def get_all_flags(config=None) -> dict[str, bool]:
    if config is None:
        config = current_app.config if has_app_context() else {}
    flags = dict(DEFAULT_FLAGS)
    for name, key in CONFIG_KEYS.items():
        if key in config:
            flags[name] = _coerce_bool(config.get(key), DEFAULT_FLAGS[name])
    return flags


def is_enabled(flag_name: str, default: bool = False, config=None) -> bool:
    flags = get_all_flags(config)
    return bool(flags.get(flag_name, default))
