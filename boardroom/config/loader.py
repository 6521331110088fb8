from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List

import yaml

_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

_DEFAULT_DATABASE_URL = "sqlite:///./boardroom.db"
_DEFAULT_REALTIME = {
    "require_present_attendance": False,
    "enforce_status_transitions": True,
}
_DEFAULT_AUTH = {
    "algorithms": ["HS256"],
    "issuer": None,
    "audience": None,
    "leeway_seconds": 0,
}
_DEFAULT_RECONNECT = {
    "max_attempts": 5,
    "base_delay_ms": 1000,
    "max_delay_ms": 10000,
    "strategy": "exponential",
    "jitter_ratio": 0.2,
    "ack_timeout_seconds": 10,
}
_RECONNECT_STRATEGIES = {"linear", "exponential"}


def load_config() -> Dict[str, Any]:
    """Load the application config from YAML, returning an empty mapping on error."""
    try:
        with _CONFIG_PATH.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
            if isinstance(data, dict):
                return data
            logging.warning(
                "Config file %s is not a mapping; using defaults.", _CONFIG_PATH
            )
            return {}
    except FileNotFoundError:
        logging.warning(
            "Configuration file %s not found; using defaults.", _CONFIG_PATH
        )
        return {}
    except Exception as exc:  # noqa: BLE001
        logging.error("Failed to load configuration from %s: %s", _CONFIG_PATH, exc)
        return {}


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        candidate = int(value)
        return candidate if candidate > 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _coerce_non_negative_int(value: Any, fallback: int) -> int:
    try:
        candidate = int(value)
        return candidate if candidate >= 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _coerce_bool(value: Any, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_jitter_ratio(value: Any, fallback: float) -> float:
    try:
        candidate = float(value)
    except Exception:  # noqa: BLE001
        candidate = fallback
    return max(0.0, min(1.0, candidate))


def _coerce_optional_str(value: Any) -> Any:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def get_database_url() -> str:
    """Return the database URL, preferring BOARDROOM_DATABASE_URL over config.yaml."""
    env_value = os.getenv("BOARDROOM_DATABASE_URL")
    if env_value and env_value.strip():
        return env_value.strip()
    config = load_config()
    url = config.get("database_url")
    return str(url) if url else _DEFAULT_DATABASE_URL


def get_realtime_settings() -> Dict[str, Any]:
    """Return live meeting gateway settings sourced from config with safe defaults."""
    config = load_config()
    section = config.get("realtime") or {}
    defaults = dict(_DEFAULT_REALTIME)
    return {
        "require_present_attendance": _coerce_bool(
            section.get("require_present_attendance"),
            defaults["require_present_attendance"],
        ),
        "enforce_status_transitions": _coerce_bool(
            section.get("enforce_status_transitions"),
            defaults["enforce_status_transitions"],
        ),
    }


def get_auth_settings() -> Dict[str, Any]:
    """
    Return token verification settings.

    Priority for issuer: BOARDROOM_JWT_ISSUER env var, then config.yaml
    auth.issuer, then no issuer check.
    """
    config = load_config()
    section = config.get("auth") or {}
    defaults = dict(_DEFAULT_AUTH)

    raw_algorithms = section.get("algorithms")
    algorithms: List[str] = []
    if isinstance(raw_algorithms, str):
        raw_algorithms = [raw_algorithms]
    if isinstance(raw_algorithms, list):
        for value in raw_algorithms:
            text = str(value).strip().upper()
            if text and text not in algorithms:
                algorithms.append(text)
    if not algorithms:
        algorithms = list(defaults["algorithms"])

    issuer = _coerce_optional_str(os.getenv("BOARDROOM_JWT_ISSUER"))
    if issuer is None:
        issuer = _coerce_optional_str(section.get("issuer"))

    return {
        "algorithms": algorithms,
        "issuer": issuer,
        "audience": _coerce_optional_str(section.get("audience")),
        "leeway_seconds": _coerce_non_negative_int(
            section.get("leeway_seconds"), defaults["leeway_seconds"]
        ),
    }


def get_reconnect_settings() -> Dict[str, Any]:
    """Return meeting socket client reconnection policy with safe defaults."""
    config = load_config()
    section = config.get("client_reconnect") or {}
    defaults = dict(_DEFAULT_RECONNECT)

    strategy = str(section.get("strategy") or defaults["strategy"]).strip().lower()
    if strategy not in _RECONNECT_STRATEGIES:
        strategy = defaults["strategy"]

    base_delay_ms = _coerce_positive_int(
        section.get("base_delay_ms"), defaults["base_delay_ms"]
    )
    max_delay_ms = _coerce_positive_int(
        section.get("max_delay_ms"), defaults["max_delay_ms"]
    )
    return {
        "max_attempts": _coerce_non_negative_int(
            section.get("max_attempts"), defaults["max_attempts"]
        ),
        "base_delay_ms": base_delay_ms,
        "max_delay_ms": max(base_delay_ms, max_delay_ms),
        "strategy": strategy,
        "jitter_ratio": _coerce_jitter_ratio(
            section.get("jitter_ratio"), defaults["jitter_ratio"]
        ),
        "ack_timeout_seconds": _coerce_positive_int(
            section.get("ack_timeout_seconds"), defaults["ack_timeout_seconds"]
        ),
    }


def get_sqlite_settings() -> Dict[str, Any]:
    config = load_config()
    return dict(config.get("sqlite") or {})


def get_pool_settings() -> Dict[str, Any]:
    config = load_config()
    return dict(config.get("database_pool") or {})
