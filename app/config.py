from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    # Privileged agent
    BACKY_AGENT_URL = os.getenv('BACKY_AGENT_URL', 'http://localhost:5151')
    BACKY_AGENT_API_KEY = os.getenv('BACKY_AGENT_API_KEY', '')
    BACKY_AGENT_TIMEOUT_SECONDS = _env_float('BACKY_AGENT_TIMEOUT_SECONDS', 30.0)
    BACKY_AGENT_MAX_RETRIES = _env_int('BACKY_AGENT_MAX_RETRIES', 3)

    # Metadata store
    BACKY_DB_PATH = os.getenv('BACKY_DB_PATH', 'data/backy.db')

    # Reconciliation loop
    DRIVE_REFRESH_INTERVAL = _env_int('DRIVE_REFRESH_INTERVAL', 60)
    POOL_STATUS_TIMEOUT = _env_float('POOL_STATUS_TIMEOUT', 5.0)

    # Creation monitor backoff
    POOL_MONITOR_INITIAL_DELAY = _env_float('POOL_MONITOR_INITIAL_DELAY', 1.0)
    POOL_MONITOR_BACKOFF = _env_float('POOL_MONITOR_BACKOFF', 1.5)
    POOL_MONITOR_MAX_DELAY = _env_float('POOL_MONITOR_MAX_DELAY', 30.0)
    POOL_MONITOR_MAX_ATTEMPTS = _env_int('POOL_MONITOR_MAX_ATTEMPTS', 60)
    POOL_MONITOR_TIMEOUT = _env_float('POOL_MONITOR_TIMEOUT', 1800.0)

    # Scheduler and monitor threads; tests turn this off
    ENABLE_BACKGROUND_JOBS = _env_bool('ENABLE_BACKGROUND_JOBS', True)

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
