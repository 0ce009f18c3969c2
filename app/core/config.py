"""Environment-driven settings.

Values are read on every call so tests and multiple service instances see
the same configuration without a process-wide cache.
"""

import os
from datetime import date

_FALSEY = {"0", "false", "False", "no", "NO", "off"}


def env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v


def env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip() not in _FALSEY


def log_level() -> str:
    return env_str("LOG_LEVEL", "INFO").upper()


def sync_max_attempts() -> int:
    return max(1, env_int("SYNC_MAX_ATTEMPTS", 3))


def sync_default_priority() -> int:
    return env_int("SYNC_DEFAULT_PRIORITY", 10)


def sync_export_priority() -> int:
    return env_int("SYNC_EXPORT_PRIORITY", 5)


def sync_processing_timeout_seconds() -> int:
    return max(1, env_int("SYNC_PROCESSING_TIMEOUT_SECONDS", 900))


def qbwc_server_version() -> str:
    return env_str("QBWC_SERVER_VERSION", "Payroll Sync QBWC Server v1.0")


def qbwc_min_client_version() -> str:
    return env_str("QBWC_MIN_CLIENT_VERSION", "2.0")


def qbxml_version() -> str:
    return env_str("QBXML_VERSION", "13.0")


DEFAULT_PAY_PERIOD_REFERENCE = date(2024, 1, 1)
DEFAULT_PAY_PERIOD_DAYS = 14
WEEKLY_OVERTIME_THRESHOLD_HOURS = 40
