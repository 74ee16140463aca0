import time
from datetime import datetime, timezone


def now_iso_utc_z() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


now_iso = now_iso_utc_z


def monotonic_uptime(started_at: float) -> float:
    """Seconds elapsed since a `time.monotonic()` reading, rounded to ms."""

    return round(max(time.monotonic() - started_at, 0.0), 3)


__all__ = ["now_iso_utc_z", "now_iso", "monotonic_uptime"]
