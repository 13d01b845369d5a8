"""
Shared utility functions.
"""
import math
import secrets
import time
from typing import Optional

EARTH_RADIUS_KM = 6371.0
SECONDS_PER_DAY = 86400


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Great circle distance between two points.

    Args:
        lat1, lng1: First point in degrees
        lat2, lng2: Second point in degrees

    Returns:
        Distance in kilometers
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def days(n: float) -> int:
    """Convert days to whole seconds."""
    return int(n * SECONDS_PER_DAY)


def now_ts() -> int:
    """Current Unix time in whole seconds."""
    return int(time.time())


def new_id(prefix: str = "") -> str:
    """Random 128-bit hex identifier, optionally prefixed."""
    token = secrets.token_hex(16)
    return f"{prefix}_{token}" if prefix else token


class Timer:
    """Context manager for timing operations."""

    def __init__(self, name: str = "Operation"):
        self.name = name
        self.start_time: Optional[float] = None
        self.elapsed: Optional[float] = None

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        self.elapsed = time.perf_counter() - self.start_time

    @property
    def elapsed_ms(self) -> float:
        """Get elapsed time in milliseconds."""
        if self.elapsed is None:
            if self.start_time is not None:
                return (time.perf_counter() - self.start_time) * 1000
            return 0.0
        return self.elapsed * 1000
