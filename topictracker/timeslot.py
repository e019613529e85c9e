"""Minute-precision time slots used to rotate keys and DHT records."""

import math
import time

MAX_BOOTSTRAP_RECORDS = 100
"""Maximum number of bootstrap records kept per topic per minute slot."""


def unix_minute(minute_offset: int = 0) -> int:
    """Return the current Unix minute, shifted by ``minute_offset`` minutes."""
    return math.floor(time.time() / 60.0) + minute_offset