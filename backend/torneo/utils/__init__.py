"""Utility modules."""

from torneo.utils.clock import Clock, SystemClock, ensure_utc
from torneo.utils.json_utils import json_dumps, json_loads

__all__ = [
    "Clock",
    "SystemClock",
    "ensure_utc",
    "json_dumps",
    "json_loads",
]
