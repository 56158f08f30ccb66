"""
Dispatch layer: rate-limited execution queue and the ClickUp client
"""

from .rate_limit import RateLimitedDispatcher, RateWindow, is_throttle_error
from .clickup import ClickUpClient

__all__ = [
    "RateLimitedDispatcher",
    "RateWindow",
    "is_throttle_error",
    "ClickUpClient",
]
