"""
Honoring: external fulfillment of cleared obligations.

Honoring runs after clearing and never changes it. A failed, rejected
or abandoned fulfillment leaves the ledger transfer exactly as posted.
"""

from .dispatcher import HonoringDispatcher, RateLimit, RateLimiter
from .protocol import (
    HonoringAdapter,
    HonoringError,
    classify_error,
    external_reference,
)
from .retry import RetryPolicy, honor_with_retry

__all__ = [
    "HonoringDispatcher",
    "RateLimit",
    "RateLimiter",
    "HonoringAdapter",
    "HonoringError",
    "classify_error",
    "external_reference",
    "RetryPolicy",
    "honor_with_retry",
]
