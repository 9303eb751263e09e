"""Request protection helpers for the billing HTTP surface."""

from .rate_limit import RateLimiter, RateLimitExceeded

__all__ = ["RateLimitExceeded", "RateLimiter"]
