"""Security utilities for rate limiting and parameter validation."""
from .rate_limiter import RateLimiter
from .input_validator import InputValidator

__all__ = [
    "RateLimiter",
    "InputValidator",
]
