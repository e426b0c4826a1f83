"""
Common utilities for the CoinTrack client.

Modules:
- cointrack: async backend client with the one-shot refresh interceptor
- cache: query cache with prefix invalidation and in-flight de-duplication
- config: environment-driven settings
- log: structlog configuration
"""

__all__ = [
    "cointrack",
    "cache",
    "config",
    "log",
]
