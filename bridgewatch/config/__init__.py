"""
Configuration package.

Environment-driven settings loaded once at startup.
"""

from bridgewatch.config.config import Settings, NETWORK_DEFAULTS

__all__ = [
    "Settings",
    "NETWORK_DEFAULTS",
]
