"""Redis-backed TTL cache."""

from omnitwin.cache.layer import CacheLayer, DigitalTwinSnapshot, SessionData

__all__ = ["CacheLayer", "DigitalTwinSnapshot", "SessionData"]
