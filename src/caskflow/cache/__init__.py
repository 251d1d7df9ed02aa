from .store import CacheEntry, CacheSnapshot, CacheStore

__all__ = ["CacheEntry", "CacheSnapshot", "CacheStore"]
