from .backends import Cache, InMemoryCache, RedisCache, create_cache

__all__ = ["Cache", "InMemoryCache", "RedisCache", "create_cache"]
