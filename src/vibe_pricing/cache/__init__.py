"""Cache subpackage - tiered cache backends and the pricing cache manager."""
from .tiers import CacheTier, MemoryTier, RedisTier, SqliteTier, TieredCache
from .cache_manager import CacheManager, build_cache_manager

__all__ = [
    'CacheTier', 'MemoryTier', 'RedisTier', 'SqliteTier', 'TieredCache',
    'CacheManager', 'build_cache_manager',
]
