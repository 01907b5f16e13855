"""
Cache Manager - namespaced, domain-aware facade over the tiered cache.

Keys look like ``{namespace}:{section}:{key}``. The ``index`` section holds the
compiled rule index; the ``pricing`` section holds everything derived from it
(product rule lists, dynamic prices, cart analyses) so pricing caches can be
dropped without forcing a recompile.
"""
import hashlib
from typing import Any, Optional, TYPE_CHECKING

from ..config.logging_config import get_logger
from ..config.settings import Settings
from .tiers import MemoryTier, RedisTier, SqliteTier, TieredCache

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..engine.models import EvaluationContext


INDEX_SECTION = 'index'
PRICING_SECTION = 'pricing'

# Longer keys keep their prefix but hash the tail
MAX_KEY_LENGTH = 165


class CacheManager:
    """Manager for the pricing engine's caches."""

    def __init__(
        self,
        cache: TieredCache,
        namespace: str = 'vibe_dynamic_pricing',
        default_ttl: int = 3600,
    ):
        self.cache = cache
        self.namespace = namespace
        self.default_ttl = default_ttl
        self.logger = get_logger("vibe_pricing.cache_manager")

    # -- key handling -------------------------------------------------------

    def make_key(self, key: str, section: str = PRICING_SECTION) -> str:
        """Generate a namespaced cache key."""
        prefix = f"{self.namespace}:{section}:"
        full_key = prefix + key
        if len(full_key) > MAX_KEY_LENGTH:
            # Keep "kind:id:" so prefix deletes still find the key
            parts = key.split(':', 2)
            head = ':'.join(parts[:2]) if len(parts) == 3 else ''
            tail = parts[2] if len(parts) == 3 else key
            digest = 'h_' + hashlib.md5(tail.encode('utf-8')).hexdigest()
            full_key = prefix + (f"{head}:{digest}" if head else digest)
        return full_key

    # -- generic operations -------------------------------------------------

    def get(self, key: str, section: str = PRICING_SECTION) -> Optional[Any]:
        return self.cache.get(self.make_key(key, section))

    def set(self, key: str, value: Any, ttl: Optional[int] = None, section: str = PRICING_SECTION) -> bool:
        if ttl is None:
            ttl = self.default_ttl
        return self.cache.set(self.make_key(key, section), value, ttl)

    def delete(self, key: str, section: str = PRICING_SECTION) -> bool:
        return self.cache.delete(self.make_key(key, section))

    def clear_namespace(self, section: Optional[str] = None) -> bool:
        """Drop one section, or everything under the namespace."""
        prefix = f"{self.namespace}:"
        if section:
            prefix += f"{section}:"
        self.logger.info("Clearing cache namespace", prefix=prefix)
        return self.cache.clear_prefix(prefix)

    def clear_prefix(self, key_prefix: str, section: str = PRICING_SECTION) -> bool:
        return self.cache.clear_prefix(f"{self.namespace}:{section}:{key_prefix}")

    def clear_pricing_cache(self) -> bool:
        """Clear every cache derived from the rule index."""
        return self.clear_namespace(PRICING_SECTION)

    # -- domain helpers -----------------------------------------------------

    def get_pricing_rules(self) -> Optional[Any]:
        """Get the compiled rule index from cache."""
        return self.get('compiled_rule_index_v2', section=INDEX_SECTION)

    def set_pricing_rules(self, index: Any, ttl: Optional[int] = None) -> bool:
        return self.set('compiled_rule_index_v2', index, ttl, section=INDEX_SECTION)

    def delete_pricing_rules(self) -> bool:
        return self.delete('compiled_rule_index_v2', section=INDEX_SECTION)

    def get_product_rules(self, product_id: int) -> Optional[list[int]]:
        """Get the cached (context-free) applicable rule ids of a product."""
        return self.get(f"product_rules:{product_id}")

    def set_product_rules(self, product_id: int, rule_ids: list[int], ttl: Optional[int] = None) -> bool:
        return self.set(f"product_rules:{product_id}", list(rule_ids), ttl)

    def get_dynamic_price(self, product_id: int, context: 'EvaluationContext') -> Optional[dict]:
        """Get a cached price entry for a product under a context."""
        return self.get(f"dynamic_price:{product_id}:{context.cache_token()}")

    def set_dynamic_price(
        self,
        product_id: int,
        context: 'EvaluationContext',
        entry: dict,
        ttl: Optional[int] = None,
    ) -> bool:
        return self.set(f"dynamic_price:{product_id}:{context.cache_token()}", entry, ttl)

    def get_cart_analysis(self, cache_key: str) -> Optional[Any]:
        return self.get(cache_key)

    def set_cart_analysis(self, cache_key: str, analysis: Any, ttl: Optional[int] = None) -> bool:
        return self.set(cache_key, analysis, ttl)

    def clear_cart_analysis(self, fingerprint: Optional[str] = None) -> bool:
        """Drop cached analyses of one cart fingerprint, or of every cart."""
        if fingerprint:
            return self.clear_prefix(f"cart_analysis:{fingerprint}:")
        return self.clear_prefix("cart_analysis:")

    def invalidate_product_cache(self, product_id: int) -> bool:
        """Drop the rule list and every cached price of one product."""
        rules_deleted = self.delete(f"product_rules:{product_id}")
        prices_deleted = self.clear_prefix(f"dynamic_price:{product_id}:")
        return rules_deleted and prices_deleted

    # -- maintenance --------------------------------------------------------

    def cleanup_expired_cache(self) -> int:
        """Sweep expired entries from tiers that keep them around."""
        removed = self.cache.purge_expired()
        self.logger.info("Expired cache entries purged", removed=removed)
        return removed

    def get_cache_stats(self) -> dict:
        return {
            'namespace': self.namespace,
            'tiers': [tier.name for tier in self.cache.tiers],
            'per_tier': self.cache.stats(),
        }


def build_cache_manager(settings: Settings) -> CacheManager:
    """
    Build the cache stack described by the settings.

    The memory tier is always present; Redis and SQLite tiers are added when a
    location is configured for them. SQLite opens on first use, so a bad cache
    path only ever costs that tier.
    """
    logger = get_logger("vibe_pricing.cache_manager")
    tiers = [MemoryTier()]
    if settings.redis_url:
        try:
            tiers.append(RedisTier.from_url(settings.redis_url))
        except ValueError as exc:
            logger.warning("Redis tier disabled", error=str(exc))
    if settings.cache_db_path:
        tiers.append(SqliteTier(settings.cache_db_path))

    logger.debug("Cache tiers built", tiers=[tier.name for tier in tiers])
    return CacheManager(
        TieredCache(tiers, backfill_ttl=settings.cache_default_ttl),
        namespace=settings.cache_namespace,
        default_ttl=settings.cache_default_ttl,
    )
