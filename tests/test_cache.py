"""Tests for the cache tiers, the tiered cache and the cache manager."""
import pickle
from unittest.mock import MagicMock

import pytest

from conftest import BrokenTier
from vibe_pricing.cache.cache_manager import CacheManager, build_cache_manager
from vibe_pricing.cache.tiers import MemoryTier, RedisTier, SqliteTier, TieredCache
from vibe_pricing.config.settings import Settings
from vibe_pricing.engine.models import EvaluationContext
from vibe_pricing.errors import CacheTierError


# -- tiers -------------------------------------------------------------------

def test_memory_tier_expires_entries(clock):
    tier = MemoryTier(clock)
    tier.set('a', 1, 10)
    assert tier.get('a') == 1
    clock.advance(11)
    assert tier.get('a') is None, "Entry should expire after its TTL"


def test_memory_tier_purge_expired(clock):
    tier = MemoryTier(clock)
    tier.set('old', 1, 5)
    tier.set('new', 2, 500)
    clock.advance(10)
    assert tier.purge_expired() == 1
    assert len(tier) == 1


def test_sqlite_tier_roundtrip_and_expiry(tmp_path, clock):
    tier = SqliteTier(tmp_path / 'cache.sqlite3', clock)
    assert tier.set('key', {'price': 950.0}, 60)
    assert tier.get('key') == {'price': 950.0}

    clock.advance(61)
    assert tier.get('key') is None, "Reads must ignore expired rows"
    assert tier.purge_expired() == 1
    assert tier.stats()['entries'] == 0
    tier.close()


def test_sqlite_tier_prefix_delete_escapes_wildcards(tmp_path, clock):
    tier = SqliteTier(tmp_path / 'cache.sqlite3', clock)
    tier.set('ns_a:1', 1, 60)
    tier.set('nsXa:1', 2, 60)

    tier.clear_prefix('ns_a:')

    assert tier.get('ns_a:1') is None
    assert tier.get('nsXa:1') == 2, "'_' in a prefix must not act as a wildcard"
    tier.close()


def test_sqlite_tier_in_memory_database(clock):
    tier = SqliteTier(':memory:', clock)
    tier.set('k', 'v', 60)
    assert tier.get('k') == 'v'


def test_redis_tier_uses_setex_and_pickle():
    client = MagicMock()
    client.setex.return_value = True
    tier = RedisTier(client)

    assert tier.set('k', {'a': 1}, 60) is True
    client.setex.assert_called_once_with('k', 60, pickle.dumps({'a': 1}))

    client.get.return_value = pickle.dumps(42)
    assert tier.get('k') == 42

    client.get.return_value = None
    assert tier.get('missing') is None


def test_redis_tier_prefix_delete_scans():
    client = MagicMock()
    client.scan_iter.return_value = iter([b'p:1', b'p:2'])
    tier = RedisTier(client)

    assert tier.clear_prefix('p:') is True
    client.scan_iter.assert_called_once_with(match='p:*', count=500)
    client.delete.assert_called_once_with(b'p:1', b'p:2')


def test_sqlite_tier_remaining_ttl(tmp_path, clock):
    tier = SqliteTier(tmp_path / 'cache.sqlite3', clock)
    tier.set('k', 'v', 60)
    clock.advance(20)
    assert tier.remaining_ttl('k') == 40
    assert tier.remaining_ttl('missing') is None
    tier.close()


def test_sqlite_tier_unusable_path_raises_tier_error(tmp_path, clock):
    blocker = tmp_path / 'not_a_dir'
    blocker.write_text('')
    tier = SqliteTier(blocker / 'cache.sqlite3', clock)

    with pytest.raises(CacheTierError):
        tier.get('k')


def test_redis_tier_remaining_ttl():
    client = MagicMock()
    tier = RedisTier(client)

    client.pttl.return_value = 1500
    assert tier.remaining_ttl('k') == 1.5

    client.pttl.return_value = -1
    assert tier.remaining_ttl('k') is None, "No expiry set"
    client.pttl.return_value = -2
    assert tier.remaining_ttl('k') is None, "Missing key"


# -- tiered cache ------------------------------------------------------------

def test_get_falls_through_and_backfills(tiers):
    cache = TieredCache(tiers)
    tiers[2].set('k', 'durable', 60)

    assert cache.get('k') == 'durable'
    assert tiers[0].get('k') == 'durable', "Fast tier should be backfilled"
    assert tiers[1].get('k') == 'durable', "Medium tier should be backfilled"


def test_backfill_keeps_remaining_lifetime(clock):
    fast, slow = MemoryTier(clock), MemoryTier(clock)
    cache = TieredCache([fast, slow], backfill_ttl=3600)
    slow.set('k', 'v', 1800)

    clock.advance(1700)
    assert cache.get('k') == 'v'
    assert fast.remaining_ttl('k') == 100

    clock.advance(101)
    assert fast.get('k') is None, "Backfilled entry must not outlive its TTL"
    assert cache.get('k') is None


def test_backfill_is_capped_by_backfill_ttl(clock):
    fast, slow = MemoryTier(clock), MemoryTier(clock)
    cache = TieredCache([fast, slow], backfill_ttl=60)
    slow.set('k', 'v', 1800)

    cache.get('k')

    assert fast.remaining_ttl('k') == 60


def test_backfill_without_remaining_ttl_uses_backfill_ttl(clock):
    fast = MemoryTier(clock)
    slow = MagicMock(spec=['name', 'get', 'set', 'delete', 'clear_prefix'])
    slow.get.return_value = 'v'
    cache = TieredCache([fast, slow], backfill_ttl=120)

    assert cache.get('k') == 'v'
    assert fast.remaining_ttl('k') == 120


def test_medium_hit_backfills_only_faster_tier(tiers):
    cache = TieredCache(tiers)
    tiers[1].set('k', 'medium', 60)

    assert cache.get('k') == 'medium'
    assert tiers[0].get('k') == 'medium'
    assert tiers[2].get('k') is None


def test_set_writes_every_tier(tiers):
    cache = TieredCache(tiers)
    assert cache.set('k', 'v', 60) is True
    assert all(tier.get('k') == 'v' for tier in tiers)


def test_failing_tier_does_not_block_others(clock):
    fast, durable = MemoryTier(clock), MemoryTier(clock)
    cache = TieredCache([fast, BrokenTier(), durable])

    assert cache.set('k', 'v', 60) is False, "Overall success is the AND of tier results"
    assert fast.get('k') == 'v'
    assert durable.get('k') == 'v'


def test_failing_tier_counts_as_miss(clock):
    durable = MemoryTier(clock)
    durable.set('k', 'v', 60)
    cache = TieredCache([BrokenTier(), durable])

    assert cache.get('k') == 'v'
    assert cache.get('missing') is None


def test_delete_and_clear_prefix_are_symmetric(tiers):
    cache = TieredCache(tiers)
    cache.set('a:1', 1, 60)
    cache.set('a:2', 2, 60)
    cache.set('b:1', 3, 60)

    cache.delete('a:1')
    cache.clear_prefix('a:')

    for tier in tiers:
        assert tier.get('a:1') is None
        assert tier.get('a:2') is None
        assert tier.get('b:1') == 3


# -- cache manager -----------------------------------------------------------

def test_make_key_is_namespaced(cache):
    assert cache.make_key('product_rules:5') == 'test_pricing:pricing:product_rules:5'
    assert cache.make_key('compiled_rule_index_v2', section='index') == 'test_pricing:index:compiled_rule_index_v2'


def test_long_keys_are_hashed_but_keep_their_prefix(cache):
    key = cache.make_key('cart_analysis:abc:' + 'x' * 300)
    assert key.startswith('test_pricing:pricing:cart_analysis:abc:h_')
    assert len(key) < 165


def test_clear_pricing_cache_keeps_index(cache):
    cache.set_pricing_rules('index')
    cache.set_product_rules(1, [3, 7])

    cache.clear_pricing_cache()

    assert cache.get_product_rules(1) is None
    assert cache.get_pricing_rules() == 'index'


def test_invalidate_product_cache(cache):
    context = EvaluationContext(referrer='shop.vibe.ir', payment_method='vibe')
    cache.set_product_rules(5, [1])
    cache.set_dynamic_price(5, context, {'price': 1.0, 'rule_id': 1})
    cache.set_dynamic_price(50, context, {'price': 2.0, 'rule_id': 1})

    cache.invalidate_product_cache(5)

    assert cache.get_product_rules(5) is None
    assert cache.get_dynamic_price(5, context) is None
    assert cache.get_dynamic_price(50, context) == {'price': 2.0, 'rule_id': 1}


def test_dynamic_price_keys_depend_on_context(cache):
    display = EvaluationContext(payment_method='vibe', context_type='display')
    application = EvaluationContext(payment_method='vibe', context_type='application')
    cache.set_dynamic_price(5, display, {'price': 1.0, 'rule_id': 1})

    assert cache.get_dynamic_price(5, application) is None


def test_cleanup_expired_cache(cache, clock):
    cache.set('short', 1, ttl=10)
    clock.advance(20)
    assert cache.cleanup_expired_cache() == 3, "One expired entry per tier"


def test_cache_stats_lists_tiers(cache):
    stats = cache.get_cache_stats()
    assert stats['namespace'] == 'test_pricing'
    assert stats['tiers'] == ['memory', 'memory', 'memory']


def test_build_cache_manager_from_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(RedisTier, 'from_url', classmethod(lambda cls, url: cls(MagicMock())))
    settings = Settings(redis_url='redis://localhost:6379/0', cache_db_path=tmp_path / 'cache.sqlite3')

    manager = build_cache_manager(settings)

    assert isinstance(manager, CacheManager)
    assert [tier.name for tier in manager.cache.tiers] == ['memory', 'redis', 'sqlite']


def test_build_cache_manager_memory_only():
    manager = build_cache_manager(Settings())
    assert [tier.name for tier in manager.cache.tiers] == ['memory']


def test_build_cache_manager_survives_unusable_cache_path(tmp_path):
    blocker = tmp_path / 'not_a_dir'
    blocker.write_text('')

    manager = build_cache_manager(Settings(cache_db_path=blocker / 'cache.sqlite3'))

    assert [tier.name for tier in manager.cache.tiers] == ['memory', 'sqlite']
    assert manager.set('k', 'v') is False, "The SQLite tier fails on its own"
    assert manager.get('k') == 'v'


def test_build_cache_manager_skips_invalid_redis_url():
    manager = build_cache_manager(Settings(redis_url='not-a-redis-url'))
    assert [tier.name for tier in manager.cache.tiers] == ['memory']


@pytest.mark.parametrize('ttl', [None, 120])
def test_set_uses_default_ttl(cache, clock, ttl):
    cache.set('k', 'v', ttl=ttl)
    clock.advance(100)
    assert cache.get('k') == 'v'
