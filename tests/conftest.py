import json
import os
import sys

import pytest

# Add src to path for internal imports
src_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from vibe_pricing.cache.cache_manager import CacheManager
from vibe_pricing.cache.tiers import MemoryTier, TieredCache
from vibe_pricing.config.settings import Settings
from vibe_pricing.engine.cart_processor import CartProcessor
from vibe_pricing.engine.models import PricingRule, Product
from vibe_pricing.engine.pricing_engine import PricingEngine
from vibe_pricing.errors import RuleStoreError
from vibe_pricing.rules.compile_rules import RuleCompiler
from vibe_pricing.storage.catalog import InMemoryCatalog


class FakeClock:
    """Manually advanced clock shared by tiers and the compiler."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRuleStore:
    """In-memory rule store; ``fail`` makes reads raise like a dead database."""

    def __init__(self, rules=()):
        self.rules = list(rules)
        self.fail = False
        self.calls = 0

    def load_active_rules(self):
        self.calls += 1
        if self.fail:
            raise RuleStoreError("database is locked")
        active = [r for r in self.rules if r.status == 'active']
        return sorted(active, key=lambda r: (-r.priority, r.id))


class BrokenTier:
    """Cache tier whose every operation raises."""

    name = "broken"

    def get(self, key):
        raise ConnectionError("tier down")

    def set(self, key, value, ttl):
        raise ConnectionError("tier down")

    def delete(self, key):
        raise ConnectionError("tier down")

    def clear_prefix(self, prefix):
        raise ConnectionError("tier down")


def _blob(value):
    if value is None:
        return ''
    if isinstance(value, str):
        return value
    return json.dumps(value)


def build_rule(
    rule_id,
    priority=0,
    conditions=None,
    adjustment=None,
    referrer=None,
    status='active',
    name=None,
):
    return PricingRule(
        id=rule_id,
        name=name or f"Rule {rule_id}",
        priority=priority,
        status=status,
        referrer_conditions=_blob(referrer),
        product_conditions=_blob(conditions if conditions is not None else {'target_type': 'all'}),
        price_adjustment=_blob(adjustment if adjustment is not None else {'type': 'percentage', 'value': 10}),
    )


@pytest.fixture
def make_rule():
    return build_rule


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tiers(clock):
    """Fast, medium and durable tiers, all as in-memory fakes."""
    return [MemoryTier(clock), MemoryTier(clock), MemoryTier(clock)]


@pytest.fixture
def cache(tiers):
    return CacheManager(TieredCache(tiers), namespace='test_pricing', default_ttl=3600)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def store():
    return FakeRuleStore()


@pytest.fixture
def compiler(store, cache, settings, clock):
    return RuleCompiler(store, cache, settings, clock=clock)


@pytest.fixture
def engine(compiler, cache, settings):
    return PricingEngine(compiler, cache, settings, referrer='shop.vibe.ir', payment_method='vibe')


@pytest.fixture
def products():
    return {
        101: Product(id=101, price=1000.0, category_ids=(5,), category_slugs=('shoes',), tag_ids=(7,), tag_slugs=('sale',)),
        102: Product(id=102, price=500.0, category_ids=(6,), category_slugs=('bags',)),
        103: Product(id=103, price=200.0),
        110: Product(id=110, price=300.0, product_type='variable', category_ids=(8,)),
        111: Product(id=111, price=320.0, product_type='variation', parent_id=110),
    }


@pytest.fixture
def catalog(products):
    return InMemoryCatalog(products.values())


@pytest.fixture
def cart_processor(compiler, engine, cache, catalog, settings):
    return CartProcessor(compiler, engine, cache, catalog, settings)
