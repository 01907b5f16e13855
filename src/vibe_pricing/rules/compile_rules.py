"""
Rule Compiler - Validates stored rules and compiles them into an index.

Active rules are read from the rule store, their JSON blobs parsed once, and
the result bucketed by what the rule targets (products, categories, tags or
everything) so per-product lookups never scan the whole rule set. The index is
memoised on the compiler and cached through the cache manager.
"""
import hashlib
import json
import time
from typing import Callable, Iterable, Optional, Protocol

from ..cache.cache_manager import CacheManager
from ..config.logging_config import get_logger
from ..config.settings import Settings
from ..engine.conditions import (
    NoRestriction, parse_display_options, parse_price_adjustment,
    parse_product_conditions, parse_referrer_conditions,
)
from ..engine.models import (
    CompiledIndex, CompiledRule, PriceAdjustment, PricingRule, Product,
    ReferrerConditions,
)
from ..engine.rule_matcher import sort_rule_ids
from ..errors import DependencyUnavailable, MalformedRuleData

logger = get_logger("vibe_pricing.compiler")

INDEX_VERSION = '2.0'

VALID_DISCOUNT_INTEGRATIONS = {'apply', 'ignore'}


class RuleSource(Protocol):
    """Anything that can hand over the active rules, highest priority first."""

    def load_active_rules(self) -> list[PricingRule]: ...


def rule_hash(rule: PricingRule) -> str:
    """Stable content hash of the fields that change a rule's outcome."""
    payload = json.dumps(
        [
            rule.id,
            rule.priority,
            rule.referrer_conditions,
            rule.product_conditions,
            rule.price_adjustment,
        ],
        sort_keys=True,
    )
    return hashlib.sha1(payload.encode('utf-8')).hexdigest()


def validate_rule(rule: PricingRule) -> tuple[Optional[CompiledRule], list[str]]:
    """
    Strictly validate a rule.

    Returns (compiled_rule, errors) - compiled_rule is None if validation failed.
    """
    errors = []

    if not str(rule.name or '').strip():
        errors.append("name is required")
    if rule.status not in ('active', 'inactive'):
        errors.append(f"status must be 'active' or 'inactive', got '{rule.status}'")
    if rule.discount_integration not in VALID_DISCOUNT_INTEGRATIONS:
        errors.append(f"discount_integration must be one of {sorted(VALID_DISCOUNT_INTEGRATIONS)}")

    parsed = {}
    parsers = (
        ('referrer_conditions', parse_referrer_conditions),
        ('product_conditions', parse_product_conditions),
        ('price_adjustment', parse_price_adjustment),
        ('display_options', parse_display_options),
    )
    for field_name, parser in parsers:
        try:
            parsed[field_name] = parser(getattr(rule, field_name))
        except MalformedRuleData as exc:
            errors.append(exc.message)

    if errors:
        return None, errors

    return CompiledRule(
        id=rule.id,
        name=rule.name,
        priority=rule.priority,
        referrer=parsed['referrer_conditions'],
        conditions=parsed['product_conditions'],
        adjustment=parsed['price_adjustment'],
        discount_integration=rule.discount_integration,
        display_options=parsed['display_options'],
        hash=rule_hash(rule),
    ), []


class RuleCompiler:
    """Builds, caches and queries the compiled rule index."""

    def __init__(
        self,
        store: RuleSource,
        cache: CacheManager,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._index: Optional[CompiledIndex] = None
        self._metrics = {
            'compile_time': 0.0,
            'rules_processed': 0,
            'malformed_rules': 0,
            'compilations': 0,
            'cache_hits': 0,
            'cache_misses': 0,
        }

    # -- index lifecycle ----------------------------------------------------

    def get_compiled_index(self) -> CompiledIndex:
        """Memo, then cache, then a fresh compile."""
        if self._index is not None:
            return self._index

        cached = self.cache.get_pricing_rules()
        if isinstance(cached, CompiledIndex) and cached.is_consistent():
            self._metrics['cache_hits'] += 1
            logger.debug("Compiled index cache hit", rules=len(cached.rule_data))
            self._index = cached
            return cached

        self._metrics['cache_misses'] += 1
        return self.compile_rule_index()

    def compile_rule_index(self) -> CompiledIndex:
        """Load active rules from the store and rebuild the index."""
        started = time.perf_counter()
        try:
            rules = self.store.load_active_rules()
        except DependencyUnavailable as exc:
            # Not cached and not memoised so the next request retries the store
            logger.error("Rule store unavailable, using empty index", error=exc.message)
            return CompiledIndex(compiled_at=self._clock(), version=INDEX_VERSION)

        index = CompiledIndex(compiled_at=self._clock(), version=INDEX_VERSION)
        for rule in rules:
            compiled = self.compile_single_rule(rule)
            index.rule_data[compiled.id] = compiled
            self._add_to_buckets(index, compiled)

        elapsed = time.perf_counter() - started
        self._metrics['compile_time'] = elapsed
        self._metrics['rules_processed'] = len(rules)
        self._metrics['compilations'] += 1

        self.cache.set_pricing_rules(index, ttl=self.settings.index_ttl)
        self._index = index
        logger.info(
            "Rule index compiled",
            rules=len(index.rule_data),
            global_rules=len(index.global_rules),
            seconds=round(elapsed, 4),
        )
        return index

    def compile_single_rule(self, rule: PricingRule) -> CompiledRule:
        """
        Parse one rule's blobs, falling back to the least restrictive value
        for any blob that does not parse.
        """
        malformed = []

        try:
            referrer = parse_referrer_conditions(rule.referrer_conditions)
        except MalformedRuleData as exc:
            self._log_malformed(rule, 'referrer_conditions', exc)
            referrer = ReferrerConditions(malformed=True)
            malformed.append('referrer_conditions')

        try:
            conditions = parse_product_conditions(rule.product_conditions)
        except MalformedRuleData as exc:
            self._log_malformed(rule, 'product_conditions', exc)
            conditions = NoRestriction(reason=exc.message)
            malformed.append('product_conditions')

        try:
            adjustment = parse_price_adjustment(rule.price_adjustment)
        except MalformedRuleData as exc:
            self._log_malformed(rule, 'price_adjustment', exc)
            adjustment = PriceAdjustment()
            malformed.append('price_adjustment')

        try:
            display_options = parse_display_options(rule.display_options)
        except MalformedRuleData as exc:
            self._log_malformed(rule, 'display_options', exc)
            display_options = {}
            malformed.append('display_options')

        if malformed:
            self._metrics['malformed_rules'] += 1

        return CompiledRule(
            id=rule.id,
            name=rule.name,
            priority=rule.priority,
            referrer=referrer,
            conditions=conditions,
            adjustment=adjustment,
            discount_integration=rule.discount_integration or 'apply',
            display_options=display_options,
            hash=rule_hash(rule),
            malformed_fields=tuple(malformed),
        )

    def _log_malformed(self, rule: PricingRule, field_name: str, exc: MalformedRuleData):
        logger.warning(
            "Malformed rule data, using fallback",
            rule_id=rule.id,
            field=field_name,
            error=exc.message,
        )

    def _add_to_buckets(self, index: CompiledIndex, rule: CompiledRule):
        conditions = rule.conditions
        target = rule.target_type

        if target == 'specific':
            for product_id in sorted(conditions.product_ids):
                index.product_rules.setdefault(product_id, []).append(rule.id)
        elif target == 'categories' and conditions.category_ids:
            for category_id in sorted(conditions.category_ids):
                index.category_rules.setdefault(category_id, []).append(rule.id)
        elif target == 'tags' and conditions.tag_ids:
            for tag_id in sorted(conditions.tag_ids):
                index.tag_rules.setdefault(tag_id, []).append(rule.id)
        else:
            # all, price_range, complex, fallbacks and empty selections
            index.global_rules.append(rule.id)

    def invalidate_index(self) -> None:
        """Forget the compiled index and everything priced from it."""
        self._index = None
        self.cache.delete_pricing_rules()
        self.cache.clear_pricing_cache()
        logger.info("Rule index invalidated")

    def warm_up_index(self) -> dict:
        """Compile (or load) the index ahead of traffic."""
        self.get_compiled_index()
        return self.get_index_stats()

    # -- queries ------------------------------------------------------------

    def get_applicable_rule_ids(self, product: Product, index: Optional[CompiledIndex] = None) -> list[int]:
        """
        Rule ids whose product conditions hold for the product, highest
        priority first. Referrer and payment context are not considered here.
        """
        if index is None:
            index = self.get_compiled_index()

        candidates = set(index.product_rules.get(product.id, ()))
        for category_id in product.category_ids:
            candidates.update(index.category_rules.get(category_id, ()))
        for tag_id in product.tag_ids:
            candidates.update(index.tag_rules.get(tag_id, ()))
        candidates.update(index.global_rules)

        confirmed = [
            rid for rid in candidates
            if rid in index.rule_data and index.rule_data[rid].conditions.matches(product)
        ]
        return sort_rule_ids(confirmed, index)

    def get_rules_data(self, rule_ids: Iterable[int], index: Optional[CompiledIndex] = None) -> list[CompiledRule]:
        """Compiled rules for the ids, in the order given; unknown ids are skipped."""
        if index is None:
            index = self.get_compiled_index()
        return [index.rule_data[rid] for rid in rule_ids if rid in index.rule_data]

    # -- diagnostics --------------------------------------------------------

    def get_metrics(self) -> dict:
        return dict(self._metrics)

    def get_index_stats(self) -> dict:
        index = self.get_compiled_index()
        return {
            'total_rules': len(index.rule_data),
            'product_buckets': len(index.product_rules),
            'category_buckets': len(index.category_rules),
            'tag_buckets': len(index.tag_rules),
            'global_rules': len(index.global_rules),
            'malformed_rules': sum(1 for r in index.rule_data.values() if r.malformed_fields),
            'compiled_at': index.compiled_at,
            'version': index.version,
        }
