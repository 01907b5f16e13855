"""
Pricing Engine - Resolves the dynamic price of one product under a context.

Resolution order:
1. Reject invalid products and non-positive prices
2. Return a cached result for (product, referrer, payment method, mode, context type)
3. Look up the product's candidate rules (per-product cache, then the compiled index)
4. Keep the rules whose referrer / payment context matches; highest priority wins
5. Apply the winner's adjustment, clamp at zero and round
6. Cache the result, including "no rule applied"
"""
import math
from contextlib import contextmanager
from typing import Any, Iterator, Optional, TYPE_CHECKING
from urllib.parse import urlparse

from ..cache.cache_manager import CacheManager
from ..config.logging_config import get_logger
from ..config.settings import Settings
from ..errors import InvalidInput
from .models import APPLICATION, CompiledRule, EvaluationContext, PriceQuote, Product
from .rule_matcher import RuleMatcher

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..rules.compile_rules import RuleCompiler

logger = get_logger("vibe_pricing.engine")


def normalize_referrer(referrer: Optional[str]) -> Optional[str]:
    """Reduce a referrer URL or host to a lower-cased host name."""
    if not referrer or not str(referrer).strip():
        return None
    value = str(referrer).strip().lower()
    if '://' in value:
        value = urlparse(value).hostname or ''
    else:
        value = value.split('/', 1)[0].split(':', 1)[0]
    return value or None


def coerce_price(value: Any) -> Optional[float]:
    """Positive float price, or None for anything else."""
    if isinstance(value, bool):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price) or price <= 0:
        return None
    return price


def is_valid_product(product: Any) -> bool:
    return isinstance(product, Product) and isinstance(product.id, int) and product.id > 0


def require_priceable(product: Any, original_price: Any) -> float:
    """Validated original price for the product. Raises InvalidInput."""
    if not is_valid_product(product):
        raise InvalidInput("product is not priceable", {"product": repr(product)[:100]})
    price = coerce_price(original_price)
    if price is None:
        raise InvalidInput("original price must be a positive finite number", {"price": repr(original_price)[:50]})
    return price


class PricingEngine:
    """
    Core pricing engine: holds the caller's evaluation context and resolves
    dynamic prices against the compiled rule index.

    Build one per request; the context lives on the instance.
    """

    def __init__(
        self,
        compiler: 'RuleCompiler',
        cache: CacheManager,
        settings: Settings,
        referrer: Optional[str] = None,
        payment_method: Optional[str] = None,
    ):
        self.compiler = compiler
        self.cache = cache
        self.settings = settings
        self.matcher = RuleMatcher(settings)
        self._context = EvaluationContext(
            referrer=normalize_referrer(referrer),
            payment_method=payment_method or None,
            apply_mode=settings.apply_mode,
            context_type=APPLICATION,
        )

    # -- context ------------------------------------------------------------

    @property
    def context(self) -> EvaluationContext:
        return self._context

    def get_current_referrer(self) -> Optional[str]:
        return self._context.referrer

    def set_current_referrer(self, referrer: Optional[str]) -> None:
        self._context = self._context.with_changes(referrer=normalize_referrer(referrer))

    def get_current_payment_method(self) -> Optional[str]:
        return self._context.payment_method

    def set_current_payment_method(self, payment_method: Optional[str]) -> None:
        """Change the payment method; pricing caches are dropped when it changes."""
        payment_method = payment_method or None
        if payment_method == self._context.payment_method:
            return
        self._context = self._context.with_changes(payment_method=payment_method)
        self.cache.clear_pricing_cache()
        logger.debug("Payment method changed, pricing cache cleared", payment_method=payment_method)

    @contextmanager
    def override_context(self, **changes: Any) -> Iterator[EvaluationContext]:
        """
        Temporarily evaluate under a modified context.

        The previous context is restored however the block exits. No cache
        invalidation happens for the temporary context.
        """
        previous = self._context
        if 'referrer' in changes:
            changes['referrer'] = normalize_referrer(changes['referrer'])
        self._context = previous.with_changes(**changes)
        try:
            yield self._context
        finally:
            self._context = previous

    def _resolve_context(self, context_type: str, context: Optional[EvaluationContext]) -> EvaluationContext:
        if context is not None:
            return context
        return self._context.with_changes(context_type=context_type)

    # -- rule resolution ----------------------------------------------------

    def get_product_rule_ids(self, product: Product) -> list[int]:
        """Context-free candidate rule ids, cached per product."""
        cached = self.cache.get_product_rules(product.id)
        if cached is not None:
            return list(cached)

        rule_ids = self.compiler.get_applicable_rule_ids(product)
        self.cache.set_product_rules(product.id, rule_ids, ttl=self.settings.product_rules_ttl)
        return rule_ids

    def rule_matches_context(self, rule: CompiledRule, context: Optional[EvaluationContext] = None) -> bool:
        return self.matcher.matches_context(rule, context or self._context)

    def get_applicable_rules(
        self,
        product: Product,
        context_type: str = APPLICATION,
        context: Optional[EvaluationContext] = None,
    ) -> list[CompiledRule]:
        """Rules that apply to the product under the context, best first."""
        if not is_valid_product(product):
            return []
        context = self._resolve_context(context_type, context)
        rules = self.compiler.get_rules_data(self.get_product_rule_ids(product))
        return self.matcher.filter_rules(rules, context)

    def has_applicable_rules_for_product(self, product: Product, payment_method: Optional[str] = None) -> bool:
        """Eligibility check under the application context for a payment method."""
        if self.settings.emergency_disable:
            return False
        changes = {'context_type': APPLICATION}
        if payment_method is not None:
            changes['payment_method'] = payment_method
        with self.override_context(**changes):
            return bool(self.get_applicable_rules(product, APPLICATION))

    # -- pricing ------------------------------------------------------------

    def calculate_dynamic_price(self, original_price: float, rule: CompiledRule) -> float:
        new_price, _ = self.matcher.apply_rule_to_price(rule, original_price)
        return new_price

    def get_dynamic_price(
        self,
        product: Product,
        original_price: Any,
        context_type: str = APPLICATION,
        context: Optional[EvaluationContext] = None,
    ) -> Optional[float]:
        """
        Dynamic price of a product, or None when no rule applies or the
        input is not priceable.
        """
        if self.settings.emergency_disable:
            return None
        try:
            price = require_priceable(product, original_price)
        except InvalidInput as exc:
            logger.debug("Price lookup skipped", **exc.to_dict())
            return None

        context = self._resolve_context(context_type, context)

        cached = self.cache.get_dynamic_price(product.id, context)
        if isinstance(cached, dict):
            logger.debug("Dynamic price cache hit", product_id=product.id)
            if cached.get('rule_id') is None:
                return None
            return cached.get('price')

        rules = self.get_applicable_rules(product, context=context)
        if not rules:
            self.cache.set_dynamic_price(
                product.id, context, {'price': price, 'rule_id': None}, ttl=self.settings.price_ttl
            )
            return None

        winner = rules[0]
        new_price = self.calculate_dynamic_price(price, winner)
        self.cache.set_dynamic_price(
            product.id, context, {'price': new_price, 'rule_id': winner.id}, ttl=self.settings.price_ttl
        )
        logger.debug(
            "Dynamic price resolved",
            product_id=product.id,
            rule_id=winner.id,
            original=price,
            price=new_price,
        )
        return new_price

    def get_dynamic_price_or_none(
        self,
        product: Product,
        original_price: Any,
        context_type: str = APPLICATION,
        context: Optional[EvaluationContext] = None,
    ) -> Optional[float]:
        """Like get_dynamic_price, but None also when the price is unchanged."""
        new_price = self.get_dynamic_price(product, original_price, context_type, context)
        if new_price is None:
            return None
        if abs(new_price - float(original_price)) < 10 ** -(self.settings.price_decimals + 1):
            return None
        return new_price

    def explain(self, product: Product, original_price: Any, context_type: str = APPLICATION) -> PriceQuote:
        """Resolve a price without touching the price cache and record every step."""
        price = coerce_price(original_price)
        quote = PriceQuote(
            product_id=getattr(product, 'id', None),
            original_price=price or 0.0,
        )
        context = self._resolve_context(context_type, None)
        quote.context = context

        if self.settings.emergency_disable:
            quote.add_trace("Emergency", "Dynamic pricing disabled")
            return quote
        try:
            price = require_priceable(product, original_price)
        except InvalidInput as exc:
            quote.add_trace("Input", exc.message, str(original_price))
            return quote

        quote.add_trace("Input", "Original price", f"{price:.2f}")
        quote.add_trace("Context", "Apply mode / context type", f"{context.apply_mode} / {context.context_type}")
        quote.add_trace("Context", "Referrer", context.referrer or "none")
        quote.add_trace("Context", "Payment method", context.payment_method or "none")

        candidates = self.compiler.get_applicable_rule_ids(product)
        quote.add_trace("Rules", "Candidate rules", ", ".join(map(str, candidates)) or "none")

        rules = self.matcher.filter_rules(self.compiler.get_rules_data(candidates), context)
        quote.add_trace("Rules", "Rules matching context", ", ".join(str(r.id) for r in rules) or "none")
        if not rules:
            quote.add_trace("Result", "No rule applies, standard price kept")
            return quote

        winner = rules[0]
        new_price, traces = self.matcher.apply_rule_to_price(winner, price)
        quote.add_trace("Winner", f"Rule {winner.id} '{winner.name}'", f"priority {winner.priority}")
        for message in traces:
            quote.add_trace("Adjustment", message)
        quote.dynamic_price = new_price
        quote.rule_id = winner.id
        quote.rule_name = winner.name
        quote.add_trace("Result", "Dynamic price", f"{new_price:.2f}")
        return quote
