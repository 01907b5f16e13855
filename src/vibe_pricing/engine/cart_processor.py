"""
Cart Processor - Evaluates a whole cart in one pass.

Product entities are batch-loaded once and the compiled index fetched once,
so the cost is linear in the number of cart lines instead of re-resolving
rules for every line separately.
"""
import time
from typing import Optional, TYPE_CHECKING

from ..cache.cache_manager import CacheManager
from ..config.logging_config import get_logger
from ..config.settings import Settings
from ..errors import CatalogError
from .models import (
    Cart, CartAdjustment, CartAnalysisResult, CartItemAnalysis, EvaluationContext,
    Product,
)
from .pricing_engine import PricingEngine
from .rule_matcher import context_type_for, sort_rule_ids

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..rules.compile_rules import RuleCompiler
    from ..storage.catalog import ProductCatalog

logger = get_logger("vibe_pricing.cart")

GATEWAY_CHECK = 'gateway_check'

FEE_ADJUSTMENT = 'Dynamic Pricing Adjustment'
FEE_DISCOUNT = 'Dynamic Pricing Discount'

CART_KEY_VERSION = 'v2'


class CartProcessor:
    """Cart-level rule evaluation for gateway eligibility and fees."""

    def __init__(
        self,
        compiler: 'RuleCompiler',
        engine: PricingEngine,
        cache: CacheManager,
        catalog: 'ProductCatalog',
        settings: Settings,
    ):
        self.compiler = compiler
        self.engine = engine
        self.cache = cache
        self.catalog = catalog
        self.settings = settings
        self._metrics = self._empty_metrics()

    @staticmethod
    def _empty_metrics() -> dict:
        return {
            'analyses': 0,
            'cache_hits': 0,
            'cache_misses': 0,
            'items_processed': 0,
            'batch_load_failures': 0,
            'total_time': 0.0,
        }

    # -- analysis -----------------------------------------------------------

    def cart_cache_key(self, cart: Cart, context: str, payment_method: str) -> str:
        referrer = self.engine.get_current_referrer() or 'no_referrer'
        return ":".join([
            'cart_analysis',
            cart.fingerprint(),
            context,
            payment_method,
            referrer,
            self.settings.apply_mode,
            CART_KEY_VERSION,
        ])

    def analyze_cart(
        self,
        cart: Cart,
        context: str = GATEWAY_CHECK,
        payment_method: Optional[str] = None,
    ) -> CartAnalysisResult:
        """
        Decide whether the cart qualifies for the dynamic-pricing gateway and
        report which lines have rules.
        """
        payment_method = payment_method or self.settings.gateway_id

        if self.settings.emergency_disable or cart is None or cart.is_empty:
            return CartAnalysisResult(
                gateway_available=False,
                context=context,
                payment_method=payment_method,
            )

        cache_key = self.cart_cache_key(cart, context, payment_method)
        cached = self.cache.get_cart_analysis(cache_key)
        if isinstance(cached, CartAnalysisResult):
            self._metrics['cache_hits'] += 1
            logger.debug("Cart analysis cache hit", lines=len(cart))
            return cached
        self._metrics['cache_misses'] += 1

        started = time.perf_counter()

        # One traversal for every product id the lines need
        product_ids = set()
        for line in cart.lines:
            product_ids.add(line.line_product_id)
            if line.parent_product_id:
                product_ids.add(line.parent_product_id)

        products = self._load_products(sorted(product_ids))
        index = self.compiler.get_compiled_index()
        evaluation = EvaluationContext(
            referrer=self.engine.get_current_referrer(),
            payment_method=payment_method,
            apply_mode=self.settings.apply_mode,
            context_type=context_type_for(context),
        )

        result = CartAnalysisResult(
            gateway_available=True,
            total_items=len(cart),
            context=context,
            payment_method=payment_method,
        )
        for line in cart.lines:
            item = self._analyze_line(line, products, index, evaluation)
            result.items[line.key] = item
            if item.has_rules:
                result.items_with_rules += 1
            if item.error is not None:
                result.gateway_available = False
            elif not item.has_rules and context == GATEWAY_CHECK:
                result.gateway_available = False

        elapsed = time.perf_counter() - started
        result.performance = {
            'seconds': round(elapsed, 6),
            'products_loaded': len(products),
            'rules_in_index': len(index.rule_data),
        }
        self._metrics['analyses'] += 1
        self._metrics['items_processed'] += len(cart)
        self._metrics['total_time'] += elapsed

        self.cache.set_cart_analysis(cache_key, result, ttl=self.settings.cart_ttl)
        logger.debug(
            "Cart analysed",
            lines=result.total_items,
            with_rules=result.items_with_rules,
            gateway_available=result.gateway_available,
        )
        return result

    def _load_products(self, product_ids: list[int]) -> dict[int, Product]:
        try:
            return self.catalog.get_products(product_ids)
        except CatalogError as exc:
            # Every line then reports product_not_found, which disables the gateway
            self._metrics['batch_load_failures'] += 1
            logger.error("Cart product batch load failed", error=exc.message, products=len(product_ids))
            return {}

    def _analyze_line(self, line, products, index, evaluation) -> CartItemAnalysis:
        item = CartItemAnalysis(
            product_id=line.line_product_id,
            is_variation=line.variation_id is not None,
            parent_product_id=line.parent_product_id,
        )
        product = products.get(line.line_product_id)
        if product is None:
            item.error = 'product_not_found'
            return item

        rule_ids = self.compiler.get_applicable_rule_ids(product, index)
        if line.parent_product_id:
            parent = products.get(line.parent_product_id)
            if parent is not None:
                parent_ids = self.compiler.get_applicable_rule_ids(parent, index)
                item.parent_has_rules = bool(parent_ids)
                rule_ids = sort_rule_ids(rule_ids + parent_ids, index)

        item.applicable_rules = rule_ids
        contextual = self.engine.matcher.filter_rules(
            self.compiler.get_rules_data(rule_ids, index), evaluation
        )
        item.contextual_rules = [rule.id for rule in contextual]
        item.has_rules = bool(item.contextual_rules)
        return item

    def is_gateway_available(self, cart: Cart) -> bool:
        return self.analyze_cart(cart, GATEWAY_CHECK).gateway_available

    # -- totals -------------------------------------------------------------

    def calculate_cart_adjustment(self, cart: Cart, payment_method: Optional[str] = None) -> CartAdjustment:
        """
        Signed fee for the totals layer: the sum of (dynamic - original) x qty.

        Only charged when the target gateway is the chosen payment method.
        """
        payment_method = payment_method or self.engine.get_current_payment_method()
        adjustment = CartAdjustment()
        if self.settings.emergency_disable or cart is None or cart.is_empty:
            return adjustment
        if payment_method != self.settings.gateway_id:
            return adjustment

        try:
            products = self.catalog.get_products(sorted({line.line_product_id for line in cart.lines}))
        except CatalogError as exc:
            logger.error("Cart product batch load failed", error=exc.message)
            return adjustment

        context = self.engine.context.with_changes(payment_method=payment_method)
        total = 0.0
        for line in cart.lines:
            product = products.get(line.line_product_id)
            if product is None:
                continue
            dynamic = self.engine.get_dynamic_price(product, product.price, context=context)
            if dynamic is None:
                continue
            delta = (dynamic - product.price) * line.quantity
            if delta:
                adjustment.lines[line.key] = self.engine.matcher.round_price(delta)
                total += delta

        adjustment.total = self.engine.matcher.round_price(total)
        if adjustment.total > 0:
            adjustment.fee_name = FEE_ADJUSTMENT
        elif adjustment.total < 0:
            adjustment.fee_name = FEE_DISCOUNT
        return adjustment

    # -- maintenance --------------------------------------------------------

    def clear_cart_cache(self, cart: Optional[Cart] = None) -> bool:
        """Drop cached analyses of one cart, or of every cart."""
        return self.cache.clear_cart_analysis(cart.fingerprint() if cart is not None else None)

    def get_performance_metrics(self) -> dict:
        metrics = dict(self._metrics)
        if metrics['analyses']:
            metrics['average_time'] = metrics['total_time'] / metrics['analyses']
        return metrics

    def reset_performance_metrics(self) -> None:
        self._metrics = self._empty_metrics()
