"""Engine subpackage - context matching, price resolution and cart evaluation."""
from .pricing_engine import PricingEngine
from .cart_processor import CartProcessor
from .rule_matcher import RuleMatcher
from .models import (
    Cart, CartAdjustment, CartAnalysisResult, CartLine, CompiledIndex, CompiledRule,
    EvaluationContext, PriceQuote, PricingRule, Product,
)

__all__ = [
    'PricingEngine', 'CartProcessor', 'RuleMatcher', 'Cart', 'CartAdjustment',
    'CartAnalysisResult', 'CartLine', 'CompiledIndex', 'CompiledRule',
    'EvaluationContext', 'PriceQuote', 'PricingRule', 'Product',
]
