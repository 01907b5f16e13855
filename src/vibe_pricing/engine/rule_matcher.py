"""
Rule Matcher - Filters compiled rules by evaluation context and applies them to prices.

Used by both the pricing engine and the cart processor so a product and a
cart line are judged by exactly the same context rules.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from ..config.settings import Settings
from .models import (
    ALWAYS, APPLICATION, COMBINED, CompiledIndex, CompiledRule, DISPLAY, EvaluationContext,
    FIXED, FIXED_PRICE, MATCH_CONTAINS, MATCH_ENDS_WITH, MATCH_EXACT,
    PAYMENT_METHOD, PERCENTAGE, REFERRER, ReferrerConditions,
)


def domain_matches(referrer: str, domain: str, match_type: str) -> bool:
    """
    Compare one (lower-cased) referrer host against one rule domain.

    ``*.example.com`` matches the apex and every subdomain whatever the
    match type.
    """
    if domain.startswith('*.'):
        apex = domain[2:]
        return referrer == apex or referrer.endswith('.' + apex)
    if match_type == MATCH_EXACT:
        return referrer == domain
    if match_type == MATCH_CONTAINS:
        return domain in referrer
    if match_type == MATCH_ENDS_WITH:
        return referrer.endswith(domain)
    return False


def check_referrer_conditions(conditions: ReferrerConditions, referrer: Optional[str]) -> bool:
    """True when the referrer satisfies at least one of the rule's domains."""
    if not referrer or not conditions.domains:
        return False
    referrer = referrer.strip().lower()
    return any(domain_matches(referrer, d, conditions.match_type) for d in conditions.domains)


class RuleMatcher:
    """
    Decides whether compiled rules apply under an evaluation context and
    computes adjusted prices.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def is_target_referrer(self, referrer: Optional[str]) -> bool:
        """True when the visitor came from one of the configured target domains."""
        if not referrer:
            return False
        host = referrer.strip().lower()
        return any(host == d or host.endswith('.' + d) for d in self.settings.target_domains)

    def is_target_gateway(self, payment_method: Optional[str]) -> bool:
        return payment_method is not None and payment_method == self.settings.gateway_id

    def matches_context(self, rule: CompiledRule, context: EvaluationContext) -> bool:
        """
        Apply-mode semantics:

        * always - every rule matches
        * combined - display: visitor came from a target domain;
          application: the target gateway is the chosen payment method
        * payment_method - the target gateway is chosen, for both context types
        * referrer - the rule's own domain list matches, or it has none
        """
        mode = context.apply_mode
        if mode == ALWAYS:
            return True

        if mode == COMBINED:
            if context.context_type == DISPLAY:
                return self.is_target_referrer(context.referrer)
            return self.is_target_gateway(context.payment_method)

        if mode == PAYMENT_METHOD:
            return self.is_target_gateway(context.payment_method)

        if mode == REFERRER:
            if rule.referrer.unrestricted:
                return True
            return check_referrer_conditions(rule.referrer, context.referrer)

        return False

    def filter_rules(self, rules: Iterable[CompiledRule], context: EvaluationContext) -> list[CompiledRule]:
        """Keep the rules that match the context, preserving order."""
        return [rule for rule in rules if self.matches_context(rule, context)]

    def round_price(self, price: float) -> float:
        """Round half-up to the configured currency precision."""
        quantum = Decimal(1).scaleb(-self.settings.price_decimals)
        return float(Decimal(str(price)).quantize(quantum, rounding=ROUND_HALF_UP))

    def apply_rule_to_price(self, rule: CompiledRule, base_price: float) -> tuple[float, list[str]]:
        """
        Apply a single rule to a price.

        Returns (new_price, trace_messages).
        """
        traces = []
        adjustment = rule.adjustment
        value = float(adjustment.value)
        new_price = base_price

        if adjustment.type == PERCENTAGE:
            # Positive values increase the price, negative values decrease it
            if value >= 0:
                new_price = base_price * (1 + value / 100)
            else:
                new_price = base_price * (1 - abs(value) / 100)
            traces.append(f"Rule {rule.id} applied {value:+g}%: {base_price:.2f} → {new_price:.2f}")

        elif adjustment.type == FIXED:
            new_price = base_price + value
            traces.append(f"Rule {rule.id} applied {value:+.2f}: {base_price:.2f} → {new_price:.2f}")

        elif adjustment.type == FIXED_PRICE:
            new_price = value
            traces.append(f"Rule {rule.id} set price to {new_price:.2f}")

        if new_price < 0:
            traces.append(f"Rule {rule.id} result clamped to 0")
            new_price = 0.0

        return self.round_price(new_price), traces


def sort_rule_ids(rule_ids: Iterable[int], index: CompiledIndex) -> list[int]:
    """Order rule ids by priority (highest first); lower id wins a tie."""
    return sorted(
        (rid for rid in set(rule_ids) if rid in index.rule_data),
        key=lambda rid: (-index.rule_data[rid].priority, rid),
    )


def context_type_for(processing_context: str) -> str:
    """Map a cart processing context onto a rule context type."""
    if processing_context in (DISPLAY, 'pricing_display'):
        return DISPLAY
    return APPLICATION
