"""
Rules Service - CRUD operations for pricing rules.

Writes go to the rule store and every successful mutation invalidates the
compiled index (and with it every cached price and cart analysis).
"""
import json
from dataclasses import dataclass, field
from typing import Optional, TYPE_CHECKING

from ..config.logging_config import get_logger
from ..engine.models import PricingRule
from ..rules.compile_rules import RuleCompiler, validate_rule

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..storage.catalog import ProductCatalog
    from ..storage.rule_store import SqliteRuleStore

logger = get_logger("vibe_pricing.rules_service")

BLOB_FIELDS = ('referrer_conditions', 'product_conditions', 'price_adjustment', 'display_options')


@dataclass
class ValidationResult:
    """Result of rule validation."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    matching_products: int = 0


def _as_text(value) -> str:
    if value is None:
        return ''
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


class RulesService:
    """Service for managing pricing rules."""

    def __init__(
        self,
        store: 'SqliteRuleStore',
        compiler: RuleCompiler,
        catalog: Optional['ProductCatalog'] = None,
    ):
        self.store = store
        self.compiler = compiler
        self.catalog = catalog

    def list_rules(self, include_inactive: bool = True) -> list[PricingRule]:
        """List all rules, highest priority first."""
        return self.store.list_rules(include_inactive=include_inactive)

    def get_rule(self, rule_id: int) -> Optional[PricingRule]:
        """Get a single rule by ID."""
        return self.store.get_rule(rule_id)

    def create_rule(self, rule: PricingRule) -> PricingRule:
        """Create a new rule."""
        self._normalize(rule)
        if rule.id and self.get_rule(rule.id):
            raise ValueError(f"Rule with ID '{rule.id}' already exists")

        result = self.validate_rule(rule)
        if not result.valid:
            raise ValueError(f"Invalid rule: {'; '.join(result.errors)}")

        created = self.store.insert_rule(rule)
        self.compiler.invalidate_index()
        logger.info("Rule created", rule_id=created.id, priority=created.priority)
        return created

    def update_rule(self, rule_id: int, updates: dict) -> PricingRule:
        """Update an existing rule."""
        rule = self.get_rule(rule_id)
        if rule is None:
            raise ValueError(f"Rule with ID '{rule_id}' not found")

        for key, value in updates.items():
            if key in ('id', 'created_at', 'updated_at'):
                continue
            if hasattr(rule, key):
                setattr(rule, key, value)
        self._normalize(rule)

        result = self.validate_rule(rule)
        if not result.valid:
            raise ValueError(f"Invalid rule: {'; '.join(result.errors)}")

        self.store.update_rule(rule)
        self.compiler.invalidate_index()
        logger.info("Rule updated", rule_id=rule_id, fields=sorted(updates))
        return self.get_rule(rule_id)

    def set_status(self, rule_id: int, active: bool) -> PricingRule:
        """Activate or deactivate a rule."""
        return self.update_rule(rule_id, {'status': 'active' if active else 'inactive'})

    def delete_rule(self, rule_id: int) -> bool:
        """Delete a rule."""
        if not self.store.delete_rule(rule_id):
            raise ValueError(f"Rule with ID '{rule_id}' not found")
        self.compiler.invalidate_index()
        logger.info("Rule deleted", rule_id=rule_id)
        return True

    def _normalize(self, rule: PricingRule) -> None:
        for name in BLOB_FIELDS:
            setattr(rule, name, _as_text(getattr(rule, name)))
        rule.priority = int(rule.priority or 0)

    def validate_rule(self, rule: PricingRule) -> ValidationResult:
        """Validate a rule before saving."""
        result = ValidationResult(valid=True)

        compiled, errors = validate_rule(rule)
        if errors:
            result.errors.extend(errors)
            result.valid = False
            return result

        adjustment = compiled.adjustment
        if adjustment.type == 'fixed_price' and adjustment.value < 0:
            result.errors.append("Fixed price must not be negative")
            result.valid = False
        if adjustment.type == 'percentage' and adjustment.value <= -100:
            result.warnings.append("Percentage discount of 100% or more makes the product free")
        if adjustment.type != 'fixed_price' and adjustment.value == 0:
            result.warnings.append("Adjustment value is 0, the rule will not change prices")

        # Count catalog products the rule targets
        if self.catalog is not None:
            result.matching_products = sum(
                1 for product in self.catalog.all_products() if compiled.conditions.matches(product)
            )
            if result.matching_products == 0:
                result.warnings.append("No catalog products match the product conditions")

        if result.valid:
            result.warnings.extend(self._check_conflicts(rule, compiled))

        return result

    def _check_conflicts(self, rule: PricingRule, compiled) -> list[str]:
        """Warn about active rules that tie on priority with the same targeting."""
        warnings = []
        for existing in self.list_rules(include_inactive=False):
            if existing.id == rule.id or existing.priority != rule.priority:
                continue
            other, errors = validate_rule(existing)
            if errors or other is None:
                continue
            if other.conditions == compiled.conditions:
                winner = min(existing.id, rule.id) if rule.id else existing.id
                warnings.append(
                    f"Potential conflict with rule '{existing.id}' "
                    f"(same priority {rule.priority}; rule {winner} wins)"
                )
        return warnings

    def get_stats(self) -> dict:
        """Get statistics about rules."""
        rules = self.list_rules()

        active = [r for r in rules if r.active]
        by_target = {}
        by_adjustment = {}
        for rule in active:
            compiled = self.compiler.compile_single_rule(rule)
            by_target[compiled.target_type] = by_target.get(compiled.target_type, 0) + 1
            kind = compiled.adjustment.type
            by_adjustment[kind] = by_adjustment.get(kind, 0) + 1

        return {
            'total': len(rules),
            'active': len(active),
            'inactive': len(rules) - len(active),
            'by_target': by_target,
            'by_adjustment': by_adjustment,
        }
