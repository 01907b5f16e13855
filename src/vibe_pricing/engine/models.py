"""
Data models for the pricing engine.

Uses dataclasses for structured, type-safe data representation. Compiled
structures are plain dataclasses so they pickle cleanly into every cache tier.
"""
import hashlib
import json
from dataclasses import dataclass, field, replace
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .conditions import ConditionSpec


# Apply modes
ALWAYS = 'always'
COMBINED = 'combined'
PAYMENT_METHOD = 'payment_method'
REFERRER = 'referrer'

# Context types
DISPLAY = 'display'
APPLICATION = 'application'

# Adjustment types
PERCENTAGE = 'percentage'
FIXED = 'fixed'
FIXED_PRICE = 'fixed_price'

# Referrer match types
MATCH_EXACT = 'exact'
MATCH_CONTAINS = 'contains'
MATCH_ENDS_WITH = 'ends_with'


@dataclass
class TraceStep:
    """A single step in the pricing resolution trace."""
    step: str
    description: str
    value: Optional[str] = None


@dataclass(frozen=True)
class Product:
    """Catalog view of a product, as far as rule targeting needs it."""
    id: int
    price: float = 0.0
    category_ids: tuple = ()
    category_slugs: tuple = ()
    tag_ids: tuple = ()
    tag_slugs: tuple = ()
    parent_id: Optional[int] = None
    product_type: str = 'simple'  # simple, variable, variation
    name: str = ''

    @property
    def is_variation(self) -> bool:
        return self.product_type == 'variation'


@dataclass
class PricingRule:
    """A persisted pricing rule row, condition blobs still as JSON text."""
    id: int
    name: str
    priority: int = 0
    status: str = 'active'
    referrer_conditions: str = ''
    product_conditions: str = ''
    price_adjustment: str = ''
    discount_integration: str = 'apply'
    display_options: str = ''
    description: str = ''
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.status == 'active'

    @classmethod
    def from_row(cls, row: dict) -> 'PricingRule':
        """Create a rule from a storage row (missing columns get defaults)."""
        def text(key: str) -> str:
            value = row.get(key)
            if value is None:
                return ''
            if isinstance(value, (dict, list)):
                return json.dumps(value)
            # pandas hands back NaN floats for NULL text columns
            if isinstance(value, float) and value != value:
                return ''
            return str(value)

        return cls(
            id=int(row['id']),
            name=text('name'),
            priority=int(row.get('priority') or 0),
            status=text('status') or 'active',
            referrer_conditions=text('referrer_conditions'),
            product_conditions=text('product_conditions'),
            price_adjustment=text('price_adjustment'),
            discount_integration=text('discount_integration') or 'apply',
            display_options=text('display_options'),
            description=text('description'),
            created_at=text('created_at') or None,
            updated_at=text('updated_at') or None,
        )

    def to_row(self) -> dict:
        """Convert to a storage row."""
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'priority': self.priority,
            'status': self.status,
            'referrer_conditions': self.referrer_conditions,
            'product_conditions': self.product_conditions,
            'price_adjustment': self.price_adjustment,
            'discount_integration': self.discount_integration,
            'display_options': self.display_options,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


@dataclass(frozen=True)
class ReferrerConditions:
    """Which visit referrers a rule targets."""
    domains: tuple = ()
    match_type: str = MATCH_CONTAINS
    # True when the stored blob did not parse and this is the fallback
    malformed: bool = False

    @property
    def unrestricted(self) -> bool:
        return not self.domains


@dataclass(frozen=True)
class PriceAdjustment:
    """How a winning rule changes the price."""
    type: str = PERCENTAGE
    value: float = 0.0


@dataclass
class CompiledRule:
    """A rule with its blobs parsed once at compile time."""
    id: int
    name: str
    priority: int
    referrer: ReferrerConditions
    conditions: 'ConditionSpec'
    adjustment: PriceAdjustment
    discount_integration: str = 'apply'
    display_options: dict = field(default_factory=dict)
    hash: str = ''
    malformed_fields: tuple = ()

    @property
    def target_type(self) -> str:
        return self.conditions.target_type


@dataclass
class CompiledIndex:
    """
    Rule ids bucketed by targeting dimension, plus the compiled rules.

    Every id appearing in a bucket exists in ``rule_data``.
    """
    product_rules: dict = field(default_factory=dict)   # product id -> [rule ids]
    category_rules: dict = field(default_factory=dict)  # category id -> [rule ids]
    tag_rules: dict = field(default_factory=dict)       # tag id -> [rule ids]
    global_rules: list = field(default_factory=list)
    rule_data: dict = field(default_factory=dict)       # rule id -> CompiledRule
    compiled_at: float = 0.0
    version: str = '2.0'

    @property
    def is_empty(self) -> bool:
        return not self.rule_data

    def bucket_ids(self) -> set:
        """Every rule id referenced by any bucket."""
        ids = set(self.global_rules)
        for buckets in (self.product_rules, self.category_rules, self.tag_rules):
            for rule_ids in buckets.values():
                ids.update(rule_ids)
        return ids

    def is_consistent(self) -> bool:
        return self.bucket_ids() <= set(self.rule_data)


@dataclass(frozen=True)
class EvaluationContext:
    """Everything rule matching depends on besides the product itself."""
    referrer: Optional[str] = None
    payment_method: Optional[str] = None
    apply_mode: str = COMBINED
    context_type: str = APPLICATION

    def with_changes(self, **changes: Any) -> 'EvaluationContext':
        return replace(self, **changes)

    def cache_token(self) -> str:
        """Deterministic serialization used in cache keys."""
        return "_".join([
            self.referrer or 'no_referrer',
            self.payment_method or 'no_payment_method',
            self.apply_mode,
            self.context_type,
        ])


@dataclass(frozen=True)
class CartLine:
    """A single cart line as the cart layer hands it over."""
    key: str
    product_id: int
    quantity: int = 1
    variation_id: Optional[int] = None

    @property
    def line_product_id(self) -> int:
        """The purchasable item: the variation when there is one."""
        return self.variation_id or self.product_id

    @property
    def parent_product_id(self) -> Optional[int]:
        return self.product_id if self.variation_id else None


@dataclass
class Cart:
    """Cart contents; the fingerprint changes whenever the contents do."""
    lines: list[CartLine] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def fingerprint(self) -> str:
        payload = sorted(
            (line.key, line.product_id, line.variation_id or 0, line.quantity)
            for line in self.lines
        )
        return hashlib.md5(json.dumps(payload).encode('utf-8')).hexdigest()


@dataclass
class CartItemAnalysis:
    """Per-line diagnostics of a cart analysis."""
    product_id: int
    has_rules: bool = False
    applicable_rules: list[int] = field(default_factory=list)
    contextual_rules: list[int] = field(default_factory=list)
    is_variation: bool = False
    parent_product_id: Optional[int] = None
    parent_has_rules: bool = False
    error: Optional[str] = None


@dataclass
class CartAnalysisResult:
    """Cart-level gating decision plus the per-line breakdown."""
    gateway_available: bool
    items_with_rules: int = 0
    total_items: int = 0
    items: dict[str, CartItemAnalysis] = field(default_factory=dict)
    context: str = 'gateway_check'
    payment_method: Optional[str] = None
    performance: dict = field(default_factory=dict)


@dataclass
class CartAdjustment:
    """Signed cart fee derived from dynamic prices of the cart lines."""
    total: float = 0.0
    fee_name: Optional[str] = None
    lines: dict[str, float] = field(default_factory=dict)

    @property
    def has_fee(self) -> bool:
        return self.total != 0


@dataclass
class PriceQuote:
    """Uncached explanation of a price resolution."""
    product_id: Optional[int]
    original_price: float
    dynamic_price: Optional[float] = None
    rule_id: Optional[int] = None
    rule_name: Optional[str] = None
    context: Optional[EvaluationContext] = None
    trace: list[TraceStep] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.rule_id is not None

    def add_trace(self, step: str, description: str, value: str = None):
        """Add a step to the trace."""
        self.trace.append(TraceStep(step=step, description=description, value=value))

    def get_trace_text(self) -> str:
        """Get human-readable trace as formatted text."""
        lines = []
        for t in self.trace:
            if t.value:
                lines.append(f"→ {t.step}: {t.description} = {t.value}")
            else:
                lines.append(f"→ {t.step}: {t.description}")
        return "\n".join(lines)
