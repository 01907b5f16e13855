"""
Rule condition parsing.

Stored rules keep their targeting as loosely-typed JSON blobs. They are
validated here with pydantic once, at compile time, and turned into:

* ``ConditionSpec`` variants for product targeting,
* ``ReferrerConditions`` for referrer targeting,
* ``PriceAdjustment`` for the price change.

A blob that does not validate raises ``MalformedRuleData``; the compiler
decides what to fall back to.
"""
import json
from dataclasses import dataclass
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from ..errors import ExpressionSyntaxError, MalformedRuleData
from .expression import (
    Expression, PRICE_OPERATORS, compare_price, evaluate, expression_from_json,
    parse_expression,
)
from .models import PriceAdjustment, Product, ReferrerConditions


# Blob schemas ----------------------------------------------------------------

def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and value.strip() == '':
        return None
    return value


class ReferrerConditionsModel(BaseModel):
    model_config = ConfigDict(extra='ignore')

    domains: list[str] = []
    match_type: Literal['exact', 'contains', 'ends_with'] = 'contains'


class PriceAdjustmentModel(BaseModel):
    model_config = ConfigDict(extra='ignore', allow_inf_nan=False)

    type: Literal['percentage', 'fixed', 'fixed_price'] = 'percentage'
    value: float = 0.0

    @field_validator('value', mode='before')
    @classmethod
    def blank_value_is_zero(cls, value):
        return 0.0 if _blank_to_none(value) is None else value


class ProductConditionsModel(BaseModel):
    model_config = ConfigDict(extra='ignore', allow_inf_nan=False)

    target_type: Literal['all', 'specific', 'categories', 'tags', 'price_range', 'complex'] = 'all'
    product_ids: list[int] = []
    categories: list[int] = []
    category_logic: Literal['AND', 'OR'] = 'OR'
    tags: list[int] = []
    tag_logic: Literal['AND', 'OR'] = 'OR'
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    price_operator: Optional[str] = None
    price_value: Optional[float] = None
    complex_logic: Optional[str] = None
    expression: Optional[dict] = None

    @field_validator('min_price', 'max_price', 'price_value', 'complex_logic', 'price_operator', mode='before')
    @classmethod
    def blank_is_none(cls, value):
        return _blank_to_none(value)

    @field_validator('category_logic', 'tag_logic', mode='before')
    @classmethod
    def upper_logic(cls, value):
        if isinstance(value, str):
            return value.strip().upper() or 'OR'
        return value

    @field_validator('price_operator')
    @classmethod
    def known_operator(cls, value):
        if value is not None and value not in PRICE_OPERATORS:
            raise ValueError(f"unknown price operator '{value}'")
        return value


def load_blob(raw: Union[str, dict, None], field_name: str) -> dict:
    """Decode a JSON blob; empty input is an empty dict."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if not str(raw).strip():
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedRuleData(
            f"{field_name}: invalid JSON ({exc.msg})", {"field": field_name, "data": str(raw)[:100]}
        ) from exc
    if decoded in (None, [], ''):
        return {}
    if not isinstance(decoded, dict):
        raise MalformedRuleData(
            f"{field_name}: expected an object", {"field": field_name, "data": str(raw)[:100]}
        )
    return decoded


def _validate(model: type, data: dict, field_name: str):
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise MalformedRuleData(
            f"{field_name}: {exc.error_count()} validation error(s)",
            {"field": field_name, "errors": [e['msg'] for e in exc.errors()]},
        ) from exc


# Condition variants ----------------------------------------------------------

@dataclass(frozen=True)
class NoRestriction:
    """Fallback for conditions that could not be parsed: matches everything."""
    reason: str = ''
    target_type = 'all'

    def matches(self, product: Product) -> bool:
        return True


@dataclass(frozen=True)
class AllProducts:
    target_type = 'all'

    def matches(self, product: Product) -> bool:
        return True


@dataclass(frozen=True)
class SpecificProducts:
    product_ids: frozenset
    target_type = 'specific'

    def matches(self, product: Product) -> bool:
        return product.id in self.product_ids


@dataclass(frozen=True)
class Categories:
    category_ids: frozenset
    logic: str = 'OR'
    target_type = 'categories'

    def matches(self, product: Product) -> bool:
        return _match_terms(self.category_ids, product.category_ids, self.logic)


@dataclass(frozen=True)
class Tags:
    tag_ids: frozenset
    logic: str = 'OR'
    target_type = 'tags'

    def matches(self, product: Product) -> bool:
        return _match_terms(self.tag_ids, product.tag_ids, self.logic)


@dataclass(frozen=True)
class PriceRange:
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    operator: Optional[str] = None
    value: Optional[float] = None
    target_type = 'price_range'

    def matches(self, product: Product) -> bool:
        price = float(product.price or 0)
        if self.min_price is not None and price < self.min_price:
            return False
        if self.max_price is not None and price > self.max_price:
            return False
        if self.operator is not None and self.value is not None:
            return compare_price(price, self.operator, self.value)
        return True


@dataclass(frozen=True)
class Complex:
    expression: Any  # expression tree
    source: str = ''
    target_type = 'complex'

    def matches(self, product: Product) -> bool:
        return evaluate(self.expression, product)


ConditionSpec = Union[NoRestriction, AllProducts, SpecificProducts, Categories, Tags, PriceRange, Complex]


def _match_terms(required: frozenset, present: tuple, logic: str) -> bool:
    # No selection means no restriction
    if not required:
        return True
    matches = required.intersection(present)
    if logic == 'AND':
        return len(matches) == len(required)
    return len(matches) > 0


# Parsers ---------------------------------------------------------------------

def parse_product_conditions(raw: Union[str, dict, None]) -> ConditionSpec:
    """Parse a product_conditions blob. Raises MalformedRuleData."""
    data = load_blob(raw, 'product_conditions')
    if not data:
        return AllProducts()
    model = _validate(ProductConditionsModel, data, 'product_conditions')

    if model.target_type == 'specific':
        return SpecificProducts(frozenset(model.product_ids))
    if model.target_type == 'categories':
        return Categories(frozenset(model.categories), model.category_logic)
    if model.target_type == 'tags':
        return Tags(frozenset(model.tags), model.tag_logic)
    if model.target_type == 'price_range':
        return PriceRange(model.min_price, model.max_price, model.price_operator, model.price_value)
    if model.target_type == 'complex':
        return _parse_complex(model)
    return AllProducts()


def _parse_complex(model: ProductConditionsModel) -> Complex:
    tree: Expression
    if model.complex_logic:
        tree = parse_expression(model.complex_logic)
        return Complex(tree, model.complex_logic)
    if model.expression:
        tree = expression_from_json(model.expression)
        return Complex(tree, json.dumps(model.expression, sort_keys=True))
    # An empty complex condition applies to every product
    return Complex(expression_from_json({}), '')


def parse_referrer_conditions(raw: Union[str, dict, None]) -> ReferrerConditions:
    """Parse a referrer_conditions blob. Raises MalformedRuleData."""
    data = load_blob(raw, 'referrer_conditions')
    if not data:
        return ReferrerConditions()
    model = _validate(ReferrerConditionsModel, data, 'referrer_conditions')
    domains = tuple(d.strip().lower() for d in model.domains if d and d.strip())
    return ReferrerConditions(domains=domains, match_type=model.match_type)


def parse_price_adjustment(raw: Union[str, dict, None]) -> PriceAdjustment:
    """Parse a price_adjustment blob. Raises MalformedRuleData."""
    data = load_blob(raw, 'price_adjustment')
    if not data:
        return PriceAdjustment()
    model = _validate(PriceAdjustmentModel, data, 'price_adjustment')
    return PriceAdjustment(type=model.type, value=float(model.value))


def parse_display_options(raw: Union[str, dict, None]) -> dict:
    return load_blob(raw, 'display_options')


__all__ = [
    'ConditionSpec', 'NoRestriction', 'AllProducts', 'SpecificProducts', 'Categories',
    'Tags', 'PriceRange', 'Complex', 'parse_product_conditions',
    'parse_referrer_conditions', 'parse_price_adjustment', 'parse_display_options',
    'ExpressionSyntaxError', 'MalformedRuleData',
]
