"""
Complex-condition expressions.

Admins write targeting conditions such as::

    (category:electronics AND tag:sale) OR (price > 100 AND category:clothing)

``parse_expression`` turns that text into a small tree of dataclasses with a
recursive-descent parser; ``ExpressionEvaluator`` walks the tree for one
product. AND/OR short-circuit left to right.

Grammar::

    expr     := and_expr ("OR" and_expr)*
    and_expr := not_expr ("AND" not_expr)*
    not_expr := "NOT" not_expr | primary
    primary  := "(" expr ")" | term
    term     := ("category" | "tag" | "product") ":" VALUE
              | "price" OP NUMBER
"""
import re
from dataclasses import dataclass
from typing import Any, Union

from ..errors import ExpressionSyntaxError
from .models import Product


PRICE_OPERATORS = ('>=', '<=', '==', '!=', '>', '<', '=')

# Prices closer than this compare equal
PRICE_TOLERANCE = 0.01

TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<op>>=|<=|==|!=|>|<|=)
  | (?P<colon>:)
  | (?P<number>\$?-?\d+(?:\.\d+)?(?![\w-]))
  | (?P<word>[A-Za-z0-9_][A-Za-z0-9_\-\.]*)
    """,
    re.VERBOSE,
)

KEYWORDS = {'AND', 'OR', 'NOT'}
FIELDS = {'category', 'tag', 'product', 'price'}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


# Expression tree -----------------------------------------------------------

@dataclass(frozen=True)
class And:
    children: tuple


@dataclass(frozen=True)
class Or:
    children: tuple


@dataclass(frozen=True)
class Not:
    child: Any


@dataclass(frozen=True)
class CategoryTerm:
    value: str


@dataclass(frozen=True)
class TagTerm:
    value: str


@dataclass(frozen=True)
class ProductTerm:
    value: str


@dataclass(frozen=True)
class PriceTerm:
    operator: str
    value: float


@dataclass(frozen=True)
class Constant:
    """Empty groups: an empty AND is true, an empty OR is false."""
    value: bool


Expression = Union[And, Or, Not, CategoryTerm, TagTerm, ProductTerm, PriceTerm, Constant]


# Parsing -------------------------------------------------------------------

def tokenize(source: str) -> list[Token]:
    """Split expression text into tokens."""
    tokens = []
    position = 0
    while position < len(source):
        match = TOKEN_PATTERN.match(source, position)
        if not match:
            raise ExpressionSyntaxError(
                f"unexpected character '{source[position]}'", position, source
            )
        kind = match.lastgroup
        text = match.group()
        if kind == 'word' and text.upper() in KEYWORDS:
            kind = text.upper()
        if kind != 'ws':
            tokens.append(Token(kind, text, position))
        position = match.end()
    return tokens


class ExpressionParser:
    """Recursive-descent parser over the token list."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    def parse(self) -> Expression:
        if not self.tokens:
            raise ExpressionSyntaxError("empty expression", 0, self.source)
        node = self._or_expr()
        if self._peek() is not None:
            token = self._peek()
            raise ExpressionSyntaxError(
                f"unexpected '{token.text}'", token.position, self.source
            )
        return node

    def _peek(self):
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def _advance(self) -> Token:
        token = self._peek()
        if token is None:
            raise ExpressionSyntaxError("unexpected end of expression", len(self.source), self.source)
        self.index += 1
        return token

    def _expect(self, kind: str) -> Token:
        token = self._advance()
        if token.kind != kind:
            raise ExpressionSyntaxError(
                f"expected {kind}, got '{token.text}'", token.position, self.source
            )
        return token

    def _or_expr(self) -> Expression:
        children = [self._and_expr()]
        while self._peek() is not None and self._peek().kind == 'OR':
            self._advance()
            children.append(self._and_expr())
        return children[0] if len(children) == 1 else Or(tuple(children))

    def _and_expr(self) -> Expression:
        children = [self._not_expr()]
        while self._peek() is not None and self._peek().kind == 'AND':
            self._advance()
            children.append(self._not_expr())
        return children[0] if len(children) == 1 else And(tuple(children))

    def _not_expr(self) -> Expression:
        token = self._peek()
        if token is not None and token.kind == 'NOT':
            self._advance()
            return Not(self._not_expr())
        return self._primary()

    def _primary(self) -> Expression:
        token = self._advance()
        if token.kind == 'lparen':
            node = self._or_expr()
            self._expect('rparen')
            return node
        if token.kind == 'word' and token.text.lower() in FIELDS:
            return self._term(token.text.lower())
        raise ExpressionSyntaxError(
            f"expected a condition, got '{token.text}'", token.position, self.source
        )

    def _term(self, field_name: str) -> Expression:
        if field_name == 'price':
            operator = self._expect('op').text
            number = self._advance()
            if number.kind != 'number':
                raise ExpressionSyntaxError(
                    f"expected a number, got '{number.text}'", number.position, self.source
                )
            return PriceTerm(operator, float(number.text.lstrip('$')))

        self._expect('colon')
        value = self._advance()
        if value.kind not in ('word', 'number'):
            raise ExpressionSyntaxError(
                f"expected a {field_name} value, got '{value.text}'", value.position, self.source
            )
        text = value.text.lower()
        if field_name == 'category':
            return CategoryTerm(text)
        if field_name == 'tag':
            return TagTerm(text)
        return ProductTerm(text)


def parse_expression(source: str) -> Expression:
    """Parse expression text into a tree. Raises ExpressionSyntaxError."""
    return ExpressionParser(source).parse()


def expression_from_json(data: dict) -> Expression:
    """
    Build a tree from the structured form::

        {"type": "AND", "conditions": [
            {"condition_type": "category", "categories": [12]},
            {"type": "group", "logic": "OR", "conditions": [...]}
        ]}
    """
    if not isinstance(data, dict):
        raise ExpressionSyntaxError("expression must be an object", -1, str(data))

    logic = str(data.get('logic') or data.get('type') or 'AND').upper()
    if logic == 'GROUP':
        logic = 'AND'
    children = []
    for condition in _list_field(data, 'conditions'):
        if not isinstance(condition, dict):
            raise ExpressionSyntaxError("condition must be an object", -1, str(condition))
        if condition.get('type') == 'group' or 'conditions' in condition:
            children.append(expression_from_json(condition))
        else:
            children.append(_leaf_from_json(condition))

    if not children:
        return Constant(logic != 'OR')
    if logic == 'OR':
        return Or(tuple(children))
    return And(tuple(children))


def _list_field(data: dict, key: str) -> list:
    value = data.get(key) or []
    if not isinstance(value, (list, tuple)):
        raise ExpressionSyntaxError(f"{key} must be a list", -1, str(data))
    return list(value)


def _leaf_from_json(condition: dict) -> Expression:
    condition_type = condition.get('condition_type', '')
    if condition_type == 'category':
        values = _list_field(condition, 'categories')
        return _any_or_all([CategoryTerm(str(v).lower()) for v in values], condition.get('category_logic'))
    if condition_type == 'tag':
        values = _list_field(condition, 'tags')
        return _any_or_all([TagTerm(str(v).lower()) for v in values], condition.get('tag_logic'))
    if condition_type == 'product':
        values = _list_field(condition, 'product_ids')
        return _any_or_all([ProductTerm(str(v)) for v in values], 'OR')
    if condition_type == 'price':
        operator = condition.get('price_operator', '>')
        if operator not in PRICE_OPERATORS:
            raise ExpressionSyntaxError(f"unknown price operator '{operator}'", -1, str(condition))
        try:
            value = float(condition.get('price_value', 0))
        except (TypeError, ValueError) as exc:
            raise ExpressionSyntaxError("price_value must be numeric", -1, str(condition)) from exc
        return PriceTerm(operator, value)
    raise ExpressionSyntaxError(f"unknown condition_type '{condition_type}'", -1, str(condition))


def _any_or_all(terms: list, logic) -> Expression:
    if not terms:
        return Constant(True)
    if len(terms) == 1:
        return terms[0]
    if str(logic or 'OR').upper() == 'AND':
        return And(tuple(terms))
    return Or(tuple(terms))


# Evaluation ----------------------------------------------------------------

def compare_price(price: float, operator: str, value: float) -> bool:
    if operator == '>':
        return price > value
    if operator == '>=':
        return price >= value
    if operator == '<':
        return price < value
    if operator == '<=':
        return price <= value
    if operator in ('=', '=='):
        return abs(price - value) < PRICE_TOLERANCE
    if operator == '!=':
        return abs(price - value) >= PRICE_TOLERANCE
    return False


class ExpressionEvaluator:
    """Visitor that evaluates an expression tree against one product."""

    def __init__(self, product: Product):
        self.product = product
        self._categories = {str(c).lower() for c in product.category_ids} | {
            str(s).lower() for s in product.category_slugs
        }
        self._tags = {str(t).lower() for t in product.tag_ids} | {
            str(s).lower() for s in product.tag_slugs
        }

    def visit(self, node: Expression) -> bool:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise TypeError(f"unknown expression node {type(node).__name__}")
        return method(node)

    def visit_And(self, node: And) -> bool:
        return all(self.visit(child) for child in node.children)

    def visit_Or(self, node: Or) -> bool:
        return any(self.visit(child) for child in node.children)

    def visit_Not(self, node: Not) -> bool:
        return not self.visit(node.child)

    def visit_Constant(self, node: Constant) -> bool:
        return node.value

    def visit_CategoryTerm(self, node: CategoryTerm) -> bool:
        return node.value in self._categories

    def visit_TagTerm(self, node: TagTerm) -> bool:
        return node.value in self._tags

    def visit_ProductTerm(self, node: ProductTerm) -> bool:
        return node.value == str(self.product.id)

    def visit_PriceTerm(self, node: PriceTerm) -> bool:
        return compare_price(float(self.product.price or 0), node.operator, node.value)


def evaluate(node: Expression, product: Product) -> bool:
    return ExpressionEvaluator(product).visit(node)
