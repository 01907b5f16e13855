"""
Product Catalog - product lookups for rule targeting.

``InMemoryCatalog`` serves tests and callers that already hold product
entities; ``CsvCatalog`` reads a catalog export with pandas. Multi-valued
columns (category / tag ids and slugs) are ``|``-separated.
"""
from pathlib import Path
from typing import Iterable, Optional, Protocol, Union

import pandas as pd

from ..config.logging_config import get_logger
from ..engine.models import Product
from ..errors import BatchLoadFailure, CatalogError

logger = get_logger("vibe_pricing.catalog")

LIST_SEPARATOR = '|'


class ProductCatalog(Protocol):
    """Lookup contract used by the cart processor."""

    def get_product(self, product_id: int) -> Optional[Product]: ...

    def get_products(self, product_ids: Iterable[int]) -> dict[int, Product]: ...

    def all_products(self) -> list[Product]: ...


class InMemoryCatalog:
    """Products held in a dictionary."""

    def __init__(self, products: Iterable[Product] = ()):
        self._products = {product.id: product for product in products}

    def __len__(self) -> int:
        return len(self._products)

    def add(self, product: Product) -> None:
        self._products[product.id] = product

    def all_products(self) -> list[Product]:
        return list(self._products.values())

    def get_product(self, product_id: int) -> Optional[Product]:
        return self._products.get(product_id)

    def get_products(self, product_ids: Iterable[int]) -> dict[int, Product]:
        """Found products keyed by id; unknown ids are left out."""
        return {pid: self._products[pid] for pid in product_ids if pid in self._products}


def _split_ints(value) -> tuple:
    return tuple(int(v) for v in _split(value) if v.lstrip('-').isdigit())


def _split(value) -> tuple:
    if value is None or (isinstance(value, float) and value != value):
        return ()
    return tuple(v.strip() for v in str(value).split(LIST_SEPARATOR) if v.strip())


def product_from_record(record: dict) -> Product:
    """Build a product from a catalog row."""
    parent = str(record.get('parent_id') or '').strip()
    return Product(
        id=int(record['id']),
        price=float(record.get('price') or 0),
        category_ids=_split_ints(record.get('category_ids')),
        category_slugs=tuple(s.lower() for s in _split(record.get('category_slugs'))),
        tag_ids=_split_ints(record.get('tag_ids')),
        tag_slugs=tuple(s.lower() for s in _split(record.get('tag_slugs'))),
        parent_id=int(parent) if parent.isdigit() and int(parent) > 0 else None,
        product_type=str(record.get('type') or 'simple').strip() or 'simple',
        name=str(record.get('name') or ''),
    )


class CsvCatalog:
    """
    Catalog backed by a CSV export.

    Required columns: ``id``, ``price``. Optional: ``name``, ``type``,
    ``parent_id``, ``category_ids``, ``category_slugs``, ``tag_ids``, ``tag_slugs``.
    The file is read on first use.
    """

    def __init__(self, csv_path: Union[str, Path]):
        self.csv_path = Path(csv_path)
        self._products: Optional[dict[int, Product]] = None

    def _load(self) -> dict[int, Product]:
        if self._products is not None:
            return self._products

        if not self.csv_path.exists():
            raise CatalogError(f"catalog not found at {self.csv_path}", {"path": str(self.csv_path)})
        try:
            frame = pd.read_csv(self.csv_path, dtype=str, keep_default_na=False)
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
            raise CatalogError(f"catalog unreadable: {exc}", {"path": str(self.csv_path)}) from exc

        missing = {'id', 'price'} - set(frame.columns)
        if missing:
            raise CatalogError(f"catalog is missing columns: {sorted(missing)}", {"path": str(self.csv_path)})

        products = {}
        skipped = 0
        for record in frame.to_dict('records'):
            try:
                product = product_from_record(record)
            except ValueError:
                skipped += 1
                continue
            products[product.id] = product

        if skipped:
            logger.warning("Catalog rows skipped", path=str(self.csv_path), skipped=skipped)
        logger.debug("Catalog loaded", path=str(self.csv_path), products=len(products))
        self._products = products
        return products

    def reload(self) -> None:
        self._products = None

    def all_products(self) -> list[Product]:
        return list(self._load().values())

    def get_product(self, product_id: int) -> Optional[Product]:
        return self._load().get(product_id)

    def get_products(self, product_ids: Iterable[int]) -> dict[int, Product]:
        product_ids = list(product_ids)
        try:
            products = self._load()
        except CatalogError as exc:
            raise BatchLoadFailure(exc.message, {**exc.details, "requested": len(product_ids)}) from exc
        return {pid: products[pid] for pid in product_ids if pid in products}
