"""
Product Catalog - Server-trusted product definitions.

Products are read from products.json. The file is re-read whenever its
modification time or size changes so that products removed by the catalog editor
are observed by later download redemptions.
"""

import json
import os
from pathlib import Path

from structlog import get_logger

from storefront.exceptions import CatalogError
from storefront.models.domain import Product

logger = get_logger(__name__)


def parse_catalog(raw: object) -> tuple[Product, ...]:
    """
    Validate a decoded products.json document.

    Raises:
        CatalogError: If the document is not a list of valid, uniquely keyed products
    """
    if not isinstance(raw, list):
        raise CatalogError("products.json must contain a JSON array")

    products: list[Product] = []
    seen: set[str] = set()
    for index, record in enumerate(raw):
        if not isinstance(record, dict):
            raise CatalogError(f"Product #{index} is not an object")
        try:
            product = Product.from_mapping(record)
        except ValueError as exc:
            raise CatalogError(f"Product #{index}: {exc}") from exc
        if product.id in seen:
            raise CatalogError(f"Duplicate product id: {product.id}")
        seen.add(product.id)
        products.append(product)

    return tuple(products)


class CatalogStore:
    """Read-only view of the product catalog backed by a JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._products: tuple[Product, ...] = ()
        self._file_key: tuple[int, int] | None = None
        self._loaded = False

    def load(self) -> None:
        """
        Load (or reload) the catalog from disk.

        A missing file is an empty catalog. Malformed JSON or invalid
        records raise CatalogError.
        """
        try:
            stat = os.stat(self.path)
        except FileNotFoundError:
            if self._file_key is not None or not self._loaded:
                logger.warning("catalog_file_missing", path=str(self.path))
            self._products = ()
            self._file_key = None
            self._loaded = True
            return

        file_key = (stat.st_mtime_ns, stat.st_size)
        if self._file_key == file_key:
            return

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CatalogError(f"Could not read {self.path}: {exc}") from exc

        self._products = parse_catalog(raw)
        self._file_key = file_key
        self._loaded = True
        logger.info("catalog_loaded", path=str(self.path), products=len(self._products))

    def list_products(self) -> list[Product]:
        """Return every product in catalog order."""
        self.load()
        return list(self._products)

    def get_product(self, product_id: str) -> Product | None:
        """Return the product with this id, or None."""
        self.load()
        for product in self._products:
            if product.id == product_id:
                return product
        return None

