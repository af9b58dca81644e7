"""
Tests for the product catalog and the Product domain model.
"""

from pathlib import Path

import pytest

from storefront.exceptions import CatalogError
from storefront.models.domain import Product
from storefront.services.catalog import CatalogStore, parse_catalog
from conftest import PRODUCT_A, PRODUCT_B, write_catalog


class TestProductModel:
    """Tests for Product validation."""

    def test_valid_product(self):
        """A well-formed record builds a Product."""
        product = Product.from_mapping(PRODUCT_A)
        assert product.id == "A"
        assert product.price == "49.00"
        assert product.is_free is False

    def test_free_product(self):
        """0.00 is a free product."""
        product = Product(id="f", name="Free", price="0.00", filename="f.zip")
        assert product.is_free is True

    @pytest.mark.parametrize("price", ["49", "49.0", "49.000", "-1.00", "4 9.00", "abc", ""])
    def test_invalid_price_rejected(self, price: str):
        """Prices must be two-decimal strings."""
        with pytest.raises(ValueError, match="invalid price"):
            Product(id="x", name="X", price=price, filename="x.zip")

    def test_filename_with_directory_rejected(self):
        """A product cannot point outside the downloads directory."""
        with pytest.raises(ValueError, match="must not contain a path"):
            Product(id="x", name="X", price="1.00", filename="../secret.zip")

    def test_missing_optional_fields_default_to_empty(self):
        """text, image and description are optional."""
        product = Product.from_mapping(PRODUCT_B)
        assert product.text == ""
        assert product.image == ""
        assert product.description == ""


class TestParseCatalog:
    """Tests for parse_catalog."""

    def test_parses_products_in_order(self):
        products = parse_catalog([PRODUCT_A, PRODUCT_B])
        assert [p.id for p in products] == ["A", "B"]

    def test_rejects_non_list(self):
        with pytest.raises(CatalogError, match="JSON array"):
            parse_catalog({"products": []})

    def test_rejects_non_object_record(self):
        with pytest.raises(CatalogError, match="not an object"):
            parse_catalog(["A"])

    def test_rejects_duplicate_ids(self):
        """Product ids are unique across the catalog."""
        with pytest.raises(CatalogError, match="Duplicate product id: A"):
            parse_catalog([PRODUCT_A, dict(PRODUCT_A, name="Other")])

    def test_rejects_invalid_record(self):
        with pytest.raises(CatalogError, match="Product #0"):
            parse_catalog([dict(PRODUCT_A, price="49")])


class TestCatalogStore:
    """Tests for CatalogStore file handling."""

    def test_get_product(self, catalog: CatalogStore):
        product = catalog.get_product("A")
        assert product is not None
        assert product.name == "Brutal UI Kit"

    def test_unknown_product_is_none(self, catalog: CatalogStore):
        assert catalog.get_product("missing") is None

    def test_missing_file_is_empty_catalog(self, tmp_path: Path):
        store = CatalogStore(tmp_path / "absent.json")
        assert store.list_products() == []

    def test_malformed_json_raises(self, tmp_path: Path):
        path = tmp_path / "products.json"
        path.write_text("[{", encoding="utf-8")
        with pytest.raises(CatalogError):
            CatalogStore(path).load()

    def test_reload_observes_removed_product(self, catalog: CatalogStore, catalog_path: Path):
        """Edits to products.json are picked up without a restart."""
        assert catalog.get_product("B") is not None

        write_catalog(catalog_path, [PRODUCT_A])

        assert catalog.get_product("B") is None
        assert [p.id for p in catalog.list_products()] == ["A"]
