"""
Domain Models - Internal business logic models using dataclasses.

All data structures are strongly typed immutable dataclasses.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path

# Grant and transaction product id used in single-product mode
SINGLE_PRODUCT_GRANT = "single-product"

PRICE_PATTERN = re.compile(r"^\d+\.\d{2}$")


def parse_amount(value: str) -> Decimal | None:
    """Parse a money string exactly; None when it is not a finite decimal."""
    try:
        amount = Decimal(value.strip())
    except (InvalidOperation, AttributeError):
        return None
    if not amount.is_finite():
        return None
    return amount


@dataclass(frozen=True)
class Product:
    """Catalog entry. Price is a two-decimal string, never a float."""

    id: str
    name: str
    price: str
    filename: str
    text: str = ""
    image: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        """Validate product fields."""
        if not self.id:
            raise ValueError("Product id cannot be empty")
        if not self.name:
            raise ValueError(f"Product {self.id} has no name")
        if not PRICE_PATTERN.match(self.price):
            raise ValueError(f"Product {self.id} has invalid price: {self.price!r}")
        if not self.filename:
            raise ValueError(f"Product {self.id} has no filename")
        if Path(self.filename).name != self.filename:
            raise ValueError(f"Product {self.id} filename must not contain a path")

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "Product":
        """Build a product from one record of products.json."""
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            price=str(data.get("price", "")),
            filename=str(data.get("filename", "")),
            text=str(data.get("text") or ""),
            image=str(data.get("image") or ""),
            description=str(data.get("description") or ""),
        )

    @property
    def price_amount(self) -> Decimal:
        return Decimal(self.price)

    @property
    def is_free(self) -> bool:
        return self.price_amount == 0


@dataclass(frozen=True)
class ProductSnapshot:
    """Product attributes frozen into a transaction at capture time."""

    id: str
    name: str
    price: str


@dataclass(frozen=True)
class Payer:
    """Buyer identity as reported by the payment processor."""

    email: str
    first_name: str
    last_name: str


@dataclass(frozen=True)
class Transaction:
    """Immutable record of a completed purchase."""

    id: str
    order_id: str
    purchase_date: datetime
    product: ProductSnapshot
    payer: Payer

    def __post_init__(self) -> None:
        """Validate transaction identity."""
        if not self.id:
            raise ValueError("Transaction id cannot be empty")
        if not self.order_id:
            raise ValueError("Order id cannot be empty")
        if self.purchase_date.tzinfo is None:
            raise ValueError("purchase_date must be timezone-aware")


@dataclass(frozen=True)
class CaptureRequest:
    """Purchase capture intent. product_id is None in single-product mode."""

    order_id: str
    product_id: str | None = None


@dataclass(frozen=True)
class CaptureResult:
    """Typed view of a completed PayPal order capture."""

    order_id: str
    status: str
    capture_id: str
    amount_value: str
    currency_code: str
    payer: Payer


@dataclass(frozen=True)
class AccessToken:
    """Bearer credential with its monotonic-clock expiry."""

    value: str
    expires_at: float


@dataclass(frozen=True)
class DownloadTicket:
    """Resolved file for a redeemed grant."""

    product_id: str
    path: Path
    filename: str
