"""
API Models - Pydantic models for request/response validation.

Bodies use camelCase on the wire; the original client script's
`orderID`/`productID` spellings are accepted as well.
"""

from datetime import datetime
from typing import Annotated

from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from storefront.models.domain import Payer, Product, ProductSnapshot, Transaction


class CamelModel(BaseModel):
    """Base model with camelCase aliases and whitespace stripping."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    return value or None


OptionalText = Annotated[str | None, Field(max_length=255), AfterValidator(_blank_to_none)]


# ============================================================================
# Capture Models
# ============================================================================


class CaptureOrderRequest(CamelModel):
    """POST /api/capture-order request body."""

    order_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("orderId", "orderID", "order_id"),
    )
    product_id: OptionalText = Field(
        None,
        validation_alias=AliasChoices("productId", "productID", "product_id"),
    )


class CaptureOrderResponse(CamelModel):
    """POST /api/capture-order success response."""

    success: bool = True
    transaction_id: str


# ============================================================================
# Transaction Models
# ============================================================================


class ProductSnapshotView(CamelModel):
    id: str
    name: str
    price: str


class PayerView(CamelModel):
    email: str
    first_name: str
    last_name: str


class TransactionView(CamelModel):
    """Transaction as returned to the buyer."""

    id: str
    order_id: str
    purchase_date: datetime
    product: ProductSnapshotView
    payer: PayerView

    @classmethod
    def from_domain(cls, transaction: Transaction) -> "TransactionView":
        return cls(
            id=transaction.id,
            order_id=transaction.order_id,
            purchase_date=transaction.purchase_date,
            product=_snapshot_view(transaction.product),
            payer=_payer_view(transaction.payer),
        )


def _snapshot_view(snapshot: ProductSnapshot) -> ProductSnapshotView:
    return ProductSnapshotView(id=snapshot.id, name=snapshot.name, price=snapshot.price)


def _payer_view(payer: Payer) -> PayerView:
    return PayerView(email=payer.email, first_name=payer.first_name, last_name=payer.last_name)


class VerifyTransactionRequest(CamelModel):
    """POST /api/verify-transaction request body. One of the two fields is required."""

    transaction_id: OptionalText = Field(
        None,
        validation_alias=AliasChoices("transactionId", "transactionID", "transaction_id"),
    )
    email: OptionalText = None

    @model_validator(mode="after")
    def require_lookup_key(self) -> "VerifyTransactionRequest":
        if self.transaction_id is None and self.email is None:
            raise ValueError("A Transaction ID or Purchase Email is required.")
        return self


class TransactionResponse(CamelModel):
    """Response carrying a verified transaction (verify and success views)."""

    success: bool = True
    transaction: TransactionView


# ============================================================================
# Catalog Models
# ============================================================================


class ProductView(CamelModel):
    """Public product attributes. The private filename is never exposed."""

    id: str
    name: str
    price: str
    text: str = ""
    image: str = ""
    description: str = ""

    @classmethod
    def from_domain(cls, product: Product) -> "ProductView":
        return cls(
            id=product.id,
            name=product.name,
            price=product.price,
            text=product.text,
            image=product.image,
            description=product.description,
        )


class ProductResponse(CamelModel):
    success: bool = True
    product: ProductView


class ProductListResponse(CamelModel):
    """GET /api/products page of the catalog."""

    products: list[ProductView]
    current_page: int
    total_pages: int
    has_previous_page: bool
    has_next_page: bool


class ClaimFreeRequest(CamelModel):
    """POST /api/claim-free request body."""

    product_id: str = Field(
        ...,
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("productId", "productID", "product_id"),
    )


# ============================================================================
# Generic Models
# ============================================================================


class ErrorResponse(CamelModel):
    """Failure body shared by every endpoint."""

    success: bool = False
    message: str
    redirect: str | None = None


class HealthResponse(CamelModel):
    """GET /health response."""

    status: str
    mode: str
    ledger: str
    transactions: int | None = None
    timestamp: datetime
