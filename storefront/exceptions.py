"""
Exception Classes - Strongly typed exception hierarchy.

Every exception carries typed attributes; the HTTP layer maps each class
to a status code and a response body.
"""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    pass


# ============================================================================
# Input validation (400)
# ============================================================================


class InvalidRequestError(StorefrontError):
    """Raised when required input is missing or malformed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ============================================================================
# Not found (404)
# ============================================================================


class NotFoundError(StorefrontError):
    """Base class for unknown products, transactions and files."""

    pass


class ProductNotFoundError(NotFoundError):
    """Raised when a product id is not in the catalog."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class TransactionNotFoundError(NotFoundError):
    """Raised when no recorded transaction matches a lookup."""

    def __init__(self, lookup: str) -> None:
        self.lookup = lookup
        super().__init__(f"No matching purchase found for {lookup}")


class ProductGoneError(NotFoundError):
    """Raised when a granted product was removed from the catalog after purchase."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Product configuration not found: {product_id}")


class ProductFileMissingError(NotFoundError):
    """Raised when a product's downloadable file is absent on disk."""

    def __init__(self, product_id: str, filename: str) -> None:
        self.product_id = product_id
        self.filename = filename
        super().__init__(f"File {filename} for product {product_id} not found")


# ============================================================================
# Security (amount tampering)
# ============================================================================


class SecurityViolationError(StorefrontError):
    """Base class for tampering attempts. Details are logged, never echoed."""

    pass


class InvalidAmountError(SecurityViolationError):
    """Raised when the captured amount differs from the catalog price."""

    def __init__(
        self,
        product_id: str,
        expected_price: str,
        paid_amount: str,
        currency: str,
        order_id: str,
    ) -> None:
        self.product_id = product_id
        self.expected_price = expected_price
        self.paid_amount = paid_amount
        self.currency = currency
        self.order_id = order_id
        super().__init__(
            f"Price mismatch for {product_id}: expected {expected_price}, "
            f"paid {paid_amount} {currency} (order {order_id})"
        )


# ============================================================================
# Upstream payment processor (500)
# ============================================================================


class UpstreamError(StorefrontError):
    """Base class for payment processor failures."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class GatewayAuthError(UpstreamError):
    """Raised when the credential exchange with the processor fails."""

    pass


class CaptureError(UpstreamError):
    """Raised when the processor rejects or does not complete an order capture."""

    def __init__(self, message: str, order_id: str, status_code: int | None = None) -> None:
        self.order_id = order_id
        self.status_code = status_code
        super().__init__(message)


class CaptureFailedError(UpstreamError):
    """Raised by the purchase engine when the capture step fails for any reason."""

    def __init__(self, message: str, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(message)


# ============================================================================
# Persistence (500)
# ============================================================================


class PersistenceError(StorefrontError):
    """
    Raised when the transaction ledger cannot record a purchase.

    When raised after a successful capture, money has moved but the
    entitlement did not persist; the capture id is kept for reconciliation.
    """

    def __init__(self, message: str, transaction_id: str | None = None) -> None:
        self.message = message
        self.transaction_id = transaction_id
        super().__init__(f"Persistence error: {message}")


# ============================================================================
# Download authorization (403)
# ============================================================================


class DownloadNotAuthorizedError(StorefrontError):
    """Raised when a download is requested without a live session grant."""

    def __init__(self, redirect_to: str = "/redownload") -> None:
        self.redirect_to = redirect_to
        super().__init__("No download authorization for this session")


# ============================================================================
# Startup
# ============================================================================


class CatalogError(StorefrontError):
    """Raised when the product catalog cannot be loaded or is invalid."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Catalog error: {message}")
