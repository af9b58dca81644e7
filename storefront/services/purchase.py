"""
Purchase Authorization Engine - Capture, verify, record, notify.

The catalog is the only trusted source of prices. Whatever the browser
approved with PayPal, a capture is recorded only when the amount PayPal
reports equals the catalog price exactly and is in the store currency.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime

from structlog import get_logger

from storefront.exceptions import (
    CaptureFailedError,
    InvalidAmountError,
    InvalidRequestError,
    PersistenceError,
    ProductNotFoundError,
    UpstreamError,
)
from storefront.models.domain import (
    SINGLE_PRODUCT_GRANT,
    CaptureRequest,
    CaptureResult,
    Product,
    ProductSnapshot,
    Transaction,
    parse_amount,
)
from storefront.observability.metrics import metrics
from storefront.observability.tracing import add_span_attributes, get_tracer, set_span_error
from storefront.services.catalog import CatalogStore
from storefront.services.ledger import TransactionLedger
from storefront.services.notifications import ReceiptNotifier
from storefront.services.payment_provider import PaymentProvider

logger = get_logger(__name__)
tracer = get_tracer(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class PurchaseAuthorizationEngine:
    """
    Orchestrates one purchase: Requested -> Captured -> AmountVerified -> Recorded.

    The engine never retries a capture and never refunds. If PayPal has
    captured funds but the ledger append fails, the error is logged with
    everything needed for manual reconciliation and surfaced to the caller.
    """

    def __init__(
        self,
        catalog: CatalogStore,
        provider: PaymentProvider,
        ledger: TransactionLedger,
        notifier: ReceiptNotifier | None = None,
        mode: str = "shop",
        single_product_id: str = "",
        store_currency: str = "USD",
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """
        Initialize purchase engine.

        Args:
            catalog: Server-trusted product definitions
            provider: Payment processor client
            ledger: Transaction ledger
            notifier: Receipt sender; receipts are skipped when None
            mode: "shop" or "single"
            single_product_id: Catalog id sold in single mode
            store_currency: ISO currency every capture must be paid in
            clock: Source of purchase timestamps
        """
        self.catalog = catalog
        self.provider = provider
        self.ledger = ledger
        self.notifier = notifier
        self.mode = mode
        self.single_product_id = single_product_id
        self.store_currency = store_currency.upper()
        self._clock = clock

    @property
    def is_shop_mode(self) -> bool:
        return self.mode == "shop"

    def resolve_product(self, product_id: str | None) -> Product:
        """
        Find the product a capture request is paying for.

        Raises:
            InvalidRequestError: Shop mode request without a product id
            ProductNotFoundError: Unknown product
        """
        if self.is_shop_mode:
            if not product_id:
                raise InvalidRequestError("Order ID and Product ID are required.")
            lookup = product_id
        else:
            lookup = self.single_product_id

        product = self.catalog.get_product(lookup)
        if product is None:
            raise ProductNotFoundError(lookup)
        return product

    async def capture_purchase(self, request: CaptureRequest, redownload_url: str) -> Transaction:
        """
        Capture a buyer-approved order and record the resulting transaction.

        Args:
            request: PayPal order id and, in shop mode, the product id
            redownload_url: Link included in the receipt email

        Returns:
            The recorded transaction

        Raises:
            InvalidRequestError: Missing order id, or missing product id in shop mode
            ProductNotFoundError: Product not in the catalog (nothing is captured)
            CaptureFailedError: PayPal did not complete the capture
            InvalidAmountError: Paid amount or currency differs from the catalog
            PersistenceError: Funds captured but the transaction was not recorded
        """
        started = time.perf_counter()
        with tracer.start_as_current_span("capture_purchase") as span:
            add_span_attributes(span, order_id=request.order_id, product_id=request.product_id)
            try:
                transaction = await self._capture_purchase(request, redownload_url)
            except Exception as exc:
                set_span_error(span, exc)
                metrics.record_capture(_capture_outcome(exc), time.perf_counter() - started)
                raise
            add_span_attributes(span, transaction_id=transaction.id)

        metrics.record_capture("success", time.perf_counter() - started)
        return transaction

    async def _capture_purchase(self, request: CaptureRequest, redownload_url: str) -> Transaction:
        if not request.order_id:
            raise InvalidRequestError("Order ID and Product ID are required.")

        # Requested: resolve the product before any money moves
        product = self.resolve_product(request.product_id)

        # Captured
        try:
            capture = await self.provider.capture_order(request.order_id)
        except UpstreamError as exc:
            logger.error(
                "capture_order_failed",
                order_id=request.order_id,
                product_id=product.id,
                error=exc.message,
                error_type=type(exc).__name__,
            )
            raise CaptureFailedError(exc.message, request.order_id) from exc

        # AmountVerified
        self._verify_amount(product, capture)

        # Recorded
        transaction = Transaction(
            id=capture.capture_id,
            order_id=request.order_id,
            purchase_date=self._clock(),
            product=ProductSnapshot(
                id=product.id if self.is_shop_mode else SINGLE_PRODUCT_GRANT,
                name=product.name,
                price=product.price,
            ),
            payer=capture.payer,
        )

        try:
            recorded = await self.ledger.append(transaction)
        except PersistenceError:
            logger.error(
                "payment_captured_but_not_recorded",
                order_id=request.order_id,
                capture_id=capture.capture_id,
                product_id=product.id,
                amount=capture.amount_value,
                currency=capture.currency_code,
                payer_email=capture.payer.email,
            )
            raise

        logger.info(
            "purchase_completed",
            transaction_id=recorded.id,
            order_id=recorded.order_id,
            product_id=product.id,
            amount=product.price,
        )

        # Notify (off the request path)
        if self.notifier is not None:
            self.notifier.dispatch(recorded, redownload_url)

        return recorded

    def _verify_amount(self, product: Product, capture: CaptureResult) -> None:
        """
        Compare the captured amount to the catalog price as exact decimals.

        Raises:
            InvalidAmountError: On any price or currency mismatch
        """
        paid = parse_amount(capture.amount_value)
        currency = capture.currency_code.upper()
        if paid == product.price_amount and currency == self.store_currency:
            return

        logger.warning(
            "payment_amount_mismatch",
            severity="security",
            product_id=product.id,
            expected_price=product.price,
            paid_amount=capture.amount_value,
            currency=capture.currency_code,
            expected_currency=self.store_currency,
            order_id=capture.order_id,
            capture_id=capture.capture_id,
        )
        raise InvalidAmountError(
            product_id=product.id,
            expected_price=product.price,
            paid_amount=capture.amount_value,
            currency=capture.currency_code,
            order_id=capture.order_id,
        )


def _capture_outcome(exc: Exception) -> str:
    if isinstance(exc, InvalidAmountError):
        return "amount_mismatch"
    if isinstance(exc, CaptureFailedError):
        return "capture_failed"
    if isinstance(exc, PersistenceError):
        return "persistence_error"
    if isinstance(exc, ProductNotFoundError):
        return "product_not_found"
    if isinstance(exc, InvalidRequestError):
        return "invalid_request"
    return "error"
