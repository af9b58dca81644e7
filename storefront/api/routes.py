"""
API Routes - FastAPI endpoints for purchase, redownload and delivery.

All requests/responses use Pydantic models. Domain errors propagate to
the exception handlers registered in storefront.main, which render the
`{success: false, message}` body.
"""

import math
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from storefront.api.dependencies import (
    Storefront,
    get_catalog,
    get_download_gate,
    get_purchase_engine,
    get_session_context,
    get_storefront,
    redownload_url,
)
from storefront.exceptions import ProductNotFoundError
from storefront.models.api import (
    CaptureOrderRequest,
    CaptureOrderResponse,
    ClaimFreeRequest,
    HealthResponse,
    ProductListResponse,
    ProductResponse,
    ProductView,
    TransactionResponse,
    TransactionView,
    VerifyTransactionRequest,
)
from storefront.models.domain import CaptureRequest
from storefront.services.catalog import CatalogStore
from storefront.services.download import DownloadGate
from storefront.services.purchase import PurchaseAuthorizationEngine
from storefront.services.sessions import SessionContext

logger = get_logger(__name__)

# Routes available in both modes
router = APIRouter()

# Catalog browsing and free claims (APP_MODE=shop)
shop_router = APIRouter()

# The one configured product (APP_MODE=single)
single_router = APIRouter()


# ============================================================================
# Purchase
# ============================================================================


@router.post("/api/capture-order", response_model=CaptureOrderResponse)
async def capture_order(
    body: CaptureOrderRequest,
    engine: PurchaseAuthorizationEngine = Depends(get_purchase_engine),
    receipt_url: str = Depends(redownload_url),
) -> CaptureOrderResponse:
    """
    Capture a PayPal order the buyer approved and record the purchase.

    In single mode the product id is ignored: the configured product is
    always the one being paid for.
    """
    request = CaptureRequest(
        order_id=body.order_id,
        product_id=body.product_id if engine.is_shop_mode else None,
    )
    transaction = await engine.capture_purchase(request, receipt_url)
    return CaptureOrderResponse(transaction_id=transaction.id)


@router.get("/purchase/success", response_model=TransactionResponse)
async def purchase_success(
    transaction_id: str = Query(..., alias="transactionId", min_length=1, max_length=255),
    gate: DownloadGate = Depends(get_download_gate),
    session: SessionContext = Depends(get_session_context),
) -> TransactionResponse:
    """Confirm a completed purchase and authorize its download for this session."""
    transaction = await gate.authorize_success(session, transaction_id)
    return TransactionResponse(transaction=TransactionView.from_domain(transaction))


# ============================================================================
# Redownload and Delivery
# ============================================================================


@router.post("/api/verify-transaction", response_model=TransactionResponse)
async def verify_transaction(
    body: VerifyTransactionRequest,
    gate: DownloadGate = Depends(get_download_gate),
    session: SessionContext = Depends(get_session_context),
) -> TransactionResponse:
    """Re-authorize a download from a transaction id or purchase email."""
    transaction = await gate.verify_and_authorize(
        session, transaction_id=body.transaction_id, email=body.email
    )
    return TransactionResponse(transaction=TransactionView.from_domain(transaction))


@router.get("/download/product", response_class=FileResponse)
async def download_product(
    gate: DownloadGate = Depends(get_download_gate),
    session: SessionContext = Depends(get_session_context),
) -> FileResponse:
    """
    Serve the file for the session's grant, consuming the grant.

    A second request needs a new authorization.
    """
    ticket = await gate.redeem(session)
    return FileResponse(
        ticket.path,
        filename=ticket.filename,
        media_type="application/octet-stream",
    )


# ============================================================================
# Catalog
# ============================================================================


@shop_router.get("/api/products", response_model=ProductListResponse)
async def list_products(
    page: int = Query(1),
    catalog: CatalogStore = Depends(get_catalog),
    storefront: Storefront = Depends(get_storefront),
) -> ProductListResponse:
    """
    One page of the catalog.

    Pages below 1 read as page 1; pages past the end read as the last page.
    """
    products = catalog.list_products()
    per_page = storefront.settings.items_per_page
    total_pages = math.ceil(len(products) / per_page)

    current_page = max(page, 1)
    if total_pages and current_page > total_pages:
        current_page = total_pages

    start = (current_page - 1) * per_page
    return ProductListResponse(
        products=[ProductView.from_domain(p) for p in products[start : start + per_page]],
        current_page=current_page,
        total_pages=total_pages,
        has_previous_page=current_page > 1,
        has_next_page=current_page < total_pages,
    )


@shop_router.get("/api/products/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: str,
    catalog: CatalogStore = Depends(get_catalog),
) -> ProductResponse:
    product = catalog.get_product(product_id)
    if product is None:
        raise ProductNotFoundError(product_id)
    return ProductResponse(product=ProductView.from_domain(product))


@shop_router.post("/api/claim-free", response_model=ProductResponse)
async def claim_free(
    body: ClaimFreeRequest,
    gate: DownloadGate = Depends(get_download_gate),
    session: SessionContext = Depends(get_session_context),
) -> ProductResponse:
    """Authorize a download of a product priced 0.00, without payment."""
    product = await gate.claim_free(session, body.product_id)
    return ProductResponse(product=ProductView.from_domain(product))


@single_router.get("/api/product", response_model=ProductResponse)
async def get_single_product(
    catalog: CatalogStore = Depends(get_catalog),
    storefront: Storefront = Depends(get_storefront),
) -> ProductResponse:
    """The product sold in single-product mode."""
    product_id = storefront.settings.single_product_id
    product = catalog.get_product(product_id)
    if product is None:
        raise ProductNotFoundError(product_id)
    return ProductResponse(product=ProductView.from_domain(product))


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(storefront: Storefront = Depends(get_storefront)) -> HealthResponse:
    """Health check endpoint with ledger connectivity check."""
    try:
        transactions: int | None = await storefront.ledger.count()
        ledger_status = "connected"
    except SQLAlchemyError as exc:
        logger.error("health_check_ledger_failed", error=str(exc))
        transactions = None
        ledger_status = "unavailable"

    return HealthResponse(
        status="healthy" if transactions is not None else "degraded",
        mode=storefront.settings.app_mode,
        ledger=ledger_status,
        transactions=transactions,
        timestamp=datetime.now(UTC),
    )
