"""
FastAPI Dependencies - Wired storefront components and session context.

All dependencies return typed objects.
"""

from dataclasses import dataclass

from fastapi import Depends, Request
from structlog import get_logger

from storefront.config import ConfigurationError, Settings
from storefront.services.catalog import CatalogStore
from storefront.services.download import DownloadGate
from storefront.services.ledger import TransactionLedger
from storefront.services.notifications import ReceiptNotifier
from storefront.services.payment_provider import PaymentProvider
from storefront.services.purchase import PurchaseAuthorizationEngine
from storefront.services.sessions import GrantStore, SessionContext

logger = get_logger(__name__)


@dataclass
class Storefront:
    """Every long-lived component of one running storefront."""

    settings: Settings
    catalog: CatalogStore
    ledger: TransactionLedger
    provider: PaymentProvider
    grant_store: GrantStore
    notifier: ReceiptNotifier
    engine: PurchaseAuthorizationEngine
    gate: DownloadGate

    async def startup(self) -> None:
        """
        Load the catalog and bootstrap the ledger.

        Raises:
            CatalogError: products.json is unreadable or invalid
            ConfigurationError: Single mode product is not in the catalog
            OSError: Ledger storage cannot be created
        """
        self.catalog.load()

        if not self.settings.is_shop_mode:
            product = self.catalog.get_product(self.settings.single_product_id)
            if product is None:
                raise ConfigurationError(
                    f"SINGLE_PRODUCT_ID {self.settings.single_product_id!r} "
                    f"not found in {self.settings.products_path}"
                )
            logger.info("single_product_mode", product_id=product.id, price=product.price)

        await self.ledger.initialize()

    async def shutdown(self) -> None:
        """Finish pending receipts and release network and database resources."""
        await self.notifier.drain()
        await self.provider.close()
        await self.grant_store.close()
        await self.ledger.close()


def get_storefront(request: Request) -> Storefront:
    """Components attached to the application at creation time."""
    storefront: Storefront = request.app.state.storefront
    return storefront


def get_catalog(storefront: Storefront = Depends(get_storefront)) -> CatalogStore:
    return storefront.catalog


def get_purchase_engine(
    storefront: Storefront = Depends(get_storefront),
) -> PurchaseAuthorizationEngine:
    return storefront.engine


def get_download_gate(storefront: Storefront = Depends(get_storefront)) -> DownloadGate:
    return storefront.gate


def get_session_context(
    request: Request, storefront: Storefront = Depends(get_storefront)
) -> SessionContext:
    """
    Grant view of the caller's session.

    Usage:
        @router.get("/download/product")
        async def download(session: SessionContext = Depends(get_session_context)):
            ...
    """
    return SessionContext(storefront.grant_store, request.session)


def redownload_url(request: Request, storefront: Storefront = Depends(get_storefront)) -> str:
    """Absolute URL of the redownload page, for receipt emails."""
    base = storefront.settings.public_base_url or str(request.base_url)
    return f"{base.rstrip('/')}/redownload"
