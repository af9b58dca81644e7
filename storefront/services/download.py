"""
Download Gate - Issue and redeem single-use download grants.

A grant names exactly one product and is bound to one session. Redeeming
it removes it before the file is resolved, so a failed or interrupted
transfer needs a fresh authorization.
"""

from pathlib import Path

from structlog import get_logger

from storefront.exceptions import (
    DownloadNotAuthorizedError,
    InvalidRequestError,
    ProductFileMissingError,
    ProductGoneError,
    ProductNotFoundError,
    TransactionNotFoundError,
)
from storefront.models.domain import SINGLE_PRODUCT_GRANT, DownloadTicket, Product, Transaction
from storefront.observability.metrics import metrics
from storefront.services.catalog import CatalogStore
from storefront.services.ledger import TransactionLedger
from storefront.services.sessions import SessionContext

logger = get_logger(__name__)

REDOWNLOAD_PATH = "/redownload"


class DownloadGate:
    """Session-bound download authorization."""

    def __init__(
        self,
        catalog: CatalogStore,
        ledger: TransactionLedger,
        downloads_dir: Path,
        mode: str = "shop",
        single_product_id: str = "",
    ) -> None:
        self.catalog = catalog
        self.ledger = ledger
        self.downloads_dir = downloads_dir
        self.mode = mode
        self.single_product_id = single_product_id

    @property
    def is_shop_mode(self) -> bool:
        return self.mode == "shop"

    async def authorize(self, session: SessionContext, product_id: str) -> None:
        """Grant one download of product_id, replacing any earlier grant."""
        await session.set_grant(product_id)

    async def redeem(self, session: SessionContext) -> DownloadTicket:
        """
        Consume the session's grant and resolve the file it covers.

        Raises:
            DownloadNotAuthorizedError: No live grant on this session
            ProductGoneError: Granted product was removed from the catalog
            ProductFileMissingError: Product file is not on disk
        """
        product_id = await session.take_grant()
        if product_id is None:
            metrics.record_download("unauthorized")
            logger.info("download_not_authorized")
            raise DownloadNotAuthorizedError(REDOWNLOAD_PATH)

        lookup = self._catalog_id(product_id)
        product = self.catalog.get_product(lookup)
        if product is None:
            metrics.record_download("product_gone")
            logger.warning("download_product_gone", product_id=lookup)
            raise ProductGoneError(lookup)

        path = self._file_path(product)
        if not path.is_file():
            metrics.record_download("file_missing")
            logger.error(
                "download_file_missing",
                product_id=product.id,
                filename=product.filename,
                downloads_dir=str(self.downloads_dir),
            )
            raise ProductFileMissingError(product.id, product.filename)

        metrics.record_download("served")
        logger.info("download_redeemed", product_id=product.id, filename=product.filename)
        return DownloadTicket(product_id=product.id, path=path, filename=product.filename)

    async def verify_and_authorize(
        self,
        session: SessionContext,
        transaction_id: str | None = None,
        email: str | None = None,
    ) -> Transaction:
        """
        Re-authorize a past purchase by transaction id or payer email.

        The transaction id wins when both are given. An email lookup grants
        the most recent purchase made with that address.

        Raises:
            InvalidRequestError: Neither lookup key given
            TransactionNotFoundError: No matching purchase
        """
        transaction_id = (transaction_id or "").strip()
        email = (email or "").strip()

        if transaction_id:
            transaction = await self.ledger.find_by_id(transaction_id)
            lookup = transaction_id
        elif email:
            transaction = await self.ledger.find_latest_by_email(email)
            lookup = email
        else:
            raise InvalidRequestError("A Transaction ID or Purchase Email is required.")

        if transaction is None:
            logger.info(
                "redownload_verification_failed",
                by="transaction_id" if transaction_id else "email",
            )
            raise TransactionNotFoundError(lookup)

        await self._grant_transaction(session, transaction, "redownload")
        return transaction

    async def authorize_success(self, session: SessionContext, transaction_id: str) -> Transaction:
        """
        Grant the download for a just-completed purchase.

        Raises:
            InvalidRequestError: Blank transaction id
            TransactionNotFoundError: Unknown transaction id
        """
        transaction_id = transaction_id.strip()
        if not transaction_id:
            raise InvalidRequestError("Transaction ID is required.")

        transaction = await self.ledger.find_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)

        await self._grant_transaction(session, transaction, "purchase")
        return transaction

    async def claim_free(self, session: SessionContext, product_id: str) -> Product:
        """
        Grant a free product without payment and without a ledger record.

        Raises:
            InvalidRequestError: Not in shop mode, or the product is not free
            ProductNotFoundError: Unknown product
        """
        if not self.is_shop_mode:
            raise InvalidRequestError("Free claims are only available in shop mode.")

        product = self.catalog.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        if not product.is_free:
            logger.warning("free_claim_rejected", product_id=product.id, price=product.price)
            raise InvalidRequestError("This product is not free.")

        await self.authorize(session, product.id)
        metrics.record_grant("free")
        logger.info("free_product_claimed", product_id=product.id)
        return product

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _grant_transaction(
        self, session: SessionContext, transaction: Transaction, source: str
    ) -> None:
        grant = transaction.product.id if self.is_shop_mode else SINGLE_PRODUCT_GRANT
        await self.authorize(session, grant)
        metrics.record_grant(source)
        logger.info("transaction_download_authorized", transaction_id=transaction.id, source=source)

    def _catalog_id(self, grant: str) -> str:
        if grant == SINGLE_PRODUCT_GRANT and not self.is_shop_mode:
            return self.single_product_id
        return grant

    def _file_path(self, product: Product) -> Path:
        # Product.filename never contains a directory component
        return self.downloads_dir / product.filename
