"""
Transaction Ledger - Append-only record of completed purchases.

All appends go through a single-writer lock per ledger instance. Each
insert is flushed and read back before commit (write verification).
Records are never updated or deleted.
"""

import asyncio
import time
from datetime import UTC

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from structlog import get_logger

from storefront.db.models import TransactionRecord
from storefront.db.session import create_schema, create_session_factory
from storefront.exceptions import PersistenceError
from storefront.models.domain import Payer, ProductSnapshot, Transaction
from storefront.observability.metrics import metrics

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    """Lookup key for payer emails: trimmed and case-folded."""
    return email.strip().lower()


class TransactionLedger:
    """Durable transaction log backed by SQLAlchemy."""

    def __init__(self, engine: AsyncEngine, database_url: str) -> None:
        """
        Initialize ledger.

        Args:
            engine: Async engine for the ledger database
            database_url: URL the engine was built from, used for bootstrap
        """
        self.engine = engine
        self.database_url = database_url
        self.session_factory: async_sessionmaker[AsyncSession] = create_session_factory(engine)
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """
        Create the backing store if it does not exist yet.

        Raises:
            OSError: If the database directory cannot be created
            SQLAlchemyError: If the database cannot be opened
        """
        await create_schema(self.engine, self.database_url)
        logger.info("transaction_ledger_ready", database=self.engine.url.render_as_string())

    async def append(self, transaction: Transaction) -> Transaction:
        """
        Durably record a transaction.

        Args:
            transaction: Completed purchase to record

        Returns:
            The recorded transaction as read back from the store

        Raises:
            PersistenceError: On duplicate id, failed verification or database error
        """
        started = time.perf_counter()
        async with self._write_lock:
            try:
                recorded = await self._insert(transaction)
            except PersistenceError:
                metrics.record_ledger_append(False, time.perf_counter() - started)
                raise
            except SQLAlchemyError as exc:
                metrics.record_ledger_append(False, time.perf_counter() - started)
                logger.error(
                    "ledger_append_failed",
                    transaction_id=transaction.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise PersistenceError(
                    f"Could not record transaction: {exc}", transaction.id
                ) from exc

        metrics.record_ledger_append(True, time.perf_counter() - started)
        logger.info(
            "transaction_recorded",
            transaction_id=recorded.id,
            order_id=recorded.order_id,
            product_id=recorded.product.id,
        )
        return recorded

    async def find_by_id(self, transaction_id: str) -> Transaction | None:
        """Point lookup by transaction (capture) id."""
        async with self.session_factory() as session:
            record = await session.get(TransactionRecord, transaction_id)
            return _record_to_domain(record) if record is not None else None

    async def find_latest_by_email(self, email: str) -> Transaction | None:
        """
        Most recent purchase for a payer email.

        Matching is case-insensitive and ignores surrounding whitespace.
        """
        key = normalize_email(email)
        if not key:
            return None

        stmt = (
            select(TransactionRecord)
            .where(TransactionRecord.payer_email_normalized == key)
            .order_by(TransactionRecord.purchase_date.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            return _record_to_domain(record) if record is not None else None

    async def count(self) -> int:
        """Number of recorded transactions."""
        async with self.session_factory() as session:
            result = await session.execute(select(func.count()).select_from(TransactionRecord))
            return int(result.scalar_one())

    async def close(self) -> None:
        """Dispose the engine (for graceful shutdown)."""
        await self.engine.dispose()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _insert(self, transaction: Transaction) -> Transaction:
        record = TransactionRecord(
            id=transaction.id,
            order_id=transaction.order_id,
            purchase_date=transaction.purchase_date.astimezone(UTC),
            product_id=transaction.product.id,
            product_name=transaction.product.name,
            product_price=transaction.product.price,
            payer_email=transaction.payer.email,
            payer_email_normalized=normalize_email(transaction.payer.email),
            payer_first_name=transaction.payer.first_name,
            payer_last_name=transaction.payer.last_name,
        )

        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                logger.error("duplicate_transaction_id", transaction_id=transaction.id)
                raise PersistenceError(
                    f"Transaction {transaction.id} already recorded", transaction.id
                ) from exc

            # Verify transaction was written
            verified = await session.get(TransactionRecord, transaction.id)
            if verified is None:
                await session.rollback()
                raise PersistenceError(
                    f"Transaction {transaction.id} not found after insert", transaction.id
                )

            await session.commit()
            return _record_to_domain(verified)


def _record_to_domain(record: TransactionRecord) -> Transaction:
    purchase_date = record.purchase_date
    # SQLite hands back naive datetimes; every stored value is UTC
    if purchase_date.tzinfo is None:
        purchase_date = purchase_date.replace(tzinfo=UTC)

    return Transaction(
        id=record.id,
        order_id=record.order_id,
        purchase_date=purchase_date,
        product=ProductSnapshot(
            id=record.product_id,
            name=record.product_name,
            price=record.product_price,
        ),
        payer=Payer(
            email=record.payer_email,
            first_name=record.payer_first_name,
            last_name=record.payer_last_name,
        ),
    )
