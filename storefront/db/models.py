"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations. Rows are written once and
never updated.
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class TransactionRecord(Base):
    """
    ORM model for transactions table.

    One row per completed capture. The product columns are a snapshot
    taken at capture time, so later catalog edits do not alter history.
    """

    __tablename__ = "transactions"

    # Primary Key (PayPal capture id)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    purchase_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # Product snapshot
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    product_price: Mapped[str] = mapped_column(String(32), nullable=False)

    # Payer
    payer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    payer_email_normalized: Mapped[str] = mapped_column(String(255), nullable=False)
    payer_first_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    payer_last_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    __table_args__ = (
        Index("idx_transactions_email_date", "payer_email_normalized", "purchase_date"),
        Index("idx_transactions_order_id", "order_id"),
    )
