"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Every piece of gateway state (clients, codes, pending authorizations,
refresh tokens, tools, payment records, balance snapshots) lives in one
key-value table so that the atomic primitives the flows depend on
(insert-if-absent, compare-and-set, delete-returning) are each a single
SQL statement.
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class KeyValueEntry(Base):
    """
    ORM model for kv_entries table.

    Keys are namespaced by prefix (`client:`, `code:`, `payment:`...).
    Values are JSON documents. Entries with `expires_at` in the past are
    treated as absent by every read and reclaimed by the sweeper.
    """

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (Index("idx_kv_entries_expires_at", "expires_at"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<KeyValueEntry(key={self.key}, expires_at={self.expires_at})>"
