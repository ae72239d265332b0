"""SQLAlchemy models for persistent storage.

This module defines the database schema for delegation events, the ingestion
watermark, derived vote weights and delegate profiles.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class DelegationEventModel(Base):
    """Append-only ledger of decoded delegation events.

    Complete and incomplete events share the table and are told apart by
    `complete`; the (tx_hash, to_delegate) key is unique across both.
    """

    __tablename__ = "delegation_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    to_delegate: Mapped[str] = mapped_column(String(42), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    delegator: Mapped[str | None] = mapped_column(String(42), nullable=True)
    from_delegate: Mapped[str | None] = mapped_column(String(42), nullable=True)
    # Exact decimal text in token units; replay sums it without float drift.
    amount_delegated_changed: Mapped[str | None] = mapped_column(String(96), nullable=True)

    complete: Mapped[bool] = mapped_column(Boolean, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", "to_delegate", name="uq_delegation_events_key"),
        Index("idx_delegation_events_partition_block", "complete", "block_number"),
        Index("idx_delegation_events_to_delegate", "to_delegate"),
    )


class SyncCursorModel(Base):
    """Named ingestion cursors (the Event Store watermark lives here)."""

    __tablename__ = "sync_cursors"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class VoteWeightModel(Base):
    """Per-address voting power, from chain reads and from event replay."""

    __tablename__ = "vote_weights"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    weight: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)
    event_calc_weight: Mapped[Decimal | None] = mapped_column(Numeric(38, 2), nullable=True)
    unique_delegators: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delegator_percent: Mapped[Decimal | None] = mapped_column(Numeric(7, 2), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_vote_weights_weight", "weight"),)


class DelegateModel(Base):
    """Delegate identity/profile record."""

    __tablename__ = "delegates"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    ens: Mapped[str | None] = mapped_column(String(256), nullable=True)
    tally_profile: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_seeking_delegation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_delegates_tally_profile", "tally_profile"),)
