"""SQLAlchemy models for the swap registry."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class DecimalString(TypeDecorator):
    """Exact decimal stored as text.

    NEAR amounts carry 24 decimal places, more than a Numeric(36, 18) column
    holds, and SQLite would round Numeric through a float.
    """

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return format(Decimal(value), "f")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to datetimes read back from backends that drop the offset."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SwapStatus(str, Enum):
    """Lifecycle status of a swap."""

    CREATED = "created"      # Source escrow seen, counter-leg not yet funded
    LOCKED = "locked"        # Counter-leg fully escrowed
    COMPLETED = "completed"  # Both legs withdrawn with the secret
    FAILED = "failed"        # Counter-leg could not be created
    EXPIRED = "expired"      # Locked swap passed its deadline without a secret
    REFUNDED = "refunded"    # Every escrowed leg returned to its creator


class EscrowSide(str, Enum):
    """Which leg of the swap an escrow belongs to."""

    SOURCE = "source"
    DESTINATION = "destination"


class EscrowStatus(str, Enum):
    """Settlement state of a single escrow."""

    OPEN = "open"
    WITHDRAWN = "withdrawn"
    REFUNDED = "refunded"


class Swap(Base):
    """Swap aggregate: one hashlock binding a source and a destination leg."""

    __tablename__ = "swaps"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    hashlock: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    secret: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    source_chain: Mapped[str] = mapped_column(String(20), nullable=False)
    destination_chain: Mapped[str] = mapped_column(String(20), nullable=False)
    principal_amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    counter_amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    initiator_address: Mapped[str] = mapped_column(String(128), nullable=False)
    beneficiary_address: Mapped[str] = mapped_column(String(128), nullable=False)
    source_timelock: Mapped[int] = mapped_column(BigInteger, nullable=False)
    destination_timelock: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    status: Mapped[SwapStatus] = mapped_column(
        String(20), default=SwapStatus.CREATED, nullable=False, index=True
    )
    rate_source: Mapped[str] = mapped_column(String(50), nullable=False, default="unknown")
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    fills: Mapped[list["PartialFill"]] = relationship(
        back_populates="swap",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="PartialFill.id",
    )
    escrows: Mapped[list["EscrowRecord"]] = relationship(
        back_populates="swap",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="EscrowRecord.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def filled_amount(self) -> Decimal:
        """Sum of recorded fills."""
        return sum((fill.amount for fill in self.fills), Decimal("0"))


class PartialFill(Base):
    """One destination escrow counted towards the swap's counter amount."""

    __tablename__ = "partial_fills"
    __table_args__ = (
        Index("ix_partial_fills_swap_escrow", "swap_id", "escrow_reference", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    swap_id: Mapped[str] = mapped_column(
        ForeignKey("swaps.id", ondelete="CASCADE"), nullable=False
    )
    escrow_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    swap: Mapped["Swap"] = relationship(back_populates="fills")


class EscrowRecord(Base):
    """An on-chain escrow known to belong to a swap."""

    __tablename__ = "escrows"
    __table_args__ = (
        Index("ix_escrows_chain_reference", "chain", "escrow_reference", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    swap_id: Mapped[str] = mapped_column(
        ForeignKey("swaps.id", ondelete="CASCADE"), nullable=False, index=True
    )
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    side: Mapped[EscrowSide] = mapped_column(String(20), nullable=False)
    escrow_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    timelock: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[EscrowStatus] = mapped_column(
        String(20), default=EscrowStatus.OPEN, nullable=False
    )
    owned: Mapped[bool] = mapped_column(Boolean, default=False)  # created by the relayer
    tx_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # settling tx
    refund_attempts: Mapped[int] = mapped_column(default=0)
    withdraw_attempts: Mapped[int] = mapped_column(default=0)
    alerted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    swap: Mapped["Swap"] = relationship(back_populates="escrows")


class SwapIntent(Base):
    """Swap requested through the API, waiting for the user's source escrow.

    Holds the auction window quoted to the user; the swap created from it
    reuses its id.
    """

    __tablename__ = "swap_intents"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    hashlock: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    source_chain: Mapped[str] = mapped_column(String(20), nullable=False)
    destination_chain: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    beneficiary_address: Mapped[str] = mapped_column(String(128), nullable=False)
    timelock: Mapped[int] = mapped_column(BigInteger, nullable=False)
    auction_start: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    auction_floor: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class ChainCursor(Base):
    """Last durably processed event sequence per chain."""

    __tablename__ = "chain_cursors"

    chain: Mapped[str] = mapped_column(String(20), primary_key=True)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class OperatorAlert(Base):
    """Alert raised for a condition the relayer cannot resolve on its own."""

    __tablename__ = "operator_alerts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    swap_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
