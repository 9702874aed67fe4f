"""Database models for the server-side stocktake store."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .domain import STATUS_ACTIVE, STATUS_COMPLETED, utcnow

COUNT_SOURCES = ("scan", "manual", "keg")


class TimestampMixin:
    """Mixin providing created/updated timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class Stocktake(Base, TimestampMixin):
    __tablename__ = "stocktakes"
    __table_args__ = (
        CheckConstraint(
            f"status IN ('{STATUS_ACTIVE}', '{STATUS_COMPLETED}')",
            name="ck_stocktakes_status",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=STATUS_ACTIVE, nullable=False)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[str | None] = mapped_column(String(128))

    theoretical_items: Mapped[list["TheoreticalItemRecord"]] = relationship(
        back_populates="stocktake",
        order_by="TheoreticalItemRecord.position",
        cascade="all, delete-orphan",
    )


class ActiveStocktake(Base):
    """Single-row table naming the one active stocktake.

    The fixed primary key turns "create while none is active" into an atomic
    insert: a second concurrent insert violates the key.
    """

    __tablename__ = "active_stocktake"
    __table_args__ = (CheckConstraint("slot = 1", name="ck_active_stocktake_single_row"),)

    slot: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    stocktake_id: Mapped[str] = mapped_column(
        ForeignKey("stocktakes.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    activated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class TheoreticalItemRecord(Base):
    __tablename__ = "theoretical_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stocktake_id: Mapped[str] = mapped_column(
        ForeignKey("stocktakes.id", ondelete="CASCADE"), index=True, nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    product_code: Mapped[str] = mapped_column(String(128), nullable=False)
    barcode: Mapped[str | None] = mapped_column(String(64))
    description: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    unit: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    unit_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    theoretical_qty: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    stocktake: Mapped[Stocktake] = relationship(back_populates="theoretical_items")


class BarcodeMappingRecord(Base):
    __tablename__ = "barcode_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stocktake_id: Mapped[str] = mapped_column(
        ForeignKey("stocktakes.id", ondelete="CASCADE"), index=True, nullable=False
    )
    product_code: Mapped[str] = mapped_column(String(128), nullable=False)
    barcode: Mapped[str] = mapped_column(String(64), nullable=False)


class CountEvent(Base):
    __tablename__ = "count_events"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_count_events_quantity_positive"),
        CheckConstraint(
            "source IN (" + ", ".join(f"'{source}'" for source in COUNT_SOURCES) + ")",
            name="ck_count_events_source",
        ),
    )

    sync_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stocktake_id: Mapped[str] = mapped_column(
        ForeignKey("stocktakes.id", ondelete="CASCADE"), index=True, nullable=False
    )
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    barcode: Mapped[str | None] = mapped_column(String(64))
    product_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    location: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    recorded_by: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class CountEventTombstone(Base):
    """Audit copy of a deleted count event; also blocks resurrection on retry."""

    __tablename__ = "count_event_tombstones"

    sync_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stocktake_id: Mapped[str] = mapped_column(
        ForeignKey("stocktakes.id", ondelete="CASCADE"), index=True, nullable=False
    )
    source: Mapped[str | None] = mapped_column(String(16))
    barcode: Mapped[str | None] = mapped_column(String(64))
    product_name: Mapped[str | None] = mapped_column(String(255))
    quantity: Mapped[float | None] = mapped_column(Float)
    location: Mapped[str | None] = mapped_column(String(128))
    recorded_by: Mapped[str | None] = mapped_column(String(128))
    deleted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class AdjustmentRecord(Base):
    __tablename__ = "adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stocktake_id: Mapped[str] = mapped_column(
        ForeignKey("stocktakes.id", ondelete="CASCADE"), index=True, nullable=False
    )
    product_code: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    old_count: Mapped[float | None] = mapped_column(Float)
    new_count: Mapped[float] = mapped_column(Float, nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    user: Mapped[str] = mapped_column(String(128), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


__all__ = [
    "STATUS_ACTIVE",
    "STATUS_COMPLETED",
    "COUNT_SOURCES",
    "Stocktake",
    "ActiveStocktake",
    "TheoreticalItemRecord",
    "BarcodeMappingRecord",
    "CountEvent",
    "CountEventTombstone",
    "AdjustmentRecord",
]
