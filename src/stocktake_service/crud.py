"""Business logic for interacting with the server-side stocktake store."""
from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.exc import NoResultFound
from sqlalchemy.ext.asyncio import AsyncSession

from . import schemas
from .domain import AdjustmentEntry, CountRecord, TheoreticalItem, VarianceReport, as_utc, utcnow
from .errors import UnknownProduct
from .lifecycle import ensure_active, get_stocktake
from .matching import BarcodeMapping
from .models import (
    AdjustmentRecord,
    BarcodeMappingRecord,
    CountEvent,
    CountEventTombstone,
    Stocktake,
    TheoreticalItemRecord,
)
from .variance import build_report

logger = logging.getLogger(__name__)

_COMPARED_FIELDS = ("source", "barcode", "product_name", "quantity", "location")


async def require_stocktake(session: AsyncSession, stocktake_id: str) -> Stocktake:
    stocktake = await get_stocktake(session, stocktake_id)
    if stocktake is None:
        raise NoResultFound(f"Stocktake {stocktake_id} not found")
    return stocktake


def to_count_record(event: CountEvent) -> CountRecord:
    return CountRecord(
        sync_id=event.sync_id,
        product_name=event.product_name,
        quantity=event.quantity,
        barcode=event.barcode,
        location=event.location,
        source=event.source,
    )


def to_adjustment_entry(record: AdjustmentRecord) -> AdjustmentEntry:
    return AdjustmentEntry(
        product_code=record.product_code,
        new_count=record.new_count,
        timestamp=as_utc(record.timestamp),
        old_count=record.old_count,
        reason=record.reason,
        user=record.user,
        id=record.id,
    )


async def upsert_count_events(
    session: AsyncSession,
    stocktake_id: str,
    events: Sequence[schemas.CountEventBase],
) -> list[schemas.SyncAck]:
    """Insert or update count events keyed by ``sync_id``.

    Resubmitting an unchanged event is acknowledged as ``unchanged``. A sync id
    that was deleted earlier is acknowledged as ``deleted`` and stays deleted.
    """

    await ensure_active(session, stocktake_id)
    if not events:
        return []
    sync_ids = [event.sync_id for event in events]
    result = await session.execute(select(CountEvent).where(CountEvent.sync_id.in_(sync_ids)))
    existing = {row.sync_id: row for row in result.scalars()}
    result = await session.execute(
        select(CountEventTombstone.sync_id).where(CountEventTombstone.sync_id.in_(sync_ids))
    )
    tombstoned = set(result.scalars())

    acks: list[schemas.SyncAck] = []
    for event in events:
        if event.sync_id in tombstoned:
            acks.append(schemas.SyncAck(sync_id=event.sync_id, status="deleted"))
            continue
        values = {
            "source": event.source,  # type: ignore[attr-defined]
            "barcode": event.barcode,
            "product_name": event.product_name,
            "quantity": event.quantity,
            "location": event.location,
        }
        row = existing.get(event.sync_id)
        if row is None:
            row = CountEvent(
                sync_id=event.sync_id,
                stocktake_id=stocktake_id,
                recorded_by=event.recorded_by,
                recorded_at=event.recorded_at,
                **values,
            )
            session.add(row)
            existing[event.sync_id] = row
            acks.append(schemas.SyncAck(sync_id=event.sync_id, status="created"))
            continue
        if row.stocktake_id != stocktake_id:
            raise ValueError(
                f"Count event {event.sync_id} belongs to stocktake {row.stocktake_id}"
            )
        changed = [field for field in _COMPARED_FIELDS if getattr(row, field) != values[field]]
        if not changed:
            logger.debug("Duplicate submission of %s ignored", event.sync_id)
            acks.append(schemas.SyncAck(sync_id=event.sync_id, status="unchanged"))
            continue
        for field in changed:
            setattr(row, field, values[field])
        acks.append(schemas.SyncAck(sync_id=event.sync_id, status="updated"))

    await session.flush()
    logger.info(
        "Counts synced for %s: %d received, %d new",
        stocktake_id,
        len(events),
        sum(1 for ack in acks if ack.status == "created"),
    )
    return acks


async def list_count_events(
    session: AsyncSession, stocktake_id: str, *, recorded_by: str | None = None
) -> Sequence[CountEvent]:
    stmt = select(CountEvent).where(CountEvent.stocktake_id == stocktake_id)
    if recorded_by:
        stmt = stmt.where(CountEvent.recorded_by == recorded_by)
    stmt = stmt.order_by(CountEvent.recorded_at, CountEvent.sync_id)
    result = await session.execute(stmt)
    return result.scalars().all()


async def delete_count_events(
    session: AsyncSession, stocktake_id: str, sync_ids: Sequence[str]
) -> list[str]:
    """Delete count events by id, keeping a tombstone of each one.

    Unknown ids are tombstoned too, so a delayed upsert cannot revive them.
    """

    await ensure_active(session, stocktake_id)
    unique_ids = list(dict.fromkeys(sync_ids))
    result = await session.execute(select(CountEvent).where(CountEvent.sync_id.in_(unique_ids)))
    rows = {row.sync_id: row for row in result.scalars()}
    result = await session.execute(
        select(CountEventTombstone.sync_id).where(CountEventTombstone.sync_id.in_(unique_ids))
    )
    already = set(result.scalars())

    deleted: list[str] = []
    for sync_id in unique_ids:
        row = rows.get(sync_id)
        if row is not None and row.stocktake_id != stocktake_id:
            raise ValueError(f"Count event {sync_id} belongs to stocktake {row.stocktake_id}")
        if sync_id not in already:
            session.add(
                CountEventTombstone(
                    sync_id=sync_id,
                    stocktake_id=stocktake_id,
                    source=row.source if row else None,
                    barcode=row.barcode if row else None,
                    product_name=row.product_name if row else None,
                    quantity=row.quantity if row else None,
                    location=row.location if row else None,
                    recorded_by=row.recorded_by if row else None,
                )
            )
        if row is not None:
            await session.delete(row)
        deleted.append(sync_id)
    await session.flush()
    logger.info("Counts deleted for %s: %s", stocktake_id, ", ".join(deleted))
    return deleted


async def list_tombstones(
    session: AsyncSession, stocktake_id: str
) -> Sequence[CountEventTombstone]:
    stmt = (
        select(CountEventTombstone)
        .where(CountEventTombstone.stocktake_id == stocktake_id)
        .order_by(CountEventTombstone.deleted_at)
    )
    result = await session.execute(stmt)
    return result.scalars().all()


async def load_theoretical(session: AsyncSession, stocktake_id: str) -> list[TheoreticalItem]:
    stmt = (
        select(TheoreticalItemRecord)
        .where(TheoreticalItemRecord.stocktake_id == stocktake_id)
        .order_by(TheoreticalItemRecord.position)
    )
    result = await session.execute(stmt)
    return [
        TheoreticalItem(
            category=row.category,
            product_code=row.product_code,
            description=row.description,
            unit=row.unit,
            unit_cost=row.unit_cost,
            theoretical_qty=row.theoretical_qty,
            barcode=row.barcode,
        )
        for row in result.scalars()
    ]


async def load_barcode_mapping(session: AsyncSession, stocktake_id: str) -> BarcodeMapping:
    stmt = (
        select(BarcodeMappingRecord)
        .where(BarcodeMappingRecord.stocktake_id == stocktake_id)
        .order_by(BarcodeMappingRecord.id)
    )
    result = await session.execute(stmt)
    return BarcodeMapping((row.product_code, row.barcode) for row in result.scalars())


async def list_adjustments(session: AsyncSession, stocktake_id: str) -> Sequence[AdjustmentRecord]:
    stmt = (
        select(AdjustmentRecord)
        .where(AdjustmentRecord.stocktake_id == stocktake_id)
        .order_by(AdjustmentRecord.id)
    )
    result = await session.execute(stmt)
    return result.scalars().all()


async def build_variance_report(
    session: AsyncSession, stocktake_id: str, *, fuzzy_enabled: bool = True
) -> VarianceReport:
    """Recompute the variance report from the current stored state."""

    await require_stocktake(session, stocktake_id)
    theoretical = await load_theoretical(session, stocktake_id)
    mapping = await load_barcode_mapping(session, stocktake_id)
    events = await list_count_events(session, stocktake_id)
    adjustments = await list_adjustments(session, stocktake_id)
    return build_report(
        theoretical,
        [to_count_record(event) for event in events],
        [to_adjustment_entry(record) for record in adjustments],
        mapping,
        fuzzy_enabled=fuzzy_enabled,
    )


async def append_adjustment(
    session: AsyncSession,
    stocktake_id: str,
    data: schemas.AdjustmentCreate,
    *,
    fuzzy_enabled: bool = True,
) -> AdjustmentRecord:
    """Append an override for one product; earlier records are never touched."""

    await ensure_active(session, stocktake_id)
    report = await build_variance_report(session, stocktake_id, fuzzy_enabled=fuzzy_enabled)
    current = report.item_for(data.product_code)
    if current is None:
        raise UnknownProduct(data.product_code)
    old_count = data.old_count if data.old_count is not None else current.counted_qty
    record = AdjustmentRecord(
        stocktake_id=stocktake_id,
        product_code=data.product_code,
        old_count=old_count,
        new_count=data.new_count,
        reason=data.reason,
        user=data.user,
        timestamp=data.timestamp or utcnow(),
    )
    session.add(record)
    await session.flush()
    logger.info(
        "Adjustment recorded for %s/%s: %s -> %s by %s",
        stocktake_id,
        data.product_code,
        old_count,
        data.new_count,
        data.user,
    )
    return record


async def load_snapshot(session: AsyncSession, stocktake_id: str) -> schemas.StocktakeSnapshot:
    stocktake = await require_stocktake(session, stocktake_id)
    theoretical = await load_theoretical(session, stocktake_id)
    mapping = await load_barcode_mapping(session, stocktake_id)
    adjustments = await list_adjustments(session, stocktake_id)
    return schemas.StocktakeSnapshot(
        stocktake=schemas.StocktakeOut.model_validate(stocktake),
        theoretical=[schemas.TheoreticalItemOut(**item.to_dict()) for item in theoretical],
        barcode_mapping=[
            schemas.BarcodePair(product_code=code, barcode=barcode)
            for code, barcode in mapping.pairs()
        ],
        adjustments=[schemas.AdjustmentOut.model_validate(record) for record in adjustments],
    )


__all__ = [name for name in globals() if not name.startswith("_")]
