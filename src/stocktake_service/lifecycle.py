"""Stocktake lifecycle: single active stocktake, one-way completion.

Functions here only flush; committing is left to the caller, so a rejected
transition can be rolled back with no partial state.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .domain import TheoreticalItem, utcnow
from .errors import ImportFailure, StocktakeAlreadyActive, StocktakeNotActive
from .matching import BarcodeMapping
from .models import (
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    ActiveStocktake,
    BarcodeMappingRecord,
    Stocktake,
    TheoreticalItemRecord,
)

logger = logging.getLogger(__name__)


async def get_stocktake(session: AsyncSession, stocktake_id: str) -> Stocktake | None:
    return await session.get(Stocktake, stocktake_id)


async def get_active(session: AsyncSession) -> Stocktake | None:
    """Return the current active stocktake, if there is one."""

    stmt = select(Stocktake).join(ActiveStocktake, ActiveStocktake.stocktake_id == Stocktake.id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def ensure_active(session: AsyncSession, stocktake_id: str) -> Stocktake:
    """Return the stocktake if it may still be mutated, else raise."""

    stmt = (
        select(Stocktake)
        .join(ActiveStocktake, ActiveStocktake.stocktake_id == Stocktake.id)
        .where(Stocktake.id == stocktake_id)
    )
    result = await session.execute(stmt)
    stocktake = result.scalar_one_or_none()
    if stocktake is not None:
        return stocktake
    existing = await get_stocktake(session, stocktake_id)
    if existing is None:
        raise StocktakeNotActive(stocktake_id, "does not exist")
    raise StocktakeNotActive(stocktake_id, f"is {existing.status}")


async def create_stocktake(
    session: AsyncSession,
    *,
    name: str | None,
    created_by: str,
    theoretical: Sequence[TheoreticalItem],
    barcode_pairs: Iterable[tuple[str, str]] = (),
) -> Stocktake:
    """Create the new active stocktake with its baseline and barcode mapping."""

    active = await get_active(session)
    if active is not None:
        raise StocktakeAlreadyActive(active.id)
    if not theoretical:
        raise ImportFailure("Theoretical baseline contains no items")

    mapping = BarcodeMapping.build(theoretical, barcode_pairs)
    now = utcnow()
    label = (name or "").strip() or f"Stocktake {now:%Y-%m-%d}"
    stocktake = Stocktake(
        id=str(uuid4()),
        name=label,
        status=STATUS_ACTIVE,
        created_by=created_by,
        created_at=now,
    )
    session.add(stocktake)
    # child rows reference the stocktake; insert it first
    await session.flush()
    for position, item in enumerate(theoretical):
        session.add(
            TheoreticalItemRecord(
                stocktake_id=stocktake.id,
                position=position,
                category=item.category,
                product_code=item.product_code,
                barcode=item.barcode or mapping.barcode_for(item.product_code),
                description=item.description,
                unit=item.unit,
                unit_cost=item.unit_cost,
                theoretical_qty=item.theoretical_qty,
            )
        )
    for product_code, barcode in mapping.pairs():
        session.add(
            BarcodeMappingRecord(
                stocktake_id=stocktake.id, product_code=product_code, barcode=barcode
            )
        )
    session.add(ActiveStocktake(slot=1, stocktake_id=stocktake.id, activated_at=now))
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise StocktakeAlreadyActive() from exc

    logger.info(
        "Stocktake created: id=%s name=%s items=%d barcodes=%d user=%s",
        stocktake.id,
        stocktake.name,
        len(theoretical),
        len(mapping),
        created_by,
    )
    return stocktake


async def finish_stocktake(
    session: AsyncSession, stocktake_id: str, *, completed_by: str
) -> Stocktake:
    """Complete the active stocktake and release the active slot.

    Once released, :func:`ensure_active` rejects every further count or
    adjustment write for the stocktake.
    """

    stocktake = await get_stocktake(session, stocktake_id)
    if stocktake is None:
        raise StocktakeNotActive(stocktake_id, "does not exist")
    if stocktake.status != STATUS_ACTIVE:
        raise StocktakeNotActive(stocktake_id, f"is already {stocktake.status}")

    result = await session.execute(
        delete(ActiveStocktake).where(
            ActiveStocktake.slot == 1, ActiveStocktake.stocktake_id == stocktake_id
        )
    )
    if result.rowcount != 1:
        raise StocktakeNotActive(stocktake_id, "is not the current stocktake")

    stocktake.status = STATUS_COMPLETED
    stocktake.completed_at = utcnow()
    stocktake.completed_by = completed_by
    await session.flush()
    logger.info("Stocktake completed: id=%s user=%s", stocktake_id, completed_by)
    return stocktake


async def list_history(session: AsyncSession) -> Sequence[Stocktake]:
    """Completed stocktakes, most recently completed first."""

    stmt = (
        select(Stocktake)
        .where(Stocktake.status == STATUS_COMPLETED)
        .order_by(Stocktake.completed_at.desc())
    )
    result = await session.execute(stmt)
    return result.scalars().all()


__all__ = [
    "get_stocktake",
    "get_active",
    "ensure_active",
    "create_stocktake",
    "finish_stocktake",
    "list_history",
]
