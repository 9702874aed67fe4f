"""Device-local durable store backing the offline sync queue.

Every public coroutine runs as a single transaction under one
:class:`asyncio.Lock`, so recording a count is never interleaved with the
drain's status updates.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection, Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .domain import CountRecord, utcnow
from .errors import CountEventNotFound

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SYNCING = "syncing"
STATUS_SYNCED = "synced"

SNAPSHOT_KINDS = ("stocktake", "theoretical", "barcode_mapping", "adjustments")


class LocalBase(DeclarativeBase):
    """Base class for device-local SQLAlchemy models."""


class LocalCountEvent(LocalBase):
    __tablename__ = "local_count_events"

    sync_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stocktake_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    barcode: Mapped[str | None] = mapped_column(String(64))
    product_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    location: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    recorded_by: Mapped[str] = mapped_column(String(128), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sync_status: Mapped[str] = mapped_column(
        String(16), default=STATUS_PENDING, index=True, nullable=False
    )
    # bumped on every local edit; a drain only marks the revision it pushed
    revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # set once a push has been attempted; the server may hold the event from then on
    pushed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def to_count_record(self) -> CountRecord:
        return CountRecord(
            sync_id=self.sync_id,
            product_name=self.product_name,
            quantity=self.quantity,
            barcode=self.barcode,
            location=self.location,
            source=self.source,
        )


class PendingDeletion(LocalBase):
    __tablename__ = "pending_deletions"

    sync_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stocktake_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    queued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class CachedSnapshot(LocalBase):
    __tablename__ = "snapshots"

    stocktake_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)
    cached_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class LocalStore:
    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self._engine: AsyncEngine = create_async_engine(url, echo=echo)
        self._sessions = async_sessionmaker(bind=self._engine, expire_on_commit=False)
        self._lock = asyncio.Lock()

    async def open(self) -> int:
        """Create missing tables and requeue events a crash left in ``syncing``.

        Returns the number of events returned to ``pending``.
        """

        async with self._engine.begin() as conn:
            await conn.run_sync(LocalBase.metadata.create_all)
        async with self._lock, self._sessions.begin() as session:
            result = await session.execute(
                update(LocalCountEvent)
                .where(LocalCountEvent.sync_status == STATUS_SYNCING)
                .values(sync_status=STATUS_PENDING)
            )
        if result.rowcount:
            logger.warning("Requeued %d count events interrupted mid-sync", result.rowcount)
        return result.rowcount or 0

    async def close(self) -> None:
        await self._engine.dispose()

    async def put_event(self, event: LocalCountEvent) -> LocalCountEvent:
        """Persist a newly recorded event as ``pending``."""

        event.sync_status = STATUS_PENDING
        event.revision = 0
        event.pushed = False
        async with self._lock, self._sessions.begin() as session:
            session.add(event)
        return event

    async def add_synced_if_absent(self, events: Iterable[LocalCountEvent]) -> int:
        """Insert server-side events as ``synced``; existing sync ids are left alone."""

        added = 0
        async with self._lock, self._sessions.begin() as session:
            for event in events:
                if await session.get(LocalCountEvent, event.sync_id) is not None:
                    continue
                if await session.get(PendingDeletion, event.sync_id) is not None:
                    continue
                event.sync_status = STATUS_SYNCED
                event.revision = 0
                event.pushed = True
                session.add(event)
                added += 1
        return added

    async def get_event(self, sync_id: str) -> LocalCountEvent:
        async with self._lock, self._sessions() as session:
            event = await session.get(LocalCountEvent, sync_id)
        if event is None:
            raise CountEventNotFound(sync_id)
        return event

    async def list_events(
        self, stocktake_id: str, *, status: str | None = None
    ) -> Sequence[LocalCountEvent]:
        stmt = select(LocalCountEvent).where(LocalCountEvent.stocktake_id == stocktake_id)
        if status is not None:
            stmt = stmt.where(LocalCountEvent.sync_status == status)
        stmt = stmt.order_by(LocalCountEvent.recorded_at, LocalCountEvent.sync_id)
        async with self._lock, self._sessions() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def update_quantity(self, sync_id: str, quantity: float) -> LocalCountEvent:
        """Change an event's quantity in place and queue it for another push."""

        async with self._lock, self._sessions.begin() as session:
            event = await session.get(LocalCountEvent, sync_id)
            if event is None:
                raise CountEventNotFound(sync_id)
            event.quantity = quantity
            event.revision += 1
            if event.sync_status == STATUS_SYNCED:
                event.sync_status = STATUS_PENDING
        return event

    async def delete_event(self, sync_id: str) -> bool:
        """Remove an event locally.

        Returns ``True`` when the server may already hold the event, in which
        case a server-side delete has been queued.
        """

        async with self._lock, self._sessions.begin() as session:
            event = await session.get(LocalCountEvent, sync_id)
            if event is None:
                raise CountEventNotFound(sync_id)
            queued = event.pushed or event.sync_status in (STATUS_SYNCED, STATUS_SYNCING)
            if queued and await session.get(PendingDeletion, sync_id) is None:
                session.add(PendingDeletion(sync_id=sync_id, stocktake_id=event.stocktake_id))
            await session.delete(event)
        return queued

    async def mark_syncing(
        self, limit: int, *, exclude: Collection[str] = ()
    ) -> list[LocalCountEvent]:
        """Claim up to ``limit`` pending events, oldest first."""

        stmt = select(LocalCountEvent).where(LocalCountEvent.sync_status == STATUS_PENDING)
        if exclude:
            stmt = stmt.where(LocalCountEvent.sync_id.not_in(list(exclude)))
        async with self._lock, self._sessions.begin() as session:
            result = await session.execute(
                stmt
                .order_by(LocalCountEvent.recorded_at, LocalCountEvent.sync_id)
                .limit(limit)
            )
            events = list(result.scalars())
            for event in events:
                event.sync_status = STATUS_SYNCING
                event.pushed = True
        return events

    async def mark_synced(self, revisions: Mapping[str, int]) -> int:
        """Mark acknowledged events ``synced`` if they were not edited meanwhile."""

        marked = 0
        async with self._lock, self._sessions.begin() as session:
            for sync_id, revision in revisions.items():
                result = await session.execute(
                    update(LocalCountEvent)
                    .where(
                        LocalCountEvent.sync_id == sync_id,
                        LocalCountEvent.sync_status == STATUS_SYNCING,
                        LocalCountEvent.revision == revision,
                    )
                    .values(sync_status=STATUS_SYNCED)
                )
                marked += result.rowcount or 0
        return marked

    async def revert_to_pending(self, sync_ids: Iterable[str]) -> int:
        ids = list(sync_ids)
        if not ids:
            return 0
        async with self._lock, self._sessions.begin() as session:
            result = await session.execute(
                update(LocalCountEvent)
                .where(
                    LocalCountEvent.sync_id.in_(ids),
                    LocalCountEvent.sync_status == STATUS_SYNCING,
                )
                .values(sync_status=STATUS_PENDING)
            )
        return result.rowcount or 0

    async def list_pending_deletions(self) -> Sequence[PendingDeletion]:
        async with self._lock, self._sessions() as session:
            result = await session.execute(
                select(PendingDeletion).order_by(PendingDeletion.queued_at)
            )
            return result.scalars().all()

    async def clear_pending_deletions(self, sync_ids: Iterable[str]) -> None:
        ids = list(sync_ids)
        if not ids:
            return
        async with self._lock, self._sessions.begin() as session:
            await session.execute(delete(PendingDeletion).where(PendingDeletion.sync_id.in_(ids)))

    async def save_snapshot(self, stocktake_id: str, payloads: Mapping[str, Any]) -> None:
        async with self._lock, self._sessions.begin() as session:
            for kind, payload in payloads.items():
                if kind not in SNAPSHOT_KINDS:
                    raise ValueError(f"Unknown snapshot kind {kind!r}")
                await session.merge(
                    CachedSnapshot(
                        stocktake_id=stocktake_id, kind=kind, payload=payload, cached_at=utcnow()
                    )
                )

    async def load_snapshot(self, stocktake_id: str) -> dict[str, Any]:
        """Return cached payloads by kind; missing kinds are absent."""

        async with self._lock, self._sessions() as session:
            result = await session.execute(
                select(CachedSnapshot).where(CachedSnapshot.stocktake_id == stocktake_id)
            )
            return {row.kind: row.payload for row in result.scalars()}

    async def pending_count(self) -> int:
        async with self._lock, self._sessions() as session:
            result = await session.execute(
                select(func.count())
                .select_from(LocalCountEvent)
                .where(LocalCountEvent.sync_status != STATUS_SYNCED)
            )
            events = result.scalar_one()
            result = await session.execute(select(func.count()).select_from(PendingDeletion))
            return events + result.scalar_one()


__all__ = [
    "STATUS_PENDING",
    "STATUS_SYNCING",
    "STATUS_SYNCED",
    "SNAPSHOT_KINDS",
    "LocalBase",
    "LocalCountEvent",
    "PendingDeletion",
    "CachedSnapshot",
    "LocalStore",
]
