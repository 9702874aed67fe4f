"""Offline-first count queue.

Counts are committed to the device-local store before any network activity
and drained to the server in batches. An event reaches ``synced`` only when
the server acknowledged its ``sync_id`` and it was not edited while in flight.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from . import schemas
from .config import Settings, get_settings
from .domain import (
    STATUS_COMPLETED,
    AdjustmentEntry,
    TheoreticalItem,
    VarianceReport,
    as_utc,
    utcnow,
)
from .errors import StocktakeNotActive, SyncFailure, SyncRejected
from .local_store import SNAPSHOT_KINDS, LocalCountEvent, LocalStore
from .logging_setup import setup_logging
from .matching import mapping_from_rows
from .sync_client import SyncClient
from .variance import build_report

logger = logging.getLogger(__name__)


@dataclass
class DrainResult:
    skipped: bool = False
    pushed: int = 0
    synced: int = 0
    requeued: int = 0
    rejected: int = 0
    deletions_pushed: int = 0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class SyncQueue:
    def __init__(
        self,
        store: LocalStore,
        client: SyncClient,
        *,
        batch_size: int = 200,
        interval_seconds: float = 30.0,
        fuzzy_enabled: bool = True,
    ) -> None:
        self.store = store
        self.client = client
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.fuzzy_enabled = fuzzy_enabled
        self._drain_lock = asyncio.Lock()
        self._closed_stocktakes: set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncQueue":
        return cls(
            LocalStore(settings.local_store_url, echo=settings.echo_sql),
            SyncClient(settings.server_url, timeout=settings.sync_timeout_seconds),
            batch_size=settings.sync_batch_size,
            interval_seconds=settings.sync_interval_seconds,
            fuzzy_enabled=settings.fuzzy_matching_enabled,
        )

    async def _ensure_writable(self, stocktake_id: str) -> None:
        if stocktake_id in self._closed_stocktakes:
            raise StocktakeNotActive(stocktake_id, "is completed")
        cached = await self.store.load_snapshot(stocktake_id)
        stocktake = cached.get("stocktake")
        if stocktake and stocktake.get("status") == STATUS_COMPLETED:
            raise StocktakeNotActive(stocktake_id, "is completed")

    async def record(
        self,
        stocktake_id: str,
        *,
        source: str,
        quantity: float,
        recorded_by: str,
        barcode: Optional[str] = None,
        product_name: str = "",
        location: str = "",
        recorded_at: Optional[datetime] = None,
        sync_id: Optional[str] = None,
    ) -> LocalCountEvent:
        """Validate a count and commit it locally as ``pending``.

        Raises :class:`pydantic.ValidationError` for malformed counts and
        :class:`StocktakeNotActive` once the stocktake is known to be completed.
        """

        await self._ensure_writable(stocktake_id)
        payload = schemas.count_event_adapter.validate_python(
            {
                "sync_id": sync_id or str(uuid4()),
                "source": source,
                "barcode": barcode,
                "product_name": product_name,
                "quantity": quantity,
                "location": location,
                "recorded_by": recorded_by,
                "recorded_at": recorded_at or utcnow(),
            }
        )
        event = LocalCountEvent(
            sync_id=payload.sync_id,
            stocktake_id=stocktake_id,
            source=payload.source,
            barcode=payload.barcode,
            product_name=payload.product_name,
            quantity=payload.quantity,
            location=payload.location,
            recorded_by=payload.recorded_by,
            recorded_at=payload.recorded_at,
        )
        await self.store.put_event(event)
        logger.debug("Recorded %s count %s for %s", event.source, event.sync_id, stocktake_id)
        return event

    async def edit_quantity(self, sync_id: str, quantity: float) -> LocalCountEvent:
        if quantity < 0:
            raise ValueError("Quantity must not be negative")
        event = await self.store.get_event(sync_id)
        await self._ensure_writable(event.stocktake_id)
        return await self.store.update_quantity(sync_id, quantity)

    async def delete(self, sync_id: str) -> bool:
        """Delete a count locally; returns whether a server delete was queued."""

        event = await self.store.get_event(sync_id)
        await self._ensure_writable(event.stocktake_id)
        return await self.store.delete_event(sync_id)

    async def pending_count(self) -> int:
        return await self.store.pending_count()

    async def drain(self) -> DrainResult:
        """Push pending counts, then pending deletions.

        Only one drain runs at a time; a concurrent call returns a result with
        ``skipped`` set.
        """

        if self._drain_lock.locked():
            return DrainResult(skipped=True)
        async with self._drain_lock:
            result = DrainResult()
            if await self._push_counts(result):
                await self._push_deletions(result)
        if result.pushed or result.deletions_pushed or result.failed:
            logger.info(
                "Drain finished: pushed=%d synced=%d requeued=%d rejected=%d deletions=%d",
                result.pushed,
                result.synced,
                result.requeued,
                result.rejected,
                result.deletions_pushed,
            )
        return result

    async def _push_counts(self, result: DrainResult) -> bool:
        attempted: set[str] = set()
        while True:
            batch = await self.store.mark_syncing(self.batch_size, exclude=attempted)
            if not batch:
                return True
            attempted.update(event.sync_id for event in batch)
            by_stocktake: Dict[str, List[LocalCountEvent]] = defaultdict(list)
            for event in batch:
                by_stocktake[event.stocktake_id].append(event)

            groups = list(by_stocktake.items())
            for index, (stocktake_id, events) in enumerate(groups):
                try:
                    await self._push_group(stocktake_id, events, result)
                except SyncFailure as exc:
                    remaining = [event.sync_id for _, group in groups[index:] for event in group]
                    result.requeued += await self.store.revert_to_pending(remaining)
                    result.error = str(exc)
                    logger.warning(
                        "Sync failed, %d counts left pending: %s", len(remaining), exc
                    )
                    return False

    async def _push_group(
        self, stocktake_id: str, events: List[LocalCountEvent], result: DrainResult
    ) -> None:
        revisions = {event.sync_id: event.revision for event in events}
        try:
            response = await self.client.push_counts(
                stocktake_id, [self._to_payload(event) for event in events]
            )
        except StocktakeNotActive as exc:
            await self.store.revert_to_pending(revisions)
            result.rejected += len(events)
            await self._mark_completed(stocktake_id)
            logger.error("Server rejected %d counts: %s", len(events), exc)
            return
        except SyncRejected as exc:
            if len(events) > 1:
                # push one by one so a single refused event does not hold back the rest
                for event in events:
                    await self._push_group(stocktake_id, [event], result)
                return
            await self.store.revert_to_pending(revisions)
            result.rejected += 1
            logger.error("Server rejected count %s: %s", events[0].sync_id, exc)
            return

        result.pushed += len(events)
        acked = response.acknowledged_ids
        result.synced += await self.store.mark_synced(
            {sync_id: rev for sync_id, rev in revisions.items() if sync_id in acked}
        )
        result.requeued += await self.store.revert_to_pending(revisions)

    async def _push_deletions(self, result: DrainResult) -> None:
        deletions = await self.store.list_pending_deletions()
        by_stocktake: Dict[str, List[str]] = defaultdict(list)
        for deletion in deletions:
            by_stocktake[deletion.stocktake_id].append(deletion.sync_id)
        for stocktake_id, sync_ids in by_stocktake.items():
            try:
                response = await self.client.push_deletions(stocktake_id, sync_ids)
            except SyncFailure as exc:
                result.error = str(exc)
                logger.warning("Sync failed, %d deletions left pending: %s", len(sync_ids), exc)
                return
            except SyncRejected as exc:
                logger.error("Server rejected %d deletions: %s", len(sync_ids), exc)
                continue
            except StocktakeNotActive as exc:
                await self._mark_completed(stocktake_id)
                logger.error("Server rejected %d deletions: %s", len(sync_ids), exc)
                continue
            await self.store.clear_pending_deletions(response.deleted)
            result.deletions_pushed += len(response.deleted)

    async def _mark_completed(self, stocktake_id: str) -> None:
        self._closed_stocktakes.add(stocktake_id)
        cached = await self.store.load_snapshot(stocktake_id)
        stocktake = cached.get("stocktake")
        if stocktake and stocktake.get("status") != STATUS_COMPLETED:
            await self.store.save_snapshot(
                stocktake_id, {"stocktake": {**stocktake, "status": STATUS_COMPLETED}}
            )

    @staticmethod
    def _to_payload(event: LocalCountEvent) -> schemas.CountEventBase:
        return schemas.count_event_adapter.validate_python(
            {
                "sync_id": event.sync_id,
                "source": event.source,
                "barcode": event.barcode,
                "product_name": event.product_name,
                "quantity": event.quantity,
                "location": event.location,
                "recorded_by": event.recorded_by,
                "recorded_at": as_utc(event.recorded_at),
            }
        )

    async def run_periodic(
        self, interval: Optional[float] = None, stop: Optional[asyncio.Event] = None
    ) -> None:
        """Drain every ``interval`` seconds until ``stop`` is set."""

        interval = interval or self.interval_seconds
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.drain()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def refresh_snapshot(self, stocktake_id: str) -> schemas.StocktakeSnapshot:
        """Cache everything needed to compute variance offline."""

        snapshot = await self.client.fetch_snapshot(stocktake_id)
        await self.store.save_snapshot(
            stocktake_id,
            {
                "stocktake": snapshot.stocktake.model_dump(mode="json"),
                "theoretical": [item.model_dump(mode="json") for item in snapshot.theoretical],
                "barcode_mapping": [
                    pair.model_dump(mode="json") for pair in snapshot.barcode_mapping
                ],
                "adjustments": [entry.model_dump(mode="json") for entry in snapshot.adjustments],
            },
        )
        if snapshot.stocktake.status == STATUS_COMPLETED:
            self._closed_stocktakes.add(stocktake_id)
        return snapshot

    async def local_variance_report(self, stocktake_id: str) -> VarianceReport:
        """Variance from the cached snapshot plus the counts held on this device."""

        cached = await self.store.load_snapshot(stocktake_id)
        missing = [kind for kind in SNAPSHOT_KINDS if kind not in cached]
        if missing:
            raise LookupError(
                f"No cached {', '.join(missing)} for stocktake {stocktake_id}; refresh while online"
            )
        events = await self.store.list_events(stocktake_id)
        return build_report(
            [TheoreticalItem.from_dict(record) for record in cached["theoretical"]],
            [event.to_count_record() for event in events],
            [AdjustmentEntry.from_dict(record) for record in cached["adjustments"]],
            mapping_from_rows(cached["barcode_mapping"]),
            fuzzy_enabled=self.fuzzy_enabled,
        )

    async def restore_from_server(self, stocktake_id: str, recorded_by: str) -> int:
        """Reload a user's server-side counts onto this device as ``synced``.

        Events already held locally are left untouched.
        """

        counts = await self.client.fetch_counts(stocktake_id, recorded_by=recorded_by)
        restored = await self.store.add_synced_if_absent(
            LocalCountEvent(
                sync_id=count.sync_id,
                stocktake_id=stocktake_id,
                source=count.source,
                barcode=count.barcode,
                product_name=count.product_name,
                quantity=count.quantity,
                location=count.location,
                recorded_by=count.recorded_by,
                recorded_at=count.recorded_at,
            )
            for count in counts
        )
        logger.info(
            "Restored %d of %d counts for %s on stocktake %s",
            restored,
            len(counts),
            recorded_by,
            stocktake_id,
        )
        return restored

    async def aclose(self) -> None:
        await self.client.aclose()
        await self.store.close()


async def drain_once(settings: Settings) -> tuple[DrainResult, int]:
    queue = SyncQueue.from_settings(settings)
    try:
        await queue.store.open()
        result = await queue.drain()
        return result, await queue.pending_count()
    finally:
        await queue.aclose()


def cli_drain() -> None:
    """CLI wrapper executed from :mod:`python -m`."""

    settings = get_settings()
    setup_logging(settings)
    result, remaining = asyncio.run(drain_once(settings))
    logger.info("%d changes still waiting to sync", remaining)
    if result.failed:
        raise SystemExit(1)


__all__ = ["DrainResult", "SyncQueue", "drain_once", "cli_drain"]


if __name__ == "__main__":
    cli_drain()
