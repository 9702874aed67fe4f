"""Aggregation of raw count events ahead of product matching."""
from __future__ import annotations

from typing import Dict, Iterable, List

from .domain import AggregatedCount, CountRecord, normalize_barcode, normalize_name


def _dedupe(events: Iterable[CountRecord]) -> List[CountRecord]:
    latest: Dict[str, CountRecord] = {}
    for event in events:
        # dict keeps the first-seen position of a key when its value is replaced
        latest[event.sync_id] = event
    return list(latest.values())


def aggregate_counts(events: Iterable[CountRecord]) -> List[AggregatedCount]:
    """Sum quantities per barcode, or per normalized name when there is none.

    Location and source do not split groups. Events sharing a ``sync_id`` are
    the same event and are counted once (the last occurrence wins).
    """

    groups: Dict[str, AggregatedCount] = {}
    for event in _dedupe(events):
        barcode = normalize_barcode(event.barcode)
        key = f"barcode:{barcode}" if barcode else f"name:{normalize_name(event.product_name)}"
        group = groups.get(key)
        if group is None:
            group = AggregatedCount(
                barcode=barcode or None,
                product_name=(event.product_name or "").strip(),
            )
            groups[key] = group
        group.quantity += float(event.quantity)
        group.event_count += 1
        if event.location and event.location not in group.locations:
            group.locations.append(event.location)
    return list(groups.values())


__all__ = ["aggregate_counts"]
