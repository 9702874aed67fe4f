"""Last-write-wins resolution of manual count adjustments."""
from __future__ import annotations

from typing import Dict, Iterable, Tuple

from .domain import AdjustmentEntry, as_utc


def _order_key(entry: AdjustmentEntry, position: int) -> Tuple:
    # equal timestamps fall back to insertion order: server id, then input position
    return (as_utc(entry.timestamp), entry.id if entry.id is not None else -1, position)


def resolve_adjustments(records: Iterable[AdjustmentEntry]) -> Dict[str, AdjustmentEntry]:
    """Return the current adjustment for every product that has one.

    The record with the latest ``timestamp`` wins regardless of clock skew
    between devices. Ties go to the record inserted later.
    """

    current: Dict[str, Tuple[Tuple, AdjustmentEntry]] = {}
    for position, entry in enumerate(records):
        key = _order_key(entry, position)
        existing = current.get(entry.product_code)
        if existing is None or key >= existing[0]:
            current[entry.product_code] = (key, entry)
    return {code: entry for code, (_, entry) in current.items()}


__all__ = ["resolve_adjustments"]
