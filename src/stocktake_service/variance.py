"""Variance computation over a theoretical baseline and resolved counts."""
from __future__ import annotations

from typing import Iterable, List, Mapping, Optional, Sequence

from .adjustments import resolve_adjustments
from .aggregation import aggregate_counts
from .domain import (
    AdjustmentEntry,
    CountRecord,
    TheoreticalItem,
    VarianceItem,
    VarianceReport,
    VarianceSummary,
)
from .matching import BarcodeMapping, MatchingEngine


def variance_percent(qty_variance: float, theoretical_qty: float) -> float:
    if theoretical_qty == 0:
        return 0.0
    return qty_variance / abs(theoretical_qty) * 100


def _variance_item(
    item: TheoreticalItem,
    counted_qty: float,
    manually_entered: bool,
    barcode: Optional[str],
) -> VarianceItem:
    qty_variance = counted_qty - item.theoretical_qty
    return VarianceItem(
        category=item.category,
        product_code=item.product_code,
        barcode=barcode,
        description=item.description,
        unit=item.unit,
        unit_cost=item.unit_cost,
        theoretical_qty=item.theoretical_qty,
        theoretical_value=item.theoretical_value,
        counted_qty=counted_qty,
        manually_entered=manually_entered,
        qty_variance=qty_variance,
        dollar_variance=qty_variance * item.unit_cost,
        variance_percent=variance_percent(qty_variance, item.theoretical_qty),
        has_barcode=bool(barcode),
    )


def summarize(items: Sequence[VarianceItem], *, unmatched_items: int = 0) -> VarianceSummary:
    counted = sum(1 for item in items if item.counted_qty != 0 or item.manually_entered)
    positive = sum(1 for item in items if item.dollar_variance > 0)
    negative = sum(1 for item in items if item.dollar_variance < 0)
    return VarianceSummary(
        total_items=len(items),
        items_counted=counted,
        items_not_counted=len(items) - counted,
        total_dollar_variance=sum(item.dollar_variance for item in items),
        total_qty_variance=sum(abs(item.qty_variance) for item in items),
        positive_variances=positive,
        negative_variances=negative,
        zero_variances=len(items) - positive - negative,
        unmatched_items=unmatched_items,
    )


def compute(
    theoretical: Sequence[TheoreticalItem],
    resolved_counts: Mapping[str, float],
    adjustments: Mapping[str, AdjustmentEntry],
    barcode_mapping: BarcodeMapping,
) -> VarianceReport:
    """Build one variance item per theoretical item, in baseline order.

    A resolved adjustment replaces the counted quantity outright; otherwise
    the matched count is used, defaulting to zero.
    """

    items: List[VarianceItem] = []
    for item in theoretical:
        adjustment = adjustments.get(item.product_code)
        if adjustment is not None:
            counted_qty = float(adjustment.new_count)
            manually_entered = True
        else:
            counted_qty = float(resolved_counts.get(item.product_code, 0.0))
            manually_entered = False
        barcode = item.barcode or barcode_mapping.barcode_for(item.product_code)
        items.append(_variance_item(item, counted_qty, manually_entered, barcode))
    return VarianceReport(items=items, summary=summarize(items))


def build_report(
    theoretical: Sequence[TheoreticalItem],
    events: Iterable[CountRecord],
    adjustments: Iterable[AdjustmentEntry],
    barcode_mapping: BarcodeMapping,
    *,
    fuzzy_enabled: bool = True,
) -> VarianceReport:
    """Run aggregation, matching, adjustment resolution and variance."""

    engine = MatchingEngine(theoretical, barcode_mapping, fuzzy_enabled=fuzzy_enabled)
    resolved, unmatched, fuzzy = engine.resolve(aggregate_counts(events))
    report = compute(theoretical, resolved, resolve_adjustments(adjustments), barcode_mapping)
    return VarianceReport(
        items=report.items,
        summary=summarize(report.items, unmatched_items=len(unmatched)),
        unmatched=unmatched,
        fuzzy_matches=fuzzy,
    )


__all__ = ["compute", "build_report", "summarize", "variance_percent"]
