from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from stocktake_service.adjustments import resolve_adjustments
from stocktake_service.domain import AdjustmentEntry, CountRecord, TheoreticalItem
from stocktake_service.matching import BarcodeMapping
from stocktake_service.variance import build_report, compute, variance_percent

T0 = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


def test_counted_below_theoretical() -> None:
    baseline = [TheoreticalItem("Dry", "P1", "Flour", unit_cost=2.5, theoretical_qty=100)]
    report = compute(baseline, {"P1": 90}, {}, BarcodeMapping())
    [item] = report.items
    assert item.qty_variance == -10
    assert item.dollar_variance == -25
    assert item.variance_percent == -10
    assert item.manually_entered is False


def test_zero_theoretical_has_zero_percent() -> None:
    baseline = [TheoreticalItem("Dry", "P2", "Sugar", unit_cost=1.0, theoretical_qty=0)]
    [item] = compute(baseline, {"P2": 5}, {}, BarcodeMapping()).items
    assert item.qty_variance == 5
    assert item.variance_percent == 0


def test_negative_theoretical_uses_absolute_denominator() -> None:
    assert variance_percent(5, -10) == 50


def test_scans_with_same_barcode_are_summed(theoretical: list[TheoreticalItem]) -> None:
    mapping = BarcodeMapping.build(theoretical, [("1001", "9300000000011")])
    events = [
        CountRecord("s1", "", 3, barcode="9300000000011"),
        CountRecord("s2", "", 4, barcode="9300000000011"),
    ]
    report = build_report(theoretical, events, [], mapping)
    item = report.item_for("1001")
    assert item is not None
    assert item.counted_qty == 7
    assert item.has_barcode is True


def test_adjustment_overrides_scanned_total(theoretical: list[TheoreticalItem]) -> None:
    mapping = BarcodeMapping.build(theoretical, [("1001", "9300000000011")])
    events = [
        CountRecord("s1", "", 3, barcode="9300000000011"),
        CountRecord("s2", "", 4, barcode="9300000000011"),
    ]
    adjustments = [AdjustmentEntry("1001", 12, T0, old_count=7, user="admin", id=1)]
    item = build_report(theoretical, events, adjustments, mapping).item_for("1001")
    assert item is not None
    assert item.counted_qty == 12
    assert item.manually_entered is True


def test_adjustment_to_zero_still_counts_as_counted(theoretical: list[TheoreticalItem]) -> None:
    adjustments = [AdjustmentEntry("2002", 0, T0, user="admin", id=1)]
    report = build_report(theoretical, [], adjustments, BarcodeMapping())
    assert report.item_for("2002").manually_entered is True
    assert report.summary.items_counted == 1


def test_latest_timestamp_wins_regardless_of_order() -> None:
    later = AdjustmentEntry("P1", 5, T0 + timedelta(minutes=5), id=1)
    earlier = AdjustmentEntry("P1", 9, T0, id=2)
    assert resolve_adjustments([later, earlier])["P1"].new_count == 5


def test_equal_timestamps_go_to_later_insertion() -> None:
    first = AdjustmentEntry("P1", 5, T0, id=1)
    second = AdjustmentEntry("P1", 9, T0, id=2)
    assert resolve_adjustments([second, first])["P1"].new_count == 9
    unsaved = [AdjustmentEntry("P1", 1, T0), AdjustmentEntry("P1", 2, T0)]
    assert resolve_adjustments(unsaved)["P1"].new_count == 2


def test_one_item_per_baseline_entry_in_order(theoretical: list[TheoreticalItem]) -> None:
    events = [CountRecord("x", "Unknown Cider", 4)]
    report = build_report(theoretical, events, [], BarcodeMapping())
    assert [item.product_code for item in report.items] == ["1001", "1002", "2001", "2002"]
    assert report.summary.unmatched_items == 1
    assert report.unmatched[0].product_name == "Unknown Cider"


@pytest.mark.parametrize(
    "counts",
    [
        {},
        {"1001": 24, "1002": 1, "2001": 7},
        {"1001": 30, "2002": 2},
        {"1001": 24, "1002": 2, "2001": 6, "2002": 0},
    ],
)
def test_summary_partitions_items(theoretical: list[TheoreticalItem], counts: dict) -> None:
    summary = compute(theoretical, counts, {}, BarcodeMapping()).summary
    assert (
        summary.positive_variances + summary.negative_variances + summary.zero_variances
        == summary.total_items
        == len(theoretical)
    )
    assert summary.items_counted + summary.items_not_counted == summary.total_items


def test_summary_totals(theoretical: list[TheoreticalItem]) -> None:
    report = compute(theoretical, {"1001": 20, "2001": 8}, {}, BarcodeMapping())
    summary = report.summary
    # 1001: -4 * 2.5, 1002: -2 * 180, 2001: +2 * 30, 2002: 0
    assert summary.total_dollar_variance == pytest.approx(-10 - 360 + 60)
    assert summary.total_qty_variance == pytest.approx(4 + 2 + 2)
    assert summary.positive_variances == 1
    assert summary.negative_variances == 2
    assert summary.zero_variances == 1
    assert summary.items_counted == 2


def test_resubmitted_event_does_not_double_count(theoretical: list[TheoreticalItem]) -> None:
    mapping = BarcodeMapping.build(theoretical, [("1001", "9300000000011")])
    event = CountRecord("s1", "", 3, barcode="9300000000011")
    once = build_report(theoretical, [event], [], mapping)
    twice = build_report(theoretical, [event, event], [], mapping)
    assert once.item_for("1001").counted_qty == twice.item_for("1001").counted_qty == 3
