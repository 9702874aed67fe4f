from __future__ import annotations

from datetime import datetime

import xlrd

from stocktake_service.domain import TheoreticalItem
from stocktake_service.export import (
    dat_line,
    render_dat,
    render_manual_entry_list,
    variance_report_to_xls,
)
from stocktake_service.matching import BarcodeMapping
from stocktake_service.variance import compute


def test_dat_line_layout() -> None:
    line = dat_line("12345", 3)
    assert line == "12345           3.0"
    assert line[16:] == "3.0"
    assert dat_line("9300000000011", 2.25)[16:] == "2.2"


def test_render_dat_skips_uncounted_and_unbarcoded(theoretical: list[TheoreticalItem]) -> None:
    mapping = BarcodeMapping.build(theoretical, [("1001", "9300000000011")])
    report = compute(theoretical, {"1001": 7, "1002": 1, "2001": 0}, {}, mapping)
    assert render_dat(report, mapping) == "9300000000011   7.0\n"


def test_render_dat_empty_report(theoretical: list[TheoreticalItem]) -> None:
    report = compute(theoretical, {}, {}, BarcodeMapping())
    assert render_dat(report) == ""


def test_manual_entry_list_groups_by_category(theoretical: list[TheoreticalItem]) -> None:
    mapping = BarcodeMapping.build(theoretical, [("1001", "9300000000011")])
    text = render_manual_entry_list(theoretical, mapping)
    assert text.startswith("MANUAL ENTRY LIST\n")
    assert text.index("Beer") < text.index("Great Northern Keg") < text.index("Spirits")
    assert "Carlton Draught" not in text
    assert "Total items requiring manual entry: 3" in text


def test_manual_entry_list_when_everything_has_barcodes() -> None:
    baseline = [TheoreticalItem("Beer", "1001", "Carlton", barcode="111")]
    assert render_manual_entry_list(baseline, BarcodeMapping()).startswith("No items require")


def test_variance_workbook_layout(theoretical: list[TheoreticalItem]) -> None:
    report = compute(theoretical, {"1001": 20}, {}, BarcodeMapping())
    data = variance_report_to_xls(
        report, stocktake_name="October count", generated_at=datetime(2026, 10, 31, 17, 0)
    )
    book = xlrd.open_workbook(file_contents=data)
    assert book.sheet_names() == ["Variance Report", "Summary"]

    sheet = book.sheet_by_name("Variance Report")
    assert sheet.cell_value(0, 0) == "October count (2026-10-31 17:00)"
    assert sheet.cell_value(2, 1) == "Product Code"
    assert sheet.cell_value(3, 1) == "1001"
    assert sheet.cell_value(3, 6) == 20
    assert sheet.cell_value(3, 7) == -4
    assert sheet.nrows == 3 + len(theoretical)

    summary = book.sheet_by_name("Summary")
    assert summary.cell_value(0, 0) == "Total Items"
    assert summary.cell_value(0, 1) == len(theoretical)
