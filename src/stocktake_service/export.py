"""Export renderers for variance reports."""
from __future__ import annotations

from datetime import datetime
from io import BytesIO
from typing import Dict, List, Optional, Sequence

import xlwt

from .domain import TheoreticalItem, VarianceReport
from .matching import BarcodeMapping

DAT_BARCODE_WIDTH = 16

_VARIANCE_COLUMNS = [
    ("Category", 25),
    ("Product Code", 15),
    ("Description", 40),
    ("Unit", 15),
    ("Unit Cost", 12),
    ("Theoretical Qty", 15),
    ("Counted Qty", 15),
    ("Qty Variance", 15),
    ("Variance %", 12),
    ("$ Variance", 15),
    ("Has Barcode", 12),
    ("Manually Entered", 15),
]


def dat_line(barcode: str, counted_qty: float) -> str:
    """Format one DAT record: barcode in columns 1-16, quantity from column 17."""

    return f"{barcode:<{DAT_BARCODE_WIDTH}}{counted_qty:.1f}"


def render_dat(report: VarianceReport, mapping: Optional[BarcodeMapping] = None) -> str:
    """Render counted quantities for import into the inventory system.

    Only items with a barcode and a non-zero counted quantity are written.
    """

    lines: List[str] = []
    for item in report.items:
        barcode = (mapping.barcode_for(item.product_code) if mapping else None) or item.barcode
        if not barcode or item.counted_qty == 0:
            continue
        lines.append(dat_line(barcode, item.counted_qty) + "\n")
    return "".join(lines)


def render_manual_entry_list(
    theoretical: Sequence[TheoreticalItem], mapping: BarcodeMapping
) -> str:
    """Printable list of products without barcodes, grouped by category."""

    manual_items = [
        item
        for item in theoretical
        if not item.barcode and not mapping.has_product(item.product_code)
    ]
    if not manual_items:
        return "No items require manual entry - all items have barcodes.\n"

    by_category: Dict[str, List[TheoreticalItem]] = {}
    for item in manual_items:
        by_category.setdefault(item.category or "Uncategorized", []).append(item)

    rule = "=" * 80
    parts = [
        "MANUAL ENTRY LIST",
        rule,
        "",
        "The following items do not have barcodes and must be counted manually:",
        "",
    ]
    for category, items in by_category.items():
        parts.append(category)
        parts.append("-" * 80)
        for index, item in enumerate(items, start=1):
            parts.append(f"{index}. {item.description}")
            parts.append(f"   Product Code: {item.product_code or 'N/A'}")
            parts.append(f"   Unit: {item.unit}")
            parts.append(f"   Theoretical Qty: {item.theoretical_qty:g}")
            parts.append("   Count: ___________")
            parts.append("")
    parts.append(rule)
    parts.append(f"Total items requiring manual entry: {len(manual_items)}")
    return "\n".join(parts) + "\n"


def variance_report_to_xls(
    report: VarianceReport,
    *,
    stocktake_name: str,
    generated_at: Optional[datetime] = None,
) -> bytes:
    workbook = xlwt.Workbook()
    sheet = workbook.add_sheet("Variance Report")

    title_style = xlwt.easyxf("font: bold on, height 320; align: horiz left, vert center")
    header_style = xlwt.easyxf(
        "font: bold on; align: horiz center, vert center;"
        "borders: left thin, right thin, top thin, bottom thin"
    )
    text_style = xlwt.easyxf(
        "align: horiz left, vert center;"
        "borders: left thin, right thin, top thin, bottom thin"
    )
    number_style = xlwt.easyxf(
        "align: horiz right, vert center;"
        "borders: left thin, right thin, top thin, bottom thin",
        num_format_str="0.00",
    )

    for index, (_, width) in enumerate(_VARIANCE_COLUMNS):
        sheet.col(index).width = 256 * width

    generated = (generated_at or datetime.now()).strftime("%Y-%m-%d %H:%M")
    sheet.write_merge(
        0, 0, 0, len(_VARIANCE_COLUMNS) - 1, f"{stocktake_name} ({generated})", title_style
    )

    header_row = 2
    for col_index, (label, _) in enumerate(_VARIANCE_COLUMNS):
        sheet.write(header_row, col_index, label, header_style)

    for offset, item in enumerate(report.items, start=1):
        row_index = header_row + offset
        values = [
            item.category,
            item.product_code,
            item.description,
            item.unit,
            item.unit_cost,
            item.theoretical_qty,
            item.counted_qty,
            item.qty_variance,
            item.variance_percent,
            item.dollar_variance,
            "Yes" if item.has_barcode else "No",
            "Yes" if item.manually_entered else "No",
        ]
        for col_index, value in enumerate(values):
            style = number_style if isinstance(value, float) else text_style
            sheet.write(row_index, col_index, value, style)

    summary_sheet = workbook.add_sheet("Summary")
    summary_sheet.col(0).width = 256 * 25
    summary_sheet.col(1).width = 256 * 20
    summary = report.summary
    summary_rows = [
        ("Total Items", summary.total_items),
        ("Items Counted", summary.items_counted),
        ("Items Not Counted", summary.items_not_counted),
        ("Total $ Variance", summary.total_dollar_variance),
        ("Total Qty Variance", summary.total_qty_variance),
        ("Positive Variances", summary.positive_variances),
        ("Negative Variances", summary.negative_variances),
        ("Zero Variances", summary.zero_variances),
        ("Unmatched Counts", summary.unmatched_items),
    ]
    for row_index, (label, value) in enumerate(summary_rows):
        summary_sheet.write(row_index, 0, label)
        summary_sheet.write(row_index, 1, value)

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


__all__ = [
    "DAT_BARCODE_WIDTH",
    "dat_line",
    "render_dat",
    "render_manual_entry_list",
    "variance_report_to_xls",
]
