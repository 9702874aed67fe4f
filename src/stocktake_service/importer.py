"""Import adapters for theoretical stock exports and barcode mapping sheets."""
from __future__ import annotations

import csv
import logging
from io import StringIO
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import xlrd

from .domain import TheoreticalItem
from .errors import ImportFailure

logger = logging.getLogger(__name__)

STOCK_GROUP_PREFIX = "Stock Group No:"

# Column positions in the vendor's "stocktake variance" export.
_VENDOR_CODE_COL = 0
_VENDOR_DESCRIPTION_COL = 2
_VENDOR_UNIT_COL = 3
_VENDOR_UNIT_COST_COL = 4
_VENDOR_QTY_AT_STOCKTAKE_COL = 6


def _normalize_key(value: Any) -> str:
    if value is None:
        return ""
    text = str(value).replace("\ufeff", "").strip().lower()
    return " ".join(text.replace("_", " ").split())


_FIELD_ALIASES: Dict[str, set[str]] = {
    "category": {"category", "stock group", "group"},
    "product_code": {"product code", "productcode", "code", "invcode", "inv code", "sku"},
    "barcode": {"barcode", "ean", "upc"},
    "description": {"description", "stock description", "product", "product name", "name"},
    "unit": {"unit", "units", "unit (inners)"},
    "unit_cost": {"unit cost", "average unit cost", "avg unit cost", "cost"},
    "theoretical_qty": {
        "theoretical qty",
        "theoretical quantity",
        "quantity at stocktake",
        "qty",
        "quantity",
    },
}

_FIELD_ALIASES_NORMALIZED: Dict[str, set[str]] = {
    key: {_normalize_key(alias) for alias in aliases} for key, aliases in _FIELD_ALIASES.items()
}


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else str(value)
    return str(value).strip()


def _is_numeric(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    text = str(value).strip()
    if not text:
        return False
    try:
        float(text)
    except ValueError:
        return False
    return True


def _to_float(value: Any, *, row_number: int, strict: bool) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip().replace("$", "").replace(",", "")
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        if strict:
            raise ImportFailure(f"Row {row_number}: invalid number {value!r}") from None
        return 0.0


def _parse_xls_rows(data: bytes) -> List[List[Any]]:
    try:
        workbook = xlrd.open_workbook(file_contents=data)
    except Exception as exc:
        raise ImportFailure("Invalid XLS file") from exc
    if workbook.nsheets == 0:
        raise ImportFailure("Missing worksheet")
    sheet = workbook.sheet_by_index(0)
    rows: List[List[Any]] = []
    for row_index in range(sheet.nrows):
        row: List[Any] = []
        for col_index in range(sheet.ncols):
            cell = sheet.cell(row_index, col_index)
            if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
                row.append(None)
            elif cell.ctype == xlrd.XL_CELL_NUMBER:
                row.append(float(cell.value))
            else:
                row.append(str(cell.value).strip())
        rows.append(row)
    return rows


def _parse_csv_rows(text: str) -> List[List[Any]]:
    reader = csv.reader(StringIO(text))
    return [[cell if cell.strip() else None for cell in row] for row in reader]


def read_rows(data: bytes, filename: str = "") -> List[List[Any]]:
    """Read the first worksheet of an XLS file, or a CSV file, into raw rows."""

    if not data:
        raise ImportFailure("Empty file")
    extension = Path(filename).suffix.lower()
    if extension == ".xlsx":
        raise ImportFailure("XLSX workbooks are not supported; save the export as XLS or CSV")
    if extension == ".xls":
        return _parse_xls_rows(data)
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        try:
            return _parse_xls_rows(data)
        except ImportFailure as exc:
            raise ImportFailure("File must be UTF-8 encoded CSV or valid XLS") from exc
    return _parse_csv_rows(text)


def _header_columns(row: Sequence[Any]) -> Dict[str, int]:
    columns: Dict[str, int] = {}
    for index, label in enumerate(row):
        key = _normalize_key(label)
        if not key:
            continue
        for field, aliases in _FIELD_ALIASES_NORMALIZED.items():
            if key in aliases and field not in columns:
                columns[field] = index
    return columns


def _value(row: Sequence[Any], index: Optional[int]) -> Any:
    if index is None or index >= len(row):
        return None
    return row[index]


def _parse_vendor_layout(rows: Sequence[Sequence[Any]]) -> List[TheoreticalItem]:
    items: List[TheoreticalItem] = []
    category = ""
    for row_number, row in enumerate(rows, start=1):
        if not row:
            continue
        first = row[_VENDOR_CODE_COL]
        if isinstance(first, str) and first.strip().startswith(STOCK_GROUP_PREFIX):
            category = first.strip()[len(STOCK_GROUP_PREFIX):].strip()
            continue
        if not _is_numeric(first):
            continue
        description = _cell_text(_value(row, _VENDOR_DESCRIPTION_COL))
        if not description:
            continue
        items.append(
            TheoreticalItem(
                category=category,
                product_code=_cell_text(first),
                description=description,
                unit=_cell_text(_value(row, _VENDOR_UNIT_COL)),
                unit_cost=_to_float(
                    _value(row, _VENDOR_UNIT_COST_COL), row_number=row_number, strict=False
                ),
                theoretical_qty=_to_float(
                    _value(row, _VENDOR_QTY_AT_STOCKTAKE_COL), row_number=row_number, strict=False
                ),
            )
        )
    return items


def _parse_flat_layout(
    rows: Sequence[Sequence[Any]], columns: Dict[str, int], header_index: int
) -> List[TheoreticalItem]:
    items: List[TheoreticalItem] = []
    for row_number, row in enumerate(rows[header_index + 1 :], start=header_index + 2):
        if not row or not any(_cell_text(cell) for cell in row):
            continue
        description = _cell_text(_value(row, columns.get("description")))
        product_code = _cell_text(_value(row, columns.get("product_code"))) or description
        if not product_code:
            continue
        items.append(
            TheoreticalItem(
                category=_cell_text(_value(row, columns.get("category"))),
                product_code=product_code,
                description=description or product_code,
                unit=_cell_text(_value(row, columns.get("unit"))),
                unit_cost=_to_float(
                    _value(row, columns.get("unit_cost")), row_number=row_number, strict=True
                ),
                theoretical_qty=_to_float(
                    _value(row, columns.get("theoretical_qty")),
                    row_number=row_number,
                    strict=True,
                ),
                barcode=_cell_text(_value(row, columns.get("barcode"))) or None,
            )
        )
    return items


def parse_theoretical_export(data: bytes, filename: str = "") -> List[TheoreticalItem]:
    """Parse a theoretical stock export into baseline items, in file order.

    Two layouts are understood: the vendor variance export with ``Stock Group
    No:`` header rows and fixed columns, and a flat sheet with a header row.
    """

    rows = read_rows(data, filename)
    header_index = next(
        (index for index, row in enumerate(rows) if any(_cell_text(cell) for cell in row)),
        None,
    )
    if header_index is None:
        raise ImportFailure("No rows found in theoretical export")

    columns = _header_columns(rows[header_index])
    grouped = any(
        row and isinstance(row[0], str) and row[0].strip().startswith(STOCK_GROUP_PREFIX)
        for row in rows
    )
    if not grouped and "description" in columns and (
        "product_code" in columns or "theoretical_qty" in columns
    ):
        items = _parse_flat_layout(rows, columns, header_index)
        layout = "flat"
    else:
        items = _parse_vendor_layout(rows)
        layout = "vendor"

    if not items:
        raise ImportFailure("No stock items found in theoretical export")
    logger.info(
        "Imported %d theoretical items (%s layout, %d categories) from %s",
        len(items),
        layout,
        len({item.category for item in items if item.category}),
        filename or "upload",
    )
    return items


def parse_barcode_mapping(data: bytes, filename: str = "") -> List[Tuple[str, str]]:
    """Parse a two-column barcode sheet into ``(product, barcode)`` pairs.

    Without a recognizable header the first row is skipped and column A holds
    the barcode, column B the product.
    """

    rows = read_rows(data, filename)
    if not rows:
        return []
    columns = _header_columns(rows[0])
    barcode_col = columns.get("barcode", 0)
    product_col = columns.get("description", columns.get("product_code", 1))

    pairs: List[Tuple[str, str]] = []
    for row in rows[1:]:
        barcode = _cell_text(_value(row, barcode_col))
        product = _cell_text(_value(row, product_col))
        if barcode and product:
            pairs.append((product, barcode))
    logger.info("Loaded %d barcode mappings from %s", len(pairs), filename or "upload")
    return pairs


__all__ = [
    "STOCK_GROUP_PREFIX",
    "read_rows",
    "parse_theoretical_export",
    "parse_barcode_mapping",
]
