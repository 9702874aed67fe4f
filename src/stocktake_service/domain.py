"""Plain data types shared by the reconciliation pipeline.

These are deliberately free of SQLAlchemy and pydantic so the matching,
aggregation and variance code can run on the server and, from cached
snapshots, on an offline device.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"


def normalize_name(value: Optional[str]) -> str:
    """Trim and lowercase a product name or description."""

    return (value or "").strip().lower()


def normalize_barcode(value: Optional[str]) -> str:
    return (value or "").strip()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class TheoreticalItem:
    """A single line of the imported theoretical baseline."""

    category: str
    product_code: str
    description: str
    unit: str = ""
    unit_cost: float = 0.0
    theoretical_qty: float = 0.0
    barcode: Optional[str] = None

    @property
    def theoretical_value(self) -> float:
        return self.theoretical_qty * self.unit_cost

    def to_dict(self) -> Dict[str, Any]:
        record = asdict(self)
        record["theoretical_value"] = self.theoretical_value
        return record

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "TheoreticalItem":
        return cls(
            category=str(record.get("category") or ""),
            product_code=str(record.get("product_code") or ""),
            description=str(record.get("description") or ""),
            unit=str(record.get("unit") or ""),
            unit_cost=float(record.get("unit_cost") or 0),
            theoretical_qty=float(record.get("theoretical_qty") or 0),
            barcode=record.get("barcode") or None,
        )


@dataclass(frozen=True)
class CountRecord:
    """The fields of a count event the reconciliation pipeline reads."""

    sync_id: str
    product_name: str
    quantity: float
    barcode: Optional[str] = None
    location: str = ""
    source: str = "scan"


@dataclass(frozen=True)
class AdjustmentEntry:
    """An append-only manual override of a product's counted quantity."""

    product_code: str
    new_count: float
    timestamp: datetime
    old_count: Optional[float] = None
    reason: str = ""
    user: str = ""
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        record = asdict(self)
        record["timestamp"] = as_utc(self.timestamp).isoformat()
        return record

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "AdjustmentEntry":
        timestamp = record["timestamp"]
        if isinstance(timestamp, str):
            if timestamp.endswith("Z"):
                timestamp = timestamp[:-1] + "+00:00"
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            product_code=str(record["product_code"]),
            new_count=float(record["new_count"]),
            timestamp=as_utc(timestamp),
            old_count=record.get("old_count"),
            reason=str(record.get("reason") or ""),
            user=str(record.get("user") or ""),
            id=record.get("id"),
        )


@dataclass
class AggregatedCount:
    """Summed quantity of all events sharing a barcode or normalized name."""

    barcode: Optional[str]
    product_name: str
    quantity: float = 0.0
    event_count: int = 0
    locations: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class UnmatchedCount:
    """Diagnostic for an aggregated count that resolved to no product."""

    product_name: str
    barcode: Optional[str]
    quantity: float
    locations: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        record = asdict(self)
        record["locations"] = list(self.locations)
        return record


@dataclass(frozen=True)
class FuzzyMatch:
    """Diagnostic for a count resolved only by substring matching."""

    product_name: str
    barcode: Optional[str]
    quantity: float
    product_code: str
    matched_description: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VarianceItem:
    category: str
    product_code: str
    barcode: Optional[str]
    description: str
    unit: str
    unit_cost: float
    theoretical_qty: float
    theoretical_value: float
    counted_qty: float
    manually_entered: bool
    qty_variance: float
    dollar_variance: float
    variance_percent: float
    has_barcode: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VarianceSummary:
    total_items: int = 0
    items_counted: int = 0
    items_not_counted: int = 0
    total_dollar_variance: float = 0.0
    total_qty_variance: float = 0.0
    positive_variances: int = 0
    negative_variances: int = 0
    zero_variances: int = 0
    unmatched_items: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VarianceReport:
    items: List[VarianceItem]
    summary: VarianceSummary
    unmatched: List[UnmatchedCount] = field(default_factory=list)
    fuzzy_matches: List[FuzzyMatch] = field(default_factory=list)

    def item_for(self, product_code: str) -> Optional[VarianceItem]:
        for item in self.items:
            if item.product_code == product_code:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "summary": self.summary.to_dict(),
            "unmatched": [entry.to_dict() for entry in self.unmatched],
            "fuzzy_matches": [entry.to_dict() for entry in self.fuzzy_matches],
        }


__all__ = [
    "STATUS_ACTIVE",
    "STATUS_COMPLETED",
    "normalize_name",
    "normalize_barcode",
    "utcnow",
    "as_utc",
    "TheoreticalItem",
    "CountRecord",
    "AdjustmentEntry",
    "AggregatedCount",
    "UnmatchedCount",
    "FuzzyMatch",
    "VarianceItem",
    "VarianceSummary",
    "VarianceReport",
]
