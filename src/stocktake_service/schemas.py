"""Pydantic schemas used by the API and the sync client."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class CountEventBase(BaseModel):
    """Envelope shared by every count event source."""

    sync_id: str = Field(
        ..., min_length=1, max_length=64, description="Client generated idempotency key."
    )
    barcode: Optional[str] = None
    product_name: str = ""
    quantity: float = Field(..., ge=0)
    location: str = ""
    recorded_by: str = Field(..., min_length=1)
    recorded_at: datetime

    @field_validator("sync_id", "product_name", "location", "recorded_by")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("barcode")
    @classmethod
    def _strip_barcode(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class ScanEvent(CountEventBase):
    source: Literal["scan"] = "scan"
    barcode: str

    @field_validator("barcode")
    @classmethod
    def _require_barcode(cls, value: Optional[str]) -> str:
        if not value or not value.strip():
            raise ValueError("Scanned counts require a barcode.")
        return value.strip()


class ManualEvent(CountEventBase):
    source: Literal["manual"] = "manual"
    product_name: str

    @field_validator("product_name")
    @classmethod
    def _require_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Manual counts require a product name.")
        return value.strip()


class KegEvent(CountEventBase):
    source: Literal["keg"] = "keg"
    product_name: str

    @field_validator("product_name")
    @classmethod
    def _require_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Keg counts require the keg name.")
        return value.strip()

    @field_validator("barcode")
    @classmethod
    def _drop_barcode(cls, value: Optional[str]) -> None:
        return None


CountEventIn = Annotated[Union[ScanEvent, ManualEvent, KegEvent], Field(discriminator="source")]
count_event_adapter: TypeAdapter[CountEventIn] = TypeAdapter(CountEventIn)


class CountEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sync_id: str
    stocktake_id: str
    source: Literal["scan", "manual", "keg"]
    barcode: Optional[str] = None
    product_name: str
    quantity: float
    location: str
    recorded_by: str
    recorded_at: datetime


class SyncPushRequest(BaseModel):
    events: list[CountEventIn] = Field(default_factory=list)


class SyncAck(BaseModel):
    sync_id: str
    status: Literal["created", "updated", "unchanged", "deleted"]


class SyncPushResponse(BaseModel):
    stocktake_id: str
    acknowledged: list[SyncAck] = Field(default_factory=list)

    @property
    def acknowledged_ids(self) -> set[str]:
        return {ack.sync_id for ack in self.acknowledged}


class DeleteCountsRequest(BaseModel):
    sync_ids: list[str] = Field(..., min_length=1)


class DeleteCountsResponse(BaseModel):
    stocktake_id: str
    deleted: list[str] = Field(default_factory=list)


class AdjustmentCreate(BaseModel):
    product_code: str = Field(..., min_length=1)
    new_count: float = Field(..., ge=0)
    old_count: Optional[float] = None
    reason: str = ""
    user: str = Field(..., min_length=1)
    timestamp: Optional[datetime] = Field(
        default=None, description="Client edit time; defaults to the server clock."
    )


class AdjustmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_code: str
    old_count: Optional[float] = None
    new_count: float
    reason: str
    user: str
    timestamp: datetime


class StocktakeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    status: Literal["active", "completed"]
    created_at: datetime
    created_by: str
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None


class FinishStocktakeRequest(BaseModel):
    completed_by: str = Field(..., min_length=1)


class TheoreticalItemOut(BaseModel):
    category: str
    product_code: str
    barcode: Optional[str] = None
    description: str
    unit: str
    unit_cost: float
    theoretical_qty: float
    theoretical_value: float


class BarcodePair(BaseModel):
    product_code: str
    barcode: str


class StocktakeSnapshot(BaseModel):
    """Everything a device needs to compute variance while offline."""

    stocktake: StocktakeOut
    theoretical: list[TheoreticalItemOut]
    barcode_mapping: list[BarcodePair]
    adjustments: list[AdjustmentOut]


class VarianceItemOut(BaseModel):
    category: str
    product_code: str
    barcode: Optional[str] = None
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


class VarianceSummaryOut(BaseModel):
    total_items: int
    items_counted: int
    items_not_counted: int
    total_dollar_variance: float
    total_qty_variance: float
    positive_variances: int
    negative_variances: int
    zero_variances: int
    unmatched_items: int


class UnmatchedCountOut(BaseModel):
    product_name: str
    barcode: Optional[str] = None
    quantity: float
    locations: list[str] = Field(default_factory=list)


class FuzzyMatchOut(BaseModel):
    product_name: str
    barcode: Optional[str] = None
    quantity: float
    product_code: str
    matched_description: str


class VarianceReportOut(BaseModel):
    stocktake_id: str
    items: list[VarianceItemOut]
    summary: VarianceSummaryOut
    unmatched: list[UnmatchedCountOut]
    fuzzy_matches: list[FuzzyMatchOut]


class HealthStatus(BaseModel):
    status: Literal["ok"] = "ok"
    environment: str


__all__ = [
    "CountEventBase",
    "ScanEvent",
    "ManualEvent",
    "KegEvent",
    "CountEventIn",
    "count_event_adapter",
    "CountEventOut",
    "SyncPushRequest",
    "SyncAck",
    "SyncPushResponse",
    "DeleteCountsRequest",
    "DeleteCountsResponse",
    "AdjustmentCreate",
    "AdjustmentOut",
    "StocktakeOut",
    "FinishStocktakeRequest",
    "TheoreticalItemOut",
    "BarcodePair",
    "StocktakeSnapshot",
    "VarianceItemOut",
    "VarianceSummaryOut",
    "UnmatchedCountOut",
    "FuzzyMatchOut",
    "VarianceReportOut",
    "HealthStatus",
]
