"""Domain errors raised by the reconciliation engine and the sync queue."""
from __future__ import annotations


class StocktakeError(Exception):
    """Base class for all stocktake domain errors."""


class StocktakeNotActive(StocktakeError):
    """A mutation targeted a stocktake that is missing or already completed."""

    def __init__(self, stocktake_id: str, reason: str = "is not active") -> None:
        self.stocktake_id = stocktake_id
        super().__init__(f"Stocktake {stocktake_id} {reason}")


class StocktakeAlreadyActive(StocktakeError):
    """A new stocktake was requested while another one is still active."""

    def __init__(self, active_id: str | None = None) -> None:
        self.active_id = active_id
        detail = f" ({active_id})" if active_id else ""
        super().__init__(f"Another stocktake is already active{detail}")


class ImportFailure(StocktakeError, ValueError):
    """The theoretical baseline or barcode mapping could not be parsed."""


class SyncFailure(StocktakeError):
    """Network or server failure while draining the offline queue."""


class SyncRejected(StocktakeError):
    """The server refused a sync request as invalid; retrying it unchanged will not help."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        super().__init__(detail)


class UnknownProduct(StocktakeError, KeyError):
    """An adjustment referenced a product code missing from the baseline."""

    def __init__(self, product_code: str) -> None:
        self.product_code = product_code
        super().__init__(f"Product {product_code} is not part of the theoretical baseline")

    def __str__(self) -> str:
        return self.args[0]


class CountEventNotFound(StocktakeError, KeyError):
    """A local edit or delete referenced an unknown sync id."""

    def __init__(self, sync_id: str) -> None:
        self.sync_id = sync_id
        super().__init__(f"Count event {sync_id} not found")

    def __str__(self) -> str:
        return self.args[0]


__all__ = [
    "StocktakeError",
    "StocktakeNotActive",
    "StocktakeAlreadyActive",
    "ImportFailure",
    "SyncFailure",
    "SyncRejected",
    "UnknownProduct",
    "CountEventNotFound",
]
