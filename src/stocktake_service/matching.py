"""Barcode mapping and multi-tier product matching."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .domain import (
    AggregatedCount,
    FuzzyMatch,
    TheoreticalItem,
    UnmatchedCount,
    normalize_barcode,
    normalize_name,
)

logger = logging.getLogger(__name__)


class BarcodeMapping:
    """Immutable bidirectional index between barcodes and product codes.

    The reverse direction (barcode to product) keeps the first product seen for
    a barcode; the forward direction keeps the first barcode seen for a product.
    """

    def __init__(self, pairs: Iterable[Tuple[str, str]] = ()) -> None:
        by_barcode: Dict[str, str] = {}
        by_product: Dict[str, str] = {}
        for product_code, barcode in pairs:
            code = (product_code or "").strip()
            cleaned = normalize_barcode(barcode)
            if not code or not cleaned:
                continue
            existing = by_barcode.get(cleaned)
            if existing is not None and existing != code:
                logger.warning(
                    "Barcode %s is mapped to both %s and %s; keeping %s",
                    cleaned,
                    existing,
                    code,
                    existing,
                )
                continue
            by_barcode.setdefault(cleaned, code)
            by_product.setdefault(code, cleaned)
        self._by_barcode = by_barcode
        self._by_product = by_product

    @classmethod
    def build(
        cls,
        theoretical: Sequence[TheoreticalItem],
        pairs: Iterable[Tuple[str, str]] = (),
    ) -> "BarcodeMapping":
        """Resolve raw ``(product, barcode)`` rows against a baseline.

        The product column may hold either a product code or a description.
        Barcodes carried by the baseline items themselves are indexed first.
        """

        codes = {item.product_code for item in theoretical}
        by_description: Dict[str, str] = {}
        for item in theoretical:
            by_description.setdefault(normalize_name(item.description), item.product_code)

        resolved: List[Tuple[str, str]] = [
            (item.product_code, item.barcode) for item in theoretical if item.barcode
        ]
        for product_key, barcode in pairs:
            key = (product_key or "").strip()
            if key in codes:
                resolved.append((key, barcode))
            elif normalize_name(key) in by_description:
                resolved.append((by_description[normalize_name(key)], barcode))
            else:
                resolved.append((key, barcode))
        return cls(resolved)

    def product_for(self, barcode: Optional[str]) -> Optional[str]:
        return self._by_barcode.get(normalize_barcode(barcode))

    def barcode_for(self, product_code: Optional[str]) -> Optional[str]:
        return self._by_product.get((product_code or "").strip())

    def has_product(self, product_code: str) -> bool:
        return product_code in self._by_product

    def pairs(self) -> List[Tuple[str, str]]:
        """Return ``(product_code, barcode)`` pairs suitable for persistence."""

        return [(code, barcode) for barcode, code in self._by_barcode.items()]

    def __len__(self) -> int:
        return len(self._by_barcode)

    def __contains__(self, barcode: object) -> bool:
        return isinstance(barcode, str) and normalize_barcode(barcode) in self._by_barcode


class MatchTier(str, Enum):
    BARCODE = "barcode"
    DESCRIPTION = "description"
    FUZZY = "fuzzy"
    UNMATCHED = "unmatched"


@dataclass(frozen=True)
class MatchResult:
    product_code: Optional[str]
    tier: MatchTier
    matched_description: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.product_code is not None


class MatchingEngine:
    """Resolve aggregated counts to product codes, first successful tier wins."""

    def __init__(
        self,
        theoretical: Sequence[TheoreticalItem],
        mapping: BarcodeMapping,
        *,
        fuzzy_enabled: bool = True,
    ) -> None:
        self._mapping = mapping
        self._fuzzy_enabled = fuzzy_enabled
        self._codes = {item.product_code for item in theoretical}
        self._exact: Dict[str, str] = {}
        self._descriptions: List[Tuple[str, str, str]] = []
        for item in theoretical:
            normalized = normalize_name(item.description)
            if not normalized:
                continue
            self._exact.setdefault(normalized, item.product_code)
            self._descriptions.append((normalized, item.product_code, item.description))

    def match(self, barcode: Optional[str], product_name: Optional[str]) -> MatchResult:
        cleaned = normalize_barcode(barcode)
        if cleaned:
            code = self._mapping.product_for(cleaned)
            if code is not None and code in self._codes:
                return MatchResult(code, MatchTier.BARCODE)

        name = normalize_name(product_name)
        if not name:
            return MatchResult(None, MatchTier.UNMATCHED)

        code = self._exact.get(name)
        if code is not None:
            return MatchResult(code, MatchTier.DESCRIPTION)

        if self._fuzzy_enabled:
            for description, code, original in self._descriptions:
                if description in name or name in description:
                    return MatchResult(code, MatchTier.FUZZY, matched_description=original)

        return MatchResult(None, MatchTier.UNMATCHED)

    def resolve(
        self, aggregated: Iterable[AggregatedCount]
    ) -> Tuple[Dict[str, float], List[UnmatchedCount], List[FuzzyMatch]]:
        """Sum aggregated quantities per product code.

        Returns the resolved counts together with the unmatched and fuzzy-match
        diagnostics, in input order.
        """

        resolved: Dict[str, float] = {}
        unmatched: List[UnmatchedCount] = []
        fuzzy: List[FuzzyMatch] = []
        for entry in aggregated:
            result = self.match(entry.barcode, entry.product_name)
            if result.product_code is None:
                unmatched.append(
                    UnmatchedCount(
                        product_name=entry.product_name,
                        barcode=entry.barcode,
                        quantity=entry.quantity,
                        locations=tuple(entry.locations),
                    )
                )
                continue
            if result.tier is MatchTier.FUZZY:
                fuzzy.append(
                    FuzzyMatch(
                        product_name=entry.product_name,
                        barcode=entry.barcode,
                        quantity=entry.quantity,
                        product_code=result.product_code,
                        matched_description=result.matched_description or "",
                    )
                )
            resolved[result.product_code] = resolved.get(result.product_code, 0.0) + entry.quantity

        if unmatched:
            logger.info("%d counted entries did not match any product", len(unmatched))
        if fuzzy:
            logger.info("%d counted entries matched by substring only", len(fuzzy))
        return resolved, unmatched, fuzzy


def mapping_from_rows(rows: Iterable[Mapping[str, str]]) -> BarcodeMapping:
    return BarcodeMapping((row["product_code"], row["barcode"]) for row in rows)


__all__ = [
    "BarcodeMapping",
    "MatchTier",
    "MatchResult",
    "MatchingEngine",
    "mapping_from_rows",
]
