from __future__ import annotations

import logging

import pytest

from stocktake_service.aggregation import aggregate_counts
from stocktake_service.domain import AggregatedCount, CountRecord, TheoreticalItem
from stocktake_service.matching import BarcodeMapping, MatchingEngine, MatchTier, mapping_from_rows


@pytest.fixture()
def mapping(theoretical: list[TheoreticalItem]) -> BarcodeMapping:
    return BarcodeMapping.build(
        theoretical,
        [("1001", "9300000000011"), ("Jim Beam 700ml", "9300000000028")],
    )


def test_mapping_resolves_descriptions_to_codes(mapping: BarcodeMapping) -> None:
    assert mapping.product_for("9300000000028") == "2001"
    assert mapping.barcode_for("2001") == "9300000000028"
    assert mapping.product_for(" 9300000000011 ") == "1001"
    assert "9300000000011" in mapping
    assert len(mapping) == 2


def test_mapping_round_trip_reproduces_product(mapping: BarcodeMapping) -> None:
    for code, barcode in mapping.pairs():
        assert mapping.product_for(barcode) == code
        assert mapping.barcode_for(mapping.product_for(barcode)) == barcode


def test_duplicate_barcode_keeps_first_mapping(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="stocktake_service.matching"):
        mapping = BarcodeMapping([("A", "111"), ("B", "111")])
    assert mapping.product_for("111") == "A"
    assert not mapping.has_product("B")
    assert "mapped to both" in caplog.text


def test_mapping_from_rows() -> None:
    mapping = mapping_from_rows([{"product_code": "2001", "barcode": "555"}])
    assert mapping.product_for("555") == "2001"


def test_barcode_tier_wins(theoretical: list[TheoreticalItem], mapping: BarcodeMapping) -> None:
    engine = MatchingEngine(theoretical, mapping)
    result = engine.match("9300000000011", "Jim Beam 700ml")
    assert result.product_code == "1001"
    assert result.tier is MatchTier.BARCODE


def test_barcode_outside_baseline_falls_through(theoretical: list[TheoreticalItem]) -> None:
    engine = MatchingEngine(theoretical, BarcodeMapping([("9999", "123")]))
    result = engine.match("123", "great northern keg")
    assert result.product_code == "1002"
    assert result.tier is MatchTier.DESCRIPTION


def test_exact_description_is_case_and_space_insensitive(
    theoretical: list[TheoreticalItem], mapping: BarcodeMapping
) -> None:
    result = MatchingEngine(theoretical, mapping).match(None, "  JIM BEAM 700ML ")
    assert result.product_code == "2001"
    assert result.tier is MatchTier.DESCRIPTION


def test_duplicate_descriptions_take_first_in_baseline_order() -> None:
    baseline = [
        TheoreticalItem("A", "X1", "House Red"),
        TheoreticalItem("B", "X2", "House Red"),
    ]
    result = MatchingEngine(baseline, BarcodeMapping()).match(None, "house red")
    assert result.product_code == "X1"


def test_fuzzy_substring_in_either_direction(
    theoretical: list[TheoreticalItem], mapping: BarcodeMapping
) -> None:
    engine = MatchingEngine(theoretical, mapping)

    shorter = engine.match(None, "Bundaberg")
    assert shorter.product_code == "2002"
    assert shorter.tier is MatchTier.FUZZY
    assert shorter.matched_description == "Bundaberg Rum 700ml"

    longer = engine.match(None, "Great Northern Keg 50L")
    assert longer.product_code == "1002"
    assert longer.tier is MatchTier.FUZZY


def test_fuzzy_can_be_disabled(theoretical: list[TheoreticalItem], mapping: BarcodeMapping) -> None:
    result = MatchingEngine(theoretical, mapping, fuzzy_enabled=False).match(None, "Bundaberg")
    assert result.tier is MatchTier.UNMATCHED
    assert not result.matched


def test_blank_name_and_unknown_barcode_is_unmatched(
    theoretical: list[TheoreticalItem], mapping: BarcodeMapping
) -> None:
    result = MatchingEngine(theoretical, mapping).match("000", "   ")
    assert result.product_code is None
    assert result.tier is MatchTier.UNMATCHED


def test_resolve_collects_diagnostics(
    theoretical: list[TheoreticalItem], mapping: BarcodeMapping
) -> None:
    engine = MatchingEngine(theoretical, mapping)
    resolved, unmatched, fuzzy = engine.resolve(
        [
            AggregatedCount(barcode="9300000000011", product_name="", quantity=7),
            AggregatedCount(barcode=None, product_name="Carlton Draught 375ml", quantity=2),
            AggregatedCount(barcode=None, product_name="Bundaberg", quantity=1),
            AggregatedCount(barcode=None, product_name="Mystery Gin", quantity=3, locations=["Bar"]),
        ]
    )
    assert resolved == {"1001": 9.0, "2002": 1.0}
    assert [entry.product_name for entry in unmatched] == ["Mystery Gin"]
    assert unmatched[0].locations == ("Bar",)
    assert [entry.product_code for entry in fuzzy] == ["2002"]


def test_aggregate_sums_same_barcode_across_locations() -> None:
    events = [
        CountRecord("a", "", 3, barcode="9300000000011", location="Cellar"),
        CountRecord("b", "", 4, barcode="9300000000011", location="Bar"),
    ]
    [group] = aggregate_counts(events)
    assert group.quantity == 7
    assert group.event_count == 2
    assert group.locations == ["Cellar", "Bar"]


def test_aggregate_groups_names_case_insensitively() -> None:
    events = [
        CountRecord("a", "Great Northern Keg", 1, source="keg"),
        CountRecord("b", " great northern keg", 0.5, source="keg"),
    ]
    [group] = aggregate_counts(events)
    assert group.barcode is None
    assert group.quantity == 1.5


def test_aggregate_counts_repeated_sync_id_once() -> None:
    once = [CountRecord("a", "", 3, barcode="111")]
    twice = once + [CountRecord("a", "", 3, barcode="111")]
    assert aggregate_counts(twice)[0].quantity == aggregate_counts(once)[0].quantity == 3
