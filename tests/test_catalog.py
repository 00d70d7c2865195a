import json

import pytest

from concierge.catalog import (
    SnapshotCatalogSource,
    load_catalog_snapshot,
    normalize_candidate,
    normalize_records,
    parse_price,
)
from concierge.errors import CatalogUnavailableError


def test_parse_price_variants():
    assert parse_price("£1,299.00") == 1299.0
    assert parse_price(49) == 49.0
    assert parse_price("n/a") is None
    assert parse_price(None) is None


def test_parse_price_rejects_non_positive():
    assert parse_price(0) is None
    assert parse_price("0.00") is None
    assert parse_price("-5") is None
    assert parse_price(-12.5) is None


def test_normalize_candidate_accepts_aliases():
    cand = normalize_candidate({
        "id": "oxford-shirt",
        "Title": "Oxford Shirt",
        "productType": "Shirt",
        "priceAmount": "45.00",
        "availableForSale": "false",
        "tags": "menswear, cotton , cf-size-m",
        "options": [{"name": "Colour", "values": ["Sky Blue", "White"]}],
    })
    assert cand.handle == "oxford-shirt"
    assert cand.product_type == "Shirt"
    assert cand.price == 45.0
    assert cand.available is False
    assert cand.tags == ("menswear", "cotton", "cf-size-m")
    assert cand.colors == ("Sky Blue", "White")
    assert cand.sizes == ("m",)
    assert "sky blue" in cand.search_text


def test_missing_availability_defaults_to_in_stock():
    cand = normalize_candidate({"handle": "x", "title": "X"})
    assert cand.available is True
    assert cand.price is None


def test_normalize_candidate_requires_handle():
    with pytest.raises(ValueError):
        normalize_candidate({"title": "No handle"})


def test_normalize_records_dedupes_and_skips():
    out = normalize_records([{"handle": "a"}, {"handle": "a"}, {"title": "orphan"}, {"handle": "b"}])
    assert [c.handle for c in out] == ["a", "b"]


def test_with_description_rebuilds_search_text(make_candidate):
    cand = make_candidate("plain-tee", product_type="T-Shirt")
    enriched = cand.with_description("<p>Organic <b>cotton</b> jersey</p>")
    assert "jersey" in enriched.tokens
    assert "jersey" not in cand.tokens
    assert enriched.description == "Organic cotton jersey"


def _write_snapshot(path, rows):
    with path.open("w", encoding="utf-8") as f:
        for row in rows:
            f.write(json.dumps(row) + "\n")


def test_snapshot_source_fetches(tmp_path):
    path = tmp_path / "catalog.jsonl"
    _write_snapshot(path, [
        {"handle": "navy-suit", "title": "Navy Suit", "product_type": "Suit", "price": 150,
         "description": "<p>Two piece wool suit</p>"},
        {"handle": "white-shirt", "title": "White Shirt", "product_type": "Shirt", "price": 40},
        {"handle": "brown-belt", "title": "Brown Belt", "product_type": "Belt", "price": 25},
    ])
    source = SnapshotCatalogSource.from_path(path)

    listed = source.fetch_by_filter("default", limit=2)
    assert [c.handle for c in listed] == ["navy-suit", "white-shirt"]
    assert listed[0].description == ""

    hits = source.fetch_by_query("default", "suit", target_count=10)
    assert [c.handle for c in hits] == ["navy-suit"]

    descs = source.fetch_descriptions(["navy-suit", "brown-belt"])
    assert descs == {"navy-suit": "<p>Two piece wool suit</p>"}


def test_missing_snapshot_raises(tmp_path):
    with pytest.raises(CatalogUnavailableError):
        load_catalog_snapshot(tmp_path / "nope.jsonl")
