from concierge.diversity import (
    canonical_family,
    diversify,
    emergency_pick,
    group_by_family,
    guarantee_count,
    is_open_ended,
    measure_result_diversity,
    merge_family_labels,
)


def test_open_ended_detection():
    assert is_open_ended("Gift ideas for my dad")
    assert is_open_ended("surprise me!")
    assert not is_open_ended("navy wool suit")
    assert is_open_ended("anything goes")
    assert not is_open_ended("something navy for a wedding")
    assert not is_open_ended("anything under 50 in navy")


def test_canonical_family_singularises_last_word():
    assert canonical_family("Dresses") == "dress"
    assert canonical_family("Accessories") == "accessory"
    assert canonical_family("Running Shoes") == "running shoe"
    assert canonical_family("") == "other"


def test_labels_merge_into_the_shorter_family():
    merged = merge_family_labels(["dress", "maxi dress", "shoe"])
    assert merged == {"dress": "dress", "maxi dress": "dress", "shoe": "shoe"}


def test_family_falls_back_to_collection_vendor_title(make_candidate):
    pool = [
        make_candidate("a", title="Floral Maxi", product_type="Maxi Dress"),
        make_candidate("b", title="Wrap", product_type="Dresses"),
        make_candidate("c", title="Canvas Tote", collections=["Bags"]),
        make_candidate("d", title="Old Lamp"),
    ]
    groups = group_by_family(pool)
    assert {k: [c.handle for c in v] for k, v in groups.items()} == {
        "dress": ["a", "b"],
        "bag": ["c"],
        "lamp": ["d"],
    }


def test_round_robin_across_families(make_candidate):
    ranked = [
        make_candidate("d1", product_type="Dress"),
        make_candidate("d2", product_type="Dress"),
        make_candidate("d3", product_type="Maxi Dress"),
        make_candidate("s1", product_type="Shoes"),
        make_candidate("s2", product_type="Shoes"),
    ]
    picked, families = diversify(ranked, 4)
    assert [c.handle for c in picked] == ["d1", "s1", "d2", "s2"]
    assert families == 2

    # a single family keeps rank order
    picked, families = diversify(ranked[:3], 2)
    assert [c.handle for c in picked] == ["d1", "d2"]
    assert families == 1


def test_guarantee_tops_up_in_source_order(make_candidate):
    a = make_candidate("a", price=10.0)
    b = make_candidate("b", price=10.0, available=False)
    c = make_candidate("c", price=10.0)
    d = make_candidate("d", price=10.0)
    e = make_candidate("e")
    top_up = guarantee_count([a], 4, [("gated", [a, b, c]), ("pool", [d, e])], stock_only=True, price_ceiling=50)
    # e has no known price, so it never fits a ceiling
    assert [x.handle for x in top_up.added] == ["c", "d"]
    assert top_up.by_source == {"gated": 1, "pool": 1}


def test_guarantee_noop_when_full(make_candidate):
    a = make_candidate("a")
    assert guarantee_count([a], 1, [("gated", [make_candidate("b")])]).added == []


def test_emergency_pick_prefers_in_stock(make_candidate):
    out = make_candidate("out", available=False)
    ok = make_candidate("ok")
    assert emergency_pick([out, ok]).handle == "ok"
    assert emergency_pick([out]).handle == "out"
    assert emergency_pick([]) is None


def test_measure_result_diversity(make_candidate):
    pool = [
        make_candidate("a", price=10.0, vendor="Acme", product_type="Shirt"),
        make_candidate("b", price=100.0, vendor="acme", product_type="Shirts"),
        make_candidate("c", price=300.0, vendor="Other", product_type="Suit"),
        make_candidate("d"),
    ]
    stats = measure_result_diversity(pool)
    assert stats["count"] == 4
    assert stats["vendors"] == 2
    assert stats["types"] == 2
    assert stats["price_buckets"] == 3
    assert measure_result_diversity([])["count"] == 0
