from concierge.gating import GatingStage, gate
from concierge.validate import anchor_for_terms, assign_item_indices, validate_bundle_selection, validate_selection


def _strict_navy_pool(make_candidate):
    pool = []
    for i in range(40):
        color = "Navy" if i < 20 else "Black"
        pool.append(make_candidate(
            f"suit-{i:02d}", title=f"{color} Suit", product_type="Suit", colors=[color],
            price=100.0 + i, available=i != 1,
        ))
    return pool


def test_anchor_prefers_catalog_type():
    assert anchor_for_terms(["navy", "suit jacket"], {"suit jacket", "suit"}) == "suit jacket"
    assert anchor_for_terms(["lightsaber"], set()) == "lightsaber"
    assert anchor_for_terms([], set()) is None


def test_selection_must_pass_the_settled_stage(make_candidate):
    pool = _strict_navy_pool(make_candidate)
    by_handle = {c.handle: c for c in pool}
    gated = gate(pool, ["suit"], {"color": ["navy"]}, requested_count=8)
    assert gated.stage == GatingStage.STRICT

    report = validate_selection(["suit-00", "suit-25", "ghost", "suit-01"], gated, by_handle, stock_only=True)
    assert report.kept == ["suit-00"]
    assert report.dropped == ["suit-25", "ghost", "suit-01"]
    assert not report.anchor_retry


def test_price_ceiling_is_enforced(make_candidate):
    pool = _strict_navy_pool(make_candidate)
    gated = gate(pool, ["suit"], {"color": ["navy"]})
    report = validate_selection(["suit-02", "suit-15"], gated, {c.handle: c for c in pool}, price_ceiling=110)
    assert report.kept == ["suit-02"]


def test_anchor_retry_when_everything_is_dropped(make_candidate):
    pool = _strict_navy_pool(make_candidate)
    by_handle = {c.handle: c for c in pool}
    gated = gate(pool, ["suit"], {"color": ["navy"]})

    report = validate_selection(["suit-30", "suit-31"], gated, by_handle, lexicon={"suit"})
    assert report.anchor_retry
    assert report.kept == ["suit-30", "suit-31"]
    assert not report.emptied

    internal = validate_selection(["suit-30"], gated, by_handle, lexicon={"suit"}, external=False)
    assert internal.kept == []
    assert not internal.anchor_retry


def test_anchor_retry_can_empty_the_selection(make_candidate):
    pool = _strict_navy_pool(make_candidate)
    belt = make_candidate("belt", title="Leather Belt", product_type="Belt")
    by_handle = {c.handle: c for c in pool + [belt]}
    gated = gate(pool, ["suit"], {"color": ["navy"]})

    report = validate_selection(["belt"], gated, by_handle, lexicon={"suit", "belt"})
    assert report.anchor_retry
    assert report.emptied
    assert report.kept == []


def test_trust_fallback_accepts_existing_handles(make_candidate):
    pool = _strict_navy_pool(make_candidate)
    gated = gate(pool, ["suit"], {"color": ["navy"]})
    report = validate_selection(["suit-30", "ghost"], gated, {c.handle: c for c in pool}, trust_fallback=True)
    assert report.kept == ["suit-30"]
    assert report.dropped == ["ghost"]


def test_bundle_validation_per_item(make_candidate):
    suits = [make_candidate(f"suit-{i}", title="Wool Suit", product_type="Suit", price=150.0) for i in range(3)]
    shirts = [make_candidate(f"shirt-{i}", title="Cotton Shirt", product_type="Shirt", price=40.0) for i in range(3)]
    by_handle = {c.handle: c for c in suits + shirts}
    pools = [gate(suits, ["suit"]), gate(shirts, ["shirt"])]

    grouped = assign_item_indices(["suit-0", "shirt-1", "shirt-2", "ghost"], {"suit-0": 0, "shirt-2": 7}, pools)
    assert grouped == {0: ["suit-0"], 1: ["shirt-1", "shirt-2"]}

    reports = validate_bundle_selection(
        ["suit-0", "shirt-0", "shirt-1"],
        {"suit-0": 0, "shirt-0": 1, "shirt-1": 0},
        pools,
        by_handle,
        item_ceilings=[None, 30.0],
        lexicon={"suit", "shirt"},
    )
    assert reports[0].kept == ["suit-0"]
    assert reports[0].dropped == ["shirt-1"]
    assert reports[1].kept == []
    assert reports[1].emptied
