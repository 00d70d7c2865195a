from concierge.type_lexicon import (
    build_type_lexicon,
    generate_type_anchor_variants,
    normalize_type_term,
    parse_type_terms_vs_attributes,
    product_matches_type_anchor,
    select_primary_type_anchor,
)


def test_lexicon_from_types_tags_and_collections(make_candidate):
    pool = [
        make_candidate("a", product_type="Suit Jacket", tags=["Formal"]),
        make_candidate("b", product_type="T-Shirt", collections=["Summer Sale"]),
        make_candidate("c", product_type=""),
    ]
    assert build_type_lexicon(pool) == {"suit jacket", "formal", "tshirt", "summer sale"}
    assert normalize_type_term("  Maxi   Dress! ") == "maxi dress"


def test_longest_span_is_claimed_first():
    lexicon = {"suit", "suit jacket", "jacket"}
    types, attrs = parse_type_terms_vs_attributes("navy wool suit jacket", lexicon)
    assert types == ["suit jacket"]
    assert attrs == ["navy", "wool"]


def test_single_words_match_through_plurals():
    types, attrs = parse_type_terms_vs_attributes("black suits", {"suit"})
    assert types == ["suits"]
    assert attrs == ["black"]


def test_primary_anchor_is_most_specific():
    assert select_primary_type_anchor(["suit", "suit jacket"]) == "suit jacket"
    assert select_primary_type_anchor(["coat", "belt"]) == "belt"
    assert select_primary_type_anchor([]) is None


def test_anchor_variants():
    variants = generate_type_anchor_variants("dress", {"dresses", "maxi dress", "shoe"})
    assert variants == ["dress", "dresses", "maxi dress"]


def test_product_matches_anchor(make_candidate):
    maxi = make_candidate("maxi", title="Floral Maxi", product_type="Maxi Dress")
    belt = make_candidate("belt", title="Leather Belt", product_type="Belt")
    assert product_matches_type_anchor(maxi, ["maxi dress"])
    assert product_matches_type_anchor(maxi, ["dress"])
    assert not product_matches_type_anchor(belt, ["dress", "dresses"])
