from concierge import normalize
from concierge.normalize import (
    build_search_text,
    clean_description,
    expand_decompound_tokens,
    expand_query_tokens,
    expand_token_morphology,
    matches_term_with_boundary,
    normalize_text,
    strip_html,
    tokenize,
)


def test_strip_html_basic():
    html = "<p>Hello <b>world</b>!</p>"
    assert strip_html(html) == "Hello world !"


def test_clean_description_truncates():
    desc = clean_description("<div>" + "x" * 50 + "</div>", max_chars=10)
    assert desc == "x" * 10


def test_normalize_text_keeps_hyphens_and_drops_punctuation():
    assert normalize_text("Slim-Fit T-Shirt, Navy!") == "slim-fit t-shirt navy"
    assert normalize_text(None) == ""


def test_tokenize_drops_stopwords_and_short_tokens():
    tokens = tokenize("A navy suit for the wedding")
    assert tokens == ["navy", "suit", "wedding"]


def test_morphology_variants():
    assert expand_token_morphology("dresses") == {"dresses", "dress"}
    assert "accessory" in expand_token_morphology("accessories")
    assert "boxes" in expand_token_morphology("box")
    assert "shirts" in expand_token_morphology("shirt")


def test_decompound_is_suffix_only():
    vocab = {"coat", "light", "suit", "oat"}
    assert "coat" in expand_decompound_tokens(["overcoat"], vocab)
    assert "suit" in expand_decompound_tokens(["tracksuit"], vocab)
    assert "light" not in expand_decompound_tokens(["lightsaber"], vocab)


def test_expand_query_tokens_combines_both():
    out = expand_query_tokens(["overcoats"], {"coat"})
    assert {"overcoats", "overcoat", "coat"} <= out


def test_boundary_match_rejects_partial_words():
    assert matches_term_with_boundary("navy wool suit", "suit")
    assert not matches_term_with_boundary("suitable shoes", "suit")
    assert not matches_term_with_boundary("suit-bag travel", "suit")


def test_boundary_match_denylist():
    assert not matches_term_with_boundary("leather suit bag", "suit")
    assert matches_term_with_boundary("suit bag and navy suit", "suit")
    assert matches_term_with_boundary("leather suit bag", "suit bag")


def test_boundary_patterns_are_cached_with_a_bound():
    normalize._boundary_pattern.cache_clear()
    for i in range(3):
        matches_term_with_boundary("navy wool suit", f"term{i}")
    matches_term_with_boundary("navy wool suit", "term0")
    info = normalize._boundary_pattern.cache_info()
    assert info.maxsize is not None
    assert info.currsize == 3
    assert info.hits >= 1


def test_build_search_text_includes_facets():
    text = build_search_text(title="Oxford Shirt", colors=["Sky Blue"], sizes=["M"])
    assert "oxford shirt" in text
    assert "sky blue" in text
