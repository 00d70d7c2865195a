import pytest

from concierge.catalog import normalize_candidate


def build_candidate(handle, title=None, product_type="", price=None, available=True, **extra):
    raw = {
        "handle": handle,
        "title": title if title is not None else handle.replace("-", " ").title(),
        "product_type": product_type,
        "price": price,
        "available": available,
    }
    raw.update(extra)
    return normalize_candidate(raw)


@pytest.fixture
def make_candidate():
    return build_candidate


@pytest.fixture
def suit_pool():
    # 40 suits, 3 navy; every suit lists a color
    pool = []
    navy = {5, 17, 33}
    for i in range(1, 41):
        color = "Navy" if i in navy else ("Black" if i % 2 else "Charcoal")
        pool.append(
            build_candidate(
                f"suit-{i:02d}",
                title=f"{color} Wool Suit {i}",
                product_type="Suit",
                price=100.0 + i,
                colors=[color],
                tags=["menswear"],
            )
        )
    return pool
