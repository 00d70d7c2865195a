from __future__ import annotations

import math
import re
from functools import cached_property
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

import pandas as pd
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from . import config
from .errors import CatalogUnavailableError
from .facets import extract_constraints_from_tags, normalize_option_name
from .normalize import build_search_text, clean_description, normalize_text, tokenize


# ---------------------------
# Field detection / standardization
# ---------------------------

# Source records come from several feeds; we accept the common spellings.
FIELD_CANDIDATES: Dict[str, List[str]] = {
    "handle": ["handle", "Handle", "id", "product_id", "slug"],
    "title": ["title", "Title", "name", "Name"],
    "product_type": ["product_type", "productType", "type", "Type", "category"],
    "vendor": ["vendor", "Vendor", "brand", "Brand"],
    "tags": ["tags", "Tags", "keywords"],
    "price": ["price", "priceAmount", "price_amount", "Price"],
    "price_min": ["price_min", "priceMin", "minPrice"],
    "price_max": ["price_max", "priceMax", "maxPrice"],
    "available": ["available", "availableForSale", "in_stock", "inStock"],
    "option_values": ["option_values", "optionValues", "options"],
    "sizes": ["sizes", "size"],
    "colors": ["colors", "colours", "color", "colour"],
    "materials": ["materials", "material", "fabric"],
    "collections": ["collections", "collection"],
    "description": ["description", "descPlain", "desc1000", "body_html", "bodyHtml"],
}


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _pick(raw: Mapping[str, Any], field: str) -> Any:
    for key in FIELD_CANDIDATES[field]:
        if key in raw and not _is_missing(raw[key]):
            return raw[key]
    return None


def parse_price(value: Any) -> Optional[float]:
    """
    Parse '£1,299.00', '49.5', 49 -> float. Non-positive or unparsable -> None.
    """
    if _is_missing(value):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    text = str(value).replace(",", "")
    m = re.search(r"-?\d+(?:\.\d+)?", text)
    if not m:
        return None
    price = float(m.group(0))
    return price if price > 0 else None


def _canonicalize_available(value: Any) -> bool:
    if _is_missing(value):
        # feeds that omit stock information are treated as available
        return True
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "y", "1", "in stock", "available"}
    return bool(value)


def _as_str_list(value: Any) -> List[str]:
    if _is_missing(value):
        return []
    if isinstance(value, str):
        parts = re.split(r"[;,|]+", value)
    elif isinstance(value, (list, tuple, set)):
        parts = [str(v) for v in value if not _is_missing(v)]
    else:
        parts = [str(value)]
    out: List[str] = []
    for p in parts:
        p = p.strip()
        if p and p not in out:
            out.append(p)
    return out


def _option_map(value: Any) -> Dict[str, List[str]]:
    """
    Accepts {'Colour': ['Navy']} or [{'name': 'Size', 'values': [...]}]
    and returns a map keyed by normalized option name.
    """
    out: Dict[str, List[str]] = {}
    if _is_missing(value):
        return out
    items: Iterable[Tuple[Any, Any]]
    if isinstance(value, Mapping):
        items = value.items()
    elif isinstance(value, (list, tuple)):
        items = [
            (o.get("name"), o.get("values", o.get("value")))
            for o in value
            if isinstance(o, Mapping)
        ]
    else:
        return out
    for name, values in items:
        key = normalize_option_name(str(name or ""))
        if not key:
            continue
        bucket = out.setdefault(key, [])
        for v in _as_str_list(values):
            if v not in bucket:
                bucket.append(v)
    return out


# ---------------------------
# Candidate model
# ---------------------------

class Candidate(BaseModel):
    """
    One catalog item snapshot used for the duration of a request.

    Built only through :func:`normalize_candidate`; the description is
    attached later with :meth:`with_description`, which returns a copy.
    """

    model_config = ConfigDict(frozen=True)

    handle: str
    title: str = ""
    product_type: str = ""
    vendor: str = ""
    tags: Tuple[str, ...] = ()
    collections: Tuple[str, ...] = ()
    price: Optional[float] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    available: bool = True
    sizes: Tuple[str, ...] = ()
    colors: Tuple[str, ...] = ()
    materials: Tuple[str, ...] = ()
    option_values: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    description: str = ""
    search_text: str = ""

    @property
    def effective_price(self) -> float:
        """Price used for budget arithmetic; unknown prices never fit a budget."""
        return self.price if self.price is not None else math.inf

    @cached_property
    def haystack(self) -> str:
        return normalize_text(
            " ".join([self.title, self.product_type, " ".join(self.tags), self.vendor, self.search_text])
        )

    @cached_property
    def tokens(self) -> List[str]:
        return tokenize(self.search_text)

    def facet_values(self, attribute: str) -> Tuple[str, ...]:
        if attribute == "size":
            return self.sizes
        if attribute == "color":
            return self.colors
        if attribute == "material":
            return self.materials
        return self.option_values.get(attribute, ())

    def with_description(self, text: str) -> "Candidate":
        desc = clean_description(text, max_chars=config.DESCRIPTION_MAX_CHARS)
        data = self.model_dump()
        data["description"] = desc
        data["search_text"] = _search_text_for(
            self.title, self.product_type, self.vendor, self.tags,
            self.option_values, self.sizes, self.colors, self.materials, desc,
        )
        # fresh instance so cached haystack / tokens are rebuilt
        return Candidate(**data)


def _search_text_for(title, product_type, vendor, tags, option_values, sizes, colors, materials, description) -> str:
    return build_search_text(
        title=title,
        product_type=product_type,
        vendor=vendor,
        tags=list(tags),
        option_values={k: list(v) for k, v in option_values.items()},
        sizes=list(sizes),
        colors=list(colors),
        materials=list(materials),
        description=description,
    )


def normalize_candidate(raw: Mapping[str, Any]) -> Candidate:
    """
    The single ingestion point for loosely-typed catalog records.

    Facet lists are the union of explicit fields, the option map and
    structured tags ('cf-size-m', 'color:navy').
    """
    handle = _pick(raw, "handle")
    if handle is None:
        raise ValueError("catalog record has no handle")

    tags = _as_str_list(_pick(raw, "tags"))
    options = _option_map(_pick(raw, "option_values"))
    for key, values in extract_constraints_from_tags(tags).items():
        bucket = options.setdefault(key, [])
        for v in values:
            if v.lower() not in {b.lower() for b in bucket}:
                bucket.append(v)

    def _facet(field: str, key: str) -> Tuple[str, ...]:
        merged = _as_str_list(_pick(raw, field))
        for v in options.get(key, []):
            if v not in merged:
                merged.append(v)
        return tuple(merged)

    sizes = _facet("sizes", "size")
    colors = _facet("colors", "color")
    materials = _facet("materials", "material")

    price = parse_price(_pick(raw, "price"))
    price_min = parse_price(_pick(raw, "price_min"))
    price_max = parse_price(_pick(raw, "price_max"))
    if price is None:
        price = price_min

    title = str(_pick(raw, "title") or "").strip()
    product_type = str(_pick(raw, "product_type") or "").strip()
    vendor = str(_pick(raw, "vendor") or "").strip()
    description = clean_description(_pick(raw, "description"), max_chars=config.DESCRIPTION_MAX_CHARS)
    option_values = {k: tuple(v) for k, v in options.items()}

    return Candidate(
        handle=str(handle).strip(),
        title=title,
        product_type=product_type,
        vendor=vendor,
        tags=tuple(tags),
        collections=tuple(_as_str_list(_pick(raw, "collections"))),
        price=price,
        price_min=price_min,
        price_max=price_max,
        available=_canonicalize_available(_pick(raw, "available")),
        sizes=sizes,
        colors=colors,
        materials=materials,
        option_values=option_values,
        description=description,
        search_text=_search_text_for(
            title, product_type, vendor, tags, option_values, sizes, colors, materials, description
        ),
    )


def normalize_records(records: Iterable[Mapping[str, Any]]) -> List[Candidate]:
    out: List[Candidate] = []
    seen = set()
    skipped = 0
    for raw in records:
        try:
            cand = normalize_candidate(raw)
        except ValueError:
            skipped += 1
            continue
        if cand.handle in seen:
            continue
        seen.add(cand.handle)
        out.append(cand)
    if skipped:
        logger.warning("Skipped {} catalog records without a handle", skipped)
    return out


# ---------------------------
# Catalog source interface
# ---------------------------

class CatalogSource(Protocol):
    def fetch_by_filter(self, shop: str, limit: int, collection: Optional[str] = None) -> List[Candidate]:
        ...

    def fetch_by_query(self, shop: str, query: str, target_count: int) -> List[Candidate]:
        ...

    def fetch_descriptions(self, handles: Sequence[str]) -> Dict[str, str]:
        ...


def load_catalog_snapshot(path: Path = config.CATALOG_SNAPSHOT_PATH) -> pd.DataFrame:
    """
    Load a JSON-lines catalog snapshot into a DataFrame.
    """
    if not path.exists():
        raise CatalogUnavailableError(f"Catalog snapshot not found at {path}")
    try:
        df = pd.read_json(path, lines=True)
    except ValueError as e:
        raise CatalogUnavailableError(f"Catalog snapshot at {path} is unreadable: {e}") from e
    logger.info("Loaded catalog snapshot with {} rows from {}", len(df), path)
    return df


class SnapshotCatalogSource:
    """
    CatalogSource over an in-memory DataFrame (one row per product).

    An optional 'shop' column scopes rows per shop; rows without it are
    visible to every shop.
    """

    def __init__(self, df: pd.DataFrame):
        self._df = df.reset_index(drop=True)
        self._search = pd.Series(
            [_search_text_or_empty(row.to_dict()) for _, row in self._df.iterrows()],
            index=self._df.index,
            dtype="object",
        )

    @classmethod
    def from_path(cls, path: Path = config.CATALOG_SNAPSHOT_PATH) -> "SnapshotCatalogSource":
        return cls(load_catalog_snapshot(path))

    @classmethod
    def from_records(cls, records: Sequence[Mapping[str, Any]]) -> "SnapshotCatalogSource":
        return cls(pd.DataFrame(list(records)))

    def _shop_rows(self, shop: str) -> pd.DataFrame:
        if "shop" not in self._df.columns:
            return self._df
        mask = self._df["shop"].isna() | (self._df["shop"] == shop)
        return self._df[mask]

    def fetch_by_filter(self, shop: str, limit: int, collection: Optional[str] = None) -> List[Candidate]:
        rows = self._shop_rows(shop)
        if collection and "collections" in rows.columns:
            wanted = collection.strip().lower()
            rows = rows[rows["collections"].apply(lambda v: wanted in [c.lower() for c in _as_str_list(v)])]
        return normalize_records(_listing_record(r.to_dict()) for _, r in rows.head(limit).iterrows())

    def fetch_by_query(self, shop: str, query: str, target_count: int) -> List[Candidate]:
        tokens = tokenize(query)
        if not tokens:
            return []
        rows = self._shop_rows(shop)
        search = self._search.loc[rows.index]
        hits = search.apply(lambda text: sum(1 for t in tokens if t in text.split(" ")))
        ranked = rows.loc[hits[hits > 0].sort_values(ascending=False, kind="stable").index]
        return normalize_records(_listing_record(r.to_dict()) for _, r in ranked.head(target_count).iterrows())

    def fetch_descriptions(self, handles: Sequence[str]) -> Dict[str, str]:
        wanted = set(handles)
        out: Dict[str, str] = {}
        for _, row in self._df.iterrows():
            raw = row.to_dict()
            handle = _pick(raw, "handle")
            if handle is None or str(handle) not in wanted:
                continue
            desc = _pick(raw, "description")
            if desc is not None:
                out[str(handle)] = str(desc)
        return out


def _search_text_or_empty(raw: Mapping[str, Any]) -> str:
    try:
        return normalize_candidate(raw).search_text
    except ValueError:
        return ""


def _listing_record(raw: Mapping[str, Any]) -> Dict[str, Any]:
    # descriptions are attached later, for the ranking window only
    return {k: v for k, v in raw.items() if k not in FIELD_CANDIDATES["description"]}
