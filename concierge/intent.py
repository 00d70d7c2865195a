from __future__ import annotations

"""
Intent parsing: free text (+ structured answers) -> :class:`Intent`.

Two parsers produce the same shape:

* :class:`SemanticIntentClient` posts the text to an external structured
  parser (``INTENT_PARSER_URL``) and validates the JSON it returns.
* :func:`parse_intent_pattern` is the local, rule-based parser used when
  the external one is not configured or fails.

Rules shared by both paths:

* colors / sizes / materials become facets, never hard terms;
* occasion, price and collection words are soft;
* "no X", "without X", "avoid X" ... become avoid terms;
* structured answers override facets and the price ceiling from text.
"""

import re
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Set, Tuple

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import config
from .catalog import parse_price
from .normalize import STOPWORDS, normalize_text
from .type_lexicon import parse_type_terms_vs_attributes


# ---------------------------
# Vocabularies
# ---------------------------

COLOR_WORDS: Tuple[str, ...] = (
    "black", "white", "grey", "gray", "charcoal", "navy", "blue", "green", "olive", "teal",
    "red", "burgundy", "maroon", "pink", "purple", "beige", "cream", "ivory", "brown",
    "tan", "orange", "yellow", "gold", "silver", "khaki",
)

# bare single letters are only read as sizes after the word "size"
SIZE_WORDS: Tuple[str, ...] = (
    "extra extra small", "extra small", "extra large", "extra extra large",
    "xxs", "xs", "small", "medium", "large", "xl", "xxl", "xxxl",
)
SINGLE_LETTER_SIZES: Tuple[str, ...] = ("s", "m", "l")

MATERIAL_WORDS: Tuple[str, ...] = (
    "stainless steel", "solid wood", "faux leather", "merino wool",
    "cotton", "linen", "silk", "wool", "leather", "suede", "denim", "polyester", "viscose",
    "nylon", "cashmere", "velvet", "satin", "tweed", "canvas", "corduroy",
    "wood", "oak", "walnut", "metal", "glass", "ceramic", "bamboo", "marble", "rattan",
    "wicker", "brass", "copper",
)

OCCASION_WORDS: Set[str] = {
    "wedding", "party", "event", "occasion", "ceremony", "meeting", "interview", "date",
    "dinner", "work", "office", "home", "outdoor", "indoor", "formal", "casual", "sport",
    "exercise", "gym", "beach", "vacation", "holiday", "travel", "business", "professional",
    "christmas", "birthday", "anniversary", "gift", "gifts", "summer", "winter",
}

COLLECTION_WORDS: Set[str] = {
    "outfit", "outfits", "ensemble", "set", "sets", "kit", "bundle", "package", "collection",
    "combo", "combination", "suite", "system", "piece", "pieces", "complete", "full",
    "entire", "whole", "assortment", "variety", "ideas", "selection", "options",
}

PRICE_WORDS: Set[str] = {
    "budget", "price", "cost", "spend", "spending", "total", "maximum", "max", "under",
    "below", "less", "cheap", "affordable", "expensive", "money",
}

PREFERENCE_WORDS: Set[str] = {
    "plain", "simple", "classic", "minimal", "basic", "standard", "regular", "modern",
    "elegant", "stylish", "nice", "good", "great", "comfortable", "smart", "new", "best",
    "quality", "premium", "luxury", "vintage", "trendy", "slim", "fitted", "loose",
}

FILLER_WORDS: Set[str] = {
    "want", "wants", "need", "needs", "looking", "look", "show", "give", "get", "find", "buy",
    "please", "like", "would", "something", "some", "my", "our", "your", "i'm", "im", "pair",
    "pairs", "couple", "few", "several", "also", "just", "really", "very", "maybe", "perhaps",
    "thanks", "hi", "hello", "help", "me", "one", "ones", "item", "items", "size", "color",
    "colour", "material", "either", "prefer", "preferably", "ideally",
}

CONTEXT_PREPOSITIONS: Set[str] = {"for", "at", "during", "while"}

BOOST_WORDS: Tuple[str, ...] = ("set", "kit", "bundle", "collection", "suite", "system")

CURRENCY_CODES: Dict[str, str] = {"$": "USD", "£": "GBP", "€": "EUR"}

_WORD_NUMBERS: Dict[str, int] = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
}


# ---------------------------
# Intent models
# ---------------------------

Facets = Dict[str, List[str]]


class BundleItem(BaseModel):
    """One requested item type inside a bundle."""

    model_config = ConfigDict(frozen=True)

    hard_terms: List[str]
    quantity: int = Field(1, ge=1)
    facets: Facets = Field(default_factory=dict)
    price_ceiling: Optional[float] = None
    include_terms: List[str] = Field(default_factory=list)
    exclude_terms: List[str] = Field(default_factory=list)
    budget_share: Optional[float] = None

    @property
    def label(self) -> str:
        return " ".join(self.hard_terms)


class BundleIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: List[BundleItem]
    total_budget: Optional[float] = None
    currency: Optional[str] = None


class Intent(BaseModel):
    """
    Parsed request. Never mutated after parsing; gating works on views of it.

    ``facets`` maps an attribute to its allowed values: one value, or several
    when the shopper gave an OR allow-list ("navy or black").
    """

    model_config = ConfigDict(frozen=True)

    raw_text: str = ""
    hard_terms: List[str] = Field(default_factory=list)
    soft_terms: List[str] = Field(default_factory=list)
    avoid_terms: List[str] = Field(default_factory=list)
    facets: Facets = Field(default_factory=dict)
    price_ceiling: Optional[float] = None
    currency: Optional[str] = None
    ceiling_from_answers: bool = False
    bundle: Optional[BundleIntent] = None
    preferences: List[str] = Field(default_factory=list)
    boost_terms: List[str] = Field(default_factory=list)
    parser: str = "pattern"

    @property
    def is_bundle(self) -> bool:
        return self.bundle is not None and len(self.bundle.items) >= 2

    def summary(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "hardTerms": self.hard_terms,
            "softTerms": self.soft_terms,
            "avoidTerms": self.avoid_terms,
            "facets": self.facets,
            "priceCeiling": self.price_ceiling,
            "preferences": self.preferences,
        }
        if self.bundle is not None:
            out["bundleItems"] = [
                {"hardTerms": it.hard_terms, "quantity": it.quantity, "facets": it.facets,
                 "priceCeiling": it.price_ceiling}
                for it in self.bundle.items
            ]
            out["totalBudget"] = self.bundle.total_budget
        return out


# ---------------------------
# Price ceilings
# ---------------------------

class PriceCeiling(NamedTuple):
    value: float
    currency: Optional[str]
    pattern: str


_NUM = r"(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)"
_AMOUNT = r"([£$€]?)\s*" + _NUM

# first match wins
PRICE_CEILING_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("budget is", re.compile(r"budget\s+is\s*" + _AMOUNT)),
    ("max budget is", re.compile(r"(?:maximum|max)\s+budget\s+is\s*" + _AMOUNT)),
    ("max budget", re.compile(r"(?:maximum|max)\s+budget\s+" + _AMOUNT)),
    ("up to", re.compile(r"up\s+to\s+" + _AMOUNT)),
    ("under", re.compile(r"(?:under|below|less\s+than)\s+" + _AMOUNT)),
    ("anything under", re.compile(r"anything\s+(?:under|below)\s+" + _AMOUNT)),
    ("total budget is", re.compile(r"(?:my\s+)?total\s+budget\s+is\s*" + _AMOUNT)),
    ("amount budget", re.compile(r"([£$€])\s*" + _NUM + r"\s+(?:budget|total|for\s+all|for\s+everything)")),
    ("total of", re.compile(r"(?:total|budget)\s+of\s+" + _AMOUNT)),
    ("spend", re.compile(r"spend(?:ing)?\s+" + _AMOUNT)),
    ("budget", re.compile(r"budget\s*:?\s*" + _AMOUNT)),
]

# ceilings that can belong to a single bundle item ("shirt under 50")
_ITEM_CEILING_PATTERNS = ("up to", "under", "anything under")

_PRICE_STRIP_RES = [p for _, p in PRICE_CEILING_PATTERNS] + [re.compile(r"\bmy\s+budget\b")]


def parse_price_ceiling(text: str, patterns: Optional[Sequence[str]] = None) -> Optional[PriceCeiling]:
    """
    Extract a single numeric ceiling from free text.

    >>> parse_price_ceiling("navy suit under £1,200").value
    1200.0
    """
    if not text:
        return None
    lowered = text.lower()
    for name, pattern in PRICE_CEILING_PATTERNS:
        if patterns is not None and name not in patterns:
            continue
        m = pattern.search(lowered)
        if not m:
            continue
        symbol, raw = m.group(1), m.group(2)
        try:
            value = float(raw.replace(",", ""))
        except ValueError:
            continue
        if value <= 0:
            continue
        currency = CURRENCY_CODES.get(symbol) if symbol else None
        logger.debug("Parsed price ceiling {} ({}) via '{}'", value, currency or "no currency", name)
        return PriceCeiling(value, currency, name)
    return None


def strip_price_phrases(text: str) -> str:
    out = text.lower()
    for pattern in _PRICE_STRIP_RES:
        out = pattern.sub(" ", out)
    return out


# ---------------------------
# Facets from text / answers
# ---------------------------

def _value_pattern(value: str) -> re.Pattern:
    body = r"\s+".join(re.escape(w) for w in value.split(" "))
    return re.compile(r"(?<![\w-])" + body + r"(?![\w-])")


def _find_values(text: str, vocabulary: Iterable[str]) -> List[Tuple[int, int, str]]:
    """Non-overlapping (start, end, value) hits, longest value wins."""
    hits: List[Tuple[int, int, str]] = []
    for value in sorted(vocabulary, key=len, reverse=True):
        for m in _value_pattern(value).finditer(text):
            if any(m.start() < e and s < m.end() for s, e, _ in hits):
                continue
            hits.append((m.start(), m.end(), value))
    return sorted(hits)


def _size_hits(text: str) -> List[Tuple[int, int, str]]:
    hits = _find_values(text, SIZE_WORDS)
    for m in re.finditer(r"(?<![\w-])size\s+([sml]|\d{1,2})(?![\w-])", text):
        hits.append((m.start(1), m.end(1), m.group(1)))
    for m in re.finditer(r"(?<![\w-])uk\s?(\d{1,2})(?![\w-])", text):
        hits.append((m.start(), m.end(), "uk " + m.group(1)))
    return sorted(set(hits))


def extract_allow_list(text: str, valid_values: Iterable[str]) -> Optional[List[str]]:
    """
    OR allow-list such as "navy or black", "either S or M", "s / m",
    "red, blue, or green". Returns None without an explicit OR.
    """
    valid = {v.lower() for v in valid_values}
    parts = re.findall(r"[\w'-]+|/|,", text.lower())
    i = 0
    while i < len(parts):
        if parts[i] not in valid:
            i += 1
            continue
        chain = [parts[i]]
        saw_or = False
        j = i + 1
        while j < len(parts):
            k = j
            connectors = []
            while k < len(parts) and parts[k] in {",", "or", "/"}:
                connectors.append(parts[k])
                k += 1
            if not connectors or k >= len(parts) or parts[k] not in valid:
                break
            saw_or = saw_or or "or" in connectors or "/" in connectors
            chain.append(parts[k])
            j = k + 1
        if len(chain) >= 2 and saw_or:
            out: List[str] = []
            for v in chain:
                if v not in out:
                    out.append(v)
            return out
        i = j
    return None


def parse_constraints_from_text(text: str) -> Tuple[Facets, List[Tuple[int, int]]]:
    """
    Facets named in free text, plus the character spans they occupy in the
    normalized text so callers can drop them before term extraction.
    """
    norm = normalize_text(text)
    facets: Facets = {}
    spans: List[Tuple[int, int]] = []
    finders = {
        "color": (lambda t: _find_values(t, COLOR_WORDS), COLOR_WORDS),
        "size": (_size_hits, SIZE_WORDS + SINGLE_LETTER_SIZES),
        "material": (lambda t: _find_values(t, MATERIAL_WORDS), MATERIAL_WORDS),
    }
    for attribute, (finder, vocabulary) in finders.items():
        hits = finder(norm)
        if not hits:
            continue
        spans.extend((s, e) for s, e, _ in hits)
        allow = extract_allow_list(text, vocabulary)
        if allow:
            facets[attribute] = allow
        else:
            facets[attribute] = [hits[0][2]]
    return facets, spans


_ANSWER_KEYS: Dict[str, Tuple[str, ...]] = {
    "size": ("size", "Size", "selectedSize", "variantSize"),
    "color": ("color", "colour", "Color", "Colour", "selectedColor", "selectedColour"),
    "material": ("material", "fabric", "Material", "Fabric"),
}
_BUDGET_KEYS = ("budget", "Budget", "maxPrice", "max_price", "priceCeiling", "price_ceiling", "price")


def _answer_values(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    text = str(value).strip()
    return [text] if text else []


def parse_constraints_from_answers(answers: Optional[Mapping[str, Any]]) -> Tuple[Facets, Optional[float], List[str]]:
    """
    Structured answers -> (facets, price ceiling, free-text values).

    Accepts ``{"size": "M"}`` as well as ``{"answers": {...}}``.
    """
    if not answers:
        return {}, None, []
    root: Mapping[str, Any] = answers
    nested = answers.get("answers") if isinstance(answers, Mapping) else None
    if isinstance(nested, Mapping):
        root = nested

    facets: Facets = {}
    used: Set[str] = set()
    for attribute, keys in _ANSWER_KEYS.items():
        for key in keys:
            values = _answer_values(root.get(key))
            if values:
                facets[attribute] = [v.lower() for v in values]
                used.add(key)
                break

    ceiling: Optional[float] = None
    for key in _BUDGET_KEYS:
        if key in root:
            raw = root.get(key)
            value = parse_price_ceiling(raw) if isinstance(raw, str) else None
            ceiling = value.value if value else parse_price(raw)
            used.add(key)
            if ceiling:
                break

    free_text: List[str] = []
    for key, value in root.items():
        if key in used:
            continue
        if isinstance(value, Mapping):
            continue
        free_text.extend(_answer_values(value))
    return facets, ceiling, free_text


# ---------------------------
# Negations, boosts
# ---------------------------

NEGATION_RE = re.compile(
    r"\b(?:no|not|without|avoid|exclude|excluding|except|don'?t\s+(?:want|like|need))\s+"
    r"([a-z][a-z\s-]*?)(?=\s*(?:[,.;!?]|\band\b|\bbut\b|\bunder\b|\bfor\b|\bplease\b|$))"
)

_PIECE_RE = re.compile(r"\b(\d+)\s*-?\s*(?:piece|pc|pcs)\b")


def extract_avoid_terms(text: str) -> Tuple[List[str], str]:
    """Avoid tokens and the text with the negated spans removed."""
    lowered = text.lower()
    avoid: List[str] = []
    for m in NEGATION_RE.finditer(lowered):
        for tok in normalize_text(m.group(1)).split(" "):
            if len(tok) >= 3 and tok not in STOPWORDS and tok not in FILLER_WORDS and tok not in avoid:
                avoid.append(tok)
    return avoid, NEGATION_RE.sub(" ", lowered)


def detect_boost_terms(text: str) -> List[str]:
    """Multi-piece / collection phrasing that earns a ranking boost."""
    lowered = text.lower()
    out: List[str] = []
    for m in _PIECE_RE.finditer(lowered):
        term = f"{m.group(1)} piece"
        if term not in out:
            out.append(term)
    for word in BOOST_WORDS:
        if re.search(r"\b" + word + r"\b", lowered) and word not in out:
            out.append(word)
    return out


# ---------------------------
# Term classification
# ---------------------------

def _drop_spans(text: str, spans: Sequence[Tuple[int, int]]) -> str:
    out = text
    for s, e in sorted(spans, reverse=True):
        out = out[:s] + " " + out[e:]
    return out


_SEARCH_VERBS = {"looking", "look", "searching", "search", "shopping", "shop"}


def _in_lexicon(word: str, lexicon: Set[str]) -> bool:
    return bool(lexicon) and bool(parse_type_terms_vs_attributes(word, lexicon)[0])


def _classify_words(text: str, lexicon: Set[str]) -> Tuple[List[str], List[str], List[str]]:
    """
    Meaningful words -> (hard_terms, soft_terms, preferences).

    Catalog type terms are hard; when the text names none, the remaining
    content words are hard instead.
    """
    soft: List[str] = []
    preferences: List[str] = []
    content: List[str] = []
    after_context = False

    words = normalize_text(text).split(" ")
    for idx, word in enumerate(words):
        if not word or word.isdigit() or len(word) < 2:
            continue
        if word in CONTEXT_PREPOSITIONS:
            # "looking for X" names the item, "X for work" names the occasion
            after_context = (words[idx - 1] if idx else "") not in _SEARCH_VERBS
            continue
        if after_context and word not in OCCASION_WORDS and _in_lexicon(word, lexicon):
            after_context = False
        if word in STOPWORDS or word in FILLER_WORDS:
            continue
        if word in PREFERENCE_WORDS:
            preferences.append(word)
            soft.append(word)
            continue
        if after_context or word in OCCASION_WORDS or word in COLLECTION_WORDS or word in PRICE_WORDS:
            soft.append(word)
            after_context = False
            continue
        content.append(word)

    hard: List[str] = []
    if content:
        type_terms, attribute_terms = parse_type_terms_vs_attributes(" ".join(content), lexicon)
        if type_terms:
            hard = type_terms
            soft.extend(attribute_terms)
        else:
            hard = attribute_terms
    return _dedupe(hard), _dedupe(soft), _dedupe(preferences)


def _dedupe(values: Iterable[str]) -> List[str]:
    out: List[str] = []
    for v in values:
        if v and v not in out:
            out.append(v)
    return out


# ---------------------------
# Bundle parsing
# ---------------------------

_SEPARATOR_RE = re.compile(r"\s*(?:,\s*and\s+|,|\s\+\s|\s&\s|\band\b|\bplus\b)\s*")
_WITH_RE = re.compile(r"\s+with\s+")
_PREFERENCE_LEAD_RE = re.compile(
    r"^(?:i\s+)?(?:want|need|prefer|like|would\s+like|looking\s+for|hoping\s+for|seeking)\s+"
)
_QUANTITY_RE = re.compile(r"^(\d+|a|an|one|two|three|four|five|six)\s+(?!piece|pc|pcs)")


def _is_preference_segment(segment: str, lexicon: Set[str]) -> bool:
    """'i want plain' states a preference; 'i want a suit' names an item."""
    m = _PREFERENCE_LEAD_RE.match(segment.strip())
    if not m:
        return False
    rest = segment.strip()[m.end():]
    if re.match(r"(?:a|an|some|the|\d+)\b", rest):
        return False
    if lexicon:
        return not parse_type_terms_vs_attributes(rest, lexicon)[0]
    return all(w in PREFERENCE_WORDS for w in normalize_text(rest).split(" ") if w)


def _split_segments(text: str, lexicon: Set[str]) -> Tuple[List[str], bool]:
    segments = [s.strip() for s in _SEPARATOR_RE.split(text) if s and s.strip()]
    had_separator = len(segments) >= 2
    out: List[str] = []
    for seg in segments:
        parts = _WITH_RE.split(seg)
        # "with" only separates when what follows is a catalog type ("suit with shirt")
        if len(parts) == 2 and lexicon and parse_type_terms_vs_attributes(parts[1], lexicon)[0]:
            out.extend(p for p in parts if p.strip())
            had_separator = True
        else:
            out.append(seg)
    return out, had_separator


def _segment_item(segment: str, lexicon: Set[str]) -> Optional[BundleItem]:
    ceiling = parse_price_ceiling(segment, patterns=_ITEM_CEILING_PATTERNS)
    body = strip_price_phrases(segment).strip()

    quantity = 1
    m = _QUANTITY_RE.match(body)
    if m:
        token = m.group(1)
        quantity = int(token) if token.isdigit() else _WORD_NUMBERS.get(token, 1)
        body = body[m.end():]

    facets, spans = parse_constraints_from_text(body)
    remainder = _drop_spans(normalize_text(body), spans)
    hard, soft, _ = _classify_words(remainder, lexicon)
    if not hard:
        return None
    type_terms = parse_type_terms_vs_attributes(" ".join(hard), lexicon)[0]
    # without a catalog type the head noun is the last content word
    term = type_terms[0] if type_terms else hard[-1]
    return BundleItem(
        hard_terms=[term],
        quantity=max(1, quantity),
        facets=facets,
        price_ceiling=ceiling.value if ceiling else None,
        include_terms=_dedupe(soft + [h for h in hard if h != term]),
    )


class BundleParse(NamedTuple):
    bundle: Optional[BundleIntent]
    leftover_text: str
    item_ceiling_spans: List[str]


def parse_bundle_intent(text: str, lexicon: Set[str]) -> BundleParse:
    """
    Detect a multi-item request.

    A bundle needs at least two distinct concrete items AND either a
    separator ("and", ",", "+", "&", "plus", "with") or a repeated term.
    Segments that carry a negation or a preference phrase are not items.
    """
    lowered = text.lower()
    segments, had_separator = _split_segments(lowered, lexicon)

    items: List[BundleItem] = []
    leftovers: List[str] = []
    ceiling_phrases: List[str] = []
    mentions: Dict[str, int] = {}
    for seg in segments:
        if NEGATION_RE.search(seg) or _is_preference_segment(seg, lexicon):
            leftovers.append(seg)
            continue
        item = _segment_item(seg, lexicon)
        if item is None:
            leftovers.append(seg)
            continue
        mentions[item.label] = mentions.get(item.label, 0) + 1
        if item.price_ceiling is not None:
            ceiling_phrases.append(seg)
        if all(existing.label != item.label for existing in items):
            items.append(item)

    repeated = any(n >= 2 for n in mentions.values())
    if len(items) < 2 or not (had_separator or repeated):
        return BundleParse(None, text, [])

    global_text = lowered
    for seg in ceiling_phrases:
        global_text = global_text.replace(seg, " ")
    total = parse_price_ceiling(global_text)
    bundle = BundleIntent(
        items=items,
        total_budget=total.value if total else None,
        currency=total.currency if total else None,
    )
    logger.info(
        "Bundle detected: {} items ({}) total budget={}",
        len(items), ", ".join(i.label for i in items), bundle.total_budget,
    )
    return BundleParse(bundle, " , ".join(leftovers), ceiling_phrases)


# ---------------------------
# Pattern parser
# ---------------------------

def _apply_answers(intent: Intent, answers: Optional[Mapping[str, Any]]) -> Intent:
    """Answers override parsed facets and every free-text ceiling."""
    answer_facets, answer_ceiling, answer_text = parse_constraints_from_answers(answers)
    if not answer_facets and answer_ceiling is None and not answer_text:
        return intent

    update: Dict[str, Any] = {"facets": {**intent.facets, **answer_facets}}
    if answer_text:
        extra: List[str] = []
        for value in answer_text:
            extra.extend(t for t in normalize_text(value).split(" ") if len(t) >= 3 and t not in STOPWORDS)
        update["soft_terms"] = _dedupe(list(intent.soft_terms) + extra)
    if answer_ceiling is not None:
        update["price_ceiling"] = answer_ceiling
        update["ceiling_from_answers"] = True
        if intent.bundle is not None:
            items = [it.model_copy(update={"price_ceiling": None}) for it in intent.bundle.items]
            update["bundle"] = intent.bundle.model_copy(update={"items": items, "total_budget": answer_ceiling})
    return intent.model_copy(update=update)


def parse_intent_pattern(
    text: str,
    answers: Optional[Mapping[str, Any]] = None,
    lexicon: Optional[Set[str]] = None,
) -> Intent:
    lexicon = lexicon or set()
    avoid, without_negations = extract_avoid_terms(text)
    boosts = detect_boost_terms(text)

    bundle_parse = parse_bundle_intent(without_negations, lexicon)
    if bundle_parse.bundle is not None:
        bundle = bundle_parse.bundle
        facets, _ = parse_constraints_from_text(bundle_parse.leftover_text)
        _, soft, prefs = _classify_words(strip_price_phrases(bundle_parse.leftover_text), lexicon)
        hard = _dedupe(t for it in bundle.items for t in it.hard_terms)
        intent = Intent(
            raw_text=text,
            hard_terms=hard,
            soft_terms=_dedupe(soft + [t for it in bundle.items for t in it.include_terms]),
            avoid_terms=avoid,
            facets=facets,
            price_ceiling=bundle.total_budget,
            currency=bundle.currency,
            bundle=bundle,
            preferences=prefs,
            boost_terms=boosts,
        )
        return _apply_answers(intent, answers)

    ceiling = parse_price_ceiling(without_negations)
    stripped = strip_price_phrases(without_negations)
    facets, spans = parse_constraints_from_text(stripped)
    remainder = _drop_spans(normalize_text(stripped), spans)
    hard, soft, prefs = _classify_words(remainder, lexicon)

    intent = Intent(
        raw_text=text,
        hard_terms=hard,
        soft_terms=[s for s in soft if s not in avoid],
        avoid_terms=avoid,
        facets=facets,
        price_ceiling=ceiling.value if ceiling else None,
        currency=ceiling.currency if ceiling else None,
        preferences=prefs,
        boost_terms=boosts,
    )
    return _apply_answers(intent, answers)


# ---------------------------
# Semantic (external) parser
# ---------------------------

class _FacetPayload(BaseModel):
    size: Optional[str] = None
    color: Optional[str] = None
    material: Optional[str] = None

    def as_facets(self) -> Facets:
        return {k: [v.strip().lower()] for k, v in self.model_dump().items() if v and v.strip()}


class _ItemConstraintsPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    option_constraints: _FacetPayload = Field(default_factory=_FacetPayload, alias="optionConstraints")
    price_ceiling: Optional[float] = Field(None, alias="priceCeiling")
    include_terms: List[str] = Field(default_factory=list, alias="includeTerms")
    exclude_terms: List[str] = Field(default_factory=list, alias="excludeTerms")


class _BundleItemPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hard_terms: List[str] = Field(..., alias="hardTerms")
    quantity: int = 1
    constraints: Optional[_ItemConstraintsPayload] = None


class SemanticIntentPayload(BaseModel):
    """JSON returned by the external parser; also the schema we send it."""

    model_config = ConfigDict(populate_by_name=True)

    is_bundle: bool = Field(..., alias="isBundle")
    hard_terms: List[str] = Field(..., alias="hardTerms")
    soft_terms: List[str] = Field(..., alias="softTerms")
    avoid_terms: List[str] = Field(..., alias="avoidTerms")
    hard_facets: _FacetPayload = Field(..., alias="hardFacets")
    bundle_items: List[_BundleItemPayload] = Field(default_factory=list, alias="bundleItems")
    total_budget: Optional[float] = Field(None, alias="totalBudget")
    total_budget_currency: Optional[str] = Field(None, alias="totalBudgetCurrency")
    preferences: List[str] = Field(default_factory=list)


def intent_schema() -> Dict[str, Any]:
    return SemanticIntentPayload.model_json_schema(by_alias=True)


class SemanticIntentClient:
    """HTTP client for the structured intent parser. Failures return None."""

    def __init__(self, url: Optional[str] = config.INTENT_PARSER_URL, timeout: float = config.INTENT_PARSER_TIMEOUT_S):
        self.url = url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def parse(self, text: str, conversation: Optional[Sequence[str]] = None) -> Optional[SemanticIntentPayload]:
        if not self.url:
            return None
        body = {
            "query": text,
            "conversation": list(conversation or []),
            "schema": intent_schema(),
        }
        headers = {"User-Agent": config.HTTP_USER_AGENT}
        try:
            with httpx.Client(
                timeout=httpx.Timeout(self.timeout, connect=config.INTENT_PARSER_CONNECT_TIMEOUT_S),
            ) as client:
                r = client.post(self.url, json=body, headers=headers)
                if r.status_code >= 400:
                    logger.warning("Intent parser: HTTP {} from {}", r.status_code, self.url)
                    return None
                payload = SemanticIntentPayload.model_validate(r.json())
        except httpx.TimeoutException:
            logger.warning("Intent parser timeout after {}s", self.timeout)
            return None
        except ValidationError as e:
            logger.warning("Intent parser returned an invalid structure: {}", e.error_count())
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Intent parser exception: {}", e)
            return None
        logger.info(
            "Semantic intent: bundle={} hard={} avoid={}",
            payload.is_bundle, len(payload.hard_terms), len(payload.avoid_terms),
        )
        return payload


def _clean_terms(terms: Iterable[str]) -> List[str]:
    return _dedupe(normalize_text(t) for t in terms)


def intent_from_payload(payload: SemanticIntentPayload, text: str) -> Intent:
    """Map the external parser's JSON onto :class:`Intent`."""
    facets = payload.hard_facets.as_facets()
    facet_values = {v for values in facets.values() for v in values}
    hard = [t for t in _clean_terms(payload.hard_terms) if t not in facet_values]
    avoid = _clean_terms(payload.avoid_terms)
    soft = _clean_terms(list(payload.soft_terms) + list(payload.preferences))
    ceiling = parse_price_ceiling(text)

    bundle: Optional[BundleIntent] = None
    if payload.is_bundle:
        items: List[BundleItem] = []
        for raw in payload.bundle_items:
            terms = _clean_terms(raw.hard_terms)
            if not terms:
                continue
            c = raw.constraints or _ItemConstraintsPayload()
            items.append(BundleItem(
                hard_terms=[" ".join(terms)],
                quantity=max(1, raw.quantity),
                facets=c.option_constraints.as_facets(),
                price_ceiling=c.price_ceiling if c.price_ceiling and c.price_ceiling > 0 else None,
                include_terms=_clean_terms(c.include_terms),
                exclude_terms=_clean_terms(c.exclude_terms),
            ))
        if len(items) >= 2:
            total = payload.total_budget if payload.total_budget and payload.total_budget > 0 else None
            bundle = BundleIntent(
                items=items,
                total_budget=total if total is not None else (ceiling.value if ceiling else None),
                currency=payload.total_budget_currency or (ceiling.currency if ceiling else None),
            )
            hard = _dedupe(t for it in items for t in it.hard_terms)
        else:
            logger.info("Semantic bundle had {} valid items; treating as single item", len(items))
            if not hard:
                hard = _dedupe(t for it in items for t in it.hard_terms)

    price = payload.total_budget if payload.total_budget and payload.total_budget > 0 else None
    if price is None and ceiling is not None:
        price = ceiling.value
    return Intent(
        raw_text=text,
        hard_terms=hard,
        soft_terms=[s for s in soft if s not in hard],
        avoid_terms=avoid,
        facets=facets,
        price_ceiling=bundle.total_budget if bundle is not None else price,
        currency=payload.total_budget_currency or (ceiling.currency if ceiling else None),
        bundle=bundle,
        preferences=_clean_terms(payload.preferences),
        boost_terms=detect_boost_terms(text),
        parser="semantic",
    )


def parse_intent(
    text: str,
    answers: Optional[Mapping[str, Any]] = None,
    lexicon: Optional[Set[str]] = None,
    client: Optional[SemanticIntentClient] = None,
    conversation: Optional[Sequence[str]] = None,
) -> Intent:
    """
    External parser first when configured, pattern parser otherwise or on
    any failure. Answers are applied last on both paths.
    """
    if client is not None and client.enabled:
        payload = client.parse(text, conversation)
        if payload is not None:
            return _apply_answers(intent_from_payload(payload, text), answers)
        logger.info("Falling back to pattern intent parser")
    return parse_intent_pattern(text, answers=answers, lexicon=lexicon)
