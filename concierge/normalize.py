from __future__ import annotations

"""
Text normalisation helpers shared by the catalog, gating and ranking stages.

Documents (candidate search text) and queries (hard/soft terms) must see the
same view of text, so every stage goes through the helpers below.

Public helpers:

* normalize_text(text) -> str
    Lower-case, strip punctuation except hyphen / slash / apostrophe,
    collapse whitespace.

* tokenize(text) -> List[str]
    normalize_text + whitespace split, dropping 1-char tokens and stopwords.

* clean_description(html) -> str
    HTML -> plain text for long-form product descriptions.

* build_search_text(...) -> str
    Concatenation of the catalog fields that participate in matching.

* expand_token_morphology / expand_decompound_tokens / expand_query_tokens
    Plural/singular variants and compound splitting against a vocabulary.

* matches_term_with_boundary(haystack, term) -> bool
    Word-boundary phrase matcher with a false-positive denylist.
"""

import re
import unicodedata
from functools import lru_cache
from typing import Iterable, List, Mapping, Optional, Sequence, Set

from bs4 import BeautifulSoup

from . import config

STOPWORDS: Set[str] = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "from", "as", "is", "was", "are", "were", "been", "be", "have", "has", "had", "do", "does", "did",
    "will", "would", "could", "should", "may", "might", "must", "can", "this", "that", "these", "those",
    "i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us", "them",
    "what", "which", "who", "whom", "where", "when", "why", "how", "if", "then", "else",
    "about", "above", "after", "before", "below", "between", "during", "through", "under", "over",
    "up", "down", "out", "off", "away", "back", "here", "there",
    "some", "any", "all", "both", "each", "every", "few", "many", "most", "other", "such",
    "no", "not", "none", "nothing", "nobody", "nowhere", "never", "neither", "nor",
    "into", "onto", "within", "without",
}

_PUNCT_RE = re.compile(r"[^\w\s\-/']", flags=re.UNICODE)
_WS_RE = re.compile(r"\s+")
_SIBILANT_RE = re.compile(r"(x|z|ch|sh|s)$")


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------


def _normalise_unicode(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("‘", "'").replace("’", "'")
    text = text.replace("“", '"').replace("”", '"')
    text = text.replace("–", "-").replace("—", "-")
    return text


def strip_html(text: Optional[str]) -> str:
    if not text:
        return ""
    soup = BeautifulSoup(text, "html.parser")
    return soup.get_text(" ", strip=True)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    out = _normalise_unicode(str(text)).lower()
    out = out.replace("_", " ")
    out = _PUNCT_RE.sub(" ", out)
    return _WS_RE.sub(" ", out).strip()


def tokenize(text: Optional[str]) -> List[str]:
    """Tokenise for BM25 and containment checks.

    Keeps term frequencies (no de-duplication); hyphenated words such as
    't-shirt' stay a single token.
    """
    norm = normalize_text(text)
    if not norm:
        return []
    return [t for t in norm.split(" ") if len(t) >= 2 and t not in STOPWORDS]


def clean_description(html: Optional[str], max_chars: Optional[int] = None) -> str:
    """Plain-text description, whitespace collapsed, optionally truncated."""
    text = strip_html(html)
    text = _WS_RE.sub(" ", _normalise_unicode(text)).strip()
    if max_chars is not None and len(text) > max_chars:
        text = text[:max_chars]
    return text


def build_search_text(
    title: str = "",
    product_type: str = "",
    vendor: str = "",
    tags: Sequence[str] = (),
    option_values: Optional[Mapping[str, Sequence[str]]] = None,
    sizes: Sequence[str] = (),
    colors: Sequence[str] = (),
    materials: Sequence[str] = (),
    description: str = "",
) -> str:
    parts: List[str] = [title, product_type, vendor, " ".join(tags)]
    for key, values in (option_values or {}).items():
        parts.append(key)
        parts.append(" ".join(values))
    parts.extend([" ".join(sizes), " ".join(colors), " ".join(materials)])
    if description:
        parts.append(description[: config.DESCRIPTION_MAX_CHARS])
    return normalize_text(" ".join(p for p in parts if p))


# ---------------------------------------------------------------------------
# Morphology / decompounding
# ---------------------------------------------------------------------------


def expand_token_morphology(token: str) -> Set[str]:
    """Return the token plus naive plural and singular forms."""
    token = token.lower()
    variants = {token}
    if len(token) < 3:
        return variants

    if token.endswith("ies") and len(token) > 4:
        variants.add(token[:-3] + "y")
    elif token.endswith("es") and _SIBILANT_RE.search(token[:-2]):
        variants.add(token[:-2])
    elif token.endswith("s") and not token.endswith("ss"):
        variants.add(token[:-1])
    else:
        if token.endswith("y") and len(token) > 3 and token[-2] not in "aeiou":
            variants.add(token[:-1] + "ies")
        elif _SIBILANT_RE.search(token):
            variants.add(token + "es")
        else:
            variants.add(token + "s")
    return variants


def expand_decompound_tokens(
    tokens: Iterable[str],
    vocab: Optional[Set[str]],
    max_per_token: int = config.DECOMPOUND_MAX_EXPANSIONS,
) -> Set[str]:
    """
    Add vocabulary words that close a long compound token
    ('overcoat' -> 'coat', 'tracksuit' -> 'suit').
    """
    out: Set[str] = set()
    for token in tokens:
        out.add(token)
        if not vocab or len(token) < config.DECOMPOUND_MIN_TOKEN_LEN:
            continue
        found = 0
        # longer parts first so 'coat' wins over 'oat'
        for part in sorted(vocab, key=lambda w: (-len(w), w)):
            if found >= max_per_token:
                break
            if part == token or len(part) < config.DECOMPOUND_MIN_PART_LEN:
                continue
            if token.endswith(part) and len(token) - len(part) >= 2:
                out.add(part)
                found += 1
    return out


def expand_query_tokens(tokens: Iterable[str], vocab: Optional[Set[str]] = None) -> Set[str]:
    expanded: Set[str] = set()
    for token in tokens:
        expanded |= expand_token_morphology(token)
    return expand_decompound_tokens(sorted(expanded), vocab)


# ---------------------------------------------------------------------------
# Word-boundary matching
# ---------------------------------------------------------------------------

@lru_cache(maxsize=4096)
def _boundary_pattern(term: str) -> re.Pattern:
    body = r"\s+".join(re.escape(w) for w in term.split(" "))
    return re.compile(r"(?<![\w-])" + body + r"(?![\w-])")


def matches_term_with_boundary(haystack: str, term: str, normalized: bool = False) -> bool:
    """
    True if `term` occurs in `haystack` as a whole word / phrase.

    Hyphens count as word characters, so 'suit' does not match 'suit-bag'
    and single-word terms listed in HARD_TERM_DENYLIST are rejected when
    only the denylisted word is present.
    """
    text = haystack if normalized else normalize_text(haystack)
    norm_term = normalize_text(term)
    if not text or not norm_term:
        return False

    if not _boundary_pattern(norm_term).search(text):
        return False

    denied = config.HARD_TERM_DENYLIST.get(norm_term)
    if denied and " " not in norm_term:
        stripped = text
        for word in denied:
            stripped = _boundary_pattern(normalize_text(word)).sub(" ", stripped)
        return bool(_boundary_pattern(norm_term).search(stripped))
    return True
