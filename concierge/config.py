from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ---------------------------
# Paths
# ---------------------------

PROJECT_ROOT = Path(__file__).resolve().parents[1]

DATA_DIR = PROJECT_ROOT / "data"
CATALOG_SNAPSHOT_PATH = Path(
    os.getenv("CATALOG_SNAPSHOT_PATH", str(DATA_DIR / "catalog_snapshot.jsonl"))
)


# ---------------------------
# Catalog fetch policy
# ---------------------------

PRODUCT_POOL_LIMIT_FIRST = 200   # first fetch_by_filter call
PRODUCT_POOL_LIMIT_MAX = 500     # cap after fetch_by_query top-ups
MIN_CANDIDATES_FOR_DELIVERY = 16  # pool size below which pre-filters are relaxed

DESCRIPTION_MAX_CHARS = 1000

# ---------------------------
# Result size policy
# ---------------------------

RESULT_MIN = 1
RESULT_MAX = 16
RESULT_DEFAULT_TARGET = 8


# ---------------------------
# Gating ladder
# ---------------------------

MIN_CANDIDATES_FOR_RANKING = 16
GATING_BUFFER = 8

# attribute coverage below this share of the pool demotes the facet to soft
FACET_COVERAGE_THRESHOLD = float(os.getenv("FACET_COVERAGE_THRESHOLD", "0.25"))

# phrases that contain a hard term as a word without being that item
HARD_TERM_DENYLIST: Dict[str, List[str]] = {
    "suit": ["suit bag", "suit cover", "suit hanger", "suitcase"],
    "coat": ["coat hanger", "coat rack", "top coat"],
    "ring": ["key ring", "ring binder", "ring light"],
    "tank": ["fish tank"],
    "mask": ["mask strap"],
}

DECOMPOUND_MIN_TOKEN_LEN = 6
DECOMPOUND_MIN_PART_LEN = 3
DECOMPOUND_MAX_EXPANSIONS = 3


# ---------------------------
# BM25 + boosts
# ---------------------------

BM25_K1 = 1.2
BM25_B = 0.75

BOOST_HARD_PHRASE = 2.0
BOOST_FACET_MATCH = 1.5
BOOST_COLLECTION_TERM = 1.5
PENALTY_AVOID_TERM = 1.0


# ---------------------------
# Rerank windows
# ---------------------------

RERANK_WINDOW_SINGLE = 20
RERANK_WINDOW_PER_ITEM = 15
PRE_RANK_PER_ITEM = 60

RERANKER_URL: Optional[str] = os.getenv("RERANKER_URL") or None
RERANKER_TIMEOUT_S = float(os.getenv("RERANKER_TIMEOUT_S", "12.0"))
RERANKER_CONNECT_TIMEOUT_S = 3.0
# stored outcomes kept for the at-most-once guard
RERANK_OUTCOMES_MAX = 4096

INTENT_PARSER_URL: Optional[str] = os.getenv("INTENT_PARSER_URL") or None
INTENT_PARSER_TIMEOUT_S = float(os.getenv("INTENT_PARSER_TIMEOUT_S", "10.0"))
INTENT_PARSER_CONNECT_TIMEOUT_S = 3.0

# whole-request budget; only used to clamp the reported rerank time
REQUEST_TIMEOUT_BUDGET_S = 25.0

HTTP_USER_AGENT = "concierge-ranker/1.0"

DETERMINISTIC_FALLBACK_REASONING = (
    "AI ranking unavailable; selected products based on availability, "
    "preferences, and product information quality."
)


# ---------------------------
# Bundle budget allocation
# ---------------------------

# two items: first gets BUDGET_SHARE_TWO_FIRST, second the rest
BUDGET_SHARE_TWO_FIRST = float(os.getenv("BUDGET_SHARE_TWO_FIRST", "0.70"))
# three or more: first gets BUDGET_SHARE_MANY_FIRST, the rest split evenly
BUDGET_SHARE_MANY_FIRST = float(os.getenv("BUDGET_SHARE_MANY_FIRST", "0.60"))


# ---------------------------
# Caching
# ---------------------------

CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", str(36 * 3600)))
CACHE_MAX_ENTRIES = 2048


# ---------------------------
# Billing
# ---------------------------

INCLUDED_CREDITS = float(os.getenv("INCLUDED_CREDITS", "100"))


# ---------------------------
# Pydantic models shared around the app
# ---------------------------

class SessionStartRequest(BaseModel):
    """
    Body for POST /session/start.
    """

    session_id: str = Field(..., min_length=1)
    shop: str = "default"
    query: str = Field(..., min_length=1)
    answers: Dict[str, object] = Field(default_factory=dict)
    result_count: int = Field(RESULT_DEFAULT_TARGET, ge=RESULT_MIN, le=RESULT_MAX)
    in_stock_only: bool = False
    conversation: List[str] = Field(default_factory=list)


class SessionAck(BaseModel):
    session_id: str
    status: str  # "processing" | "complete" | "failed"


class SessionResultResponse(BaseModel):
    """
    Response body for GET /session/{session_id}.
    """

    session_id: str
    status: str
    handles: List[str] = Field(default_factory=list)
    reasoning: str = ""
    source: Optional[str] = None
    outcome: Optional[str] = None
    budget_exceeded: Optional[bool] = None
    total_price: float = 0.0
    suggestions: List[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """
    Response body for GET /health.
    """

    status: str
