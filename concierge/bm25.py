from __future__ import annotations

"""
Per-pool BM25 index.

Statistics (document frequencies, average length) are computed over the
pool being ranked, not over the whole catalog, so scores are comparable
only within one request. IDF is the plain ``log(N / df)``: a token that
appears in every document contributes nothing.
"""

import math
from typing import Dict, List, Sequence

import numpy as np
from loguru import logger
from rank_bm25 import BM25Okapi

from . import config


class PoolBM25(BM25Okapi):
    """rank_bm25's Okapi scorer with an un-smoothed IDF table."""

    def __init__(self, corpus_tokens: Sequence[Sequence[str]], k1: float = config.BM25_K1, b: float = config.BM25_B):
        super().__init__([list(doc) for doc in corpus_tokens], k1=k1, b=b)

    def _calc_idf(self, nd: Dict[str, int]) -> None:
        for word, freq in nd.items():
            self.idf[word] = math.log(self.corpus_size / freq)


def score_documents(corpus_tokens: Sequence[Sequence[str]], query_tokens: Sequence[str]) -> np.ndarray:
    """
    BM25 score of every document for the query, in corpus order.

    Empty pools, empty queries and pools made only of empty documents
    score zero everywhere.
    """
    n = len(corpus_tokens)
    if n == 0 or not query_tokens:
        return np.zeros((n,), dtype="float64")
    if not any(corpus_tokens):
        return np.zeros((n,), dtype="float64")
    index = PoolBM25(corpus_tokens)
    scores = np.asarray(index.get_scores(list(query_tokens)), dtype="float64")
    logger.debug("BM25 scored {} documents (avgdl={:.1f})", n, index.avgdl)
    return scores


def bm25_rank(corpus_tokens: Sequence[Sequence[str]], query_tokens: Sequence[str]) -> List[int]:
    """Document indices by descending score; stable for ties."""
    scores = score_documents(corpus_tokens, query_tokens)
    return [int(i) for i in np.argsort(-scores, kind="stable")]
