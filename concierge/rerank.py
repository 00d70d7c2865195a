from __future__ import annotations

"""
Adapter for the external reranking service.

The service sees only the ranking window (minimal fields plus the lazily
attached description) and answers with the handles it picked. Its answer is
untrusted: unknown handles are dropped here and everything else goes
through the validator. Any transport or parse failure turns into the
deterministic fallback (local rank order, top N); nothing is raised.

At most one call is made per dedup key; the stored outcome is replayed for
repeated calls so a retry never produces a second usage charge.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from loguru import logger
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from . import config
from .catalog import Candidate

SOURCE_RERANKED = "reranked"
SOURCE_FALLBACK = "deterministic-fallback"


@dataclass
class RerankOutcome:
    handles: List[str]
    reasoning: str
    source: str
    item_index_map: Dict[str, int] = field(default_factory=dict)
    trust_fallback: bool = False
    elapsed_s: float = 0.0
    failure: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.source == SOURCE_RERANKED


class RerankResponse(BaseModel):
    selected_handles: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("selected_handles", "selectedHandles", "handles"),
    )
    item_index_map: Dict[str, int] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("item_index_map", "itemIndexMap"),
    )
    reasoning: str = ""
    source: str = "success"
    trust_fallback: bool = Field(
        False,
        validation_alias=AliasChoices("trust_fallback", "trustFallback"),
    )


def window_payload(window: Sequence[Candidate]) -> List[Dict[str, Any]]:
    return [
        {
            "handle": c.handle,
            "title": c.title,
            "type": c.product_type,
            "vendor": c.vendor,
            "tags": list(c.tags),
            "price": c.price,
            "available": c.available,
            "description": (c.description or "")[: config.DESCRIPTION_MAX_CHARS],
        }
        for c in window
    ]


def resolve_handles(selected: Sequence[str], window: Sequence[Candidate]) -> List[str]:
    """Exact match first, then case-insensitive; unknowns dropped, order kept."""
    exact = {c.handle: c.handle for c in window}
    folded = {c.handle.lower(): c.handle for c in window}
    out: List[str] = []
    for raw in selected:
        key = str(raw).strip()
        handle = exact.get(key) or folded.get(key.lower())
        if handle is None:
            logger.debug("Reranker returned unknown handle '{}'", key)
            continue
        if handle not in out:
            out.append(handle)
    return out


def deterministic_fallback(
    window: Sequence[Candidate],
    requested_count: int,
    item_index_map: Optional[Mapping[str, int]] = None,
    failure: Optional[str] = None,
    elapsed_s: float = 0.0,
) -> RerankOutcome:
    """Local rank order, top N. Bundle windows keep every item's handles."""
    if item_index_map:
        handles = [c.handle for c in window]
    else:
        handles = [c.handle for c in window[: max(0, requested_count)]]
    return RerankOutcome(
        handles=handles,
        reasoning=config.DETERMINISTIC_FALLBACK_REASONING,
        source=SOURCE_FALLBACK,
        item_index_map=dict(item_index_map or {}),
        elapsed_s=elapsed_s,
        failure=failure,
    )


class RerankerClient:
    def __init__(
        self,
        url: Optional[str] = config.RERANKER_URL,
        timeout: float = config.RERANKER_TIMEOUT_S,
        max_outcomes: int = config.RERANK_OUTCOMES_MAX,
    ):
        self.url = url
        self.timeout = timeout
        self.calls = 0
        self.max_outcomes = max_outcomes
        self._outcomes: OrderedDict[str, RerankOutcome] = OrderedDict()
        self._lock = threading.Lock()

    def _post(self, body: Dict[str, Any]) -> Optional[RerankResponse]:
        headers = {"User-Agent": config.HTTP_USER_AGENT}
        try:
            with httpx.Client(
                timeout=httpx.Timeout(self.timeout, connect=config.RERANKER_CONNECT_TIMEOUT_S),
            ) as client:
                r = client.post(self.url, json=body, headers=headers)
                if r.status_code >= 400:
                    logger.warning("Reranker: HTTP {} from {}", r.status_code, self.url)
                    return None
                return RerankResponse.model_validate(r.json())
        except httpx.TimeoutException:
            logger.warning("Reranker timeout after {}s", self.timeout)
            return None
        except ValidationError as e:
            logger.warning("Reranker returned an invalid structure: {}", e.error_count())
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Reranker exception: {}", e)
            return None

    def rerank(
        self,
        dedup_key: str,
        intent_summary: Mapping[str, Any],
        window: Sequence[Candidate],
        requested_count: int,
        per_item_budget: Optional[Sequence[Optional[float]]] = None,
        conversation: Optional[Sequence[str]] = None,
        item_index_map: Optional[Mapping[str, int]] = None,
    ) -> RerankOutcome:
        with self._lock:
            stored = self._outcomes.get(dedup_key)
            if stored is not None:
                logger.info("Reranker already called for '{}'; replaying stored outcome", dedup_key)
                return stored

        outcome = self._call(dedup_key, intent_summary, window, requested_count,
                             per_item_budget, conversation, item_index_map)
        with self._lock:
            stored = self._outcomes.setdefault(dedup_key, outcome)
            while len(self._outcomes) > self.max_outcomes:
                self._outcomes.popitem(last=False)
            return stored

    def _call(
        self,
        dedup_key: str,
        intent_summary: Mapping[str, Any],
        window: Sequence[Candidate],
        requested_count: int,
        per_item_budget: Optional[Sequence[Optional[float]]],
        conversation: Optional[Sequence[str]],
        item_index_map: Optional[Mapping[str, int]],
    ) -> RerankOutcome:
        if not window:
            return deterministic_fallback(window, requested_count, item_index_map, failure="empty window")
        if not self.url:
            logger.info("Reranker not configured; using local rank order")
            return deterministic_fallback(window, requested_count, item_index_map, failure="not configured")

        body = {
            "intent": dict(intent_summary),
            "candidates": window_payload(window),
            "requestedCount": requested_count,
            "perItemBudget": list(per_item_budget) if per_item_budget else None,
            "dedupKey": dedup_key,
            "conversation": list(conversation or []),
            "itemIndexMap": dict(item_index_map or {}),
        }

        self.calls += 1
        started = time.monotonic()
        response = self._post(body)
        elapsed = min(time.monotonic() - started, config.REQUEST_TIMEOUT_BUDGET_S)

        if response is None:
            return deterministic_fallback(window, requested_count, item_index_map,
                                          failure="transport", elapsed_s=elapsed)
        if response.source != "success":
            logger.warning("Reranker reported source '{}'; using local rank order", response.source)
            return deterministic_fallback(window, requested_count, item_index_map,
                                          failure=f"source={response.source}", elapsed_s=elapsed)

        handles = resolve_handles(response.selected_handles, window)
        if not handles:
            logger.warning("Reranker selected no known handles; using local rank order")
            return deterministic_fallback(window, requested_count, item_index_map,
                                          failure="empty selection", elapsed_s=elapsed)

        index_map: Dict[str, int] = {}
        if item_index_map:
            resolved = resolve_handles(list(response.item_index_map), window)
            returned = {h.lower(): i for h, i in response.item_index_map.items()}
            for h in resolved:
                index_map[h] = returned.get(h.lower(), item_index_map.get(h, 0))
            for h in handles:
                index_map.setdefault(h, item_index_map.get(h, 0))

        logger.info("Reranker selected {} of {} in {:.2f}s", len(handles), len(window), elapsed)
        return RerankOutcome(
            handles=handles,
            reasoning=response.reasoning.strip(),
            source=SOURCE_RERANKED,
            item_index_map=index_map,
            trust_fallback=response.trust_fallback,
            elapsed_s=elapsed,
        )
