from __future__ import annotations

"""
Reasoning events collected across the pipeline and rendered once.

Stages append typed events to a :class:`ReasoningLog`; the final text is
the reranker's own explanation (or the fallback text) followed by one
sentence per user-facing event. Events without a template are kept for
logs and tests only.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence

from loguru import logger


class ReasoningEvent(str, Enum):
    MATCHED_FACET = "matched-facet"
    FACET_DEMOTED = "facet-demoted"
    RELAXED_STAGE = "relaxed-stage"
    RELAXED_PRICE = "relaxed-price"
    RELAXED_STOCK = "relaxed-stock"
    TRUST_FALLBACK = "trust-fallback"
    RERANK_FAILED = "rerank-failed"
    VALIDATION_DROPPED = "validation-dropped"
    VALIDATION_EMPTIED = "validation-emptied"
    ANCHOR_RETRY = "anchor-retry"
    SWAPPED_FOR_DIVERSITY = "swapped-for-diversity"
    TOPPED_UP = "topped-up"
    PRIMARY_OVER_ALLOCATION = "primary-over-allocation"
    CONTAMINATION_DROPPED = "contamination-dropped"
    BUNDLE_ITEM_MISSING = "bundle-item-missing"
    WITHIN_BUDGET = "within-budget"
    BUDGET_EXCEEDED = "budget-exceeded"
    NO_MATCH = "no-match"
    EMERGENCY_UNMATCHED = "emergency-unmatched"


_TEMPLATES: Dict[ReasoningEvent, Optional[str]] = {
    ReasoningEvent.MATCHED_FACET: "Filtered by {attribute}: {values}.",
    ReasoningEvent.FACET_DEMOTED: (
        "Few products list a {attribute} ({coverage:.0%}), so it was used as a preference rather than a filter."
    ),
    ReasoningEvent.RELAXED_STAGE: "Not enough exact matches, so related products were included ({stage}).",
    ReasoningEvent.RELAXED_PRICE: "Too few products were under {ceiling:g}, so the price filter was widened.",
    ReasoningEvent.RELAXED_STOCK: "Too few products were in stock, so out-of-stock products were included.",
    ReasoningEvent.TRUST_FALLBACK: (
        "No product matched every requirement exactly; showing the closest products available."
    ),
    ReasoningEvent.RERANK_FAILED: None,
    ReasoningEvent.VALIDATION_DROPPED: None,
    ReasoningEvent.VALIDATION_EMPTIED: None,
    ReasoningEvent.ANCHOR_RETRY: None,
    ReasoningEvent.SWAPPED_FOR_DIVERSITY: "Mixed products from {families} families for variety.",
    ReasoningEvent.TOPPED_UP: "Added {count} more products to complete the selection.",
    ReasoningEvent.PRIMARY_OVER_ALLOCATION: "The {item} pick is above its share of the budget.",
    ReasoningEvent.CONTAMINATION_DROPPED: None,
    ReasoningEvent.BUNDLE_ITEM_MISSING: "Could not find a match for: {items}.",
    ReasoningEvent.WITHIN_BUDGET: "Total {total:.2f} is within the {budget:.2f} budget.",
    ReasoningEvent.BUDGET_EXCEEDED: (
        "Even the cheapest combination found costs {total:.2f}, above the {budget:.2f} budget."
    ),
    ReasoningEvent.NO_MATCH: "No products matched '{terms}'.",
    ReasoningEvent.EMERGENCY_UNMATCHED: "No matching products were found; showing one best-effort item.",
}


@dataclass(frozen=True)
class Event:
    kind: ReasoningEvent
    detail: Dict[str, Any] = field(default_factory=dict)

    def render(self) -> Optional[str]:
        template = _TEMPLATES.get(self.kind)
        if template is None:
            return None
        try:
            return template.format(**self.detail)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Cannot render reasoning event {}: {}", self.kind.value, e)
            return None


class ReasoningLog:
    def __init__(self) -> None:
        self.events: List[Event] = []

    def add(self, kind: ReasoningEvent, **detail: Any) -> None:
        self.events.append(Event(kind, detail))
        logger.debug("Reasoning event {} {}", kind.value, detail)

    def has(self, kind: ReasoningEvent) -> bool:
        return any(e.kind == kind for e in self.events)

    def kinds(self) -> List[ReasoningEvent]:
        return [e.kind for e in self.events]

    def __iter__(self) -> Iterator[Event]:
        return iter(self.events)

    def __len__(self) -> int:
        return len(self.events)

    def render(self, lead: Optional[str] = None) -> str:
        sentences: List[str] = []
        if lead and lead.strip():
            sentences.append(lead.strip())
        for event in self.events:
            text = event.render()
            if text and text not in sentences:
                sentences.append(text)
        return " ".join(sentences)


# ---------------------------
# Empty-result suggestions
# ---------------------------

def build_suggestions(
    price_ceiling: Optional[float] = None,
    facets: Optional[Dict[str, Sequence[str]]] = None,
    alternatives: Sequence[str] = (),
) -> List[str]:
    facets = facets or {}
    out: List[str] = []
    if price_ceiling is not None:
        out.append(f"Try a higher budget than {price_ceiling:g}.")
    if facets.get("size"):
        out.append("Try a different size or remove the size filter.")
    if facets.get("color"):
        out.append("Try another color.")
    if facets.get("material"):
        out.append("Try a different material.")
    if alternatives:
        out.append("Related products in this store: " + ", ".join(alternatives) + ".")
    out.append("Try a broader description, such as the product type only.")
    return out
