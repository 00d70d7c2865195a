"""Error taxonomy for the selection pipeline."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NO_MATCH = "NO_MATCH"
    PARTIAL_BUNDLE = "PARTIAL_BUNDLE"
    BUDGET_UNATTAINABLE = "BUDGET_UNATTAINABLE"
    RERANK_FAILURE = "RERANK_FAILURE"
    VALIDATION_EMPTIED = "VALIDATION_EMPTIED"
    EMERGENCY_UNMATCHED = "EMERGENCY_UNMATCHED"


class PipelineError(RuntimeError):
    """Fatal upstream failure; the session is marked FAILED."""


class CatalogUnavailableError(PipelineError):
    pass


class PersistenceError(PipelineError):
    pass
