# concierge/_singletons.py
from functools import lru_cache

from .catalog import SnapshotCatalogSource
from .intent import SemanticIntentClient
from .pipeline import Collaborators, InMemoryResultStore, LedgerBillingSink, TTLCache
from .rerank import RerankerClient


@lru_cache(maxsize=1)
def get_catalog_source():
    return SnapshotCatalogSource.from_path()


@lru_cache(maxsize=1)
def get_reranker():
    return RerankerClient()


@lru_cache(maxsize=1)
def get_intent_client():
    return SemanticIntentClient()


@lru_cache(maxsize=1)
def get_result_store():
    return InMemoryResultStore()


@lru_cache(maxsize=1)
def get_billing():
    return LedgerBillingSink()


@lru_cache(maxsize=1)
def get_cache():
    return TTLCache()


def get_collaborators() -> Collaborators:
    return Collaborators(
        catalog=get_catalog_source(),
        reranker=get_reranker(),
        store=get_result_store(),
        billing=get_billing(),
        intent_client=get_intent_client(),
        cache=get_cache(),
    )
