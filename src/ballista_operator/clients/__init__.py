"""Resource store clients."""

from ballista_operator.clients.base import (
    BallistaCRDs,
    CRDDefinition,
    K8sStore,
    ResourceStore,
    WatchEvent,
    WatchHandler,
)
from ballista_operator.clients.memory import MemoryStore

__all__ = [
    "BallistaCRDs",
    "CRDDefinition",
    "K8sStore",
    "MemoryStore",
    "ResourceStore",
    "WatchEvent",
    "WatchHandler",
]
