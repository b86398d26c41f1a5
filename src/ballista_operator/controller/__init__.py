"""BallistaCluster reconciliation engine."""

from ballista_operator.controller.children import ChildResourceManager, ScaleResult, child_name
from ballista_operator.controller.index import (
    OWNER_INDEX,
    ROLE_INDEX,
    CachedChildIndex,
    ChildIndex,
    IndexRegistry,
    ListingChildIndex,
    default_registry,
    owner_of,
    role_of,
)
from ballista_operator.controller.manager import ControllerManager
from ballista_operator.controller.queue import QueueShutDown, RateLimitingQueue
from ballista_operator.controller.reconciler import BallistaClusterReconciler, Result, ResultKind
from ballista_operator.controller.retry import Deadline, retry_on_conflict
from ballista_operator.controller.state_machine import Action, Decision, Reason, decide
from ballista_operator.controller.status import HealthSummary, StatusEvaluator

__all__ = [
    "OWNER_INDEX",
    "ROLE_INDEX",
    "Action",
    "BallistaClusterReconciler",
    "CachedChildIndex",
    "ChildIndex",
    "ChildResourceManager",
    "ControllerManager",
    "Deadline",
    "Decision",
    "HealthSummary",
    "IndexRegistry",
    "ListingChildIndex",
    "QueueShutDown",
    "RateLimitingQueue",
    "Reason",
    "Result",
    "ResultKind",
    "ScaleResult",
    "StatusEvaluator",
    "child_name",
    "decide",
    "default_registry",
    "owner_of",
    "retry_on_conflict",
    "role_of",
]
