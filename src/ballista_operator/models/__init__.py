"""Pydantic models for Ballista resources."""

from ballista_operator.models.cluster import (
    BallistaCluster,
    BallistaClusterSpec,
    BallistaClusterStatus,
    BallistaPodSpec,
    ClusterKey,
    ClusterState,
    ExecutorSpec,
    Port,
    SchedulerSpec,
    validate_cluster,
)
from ballista_operator.models.common import (
    Condition,
    OwnerReference,
    ResourceMetadata,
    set_condition,
    utc_now,
)
from ballista_operator.models.pod import WorkloadUnit, is_pod_ready

__all__ = [
    "BallistaCluster",
    "BallistaClusterSpec",
    "BallistaClusterStatus",
    "BallistaPodSpec",
    "ClusterKey",
    "ClusterState",
    "Condition",
    "ExecutorSpec",
    "OwnerReference",
    "Port",
    "ResourceMetadata",
    "SchedulerSpec",
    "WorkloadUnit",
    "is_pod_ready",
    "set_condition",
    "utc_now",
    "validate_cluster",
]
