"""Pydantic model for the pods that make up a Ballista cluster."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from ballista_operator.models.common import ResourceMetadata
from ballista_operator.utils.labels import BallistaLabels, Role


class WorkloadUnit(BaseModel):
    """A scheduler or executor pod owned by a BallistaCluster."""

    name: str = Field(..., description="Pod name")
    namespace: str = Field(..., description="Pod namespace")
    uid: str | None = Field(None, description="Kubernetes UID")
    role: Role | None = Field(None, description="Role label value")
    ordinal: int | None = Field(None, description="Executor ordinal")
    phase: str = Field("Pending", description="Pod phase")
    ready: bool = Field(False, description="Ready condition is True")
    deleting: bool = Field(False, description="Deletion was requested")
    metadata: ResourceMetadata

    @property
    def is_ready(self) -> bool:
        """Pod counts towards readiness: running, ready and not going away."""
        return self.ready and self.phase == "Running" and not self.deleting

    @classmethod
    def from_resource(cls, resource: dict[str, Any]) -> WorkloadUnit:
        """Create WorkloadUnit from a serialized Pod."""
        metadata = ResourceMetadata.from_k8s_metadata(resource.get("metadata"))
        status = resource.get("status") or {}

        role: Role | None = None
        try:
            role = Role(metadata.labels.get(BallistaLabels.ROLE, ""))
        except ValueError:
            role = None

        ordinal: int | None = None
        raw_ordinal = metadata.labels.get(BallistaLabels.ORDINAL)
        if raw_ordinal is not None:
            try:
                ordinal = int(raw_ordinal)
            except ValueError:
                ordinal = None

        return cls(
            name=metadata.name,
            namespace=metadata.namespace or "default",
            uid=metadata.uid,
            role=role,
            ordinal=ordinal,
            phase=status.get("phase") or "Pending",
            ready=is_pod_ready(resource),
            deleting=metadata.is_deleting,
            metadata=metadata,
        )


def is_pod_ready(pod: dict[str, Any]) -> bool:
    """Check if a pod's Ready condition is True."""
    conditions = (pod.get("status") or {}).get("conditions") or []
    for condition in conditions:
        if condition.get("type") == "Ready" and condition.get("status") == "True":
            return True
    return False
