"""Common Pydantic models shared across Ballista resources."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class ResourceMetadata(BaseModel):
    """Common metadata for Kubernetes resources."""

    name: str = Field(..., description="Resource name")
    namespace: str | None = Field(None, description="Resource namespace")
    uid: str | None = Field(None, description="Kubernetes UID")
    resource_version: str | None = Field(None, description="Optimistic concurrency token")
    generation: int = Field(0, description="Spec generation")
    deletion_timestamp: str | None = Field(None, description="Set once deletion was requested")
    finalizers: list[str] = Field(default_factory=list, description="Finalizers holding deletion")
    labels: dict[str, str] = Field(default_factory=dict, description="Resource labels")
    annotations: dict[str, str] = Field(default_factory=dict, description="Resource annotations")
    owner_references: list["OwnerReference"] = Field(
        default_factory=list, description="Owner references"
    )

    @property
    def is_deleting(self) -> bool:
        """Check if deletion of the resource was requested."""
        return self.deletion_timestamp is not None

    @classmethod
    def from_k8s_metadata(cls, metadata: dict[str, Any] | None) -> "ResourceMetadata":
        """Create from a Kubernetes ``metadata`` mapping.

        Args:
            metadata: The ``metadata`` section of a serialized object.
        """
        metadata = metadata or {}
        deletion_ts = metadata.get("deletionTimestamp")
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace"),
            uid=metadata.get("uid"),
            resource_version=metadata.get("resourceVersion"),
            generation=metadata.get("generation") or 0,
            deletion_timestamp=str(deletion_ts) if deletion_ts else None,
            finalizers=list(metadata.get("finalizers") or []),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            owner_references=[
                OwnerReference.from_k8s(ref) for ref in metadata.get("ownerReferences") or []
            ],
        )


class OwnerReference(BaseModel):
    """Kubernetes owner reference."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False

    @classmethod
    def from_k8s(cls, ref: dict[str, Any]) -> "OwnerReference":
        """Create from a serialized owner reference."""
        return cls(
            api_version=ref.get("apiVersion", ""),
            kind=ref.get("kind", ""),
            name=ref.get("name", ""),
            uid=ref.get("uid", ""),
            controller=bool(ref.get("controller", False)),
            block_owner_deletion=bool(ref.get("blockOwnerDeletion", False)),
        )

    def to_k8s(self) -> dict[str, Any]:
        """Serialize in the Kubernetes wire format."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }


class Condition(BaseModel):
    """Kubernetes-style condition."""

    type: str = Field(..., description="Condition type")
    status: str = Field(..., description="Condition status (True, False, Unknown)")
    reason: str | None = Field(None, description="Machine-readable reason")
    message: str | None = Field(None, description="Human-readable message")
    last_transition_time: str | None = Field(None, description="Last transition time")

    @property
    def is_true(self) -> bool:
        """Check if condition status is True."""
        return self.status == "True"

    @classmethod
    def from_k8s_condition(cls, condition: dict[str, Any]) -> "Condition":
        """Create from a serialized Kubernetes condition."""
        return cls(
            type=condition.get("type", ""),
            status=condition.get("status", "Unknown"),
            reason=condition.get("reason"),
            message=condition.get("message"),
            last_transition_time=condition.get("lastTransitionTime"),
        )

    def to_k8s(self) -> dict[str, Any]:
        """Serialize in the Kubernetes wire format."""
        data: dict[str, Any] = {"type": self.type, "status": self.status}
        if self.reason:
            data["reason"] = self.reason
        if self.message:
            data["message"] = self.message
        if self.last_transition_time:
            data["lastTransitionTime"] = self.last_transition_time
        return data


def utc_now() -> str:
    """Current time as an RFC 3339 timestamp."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def set_condition(conditions: list[Condition], new: Condition) -> list[Condition]:
    """Insert or replace a condition by type.

    The transition time is only bumped when the status actually changes.
    """
    result: list[Condition] = []
    replaced = False
    for existing in conditions:
        if existing.type != new.type:
            result.append(existing)
            continue
        replaced = True
        if existing.status == new.status and existing.last_transition_time:
            new = new.model_copy(update={"last_transition_time": existing.last_transition_time})
        elif not new.last_transition_time:
            new = new.model_copy(update={"last_transition_time": utc_now()})
        result.append(new)
    if not replaced:
        if not new.last_transition_time:
            new = new.model_copy(update={"last_transition_time": utc_now()})
        result.append(new)
    return result


ResourceMetadata.model_rebuild()
