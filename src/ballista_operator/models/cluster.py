"""Pydantic models for the BallistaCluster custom resource."""

from __future__ import annotations

from enum import Enum
from typing import Any, NamedTuple

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from ballista_operator.models.common import Condition, ResourceMetadata
from ballista_operator.utils.errors import ValidationError
from ballista_operator.utils.labels import CLUSTER_KIND, GROUP_VERSION


class ClusterState(str, Enum):
    """Lifecycle states of a Ballista cluster."""

    NEW = "New"
    PENDING = "Pending"
    RUNNING = "Running"
    UNKNOWN = "Unknown"
    TERMINATING = "Terminating"


class ClusterKey(NamedTuple):
    """Identity of a BallistaCluster, used as the work queue key."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_string(cls, value: str) -> ClusterKey:
        """Parse a ``namespace/name`` key."""
        namespace, _, name = value.partition("/")
        if not name:
            raise ValueError(f"Invalid cluster key: {value!r}")
        return cls(namespace, name)


class _CamelModel(BaseModel):
    """Base for spec models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Port(_CamelModel):
    """Container port declaration."""

    name: str = Field(..., description="Port name")
    protocol: str = Field("TCP", description="Port protocol")
    container_port: int = Field(..., alias="containerPort", description="Container port")

    def to_k8s(self) -> dict[str, Any]:
        return {"name": self.name, "protocol": self.protocol, "containerPort": self.container_port}


class BallistaPodSpec(_CamelModel):
    """Pod-level settings shared by the scheduler and executors.

    Besides the operator shorthands (cores, memory, envVars, sidecars) a role
    accepts the usual PodSpec fields inline. Keys that are neither are
    rejected rather than dropped.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    cores: int | None = Field(None, description="CPU request in cores")
    core_limit: str | None = Field(None, alias="coreLimit", description="CPU limit")
    memory: str | None = Field(None, description="Memory request and limit")
    image: str | None = Field(None, description="Role-specific container image")
    image_pull_policy: str | None = Field(None, alias="imagePullPolicy")
    env: list[dict[str, Any]] = Field(default_factory=list, description="Environment variables")
    env_vars: dict[str, str] = Field(
        default_factory=dict, alias="envVars", description="Environment variables as a map"
    )
    env_from: list[dict[str, Any]] = Field(default_factory=list, alias="envFrom")
    labels: dict[str, str] = Field(default_factory=dict, description="Extra pod labels")
    annotations: dict[str, str] = Field(default_factory=dict, description="Extra pod annotations")
    volume_mounts: list[dict[str, Any]] = Field(default_factory=list, alias="volumeMounts")
    volumes: list[dict[str, Any]] = Field(default_factory=list)
    affinity: dict[str, Any] | None = None
    tolerations: list[dict[str, Any]] = Field(default_factory=list)
    pod_security_context: dict[str, Any] | None = Field(None, alias="podSecurityContext")
    security_context: dict[str, Any] | None = Field(None, alias="securityContext")
    scheduler_name: str | None = Field(None, alias="schedulerName")
    sidecars: list[dict[str, Any]] = Field(default_factory=list)
    init_containers: list[dict[str, Any]] = Field(default_factory=list, alias="initContainers")
    host_network: bool | None = Field(None, alias="hostNetwork")
    node_selector: dict[str, str] = Field(default_factory=dict, alias="nodeSelector")
    dns_config: dict[str, Any] | None = Field(None, alias="dnsConfig")
    termination_grace_period_seconds: int | None = Field(
        None, alias="terminationGracePeriodSeconds"
    )
    service_account: str | None = Field(None, alias="serviceAccount")
    host_aliases: list[dict[str, Any]] = Field(default_factory=list, alias="hostAliases")
    share_process_namespace: bool | None = Field(None, alias="shareProcessNamespace")
    ports: list[Port] = Field(default_factory=list, description="Container ports")

    # Inline PodSpec fields
    containers: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Containers; the one named after the role, or else the first, runs Ballista",
    )
    service_account_name: str | None = Field(None, alias="serviceAccountName")
    priority_class_name: str | None = Field(None, alias="priorityClassName")
    runtime_class_name: str | None = Field(None, alias="runtimeClassName")
    image_pull_secrets: list[dict[str, Any]] = Field(default_factory=list, alias="imagePullSecrets")
    topology_spread_constraints: list[dict[str, Any]] = Field(
        default_factory=list, alias="topologySpreadConstraints"
    )


class SchedulerSpec(BallistaPodSpec):
    """Desired settings of the scheduler pod."""

    kubernetes_master: str | None = Field(None, alias="kubernetesMaster")
    service_annotations: dict[str, str] = Field(
        default_factory=dict, alias="serviceAnnotations"
    )
    lifecycle: dict[str, Any] | None = None


class ExecutorSpec(BallistaPodSpec):
    """Specification of the executor pods."""

    instances: int = Field(1, description="Number of executor pods")


class BallistaClusterSpec(_CamelModel):
    """Desired state of a BallistaCluster."""

    ballista_version: str = Field(..., alias="ballistaVersion", description="Ballista version")
    image: str | None = Field(None, description="Default image for scheduler and executors")
    image_pull_policy: str | None = Field(None, alias="imagePullPolicy")
    image_pull_secrets: list[str] = Field(default_factory=list, alias="imagePullSecrets")
    scheduler: SchedulerSpec = Field(default_factory=SchedulerSpec)
    executor: ExecutorSpec = Field(default_factory=ExecutorSpec)


class BallistaClusterStatus(BaseModel):
    """Observed state of a BallistaCluster."""

    state: ClusterState = Field(ClusterState.NEW, description="Lifecycle state")
    scheduler_ready: bool = Field(False, description="Scheduler pod is ready")
    executors_ready: int = Field(0, description="Number of ready executor pods")
    executors_desired: int = Field(0, description="Declared number of executor pods")
    conditions: list[Condition] = Field(default_factory=list)
    observed_generation: int = Field(0, description="Generation the status refers to")
    last_observed_time: str | None = Field(None, description="Time of the last observation")

    @classmethod
    def from_k8s(cls, status: dict[str, Any] | None) -> BallistaClusterStatus:
        """Parse the ``status`` section; an empty status means ``New``."""
        status = status or {}
        try:
            state = ClusterState(status.get("state") or ClusterState.NEW.value)
        except ValueError:
            state = ClusterState.UNKNOWN
        return cls(
            state=state,
            scheduler_ready=bool(status.get("schedulerReady", False)),
            executors_ready=int(status.get("executorsReady", 0) or 0),
            executors_desired=int(status.get("executorsDesired", 0) or 0),
            conditions=[Condition.from_k8s_condition(c) for c in status.get("conditions") or []],
            observed_generation=int(status.get("observedGeneration", 0) or 0),
            last_observed_time=status.get("lastObservedTime"),
        )

    def to_k8s(self) -> dict[str, Any]:
        """Serialize in the Kubernetes wire format."""
        data: dict[str, Any] = {
            "state": self.state.value,
            "schedulerReady": self.scheduler_ready,
            "executorsReady": self.executors_ready,
            "executorsDesired": self.executors_desired,
            "conditions": [c.to_k8s() for c in self.conditions],
            "observedGeneration": self.observed_generation,
        }
        if self.last_observed_time:
            data["lastObservedTime"] = self.last_observed_time
        return data

    def condition(self, condition_type: str) -> Condition | None:
        """Look up a condition by type."""
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond
        return None


class BallistaCluster(BaseModel):
    """BallistaCluster resource representation.

    ``spec`` is None when the declared spec could not be parsed at all; the
    parse failure is kept in ``spec_error`` so the reconciler can still
    report it through the status.
    """

    metadata: ResourceMetadata
    spec: BallistaClusterSpec | None = None
    spec_error: str | None = None
    status: BallistaClusterStatus = Field(default_factory=BallistaClusterStatus)

    @property
    def key(self) -> ClusterKey:
        return ClusterKey(self.metadata.namespace or "default", self.metadata.name)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or "default"

    @property
    def desired_executors(self) -> int:
        return self.spec.executor.instances if self.spec else 0

    def owner_reference(self) -> dict[str, Any]:
        """Controller owner reference pointing at this cluster."""
        return {
            "apiVersion": GROUP_VERSION,
            "kind": CLUSTER_KIND,
            "name": self.metadata.name,
            "uid": self.metadata.uid or "",
            "controller": True,
            "blockOwnerDeletion": True,
        }

    @classmethod
    def from_resource(cls, resource: dict[str, Any]) -> BallistaCluster:
        """Create BallistaCluster from a serialized custom object."""
        metadata = ResourceMetadata.from_k8s_metadata(resource.get("metadata"))
        status = BallistaClusterStatus.from_k8s(resource.get("status"))

        spec: BallistaClusterSpec | None = None
        spec_error: str | None = None
        try:
            spec = BallistaClusterSpec.model_validate(resource.get("spec") or {})
        except pydantic.ValidationError as e:
            spec_error = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )

        return cls(metadata=metadata, spec=spec, spec_error=spec_error, status=status)


def validate_cluster(cluster: BallistaCluster) -> None:
    """Check that a cluster's declared spec can be reconciled.

    Raises:
        ValidationError: If the spec is structurally invalid.
    """
    if cluster.spec is None:
        raise ValidationError(f"Invalid spec: {cluster.spec_error or 'missing spec'}", "spec")

    spec = cluster.spec
    if not spec.ballista_version.strip():
        raise ValidationError("spec.ballistaVersion must not be empty", "spec.ballistaVersion")

    if spec.executor.instances < 1:
        raise ValidationError(
            f"spec.executor.instances must be at least 1, got {spec.executor.instances}",
            "spec.executor.instances",
        )

    for role, pod_spec in (("scheduler", spec.scheduler), ("executor", spec.executor)):
        if pod_spec.cores is not None and pod_spec.cores < 1:
            raise ValidationError(
                f"spec.{role}.cores must be at least 1, got {pod_spec.cores}",
                f"spec.{role}.cores",
            )
        for port in pod_spec.ports:
            if not 1 <= port.container_port <= 65535:
                raise ValidationError(
                    f"spec.{role}.ports[{port.name}] has invalid containerPort "
                    f"{port.container_port}",
                    f"spec.{role}.ports",
                )
