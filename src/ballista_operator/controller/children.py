"""Creation, scaling and deletion of scheduler and executor pods."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ballista_operator.controller.index import owner_of
from ballista_operator.controller.retry import Deadline, retry_on_conflict
from ballista_operator.models.cluster import BallistaCluster, BallistaClusterSpec, BallistaPodSpec
from ballista_operator.utils.errors import (
    AlreadyExistsError,
    NotFoundError,
    PermanentActionError,
    ValidationError,
)
from ballista_operator.utils.labels import BallistaLabels, Role

if TYPE_CHECKING:
    from ballista_operator.clients.base import ResourceStore
    from ballista_operator.config import OperatorConfig
    from ballista_operator.controller.index import ChildIndex
    from ballista_operator.models.pod import WorkloadUnit

logger = logging.getLogger(__name__)

TERMINAL_PHASES = ("Failed", "Succeeded")


def child_name(cluster_name: str, role: Role, ordinal: int | None = None) -> str:
    """Deterministic pod name for a cluster member."""
    if role == Role.SCHEDULER:
        return f"{cluster_name}-scheduler"
    if ordinal is None:
        raise ValueError("Executor pods need an ordinal")
    return f"{cluster_name}-executor-{ordinal}"


@dataclass
class ScaleResult:
    """Outcome of one executor scaling pass."""

    created: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.deleted)


class ChildResourceManager:
    """Creates, scales and deletes the pods of a BallistaCluster.

    Every operation is safe to repeat: pod names are deterministic, an
    existing pod owned by the cluster counts as created, and a pod that is
    already gone counts as deleted.
    """

    def __init__(self, store: ResourceStore, index: ChildIndex, config: OperatorConfig) -> None:
        self._store = store
        self._index = index
        self._config = config

    # -------------------------------------------------------------------------
    # Scheduler
    # -------------------------------------------------------------------------

    def ensure_scheduler(
        self,
        cluster: BallistaCluster,
        schedulers: list[WorkloadUnit],
        deadline: Deadline | None = None,
    ) -> bool:
        """Make sure exactly one scheduler pod exists.

        Args:
            cluster: The cluster to reconcile.
            schedulers: Scheduler pods the index currently reports.
            deadline: Deadline of the current run.

        Returns:
            True if a pod was created or removed.

        Raises:
            PermanentActionError: If the name is taken by a foreign pod or the
                API server rejects the pod outright.
        """
        name = child_name(cluster.name, Role.SCHEDULER)
        changed = False

        # Anything not under the canonical name is a leftover
        for unit in schedulers:
            if unit.name != name and not unit.deleting:
                changed |= self._delete(cluster, unit.name, deadline)

        current = next((u for u in schedulers if u.name == name), None)
        if current is not None:
            if current.phase in TERMINAL_PHASES and not current.deleting:
                logger.info(f"Scheduler pod {name} is {current.phase}, replacing it")
                return self._delete(cluster, name, deadline) or changed
            return changed

        return self._create(cluster, Role.SCHEDULER, None, deadline) or changed

    # -------------------------------------------------------------------------
    # Executors
    # -------------------------------------------------------------------------

    def reconcile_executors(
        self,
        cluster: BallistaCluster,
        current: list[WorkloadUnit],
        deadline: Deadline | None = None,
    ) -> ScaleResult:
        """Scale executor pods to ``spec.executor.instances``.

        Missing pods are created at the lowest unused ordinals; excess pods are
        removed highest ordinal first. Pods without a usable ordinal and pods
        that terminated are removed regardless of the count.
        """
        desired = cluster.desired_executors
        result = ScaleResult()

        live = [u for u in current if not u.deleting]
        broken = [u for u in live if u.ordinal is None or u.phase in TERMINAL_PHASES]
        for unit in broken:
            logger.info(f"Removing executor pod {unit.name} (phase={unit.phase})")
            if self._delete(cluster, unit.name, deadline):
                result.deleted.append(unit.name)

        healthy = sorted(
            (u for u in live if u not in broken),
            key=lambda u: (u.ordinal, u.name),
        )
        # Ordinals still held by pods that are on their way out cannot be reused yet
        used = {u.ordinal for u in current if u.ordinal is not None}

        if len(healthy) > desired:
            for unit in reversed(healthy[desired:]):
                if self._delete(cluster, unit.name, deadline):
                    result.deleted.append(unit.name)
        elif len(healthy) < desired:
            missing = desired - len(healthy)
            ordinal = 0
            while missing > 0:
                if ordinal not in used:
                    if self._create(cluster, Role.EXECUTOR, ordinal, deadline):
                        result.created.append(child_name(cluster.name, Role.EXECUTOR, ordinal))
                    used.add(ordinal)
                    missing -= 1
                ordinal += 1

        if result.changed:
            logger.info(
                f"Scaled executors of {cluster.key} towards {desired}: "
                f"created={result.created} deleted={result.deleted}"
            )
        return result

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    def delete_children(
        self,
        cluster: BallistaCluster,
        children: list[WorkloadUnit],
        deadline: Deadline | None = None,
    ) -> list[str]:
        """Delete every listed child that is not already being deleted.

        Returns:
            Names of pods a delete was issued for.
        """
        deleted = []
        for unit in children:
            if unit.deleting:
                continue
            if self._delete(cluster, unit.name, deadline):
                deleted.append(unit.name)
        return deleted

    # -------------------------------------------------------------------------
    # Pod construction
    # -------------------------------------------------------------------------

    def resolve_image(self, cluster: BallistaCluster, role: Role) -> str:
        """Pick the image: role override, then cluster default, then platform default.

        The role override is ``image`` on the role, else the image of the
        role's main container.
        """
        spec = _require_spec(cluster)
        role_spec = self._role_spec(cluster, role)
        main, _ = _split_containers(role_spec, role)
        if role_spec.image:
            return role_spec.image
        if main and main.get("image"):
            return str(main["image"])
        if spec.image:
            return spec.image
        return f"{self._config.default_image}-{role.value}:{spec.ballista_version}"

    def build_pod(
        self, cluster: BallistaCluster, role: Role, ordinal: int | None = None
    ) -> dict[str, Any]:
        """Build the pod manifest for a cluster member.

        The role's inline containers are the starting point. The main
        container keeps its own command, args and other settings; the
        operator sets its image and adds its environment, ports and
        resources on top. Remaining containers run next to it, followed by
        the sidecars.

        Raises:
            ValidationError: If the cluster spec could not be parsed.
        """
        spec = _require_spec(cluster)
        role_spec = self._role_spec(cluster, role)
        name = child_name(cluster.name, role, ordinal)
        main, others = _split_containers(role_spec, role)

        # Operator labels override user labels so the index keeps working
        labels = dict(role_spec.labels)
        labels.update(BallistaLabels.for_child(cluster.name, role, spec.ballista_version, ordinal))

        container: dict[str, Any] = copy.deepcopy(main) if main else {}
        container["name"] = container.get("name") or role.value
        container["image"] = self.resolve_image(cluster, role)

        env: list[dict[str, Any]] = [
            {"name": "BALLISTA_CLUSTER", "value": cluster.name},
            {"name": "BALLISTA_ROLE", "value": role.value},
        ]
        if ordinal is not None:
            env.append({"name": "BALLISTA_EXECUTOR_ORDINAL", "value": str(ordinal)})
        env.extend(container.get("env") or [])
        env.extend({"name": k, "value": v} for k, v in sorted(role_spec.env_vars.items()))
        env.extend(role_spec.env)
        container["env"] = env

        pull_policy = role_spec.image_pull_policy or container.get("imagePullPolicy")
        pull_policy = pull_policy or spec.image_pull_policy
        _set_if(container, "imagePullPolicy", pull_policy)
        ports = [*(container.get("ports") or []), *(p.to_k8s() for p in role_spec.ports)]
        _set_if(container, "ports", ports)
        _set_if(container, "resources", _container_resources(role_spec, container.get("resources")))
        _set_if(container, "envFrom", [*(container.get("envFrom") or []), *role_spec.env_from])
        _set_if(
            container,
            "volumeMounts",
            [*(container.get("volumeMounts") or []), *role_spec.volume_mounts],
        )
        _set_if(container, "securityContext", role_spec.security_context)
        if role == Role.SCHEDULER:
            _set_if(container, "lifecycle", spec.scheduler.lifecycle)

        pod_spec: dict[str, Any] = {
            "containers": [container, *copy.deepcopy(others), *role_spec.sidecars],
            "restartPolicy": "Always",
        }
        _set_if(pod_spec, "initContainers", role_spec.init_containers)
        _set_if(pod_spec, "volumes", role_spec.volumes)
        _set_if(pod_spec, "nodeSelector", role_spec.node_selector)
        _set_if(pod_spec, "tolerations", role_spec.tolerations)
        _set_if(pod_spec, "affinity", role_spec.affinity)
        _set_if(pod_spec, "topologySpreadConstraints", role_spec.topology_spread_constraints)
        _set_if(
            pod_spec, "serviceAccountName", role_spec.service_account or role_spec.service_account_name
        )
        _set_if(pod_spec, "schedulerName", role_spec.scheduler_name)
        _set_if(pod_spec, "priorityClassName", role_spec.priority_class_name)
        _set_if(pod_spec, "runtimeClassName", role_spec.runtime_class_name)
        _set_if(pod_spec, "securityContext", role_spec.pod_security_context)
        _set_if(pod_spec, "dnsConfig", role_spec.dns_config)
        _set_if(pod_spec, "hostAliases", role_spec.host_aliases)
        if role_spec.host_network is not None:
            pod_spec["hostNetwork"] = role_spec.host_network
        if role_spec.share_process_namespace is not None:
            pod_spec["shareProcessNamespace"] = role_spec.share_process_namespace
        if role_spec.termination_grace_period_seconds is not None:
            pod_spec["terminationGracePeriodSeconds"] = role_spec.termination_grace_period_seconds
        _set_if(
            pod_spec,
            "imagePullSecrets",
            [{"name": s} for s in spec.image_pull_secrets] + role_spec.image_pull_secrets,
        )

        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": name,
                "namespace": cluster.namespace,
                "labels": labels,
                "annotations": dict(role_spec.annotations),
                "ownerReferences": [cluster.owner_reference()],
            },
            "spec": pod_spec,
        }

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    def _role_spec(self, cluster: BallistaCluster, role: Role) -> BallistaPodSpec:
        spec = _require_spec(cluster)
        if role == Role.SCHEDULER:
            return spec.scheduler
        return spec.executor

    def _create(
        self,
        cluster: BallistaCluster,
        role: Role,
        ordinal: int | None,
        deadline: Deadline | None,
    ) -> bool:
        """Create one pod; returns False when an owned pod already had the name."""
        body = self.build_pod(cluster, role, ordinal)
        name = body["metadata"]["name"]
        if deadline is not None:
            deadline.check(f"creating pod {name}")

        def attempt() -> bool:
            try:
                created = self._store.create_pod(cluster.namespace, body)
            except AlreadyExistsError:
                existing = self._store.get_pod(cluster.namespace, name)
                if owner_of(existing) != cluster.key:
                    raise PermanentActionError(
                        f"Pod {cluster.namespace}/{name} exists but is not owned by "
                        f"BallistaCluster {cluster.name}"
                    ) from None
                self._index.record_created(existing)
                return False
            self._index.record_created(created)
            logger.info(f"Created {role.value} pod {cluster.namespace}/{name}")
            return True

        return retry_on_conflict(attempt, self._config.conflict_retries, f"create pod {name}")

    def _delete(self, cluster: BallistaCluster, name: str, deadline: Deadline | None) -> bool:
        """Delete one pod; returns False when it was already gone."""
        if deadline is not None:
            deadline.check(f"deleting pod {name}")

        def attempt() -> bool:
            try:
                self._store.delete_pod(cluster.namespace, name)
            except NotFoundError:
                self._index.record_deleted(cluster.namespace, name)
                return False
            self._index.record_deleted(cluster.namespace, name)
            logger.info(f"Deleted pod {cluster.namespace}/{name}")
            return True

        return retry_on_conflict(attempt, self._config.conflict_retries, f"delete pod {name}")


def _require_spec(cluster: BallistaCluster) -> BallistaClusterSpec:
    if cluster.spec is None:
        raise ValidationError(
            f"BallistaCluster {cluster.key} has no usable spec: "
            f"{cluster.spec_error or 'missing spec'}",
            "spec",
        )
    return cluster.spec


def _split_containers(
    role_spec: BallistaPodSpec, role: Role
) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
    """Split inline containers into the main container and the rest."""
    containers = role_spec.containers
    for i, container in enumerate(containers):
        if container.get("name") == role.value:
            return container, containers[:i] + containers[i + 1 :]
    if containers:
        return containers[0], containers[1:]
    return None, []


def _container_resources(
    role_spec: BallistaPodSpec, base: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Container resources with the cores/memory shorthands applied over ``base``."""
    resources = copy.deepcopy(base or {})
    requests: dict[str, str] = dict(resources.get("requests") or {})
    limits: dict[str, str] = dict(resources.get("limits") or {})
    if role_spec.cores is not None:
        requests["cpu"] = str(role_spec.cores)
    if role_spec.core_limit:
        limits["cpu"] = role_spec.core_limit
    if role_spec.memory:
        requests["memory"] = role_spec.memory
        limits["memory"] = role_spec.memory

    if requests:
        resources["requests"] = requests
    if limits:
        resources["limits"] = limits
    return resources


def _set_if(target: dict[str, Any], key: str, value: Any) -> None:
    """Set ``key`` only for non-empty values."""
    if value:
        target[key] = value
