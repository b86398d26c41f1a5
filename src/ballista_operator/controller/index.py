"""Owner/role index over the pods a Ballista cluster owns.

Two extraction functions derive, from a pod alone, which cluster controls
it and which role it plays. Pods for which either extractor returns None
are invisible to every query: the index never guesses.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from ballista_operator.models.cluster import ClusterKey
from ballista_operator.models.pod import WorkloadUnit
from ballista_operator.utils.errors import BallistaError, ObservationError
from ballista_operator.utils.labels import CLUSTER_KIND, GROUP_VERSION, BallistaLabels, Role

if TYPE_CHECKING:
    from ballista_operator.clients.base import ResourceStore, WatchEvent

logger = logging.getLogger(__name__)

# Index field names, as registered with the store
OWNER_INDEX = ".metadata.controller"
ROLE_INDEX = "ballista-role"

Extractor = Callable[[dict[str, Any]], Any]


def owner_of(pod: dict[str, Any]) -> ClusterKey | None:
    """Return the BallistaCluster that controls ``pod``, if any."""
    metadata = pod.get("metadata") or {}
    for ref in metadata.get("ownerReferences") or []:
        if not ref.get("controller"):
            continue
        # Only the controller reference counts, and it must be ours
        if ref.get("apiVersion") != GROUP_VERSION or ref.get("kind") != CLUSTER_KIND:
            return None
        if not ref.get("name"):
            return None
        return ClusterKey(metadata.get("namespace") or "default", ref["name"])
    return None


def role_of(pod: dict[str, Any]) -> Role | None:
    """Return the Ballista role of ``pod`` from its role label, if any."""
    labels = (pod.get("metadata") or {}).get("labels") or {}
    try:
        return Role(labels.get(BallistaLabels.ROLE, ""))
    except ValueError:
        return None


class IndexRegistry:
    """Named extraction functions the index is computed from."""

    def __init__(self) -> None:
        self._extractors: dict[str, Extractor] = {}

    def register(self, field: str, extractor: Extractor) -> None:
        """Register ``extractor`` under ``field``. Re-registering replaces it."""
        if field in self._extractors:
            logger.warning(f"Replacing extractor for index field {field}")
        self._extractors[field] = extractor
        logger.debug(f"Registered index field {field}")

    def extract(self, field: str, obj: dict[str, Any]) -> Any:
        """Apply the extractor for ``field``; unregistered fields yield None."""
        extractor = self._extractors.get(field)
        if extractor is None:
            return None
        return extractor(obj)

    @property
    def fields(self) -> list[str]:
        return sorted(self._extractors)

    def owner_and_role(self, pod: dict[str, Any]) -> tuple[ClusterKey | None, Role | None]:
        return self.extract(OWNER_INDEX, pod), self.extract(ROLE_INDEX, pod)


def default_registry() -> IndexRegistry:
    """Registry with the owner and role extractors."""
    registry = IndexRegistry()
    registry.register(OWNER_INDEX, owner_of)
    registry.register(ROLE_INDEX, role_of)
    return registry


class ChildIndex(ABC):
    """Lookup of the pods that belong to a cluster."""

    @abstractmethod
    def children_of(self, key: ClusterKey) -> list[WorkloadUnit]:
        """All indexed children of a cluster, sorted by name.

        Raises:
            ObservationError: If the children cannot be observed right now.
        """

    def children_of_role(self, key: ClusterKey, role: Role) -> list[WorkloadUnit]:
        """Indexed children of a cluster with the given role."""
        return [unit for unit in self.children_of(key) if unit.role == role]

    def record_created(self, pod: dict[str, Any]) -> None:
        """Make a pod this process just created visible to queries."""

    def record_deleted(self, namespace: str, name: str) -> None:
        """Note that this process just asked the API server to delete a pod."""


class CachedChildIndex(ChildIndex):
    """Index maintained from watch events.

    Queries fail with ObservationError until the first full resync, after a
    watch error, and when no resync happened within ``staleness_seconds``.
    """

    def __init__(
        self,
        registry: IndexRegistry,
        staleness_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._staleness = staleness_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._by_owner: dict[ClusterKey, dict[str, WorkloadUnit]] = {}
        self._owners: dict[tuple[str, str], ClusterKey] = {}
        self._synced_at: float | None = None
        self._error: str | None = None

    @property
    def has_synced(self) -> bool:
        return self._synced_at is not None

    def handle_event(self, event: WatchEvent) -> None:
        """Apply one watch event."""
        if event.type == "RESYNC":
            self.replace(event.items)
        elif event.type == "ERROR":
            self.mark_failed(event.message or "watch failed")
        elif event.object is None:
            return
        elif event.type == "DELETED":
            self.remove(event.object)
        else:
            self.upsert(event.object)

    def replace(self, pods: list[dict[str, Any]]) -> None:
        """Replace the whole index with a fresh listing."""
        with self._lock:
            self._by_owner.clear()
            self._owners.clear()
            for pod in pods:
                self._upsert_locked(pod)
            self._synced_at = self._clock()
            self._error = None

    def upsert(self, pod: dict[str, Any]) -> None:
        with self._lock:
            self._upsert_locked(pod)

    def remove(self, pod: dict[str, Any]) -> None:
        """Drop a pod the API server reported gone."""
        metadata = pod.get("metadata") or {}
        with self._lock:
            self._remove_locked(metadata.get("namespace") or "default", metadata.get("name", ""))

    def mark_failed(self, message: str) -> None:
        """Flag the cache as unreliable until the next resync."""
        with self._lock:
            self._error = message
        logger.warning(f"Child index marked stale: {message}")

    def record_created(self, pod: dict[str, Any]) -> None:
        self.upsert(pod)

    def record_deleted(self, namespace: str, name: str) -> None:
        """Mark a pod this process asked to delete as terminating.

        The pod stays indexed until the watch reports it DELETED or a resync
        no longer lists it.
        """
        with self._lock:
            owner = self._owners.get((namespace, name))
            if owner is None:
                return
            children = self._by_owner.get(owner, {})
            unit = children.get(name)
            if unit is not None and not unit.deleting:
                children[name] = unit.model_copy(update={"deleting": True})

    def children_of(self, key: ClusterKey) -> list[WorkloadUnit]:
        with self._lock:
            self._check_fresh()
            children = self._by_owner.get(key, {})
            return [children[name] for name in sorted(children)]

    def _check_fresh(self) -> None:
        if self._synced_at is None:
            raise ObservationError("Child index has not synced yet")
        if self._error is not None:
            raise ObservationError(f"Child index is stale: {self._error}")
        age = self._clock() - self._synced_at
        if age > self._staleness:
            raise ObservationError(
                f"Child index last refreshed {age:.0f}s ago (limit {self._staleness:.0f}s)"
            )

    def _upsert_locked(self, pod: dict[str, Any]) -> None:
        metadata = pod.get("metadata") or {}
        namespace = metadata.get("namespace") or "default"
        name = metadata.get("name", "")
        owner, role = self._registry.owner_and_role(pod)

        # Drop any previous entry; ownership or labels may have changed
        self._remove_locked(namespace, name)

        if owner is None or role is None:
            return
        self._owners[(namespace, name)] = owner
        self._by_owner.setdefault(owner, {})[name] = WorkloadUnit.from_resource(pod)

    def _remove_locked(self, namespace: str, name: str) -> None:
        owner = self._owners.pop((namespace, name), None)
        if owner is None:
            return
        children = self._by_owner.get(owner, {})
        children.pop(name, None)
        if not children:
            self._by_owner.pop(owner, None)


class ListingChildIndex(ChildIndex):
    """Index that lists the cluster's pods from the store on every query."""

    def __init__(self, store: ResourceStore, registry: IndexRegistry) -> None:
        self._store = store
        self._registry = registry

    def children_of(self, key: ClusterKey) -> list[WorkloadUnit]:
        try:
            pods = self._store.list_pods(
                namespace=key.namespace,
                label_selector=BallistaLabels.cluster_selector(key.name),
            )
        except BallistaError as e:
            raise ObservationError(f"Failed to list pods of {key}: {e}") from e

        units = []
        for pod in pods:
            owner, role = self._registry.owner_and_role(pod)
            if owner == key and role is not None:
                units.append(WorkloadUnit.from_resource(pod))
        return sorted(units, key=lambda unit: unit.name)
