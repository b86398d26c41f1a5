"""In-memory ResourceStore.

Keeps BallistaClusters and pods as wire-format dicts and mimics the API
server behaviour the operator depends on: resourceVersion checks,
finalizers holding deletion, deletionTimestamp, label-selector listing and
watch notifications. Used by the test-suite and by ``--simulate``.

Owned pods are not garbage collected when their cluster disappears; the
operator's own cleanup is the only thing that removes them.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from collections import defaultdict
from typing import Any

from ballista_operator.clients.base import ResourceStore, WatchEvent, WatchHandler
from ballista_operator.models.common import utc_now
from ballista_operator.utils.errors import (
    AlreadyExistsError,
    NotFoundError,
    VersionConflictError,
)
from ballista_operator.utils.labels import CLUSTER_KIND, GROUP_VERSION

logger = logging.getLogger(__name__)

POD_KIND = "Pod"


def _matches_selector(labels: dict[str, str], label_selector: str | None) -> bool:
    """Evaluate an equality-based label selector (``k=v,k2=v2``)."""
    if not label_selector:
        return True
    for term in label_selector.split(","):
        term = term.strip()
        if not term:
            continue
        key, _, value = term.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class MemoryStore(ResourceStore):
    """ResourceStore holding everything in process memory.

    Args:
        auto_ready: Mark newly created pods Running and Ready immediately.
        watch_resync_seconds: Interval at which watches re-deliver a full listing.
        graceful_delete: Deleting a pod only sets its deletionTimestamp, as
            the API server does during the grace period. The pod disappears
            on ``finish_pod_deletions``.
    """

    def __init__(
        self,
        auto_ready: bool = False,
        watch_resync_seconds: float = 30.0,
        graceful_delete: bool = False,
    ) -> None:
        self.auto_ready = auto_ready
        self.watch_resync_seconds = watch_resync_seconds
        self.graceful_delete = graceful_delete
        self._lock = threading.RLock()
        self._objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._versions = itertools.count(1)
        self._watchers: dict[str, list[WatchHandler]] = defaultdict(list)
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self.created_pods: list[str] = []
        self.deleted_pods: list[str] = []

    # -------------------------------------------------------------------------
    # Test and simulation helpers
    # -------------------------------------------------------------------------

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        with self._lock:
            self._failures[operation].extend([error] * times)

    def clear_failures(self) -> None:
        with self._lock:
            self._failures.clear()

    def apply_cluster(self, body: dict[str, Any]) -> dict[str, Any]:
        """Create or update a BallistaCluster the way a user would.

        Updating replaces the spec and bumps ``generation`` when it changed;
        status and finalizers are left alone.
        """
        body = copy.deepcopy(body)
        metadata = body.setdefault("metadata", {})
        namespace = metadata.setdefault("namespace", "default")
        name = metadata["name"]
        key = (CLUSTER_KIND, namespace, name)

        with self._lock:
            existing = self._objects.get(key)
            if existing is None:
                body.setdefault("apiVersion", GROUP_VERSION)
                body.setdefault("kind", CLUSTER_KIND)
                metadata["uid"] = f"ballistacluster-{name}-uid-{next(self._versions)}"
                metadata["generation"] = 1
                metadata.setdefault("finalizers", [])
                body.setdefault("status", {})
                event_type = "ADDED"
                stored = body
            else:
                stored = existing
                if stored.get("spec") != body.get("spec"):
                    stored["spec"] = body.get("spec")
                    stored["metadata"]["generation"] += 1
                for field_name in ("labels", "annotations"):
                    if field_name in metadata:
                        stored["metadata"][field_name] = metadata[field_name]
                event_type = "MODIFIED"
            stored["metadata"]["resourceVersion"] = str(next(self._versions))
            self._objects[key] = stored
            snapshot = copy.deepcopy(stored)

        self._notify(CLUSTER_KIND, WatchEvent(type=event_type, object=snapshot))
        return snapshot

    def delete_cluster(self, namespace: str, name: str) -> None:
        """Request deletion of a BallistaCluster the way a user would."""
        key = (CLUSTER_KIND, namespace, name)
        with self._lock:
            stored = self._objects.get(key)
            if stored is None:
                raise NotFoundError(CLUSTER_KIND, name, namespace)
            if stored["metadata"].get("finalizers"):
                stored["metadata"].setdefault("deletionTimestamp", utc_now())
                stored["metadata"]["resourceVersion"] = str(next(self._versions))
                event = WatchEvent(type="MODIFIED", object=copy.deepcopy(stored))
            else:
                del self._objects[key]
                event = WatchEvent(type="DELETED", object=copy.deepcopy(stored))
        self._notify(CLUSTER_KIND, event)

    def has_cluster(self, namespace: str, name: str) -> bool:
        with self._lock:
            return (CLUSTER_KIND, namespace, name) in self._objects

    def set_pod_status(
        self, namespace: str, name: str, ready: bool, phase: str | None = None
    ) -> None:
        """Flip a pod's readiness (and optionally phase)."""
        key = (POD_KIND, namespace, name)
        with self._lock:
            pod = self._objects.get(key)
            if pod is None:
                raise NotFoundError(POD_KIND, name, namespace)
            pod["status"] = _pod_status(ready, phase)
            pod["metadata"]["resourceVersion"] = str(next(self._versions))
            snapshot = copy.deepcopy(pod)
        self._notify(POD_KIND, WatchEvent(type="MODIFIED", object=snapshot))

    def add_pod(self, body: dict[str, Any]) -> dict[str, Any]:
        """Insert a pod created by some other actor (bypasses bookkeeping)."""
        namespace = body.get("metadata", {}).get("namespace", "default")
        created = self._insert_pod(namespace, body)
        self._notify(POD_KIND, WatchEvent(type="ADDED", object=created))
        return created

    def finish_pod_deletions(self, namespace: str | None = None) -> list[str]:
        """Remove every pod whose deletion was requested, as the kubelet would.

        Returns:
            Names of the removed pods.
        """
        with self._lock:
            gone = [
                (key, obj)
                for key, obj in sorted(self._objects.items())
                if key[0] == POD_KIND
                and (namespace is None or key[1] == namespace)
                and obj["metadata"].get("deletionTimestamp")
            ]
            for key, _ in gone:
                del self._objects[key]
        for _, pod in gone:
            self._notify(POD_KIND, WatchEvent(type="DELETED", object=copy.deepcopy(pod)))
        return [key[2] for key, _ in gone]

    def subscribe_pods(self, handler: WatchHandler) -> None:
        """Deliver pod events to ``handler`` synchronously, without a watch thread."""
        with self._lock:
            self._watchers[POD_KIND].append(handler)

    def pod_names(self, namespace: str | None = None) -> list[str]:
        with self._lock:
            return sorted(
                name
                for kind, ns, name in self._objects
                if kind == POD_KIND and (namespace is None or ns == namespace)
            )

    # -------------------------------------------------------------------------
    # ResourceStore
    # -------------------------------------------------------------------------

    def get_cluster(self, namespace: str, name: str) -> dict[str, Any]:
        self._maybe_fail("get_cluster")
        with self._lock:
            stored = self._objects.get((CLUSTER_KIND, namespace, name))
            if stored is None:
                raise NotFoundError(CLUSTER_KIND, name, namespace)
            return copy.deepcopy(stored)

    def list_clusters(self, namespace: str | None = None) -> list[dict[str, Any]]:
        self._maybe_fail("list_clusters")
        with self._lock:
            return [
                copy.deepcopy(obj)
                for (kind, ns, _), obj in sorted(self._objects.items())
                if kind == CLUSTER_KIND and (namespace is None or ns == namespace)
            ]

    def update_cluster(self, body: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("update_cluster")
        metadata = body["metadata"]
        key = (CLUSTER_KIND, metadata["namespace"], metadata["name"])
        with self._lock:
            stored = self._check_version(key, metadata)
            stored["metadata"]["finalizers"] = list(metadata.get("finalizers") or [])
            stored["metadata"]["labels"] = dict(metadata.get("labels") or {})
            stored["metadata"]["annotations"] = dict(metadata.get("annotations") or {})
            if stored.get("spec") != body.get("spec"):
                stored["spec"] = copy.deepcopy(body.get("spec"))
                stored["metadata"]["generation"] += 1
            stored["metadata"]["resourceVersion"] = str(next(self._versions))

            if stored["metadata"].get("deletionTimestamp") and not stored["metadata"]["finalizers"]:
                del self._objects[key]
                event = WatchEvent(type="DELETED", object=copy.deepcopy(stored))
            else:
                event = WatchEvent(type="MODIFIED", object=copy.deepcopy(stored))
            result = copy.deepcopy(stored)
        self._notify(CLUSTER_KIND, event)
        return result

    def update_cluster_status(self, body: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("update_cluster_status")
        metadata = body["metadata"]
        key = (CLUSTER_KIND, metadata["namespace"], metadata["name"])
        with self._lock:
            stored = self._check_version(key, metadata)
            stored["status"] = copy.deepcopy(body.get("status") or {})
            stored["metadata"]["resourceVersion"] = str(next(self._versions))
            result = copy.deepcopy(stored)
        self._notify(CLUSTER_KIND, WatchEvent(type="MODIFIED", object=result))
        return copy.deepcopy(result)

    def list_pods(
        self, namespace: str | None = None, label_selector: str | None = None
    ) -> list[dict[str, Any]]:
        self._maybe_fail("list_pods")
        with self._lock:
            return [
                copy.deepcopy(obj)
                for (kind, ns, _), obj in sorted(self._objects.items())
                if kind == POD_KIND
                and (namespace is None or ns == namespace)
                and _matches_selector(obj["metadata"].get("labels") or {}, label_selector)
            ]

    def get_pod(self, namespace: str, name: str) -> dict[str, Any]:
        self._maybe_fail("get_pod")
        with self._lock:
            stored = self._objects.get((POD_KIND, namespace, name))
            if stored is None:
                raise NotFoundError(POD_KIND, name, namespace)
            return copy.deepcopy(stored)

    def create_pod(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("create_pod")
        created = self._insert_pod(namespace, body)
        self.created_pods.append(created["metadata"]["name"])
        self._notify(POD_KIND, WatchEvent(type="ADDED", object=created))
        return created

    def delete_pod(self, namespace: str, name: str) -> None:
        self._maybe_fail("delete_pod")
        key = (POD_KIND, namespace, name)
        with self._lock:
            stored = self._objects.get(key)
            if stored is None:
                raise NotFoundError(POD_KIND, name, namespace)
            if not self.graceful_delete:
                del self._objects[key]
                event = WatchEvent(type="DELETED", object=stored)
            elif stored["metadata"].get("deletionTimestamp"):
                # Already terminating; the API server accepts the repeat
                return
            else:
                stored["metadata"]["deletionTimestamp"] = utc_now()
                stored["metadata"]["resourceVersion"] = str(next(self._versions))
                event = WatchEvent(type="MODIFIED", object=copy.deepcopy(stored))
            self.deleted_pods.append(name)
        self._notify(POD_KIND, event)

    def watch_clusters(
        self, handler: WatchHandler, stop: threading.Event, namespace: str | None = None
    ) -> None:
        self._watch(CLUSTER_KIND, handler, stop, namespace)

    def watch_pods(
        self, handler: WatchHandler, stop: threading.Event, namespace: str | None = None
    ) -> None:
        self._watch(POD_KIND, handler, stop, namespace)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _watch(
        self,
        kind: str,
        handler: WatchHandler,
        stop: threading.Event,
        namespace: str | None,
    ) -> None:
        def scoped(event: WatchEvent) -> None:
            if namespace and event.object is not None:
                if event.object.get("metadata", {}).get("namespace") != namespace:
                    return
            handler(event)

        with self._lock:
            items = self._snapshot(kind, namespace)
            self._watchers[kind].append(scoped)
        handler(WatchEvent(type="RESYNC", items=items))
        try:
            while not stop.wait(self.watch_resync_seconds):
                with self._lock:
                    items = self._snapshot(kind, namespace)
                handler(WatchEvent(type="RESYNC", items=items))
        finally:
            with self._lock:
                self._watchers[kind].remove(scoped)

    def _snapshot(self, kind: str, namespace: str | None) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(obj)
            for (k, ns, _), obj in sorted(self._objects.items())
            if k == kind and (namespace is None or ns == namespace)
        ]

    def _notify(self, kind: str, event: WatchEvent) -> None:
        with self._lock:
            watchers = list(self._watchers[kind])
        for handler in watchers:
            handler(event)

    def _maybe_fail(self, operation: str) -> None:
        with self._lock:
            pending = self._failures.get(operation)
            if not pending:
                return
            error = pending.pop(0)
        logger.debug(f"Injected failure for {operation}: {error}")
        raise error

    def _check_version(
        self, key: tuple[str, str, str], metadata: dict[str, Any]
    ) -> dict[str, Any]:
        stored = self._objects.get(key)
        if stored is None:
            raise NotFoundError(key[0], key[2], key[1])
        expected = metadata.get("resourceVersion")
        if expected and expected != stored["metadata"]["resourceVersion"]:
            raise VersionConflictError(
                f"{key[0]} '{key[1]}/{key[2]}' changed: expected resourceVersion "
                f"{expected}, found {stored['metadata']['resourceVersion']}"
            )
        return stored

    def _insert_pod(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        pod = copy.deepcopy(body)
        metadata = pod.setdefault("metadata", {})
        metadata["namespace"] = namespace
        name = metadata["name"]
        key = (POD_KIND, namespace, name)
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(POD_KIND, name, namespace)
            pod.setdefault("apiVersion", "v1")
            pod.setdefault("kind", POD_KIND)
            metadata["uid"] = f"pod-{name}-uid-{next(self._versions)}"
            metadata["resourceVersion"] = str(next(self._versions))
            metadata["creationTimestamp"] = utc_now()
            if "status" not in pod:
                pod["status"] = _pod_status(self.auto_ready)
            self._objects[key] = pod
            return copy.deepcopy(pod)


def _pod_status(ready: bool, phase: str | None = None) -> dict[str, Any]:
    return {
        "phase": phase or ("Running" if ready else "Pending"),
        "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
    }
