"""Shared fixtures for Ballista operator tests."""

from collections.abc import Callable
from typing import Any

import pytest

from ballista_operator.clients.memory import MemoryStore
from ballista_operator.config import OperatorConfig
from ballista_operator.controller.index import ListingChildIndex, default_registry
from ballista_operator.controller.reconciler import BallistaClusterReconciler
from ballista_operator.utils.labels import CLUSTER_KIND, GROUP_VERSION, BallistaLabels


@pytest.fixture
def config() -> OperatorConfig:
    """Operator config with short timings and no environment influence."""
    return OperatorConfig(
        _env_file=None,
        workers=2,
        resync_seconds=60,
        backoff_base_seconds=0.01,
        backoff_max_seconds=1,
        reconcile_timeout_seconds=30,
        staleness_seconds=120,
        pending_requeue_seconds=5,
        conflict_retries=3,
        max_permanent_attempts=3,
    )


@pytest.fixture
def store() -> MemoryStore:
    """In-memory store whose pods start Pending."""
    return MemoryStore()


@pytest.fixture
def ready_store() -> MemoryStore:
    """In-memory store whose pods are Running and Ready on creation."""
    return MemoryStore(auto_ready=True)


@pytest.fixture
def make_manifest() -> Callable[..., dict[str, Any]]:
    """Factory for BallistaCluster manifests."""

    def _make(
        name: str = "demo",
        namespace: str = "default",
        instances: int = 3,
        version: str = "0.12.0",
        **spec_overrides: Any,
    ) -> dict[str, Any]:
        spec: dict[str, Any] = {
            "ballistaVersion": version,
            "scheduler": {"cores": 1, "memory": "1Gi"},
            "executor": {"instances": instances, "cores": 2, "memory": "2Gi"},
        }
        spec.update(spec_overrides)
        return {
            "apiVersion": GROUP_VERSION,
            "kind": CLUSTER_KIND,
            "metadata": {"name": name, "namespace": namespace},
            "spec": spec,
        }

    return _make


@pytest.fixture
def make_pod() -> Callable[..., dict[str, Any]]:
    """Factory for pods, owned by a cluster unless ``owner`` is None."""

    def _make(
        name: str,
        owner: str | None = "demo",
        role: str | None = "executor",
        ordinal: int | None = None,
        namespace: str = "default",
        ready: bool = True,
        phase: str | None = None,
        deleting: bool = False,
        owner_kind: str = CLUSTER_KIND,
    ) -> dict[str, Any]:
        labels = {BallistaLabels.MANAGED_BY: BallistaLabels.MANAGED_BY_VALUE}
        if owner is not None:
            labels[BallistaLabels.CLUSTER] = owner
        if role is not None:
            labels[BallistaLabels.ROLE] = role
        if ordinal is not None:
            labels[BallistaLabels.ORDINAL] = str(ordinal)

        metadata: dict[str, Any] = {"name": name, "namespace": namespace, "labels": labels}
        if owner is not None:
            metadata["ownerReferences"] = [
                {
                    "apiVersion": GROUP_VERSION,
                    "kind": owner_kind,
                    "name": owner,
                    "uid": f"{owner}-uid",
                    "controller": True,
                }
            ]
        if deleting:
            metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"

        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": metadata,
            "status": {
                "phase": phase or ("Running" if ready else "Pending"),
                "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
            },
        }

    return _make


@pytest.fixture
def index(store: MemoryStore) -> ListingChildIndex:
    return ListingChildIndex(store, default_registry())


@pytest.fixture
def reconciler(
    store: MemoryStore, index: ListingChildIndex, config: OperatorConfig
) -> BallistaClusterReconciler:
    return BallistaClusterReconciler(store, index, config)
