"""Offline reconciliation of BallistaCluster manifests.

Loads manifests into a MemoryStore whose pods become ready as soon as they
are created, reconciles every cluster until it settles and reports the
resulting status and pods. Useful to check what the operator would do with
a manifest without a Kubernetes cluster.
"""

from __future__ import annotations

import logging
from typing import Any

import yaml

from ballista_operator.clients.memory import MemoryStore
from ballista_operator.config import OperatorConfig
from ballista_operator.controller.index import IndexRegistry, ListingChildIndex
from ballista_operator.controller.reconciler import BallistaClusterReconciler, ResultKind
from ballista_operator.models.cluster import ClusterKey
from ballista_operator.plugin_manager import PluginManager
from ballista_operator.utils.labels import CLUSTER_KIND, BallistaLabels

logger = logging.getLogger(__name__)

MAX_ROUNDS = 20


def load_manifests(text: str) -> list[dict[str, Any]]:
    """Parse the BallistaCluster documents of a multi-document YAML string."""
    clusters = []
    for doc in yaml.safe_load_all(text):
        if not doc:
            continue
        if not isinstance(doc, dict) or doc.get("kind") != CLUSTER_KIND:
            kind = doc.get("kind") if isinstance(doc, dict) else type(doc).__name__
            logger.warning(f"Skipping document of kind {kind}")
            continue
        clusters.append(doc)
    return clusters


def simulate(
    manifests: list[dict[str, Any]],
    config: OperatorConfig,
    max_rounds: int = MAX_ROUNDS,
) -> list[dict[str, Any]]:
    """Reconcile ``manifests`` until each cluster settles.

    Returns:
        One report per cluster with its status and pod names.
    """
    store = MemoryStore(auto_ready=True)
    plugin_manager = PluginManager()
    plugin_manager.load_core_plugins()
    registry = IndexRegistry()
    plugin_manager.register_all_indexers(registry)
    reconciler = BallistaClusterReconciler(store, ListingChildIndex(store, registry), config)

    keys = []
    for manifest in manifests:
        stored = store.apply_cluster(manifest)
        metadata = stored["metadata"]
        keys.append(ClusterKey(metadata["namespace"], metadata["name"]))

    reports = []
    for key in keys:
        rounds = 0
        for rounds in range(1, max_rounds + 1):
            result = reconciler.reconcile(key)
            if result.kind in (ResultKind.DONE, ResultKind.AFTER):
                break
        logger.info(f"{key} settled after {rounds} rounds")

        cluster = store.get_cluster(key.namespace, key.name)
        pods = store.list_pods(key.namespace, BallistaLabels.cluster_selector(key.name))
        reports.append(
            {
                "name": key.name,
                "namespace": key.namespace,
                "status": cluster.get("status") or {},
                "pods": [pod["metadata"]["name"] for pod in pods],
            }
        )
    return reports


def render(reports: list[dict[str, Any]]) -> str:
    return yaml.safe_dump_all(reports, sort_keys=False)
