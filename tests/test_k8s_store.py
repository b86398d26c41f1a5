"""Tests for K8sStore against mocked kubernetes API clients."""

from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from ballista_operator.clients.base import BallistaCRDs, K8sStore
from ballista_operator.config import OperatorConfig
from ballista_operator.utils.errors import (
    AlreadyExistsError,
    NotFoundError,
    VersionConflictError,
)


def _api_error(status: int, body: str = "") -> ApiException:
    exc = ApiException(status=status, reason="reason")
    exc.body = body
    return exc


@pytest.fixture
def k8s_store() -> K8sStore:
    """A K8sStore wired to mock API clients."""
    store = K8sStore(OperatorConfig(_env_file=None))
    store._api_client = MagicMock()
    store._api_client.sanitize_for_serialization.side_effect = lambda obj: obj
    store._core_v1 = MagicMock()
    store._custom = MagicMock()
    return store


class TestConnection:
    def test_not_connected(self) -> None:
        store = K8sStore(OperatorConfig(_env_file=None))

        assert not store.is_connected
        with pytest.raises(RuntimeError, match="not connected"):
            store.core_v1
        with pytest.raises(RuntimeError, match="not connected"):
            store._to_dict({})

    def test_disconnect(self, k8s_store: K8sStore) -> None:
        api_client = k8s_store._api_client

        k8s_store.disconnect()

        api_client.close.assert_called_once()
        assert not k8s_store.is_connected


class TestClusterOperations:
    """BallistaCluster calls go through CustomObjectsApi."""

    def test_get_cluster(self, k8s_store: K8sStore) -> None:
        k8s_store.custom.get_namespaced_custom_object.return_value = {"kind": "BallistaCluster"}

        assert k8s_store.get_cluster("default", "demo") == {"kind": "BallistaCluster"}
        k8s_store.custom.get_namespaced_custom_object.assert_called_once_with(
            "ballista.minzhou.info", "v1", "default", "ballistaclusters", "demo"
        )

    def test_get_cluster_not_found(self, k8s_store: K8sStore) -> None:
        k8s_store.custom.get_namespaced_custom_object.side_effect = _api_error(404)

        with pytest.raises(NotFoundError):
            k8s_store.get_cluster("default", "demo")

    def test_list_all_namespaces(self, k8s_store: K8sStore) -> None:
        k8s_store.custom.list_cluster_custom_object.return_value = {"items": [{"a": 1}]}

        assert k8s_store.list_clusters() == [{"a": 1}]

    def test_status_update_uses_subresource(self, k8s_store: K8sStore) -> None:
        body = {"metadata": {"name": "demo", "namespace": "default"}, "status": {}}

        k8s_store.update_cluster_status(body)

        k8s_store.custom.replace_namespaced_custom_object_status.assert_called_once_with(
            "ballista.minzhou.info", "v1", "default", "ballistaclusters", "demo", body
        )
        k8s_store.custom.replace_namespaced_custom_object.assert_not_called()

    def test_update_conflict(self, k8s_store: K8sStore) -> None:
        k8s_store.custom.replace_namespaced_custom_object.side_effect = _api_error(
            409, '{"reason": "Conflict"}'
        )

        with pytest.raises(VersionConflictError):
            k8s_store.update_cluster({"metadata": {"name": "demo", "namespace": "default"}})


class TestPodOperations:
    """Pod calls go through CoreV1Api."""

    def test_create_pod_clash(self, k8s_store: K8sStore) -> None:
        k8s_store.core_v1.create_namespaced_pod.side_effect = _api_error(
            409, '{"reason": "AlreadyExists"}'
        )

        with pytest.raises(AlreadyExistsError):
            k8s_store.create_pod("default", {"metadata": {"name": "demo-scheduler"}})

    def test_list_pods_with_selector(self, k8s_store: K8sStore) -> None:
        k8s_store.core_v1.list_namespaced_pod.return_value = MagicMock(items=[{"p": 1}])

        assert k8s_store.list_pods("default", "a=b") == [{"p": 1}]
        k8s_store.core_v1.list_namespaced_pod.assert_called_once_with(
            namespace="default", label_selector="a=b"
        )

    def test_delete_missing_pod(self, k8s_store: K8sStore) -> None:
        k8s_store.core_v1.delete_namespaced_pod.side_effect = _api_error(404)

        with pytest.raises(NotFoundError):
            k8s_store.delete_pod("default", "demo-executor-0")


class TestCrdAvailable:
    def test_served(self, k8s_store: K8sStore) -> None:
        assert k8s_store.crd_available(BallistaCRDs.BALLISTA_CLUSTER) is True

    def test_not_served(self, k8s_store: K8sStore) -> None:
        k8s_store.custom.list_cluster_custom_object.side_effect = _api_error(404)

        assert k8s_store.crd_available(BallistaCRDs.BALLISTA_CLUSTER) is False
