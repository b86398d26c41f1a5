"""Resource store interface and its Kubernetes implementation.

The reconciler only talks to the cluster through ``ResourceStore``. Objects
cross this boundary as plain dicts in the Kubernetes wire format, the same
shape ``CustomObjectsApi`` returns.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from kubernetes import client, watch  # type: ignore[import-untyped]
from kubernetes import config as kube_config
from kubernetes.client import ApiException  # type: ignore[import-untyped]
from urllib3.exceptions import HTTPError

from ballista_operator.utils.errors import TransientStoreError, translate_api_exception
from ballista_operator.utils.labels import CLUSTER_KIND, GROUP, VERSION

if TYPE_CHECKING:
    from ballista_operator.config import OperatorConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CRDDefinition:
    """Custom resource definition coordinates."""

    group: str
    version: str
    plural: str
    kind: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


class BallistaCRDs:
    """Ballista operator CRD definitions."""

    BALLISTA_CLUSTER = CRDDefinition(
        group=GROUP,
        version=VERSION,
        plural="ballistaclusters",
        kind=CLUSTER_KIND,
    )

    @classmethod
    def all_crds(cls) -> list[CRDDefinition]:
        """Return all CRD definitions."""
        return [cls.BALLISTA_CLUSTER]


@dataclass
class WatchEvent:
    """A change notification delivered by a store watch.

    ``RESYNC`` carries the complete current list in ``items`` and replaces
    whatever the consumer knew before. ``ERROR`` means the stream broke and
    the consumer's view may be stale until the next ``RESYNC``.
    """

    type: str
    object: dict[str, Any] | None = None
    items: list[dict[str, Any]] = field(default_factory=list)
    message: str | None = None


WatchHandler = Callable[[WatchEvent], None]


class ResourceStore(ABC):
    """Everything the operator needs from the orchestration platform."""

    @abstractmethod
    def get_cluster(self, namespace: str, name: str) -> dict[str, Any]:
        """Get a BallistaCluster. Raises NotFoundError if absent."""

    @abstractmethod
    def list_clusters(self, namespace: str | None = None) -> list[dict[str, Any]]:
        """List BallistaClusters in a namespace (all namespaces when None)."""

    @abstractmethod
    def update_cluster(self, body: dict[str, Any]) -> dict[str, Any]:
        """Replace a BallistaCluster's metadata and spec.

        ``body.metadata.resourceVersion`` is the expected version; a mismatch
        raises VersionConflictError.
        """

    @abstractmethod
    def update_cluster_status(self, body: dict[str, Any]) -> dict[str, Any]:
        """Replace the status subresource, checked against resourceVersion."""

    @abstractmethod
    def list_pods(
        self, namespace: str | None = None, label_selector: str | None = None
    ) -> list[dict[str, Any]]:
        """List pods, optionally filtered by an equality label selector."""

    @abstractmethod
    def get_pod(self, namespace: str, name: str) -> dict[str, Any]:
        """Get a pod. Raises NotFoundError if absent."""

    @abstractmethod
    def create_pod(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        """Create a pod. Raises AlreadyExistsError on a name clash."""

    @abstractmethod
    def delete_pod(self, namespace: str, name: str) -> None:
        """Delete a pod. Raises NotFoundError if already gone."""

    @abstractmethod
    def watch_clusters(
        self, handler: WatchHandler, stop: threading.Event, namespace: str | None = None
    ) -> None:
        """Deliver BallistaCluster events to ``handler`` until ``stop`` is set."""

    @abstractmethod
    def watch_pods(
        self, handler: WatchHandler, stop: threading.Event, namespace: str | None = None
    ) -> None:
        """Deliver managed pod events to ``handler`` until ``stop`` is set."""

    def crd_available(self, crd: CRDDefinition) -> bool:
        """Check whether a CRD is served. Stores without discovery say yes."""
        return True


class K8sStore(ResourceStore):
    """ResourceStore backed by a real Kubernetes API server."""

    WATCH_TIMEOUT_SECONDS = 60
    WATCH_RETRY_SECONDS = 5

    def __init__(self, config_obj: OperatorConfig, pod_label_selector: str | None = None) -> None:
        self._config = config_obj
        self._pod_label_selector = pod_label_selector
        self._api_client: client.ApiClient | None = None
        self._core_v1: client.CoreV1Api | None = None
        self._custom: client.CustomObjectsApi | None = None

    @property
    def is_connected(self) -> bool:
        return self._api_client is not None

    def connect(self) -> None:
        """Load credentials and create API clients."""
        from ballista_operator.config import AuthMode

        mode = self._config.resolve_auth_mode()
        if mode == AuthMode.INCLUSTER:
            logger.info("Using in-cluster service account credentials")
            kube_config.load_incluster_config()
        else:
            logger.info(f"Using kubeconfig {self._config.effective_kubeconfig}")
            kube_config.load_kube_config(
                config_file=str(self._config.effective_kubeconfig),
                context=self._config.kubeconfig_context,
            )

        self._api_client = client.ApiClient()
        self._core_v1 = client.CoreV1Api(self._api_client)
        self._custom = client.CustomObjectsApi(self._api_client)

    def disconnect(self) -> None:
        """Release API clients."""
        if self._api_client is not None:
            self._api_client.close()
        self._api_client = None
        self._core_v1 = None
        self._custom = None

    @property
    def core_v1(self) -> client.CoreV1Api:
        if self._core_v1 is None:
            raise RuntimeError("K8sStore not connected")
        return self._core_v1

    @property
    def custom(self) -> client.CustomObjectsApi:
        if self._custom is None:
            raise RuntimeError("K8sStore not connected")
        return self._custom

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        """Serialize a typed client model into the wire format."""
        if self._api_client is None:
            raise RuntimeError("K8sStore not connected")
        result: dict[str, Any] = self._api_client.sanitize_for_serialization(obj)
        return result

    # -------------------------------------------------------------------------
    # BallistaCluster Operations
    # -------------------------------------------------------------------------

    def get_cluster(self, namespace: str, name: str) -> dict[str, Any]:
        crd = BallistaCRDs.BALLISTA_CLUSTER
        try:
            result: dict[str, Any] = self.custom.get_namespaced_custom_object(
                crd.group, crd.version, namespace, crd.plural, name
            )
            return result
        except (ApiException, HTTPError) as e:
            raise translate_api_exception(e, crd.kind, name, namespace) from e

    def list_clusters(self, namespace: str | None = None) -> list[dict[str, Any]]:
        crd = BallistaCRDs.BALLISTA_CLUSTER
        try:
            if namespace:
                result = self.custom.list_namespaced_custom_object(
                    crd.group, crd.version, namespace, crd.plural
                )
            else:
                result = self.custom.list_cluster_custom_object(
                    crd.group, crd.version, crd.plural
                )
        except (ApiException, HTTPError) as e:
            raise translate_api_exception(e, crd.kind, "", namespace) from e
        items: list[dict[str, Any]] = result.get("items", [])
        return items

    def update_cluster(self, body: dict[str, Any]) -> dict[str, Any]:
        crd = BallistaCRDs.BALLISTA_CLUSTER
        metadata = body["metadata"]
        try:
            result: dict[str, Any] = self.custom.replace_namespaced_custom_object(
                crd.group, crd.version, metadata["namespace"], crd.plural, metadata["name"], body
            )
            return result
        except (ApiException, HTTPError) as e:
            raise translate_api_exception(
                e, crd.kind, metadata["name"], metadata["namespace"]
            ) from e

    def update_cluster_status(self, body: dict[str, Any]) -> dict[str, Any]:
        crd = BallistaCRDs.BALLISTA_CLUSTER
        metadata = body["metadata"]
        try:
            result: dict[str, Any] = self.custom.replace_namespaced_custom_object_status(
                crd.group, crd.version, metadata["namespace"], crd.plural, metadata["name"], body
            )
            return result
        except (ApiException, HTTPError) as e:
            raise translate_api_exception(
                e, crd.kind, metadata["name"], metadata["namespace"]
            ) from e

    # -------------------------------------------------------------------------
    # Pod Operations
    # -------------------------------------------------------------------------

    def list_pods(
        self, namespace: str | None = None, label_selector: str | None = None
    ) -> list[dict[str, Any]]:
        try:
            if namespace:
                pods = self.core_v1.list_namespaced_pod(
                    namespace=namespace, label_selector=label_selector
                )
            else:
                pods = self.core_v1.list_pod_for_all_namespaces(label_selector=label_selector)
        except (ApiException, HTTPError) as e:
            raise translate_api_exception(e, "Pod", "", namespace) from e
        return [self._to_dict(pod) for pod in pods.items]

    def get_pod(self, namespace: str, name: str) -> dict[str, Any]:
        try:
            pod = self.core_v1.read_namespaced_pod(name=name, namespace=namespace)
        except (ApiException, HTTPError) as e:
            raise translate_api_exception(e, "Pod", name, namespace) from e
        return self._to_dict(pod)

    def create_pod(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        name = body.get("metadata", {}).get("name", "")
        try:
            pod = self.core_v1.create_namespaced_pod(namespace=namespace, body=body)
        except (ApiException, HTTPError) as e:
            raise translate_api_exception(e, "Pod", name, namespace) from e
        return self._to_dict(pod)

    def delete_pod(self, namespace: str, name: str) -> None:
        try:
            self.core_v1.delete_namespaced_pod(name=name, namespace=namespace)
        except (ApiException, HTTPError) as e:
            raise translate_api_exception(e, "Pod", name, namespace) from e

    def crd_available(self, crd: CRDDefinition) -> bool:
        try:
            self.custom.list_cluster_custom_object(crd.group, crd.version, crd.plural, limit=1)
            return True
        except ApiException as e:
            logger.debug(f"CRD {crd.kind} not available: {e.status}")
            return False

    # -------------------------------------------------------------------------
    # Watches
    # -------------------------------------------------------------------------

    def watch_clusters(
        self, handler: WatchHandler, stop: threading.Event, namespace: str | None = None
    ) -> None:
        crd = BallistaCRDs.BALLISTA_CLUSTER
        if namespace:
            list_func: Callable[..., Any] = self.custom.list_namespaced_custom_object
            kwargs: dict[str, Any] = {
                "group": crd.group,
                "version": crd.version,
                "namespace": namespace,
                "plural": crd.plural,
            }
        else:
            list_func = self.custom.list_cluster_custom_object
            kwargs = {"group": crd.group, "version": crd.version, "plural": crd.plural}
        self._watch_loop(crd.kind, list_func, kwargs, handler, stop, typed=False)

    def watch_pods(
        self, handler: WatchHandler, stop: threading.Event, namespace: str | None = None
    ) -> None:
        kwargs: dict[str, Any] = {"label_selector": self._pod_label_selector}
        if namespace:
            list_func: Callable[..., Any] = self.core_v1.list_namespaced_pod
            kwargs["namespace"] = namespace
        else:
            list_func = self.core_v1.list_pod_for_all_namespaces
        self._watch_loop("Pod", list_func, kwargs, handler, stop, typed=True)

    def _watch_loop(
        self,
        kind: str,
        list_func: Callable[..., Any],
        kwargs: dict[str, Any],
        handler: WatchHandler,
        stop: threading.Event,
        typed: bool,
    ) -> None:
        """List-then-watch until stopped, relisting when the stream breaks."""
        logger.info(f"Starting {kind} watch")
        while not stop.is_set():
            try:
                listing = list_func(**kwargs)
                if typed:
                    items = [self._to_dict(item) for item in listing.items]
                    resource_version = listing.metadata.resource_version
                else:
                    items = listing.get("items", [])
                    resource_version = listing.get("metadata", {}).get("resourceVersion")
                handler(WatchEvent(type="RESYNC", items=items))

                w = watch.Watch()
                for event in w.stream(
                    list_func,
                    resource_version=resource_version,
                    timeout_seconds=self.WATCH_TIMEOUT_SECONDS,
                    **kwargs,
                ):
                    if stop.is_set():
                        break
                    obj = event["object"]
                    if typed:
                        obj = self._to_dict(obj)
                    handler(WatchEvent(type=event["type"], object=obj))
                w.stop()

            except ApiException as e:
                if e.status == 410:
                    logger.info(f"{kind} watch resource version expired, relisting")
                    continue
                logger.error(f"{kind} watch error: {e}")
                handler(WatchEvent(type="ERROR", message=str(translate_api_exception(e, kind))))
                stop.wait(self.WATCH_RETRY_SECONDS)

            except HTTPError as e:
                logger.error(f"{kind} watch connection error: {e}")
                handler(WatchEvent(type="ERROR", message=str(TransientStoreError(str(e)))))
                stop.wait(self.WATCH_RETRY_SECONDS)

        logger.info(f"{kind} watch stopped")
