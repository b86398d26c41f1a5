"""Controller manager: watches, work queue and worker threads."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from ballista_operator.controller.index import OWNER_INDEX, CachedChildIndex, IndexRegistry
from ballista_operator.controller.queue import QueueShutDown, RateLimitingQueue
from ballista_operator.controller.reconciler import (
    BallistaClusterReconciler,
    Result,
    ResultKind,
)
from ballista_operator.models.cluster import ClusterKey
from ballista_operator.plugin_manager import PluginManager
from ballista_operator.utils.errors import BallistaError

if TYPE_CHECKING:
    from ballista_operator.clients.base import ResourceStore, WatchEvent
    from ballista_operator.config import OperatorConfig

logger = logging.getLogger(__name__)


def cluster_key(obj: dict[str, Any]) -> ClusterKey:
    metadata = obj.get("metadata") or {}
    return ClusterKey(metadata.get("namespace") or "default", metadata.get("name", ""))


class ControllerManager:
    """Runs the BallistaCluster controller.

    Two watch threads feed the work queue: cluster events enqueue the
    cluster itself, pod events update the child index and enqueue the pod's
    owning cluster. ``config.workers`` threads drain the queue through the
    reconciler, and a resync thread enqueues every cluster periodically.
    """

    def __init__(
        self,
        store: ResourceStore,
        config: OperatorConfig,
        plugin_manager: PluginManager | None = None,
    ) -> None:
        self._store = store
        self._config = config
        if plugin_manager is None:
            plugin_manager = PluginManager()
            plugin_manager.load_core_plugins()
        self._plugin_manager = plugin_manager

        self._registry = IndexRegistry()
        self._plugin_manager.register_all_indexers(self._registry)
        if OWNER_INDEX not in self._registry.fields:
            logger.warning(f"No extractor registered for {OWNER_INDEX}; pods will not be indexed")

        self._index = CachedChildIndex(self._registry, config.staleness_seconds)
        self._queue = RateLimitingQueue(config.backoff_base_seconds, config.backoff_max_seconds)
        self._reconciler = BallistaClusterReconciler(store, self._index, config)

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def store(self) -> ResourceStore:
        return self._store

    @property
    def index(self) -> CachedChildIndex:
        return self._index

    @property
    def queue(self) -> RateLimitingQueue:
        return self._queue

    @property
    def reconciler(self) -> BallistaClusterReconciler:
        return self._reconciler

    @property
    def plugin_manager(self) -> PluginManager:
        return self._plugin_manager

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop.is_set()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the watch, resync and worker threads."""
        if self._threads:
            raise RuntimeError("Controller manager already started")

        namespace = self._config.namespace
        self._spawn(
            "watch-clusters",
            self._store.watch_clusters,
            self._on_cluster_event,
            self._stop,
            namespace,
        )
        self._spawn("watch-pods", self._store.watch_pods, self._on_pod_event, self._stop, namespace)
        self._spawn("resync", self._resync_loop)
        for i in range(self._config.workers):
            self._spawn(f"worker-{i}", self._worker)

        logger.info(
            f"Controller started with {self._config.workers} workers "
            f"(namespace={namespace or 'all'})"
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop every thread and wait for them to exit."""
        logger.info("Stopping controller")
        self._stop.set()
        self._queue.shut_down()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=timeout)
        self._threads = []

    def wait(self) -> None:
        """Block until ``stop`` is called."""
        while not self._stop.wait(1.0):
            pass

    def wait_for_sync(self, timeout: float | None = None) -> bool:
        """Block until the child index has seen its first full pod listing.

        Returns:
            False if the manager stopped or ``timeout`` passed first.
        """
        end = None if timeout is None else time.monotonic() + timeout
        while not self._index.has_synced:
            wait = 0.1 if end is None else min(0.1, end - time.monotonic())
            if wait <= 0 or self._stop.wait(wait):
                return False
        return True

    def run_health_checks(self) -> dict[str, tuple[bool, str]]:
        return self._plugin_manager.run_health_checks(self)

    # -------------------------------------------------------------------------
    # Event handling
    # -------------------------------------------------------------------------

    def _on_cluster_event(self, event: WatchEvent) -> None:
        if event.type == "ERROR":
            logger.warning(f"BallistaCluster watch error: {event.message}")
            return
        if event.type == "RESYNC":
            for item in event.items:
                self._queue.add(cluster_key(item))
            return
        if event.object is not None:
            self._queue.add(cluster_key(event.object))

    def _on_pod_event(self, event: WatchEvent) -> None:
        self._index.handle_event(event)
        if event.object is None:
            return
        owner = self._registry.extract(OWNER_INDEX, event.object)
        if owner is not None:
            self._queue.add(owner)

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile the next queued key.

        Returns:
            False if no key became ready within ``timeout``.

        Raises:
            QueueShutDown: If the queue was shut down.
        """
        key = self._queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            result = self._reconciler.reconcile(key)
            self._apply_result(key, result)
        finally:
            self._queue.done(key)
        return True

    def _apply_result(self, key: ClusterKey, result: Result) -> None:
        if result.kind == ResultKind.BACKOFF:
            delay = self._queue.add_rate_limited(key)
            logger.debug(f"Requeueing {key} in {delay:.1f}s ({result.reason})")
            return

        self._queue.forget(key)
        if result.kind == ResultKind.IMMEDIATE:
            self._queue.add(key)
        elif result.kind == ResultKind.AFTER:
            self._queue.add_after(key, result.delay)

    # -------------------------------------------------------------------------
    # Threads
    # -------------------------------------------------------------------------

    def _spawn(self, name: str, target: Callable[..., Any], *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _worker(self) -> None:
        # Workers start once the child index has synced
        if not self.wait_for_sync():
            return
        while not self._stop.is_set():
            try:
                self.process_next()
            except QueueShutDown:
                break
        logger.debug(f"{threading.current_thread().name} stopped")

    def _resync_loop(self) -> None:
        while not self._stop.wait(self._config.resync_seconds):
            try:
                clusters = self._store.list_clusters(self._config.namespace)
            except BallistaError as e:
                logger.warning(f"Periodic resync failed: {e}")
                continue
            for obj in clusters:
                self._queue.add(cluster_key(obj))
            logger.debug(f"Periodic resync queued {len(clusters)} clusters")
