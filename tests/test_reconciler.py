"""End-to-end reconciliation tests against the in-memory store."""

import pytest

from ballista_operator.clients.memory import MemoryStore
from ballista_operator.controller.index import (
    CachedChildIndex,
    ListingChildIndex,
    default_registry,
)
from ballista_operator.controller.reconciler import BallistaClusterReconciler, ResultKind
from ballista_operator.models.cluster import BallistaClusterStatus, ClusterKey, ClusterState
from ballista_operator.utils.errors import (
    PermanentActionError,
    TransientStoreError,
    VersionConflictError,
)
from ballista_operator.utils.labels import CLEANUP_FINALIZER

DEMO = ClusterKey("default", "demo")


def _status(store, key: ClusterKey = DEMO) -> BallistaClusterStatus:
    return BallistaClusterStatus.from_k8s(store.get_cluster(key.namespace, key.name)["status"])


def _settle(reconciler: BallistaClusterReconciler, key: ClusterKey = DEMO, rounds: int = 10):
    """Reconcile until the run stops asking for an immediate retry."""
    result = None
    for _ in range(rounds):
        result = reconciler.reconcile(key)
        if result.kind != ResultKind.IMMEDIATE:
            break
    return result


@pytest.fixture
def ready_reconciler(ready_store, config) -> BallistaClusterReconciler:
    return BallistaClusterReconciler(
        ready_store, ListingChildIndex(ready_store, default_registry()), config
    )


@pytest.fixture
def graceful_store() -> MemoryStore:
    """Store whose pods linger with a deletionTimestamp until finished."""
    return MemoryStore(auto_ready=True, graceful_delete=True)


@pytest.fixture
def watched_reconciler(graceful_store, config) -> BallistaClusterReconciler:
    """Reconciler reading a CachedChildIndex fed by the store's pod events."""
    index = CachedChildIndex(default_registry(), config.staleness_seconds)
    graceful_store.subscribe_pods(index.handle_event)
    index.replace(graceful_store.list_pods())
    return BallistaClusterReconciler(graceful_store, index, config)


class TestConvergence:
    """A declared cluster reaches Running with the right pods."""

    def test_reaches_running(self, ready_store, ready_reconciler, make_manifest) -> None:
        ready_store.apply_cluster(make_manifest(instances=3))

        result = _settle(ready_reconciler)

        assert result.kind == ResultKind.DONE
        assert ready_store.pod_names() == [
            "demo-executor-0",
            "demo-executor-1",
            "demo-executor-2",
            "demo-scheduler",
        ]
        status = _status(ready_store)
        assert status.state == ClusterState.RUNNING
        assert status.scheduler_ready is True
        assert status.executors_ready == 3
        assert status.executors_desired == 3
        assert status.condition("Ready").is_true

    def test_first_run_goes_pending(self, store, reconciler, make_manifest) -> None:
        """New never jumps straight to Running."""
        store.apply_cluster(make_manifest(instances=2))

        result = reconciler.reconcile(DEMO)

        assert result.kind == ResultKind.IMMEDIATE
        assert _status(store).state == ClusterState.PENDING
        assert len(store.pod_names()) == 3

    def test_waits_for_readiness(self, store, reconciler, make_manifest) -> None:
        store.apply_cluster(make_manifest(instances=1))
        _settle(reconciler)

        result = reconciler.reconcile(DEMO)

        assert result.kind == ResultKind.AFTER
        assert _status(store).state == ClusterState.PENDING

        for name in store.pod_names():
            store.set_pod_status("default", name, ready=True)
        assert reconciler.reconcile(DEMO).kind == ResultKind.DONE
        assert _status(store).state == ClusterState.RUNNING

    def test_adds_finalizer(self, store, reconciler, make_manifest) -> None:
        store.apply_cluster(make_manifest())

        reconciler.reconcile(DEMO)

        assert CLEANUP_FINALIZER in store.get_cluster("default", "demo")["metadata"]["finalizers"]

    def test_missing_cluster_is_done(self, reconciler) -> None:
        assert reconciler.reconcile(ClusterKey("default", "ghost")).kind == ResultKind.DONE


class TestIdempotency:
    """Running reconcile again on a converged cluster changes nothing."""

    def test_no_writes_when_converged(self, ready_store, ready_reconciler, make_manifest) -> None:
        ready_store.apply_cluster(make_manifest(instances=2))
        _settle(ready_reconciler)
        created = list(ready_store.created_pods)
        version = ready_store.get_cluster("default", "demo")["metadata"]["resourceVersion"]

        for _ in range(3):
            assert ready_reconciler.reconcile(DEMO).kind == ResultKind.DONE

        assert ready_store.created_pods == created
        assert ready_store.deleted_pods == []
        assert ready_store.get_cluster("default", "demo")["metadata"]["resourceVersion"] == version


class TestScaling:
    """Spec changes scale executors deterministically."""

    def test_scale_down_deletes_highest_ordinals(
        self, ready_store, ready_reconciler, make_manifest
    ) -> None:
        ready_store.apply_cluster(make_manifest(instances=3))
        _settle(ready_reconciler)

        ready_store.apply_cluster(make_manifest(instances=1))
        _settle(ready_reconciler)

        assert ready_store.deleted_pods == ["demo-executor-2", "demo-executor-1"]
        assert ready_store.pod_names() == ["demo-executor-0", "demo-scheduler"]
        assert _status(ready_store).state == ClusterState.RUNNING

    def test_scale_up_stays_running(self, store, reconciler, make_manifest) -> None:
        """A user scale request is not a degradation."""
        store.apply_cluster(make_manifest(instances=1))
        _settle(reconciler)
        for name in store.pod_names():
            store.set_pod_status("default", name, ready=True)
        reconciler.reconcile(DEMO)
        assert _status(store).state == ClusterState.RUNNING

        store.apply_cluster(make_manifest(instances=2))
        assert reconciler.reconcile(DEMO).kind == ResultKind.IMMEDIATE

        status = _status(store)
        assert status.state == ClusterState.RUNNING
        assert not status.condition("Degraded").is_true
        assert status.condition("Ready").reason == "Scaling"
        assert "demo-executor-1" in store.pod_names()

        # Still Running while the new executor starts
        assert reconciler.reconcile(DEMO).kind == ResultKind.AFTER
        assert _status(store).state == ClusterState.RUNNING

        store.set_pod_status("default", "demo-executor-1", ready=True)
        assert reconciler.reconcile(DEMO).kind == ResultKind.DONE
        assert _status(store).condition("Ready").reason == "Converged"

    def test_lost_readiness_is_degraded(self, ready_store, ready_reconciler, make_manifest) -> None:
        ready_store.apply_cluster(make_manifest(instances=2))
        _settle(ready_reconciler)

        ready_store.set_pod_status("default", "demo-executor-1", ready=False)
        result = ready_reconciler.reconcile(DEMO)

        assert result.kind == ResultKind.AFTER
        status = _status(ready_store)
        assert status.state == ClusterState.RUNNING
        assert status.condition("Degraded").is_true
        assert status.condition("Ready").status == "False"

        ready_store.set_pod_status("default", "demo-executor-1", ready=True)
        assert ready_reconciler.reconcile(DEMO).kind == ResultKind.DONE
        assert not _status(ready_store).condition("Degraded").is_true

    def test_lost_pod_is_replaced(self, ready_store, ready_reconciler, make_manifest) -> None:
        ready_store.apply_cluster(make_manifest(instances=2))
        _settle(ready_reconciler)

        ready_store.delete_pod("default", "demo-executor-0")
        _settle(ready_reconciler)

        assert "demo-executor-0" in ready_store.pod_names()
        assert _status(ready_store).state == ClusterState.RUNNING


    def test_scale_down_with_graceful_deletion(
        self, graceful_store, watched_reconciler, make_manifest
    ) -> None:
        """Terminating executors are neither counted nor replaced."""
        graceful_store.apply_cluster(make_manifest(instances=3))
        assert _settle(watched_reconciler).kind == ResultKind.DONE

        graceful_store.apply_cluster(make_manifest(instances=1))
        assert watched_reconciler.reconcile(DEMO).kind == ResultKind.IMMEDIATE

        status = _status(graceful_store)
        assert status.state == ClusterState.RUNNING
        assert not status.condition("Degraded").is_true
        assert graceful_store.deleted_pods == ["demo-executor-2", "demo-executor-1"]
        assert len(graceful_store.pod_names()) == 4

        assert _settle(watched_reconciler).kind == ResultKind.DONE
        assert len(graceful_store.created_pods) == 4
        assert _status(graceful_store).executors_ready == 1

        assert graceful_store.finish_pod_deletions() == ["demo-executor-1", "demo-executor-2"]
        assert graceful_store.pod_names() == ["demo-executor-0", "demo-scheduler"]
        assert watched_reconciler.reconcile(DEMO).kind == ResultKind.DONE


class TestDeletion:
    """Deleting a cluster removes every child before the finalizer."""

    def test_finalizer_kept_while_pods_terminate(
        self, graceful_store, watched_reconciler, make_manifest
    ) -> None:
        graceful_store.apply_cluster(make_manifest(instances=2))
        _settle(watched_reconciler)
        graceful_store.delete_cluster("default", "demo")

        result = watched_reconciler.reconcile(DEMO)

        assert result.kind == ResultKind.AFTER
        assert len(graceful_store.deleted_pods) == 3
        assert len(graceful_store.pod_names()) == 3
        cluster = graceful_store.get_cluster("default", "demo")
        assert CLEANUP_FINALIZER in cluster["metadata"]["finalizers"]
        assert _status(graceful_store).state == ClusterState.TERMINATING

        # Pods already terminating are not deleted again
        assert watched_reconciler.reconcile(DEMO).kind == ResultKind.AFTER
        assert len(graceful_store.deleted_pods) == 3

        graceful_store.finish_pod_deletions()

        assert watched_reconciler.reconcile(DEMO).kind == ResultKind.DONE
        assert not graceful_store.has_cluster("default", "demo")

    def test_permanent_delete_failure_is_suspended(
        self, ready_store, ready_reconciler, make_manifest, config
    ) -> None:
        ready_store.apply_cluster(make_manifest(instances=1))
        _settle(ready_reconciler)
        ready_store.delete_cluster("default", "demo")
        ready_store.fail_next(
            "delete_pod",
            PermanentActionError("pods is forbidden"),
            times=config.max_permanent_attempts,
        )

        results = [
            ready_reconciler.reconcile(DEMO).kind for _ in range(config.max_permanent_attempts)
        ]

        assert results[:-1] == [ResultKind.BACKOFF] * (config.max_permanent_attempts - 1)
        assert results[-1] == ResultKind.DONE
        status = _status(ready_store)
        assert status.state == ClusterState.TERMINATING
        degraded = status.condition("Degraded")
        assert degraded.is_true
        assert "forbidden" in degraded.message
        assert "suspended" in degraded.message

        # No further attempts, and the finalizer stays
        assert ready_reconciler.reconcile(DEMO).kind == ResultKind.DONE
        assert len(ready_store.pod_names()) == 2
        assert ready_store.has_cluster("default", "demo")

    def test_cascade(self, ready_store, ready_reconciler, make_manifest) -> None:
        ready_store.apply_cluster(make_manifest(instances=3))
        _settle(ready_reconciler)

        ready_store.delete_cluster("default", "demo")
        assert ready_store.has_cluster("default", "demo")

        result = ready_reconciler.reconcile(DEMO)

        assert result.kind == ResultKind.DONE
        assert ready_store.pod_names() == []
        assert len(ready_store.deleted_pods) == 4
        assert not ready_store.has_cluster("default", "demo")

    def test_transient_failure_keeps_finalizer(
        self, ready_store, ready_reconciler, make_manifest
    ) -> None:
        ready_store.apply_cluster(make_manifest(instances=2))
        _settle(ready_reconciler)
        ready_store.delete_cluster("default", "demo")
        ready_store.fail_next("delete_pod", TransientStoreError("timeout"))

        result = ready_reconciler.reconcile(DEMO)

        assert result.kind == ResultKind.BACKOFF
        assert ready_store.has_cluster("default", "demo")
        assert _status(ready_store).state == ClusterState.TERMINATING

        assert ready_reconciler.reconcile(DEMO).kind == ResultKind.DONE
        assert ready_store.pod_names() == []
        assert not ready_store.has_cluster("default", "demo")

    def test_deletion_without_children(self, store, reconciler, make_manifest) -> None:
        store.apply_cluster(make_manifest())
        store.update_cluster(
            {
                **store.get_cluster("default", "demo"),
                "metadata": {
                    **store.get_cluster("default", "demo")["metadata"],
                    "finalizers": [CLEANUP_FINALIZER],
                },
            }
        )
        store.delete_cluster("default", "demo")

        assert reconciler.reconcile(DEMO).kind == ResultKind.DONE
        assert not store.has_cluster("default", "demo")


class TestObservationFailure:
    """Failing observations move the cluster to Unknown and back."""

    def test_unknown_and_recovery(self, ready_store, ready_reconciler, make_manifest) -> None:
        ready_store.apply_cluster(make_manifest(instances=2))
        _settle(ready_reconciler)
        pods_before = ready_store.pod_names()

        ready_store.fail_next("list_pods", TransientStoreError("apiserver down"))
        result = ready_reconciler.reconcile(DEMO)

        assert result.kind == ResultKind.BACKOFF
        status = _status(ready_store)
        assert status.state == ClusterState.UNKNOWN
        assert status.condition("Ready").reason == "ObservationFailed"
        assert ready_store.pod_names() == pods_before

        assert ready_reconciler.reconcile(DEMO).kind == ResultKind.DONE
        assert _status(ready_store).state == ClusterState.RUNNING


class TestValidation:
    """Invalid specs are reported, not acted on."""

    def test_invalid_instances(self, store, reconciler, make_manifest) -> None:
        store.apply_cluster(make_manifest(instances=0))

        result = reconciler.reconcile(DEMO)

        assert result.kind == ResultKind.DONE
        assert store.pod_names() == []
        status = _status(store)
        assert status.state == ClusterState.UNKNOWN
        ready = status.condition("Ready")
        assert ready.status == "False"
        assert ready.reason == "InvalidSpec"

    def test_unparseable_spec(self, store, reconciler, make_manifest) -> None:
        manifest = make_manifest()
        del manifest["spec"]["ballistaVersion"]
        store.apply_cluster(manifest)

        reconciler.reconcile(DEMO)

        assert _status(store).condition("Ready").reason == "InvalidSpec"
        assert store.pod_names() == []

    def test_fixing_spec_recovers(self, ready_store, ready_reconciler, make_manifest) -> None:
        ready_store.apply_cluster(make_manifest(instances=0))
        ready_reconciler.reconcile(DEMO)

        ready_store.apply_cluster(make_manifest(instances=1))
        _settle(ready_reconciler)

        assert _status(ready_store).state == ClusterState.RUNNING


class TestErrors:
    """Error classification inside a run."""

    def test_status_conflict_is_retried(self, ready_store, ready_reconciler, make_manifest) -> None:
        ready_store.apply_cluster(make_manifest(instances=1))
        ready_store.fail_next("update_cluster_status", VersionConflictError("stale"))

        _settle(ready_reconciler)

        assert _status(ready_store).state == ClusterState.RUNNING

    def test_exhausted_conflicts_requeue_immediately(
        self, store, reconciler, make_manifest, config
    ) -> None:
        store.apply_cluster(make_manifest())
        store.fail_next(
            "update_cluster", VersionConflictError("stale"), times=config.conflict_retries
        )

        assert reconciler.reconcile(DEMO).kind == ResultKind.IMMEDIATE

    def test_transient_create_failure_backs_off(self, store, reconciler, make_manifest) -> None:
        store.apply_cluster(make_manifest())
        store.fail_next("create_pod", TransientStoreError("503"))

        result = reconciler.reconcile(DEMO)

        assert result.kind == ResultKind.BACKOFF
        assert _status(store).state == ClusterState.NEW

    def test_permanent_failure_is_suspended(
        self, store, reconciler, make_manifest, config
    ) -> None:
        store.apply_cluster(make_manifest())
        store.fail_next(
            "create_pod",
            PermanentActionError("forbidden"),
            times=config.max_permanent_attempts,
        )

        results = [reconciler.reconcile(DEMO).kind for _ in range(config.max_permanent_attempts)]

        assert results[:-1] == [ResultKind.BACKOFF] * (config.max_permanent_attempts - 1)
        assert results[-1] == ResultKind.DONE
        status = _status(store)
        assert status.state == ClusterState.NEW
        assert status.condition("Degraded").is_true
        assert "suspended" in status.condition("Degraded").message

        # Suspended until the spec changes
        assert reconciler.reconcile(DEMO).kind == ResultKind.DONE
        assert store.pod_names() == []

        store.apply_cluster(make_manifest(instances=1))
        reconciler.reconcile(DEMO)
        assert "demo-scheduler" in store.pod_names()

    def test_one_cluster_failure_does_not_affect_another(
        self, ready_store, ready_reconciler, make_manifest
    ) -> None:
        ready_store.apply_cluster(make_manifest(name="broken", instances=0))
        ready_store.apply_cluster(make_manifest(name="healthy", instances=1))

        ready_reconciler.reconcile(ClusterKey("default", "broken"))
        _settle(ready_reconciler, ClusterKey("default", "healthy"))

        assert _status(ready_store, ClusterKey("default", "healthy")).state == ClusterState.RUNNING
        assert _status(ready_store, ClusterKey("default", "broken")).state == ClusterState.UNKNOWN
