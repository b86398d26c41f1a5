"""Reconciliation of a single BallistaCluster.

A run reads the cluster, observes its pods through the child index, lets
the state machine decide, performs the resulting actions and writes the
status back. The returned Result tells the work queue when to look at the
cluster again.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ballista_operator.controller.children import ChildResourceManager
from ballista_operator.controller.retry import Deadline, retry_on_conflict
from ballista_operator.controller.state_machine import Action, Decision, Reason, decide
from ballista_operator.controller.status import HealthSummary, StatusEvaluator
from ballista_operator.models.cluster import (
    BallistaCluster,
    BallistaClusterStatus,
    ClusterKey,
    ClusterState,
    validate_cluster,
)
from ballista_operator.models.common import Condition, set_condition
from ballista_operator.utils.errors import (
    BallistaError,
    DeadlineExceededError,
    NotFoundError,
    ObservationError,
    PermanentActionError,
    ValidationError,
    VersionConflictError,
)
from ballista_operator.utils.labels import CLEANUP_FINALIZER, Role

if TYPE_CHECKING:
    from ballista_operator.clients.base import ResourceStore
    from ballista_operator.config import OperatorConfig
    from ballista_operator.controller.index import ChildIndex

logger = logging.getLogger(__name__)

READY_CONDITION = "Ready"
DEGRADED_CONDITION = "Degraded"


class ResultKind(str, Enum):
    """How the work queue should treat a key after a run."""

    DONE = "done"
    IMMEDIATE = "immediate"
    AFTER = "after"
    BACKOFF = "backoff"


@dataclass(frozen=True)
class Result:
    """Requeue directive returned by a reconciliation run."""

    kind: ResultKind
    delay: float = 0.0
    reason: str = ""

    @classmethod
    def done(cls) -> Result:
        return cls(ResultKind.DONE)

    @classmethod
    def immediate(cls, reason: str = "") -> Result:
        return cls(ResultKind.IMMEDIATE, reason=reason)

    @classmethod
    def after(cls, seconds: float, reason: str = "") -> Result:
        return cls(ResultKind.AFTER, delay=seconds, reason=reason)

    @classmethod
    def backoff(cls, reason: str = "") -> Result:
        return cls(ResultKind.BACKOFF, reason=reason)


class BallistaClusterReconciler:
    """Drives one BallistaCluster at a time towards its declared spec.

    Instances are shared by all worker threads; the work queue guarantees
    that a given key is never reconciled by two workers at once.
    """

    def __init__(self, store: ResourceStore, index: ChildIndex, config: OperatorConfig) -> None:
        self._store = store
        self._index = index
        self._config = config
        self._evaluator = StatusEvaluator(index)
        self._children = ChildResourceManager(store, index, config)
        self._failures_lock = threading.Lock()
        # key -> (generation, consecutive permanent failures)
        self._permanent_failures: dict[ClusterKey, tuple[int, int]] = {}

    @property
    def children(self) -> ChildResourceManager:
        return self._children

    def reconcile(self, key: ClusterKey) -> Result:
        """Run one reconciliation of ``key``; never raises."""
        deadline = Deadline(self._config.reconcile_timeout_seconds)
        try:
            return self._reconcile(key, deadline)
        except NotFoundError as e:
            logger.debug(f"{key} vanished during reconciliation: {e}")
            return Result.done()
        except VersionConflictError as e:
            logger.info(f"Giving up on {key} after repeated conflicts, requeueing: {e}")
            return Result.immediate("conflict")
        except DeadlineExceededError as e:
            logger.warning(f"Reconciliation of {key} abandoned: {e}")
            return Result.backoff("deadline")
        except BallistaError as e:
            logger.warning(f"Reconciliation of {key} failed: {e}")
            return Result.backoff(type(e).__name__)
        except Exception:
            logger.exception(f"Unexpected error reconciling {key}")
            return Result.backoff("unexpected")

    # -------------------------------------------------------------------------
    # Live clusters
    # -------------------------------------------------------------------------

    def _reconcile(self, key: ClusterKey, deadline: Deadline) -> Result:
        try:
            raw = self._store.get_cluster(key.namespace, key.name)
        except NotFoundError:
            logger.debug(f"BallistaCluster {key} not found, nothing to do")
            self._forget_failures(key)
            return Result.done()

        cluster = BallistaCluster.from_resource(raw)
        if cluster.metadata.is_deleting:
            return self._handle_deletion(cluster, deadline)

        cluster = self._ensure_finalizer(cluster)

        try:
            validate_cluster(cluster)
        except ValidationError as e:
            logger.warning(f"BallistaCluster {key} has an invalid spec: {e.message}")
            decision = decide(cluster.status.state, None, validation_error=e.message)
            self._write_status(cluster, decision, None)
            # Nothing to do until the user edits the spec
            return Result.done()

        if self._is_suspended(cluster):
            logger.debug(
                f"Actions for {key} generation {cluster.metadata.generation} are suspended"
            )
            return Result.done()

        health = self._evaluator.evaluate(cluster)
        decision = decide(
            cluster.status.state,
            health,
            last_ready=cluster.status.executors_ready,
            degraded=_condition_true(cluster.status, DEGRADED_CONDITION),
        )
        logger.debug(
            f"{key}: {cluster.status.state.value} -> {decision.next_state.value} "
            f"({decision.reason.value}) actions={[a.value for a in decision.actions]}"
        )

        if not health.observed:
            self._write_status(cluster, decision, None)
            return Result.backoff("observation")

        try:
            changed = self._execute(cluster, decision, deadline)
        except PermanentActionError as e:
            return self._handle_permanent_failure(cluster, e)
        self._forget_failures(key)

        if changed:
            # Record what the actions produced, not what was there before
            health = self._evaluator.evaluate(cluster)
        self._write_status(cluster, decision, health)

        if changed:
            return Result.immediate("changed")
        if decision.next_state == ClusterState.RUNNING and health.converged:
            return Result.done()
        return Result.after(self._config.pending_requeue_seconds, "waiting for readiness")

    def _execute(self, cluster: BallistaCluster, decision: Decision, deadline: Deadline) -> bool:
        """Perform the decided actions, scheduler first. Returns True if anything changed."""
        changed = False
        for action in decision.actions:
            deadline.check(action.value)
            if action == Action.ENSURE_SCHEDULER:
                schedulers = self._index.children_of_role(cluster.key, Role.SCHEDULER)
                changed |= self._children.ensure_scheduler(cluster, schedulers, deadline)
            elif action == Action.SCALE_EXECUTORS:
                executors = self._index.children_of_role(cluster.key, Role.EXECUTOR)
                changed |= self._children.reconcile_executors(cluster, executors, deadline).changed
        return changed

    def _ensure_finalizer(self, cluster: BallistaCluster) -> BallistaCluster:
        if CLEANUP_FINALIZER in cluster.metadata.finalizers:
            return cluster

        def attempt() -> dict[str, Any]:
            latest = self._store.get_cluster(cluster.namespace, cluster.name)
            metadata = latest.setdefault("metadata", {})
            finalizers = list(metadata.get("finalizers") or [])
            if CLEANUP_FINALIZER in finalizers:
                return latest
            metadata["finalizers"] = [*finalizers, CLEANUP_FINALIZER]
            return self._store.update_cluster(latest)

        updated = retry_on_conflict(
            attempt, self._config.conflict_retries, f"add finalizer to {cluster.key}"
        )
        logger.info(f"Added cleanup finalizer to BallistaCluster {cluster.key}")
        return BallistaCluster.from_resource(updated)

    # -------------------------------------------------------------------------
    # Permanent failures
    # -------------------------------------------------------------------------

    def _handle_permanent_failure(
        self, cluster: BallistaCluster, error: PermanentActionError
    ) -> Result:
        attempts = self._record_failure(cluster)
        limit = self._config.max_permanent_attempts
        logger.error(
            f"Action for {cluster.key} rejected ({attempts}/{limit}): {error.message}"
        )

        deleting = cluster.metadata.is_deleting
        if deleting:
            state = ClusterState.TERMINATING
        elif cluster.status.state in (ClusterState.NEW, ClusterState.RUNNING):
            # A cluster that never got its scheduler stays New
            state = cluster.status.state
        else:
            state = ClusterState.PENDING
        message = error.message
        if attempts >= limit:
            hint = "" if deleting else ", edit the spec to retry"
            message = f"{message} (suspended after {attempts} attempts{hint})"
        decision = Decision(state, reason=Reason.DEGRADED, message=message)
        self._write_status(cluster, decision, None, action_error=message)

        if attempts >= limit:
            return Result.done()
        return Result.backoff("permanent")

    def _record_failure(self, cluster: BallistaCluster) -> int:
        generation = cluster.metadata.generation
        with self._failures_lock:
            seen_generation, count = self._permanent_failures.get(cluster.key, (generation, 0))
            if seen_generation != generation:
                count = 0
            count += 1
            self._permanent_failures[cluster.key] = (generation, count)
            return count

    def _is_suspended(self, cluster: BallistaCluster) -> bool:
        with self._failures_lock:
            entry = self._permanent_failures.get(cluster.key)
        if entry is None:
            return False
        generation, count = entry
        return (
            generation == cluster.metadata.generation
            and count >= self._config.max_permanent_attempts
        )

    def _forget_failures(self, key: ClusterKey) -> None:
        with self._failures_lock:
            self._permanent_failures.pop(key, None)

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def _handle_deletion(self, cluster: BallistaCluster, deadline: Deadline) -> Result:
        """Delete every child, then release the cleanup finalizer."""
        if CLEANUP_FINALIZER not in cluster.metadata.finalizers:
            return Result.done()

        if self._is_suspended(cluster):
            logger.debug(f"Cleanup of {cluster.key} is suspended")
            return Result.done()

        try:
            remaining = self._index.children_of(cluster.key)
        except ObservationError as e:
            logger.warning(f"Cannot list children of deleting cluster {cluster.key}: {e}")
            return Result.backoff("observation")

        if remaining:
            self._mark_terminating(cluster, len(remaining))
            try:
                deleted = self._children.delete_children(cluster, remaining, deadline)
            except PermanentActionError as e:
                return self._handle_permanent_failure(cluster, e)
            self._forget_failures(cluster.key)
            if deleted:
                logger.info(f"Deleted {len(deleted)} pods of BallistaCluster {cluster.key}")
            remaining = self._index.children_of(cluster.key)
            if remaining:
                logger.debug(f"{len(remaining)} pods of {cluster.key} still terminating")
                return Result.after(self._config.pending_requeue_seconds, "children terminating")

        deadline.check(f"removing finalizer from {cluster.key}")
        self._remove_finalizer(cluster)
        self._forget_failures(cluster.key)
        logger.info(f"Released BallistaCluster {cluster.key}")
        return Result.done()

    def _remove_finalizer(self, cluster: BallistaCluster) -> None:
        def attempt() -> None:
            try:
                latest = self._store.get_cluster(cluster.namespace, cluster.name)
            except NotFoundError:
                return
            metadata = latest.setdefault("metadata", {})
            finalizers = list(metadata.get("finalizers") or [])
            if CLEANUP_FINALIZER not in finalizers:
                return
            metadata["finalizers"] = [f for f in finalizers if f != CLEANUP_FINALIZER]
            try:
                self._store.update_cluster(latest)
            except NotFoundError:
                return

        retry_on_conflict(
            attempt, self._config.conflict_retries, f"remove finalizer from {cluster.key}"
        )

    def _mark_terminating(self, cluster: BallistaCluster, remaining: int) -> None:
        if cluster.status.state == ClusterState.TERMINATING:
            return
        decision = decide(cluster.status.state, None, deleting=True)
        decision.message = f"Deleting {remaining} pods"
        try:
            self._write_status(cluster, decision, None)
        except BallistaError as e:
            logger.debug(f"Could not mark {cluster.key} as Terminating: {e}")

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def _write_status(
        self,
        cluster: BallistaCluster,
        decision: Decision,
        health: HealthSummary | None,
        action_error: str | None = None,
    ) -> None:
        """Persist the decision in the status subresource.

        The write is skipped when nothing but the observation time would
        change, so status updates do not trigger reconciliations forever.
        """

        def attempt() -> None:
            body = self._store.get_cluster(cluster.namespace, cluster.name)
            current = BallistaCluster.from_resource(body).status
            status = build_status(cluster, current, decision, health, action_error)
            if _same_status(status, current):
                return
            body["status"] = status.to_k8s()
            self._store.update_cluster_status(body)
            if status.state != current.state:
                logger.info(
                    f"BallistaCluster {cluster.key}: {current.state.value} -> "
                    f"{status.state.value} ({decision.reason.value})"
                )

        retry_on_conflict(attempt, self._config.conflict_retries, f"status of {cluster.key}")


def build_status(
    cluster: BallistaCluster,
    current: BallistaClusterStatus,
    decision: Decision,
    health: HealthSummary | None,
    action_error: str | None = None,
) -> BallistaClusterStatus:
    """Derive the new status from the stored one and a decision.

    Counts are only replaced when a successful observation is available;
    otherwise the last known values are kept.
    """
    status = current.model_copy(deep=True)
    status.state = decision.next_state
    status.executors_desired = cluster.desired_executors
    status.observed_generation = cluster.metadata.generation
    if health is not None and health.observed:
        status.scheduler_ready = health.scheduler_ready
        status.executors_ready = health.executors_ready
        status.last_observed_time = health.observed_at

    running = decision.next_state == ClusterState.RUNNING and decision.reason != Reason.DEGRADED
    status.conditions = set_condition(
        status.conditions,
        Condition(
            type=READY_CONDITION,
            status="True" if running else "False",
            reason=decision.reason.value,
            message=decision.message or None,
        ),
    )
    degraded = action_error is not None or decision.reason == Reason.DEGRADED
    status.conditions = set_condition(
        status.conditions,
        Condition(
            type=DEGRADED_CONDITION,
            status="True" if degraded else "False",
            reason=Reason.DEGRADED.value if degraded else decision.reason.value,
            message=(action_error or decision.message or None) if degraded else None,
        ),
    )
    return status


def _same_status(new: BallistaClusterStatus, old: BallistaClusterStatus) -> bool:
    """Compare two statuses ignoring observation and transition times."""
    ignore = {"last_observed_time": None, "conditions": []}
    new_cmp = new.model_copy(update=ignore)
    old_cmp = old.model_copy(update=ignore)
    if new_cmp != old_cmp:
        return False
    return _condition_keys(new) == _condition_keys(old)


def _condition_keys(status: BallistaClusterStatus) -> list[tuple[str, str, str | None, str | None]]:
    return sorted((c.type, c.status, c.reason, c.message) for c in status.conditions)


def _condition_true(status: BallistaClusterStatus, condition_type: str) -> bool:
    condition = status.condition(condition_type)
    return condition is not None and condition.status == "True"
