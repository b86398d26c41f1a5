"""Lifecycle state machine of a Ballista cluster.

``decide`` is a pure function of the current state and the latest
observation. It never talks to the store; the reconciler executes the
actions it returns and persists the next state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from ballista_operator.controller.status import HealthSummary
from ballista_operator.models.cluster import ClusterState


class Action(str, Enum):
    """Side effects the reconciler performs, in this order."""

    ENSURE_SCHEDULER = "EnsureScheduler"
    SCALE_EXECUTORS = "ScaleExecutors"


class Reason(str, Enum):
    """Machine-readable reasons attached to a decision."""

    CREATED = "Created"
    PROGRESSING = "Progressing"
    CONVERGED = "Converged"
    SCALING = "Scaling"
    DEGRADED = "Degraded"
    RECOVERED = "Recovered"
    OBSERVATION_FAILED = "ObservationFailed"
    INVALID_SPEC = "InvalidSpec"
    DELETING = "Deleting"


@dataclass
class Decision:
    """Outcome of one state machine step."""

    next_state: ClusterState
    actions: list[Action] = field(default_factory=list)
    reason: Reason = Reason.PROGRESSING
    message: str = ""


def decide(
    current: ClusterState,
    health: HealthSummary | None,
    validation_error: str | None = None,
    deleting: bool = False,
    last_ready: int | None = None,
    degraded: bool = False,
) -> Decision:
    """Compute the next state and the actions needed to get there.

    A Running cluster stays Running while it converges again. Its reason is
    ``Scaling`` when only the desired size moved, and ``Degraded`` when it
    lost readiness: the scheduler is not ready, or fewer executors are ready
    than before (capped at the new desired count).

    Args:
        current: State recorded in the cluster status.
        health: Latest observation, or None if none could be made.
        validation_error: Why the spec is invalid, if it is.
        deleting: The cluster carries a deletion timestamp.
        last_ready: Executors ready at the last recorded status.
        degraded: The last recorded status was degraded; it stays so until
            the cluster converges.

    Returns:
        The decision. ``Running`` is only ever entered from a converged
        observation, so a cluster in ``New`` always passes through ``Pending``.
    """
    if deleting:
        return Decision(ClusterState.TERMINATING, reason=Reason.DELETING, message="Deleting children")

    if validation_error is not None:
        return Decision(ClusterState.UNKNOWN, reason=Reason.INVALID_SPEC, message=validation_error)

    if health is None or not health.observed:
        error = health.error if health is not None and health.error else "no observation"
        # A cluster that never started has nothing to lose track of
        next_state = ClusterState.NEW if current == ClusterState.NEW else ClusterState.UNKNOWN
        return Decision(
            next_state,
            reason=Reason.OBSERVATION_FAILED,
            message=f"Cannot observe cluster members: {error}",
        )

    actions = _required_actions(health)

    if current == ClusterState.NEW:
        return Decision(
            ClusterState.PENDING,
            actions=actions,
            reason=Reason.CREATED,
            message="Creating scheduler and executors",
        )

    if not actions and health.converged:
        reason = Reason.RECOVERED if current == ClusterState.UNKNOWN else Reason.CONVERGED
        return Decision(
            ClusterState.RUNNING,
            reason=reason,
            message=f"Scheduler ready, {health.executors_ready}/{health.desired} executors ready",
        )

    if current == ClusterState.RUNNING:
        floor = health.desired if last_ready is None else min(last_ready, health.desired)
        if degraded or not health.scheduler_ready or health.executors_ready < floor:
            return Decision(
                ClusterState.RUNNING,
                actions=actions,
                reason=Reason.DEGRADED,
                message=_progress(health),
            )
        return Decision(
            ClusterState.RUNNING,
            actions=actions,
            reason=Reason.SCALING,
            message=f"Scaling executors to {health.desired}: {_progress(health)}",
        )

    if current == ClusterState.UNKNOWN:
        reason = Reason.RECOVERED
    else:
        reason = Reason.PROGRESSING
    return Decision(ClusterState.PENDING, actions=actions, reason=reason, message=_progress(health))


def _required_actions(health: HealthSummary) -> list[Action]:
    actions = []
    if not health.scheduler_ready:
        actions.append(Action.ENSURE_SCHEDULER)
    if health.scaling_required or health.executors_ready < health.desired:
        actions.append(Action.SCALE_EXECUTORS)
    return actions


def _progress(health: HealthSummary) -> str:
    scheduler = "ready" if health.scheduler_ready else (
        "starting" if health.scheduler_present else "missing"
    )
    return (
        f"Scheduler {scheduler}, {health.executors_ready}/{health.desired} executors ready "
        f"({health.executors_present} present)"
    )
