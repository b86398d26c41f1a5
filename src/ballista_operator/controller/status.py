"""Aggregation of child pod health into a cluster-level summary."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from ballista_operator.controller.index import ChildIndex
from ballista_operator.models.cluster import BallistaCluster
from ballista_operator.models.common import utc_now
from ballista_operator.models.pod import WorkloadUnit
from ballista_operator.utils.errors import ObservationError
from ballista_operator.utils.labels import Role

logger = logging.getLogger(__name__)


@dataclass
class HealthSummary:
    """What the operator could observe about a cluster's pods."""

    observed: bool
    observed_at: str
    error: str | None = None
    scheduler_present: bool = False
    scheduler_ready: bool = False
    executor_ordinals: list[int] = field(default_factory=list)
    executors_present: int = 0
    executors_ready: int = 0
    desired: int = 0

    @classmethod
    def failed(cls, error: str, observed_at: str, desired: int = 0) -> HealthSummary:
        return cls(observed=False, observed_at=observed_at, error=error, desired=desired)

    @property
    def scaling_required(self) -> bool:
        return self.executors_present != self.desired

    @property
    def converged(self) -> bool:
        """Scheduler ready and every desired executor ready."""
        return (
            self.observed
            and self.scheduler_ready
            and not self.scaling_required
            and self.executors_ready == self.desired
        )


class StatusEvaluator:
    """Builds a HealthSummary for a cluster from the child index."""

    def __init__(self, index: ChildIndex, clock: Callable[[], str] = utc_now) -> None:
        self._index = index
        self._clock = clock

    def evaluate(self, cluster: BallistaCluster) -> HealthSummary:
        now = self._clock()
        try:
            children = self._index.children_of(cluster.key)
        except ObservationError as e:
            logger.warning(f"Cannot observe children of {cluster.key}: {e}")
            return HealthSummary.failed(str(e), now, cluster.desired_executors)
        return summarize(children, cluster.desired_executors, now)


def summarize(children: list[WorkloadUnit], desired: int, observed_at: str) -> HealthSummary:
    """Summarize an observed set of children.

    Pods that are being deleted are not counted as present, so a replacement
    is created for them.
    """
    schedulers = [u for u in children if u.role == Role.SCHEDULER and not u.deleting]
    executors = [u for u in children if u.role == Role.EXECUTOR and not u.deleting]

    return HealthSummary(
        observed=True,
        observed_at=observed_at,
        scheduler_present=bool(schedulers),
        scheduler_ready=any(u.is_ready for u in schedulers),
        executor_ordinals=sorted(u.ordinal for u in executors if u.ordinal is not None),
        executors_present=len(executors),
        executors_ready=sum(1 for u in executors if u.is_ready),
        desired=desired,
    )
