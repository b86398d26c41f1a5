"""Utility functions and helpers for the Ballista operator."""

from ballista_operator.utils.errors import (
    AlreadyExistsError,
    BallistaError,
    DeadlineExceededError,
    NotFoundError,
    ObservationError,
    PermanentActionError,
    TransientStoreError,
    ValidationError,
    VersionConflictError,
    translate_api_exception,
)
from ballista_operator.utils.labels import (
    CLEANUP_FINALIZER,
    CLUSTER_KIND,
    GROUP,
    GROUP_VERSION,
    BallistaLabels,
    Role,
)

__all__ = [
    # Errors
    "BallistaError",
    "NotFoundError",
    "AlreadyExistsError",
    "VersionConflictError",
    "TransientStoreError",
    "ValidationError",
    "PermanentActionError",
    "ObservationError",
    "DeadlineExceededError",
    "translate_api_exception",
    # Labels
    "BallistaLabels",
    "Role",
    "GROUP",
    "GROUP_VERSION",
    "CLUSTER_KIND",
    "CLEANUP_FINALIZER",
]
