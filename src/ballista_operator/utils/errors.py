"""Error taxonomy for the Ballista operator.

Every failure the reconciler can observe is mapped onto one of these
classes so the dispatcher can decide between "already satisfied",
"retry now", "retry with backoff" and "wait for the user".
"""

from __future__ import annotations

from typing import Any


class BallistaError(Exception):
    """Base exception for operator errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(BallistaError):
    """The requested object does not exist (or vanished concurrently)."""

    def __init__(self, kind: str, name: str, namespace: str | None = None) -> None:
        self.kind = kind
        self.name = name
        self.namespace = namespace
        location = f"{namespace}/{name}" if namespace else name
        super().__init__(
            f"{kind} '{location}' not found",
            {"kind": kind, "name": name, "namespace": namespace},
        )


class AlreadyExistsError(BallistaError):
    """An object with the same name already exists."""

    def __init__(self, kind: str, name: str, namespace: str | None = None) -> None:
        self.kind = kind
        self.name = name
        self.namespace = namespace
        location = f"{namespace}/{name}" if namespace else name
        super().__init__(
            f"{kind} '{location}' already exists",
            {"kind": kind, "name": name, "namespace": namespace},
        )


class VersionConflictError(BallistaError):
    """An optimistic-concurrency write was rejected (stale resourceVersion)."""


class TransientStoreError(BallistaError):
    """The API server was unreachable or temporarily unable to serve."""


class ValidationError(BallistaError):
    """The declared cluster spec is structurally invalid."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message, {"field": field} if field else None)


class PermanentActionError(BallistaError):
    """A create or delete was rejected as fundamentally invalid."""


class ObservationError(BallistaError):
    """The current children of a cluster could not be observed."""


class DeadlineExceededError(BallistaError):
    """A reconciliation run ran past its deadline."""


def translate_api_exception(
    exc: Exception,
    kind: str,
    name: str = "",
    namespace: str | None = None,
) -> BallistaError:
    """Map a Kubernetes ``ApiException`` (or connection error) onto the taxonomy.

    Args:
        exc: The exception raised by the kubernetes client.
        kind: Kind of the object the call targeted.
        name: Name of the object, if any.
        namespace: Namespace of the object, if any.

    Returns:
        The classified operator error. Callers raise it ``from exc``.
    """
    status = getattr(exc, "status", None)
    reason = getattr(exc, "reason", None) or str(exc)
    body = getattr(exc, "body", None) or ""

    if status == 404:
        return NotFoundError(kind, name, namespace)
    if status == 409:
        if "AlreadyExists" in str(body) or "already exists" in str(body):
            return AlreadyExistsError(kind, name, namespace)
        return VersionConflictError(f"Conflict writing {kind} '{name}': {reason}")
    if status in (400, 403, 422):
        return PermanentActionError(f"{kind} '{name}' rejected ({status}): {reason}")
    return TransientStoreError(f"Error talking to the API server for {kind} '{name}': {reason}")
