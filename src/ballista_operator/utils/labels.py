"""Label, annotation and finalizer keys used on Ballista resources."""

from __future__ import annotations

from enum import Enum

GROUP = "ballista.minzhou.info"
VERSION = "v1"
GROUP_VERSION = f"{GROUP}/{VERSION}"
CLUSTER_KIND = "BallistaCluster"

CLEANUP_FINALIZER = f"{GROUP}/cleanup"


class Role(str, Enum):
    """Role of a pod inside a Ballista cluster."""

    SCHEDULER = "scheduler"
    EXECUTOR = "executor"


class BallistaLabels:
    """Labels the operator puts on every pod it creates."""

    ROLE = f"{GROUP}/role"
    CLUSTER = f"{GROUP}/cluster"
    ORDINAL = f"{GROUP}/ordinal"
    VERSION = f"{GROUP}/version"

    MANAGED_BY = "app.kubernetes.io/managed-by"
    MANAGED_BY_VALUE = "ballista-operator"

    @classmethod
    def for_child(
        cls,
        cluster_name: str,
        role: Role,
        ballista_version: str,
        ordinal: int | None = None,
    ) -> dict[str, str]:
        """Build the operator-owned label set for a child pod."""
        labels = {
            cls.MANAGED_BY: cls.MANAGED_BY_VALUE,
            cls.CLUSTER: cluster_name,
            cls.ROLE: role.value,
            cls.VERSION: ballista_version,
        }
        if ordinal is not None:
            labels[cls.ORDINAL] = str(ordinal)
        return labels

    @classmethod
    def cluster_selector(cls, cluster_name: str) -> str:
        """Label selector matching every child of a cluster."""
        return f"{cls.MANAGED_BY}={cls.MANAGED_BY_VALUE},{cls.CLUSTER}={cluster_name}"

    @classmethod
    def managed_selector(cls) -> str:
        """Label selector matching every pod the operator manages."""
        return f"{cls.MANAGED_BY}={cls.MANAGED_BY_VALUE}"
