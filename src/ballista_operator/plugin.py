"""Plugin interface for the Ballista operator.

This module defines the plugin base class and metadata that operator
plugins use to integrate with the controller manager via pluggy hooks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ballista_operator.clients.base import BallistaCRDs
from ballista_operator.controller.index import OWNER_INDEX, ROLE_INDEX, owner_of, role_of
from ballista_operator.hooks import hookimpl

if TYPE_CHECKING:
    from ballista_operator.clients.base import CRDDefinition
    from ballista_operator.controller.index import IndexRegistry
    from ballista_operator.controller.manager import ControllerManager


@dataclass
class PluginMetadata:
    """Metadata describing an operator plugin."""

    name: str
    """Unique plugin name, e.g., 'ballista-cluster'."""

    version: str
    """Plugin version following semver."""

    description: str
    """Human-readable description of what this plugin provides."""

    maintainer: str
    """Maintainer email or team."""

    requires_crds: list[str] = field(default_factory=list)
    """CRD kinds this plugin requires.

    If any of them is not served by the API server the plugin is reported
    unhealthy.
    """


class BasePlugin:
    """Base implementation of an operator plugin.

    Subclasses override the hooks they need. External plugins are found
    through the entry point group ``ballista_operator.plugins``:

        [project.entry-points."ballista_operator.plugins"]
        my_plugin = "my_package.plugin:MyPlugin"
    """

    def __init__(self, metadata: PluginMetadata) -> None:
        self._metadata = metadata

    @hookimpl
    def ballista_get_plugin_metadata(self) -> PluginMetadata:
        """Return plugin metadata."""
        return self._metadata

    @hookimpl
    def ballista_get_crd_definitions(self) -> list[CRDDefinition]:
        """Return CRD definitions. Override in subclass."""
        return []

    @hookimpl
    def ballista_register_indexers(self, registry: IndexRegistry) -> None:
        """Register index extractors. Override in subclass."""
        pass

    @hookimpl
    def ballista_health_check(self, manager: ControllerManager) -> tuple[bool, str]:
        """Check that every CRD listed in ``requires_crds`` is served."""
        if not self._metadata.requires_crds:
            return True, "No CRD requirements"

        crd_map = {crd.kind: crd for crd in self.ballista_get_crd_definitions()}
        missing = [
            kind
            for kind in self._metadata.requires_crds
            if kind not in crd_map or not manager.store.crd_available(crd_map[kind])
        ]
        if missing:
            return False, f"Missing CRDs: {', '.join(missing)}"
        return True, "All required CRDs available"


class BallistaClusterPlugin(BasePlugin):
    """Core plugin: the BallistaCluster CRD and the owner/role extractors."""

    def __init__(self) -> None:
        super().__init__(
            PluginMetadata(
                name="ballista-cluster",
                version="1.0.0",
                description="Reconciles BallistaCluster resources into scheduler and executor pods",
                maintainer="ballista-operator@minzhou.info",
                requires_crds=[BallistaCRDs.BALLISTA_CLUSTER.kind],
            )
        )

    @hookimpl
    def ballista_get_crd_definitions(self) -> list[CRDDefinition]:
        return BallistaCRDs.all_crds()

    @hookimpl
    def ballista_register_indexers(self, registry: IndexRegistry) -> None:
        registry.register(OWNER_INDEX, owner_of)
        registry.register(ROLE_INDEX, role_of)
