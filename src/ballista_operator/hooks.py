"""Hook specifications for Ballista operator plugins.

Plugins implement these hooks (decorated with ``hookimpl``) to contribute
index extractors, CRD definitions and health checks to the operator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from ballista_operator.clients.base import CRDDefinition
    from ballista_operator.controller.index import IndexRegistry
    from ballista_operator.controller.manager import ControllerManager
    from ballista_operator.plugin import PluginMetadata

PROJECT_NAME = "ballista_operator"

hookspec = pluggy.HookspecMarker(PROJECT_NAME)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class BallistaOperatorHookSpec:
    """Hooks a Ballista operator plugin can implement."""

    @hookspec
    def ballista_get_plugin_metadata(self) -> PluginMetadata:  # type: ignore[empty-body]
        """Return metadata describing the plugin."""

    @hookspec
    def ballista_get_crd_definitions(self) -> list[CRDDefinition]:  # type: ignore[empty-body]
        """Return the CRDs the plugin works with."""

    @hookspec
    def ballista_register_indexers(self, registry: IndexRegistry) -> None:
        """Register pod index extractors.

        Called once at startup, before any watch is started.

        Args:
            registry: Registry the child index is computed from.
        """

    @hookspec
    def ballista_health_check(  # type: ignore[empty-body]
        self, manager: ControllerManager
    ) -> tuple[bool, str]:
        """Check whether the plugin can work against the connected cluster.

        Returns:
            Tuple of (healthy, message).
        """
