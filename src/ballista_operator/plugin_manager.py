"""Plugin discovery and hook dispatch for the Ballista operator.

The core BallistaCluster plugin is always registered; further plugins are
picked up from the ``ballista_operator.plugins`` entry point group and can
contribute index extractors, CRD definitions and health checks.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import pluggy

from ballista_operator.hooks import PROJECT_NAME, BallistaOperatorHookSpec

if TYPE_CHECKING:
    from ballista_operator.clients.base import CRDDefinition
    from ballista_operator.controller.index import IndexRegistry
    from ballista_operator.controller.manager import ControllerManager
    from ballista_operator.plugin import PluginMetadata

logger = logging.getLogger(__name__)

PLUGIN_ENTRY_POINT_GROUP = "ballista_operator.plugins"

HealthResult = tuple[bool, str]


def _plugin_name(plugin: Any) -> str:
    """Name a plugin after its metadata, or its class when it has none."""
    get_metadata = getattr(plugin, "ballista_get_plugin_metadata", None)
    if get_metadata is not None:
        return str(get_metadata().name)
    return type(plugin).__name__


class PluginManager:
    """Registers operator plugins and calls their hooks."""

    def __init__(self) -> None:
        self._pm = pluggy.PluginManager(PROJECT_NAME)
        self._pm.add_hookspecs(BallistaOperatorHookSpec)
        self._healthy: set[str] = set()

    @property
    def hook(self) -> Any:
        return self._pm.hook

    @property
    def registered_plugins(self) -> dict[str, Any]:
        """Registered plugins by name, whatever way they were loaded."""
        return {name: plugin for name, plugin in self._pm.list_name_plugin() if plugin}

    @property
    def healthy_plugins(self) -> dict[str, Any]:
        """Plugins that passed the last health check run."""
        return {
            name: plugin
            for name, plugin in self.registered_plugins.items()
            if name in self._healthy
        }

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_plugin(self, plugin: Any, name: str | None = None) -> str:
        """Register a plugin instance.

        Args:
            plugin: Object with ``hookimpl``-decorated ``ballista_*`` methods.
            name: Registration name. Defaults to the metadata name, then the
                class name.

        Returns:
            The name the plugin is registered under.
        """
        name = name or _plugin_name(plugin)
        self._pm.register(plugin, name=name)
        logger.debug(f"Registered plugin {name}")
        return name

    def load_core_plugins(self) -> int:
        """Register the built-in BallistaCluster plugin."""
        from ballista_operator.plugin import BallistaClusterPlugin

        self.register_plugin(BallistaClusterPlugin())
        return 1

    def load_entrypoint_plugins(self) -> int:
        """Load plugins advertised under ``PLUGIN_ENTRY_POINT_GROUP``.

        Returns:
            Number of plugins loaded.
        """
        count = self._pm.load_setuptools_entrypoints(PLUGIN_ENTRY_POINT_GROUP)
        if count:
            logger.info(f"Loaded {count} plugins from entry points")
        return count

    # -------------------------------------------------------------------------
    # Hook calls
    # -------------------------------------------------------------------------

    def get_all_metadata(self) -> list[PluginMetadata]:
        return [meta for meta in self.hook.ballista_get_plugin_metadata() if meta is not None]

    def get_all_crd_definitions(self) -> list[CRDDefinition]:
        """CRD definitions of every plugin, flattened."""
        return [crd for crds in self.hook.ballista_get_crd_definitions() for crd in crds or []]

    def register_all_indexers(self, registry: IndexRegistry) -> None:
        """Let every plugin register its index extractors."""
        self.hook.ballista_register_indexers(registry=registry)
        logger.info(f"Index fields: {', '.join(registry.fields) or 'none'}")

    def run_health_checks(self, manager: ControllerManager) -> dict[str, HealthResult]:
        """Check every plugin against the connected store.

        A plugin whose check raises is reported unhealthy with the error as
        its message.

        Returns:
            Mapping of plugin name to (healthy, message).
        """
        results = {
            name: self._check(name, plugin, manager)
            for name, plugin in self.registered_plugins.items()
        }
        self._healthy = {name for name, (healthy, _) in results.items() if healthy}
        return results

    def _check(self, name: str, plugin: Any, manager: ControllerManager) -> HealthResult:
        check = getattr(plugin, "ballista_health_check", None)
        if check is None:
            return True, "No health check defined"
        try:
            healthy, message = check(manager=manager)
        except Exception as e:
            logger.warning(f"Health check of plugin {name} raised: {e}")
            return False, f"Health check error: {e}"

        if healthy:
            logger.info(f"Plugin {name} healthy: {message}")
        else:
            logger.warning(f"Plugin {name} unhealthy: {message}")
        return healthy, message
