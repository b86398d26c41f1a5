"""Unit tests for hook specifications and the plugin base classes."""

from unittest.mock import MagicMock

import pluggy

from ballista_operator.clients.base import BallistaCRDs
from ballista_operator.controller.index import OWNER_INDEX, ROLE_INDEX, IndexRegistry
from ballista_operator.hooks import PROJECT_NAME, BallistaOperatorHookSpec, hookimpl
from ballista_operator.plugin import BallistaClusterPlugin, BasePlugin, PluginMetadata


def _metadata(name: str = "test", requires_crds: list[str] | None = None) -> PluginMetadata:
    return PluginMetadata(
        name=name,
        version="1.0.0",
        description="Test plugin",
        maintainer="test@example.com",
        requires_crds=requires_crds or [],
    )


class TestHookSpec:
    """Tests for BallistaOperatorHookSpec."""

    def test_project_name_defined(self) -> None:
        assert PROJECT_NAME == "ballista_operator"

    def test_hookspec_can_be_added_to_pluggy(self) -> None:
        """Verify hookspec can be registered with pluggy."""
        pm = pluggy.PluginManager(PROJECT_NAME)
        pm.add_hookspecs(BallistaOperatorHookSpec)

        assert hasattr(pm.hook, "ballista_get_plugin_metadata")
        assert hasattr(pm.hook, "ballista_get_crd_definitions")
        assert hasattr(pm.hook, "ballista_register_indexers")
        assert hasattr(pm.hook, "ballista_health_check")


class TestHookImpl:
    """Tests for hook implementations."""

    def test_hookimpl_decorator_works(self) -> None:
        class TestPlugin:
            @hookimpl
            def ballista_get_plugin_metadata(self) -> PluginMetadata:
                return _metadata()

        plugin = TestPlugin()
        assert hasattr(plugin.ballista_get_plugin_metadata, "ballista_operator_impl")

    def test_multiple_plugins_register_indexers(self) -> None:
        """Every plugin gets to register extractors into the same registry."""

        class PluginA:
            @hookimpl
            def ballista_register_indexers(self, registry: IndexRegistry) -> None:
                registry.register("a", lambda pod: "a")

        class PluginB:
            @hookimpl
            def ballista_register_indexers(self, registry: IndexRegistry) -> None:
                registry.register("b", lambda pod: "b")

        pm = pluggy.PluginManager(PROJECT_NAME)
        pm.add_hookspecs(BallistaOperatorHookSpec)
        pm.register(PluginA())
        pm.register(PluginB())
        registry = IndexRegistry()

        pm.hook.ballista_register_indexers(registry=registry)

        assert registry.fields == ["a", "b"]


class TestBasePlugin:
    """Tests for BasePlugin defaults."""

    def test_metadata(self) -> None:
        assert BasePlugin(_metadata("x")).ballista_get_plugin_metadata().name == "x"

    def test_health_without_requirements(self) -> None:
        healthy, message = BasePlugin(_metadata()).ballista_health_check(MagicMock())

        assert healthy is True
        assert message == "No CRD requirements"

    def test_health_with_unknown_crd(self) -> None:
        """A required CRD the plugin does not define counts as missing."""
        plugin = BasePlugin(_metadata(requires_crds=["Widget"]))

        healthy, message = plugin.ballista_health_check(MagicMock())

        assert healthy is False
        assert "Widget" in message


class TestBallistaClusterPlugin:
    """Tests for the core plugin."""

    def test_crd_definitions(self) -> None:
        crds = BallistaClusterPlugin().ballista_get_crd_definitions()

        assert crds == [BallistaCRDs.BALLISTA_CLUSTER]
        assert crds[0].api_version == "ballista.minzhou.info/v1"

    def test_registers_owner_and_role(self) -> None:
        registry = IndexRegistry()

        BallistaClusterPlugin().ballista_register_indexers(registry)

        assert registry.fields == sorted([OWNER_INDEX, ROLE_INDEX])

    def test_health_check_uses_store(self) -> None:
        manager = MagicMock()
        manager.store.crd_available.return_value = False

        healthy, message = BallistaClusterPlugin().ballista_health_check(manager)

        assert healthy is False
        assert "BallistaCluster" in message
        manager.store.crd_available.assert_called_once_with(BallistaCRDs.BALLISTA_CLUSTER)
