"""Entry point for the Ballista operator."""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ballista_operator import __version__
from ballista_operator.config import AuthMode, LogLevel, OperatorConfig

if TYPE_CHECKING:
    from ballista_operator.controller.manager import ControllerManager


def setup_logging(level: LogLevel) -> None:
    """Configure logging for the operator."""
    logging.basicConfig(
        level=level.value,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="ballista-operator",
        description="Kubernetes operator for Apache Arrow Ballista clusters",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    # Scope
    parser.add_argument(
        "--namespace",
        default=None,
        help="Namespace to watch (default: all namespaces)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of concurrent reconcile workers (default: 4)",
    )

    # Auth options
    parser.add_argument(
        "--auth-mode",
        choices=["auto", "kubeconfig", "incluster"],
        default=None,
        help="Authentication mode (default: auto)",
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to kubeconfig file",
    )
    parser.add_argument(
        "--context",
        default=None,
        help="Kubeconfig context to use",
    )

    # Offline mode
    parser.add_argument(
        "--simulate",
        metavar="MANIFEST",
        default=None,
        help="Reconcile the BallistaCluster manifests in MANIFEST in memory and print the result",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> OperatorConfig:
    """Build config from args, falling back to environment/defaults."""
    config_kwargs: dict[str, Any] = {}

    if args.namespace:
        config_kwargs["namespace"] = args.namespace

    if args.workers:
        config_kwargs["workers"] = args.workers

    if args.auth_mode:
        config_kwargs["auth_mode"] = AuthMode(args.auth_mode)

    if args.kubeconfig:
        config_kwargs["kubeconfig_path"] = args.kubeconfig

    if args.context:
        config_kwargs["kubeconfig_context"] = args.context

    if args.log_level:
        config_kwargs["log_level"] = LogLevel(args.log_level)

    return OperatorConfig(**config_kwargs)


def run_simulation(manifest: str, config: OperatorConfig) -> int:
    from ballista_operator.simulate import load_manifests, render, simulate

    logger = logging.getLogger(__name__)
    try:
        text = Path(manifest).read_text()
    except OSError as e:
        logger.error(f"Cannot read manifest: {e}")
        return 1

    clusters = load_manifests(text)
    if not clusters:
        logger.error(f"No BallistaCluster documents in {manifest}")
        return 1

    sys.stdout.write(render(simulate(clusters, config)))
    return 0


def check_plugins(manager: "ControllerManager") -> bool:
    """Log the loaded plugins and run their health checks.

    Returns:
        True if every registered plugin reported healthy.
    """
    logger = logging.getLogger(__name__)
    plugin_manager = manager.plugin_manager
    for meta in plugin_manager.get_all_metadata():
        logger.info(f"Plugin {meta.name} {meta.version}: {meta.description}")

    manager.run_health_checks()
    healthy = plugin_manager.healthy_plugins
    unhealthy = sorted(name for name in plugin_manager.registered_plugins if name not in healthy)
    if unhealthy:
        names = ", ".join(unhealthy)
        crds = ", ".join(crd.kind for crd in plugin_manager.get_all_crd_definitions())
        logger.error(
            f"Plugin health checks failed for {names}, "
            f"are the required CRDs installed ({crds})?"
        )
        return False
    return True


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    config = build_config(args)

    setup_logging(config.log_level)

    logger = logging.getLogger(__name__)

    if args.simulate:
        return run_simulation(args.simulate, config)

    logger.info(f"Starting Ballista operator v{__version__}")

    # Validate auth config
    try:
        warnings = config.validate_auth_config()
        for warning in warnings:
            logger.warning(warning)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    from ballista_operator.clients.base import K8sStore
    from ballista_operator.controller.manager import ControllerManager
    from ballista_operator.plugin_manager import PluginManager
    from ballista_operator.utils.labels import BallistaLabels

    store = K8sStore(config, BallistaLabels.managed_selector())
    store.connect()

    plugin_manager = PluginManager()
    plugin_manager.load_core_plugins()
    plugin_manager.load_entrypoint_plugins()

    manager = ControllerManager(store, config, plugin_manager)
    if not check_plugins(manager):
        store.disconnect()
        return 1

    def handle_signal(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}")
        manager.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    manager.start()
    try:
        manager.wait()
    finally:
        manager.stop()
        store.disconnect()

    return 0


if __name__ == "__main__":
    sys.exit(main())
