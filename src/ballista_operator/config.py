"""Configuration for the Ballista operator.

Values are read from ``BALLISTA_OPERATOR_*`` environment variables (or a
``.env`` file) and may be overridden from the command line.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthMode(str, Enum):
    """How the operator authenticates to the Kubernetes API."""

    AUTO = "auto"
    KUBECONFIG = "kubeconfig"
    INCLUSTER = "incluster"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


SERVICE_ACCOUNT_TOKEN = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")


class OperatorConfig(BaseSettings):
    """Ballista operator configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BALLISTA_OPERATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Kubernetes access
    auth_mode: AuthMode = Field(AuthMode.AUTO, description="Kubernetes authentication mode")
    kubeconfig_path: str | None = Field(None, description="Path to kubeconfig file")
    kubeconfig_context: str | None = Field(None, description="Kubeconfig context to use")
    namespace: str | None = Field(
        None, description="Namespace to watch (all namespaces when unset)"
    )

    # Worker pool and queue
    workers: int = Field(4, ge=1, description="Number of concurrent reconcile workers")
    resync_seconds: float = Field(
        300.0, gt=0, description="Interval at which every cluster is re-enqueued"
    )
    backoff_base_seconds: float = Field(0.5, gt=0, description="Initial requeue backoff")
    backoff_max_seconds: float = Field(300.0, gt=0, description="Maximum requeue backoff")

    # Reconciliation
    reconcile_timeout_seconds: float = Field(
        30.0, gt=0, description="Deadline for a single reconciliation run"
    )
    staleness_seconds: float = Field(
        120.0, gt=0, description="Age after which a child observation is considered stale"
    )
    pending_requeue_seconds: float = Field(
        10.0, gt=0, description="Requeue delay while waiting for pods to become ready"
    )
    conflict_retries: int = Field(
        5, ge=1, description="Attempts for a write that hits a version conflict"
    )
    max_permanent_attempts: int = Field(
        5, ge=1, description="Attempts before a permanently rejected action is suspended"
    )

    # Pod defaults
    default_image: str = Field(
        "ghcr.io/apache/arrow-ballista",
        description="Image repository used when neither role nor cluster declare an image",
    )

    log_level: LogLevel = Field(LogLevel.INFO, description="Logging level")

    @property
    def effective_kubeconfig(self) -> Path:
        """Kubeconfig path, falling back to ~/.kube/config."""
        if self.kubeconfig_path:
            return Path(self.kubeconfig_path).expanduser()
        return Path.home() / ".kube" / "config"

    def resolve_auth_mode(self) -> AuthMode:
        """Resolve AUTO to a concrete authentication mode."""
        if self.auth_mode != AuthMode.AUTO:
            return self.auth_mode
        if SERVICE_ACCOUNT_TOKEN.exists():
            return AuthMode.INCLUSTER
        return AuthMode.KUBECONFIG

    def validate_auth_config(self) -> list[str]:
        """Validate Kubernetes access settings.

        Returns:
            List of warnings.

        Raises:
            ValueError: If the configuration cannot work at all.
        """
        warnings: list[str] = []

        if self.auth_mode == AuthMode.KUBECONFIG and not self.effective_kubeconfig.exists():
            raise ValueError(f"Kubeconfig not found: {self.effective_kubeconfig}")

        if self.auth_mode == AuthMode.INCLUSTER and not SERVICE_ACCOUNT_TOKEN.exists():
            raise ValueError("In-cluster auth requested but no service account token is mounted")

        if self.kubeconfig_context and self.resolve_auth_mode() == AuthMode.INCLUSTER:
            warnings.append("Kubeconfig context is ignored when running in-cluster")

        if self.backoff_base_seconds > self.backoff_max_seconds:
            warnings.append(
                "backoff_base_seconds is larger than backoff_max_seconds; "
                "every retry will use the maximum"
            )

        return warnings
