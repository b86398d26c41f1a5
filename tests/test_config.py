"""Tests for operator configuration."""

import pytest

from ballista_operator.config import AuthMode, LogLevel, OperatorConfig


class TestDefaults:
    """Default values and environment overrides."""

    def test_defaults(self, monkeypatch) -> None:
        for name in ("WORKERS", "NAMESPACE", "AUTH_MODE", "LOG_LEVEL"):
            monkeypatch.delenv(f"BALLISTA_OPERATOR_{name}", raising=False)

        config = OperatorConfig(_env_file=None)

        assert config.auth_mode == AuthMode.AUTO
        assert config.workers == 4
        assert config.namespace is None
        assert config.log_level == LogLevel.INFO
        assert config.default_image == "ghcr.io/apache/arrow-ballista"

    def test_env_prefix(self, monkeypatch) -> None:
        monkeypatch.setenv("BALLISTA_OPERATOR_WORKERS", "8")
        monkeypatch.setenv("BALLISTA_OPERATOR_NAMESPACE", "analytics")

        config = OperatorConfig(_env_file=None)

        assert config.workers == 8
        assert config.namespace == "analytics"

    def test_workers_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            OperatorConfig(_env_file=None, workers=0)


class TestAuthValidation:
    """Tests for validate_auth_config."""

    def test_missing_kubeconfig(self, tmp_path) -> None:
        config = OperatorConfig(
            _env_file=None,
            auth_mode=AuthMode.KUBECONFIG,
            kubeconfig_path=str(tmp_path / "missing"),
        )

        with pytest.raises(ValueError, match="Kubeconfig not found"):
            config.validate_auth_config()

    def test_existing_kubeconfig(self, tmp_path) -> None:
        kubeconfig = tmp_path / "config"
        kubeconfig.write_text("apiVersion: v1\n")
        config = OperatorConfig(
            _env_file=None,
            auth_mode=AuthMode.KUBECONFIG,
            kubeconfig_path=str(kubeconfig),
        )

        assert config.validate_auth_config() == []
        assert config.resolve_auth_mode() == AuthMode.KUBECONFIG

    def test_backoff_warning(self, tmp_path) -> None:
        kubeconfig = tmp_path / "config"
        kubeconfig.write_text("apiVersion: v1\n")
        config = OperatorConfig(
            _env_file=None,
            auth_mode=AuthMode.KUBECONFIG,
            kubeconfig_path=str(kubeconfig),
            backoff_base_seconds=10,
            backoff_max_seconds=1,
        )

        warnings = config.validate_auth_config()

        assert len(warnings) == 1
        assert "backoff_base_seconds" in warnings[0]

    def test_effective_kubeconfig_default(self) -> None:
        config = OperatorConfig(_env_file=None)

        assert config.effective_kubeconfig.name == "config"
        assert config.effective_kubeconfig.parent.name == ".kube"
