"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from orchestrator.config import (
    AzureCredentials,
    BackupConfig,
    ClusterConfig,
    Config,
)
from orchestrator.errors import ConfigurationError

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"


class TestConfig:
    """Tests for Config class."""

    def test_defaults(self) -> None:
        """Test that the default configuration is valid."""
        config = Config()

        assert config.terraform_dir == Path("terraform")
        assert config.cluster.namespace == "coder"
        assert config.cluster.release_name == "coder"
        assert config.backup.container_name == "database-backups"
        assert config.backup.export_job_timeout_seconds == 300
        assert config.lb_cleanup_timeout_seconds == 30

    def test_derived_paths(self, tmp_path: Path) -> None:
        """Test that file locations are derived from the working directory."""
        config = Config(terraform_dir=tmp_path)

        assert config.tfvars_path == tmp_path / "terraform.tfvars"
        assert config.tfvars_example_path == tmp_path / "terraform.tfvars.example"
        assert config.plan_path == tmp_path / "tfplan"
        assert config.state_path == tmp_path / "terraform.tfstate"

    def test_invalid_subscription_id(self) -> None:
        """Test that a malformed subscription ID raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(credentials=AzureCredentials(subscription_id="not-a-guid"))

        assert "ARM_SUBSCRIPTION_ID" in str(exc_info.value)

    def test_invalid_namespace(self) -> None:
        """Test that an invalid Kubernetes namespace raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(cluster=ClusterConfig(namespace="Coder_NS"))

        assert "CODER_NAMESPACE" in str(exc_info.value)

    def test_invalid_container_name(self) -> None:
        """Test that an invalid blob container name raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(backup=BackupConfig(container_name="Database_Backups"))

        assert "BACKUP_CONTAINER_NAME" in str(exc_info.value)

    def test_export_timeout_bounds(self) -> None:
        """Test that out-of-range export timeout raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(backup=BackupConfig(export_job_timeout_seconds=5))

        assert "EXPORT_JOB_TIMEOUT" in str(exc_info.value)

    def test_errors_are_aggregated(self) -> None:
        """Test that every validation failure is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                cluster=ClusterConfig(namespace="-bad-", release_name=""),
                lb_cleanup_timeout_seconds=-1,
            )

        message = str(exc_info.value)
        assert "CODER_NAMESPACE" in message
        assert "CODER_RELEASE_NAME" in message
        assert "LB_CLEANUP_TIMEOUT" in message

    def test_from_env(self, tmp_path: Path) -> None:
        """Test loading configuration from environment."""
        env = {
            "TERRAFORM_DIR": str(tmp_path),
            "ARM_CLIENT_ID": "client",
            "ARM_CLIENT_SECRET": "secret",
            "ARM_TENANT_ID": "tenant",
            "ARM_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "CODER_NAMESPACE": "coder-prod",
            "EXPORT_JOB_TIMEOUT": "600",
            "LB_CLEANUP_TIMEOUT": "60",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.terraform_dir == tmp_path
        assert config.credentials.is_service_principal is True
        assert config.cluster.namespace == "coder-prod"
        assert config.backup.export_job_timeout_seconds == 600
        assert config.lb_cleanup_timeout_seconds == 60

    def test_from_env_explicit_dir_wins(self, tmp_path: Path) -> None:
        """Test that an explicit working directory overrides TERRAFORM_DIR."""
        with patch.dict(os.environ, {"TERRAFORM_DIR": "/elsewhere"}, clear=True):
            config = Config.from_env(terraform_dir=tmp_path)

        assert config.terraform_dir == tmp_path

    def test_from_env_accepts_azure_subscription_id(self) -> None:
        """Test that AZURE_SUBSCRIPTION_ID is used when ARM_SUBSCRIPTION_ID is unset."""
        with patch.dict(os.environ, {"AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID}, clear=True):
            config = Config.from_env()

        assert config.credentials.subscription_id == SUBSCRIPTION_ID
        assert config.credentials.is_service_principal is False

    def test_from_env_rejects_non_integer(self) -> None:
        """Test that a non-numeric timeout raises error."""
        with patch.dict(os.environ, {"EXPORT_JOB_TIMEOUT": "five minutes"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "EXPORT_JOB_TIMEOUT" in str(exc_info.value)


class TestAzureCredentials:
    """Tests for the ARM_* credential bundle."""

    def test_to_env_only_includes_set_values(self) -> None:
        """Test that unset values are not exported to Terraform."""
        credentials = AzureCredentials(subscription_id=SUBSCRIPTION_ID)

        assert credentials.to_env() == {"ARM_SUBSCRIPTION_ID": SUBSCRIPTION_ID}

    def test_secret_not_in_repr(self) -> None:
        """Test that the client secret never appears in repr output."""
        credentials = AzureCredentials(client_secret="hunter2")

        assert "hunter2" not in repr(credentials)
