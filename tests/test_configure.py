"""Tests for the configuration wizard."""

from datetime import datetime

import pytest

from orchestrator.config import Config
from orchestrator.configure import ConfigureWizard, TfvarsSettings, render_tfvars
from orchestrator.errors import ConfigurationError
from platform_mock import ScriptedPrompter

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"
TENANT_ID = "87654321-4321-4321-4321-210987654321"
GENERATED_AT = datetime(2024, 1, 15, 12, 0, 0)


def answers(**overrides: str) -> list[str]:
    values = {
        "subscription_id": SUBSCRIPTION_ID,
        "tenant_id": TENANT_ID,
        "resource_prefix": "coder",
        "location": "westeurope",
        "node_count": "3",
        "node_vm_size": "",
        "postgres_sku": "",
        "retention": "14",
        "coder_domain": "coder.example.com",
    }
    values.update(overrides)
    return [
        values["subscription_id"],
        values["tenant_id"],
        values["resource_prefix"],
        values["location"],
        values["node_count"],
        values["node_vm_size"],
        values["postgres_sku"],
        values["retention"],
        values["coder_domain"],
    ]


class TestTfvarsSettings:
    """Tests for TfvarsSettings validation."""

    def test_valid(self) -> None:
        """Test that valid settings construct."""
        settings = TfvarsSettings(subscription_id=SUBSCRIPTION_ID, tenant_id=TENANT_ID)

        assert settings.backup_retention_days == 7

    def test_invalid_values_aggregated(self) -> None:
        """Test that every invalid value is reported."""
        with pytest.raises(ConfigurationError) as exc_info:
            TfvarsSettings(
                subscription_id="nope",
                tenant_id=TENANT_ID,
                resource_prefix="Coder_Prod",
                backup_retention_days=90,
            )

        message = str(exc_info.value)
        assert "subscription_id" in message
        assert "resource_prefix" in message
        assert "backup_retention_days" in message

    def test_render(self) -> None:
        """Test the rendered HCL."""
        settings = TfvarsSettings(
            subscription_id=SUBSCRIPTION_ID,
            tenant_id=TENANT_ID,
            enable_backup_export=True,
            coder_domain="coder.example.com",
        )

        content = render_tfvars(settings, GENERATED_AT)

        assert f'subscription_id = "{SUBSCRIPTION_ID}"' in content
        assert "enable_backup_export  = true" in content
        assert 'coder_domain   = "coder.example.com"' in content
        assert "enable_ingress = true" in content
        assert "2024-01-15 12:00:00" in content


class TestConfigureWizard:
    """Tests for ConfigureWizard."""

    def test_writes_tfvars(self, tmp_path) -> None:
        """Test a full wizard run."""
        config = Config(terraform_dir=tmp_path / "terraform")
        prompter = ScriptedPrompter(answers=answers(), confirmations=[False, True])
        wizard = ConfigureWizard(config, prompter=prompter, clock=lambda: GENERATED_AT)

        path = wizard.run()

        assert path == config.tfvars_path
        content = path.read_text()
        assert 'location        = "westeurope"' in content
        assert 'node_vm_size = "Standard_D4s_v3"' in content
        assert "backup_retention_days = 14" in content
        assert "enable_backup_export  = true" in content

    def test_backs_up_existing_file(self, config: Config) -> None:
        """Test that an existing variables file is kept as a timestamped copy."""
        original = config.tfvars_path.read_text()
        prompter = ScriptedPrompter(answers=answers(), confirmations=[False, False])
        wizard = ConfigureWizard(config, prompter=prompter, clock=lambda: GENERATED_AT)

        wizard.run()

        backup = config.terraform_dir / "terraform.tfvars.backup.20240115120000"
        assert backup.read_text() == original
        assert config.tfvars_path.read_text() != original

    def test_non_numeric_answer(self, config: Config) -> None:
        """Test that a non-numeric count is rejected without writing."""
        original = config.tfvars_path.read_text()
        prompter = ScriptedPrompter(answers=answers(node_count="three"))
        wizard = ConfigureWizard(config, prompter=prompter, clock=lambda: GENERATED_AT)

        with pytest.raises(ConfigurationError):
            wizard.run()

        assert config.tfvars_path.read_text() == original

    def test_invalid_answer(self, config: Config) -> None:
        """Test that invalid settings are rejected without writing."""
        original = config.tfvars_path.read_text()
        prompter = ScriptedPrompter(
            answers=answers(retention="3"), confirmations=[False, False]
        )
        wizard = ConfigureWizard(config, prompter=prompter, clock=lambda: GENERATED_AT)

        with pytest.raises(ConfigurationError):
            wizard.run()

        assert config.tfvars_path.read_text() == original
