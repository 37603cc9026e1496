"""Configuration management with validation.

All settings are resolved once, at the CLI boundary, into a frozen
Config. Core components receive the Config explicitly and never read the
environment themselves.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError

# Configuration constants with documented bounds
DEFAULT_TERRAFORM_DIR = "terraform"
TFVARS_FILENAME = "terraform.tfvars"
TFVARS_EXAMPLE_FILENAME = "terraform.tfvars.example"
PLAN_FILENAME = "tfplan"
STATE_FILENAME = "terraform.tfstate"

DEFAULT_NAMESPACE = "coder"
DEFAULT_RELEASE_NAME = "coder"
DEFAULT_APP_LABEL = "app.kubernetes.io/name=coder"
DEFAULT_BACKUP_CONTAINER = "database-backups"
DEFAULT_DB_SECRET_NAME = "coder-db-credentials"
DEFAULT_DB_SECRET_KEY = "url"
DEFAULT_BACKUP_PREFIX = "coder_backup"
DEFAULT_EXPORT_IMAGE = "postgres:15"

DEFAULT_EXPORT_JOB_TIMEOUT_SECONDS = 300
MIN_EXPORT_JOB_TIMEOUT_SECONDS = 30
MAX_EXPORT_JOB_TIMEOUT_SECONDS = 3600

DEFAULT_LB_CLEANUP_TIMEOUT_SECONDS = 30
MAX_LB_CLEANUP_TIMEOUT_SECONDS = 600

# Subprocess timeouts (seconds)
TERRAFORM_COMMAND_TIMEOUT_SECONDS = 3600
TERRAFORM_QUERY_TIMEOUT_SECONDS = 120
HELM_TIMEOUT_SECONDS = 300

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"
VALID_CONTAINER_NAME_PATTERN = r"^[a-z0-9](?!.*--)[a-z0-9-]{1,61}[a-z0-9]$"
VALID_BACKUP_PREFIX_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$"


@dataclass(frozen=True)
class AzureCredentials:
    """Service principal values as Terraform's azurerm provider expects them.

    When any of the four values is missing the orchestrator falls back to
    the Azure CLI login, exactly as the provider does.
    """

    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    tenant_id: str | None = None
    subscription_id: str | None = None

    @property
    def is_service_principal(self) -> bool:
        return all((self.client_id, self.client_secret, self.tenant_id, self.subscription_id))

    def to_env(self) -> dict[str, str]:
        """Render as ARM_* variables for the Terraform subprocess."""
        env: dict[str, str] = {}
        if self.client_id:
            env["ARM_CLIENT_ID"] = self.client_id
        if self.client_secret:
            env["ARM_CLIENT_SECRET"] = self.client_secret
        if self.tenant_id:
            env["ARM_TENANT_ID"] = self.tenant_id
        if self.subscription_id:
            env["ARM_SUBSCRIPTION_ID"] = self.subscription_id
        return env


@dataclass(frozen=True)
class ClusterConfig:
    """Where the Coder workload lives inside the cluster."""

    namespace: str = DEFAULT_NAMESPACE
    release_name: str = DEFAULT_RELEASE_NAME
    app_label_selector: str = DEFAULT_APP_LABEL
    service_name: str = DEFAULT_RELEASE_NAME


@dataclass(frozen=True)
class BackupConfig:
    """Database export settings."""

    container_name: str = DEFAULT_BACKUP_CONTAINER
    artifact_prefix: str = DEFAULT_BACKUP_PREFIX
    db_secret_name: str = DEFAULT_DB_SECRET_NAME
    db_secret_key: str = DEFAULT_DB_SECRET_KEY
    export_image: str = DEFAULT_EXPORT_IMAGE
    export_job_timeout_seconds: int = DEFAULT_EXPORT_JOB_TIMEOUT_SECONDS
    staging_dir: Path = field(default_factory=lambda: Path("/tmp"))


@dataclass(frozen=True)
class Config:
    """Orchestrator configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-operation.
    """

    terraform_dir: Path = field(default_factory=lambda: Path(DEFAULT_TERRAFORM_DIR))
    credentials: AzureCredentials = field(default_factory=AzureCredentials)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)

    # Fixed grace period upper bound for load balancer de-provisioning
    lb_cleanup_timeout_seconds: int = DEFAULT_LB_CLEANUP_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        subscription_id = self.credentials.subscription_id
        if subscription_id and not re.match(VALID_SUBSCRIPTION_ID_PATTERN, subscription_id.lower()):
            errors.append(f"ARM_SUBSCRIPTION_ID must be a valid GUID: {subscription_id}")

        if not re.match(VALID_NAMESPACE_PATTERN, self.cluster.namespace):
            errors.append(f"CODER_NAMESPACE is not a valid namespace: {self.cluster.namespace}")

        if not self.cluster.release_name:
            errors.append("CODER_RELEASE_NAME is required")

        if not re.match(VALID_CONTAINER_NAME_PATTERN, self.backup.container_name):
            errors.append(
                f"BACKUP_CONTAINER_NAME is not a valid blob container name: "
                f"{self.backup.container_name}"
            )

        if not re.match(VALID_BACKUP_PREFIX_PATTERN, self.backup.artifact_prefix):
            errors.append(f"Backup prefix is invalid: {self.backup.artifact_prefix}")

        if not (
            MIN_EXPORT_JOB_TIMEOUT_SECONDS
            <= self.backup.export_job_timeout_seconds
            <= MAX_EXPORT_JOB_TIMEOUT_SECONDS
        ):
            errors.append(
                f"EXPORT_JOB_TIMEOUT must be between {MIN_EXPORT_JOB_TIMEOUT_SECONDS} "
                f"and {MAX_EXPORT_JOB_TIMEOUT_SECONDS} seconds"
            )

        if not 0 <= self.lb_cleanup_timeout_seconds <= MAX_LB_CLEANUP_TIMEOUT_SECONDS:
            errors.append(
                f"LB_CLEANUP_TIMEOUT must be between 0 and {MAX_LB_CLEANUP_TIMEOUT_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def tfvars_path(self) -> Path:
        return self.terraform_dir / TFVARS_FILENAME

    @property
    def tfvars_example_path(self) -> Path:
        return self.terraform_dir / TFVARS_EXAMPLE_FILENAME

    @property
    def plan_path(self) -> Path:
        return self.terraform_dir / PLAN_FILENAME

    @property
    def state_path(self) -> Path:
        return self.terraform_dir / STATE_FILENAME

    @classmethod
    def from_env(cls, terraform_dir: Path | str | None = None) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            TERRAFORM_DIR: Terraform working directory (default: ./terraform)
            ARM_CLIENT_ID, ARM_CLIENT_SECRET, ARM_TENANT_ID: Service principal
            ARM_SUBSCRIPTION_ID: Target subscription (AZURE_SUBSCRIPTION_ID also accepted)
            CODER_NAMESPACE: Namespace of the Coder release (default: coder)
            CODER_RELEASE_NAME: Helm release name (default: coder)
            BACKUP_CONTAINER_NAME: Blob container for exports (default: database-backups)
            EXPORT_JOB_TIMEOUT: Seconds to wait for the export job (default: 300)
            LB_CLEANUP_TIMEOUT: Seconds to wait for load balancer removal (default: 30)

        Args:
            terraform_dir: Explicit override, typically from a CLI option.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_str(key: str) -> str | None:
            return os.environ.get(key) or None

        release_name = os.environ.get("CODER_RELEASE_NAME", DEFAULT_RELEASE_NAME)

        return cls(
            terraform_dir=Path(
                terraform_dir or os.environ.get("TERRAFORM_DIR", DEFAULT_TERRAFORM_DIR)
            ),
            credentials=AzureCredentials(
                client_id=get_str("ARM_CLIENT_ID"),
                client_secret=get_str("ARM_CLIENT_SECRET"),
                tenant_id=get_str("ARM_TENANT_ID"),
                subscription_id=get_str("ARM_SUBSCRIPTION_ID") or get_str("AZURE_SUBSCRIPTION_ID"),
            ),
            cluster=ClusterConfig(
                namespace=os.environ.get("CODER_NAMESPACE", DEFAULT_NAMESPACE),
                release_name=release_name,
                service_name=release_name,
            ),
            backup=BackupConfig(
                container_name=os.environ.get("BACKUP_CONTAINER_NAME", DEFAULT_BACKUP_CONTAINER),
                export_job_timeout_seconds=get_int(
                    "EXPORT_JOB_TIMEOUT", DEFAULT_EXPORT_JOB_TIMEOUT_SECONDS
                ),
            ),
            lb_cleanup_timeout_seconds=get_int("LB_CLEANUP_TIMEOUT", DEFAULT_LB_CLEANUP_TIMEOUT_SECONDS),
        )
