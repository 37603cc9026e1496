"""Minimal configuration wizard that writes ``terraform.tfvars``.

Asks for the handful of values a first deployment needs, validates them
with the same rules as Config, keeps a timestamped copy of any existing
variables file and writes HCL ``key = value`` lines.
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .config import VALID_SUBSCRIPTION_ID_PATTERN, Config
from .console import log_success
from .errors import ConfigurationError
from .prompts import Prompter

logger = logging.getLogger(__name__)

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

DEFAULT_LOCATION = "eastus"
DEFAULT_NODE_VM_SIZE = "Standard_D4s_v3"
DEFAULT_POSTGRES_SKU = "GP_Standard_D2s_v3"

# Flexible Server supports 7 to 35 days of point-in-time backups
MIN_BACKUP_RETENTION_DAYS = 7
MAX_BACKUP_RETENTION_DAYS = 35
MAX_NODE_COUNT = 100

VALID_RESOURCE_PREFIX_PATTERN = r"^[a-z][a-z0-9-]{1,18}[a-z0-9]$"
VALID_DOMAIN_PATTERN = r"^([a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?\.)+[a-z]{2,}$"


@dataclass(frozen=True)
class TfvarsSettings:
    """Values written to the variables file.

    Validated on construction, like Config.
    """

    subscription_id: str
    tenant_id: str
    resource_prefix: str = "coder"
    location: str = DEFAULT_LOCATION
    node_count: int = 3
    node_vm_size: str = DEFAULT_NODE_VM_SIZE
    postgres_sku: str = DEFAULT_POSTGRES_SKU
    backup_retention_days: int = MIN_BACKUP_RETENTION_DAYS
    geo_redundant_backup: bool = False
    enable_backup_export: bool = False
    coder_domain: str = ""

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"subscription_id must be a valid GUID: {self.subscription_id}")
        if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.tenant_id.lower()):
            errors.append(f"tenant_id must be a valid GUID: {self.tenant_id}")
        if not re.match(VALID_RESOURCE_PREFIX_PATTERN, self.resource_prefix):
            errors.append(
                f"resource_prefix must be 3-20 lowercase letters, digits or hyphens: "
                f"{self.resource_prefix}"
            )
        if not 1 <= self.node_count <= MAX_NODE_COUNT:
            errors.append(f"node_count must be between 1 and {MAX_NODE_COUNT}")
        if not MIN_BACKUP_RETENTION_DAYS <= self.backup_retention_days <= MAX_BACKUP_RETENTION_DAYS:
            errors.append(
                f"backup_retention_days must be between {MIN_BACKUP_RETENTION_DAYS} "
                f"and {MAX_BACKUP_RETENTION_DAYS}"
            )
        if self.coder_domain and not re.match(VALID_DOMAIN_PATTERN, self.coder_domain):
            errors.append(f"coder_domain is not a valid domain name: {self.coder_domain}")

        if errors:
            raise ConfigurationError(
                "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            )


def _hcl(value: str | int | bool) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def render_tfvars(settings: TfvarsSettings, generated_at: datetime) -> str:
    sections: list[tuple[str, list[tuple[str, str | int | bool]]]] = [
        (
            "Azure Authentication",
            [
                ("subscription_id", settings.subscription_id),
                ("tenant_id", settings.tenant_id),
            ],
        ),
        (
            "General Configuration",
            [
                ("resource_prefix", settings.resource_prefix),
                ("location", settings.location),
            ],
        ),
        (
            "AKS Configuration",
            [
                ("node_count", settings.node_count),
                ("node_vm_size", settings.node_vm_size),
            ],
        ),
        (
            "PostgreSQL Configuration",
            [("postgres_sku", settings.postgres_sku)],
        ),
        (
            "Backup Configuration",
            [
                ("backup_retention_days", settings.backup_retention_days),
                ("geo_redundant_backup", settings.geo_redundant_backup),
                ("enable_backup_export", settings.enable_backup_export),
            ],
        ),
        (
            "Coder Configuration",
            [
                ("coder_domain", settings.coder_domain),
                ("enable_ingress", bool(settings.coder_domain)),
            ],
        ),
    ]

    rule = "# " + "=" * 77
    lines = [
        "# Coder on Azure AKS - Configuration",
        f"# Generated by coderops configure on {generated_at:%Y-%m-%d %H:%M:%S}",
    ]
    for title, entries in sections:
        lines += ["", rule, f"# {title}", rule, ""]
        width = max(len(key) for key, _ in entries)
        lines += [f"{key:<{width}} = {_hcl(value)}" for key, value in entries]
    return "\n".join(lines) + "\n"


class ConfigureWizard:
    """Drives ``configure``."""

    def __init__(
        self,
        config: Config,
        prompter: Prompter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._prompter = prompter or Prompter()
        self._clock = clock or datetime.now

    def run(self) -> Path:
        """Collect settings, back up the old file, write the new one.

        Raises:
            ConfigurationError: If an answer fails validation.
        """
        settings = self.collect()
        return self.write(settings)

    def collect(self) -> TfvarsSettings:
        ask = self._prompter.prompt
        credentials = self._config.credentials

        logger.info("Configuring Coder on Azure AKS")
        subscription_id = ask("Azure subscription ID", default=credentials.subscription_id)
        tenant_id = ask("Azure tenant ID", default=credentials.tenant_id)
        resource_prefix = ask("Resource name prefix", default="coder")
        location = ask("Azure region", default=DEFAULT_LOCATION)
        node_count = self._ask_int("AKS node count", default=3)
        node_vm_size = ask("AKS node VM size", default=DEFAULT_NODE_VM_SIZE)
        postgres_sku = ask("PostgreSQL SKU", default=DEFAULT_POSTGRES_SKU)
        retention = self._ask_int("Backup retention days (7-35)", default=MIN_BACKUP_RETENTION_DAYS)
        geo_redundant = self._prompter.confirm("Enable geo-redundant backups?", default=False)
        export = self._prompter.confirm("Enable database export to Blob Storage?", default=False)
        coder_domain = ask("Coder domain (leave empty for LoadBalancer IP)", default="")

        return TfvarsSettings(
            subscription_id=subscription_id,
            tenant_id=tenant_id,
            resource_prefix=resource_prefix,
            location=location,
            node_count=node_count,
            node_vm_size=node_vm_size,
            postgres_sku=postgres_sku,
            backup_retention_days=retention,
            geo_redundant_backup=geo_redundant,
            enable_backup_export=export,
            coder_domain=coder_domain,
        )

    def _ask_int(self, question: str, default: int) -> int:
        answer = self._prompter.prompt(question, default=str(default))
        try:
            return int(answer)
        except ValueError as e:
            raise ConfigurationError(f"{question} must be a number: {answer}") from e

    def write(self, settings: TfvarsSettings) -> Path:
        path = self._config.tfvars_path
        now = self._clock()
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.exists():
            backup = path.with_name(f"{path.name}.backup.{now.strftime(BACKUP_TIMESTAMP_FORMAT)}")
            shutil.copy2(path, backup)
            logger.info("Existing config backed up to: %s", backup.name)

        path.write_text(render_tfvars(settings, now))
        log_success(logger, f"Configuration saved to: {path}")
        logger.info("Next: coderops deploy")
        return path
