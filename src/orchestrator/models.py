"""Data model for lifecycle and backup operations.

Two kinds of types live here:
1. Pydantic models that validate Terraform outputs once, at the boundary
2. Plain dataclasses for the orchestrator's own entities and results
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Value the Terraform module emits when blob export is switched off
EXPORT_DISABLED_SENTINEL = "Backup export not enabled"

ARTIFACT_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
ARTIFACT_SUFFIX = ".sql.gz"

_SOURCE_SERVER_PATTERN = re.compile(r"--source-server\s+(\S+)")


# =============================================================================
# Terraform Outputs
# =============================================================================


class BackupInfo(BaseModel):
    """The ``postgres_backup_info`` output object."""

    model_config = ConfigDict(extra="ignore")

    retention_days: int | None = None
    geo_redundant: bool | None = None
    restore_command: str | None = None

    @property
    def source_server(self) -> str | None:
        """Server name embedded in the documented restore command."""
        if not self.restore_command:
            return None
        match = _SOURCE_SERVER_PATTERN.search(self.restore_command)
        return match.group(1) if match else None


class DeploymentOutputs(BaseModel):
    """Typed view over ``terraform output -json``.

    Every field is optional: outputs that failed to resolve are None and
    consumers decide whether that is fatal.
    """

    model_config = ConfigDict(extra="ignore")

    resource_group_name: str | None = None
    kubeconfig_command: str | None = None
    coder_access_url: str | None = None
    coder_load_balancer_ip: str | None = None
    entra_id_app_client_id: str | None = None
    dns_configuration: str | None = None
    postgres_server_fqdn: str | None = None
    postgres_backup_info: BackupInfo | None = None
    backup_storage_account_name: str | None = None

    @field_validator("postgres_backup_info", mode="before")
    @classmethod
    def parse_backup_info(cls, v: Any) -> Any:
        # A non-object value means the output is not usable, not invalid config
        if v is None or isinstance(v, (dict, BackupInfo)):
            return v
        return None

    @classmethod
    def from_terraform_json(cls, raw: dict[str, Any]) -> DeploymentOutputs:
        """Build from the ``{name: {"value": ..., "sensitive": ...}}`` shape."""
        values: dict[str, Any] = {}
        for name, entry in raw.items():
            if name not in cls.model_fields or not isinstance(entry, dict):
                continue
            value = entry.get("value")
            # Outputs with unexpected types degrade to unknown
            if name == "postgres_backup_info" or isinstance(value, str):
                values[name] = value
        return cls.model_validate(values)

    @property
    def postgres_server_name(self) -> str | None:
        """Server name from the restore command, else the first FQDN label."""
        if self.postgres_backup_info and self.postgres_backup_info.source_server:
            return self.postgres_backup_info.source_server
        if self.postgres_server_fqdn:
            return self.postgres_server_fqdn.split(".", 1)[0] or None
        return None

    @property
    def export_enabled(self) -> bool:
        return bool(self.backup_storage_account_name) and (
            self.backup_storage_account_name != EXPORT_DISABLED_SENTINEL
        )


# =============================================================================
# Managed Resources
# =============================================================================


@dataclass(frozen=True)
class ManagedResourceSet:
    """Resource addresses currently tracked in Terraform state."""

    addresses: tuple[str, ...] = ()

    @classmethod
    def from_lines(cls, lines: Iterable[str]) -> ManagedResourceSet:
        return cls(tuple(line.strip() for line in lines if line.strip()))

    @property
    def exists(self) -> bool:
        return bool(self.addresses)

    def __contains__(self, address: object) -> bool:
        return address in self.addresses

    def __iter__(self) -> Iterator[str]:
        return iter(self.addresses)

    def __len__(self) -> int:
        return len(self.addresses)


# =============================================================================
# Lifecycle Operations
# =============================================================================


class OperationKind(str, Enum):
    APPLY = "apply"
    DESTROY = "destroy"


class OperationMode(str, Enum):
    INTERACTIVE = "interactive"
    AUTO_APPROVED = "auto-approved"
    PLAN_ONLY = "plan-only"


class OperationOutcome(str, Enum):
    """Terminal state of a lifecycle operation."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NO_OP = "no-op"

    @property
    def exit_code(self) -> int:
        return 1 if self is OperationOutcome.FAILED else 0


@dataclass
class LifecycleOperation:
    """One invocation of apply or destroy. Lives only as long as the process."""

    kind: OperationKind
    mode: OperationMode
    outcome: OperationOutcome | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @classmethod
    def start(
        cls, kind: OperationKind, *, auto_approve: bool, plan_only: bool = False
    ) -> LifecycleOperation:
        if plan_only:
            mode = OperationMode.PLAN_ONLY
        elif auto_approve:
            mode = OperationMode.AUTO_APPROVED
        else:
            mode = OperationMode.INTERACTIVE
        return cls(kind=kind, mode=mode)

    def finish(self, outcome: OperationOutcome) -> None:
        self.outcome = outcome
        self.end_time = datetime.now(UTC)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def log_fields(self) -> dict[str, Any]:
        return {
            "operation": self.kind.value,
            "mode": self.mode.value,
            "outcome": self.outcome.value if self.outcome else None,
            "duration_seconds": round(self.duration_seconds, 2),
        }


@dataclass
class ApplyResult:
    """Result of ``deploy``."""

    operation: LifecycleOperation
    resources_changed: int = 0
    applied: bool = False
    outputs: DeploymentOutputs = field(default_factory=DeploymentOutputs)

    @property
    def outcome(self) -> OperationOutcome:
        return self.operation.outcome or OperationOutcome.FAILED


@dataclass
class DestroyResult:
    """Result of ``destroy``."""

    operation: LifecycleOperation
    remaining_resources: ManagedResourceSet = field(default_factory=ManagedResourceSet)
    detached: list[str] = field(default_factory=list)
    destroy_attempts: int = 0
    destroyed: bool = False
    resource_group_name: str | None = None

    @property
    def outcome(self) -> OperationOutcome:
        return self.operation.outcome or OperationOutcome.FAILED


# =============================================================================
# Backup & Restore
# =============================================================================


@dataclass(frozen=True)
class BackupArtifact:
    """A database dump stored in the object store. Immutable once written."""

    name: str
    size_bytes: int | None = None
    location: str | None = None
    created_at: datetime | None = None

    @staticmethod
    def name_for(prefix: str, timestamp: datetime) -> str:
        """``<prefix>_<YYYYMMDD_HHMMSS>.sql.gz`` for a UTC timestamp."""
        return f"{prefix}_{timestamp.strftime(ARTIFACT_TIMESTAMP_FORMAT)}{ARTIFACT_SUFFIX}"


class RestoreMode(str, Enum):
    POINT_IN_TIME = "point-in-time"
    FROM_ARTIFACT = "from-artifact"


@dataclass(frozen=True)
class RestoreRequest:
    """A restore always targets a new resource; the source is read-only."""

    mode: RestoreMode
    source: str
    destination: str | None = None
    restore_time: datetime | None = None


class ExportJobState(str, Enum):
    PENDING = "pending"
    STAGED = "staged"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    DELETED = "deleted"


@dataclass
class ExportJob:
    """Ephemeral cluster job that dumps the database into pod-local storage."""

    name: str
    namespace: str
    timeout_seconds: int
    state: ExportJobState = ExportJobState.PENDING
    pod_name: str | None = None


@dataclass(frozen=True)
class RestoreWindow:
    """Point-in-time restore bounds reported by the database control plane."""

    earliest: datetime | None
    latest: datetime

    def contains(self, instant: datetime) -> bool:
        if instant > self.latest:
            return False
        return self.earliest is None or instant >= self.earliest
