"""Backup/Restore Coordinator for the Coder PostgreSQL database.

Actions:
- status: retention, restore window and export count (read-only)
- list: point-in-time window plus the exported artifacts
- export: one-shot cluster job dumps the database, the dump is copied
  out of the pod and uploaded to Blob Storage
- restore: point-in-time clone to a NEW server, or the commands to load
  an exported dump

Restores never write to the source server or to existing artifacts.
The export job and the local staging file are removed on every path.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click
import yaml

from .blobstore import BlobArtifactStore
from .cluster import KubernetesCluster
from .config import BackupConfig, Config
from .console import log_success
from .database import FlexibleServerBackend
from .errors import (
    BackendOperationError,
    ExportTimeout,
    OrchestratorError,
    PreconditionError,
)
from .models import (
    BackupArtifact,
    BackupInfo,
    ExportJob,
    ExportJobState,
    RestoreMode,
    RestoreRequest,
)
from .prompts import Prompter
from .reporter import (
    NOT_AVAILABLE,
    format_instant,
    render_artifact_restore_commands,
    render_artifact_table,
    render_backup_status,
    render_restore_options,
    render_restore_window,
)
from .state import StateInspector

logger = logging.getLogger(__name__)

EXPORT_CONTAINER_NAME = "backup"
EXPORT_VOLUME_PATH = "/backup"
EXPORT_ARTIFACT_PATH = f"{EXPORT_VOLUME_PATH}/backup.sql.gz"
EXPORT_STAGED_MARKER = f"{EXPORT_VOLUME_PATH}/.staged"
EXPORT_JOB_TTL_SECONDS = 300
JOB_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

VALID_SERVER_NAME_PATTERN = r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$"

ENABLE_EXPORT_REMEDIATION = (
    "Set enable_backup_export = true in terraform.tfvars, then run: coderops deploy"
)

# The container dumps, marks the artifact staged (flipping its readiness
# probe), then holds so the artifact can be copied out of a live pod.
EXPORT_JOB_TEMPLATE = """
apiVersion: batch/v1
kind: Job
metadata:
  labels:
    app.kubernetes.io/managed-by: coderops
    app.kubernetes.io/component: database-export
spec:
  backoffLimit: 0
  template:
    metadata:
      labels:
        app.kubernetes.io/managed-by: coderops
        app.kubernetes.io/component: database-export
    spec:
      restartPolicy: Never
      containers:
        - name: backup
          command: ["/bin/bash", "-c"]
          env:
            - name: DATABASE_URL
              valueFrom:
                secretKeyRef: {}
          readinessProbe:
            exec:
              command: ["test", "-f", "/backup/.staged"]
            periodSeconds: 2
          volumeMounts:
            - name: backup
              mountPath: /backup
      volumes:
        - name: backup
          emptyDir: {}
"""


def build_export_job_manifest(job: ExportJob, backup: BackupConfig) -> dict[str, Any]:
    """Render the export Job for ``job`` from the static template."""
    manifest: dict[str, Any] = yaml.safe_load(EXPORT_JOB_TEMPLATE)
    manifest["metadata"].update(name=job.name, namespace=job.namespace)

    spec = manifest["spec"]
    spec["ttlSecondsAfterFinished"] = EXPORT_JOB_TTL_SECONDS
    # Upper bound on the pod's life even if nobody deletes the job
    spec["activeDeadlineSeconds"] = job.timeout_seconds * 2

    container = spec["template"]["spec"]["containers"][0]
    container["image"] = backup.export_image
    container["args"] = [
        "set -o pipefail; "
        f'pg_dump "${{DATABASE_URL}}" | gzip > {EXPORT_ARTIFACT_PATH} '
        f"&& touch {EXPORT_STAGED_MARKER} "
        f"&& sleep {job.timeout_seconds}"
    ]
    container["env"][0]["valueFrom"]["secretKeyRef"] = {
        "name": backup.db_secret_name,
        "key": backup.db_secret_key,
    }
    return manifest


def parse_restore_time(raw: str) -> datetime:
    """Parse an ISO-8601 instant. Naive values are taken as UTC.

    Raises:
        PreconditionError: If the value is not ISO-8601.
    """
    value = raw.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        instant = datetime.fromisoformat(value)
    except ValueError as e:
        raise PreconditionError(
            f"Invalid restore point: {raw!r}",
            remediation="Use ISO-8601, e.g. 2024-01-15T10:30:00Z",
        ) from e
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    return instant


@dataclass(frozen=True)
class BackupTarget:
    """Where the database and its exports live, resolved from Terraform outputs."""

    resource_group: str
    server_name: str
    storage_account: str | None
    backup_info: BackupInfo | None = None
    kubeconfig_command: str | None = None

    @property
    def export_enabled(self) -> bool:
        return self.storage_account is not None


class BackupCoordinator:
    """Drives ``backup``."""

    def __init__(
        self,
        config: Config,
        inspector: StateInspector,
        cluster: KubernetesCluster,
        database: FlexibleServerBackend,
        store_factory: Callable[[str], BlobArtifactStore],
        prompter: Prompter | None = None,
        preflight: Callable[[], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._inspector = inspector
        self._cluster = cluster
        self._database = database
        self._store_factory = store_factory
        self._prompter = prompter or Prompter()
        self._preflight = preflight or (lambda: None)
        self._clock = clock or (lambda: datetime.now(UTC))

    # -------------------------------------------------------------------------
    # Shared preamble
    # -------------------------------------------------------------------------

    def resolve_target(self) -> BackupTarget:
        """Authenticate, require a deployment, and locate the database.

        Raises:
            PreconditionError: If nothing is deployed or outputs are incomplete.
        """
        self._preflight()

        if not self._inspector.has_managed_resources():
            raise PreconditionError(
                "No deployment found in Terraform state. Deploy infrastructure first.",
                remediation="coderops deploy",
            )

        outputs = self._inspector.outputs()
        resource_group = outputs.resource_group_name
        server_name = outputs.postgres_server_name
        if not resource_group or not server_name:
            raise PreconditionError(
                "Could not retrieve infrastructure details from Terraform state",
                remediation="terraform output",
            )

        target = BackupTarget(
            resource_group=resource_group,
            server_name=server_name,
            storage_account=(
                outputs.backup_storage_account_name if outputs.export_enabled else None
            ),
            backup_info=outputs.postgres_backup_info,
            kubeconfig_command=outputs.kubeconfig_command,
        )
        logger.debug(
            "Resolved backup target",
            extra={
                "resource_group": target.resource_group,
                "server": target.server_name,
                "export_enabled": target.export_enabled,
            },
        )
        return target

    def _earliest_restore(self, target: BackupTarget) -> tuple[str, datetime]:
        """Earliest restore point as text (``N/A`` on failure) and "now"."""
        try:
            window = self._database.restore_window(target.resource_group, target.server_name)
        except BackendOperationError as e:
            logger.debug("Restore window unavailable", extra={"error": e.message})
            return NOT_AVAILABLE, self._clock()
        return format_instant(window.earliest), window.latest

    def _store(self, target: BackupTarget) -> BlobArtifactStore:
        if target.storage_account is None:
            raise PreconditionError(
                "Blob storage export not enabled", remediation=ENABLE_EXPORT_REMEDIATION
            )
        return self._store_factory(target.storage_account)

    # -------------------------------------------------------------------------
    # Status / list
    # -------------------------------------------------------------------------

    def status(self) -> None:
        target = self.resolve_target()
        logger.info("PostgreSQL Backup Status")
        logger.info("Querying Azure for backup details...")
        earliest, _ = self._earliest_restore(target)

        artifact_count: int | None = None
        if target.export_enabled:
            try:
                artifact_count = self._store(target).count_artifacts()
            except BackendOperationError as e:
                logger.warning("Could not count exported backups: %s", e.message)

        click.echo("")
        click.echo(
            render_backup_status(
                server=target.server_name,
                resource_group=target.resource_group,
                backup_info=target.backup_info,
                earliest_restore=earliest,
                storage_account=target.storage_account,
                container=self._config.backup.container_name,
                artifact_count=artifact_count,
            )
        )

    def list_backups(self) -> list[BackupArtifact]:
        """Print the restore window and exported artifacts; return the artifacts."""
        target = self.resolve_target()
        logger.info("Available Restore Points")
        earliest, latest = self._earliest_restore(target)
        click.echo("")
        click.echo(render_restore_window(earliest, latest))
        click.echo("")

        if not target.export_enabled:
            return []

        try:
            artifacts = self._store(target).list_artifacts()
        except BackendOperationError as e:
            logger.warning("Could not list exported backups: %s", e.message)
            artifacts = []
        click.echo("Blob Storage Exports:")
        click.echo(render_artifact_table(artifacts))
        return artifacts

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    def export(self) -> BackupArtifact:
        """Dump the database through a cluster job and upload the dump.

        Raises:
            PreconditionError: Export disabled, cluster unreachable or the
                credentials secret missing. Nothing was submitted.
            ExportTimeout: The job did not stage the dump in time.
            BackendOperationError: Job, copy or upload failure.
        """
        target = self.resolve_target()
        logger.info("Exporting database to Azure Blob Storage...")

        if not target.export_enabled:
            raise PreconditionError(
                "Blob storage export not enabled", remediation=ENABLE_EXPORT_REMEDIATION
            )

        backup = self._config.backup
        namespace = self._config.cluster.namespace

        try:
            self._cluster.ensure_reachable(namespace)
        except PreconditionError as e:
            raise PreconditionError(
                e.message, remediation=target.kubeconfig_command or e.remediation
            ) from e

        if not self._cluster.secret_has_key(namespace, backup.db_secret_name, backup.db_secret_key):
            raise PreconditionError(
                f"Database credentials secret {backup.db_secret_name} "
                f"(key {backup.db_secret_key}) not found in namespace {namespace}",
                remediation=f"kubectl get secret {backup.db_secret_name} -n {namespace}",
            )

        timestamp = self._clock()
        artifact_name = BackupArtifact.name_for(backup.artifact_prefix, timestamp)
        staging_path = backup.staging_dir / artifact_name
        job = ExportJob(
            name=f"db-backup-{timestamp.strftime(JOB_TIMESTAMP_FORMAT)}",
            namespace=namespace,
            timeout_seconds=backup.export_job_timeout_seconds,
        )
        store = self._store(target)

        logger.warning("Database export requires network access to PostgreSQL from the cluster")
        try:
            self._run_export_job(job)
            logger.info("Copying backup from pod...")
            if job.pod_name is None:
                raise BackendOperationError(f"Export job {job.name} reported no pod to copy from")
            size = self._cluster.copy_from_pod(
                namespace, job.pod_name, EXPORT_CONTAINER_NAME, EXPORT_ARTIFACT_PATH, staging_path
            )
            logger.info("Uploading to blob storage...", extra={"size_bytes": size})
            artifact = store.upload(artifact_name, staging_path)
        finally:
            self._cleanup_export(job, staging_path)

        log_success(
            logger,
            f"Backup exported to: {artifact.location}",
            blob=artifact.name,
            size_bytes=artifact.size_bytes,
        )
        return artifact

    def _run_export_job(self, job: ExportJob) -> None:
        manifest = build_export_job_manifest(job, self._config.backup)
        logger.info("Creating database dump...", extra={"job": job.name})
        self._cluster.create_job(job.namespace, manifest)

        logger.info("Waiting for backup job to complete...")
        job.state = self._cluster.wait_for_export(job)
        logs_hint = f"kubectl logs -n {job.namespace} job/{job.name}"

        if job.state is ExportJobState.TIMED_OUT:
            raise ExportTimeout(
                f"Export job {job.name} did not finish within {job.timeout_seconds}s",
                remediation=logs_hint,
            )
        if job.state is not ExportJobState.STAGED:
            raise BackendOperationError(f"Export job {job.name} failed", remediation=logs_hint)

    def _cleanup_export(self, job: ExportJob, staging_path: Path) -> None:
        """Delete the job and the local dump. Failures are logged, never raised."""
        try:
            self._cluster.delete_job(job.namespace, job.name)
            job.state = ExportJobState.DELETED
            logger.debug("Deleted export job", extra={"job": job.name})
        except OrchestratorError as e:
            logger.warning(
                "Could not delete export job %s: %s",
                job.name,
                e.message,
                extra={"remediation": f"kubectl delete job {job.name} -n {job.namespace}"},
            )
        finally:
            try:
                staging_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove local staging file %s: %s", staging_path, e)

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def restore(
        self,
        mode: RestoreMode | None = None,
        restore_time: str | None = None,
        target_server: str | None = None,
        artifact_name: str | None = None,
    ) -> RestoreRequest:
        """Restore to a new server, or print how to load an exported dump.

        Values not passed in are asked for interactively.
        """
        target = self.resolve_target()
        logger.info("Database Restore")

        if mode is None:
            mode = self._choose_restore_mode()

        if mode is RestoreMode.POINT_IN_TIME:
            return self._restore_point_in_time(target, restore_time, target_server)
        return self._restore_from_artifact(target, artifact_name)

    def _choose_restore_mode(self) -> RestoreMode:
        click.echo("")
        click.echo(render_restore_options())
        click.echo("")
        choice = self._prompter.prompt("Select option [1/2]")
        if choice == "1":
            return RestoreMode.POINT_IN_TIME
        if choice == "2":
            return RestoreMode.FROM_ARTIFACT
        raise PreconditionError(
            f"Invalid option: {choice!r}",
            remediation="Choose 1 (point-in-time) or 2 (restore from blob export)",
        )

    def _restore_point_in_time(
        self, target: BackupTarget, restore_time: str | None, target_server: str | None
    ) -> RestoreRequest:
        logger.info("Point-in-Time Restore")
        window = self._database.restore_window(target.resource_group, target.server_name)
        click.echo("Available restore window:")
        click.echo(f"  From: {format_instant(window.earliest)}")
        click.echo(f"  To: {format_instant(window.latest)}")
        click.echo("")

        raw_time = restore_time or self._prompter.prompt(
            "Enter restore point (ISO8601 format, e.g., 2024-01-15T10:30:00Z)"
        )
        instant = parse_restore_time(raw_time)
        if not window.contains(instant):
            raise PreconditionError(
                f"Restore point {format_instant(instant)} is outside the restore window",
                remediation="coderops backup --list-backups",
            )

        new_server = target_server or self._prompter.prompt("Enter new server name")
        self._validate_new_server_name(new_server, target.server_name)

        request = RestoreRequest(
            mode=RestoreMode.POINT_IN_TIME,
            source=target.server_name,
            destination=new_server,
            restore_time=instant,
        )
        self._database.restore_point_in_time(
            target.resource_group, target.server_name, new_server, instant
        )
        self._verify_source_untouched(target)

        log_success(logger, f"Restore complete. New server: {new_server}")
        logger.info("Update Coder's DATABASE_URL to point to the new server")
        return request

    @staticmethod
    def _validate_new_server_name(name: str, source: str) -> None:
        if not re.match(VALID_SERVER_NAME_PATTERN, name):
            raise PreconditionError(
                f"Invalid server name: {name!r}",
                remediation="Use 3-63 lowercase letters, digits and hyphens",
            )
        if name == source:
            raise PreconditionError(
                "The new server name must differ from the source server",
                remediation="Choose a new server name; restores never overwrite the source",
            )

    def _verify_source_untouched(self, target: BackupTarget) -> None:
        current = self._inspector.outputs().postgres_server_name
        if current != target.server_name:
            logger.warning(
                "Source server %s is no longer reported by Terraform outputs",
                target.server_name,
                extra={"server": target.server_name, "reported": current},
            )
            return
        logger.debug("Source server still tracked", extra={"server": target.server_name})

    def _restore_from_artifact(
        self, target: BackupTarget, artifact_name: str | None
    ) -> RestoreRequest:
        logger.info("Restore from Blob Export")
        account = target.storage_account
        if account is None:
            raise PreconditionError(
                "No blob exports available", remediation=ENABLE_EXPORT_REMEDIATION
            )

        store = self._store_factory(account)
        artifacts = store.list_artifacts()
        if not artifacts:
            raise PreconditionError(
                f"No exported backups found in {store.location}",
                remediation="coderops backup --export-to-blob",
            )

        click.echo("Available backups:")
        for artifact in artifacts:
            click.echo(f"  {artifact.name}")
        click.echo("")

        name = artifact_name or self._prompter.prompt("Enter backup filename")
        if name not in {artifact.name for artifact in artifacts}:
            raise PreconditionError(
                f"Backup {name!r} not found in {store.location}",
                remediation="coderops backup --list-backups",
            )

        logger.info("To restore from blob export:")
        click.echo("")
        click.echo(
            render_artifact_restore_commands(
                account, self._config.backup.container_name, name
            )
        )
        return RestoreRequest(mode=RestoreMode.FROM_ARTIFACT, source=name)
