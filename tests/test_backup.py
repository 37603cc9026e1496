"""Tests for backup status, export and restore."""

from datetime import UTC, datetime
from unittest.mock import MagicMock, PropertyMock, patch

import pytest
from urllib3.exceptions import MaxRetryError

from orchestrator.backup import (
    ENABLE_EXPORT_REMEDIATION,
    BackupCoordinator,
    build_export_job_manifest,
    parse_restore_time,
)
from orchestrator.cluster import KubernetesCluster
from orchestrator.config import BackupConfig, Config
from orchestrator.errors import BackendOperationError, ExportTimeout, PreconditionError
from orchestrator.models import ExportJob, ExportJobState, RestoreMode
from orchestrator.state import StateInspector
from platform_mock import (
    NOW,
    FakeBlobStore,
    FakeCluster,
    FakeDatabase,
    FakeTerraform,
    ScriptedPrompter,
    deployment_outputs,
)

ARTIFACT_NAME = "coder_backup_20240115_120000.sql.gz"


class ClientDeletingCluster(FakeCluster):
    """Fake cluster whose job deletion goes through the Kubernetes client wrapper."""

    def delete_job(self, namespace: str, name: str) -> None:
        KubernetesCluster().delete_job(namespace, name)


def make_coordinator(
    config: Config,
    terraform: FakeTerraform,
    cluster: FakeCluster,
    database: FakeDatabase,
    blob_store: FakeBlobStore,
    prompter: ScriptedPrompter,
) -> BackupCoordinator:
    return BackupCoordinator(
        config,
        StateInspector(terraform),
        cluster,
        database,
        store_factory=lambda account: blob_store,
        prompter=prompter,
        clock=lambda: NOW,
    )


@pytest.fixture
def coordinator(
    config, deployed_terraform, cluster, database, blob_store, prompter
) -> BackupCoordinator:
    return make_coordinator(config, deployed_terraform, cluster, database, blob_store, prompter)


class TestResolveTarget:
    """Tests for locating the database from Terraform outputs."""

    def test_requires_deployment(
        self, config, terraform, cluster, database, blob_store, prompter
    ) -> None:
        """Test that backup operations refuse to run without a deployment."""
        coordinator = make_coordinator(config, terraform, cluster, database, blob_store, prompter)

        with pytest.raises(PreconditionError) as exc_info:
            coordinator.status()

        assert exc_info.value.remediation == "coderops deploy"

    def test_resolves_server_and_storage(self, coordinator) -> None:
        """Test that server, resource group and storage account are resolved."""
        target = coordinator.resolve_target()

        assert target.resource_group == "rg-coder"
        assert target.server_name == "coder-pg"
        assert target.storage_account == "coderbackups"
        assert target.export_enabled is True

    def test_incomplete_outputs(self, coordinator, deployed_terraform) -> None:
        """Test that missing outputs are a precondition failure."""
        deployed_terraform.outputs = {}

        with pytest.raises(PreconditionError) as exc_info:
            coordinator.resolve_target()

        assert exc_info.value.remediation == "terraform output"


class TestStatus:
    """Tests for backup status and listing."""

    def test_status(self, coordinator, capsys) -> None:
        """Test the status report for a deployment with blob export."""
        coordinator.status()

        output = capsys.readouterr().out
        assert "Server: coder-pg" in output
        assert "Retention: 7 days" in output
        assert "Geo-Redundant: false" in output
        assert "Earliest Restore Point: 2024-01-08T12:00:00Z" in output
        assert "Exported Backups: 0" in output

    def test_status_without_restore_window(self, coordinator, database, capsys) -> None:
        """Test that an unreadable restore window is shown as N/A."""
        database.fail_window = True

        coordinator.status()

        assert "Earliest Restore Point: N/A" in capsys.readouterr().out

    def test_status_with_export_disabled(
        self, coordinator, deployed_terraform, capsys
    ) -> None:
        """Test that the export section is omitted when export is disabled."""
        deployed_terraform.outputs = deployment_outputs(export_enabled=False)

        coordinator.status()

        output = capsys.readouterr().out
        assert "Blob Storage Exports" not in output
        assert "Server: coder-pg" in output

    def test_list_backups(self, coordinator, blob_store, capsys) -> None:
        """Test listing the restore window and exported artifacts."""
        blob_store.blobs["coder_backup_20240110_000000.sql.gz"] = b"x" * 2048

        artifacts = coordinator.list_backups()

        assert [a.name for a in artifacts] == ["coder_backup_20240110_000000.sql.gz"]
        output = capsys.readouterr().out
        assert "From: 2024-01-08T12:00:00Z" in output
        assert "2.0 KiB" in output

    def test_list_backups_empty(self, coordinator, capsys) -> None:
        """Test listing when nothing has been exported yet."""
        assert coordinator.list_backups() == []
        assert "No exports found" in capsys.readouterr().out


class TestExport:
    """Tests for exporting the database to blob storage."""

    def test_export_uploads_and_cleans_up(self, coordinator, config, cluster, blob_store) -> None:
        """Test a successful export leaves no job and no local file behind."""
        artifact = coordinator.export()

        assert artifact.name == ARTIFACT_NAME
        assert blob_store.blobs[ARTIFACT_NAME] == cluster.dump
        assert cluster.created_jobs == ["db-backup-20240115-120000"]
        assert cluster.deleted_jobs == ["db-backup-20240115-120000"]
        assert cluster.jobs == {}
        assert not (config.backup.staging_dir / ARTIFACT_NAME).exists()

    def test_export_timeout_deletes_job(self, coordinator, cluster, blob_store) -> None:
        """Test that a timed-out job is removed and nothing is uploaded."""
        cluster.export_outcome = ExportJobState.TIMED_OUT

        with pytest.raises(ExportTimeout) as exc_info:
            coordinator.export()

        assert "kubectl logs" in (exc_info.value.remediation or "")
        assert cluster.jobs == {}
        assert blob_store.blobs == {}

    def test_failed_job(self, coordinator, cluster, blob_store) -> None:
        """Test that a failed dump is reported as a backend failure."""
        cluster.export_outcome = ExportJobState.FAILED

        with pytest.raises(BackendOperationError) as exc_info:
            coordinator.export()

        assert not isinstance(exc_info.value, ExportTimeout)
        assert cluster.jobs == {}
        assert blob_store.blobs == {}

    def test_upload_failure_removes_staging_file(self, coordinator, cluster, blob_store) -> None:
        """Test that the local dump is deleted even when the upload fails."""
        blob_store.unreachable = True

        with pytest.raises(BackendOperationError):
            coordinator.export()

        assert len(blob_store.uploaded_from) == 1
        assert not blob_store.uploaded_from[0].exists()
        assert cluster.jobs == {}

    def test_unreachable_cluster_submits_nothing(self, coordinator, cluster) -> None:
        """Test that an unreachable cluster fails before a job is created."""
        cluster.unreachable = True

        with pytest.raises(PreconditionError) as exc_info:
            coordinator.export()

        assert exc_info.value.remediation == (
            "az aks get-credentials --resource-group rg-coder --name aks-coder"
        )
        assert cluster.created_jobs == []

    def test_missing_secret_submits_nothing(self, coordinator, cluster) -> None:
        """Test that a missing credentials secret fails before a job is created."""
        cluster.secrets = {}

        with pytest.raises(PreconditionError) as exc_info:
            coordinator.export()

        assert "coder-db-credentials" in str(exc_info.value)
        assert cluster.created_jobs == []

    def test_export_disabled(self, coordinator, deployed_terraform, cluster) -> None:
        """Test that export is refused when blob storage is not provisioned."""
        deployed_terraform.outputs = deployment_outputs(export_enabled=False)

        with pytest.raises(PreconditionError) as exc_info:
            coordinator.export()

        assert exc_info.value.remediation == ENABLE_EXPORT_REMEDIATION
        assert cluster.created_jobs == []

    def test_job_delete_failure_is_not_fatal(self, coordinator, cluster, blob_store) -> None:
        """Test that a job that cannot be deleted does not fail the export."""
        cluster.fail_delete = True

        artifact = coordinator.export()

        assert artifact.name in blob_store.blobs
        assert "db-backup-20240115-120000" in cluster.jobs

    def test_job_delete_transport_failure_still_removes_staging_file(
        self, config, deployed_terraform, database, blob_store, prompter
    ) -> None:
        """Test that a dropped API connection during cleanup keeps the upload error."""
        blob_store.unreachable = True
        batch = MagicMock()
        batch.delete_namespaced_job.side_effect = MaxRetryError(
            None, "/apis/batch/v1/namespaces/coder/jobs", "connection refused"
        )
        cluster = ClientDeletingCluster()
        coordinator = make_coordinator(
            config, deployed_terraform, cluster, database, blob_store, prompter
        )

        with patch.object(KubernetesCluster, "batch", new_callable=PropertyMock, return_value=batch):
            with pytest.raises(BackendOperationError) as exc_info:
                coordinator.export()

        assert "Upload of" in str(exc_info.value)
        batch.delete_namespaced_job.assert_called_once()
        assert list(config.backup.staging_dir.iterdir()) == []


class TestExportJobManifest:
    """Tests for the export Job manifest."""

    def test_manifest_fields(self) -> None:
        """Test that the manifest carries name, deadline, image and secret."""
        job = ExportJob(name="db-backup-20240115-120000", namespace="coder", timeout_seconds=300)

        manifest = build_export_job_manifest(job, BackupConfig())

        assert manifest["kind"] == "Job"
        assert manifest["metadata"]["name"] == "db-backup-20240115-120000"
        assert manifest["metadata"]["namespace"] == "coder"
        assert manifest["spec"]["backoffLimit"] == 0
        assert manifest["spec"]["activeDeadlineSeconds"] == 600
        assert manifest["spec"]["ttlSecondsAfterFinished"] == 300

        container = manifest["spec"]["template"]["spec"]["containers"][0]
        assert container["image"] == "postgres:15"
        assert "pg_dump" in container["args"][0]
        assert "sleep 300" in container["args"][0]
        assert container["env"][0]["valueFrom"]["secretKeyRef"] == {
            "name": "coder-db-credentials",
            "key": "url",
        }
        assert container["readinessProbe"]["exec"]["command"] == ["test", "-f", "/backup/.staged"]


class TestParseRestoreTime:
    """Tests for restore point parsing."""

    def test_zulu_suffix(self) -> None:
        """Test that a trailing Z is read as UTC."""
        assert parse_restore_time("2024-01-15T10:30:00Z") == datetime(
            2024, 1, 15, 10, 30, tzinfo=UTC
        )

    def test_naive_is_utc(self) -> None:
        """Test that a value without offset is taken as UTC."""
        assert parse_restore_time("2024-01-15T10:30:00").tzinfo is UTC

    def test_invalid(self) -> None:
        """Test that non-ISO input raises error."""
        with pytest.raises(PreconditionError):
            parse_restore_time("yesterday")


class TestPointInTimeRestore:
    """Tests for point-in-time restore to a new server."""

    def test_restore_creates_new_server(self, coordinator, database, deployed_terraform) -> None:
        """Test that a restore creates a new server and leaves the source alone."""
        state_before = set(deployed_terraform.state)
        source_before = database.servers["coder-pg"]

        request = coordinator.restore(
            RestoreMode.POINT_IN_TIME, "2024-01-14T10:00:00Z", "coder-pg-restored"
        )

        restore_time = datetime(2024, 1, 14, 10, 0, tzinfo=UTC)
        assert request.destination == "coder-pg-restored"
        assert request.restore_time == restore_time
        assert database.restores == [("coder-pg", "coder-pg-restored", restore_time)]
        assert database.servers["coder-pg"] == source_before
        assert deployed_terraform.state == state_before
        assert "apply" not in deployed_terraform.calls

    def test_outside_window(self, coordinator, database) -> None:
        """Test that a point before the earliest restore point is rejected."""
        with pytest.raises(PreconditionError) as exc_info:
            coordinator.restore(RestoreMode.POINT_IN_TIME, "2024-01-01T00:00:00Z", "coder-pg-old")

        assert "outside the restore window" in str(exc_info.value)
        assert database.restores == []

    def test_future_point_rejected(self, coordinator, database) -> None:
        """Test that a point after now is rejected."""
        with pytest.raises(PreconditionError):
            coordinator.restore(RestoreMode.POINT_IN_TIME, "2024-02-01T00:00:00Z", "coder-pg-new")

        assert database.restores == []

    def test_same_name_as_source(self, coordinator, database) -> None:
        """Test that the source server can never be the restore target."""
        with pytest.raises(PreconditionError) as exc_info:
            coordinator.restore(RestoreMode.POINT_IN_TIME, "2024-01-14T10:00:00Z", "coder-pg")

        assert "differ from the source" in str(exc_info.value)
        assert database.restores == []

    def test_invalid_server_name(self, coordinator, database) -> None:
        """Test that an invalid server name is rejected before restoring."""
        with pytest.raises(PreconditionError):
            coordinator.restore(RestoreMode.POINT_IN_TIME, "2024-01-14T10:00:00Z", "Bad_Name")

        assert database.restores == []

    def test_invalid_time(self, coordinator, database) -> None:
        """Test that an unparseable restore point is rejected."""
        with pytest.raises(PreconditionError):
            coordinator.restore(RestoreMode.POINT_IN_TIME, "last tuesday", "coder-pg-new")

        assert database.restores == []

    def test_interactive(
        self, config, deployed_terraform, cluster, database, blob_store
    ) -> None:
        """Test that missing values are asked for."""
        prompter = ScriptedPrompter(answers=["1", "2024-01-14T10:00:00", "coder-pg-restored"])
        coordinator = make_coordinator(
            config, deployed_terraform, cluster, database, blob_store, prompter
        )

        request = coordinator.restore()

        assert request.mode is RestoreMode.POINT_IN_TIME
        assert request.restore_time == datetime(2024, 1, 14, 10, 0, tzinfo=UTC)
        assert prompter.answers == []

    def test_invalid_option(
        self, config, deployed_terraform, cluster, database, blob_store
    ) -> None:
        """Test that an unknown menu choice raises error."""
        prompter = ScriptedPrompter(answers=["3"])
        coordinator = make_coordinator(
            config, deployed_terraform, cluster, database, blob_store, prompter
        )

        with pytest.raises(PreconditionError) as exc_info:
            coordinator.restore()

        assert "Invalid option" in str(exc_info.value)
        assert database.restores == []


class TestArtifactRestore:
    """Tests for restoring from an exported dump."""

    def test_prints_commands(self, coordinator, blob_store, capsys) -> None:
        """Test that the download and load commands are printed, not run."""
        blob_store.blobs[ARTIFACT_NAME] = b"dump"

        request = coordinator.restore(RestoreMode.FROM_ARTIFACT, artifact_name=ARTIFACT_NAME)

        assert request.mode is RestoreMode.FROM_ARTIFACT
        assert request.source == ARTIFACT_NAME
        output = capsys.readouterr().out
        assert "az storage blob download --account-name coderbackups" in output
        assert f"--container-name database-backups --name {ARTIFACT_NAME}" in output
        assert 'gunzip -c backup.sql.gz | psql "${DATABASE_URL}"' in output

    def test_unknown_artifact(self, coordinator, blob_store) -> None:
        """Test that a name not in the container raises error."""
        blob_store.blobs[ARTIFACT_NAME] = b"dump"

        with pytest.raises(PreconditionError) as exc_info:
            coordinator.restore(RestoreMode.FROM_ARTIFACT, artifact_name="missing.sql.gz")

        assert "not found" in str(exc_info.value)

    def test_no_artifacts(self, coordinator) -> None:
        """Test that an empty container suggests running an export."""
        with pytest.raises(PreconditionError) as exc_info:
            coordinator.restore(RestoreMode.FROM_ARTIFACT, artifact_name=ARTIFACT_NAME)

        assert exc_info.value.remediation == "coderops backup --export-to-blob"

    def test_export_disabled(self, coordinator, deployed_terraform) -> None:
        """Test that artifact restore requires blob export."""
        deployed_terraform.outputs = deployment_outputs(export_enabled=False)

        with pytest.raises(PreconditionError) as exc_info:
            coordinator.restore(RestoreMode.FROM_ARTIFACT, artifact_name=ARTIFACT_NAME)

        assert exc_info.value.remediation == ENABLE_EXPORT_REMEDIATION
