"""Deployment Summary Reporter.

Pure formatting. Deployment outputs that did not resolve are shown as
``Unknown``; backup metadata that could not be read is shown as ``N/A``.
"""

from __future__ import annotations

from datetime import UTC, datetime

import click

from .console import banner
from .models import BackupArtifact, BackupInfo, DeploymentOutputs, ManagedResourceSet

UNKNOWN = "Unknown"


def _or_unknown(value: str | None) -> str:
    return value if value else UNKNOWN


def render_deployment_summary(outputs: DeploymentOutputs, namespace: str = "coder") -> str:
    lines = [
        "=" * 46,
        "  Coder Deployment Complete",
        "=" * 46,
        "",
        f"  Coder URL: {_or_unknown(outputs.coder_access_url)}",
        f"  LoadBalancer IP: {_or_unknown(outputs.coder_load_balancer_ip)}",
        f"  Entra ID App Client ID: {_or_unknown(outputs.entra_id_app_client_id)}",
        "",
        "  Next Steps:",
        "  1. Configure DNS (if using custom domain):",
        outputs.dns_configuration or "     No custom domain configured",
        "",
        "  2. Access Coder and create initial admin account",
        "  3. Import Kubernetes workspace template",
        "",
        "  Useful Commands:",
        f"    kubectl get pods -n {namespace}     # Check pod status",
        f"    kubectl logs -n {namespace} -l app.kubernetes.io/name=coder  # View logs",
        "    coderops destroy              # Destroy infrastructure",
        "",
        "=" * 46,
    ]
    return "\n".join(lines)


def print_deployment_summary(outputs: DeploymentOutputs, namespace: str = "coder") -> None:
    click.echo(render_deployment_summary(outputs, namespace))


def render_resource_list(resources: ManagedResourceSet) -> str:
    if not resources.exists:
        return "  (no resources tracked)"
    return "\n".join(f"  {address}" for address in resources)


def print_teardown_summary(remaining: ManagedResourceSet) -> None:
    banner("Teardown Complete")
    if remaining.exists:
        click.echo("  Some resources are still tracked in Terraform state:")
        click.echo(render_resource_list(remaining))
    else:
        click.echo("  All Coder infrastructure has been destroyed.")
    click.echo("")
    click.echo("  Note: You may want to manually verify in Azure Portal")
    click.echo("  that all resources have been removed.")
    click.echo("")
    click.echo("  Azure Portal: https://portal.azure.com")
    click.echo("")
    click.echo("=" * 46)


# =============================================================================
# Backup views
# =============================================================================

ISO_UTC_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
NOT_AVAILABLE = "N/A"


def format_instant(instant: datetime | None) -> str:
    if instant is None:
        return NOT_AVAILABLE
    return instant.astimezone(UTC).strftime(ISO_UTC_FORMAT)


def _format_size(size_bytes: int | None) -> str:
    if size_bytes is None:
        return NOT_AVAILABLE
    if size_bytes < 1024:
        return f"{size_bytes} B"
    size = size_bytes / 1024
    for unit in ("KiB", "MiB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GiB"


def render_backup_status(
    server: str,
    resource_group: str,
    backup_info: BackupInfo | None,
    earliest_restore: str,
    storage_account: str | None = None,
    container: str = "database-backups",
    artifact_count: int | None = None,
) -> str:
    retention = NOT_AVAILABLE
    geo_redundant = NOT_AVAILABLE
    if backup_info is not None:
        if backup_info.retention_days is not None:
            retention = str(backup_info.retention_days)
        if backup_info.geo_redundant is not None:
            geo_redundant = str(backup_info.geo_redundant).lower()

    lines = [
        f"  Server: {server}",
        f"  Resource Group: {resource_group}",
        f"  Retention: {retention} days",
        f"  Geo-Redundant: {geo_redundant}",
        "",
        f"  Earliest Restore Point: {earliest_restore}",
        "  Latest Restore Point: Now (continuous backup)",
        "",
    ]
    if storage_account:
        count = NOT_AVAILABLE if artifact_count is None else str(artifact_count)
        lines += [
            "  Blob Storage Exports",
            f"  Storage Account: {storage_account}",
            f"  Container: {container}",
            f"  Exported Backups: {count}",
            "",
        ]
    lines += [
        "Available Actions:",
        "  coderops backup --list-backups       Show restore points",
        "  coderops backup --export-to-blob     Export database to blob storage",
        "  coderops backup --restore            Restore to new server",
    ]
    return "\n".join(lines)


def render_restore_window(earliest: str, latest: datetime) -> str:
    return "\n".join(
        [
            "Point-in-Time Restore Window:",
            f"  From: {earliest}",
            f"  To: {format_instant(latest)} (now)",
        ]
    )


def render_artifact_table(artifacts: list[BackupArtifact]) -> str:
    if not artifacts:
        return "  No exports found"
    name_width = max(len("Name"), *(len(a.name) for a in artifacts))
    lines = [f"  {'Name':<{name_width}}  {'Created':<20}  Size"]
    for artifact in artifacts:
        lines.append(
            f"  {artifact.name:<{name_width}}  {format_instant(artifact.created_at):<20}"
            f"  {_format_size(artifact.size_bytes)}"
        )
    return "\n".join(lines)


def render_restore_options() -> str:
    return "\n".join(
        [
            "Restore Options:",
            "",
            "1. Point-in-Time Restore (recommended for recent data)",
            "   Creates a new PostgreSQL server from backup",
            "",
            "2. Restore from Blob Export (for older backups)",
            "   Restores from a pg_dump export",
        ]
    )


def render_artifact_restore_commands(account: str, container: str, name: str) -> str:
    """Commands the operator runs to restore a dump. Never executed here."""
    return "\n".join(
        [
            "1. Download the backup:",
            f"   az storage blob download --account-name {account} \\",
            f"     --container-name {container} --name {name} \\",
            "     --file backup.sql.gz",
            "",
            "2. Restore to database:",
            '   gunzip -c backup.sql.gz | psql "${DATABASE_URL}"',
            "",
            "Note: This will overwrite existing data in the target database",
        ]
    )
