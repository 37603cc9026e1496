"""Coder on AKS operations CLI (coderops).

Lifecycle and database backup operations for a Coder deployment on
Azure Kubernetes Service.

Usage:
    coderops deploy --plan-only         # Show what would change
    coderops deploy --auto-approve      # Apply without confirmation
    coderops destroy                    # Tear everything down
    coderops destroy --force            # Recover from stuck resources
    coderops backup                     # Backup status
    coderops backup --export-to-blob    # Dump the database to Blob Storage
    coderops backup --restore           # Restore to a new server
    coderops configure                  # Write terraform/terraform.tfvars

Standalone entry points (coder-deploy, coder-destroy, coder-backup,
coder-configure) run the matching command directly.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .apply import ApplyEngine
from .backup import BackupCoordinator
from .blobstore import BlobArtifactStore
from .cluster import KubernetesCluster
from .config import Config
from .configure import ConfigureWizard
from .console import setup_logging
from .credentials import (
    check_tools,
    get_credential,
    resolve_subscription_id,
    verify_authentication,
)
from .database import FlexibleServerBackend
from .destroy import DestroyEngine
from .errors import BackendOperationError, OrchestratorError
from .models import RestoreMode
from .resource_groups import ResourceGroupInspector
from .state import StateInspector
from .terraform import TerraformRunner

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

# Required CLIs per command
DEPLOY_TOOLS = ("terraform", "az")
DESTROY_TOOLS = ("terraform", "az")
BACKUP_TOOLS = ("terraform", "az")

EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


# =============================================================================
# Component Factories
# =============================================================================


def load_config(ctx: click.Context) -> Config:
    """Resolve Config once for this invocation."""
    obj = ctx.find_root().ensure_object(dict)
    if "config" not in obj:
        obj["config"] = Config.from_env(terraform_dir=obj.get("terraform_dir"))
    config: Config = obj["config"]
    return config


def build_preflight(config: Config, tools: tuple[str, ...]) -> Callable[[], None]:
    """Tool and Azure login checks, run as the first step of each command."""

    def preflight() -> None:
        logger.info("Checking prerequisites...")
        check_tools(tools)
        verify_authentication(get_credential(config))

    return preflight


def build_apply_engine(config: Config) -> ApplyEngine:
    terraform = TerraformRunner(config)
    return ApplyEngine(
        config,
        terraform,
        StateInspector(terraform),
        KubernetesCluster(),
        preflight=build_preflight(config, DEPLOY_TOOLS),
    )


def build_destroy_engine(config: Config) -> DestroyEngine:
    terraform = TerraformRunner(config)

    def resource_group_exists(name: str) -> bool:
        inspector = ResourceGroupInspector(get_credential(config), resolve_subscription_id(config))
        return inspector.exists(name)

    return DestroyEngine(
        config,
        terraform,
        StateInspector(terraform),
        KubernetesCluster(),
        preflight=build_preflight(config, DESTROY_TOOLS),
        resource_group_exists=resource_group_exists,
    )


def build_backup_coordinator(config: Config) -> BackupCoordinator:
    preflight = build_preflight(config, BACKUP_TOOLS)
    preflight()

    credential = get_credential(config)
    terraform = TerraformRunner(config)

    def store_factory(account_name: str) -> BlobArtifactStore:
        return BlobArtifactStore(account_name, config.backup.container_name, credential)

    return BackupCoordinator(
        config,
        StateInspector(terraform),
        KubernetesCluster(),
        FlexibleServerBackend(credential, resolve_subscription_id(config)),
        store_factory,
    )


def build_configure_wizard(config: Config) -> ConfigureWizard:
    return ConfigureWizard(config)


# =============================================================================
# Error Handling
# =============================================================================


def report_error(error: OrchestratorError) -> None:
    """Log an orchestrator error with its remediation and backend output."""
    extra: dict[str, Any] = {"category": error.category, "remediation": error.remediation}
    if isinstance(error, BackendOperationError) and error.detail:
        extra["detail"] = error.detail
    logger.error(error.message, extra=extra)
    if isinstance(error, BackendOperationError) and error.detail:
        click.echo(error.detail, err=True)


def execute(ctx: click.Context, action: Callable[[], int]) -> None:
    """Run a command body and exit with its code.

    Orchestrator errors exit 1 after logging; Ctrl-C exits 130.
    """
    try:
        exit_code = action()
    except OrchestratorError as e:
        report_error(e)
        ctx.exit(EXIT_FAILURE)
    except (KeyboardInterrupt, click.Abort):
        click.echo("", err=True)
        logger.warning("Interrupted")
        ctx.exit(EXIT_INTERRUPTED)
    ctx.exit(exit_code)


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="coderops")
@click.option(
    "--terraform-dir",
    envvar="TERRAFORM_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Terraform working directory (default: ./terraform)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--log-json", is_flag=True, help="Emit structured JSON logs")
@click.pass_context
def cli(ctx: click.Context, terraform_dir: Path | None, verbose: bool, log_json: bool) -> None:
    """Coder on AKS operations CLI (coderops).

    Deploy, destroy and back up a Coder platform on Azure.

    \b
    Quick Start:
        coderops configure        # Write terraform.tfvars
        coderops deploy           # Provision everything
        coderops backup           # Check database backups
    """
    setup_logging(verbose=verbose, json_output=log_json)
    ctx.ensure_object(dict)["terraform_dir"] = terraform_dir


@cli.command()
@click.option("--plan-only", is_flag=True, help="Plan and exit without applying")
@click.option("--auto-approve", is_flag=True, help="Apply without confirmation")
@click.pass_context
def deploy(ctx: click.Context, plan_only: bool, auto_approve: bool) -> None:
    """Provision Coder on AKS with Terraform.

    \b
    Examples:
        coderops deploy --plan-only
        coderops deploy --auto-approve
    """

    def run() -> int:
        engine = build_apply_engine(load_config(ctx))
        return engine.apply(auto_approve=auto_approve, plan_only=plan_only).outcome.exit_code

    execute(ctx, run)


@cli.command()
@click.option("--auto-approve", is_flag=True, help="Destroy without confirmation")
@click.option(
    "--force", is_flag=True, help="Detach known stuck resources and retry once on failure"
)
@click.pass_context
def destroy(ctx: click.Context, auto_approve: bool, force: bool) -> None:
    """Destroy all Coder infrastructure.

    \b
    Examples:
        coderops destroy
        coderops destroy --auto-approve --force
    """

    def run() -> int:
        engine = build_destroy_engine(load_config(ctx))
        return engine.destroy(auto_approve=auto_approve, force=force).outcome.exit_code

    execute(ctx, run)


@cli.command()
@click.option("--export-to-blob", is_flag=True, help="Export the database to Blob Storage")
@click.option("--list-backups", is_flag=True, help="List restore points and exports")
@click.option("--restore", is_flag=True, help="Restore the database to a new server")
@click.option(
    "--point-in-time",
    "point_in_time",
    metavar="TIMESTAMP",
    help="Point-in-time restore to this ISO-8601 instant",
)
@click.option("--target-server", metavar="NAME", help="Name of the server to restore into")
@click.option("--from-artifact", metavar="BLOB", help="Print restore commands for an export")
@click.pass_context
def backup(
    ctx: click.Context,
    export_to_blob: bool,
    list_backups: bool,
    restore: bool,
    point_in_time: str | None,
    target_server: str | None,
    from_artifact: str | None,
) -> None:
    """Manage PostgreSQL backups. Without options, shows backup status.

    \b
    Examples:
        coderops backup --list-backups
        coderops backup --export-to-blob
        coderops backup --restore --point-in-time 2024-01-15T10:30:00Z --target-server pg-new
        coderops backup --restore --from-artifact coder_backup_20240115_103000.sql.gz
    """
    restore_options = bool(point_in_time or target_server or from_artifact)
    if sum((export_to_blob, list_backups, restore or restore_options)) > 1:
        raise click.UsageError("Choose one of --export-to-blob, --list-backups or --restore")
    if from_artifact and (point_in_time or target_server):
        raise click.UsageError(
            "--from-artifact cannot be combined with --point-in-time or --target-server"
        )

    mode: RestoreMode | None = None
    if from_artifact:
        mode = RestoreMode.FROM_ARTIFACT
    elif point_in_time or target_server:
        mode = RestoreMode.POINT_IN_TIME

    def run() -> int:
        coordinator = build_backup_coordinator(load_config(ctx))
        if export_to_blob:
            coordinator.export()
        elif list_backups:
            coordinator.list_backups()
        elif restore or restore_options:
            coordinator.restore(
                mode=mode,
                restore_time=point_in_time,
                target_server=target_server,
                artifact_name=from_artifact,
            )
        else:
            coordinator.status()
        return 0

    execute(ctx, run)


@cli.command()
@click.pass_context
def configure(ctx: click.Context) -> None:
    """Interactively write terraform.tfvars."""

    def run() -> int:
        build_configure_wizard(load_config(ctx)).run()
        return 0

    execute(ctx, run)


# =============================================================================
# Entry Points
# =============================================================================


def _run_subcommand(name: str) -> None:
    cli.main(args=[name, *sys.argv[1:]], prog_name=f"coder-{name}")


def deploy_main() -> None:
    """Entry point for coder-deploy."""
    _run_subcommand("deploy")


def destroy_main() -> None:
    """Entry point for coder-destroy."""
    _run_subcommand("destroy")


def backup_main() -> None:
    """Entry point for coder-backup."""
    _run_subcommand("backup")


def configure_main() -> None:
    """Entry point for coder-configure."""
    _run_subcommand("configure")


def main() -> None:
    """Entry point for coderops."""
    cli()


if __name__ == "__main__":
    main()
