"""Destroy Engine: confirm, pre-clean the cluster, destroy, verify.

Sequence (strict order):
1. Prerequisites (tools, Azure login)
2. Nothing tracked in state: no-op, no prompt
3. Enumerate what will be destroyed
4. Typed confirmation unless auto-approved
5. Best-effort cluster pre-cleanup (helm uninstall, wait for load balancers)
6. terraform destroy, with stuck-resource recovery in force mode
7. Verify, archive local state, check the resource group, summarize

Pre-cleanup and everything after destroy are advisory.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime

import click

from .cluster import KubernetesCluster
from .config import Config
from .console import log_success
from .errors import BackendOperationError, BackendUnavailable, OrchestratorError
from .models import DestroyResult, LifecycleOperation, OperationKind, OperationOutcome
from .pipeline import Pipeline, StopPipeline
from .polling import LB_CLEANUP_POLL_INTERVAL_SECONDS, poll_until
from .prompts import Prompter
from .reporter import print_teardown_summary, render_resource_list
from .state import StateInspector
from .terraform import TerraformRunner

logger = logging.getLogger(__name__)

# Resources that routinely block destroy once the cluster API is gone.
# Only consulted with --force; detached resources die with the cluster.
STUCK_RESOURCES: tuple[str, ...] = (
    "kubernetes_namespace.coder",
    "helm_release.coder",
)

CONFIRMATION_PHRASE = "destroy"
ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

_STOP_OUTCOMES = {
    "no-op": OperationOutcome.NO_OP,
    "cancelled": OperationOutcome.CANCELLED,
}


class DestroyEngine:
    """Drives ``destroy``."""

    def __init__(
        self,
        config: Config,
        terraform: TerraformRunner,
        inspector: StateInspector,
        cluster: KubernetesCluster,
        prompter: Prompter | None = None,
        preflight: Callable[[], None] | None = None,
        resource_group_exists: Callable[[str], bool] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._config = config
        self._terraform = terraform
        self._inspector = inspector
        self._cluster = cluster
        self._prompter = prompter or Prompter()
        self._preflight = preflight or (lambda: None)
        self._resource_group_exists = resource_group_exists
        self._sleep = sleep or time.sleep
        self._kubeconfig_command: str | None = None
        self._cluster_configured = False
        self._verified = False

    def destroy(self, auto_approve: bool = False, force: bool = False) -> DestroyResult:
        """Run the teardown pipeline.

        Raises:
            OrchestratorError: From any fatal step. A failed destroy is fatal
                only without ``force``.
        """
        operation = LifecycleOperation.start(OperationKind.DESTROY, auto_approve=auto_approve)
        result = DestroyResult(operation=operation)
        self._cluster_configured = False
        self._verified = False
        self._kubeconfig_command = None

        pipeline = (
            Pipeline("destroy")
            .fatal("Check prerequisites", self._preflight)
            .fatal("Check Terraform state", self._check_state)
            .fatal("Enumerate resources", lambda: self._enumerate(result))
            .fatal("Confirm destroy", lambda: self._confirm(auto_approve))
            .advisory("Remove Coder release", self._uninstall_release)
            .advisory("Wait for load balancer cleanup", self._wait_for_load_balancers)
            .fatal("Destroy infrastructure", lambda: self._destroy(result, force))
            .advisory("Verify destruction", lambda: self._verify(result))
            .advisory("Clean up local files", lambda: self._cleanup_local(result))
            .advisory("Check resource group", lambda: self._check_resource_group(result))
            .advisory("Report summary", lambda: self._report(result))
        )

        try:
            run = pipeline.run()
        except OrchestratorError:
            operation.finish(OperationOutcome.FAILED)
            logger.debug("Destroy failed", extra=operation.log_fields())
            raise

        if run.stopped_early:
            operation.finish(_STOP_OUTCOMES.get(run.stop_reason or "", OperationOutcome.CANCELLED))
        elif result.destroyed:
            operation.finish(OperationOutcome.SUCCESS)
        else:
            operation.finish(OperationOutcome.PARTIAL)

        logger.debug(
            "Destroy finished",
            extra={
                **operation.log_fields(),
                "destroy_attempts": result.destroy_attempts,
                "detached": result.detached,
                "remaining_count": len(result.remaining_resources),
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Fatal steps
    # -------------------------------------------------------------------------

    def _check_state(self) -> None:
        logger.info("Checking Terraform state...")
        if not self._inspector.has_local_state():
            logger.info("No Terraform state found. Nothing to destroy.")
            raise StopPipeline("no-op")

        if not self._terraform.is_initialized():
            logger.info("Initializing Terraform...")
            self._terraform.init(upgrade=False)

        if not self._inspector.has_managed_resources():
            logger.info("No resources found in Terraform state. Nothing to destroy.")
            raise StopPipeline("no-op")

    def _enumerate(self, result: DestroyResult) -> None:
        resources = self._inspector.list_managed_resources()
        outputs = self._inspector.outputs()
        result.resource_group_name = outputs.resource_group_name
        self._kubeconfig_command = outputs.kubeconfig_command

        logger.info(
            "The following %d resources will be destroyed:",
            len(resources),
            extra={"resource_count": len(resources)},
        )
        click.echo(render_resource_list(resources))

    def _confirm(self, auto_approve: bool) -> None:
        if auto_approve:
            logger.info("Auto-approve enabled, skipping confirmation")
            return
        logger.warning("This will destroy ALL Coder infrastructure!")
        question = f"Type '{CONFIRMATION_PHRASE}' to confirm"
        if not self._prompter.confirm_phrase(question, CONFIRMATION_PHRASE):
            logger.info("Destruction cancelled")
            raise StopPipeline("cancelled")

    def _destroy(self, result: DestroyResult, force: bool) -> None:
        logger.info("Destroying infrastructure (this may take 10-15 minutes)...")
        result.destroy_attempts = 1
        if self._terraform.destroy():
            result.destroyed = True
            log_success(logger, "Terraform destroy completed")
            return

        if not force:
            raise BackendOperationError(
                "Terraform destroy failed",
                remediation="coderops destroy --force",
            )

        logger.warning("Terraform destroy failed, detaching stuck resources and retrying...")
        result.detached = self._detach_stuck_resources()
        result.destroy_attempts = 2
        if self._terraform.destroy():
            result.destroyed = True
            log_success(logger, "Terraform destroy completed after detaching stuck resources")
            return

        logger.warning(
            "Terraform destroy failed again; some resources may need manual cleanup",
            extra={
                "detached": result.detached,
                "remediation": "Check the Azure Portal, then run: terraform state list",
            },
        )

    def _detach_stuck_resources(self) -> list[str]:
        try:
            current = self._inspector.list_managed_resources()
        except BackendUnavailable as e:
            logger.warning("Could not re-read state before detaching: %s", e.message)
            return []

        detached: list[str] = []
        for address in STUCK_RESOURCES:
            if address not in current:
                continue
            try:
                self._terraform.state_rm(address)
            except BackendOperationError as e:
                logger.warning(
                    "Could not detach %s: %s", address, e.message, extra={"address": address}
                )
                continue
            logger.info("Removed %s from state", address, extra={"address": address})
            detached.append(address)
        return detached

    # -------------------------------------------------------------------------
    # Advisory steps
    # -------------------------------------------------------------------------

    def _uninstall_release(self) -> None:
        logger.info("Pre-cleanup: removing Kubernetes resources...")
        self._cluster.configure_access(self._kubeconfig_command)
        self._cluster_configured = True

        release = self._config.cluster.release_name
        namespace = self._config.cluster.namespace
        if self._cluster.uninstall_release(release, namespace):
            log_success(logger, f"Helm release {release} removed")
        else:
            logger.warning(
                "Could not remove Helm release %s (continuing)",
                release,
                extra={"release": release, "namespace": namespace},
            )

    def _wait_for_load_balancers(self) -> None:
        timeout = self._config.lb_cleanup_timeout_seconds
        if not self._cluster_configured or timeout == 0:
            return

        namespace = self._config.cluster.namespace
        logger.info("Waiting for LoadBalancer cleanup...")
        poll = poll_until(
            lambda: not self._cluster.load_balancer_services(namespace),
            LB_CLEANUP_POLL_INTERVAL_SECONDS,
            max(1, timeout // LB_CLEANUP_POLL_INTERVAL_SECONDS),
            description="LoadBalancer cleanup",
            sleep=self._sleep,
        )
        if poll.ready:
            log_success(logger, "LoadBalancer services removed")
        else:
            logger.warning(
                "LoadBalancer services still present, continuing with destroy",
                extra={"poll_status": poll.status.value},
            )

    def _verify(self, result: DestroyResult) -> None:
        logger.info("Verifying destruction...")
        result.remaining_resources = self._inspector.list_managed_resources()
        self._verified = True
        if result.remaining_resources.exists:
            logger.warning(
                "Some resources still exist in state",
                extra={"remaining": list(result.remaining_resources)},
            )
            click.echo(render_resource_list(result.remaining_resources))
        else:
            log_success(logger, "All resources destroyed")

    def _cleanup_local(self, result: DestroyResult) -> None:
        plan_path = self._config.plan_path
        state_path = self._config.state_path
        backup_path = state_path.with_name(f"{state_path.name}.backup")
        try:
            plan_path.unlink(missing_ok=True)
            # Local state is only archived once state is known to be empty
            if not self._verified or result.remaining_resources.exists:
                return
            if state_path.exists():
                stamp = datetime.now().strftime(ARCHIVE_TIMESTAMP_FORMAT)
                archived = state_path.with_name(f"{state_path.name}.destroyed.{stamp}")
                state_path.rename(archived)
                logger.info("Archived local state to %s", archived.name)
            backup_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not clean up local Terraform files: %s", e)

    def _check_resource_group(self, result: DestroyResult) -> None:
        name = result.resource_group_name
        if self._resource_group_exists is None or not name:
            logger.debug("Skipping resource group check")
            return
        if self._resource_group_exists(name):
            logger.warning(
                "Resource group %s still exists",
                name,
                extra={"resource_group": name, "remediation": f"az group show --name {name}"},
            )
        else:
            log_success(logger, f"Resource group {name} removed")

    def _report(self, result: DestroyResult) -> None:
        print_teardown_summary(result.remaining_resources)
