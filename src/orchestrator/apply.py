"""Apply Engine: plan, approve, apply, then wait for the platform to come up.

Sequence (strict order):
1. Variables file present
2. Prerequisites (tools, Azure login)
3. terraform init / validate / plan
4. Stop here in plan-only mode
5. Confirmation gate unless auto-approved
6. terraform apply of the saved plan
7. Outputs, cluster credentials, workload and external IP readiness
8. Summary

Everything up to and including apply is fatal. Apply failures are
surfaced verbatim: Terraform's own partial-apply state is authoritative
and no automatic remediation is attempted. What follows apply is
advisory because the infrastructure already exists.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .cluster import KubernetesCluster
from .config import Config
from .console import log_success
from .errors import OrchestratorError, PreconditionError
from .models import ApplyResult, LifecycleOperation, OperationKind, OperationOutcome
from .pipeline import Pipeline, StopPipeline
from .polling import (
    EXTERNAL_IP_POLL_INTERVAL_SECONDS,
    EXTERNAL_IP_POLL_MAX_ATTEMPTS,
    WORKLOAD_POLL_INTERVAL_SECONDS,
    WORKLOAD_POLL_MAX_ATTEMPTS,
    poll_until,
)
from .prompts import Prompter
from .reporter import print_deployment_summary
from .state import StateInspector
from .terraform import TerraformRunner, count_planned_changes

logger = logging.getLogger(__name__)


class ApplyEngine:
    """Drives ``deploy``."""

    def __init__(
        self,
        config: Config,
        terraform: TerraformRunner,
        inspector: StateInspector,
        cluster: KubernetesCluster,
        prompter: Prompter | None = None,
        preflight: Callable[[], None] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._config = config
        self._terraform = terraform
        self._inspector = inspector
        self._cluster = cluster
        self._prompter = prompter or Prompter()
        self._preflight = preflight or (lambda: None)
        self._sleep = sleep or time.sleep
        self._cluster_configured = False

    def apply(self, auto_approve: bool = False, plan_only: bool = False) -> ApplyResult:
        """Run the deploy pipeline.

        Raises:
            OrchestratorError: From any fatal step, after recording the outcome.
        """
        operation = LifecycleOperation.start(
            OperationKind.APPLY, auto_approve=auto_approve, plan_only=plan_only
        )
        result = ApplyResult(operation=operation)
        self._cluster_configured = False

        pipeline = (
            Pipeline("deploy")
            .fatal("Check Terraform configuration", self._check_tfvars)
            .fatal("Check prerequisites", self._preflight)
            .fatal("Initialize Terraform", self._init)
            .fatal("Validate configuration", self._validate)
            .fatal("Plan changes", lambda: self._plan(result, plan_only))
            .fatal("Approve plan", lambda: self._approve(result, auto_approve))
            .fatal("Apply plan", lambda: self._apply(result))
            .advisory("Fetch outputs", lambda: self._fetch_outputs(result))
            .advisory("Configure cluster access", lambda: self._configure_cluster(result))
            .advisory("Wait for Coder pods", self._wait_for_workload)
            .advisory("Wait for LoadBalancer IP", lambda: self._wait_for_external_ip(result))
            .advisory("Report summary", lambda: self._report(result))
        )

        try:
            run = pipeline.run()
        except OrchestratorError:
            operation.finish(OperationOutcome.FAILED)
            logger.debug("Deploy failed", extra=operation.log_fields())
            raise

        if run.stopped_early and not plan_only:
            operation.finish(OperationOutcome.CANCELLED)
        else:
            operation.finish(OperationOutcome.SUCCESS)

        logger.debug(
            "Deploy finished",
            extra={**operation.log_fields(), "resources_changed": result.resources_changed},
        )
        return result

    # -------------------------------------------------------------------------
    # Fatal steps
    # -------------------------------------------------------------------------

    def _check_tfvars(self) -> None:
        logger.info("Checking Terraform configuration...")
        if self._config.tfvars_path.is_file():
            log_success(logger, "terraform.tfvars found")
            return

        if self._config.tfvars_example_path.is_file():
            remediation = (
                f"cp {self._config.tfvars_example_path} {self._config.tfvars_path}"
                " && edit it, or run: coderops configure"
            )
        else:
            remediation = "coderops configure"
        raise PreconditionError("terraform.tfvars not found", remediation=remediation)

    def _init(self) -> None:
        logger.info("Initializing Terraform...")
        self._terraform.init(upgrade=True)
        log_success(logger, "Terraform initialized")

    def _validate(self) -> None:
        logger.info("Validating Terraform configuration...")
        self._terraform.validate()
        log_success(logger, "Terraform configuration is valid")

    def _plan(self, result: ApplyResult, plan_only: bool) -> None:
        logger.info("Planning Terraform changes...")
        plan_path = self._config.plan_path
        self._terraform.plan(plan_path)
        result.resources_changed = count_planned_changes(
            self._terraform.show_plan(plan_path)
        )
        log_success(
            logger,
            f"Terraform plan completed ({result.resources_changed} resource changes)",
            resources_changed=result.resources_changed,
        )

        if plan_only:
            logger.info("Plan-only mode. Exiting without applying.")
            raise StopPipeline("plan-only")

    def _approve(self, result: ApplyResult, auto_approve: bool) -> None:
        if auto_approve:
            logger.info("Auto-approve enabled, skipping confirmation")
            return
        question = f"Apply {result.resources_changed} resource change(s)?"
        if not self._prompter.confirm(question, default=False):
            logger.info("Deployment cancelled")
            raise StopPipeline("cancelled")

    def _apply(self, result: ApplyResult) -> None:
        logger.info("Applying Terraform changes...")
        self._terraform.apply(self._config.plan_path)
        result.applied = True
        log_success(logger, "Terraform apply completed")

    # -------------------------------------------------------------------------
    # Advisory steps
    # -------------------------------------------------------------------------

    def _fetch_outputs(self, result: ApplyResult) -> None:
        result.outputs = self._inspector.outputs()

    def _configure_cluster(self, result: ApplyResult) -> None:
        logger.info("Configuring kubectl...")
        self._cluster.configure_access(result.outputs.kubeconfig_command)
        self._cluster_configured = True

    def _wait_for_workload(self) -> None:
        if not self._cluster_configured:
            logger.warning("Skipping pod readiness check: cluster access not configured")
            return

        namespace = self._config.cluster.namespace
        logger.info("Waiting for Coder deployment to be ready...")
        poll = poll_until(
            lambda: self._cluster.pods_running(namespace, self._config.cluster.app_label_selector),
            WORKLOAD_POLL_INTERVAL_SECONDS,
            WORKLOAD_POLL_MAX_ATTEMPTS,
            description="Coder pods",
            sleep=self._sleep,
        )
        if poll.ready:
            log_success(logger, "Coder pods are running")
        else:
            logger.warning(
                "Timeout waiting for Coder pods",
                extra={
                    "poll_status": poll.status.value,
                    "remediation": f"kubectl get pods -n {namespace}",
                },
            )

    def _wait_for_external_ip(self, result: ApplyResult) -> None:
        if not self._cluster_configured:
            logger.warning("Skipping LoadBalancer check: cluster access not configured")
            return

        namespace = self._config.cluster.namespace
        logger.info("Waiting for LoadBalancer IP...")
        poll = poll_until(
            lambda: self._cluster.load_balancer_ip(namespace, self._config.cluster.service_name),
            EXTERNAL_IP_POLL_INTERVAL_SECONDS,
            EXTERNAL_IP_POLL_MAX_ATTEMPTS,
            description="LoadBalancer IP",
            sleep=self._sleep,
        )
        if poll.ready and poll.value:
            log_success(logger, f"LoadBalancer IP: {poll.value}")
            if not result.outputs.coder_load_balancer_ip:
                result.outputs = result.outputs.model_copy(
                    update={"coder_load_balancer_ip": poll.value}
                )
        else:
            logger.warning(
                "Could not get LoadBalancer IP",
                extra={
                    "poll_status": poll.status.value,
                    "remediation": f"kubectl get svc -n {namespace}",
                },
            )

    def _report(self, result: ApplyResult) -> None:
        logger.info("Deployment Summary")
        print_deployment_summary(result.outputs, self._config.cluster.namespace)
