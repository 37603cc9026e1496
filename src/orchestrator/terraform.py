"""Thin wrapper around the Terraform CLI.

Terraform has no supported Python API, so every operation is a
subprocess call in the configured working directory. Long-running
commands (plan, apply, destroy) stream their output to the operator;
queries (state list, output, show) are captured and parsed.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Any

from .config import (
    TERRAFORM_COMMAND_TIMEOUT_SECONDS,
    TERRAFORM_QUERY_TIMEOUT_SECONDS,
    Config,
)
from .errors import BackendOperationError, PreconditionError

logger = logging.getLogger(__name__)

TERRAFORM_BINARY = "terraform"

# Planned actions that do not change infrastructure
NON_CHANGING_ACTIONS = frozenset(("no-op", "read"))


def count_planned_changes(plan: dict[str, Any]) -> int:
    """Number of planned resource changes whose actions alter infrastructure."""
    changed = 0
    for change in plan.get("resource_changes") or []:
        actions = set((change.get("change") or {}).get("actions") or [])
        if actions - NON_CHANGING_ACTIONS:
            changed += 1
    return changed


class TerraformRunner:
    """Executes Terraform commands for one working directory."""

    def __init__(self, config: Config, binary: str = TERRAFORM_BINARY) -> None:
        self._config = config
        self._binary = binary
        self._workdir = config.terraform_dir
        # ARM_* credentials come from Config, not from whatever the parent exported
        self._env = {**os.environ, **config.credentials.to_env(), "TF_IN_AUTOMATION": "1"}

    @property
    def workdir(self) -> Path:
        return self._workdir

    def run(
        self,
        args: list[str],
        *,
        capture: bool = True,
        timeout: int = TERRAFORM_QUERY_TIMEOUT_SECONDS,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``terraform <args>`` without raising on a non-zero exit.

        Raises:
            PreconditionError: If the terraform binary is missing.
            BackendOperationError: If the command times out.
        """
        cmd = [self._binary, *args]
        logger.debug("Running terraform", extra={"command": " ".join(cmd)})
        try:
            return subprocess.run(
                cmd,
                cwd=self._workdir,
                env=self._env,
                timeout=timeout,
                capture_output=capture,
                text=True,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise BackendOperationError(
                f"terraform {args[0]} timed out after {timeout}s",
                remediation=f"cd {self._workdir} && terraform {' '.join(args)}",
            ) from e
        except FileNotFoundError as e:
            raise PreconditionError(
                f"Command not found: {self._binary}",
                remediation="Install Terraform: https://developer.hashicorp.com/terraform/install",
            ) from e

    def _run_checked(
        self,
        args: list[str],
        *,
        capture: bool = True,
        timeout: int = TERRAFORM_QUERY_TIMEOUT_SECONDS,
        failure: str,
        remediation: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        result = self.run(args, capture=capture, timeout=timeout)
        if result.returncode != 0:
            raise BackendOperationError(
                failure,
                remediation=remediation,
                detail=(result.stderr or "").strip() or None,
            )
        return result

    # -------------------------------------------------------------------------
    # Working directory
    # -------------------------------------------------------------------------

    def is_initialized(self) -> bool:
        return (self._workdir / ".terraform").is_dir()

    def has_local_state(self) -> bool:
        """True when there is anything Terraform could be tracking."""
        return self._config.state_path.exists() or self.is_initialized()

    def init(self, upgrade: bool = True) -> None:
        args = ["init", "-input=false"]
        if upgrade:
            args.append("-upgrade")
        self._run_checked(
            args,
            capture=False,
            timeout=TERRAFORM_COMMAND_TIMEOUT_SECONDS,
            failure="Terraform init failed",
            remediation=f"cd {self._workdir} && terraform init -upgrade",
        )

    def validate(self) -> None:
        self._run_checked(
            ["validate", "-no-color"],
            failure="Terraform validation failed",
            remediation=f"cd {self._workdir} && terraform validate",
        )

    # -------------------------------------------------------------------------
    # Plan / apply / destroy
    # -------------------------------------------------------------------------

    def plan(self, plan_path: Path) -> None:
        self._run_checked(
            ["plan", "-input=false", f"-out={plan_path.name}"],
            capture=False,
            timeout=TERRAFORM_COMMAND_TIMEOUT_SECONDS,
            failure="Terraform plan failed",
            remediation=f"cd {self._workdir} && terraform plan",
        )

    def show_plan(self, plan_path: Path) -> dict[str, Any]:
        result = self._run_checked(
            ["show", "-json", "-no-color", plan_path.name],
            failure="Could not read the saved plan",
        )
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise BackendOperationError("terraform show returned invalid JSON") from e
        if not isinstance(data, dict):
            raise BackendOperationError("terraform show returned an unexpected document")
        return data

    def apply(self, plan_path: Path) -> None:
        # A saved plan is applied without Terraform's own prompt; approval happens upstream
        self._run_checked(
            ["apply", "-input=false", plan_path.name],
            capture=False,
            timeout=TERRAFORM_COMMAND_TIMEOUT_SECONDS,
            failure="Terraform apply failed",
        )

    def destroy(self) -> bool:
        """Run ``terraform destroy -auto-approve``. Returns success."""
        result = self.run(
            ["destroy", "-auto-approve", "-input=false"],
            capture=False,
            timeout=TERRAFORM_COMMAND_TIMEOUT_SECONDS,
        )
        return result.returncode == 0

    # -------------------------------------------------------------------------
    # State & outputs
    # -------------------------------------------------------------------------

    def state_list(self) -> list[str]:
        result = self._run_checked(
            ["state", "list"],
            failure="Unable to list resources in Terraform state",
            remediation=f"cd {self._workdir} && terraform init",
        )
        return [line for line in (result.stdout or "").splitlines() if line.strip()]

    def state_rm(self, address: str) -> None:
        self._run_checked(
            ["state", "rm", address],
            failure=f"Failed to remove {address} from state",
        )

    def output_json(self) -> dict[str, Any]:
        result = self._run_checked(
            ["output", "-json", "-no-color"],
            failure="Unable to read Terraform outputs",
        )
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise BackendOperationError("terraform output returned invalid JSON") from e
        return data if isinstance(data, dict) else {}
