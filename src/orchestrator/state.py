"""State Inspector: read-only view of what Terraform currently manages.

Every component asks the inspector instead of remembering earlier
answers, so decisions are always made against the current state.
"""

from __future__ import annotations

import logging

from .errors import BackendOperationError, BackendUnavailable, PreconditionError
from .models import DeploymentOutputs, ManagedResourceSet
from .terraform import TerraformRunner

logger = logging.getLogger(__name__)


class StateInspector:
    """Queries the IaC state store. Has no side effects."""

    def __init__(self, backend: TerraformRunner) -> None:
        self._backend = backend

    def list_managed_resources(self) -> ManagedResourceSet:
        """Return the addresses tracked in state.

        Raises:
            BackendUnavailable: If the state store cannot be reached.
        """
        try:
            lines = self._backend.state_list()
        except (BackendOperationError, PreconditionError) as e:
            raise BackendUnavailable(
                "Terraform state could not be read",
                remediation=e.remediation or "terraform init",
            ) from e
        resources = ManagedResourceSet.from_lines(lines)
        logger.debug("Read managed resources", extra={"resource_count": len(resources)})
        return resources

    def has_managed_resources(self) -> bool:
        return self.list_managed_resources().exists

    def has_local_state(self) -> bool:
        return self._backend.has_local_state()

    def outputs(self) -> DeploymentOutputs:
        """Typed outputs. Unreadable outputs degrade to an all-unknown model."""
        try:
            raw = self._backend.output_json()
        except BackendOperationError as e:
            logger.debug("Terraform outputs unavailable", extra={"error": str(e)})
            return DeploymentOutputs()
        return DeploymentOutputs.from_terraform_json(raw)
