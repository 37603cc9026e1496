"""Error taxonomy for lifecycle and backup operations.

Every error carries an optional remediation: the command or action the
operator should try next. The CLI prints both.

Convergence timeouts are deliberately absent here. Readiness polling
returns a PollResult instead of raising, because a slow backend is not a
failed operation.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all orchestrator failures."""

    category = "error"

    def __init__(self, message: str, remediation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation


class ConfigurationError(OrchestratorError):
    """Raised when configuration validation fails."""

    category = "configuration"


class PreconditionError(OrchestratorError):
    """A required tool, file, login or deployment is missing.

    Raised before any mutation is attempted.
    """

    category = "precondition"


class BackendUnavailable(PreconditionError):
    """The Terraform state store could not be read."""

    category = "backend-unavailable"


class BackendOperationError(OrchestratorError):
    """A backend rejected an operation (apply, destroy, job submission, upload).

    ``detail`` holds the backend's own output, surfaced verbatim.
    """

    category = "backend-operation"

    def __init__(
        self,
        message: str,
        remediation: str | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message, remediation)
        self.detail = detail


class ExportTimeout(BackendOperationError):
    """The export job did not stage its artifact before the deadline."""

    category = "export-timeout"
