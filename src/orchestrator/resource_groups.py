"""Resource group lookups through the Azure Resource Manager SDK.

Used after teardown to confirm that the deployment's resource group is
really gone; Terraform state going empty only proves what Terraform
believes.
"""

from __future__ import annotations

import logging

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError
from azure.mgmt.resource import ResourceManagementClient

from .errors import BackendOperationError

logger = logging.getLogger(__name__)


class ResourceGroupInspector:
    """Read-only resource group queries for one subscription."""

    def __init__(self, credential: TokenCredential, subscription_id: str) -> None:
        self._subscription_id = subscription_id
        self._client = ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )

    def exists(self, name: str) -> bool:
        """True if the resource group still exists (including while deleting).

        Raises:
            BackendOperationError: If ARM cannot be queried.
        """
        try:
            found = self._client.resource_groups.check_existence(name)
        except HttpResponseError as e:
            error_code = e.error.code if e.error else None
            logger.debug(
                "Resource group lookup failed",
                extra={"status_code": e.status_code, "error_code": error_code},
            )
            raise BackendOperationError(
                f"Could not check resource group {name}", detail=e.message
            ) from e
        except AzureError as e:
            raise BackendOperationError(
                f"Could not check resource group {name}", detail=str(e)
            ) from e

        logger.debug(
            "Checked resource group",
            extra={
                "resource_group": name,
                "subscription_id": self._subscription_id,
                "exists": found,
            },
        )
        return bool(found)
