"""PostgreSQL Flexible Server control plane: restore window and PITR.

Point-in-time restore is exposed here only in its non-destructive form:
it always creates a new server. There is intentionally no method that
writes to an existing server.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError
from azure.mgmt.rdbms.postgresql_flexibleservers import PostgreSQLManagementClient
from azure.mgmt.rdbms.postgresql_flexibleservers.models import Server

from .errors import BackendOperationError
from .models import RestoreWindow

logger = logging.getLogger(__name__)

POINT_IN_TIME_CREATE_MODE = "PointInTimeRestore"
RESTORE_TIMEOUT_SECONDS = 3600


class FlexibleServerBackend:
    """Reads backup metadata and performs point-in-time restores."""

    def __init__(self, credential: TokenCredential, subscription_id: str) -> None:
        self._client = PostgreSQLManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )

    def _get_server(self, resource_group: str, server_name: str) -> Server:
        try:
            return self._client.servers.get(resource_group, server_name)
        except AzureError as e:
            raise BackendOperationError(
                f"Could not read PostgreSQL server {server_name}", detail=str(e)
            ) from e

    def restore_window(self, resource_group: str, server_name: str) -> RestoreWindow:
        """Earliest restore point from the service; latest is now."""
        server = self._get_server(resource_group, server_name)
        earliest = server.backup.earliest_restore_date if server.backup else None
        if earliest is not None and earliest.tzinfo is None:
            earliest = earliest.replace(tzinfo=UTC)
        return RestoreWindow(earliest=earliest, latest=datetime.now(UTC))

    def restore_point_in_time(
        self,
        resource_group: str,
        source_server: str,
        target_server: str,
        restore_time: datetime,
    ) -> str:
        """Create ``target_server`` as a clone of ``source_server`` at ``restore_time``.

        Returns:
            Resource ID of the new server.

        Raises:
            BackendOperationError: If the service rejects or fails the restore.
        """
        source = self._get_server(resource_group, source_server)
        parameters = Server(
            location=source.location,
            create_mode=POINT_IN_TIME_CREATE_MODE,
            source_server_resource_id=source.id,
            point_in_time_utc=restore_time,
        )

        logger.info(
            "Creating new server from point-in-time backup",
            extra={
                "source_server": source_server,
                "target_server": target_server,
                "restore_time": restore_time.isoformat(),
            },
        )
        try:
            poller = self._client.servers.begin_create(resource_group, target_server, parameters)
            restored = poller.result(timeout=RESTORE_TIMEOUT_SECONDS)
        except HttpResponseError as e:
            raise BackendOperationError(
                f"Point-in-time restore to {target_server} failed", detail=e.message
            ) from e
        except AzureError as e:
            raise BackendOperationError(
                f"Point-in-time restore to {target_server} failed", detail=str(e)
            ) from e
        return restored.id
