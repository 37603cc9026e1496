"""Azure Blob Storage access for exported database artifacts."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError
from azure.storage.blob import BlobServiceClient, ContainerClient

from .errors import BackendOperationError
from .models import BackupArtifact

logger = logging.getLogger(__name__)

BLOB_ENDPOINT_TEMPLATE = "https://{account}.blob.core.windows.net"


class BlobArtifactStore:
    """One container in one storage account.

    Artifacts are write-once: uploads use unique timestamped names and
    nothing here deletes blobs (expiry is the storage lifecycle policy's job).
    """

    def __init__(self, account_name: str, container_name: str, credential: TokenCredential) -> None:
        self._account_name = account_name
        self._container_name = container_name
        self._service = BlobServiceClient(
            account_url=BLOB_ENDPOINT_TEMPLATE.format(account=account_name),
            credential=credential,
        )

    @property
    def location(self) -> str:
        return f"{self._account_name}/{self._container_name}"

    def _container(self) -> ContainerClient:
        return self._service.get_container_client(self._container_name)

    def list_artifacts(self) -> list[BackupArtifact]:
        """All blobs in the container, oldest first.

        Raises:
            BackendOperationError: If the container cannot be listed.
        """
        try:
            blobs = list(self._container().list_blobs())
        except AzureError as e:
            raise BackendOperationError(
                f"Could not list blobs in {self.location}", detail=str(e)
            ) from e

        artifacts = [
            BackupArtifact(
                name=blob.name,
                size_bytes=blob.size,
                location=f"{self.location}/{blob.name}",
                created_at=blob.creation_time,
            )
            for blob in blobs
        ]
        return sorted(artifacts, key=lambda a: a.name)

    def count_artifacts(self) -> int:
        return len(self.list_artifacts())

    def upload(self, name: str, source: Path) -> BackupArtifact:
        """Upload a local file under ``name`` (overwriting a same-named blob).

        Raises:
            BackendOperationError: If the upload fails.
        """
        try:
            with source.open("rb") as data:
                self._container().upload_blob(name=name, data=data, overwrite=True)
        except (AzureError, OSError) as e:
            raise BackendOperationError(
                f"Upload of {name} to {self.location} failed", detail=str(e)
            ) from e

        logger.debug("Uploaded artifact", extra={"blob": name, "container": self.location})
        return BackupArtifact(
            name=name,
            size_bytes=source.stat().st_size if source.exists() else None,
            location=f"{self.location}/{name}",
            created_at=datetime.now(UTC),
        )
