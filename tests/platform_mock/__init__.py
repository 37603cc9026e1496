"""Platform fakes for testing without Terraform, a cluster or Azure.

Each fake mirrors the public surface of the real wrapper it replaces:

- FakeTerraform: TerraformRunner (in-memory desired config and state)
- FakeCluster: KubernetesCluster (jobs, releases, load balancers)
- FakeBlobStore: BlobArtifactStore (one container)
- FakeDatabase: FlexibleServerBackend (restore window, point-in-time restore)
- ScriptedPrompter: Prompter (queued answers)
- MockTokenCredential and create_mock_*: Azure SDK credential and clients

Usage:
    from platform_mock import FakeTerraform, terraform_outputs

    terraform = FakeTerraform(outputs=terraform_outputs(resource_group_name="rg-coder"))
    engine = ApplyEngine(config, terraform, StateInspector(terraform), FakeCluster())
"""

from .azure import (
    MockTokenCredential,
    create_mock_blob_service,
    create_mock_credential,
    create_mock_postgres_client,
    create_mock_resource_client,
    mock_blob,
)
from .cluster import FakeCluster
from .prompts import ScriptedPrompter
from .storage import NOW, FakeBlobStore, FakeDatabase
from .terraform import DEFAULT_RESOURCES, FakeTerraform, deployment_outputs, terraform_outputs

__all__ = [
    "DEFAULT_RESOURCES",
    "NOW",
    "FakeBlobStore",
    "FakeCluster",
    "FakeDatabase",
    "FakeTerraform",
    "MockTokenCredential",
    "ScriptedPrompter",
    "create_mock_blob_service",
    "create_mock_credential",
    "create_mock_postgres_client",
    "create_mock_resource_client",
    "deployment_outputs",
    "mock_blob",
    "terraform_outputs",
]
