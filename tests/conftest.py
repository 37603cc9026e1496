"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for platform_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from orchestrator.config import BackupConfig, Config
from platform_mock import (
    FakeBlobStore,
    FakeCluster,
    FakeDatabase,
    FakeTerraform,
    ScriptedPrompter,
    deployment_outputs,
)


@pytest.fixture
def terraform_dir(tmp_path: Path) -> Path:
    """Terraform working directory with a variables file."""
    directory = tmp_path / "terraform"
    directory.mkdir()
    (directory / "terraform.tfvars").write_text('resource_prefix = "coder"\n')
    return directory


@pytest.fixture
def config(terraform_dir: Path, tmp_path: Path) -> Config:
    staging = tmp_path / "staging"
    staging.mkdir()
    return Config(terraform_dir=terraform_dir, backup=BackupConfig(staging_dir=staging))


@pytest.fixture
def terraform(terraform_dir: Path) -> FakeTerraform:
    """Fresh working directory: initialized, nothing deployed yet."""
    return FakeTerraform(workdir=terraform_dir, outputs=deployment_outputs(), local_state=False)


@pytest.fixture
def deployed_terraform(terraform: FakeTerraform) -> FakeTerraform:
    """A working directory whose state tracks a full deployment."""
    terraform.state = set(terraform.desired)
    terraform.local_state = True
    return terraform


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def prompter() -> ScriptedPrompter:
    return ScriptedPrompter()


@pytest.fixture
def no_sleep() -> list[float]:
    """Collects requested sleeps instead of sleeping."""
    return []
