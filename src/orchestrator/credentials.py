"""Azure authentication for the SDK clients.

Mirrors how the azurerm Terraform provider authenticates so that the
orchestrator and Terraform always act as the same identity:
- All four ARM_* service principal values present: ClientSecretCredential
- Otherwise: the Azure CLI login (``az login``)

Authentication is verified once, up front, by requesting a management
token. Nothing is attempted against Azure if that fails.
"""

from __future__ import annotations

import logging
import shutil
import subprocess

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import AzureCliCredential, ClientSecretCredential, CredentialUnavailableError

from .config import Config
from .errors import PreconditionError

logger = logging.getLogger(__name__)

MANAGEMENT_SCOPE = "https://management.azure.com/.default"

AUTH_REMEDIATION = (
    "Set ARM_CLIENT_ID, ARM_CLIENT_SECRET, ARM_SUBSCRIPTION_ID and ARM_TENANT_ID, or run: az login"
)

# Tools each command needs, with install hints
TOOL_INSTALL_HINTS: dict[str, str] = {
    "terraform": "https://developer.hashicorp.com/terraform/install",
    "az": "https://docs.microsoft.com/en-us/cli/azure/install-azure-cli",
    "helm": "https://helm.sh/docs/intro/install/",
}


def check_tools(tools: tuple[str, ...]) -> None:
    """Fail fast when a required CLI is missing.

    Raises:
        PreconditionError: Listing every missing tool with install hints.
    """
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        hints = "; ".join(f"{tool}: {TOOL_INSTALL_HINTS.get(tool, 'see docs')}" for tool in missing)
        raise PreconditionError(f"Missing required tools: {', '.join(missing)}", remediation=hints)
    logger.debug("All prerequisites installed", extra={"tools": list(tools)})


def get_credential(config: Config) -> TokenCredential:
    """Build the credential matching Terraform's provider authentication."""
    creds = config.credentials
    if creds.is_service_principal:
        logger.info(
            "Using service principal authentication",
            extra={"client_id": (creds.client_id or "")[:8] + "..."},
        )
        return ClientSecretCredential(
            tenant_id=creds.tenant_id,
            client_id=creds.client_id,
            client_secret=creds.client_secret,
        )

    logger.info("ARM_* environment variables not set, using Azure CLI authentication")
    return AzureCliCredential()


def verify_authentication(credential: TokenCredential) -> None:
    """Request a management-plane token to prove the login works.

    Raises:
        PreconditionError: If no token can be obtained.
    """
    try:
        credential.get_token(MANAGEMENT_SCOPE)
    except (ClientAuthenticationError, CredentialUnavailableError) as e:
        raise PreconditionError("Not authenticated to Azure", remediation=AUTH_REMEDIATION) from e
    logger.debug("Azure authentication verified")


def resolve_subscription_id(config: Config) -> str:
    """Subscription from config, else the Azure CLI's active subscription.

    Raises:
        PreconditionError: If neither source yields a subscription.
    """
    if config.credentials.subscription_id:
        return config.credentials.subscription_id

    try:
        result = subprocess.run(
            ["az", "account", "show", "--query", "id", "-o", "tsv"],
            capture_output=True,
            text=True,
            timeout=30,
            check=False,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise PreconditionError(
            "Could not determine the Azure subscription", remediation=AUTH_REMEDIATION
        ) from e

    subscription_id = result.stdout.strip() if result.returncode == 0 else ""
    if not subscription_id:
        raise PreconditionError(
            "Could not determine the Azure subscription", remediation=AUTH_REMEDIATION
        )
    return subscription_id
