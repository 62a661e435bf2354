"""Azure credentials, subscription resolution and management clients."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from functools import cached_property, partial
from typing import TYPE_CHECKING, Any

from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError
from azure.identity import ClientSecretCredential, DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.storage import StorageManagementClient
from loguru import logger

from stratus.constants import Provider, StratusTag
from stratus.core.exceptions import NotFoundError, ValidationError
from stratus.ssh import DeterministicSSHKeyPair
from stratus.storage.sync import Remote
from stratus.task.cloud import AzureCredentials, resolve_region

if TYPE_CHECKING:
    from azure.core.credentials import TokenCredential
    from loguru import Logger

    from stratus.task.cloud import Cloud

REGIONS: dict[str, str] = {
    "us-east": "eastus",
    "us-west": "westus2",
    "eu-north": "northeurope",
    "eu-west": "westeurope",
}

MACHINES: dict[str, str] = {
    "s": "Standard_B1s",
    "m": "Standard_F8s_v2",
    "l": "Standard_F32s_v2",
    "xl": "Standard_F64s_v2",
    "m+t4": "Standard_NC4as_T4_v3",
    "m+k80": "Standard_NC6",
    "m+v100": "Standard_NC6s_v3",
    "l+t4": "Standard_NC64as_T4_v3",
    "l+k80": "Standard_NC12",
    "l+v100": "Standard_NC12s_v3",
    "xl+k80": "Standard_NC24",
    "xl+v100": "Standard_NC24s_v3",
}

# user@publisher:offer:sku:version[#plan]
IMAGES: dict[str, str] = {
    "ubuntu": "ubuntu@Canonical:0001-com-ubuntu-server-focal:20_04-lts:latest",
    "nvidia": "ubuntu@microsoft-dsvm:ubuntu-2004:2004-gen2:latest",
}


def is_not_found(error: BaseException) -> bool:
    if isinstance(error, ResourceNotFoundError):
        return True
    return isinstance(error, HttpResponseError) and error.status_code == 404


def is_duplicate(error: BaseException) -> bool:
    return isinstance(error, ResourceExistsError)


class Client:
    """Management clients for one subscription and location.

    Explicit AzureCredentials (a service principal) win over
    DefaultAzureCredential; the subscription then comes from
    ``AZURE_SUBSCRIPTION_ID``.
    """

    def __init__(self, cloud: Cloud, *, log: Logger | None = None) -> None:
        self.cloud = cloud
        self.region = resolve_region(cloud.region, REGIONS)
        self.tags = dict(cloud.tags)
        self.log = log or logger.bind(component="client", provider=Provider.AZ.value)

        self.service_principal: AzureCredentials | None
        match cloud.credentials:
            case None:
                self.service_principal = None
                self.credential: TokenCredential = DefaultAzureCredential()
                self.subscription_id = os.environ.get("AZURE_SUBSCRIPTION_ID", "")
            case AzureCredentials() as creds:
                self.service_principal = creds
                self.credential = ClientSecretCredential(
                    tenant_id=creds.tenant_id,
                    client_id=creds.client_id,
                    client_secret=creds.client_secret,
                )
                self.subscription_id = creds.subscription_id
            case other:
                raise ValidationError(f"Azure needs Azure credentials, got {type(other).__name__}")

        if not self.subscription_id:
            raise ValidationError("No Azure subscription found. Set AZURE_SUBSCRIPTION_ID.")

    @cached_property
    def resource(self) -> ResourceManagementClient:
        return ResourceManagementClient(self.credential, self.subscription_id)

    @cached_property
    def storage(self) -> StorageManagementClient:
        return StorageManagementClient(self.credential, self.subscription_id)

    @cached_property
    def network(self) -> NetworkManagementClient:
        return NetworkManagementClient(self.credential, self.subscription_id)

    @cached_property
    def compute(self) -> ComputeManagementClient:
        return ComputeManagementClient(self.credential, self.subscription_id)

    async def call[T](self, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call on a worker thread."""
        return await asyncio.to_thread(partial(fn, *args, **kwargs))

    async def wait(self, poller: Any) -> Any:
        """Block until a long-running operation completes and return its result."""
        return await asyncio.to_thread(poller.result)

    def get_key_pair(self) -> DeterministicSSHKeyPair:
        if self.service_principal is None:
            raise NotFoundError("no service principal secret to derive an SSH key from")
        return DeterministicSSHKeyPair.from_secret(self.service_principal.client_secret)

    def remote(self, account: str, key: str, container: str) -> Remote:
        return Remote(f"az://{container}", {"account_name": account, "account_key": key})

    def tag_map(self, name: str) -> dict[str, str]:
        return {
            **self.tags,
            StratusTag.MANAGED: "true",
            StratusTag.IDENTIFIER: name,
        }
