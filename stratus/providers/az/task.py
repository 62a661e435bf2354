from __future__ import annotations

from typing import TYPE_CHECKING

from stratus.constants import IDENTIFIER_PREFIX, Provider
from stratus.core.exceptions import ValidationError
from stratus.core.steps import Step
from stratus.providers.az import resources
from stratus.providers.az.client import Client
from stratus.providers.base import FleetTask
from stratus.task.model import Identifier

if TYPE_CHECKING:
    from loguru import Logger

    from stratus.config import AgentSettings
    from stratus.ssh import DeterministicSSHKeyPair
    from stratus.storage.sync import Remote
    from stratus.task.cloud import Cloud
    from stratus.task.model import TaskAttributes


async def list_tasks(cloud: Cloud, *, client: Client | None = None) -> list[Identifier]:
    """Identifiers of every task whose resource group exists in the subscription."""
    client = client or Client(cloud)
    identifiers = []
    for name in await resources.list_resource_groups(client):
        if not name.startswith(f"{IDENTIFIER_PREFIX}-"):
            continue
        try:
            identifiers.append(Identifier.parse(name))
        except ValidationError:
            continue
    return identifiers


class AzureTask(FleetTask):
    """Task backed by a virtual machine scale set and a blob container.

    Every resource lives in the task's resource group, which is deleted last.
    """

    provider = Provider.AZ

    def __init__(
        self,
        cloud: Cloud,
        identifier: Identifier,
        attributes: TaskAttributes,
        *,
        client: Client | None = None,
        agent: AgentSettings | None = None,
        log: Logger | None = None,
    ) -> None:
        super().__init__(cloud, identifier, attributes, agent=agent, log=log)
        self.client = client or Client(cloud)

        image = resources.Image(self.client, attributes.environment.image)
        permission_set = resources.PermissionSet(self.client, attributes.permission_set)
        resource_group = resources.ResourceGroup(self.client, identifier)
        storage_account = resources.StorageAccount(self.client, identifier, resource_group)
        blob_container = resources.BlobContainer(
            self.client, identifier, resource_group, storage_account
        )
        credentials = resources.Credentials(
            self.client, identifier, resource_group, storage_account, blob_container
        )
        virtual_network = resources.VirtualNetwork(self.client, identifier, resource_group)
        security_group = resources.SecurityGroup(
            self.client, identifier, resource_group, attributes.firewall
        )
        subnet = resources.Subnet(
            self.client, identifier, resource_group, virtual_network, security_group
        )
        scale_set = resources.VirtualMachineScaleSet(
            self.client,
            identifier,
            resource_group,
            subnet,
            security_group,
            image,
            permission_set,
            credentials,
            attributes,
            agent,
        )

        self.data_sources = resources.DataSources(
            image=image,
            permission_set=permission_set,
            credentials=credentials,
        )
        self.resources = resources.Resources(
            resource_group=resource_group,
            storage_account=storage_account,
            blob_container=blob_container,
            virtual_network=virtual_network,
            security_group=security_group,
            subnet=subnet,
            virtual_machine_scale_set=scale_set,
        )

    @property
    def worker_group(self) -> resources.VirtualMachineScaleSet:
        return self.resources.virtual_machine_scale_set

    @property
    def remote(self) -> Remote:
        remote = self.data_sources.credentials.remote
        if remote is None:
            raise ValidationError("storage credentials have not been read yet")
        return remote

    def create_steps(self) -> list[Step]:
        ds, rs = self.data_sources, self.resources
        return [
            Step("Reading Image...", ds.image.read),
            Step("Parsing PermissionSet...", ds.permission_set.read),
            Step("Creating ResourceGroup...", rs.resource_group.create),
            Step("Creating StorageAccount...", rs.storage_account.create),
            Step("Creating BlobContainer...", rs.blob_container.create),
            Step("Reading Credentials...", ds.credentials.read),
            Step("Creating VirtualNetwork...", rs.virtual_network.create),
            Step("Creating SecurityGroup...", rs.security_group.create),
            Step("Creating Subnet...", rs.subnet.create),
            Step("Creating VirtualMachineScaleSet...", rs.virtual_machine_scale_set.create),
        ]

    def read_steps(self) -> list[Step]:
        ds, rs = self.data_sources, self.resources
        return [
            Step("Reading Image...", ds.image.read),
            Step("Parsing PermissionSet...", ds.permission_set.read),
            Step("Reading ResourceGroup...", rs.resource_group.read),
            Step("Reading StorageAccount...", rs.storage_account.read),
            Step("Reading BlobContainer...", rs.blob_container.read),
            Step("Reading Credentials...", ds.credentials.read),
            Step("Reading VirtualNetwork...", rs.virtual_network.read),
            Step("Reading SecurityGroup...", rs.security_group.read),
            Step("Reading Subnet...", rs.subnet.read),
            Step("Reading VirtualMachineScaleSet...", rs.virtual_machine_scale_set.read),
        ]

    def delete_steps(self) -> list[Step]:
        rs = self.resources
        return [
            Step("Deleting VirtualMachineScaleSet...", rs.virtual_machine_scale_set.delete),
            Step("Deleting Subnet...", rs.subnet.delete),
            Step("Deleting SecurityGroup...", rs.security_group.delete),
            Step("Deleting VirtualNetwork...", rs.virtual_network.delete),
            Step("Deleting BlobContainer...", rs.blob_container.delete),
            Step("Deleting StorageAccount...", rs.storage_account.delete),
            Step("Deleting ResourceGroup...", rs.resource_group.delete),
        ]

    def get_key_pair(self) -> DeterministicSSHKeyPair:
        return self.client.get_key_pair()
