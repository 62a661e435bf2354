from __future__ import annotations

from typing import TYPE_CHECKING

from stratus.constants import IDENTIFIER_PREFIX, Provider
from stratus.core.exceptions import ValidationError
from stratus.core.steps import Step
from stratus.providers.base import FleetTask
from stratus.providers.gcp import resources
from stratus.providers.gcp.client import Client
from stratus.task.model import Identifier

if TYPE_CHECKING:
    from loguru import Logger

    from stratus.config import AgentSettings
    from stratus.ssh import DeterministicSSHKeyPair
    from stratus.storage.sync import Remote
    from stratus.task.cloud import Cloud
    from stratus.task.model import TaskAttributes


async def list_tasks(cloud: Cloud, *, client: Client | None = None) -> list[Identifier]:
    """Identifiers of every task whose bucket exists in the project."""
    client = client or Client(cloud)
    identifiers = []
    for name in await resources.list_buckets(client):
        if not name.startswith(f"{IDENTIFIER_PREFIX}-"):
            continue
        try:
            identifiers.append(Identifier.parse(name))
        except ValidationError:
            continue
    return identifiers


class GCPTask(FleetTask):
    """Task backed by a managed instance group and a GCS bucket.

    SSH keys travel in the instance template metadata, so there is no
    key-pair resource.
    """

    provider = Provider.GCP

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

        network = resources.DefaultNetwork(self.client)
        image = resources.Image(self.client, attributes.environment.image)
        permission_set = resources.PermissionSet(self.client, attributes.permission_set)
        bucket = resources.Bucket(self.client, identifier)
        credentials = resources.Credentials(self.client, identifier, bucket)
        firewall_ingress = resources.FirewallRule(
            self.client, identifier, network, attributes.firewall.ingress, "INGRESS"
        )
        firewall_egress = resources.FirewallRule(
            self.client, identifier, network, attributes.firewall.egress, "EGRESS"
        )
        instance_template = resources.InstanceTemplate(
            self.client,
            identifier,
            network,
            image,
            permission_set,
            credentials,
            attributes,
            agent,
        )
        instance_group_manager = resources.InstanceGroupManager(
            self.client, identifier, instance_template, attributes
        )

        self.data_sources = resources.DataSources(
            default_network=network,
            image=image,
            permission_set=permission_set,
            credentials=credentials,
        )
        self.resources = resources.Resources(
            bucket=bucket,
            firewall_ingress=firewall_ingress,
            firewall_egress=firewall_egress,
            instance_template=instance_template,
            instance_group_manager=instance_group_manager,
        )

    @property
    def worker_group(self) -> resources.InstanceGroupManager:
        return self.resources.instance_group_manager

    @property
    def remote(self) -> Remote:
        remote = self.data_sources.credentials.remote
        return remote if remote is not None else self.resources.bucket.remote()

    def create_steps(self) -> list[Step]:
        ds, rs = self.data_sources, self.resources
        return [
            Step("Parsing PermissionSet...", ds.permission_set.read),
            Step("Importing DefaultNetwork...", ds.default_network.read),
            Step("Reading Image...", ds.image.read),
            Step("Creating Bucket...", rs.bucket.create),
            Step("Reading Credentials...", ds.credentials.read),
            Step("Creating FirewallRule (ingress)...", rs.firewall_ingress.create),
            Step("Creating FirewallRule (egress)...", rs.firewall_egress.create),
            Step("Creating InstanceTemplate...", rs.instance_template.create),
            Step("Creating InstanceGroupManager...", rs.instance_group_manager.create),
        ]

    def read_steps(self) -> list[Step]:
        ds, rs = self.data_sources, self.resources
        return [
            Step("Parsing PermissionSet...", ds.permission_set.read),
            Step("Reading DefaultNetwork...", ds.default_network.read),
            Step("Reading Image...", ds.image.read),
            Step("Reading Bucket...", rs.bucket.read),
            Step("Reading Credentials...", ds.credentials.read),
            Step("Reading FirewallRule (ingress)...", rs.firewall_ingress.read),
            Step("Reading FirewallRule (egress)...", rs.firewall_egress.read),
            Step("Reading InstanceTemplate...", rs.instance_template.read),
            Step("Reading InstanceGroupManager...", rs.instance_group_manager.read),
        ]

    def delete_steps(self) -> list[Step]:
        rs = self.resources
        return [
            Step("Deleting InstanceGroupManager...", rs.instance_group_manager.delete),
            Step("Deleting InstanceTemplate...", rs.instance_template.delete),
            Step("Deleting FirewallRule (egress)...", rs.firewall_egress.delete),
            Step("Deleting FirewallRule (ingress)...", rs.firewall_ingress.delete),
            Step("Deleting Bucket...", rs.bucket.delete),
        ]

    def get_key_pair(self) -> DeterministicSSHKeyPair:
        return self.client.get_key_pair()
