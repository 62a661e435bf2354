from __future__ import annotations

from typing import TYPE_CHECKING

from stratus.constants import IDENTIFIER_PREFIX, Provider
from stratus.core.exceptions import ValidationError
from stratus.core.steps import Step
from stratus.providers.aws import resources
from stratus.providers.aws.client import Client
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
    """Identifiers of every task whose bucket exists in the account."""
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


class AWSTask(FleetTask):
    """Task backed by an EC2 auto scaling group and an S3 bucket."""

    provider = Provider.AWS

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

        vpc = resources.DefaultVPC(self.client)
        subnets = resources.DefaultVPCSubnets(self.client, vpc)
        image = resources.Image(self.client, attributes.environment.image)
        permission_set = resources.PermissionSet(self.client, attributes.permission_set)
        bucket = resources.Bucket(self.client, identifier)
        credentials = resources.Credentials(self.client, identifier, bucket)
        security_group = resources.SecurityGroup(self.client, identifier, vpc, attributes.firewall)
        key_pair = resources.KeyPair(self.client, identifier)
        launch_template = resources.LaunchTemplate(
            self.client,
            identifier,
            security_group,
            permission_set,
            image,
            key_pair,
            credentials,
            attributes,
            agent,
        )
        auto_scaling_group = resources.AutoScalingGroup(
            self.client, identifier, subnets, launch_template, attributes
        )

        self.data_sources = resources.DataSources(
            default_vpc=vpc,
            default_vpc_subnets=subnets,
            image=image,
            permission_set=permission_set,
            credentials=credentials,
        )
        self.resources = resources.Resources(
            bucket=bucket,
            security_group=security_group,
            key_pair=key_pair,
            launch_template=launch_template,
            auto_scaling_group=auto_scaling_group,
        )

    @property
    def worker_group(self) -> resources.AutoScalingGroup:
        return self.resources.auto_scaling_group

    @property
    def remote(self) -> Remote:
        remote = self.data_sources.credentials.remote
        return remote if remote is not None else self.resources.bucket.remote()

    def create_steps(self) -> list[Step]:
        ds, rs = self.data_sources, self.resources
        return [
            Step("Parsing PermissionSet...", ds.permission_set.read),
            Step("Importing DefaultVPC...", ds.default_vpc.read),
            Step("Importing DefaultVPCSubnets...", ds.default_vpc_subnets.read),
            Step("Reading Image...", ds.image.read),
            Step("Creating Bucket...", rs.bucket.create),
            Step("Creating SecurityGroup...", rs.security_group.create),
            Step("Creating KeyPair...", rs.key_pair.create),
            Step("Reading Credentials...", ds.credentials.read),
            Step("Creating LaunchTemplate...", rs.launch_template.create),
            Step("Creating AutoScalingGroup...", rs.auto_scaling_group.create),
        ]

    def read_steps(self) -> list[Step]:
        ds, rs = self.data_sources, self.resources
        return [
            Step("Parsing PermissionSet...", ds.permission_set.read),
            Step("Reading DefaultVPC...", ds.default_vpc.read),
            Step("Reading DefaultVPCSubnets...", ds.default_vpc_subnets.read),
            Step("Reading Image...", ds.image.read),
            Step("Reading Bucket...", rs.bucket.read),
            Step("Reading SecurityGroup...", rs.security_group.read),
            Step("Reading KeyPair...", rs.key_pair.read),
            Step("Reading Credentials...", ds.credentials.read),
            Step("Reading LaunchTemplate...", rs.launch_template.read),
            Step("Reading AutoScalingGroup...", rs.auto_scaling_group.read),
        ]

    def delete_steps(self) -> list[Step]:
        ds, rs = self.data_sources, self.resources
        return [
            Step("Deleting AutoScalingGroup...", rs.auto_scaling_group.delete),
            Step("Deleting LaunchTemplate...", rs.launch_template.delete),
            Step("Deleting KeyPair...", rs.key_pair.delete),
            Step("Deleting SecurityGroup...", rs.security_group.delete),
            Step("Reading Credentials...", ds.credentials.read),
            Step("Deleting Bucket...", rs.bucket.delete),
        ]

    def get_key_pair(self) -> DeterministicSSHKeyPair:
        return self.client.get_key_pair()
