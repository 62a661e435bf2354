"""AWS data sources and resources.

Each class wraps one cloud object. Resources derive their names from the
task identifier, so create/read/delete can be replayed from any process.
``resource`` holds the last description returned by the SDK.
"""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_fixed

from stratus.constants import Provider, StatusCode
from stratus.core.exceptions import NotFoundError, ProviderError, ValidationError
from stratus.providers.aws.client import IMAGES, MACHINES, is_duplicate, is_not_found
from stratus.task.machine import render_script
from stratus.task.model import Event, FirewallRule, empty_status

if TYPE_CHECKING:
    from stratus.config import AgentSettings
    from stratus.providers.aws.client import Client
    from stratus.storage.sync import Remote
    from stratus.task.model import Firewall, Identifier, TaskAttributes

_IMAGE_PATTERN = re.compile(r"^([^@]+)@([^:]+):([^:]+):(.+)$")
_INSTANCE_PROFILE_PATTERN = re.compile(r"arn:aws:iam::\d*:instance-profile/\S*")
_TERMINATING = ("Terminating", "Terminating:Wait", "Terminating:Proceed", "Terminated")


class DependencyViolation(ProviderError):
    """Resource still in use by another resource."""


class GroupStillPresent(ProviderError):
    """Auto scaling group deletion has not finished yet."""


# =============================================================================
# Data Sources
# =============================================================================


class DefaultVPC:
    def __init__(self, client: Client) -> None:
        self.client = client
        self.resource: dict[str, Any] | None = None

    async def read(self) -> None:
        response = await self.client.call(
            self.client.ec2.describe_vpcs,
            Filters=[{"Name": "is-default", "Values": ["true"]}],
        )
        if not response["Vpcs"]:
            raise NotFoundError("no default VPC found")
        self.resource = response["Vpcs"][0]

    @property
    def id(self) -> str:
        assert self.resource is not None
        return self.resource["VpcId"]


class DefaultVPCSubnets:
    """Default subnets of the default VPC that can host public workers."""

    def __init__(self, client: Client, vpc: DefaultVPC) -> None:
        self.client = client
        self.vpc = vpc
        self.resource: list[dict[str, Any]] = []

    async def read(self) -> None:
        response = await self.client.call(
            self.client.ec2.describe_subnets,
            Filters=[
                {"Name": "vpc-id", "Values": [self.vpc.id]},
                {"Name": "default-for-az", "Values": ["true"]},
            ],
        )
        subnets = [
            s
            for s in response["Subnets"]
            if s.get("MapPublicIpOnLaunch") and s.get("AvailableIpAddressCount", 0) > 0
        ]
        if not subnets:
            raise NotFoundError("no usable subnets in the default VPC")
        self.resource = subnets

    @property
    def ids(self) -> list[str]:
        return [s["SubnetId"] for s in self.resource]


class Image:
    """Machine image resolved from an alias or ``user@owner:arch:name`` reference."""

    def __init__(self, client: Client, identifier: str) -> None:
        self.client = client
        self.identifier = identifier
        self.resource: dict[str, Any] | None = None
        self.ssh_user = ""

    async def read(self) -> None:
        reference = IMAGES.get(self.identifier, self.identifier)
        match = _IMAGE_PATTERN.match(reference)
        if match is None:
            raise ValidationError(f"invalid image name {self.identifier!r}")
        user, owner, architecture, name = match.groups()

        response = await self.client.call(
            self.client.ec2.describe_images,
            Owners=[owner],
            Filters=[
                {"Name": "name", "Values": [name]},
                {"Name": "architecture", "Values": [architecture]},
            ],
        )
        images = sorted(response["Images"], key=lambda i: i.get("CreationDate", ""))
        if not images:
            raise NotFoundError(f"no image matches {reference!r}")
        self.resource = images[-1]
        self.ssh_user = user

    @property
    def id(self) -> str:
        assert self.resource is not None
        return self.resource["ImageId"]

    @property
    def root_device(self) -> str:
        assert self.resource is not None
        return self.resource.get("RootDeviceName", "/dev/sda1")


class PermissionSet:
    """Instance profile attached to workers; empty means none."""

    def __init__(self, client: Client, identifier: str) -> None:
        self.client = client
        self.identifier = identifier
        self.resource: dict[str, str] | None = None

    async def read(self) -> None:
        if not self.identifier:
            self.resource = None
            return
        if not _INSTANCE_PROFILE_PATTERN.match(self.identifier):
            raise ValidationError(f"invalid IAM instance profile: {self.identifier}")
        self.resource = {"Arn": self.identifier}


class Credentials:
    """Storage remote and variables handed to workers."""

    def __init__(self, client: Client, identifier: Identifier, bucket: Bucket) -> None:
        self.client = client
        self.identifier = identifier
        self.bucket = bucket
        self.remote: Remote | None = None
        self.resource: dict[str, str] = {}

    async def read(self) -> None:
        creds = self.client.credentials()
        self.remote = self.bucket.remote()
        self.resource = {
            "AWS_ACCESS_KEY_ID": creds.access_key,
            "AWS_SECRET_ACCESS_KEY": creds.secret_key,
            "STRATUS_REMOTE": self.remote.url,
            "STRATUS_TASK_CLOUD_PROVIDER": Provider.AWS.value,
            "STRATUS_TASK_CLOUD_REGION": self.client.region,
            "STRATUS_TASK_IDENTIFIER": self.identifier.long(),
        }
        if creds.token:
            self.resource["AWS_SESSION_TOKEN"] = creds.token


# =============================================================================
# Resources
# =============================================================================


class Bucket:
    def __init__(self, client: Client, identifier: Identifier) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.resource: dict[str, Any] | None = None

    async def create(self) -> None:
        kwargs: dict[str, Any] = {"Bucket": self.identifier}
        # us-east-1 rejects an explicit location constraint
        if self.client.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.client.region}
        try:
            await self.client.call(self.client.s3.create_bucket, **kwargs)
        except ClientError as e:
            if not is_duplicate(e):
                raise
        await self.client.call(
            self.client.s3.put_bucket_tagging,
            Bucket=self.identifier,
            Tagging={"TagSet": self.client.tag_list(self.identifier)},
        )
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.s3.head_bucket, Bucket=self.identifier
            )
        except ClientError as e:
            if is_not_found(e):
                raise NotFoundError(f"bucket {self.identifier} not found") from e
            raise

    async def delete(self) -> None:
        try:
            await self.client.call(self.client.s3.delete_bucket, Bucket=self.identifier)
        except ClientError as e:
            if not is_not_found(e):
                raise
        self.resource = None

    def remote(self) -> Remote:
        return self.client.remote(self.identifier)


def _permissions(rule: FirewallRule, nets_key: str = "IpRanges") -> list[dict[str, Any]]:
    ranges = [{"CidrIp": net} for net in rule.nets or ("0.0.0.0/0",)]
    if rule.ports is None:
        return [{"IpProtocol": "-1", nets_key: ranges}]
    return [
        {"IpProtocol": protocol, "FromPort": port, "ToPort": port, nets_key: ranges}
        for port in rule.ports
        for protocol in ("tcp", "udp")
    ]


class SecurityGroup:
    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        vpc: DefaultVPC,
        firewall: Firewall,
    ) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.vpc = vpc
        self.firewall = firewall
        self.resource: dict[str, Any] | None = None

    async def create(self) -> None:
        ec2 = self.client.ec2
        try:
            await self.client.call(
                ec2.create_security_group,
                GroupName=self.identifier,
                Description=self.identifier,
                VpcId=self.vpc.id,
                TagSpecifications=[{
                    "ResourceType": "security-group",
                    "Tags": self.client.tag_list(self.identifier),
                }],
            )
        except ClientError as e:
            if not is_duplicate(e):
                raise
        await self.read()

        # workers of the same task talk to each other freely
        self_reference = {
            "IpProtocol": "-1",
            "UserIdGroupPairs": [{"GroupId": self.id}],
        }
        await self._authorize(
            ec2.authorize_security_group_ingress,
            [self_reference, *_permissions(self.firewall.ingress)],
        )
        await self._authorize(
            ec2.authorize_security_group_egress,
            [self_reference, *_permissions(self.firewall.egress)],
        )
        await self.read()

    async def _authorize(self, method: Any, permissions: list[dict[str, Any]]) -> None:
        for permission in permissions:
            try:
                await self.client.call(method, GroupId=self.id, IpPermissions=[permission])
            except ClientError as e:
                if not is_duplicate(e):
                    raise

    async def read(self) -> None:
        response = await self.client.call(
            self.client.ec2.describe_security_groups,
            Filters=[
                {"Name": "group-name", "Values": [self.identifier]},
                {"Name": "vpc-id", "Values": [self.vpc.id]},
            ],
        )
        if not response["SecurityGroups"]:
            raise NotFoundError(f"security group {self.identifier} not found")
        self.resource = response["SecurityGroups"][0]

    async def delete(self) -> None:
        response = await self.client.call(
            self.client.ec2.describe_security_groups,
            Filters=[{"Name": "group-name", "Values": [self.identifier]}],
        )
        for group in response["SecurityGroups"]:
            await self._delete_group(group["GroupId"])
        self.resource = None

    async def _delete_group(self, group_id: str) -> None:
        # network interfaces of terminated workers linger for a while
        async for attempt in AsyncRetrying(
            stop=stop_after_delay(self.client.cloud.timeouts.delete.total_seconds()),
            wait=wait_fixed(5),
            retry=retry_if_exception_type(DependencyViolation),
            reraise=True,
        ):
            with attempt:
                try:
                    await self.client.call(self.client.ec2.delete_security_group, GroupId=group_id)
                except ClientError as e:
                    if is_not_found(e):
                        return
                    if e.response.get("Error", {}).get("Code") == "DependencyViolation":
                        raise DependencyViolation(str(e)) from e
                    raise

    @property
    def id(self) -> str:
        assert self.resource is not None
        return self.resource["GroupId"]


class KeyPair:
    def __init__(self, client: Client, identifier: Identifier) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.resource: dict[str, Any] | None = None

    def public_key(self) -> str:
        return self.client.get_key_pair().public_string()

    async def create(self) -> None:
        try:
            await self.client.call(
                self.client.ec2.import_key_pair,
                KeyName=self.identifier,
                PublicKeyMaterial=self.public_key().encode(),
                TagSpecifications=[{
                    "ResourceType": "key-pair",
                    "Tags": self.client.tag_list(self.identifier),
                }],
            )
        except ClientError as e:
            if not is_duplicate(e):
                raise
        await self.read()

    async def read(self) -> None:
        try:
            response = await self.client.call(
                self.client.ec2.describe_key_pairs, KeyNames=[self.identifier]
            )
        except ClientError as e:
            if is_not_found(e):
                raise NotFoundError(f"key pair {self.identifier} not found") from e
            raise
        if not response["KeyPairs"]:
            raise NotFoundError(f"key pair {self.identifier} not found")
        self.resource = response["KeyPairs"][0]

    async def delete(self) -> None:
        try:
            await self.client.call(self.client.ec2.delete_key_pair, KeyName=self.identifier)
        except ClientError as e:
            if not is_not_found(e):
                raise
        self.resource = None


class LaunchTemplate:
    """Worker template: image, size, networking, bootstrap script and market options."""

    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        security_group: SecurityGroup,
        permission_set: PermissionSet,
        image: Image,
        key_pair: KeyPair,
        credentials: Credentials,
        attributes: TaskAttributes,
        agent: AgentSettings | None = None,
    ) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.security_group = security_group
        self.permission_set = permission_set
        self.image = image
        self.key_pair = key_pair
        self.credentials = credentials
        self.attributes = attributes
        self.agent = agent
        self.resource: dict[str, Any] | None = None

    def template_data(self) -> dict[str, Any]:
        script = render_script(
            self.attributes.environment,
            self.credentials.resource,
            agent=self.agent,
            public_key=self.key_pair.public_key(),
            ssh_user=self.image.ssh_user,
        )
        size = self.attributes.size
        data: dict[str, Any] = {
            "ImageId": self.image.id,
            "InstanceType": MACHINES.get(size.machine, size.machine),
            "KeyName": self.key_pair.identifier,
            "UserData": base64.b64encode(script.encode()).decode(),
            "SecurityGroupIds": [self.security_group.id],
            "BlockDeviceMappings": [{
                "DeviceName": self.image.root_device,
                "Ebs": {
                    "VolumeSize": size.storage,
                    "VolumeType": "gp3",
                    "DeleteOnTermination": True,
                },
            }],
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": self.client.tag_list(self.identifier)},
                {"ResourceType": "volume", "Tags": self.client.tag_list(self.identifier)},
            ],
        }
        if self.permission_set.resource is not None:
            data["IamInstanceProfile"] = self.permission_set.resource
        if not self.attributes.on_demand:
            spot_options: dict[str, str] = {"SpotInstanceType": "one-time"}
            # zero bids the market price
            if self.attributes.spot > 0:
                spot_options["MaxPrice"] = f"{self.attributes.spot:.5f}"
            data["InstanceMarketOptions"] = {"MarketType": "spot", "SpotOptions": spot_options}
        return data

    async def create(self) -> None:
        try:
            await self.client.call(
                self.client.ec2.create_launch_template,
                LaunchTemplateName=self.identifier,
                LaunchTemplateData=self.template_data(),
                TagSpecifications=[{
                    "ResourceType": "launch-template",
                    "Tags": self.client.tag_list(self.identifier),
                }],
            )
        except ClientError as e:
            if not is_duplicate(e):
                raise
        await self.read()

    async def read(self) -> None:
        try:
            response = await self.client.call(
                self.client.ec2.describe_launch_templates, LaunchTemplateNames=[self.identifier]
            )
        except ClientError as e:
            if is_not_found(e):
                raise NotFoundError(f"launch template {self.identifier} not found") from e
            raise
        if not response["LaunchTemplates"]:
            raise NotFoundError(f"launch template {self.identifier} not found")
        self.resource = response["LaunchTemplates"][0]

    async def delete(self) -> None:
        try:
            await self.client.call(
                self.client.ec2.delete_launch_template, LaunchTemplateName=self.identifier
            )
        except ClientError as e:
            if not is_not_found(e):
                raise
        self.resource = None


class AutoScalingGroup:
    """Worker group; its desired size follows the task's parallelism."""

    poll_interval: float = 10.0

    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        subnets: DefaultVPCSubnets,
        launch_template: LaunchTemplate,
        attributes: TaskAttributes,
    ) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.subnets = subnets
        self.launch_template = launch_template
        self.attributes = attributes
        self.resource: dict[str, Any] | None = None

        self.addresses: list[str] = []
        self.status = empty_status()
        self.events: list[Event] = []

    async def create(self) -> None:
        try:
            await self.client.call(
                self.client.autoscaling.create_auto_scaling_group,
                AutoScalingGroupName=self.identifier,
                LaunchTemplate={
                    "LaunchTemplateName": self.launch_template.identifier,
                    "Version": "$Latest",
                },
                MinSize=0,
                MaxSize=0,
                DesiredCapacity=0,
                VPCZoneIdentifier=",".join(self.subnets.ids),
                Tags=[
                    {**tag, "PropagateAtLaunch": True}
                    for tag in self.client.tag_list(self.identifier)
                ],
            )
        except ClientError as e:
            if not is_duplicate(e):
                raise
        await self.read()

    async def _describe(self) -> dict[str, Any] | None:
        response = await self.client.call(
            self.client.autoscaling.describe_auto_scaling_groups,
            AutoScalingGroupNames=[self.identifier],
        )
        groups = response["AutoScalingGroups"]
        return groups[0] if groups else None

    async def read(self) -> None:
        group = await self._describe()
        if group is None:
            raise NotFoundError(f"auto scaling group {self.identifier} not found")
        self.resource = group

        live = [
            i["InstanceId"]
            for i in group.get("Instances", [])
            if i.get("LifecycleState") not in _TERMINATING
        ]
        self.status = empty_status()
        self.status[StatusCode.ACTIVE] = len(live)
        self.addresses = await self._addresses(live)
        self.events = await self._events()

    async def _addresses(self, instance_ids: list[str]) -> list[str]:
        if not instance_ids:
            return []
        response = await self.client.call(
            self.client.ec2.describe_instances, InstanceIds=instance_ids
        )
        return [
            instance["PublicIpAddress"]
            for reservation in response["Reservations"]
            for instance in reservation["Instances"]
            if instance.get("PublicIpAddress")
        ]

    async def _events(self) -> list[Event]:
        response = await self.client.call(
            self.client.autoscaling.describe_scaling_activities,
            AutoScalingGroupName=self.identifier,
        )
        return [
            Event(
                time=activity["StartTime"],
                code=activity["StatusCode"],
                description=tuple(
                    text
                    for text in (activity.get("Description"), activity.get("StatusMessage"))
                    if text
                ),
            )
            for activity in response.get("Activities", [])
            if activity.get("StatusCode") in ("Failed", "Cancelled")
        ]

    async def update(self) -> None:
        parallelism = self.attributes.parallelism
        await self.client.call(
            self.client.autoscaling.update_auto_scaling_group,
            AutoScalingGroupName=self.identifier,
            MinSize=parallelism,
            MaxSize=parallelism,
            DesiredCapacity=parallelism,
        )

    async def delete(self) -> None:
        try:
            await self.client.call(
                self.client.autoscaling.delete_auto_scaling_group,
                AutoScalingGroupName=self.identifier,
                ForceDelete=True,
            )
        except ClientError as e:
            if not is_not_found(e):
                raise

        async for attempt in AsyncRetrying(
            stop=stop_after_delay(self.client.cloud.timeouts.delete.total_seconds()),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_exception_type(GroupStillPresent),
            reraise=True,
        ):
            with attempt:
                if await self._describe() is not None:
                    raise GroupStillPresent(f"auto scaling group {self.identifier} still deleting")
        self.resource = None


@dataclass
class DataSources:
    default_vpc: DefaultVPC
    default_vpc_subnets: DefaultVPCSubnets
    image: Image
    permission_set: PermissionSet
    credentials: Credentials


@dataclass
class Resources:
    bucket: Bucket
    security_group: SecurityGroup
    key_pair: KeyPair
    launch_template: LaunchTemplate
    auto_scaling_group: AutoScalingGroup


async def list_buckets(client: Client) -> list[str]:
    response = await client.call(client.s3.list_buckets)
    return [bucket["Name"] for bucket in response.get("Buckets", [])]
