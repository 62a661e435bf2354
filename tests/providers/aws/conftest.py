"""In-memory stand-ins for the boto3 clients an AWSTask uses.

Every SDK call made through the fake session is recorded as
``"<service>.<operation>"`` in ``FakeAWS.calls``.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import pytest
from botocore.credentials import Credentials
from botocore.exceptions import ClientError

from stratus.providers.aws.client import Client
from stratus.providers.aws.task import AWSTask
from stratus.storage.sync import Remote
from stratus.task.cloud import Cloud
from stratus.task.model import Identifier, TaskAttributes


def client_error(code: str, message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, "Operation")


def _filter(filters: list[dict[str, Any]], name: str) -> list[str]:
    return next((f["Values"] for f in filters if f["Name"] == name), [])


class FakeAWS:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.buckets: dict[str, list[dict[str, str]]] = {}
        self.security_groups: dict[str, dict[str, Any]] = {}
        self.permissions: list[tuple[str, str, dict[str, Any]]] = []
        self.key_pairs: dict[str, bytes] = {}
        self.launch_templates: dict[str, dict[str, Any]] = {}
        self.groups: dict[str, dict[str, Any]] = {}
        self.activities: list[dict[str, Any]] = []

    def index(self, call: str) -> int:
        return self.calls.index(call)


class FakeEC2:
    def __init__(self, state: FakeAWS) -> None:
        self.state = state

    def describe_vpcs(self, Filters):
        return {"Vpcs": [{"VpcId": "vpc-1", "IsDefault": True}]}

    def describe_subnets(self, Filters):
        return {
            "Subnets": [
                {"SubnetId": "subnet-a", "MapPublicIpOnLaunch": True, "AvailableIpAddressCount": 10},
                {"SubnetId": "subnet-b", "MapPublicIpOnLaunch": False, "AvailableIpAddressCount": 10},
                {"SubnetId": "subnet-c", "MapPublicIpOnLaunch": True, "AvailableIpAddressCount": 0},
            ]
        }

    def describe_images(self, Owners, Filters):
        return {
            "Images": [
                {"ImageId": "ami-new", "CreationDate": "2023-06-01", "RootDeviceName": "/dev/sda1"},
                {"ImageId": "ami-old", "CreationDate": "2021-01-01", "RootDeviceName": "/dev/sda1"},
            ]
        }

    def create_security_group(self, GroupName, Description, VpcId, TagSpecifications):
        if GroupName in self.state.security_groups:
            raise client_error("InvalidGroup.Duplicate")
        group_id = f"sg-{len(self.state.security_groups) + 1}"
        self.state.security_groups[GroupName] = {
            "GroupId": group_id,
            "GroupName": GroupName,
            "VpcId": VpcId,
        }
        return {"GroupId": group_id}

    def describe_security_groups(self, Filters):
        names = _filter(Filters, "group-name")
        return {
            "SecurityGroups": [g for n, g in self.state.security_groups.items() if n in names]
        }

    def authorize_security_group_ingress(self, GroupId, IpPermissions):
        self.state.permissions.append(("ingress", GroupId, IpPermissions[0]))

    def authorize_security_group_egress(self, GroupId, IpPermissions):
        self.state.permissions.append(("egress", GroupId, IpPermissions[0]))

    def delete_security_group(self, GroupId):
        for name, group in list(self.state.security_groups.items()):
            if group["GroupId"] == GroupId:
                del self.state.security_groups[name]
                return {}
        raise client_error("InvalidGroup.NotFound")

    def import_key_pair(self, KeyName, PublicKeyMaterial, TagSpecifications):
        if KeyName in self.state.key_pairs:
            raise client_error("InvalidKeyPair.Duplicate")
        self.state.key_pairs[KeyName] = PublicKeyMaterial
        return {"KeyName": KeyName}

    def describe_key_pairs(self, KeyNames):
        if KeyNames[0] not in self.state.key_pairs:
            raise client_error("InvalidKeyPair.NotFound")
        return {"KeyPairs": [{"KeyName": KeyNames[0]}]}

    def delete_key_pair(self, KeyName):
        self.state.key_pairs.pop(KeyName, None)
        return {}

    def create_launch_template(self, LaunchTemplateName, LaunchTemplateData, TagSpecifications):
        if LaunchTemplateName in self.state.launch_templates:
            raise client_error("InvalidLaunchTemplateName.AlreadyExistsException")
        self.state.launch_templates[LaunchTemplateName] = LaunchTemplateData
        return {}

    def describe_launch_templates(self, LaunchTemplateNames):
        name = LaunchTemplateNames[0]
        if name not in self.state.launch_templates:
            raise client_error("InvalidLaunchTemplateName.NotFoundException")
        return {"LaunchTemplates": [{"LaunchTemplateName": name}]}

    def delete_launch_template(self, LaunchTemplateName):
        if self.state.launch_templates.pop(LaunchTemplateName, None) is None:
            raise client_error("InvalidLaunchTemplateName.NotFoundException")
        return {}

    def describe_instances(self, InstanceIds):
        return {
            "Reservations": [
                {
                    "Instances": [
                        {"InstanceId": i, "PublicIpAddress": f"203.0.113.{n + 1}"}
                        for n, i in enumerate(InstanceIds)
                    ]
                }
            ]
        }


class FakeS3:
    def __init__(self, state: FakeAWS) -> None:
        self.state = state

    def create_bucket(self, Bucket, CreateBucketConfiguration=None):
        if Bucket in self.state.buckets:
            raise client_error("BucketAlreadyOwnedByYou")
        self.state.buckets[Bucket] = []
        return {}

    def put_bucket_tagging(self, Bucket, Tagging):
        self.state.buckets[Bucket] = Tagging["TagSet"]

    def head_bucket(self, Bucket):
        if Bucket not in self.state.buckets:
            raise client_error("404", "Not Found")
        return {"BucketRegion": "us-west-1"}

    def delete_bucket(self, Bucket):
        if self.state.buckets.pop(Bucket, None) is None:
            raise client_error("NoSuchBucket")
        return {}

    def list_buckets(self):
        return {"Buckets": [{"Name": name} for name in self.state.buckets]}


class FakeAutoScaling:
    """Instances appear and disappear as soon as the desired capacity changes."""

    def __init__(self, state: FakeAWS) -> None:
        self.state = state

    def create_auto_scaling_group(self, AutoScalingGroupName, DesiredCapacity, **kwargs):
        if AutoScalingGroupName in self.state.groups:
            raise client_error("AlreadyExists")
        self.state.groups[AutoScalingGroupName] = {
            "AutoScalingGroupName": AutoScalingGroupName,
            "DesiredCapacity": DesiredCapacity,
            **kwargs,
        }

    def describe_auto_scaling_groups(self, AutoScalingGroupNames):
        groups = []
        for name in AutoScalingGroupNames:
            if name not in self.state.groups:
                continue
            group = dict(self.state.groups[name])
            group["Instances"] = [
                {"InstanceId": f"i-{n}", "LifecycleState": "InService"}
                for n in range(group["DesiredCapacity"])
            ]
            groups.append(group)
        return {"AutoScalingGroups": groups}

    def describe_scaling_activities(self, AutoScalingGroupName):
        return {"Activities": self.state.activities}

    def update_auto_scaling_group(self, AutoScalingGroupName, MinSize, MaxSize, DesiredCapacity):
        group = self.state.groups[AutoScalingGroupName]
        group.update(MinSize=MinSize, MaxSize=MaxSize, DesiredCapacity=DesiredCapacity)

    def delete_auto_scaling_group(self, AutoScalingGroupName, ForceDelete):
        if self.state.groups.pop(AutoScalingGroupName, None) is None:
            raise client_error("ValidationError", "AutoScalingGroup name not found")


class Recording:
    def __init__(self, service: str, target: Any, calls: list[str]) -> None:
        self._service = service
        self._target = target
        self._calls = calls

    def __getattr__(self, name: str) -> Callable[..., Any]:
        method = getattr(self._target, name)

        def record(*args: Any, **kwargs: Any) -> Any:
            self._calls.append(f"{self._service}.{name}")
            return method(*args, **kwargs)

        return record


class FakeSession:
    services = {"ec2": FakeEC2, "s3": FakeS3, "autoscaling": FakeAutoScaling}

    def __init__(self, state: FakeAWS) -> None:
        self.state = state

    def client(self, service: str, region_name: str | None = None) -> Recording:
        return Recording(service, self.services[service](self.state), self.state.calls)

    def get_credentials(self) -> Credentials:
        return Credentials("AKIAEXAMPLE", "example-secret")


class MemoryClient(Client):
    """Client whose task storage lives in fsspec's memory filesystem."""

    def remote(self, bucket: str) -> Remote:
        return Remote(f"memory://{bucket}")


@pytest.fixture
def aws() -> FakeAWS:
    return FakeAWS()


@pytest.fixture
def make_client(aws: FakeAWS, memory_fs) -> Callable[[Cloud], MemoryClient]:
    def make(cloud: Cloud) -> MemoryClient:
        return MemoryClient(cloud, session=FakeSession(aws))

    return make


@pytest.fixture
def make_task(aws_cloud: Cloud, make_client: Callable[[Cloud], MemoryClient]) -> Callable[..., AWSTask]:
    def make(name: str = "train", **attributes: Any) -> AWSTask:
        client = make_client(aws_cloud)
        return AWSTask(aws_cloud, Identifier(name), TaskAttributes(**attributes), client=client)

    return make


@pytest.fixture
def failed_activity(aws: FakeAWS) -> dict[str, Any]:
    activity = {
        "StartTime": datetime(2024, 5, 1, 8, 0, 0),
        "StatusCode": "Failed",
        "Description": "Launching a new EC2 instance",
        "StatusMessage": "We currently do not have sufficient capacity",
    }
    aws.activities.append(activity)
    return activity
