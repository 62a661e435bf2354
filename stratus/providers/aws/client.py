"""AWS session and client construction."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from functools import cached_property, partial
from typing import TYPE_CHECKING, Any

import boto3
from botocore.exceptions import ClientError
from loguru import logger

from stratus.constants import Provider, StratusTag
from stratus.core.exceptions import NotFoundError, ValidationError
from stratus.ssh import DeterministicSSHKeyPair
from stratus.storage.sync import Remote
from stratus.task.cloud import AWSCredentials, resolve_region

if TYPE_CHECKING:
    from loguru import Logger
    from mypy_boto3_autoscaling import AutoScalingClient
    from mypy_boto3_ec2 import EC2Client
    from mypy_boto3_s3 import S3Client

    from stratus.task.cloud import Cloud

REGIONS: dict[str, str] = {
    "us-east": "us-east-1",
    "us-west": "us-west-1",
    "eu-north": "eu-north-1",
    "eu-west": "eu-west-1",
}

MACHINES: dict[str, str] = {
    "s": "t2.micro",
    "m": "m5.2xlarge",
    "l": "m5.8xlarge",
    "xl": "m5.16xlarge",
    "m+t4": "g4dn.xlarge",
    "m+k80": "p2.xlarge",
    "m+v100": "p3.xlarge",
    "l+t4": "g4dn.12xlarge",
    "l+k80": "p2.8xlarge",
    "l+v100": "p3.8xlarge",
    "xl+k80": "p2.16xlarge",
    "xl+v100": "p3.16xlarge",
}

# user@owner:architecture:name-pattern
IMAGES: dict[str, str] = {
    "ubuntu": "ubuntu@099720109477:x86_64:*ubuntu/images/hvm-ssd/ubuntu-focal-20.04-amd64-server-*",
    "nvidia": "ubuntu@898082745236:x86_64:Deep Learning AMI GPU CUDA 11.4.1 (Ubuntu 18.04)*",
}

_NOT_FOUND_CODES = frozenset({"NoSuchBucket", "NoSuchKey", "NotFound", "404"})
_DUPLICATE_CODES = frozenset({
    "AlreadyExists",
    "BucketAlreadyOwnedByYou",
    "InvalidGroup.Duplicate",
    "InvalidKeyPair.Duplicate",
    "InvalidLaunchTemplateName.AlreadyExistsException",
    "InvalidPermission.Duplicate",
})


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def is_not_found(error: ClientError) -> bool:
    code = error_code(error)
    if code in _NOT_FOUND_CODES or code.endswith((".NotFound", "NotFoundException")):
        return True
    message = error.response.get("Error", {}).get("Message", "")
    return code == "ValidationError" and "not found" in message.lower()


def is_duplicate(error: ClientError) -> bool:
    return error_code(error) in _DUPLICATE_CODES


class Client:
    """boto3 clients for one region plus the task-wide tags.

    Args:
        cloud: Target cloud. Explicit AWSCredentials win over the default
            credential chain.
        session: Prebuilt boto3 session, mainly for tests.
    """

    def __init__(
        self,
        cloud: Cloud,
        *,
        session: boto3.Session | None = None,
        log: Logger | None = None,
    ) -> None:
        self.cloud = cloud
        self.region = resolve_region(cloud.region, REGIONS)
        self.tags = dict(cloud.tags)
        self.log = log or logger.bind(component="client", provider=Provider.AWS.value)

        if session is None:
            session = boto3.Session(region_name=self.region, **self._session_kwargs(cloud))
        self.session = session

    @staticmethod
    def _session_kwargs(cloud: Cloud) -> dict[str, Any]:
        match cloud.credentials:
            case None:
                return {}
            case AWSCredentials() as creds:
                return {
                    "aws_access_key_id": creds.access_key_id,
                    "aws_secret_access_key": creds.secret_access_key,
                    "aws_session_token": creds.session_token,
                }
            case other:
                raise ValidationError(f"AWS needs AWS credentials, got {type(other).__name__}")

    @cached_property
    def ec2(self) -> EC2Client:
        return self.session.client("ec2", region_name=self.region)

    @cached_property
    def s3(self) -> S3Client:
        return self.session.client("s3", region_name=self.region)

    @cached_property
    def autoscaling(self) -> AutoScalingClient:
        return self.session.client("autoscaling", region_name=self.region)

    async def call[T](self, fn: Callable[..., T], /, **kwargs: Any) -> T:
        """Run a blocking SDK call on a worker thread."""
        return await asyncio.to_thread(partial(fn, **kwargs))

    def credentials(self) -> Any:
        """Frozen access key, secret key and token of the session.

        Raises:
            NotFoundError: If the credential chain found nothing.
        """
        found = self.session.get_credentials()
        if found is None:
            raise NotFoundError("no AWS credentials found")
        return found.get_frozen_credentials()

    def get_key_pair(self) -> DeterministicSSHKeyPair:
        return DeterministicSSHKeyPair.from_secret(self.credentials().secret_key)

    def remote(self, bucket: str) -> Remote:
        creds = self.credentials()
        options: dict[str, Any] = {
            "key": creds.access_key,
            "secret": creds.secret_key,
            "client_kwargs": {"region_name": self.region},
        }
        if creds.token:
            options["token"] = creds.token
        return Remote(f"s3://{bucket}", options)

    def tag_list(self, name: str) -> list[dict[str, str]]:
        """Tags in EC2 ``[{Key, Value}]`` form, managed markers included."""
        tags = {
            **self.tags,
            "Name": name,
            StratusTag.MANAGED: "true",
            StratusTag.IDENTIFIER: name,
        }
        return [{"Key": k, "Value": v} for k, v in tags.items()]
