"""GCP credentials, project resolution and client construction."""

from __future__ import annotations

import asyncio
import json
import os
import re
from collections.abc import Callable
from functools import cached_property, partial
from typing import TYPE_CHECKING, Any

import google.auth
from google.api_core import exceptions as api_exceptions
from google.cloud import compute_v1, storage as gcs
from google.oauth2 import service_account
from loguru import logger

from stratus.constants import Provider, StratusTag
from stratus.core.exceptions import NotFoundError, ValidationError
from stratus.ssh import DeterministicSSHKeyPair
from stratus.storage.sync import Remote
from stratus.task.cloud import GCPCredentials, resolve_region

if TYPE_CHECKING:
    from loguru import Logger

    from stratus.task.cloud import Cloud

SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]

# Zones: managed instance groups are zonal
REGIONS: dict[str, str] = {
    "us-east": "us-east1-c",
    "us-west": "us-west1-b",
    "eu-north": "europe-north1-a",
    "eu-west": "europe-west1-d",
}

# machine-type[+accelerator*count]
MACHINES: dict[str, str] = {
    "s": "g1-small",
    "m": "e2-custom-8-32768",
    "l": "e2-custom-32-131072",
    "xl": "n2-custom-64-262144",
    "m+t4": "n1-standard-4+nvidia-tesla-t4*1",
    "m+k80": "n1-standard-4+nvidia-tesla-k80*1",
    "m+v100": "n1-standard-4+nvidia-tesla-v100*1",
    "l+t4": "n1-standard-32+nvidia-tesla-t4*4",
    "l+k80": "n1-standard-32+nvidia-tesla-k80*8",
    "l+v100": "n1-standard-32+nvidia-tesla-v100*4",
    "xl+t4": "n1-standard-64+nvidia-tesla-t4*4",
    "xl+k80": "n1-standard-64+nvidia-tesla-k80*8",
    "xl+v100": "n1-standard-64+nvidia-tesla-v100*8",
}

# user@project/family
IMAGES: dict[str, str] = {
    "ubuntu": "ubuntu@ubuntu-os-cloud/ubuntu-2004-lts",
    "nvidia": "ubuntu@deeplearning-platform-release/common-cu113-ubuntu-2004",
}

_LABEL_INVALID = re.compile(r"[^a-z0-9_-]")


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, api_exceptions.NotFound)


def is_duplicate(error: BaseException) -> bool:
    return isinstance(error, api_exceptions.Conflict)


def _project_from_environment() -> str | None:
    return os.environ.get("GOOGLE_CLOUD_PROJECT") or os.environ.get("GCLOUD_PROJECT")


class Client:
    """Compute Engine and Cloud Storage clients for one zone.

    Explicit GCPCredentials (a service account key) win over Application
    Default Credentials. Workers receive the same key, so tasks created
    with ADC alone cannot hand credentials to their workers.
    """

    def __init__(
        self,
        cloud: Cloud,
        *,
        log: Logger | None = None,
    ) -> None:
        self.cloud = cloud
        self.zone = resolve_region(cloud.region, REGIONS)
        self.region = self.zone.rsplit("-", 1)[0]
        self.tags = dict(cloud.tags)
        self.log = log or logger.bind(component="client", provider=Provider.GCP.value)

        match cloud.credentials:
            case None:
                self.credentials_json = ""
                self.credentials, project = google.auth.default(scopes=SCOPES)
                self.project = _project_from_environment() or project or ""
            case GCPCredentials(application_credentials=raw):
                try:
                    info = json.loads(raw)
                except json.JSONDecodeError as e:
                    raise ValidationError(f"invalid GCP credentials JSON: {e}") from e
                self.credentials_json = raw
                self.credentials = service_account.Credentials.from_service_account_info(
                    info, scopes=SCOPES
                )
                self.project = info.get("project_id") or _project_from_environment() or ""
            case other:
                raise ValidationError(f"GCP needs GCP credentials, got {type(other).__name__}")

        if not self.project:
            raise ValidationError(
                "No GCP project found. Set GOOGLE_CLOUD_PROJECT or use a service account key."
            )

    @cached_property
    def networks(self) -> compute_v1.NetworksClient:
        return compute_v1.NetworksClient(credentials=self.credentials)

    @cached_property
    def images(self) -> compute_v1.ImagesClient:
        return compute_v1.ImagesClient(credentials=self.credentials)

    @cached_property
    def firewalls(self) -> compute_v1.FirewallsClient:
        return compute_v1.FirewallsClient(credentials=self.credentials)

    @cached_property
    def instance_templates(self) -> compute_v1.InstanceTemplatesClient:
        return compute_v1.InstanceTemplatesClient(credentials=self.credentials)

    @cached_property
    def instance_group_managers(self) -> compute_v1.InstanceGroupManagersClient:
        return compute_v1.InstanceGroupManagersClient(credentials=self.credentials)

    @cached_property
    def instances(self) -> compute_v1.InstancesClient:
        return compute_v1.InstancesClient(credentials=self.credentials)

    @cached_property
    def storage(self) -> gcs.Client:
        return gcs.Client(project=self.project, credentials=self.credentials)

    async def call[T](self, fn: Callable[..., T], /, **kwargs: Any) -> T:
        """Run a blocking SDK call on a worker thread."""
        return await asyncio.to_thread(partial(fn, **kwargs))

    async def wait(self, operation: Any) -> None:
        """Block until a Compute Engine operation completes, raising its error."""
        await asyncio.to_thread(operation.result)

    def get_key_pair(self) -> DeterministicSSHKeyPair:
        if not self.credentials_json:
            raise NotFoundError("no service account key to derive an SSH key from")
        return DeterministicSSHKeyPair.from_secret(self.credentials_json)

    def remote(self, bucket: str) -> Remote:
        options: dict[str, Any] = {"project": self.project}
        if self.credentials_json:
            options["token"] = json.loads(self.credentials_json)
        return Remote(f"gs://{bucket}", options)

    def labels(self, name: str) -> dict[str, str]:
        """Tags as GCP labels: lowercase keys and values, no colons."""
        tags = {
            **self.tags,
            StratusTag.MANAGED: "true",
            StratusTag.IDENTIFIER: name,
        }
        return {
            _LABEL_INVALID.sub("-", str(k).lower())[:63]: _LABEL_INVALID.sub("-", str(v).lower())[:63]
            for k, v in tags.items()
        }
