"""GCP data sources and resources.

Compute Engine clients are synchronous; every call goes through
``Client.call`` and mutating calls wait on their operation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from google.cloud import compute_v1

from stratus.constants import Provider, StatusCode
from stratus.core.exceptions import NotFoundError, ValidationError
from stratus.providers.gcp.client import IMAGES, MACHINES, SCOPES, is_duplicate, is_not_found
from stratus.task import model
from stratus.task.machine import render_script
from stratus.task.model import Event, empty_status

if TYPE_CHECKING:
    from stratus.config import AgentSettings
    from stratus.providers.gcp.client import Client
    from stratus.storage.sync import Remote
    from stratus.task.model import Identifier, TaskAttributes

_IMAGE_PATTERN = re.compile(r"^([^@]+)@([^/]+)/([^/]+)$")
_MACHINE_PATTERN = re.compile(r"^([^+]+)(?:\+([^*]+)\*([1-9]\d*))?$")
_SERVICE_ACCOUNT_PATTERN = re.compile(r"^\S+@\S+\.gserviceaccount\.com$")
_ACTIVE_STATES = ("PROVISIONING", "STAGING", "RUNNING")


# =============================================================================
# Data Sources
# =============================================================================


class DefaultNetwork:
    def __init__(self, client: Client) -> None:
        self.client = client
        self.resource: compute_v1.Network | None = None

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.networks.get,
                request=compute_v1.GetNetworkRequest(project=self.client.project, network="default"),
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError("no default network found") from e
            raise

    @property
    def self_link(self) -> str:
        assert self.resource is not None
        return self.resource.self_link


class Image:
    """Image resolved from an alias or ``user@project/family`` reference."""

    def __init__(self, client: Client, identifier: str) -> None:
        self.client = client
        self.identifier = identifier
        self.resource: compute_v1.Image | None = None
        self.ssh_user = ""

    async def read(self) -> None:
        reference = IMAGES.get(self.identifier, self.identifier)
        match = _IMAGE_PATTERN.match(reference)
        if match is None:
            raise ValidationError(f"invalid image name {self.identifier!r}")
        user, project, name = match.groups()

        try:
            self.resource = await self.client.call(
                self.client.images.get_from_family,
                request=compute_v1.GetFromFamilyImageRequest(project=project, family=name),
            )
        except Exception as e:
            if not is_not_found(e):
                raise
            try:
                self.resource = await self.client.call(
                    self.client.images.get,
                    request=compute_v1.GetImageRequest(project=project, image=name),
                )
            except Exception as e:
                if is_not_found(e):
                    raise NotFoundError(f"no image matches {reference!r}") from e
                raise
        self.ssh_user = user

    @property
    def self_link(self) -> str:
        assert self.resource is not None
        return self.resource.self_link


class PermissionSet:
    """Service account for workers: ``email`` or ``email,scopes=a,b``."""

    def __init__(self, client: Client, identifier: str) -> None:
        self.client = client
        self.identifier = identifier
        self.resource: compute_v1.ServiceAccount | None = None

    async def read(self) -> None:
        if not self.identifier:
            self.resource = None
            return

        email, _, rest = self.identifier.partition(",")
        email = email.strip()
        if not _SERVICE_ACCOUNT_PATTERN.match(email):
            raise ValidationError(f"invalid service account: {self.identifier}")

        scopes = list(SCOPES)
        rest = rest.strip()
        if rest:
            key, _, value = rest.partition("=")
            if key.strip() != "scopes" or not value.strip():
                raise ValidationError(f"invalid service account options: {rest}")
            scopes = [s.strip() for s in value.split(",") if s.strip()]
        self.resource = compute_v1.ServiceAccount(email=email, scopes=scopes)


class Credentials:
    """Storage remote and variables handed to workers."""

    def __init__(self, client: Client, identifier: Identifier, bucket: Bucket) -> None:
        self.client = client
        self.identifier = identifier
        self.bucket = bucket
        self.remote: Remote | None = None
        self.resource: dict[str, str] = {}

    async def read(self) -> None:
        if not self.client.credentials_json:
            raise ValidationError("GCP tasks need service account key credentials")
        self.remote = self.bucket.remote()
        self.resource = {
            "GOOGLE_APPLICATION_CREDENTIALS_DATA": self.client.credentials_json,
            "STRATUS_REMOTE": self.remote.url,
            "STRATUS_TASK_CLOUD_PROVIDER": Provider.GCP.value,
            "STRATUS_TASK_CLOUD_REGION": self.client.region,
            "STRATUS_TASK_IDENTIFIER": self.identifier.long(),
        }


# =============================================================================
# Resources
# =============================================================================


class Bucket:
    def __init__(self, client: Client, identifier: Identifier) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.resource: Any = None

    async def create(self) -> None:
        bucket = self.client.storage.bucket(self.identifier)
        bucket.labels = self.client.labels(self.identifier)
        try:
            await self.client.call(
                self.client.storage.create_bucket, bucket_or_name=bucket, location=self.client.region
            )
        except Exception as e:
            if not is_duplicate(e):
                raise
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.storage.get_bucket, bucket_or_name=self.identifier
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"bucket {self.identifier} not found") from e
            raise

    async def delete(self) -> None:
        bucket = self.client.storage.bucket(self.identifier)
        try:
            await self.client.call(bucket.delete)
        except Exception as e:
            if not is_not_found(e):
                raise
        self.resource = None

    def remote(self) -> Remote:
        return self.client.remote(self.identifier)


def _allowed(rule: model.FirewallRule) -> list[compute_v1.Allowed]:
    if rule.ports is None:
        return [compute_v1.Allowed(I_p_protocol="all")]
    ports = [str(p) for p in rule.ports]
    return [compute_v1.Allowed(I_p_protocol=protocol, ports=ports) for protocol in ("tcp", "udp")]


class FirewallRule:
    """One direction of the task's firewall, applied to workers by network tag."""

    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        network: DefaultNetwork,
        rule: model.FirewallRule,
        direction: str,
    ) -> None:
        self.client = client
        self.target = identifier.long()
        self.identifier = f"{identifier.long()}-{direction.lower()}"
        self.network = network
        self.rule = rule
        self.direction = direction
        self.resource: compute_v1.Firewall | None = None

    def firewall(self) -> compute_v1.Firewall:
        nets = list(self.rule.nets or ("0.0.0.0/0",))
        firewall = compute_v1.Firewall(
            name=self.identifier,
            network=self.network.self_link,
            direction=self.direction,
            priority=1000,
            allowed=_allowed(self.rule),
            target_tags=[self.target],
        )
        if self.direction == "INGRESS":
            firewall.source_ranges = nets
        else:
            firewall.destination_ranges = nets
        return firewall

    async def create(self) -> None:
        try:
            operation = await self.client.call(
                self.client.firewalls.insert,
                request=compute_v1.InsertFirewallRequest(
                    project=self.client.project, firewall_resource=self.firewall()
                ),
            )
            await self.client.wait(operation)
        except Exception as e:
            if not is_duplicate(e):
                raise
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.firewalls.get,
                request=compute_v1.GetFirewallRequest(
                    project=self.client.project, firewall=self.identifier
                ),
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"firewall rule {self.identifier} not found") from e
            raise

    async def delete(self) -> None:
        try:
            operation = await self.client.call(
                self.client.firewalls.delete,
                request=compute_v1.DeleteFirewallRequest(
                    project=self.client.project, firewall=self.identifier
                ),
            )
            await self.client.wait(operation)
        except Exception as e:
            if not is_not_found(e):
                raise
        self.resource = None


def parse_machine(machine: str) -> tuple[str, str, int]:
    """Split ``type[+accelerator*count]`` into its parts."""
    native = MACHINES.get(machine, machine)
    match = _MACHINE_PATTERN.match(native)
    if match is None:
        raise ValidationError(f"invalid machine type {machine!r}")
    machine_type, accelerator, count = match.groups()
    return machine_type, accelerator or "", int(count or 0)


class InstanceTemplate:
    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        network: DefaultNetwork,
        image: Image,
        permission_set: PermissionSet,
        credentials: Credentials,
        attributes: TaskAttributes,
        agent: AgentSettings | None = None,
    ) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.network = network
        self.image = image
        self.permission_set = permission_set
        self.credentials = credentials
        self.attributes = attributes
        self.agent = agent
        self.resource: compute_v1.InstanceTemplate | None = None

    def template(self) -> compute_v1.InstanceTemplate:
        machine_type, accelerator, count = parse_machine(self.attributes.size.machine)
        public_key = self.client.get_key_pair().public_string()
        script = render_script(
            self.attributes.environment,
            self.credentials.resource,
            agent=self.agent,
            public_key=public_key,
            ssh_user=self.image.ssh_user,
        )

        if self.attributes.on_demand:
            scheduling = compute_v1.Scheduling(
                on_host_maintenance="TERMINATE" if accelerator else "MIGRATE",
                automatic_restart=True,
            )
        else:
            # spot capacity is billed at market price; bids are not supported
            scheduling = compute_v1.Scheduling(
                provisioning_model="SPOT",
                instance_termination_action="DELETE",
                on_host_maintenance="TERMINATE",
                automatic_restart=False,
            )

        properties = compute_v1.InstanceProperties(
            machine_type=machine_type,
            disks=[
                compute_v1.AttachedDisk(
                    auto_delete=True,
                    boot=True,
                    initialize_params=compute_v1.AttachedDiskInitializeParams(
                        source_image=self.image.self_link,
                        disk_size_gb=self.attributes.size.storage,
                        disk_type="pd-balanced",
                    ),
                )
            ],
            network_interfaces=[
                compute_v1.NetworkInterface(
                    network=self.network.self_link,
                    access_configs=[
                        compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT")
                    ],
                )
            ],
            metadata=compute_v1.Metadata(
                items=[
                    compute_v1.Items(key="ssh-keys", value=f"{self.image.ssh_user}:{public_key}"),
                    compute_v1.Items(key="startup-script", value=script),
                ]
            ),
            scheduling=scheduling,
            tags=compute_v1.Tags(items=[self.identifier]),
            labels=self.client.labels(self.identifier),
        )
        if accelerator:
            properties.guest_accelerators = [
                compute_v1.AcceleratorConfig(accelerator_type=accelerator, accelerator_count=count)
            ]
        if self.permission_set.resource is not None:
            properties.service_accounts = [self.permission_set.resource]

        return compute_v1.InstanceTemplate(name=self.identifier, properties=properties)

    async def create(self) -> None:
        try:
            operation = await self.client.call(
                self.client.instance_templates.insert,
                request=compute_v1.InsertInstanceTemplateRequest(
                    project=self.client.project, instance_template_resource=self.template()
                ),
            )
            await self.client.wait(operation)
        except Exception as e:
            if not is_duplicate(e):
                raise
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.instance_templates.get,
                request=compute_v1.GetInstanceTemplateRequest(
                    project=self.client.project, instance_template=self.identifier
                ),
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"instance template {self.identifier} not found") from e
            raise

    async def delete(self) -> None:
        try:
            operation = await self.client.call(
                self.client.instance_templates.delete,
                request=compute_v1.DeleteInstanceTemplateRequest(
                    project=self.client.project, instance_template=self.identifier
                ),
            )
            await self.client.wait(operation)
        except Exception as e:
            if not is_not_found(e):
                raise
        self.resource = None

    @property
    def self_link(self) -> str:
        assert self.resource is not None
        return self.resource.self_link


def _external_ip(instance: compute_v1.Instance) -> str | None:
    for interface in instance.network_interfaces:
        for config in interface.access_configs:
            if config.nat_i_p:
                return config.nat_i_p
    return None


class InstanceGroupManager:
    """Zonal managed instance group; its target size follows the parallelism."""

    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        template: InstanceTemplate,
        attributes: TaskAttributes,
    ) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.template = template
        self.attributes = attributes
        self.resource: compute_v1.InstanceGroupManager | None = None

        self.addresses: list[str] = []
        self.status = empty_status()
        self.events: list[Event] = []

    async def create(self) -> None:
        manager = compute_v1.InstanceGroupManager(
            name=self.identifier,
            base_instance_name=self.identifier,
            instance_template=self.template.self_link,
            target_size=0,
        )
        try:
            operation = await self.client.call(
                self.client.instance_group_managers.insert,
                request=compute_v1.InsertInstanceGroupManagerRequest(
                    project=self.client.project,
                    zone=self.client.zone,
                    instance_group_manager_resource=manager,
                ),
            )
            await self.client.wait(operation)
        except Exception as e:
            if not is_duplicate(e):
                raise
        await self.read()

    async def read(self) -> None:
        igms = self.client.instance_group_managers
        try:
            self.resource = await self.client.call(
                igms.get,
                request=compute_v1.GetInstanceGroupManagerRequest(
                    project=self.client.project,
                    zone=self.client.zone,
                    instance_group_manager=self.identifier,
                ),
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"instance group manager {self.identifier} not found") from e
            raise

        managed = await self.client.call(
            lambda: list(
                igms.list_managed_instances(
                    request=compute_v1.ListManagedInstancesInstanceGroupManagersRequest(
                        project=self.client.project,
                        zone=self.client.zone,
                        instance_group_manager=self.identifier,
                    )
                )
            )
        )
        active = [m for m in managed if m.instance_status in _ACTIVE_STATES]
        self.status = empty_status()
        self.status[StatusCode.ACTIVE] = len(active)
        self.addresses = await self._addresses(active)
        self.events = await self._events()

    async def _addresses(self, managed: list[Any]) -> list[str]:
        addresses = []
        for instance in managed:
            name = instance.instance.rsplit("/", 1)[-1]
            try:
                described = await self.client.call(
                    self.client.instances.get,
                    request=compute_v1.GetInstanceRequest(
                        project=self.client.project, zone=self.client.zone, instance=name
                    ),
                )
            except Exception as e:
                if is_not_found(e):
                    continue
                raise
            if address := _external_ip(described):
                addresses.append(address)
        return addresses

    async def _events(self) -> list[Event]:
        errors = await self.client.call(
            lambda: list(
                self.client.instance_group_managers.list_errors(
                    request=compute_v1.ListErrorsInstanceGroupManagersRequest(
                        project=self.client.project,
                        zone=self.client.zone,
                        instance_group_manager=self.identifier,
                    )
                )
            )
        )
        return [
            Event(
                time=datetime.fromisoformat(item.timestamp) if item.timestamp else datetime.now(UTC),
                code=item.error.code,
                description=(item.error.message,) if item.error.message else (),
            )
            for item in errors
        ]

    async def update(self) -> None:
        operation = await self.client.call(
            self.client.instance_group_managers.resize,
            request=compute_v1.ResizeInstanceGroupManagerRequest(
                project=self.client.project,
                zone=self.client.zone,
                instance_group_manager=self.identifier,
                size=self.attributes.parallelism,
            ),
        )
        await self.client.wait(operation)

    async def delete(self) -> None:
        try:
            operation = await self.client.call(
                self.client.instance_group_managers.delete,
                request=compute_v1.DeleteInstanceGroupManagerRequest(
                    project=self.client.project,
                    zone=self.client.zone,
                    instance_group_manager=self.identifier,
                ),
            )
            await self.client.wait(operation)
        except Exception as e:
            if not is_not_found(e):
                raise
        self.resource = None


@dataclass
class DataSources:
    default_network: DefaultNetwork
    image: Image
    permission_set: PermissionSet
    credentials: Credentials


@dataclass
class Resources:
    bucket: Bucket
    firewall_ingress: FirewallRule
    firewall_egress: FirewallRule
    instance_template: InstanceTemplate
    instance_group_manager: InstanceGroupManager


async def list_buckets(client: Client) -> list[str]:
    return await client.call(lambda: [b.name for b in client.storage.list_buckets()])
