"""Azure data sources and resources.

Everything a task owns lives in one resource group named after its
identifier. Request bodies are plain dicts; the management SDKs
deserialize them into their models.
"""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from stratus.constants import Provider, StatusCode
from stratus.core.exceptions import NotFoundError, ValidationError
from stratus.providers.az.client import IMAGES, MACHINES, is_duplicate, is_not_found
from stratus.task.machine import render_script
from stratus.task.model import Event, FirewallRule, empty_status

if TYPE_CHECKING:
    from stratus.config import AgentSettings
    from stratus.providers.az.client import Client
    from stratus.storage.sync import Remote
    from stratus.task.model import Firewall, Identifier, TaskAttributes

_IMAGE_PATTERN = re.compile(r"^([^@]+)@([^:]+):([^:]+):([^:]+):([^:#]+)(#plan)?$")
_IDENTITY_PATTERN = re.compile(
    r"^/subscriptions/[^/]+/resourceGroups/[^/]+/providers/"
    r"Microsoft\.ManagedIdentity/userAssignedIdentities/[^/]+$",
    re.IGNORECASE,
)
_INACTIVE_STATES = ("Deleting", "Failed")


async def _delete_ignoring_absence(client: Client, begin: Any, *args: str) -> None:
    try:
        poller = await client.call(begin, *args)
        await client.wait(poller)
    except Exception as e:
        if not is_not_found(e):
            raise


# =============================================================================
# Data Sources
# =============================================================================


class Image:
    """Marketplace image from an alias or ``user@publisher:offer:sku:version[#plan]``."""

    def __init__(self, client: Client, identifier: str) -> None:
        self.client = client
        self.identifier = identifier
        self.resource: dict[str, str] = {}
        self.plan: dict[str, str] | None = None
        self.ssh_user = ""

    async def read(self) -> None:
        reference = IMAGES.get(self.identifier, self.identifier)
        match = _IMAGE_PATTERN.match(reference)
        if match is None:
            raise ValidationError(f"invalid image name {self.identifier!r}")
        user, publisher, offer, sku, version, plan = match.groups()

        images = self.client.compute.virtual_machine_images
        if version == "latest":
            found = await self.client.call(images.list, self.client.region, publisher, offer, sku)
            if not found:
                raise NotFoundError(f"no image matches {reference!r}")
        else:
            try:
                await self.client.call(images.get, self.client.region, publisher, offer, sku, version)
            except Exception as e:
                if is_not_found(e):
                    raise NotFoundError(f"no image matches {reference!r}") from e
                raise

        self.resource = {"publisher": publisher, "offer": offer, "sku": sku, "version": version}
        self.plan = {"name": sku, "publisher": publisher, "product": offer} if plan else None
        self.ssh_user = user


class PermissionSet:
    """User-assigned identities for workers, as comma-separated resource IDs."""

    def __init__(self, client: Client, identifier: str) -> None:
        self.client = client
        self.identifier = identifier
        self.resource: dict[str, Any] | None = None

    async def read(self) -> None:
        if not self.identifier:
            self.resource = None
            return
        identities = [i.strip() for i in self.identifier.split(",") if i.strip()]
        for identity in identities:
            if not _IDENTITY_PATTERN.match(identity):
                raise ValidationError(f"invalid user-assigned identity: {identity}")
        self.resource = {
            "type": "UserAssigned",
            "user_assigned_identities": {identity: {} for identity in identities},
        }


class Credentials:
    """Storage remote and variables handed to workers."""

    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        resource_group: ResourceGroup,
        storage_account: StorageAccount,
        blob_container: BlobContainer,
    ) -> None:
        self.client = client
        self.identifier = identifier
        self.resource_group = resource_group
        self.storage_account = storage_account
        self.blob_container = blob_container
        self.remote: Remote | None = None
        self.resource: dict[str, str] = {}

    async def read(self) -> None:
        principal = self.client.service_principal
        if principal is None or not principal.client_secret:
            raise ValidationError("Azure tasks need service principal credentials")

        keys = await self.client.call(
            self.client.storage.storage_accounts.list_keys,
            self.resource_group.identifier,
            self.storage_account.identifier,
        )
        key = keys.keys[0].value
        self.remote = self.client.remote(
            self.storage_account.identifier, key, self.blob_container.identifier
        )
        self.resource = {
            "AZURE_CLIENT_ID": principal.client_id,
            "AZURE_CLIENT_SECRET": principal.client_secret,
            "AZURE_SUBSCRIPTION_ID": self.client.subscription_id,
            "AZURE_TENANT_ID": principal.tenant_id,
            "AZURE_STORAGE_ACCOUNT": self.storage_account.identifier,
            "AZURE_STORAGE_KEY": key,
            "STRATUS_REMOTE": self.remote.url,
            "STRATUS_TASK_CLOUD_PROVIDER": Provider.AZ.value,
            "STRATUS_TASK_CLOUD_REGION": self.client.region,
            "STRATUS_TASK_IDENTIFIER": self.identifier.long(),
        }


# =============================================================================
# Resources
# =============================================================================


class ResourceGroup:
    def __init__(self, client: Client, identifier: Identifier) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.resource: Any = None

    async def create(self) -> None:
        await self.client.call(
            self.client.resource.resource_groups.create_or_update,
            self.identifier,
            {"location": self.client.region, "tags": self.client.tag_map(self.identifier)},
        )
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.resource.resource_groups.get, self.identifier
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"resource group {self.identifier} not found") from e
            raise

    async def delete(self) -> None:
        await _delete_ignoring_absence(
            self.client, self.client.resource.resource_groups.begin_delete, self.identifier
        )
        self.resource = None


class StorageAccount:
    """Storage account; its name is the compact identifier (Azure allows 3-24 alphanumerics)."""

    def __init__(self, client: Client, identifier: Identifier, resource_group: ResourceGroup) -> None:
        self.client = client
        self.identifier = identifier.compact()
        self.resource_group = resource_group
        self.resource: Any = None

    async def create(self) -> None:
        poller = await self.client.call(
            self.client.storage.storage_accounts.begin_create,
            self.resource_group.identifier,
            self.identifier,
            {
                "sku": {"name": "Standard_LRS"},
                "kind": "StorageV2",
                "location": self.client.region,
                "tags": self.client.tag_map(self.identifier),
            },
        )
        await self.client.wait(poller)
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.storage.storage_accounts.get_properties,
                self.resource_group.identifier,
                self.identifier,
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"storage account {self.identifier} not found") from e
            raise

    async def delete(self) -> None:
        try:
            await self.client.call(
                self.client.storage.storage_accounts.delete,
                self.resource_group.identifier,
                self.identifier,
            )
        except Exception as e:
            if not is_not_found(e):
                raise
        self.resource = None


class BlobContainer:
    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        resource_group: ResourceGroup,
        storage_account: StorageAccount,
    ) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.resource_group = resource_group
        self.storage_account = storage_account
        self.resource: Any = None

    async def create(self) -> None:
        try:
            await self.client.call(
                self.client.storage.blob_containers.create,
                self.resource_group.identifier,
                self.storage_account.identifier,
                self.identifier,
                {},
            )
        except Exception as e:
            if not is_duplicate(e):
                raise
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.storage.blob_containers.get,
                self.resource_group.identifier,
                self.storage_account.identifier,
                self.identifier,
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"blob container {self.identifier} not found") from e
            raise

    async def delete(self) -> None:
        try:
            await self.client.call(
                self.client.storage.blob_containers.delete,
                self.resource_group.identifier,
                self.storage_account.identifier,
                self.identifier,
            )
        except Exception as e:
            if not is_not_found(e):
                raise
        self.resource = None


class VirtualNetwork:
    def __init__(self, client: Client, identifier: Identifier, resource_group: ResourceGroup) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.resource_group = resource_group
        self.resource: Any = None

    async def create(self) -> None:
        poller = await self.client.call(
            self.client.network.virtual_networks.begin_create_or_update,
            self.resource_group.identifier,
            self.identifier,
            {
                "location": self.client.region,
                "address_space": {"address_prefixes": ["10.0.0.0/16"]},
                "tags": self.client.tag_map(self.identifier),
            },
        )
        await self.client.wait(poller)
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.network.virtual_networks.get,
                self.resource_group.identifier,
                self.identifier,
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"virtual network {self.identifier} not found") from e
            raise

    async def delete(self) -> None:
        await _delete_ignoring_absence(
            self.client,
            self.client.network.virtual_networks.begin_delete,
            self.resource_group.identifier,
            self.identifier,
        )
        self.resource = None


def _security_rule(name: str, rule: FirewallRule, direction: str, priority: int) -> dict[str, Any]:
    security_rule: dict[str, Any] = {
        "name": name,
        "protocol": "*",
        "access": "Allow",
        "direction": direction,
        "priority": priority,
        "source_port_range": "*",
    }
    nets_key = "source_address" if direction == "Inbound" else "destination_address"
    other_key = "destination_address" if direction == "Inbound" else "source_address"
    if rule.nets is None:
        security_rule[f"{nets_key}_prefix"] = "*"
    else:
        security_rule[f"{nets_key}_prefixes"] = list(rule.nets)
    security_rule[f"{other_key}_prefix"] = "*"
    if rule.ports is None:
        security_rule["destination_port_range"] = "*"
    else:
        security_rule["destination_port_ranges"] = [str(p) for p in rule.ports]
    return security_rule


class SecurityGroup:
    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        resource_group: ResourceGroup,
        firewall: Firewall,
    ) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.resource_group = resource_group
        self.firewall = firewall
        self.resource: Any = None

    def security_rules(self) -> list[dict[str, Any]]:
        rules = [
            _security_rule("ingress", self.firewall.ingress, "Inbound", 100),
            _security_rule("egress", self.firewall.egress, "Outbound", 100),
        ]
        egress = self.firewall.egress
        if egress.nets is not None or egress.ports is not None:
            # outbound traffic is allowed by default; restrict it explicitly
            rules.append({
                "name": "egress-deny",
                "protocol": "*",
                "access": "Deny",
                "direction": "Outbound",
                "priority": 4096,
                "source_port_range": "*",
                "destination_port_range": "*",
                "source_address_prefix": "*",
                "destination_address_prefix": "*",
            })
        return rules

    async def create(self) -> None:
        poller = await self.client.call(
            self.client.network.network_security_groups.begin_create_or_update,
            self.resource_group.identifier,
            self.identifier,
            {
                "location": self.client.region,
                "security_rules": self.security_rules(),
                "tags": self.client.tag_map(self.identifier),
            },
        )
        await self.client.wait(poller)
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.network.network_security_groups.get,
                self.resource_group.identifier,
                self.identifier,
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"security group {self.identifier} not found") from e
            raise

    async def delete(self) -> None:
        await _delete_ignoring_absence(
            self.client,
            self.client.network.network_security_groups.begin_delete,
            self.resource_group.identifier,
            self.identifier,
        )
        self.resource = None


class Subnet:
    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        resource_group: ResourceGroup,
        virtual_network: VirtualNetwork,
        security_group: SecurityGroup,
    ) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.resource_group = resource_group
        self.virtual_network = virtual_network
        self.security_group = security_group
        self.resource: Any = None

    async def create(self) -> None:
        poller = await self.client.call(
            self.client.network.subnets.begin_create_or_update,
            self.resource_group.identifier,
            self.virtual_network.identifier,
            self.identifier,
            {
                "address_prefix": "10.0.0.0/24",
                "network_security_group": {"id": self.security_group.resource.id},
            },
        )
        await self.client.wait(poller)
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.network.subnets.get,
                self.resource_group.identifier,
                self.virtual_network.identifier,
                self.identifier,
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"subnet {self.identifier} not found") from e
            raise

    async def delete(self) -> None:
        await _delete_ignoring_absence(
            self.client,
            self.client.network.subnets.begin_delete,
            self.resource_group.identifier,
            self.virtual_network.identifier,
            self.identifier,
        )
        self.resource = None


class VirtualMachineScaleSet:
    """Worker group; its capacity follows the task's parallelism."""

    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        resource_group: ResourceGroup,
        subnet: Subnet,
        security_group: SecurityGroup,
        image: Image,
        permission_set: PermissionSet,
        credentials: Credentials,
        attributes: TaskAttributes,
        agent: AgentSettings | None = None,
    ) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.resource_group = resource_group
        self.subnet = subnet
        self.security_group = security_group
        self.image = image
        self.permission_set = permission_set
        self.credentials = credentials
        self.attributes = attributes
        self.agent = agent
        self.resource: Any = None

        self.addresses: list[str] = []
        self.status = empty_status()
        self.events: list[Event] = []

    @property
    def machine_type(self) -> str:
        machine = self.attributes.size.machine
        return MACHINES.get(machine, machine)

    def scale_set(self) -> dict[str, Any]:
        user = self.image.ssh_user
        public_key = self.client.get_key_pair().public_string()
        script = render_script(
            self.attributes.environment,
            self.credentials.resource,
            agent=self.agent,
        )

        profile: dict[str, Any] = {
            "storage_profile": {
                "image_reference": self.image.resource,
                "os_disk": {
                    "create_option": "FromImage",
                    "disk_size_gb": self.attributes.size.storage,
                    "managed_disk": {"storage_account_type": "Standard_LRS"},
                },
            },
            "os_profile": {
                "computer_name_prefix": self.identifier,
                "admin_username": user,
                "custom_data": base64.b64encode(script.encode()).decode(),
                "linux_configuration": {
                    "disable_password_authentication": True,
                    "ssh": {
                        "public_keys": [{
                            "path": f"/home/{user}/.ssh/authorized_keys",
                            "key_data": public_key,
                        }],
                    },
                },
            },
            "network_profile": {
                "network_interface_configurations": [{
                    "name": self.identifier,
                    "primary": True,
                    "network_security_group": {"id": self.security_group.resource.id},
                    "ip_configurations": [{
                        "name": self.identifier,
                        "subnet": {"id": self.subnet.resource.id},
                        "public_ip_address_configuration": {
                            "name": self.identifier,
                            "idle_timeout_in_minutes": 15,
                        },
                    }],
                }],
            },
        }
        if not self.attributes.on_demand:
            profile["priority"] = "Spot"
            profile["eviction_policy"] = "Delete"
            # -1 caps the price at the on-demand rate
            profile["billing_profile"] = {"max_price": self.attributes.spot or -1}

        scale_set: dict[str, Any] = {
            "location": self.client.region,
            "sku": {"name": self.machine_type, "tier": "Standard", "capacity": 0},
            "upgrade_policy": {"mode": "Manual"},
            "virtual_machine_profile": profile,
            "tags": self.client.tag_map(self.identifier),
        }
        if self.permission_set.resource is not None:
            scale_set["identity"] = self.permission_set.resource
        if self.image.plan is not None:
            scale_set["plan"] = self.image.plan
        return scale_set

    async def create(self) -> None:
        poller = await self.client.call(
            self.client.compute.virtual_machine_scale_sets.begin_create_or_update,
            self.resource_group.identifier,
            self.identifier,
            self.scale_set(),
        )
        await self.client.wait(poller)
        await self.read()

    async def read(self) -> None:
        compute = self.client.compute
        group = self.resource_group.identifier
        try:
            self.resource = await self.client.call(
                compute.virtual_machine_scale_sets.get, group, self.identifier
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"scale set {self.identifier} not found") from e
            raise

        machines = await self.client.call(
            lambda: list(compute.virtual_machine_scale_set_vms.list(group, self.identifier))
        )
        self.status = empty_status()
        self.status[StatusCode.ACTIVE] = sum(
            1 for m in machines if m.provisioning_state not in _INACTIVE_STATES
        )

        network = self.client.network
        addresses = await self.client.call(
            lambda: list(
                network.public_ip_addresses.list_virtual_machine_scale_set_public_ip_addresses(
                    group, self.identifier
                )
            )
        )
        self.addresses = [a.ip_address for a in addresses if a.ip_address]
        self.events = []

    async def update(self) -> None:
        poller = await self.client.call(
            self.client.compute.virtual_machine_scale_sets.begin_update,
            self.resource_group.identifier,
            self.identifier,
            {
                "sku": {
                    "name": self.machine_type,
                    "tier": "Standard",
                    "capacity": self.attributes.parallelism,
                }
            },
        )
        await self.client.wait(poller)

    async def delete(self) -> None:
        await _delete_ignoring_absence(
            self.client,
            self.client.compute.virtual_machine_scale_sets.begin_delete,
            self.resource_group.identifier,
            self.identifier,
        )
        self.resource = None


@dataclass
class DataSources:
    image: Image
    permission_set: PermissionSet
    credentials: Credentials


@dataclass
class Resources:
    resource_group: ResourceGroup
    storage_account: StorageAccount
    blob_container: BlobContainer
    virtual_network: VirtualNetwork
    security_group: SecurityGroup
    subnet: Subnet
    virtual_machine_scale_set: VirtualMachineScaleSet


async def list_resource_groups(client: Client) -> list[str]:
    return await client.call(lambda: [g.name for g in client.resource.resource_groups.list()])
