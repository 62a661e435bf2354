"""Cloud target description: provider, region, credentials and deadlines."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta

from stratus.constants import (
    DEFAULT_CREATE_TIMEOUT,
    DEFAULT_DELETE_TIMEOUT,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_UPDATE_TIMEOUT,
    Provider,
)


@dataclass(frozen=True, slots=True)
class Timeouts:
    """Per-operation deadlines."""

    create: timedelta = DEFAULT_CREATE_TIMEOUT
    read: timedelta = DEFAULT_READ_TIMEOUT
    update: timedelta = DEFAULT_UPDATE_TIMEOUT
    delete: timedelta = DEFAULT_DELETE_TIMEOUT


@dataclass(frozen=True, slots=True)
class AWSCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str | None = None


@dataclass(frozen=True, slots=True)
class GCPCredentials:
    application_credentials: str
    """Service account key, JSON encoded."""


@dataclass(frozen=True, slots=True)
class AzureCredentials:
    client_id: str
    client_secret: str
    subscription_id: str
    tenant_id: str


@dataclass(frozen=True, slots=True)
class KubernetesCredentials:
    config: str
    """Kubeconfig contents, YAML encoded."""


type Credentials = AWSCredentials | GCPCredentials | AzureCredentials | KubernetesCredentials


@dataclass(frozen=True, slots=True)
class Cloud:
    """Where a task lives.

    Args:
        provider: Backend selected once at construction.
        region: Generic region alias (us-east, us-west, eu-north, eu-west)
            or a provider-native region.
        credentials: Explicit credentials. None uses the SDK's ambient
            credential discovery.
        timeouts: Deadlines per operation kind.
        tags: Tags attached to every managed resource.
    """

    provider: Provider
    region: str = "us-east"
    credentials: Credentials | None = None
    timeouts: Timeouts = field(default_factory=Timeouts)
    tags: dict[str, str] = field(default_factory=dict)

    def with_tags(self, tags: dict[str, str]) -> Cloud:
        """Copy of this cloud whose tags are extended, and overridden, by ``tags``."""
        if not tags:
            return self
        return replace(self, tags={**self.tags, **tags})


def resolve_region(region: str, table: dict[str, str]) -> str:
    """Map a generic region alias through a provider table, passing others through."""
    return table.get(region, region)
