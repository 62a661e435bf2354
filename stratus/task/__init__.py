"""Provider-agnostic task contracts."""

from stratus.task.cloud import (
    AWSCredentials,
    AzureCredentials,
    Cloud,
    Credentials,
    GCPCredentials,
    KubernetesCredentials,
    Timeouts,
)
from stratus.task.model import (
    Environment,
    Event,
    Firewall,
    FirewallRule,
    Identifier,
    Size,
    Status,
    TaskAttributes,
)
from stratus.task.protocol import DataSource, Resource, Task

__all__ = [
    "AWSCredentials",
    "AzureCredentials",
    "Cloud",
    "Credentials",
    "DataSource",
    "Environment",
    "Event",
    "Firewall",
    "FirewallRule",
    "GCPCredentials",
    "Identifier",
    "KubernetesCredentials",
    "Resource",
    "Size",
    "Status",
    "Task",
    "TaskAttributes",
    "Timeouts",
]
