"""Stratus - Run scripts on ephemeral cloud workers.

Example:

    from stratus import Cloud, Environment, Identifier, Provider, TaskAttributes, new_task

    task = new_task(
        Cloud(provider=Provider.AWS, region="us-west"),
        Identifier("train"),
        TaskAttributes(
            environment=Environment(script="python train.py", directory="./work"),
            parallelism=2,
        ),
    )
    await task.create()
    print(await task.status())
    await task.delete()
"""

from stratus.constants import Provider, StatusCode

# Errors
from stratus.core.exceptions import (
    JobNotFoundError,
    NotFoundError,
    OperationTimeoutError,
    ProviderError,
    StratusError,
    UnsupportedError,
    ValidationError,
)

# Logging (disabled until setup_logging is called)
from stratus.logging import LogConfig, setup_logging, teardown_logging

# Task model
from stratus.task import (
    AWSCredentials,
    AzureCredentials,
    Cloud,
    Environment,
    Event,
    Firewall,
    FirewallRule,
    GCPCredentials,
    Identifier,
    KubernetesCredentials,
    Size,
    Task,
    TaskAttributes,
    Timeouts,
)
from stratus.task.factory import list_tasks, new_task

__version__ = "0.1.0"

__all__ = [
    # Dispatch
    "new_task",
    "list_tasks",
    # Model
    "Provider",
    "StatusCode",
    "Cloud",
    "Timeouts",
    "Identifier",
    "TaskAttributes",
    "Environment",
    "Size",
    "Firewall",
    "FirewallRule",
    "Event",
    "Task",
    # Credentials
    "AWSCredentials",
    "GCPCredentials",
    "AzureCredentials",
    "KubernetesCredentials",
    # Errors
    "StratusError",
    "NotFoundError",
    "JobNotFoundError",
    "ValidationError",
    "ProviderError",
    "UnsupportedError",
    "OperationTimeoutError",
    # Logging
    "LogConfig",
    "setup_logging",
    "teardown_logging",
    "__version__",
]
