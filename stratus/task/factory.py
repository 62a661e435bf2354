"""Provider dispatch.

Selects the adapter for a Cloud once, by provider. Imports are lazy so a
process only loads the SDKs of the clouds it actually talks to.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from stratus.constants import Provider
from stratus.core.exceptions import UnsupportedError

if TYPE_CHECKING:
    from stratus.config import AgentSettings
    from stratus.task.cloud import Cloud
    from stratus.task.model import Identifier, TaskAttributes
    from stratus.task.protocol import Task

log = logger.bind(component="factory")


def new_task(
    cloud: Cloud,
    identifier: Identifier,
    attributes: TaskAttributes,
    *,
    agent: AgentSettings | None = None,
) -> Task:
    """Build the provider adapter for a task.

    The task's own tags are applied on top of the cloud's tags.

    Raises:
        UnsupportedError: No adapter exists for ``cloud.provider``.
    """
    log.debug("Creating {provider} task {task}", provider=cloud.provider, task=identifier)
    cloud = cloud.with_tags(attributes.tags)

    match cloud.provider:
        case Provider.AWS:
            from stratus.providers.aws import AWSTask
            return AWSTask(cloud, identifier, attributes, agent=agent)
        case Provider.GCP:
            from stratus.providers.gcp import GCPTask
            return GCPTask(cloud, identifier, attributes, agent=agent)
        case Provider.AZ:
            from stratus.providers.az import AzureTask
            return AzureTask(cloud, identifier, attributes, agent=agent)
        case Provider.K8S:
            from stratus.providers.k8s import KubernetesTask
            return KubernetesTask(cloud, identifier, attributes, agent=agent)
        case other:
            raise UnsupportedError(f"unsupported provider {other!r}")


async def list_tasks(cloud: Cloud) -> list[Identifier]:
    """Identifiers of every task the provider can find for this cloud."""
    match cloud.provider:
        case Provider.AWS:
            from stratus.providers.aws import list_tasks as list_provider_tasks
        case Provider.GCP:
            from stratus.providers.gcp import list_tasks as list_provider_tasks
        case Provider.AZ:
            from stratus.providers.az import list_tasks as list_provider_tasks
        case Provider.K8S:
            from stratus.providers.k8s import list_tasks as list_provider_tasks
        case other:
            raise UnsupportedError(f"unsupported provider {other!r}")
    return await list_provider_tasks(cloud)
