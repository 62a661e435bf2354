"""Azure provider: virtual machine scale sets with blob storage."""

from stratus.providers.az.client import Client
from stratus.providers.az.task import AzureTask, list_tasks

__all__ = ["AzureTask", "Client", "list_tasks"]
