"""GCP provider: managed instance groups with GCS storage."""

from stratus.providers.gcp.client import Client
from stratus.providers.gcp.task import GCPTask, list_tasks

__all__ = ["Client", "GCPTask", "list_tasks"]
