"""AWS provider: EC2 auto scaling groups with S3 storage."""

from stratus.providers.aws.client import Client
from stratus.providers.aws.task import AWSTask, list_tasks

__all__ = ["AWSTask", "Client", "list_tasks"]
