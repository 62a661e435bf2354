"""Kubernetes provider: batch jobs with an optional volume claim."""

from stratus.providers.k8s.client import Client
from stratus.providers.k8s.task import KubernetesTask, list_tasks

__all__ = ["Client", "KubernetesTask", "list_tasks"]
