"""Kubernetes API access: kubeconfig loading, size and image tables."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass
from functools import cached_property, partial
from typing import TYPE_CHECKING, Any

import yaml
from kubernetes import client as k8s
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException
from loguru import logger

from stratus.constants import K8S_IDENTIFIER_LABEL, Provider
from stratus.core.exceptions import ValidationError
from stratus.task.cloud import KubernetesCredentials

if TYPE_CHECKING:
    from loguru import Logger

    from stratus.task.cloud import Cloud

DEFAULT_NAMESPACE = "default"

# cpu-memoryMB[+accelerator*count]
MACHINES: dict[str, str] = {
    "s": "1-1000",
    "m": "8-32000",
    "l": "32-128000",
    "xl": "64-256000",
    "m+t4": "4-16000+nvidia-tesla-t4*1",
    "m+k80": "4-64000+nvidia-tesla-k80*1",
    "m+v100": "8-64000+nvidia-tesla-v100*1",
    "l+t4": "32-128000+nvidia-tesla-t4*4",
    "l+k80": "32-512000+nvidia-tesla-k80*8",
    "l+v100": "32-256000+nvidia-tesla-v100*4",
    "xl+t4": "64-256000+nvidia-tesla-t4*4",
    "xl+k80": "64-512000+nvidia-tesla-k80*8",
    "xl+v100": "64-512000+nvidia-tesla-v100*8",
}

IMAGES: dict[str, str] = {
    "ubuntu": "ubuntu",
    "nvidia": "nvidia/cuda:12.2.0-runtime-ubuntu22.04",
}

_MACHINE_PATTERN = re.compile(r"^(\d+)-(\d+)(?:\+([^*]+)\*([1-9]\d*))?$")
_LABEL_INVALID = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True, slots=True)
class MachineSize:
    cpu: int
    memory_mb: int
    accelerator: str | None = None
    accelerators: int = 0


def parse_machine(machine: str) -> MachineSize:
    """Resolve a size alias or ``cpu-memoryMB[+accelerator*count]``."""
    value = MACHINES.get(machine, machine)
    match = _MACHINE_PATTERN.match(value)
    if match is None:
        raise ValidationError(f"invalid machine size {machine!r}: use cpu-memoryMB[+accelerator*count]")
    cpu, memory, accelerator, count = match.groups()
    return MachineSize(
        cpu=int(cpu),
        memory_mb=int(memory),
        accelerator=accelerator,
        accelerators=int(count) if count else 0,
    )


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def is_duplicate(error: BaseException) -> bool:
    return isinstance(error, ApiException) and error.status == 409


def _load_api_client(cloud: Cloud) -> k8s.ApiClient:
    match cloud.credentials:
        case KubernetesCredentials(config=contents):
            configuration = k8s.Configuration()
            k8s_config.load_kube_config_from_dict(
                yaml.safe_load(contents), client_configuration=configuration
            )
            return k8s.ApiClient(configuration)
        case None:
            try:
                k8s_config.load_incluster_config()
            except k8s_config.ConfigException:
                k8s_config.load_kube_config()
            return k8s.ApiClient()
        case other:
            raise ValidationError(
                f"Kubernetes needs a kubeconfig, got {type(other).__name__}"
            )


class Client:
    """Typed API groups for one cluster and namespace.

    Explicit KubernetesCredentials carry a kubeconfig document; without
    them the in-cluster service account is tried first, then the local
    kubeconfig.
    """

    def __init__(
        self,
        cloud: Cloud,
        *,
        api_client: k8s.ApiClient | None = None,
        namespace: str = DEFAULT_NAMESPACE,
        log: Logger | None = None,
    ) -> None:
        self.cloud = cloud
        self.namespace = namespace
        self.tags = dict(cloud.tags)
        self.log = log or logger.bind(component="client", provider=Provider.K8S.value)
        self.api_client = api_client or _load_api_client(cloud)

    @cached_property
    def core(self) -> k8s.CoreV1Api:
        return k8s.CoreV1Api(self.api_client)

    @cached_property
    def batch(self) -> k8s.BatchV1Api:
        return k8s.BatchV1Api(self.api_client)

    async def call[T](self, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        """Run a blocking API call on a worker thread."""
        return await asyncio.to_thread(partial(fn, *args, **kwargs))

    def labels(self, name: str) -> dict[str, str]:
        labels = {
            _LABEL_INVALID.sub("-", k): _LABEL_INVALID.sub("-", v)[:63]
            for k, v in self.tags.items()
        }
        labels[K8S_IDENTIFIER_LABEL] = name
        return labels
