"""Kubernetes resources: a volume claim for the task directory and the Job itself."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_fixed

from stratus.constants import DATA_DIR, K8S_IDENTIFIER_LABEL, StatusCode
from stratus.core.exceptions import NotFoundError, ProviderError, ValidationError
from stratus.providers.k8s.archive import READY_MARKER
from stratus.providers.k8s.client import IMAGES, is_duplicate, is_not_found, parse_machine
from stratus.task.machine import file, resolve, script_variables, shell
from stratus.task.model import Event, empty_status

if TYPE_CHECKING:
    from stratus.providers.k8s.client import Client
    from stratus.task.model import Identifier, TaskAttributes

_DIRECTORY_PATTERN = re.compile(r"^([^:]+):(\d+)(?::(.+))?$")
_SCRIPT_PATH = "/tmp/stratus-script"


class PodNotReady(ProviderError):
    """Raised while no pod of a job is running yet."""


class JobStillPresent(ProviderError):
    """Raised while a deleted job is still being finalized."""


@dataclass(frozen=True, slots=True)
class DirectorySpec:
    """Parsed ``storageClass:sizeGiB[:path]`` directory specification.

    ``path`` is the local directory copied into the volume; it may be empty
    when the volume only holds outputs.
    """

    storage_class: str
    size: int
    path: str = ""

    @classmethod
    def parse(cls, value: str) -> DirectorySpec | None:
        if not value:
            return None
        match = _DIRECTORY_PATTERN.match(value)
        if match is None:
            raise ValidationError(
                f"invalid directory {value!r} for Kubernetes: use storageClass:sizeGiB[:path]"
            )
        storage_class, size, path = match.groups()
        return cls(storage_class, int(size), path or "")


class PersistentVolumeClaim:
    def __init__(self, client: Client, identifier: Identifier, spec: DirectorySpec, many: bool) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.spec = spec
        self.many = many
        self.resource: Any = None

    def claim(self) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {"name": self.identifier, "labels": self.client.labels(self.identifier)},
            "spec": {
                "storageClassName": self.spec.storage_class,
                "accessModes": ["ReadWriteMany" if self.many else "ReadWriteOnce"],
                "resources": {"requests": {"storage": f"{self.spec.size}Gi"}},
            },
        }

    async def create(self) -> None:
        try:
            await self.client.call(
                self.client.core.create_namespaced_persistent_volume_claim,
                self.client.namespace,
                self.claim(),
            )
        except Exception as e:
            if not is_duplicate(e):
                raise
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.core.read_namespaced_persistent_volume_claim,
                self.identifier,
                self.client.namespace,
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"volume claim {self.identifier} not found") from e
            raise

    async def delete(self) -> None:
        try:
            await self.client.call(
                self.client.core.delete_namespaced_persistent_volume_claim,
                self.identifier,
                self.client.namespace,
            )
        except Exception as e:
            if not is_not_found(e):
                raise
        self.resource = None


class Job:
    """Batch job running the task script on ``parallelism`` pods.

    With ``keep_alive`` the job only mounts the volume and sleeps, so files
    can be copied out after the real job has finished.
    """

    poll_interval: float = 1.0

    def __init__(
        self,
        client: Client,
        identifier: Identifier,
        claim: PersistentVolumeClaim | None,
        attributes: TaskAttributes,
        *,
        wait_for_data: bool = False,
        keep_alive: bool = False,
    ) -> None:
        self.client = client
        self.identifier = identifier.long()
        self.claim = claim
        self.attributes = attributes
        self.wait_for_data = wait_for_data
        self.keep_alive = keep_alive
        self.resource: Any = None

        self.addresses: list[str] = []
        self.status = empty_status()
        self.events: list[Event] = []

    def command(self) -> list[str]:
        if self.keep_alive:
            return ["/bin/sh", "-c", "sleep infinity"]
        script = self.attributes.environment.script
        if not script.startswith("#!"):
            script = "#!/bin/bash\n" + script
        ops = [file(_SCRIPT_PATH, script, mode="0755")]
        if self.wait_for_data:
            ops.append(shell(f"while [ ! -e {DATA_DIR}/{READY_MARKER} ]; do sleep 1; done"))
        ops.append(shell(f"exec {_SCRIPT_PATH}"))
        return ["/bin/sh", "-c", resolve(ops)]

    def container(self) -> dict[str, Any]:
        environment = self.attributes.environment
        size = parse_machine(self.attributes.size.machine)
        limits: dict[str, str] = {"cpu": str(size.cpu), "memory": f"{size.memory_mb}M"}
        if size.accelerators:
            limits["nvidia.com/gpu"] = str(size.accelerators)

        variables = script_variables(environment.variables)
        variables["STRATUS_TIMEOUT"] = str(int(environment.timeout.total_seconds()))

        container: dict[str, Any] = {
            "name": "task",
            "image": IMAGES.get(environment.image, environment.image),
            "command": self.command(),
            "env": [{"name": k, "value": v} for k, v in variables.items()],
            "resources": {"limits": limits},
        }
        if self.claim is not None:
            container["volumeMounts"] = [{"name": "data", "mountPath": DATA_DIR}]
            container["workingDir"] = DATA_DIR
        return container

    def job(self) -> dict[str, Any]:
        size = parse_machine(self.attributes.size.machine)
        pod: dict[str, Any] = {
            "restartPolicy": "Never",
            "containers": [self.container()],
        }
        if self.claim is not None:
            pod["volumes"] = [
                {"name": "data", "persistentVolumeClaim": {"claimName": self.claim.identifier}}
            ]
        if size.accelerator:
            pod["nodeSelector"] = {"accelerator": size.accelerator}

        parallelism = 1 if self.keep_alive else self.attributes.parallelism
        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {"name": self.identifier, "labels": self.client.labels(self.identifier)},
            "spec": {
                "parallelism": parallelism,
                "completions": parallelism,
                "backoffLimit": 0,
                "activeDeadlineSeconds": int(self.attributes.environment.timeout.total_seconds()),
                "template": {
                    "metadata": {"labels": self.client.labels(self.identifier)},
                    "spec": pod,
                },
            },
        }

    async def create(self) -> None:
        try:
            await self.client.call(
                self.client.batch.create_namespaced_job, self.client.namespace, self.job()
            )
        except Exception as e:
            if not is_duplicate(e):
                raise
        await self.read()

    async def read(self) -> None:
        try:
            self.resource = await self.client.call(
                self.client.batch.read_namespaced_job, self.identifier, self.client.namespace
            )
        except Exception as e:
            if is_not_found(e):
                raise NotFoundError(f"job {self.identifier} not found") from e
            raise

        observed = self.resource.status
        self.status = empty_status()
        self.status[StatusCode.ACTIVE] = observed.active or 0
        self.status[StatusCode.SUCCEEDED] = observed.succeeded or 0
        self.status[StatusCode.FAILED] = observed.failed or 0

        events = await self.client.call(
            self.client.core.list_namespaced_event,
            self.client.namespace,
            field_selector=f"involvedObject.name={self.identifier}",
        )
        self.events = [_event(e) for e in events.items]

    async def update(self) -> None:
        await self.client.call(
            self.client.batch.patch_namespaced_job,
            self.identifier,
            self.client.namespace,
            {"spec": {"parallelism": self.attributes.parallelism}},
        )

    async def delete(self) -> None:
        try:
            await self.client.call(
                self.client.batch.delete_namespaced_job,
                self.identifier,
                self.client.namespace,
                propagation_policy="Background",
            )
        except Exception as e:
            if not is_not_found(e):
                raise
        self.resource = None

        # a job with the same name cannot be created until this one is gone
        async for attempt in AsyncRetrying(
            stop=stop_after_delay(self.client.cloud.timeouts.delete.total_seconds()),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_exception_type(JobStillPresent),
            reraise=True,
        ):
            with attempt:
                try:
                    await self.client.call(
                        self.client.batch.read_namespaced_job,
                        self.identifier,
                        self.client.namespace,
                    )
                except Exception as e:
                    if is_not_found(e):
                        break
                    raise
                raise JobStillPresent(f"job {self.identifier} is still being deleted")

    async def pod(self, timeout: float) -> str:
        """Name of a running pod of this job, waiting up to ``timeout`` seconds."""
        async for attempt in AsyncRetrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_exception_type(PodNotReady),
            reraise=True,
        ):
            with attempt:
                pods = await self.client.call(
                    self.client.core.list_namespaced_pod,
                    self.client.namespace,
                    label_selector=f"job-name={self.identifier}",
                )
                for pod in pods.items:
                    if pod.status.phase == "Running":
                        return pod.metadata.name
                raise PodNotReady(f"no running pod for job {self.identifier}")
        raise PodNotReady(f"no running pod for job {self.identifier}")

    async def logs(self) -> list[str]:
        pods = await self.client.call(
            self.client.core.list_namespaced_pod,
            self.client.namespace,
            label_selector=f"job-name={self.identifier}",
        )
        names = sorted(pod.metadata.name for pod in pods.items)
        return [
            await self.client.call(
                self.client.core.read_namespaced_pod_log, name, self.client.namespace
            )
            for name in names
        ]


def _event(event: Any) -> Event:
    time = event.last_timestamp or event.event_time or event.metadata.creation_timestamp
    return Event(
        time=time or datetime.now(UTC),
        code=event.reason or "",
        description=(event.message,) if event.message else (),
    )


@dataclass
class Resources:
    persistent_volume_claim: PersistentVolumeClaim | None
    job: Job


async def list_job_identifiers(client: Client) -> list[str]:
    jobs = await client.call(
        client.batch.list_namespaced_job, client.namespace, label_selector=K8S_IDENTIFIER_LABEL
    )
    return [job.metadata.labels[K8S_IDENTIFIER_LABEL] for job in jobs.items]
