from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from stratus.constants import DATA_DIR, Provider
from stratus.core.exceptions import NotFoundError, UnsupportedError, ValidationError
from stratus.core.steps import Step, run_steps
from stratus.providers.k8s import archive, resources
from stratus.providers.k8s.client import Client
from stratus.task.model import Identifier

if TYPE_CHECKING:
    from loguru import Logger

    from stratus.config import AgentSettings
    from stratus.ssh import DeterministicSSHKeyPair
    from stratus.task.cloud import Cloud
    from stratus.task.model import Event, Status, TaskAttributes


async def list_tasks(cloud: Cloud, *, client: Client | None = None) -> list[Identifier]:
    """Identifiers of every labelled job in the namespace."""
    client = client or Client(cloud)
    identifiers = []
    for value in await resources.list_job_identifiers(client):
        try:
            identifiers.append(Identifier.parse(value))
        except ValidationError:
            continue
    return identifiers


class KubernetesTask:
    """Task backed by a batch Job and, optionally, a volume claim.

    There is no object storage: the task directory lives on the volume and
    is copied in and out of a running pod. Status and logs come from the
    job and its pods.
    """

    provider = Provider.K8S

    def __init__(
        self,
        cloud: Cloud,
        identifier: Identifier,
        attributes: TaskAttributes,
        *,
        client: Client | None = None,
        agent: AgentSettings | None = None,
        log: Logger | None = None,
    ) -> None:
        self.cloud = cloud
        self.identifier = identifier
        self.attributes = attributes
        self.agent = agent
        self.log = log or logger.bind(
            component="task", provider=self.provider.value, task=identifier.short()
        )
        self.directory = resources.DirectorySpec.parse(attributes.environment.directory)
        self.client = client or Client(cloud)

        claim = None
        if self.directory is not None:
            claim = resources.PersistentVolumeClaim(
                self.client, identifier, self.directory, attributes.parallelism > 1
            )
        job = resources.Job(
            self.client,
            identifier,
            claim,
            attributes,
            wait_for_data=bool(self.directory and self.directory.path),
        )
        self.resources = resources.Resources(persistent_volume_claim=claim, job=job)

    def _observe(self) -> None:
        job = self.resources.job
        self.attributes.addresses = list(job.addresses)
        self.attributes.status = dict(job.status)
        self.attributes.events = list(job.events)

    async def create(self) -> None:
        self.log.info("Creating resources...")
        rs = self.resources
        steps = []
        if rs.persistent_volume_claim is not None:
            steps.append(Step("Creating PersistentVolumeClaim...", rs.persistent_volume_claim.create))
        steps.append(Step("Creating Job...", rs.job.create))
        if self.directory is not None and self.directory.path:
            steps.append(Step("Uploading Directory...", self.push))

        await run_steps(steps, log=self.log, timeout=self.cloud.timeouts.create)
        self.log.info("Creation completed")
        self._observe()

    async def read(self) -> None:
        self.log.info("Reading resources... (this may happen several times)")
        rs = self.resources
        steps = []
        if rs.persistent_volume_claim is not None:
            steps.append(Step("Reading PersistentVolumeClaim...", rs.persistent_volume_claim.read))
        steps.append(Step("Reading Job...", rs.job.read))

        await run_steps(steps, log=self.log, timeout=self.cloud.timeouts.read)
        self.log.info("Read completed")
        self._observe()

    async def delete(self) -> None:
        self.log.info("Deleting resources...")
        rs = self.resources
        steps: list[Step] = []

        if self.directory is not None and self.directory.path:
            try:
                await self.read()
            except Exception as e:
                self.log.debug("Skipping directory download, read failed: {error}", error=e)
            else:
                retriever = resources.Job(
                    self.client,
                    self.identifier,
                    rs.persistent_volume_claim,
                    self.attributes,
                    keep_alive=True,
                )
                steps += [
                    Step("Deleting completed Job...", rs.job.delete),
                    Step("Creating ephemeral Job to retrieve directory...", retriever.create),
                    Step("Downloading Directory...", self._pull_if_present),
                ]

        steps.append(Step("Deleting Job...", rs.job.delete))
        if rs.persistent_volume_claim is not None:
            steps.append(Step("Deleting PersistentVolumeClaim...", rs.persistent_volume_claim.delete))

        await run_steps(steps, log=self.log, timeout=self.cloud.timeouts.delete)
        self.log.info("Deletion completed")

    async def _pull_if_present(self) -> None:
        try:
            await self.pull()
        except NotFoundError:
            self.log.debug("No output directory to download")

    async def push(self, source: str | None = None) -> None:
        """Copy the local directory into the volume through a running pod."""
        source = source or self._local_directory()
        pod = await self.resources.job.pod(self.cloud.timeouts.create.total_seconds())
        self.log.info("Copying {source} into pod {pod}", source=source, pod=pod)
        await self.client.call(archive.upload, self.client, pod, source, DATA_DIR)

    async def pull(self, destination: str | None = None) -> None:
        """Copy ``directory_out`` from the volume into the local directory."""
        destination = destination or self._local_directory()
        include = self.attributes.environment.directory_out or "."
        pod = await self.resources.job.pod(self.cloud.timeouts.delete.total_seconds())
        self.log.info("Copying {include} from pod {pod}", include=include, pod=pod)
        count = await self.client.call(
            archive.download, self.client, pod, DATA_DIR, destination, include
        )
        self.log.info("Copied {count} files", count=count)

    def _local_directory(self) -> str:
        if self.directory is None or not self.directory.path:
            raise ValidationError("task has no local directory")
        return self.directory.path

    async def start(self) -> None:
        await run_steps(
            [Step("Updating Job parallelism...", self.resources.job.update)],
            log=self.log,
            timeout=self.cloud.timeouts.update,
        )

    async def stop(self) -> None:
        raise UnsupportedError("stop is only available on virtual machine providers")

    async def status(self) -> Status:
        await self.read()
        return dict(self.attributes.status)

    async def logs(self) -> list[str]:
        await self.read()
        return await self.resources.job.logs()

    def get_addresses(self) -> list[str]:
        return self.attributes.addresses

    def get_events(self) -> list[Event]:
        return self.attributes.events

    def get_key_pair(self) -> DeterministicSSHKeyPair:
        raise NotFoundError("Kubernetes tasks have no SSH key pair")

    def get_identifier(self) -> Identifier:
        return self.identifier
