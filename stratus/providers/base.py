"""Base classes for provider implementations.

Virtual-machine providers (AWS, GCP, Azure) share everything above their
resource graphs: workers sync ``/data`` through object storage, report
through ``/reports``, and scale through a single worker group. Subclasses
wire their DataSources/Resources and list the steps of each operation.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar, Protocol

from loguru import logger

from stratus import ssh, storage
from stratus.constants import DATA_DIR, Provider
from stratus.core.exceptions import NotFoundError, ValidationError
from stratus.core.steps import Step, run_steps

if TYPE_CHECKING:
    from loguru import Logger

    from stratus.config import AgentSettings
    from stratus.ssh import DeterministicSSHKeyPair
    from stratus.storage.sync import Remote
    from stratus.task.cloud import Cloud
    from stratus.task.model import Event, Identifier, Status, TaskAttributes


class WorkerGroup(Protocol):
    """Resource that owns the workers and their observed state."""

    addresses: list[str]
    status: Status
    events: list[Event]

    async def read(self) -> None: ...

    async def update(self) -> None:
        """Apply the task's current parallelism as the desired size."""
        ...


class FleetTask(ABC):
    """Task whose workers are a scalable group of virtual machines."""

    provider: ClassVar[Provider]

    def __init__(
        self,
        cloud: Cloud,
        identifier: Identifier,
        attributes: TaskAttributes,
        *,
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

    # -------------------------------------------------------------------------
    # Provider hooks
    # -------------------------------------------------------------------------

    @property
    @abstractmethod
    def worker_group(self) -> WorkerGroup: ...

    @property
    @abstractmethod
    def remote(self) -> Remote:
        """Storage root of this task, valid once credentials are read."""

    @abstractmethod
    def create_steps(self) -> list[Step]:
        """Read data sources and create resources, in dependency order."""

    @abstractmethod
    def read_steps(self) -> list[Step]: ...

    @abstractmethod
    def delete_steps(self) -> list[Step]:
        """Delete resources in reverse creation order."""

    @abstractmethod
    def get_key_pair(self) -> DeterministicSSHKeyPair: ...

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _observe(self) -> None:
        group = self.worker_group
        self.attributes.addresses = list(group.addresses)
        self.attributes.status = dict(group.status)
        self.attributes.events = list(group.events)

    async def create(self) -> None:
        self.log.info("Creating resources...")
        steps = self.create_steps()
        if self.attributes.environment.directory:
            steps.append(Step("Uploading Directory...", self.push))
        steps.append(Step("Starting task...", self.start))
        steps.append(Step("Reading worker group...", self.worker_group.read))

        await run_steps(steps, log=self.log, timeout=self.cloud.timeouts.create)
        self.log.info("Creation completed")
        self._observe()

    async def read(self) -> None:
        self.log.info("Reading resources... (this may happen several times)")
        await run_steps(self.read_steps(), log=self.log, timeout=self.cloud.timeouts.read)
        self.log.info("Read completed")
        self._observe()

    async def delete(self) -> None:
        self.log.info("Deleting resources...")
        steps: list[Step] = []

        try:
            await self.read()
        except Exception as e:
            self.log.debug("Skipping storage cleanup, read failed: {error}", error=e)
        else:
            environment = self.attributes.environment
            if environment.directory_out and environment.directory:
                steps.append(Step("Downloading Directory...", self._pull_if_present))
            elif environment.directory_out:
                self.log.warning(
                    "Not downloading {path}: task has no local directory",
                    path=environment.directory_out,
                )
            steps.append(Step("Emptying Bucket...", self._purge_storage))

        steps.extend(self.delete_steps())
        await run_steps(steps, log=self.log, timeout=self.cloud.timeouts.delete)
        self.log.info("Deletion completed")

    async def _pull_if_present(self) -> None:
        try:
            await self.pull()
        except NotFoundError:
            self.log.debug("No output directory to download")

    async def _purge_storage(self) -> None:
        try:
            await storage.delete(self.remote)
        except NotFoundError:
            self.log.debug("Remote storage already empty")

    # -------------------------------------------------------------------------
    # Data
    # -------------------------------------------------------------------------

    async def push(self, source: str | None = None) -> None:
        """Upload the input directory to ``/data``."""
        source = source or self.attributes.environment.directory
        await storage.transfer(source, self.remote.join(DATA_DIR), log=self.log)

    async def pull(self, destination: str | None = None) -> None:
        """Download ``directory_out`` from ``/data`` into the local directory."""
        environment = self.attributes.environment
        destination = destination or environment.directory
        if not destination:
            raise ValidationError("task has no local directory to download into")
        await storage.transfer(
            self.remote.join(DATA_DIR),
            destination,
            environment.directory_out or ".",
            log=self.log,
        )

    # -------------------------------------------------------------------------
    # Scaling
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        await run_steps(
            [Step("Updating worker group...", self.worker_group.update)],
            log=self.log,
            timeout=self.cloud.timeouts.update,
        )

    async def stop(self) -> None:
        """Scale the worker group to zero without waiting for scale-down.

        The configured parallelism is restored afterwards, so a later
        ``start`` brings back the original worker count.
        """
        saved = self.attributes.parallelism
        self.attributes.parallelism = 0
        try:
            await self.start()
        finally:
            self.restore_parallelism(saved)

    def restore_parallelism(self, saved: int) -> None:
        self.attributes.parallelism = saved

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    async def status(self) -> Status:
        await self.read()
        return await storage.status(self.remote, dict(self.attributes.status))

    async def logs(self) -> list[str]:
        await self.read()
        return await storage.logs(self.remote)

    async def execute(self, command: str) -> dict[str, str]:
        """Run a shell command on every worker over SSH.

        Returns:
            Combined output of the command keyed by worker address.

        Raises:
            asyncssh.ProcessError: If the command fails on any worker.
        """
        await self.read()
        key_pair = self.get_key_pair()
        addresses = self.get_addresses()
        self.log.debug("Running {command!r} on {count} workers", command=command, count=len(addresses))
        outputs = await asyncio.gather(
            *(ssh.run_command(command, address, key_pair) for address in addresses)
        )
        return dict(zip(addresses, outputs))

    def get_addresses(self) -> list[str]:
        return self.attributes.addresses

    def get_events(self) -> list[Event]:
        return self.attributes.events

    def get_identifier(self) -> Identifier:
        return self.identifier
